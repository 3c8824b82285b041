"""Shared test doubles: an HMAC signer and a recording transport."""

from __future__ import annotations

import contextlib
import hashlib
import hmac
from dataclasses import replace

from chathub.codec import decode, encode
from chathub.config import HubRuntimeConfig
from chathub.constants import K_BODY, K_ROOM, K_T, ROLE_USER, T_HELLO
from chathub.envelope import make_envelope
from chathub.models import SessionRecord, User
from chathub.service import HubService
from chathub.store import MemoryStore
from chathub.transport import Transport


class FakeSigner:
    """Stands in for RNS.Identity in token tests."""

    hash = b"\x42" * 16

    def __init__(self, key: bytes = b"test-key") -> None:
        self.key = key

    def sign(self, message: bytes) -> bytes:
        return hmac.new(self.key, message, hashlib.sha256).digest()

    def validate(self, signature: bytes, message: bytes) -> bool:
        return hmac.compare_digest(self.sign(message), signature)


class FakeTransport(Transport):
    def __init__(self) -> None:
        super().__init__()
        self.sent: dict[object, list[dict]] = {}
        self.closed: list[object] = []
        self.started = False

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False

    def send(self, conn_id, payload: bytes) -> bool:
        self.sent.setdefault(conn_id, []).append(decode(payload))
        return True

    def close(self, conn_id) -> None:
        self.closed.append(conn_id)

    def events(self, conn_id, msg_type: int) -> list:
        return [env.get(K_BODY) for env in self.sent.get(conn_id, []) if env[K_T] == msg_type]

    def envelopes(self, conn_id, msg_type: int) -> list[dict]:
        return [env for env in self.sent.get(conn_id, []) if env[K_T] == msg_type]

    def types(self, conn_id) -> list[int]:
        return [env[K_T] for env in self.sent.get(conn_id, [])]

    def rooms_of(self, conn_id, msg_type: int) -> list:
        return [env.get(K_ROOM) for env in self.envelopes(conn_id, msg_type)]

    def clear(self) -> None:
        self.sent.clear()


def make_config(**overrides) -> HubRuntimeConfig:
    base = HubRuntimeConfig(
        announce_on_start=False,
        ban_sweep_interval_s=0.0,
        hello_timeout_s=0.0,
    )
    return replace(base, **overrides)


def packet(msg_type: int, body=None, room=None) -> bytes:
    return encode(make_envelope(msg_type, src=b"client", room=room, body=body))


@contextlib.asynccontextmanager
async def running_hub(store=None, **overrides):
    hub = HubService(
        make_config(**overrides),
        signer=FakeSigner(),
        transport=FakeTransport(),
        store=store if store is not None else MemoryStore(),
    )
    await hub.start()
    try:
        yield hub
    finally:
        await hub.stop()


async def add_user(store, username: str, role: str = ROLE_USER, color: str = "#336699") -> User:
    return await store.add_user(
        User(username=username, display_name=username.title(), color=color, role=role)
    )


async def login(hub: HubService, conn_id, username: str) -> None:
    """Open ``conn_id`` and authenticate it with a fresh web session."""
    sid = f"sid-{conn_id}"
    user = await hub.store.find_user_by_name(username)
    if user is None:
        user = await add_user(hub.store, username)
    await hub.store.add_session(SessionRecord(sid=sid, user=user))
    hub.on_connect(conn_id)
    await hub.handle_packet(conn_id, packet(T_HELLO, {"session": sid}))
