from __future__ import annotations

import asyncio
import logging
import signal
import time
from collections.abc import Hashable
from typing import Any

from . import __version__
from .codec import encode
from .commands import CommandHandler
from .config import HubRuntimeConfig
from .constants import (
    T_BLOCK_USER,
    T_ERROR,
    T_LOAD_HISTORY,
    T_NOTIFICATION,
    T_PING,
    T_ROOM_LIST,
    T_TYPING_USERS,
    T_UNBLOCK_USER,
    T_UPDATE_USER_LIST,
    T_WELCOME,
)
from .envelope import make_envelope, now_ms
from .errors import Banned, ChatError, StoreError, Unauthenticated, ValidationError
from .identity import IdentityResolver, Signer
from .models import Ban, Message, Principal
from .moderation import ModerationGate
from .pipeline import MessagePipeline
from .presence import PresenceTracker
from .rooms import RoomRouter
from .router import MessageRouter
from .session import SessionManager
from .sqlite_store import SqliteStore
from .stats import StatsManager
from .store import DirectoryStore, MemoryStore
from .transport import Transport
from .util import normalize_username

ConnId = Hashable


class HubService:
    """Wires the hub components together and owns the connection lifecycle.

    Everything here runs on one asyncio event loop. Transports deliver
    ``on_connect``/``on_packet``/``on_disconnect`` on that loop; each inbound
    packet is handled as its own task.
    """

    def __init__(
        self,
        config: HubRuntimeConfig,
        *,
        signer: Signer,
        transport: Transport,
        store: DirectoryStore | None = None,
    ) -> None:
        self.config = config
        self.log = logging.getLogger("chathub.hub")

        if store is None:
            store = SqliteStore(config.store_path) if config.store_path else MemoryStore()
        self.store = store
        self.transport = transport
        self.signer = signer
        self.src = bytes(getattr(signer, "hash", None) or b"chathub")

        self.stats = StatsManager()
        self.sessions = SessionManager(config)
        self.presence = PresenceTracker(
            on_online_changed=self._broadcast_user_list,
            on_typing_changed=self._broadcast_typing,
        )
        self.rooms = RoomRouter(store, config, self.presence)
        self.gate = ModerationGate(store)
        self.identity = IdentityResolver(store, signer, config)
        self.pipeline = MessagePipeline(
            store=store,
            gate=self.gate,
            rooms=self.rooms,
            sessions=self.sessions,
            emitter=self,
            config=config,
            stats=self.stats,
        )
        self.router = MessageRouter(self)
        self.commands = CommandHandler(self)

        self._tasks: set[asyncio.Task] = set()
        self._loops: list[asyncio.Task] = []
        self._shutdown: asyncio.Event | None = None
        self._started = False

    # Outbound

    def _send_payload(self, conn_id: ConnId, payload: bytes) -> None:
        self.stats.inc("bytes_out", len(payload))
        try:
            self.transport.send(conn_id, payload)
        except Exception:
            self.log.debug(
                "Send failed conn=%s bytes=%s", conn_id, len(payload), exc_info=True
            )

    def _payload(self, msg_type: int, body: Any, room: int | None = None) -> bytes:
        return encode(make_envelope(msg_type, src=self.src, room=room, body=body))

    def to_conn(
        self, conn_id: ConnId, msg_type: int, body: Any, room: int | None = None
    ) -> None:
        self._send_payload(conn_id, self._payload(msg_type, body, room))

    def to_room(self, room_id: int, msg_type: int, body: Any) -> None:
        members = self.rooms.members(room_id)
        if not members:
            return
        payload = self._payload(msg_type, body, room_id)
        for conn_id in members:
            self._send_payload(conn_id, payload)

    def to_user(self, username: str, msg_type: int, body: Any) -> None:
        conns = self.presence.connections_for(username)
        if not conns:
            return
        payload = self._payload(msg_type, body)
        for conn_id in conns:
            self._send_payload(conn_id, payload)

    def to_all(self, msg_type: int, body: Any) -> None:
        conns = self.presence.all_connections()
        if not conns:
            return
        payload = self._payload(msg_type, body)
        for conn_id in conns:
            self._send_payload(conn_id, payload)

    def send_error(self, conn_id: ConnId, err: ChatError) -> None:
        self.stats.inc("errors_sent")
        self.to_conn(conn_id, T_ERROR, err.to_wire())

    def notify_conn(self, conn_id: ConnId, kind: str, text: str, **extra: Any) -> None:
        self.to_conn(conn_id, T_NOTIFICATION, {"type": kind, "text": text, **extra})

    def notify_user(self, username: str, kind: str, text: str, **extra: Any) -> None:
        self.to_user(username, T_NOTIFICATION, {"type": kind, "text": text, **extra})

    def _broadcast_user_list(self, principals: list[Principal]) -> None:
        self.to_all(T_UPDATE_USER_LIST, {"users": [p.to_wire() for p in principals]})

    def _broadcast_typing(self, room_id: int, users: list[str]) -> None:
        self.to_room(room_id, T_TYPING_USERS, {"room": room_id, "users": users})

    def _send_history(self, conn_id: ConnId, room_id: int, history: list[Message]) -> None:
        self.to_conn(
            conn_id,
            T_LOAD_HISTORY,
            {"room": room_id, "messages": [m.to_wire() for m in history]},
            room=room_id,
        )

    # Connection lifecycle

    def on_connect(self, conn_id: ConnId) -> None:
        self.sessions.on_connect(conn_id)

    def on_packet(self, conn_id: ConnId, data: bytes) -> None:
        task = asyncio.get_running_loop().create_task(self.handle_packet(conn_id, data))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def handle_packet(self, conn_id: ConnId, data: bytes) -> None:
        await self.router.route_packet(conn_id, data)

    def on_disconnect(self, conn_id: ConnId) -> None:
        conn = self.sessions.on_disconnect(conn_id)
        if conn is None:
            return
        room_id = self.rooms.leave(conn_id)
        self.presence.unregister(conn_id)
        self.log.info(
            "Connection closed conn=%s user=%s room=%s",
            conn_id,
            conn.username,
            room_id,
        )

    def disconnect(self, conn_id: ConnId, *, reason: str = "") -> None:
        conn = self.sessions.get(conn_id)
        if conn is None:
            return
        conn.closing = True
        self.log.info("Disconnecting conn=%s user=%s reason=%s", conn_id, conn.username, reason)
        try:
            self.transport.close(conn_id)
        finally:
            self.on_disconnect(conn_id)

    def disconnect_user(self, username: str, *, reason: str = "") -> int:
        conns = self.presence.connections_for(username)
        for conn_id in conns:
            self.notify_conn(conn_id, reason or "disconnect", "You have been disconnected")
            self.disconnect(conn_id, reason=reason)
        return len(conns)

    def enforce_ban(self, ban: Ban) -> int:
        """Close every live connection of a banned user."""
        conns = self.presence.connections_for(ban.username)
        err = Banned(ban)
        for conn_id in conns:
            self.send_error(conn_id, err)
            self.disconnect(conn_id, reason="banned")
        return len(conns)

    async def handshake(self, conn_id: ConnId, credential: Any) -> None:
        """Authenticate, check bans, register presence, join and replay history."""
        try:
            principal, client_type = await self.identity.authenticate(credential)
        except Unauthenticated:
            self.stats.inc("auth_failed")
            self.log.info("Authentication failed conn=%s", conn_id)
            raise

        try:
            await self.gate.ensure_can_connect(principal.username)
        except Banned:
            self.stats.inc("bans_rejected")
            self.log.warning("Rejecting banned user=%s conn=%s", principal.username, conn_id)
            raise

        if self.sessions.authenticate(conn_id, principal, client_type) is None:
            return

        self.log.info(
            "HELLO conn=%s user=%s role=%s client=%s",
            conn_id,
            principal.username,
            principal.role,
            client_type,
        )
        self.to_conn(
            conn_id,
            T_WELCOME,
            {
                "hub": self.config.hub_name,
                "version": __version__,
                "user": principal.to_wire(),
                "client": client_type,
                "greeting": self.config.greeting,
            },
        )
        self.presence.register(conn_id, principal)

        room_id, history = await self.rooms.join_default(conn_id)
        conn = self.sessions.get(conn_id)
        if conn is None:
            # Closed while joining.
            self.rooms.leave(conn_id)
            return
        conn.current_room = room_id
        rooms = await self.rooms.list_rooms()
        self.to_conn(
            conn_id,
            T_ROOM_LIST,
            {"rooms": [r.to_wire() for r in rooms], "current": room_id},
        )
        self._send_history(conn_id, room_id, history)

    async def switch_room(self, conn_id: ConnId, ref: int | str) -> int:
        room_id, history = await self.rooms.switch_room(conn_id, ref)
        conn = self.sessions.get(conn_id)
        if conn is None:
            self.rooms.leave(conn_id)
            return room_id
        conn.current_room = room_id
        self.stats.inc("room_switches")
        self._send_history(conn_id, room_id, history)
        self.to_conn(
            conn_id,
            T_TYPING_USERS,
            {"room": room_id, "users": self.presence.list_typing(room_id)},
            room=room_id,
        )
        return room_id

    def set_typing(self, conn_id: ConnId, is_typing: bool) -> None:
        room_id = self.rooms.current_room(conn_id)
        if room_id is None:
            return
        self.presence.set_typing(room_id, conn_id, is_typing)

    def _principal(self, conn_id: ConnId) -> Principal:
        conn = self.sessions.get(conn_id)
        if conn is None or conn.principal is None:
            raise Unauthenticated()
        return conn.principal

    async def block_user(self, conn_id: ConnId, username: Any) -> None:
        principal = self._principal(conn_id)
        name = normalize_username(username, max_chars=self.config.username_max_chars)
        if name is None:
            raise ValidationError("username required")
        await self.gate.block(principal, name)
        self.to_conn(conn_id, T_BLOCK_USER, {"username": name, "blocked": True})

    async def unblock_user(self, conn_id: ConnId, username: Any) -> None:
        principal = self._principal(conn_id)
        name = normalize_username(username, max_chars=self.config.username_max_chars)
        if name is None:
            raise ValidationError("username required")
        await self.gate.unblock(principal, name)
        self.to_conn(conn_id, T_UNBLOCK_USER, {"username": name, "blocked": False})

    # Background loops

    async def _ban_sweep_loop(self) -> None:
        interval = float(self.config.ban_sweep_interval_s)
        while True:
            await asyncio.sleep(interval)
            await self.sweep_bans()

    async def sweep_bans(self) -> int:
        """Disconnect online users who picked up a ban since they connected."""
        closed = 0
        for username in sorted(self.presence.list_online()):
            try:
                ban = await self.gate.check_ban(username)
            except StoreError as e:
                self.log.warning("Ban sweep failed user=%s: %s", username, e)
                continue
            if ban is not None:
                closed += self.enforce_ban(ban)
        return closed

    async def _ping_loop(self) -> None:
        interval = float(self.config.ping_interval_s)
        timeout = float(self.config.ping_timeout_s)
        while True:
            await asyncio.sleep(interval)
            now = time.monotonic()
            for conn in self.sessions.authenticated_connections():
                awaiting = conn.awaiting_pong
                if timeout > 0 and awaiting is not None and (now - awaiting) > timeout:
                    self.disconnect(conn.conn_id, reason="ping timeout")
                    continue
                if awaiting is None:
                    conn.awaiting_pong = now
                    self.stats.inc("pings_out")
                    self.to_conn(conn.conn_id, T_PING, now_ms())

    async def _hello_timeout_loop(self) -> None:
        period = max(1.0, float(self.config.hello_timeout_s) / 4.0)
        while True:
            await asyncio.sleep(period)
            for conn_id in self.sessions.stale_handshakes():
                self.disconnect(conn_id, reason="hello timeout")

    def _start_loop(self, coro) -> None:
        self._loops.append(asyncio.get_running_loop().create_task(coro))

    # Service lifecycle

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._shutdown = asyncio.Event()
        self.stats.set_start_time()

        await self.store.open()
        rooms = await self.rooms.list_rooms()

        self.transport.attach(self)
        await self.transport.start()

        if self.config.ban_sweep_interval_s and self.config.ban_sweep_interval_s > 0:
            self._start_loop(self._ban_sweep_loop())
        if self.config.ping_interval_s and self.config.ping_interval_s > 0:
            self._start_loop(self._ping_loop())
        if self.config.hello_timeout_s and self.config.hello_timeout_s > 0:
            self._start_loop(self._hello_timeout_loop())

        self.log.info(
            "Hub running name=%s rooms=%s history_limit=%s rate_limit_msgs_per_minute=%s",
            self.config.hub_name,
            len(rooms),
            self.config.history_limit,
            self.config.rate_limit_msgs_per_minute,
        )

    async def flush(self) -> None:
        """Wait until every in-flight packet task and mention delivery is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.pipeline.flush()

    async def run_forever(self) -> None:
        await self.start()
        assert self._shutdown is not None

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._shutdown.set)
            except (NotImplementedError, RuntimeError):
                pass

        await self._shutdown.wait()
        await self.stop()

    def request_stop(self) -> None:
        if self._shutdown is not None:
            self._shutdown.set()

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        if self._shutdown is not None:
            self._shutdown.set()

        for task in self._loops:
            task.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops.clear()

        await self.flush()

        for conn_id in self.sessions.clear_all():
            try:
                self.transport.close(conn_id)
            except Exception:
                self.log.debug("Close failed conn=%s", conn_id, exc_info=True)
        self.rooms.clear_all()

        await self.transport.stop()
        await self.store.close()
        self.log.info("Hub stopped")
