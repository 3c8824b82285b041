import asyncio

import pytest
import RNS

from chathub.constants import CLIENT_API, CLIENT_DESKTOP, CLIENT_WEB, ROLE_ADMIN
from chathub.envelope import now_ms
from chathub.errors import Unauthenticated
from chathub.identity import IdentityResolver
from chathub.models import Principal, SessionRecord, User
from chathub.store import MemoryStore

from helpers import FakeSigner


def _resolver(store=None, signer=None) -> IdentityResolver:
    return IdentityResolver(store or MemoryStore(), signer or FakeSigner())


def test_session_credential_resolves_principal() -> None:
    async def scenario():
        store = MemoryStore()
        user = await store.add_user(User("alice", "Alice", "#ff0000", ROLE_ADMIN))
        await store.add_session(SessionRecord("sid1", user, now_ms() + 60_000))
        principal, client = await _resolver(store).authenticate({"session": "sid1"})
        assert principal == Principal("alice", "Alice", "#ff0000", ROLE_ADMIN)
        assert client == CLIENT_WEB

    asyncio.run(scenario())


def test_expired_or_unknown_session_is_rejected() -> None:
    async def scenario():
        store = MemoryStore()
        user = await store.add_user(User("alice"))
        await store.add_session(SessionRecord("old", user, now_ms() - 1))
        resolver = _resolver(store)
        with pytest.raises(Unauthenticated):
            await resolver.resolve({"session": "old"})
        with pytest.raises(Unauthenticated):
            await resolver.resolve({"session": "nope"})

    asyncio.run(scenario())


def test_token_and_session_produce_same_principal() -> None:
    async def scenario():
        store = MemoryStore()
        user = await store.add_user(User("bob", "Bob", "#00ff00"))
        await store.add_session(SessionRecord("sid", user))
        resolver = _resolver(store)
        token = resolver.issue_token(user)
        via_token, client = await resolver.authenticate({"token": token})
        via_session = await resolver.resolve({"session": "sid"})
        assert via_token == via_session
        assert client == CLIENT_DESKTOP

    asyncio.run(scenario())


def test_token_client_claim() -> None:
    async def scenario():
        resolver = _resolver()
        token = resolver.issue_token(User("bob"), client=CLIENT_API)
        _, client = await resolver.authenticate({"token": token, "client": "web"})
        assert client == CLIENT_API

    asyncio.run(scenario())


def test_tampered_token_is_rejected() -> None:
    async def scenario():
        resolver = _resolver()
        token = resolver.issue_token(User("bob"))
        head, sig = token.split(".")
        forged = IdentityResolver(MemoryStore(), FakeSigner(b"other")).issue_token(
            User("bob", role=ROLE_ADMIN)
        )
        with pytest.raises(Unauthenticated):
            await resolver.resolve({"token": forged.split(".")[0] + "." + sig})
        with pytest.raises(Unauthenticated):
            await resolver.resolve({"token": head})
        with pytest.raises(Unauthenticated):
            await resolver.resolve({"token": "!!!.???"})

    asyncio.run(scenario())


def test_expired_token_is_rejected() -> None:
    async def scenario():
        resolver = _resolver()
        token = resolver.issue_token(User("bob"), ttl_s=-60)
        with pytest.raises(Unauthenticated):
            await resolver.resolve({"token": token})

    asyncio.run(scenario())


def test_missing_credential_is_rejected() -> None:
    async def scenario():
        resolver = _resolver()
        for credential in (None, "token", {}, {"token": ""}, {"session": 5}):
            with pytest.raises(Unauthenticated):
                await resolver.resolve(credential)

    asyncio.run(scenario())


def test_tokens_signed_with_reticulum_identity() -> None:
    async def scenario():
        identity = RNS.Identity()
        resolver = IdentityResolver(MemoryStore(), identity)
        token = resolver.issue_token(User("carol", "Carol"))
        principal = await resolver.resolve({"token": token})
        assert principal.username == "carol"

        other = IdentityResolver(MemoryStore(), RNS.Identity())
        with pytest.raises(Unauthenticated):
            await other.resolve({"token": token})

    asyncio.run(scenario())
