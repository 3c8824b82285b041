import asyncio

import pytest

from chathub.constants import ROLE_ADMIN
from chathub.envelope import now_ms
from chathub.errors import Banned, Blocked, Muted, NotFound, PermissionDenied, ValidationError
from chathub.models import Ban, Mute, Principal, User
from chathub.moderation import ModerationGate
from chathub.store import MemoryStore

ADMIN = Principal("root", "Root", role=ROLE_ADMIN)
USER = Principal("alice", "Alice")


async def _gate() -> ModerationGate:
    store = MemoryStore()
    for name in ("root", "alice", "bob"):
        await store.add_user(User(name))
    return ModerationGate(store)


def test_banned_user_cannot_connect_or_send() -> None:
    async def scenario():
        gate = await _gate()
        await gate.ensure_can_connect("alice")
        await gate.store.add_ban(Ban("alice", "root", "spam", permanent=True))
        with pytest.raises(Banned) as exc:
            await gate.ensure_can_connect("alice")
        assert exc.value.to_wire()["type"] == "banned"
        assert exc.value.to_wire()["ban"]["permanent"] is True
        assert exc.value.fatal
        with pytest.raises(Banned):
            await gate.ensure_can_send("alice")

    asyncio.run(scenario())


def test_mute_carries_expiry() -> None:
    async def scenario():
        gate = await _gate()
        expires = now_ms() + 5 * 60_000
        await gate.store.add_mute(Mute("alice", "root", "calm down", expires))
        with pytest.raises(Muted) as exc:
            await gate.ensure_can_send("alice")
        assert exc.value.mute.expires_at == expires
        assert exc.value.to_wire()["mute"]["expiresAt"] == expires
        assert not exc.value.fatal
        await gate.ensure_can_connect("alice")

    asyncio.run(scenario())


def test_expired_mute_does_not_apply() -> None:
    async def scenario():
        gate = await _gate()
        await gate.store.add_mute(Mute("alice", "root", "old", now_ms() - 1))
        await gate.ensure_can_send("alice")
        assert await gate.check_mute("alice") is None

    asyncio.run(scenario())


def test_block_checks_both_directions_with_distinct_messages() -> None:
    async def scenario():
        gate = await _gate()
        await gate.block(USER, "bob")
        assert await gate.check_blocked("alice", "bob")
        assert not await gate.check_blocked("bob", "alice")
        with pytest.raises(Blocked) as a_to_b:
            await gate.ensure_can_private_message("alice", "bob")
        with pytest.raises(Blocked) as b_to_a:
            await gate.ensure_can_private_message("bob", "alice")
        assert a_to_b.value.message != b_to_a.value.message
        await gate.unblock(USER, "bob")
        await gate.ensure_can_private_message("alice", "bob")

    asyncio.run(scenario())


def test_admin_actions_require_admin() -> None:
    async def scenario():
        gate = await _gate()
        with pytest.raises(PermissionDenied):
            await gate.mute(USER, "bob", 5)
        with pytest.raises(PermissionDenied):
            await gate.ban(USER, "bob")
        with pytest.raises(PermissionDenied):
            await gate.unban(USER, "bob")

    asyncio.run(scenario())


def test_admin_mute_ban_and_lift() -> None:
    async def scenario():
        gate = await _gate()
        mute = await gate.mute(ADMIN, "alice", 10, "flooding")
        assert mute.expires_at > now_ms()
        assert (await gate.check_mute("alice")).reason == "flooding"
        assert await gate.unmute(ADMIN, "alice") == 1
        assert await gate.check_mute("alice") is None

        ban = await gate.ban(ADMIN, "bob", 3)
        assert not ban.permanent and ban.expires_at > now_ms()
        perm = await gate.ban(ADMIN, "bob")
        assert perm.permanent and perm.expires_at is None
        assert (await gate.check_ban("bob")).id == perm.id
        assert await gate.unban(ADMIN, "bob") == 2
        assert await gate.check_ban("bob") is None

    asyncio.run(scenario())


def test_admin_action_validation() -> None:
    async def scenario():
        gate = await _gate()
        with pytest.raises(NotFound):
            await gate.mute(ADMIN, "ghost", 5)
        with pytest.raises(ValidationError):
            await gate.mute(ADMIN, "alice", 0)
        with pytest.raises(ValidationError):
            await gate.ban(ADMIN, "root")
        with pytest.raises(ValidationError):
            await gate.block(USER, "alice")

    asyncio.run(scenario())
