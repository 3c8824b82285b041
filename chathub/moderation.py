"""Moderation Gate: ban, mute and block checks plus the admin actions."""

from __future__ import annotations

import logging

from .envelope import now_ms
from .errors import Banned, Blocked, Muted, NotFound, PermissionDenied, ValidationError
from .models import Ban, Mute, Principal
from .store import DirectoryStore

_MINUTE_MS = 60 * 1000
_DAY_MS = 24 * 60 * _MINUTE_MS


class ModerationGate:
    def __init__(self, store: DirectoryStore) -> None:
        self.store = store
        self.log = logging.getLogger("chathub.moderation")

    async def check_ban(self, username: str) -> Ban | None:
        return await self.store.get_active_ban(username)

    async def check_mute(self, username: str) -> Mute | None:
        return await self.store.get_active_mute(username)

    async def check_blocked(self, blocker: str, blocked: str) -> bool:
        """True when ``blocker`` has blocked ``blocked``. Direction matters."""
        return await self.store.is_blocked(blocker, blocked)

    async def ensure_can_connect(self, username: str) -> None:
        ban = await self.check_ban(username)
        if ban is not None:
            raise Banned(ban)

    async def ensure_can_send(self, username: str) -> None:
        await self.ensure_can_connect(username)
        mute = await self.check_mute(username)
        if mute is not None:
            raise Muted(mute)

    async def ensure_can_private_message(self, sender: str, recipient: str) -> None:
        if await self.check_blocked(sender, recipient):
            raise Blocked("You have blocked this user")
        if await self.check_blocked(recipient, sender):
            raise Blocked("This user has blocked you")

    # Admin actions

    def _require_admin(self, actor: Principal) -> None:
        if not actor.is_admin:
            raise PermissionDenied("Admin access required")

    async def _require_user(self, username: str) -> None:
        if await self.store.find_user_by_name(username) is None:
            raise NotFound("User not found")

    async def mute(
        self, actor: Principal, username: str, minutes: int, reason: str = ""
    ) -> Mute:
        self._require_admin(actor)
        if minutes <= 0:
            raise ValidationError("Mute duration must be positive")
        if username == actor.username:
            raise ValidationError("Cannot mute yourself")
        await self._require_user(username)
        mute = await self.store.add_mute(
            Mute(
                username=username,
                issued_by=actor.username,
                reason=reason or "No reason given",
                expires_at=now_ms() + int(minutes) * _MINUTE_MS,
            )
        )
        self.log.info(
            "Muted user=%s by=%s minutes=%s reason=%r",
            username,
            actor.username,
            minutes,
            mute.reason,
        )
        return mute

    async def unmute(self, actor: Principal, username: str) -> int:
        self._require_admin(actor)
        lifted = await self.store.lift_mutes(username)
        self.log.info("Unmuted user=%s by=%s lifted=%s", username, actor.username, lifted)
        return lifted

    async def ban(
        self,
        actor: Principal,
        username: str,
        days: int | None = None,
        reason: str = "",
    ) -> Ban:
        """Ban ``username``; ``days=None`` makes the ban permanent."""
        self._require_admin(actor)
        if days is not None and days <= 0:
            raise ValidationError("Ban duration must be positive")
        if username == actor.username:
            raise ValidationError("Cannot ban yourself")
        await self._require_user(username)
        ban = await self.store.add_ban(
            Ban(
                username=username,
                issued_by=actor.username,
                reason=reason or "No reason given",
                expires_at=None if days is None else now_ms() + int(days) * _DAY_MS,
                permanent=days is None,
            )
        )
        self.log.warning(
            "Banned user=%s by=%s days=%s reason=%r",
            username,
            actor.username,
            "perm" if days is None else days,
            ban.reason,
        )
        return ban

    async def unban(self, actor: Principal, username: str) -> int:
        self._require_admin(actor)
        lifted = await self.store.lift_bans(username)
        self.log.info("Unbanned user=%s by=%s lifted=%s", username, actor.username, lifted)
        return lifted

    async def block(self, blocker: Principal, username: str) -> None:
        if username == blocker.username:
            raise ValidationError("Cannot block yourself")
        await self._require_user(username)
        await self.store.block_user(blocker.username, username)

    async def unblock(self, blocker: Principal, username: str) -> None:
        await self.store.unblock_user(blocker.username, username)
