"""Slash commands typed into the chat box."""

from __future__ import annotations

from collections.abc import Hashable
from typing import TYPE_CHECKING

from .errors import PermissionDenied, Unauthenticated, ValidationError
from .models import Principal

if TYPE_CHECKING:
    from .service import HubService

ConnId = Hashable

_PERMANENT = ("perm", "permanent", "forever")


class CommandHandler:
    """Handles slash commands for the chat hub."""

    def __init__(self, hub: HubService) -> None:
        self.hub = hub

    async def handle(self, conn_id: ConnId, text: str) -> bool:
        """Handle a slash command.

        Returns True if it was a recognized command (handled). Unknown commands
        return False so the message can be posted as normal chat.
        """
        cmdline = text.strip()
        if not cmdline.startswith("/"):
            return False

        parts = [p for p in cmdline[1:].split() if p]
        if not parts:
            return False

        cmd = parts[0].lower()
        args = parts[1:]
        actor = self._actor(conn_id)

        if cmd == "online":
            names = sorted(self.hub.presence.list_online())
            self._reply(conn_id, f"online ({len(names)}): " + ", ".join(names))
            return True

        if cmd == "stats":
            self._require_admin(actor)
            self._reply(conn_id, self.hub.stats.format_stats(self.hub))
            return True

        if cmd == "edits":
            if len(args) != 1 or not args[0].isdigit():
                raise ValidationError("usage: /edits <messageId>")
            history = await self.hub.pipeline.edit_history(int(args[0]))
            if not history:
                self._reply(conn_id, f"message {args[0]} has no edits")
            else:
                lines = [f"edits for message {args[0]}:"]
                lines.extend(
                    f"  {e.edited_by}: {e.original!r} -> {e.edited!r}" for e in history
                )
                self._reply(conn_id, "\n".join(lines))
            return True

        if cmd == "mute":
            if len(args) < 2 or not args[1].isdigit():
                raise ValidationError("usage: /mute <user> <minutes> [reason]")
            mute = await self.hub.gate.mute(actor, args[0], int(args[1]), " ".join(args[2:]))
            self.hub.notify_user(
                mute.username,
                "mute",
                f"You have been muted for {args[1]} minutes: {mute.reason}",
                mute=mute.to_wire(),
            )
            self._reply(conn_id, f"muted {mute.username} for {args[1]} minutes")
            return True

        if cmd == "unmute":
            if len(args) != 1:
                raise ValidationError("usage: /unmute <user>")
            lifted = await self.hub.gate.unmute(actor, args[0])
            if lifted:
                self.hub.notify_user(args[0], "unmute", "You have been unmuted")
            self._reply(conn_id, f"unmuted {args[0]} ({lifted} lifted)")
            return True

        if cmd == "ban":
            if not args:
                raise ValidationError("usage: /ban <user> [days|perm] [reason]")
            days: int | None = None
            rest = args[1:]
            if rest and rest[0].isdigit():
                days = int(rest[0])
                rest = rest[1:]
            elif rest and rest[0].lower() in _PERMANENT:
                rest = rest[1:]
            ban = await self.hub.gate.ban(actor, args[0], days, " ".join(rest))
            kicked = self.hub.enforce_ban(ban)
            span = "permanently" if ban.permanent else f"for {days} days"
            self._reply(conn_id, f"banned {ban.username} {span} ({kicked} connection(s) closed)")
            return True

        if cmd == "unban":
            if len(args) != 1:
                raise ValidationError("usage: /unban <user>")
            lifted = await self.hub.gate.unban(actor, args[0])
            self._reply(conn_id, f"unbanned {args[0]} ({lifted} lifted)")
            return True

        if cmd == "kick":
            self._require_admin(actor)
            if len(args) != 1:
                raise ValidationError("usage: /kick <user>")
            kicked = self.hub.disconnect_user(args[0], reason="kicked")
            self._reply(conn_id, f"kicked {args[0]} ({kicked} connection(s) closed)")
            return True

        return False

    def _actor(self, conn_id: ConnId) -> Principal:
        conn = self.hub.sessions.get(conn_id)
        if conn is None or conn.principal is None:
            raise Unauthenticated()
        return conn.principal

    def _require_admin(self, actor: Principal) -> None:
        if not actor.is_admin:
            raise PermissionDenied("not authorized")

    def _reply(self, conn_id: ConnId, text: str) -> None:
        self.hub.notify_conn(conn_id, "system", text)
