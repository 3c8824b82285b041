"""Error taxonomy for the chat hub.

Every error raised by the core carries a wire ``kind``. The router turns it
into an ``error`` event for the originating connection. ``fatal`` errors also
close the connection.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import Ban, Mute


class ChatError(Exception):
    kind = "error"
    fatal = False

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    default_message = "request failed"

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else self.default_message

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.kind, "message": self.message}


class Unauthenticated(ChatError):
    kind = "unauthenticated"
    fatal = True
    default_message = "authentication required"


class Banned(ChatError):
    kind = "banned"
    fatal = True
    default_message = "You are banned from this server"

    def __init__(self, ban: Ban, message: str | None = None) -> None:
        super().__init__(message)
        self.ban = ban

    def to_wire(self) -> dict[str, Any]:
        out = super().to_wire()
        out["ban"] = self.ban.to_wire()
        return out


class Muted(ChatError):
    kind = "muted"
    default_message = "You are muted and cannot send messages"

    def __init__(self, mute: Mute, message: str | None = None) -> None:
        super().__init__(message)
        self.mute = mute

    def to_wire(self) -> dict[str, Any]:
        out = super().to_wire()
        out["mute"] = self.mute.to_wire()
        return out


class Blocked(ChatError):
    kind = "blocked"
    default_message = "Cannot send message to blocked user"


class NotFound(ChatError):
    kind = "not_found"
    default_message = "not found"


class PermissionDenied(ChatError):
    kind = "permission_denied"
    default_message = "not authorized"


class ValidationError(ChatError):
    kind = "validation"
    default_message = "invalid request"


class RateLimited(ChatError):
    kind = "rate_limited"
    default_message = "rate limited"


class StoreError(ChatError):
    """Backing store failure. Never retried by the core."""

    kind = "store"
    default_message = "request failed, please try again"
