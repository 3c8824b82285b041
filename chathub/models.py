"""Core data types shared by the hub components and the directory store."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .constants import ROLE_ADMIN, ROLE_USER, ROOM_TEXT


@dataclass(frozen=True)
class Principal:
    """Resolved identity of one connection.

    Derived once at authentication time. A rename issues a new Principal;
    the live one is never mutated.
    """

    username: str
    display_name: str
    color: str = "#000000"
    role: str = ROLE_USER

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def to_wire(self) -> dict[str, Any]:
        return {
            "username": self.username,
            "displayName": self.display_name,
            "color": self.color,
            "role": self.role,
        }


@dataclass(frozen=True)
class User:
    username: str
    display_name: str | None = None
    color: str = "#000000"
    role: str = ROLE_USER

    def principal(self) -> Principal:
        return Principal(
            username=self.username,
            display_name=self.display_name or self.username,
            color=self.color,
            role=self.role,
        )


@dataclass(frozen=True)
class SessionRecord:
    sid: str
    user: User
    expires_at: int | None = None  # ms


@dataclass(frozen=True)
class Room:
    id: int
    name: str
    type: str = ROOM_TEXT
    position: int = 0
    server_id: int | None = None

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "position": self.position,
            "serverId": self.server_id,
        }


@dataclass
class Message:
    room: int
    author: str
    text: str
    color: str
    timestamp: int
    id: int | None = None
    display_name: str | None = None
    role: str | None = None
    file_url: str | None = None
    file_type: str | None = None
    mentions: list[str] = field(default_factory=list)
    edited: bool = False
    edited_at: int | None = None

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "room": self.room,
            "author": self.author,
            "displayName": self.display_name or self.author,
            "role": self.role,
            "text": self.text,
            "color": self.color,
            "timestamp": self.timestamp,
            "fileUrl": self.file_url,
            "fileType": self.file_type,
            "mentions": list(self.mentions),
            "edited": self.edited,
            "editedAt": self.edited_at,
        }


@dataclass(frozen=True)
class EditRecord:
    message_id: int
    original: str
    edited: str
    edited_by: str
    edited_at: int

    def to_wire(self) -> dict[str, Any]:
        return {
            "messageId": self.message_id,
            "original": self.original,
            "edited": self.edited,
            "editedBy": self.edited_by,
            "editedAt": self.edited_at,
        }


@dataclass
class PrivateMessage:
    sender: str
    recipient: str
    text: str
    color: str
    timestamp: int
    id: int | None = None

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "from": self.sender,
            "to": self.recipient,
            "text": self.text,
            "color": self.color,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class Reaction:
    message_id: int
    username: str
    emoji: str

    def to_wire(self) -> dict[str, Any]:
        return {"username": self.username, "emoji": self.emoji}


@dataclass(frozen=True)
class Mute:
    username: str
    issued_by: str
    reason: str
    expires_at: int  # ms
    id: int | None = None
    active: bool = True
    created_at: int | None = None

    def in_effect(self, now: int) -> bool:
        return self.active and self.expires_at > now

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "issuedBy": self.issued_by,
            "reason": self.reason,
            "expiresAt": self.expires_at,
        }


@dataclass(frozen=True)
class Ban:
    username: str
    issued_by: str
    reason: str
    expires_at: int | None = None  # ms; None with permanent=True
    permanent: bool = False
    id: int | None = None
    active: bool = True
    created_at: int | None = None

    def in_effect(self, now: int) -> bool:
        if not self.active:
            return False
        if self.permanent:
            return True
        return self.expires_at is not None and self.expires_at > now

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "issuedBy": self.issued_by,
            "reason": self.reason,
            "expiresAt": self.expires_at,
            "permanent": self.permanent,
        }


@dataclass(frozen=True)
class ReadPosition:
    username: str
    room: int
    last_read_message_id: int


@dataclass(frozen=True)
class Notification:
    username: str
    type: str
    text: str
    created_at: int
    id: int | None = None
