"""Directory Store interface and the in-memory backend.

The hub core only ever talks to a :class:`DirectoryStore`. Every method is a
coroutine and backend failures surface as :class:`~chathub.errors.StoreError`.
Legacy room names are translated to room ids here (``resolve_room``), never
inside the core.
"""

from __future__ import annotations

import abc
import itertools
from dataclasses import replace

from .constants import ROOM_TEXT
from .envelope import now_ms
from .errors import NotFound, ValidationError
from .models import (
    Ban,
    EditRecord,
    Message,
    Mute,
    Notification,
    PrivateMessage,
    Reaction,
    ReadPosition,
    Room,
    SessionRecord,
    User,
)


def _room_sort_key(room: Room) -> tuple:
    return (room.server_id or 0, room.position, room.id)


def _latest_in_effect(rows, now: int):
    for row in sorted(rows, key=lambda r: (r.created_at or 0, r.id or 0), reverse=True):
        if row.in_effect(now):
            return row
    return None


class DirectoryStore(abc.ABC):
    """Async data-access interface consumed by the hub core."""

    async def open(self) -> None:
        """Acquire backend resources. No-op by default."""

    async def close(self) -> None:
        """Release backend resources. No-op by default."""

    # Users and sessions

    @abc.abstractmethod
    async def find_user_by_name(self, username: str) -> User | None: ...

    @abc.abstractmethod
    async def add_user(self, user: User) -> User: ...

    @abc.abstractmethod
    async def get_session(self, sid: str) -> SessionRecord | None: ...

    @abc.abstractmethod
    async def add_session(self, record: SessionRecord) -> None: ...

    # Rooms

    @abc.abstractmethod
    async def list_rooms(self) -> list[Room]: ...

    @abc.abstractmethod
    async def get_room(self, room_id: int) -> Room | None: ...

    @abc.abstractmethod
    async def create_room(
        self,
        name: str,
        *,
        type: str = ROOM_TEXT,
        position: int = 0,
        server_id: int | None = None,
    ) -> Room: ...

    async def resolve_room(self, ref: int | str) -> Room | None:
        """Resolve a room id, a numeric string, or a legacy room name."""
        if isinstance(ref, int) and not isinstance(ref, bool):
            return await self.get_room(ref)
        if not isinstance(ref, str) or not ref.strip():
            return None
        text = ref.strip()
        if text.isdigit():
            return await self.get_room(int(text))
        wanted = text.lstrip("#").lower()
        for room in await self.list_rooms():
            if room.name.lstrip("#").lower() == wanted:
                return room
        return None

    # Moderation

    @abc.abstractmethod
    async def get_active_ban(self, username: str) -> Ban | None: ...

    @abc.abstractmethod
    async def get_active_mute(self, username: str) -> Mute | None: ...

    @abc.abstractmethod
    async def add_ban(self, ban: Ban) -> Ban: ...

    @abc.abstractmethod
    async def add_mute(self, mute: Mute) -> Mute: ...

    @abc.abstractmethod
    async def lift_bans(self, username: str) -> int: ...

    @abc.abstractmethod
    async def lift_mutes(self, username: str) -> int: ...

    @abc.abstractmethod
    async def is_blocked(self, blocker: str, blocked: str) -> bool: ...

    @abc.abstractmethod
    async def block_user(self, blocker: str, blocked: str) -> None: ...

    @abc.abstractmethod
    async def unblock_user(self, blocker: str, blocked: str) -> None: ...

    # Messages

    @abc.abstractmethod
    async def append_message(self, message: Message) -> Message: ...

    @abc.abstractmethod
    async def get_message(self, message_id: int) -> Message | None: ...

    @abc.abstractmethod
    async def get_recent_messages(self, room_id: int, limit: int) -> list[Message]:
        """Most recent ``limit`` messages of a room, oldest first."""

    @abc.abstractmethod
    async def append_private_message(self, pm: PrivateMessage) -> PrivateMessage: ...

    @abc.abstractmethod
    async def append_edit_history(self, edit: EditRecord) -> Message:
        """Record ``edit`` and apply it to the live message as one atomic unit."""

    @abc.abstractmethod
    async def edit_history(self, message_id: int) -> list[EditRecord]: ...

    @abc.abstractmethod
    async def delete_message(self, message_id: int) -> None:
        """Delete reactions, edit history, then the message row, atomically."""

    # Reactions

    @abc.abstractmethod
    async def add_reaction(self, reaction: Reaction) -> None: ...

    @abc.abstractmethod
    async def remove_reaction(self, reaction: Reaction) -> None: ...

    @abc.abstractmethod
    async def reactions_for(self, message_id: int) -> list[Reaction]: ...

    # Read state and notifications

    @abc.abstractmethod
    async def upsert_read_position(
        self, username: str, room_id: int, message_id: int
    ) -> ReadPosition:
        """Store the read position; a lower id never replaces a higher one."""

    @abc.abstractmethod
    async def readers_of(self, room_id: int, message_id: int) -> list[str]: ...

    @abc.abstractmethod
    async def create_notification(self, notification: Notification) -> Notification: ...


class MemoryStore(DirectoryStore):
    """Process-local store. Used by the test suite and for ephemeral hubs."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.users: dict[str, User] = {}
        self.sessions: dict[str, SessionRecord] = {}
        self.rooms: dict[int, Room] = {}
        self.messages: dict[int, Message] = {}
        self.private_messages: list[PrivateMessage] = []
        self.reactions: dict[int, list[Reaction]] = {}
        self.edits: dict[int, list[EditRecord]] = {}
        self.mutes: list[Mute] = []
        self.bans: list[Ban] = []
        self.blocks: set[tuple[str, str]] = set()
        self.read_positions: dict[tuple[str, int], ReadPosition] = {}
        self.notifications: list[Notification] = []

    def _next_id(self) -> int:
        return next(self._ids)

    async def find_user_by_name(self, username: str) -> User | None:
        return self.users.get(username)

    async def add_user(self, user: User) -> User:
        if user.username in self.users:
            raise ValidationError(f"user {user.username!r} already exists")
        self.users[user.username] = user
        return user

    async def get_session(self, sid: str) -> SessionRecord | None:
        rec = self.sessions.get(sid)
        if rec is None:
            return None
        if rec.expires_at is not None and rec.expires_at <= now_ms():
            self.sessions.pop(sid, None)
            return None
        return rec

    async def add_session(self, record: SessionRecord) -> None:
        self.sessions[record.sid] = record

    async def list_rooms(self) -> list[Room]:
        return sorted(self.rooms.values(), key=_room_sort_key)

    async def get_room(self, room_id: int) -> Room | None:
        return self.rooms.get(room_id)

    async def create_room(
        self,
        name: str,
        *,
        type: str = ROOM_TEXT,
        position: int = 0,
        server_id: int | None = None,
    ) -> Room:
        if any(r.name == name and r.server_id == server_id for r in self.rooms.values()):
            raise ValidationError("Room already exists")
        room = Room(
            id=self._next_id(),
            name=name,
            type=type,
            position=position,
            server_id=server_id,
        )
        self.rooms[room.id] = room
        return room

    async def get_active_ban(self, username: str) -> Ban | None:
        return _latest_in_effect((b for b in self.bans if b.username == username), now_ms())

    async def get_active_mute(self, username: str) -> Mute | None:
        return _latest_in_effect((m for m in self.mutes if m.username == username), now_ms())

    async def add_ban(self, ban: Ban) -> Ban:
        stored = replace(ban, id=self._next_id(), created_at=ban.created_at or now_ms())
        self.bans.append(stored)
        return stored

    async def add_mute(self, mute: Mute) -> Mute:
        stored = replace(mute, id=self._next_id(), created_at=mute.created_at or now_ms())
        self.mutes.append(stored)
        return stored

    async def lift_bans(self, username: str) -> int:
        count = 0
        for i, b in enumerate(self.bans):
            if b.username == username and b.active:
                self.bans[i] = replace(b, active=False)
                count += 1
        return count

    async def lift_mutes(self, username: str) -> int:
        count = 0
        for i, m in enumerate(self.mutes):
            if m.username == username and m.active:
                self.mutes[i] = replace(m, active=False)
                count += 1
        return count

    async def is_blocked(self, blocker: str, blocked: str) -> bool:
        return (blocker, blocked) in self.blocks

    async def block_user(self, blocker: str, blocked: str) -> None:
        if blocker == blocked:
            raise ValidationError("Cannot block yourself")
        self.blocks.add((blocker, blocked))

    async def unblock_user(self, blocker: str, blocked: str) -> None:
        self.blocks.discard((blocker, blocked))

    async def append_message(self, message: Message) -> Message:
        stored = replace(message, id=self._next_id(), mentions=list(message.mentions))
        self.messages[stored.id] = stored
        return replace(stored)

    async def get_message(self, message_id: int) -> Message | None:
        m = self.messages.get(message_id)
        return replace(m) if m is not None else None

    async def get_recent_messages(self, room_id: int, limit: int) -> list[Message]:
        rows = [m for m in self.messages.values() if m.room == room_id]
        rows.sort(key=lambda m: (m.timestamp, m.id))
        if limit > 0:
            rows = rows[-limit:]
        return [replace(m) for m in rows]

    async def append_private_message(self, pm: PrivateMessage) -> PrivateMessage:
        stored = replace(pm, id=self._next_id())
        self.private_messages.append(stored)
        return replace(stored)

    async def append_edit_history(self, edit: EditRecord) -> Message:
        live = self.messages.get(edit.message_id)
        if live is None:
            raise NotFound("Message not found")
        self.edits.setdefault(edit.message_id, []).append(edit)
        live.text = edit.edited
        live.edited = True
        live.edited_at = edit.edited_at
        return replace(live)

    async def edit_history(self, message_id: int) -> list[EditRecord]:
        return list(self.edits.get(message_id, ()))

    async def delete_message(self, message_id: int) -> None:
        if message_id not in self.messages:
            raise NotFound("Message not found")
        self.reactions.pop(message_id, None)
        self.edits.pop(message_id, None)
        self.messages.pop(message_id, None)

    async def add_reaction(self, reaction: Reaction) -> None:
        rows = self.reactions.setdefault(reaction.message_id, [])
        if reaction not in rows:
            rows.append(reaction)

    async def remove_reaction(self, reaction: Reaction) -> None:
        rows = self.reactions.get(reaction.message_id)
        if rows and reaction in rows:
            rows.remove(reaction)

    async def reactions_for(self, message_id: int) -> list[Reaction]:
        return list(self.reactions.get(message_id, ()))

    async def upsert_read_position(
        self, username: str, room_id: int, message_id: int
    ) -> ReadPosition:
        key = (username, room_id)
        current = self.read_positions.get(key)
        if current is not None and current.last_read_message_id >= message_id:
            return current
        pos = ReadPosition(username=username, room=room_id, last_read_message_id=message_id)
        self.read_positions[key] = pos
        return pos

    async def readers_of(self, room_id: int, message_id: int) -> list[str]:
        return sorted(
            pos.username
            for (_, room), pos in self.read_positions.items()
            if room == room_id and pos.last_read_message_id >= message_id
        )

    async def create_notification(self, notification: Notification) -> Notification:
        stored = replace(notification, id=self._next_id())
        self.notifications.append(stored)
        return stored
