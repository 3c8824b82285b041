"""Message Pipeline: validate, persist and fan out user actions."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Hashable
from typing import Any, Protocol

from .config import HubRuntimeConfig
from .constants import (
    ROOM_ANNOUNCEMENTS,
    T_CHAT_MESSAGE,
    T_MESSAGE_DELETED,
    T_MESSAGE_EDITED,
    T_NOTIFICATION,
    T_PRIVATE_MESSAGE,
    T_PRIVATE_MESSAGE_SENT,
    T_REACTION_UPDATE,
    T_READ_RECEIPT_UPDATE,
)
from .envelope import now_ms
from .errors import NotFound, PermissionDenied, Unauthenticated, ValidationError
from .models import (
    EditRecord,
    Message,
    Notification,
    Principal,
    PrivateMessage,
    Reaction,
    ReadPosition,
)
from .moderation import ModerationGate
from .rooms import RoomRouter
from .session import SessionManager
from .stats import StatsManager
from .store import DirectoryStore
from .util import escape_html, extract_mentions, normalize_username

ConnId = Hashable

MAX_EMOJI_CHARS = 32


class Emitter(Protocol):
    def to_conn(self, conn_id: ConnId, msg_type: int, body: Any, room: int | None = None) -> None: ...

    def to_room(self, room_id: int, msg_type: int, body: Any) -> None: ...

    def to_user(self, username: str, msg_type: int, body: Any) -> None: ...


def _message_id(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError("messageId must be a positive integer")
    return value


class MessagePipeline:
    """
    Runs every message-shaped action a connection can take.

    Broadcast order within a room follows persistence order: the room's
    fan-out lock is held across the store write and the broadcast. Edits,
    reactions and read marks re-read their message under that lock, so they
    never act on a stale or deleted row. Mention notifications run afterwards
    as background tasks and never fail the post.
    """

    def __init__(
        self,
        *,
        store: DirectoryStore,
        gate: ModerationGate,
        rooms: RoomRouter,
        sessions: SessionManager,
        emitter: Emitter,
        config: HubRuntimeConfig | None = None,
        stats: StatsManager | None = None,
    ) -> None:
        self.store = store
        self.gate = gate
        self.rooms = rooms
        self.sessions = sessions
        self.emitter = emitter
        self.config = config or HubRuntimeConfig()
        self.stats = stats
        self.log = logging.getLogger("chathub.pipeline")
        self._tasks: set[asyncio.Task] = set()

    def _inc(self, key: str, delta: int = 1) -> None:
        if self.stats is not None:
            self.stats.inc(key, delta)

    def _principal(self, conn_id: ConnId) -> Principal:
        conn = self.sessions.get(conn_id)
        if conn is None or conn.principal is None:
            raise Unauthenticated()
        return conn.principal

    def _check_length(self, text: str) -> None:
        limit = int(self.config.max_message_chars)
        if len(text) > limit:
            raise ValidationError(f"Message too long (max {limit} characters)")

    async def _require_message(self, message_id: Any) -> Message:
        msg = await self.store.get_message(_message_id(message_id))
        if msg is None:
            raise NotFound("Message not found")
        return msg

    def _require_owner(self, principal: Principal, msg: Message, action: str) -> None:
        if msg.author != principal.username and not principal.is_admin:
            raise PermissionDenied(f"You can only {action} your own messages")

    # Room messages

    async def post_message(
        self,
        conn_id: ConnId,
        text: Any,
        file_url: Any = None,
        file_type: Any = None,
    ) -> Message:
        principal = self._principal(conn_id)
        room_id = self.rooms.current_room(conn_id)
        if room_id is None:
            raise ValidationError("Join a room first")

        await self.gate.ensure_can_send(principal.username)

        text = text if isinstance(text, str) else ""
        file_url = file_url if isinstance(file_url, str) and file_url else None
        file_type = file_type if isinstance(file_type, str) and file_type else None
        if not text.strip() and file_url is None:
            raise ValidationError("Message cannot be empty")
        self._check_length(text)

        room = await self.store.get_room(room_id)
        if room is None:
            raise NotFound("Room not found")
        if room.type == ROOM_ANNOUNCEMENTS and not principal.is_admin:
            raise PermissionDenied("Only admins can post announcements")

        draft = Message(
            room=room_id,
            author=principal.username,
            text=escape_html(text),
            color=principal.color,
            timestamp=now_ms(),
            display_name=principal.display_name,
            role=principal.role,
            file_url=file_url,
            file_type=file_type,
            mentions=extract_mentions(text),
        )

        async with self.rooms.room_lock(room_id):
            stored = await self.store.append_message(draft)
            self.emitter.to_room(room_id, T_CHAT_MESSAGE, stored.to_wire())
        self._inc("messages")

        if stored.mentions:
            self._spawn(self._deliver_mentions(stored, principal))
        return stored

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def flush(self) -> None:
        """Wait for outstanding mention deliveries."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _deliver_mentions(self, msg: Message, author: Principal) -> None:
        for username in msg.mentions:
            if username == author.username:
                continue
            try:
                if await self.store.find_user_by_name(username) is None:
                    continue
                notification = await self.store.create_notification(
                    Notification(
                        username=username,
                        type="mention",
                        text=f"{author.display_name} mentioned you",
                        created_at=now_ms(),
                    )
                )
                self.emitter.to_user(
                    username,
                    T_NOTIFICATION,
                    {
                        "id": notification.id,
                        "type": "mention",
                        "from": author.username,
                        "room": msg.room,
                        "message": msg.to_wire(),
                    },
                )
                self._inc("mentions")
            except Exception:
                self.log.exception(
                    "Mention delivery failed user=%s message_id=%s", username, msg.id
                )

    # Private messages

    async def post_private_message(
        self, conn_id: ConnId, to: Any, text: Any
    ) -> PrivateMessage:
        principal = self._principal(conn_id)
        await self.gate.ensure_can_send(principal.username)

        recipient = normalize_username(to, max_chars=self.config.username_max_chars)
        if recipient is None:
            raise ValidationError("Recipient required")
        if recipient == principal.username:
            raise ValidationError("Cannot message yourself")
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Message cannot be empty")
        self._check_length(text)

        if await self.store.find_user_by_name(recipient) is None:
            raise NotFound("User not found")
        await self.gate.ensure_can_private_message(principal.username, recipient)

        pm = await self.store.append_private_message(
            PrivateMessage(
                sender=principal.username,
                recipient=recipient,
                text=escape_html(text),
                color=principal.color,
                timestamp=now_ms(),
            )
        )
        body = pm.to_wire()
        self.emitter.to_user(recipient, T_PRIVATE_MESSAGE, body)
        self.emitter.to_conn(conn_id, T_PRIVATE_MESSAGE_SENT, body)
        self._inc("private_messages")
        return pm

    # Edits and deletes

    async def edit_message(self, conn_id: ConnId, message_id: Any, new_text: Any) -> Message:
        principal = self._principal(conn_id)
        text = new_text.strip() if isinstance(new_text, str) else ""
        if not text:
            raise ValidationError("Message cannot be empty")
        self._check_length(text)
        escaped = escape_html(text)

        msg = await self._require_message(message_id)
        async with self.rooms.room_lock(msg.room):
            # Re-read under the lock; another edit or a delete may have landed.
            msg = await self._require_message(msg.id)
            self._require_owner(principal, msg, "edit")
            if escaped == msg.text:
                raise ValidationError("No changes made")
            updated = await self.store.append_edit_history(
                EditRecord(
                    message_id=msg.id,
                    original=msg.text,
                    edited=escaped,
                    edited_by=principal.username,
                    edited_at=now_ms(),
                )
            )
            self.emitter.to_room(updated.room, T_MESSAGE_EDITED, updated.to_wire())
        self.log.info("Message edited id=%s by=%s", msg.id, principal.username)
        return updated

    async def edit_history(self, message_id: Any) -> list[EditRecord]:
        msg = await self._require_message(message_id)
        return await self.store.edit_history(msg.id)

    async def delete_message(self, conn_id: ConnId, message_id: Any) -> None:
        principal = self._principal(conn_id)
        msg = await self._require_message(message_id)
        self._require_owner(principal, msg, "delete")

        async with self.rooms.room_lock(msg.room):
            await self.store.delete_message(msg.id)
            self.emitter.to_room(msg.room, T_MESSAGE_DELETED, {"messageId": msg.id})
        self.log.info("Message deleted id=%s by=%s", msg.id, principal.username)

    # Reactions

    def _emoji(self, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError("emoji required")
        emoji = value.strip()
        if len(emoji) > MAX_EMOJI_CHARS:
            raise ValidationError("emoji too long")
        return emoji

    async def _broadcast_reactions(self, msg: Message) -> list[Reaction]:
        reactions = await self.store.reactions_for(msg.id)
        self.emitter.to_room(
            msg.room,
            T_REACTION_UPDATE,
            {"messageId": msg.id, "reactions": [r.to_wire() for r in reactions]},
        )
        return reactions

    async def add_reaction(self, conn_id: ConnId, message_id: Any, emoji: Any) -> list[Reaction]:
        principal = self._principal(conn_id)
        emoji = self._emoji(emoji)
        msg = await self._require_message(message_id)
        async with self.rooms.room_lock(msg.room):
            await self._require_message(msg.id)
            await self.store.add_reaction(Reaction(msg.id, principal.username, emoji))
            return await self._broadcast_reactions(msg)

    async def remove_reaction(
        self, conn_id: ConnId, message_id: Any, emoji: Any
    ) -> list[Reaction]:
        principal = self._principal(conn_id)
        emoji = self._emoji(emoji)
        msg = await self.store.get_message(_message_id(message_id))
        if msg is None:
            return []
        async with self.rooms.room_lock(msg.room):
            if await self.store.get_message(msg.id) is None:
                return []
            await self.store.remove_reaction(Reaction(msg.id, principal.username, emoji))
            return await self._broadcast_reactions(msg)

    # Read state

    async def mark_read(self, conn_id: ConnId, message_id: Any) -> ReadPosition:
        principal = self._principal(conn_id)
        msg = await self._require_message(message_id)
        async with self.rooms.room_lock(msg.room):
            await self._require_message(msg.id)
            pos = await self.store.upsert_read_position(principal.username, msg.room, msg.id)
            readers = await self.store.readers_of(msg.room, msg.id)
            self.emitter.to_room(
                msg.room,
                T_READ_RECEIPT_UPDATE,
                {"messageId": msg.id, "room": msg.room, "receipts": readers},
            )
        return pos
