"""Relational Directory Store backed by SQLite through aiosqlite."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sqlite3

import aiosqlite

from .constants import ROOM_TEXT
from .envelope import now_ms
from .errors import NotFound, StoreError, ValidationError
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
from .store import DirectoryStore
from .util import expand_path

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    username TEXT PRIMARY KEY,
    display_name TEXT,
    chat_color TEXT NOT NULL DEFAULT '#000000',
    role TEXT NOT NULL DEFAULT 'user'
);
CREATE TABLE IF NOT EXISTS sessions (
    sid TEXT PRIMARY KEY,
    username TEXT NOT NULL REFERENCES users(username),
    expires_at INTEGER
);
CREATE TABLE IF NOT EXISTS rooms (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'text',
    position INTEGER NOT NULL DEFAULT 0,
    server_id INTEGER,
    UNIQUE (server_id, name)
);
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    room INTEGER NOT NULL REFERENCES rooms(id),
    username TEXT NOT NULL,
    message_text TEXT NOT NULL,
    chat_color TEXT,
    timestamp INTEGER NOT NULL,
    display_name TEXT,
    role TEXT,
    file_url TEXT,
    file_type TEXT,
    mentions TEXT NOT NULL DEFAULT '[]',
    edited INTEGER NOT NULL DEFAULT 0,
    edited_at INTEGER
);
CREATE INDEX IF NOT EXISTS messages_room_ts ON messages (room, timestamp);
CREATE TABLE IF NOT EXISTS message_edits (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id INTEGER NOT NULL REFERENCES messages(id),
    original_content TEXT NOT NULL,
    edited_content TEXT NOT NULL,
    edited_by TEXT NOT NULL,
    edited_at INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS reactions (
    message_id INTEGER NOT NULL REFERENCES messages(id),
    username TEXT NOT NULL,
    emoji TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    UNIQUE (message_id, username, emoji)
);
CREATE TABLE IF NOT EXISTS private_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sender TEXT NOT NULL,
    recipient TEXT NOT NULL,
    message_text TEXT NOT NULL,
    chat_color TEXT,
    timestamp INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS mutes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL,
    muted_by TEXT NOT NULL,
    reason TEXT NOT NULL,
    expires_at INTEGER NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS bans (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL,
    banned_by TEXT NOT NULL,
    reason TEXT NOT NULL,
    expires_at INTEGER,
    is_permanent INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS blocked_users (
    blocker TEXT NOT NULL,
    blocked TEXT NOT NULL,
    PRIMARY KEY (blocker, blocked)
);
CREATE TABLE IF NOT EXISTS read_positions (
    username TEXT NOT NULL,
    room INTEGER NOT NULL,
    last_read_message_id INTEGER NOT NULL,
    PRIMARY KEY (username, room)
);
CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL,
    type TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    is_read INTEGER NOT NULL DEFAULT 0
);
"""


def _user(row) -> User:
    return User(
        username=row["username"],
        display_name=row["display_name"],
        color=row["chat_color"],
        role=row["role"],
    )


def _room(row) -> Room:
    return Room(
        id=row["id"],
        name=row["name"],
        type=row["type"],
        position=row["position"],
        server_id=row["server_id"],
    )


def _message(row) -> Message:
    try:
        mentions = json.loads(row["mentions"] or "[]")
    except ValueError:
        mentions = []
    return Message(
        id=row["id"],
        room=row["room"],
        author=row["username"],
        text=row["message_text"],
        color=row["chat_color"],
        timestamp=row["timestamp"],
        display_name=row["display_name"],
        role=row["role"],
        file_url=row["file_url"],
        file_type=row["file_type"],
        mentions=list(mentions),
        edited=bool(row["edited"]),
        edited_at=row["edited_at"],
    )


def _mute(row) -> Mute:
    return Mute(
        id=row["id"],
        username=row["username"],
        issued_by=row["muted_by"],
        reason=row["reason"],
        expires_at=row["expires_at"],
        active=bool(row["is_active"]),
        created_at=row["created_at"],
    )


def _ban(row) -> Ban:
    return Ban(
        id=row["id"],
        username=row["username"],
        issued_by=row["banned_by"],
        reason=row["reason"],
        expires_at=row["expires_at"],
        permanent=bool(row["is_permanent"]),
        active=bool(row["is_active"]),
        created_at=row["created_at"],
    )


class SqliteStore(DirectoryStore):
    """Directory Store on a single aiosqlite connection.

    Multi-statement writes run under ``_write_lock`` inside one transaction so
    that concurrent tasks on the shared connection cannot interleave.
    """

    def __init__(self, path: str) -> None:
        self.path = path if path == ":memory:" else expand_path(path)
        self.log = logging.getLogger("chathub.store")
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def open(self) -> None:
        if self._db is not None:
            return
        try:
            self._db = await aiosqlite.connect(self.path)
            self._db.row_factory = aiosqlite.Row
            await self._db.execute("PRAGMA foreign_keys = ON")
            await self._db.executescript(SCHEMA)
            await self._db.commit()
        except (aiosqlite.Error, sqlite3.Error, OSError) as e:
            raise StoreError(f"cannot open store at {self.path}: {e}") from e
        self.log.info("Store opened path=%s", self.path)

    async def close(self) -> None:
        if self._db is None:
            return
        await self._db.close()
        self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StoreError("store is not open")
        return self._db

    async def _fetchone(self, sql: str, params: tuple = ()):
        try:
            async with self.db.execute(sql, params) as cur:
                return await cur.fetchone()
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    async def _fetchall(self, sql: str, params: tuple = ()):
        try:
            async with self.db.execute(sql, params) as cur:
                return await cur.fetchall()
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    @contextlib.asynccontextmanager
    async def _transaction(self):
        async with self._write_lock:
            try:
                yield self.db
                await self.db.commit()
            except sqlite3.IntegrityError as e:
                await self.db.rollback()
                self.log.debug("Constraint failed: %s", e)
                if "FOREIGN KEY" in str(e):
                    raise NotFound("referenced record no longer exists") from e
                raise ValidationError("request conflicts with existing data") from e
            except sqlite3.Error as e:
                await self.db.rollback()
                raise StoreError(str(e)) from e
            except BaseException:
                await self.db.rollback()
                raise

    # Users and sessions

    async def find_user_by_name(self, username: str) -> User | None:
        row = await self._fetchone("SELECT * FROM users WHERE username = ?", (username,))
        return _user(row) if row else None

    async def add_user(self, user: User) -> User:
        async with self._transaction() as db:
            await db.execute(
                "INSERT INTO users (username, display_name, chat_color, role) VALUES (?, ?, ?, ?)",
                (user.username, user.display_name, user.color, user.role),
            )
        return user

    async def get_session(self, sid: str) -> SessionRecord | None:
        row = await self._fetchone(
            "SELECT s.sid, s.expires_at, u.* FROM sessions s "
            "JOIN users u ON u.username = s.username WHERE s.sid = ?",
            (sid,),
        )
        if row is None:
            return None
        expires_at = row["expires_at"]
        if expires_at is not None and expires_at <= now_ms():
            async with self._transaction() as db:
                await db.execute("DELETE FROM sessions WHERE sid = ?", (sid,))
            return None
        return SessionRecord(sid=row["sid"], user=_user(row), expires_at=expires_at)

    async def add_session(self, record: SessionRecord) -> None:
        async with self._transaction() as db:
            await db.execute(
                "INSERT OR REPLACE INTO sessions (sid, username, expires_at) VALUES (?, ?, ?)",
                (record.sid, record.user.username, record.expires_at),
            )

    # Rooms

    async def list_rooms(self) -> list[Room]:
        rows = await self._fetchall(
            "SELECT * FROM rooms ORDER BY COALESCE(server_id, 0), position, id"
        )
        return [_room(r) for r in rows]

    async def get_room(self, room_id: int) -> Room | None:
        row = await self._fetchone("SELECT * FROM rooms WHERE id = ?", (room_id,))
        return _room(row) if row else None

    async def create_room(
        self,
        name: str,
        *,
        type: str = ROOM_TEXT,
        position: int = 0,
        server_id: int | None = None,
    ) -> Room:
        async with self._transaction() as db:
            # UNIQUE treats NULL server ids as distinct, so check explicitly.
            async with db.execute(
                "SELECT 1 FROM rooms WHERE name = ? AND server_id IS ?", (name, server_id)
            ) as cur:
                if await cur.fetchone() is not None:
                    raise ValidationError("Room already exists")
            cur = await db.execute(
                "INSERT INTO rooms (name, type, position, server_id) VALUES (?, ?, ?, ?)",
                (name, type, position, server_id),
            )
            room_id = cur.lastrowid
        return Room(id=room_id, name=name, type=type, position=position, server_id=server_id)

    # Moderation

    async def get_active_ban(self, username: str) -> Ban | None:
        row = await self._fetchone(
            "SELECT * FROM bans WHERE username = ? AND is_active = 1 "
            "AND (is_permanent = 1 OR expires_at > ?) "
            "ORDER BY created_at DESC, id DESC LIMIT 1",
            (username, now_ms()),
        )
        return _ban(row) if row else None

    async def get_active_mute(self, username: str) -> Mute | None:
        row = await self._fetchone(
            "SELECT * FROM mutes WHERE username = ? AND is_active = 1 AND expires_at > ? "
            "ORDER BY created_at DESC, id DESC LIMIT 1",
            (username, now_ms()),
        )
        return _mute(row) if row else None

    async def add_ban(self, ban: Ban) -> Ban:
        created_at = ban.created_at or now_ms()
        async with self._transaction() as db:
            cur = await db.execute(
                "INSERT INTO bans (username, banned_by, reason, expires_at, is_permanent, "
                "is_active, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    ban.username,
                    ban.issued_by,
                    ban.reason,
                    ban.expires_at,
                    int(ban.permanent),
                    int(ban.active),
                    created_at,
                ),
            )
            ban_id = cur.lastrowid
        return Ban(
            id=ban_id,
            username=ban.username,
            issued_by=ban.issued_by,
            reason=ban.reason,
            expires_at=ban.expires_at,
            permanent=ban.permanent,
            active=ban.active,
            created_at=created_at,
        )

    async def add_mute(self, mute: Mute) -> Mute:
        created_at = mute.created_at or now_ms()
        async with self._transaction() as db:
            cur = await db.execute(
                "INSERT INTO mutes (username, muted_by, reason, expires_at, is_active, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    mute.username,
                    mute.issued_by,
                    mute.reason,
                    mute.expires_at,
                    int(mute.active),
                    created_at,
                ),
            )
            mute_id = cur.lastrowid
        return Mute(
            id=mute_id,
            username=mute.username,
            issued_by=mute.issued_by,
            reason=mute.reason,
            expires_at=mute.expires_at,
            active=mute.active,
            created_at=created_at,
        )

    async def lift_bans(self, username: str) -> int:
        async with self._transaction() as db:
            cur = await db.execute(
                "UPDATE bans SET is_active = 0 WHERE username = ? AND is_active = 1", (username,)
            )
            return cur.rowcount

    async def lift_mutes(self, username: str) -> int:
        async with self._transaction() as db:
            cur = await db.execute(
                "UPDATE mutes SET is_active = 0 WHERE username = ? AND is_active = 1", (username,)
            )
            return cur.rowcount

    async def is_blocked(self, blocker: str, blocked: str) -> bool:
        row = await self._fetchone(
            "SELECT 1 FROM blocked_users WHERE blocker = ? AND blocked = ?", (blocker, blocked)
        )
        return row is not None

    async def block_user(self, blocker: str, blocked: str) -> None:
        if blocker == blocked:
            raise ValidationError("Cannot block yourself")
        async with self._transaction() as db:
            await db.execute(
                "INSERT OR IGNORE INTO blocked_users (blocker, blocked) VALUES (?, ?)",
                (blocker, blocked),
            )

    async def unblock_user(self, blocker: str, blocked: str) -> None:
        async with self._transaction() as db:
            await db.execute(
                "DELETE FROM blocked_users WHERE blocker = ? AND blocked = ?", (blocker, blocked)
            )

    # Messages

    async def append_message(self, message: Message) -> Message:
        async with self._transaction() as db:
            cur = await db.execute(
                "INSERT INTO messages (room, username, message_text, chat_color, timestamp, "
                "display_name, role, file_url, file_type, mentions) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    message.room,
                    message.author,
                    message.text,
                    message.color,
                    message.timestamp,
                    message.display_name,
                    message.role,
                    message.file_url,
                    message.file_type,
                    json.dumps(list(message.mentions)),
                ),
            )
            message_id = cur.lastrowid
        stored = await self.get_message(message_id)
        if stored is None:
            raise StoreError("message vanished after insert")
        return stored

    async def get_message(self, message_id: int) -> Message | None:
        row = await self._fetchone("SELECT * FROM messages WHERE id = ?", (message_id,))
        return _message(row) if row else None

    async def get_recent_messages(self, room_id: int, limit: int) -> list[Message]:
        rows = await self._fetchall(
            "SELECT * FROM (SELECT * FROM messages WHERE room = ? "
            "ORDER BY timestamp DESC, id DESC LIMIT ?) ORDER BY timestamp ASC, id ASC",
            (room_id, limit if limit > 0 else -1),
        )
        return [_message(r) for r in rows]

    async def append_private_message(self, pm: PrivateMessage) -> PrivateMessage:
        async with self._transaction() as db:
            cur = await db.execute(
                "INSERT INTO private_messages (sender, recipient, message_text, chat_color, timestamp) "
                "VALUES (?, ?, ?, ?, ?)",
                (pm.sender, pm.recipient, pm.text, pm.color, pm.timestamp),
            )
            pm_id = cur.lastrowid
        return PrivateMessage(
            id=pm_id,
            sender=pm.sender,
            recipient=pm.recipient,
            text=pm.text,
            color=pm.color,
            timestamp=pm.timestamp,
        )

    async def append_edit_history(self, edit: EditRecord) -> Message:
        async with self._transaction() as db:
            async with db.execute(
                "SELECT 1 FROM messages WHERE id = ?", (edit.message_id,)
            ) as cur:
                if await cur.fetchone() is None:
                    raise NotFound("Message not found")
            await db.execute(
                "UPDATE messages SET message_text = ?, edited = 1, edited_at = ? WHERE id = ?",
                (edit.edited, edit.edited_at, edit.message_id),
            )
            # Same transaction: a failed history insert rolls the update back.
            await db.execute(
                "INSERT INTO message_edits (message_id, original_content, edited_content, "
                "edited_by, edited_at) VALUES (?, ?, ?, ?, ?)",
                (edit.message_id, edit.original, edit.edited, edit.edited_by, edit.edited_at),
            )
        updated = await self.get_message(edit.message_id)
        if updated is None:
            raise NotFound("Message not found")
        return updated

    async def edit_history(self, message_id: int) -> list[EditRecord]:
        rows = await self._fetchall(
            "SELECT * FROM message_edits WHERE message_id = ? ORDER BY edited_at ASC, id ASC",
            (message_id,),
        )
        return [
            EditRecord(
                message_id=r["message_id"],
                original=r["original_content"],
                edited=r["edited_content"],
                edited_by=r["edited_by"],
                edited_at=r["edited_at"],
            )
            for r in rows
        ]

    async def delete_message(self, message_id: int) -> None:
        async with self._transaction() as db:
            async with db.execute("SELECT 1 FROM messages WHERE id = ?", (message_id,)) as cur:
                if await cur.fetchone() is None:
                    raise NotFound("Message not found")
            await db.execute("DELETE FROM reactions WHERE message_id = ?", (message_id,))
            await db.execute("DELETE FROM message_edits WHERE message_id = ?", (message_id,))
            await db.execute("DELETE FROM messages WHERE id = ?", (message_id,))

    # Reactions

    async def add_reaction(self, reaction: Reaction) -> None:
        async with self._transaction() as db:
            await db.execute(
                "INSERT OR IGNORE INTO reactions (message_id, username, emoji, created_at) "
                "VALUES (?, ?, ?, ?)",
                (reaction.message_id, reaction.username, reaction.emoji, now_ms()),
            )

    async def remove_reaction(self, reaction: Reaction) -> None:
        async with self._transaction() as db:
            await db.execute(
                "DELETE FROM reactions WHERE message_id = ? AND username = ? AND emoji = ?",
                (reaction.message_id, reaction.username, reaction.emoji),
            )

    async def reactions_for(self, message_id: int) -> list[Reaction]:
        rows = await self._fetchall(
            "SELECT message_id, username, emoji FROM reactions WHERE message_id = ? "
            "ORDER BY created_at, rowid",
            (message_id,),
        )
        return [Reaction(r["message_id"], r["username"], r["emoji"]) for r in rows]

    # Read state and notifications

    async def upsert_read_position(
        self, username: str, room_id: int, message_id: int
    ) -> ReadPosition:
        async with self._transaction() as db:
            await db.execute(
                "INSERT INTO read_positions (username, room, last_read_message_id) VALUES (?, ?, ?) "
                "ON CONFLICT (username, room) DO UPDATE SET "
                "last_read_message_id = MAX(last_read_message_id, excluded.last_read_message_id)",
                (username, room_id, message_id),
            )
        row = await self._fetchone(
            "SELECT * FROM read_positions WHERE username = ? AND room = ?", (username, room_id)
        )
        return ReadPosition(
            username=row["username"],
            room=row["room"],
            last_read_message_id=row["last_read_message_id"],
        )

    async def readers_of(self, room_id: int, message_id: int) -> list[str]:
        rows = await self._fetchall(
            "SELECT username FROM read_positions WHERE room = ? AND last_read_message_id >= ? "
            "ORDER BY username",
            (room_id, message_id),
        )
        return [r["username"] for r in rows]

    async def create_notification(self, notification: Notification) -> Notification:
        async with self._transaction() as db:
            cur = await db.execute(
                "INSERT INTO notifications (username, type, content, created_at) VALUES (?, ?, ?, ?)",
                (notification.username, notification.type, notification.text, notification.created_at),
            )
            notification_id = cur.lastrowid
        return Notification(
            id=notification_id,
            username=notification.username,
            type=notification.type,
            text=notification.text,
            created_at=notification.created_at,
        )
