from __future__ import annotations

import asyncio
import logging
from collections.abc import Hashable
from typing import Any

from .config import HubRuntimeConfig
from .errors import NotFound
from .models import Message, Room
from .presence import PresenceTracker
from .store import DirectoryStore

ConnId = Hashable

DEFAULT_ROOM_NAME = "general"


class RoomRouter:
    """
    Tracks which room each connection is in and scopes broadcast fan-out.

    A connection belongs to exactly one broadcast group at a time. Every room
    has a fan-out lock; the message pipeline holds it across persist and
    broadcast, and a switch holds the target room's lock while it fetches
    history and moves membership. A message posted during a switch therefore
    lands either in the replay or in the live stream, exactly once.
    """

    def __init__(
        self,
        store: DirectoryStore,
        config: HubRuntimeConfig | None = None,
        presence: PresenceTracker | None = None,
    ) -> None:
        self.store = store
        self.config = config or HubRuntimeConfig()
        self.presence = presence
        self.log = logging.getLogger("chathub.rooms")
        self._members: dict[int, set[ConnId]] = {}
        self._current: dict[ConnId, int] = {}
        self._locks: dict[int, asyncio.Lock] = {}

    def room_lock(self, room_id: int) -> asyncio.Lock:
        lock = self._locks.get(room_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[room_id] = lock
        return lock

    async def list_rooms(self) -> list[Room]:
        rooms = await self.store.list_rooms()
        if not rooms:
            room = await self.store.create_room(DEFAULT_ROOM_NAME)
            self.log.info("Created default room id=%s name=%s", room.id, room.name)
            rooms = [room]
        return rooms

    async def default_room(self) -> Room:
        if self.config.default_room:
            room = await self.store.resolve_room(self.config.default_room)
            if room is not None:
                return room
            self.log.warning(
                "Configured default_room %r not found; using first room",
                self.config.default_room,
            )
        rooms = await self.list_rooms()
        return rooms[0]

    async def join_default(self, conn_id: ConnId) -> tuple[int, list[Message]]:
        room = await self.default_room()
        joined, history = await self._move(conn_id, room)
        return joined.id, history

    async def switch_room(
        self, conn_id: ConnId, new_room: int | str
    ) -> tuple[int, list[Message]]:
        """Move ``conn_id`` into ``new_room`` and return its recent history.

        ``new_room`` is a room id; legacy names are resolved by the store.
        """
        room = await self.store.resolve_room(new_room)
        if room is None:
            raise NotFound("Room not found")
        joined, history = await self._move(conn_id, room)
        return joined.id, history

    async def _move(self, conn_id: ConnId, room: Room) -> tuple[Room, list[Message]]:
        async with self.room_lock(room.id):
            history = await self.store.get_recent_messages(
                room.id, int(self.config.history_limit)
            )
            old = self._current.get(conn_id)
            if old is not None and old != room.id:
                self._remove(conn_id, old)
                if self.presence is not None:
                    self.presence.set_typing(old, conn_id, False)
            self._members.setdefault(room.id, set()).add(conn_id)
            self._current[conn_id] = room.id

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "Joined conn=%s room=%s from=%s history=%s",
                conn_id,
                room.id,
                old,
                len(history),
            )
        return room, history

    def _remove(self, conn_id: ConnId, room_id: int) -> None:
        members = self._members.get(room_id)
        if members is None:
            return
        members.discard(conn_id)
        if not members:
            self._members.pop(room_id, None)

    def leave(self, conn_id: ConnId) -> int | None:
        room_id = self._current.pop(conn_id, None)
        if room_id is not None:
            self._remove(conn_id, room_id)
        return room_id

    def current_room(self, conn_id: ConnId) -> int | None:
        return self._current.get(conn_id)

    def members(self, room_id: int) -> list[ConnId]:
        return list(self._members.get(room_id, ()))

    def clear_all(self) -> None:
        self._members.clear()
        self._current.clear()

    def get_stats(self) -> dict[str, Any]:
        top = sorted(
            ((room_id, len(m)) for room_id, m in self._members.items()),
            key=lambda kv: kv[1],
            reverse=True,
        )[:5]
        return {
            "rooms_active": len(self._members),
            "memberships": sum(len(m) for m in self._members.values()),
            "top_rooms": top,
        }
