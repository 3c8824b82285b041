from __future__ import annotations

import logging
from collections.abc import Callable, Hashable

from .models import Principal

ConnId = Hashable


class PresenceTracker:
    """
    Owns the connection -> principal map and the per-room typing map.

    This class is responsible for:
    - Tracking which usernames are online (one or more live connections)
    - Typing state keyed by (room, connection)
    - Notifying listeners when the online list or a room's typing list changes

    All mutation happens on the event loop thread. The transport marshals its
    callbacks onto the loop, so there is exactly one writer and no lock.
    """

    def __init__(
        self,
        *,
        on_online_changed: Callable[[list[Principal]], None] | None = None,
        on_typing_changed: Callable[[int, list[str]], None] | None = None,
    ) -> None:
        self.log = logging.getLogger("chathub.presence")
        self._principals: dict[ConnId, Principal] = {}
        self._by_username: dict[str, set[ConnId]] = {}
        self._typing: dict[int, dict[ConnId, str]] = {}
        self.on_online_changed = on_online_changed
        self.on_typing_changed = on_typing_changed

    def register(self, conn_id: ConnId, principal: Principal) -> None:
        old = self._principals.get(conn_id)
        if old is not None:
            self._unindex(conn_id, old.username)
        self._principals[conn_id] = principal
        self._by_username.setdefault(principal.username, set()).add(conn_id)
        self.log.debug("Registered conn=%s user=%s", conn_id, principal.username)
        self._online_changed()

    def unregister(self, conn_id: ConnId) -> Principal | None:
        principal = self._principals.pop(conn_id, None)
        if principal is None:
            return None
        self._unindex(conn_id, principal.username)
        self.purge_typing(conn_id)
        self.log.debug("Unregistered conn=%s user=%s", conn_id, principal.username)
        self._online_changed()
        return principal

    def _unindex(self, conn_id: ConnId, username: str) -> None:
        conns = self._by_username.get(username)
        if conns is None:
            return
        conns.discard(conn_id)
        if not conns:
            self._by_username.pop(username, None)

    def principal_for(self, conn_id: ConnId) -> Principal | None:
        return self._principals.get(conn_id)

    def list_online(self) -> set[str]:
        return set(self._by_username)

    def is_online(self, username: str) -> bool:
        return username in self._by_username

    def online_principals(self) -> list[Principal]:
        """One principal per online username, sorted by username."""
        out: dict[str, Principal] = {}
        for principal in self._principals.values():
            out.setdefault(principal.username, principal)
        return [out[name] for name in sorted(out)]

    def connections_for(self, username: str) -> list[ConnId]:
        return list(self._by_username.get(username, ()))

    def all_connections(self) -> list[ConnId]:
        return list(self._principals)

    def set_typing(self, room_id: int, conn_id: ConnId, is_typing: bool) -> bool:
        """Update one connection's typing flag; returns True if it changed."""
        principal = self._principals.get(conn_id)
        room = self._typing.get(room_id)
        if is_typing:
            if principal is None:
                return False
            if room is not None and conn_id in room:
                return False
            self._typing.setdefault(room_id, {})[conn_id] = principal.username
        else:
            if room is None or conn_id not in room:
                return False
            del room[conn_id]
            if not room:
                self._typing.pop(room_id, None)
        self._typing_changed(room_id)
        return True

    def list_typing(self, room_id: int) -> list[str]:
        return sorted(set(self._typing.get(room_id, {}).values()))

    def purge_typing(self, conn_id: ConnId) -> list[int]:
        """Drop every typing entry of ``conn_id``; returns the rooms touched."""
        touched = [room_id for room_id, room in self._typing.items() if conn_id in room]
        for room_id in touched:
            room = self._typing[room_id]
            del room[conn_id]
            if not room:
                self._typing.pop(room_id, None)
        for room_id in touched:
            self._typing_changed(room_id)
        return touched

    def get_stats(self) -> dict[str, int]:
        return {
            "connections": len(self._principals),
            "online_users": len(self._by_username),
            "typing_rooms": len(self._typing),
        }

    def _online_changed(self) -> None:
        if self.on_online_changed is not None:
            self.on_online_changed(self.online_principals())

    def _typing_changed(self, room_id: int) -> None:
        if self.on_typing_changed is not None:
            self.on_typing_changed(room_id, self.list_typing(room_id))
