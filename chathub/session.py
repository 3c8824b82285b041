from __future__ import annotations

import logging
import time
from collections.abc import Hashable
from dataclasses import dataclass, field
from typing import Any

from .config import HubRuntimeConfig
from .models import Principal

ConnId = Hashable


@dataclass
class _RateState:
    """Token bucket state for rate limiting."""

    tokens: float
    last_refill: float


@dataclass
class Connection:
    """Ephemeral per-connection state. Never persisted."""

    conn_id: ConnId
    principal: Principal | None = None
    client_type: str | None = None
    current_room: int | None = None
    awaiting_pong: float | None = None
    connected_at: float = field(default_factory=time.monotonic)
    handshaking: bool = False
    closing: bool = False

    @property
    def authenticated(self) -> bool:
        return self.principal is not None

    @property
    def username(self) -> str | None:
        return self.principal.username if self.principal is not None else None


class SessionManager:
    """
    Manages connection lifecycle for the chat hub.

    This class is responsible for:
    - Connection creation and teardown
    - Recording the principal once the HELLO handshake succeeds
    - Rate limiting with a token bucket per connection
    - Finding connections that never completed the handshake
    """

    def __init__(self, config: HubRuntimeConfig) -> None:
        self.config = config
        self.log = logging.getLogger("chathub.session")
        self.connections: dict[ConnId, Connection] = {}
        self._rate: dict[ConnId, _RateState] = {}

    def on_connect(self, conn_id: ConnId) -> Connection:
        conn = Connection(conn_id=conn_id)
        self.connections[conn_id] = conn
        self._rate[conn_id] = _RateState(
            tokens=float(self.config.rate_limit_msgs_per_minute),
            last_refill=time.monotonic(),
        )
        self.log.info("Connection opened conn=%s", conn_id)
        return conn

    def on_disconnect(self, conn_id: ConnId) -> Connection | None:
        self._rate.pop(conn_id, None)
        return self.connections.pop(conn_id, None)

    def get(self, conn_id: ConnId) -> Connection | None:
        return self.connections.get(conn_id)

    def authenticate(
        self, conn_id: ConnId, principal: Principal, client_type: str
    ) -> Connection | None:
        conn = self.connections.get(conn_id)
        if conn is None:
            return None
        conn.principal = principal
        conn.client_type = client_type
        return conn

    def refill_and_take(self, conn_id: ConnId, cost: float = 1.0) -> bool:
        """
        Token bucket rate limiting.

        Refills tokens based on elapsed time and attempts to take `cost` tokens.
        Returns True if tokens were available and taken, False if rate limited.
        """
        state = self._rate.get(conn_id)
        if state is None:
            return True

        now = time.monotonic()
        per_min = float(max(1, int(self.config.rate_limit_msgs_per_minute)))
        rate_per_s = per_min / 60.0
        elapsed = max(0.0, now - state.last_refill)
        state.tokens = min(per_min, state.tokens + elapsed * rate_per_s)
        state.last_refill = now

        if state.tokens < cost:
            return False

        state.tokens -= cost
        return True

    def authenticated_connections(self) -> list[Connection]:
        return [c for c in self.connections.values() if c.authenticated and not c.closing]

    def stale_handshakes(self, now: float | None = None) -> list[ConnId]:
        """Connections still without a principal after ``hello_timeout_s``."""
        timeout = float(self.config.hello_timeout_s)
        if timeout <= 0:
            return []
        now = time.monotonic() if now is None else now
        return [
            c.conn_id
            for c in self.connections.values()
            if not c.authenticated and not c.closing and (now - c.connected_at) > timeout
        ]

    def clear_all(self) -> list[ConnId]:
        conn_ids = list(self.connections)
        self.connections.clear()
        self._rate.clear()
        return conn_ids

    def get_stats(self) -> dict[str, Any]:
        total = len(self.connections)
        authenticated = sum(1 for c in self.connections.values() if c.authenticated)
        by_client: dict[str, int] = {}
        for c in self.connections.values():
            if c.client_type:
                by_client[c.client_type] = by_client.get(c.client_type, 0) + 1
        return {"total": total, "authenticated": authenticated, "by_client": by_client}
