"""Statistics tracking and reporting for the chat hub."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .service import HubService


class StatsManager:
    """
    Lifetime counters for the hub and the ``/stats`` report.

    Counters are only touched from the event loop thread.
    """

    def __init__(self) -> None:
        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "bytes_in": 0,
            "bytes_out": 0,
            "pkts_in": 0,
            "pkts_bad": 0,
            "rate_limited": 0,
            "errors_sent": 0,
            "auth_failed": 0,
            "bans_rejected": 0,
            "room_switches": 0,
            "messages": 0,
            "private_messages": 0,
            "mentions": 0,
            "pings_out": 0,
            "pongs_in": 0,
            "announces": 0,
            "resources_sent": 0,
            "resources_received": 0,
            "resources_rejected": 0,
        }

    def set_start_time(self) -> None:
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        return int(self._counters.get(key, 0))

    def snapshot(self) -> dict[str, int]:
        return dict(self._counters)

    def format_stats(self, hub: HubService) -> str:
        """Format current statistics as a human-readable string."""
        from . import __version__

        started = self.started_monotonic
        uptime_s = (time.monotonic() - started) if started is not None else 0.0

        sessions = hub.sessions.get_stats()
        rooms = hub.rooms.get_stats()
        presence = hub.presence.get_stats()
        c = self.snapshot()

        lines: list[str] = []
        lines.append(f"chathub {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")
        lines.append(
            f"connections={sessions['total']} authenticated={sessions['authenticated']} "
            f"online_users={presence['online_users']}"
        )
        if sessions["by_client"]:
            lines.append(
                "clients="
                + ", ".join(f"{k}:{v}" for k, v in sorted(sessions["by_client"].items()))
            )
        lines.append(f"rooms_active={rooms['rooms_active']} memberships={rooms['memberships']}")
        if rooms["top_rooms"]:
            lines.append(
                "top_rooms=" + ", ".join(f"{r}:{n}" for r, n in rooms["top_rooms"])
            )
        lines.append(
            f"limits: rate_limit_msgs_per_minute={hub.config.rate_limit_msgs_per_minute} "
            f"max_message_chars={hub.config.max_message_chars} "
            f"history_limit={hub.config.history_limit}"
        )
        lines.append(
            "io: pkts_in={} pkts_bad={} bytes_in={} bytes_out={}".format(
                c["pkts_in"], c["pkts_bad"], c["bytes_in"], c["bytes_out"]
            )
        )
        lines.append(
            "events: messages={} private={} mentions={} switches={} errors_sent={} "
            "rate_limited={}".format(
                c["messages"],
                c["private_messages"],
                c["mentions"],
                c["room_switches"],
                c["errors_sent"],
                c["rate_limited"],
            )
        )
        lines.append(
            "auth: failed={} bans_rejected={}".format(c["auth_failed"], c["bans_rejected"])
        )
        lines.append(
            "resources: sent={} received={} rejected={}".format(
                c["resources_sent"], c["resources_received"], c["resources_rejected"]
            )
        )
        return "\n".join(lines)
