from __future__ import annotations

from dataclasses import asdict, dataclass, replace

from .constants import HISTORY_LIMIT, MAX_MESSAGE_CHARS, USERNAME_MAX_CHARS


@dataclass(frozen=True)
class HubRuntimeConfig:
    config_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    store_path: str | None = None
    dest_name: str = "chathub.hub"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "chathub"
    greeting: str | None = None
    default_room: str | None = None
    history_limit: int = HISTORY_LIMIT
    max_message_chars: int = MAX_MESSAGE_CHARS
    username_max_chars: int = USERNAME_MAX_CHARS
    token_ttl_s: float = 24 * 3600.0
    hello_timeout_s: float = 30.0
    ban_sweep_interval_s: float = 60.0
    rate_limit_msgs_per_minute: int = 240
    ping_interval_s: float = 0.0
    ping_timeout_s: float = 0.0
    max_resource_bytes: int = 256 * 1024  # 256 KiB default
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


_LOGGING_KEYS = {
    "level": "log_level",
    "rns_level": "log_rns_level",
    "console": "log_console",
    "file": "log_file",
    "format": "log_format",
    "datefmt": "log_datefmt",
}

_EMPTY_MEANS_NONE = (
    "configdir",
    "greeting",
    "default_room",
    "store_path",
    "log_file",
    "log_datefmt",
)


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(base: HubRuntimeConfig, data: dict) -> HubRuntimeConfig:
    """Overlay a parsed TOML document onto ``base``.

    ``[hub]`` keys map directly onto config fields; ``[logging]`` keys are
    mapped onto the ``log_*`` fields. Unknown keys are ignored.
    """
    hub = data.get("hub") if isinstance(data, dict) else None
    if isinstance(hub, dict):
        data = {**data, **hub}

    log_table = data.get("logging") if isinstance(data, dict) else None
    if isinstance(log_table, dict):
        mapped = {
            field: log_table.get(key)
            for key, field in _LOGGING_KEYS.items()
            if key in log_table
        }
        data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where to reload from; do not let the file override it.
    allowed.discard("config_path")

    updates = {k: v for k, v in data.items() if k in allowed}

    if "announce" in data and "announce_on_start" not in updates:
        updates["announce_on_start"] = bool(data["announce"])

    for key in _EMPTY_MEANS_NONE:
        if key in updates and updates[key] == "":
            updates[key] = None

    return replace(base, **updates) if updates else base
