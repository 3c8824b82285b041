"""Envelope framing for the wire protocol.

Every packet is a CBOR map keyed by small unsigned integers. Keys outside the
known set are carried through untouched so clients can extend the envelope.
"""

from __future__ import annotations

import os
import time
from typing import Any

from .constants import K_BODY, K_ID, K_ROOM, K_SRC, K_T, K_TS, K_V, PROTOCOL_VERSION

# (key, accepted types, name used in errors)
_REQUIRED: tuple[tuple[int, tuple[type, ...], str], ...] = (
    (K_V, (int,), "protocol version"),
    (K_T, (int,), "message type"),
    (K_ID, (bytes, bytearray), "message id"),
    (K_TS, (int,), "timestamp"),
    (K_SRC, (bytes, bytearray), "sender identity"),
)

_BODY_TYPES = (dict, str, bool)


def now_ms() -> int:
    return int(time.time() * 1000)


def make_envelope(
    msg_type: int,
    *,
    src: bytes,
    room: int | str | None = None,
    body: Any = None,
    mid: bytes | None = None,
    ts: int | None = None,
) -> dict[int, Any]:
    env: dict[int, Any] = {
        K_V: PROTOCOL_VERSION,
        K_T: int(msg_type),
        K_ID: mid or os.urandom(8),
        K_TS: ts or now_ms(),
        K_SRC: src,
    }
    if room is not None:
        env[K_ROOM] = room
    if body is not None:
        env[K_BODY] = body
    return env


def validate_envelope(env: Any) -> None:
    """Raise ``TypeError``/``ValueError`` unless ``env`` is a well-formed envelope."""
    if not isinstance(env, dict):
        raise TypeError("envelope must be a CBOR map (dict)")
    if any(not isinstance(k, int) or isinstance(k, bool) or k < 0 for k in env):
        raise TypeError("envelope keys must be unsigned integers")

    for key, types, name in _REQUIRED:
        if key not in env:
            raise ValueError(f"missing envelope key {key} ({name})")
        value = env[key]
        if isinstance(value, bool) or not isinstance(value, types):
            raise TypeError(f"{name} has the wrong type")

    if env[K_V] != PROTOCOL_VERSION:
        raise ValueError(f"unsupported version {env[K_V]}")
    if env[K_TS] < 0:
        raise ValueError("timestamp must be unsigned")

    if K_ROOM in env:
        # Legacy clients address rooms by name; the store translates them.
        room = env[K_ROOM]
        if isinstance(room, bool) or not isinstance(room, (int, str)):
            raise TypeError("room must be an integer id or a name")
        if room == "":
            raise ValueError("room name must not be empty")

    body = env.get(K_BODY)
    if body is not None and not isinstance(body, _BODY_TYPES):
        raise TypeError("body must be a map, string or boolean")
