from __future__ import annotations

import os
import re

from .constants import USERNAME_MAX_CHARS

_MENTION_RE = re.compile(r"@(\w+)")


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def normalize_username(value, *, max_chars: int = USERNAME_MAX_CHARS) -> str | None:
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    if max_chars > 0 and len(s) > int(max_chars):
        return None

    # Keep this conservative: avoid embedded newlines or NUL, which frequently
    # cause UI/log formatting issues.
    if "\n" in s or "\r" in s or "\x00" in s:
        return None

    try:
        s.encode("utf-8", "strict")
    except UnicodeError:
        return None

    return s


def escape_html(text: str) -> str:
    """Neutralize angle brackets only; this is not general HTML sanitization."""
    return text.replace("<", "&lt;").replace(">", "&gt;")


def extract_mentions(text: str) -> list[str]:
    """Return distinct ``@name`` tokens in order of first appearance."""
    seen: dict[str, None] = {}
    for m in _MENTION_RE.finditer(text or ""):
        seen.setdefault(m.group(1), None)
    return list(seen)
