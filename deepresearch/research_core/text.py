from __future__ import annotations

import re
from urllib.parse import urlparse

WHITESPACE_RE = re.compile(r"\s+")


def clamp_text(value: str, max_length: int) -> str:
    if len(value) <= max_length:
        return value
    return f"{value[:max_length].rstrip()}…"


def normalize_key_text(value: str) -> str:
    return WHITESPACE_RE.sub(" ", value).strip().lower()


def derive_source_title(url: str, fallback: str | None = None) -> str:
    """Hostname of ``url``, or ``fallback`` (then the URL itself) when unparsable."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return fallback or url
    if not parsed.scheme or not parsed.hostname:
        return fallback or url
    return parsed.hostname
