from __future__ import annotations

import os
from pathlib import Path

from deepresearch.errors import ConfigurationError


def sanitize_ssl_keylogfile() -> None:
    """Unset SSLKEYLOGFILE when it points to an unusable path.

    HTTP clients crash while creating an SSL context if the key log path is
    inaccessible, which is common when the variable is set globally for TLS
    debugging.
    """
    keylog_path = os.getenv("SSLKEYLOGFILE", "").strip()
    if not keylog_path:
        return

    path = Path(keylog_path)
    if path.parent and not path.parent.exists():
        os.environ.pop("SSLKEYLOGFILE", None)
        return
    try:
        # Open in append mode so an existing log is not truncated.
        with open(path, "a", encoding="utf-8"):
            pass
    except OSError:
        os.environ.pop("SSLKEYLOGFILE", None)


def require_setting(env_name: str, value: str) -> str:
    """Return ``value`` stripped, or raise when the setting is blank."""
    cleaned = (value or "").strip()
    if not cleaned:
        raise ConfigurationError(f"{env_name} not configured")
    return cleaned
