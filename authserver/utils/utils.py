"""Misc cross-cutting helpers."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from uuid import uuid4


def generate_uuid() -> str:
    return str(uuid4())


def get_env_bool(name: str, default: bool = False) -> bool:
    return os.getenv(name, str(int(default))).lower() in {"1", "true", "yes"}


def get_env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_safe_next_path(path: str | None) -> bool:
    """Return True when *path* is a same-origin relative path.

    Post-login redirects only ever go back into this server, so absolute URLs
    and protocol-relative paths (``//evil.example``) are rejected.

    Examples:
        >>> is_safe_next_path("/oauth/authorize?client_id=c1")
        True
        >>> is_safe_next_path("//evil.example/x")
        False
    """
    if not path or not path.startswith("/"):
        return False
    if path.startswith("//") or path.startswith("/\\"):
        return False
    return "\r" not in path and "\n" not in path
