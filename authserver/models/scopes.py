from enum import Enum
from typing import Iterable


class Scope(str, Enum):
    """Scopes understood by the bundled resource endpoints.

    Clients may be registered with any scope strings; these are just the ones
    the server itself checks for.
    """

    read = "read"
    write = "write"


class GrantType(str, Enum):
    authorization_code = "authorization_code"
    refresh_token = "refresh_token"


def parse_scope(raw: str | Iterable[str] | None) -> list[str]:
    """Normalise a space (or comma) delimited scope string into a sorted list."""
    if raw is None:
        return []
    parts = raw.replace(",", " ").split() if isinstance(raw, str) else list(raw)
    return sorted({p.strip() for p in parts if p and p.strip()})


def format_scope(scopes: Iterable[str]) -> str:
    return " ".join(sorted(set(scopes)))
