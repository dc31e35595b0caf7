from __future__ import annotations

"""Application-level configuration helpers (env → constants).

Only generic utilities that may be imported *anywhere* in the code-base
should live in this module.  Avoid importing heavy libraries to keep the
import cost near-zero.
"""

# Standard library
import os

from authserver.utils.utils import get_env_bool, get_env_int

__all__ = [
    "ALLOWED_ORIGINS",
    "ACCESS_TOKEN_TTL_SECONDS",
    "REFRESH_TOKEN_TTL_SECONDS",
    "AUTH_CODE_TTL_SECONDS",
    "SESSION_TTL_SECONDS",
    "ROTATE_REFRESH_TOKENS",
    "UPSTREAM_TIMEOUT_SECONDS",
    "BCRYPT_ROUNDS",
    "PUBLIC_BASE_URL",
    "OAUTH_CLIENTS_FILE",
    "PROVIDER_CREDENTIALS",
]

# Authorization codes must never outlive this window
MAX_AUTH_CODE_TTL_SECONDS = 600


def _collect_origins() -> list[str]:
    """Collect allowed CORS origins from the environment.

    Falls back to the local dev-server so a front-end running on
    localhost can still reach the login endpoints when no explicit env vars
    are set.
    """
    origins: list[str] = []
    for name in ("FRONTEND_ORIGIN", "DOCS_ORIGIN", "EXTRA_ORIGIN"):
        if (val := os.getenv(name)):
            origins.append(val)

    if not origins:
        origins.append("http://localhost:3000")
    return origins


def _provider_credentials() -> dict[str, tuple[str, str]]:
    """Return ``{provider: (client_id, client_secret)}`` for configured providers.

    A provider is only enabled when *both* values are present.
    """
    creds: dict[str, tuple[str, str]] = {}
    for provider in ("facebook", "google"):
        client_id = os.getenv(f"{provider.upper()}_CLIENT_ID")
        client_secret = os.getenv(f"{provider.upper()}_CLIENT_SECRET")
        if client_id and client_secret:
            creds[provider] = (client_id, client_secret)
    return creds


ALLOWED_ORIGINS: list[str] = _collect_origins()

ACCESS_TOKEN_TTL_SECONDS: int = get_env_int("ACCESS_TOKEN_TTL_SECONDS", 24 * 3600)
# 0 disables refresh-token expiry
REFRESH_TOKEN_TTL_SECONDS: int = get_env_int("REFRESH_TOKEN_TTL_SECONDS", 30 * 24 * 3600)
AUTH_CODE_TTL_SECONDS: int = min(get_env_int("AUTH_CODE_TTL_SECONDS", 600), MAX_AUTH_CODE_TTL_SECONDS)
SESSION_TTL_SECONDS: int = get_env_int("SESSION_TTL_SECONDS", 3600)

ROTATE_REFRESH_TOKENS: bool = get_env_bool("ROTATE_REFRESH_TOKENS", False)

UPSTREAM_TIMEOUT_SECONDS: float = float(os.getenv("UPSTREAM_TIMEOUT_SECONDS", "5"))
BCRYPT_ROUNDS: int = get_env_int("BCRYPT_ROUNDS", 12)

PUBLIC_BASE_URL: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:8080").rstrip("/")
OAUTH_CLIENTS_FILE: str | None = os.getenv("OAUTH_CLIENTS_FILE")

PROVIDER_CREDENTIALS: dict[str, tuple[str, str]] = _provider_credentials()
