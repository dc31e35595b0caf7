"""Hashing, token generation, signed cookies & upstream call guards."""

from __future__ import annotations

import asyncio
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from hashlib import sha256
from typing import Any, Awaitable, Dict, TypeVar

import bcrypt
from jose import JWTError, jwt as jose_jwt

from authserver import SESSION_SECRET
from authserver.errors import OAuthError, PrincipalConflict, TokenValueCollision, UpstreamUnavailable
from authserver.settings import BCRYPT_ROUNDS
from authserver.utils.logger import logger

T = TypeVar("T")

# 32 random bytes → 256 bits of entropy per code/token
TOKEN_BYTES = 32
SIGNING_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Upstream guard
# ---------------------------------------------------------------------------


async def safe_upstream_call(awaitable: Awaitable[T], *, timeout: float, detail: str) -> T:
    """Await a store/network call and translate timeouts and faults into 503.

    Protocol errors raised inside the call are re-raised untouched; anything
    else (connection errors, postgrest errors, hung sockets) becomes
    :class:`UpstreamUnavailable` so callers never hang or leak internals.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except (OAuthError, TokenValueCollision, PrincipalConflict):
        raise
    except asyncio.TimeoutError as exc:
        logger.warning("upstream.timeout", extra={"upstream": detail, "timeout_s": timeout})
        raise UpstreamUnavailable() from exc
    except Exception as exc:  # noqa: BLE001
        logger.error("upstream.error", extra={"upstream": detail, "error": type(exc).__name__})
        raise UpstreamUnavailable() from exc


# ---------------------------------------------------------------------------
# Opaque token values
# ---------------------------------------------------------------------------


def generate_token_value() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def token_digest(value: str) -> str:
    """Storage key for an opaque value: the raw value itself is never persisted."""
    return sha256(value.encode()).hexdigest()


def constant_time_equals(a: str | None, b: str | None) -> bool:
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.encode(), b.encode())


# ---------------------------------------------------------------------------
# bcrypt hashing (passwords & client secrets)
# ---------------------------------------------------------------------------


def _prepare(raw: str) -> bytes:
    # bcrypt only looks at the first 72 bytes
    return raw.encode("utf-8")[:72]


def hash_secret(raw: str, rounds: int | None = None) -> str:
    return bcrypt.hashpw(_prepare(raw), bcrypt.gensalt(rounds=rounds or BCRYPT_ROUNDS)).decode()


def verify_secret(raw: str, hashed: str | None) -> bool:
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(_prepare(raw), hashed.encode())
    except ValueError:
        # Malformed stored hash
        return False


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    return hash_secret(secrets.token_urlsafe(16))


async def verify_secret_async(raw: str, hashed: str | None, *, timeout: float) -> bool:
    """Run the bcrypt comparison off the event loop, bounded by *timeout*.

    When there is no stored hash we still burn one comparison against a dummy
    hash so response timing does not reveal whether the account exists.
    """
    target = hashed or _dummy_hash()
    result = await safe_upstream_call(
        asyncio.to_thread(verify_secret, raw, target),
        timeout=timeout,
        detail="bcrypt",
    )
    return bool(hashed) and result


# ---------------------------------------------------------------------------
# Signed cookies (login session / delegated-login state)
# ---------------------------------------------------------------------------


def sign_payload(claims: Dict[str, Any], *, audience: str, ttl_seconds: int) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        **claims,
        "aud": audience,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
    }
    return jose_jwt.encode(payload, SESSION_SECRET, algorithm=SIGNING_ALGORITHM)


def read_signed_payload(token: str | None, *, audience: str) -> Dict[str, Any] | None:
    """Return the claims of a valid, unexpired cookie or ``None``."""
    if not token:
        return None
    try:
        return jose_jwt.decode(token, SESSION_SECRET, algorithms=[SIGNING_ALGORITHM], audience=audience)
    except JWTError:
        return None
