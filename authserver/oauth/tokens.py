"""Persistence of authorization codes, access tokens and refresh tokens.

All three record types are keyed by ``sha256(value)``.  Every mutation that
callers race on (consuming a code, revoking a refresh token) is a
compare-and-set that reports whether *this* call changed the record.

Revocation policy
-----------------
* Revoking a refresh token (``cascade=True``) also revokes every access token
  whose ``refresh_token_id`` points at it.
* Code reuse revokes every access and refresh token carrying that ``code_id``;
  the id is propagated along refresh cycles so the whole lineage is covered.
* Reuse is also recorded on the code row (``reuse_detected``).  The exchange
  that won the consume re-reads the row after minting, so tokens it had not
  yet written when the reuse was revoked are caught on its side.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Union

from authserver.errors import TokenValueCollision
from authserver.models import AccessToken, AuthorizationCode, RefreshToken
from authserver.utils.database import (
    SupabaseRepository,
    delete_data,
    insert_data,
    query_many,
    query_one,
    update_data,
)
from authserver.utils.utils import utc_now

CODES_TABLE = "authorization_codes"
ACCESS_TOKENS_TABLE = "access_tokens"
REFRESH_TOKENS_TABLE = "refresh_tokens"

TokenRecord = Union[AuthorizationCode, AccessToken, RefreshToken]
GrantToken = Union[AccessToken, RefreshToken]


class TokenStore(ABC):
    def __init__(self, *, clock: Callable[[], datetime] = utc_now):
        self._clock = clock

    @abstractmethod
    async def put(self, record: TokenRecord) -> None:
        """Insert a new record; raises :class:`TokenValueCollision` if the key exists."""

    @abstractmethod
    async def get_code(self, code_id: str) -> AuthorizationCode | None: ...

    @abstractmethod
    async def get_access_token(self, token_id: str) -> AccessToken | None: ...

    @abstractmethod
    async def get_refresh_token(self, token_id: str) -> RefreshToken | None: ...

    @abstractmethod
    async def consume(self, code_id: str) -> bool:
        """Atomically flip ``consumed`` to true; False when it already was."""

    @abstractmethod
    async def flag_code_reuse(self, code_id: str) -> bool:
        """Mark a consumed code as redeemed twice; True only for the first call."""

    @abstractmethod
    async def revoke_access_token(self, token_id: str) -> bool: ...

    @abstractmethod
    async def revoke_refresh_token(self, token_id: str, *, cascade: bool = True) -> bool:
        """Revoke a refresh token; True only for the call that changed it."""

    @abstractmethod
    async def revoke_issued_from_code(self, code_id: str) -> int:
        """Revoke every access/refresh token descended from *code_id*."""

    @abstractmethod
    async def find_by_principal_and_client(self, principal_id: str, client_id: str) -> list[GrantToken]: ...

    @abstractmethod
    async def revoke_for_principal_and_client(self, principal_id: str, client_id: str) -> int: ...

    @abstractmethod
    async def purge_expired(self, now: datetime | None = None) -> int:
        """Delete records whose validity window has closed."""


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryTokenStore(TokenStore):
    """Dict-backed store for tests and single-process development.

    None of the mutating methods await between reading and writing a record,
    so each one runs atomically on the event loop.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utc_now):
        super().__init__(clock=clock)
        self._codes: dict[str, AuthorizationCode] = {}
        self._access: dict[str, AccessToken] = {}
        self._refresh: dict[str, RefreshToken] = {}

    def _table_for(self, record: TokenRecord) -> tuple[dict, str]:
        if isinstance(record, AuthorizationCode):
            return self._codes, record.code_id
        if isinstance(record, AccessToken):
            return self._access, record.token_id
        if isinstance(record, RefreshToken):
            return self._refresh, record.token_id
        raise TypeError(f"Unsupported record type {type(record).__name__}")

    async def put(self, record: TokenRecord) -> None:
        table, key = self._table_for(record)
        if key in table:
            raise TokenValueCollision(type(record).__name__)
        table[key] = record.model_copy(update={"value": None})

    async def get_code(self, code_id: str) -> AuthorizationCode | None:
        record = self._codes.get(code_id)
        return record.model_copy() if record else None

    async def get_access_token(self, token_id: str) -> AccessToken | None:
        record = self._access.get(token_id)
        return record.model_copy() if record else None

    async def get_refresh_token(self, token_id: str) -> RefreshToken | None:
        record = self._refresh.get(token_id)
        return record.model_copy() if record else None

    async def consume(self, code_id: str) -> bool:
        record = self._codes.get(code_id)
        if record is None or record.consumed:
            return False
        record.consumed = True
        record.consumed_at = self._clock()
        return True

    async def flag_code_reuse(self, code_id: str) -> bool:
        record = self._codes.get(code_id)
        if record is None or record.reuse_detected:
            return False
        record.reuse_detected = True
        return True

    def _revoke(self, record: GrantToken | None) -> bool:
        if record is None or record.revoked:
            return False
        record.revoked = True
        record.revoked_at = self._clock()
        return True

    async def revoke_access_token(self, token_id: str) -> bool:
        return self._revoke(self._access.get(token_id))

    async def revoke_refresh_token(self, token_id: str, *, cascade: bool = True) -> bool:
        changed = self._revoke(self._refresh.get(token_id))
        if cascade:
            for record in self._access.values():
                if record.refresh_token_id == token_id:
                    self._revoke(record)
        return changed

    async def revoke_issued_from_code(self, code_id: str) -> int:
        records = [*self._access.values(), *self._refresh.values()]
        return sum(self._revoke(r) for r in records if r.code_id == code_id)

    async def find_by_principal_and_client(self, principal_id: str, client_id: str) -> list[GrantToken]:
        records = [*self._access.values(), *self._refresh.values()]
        return [
            r.model_copy()
            for r in records
            if r.principal_id == principal_id and r.client_id == client_id
        ]

    async def revoke_for_principal_and_client(self, principal_id: str, client_id: str) -> int:
        records = [*self._access.values(), *self._refresh.values()]
        return sum(
            self._revoke(r)
            for r in records
            if r.principal_id == principal_id and r.client_id == client_id
        )

    async def purge_expired(self, now: datetime | None = None) -> int:
        now = now or self._clock()
        removed = 0
        for table in (self._codes, self._access, self._refresh):
            expired = [key for key, r in table.items() if r.expires_at is not None and r.expires_at <= now]
            for key in expired:
                del table[key]
            removed += len(expired)
        return removed


# ---------------------------------------------------------------------------
# Supabase backend
# ---------------------------------------------------------------------------


class SupabaseTokenStore(SupabaseRepository, TokenStore):
    """PostgREST-backed store.

    Expected schema: ``code_id`` / ``token_id`` primary keys and an index on
    ``(principal_id, client_id)`` in ``access_tokens`` and ``refresh_tokens``.
    """

    def __init__(self, client_factory=None, *, timeout: float | None = None, clock: Callable[[], datetime] = utc_now):
        kwargs = {"timeout": timeout} if timeout is not None else {}
        SupabaseRepository.__init__(self, client_factory, **kwargs)
        TokenStore.__init__(self, clock=clock)

    async def put(self, record: TokenRecord) -> None:
        if isinstance(record, AuthorizationCode):
            table = CODES_TABLE
        elif isinstance(record, AccessToken):
            table = ACCESS_TOKENS_TABLE
        elif isinstance(record, RefreshToken):
            table = REFRESH_TOKENS_TABLE
        else:
            raise TypeError(f"Unsupported record type {type(record).__name__}")

        result = await self._run(f"{table}.insert", insert_data, table, record.model_dump(mode="json"))
        if result == "duplicate":
            raise TokenValueCollision(type(record).__name__)

    async def get_code(self, code_id: str) -> AuthorizationCode | None:
        row = await self._run("authorization_codes.get", query_one, CODES_TABLE, match={"code_id": code_id})
        return AuthorizationCode(**row) if row else None

    async def get_access_token(self, token_id: str) -> AccessToken | None:
        row = await self._run("access_tokens.get", query_one, ACCESS_TOKENS_TABLE, match={"token_id": token_id})
        return AccessToken(**row) if row else None

    async def get_refresh_token(self, token_id: str) -> RefreshToken | None:
        row = await self._run("refresh_tokens.get", query_one, REFRESH_TOKENS_TABLE, match={"token_id": token_id})
        return RefreshToken(**row) if row else None

    async def consume(self, code_id: str) -> bool:
        changed = await self._run(
            "authorization_codes.consume",
            update_data,
            CODES_TABLE,
            {"consumed": True, "consumed_at": self._clock().isoformat()},
            {"code_id": code_id, "consumed": False},
        )
        return bool(changed)

    async def flag_code_reuse(self, code_id: str) -> bool:
        changed = await self._run(
            "authorization_codes.flag_reuse",
            update_data,
            CODES_TABLE,
            {"reuse_detected": True},
            {"code_id": code_id, "reuse_detected": False},
        )
        return bool(changed)

    async def _revoke_where(self, table: str, filters: dict) -> int:
        changed = await self._run(
            f"{table}.revoke",
            update_data,
            table,
            {"revoked": True, "revoked_at": self._clock().isoformat()},
            {**filters, "revoked": False},
        )
        return len(changed)

    async def revoke_access_token(self, token_id: str) -> bool:
        return bool(await self._revoke_where(ACCESS_TOKENS_TABLE, {"token_id": token_id}))

    async def revoke_refresh_token(self, token_id: str, *, cascade: bool = True) -> bool:
        changed = await self._revoke_where(REFRESH_TOKENS_TABLE, {"token_id": token_id})
        if cascade:
            await self._revoke_where(ACCESS_TOKENS_TABLE, {"refresh_token_id": token_id})
        return bool(changed)

    async def revoke_issued_from_code(self, code_id: str) -> int:
        access = await self._revoke_where(ACCESS_TOKENS_TABLE, {"code_id": code_id})
        refresh = await self._revoke_where(REFRESH_TOKENS_TABLE, {"code_id": code_id})
        return access + refresh

    async def find_by_principal_and_client(self, principal_id: str, client_id: str) -> list[GrantToken]:
        match = {"principal_id": principal_id, "client_id": client_id}
        access = await self._run("access_tokens.find", query_many, ACCESS_TOKENS_TABLE, match=match)
        refresh = await self._run("refresh_tokens.find", query_many, REFRESH_TOKENS_TABLE, match=match)
        return [AccessToken(**row) for row in access] + [RefreshToken(**row) for row in refresh]

    async def revoke_for_principal_and_client(self, principal_id: str, client_id: str) -> int:
        match = {"principal_id": principal_id, "client_id": client_id}
        access = await self._revoke_where(ACCESS_TOKENS_TABLE, match)
        refresh = await self._revoke_where(REFRESH_TOKENS_TABLE, match)
        return access + refresh

    async def purge_expired(self, now: datetime | None = None) -> int:
        cutoff = (now or self._clock()).isoformat()
        removed = 0
        for table in (CODES_TABLE, ACCESS_TOKENS_TABLE, REFRESH_TOKENS_TABLE):
            # NULL expires_at never matches ``lte``, so non-expiring refresh tokens survive
            rows = await self._run(f"{table}.purge", delete_data, table, {"expires_at": ("lte", cutoff)})
            removed += len(rows)
        return removed
