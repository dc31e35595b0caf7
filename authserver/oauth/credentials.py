"""Resource-owner credential verification (username / password)."""

from __future__ import annotations

import asyncio

from authserver.errors import InvalidCredentials
from authserver.models import AuditAction, AuditStatus, Principal
from authserver.oauth.principals import PrincipalStore
from authserver.settings import UPSTREAM_TIMEOUT_SECONDS
from authserver.utils.audit import log_audit_event
from authserver.utils.security_utils import hash_secret, safe_upstream_call, verify_secret_async
from authserver.utils.utils import generate_uuid, utc_now


class CredentialVerifier:
    def __init__(self, principals: PrincipalStore, *, timeout: float = UPSTREAM_TIMEOUT_SECONDS):
        self._principals = principals
        self._timeout = timeout

    async def authenticate(self, username: str | None, password: str | None) -> Principal:
        """Return the principal for a correct username/password pair.

        Unknown usernames, wrong passwords and delegated-only accounts all fail
        with the same :class:`InvalidCredentials`, and all of them pay for one
        bcrypt comparison.
        """
        principal = await self._principals.find_by_username(username) if username else None
        stored_hash = principal.password_hash if principal else None

        matched = await verify_secret_async(password or "", stored_hash, timeout=self._timeout)
        if principal is None or not matched:
            await log_audit_event(
                AuditAction.login_failure,
                AuditStatus.failure,
                principal_id=principal.id if principal else None,
                metadata={"method": "password"},
            )
            raise InvalidCredentials()

        await log_audit_event(AuditAction.login_success, principal_id=principal.id, metadata={"method": "password"})
        return principal

    async def register_principal(
        self,
        username: str,
        password: str | None = None,
        *,
        display_name: str | None = None,
        email: str | None = None,
        authorities: list[str] | None = None,
        provider: str | None = None,
    ) -> Principal:
        password_hash = None
        if password:
            password_hash = await safe_upstream_call(
                asyncio.to_thread(hash_secret, password),
                timeout=self._timeout,
                detail="bcrypt",
            )

        principal = Principal(
            id=generate_uuid(),
            username=username,
            display_name=display_name,
            email=email,
            password_hash=password_hash,
            authorities=authorities or ["ROLE_USER"],
            provider=provider,
            created_at=utc_now(),
        )
        created = await self._principals.create(principal)
        await log_audit_event(
            AuditAction.principal_create,
            principal_id=created.id,
            metadata={"provider": provider or "native"},
        )
        return created
