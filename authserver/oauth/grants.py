"""The authorization-code / refresh-token state machine.

    Requested -> Authenticated -> CodeIssued -> Exchanged -> [RefreshCycle]*

with ``Denied``, ``Expired`` and ``Revoked`` as terminal failures.  The
issuer owns no state of its own: everything lives in the token store, so any
process sharing the store can serve any step.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from authserver.errors import (
    AccessDenied,
    InvalidClient,
    InvalidGrant,
    InvalidRedirectUri,
    InvalidRequest,
    InvalidScope,
    InvalidToken,
    OAuthError,
    TokenValueCollision,
    Unauthorized,
    UnauthorizedClient,
    UnsupportedResponseType,
)
from authserver.models import (
    AccessToken,
    AuditAction,
    AuditStatus,
    AuthorizationCode,
    Client,
    GrantType,
    Principal,
    RefreshToken,
    TokenIntrospection,
    parse_scope,
)
from authserver.oauth.clients import ClientRegistry
from authserver.oauth.principals import PrincipalStore
from authserver.oauth.tokens import TokenStore
from authserver.settings import (
    ACCESS_TOKEN_TTL_SECONDS,
    AUTH_CODE_TTL_SECONDS,
    MAX_AUTH_CODE_TTL_SECONDS,
    REFRESH_TOKEN_TTL_SECONDS,
    ROTATE_REFRESH_TOKENS,
)
from authserver.utils.audit import log_audit_event
from authserver.utils.logger import logger
from authserver.utils.security_utils import generate_token_value, token_digest
from authserver.utils.utils import utc_now


@dataclass(frozen=True)
class AuthorizationRequest:
    """A validated ``/oauth/authorize`` request awaiting the resource owner."""

    client: Client
    redirect_uri: str
    scope: list[str]


class GrantIssuer:
    def __init__(
        self,
        clients: ClientRegistry,
        tokens: TokenStore,
        principals: PrincipalStore,
        *,
        access_token_ttl: int = ACCESS_TOKEN_TTL_SECONDS,
        refresh_token_ttl: int = REFRESH_TOKEN_TTL_SECONDS,
        code_ttl: int = AUTH_CODE_TTL_SECONDS,
        rotate_refresh_tokens: bool = ROTATE_REFRESH_TOKENS,
        clock: Callable[[], datetime] = utc_now,
        token_factory: Callable[[], str] = generate_token_value,
        max_generation_attempts: int = 3,
    ):
        self._clients = clients
        self._tokens = tokens
        self._principals = principals
        self.access_token_ttl = access_token_ttl
        # 0 -> refresh tokens never expire
        self.refresh_token_ttl = refresh_token_ttl
        self.code_ttl = min(code_ttl, MAX_AUTH_CODE_TTL_SECONDS)
        self.rotate_refresh_tokens = rotate_refresh_tokens
        self._clock = clock
        self._token_factory = token_factory
        self._max_generation_attempts = max_generation_attempts

    # ------------------------------------------------------------------
    # Authorization endpoint
    # ------------------------------------------------------------------

    async def check_authorization_request(
        self,
        client_id: str | None,
        redirect_uri: str | None,
        response_type: str | None,
        scope: str | None,
    ) -> AuthorizationRequest:
        """Validate an authorize request before the resource owner is asked.

        Checks run in order client -> redirect URI -> response type -> grant ->
        scope.  The first two fail without ``redirect_uri`` set on the error, so
        the browser is never sent to an unvalidated location; later failures
        carry the validated URI and are reported to the client by redirect.
        """
        client = await self._clients.find_client(client_id) if client_id else None
        if client is None:
            raise InvalidClient()
        if not self._clients.validate_redirect_uri(client, redirect_uri):
            raise InvalidRedirectUri()

        try:
            if response_type != "code":
                raise UnsupportedResponseType()
            if not self._clients.permits_grant(client, GrantType.authorization_code):
                raise UnauthorizedClient()

            # Omitted scope -> everything the client is registered for
            requested = parse_scope(scope) if scope else list(client.scopes)
            if not requested:
                raise InvalidScope("Empty scope")
            if not self._clients.validate_scope(client, requested):
                raise InvalidScope()
        except OAuthError as exc:
            exc.redirect_uri = redirect_uri
            raise

        return AuthorizationRequest(client=client, redirect_uri=redirect_uri, scope=parse_scope(requested))

    async def authorize(
        self,
        client_id: str | None,
        redirect_uri: str | None,
        response_type: str | None,
        scope: str | None,
        principal: Principal | None,
    ) -> AuthorizationCode:
        """Mint a single-use code for an authenticated principal."""
        request = await self.check_authorization_request(client_id, redirect_uri, response_type, scope)
        if principal is None:
            exc = AccessDenied("Resource owner is not authenticated")
            exc.redirect_uri = request.redirect_uri
            raise exc

        now = self._clock()
        code = await self._store_new(
            lambda value, digest: AuthorizationCode(
                code_id=digest,
                principal_id=principal.id,
                client_id=request.client.client_id,
                scope=request.scope,
                redirect_uri=request.redirect_uri,
                issued_at=now,
                expires_at=now + timedelta(seconds=self.code_ttl),
                value=value,
            )
        )
        await log_audit_event(
            AuditAction.code_issue,
            principal_id=principal.id,
            client_id=request.client.client_id,
            token_id=code.code_id,
        )
        return code

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    async def exchange_code(
        self,
        client_id: str | None,
        client_secret: str | None,
        code: str | None,
        redirect_uri: str | None,
    ) -> tuple[AccessToken, Optional[RefreshToken]]:
        client = await self._clients.validate_client(client_id, client_secret)
        if not self._clients.permits_grant(client, GrantType.authorization_code):
            raise UnauthorizedClient()
        if not code:
            raise InvalidRequest("An authorization code must be supplied")

        code_id = token_digest(code)
        record = await self._tokens.get_code(code_id)
        if record is None or record.client_id != client.client_id:
            raise InvalidGrant("Invalid authorization code")
        if record.consumed:
            await self._handle_code_reuse(record)
            raise InvalidGrant("Invalid authorization code")
        if not self._clock() < record.expires_at:
            raise InvalidGrant("Authorization code expired")
        if redirect_uri != record.redirect_uri:
            raise InvalidGrant("Redirect URI mismatch")

        if not await self._tokens.consume(code_id):
            # Lost the race against a concurrent exchange of the same code
            await self._handle_code_reuse(record)
            raise InvalidGrant("Invalid authorization code")

        if not self._clients.validate_scope(client, record.scope):
            raise InvalidGrant("Client is no longer allowed the granted scope")
        principal = await self._principals.find_by_id(record.principal_id)
        if principal is None:
            raise InvalidGrant("Resource owner no longer exists")

        refresh = None
        if self._clients.permits_grant(client, GrantType.refresh_token):
            refresh = await self._mint_refresh_token(principal.id, client.client_id, record.scope, code_id)
        access = await self._mint_access_token(
            principal.id,
            client.client_id,
            record.scope,
            refresh_token_id=refresh.token_id if refresh else None,
            code_id=code_id,
        )
        await log_audit_event(
            AuditAction.token_issue,
            principal_id=principal.id,
            client_id=client.client_id,
            token_id=access.token_id,
            metadata={"grant_type": GrantType.authorization_code.value},
        )

        # A reuse flagged while these were being written missed them. The
        # exchange still counts as the one success, but its tokens are dead.
        current = await self._tokens.get_code(code_id)
        if current is not None and current.reuse_detected:
            revoked = await self._tokens.revoke_issued_from_code(code_id)
            await log_audit_event(
                AuditAction.code_reuse,
                AuditStatus.denied,
                principal_id=principal.id,
                client_id=client.client_id,
                token_id=code_id,
                metadata={"revoked": revoked},
            )
        return access, refresh

    async def refresh(
        self,
        client_id: str | None,
        client_secret: str | None,
        refresh_token: str | None,
        scope: str | None = None,
    ) -> tuple[AccessToken, RefreshToken]:
        """Mint a new access token from a refresh token.

        With rotation off the presented refresh token stays valid and is
        returned unchanged; with rotation on it is revoked (its access tokens
        live out their own expiry) and a fresh one is issued.
        """
        client = await self._clients.validate_client(client_id, client_secret)
        if not self._clients.permits_grant(client, GrantType.refresh_token):
            raise UnauthorizedClient()
        if not refresh_token:
            raise InvalidRequest("A refresh token must be supplied")

        token_id = token_digest(refresh_token)
        record = await self._tokens.get_refresh_token(token_id)
        if record is None or record.client_id != client.client_id:
            raise InvalidGrant("Invalid refresh token")
        if not record.is_active(self._clock()):
            raise InvalidGrant("Invalid refresh token")

        requested = parse_scope(scope) if scope else list(record.scope)
        if not requested or not set(requested).issubset(record.scope):
            raise InvalidScope("Requested scope exceeds the original grant")
        if not self._clients.validate_scope(client, record.scope):
            raise InvalidGrant("Client is no longer allowed the granted scope")

        principal = await self._principals.find_by_id(record.principal_id)
        if principal is None:
            raise InvalidGrant("Resource owner no longer exists")

        if self.rotate_refresh_tokens:
            if not await self._tokens.revoke_refresh_token(token_id, cascade=False):
                raise InvalidGrant("Invalid refresh token")
            new_refresh = await self._mint_refresh_token(
                principal.id, client.client_id, record.scope, record.code_id
            )
        else:
            new_refresh = record.model_copy(update={"value": refresh_token})

        access = await self._mint_access_token(
            principal.id,
            client.client_id,
            requested,
            refresh_token_id=new_refresh.token_id,
            code_id=record.code_id,
        )
        await log_audit_event(
            AuditAction.token_refresh,
            principal_id=principal.id,
            client_id=client.client_id,
            token_id=access.token_id,
            metadata={"rotated": self.rotate_refresh_tokens},
        )
        return access, new_refresh

    # ------------------------------------------------------------------
    # Introspection / revocation
    # ------------------------------------------------------------------

    async def check_token(self, value: str | None, requester_is_authenticated: bool) -> TokenIntrospection:
        if not requester_is_authenticated:
            # Before any lookup so the endpoint is no oracle for token guessing
            await log_audit_event(AuditAction.token_check, AuditStatus.denied)
            raise Unauthorized()
        if not value:
            raise InvalidToken()

        record = await self._tokens.get_access_token(token_digest(value))
        if record is None or record.revoked:
            raise InvalidToken()
        if not record.is_active(self._clock()):
            raise InvalidToken("Token has expired")

        client = await self._clients.find_client(record.client_id)
        if client is None or not self._clients.validate_scope(client, record.scope):
            raise InvalidToken()
        principal = await self._principals.find_by_id(record.principal_id)
        if principal is None:
            raise InvalidToken()

        return TokenIntrospection(
            principal_id=record.principal_id,
            client_id=record.client_id,
            scope=list(record.scope),
            expires_at=record.expires_at,
            username=principal.username,
            authorities=list(principal.authorities),
        )

    async def revoke(
        self,
        client_id: str | None,
        client_secret: str | None,
        token: str | None,
        token_type_hint: str | None = None,
    ) -> None:
        """Revoke a token held by the authenticated client.

        Unknown tokens and tokens of other clients are ignored, as RFC 7009
        asks, so the response never reveals which values exist.
        """
        client = await self._clients.validate_client(client_id, client_secret)
        if not token:
            raise InvalidRequest("A token must be supplied")

        token_id = token_digest(token)
        lookups = [self._revoke_refresh, self._revoke_access]
        if token_type_hint == "access_token":
            lookups.reverse()
        for lookup in lookups:
            if await lookup(client, token_id):
                return
        logger.info("token.revoke_ignored", extra={"client_id": client.client_id})

    async def revoke_grants(self, principal_id: str, client_id: str) -> int:
        """Revoke everything *client_id* holds on behalf of *principal_id*."""
        revoked = await self._tokens.revoke_for_principal_and_client(principal_id, client_id)
        await log_audit_event(
            AuditAction.token_revoke,
            principal_id=principal_id,
            client_id=client_id,
            metadata={"revoked": revoked, "sweep": True},
        )
        return revoked

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _revoke_refresh(self, client: Client, token_id: str) -> bool:
        record = await self._tokens.get_refresh_token(token_id)
        if record is None or record.client_id != client.client_id:
            return False
        await self._tokens.revoke_refresh_token(token_id, cascade=True)
        await log_audit_event(
            AuditAction.token_revoke,
            principal_id=record.principal_id,
            client_id=client.client_id,
            token_id=token_id,
            metadata={"token_type": "refresh_token"},
        )
        return True

    async def _revoke_access(self, client: Client, token_id: str) -> bool:
        record = await self._tokens.get_access_token(token_id)
        if record is None or record.client_id != client.client_id:
            return False
        await self._tokens.revoke_access_token(token_id)
        await log_audit_event(
            AuditAction.token_revoke,
            principal_id=record.principal_id,
            client_id=client.client_id,
            token_id=token_id,
            metadata={"token_type": "access_token"},
        )
        return True

    async def _handle_code_reuse(self, record: AuthorizationCode) -> None:
        # A second redemption means the code leaked: kill its whole lineage.
        # Flag first so an exchange still minting sees it on its re-read.
        await self._tokens.flag_code_reuse(record.code_id)
        revoked = await self._tokens.revoke_issued_from_code(record.code_id)
        await log_audit_event(
            AuditAction.code_reuse,
            AuditStatus.denied,
            principal_id=record.principal_id,
            client_id=record.client_id,
            token_id=record.code_id,
            metadata={"revoked": revoked},
        )

    async def _mint_access_token(
        self,
        principal_id: str,
        client_id: str,
        scope: list[str],
        *,
        refresh_token_id: str | None,
        code_id: str | None,
    ) -> AccessToken:
        now = self._clock()
        return await self._store_new(
            lambda value, digest: AccessToken(
                token_id=digest,
                principal_id=principal_id,
                client_id=client_id,
                scope=list(scope),
                issued_at=now,
                expires_at=now + timedelta(seconds=self.access_token_ttl),
                refresh_token_id=refresh_token_id,
                code_id=code_id,
                value=value,
            )
        )

    async def _mint_refresh_token(
        self,
        principal_id: str,
        client_id: str,
        scope: list[str],
        code_id: str | None,
    ) -> RefreshToken:
        now = self._clock()
        expires_at = now + timedelta(seconds=self.refresh_token_ttl) if self.refresh_token_ttl > 0 else None
        return await self._store_new(
            lambda value, digest: RefreshToken(
                token_id=digest,
                principal_id=principal_id,
                client_id=client_id,
                scope=list(scope),
                issued_at=now,
                expires_at=expires_at,
                code_id=code_id,
                value=value,
            )
        )

    async def _store_new(self, build):
        """Draw a fresh value, build the record and insert it.

        A collision with an existing key is retried with a new draw; the
        existing record is never overwritten.
        """
        kind = None
        for attempt in range(1, self._max_generation_attempts + 1):
            value = self._token_factory()
            record = build(value, token_digest(value))
            kind = type(record).__name__
            try:
                await self._tokens.put(record)
            except TokenValueCollision:
                logger.warning("token.collision", extra={"kind": kind, "attempt": attempt})
                continue
            return record
        raise TokenValueCollision(f"Could not generate a unique {kind} value")
