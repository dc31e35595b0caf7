"""Login methods: native username/password and delegated provider login.

Each method turns a set of request parameters into a local
:class:`Principal` through the same ``complete_login`` contract, so the login
routes dispatch on the method name without knowing provider details.

The provider methods act as an OAuth *client*: they exchange the provider's
code for a provider access token, read the provider user id from its
user-info endpoint and map it to ``"{provider_user_id}@{domain}"``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Mapping
from urllib.parse import urlencode

import httpx

from authserver.errors import DelegatedAuthFailed, PrincipalConflict, UpstreamUnavailable
from authserver.models import AuditAction, AuditStatus, Principal
from authserver.oauth.credentials import CredentialVerifier
from authserver.oauth.principals import PrincipalStore
from authserver.settings import UPSTREAM_TIMEOUT_SECONDS
from authserver.utils.audit import log_audit_event
from authserver.utils.logger import logger
from authserver.utils.security_utils import constant_time_equals
from authserver.utils.utils import generate_uuid, utc_now


def _json_object(resp: httpx.Response) -> dict:
    resp.raise_for_status()
    body = resp.json()
    if not isinstance(body, dict):
        raise ValueError(f"Expected a JSON object, got {type(body).__name__}")
    return body


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    domain: str
    client_id: str
    client_secret: str
    auth_url: str
    token_url: str
    userinfo_url: str
    scope: str
    # Facebook's Graph API takes the code exchange as a GET
    token_method: str = "POST"
    userinfo_params: Mapping[str, str] | None = None


class LoginMethod(ABC):
    name: str

    @abstractmethod
    async def complete_login(self, params: Mapping[str, Any]) -> Principal: ...


class NativeLogin(LoginMethod):
    name = "native"

    def __init__(self, verifier: CredentialVerifier):
        self._verifier = verifier

    async def complete_login(self, params: Mapping[str, Any]) -> Principal:
        return await self._verifier.authenticate(params.get("username"), params.get("password"))


class ProviderLogin(LoginMethod):
    """OAuth client round-trip against one external identity provider."""

    def __init__(
        self,
        config: ProviderConfig,
        principals: PrincipalStore,
        *,
        redirect_uri: str,
        timeout: float = UPSTREAM_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self.name = config.name
        self._principals = principals
        self._redirect_uri = redirect_uri
        self._timeout = timeout
        self._transport = transport

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": self._redirect_uri,
            "response_type": "code",
            "scope": self.config.scope,
            "state": state,
        }
        return f"{self.config.auth_url}?{urlencode(params)}"

    def map_username(self, provider_user_id: str) -> str:
        return f"{provider_user_id}@{self.config.domain}"

    async def complete_login(self, params: Mapping[str, Any]) -> Principal:
        if params.get("error"):
            logger.info("delegated.provider_error", extra={"provider": self.name, "error": params.get("error")})
            raise DelegatedAuthFailed()
        code = params.get("code")
        if not code:
            raise DelegatedAuthFailed()

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as http:
                provider_token = await self._exchange_code(http, code)
                user_info = await self._fetch_user_info(http, provider_token)
        except httpx.TimeoutException as exc:
            logger.warning("delegated.timeout", extra={"provider": self.name})
            raise UpstreamUnavailable() from exc
        except (httpx.HTTPError, ValueError) as exc:
            # Non-2xx status, transport failure or a body that is not JSON
            logger.warning("delegated.http_error", extra={"provider": self.name, "error": type(exc).__name__})
            raise DelegatedAuthFailed() from exc

        provider_user_id = user_info.get("id") or user_info.get("sub")
        if not provider_user_id:
            raise DelegatedAuthFailed()
        return await self._find_or_create(str(provider_user_id), user_info)

    async def _exchange_code(self, http: httpx.AsyncClient, code: str) -> str:
        payload = {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "redirect_uri": self._redirect_uri,
            "code": code,
            "grant_type": "authorization_code",
        }
        if self.config.token_method == "GET":
            resp = await http.get(self.config.token_url, params=payload)
        else:
            resp = await http.post(self.config.token_url, data=payload, headers={"Accept": "application/json"})
        access_token = _json_object(resp).get("access_token")
        if not access_token:
            raise DelegatedAuthFailed()
        return access_token

    async def _fetch_user_info(self, http: httpx.AsyncClient, provider_token: str) -> dict:
        resp = await http.get(
            self.config.userinfo_url,
            params=dict(self.config.userinfo_params or {}),
            headers={"Authorization": f"Bearer {provider_token}"},
        )
        return _json_object(resp)

    async def _find_or_create(self, provider_user_id: str, user_info: Mapping[str, Any]) -> Principal:
        username = self.map_username(provider_user_id)
        principal = await self._principals.find_by_username(username)

        if principal is None:
            candidate = Principal(
                id=generate_uuid(),
                username=username,
                display_name=user_info.get("name"),
                email=user_info.get("email"),
                password_hash=None,
                provider=self.name,
                created_at=utc_now(),
            )
            try:
                principal = await self._principals.create(candidate)
            except PrincipalConflict:
                # Created by a concurrent first login
                principal = await self._principals.find_by_username(username)
                if principal is None:
                    raise DelegatedAuthFailed()
            else:
                await log_audit_event(AuditAction.principal_create, principal_id=principal.id, metadata={"provider": self.name})

        if principal.has_password:
            # Native account that happens to hold the mapped username
            await log_audit_event(
                AuditAction.login_failure,
                AuditStatus.denied,
                principal_id=principal.id,
                metadata={"provider": self.name, "reason": "username_collision"},
            )
            raise DelegatedAuthFailed()

        await log_audit_event(AuditAction.login_success, principal_id=principal.id, metadata={"method": self.name})
        return principal


class FacebookLogin(ProviderLogin):
    @staticmethod
    def default_config(client_id: str, client_secret: str) -> ProviderConfig:
        return ProviderConfig(
            name="facebook",
            domain="facebook.com",
            client_id=client_id,
            client_secret=client_secret,
            auth_url="https://www.facebook.com/dialog/oauth",
            token_url="https://graph.facebook.com/oauth/access_token",
            userinfo_url="https://graph.facebook.com/me",
            scope="public_profile email",
            token_method="GET",
            userinfo_params={"fields": "id,name,email"},
        )


class GoogleLogin(ProviderLogin):
    @staticmethod
    def default_config(client_id: str, client_secret: str) -> ProviderConfig:
        return ProviderConfig(
            name="google",
            domain="google.com",
            client_id=client_id,
            client_secret=client_secret,
            auth_url="https://accounts.google.com/o/oauth2/v2/auth",
            token_url="https://oauth2.googleapis.com/token",
            userinfo_url="https://www.googleapis.com/oauth2/v2/userinfo",
            scope="openid email profile",
        )


PROVIDER_CLASSES: dict[str, type[ProviderLogin]] = {
    "facebook": FacebookLogin,
    "google": GoogleLogin,
}


class DelegatedLoginBridge:
    """Dispatch over the configured external providers."""

    def __init__(self, methods: Mapping[str, ProviderLogin]):
        self._methods = dict(methods)

    @property
    def providers(self) -> list[str]:
        return sorted(self._methods)

    def _method(self, provider_id: str) -> ProviderLogin:
        method = self._methods.get(provider_id)
        if method is None:
            raise DelegatedAuthFailed("Unknown login provider")
        return method

    def begin_delegated_login(self, provider_id: str, state: str) -> str:
        """Return the provider consent-screen URL carrying *state*."""
        return self._method(provider_id).authorization_url(state)

    async def complete_delegated_login(
        self,
        provider_id: str,
        params: Mapping[str, Any],
        expected_state: str | None,
    ) -> Principal:
        method = self._method(provider_id)
        if not constant_time_equals(params.get("state"), expected_state):
            logger.info("delegated.state_mismatch", extra={"provider": provider_id})
            raise DelegatedAuthFailed()
        return await method.complete_login(params)
