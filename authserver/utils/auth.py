"""Caller authentication for the HTTP layer.

Three kinds of caller reach this server:

* the resource owner's browser, identified by a signed session cookie set at
  login (``current_principal``);
* client applications, authenticating with HTTP Basic client credentials
  (``authenticate_caller``; the token endpoints leave the check to the
  grant issuer);
* resource servers and clients presenting a bearer access token
  (``require_bearer``).

Each check is an explicit dependency evaluated inside the route.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBasic, HTTPBasicCredentials, HTTPBearer

from authserver import APP_ENV
from authserver.errors import InsufficientScope, InvalidClient, InvalidToken
from authserver.models import AuthContext, Client, Principal
from authserver.oauth.server import AuthorizationServer
from authserver.settings import SESSION_TTL_SECONDS
from authserver.utils.dependencies import get_authorization_server
from authserver.utils.security_utils import read_signed_payload, sign_payload

SESSION_COOKIE = "authserver_session"
SESSION_AUDIENCE = "authserver:session"

basic_scheme = HTTPBasic(auto_error=False)
bearer_scheme = HTTPBearer(auto_error=False)

# ---------------------------------------------------------------------------
# Resource-owner session
# ---------------------------------------------------------------------------


def set_cookie(response: Response, name: str, value: str, max_age: int) -> None:
    response.set_cookie(
        name,
        value,
        max_age=max_age,
        httponly=True,
        samesite="lax",
        secure=APP_ENV == "production",
    )


def start_session(response: Response, principal: Principal) -> None:
    token = sign_payload({"sub": principal.id}, audience=SESSION_AUDIENCE, ttl_seconds=SESSION_TTL_SECONDS)
    set_cookie(response, SESSION_COOKIE, token, SESSION_TTL_SECONDS)


def end_session(response: Response) -> None:
    response.delete_cookie(SESSION_COOKIE)


async def current_principal(
    request: Request,
    server: AuthorizationServer = Depends(get_authorization_server),
) -> Optional[Principal]:
    """Return the logged-in principal or ``None``.

    A valid cookie for a principal that no longer exists counts as logged out.
    """
    claims = read_signed_payload(request.cookies.get(SESSION_COOKIE), audience=SESSION_AUDIENCE)
    if not claims or not claims.get("sub"):
        return None
    return await server.principals.find_by_id(claims["sub"])


# ---------------------------------------------------------------------------
# Client authentication (HTTP Basic)
# ---------------------------------------------------------------------------


async def authenticate_caller(
    server: AuthorizationServer,
    credentials: HTTPBasicCredentials | None,
) -> Client | None:
    """Return the authenticated client, or ``None`` for anonymous / bad credentials."""
    if credentials is None:
        return None
    try:
        return await server.clients.validate_client(credentials.username, credentials.password)
    except InvalidClient:
        return None


# ---------------------------------------------------------------------------
# Bearer access tokens
# ---------------------------------------------------------------------------


def require_bearer(*scopes: str):
    """
    Dependency factory protecting a resource endpoint.

    Examples:
        auth: AuthContext = Depends(require_bearer("read"))
        auth: AuthContext = Depends(require_bearer("read", "write"))
    """

    async def _bearer_dependency(
        request: Request,
        credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
        server: AuthorizationServer = Depends(get_authorization_server),
    ) -> AuthContext:
        if credentials is None or not credentials.credentials:
            raise InvalidToken("Full authentication is required to access this resource")

        # The resource server is this process, so the caller is trusted
        introspection = await server.issuer.check_token(credentials.credentials, True)

        auth = AuthContext(
            principal_id=introspection.principal_id,
            client_id=introspection.client_id,
            scopes=list(introspection.scope),
            username=introspection.username,
            authorities=list(introspection.authorities),
        )
        if not auth.has_all_scopes(*scopes):
            raise InsufficientScope()

        request.state.principal_id = auth.principal_id
        request.state.client_id = auth.client_id
        return auth

    return _bearer_dependency
