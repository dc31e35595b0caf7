"""Authorization and token endpoints (RFC 6749 §3.1, §3.2, RFC 7009)."""

from html import escape
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from fastapi import APIRouter, Depends, Form, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.security import HTTPBasicCredentials

# Rate limiter exported by main.py
from authserver.main import limiter

from authserver.errors import InvalidRequest, OAuthError, UnsupportedGrantType
from authserver.models import (
    AuditAction,
    AuditStatus,
    GrantType,
    IntrospectionResponse,
    Principal,
    ServerMetadataResponse,
    TokenResponse,
    format_scope,
)
from authserver.oauth.grants import AuthorizationRequest
from authserver.oauth.server import AuthorizationServer
from authserver.settings import PUBLIC_BASE_URL
from authserver.utils.audit import log_audit_event
from authserver.utils.auth import authenticate_caller, basic_scheme, current_principal
from authserver.utils.dependencies import get_authorization_server
from authserver.utils.security_utils import read_signed_payload, sign_payload

router = APIRouter(prefix="/oauth", tags=["oauth"])

# Discovery document (no auth)
public_router = APIRouter(prefix="/.well-known", tags=["oauth-public"])

CONSENT_AUDIENCE = "authserver:consent"
CONSENT_TTL_SECONDS = 600

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _with_query(uri: str, params: dict[str, Optional[str]]) -> str:
    """Append *params* to *uri*, keeping whatever query it already has."""
    parts = urlsplit(uri)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunsplit(parts._replace(query=urlencode(query)))


def _authorize_error(exc: OAuthError, state: str | None, status_code: int = 302):
    # Errors found before the redirect URI was validated go to the browser
    if not exc.redirect_uri:
        raise exc
    location = _with_query(
        exc.redirect_uri,
        {"error": exc.error, "error_description": exc.description, "state": state},
    )
    return RedirectResponse(location, status_code=status_code)


def _login_redirect(request: Request, status_code: int = 302) -> RedirectResponse:
    target = request.url.path
    if request.url.query:
        target = f"{target}?{request.url.query}"
    return RedirectResponse(f"/login?{urlencode({'next': target})}", status_code=status_code)


async def _issue_code(
    server: AuthorizationServer,
    auth_request: AuthorizationRequest,
    principal: Principal,
    state: str | None,
    status_code: int,
):
    try:
        code = await server.issuer.authorize(
            auth_request.client.client_id,
            auth_request.redirect_uri,
            "code",
            format_scope(auth_request.scope),
            principal,
        )
    except OAuthError as exc:
        return _authorize_error(exc, state, status_code)
    location = _with_query(auth_request.redirect_uri, {"code": code.value, "state": state})
    return RedirectResponse(location, status_code=status_code)


def _consent_page(auth_request: AuthorizationRequest, principal: Principal, state: str | None) -> HTMLResponse:
    consent_token = sign_payload(
        {
            "sub": principal.id,
            "client_id": auth_request.client.client_id,
            "redirect_uri": auth_request.redirect_uri,
            "scope": format_scope(auth_request.scope),
        },
        audience=CONSENT_AUDIENCE,
        ttl_seconds=CONSENT_TTL_SECONDS,
    )
    client_name = escape(auth_request.client.name or auth_request.client.client_id)
    scopes = "".join(f"<li>{escape(s)}</li>" for s in auth_request.scope)
    hidden = {
        "response_type": "code",
        "client_id": auth_request.client.client_id,
        "redirect_uri": auth_request.redirect_uri,
        "scope": format_scope(auth_request.scope),
        "state": state or "",
        "consent_token": consent_token,
    }
    fields = "".join(
        f'<input type="hidden" name="{name}" value="{escape(value, quote=True)}">' for name, value in hidden.items()
    )
    body = f"""<!doctype html>
<html><head><title>Authorize {client_name}</title></head>
<body>
<h1>Authorize {client_name}?</h1>
<p>Signed in as {escape(principal.display_name or principal.username)}. The application requests:</p>
<ul>{scopes}</ul>
<form method="post" action="/oauth/authorize">
{fields}
<button type="submit" name="user_oauth_approval" value="true">Approve</button>
<button type="submit" name="user_oauth_approval" value="false">Deny</button>
</form>
</body></html>"""
    return HTMLResponse(body, headers=NO_STORE_HEADERS)


# ---------------------------------------------------------------------------
# Authorization endpoint
# ---------------------------------------------------------------------------


@router.get("/authorize", include_in_schema=False)
async def authorize(
    request: Request,
    response_type: str | None = Query(None),
    client_id: str | None = Query(None),
    redirect_uri: str | None = Query(None),
    scope: str | None = Query(None),
    state: str | None = Query(None),
    principal: Principal | None = Depends(current_principal),
    server: AuthorizationServer = Depends(get_authorization_server),
):
    """Start the code flow: validate, then login, consent and redirect with a code."""
    try:
        auth_request = await server.issuer.check_authorization_request(client_id, redirect_uri, response_type, scope)
    except OAuthError as exc:
        return _authorize_error(exc, state)

    if principal is None:
        return _login_redirect(request)

    if auth_request.client.auto_approve:
        return await _issue_code(server, auth_request, principal, state, status_code=302)
    return _consent_page(auth_request, principal, state)


@router.post("/authorize", include_in_schema=False)
async def approve(
    request: Request,
    response_type: str | None = Form(None),
    client_id: str | None = Form(None),
    redirect_uri: str | None = Form(None),
    scope: str | None = Form(None),
    state: str | None = Form(None),
    user_oauth_approval: str | None = Form(None),
    consent_token: str | None = Form(None),
    principal: Principal | None = Depends(current_principal),
    server: AuthorizationServer = Depends(get_authorization_server),
):
    """Resource-owner decision posted from the consent page."""
    state = state or None
    try:
        auth_request = await server.issuer.check_authorization_request(client_id, redirect_uri, response_type, scope)
    except OAuthError as exc:
        return _authorize_error(exc, state, status_code=303)

    if principal is None:
        return RedirectResponse("/login", status_code=303)

    claims = read_signed_payload(consent_token, audience=CONSENT_AUDIENCE)
    expected = {
        "sub": principal.id,
        "client_id": auth_request.client.client_id,
        "redirect_uri": auth_request.redirect_uri,
        "scope": format_scope(auth_request.scope),
    }
    if not claims or any(claims.get(k) != v for k, v in expected.items()):
        exc = InvalidRequest("Consent form expired or was tampered with")
        exc.redirect_uri = auth_request.redirect_uri
        return _authorize_error(exc, state, status_code=303)

    if (user_oauth_approval or "").lower() != "true":
        await log_audit_event(
            AuditAction.consent_deny,
            AuditStatus.denied,
            principal_id=principal.id,
            client_id=auth_request.client.client_id,
        )
        location = _with_query(
            auth_request.redirect_uri,
            {"error": "access_denied", "error_description": "User denied access", "state": state},
        )
        return RedirectResponse(location, status_code=303)

    return await _issue_code(server, auth_request, principal, state, status_code=303)


# ---------------------------------------------------------------------------
# Token endpoint
# ---------------------------------------------------------------------------


@router.post("/token", response_model=TokenResponse)
@limiter.limit("30/minute")
async def token(
    request: Request,
    grant_type: str | None = Form(None),
    code: str | None = Form(None),
    redirect_uri: str | None = Form(None),
    refresh_token: str | None = Form(None),
    scope: str | None = Form(None),
    credentials: HTTPBasicCredentials | None = Depends(basic_scheme),
    server: AuthorizationServer = Depends(get_authorization_server),
):
    """Exchange an authorization code or refresh token for an access token."""
    client_id = credentials.username if credentials else None
    client_secret = credentials.password if credentials else None

    if not grant_type:
        raise InvalidRequest("Missing grant type")
    if grant_type == GrantType.authorization_code.value:
        access, refresh = await server.issuer.exchange_code(client_id, client_secret, code, redirect_uri)
    elif grant_type == GrantType.refresh_token.value:
        access, refresh = await server.issuer.refresh(client_id, client_secret, refresh_token, scope)
    else:
        raise UnsupportedGrantType()

    body = TokenResponse(
        access_token=access.value,
        expires_in=int((access.expires_at - access.issued_at).total_seconds()),
        refresh_token=refresh.value if refresh else None,
        scope=format_scope(access.scope),
    )
    return JSONResponse(body.model_dump(exclude_none=True), headers=NO_STORE_HEADERS)


@router.get("/check_token", response_model=IntrospectionResponse)
async def check_token(
    token: str | None = Query(None),
    credentials: HTTPBasicCredentials | None = Depends(basic_scheme),
    server: AuthorizationServer = Depends(get_authorization_server),
):
    """Introspect an access token; only authenticated clients may ask."""
    caller = await authenticate_caller(server, credentials)
    introspection = await server.issuer.check_token(token, caller is not None)
    return IntrospectionResponse(
        principal_id=introspection.principal_id,
        user_name=introspection.username,
        client_id=introspection.client_id,
        scope=format_scope(introspection.scope),
        exp=int(introspection.expires_at.timestamp()),
        authorities=introspection.authorities,
    )


@router.post("/revoke")
@limiter.limit("30/minute")
async def revoke(
    request: Request,
    token: str | None = Form(None),
    token_type_hint: str | None = Form(None),
    credentials: HTTPBasicCredentials | None = Depends(basic_scheme),
    server: AuthorizationServer = Depends(get_authorization_server),
):
    """Revoke a refresh token (and its access tokens) or a single access token."""
    await server.issuer.revoke(
        credentials.username if credentials else None,
        credentials.password if credentials else None,
        token,
        token_type_hint,
    )
    return JSONResponse({}, headers=NO_STORE_HEADERS)


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


@public_router.get("/oauth-authorization-server", response_model=ServerMetadataResponse)
async def server_metadata():
    return ServerMetadataResponse(
        issuer=PUBLIC_BASE_URL,
        authorization_endpoint=f"{PUBLIC_BASE_URL}/oauth/authorize",
        token_endpoint=f"{PUBLIC_BASE_URL}/oauth/token",
        revocation_endpoint=f"{PUBLIC_BASE_URL}/oauth/revoke",
        introspection_endpoint=f"{PUBLIC_BASE_URL}/oauth/check_token",
        response_types_supported=["code"],
        grant_types_supported=[g.value for g in GrantType],
        token_endpoint_auth_methods_supported=["client_secret_basic"],
    )
