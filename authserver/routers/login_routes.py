"""Resource-owner login: native form and delegated provider round-trips."""

from html import escape
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, Query, Request
from fastapi.responses import HTMLResponse, RedirectResponse

# Rate limiter exported by main.py
from authserver.main import limiter

from authserver.errors import DelegatedAuthFailed, InvalidCredentials
from authserver.oauth.server import AuthorizationServer
from authserver.utils.auth import end_session, set_cookie, start_session
from authserver.utils.dependencies import get_authorization_server
from authserver.utils.logger import logger
from authserver.utils.security_utils import generate_token_value, read_signed_payload, sign_payload
from authserver.utils.utils import is_safe_next_path

router = APIRouter(tags=["login"])

STATE_COOKIE = "authserver_login_state"
STATE_AUDIENCE = "authserver:delegated-state"
STATE_TTL_SECONDS = 600


def _next_or_root(next_path: str | None) -> str:
    return next_path if is_safe_next_path(next_path) else "/"


def _login_failed(next_path: str | None) -> RedirectResponse:
    # One generic message for every failure reason
    params = {"error": "1"}
    if is_safe_next_path(next_path):
        params["next"] = next_path
    return RedirectResponse(f"/login?{urlencode(params)}", status_code=303)


@router.get("/login", response_class=HTMLResponse, include_in_schema=False)
async def login_page(
    next: str | None = Query(None),
    error: str | None = Query(None),
    server: AuthorizationServer = Depends(get_authorization_server),
):
    next_path = _next_or_root(next)
    message = '<p class="error">Bad credentials</p>' if error else ""
    providers = "".join(
        f'<li><a href="/login/{name}?{urlencode({"next": next_path})}">Log in with {name.title()}</a></li>'
        for name in server.bridge.providers
    )
    body = f"""<!doctype html>
<html><head><title>Login</title></head>
<body>
<h1>Login</h1>
{message}
<form method="post" action="/login">
<input type="hidden" name="next" value="{escape(next_path, quote=True)}">
<label>Username <input name="username" autocomplete="username"></label>
<label>Password <input type="password" name="password" autocomplete="current-password"></label>
<button type="submit">Log in</button>
</form>
<ul>{providers}</ul>
</body></html>"""
    return HTMLResponse(body, headers={"Cache-Control": "no-store"})


@router.post("/login", include_in_schema=False)
@limiter.limit("10/minute")
async def login(
    request: Request,
    username: str | None = Form(None),
    password: str | None = Form(None),
    next: str | None = Form(None),
    server: AuthorizationServer = Depends(get_authorization_server),
):
    try:
        principal = await server.complete_login("native", {"username": username, "password": password})
    except InvalidCredentials:
        return _login_failed(next)

    response = RedirectResponse(_next_or_root(next), status_code=303)
    start_session(response, principal)
    return response


@router.post("/logout", include_in_schema=False)
async def logout():
    response = RedirectResponse("/login", status_code=303)
    end_session(response)
    return response


@router.get("/login/{provider}", include_in_schema=False)
@limiter.limit("20/minute")
async def delegated_login(
    request: Request,
    provider: str,
    next: str | None = Query(None),
    server: AuthorizationServer = Depends(get_authorization_server),
):
    """Begin a provider login, or finish it when the provider calls back.

    The provider redirects back to this same URL with ``code`` (or ``error``)
    and the ``state`` we sent; the state is checked against the signed cookie
    set when the round-trip began.
    """
    params = dict(request.query_params)

    if "code" not in params and "error" not in params:
        state = generate_token_value()
        try:
            location = server.bridge.begin_delegated_login(provider, state)
        except DelegatedAuthFailed:
            return _login_failed(next)
        response = RedirectResponse(location, status_code=302)
        cookie = sign_payload(
            {"state": state, "provider": provider, "next": _next_or_root(next)},
            audience=STATE_AUDIENCE,
            ttl_seconds=STATE_TTL_SECONDS,
        )
        set_cookie(response, STATE_COOKIE, cookie, STATE_TTL_SECONDS)
        return response

    saved = read_signed_payload(request.cookies.get(STATE_COOKIE), audience=STATE_AUDIENCE) or {}
    if saved.get("provider") != provider:
        saved = {}
    next_path = saved.get("next")

    try:
        principal = await server.bridge.complete_delegated_login(provider, params, saved.get("state"))
    except DelegatedAuthFailed:
        logger.info("login.delegated_failed", extra={"provider": provider})
        response = _login_failed(next_path)
        response.delete_cookie(STATE_COOKIE)
        return response

    response = RedirectResponse(_next_or_root(next_path), status_code=303)
    response.delete_cookie(STATE_COOKIE)
    start_session(response, principal)
    return response
