"""Entry-point for the authorization server ASGI app.

This module constructs the FastAPI instance, wires global middleware,
registers all route groups, and exposes the `app` variable that ASGI servers
(``uvicorn authserver.main:app``) import.
"""

from __future__ import annotations

import os
import logging
import traceback
from contextvars import ContextVar
from time import perf_counter
from typing import Callable, Awaitable, Dict

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from authserver import APP_ENV

# Router imports moved *inside* create_app() to avoid circular dependency
# with the routers importing `limiter` from this module before it's defined.
from authserver.errors import OAuthError
from authserver.utils.logger import configure_logging, logger
from authserver.settings import ALLOWED_ORIGINS

# ---------------------------------------------------------------------------
# Runtime environment
# ---------------------------------------------------------------------------


# Rate limiter (IP-based by default)
limiter = Limiter(key_func=get_remote_address, default_limits=["120/minute"])

# Which challenge a 401/403 carries, keyed by OAuth error code
_CHALLENGES = {
    "invalid_client": 'Basic realm="oauth"',
    "unauthorized": 'Basic realm="oauth"',
    "invalid_token": 'Bearer realm="oauth", error="invalid_token"',
    "insufficient_scope": 'Bearer realm="oauth", error="insufficient_scope"',
}


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id and log one line when it completes.

    Bearer-protected routes leave the caller on ``request.state``; it is
    copied into the log line so token use can be traced per client.
    """

    _request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:  # type: ignore[override]
        start = perf_counter()
        request_id = request.headers.get("X-Request-Id") or os.urandom(4).hex()
        token = self._request_id_ctx.set(request_id)
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-Id"] = request_id
        finally:
            logger.info(
                "request.complete",
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": status_code,
                    "duration_ms": round((perf_counter() - start) * 1000, 2),
                    "request_id": request_id,
                    "client_id": getattr(request.state, "client_id", None),
                },
            )
            self._request_id_ctx.reset(token)
        return response


def create_app() -> FastAPI:  # noqa: C901
    configure_logging()

    app = FastAPI(
        title="OAuth 2.0 Authorization Server",
        version="0.1.0",
        docs_url="/docs" if APP_ENV != "production" else None,
        redoc_url=None,
        openapi_url="/openapi.json" if APP_ENV != "production" else None,
    )

    # Components are composed once and shared by every request
    from authserver.oauth.server import build_authorization_server  # noqa: WPS433 (runtime import)

    app.state.authorization_server = build_authorization_server()

    # Global middleware
    app.add_middleware(RequestContextMiddleware)
    # Rate limiting middleware (SlowAPI expects limiter via app.state)
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)

    # Register default handler for 429 responses from SlowAPI
    from slowapi.errors import RateLimitExceeded  # noqa: WPS433  (runtime import)
    from slowapi import _rate_limit_exceeded_handler

    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Protocol errors -> RFC 6749 error body
    @app.exception_handler(OAuthError)
    async def render_oauth_error(request: Request, exc: OAuthError):
        headers = {"Cache-Control": "no-store", "Pragma": "no-cache"}
        challenge = _CHALLENGES.get(exc.error)
        if challenge and exc.status_code in (401, 403):
            headers["WWW-Authenticate"] = challenge
        if exc.status_code >= 500:
            logger.warning("oauth.upstream_failure", extra={"path": request.url.path, "error": exc.error})
        return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)

    # Global exception handler - logs full tracebacks for any unhandled 500s
    @app.exception_handler(Exception)
    async def log_unhandled_exceptions(request: Request, exc: Exception):
        """Log full traceback for any unhandled exception that would become a 500."""
        error_logger = logging.getLogger("uvicorn.error")
        error_logger.error(
            "UNHANDLED %s at %s %s\n%s",
            type(exc).__name__,
            request.method,
            request.url.path,
            "".join(traceback.format_tb(exc.__traceback__))
        )
        # Generic body: no protocol or internal detail crosses the boundary
        return JSONResponse({"error": "server_error"}, status_code=500)

    # -------------------------------------------------------------------
    # CORS (env-driven allow-list)
    # -------------------------------------------------------------------

    logger.info("cors.configured", extra={"allowed_origins": ALLOWED_ORIGINS})
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
        max_age=600,
    )

    # Health check
    @app.get("/")
    async def root() -> Dict[str, str]:  # pylint: disable=unused-variable
        return {"status": "ok"}

    # -------------------------------------------------------------------
    # Mount public (unauthenticated) sub-app → wildcard CORS
    # -------------------------------------------------------------------
    public_app = FastAPI(
        title="OAuth 2.0 Authorization Server – public",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    public_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["*"],
        max_age=600,
    )
    from authserver.routers.oauth_routes import public_router as metadata_public_router
    # Discovery document at both /public/.well-known/... and the standard
    # /.well-known/oauth-authorization-server location.
    public_app.include_router(metadata_public_router)
    app.include_router(metadata_public_router)

    # Mount at /public (eg. /public/.well-known/oauth-authorization-server)
    app.mount("/public", public_app)

    # Expose the main app's OpenAPI YAML at /public/openapi.yaml
    from authserver.openapi import install_openapi_route  # noqa: WPS433 (runtime import)

    install_openapi_route(public_app, source=app)

    # Register routers – explicit order matters for overrides
    from authserver.routers import oauth_routes, login_routes, resource_routes
    app.include_router(oauth_routes.router)
    app.include_router(login_routes.router)
    app.include_router(resource_routes.router)

    return app

# The object uvicorn imports
app = create_app()
