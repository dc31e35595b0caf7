"""Dependency providers for external clients and the composed server."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from fastapi import Request
from supabase import AsyncClient, acreate_client

from authserver import SUPABASE_KEY, SUPABASE_URL

if TYPE_CHECKING:  # pragma: no cover
    from authserver.oauth.server import AuthorizationServer


_cached_client: AsyncClient | None = None
_cached_loop: asyncio.AbstractEventLoop | None = None


async def get_supabase_client() -> AsyncClient:
    """Return a cached Supabase async client tied to the current event loop.

    Re-using an ``AsyncClient`` that was created on a *different* loop raises
    ``RuntimeError('Event loop is closed')`` once its underlying httpx
    connection attempts I/O, so the cache is kept **per-loop** rather than
    per-process.
    """

    global _cached_client, _cached_loop

    current_loop = asyncio.get_running_loop()

    if (
        _cached_client is None
        or _cached_loop is None
        or _cached_loop is not current_loop
        or _cached_loop.is_closed()
    ):
        if not SUPABASE_URL or not SUPABASE_KEY:
            raise RuntimeError("Supabase env vars not configured")
        _cached_client = await acreate_client(SUPABASE_URL, SUPABASE_KEY)
        _cached_loop = current_loop

    return _cached_client


def get_authorization_server(request: Request) -> "AuthorizationServer":
    """FastAPI dependency returning the server bundle built in ``create_app``."""
    return request.app.state.authorization_server
