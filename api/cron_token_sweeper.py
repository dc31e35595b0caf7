# Lightweight shim for Vercel Cron

from authserver.cron.token_sweeper import _run  # noqa: WPS450

# Vercel invokes the default exportable object – we expose it as a handler
# that simply reuses the sweeper coroutine.

def handler(_req, _res):  # type: ignore[unused-argument]
    import asyncio
    removed = asyncio.run(_run())
    return {"status": "ok", "removed": removed}
