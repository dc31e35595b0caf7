from __future__ import annotations

"""Cron job: delete authorization codes and tokens whose window has closed.

   Expired records can never validate again, so removing them is *idempotent*
   and safe to run every few minutes.  Refresh tokens without an expiry are
   kept.  Hook it up to a scheduler with::

       python -m authserver.cron.token_sweeper

   It exits with status-code 0 on success.
"""

import asyncio

from authserver.oauth.tokens import SupabaseTokenStore, TokenStore
from authserver.utils.logger import configure_logging, logger


async def _run(store: TokenStore | None = None) -> int:
    store = store or SupabaseTokenStore()
    removed = await store.purge_expired()
    logger.info("cron.token_sweeper", extra={"removed": removed})
    return removed


if __name__ == "__main__":
    configure_logging()
    asyncio.run(_run())
