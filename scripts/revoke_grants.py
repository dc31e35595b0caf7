#!/usr/bin/env python3
"""Revoke every access and refresh token a client holds for one user.

Usage::

    python scripts/revoke_grants.py <principal_id> <client_id>
    python scripts/revoke_grants.py <principal_id> <client_id> --dry-run

Requirements:
    • `SUPABASE_URL`, `SUPABASE_KEY` env vars for service-role access.
"""

from __future__ import annotations

import argparse
import asyncio
import pathlib
import sys

# Ensure project root is on PYTHONPATH so `import authserver.*` works when the
# script is executed directly (e.g. `python scripts/revoke_grants.py`).
PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from authserver.oauth.server import build_authorization_server  # noqa: E402


async def _revoke(args: argparse.Namespace) -> None:
    server = build_authorization_server("supabase")
    if args.dry_run:
        records = await server.tokens.find_by_principal_and_client(args.principal_id, args.client_id)
        live = [r for r in records if not r.revoked]
        print(f"{len(live)} live token(s) would be revoked")
        return

    revoked = await server.issuer.revoke_grants(args.principal_id, args.client_id)
    print(f"Revoked {revoked} token(s)")


def main() -> None:
    parser = argparse.ArgumentParser(description="Revoke a client's grants for one principal")
    parser.add_argument("principal_id")
    parser.add_argument("client_id")
    parser.add_argument("--dry-run", action="store_true")
    asyncio.run(_revoke(parser.parse_args()))


if __name__ == "__main__":
    main()
