#!/usr/bin/env python3
"""Register a client application in the `clients` table.

Usage::

    python scripts/register_client.py my-app \
        --redirect-uri https://my-app.example/callback \
        --scope read --scope write

    # generate the secret instead of passing one
    python scripts/register_client.py my-app --redirect-uri ... --generate-secret

Requirements:
    • `SUPABASE_URL`, `SUPABASE_KEY` env vars for service-role access.

Only the bcrypt hash of the secret is stored; a generated secret is printed
once and cannot be recovered afterwards.
"""

from __future__ import annotations

import argparse
import asyncio
import pathlib
import sys

# Ensure project root is on PYTHONPATH so `import authserver.*` works when the
# script is executed directly (e.g. `python scripts/register_client.py`).
PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from authserver.oauth.clients import SupabaseClientRegistry, build_client  # noqa: E402
from authserver.utils.security_utils import generate_token_value  # noqa: E402


async def _register(args: argparse.Namespace) -> None:
    secret = generate_token_value() if args.generate_secret else args.secret
    if not secret:
        sys.exit("Either --secret or --generate-secret is required")

    client = build_client(
        args.client_id,
        secret,
        redirect_uris=args.redirect_uri,
        scopes=args.scope,
        grant_types=args.grant_type,
        auto_approve=args.auto_approve,
        name=args.name,
    )
    if args.dry_run:
        print(client.model_dump_json(indent=2, exclude={"client_secret_hash"}))
        return

    try:
        await SupabaseClientRegistry().save(client)
    except ValueError as exc:
        sys.exit(str(exc))

    print(f"Registered client {client.client_id}")
    if args.generate_secret:
        print(f"client_secret: {secret}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Register an OAuth client application")
    parser.add_argument("client_id")
    parser.add_argument("--secret", help="Client secret (omit with --generate-secret)")
    parser.add_argument("--generate-secret", action="store_true", help="Generate a random secret and print it")
    parser.add_argument("--redirect-uri", action="append", required=True, help="Allowed redirect URI (repeatable)")
    parser.add_argument("--scope", action="append", default=[], help="Allowed scope (repeatable)")
    parser.add_argument(
        "--grant-type",
        action="append",
        choices=["authorization_code", "refresh_token"],
        help="Allowed grant type (repeatable, default both)",
    )
    parser.add_argument("--name", help="Display name shown on the consent page")
    parser.add_argument("--auto-approve", action="store_true", help="Skip the consent prompt")
    parser.add_argument("--dry-run", action="store_true", help="Print the record instead of saving it")
    asyncio.run(_register(parser.parse_args()))


if __name__ == "__main__":
    main()
