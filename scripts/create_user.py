#!/usr/bin/env python3
"""Create a resource owner with a password in the `users` table.

Usage::

    python scripts/create_user.py alice --email alice@example.com
    # password is prompted for unless --password is given

Requirements:
    • `SUPABASE_URL`, `SUPABASE_KEY` env vars for service-role access.
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import pathlib
import sys

# Ensure project root is on PYTHONPATH so `import authserver.*` works when the
# script is executed directly (e.g. `python scripts/create_user.py`).
PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from authserver.errors import PrincipalConflict  # noqa: E402
from authserver.oauth.credentials import CredentialVerifier  # noqa: E402
from authserver.oauth.principals import SupabasePrincipalStore  # noqa: E402
from authserver.utils.audit import persist_audit_events  # noqa: E402
from authserver.utils.dependencies import get_supabase_client  # noqa: E402


async def _create(args: argparse.Namespace) -> None:
    password = args.password or getpass.getpass("Password: ")
    if not password:
        sys.exit("A password is required")

    persist_audit_events(get_supabase_client)
    verifier = CredentialVerifier(SupabasePrincipalStore())
    try:
        principal = await verifier.register_principal(
            args.username,
            password,
            display_name=args.display_name,
            email=args.email,
            authorities=args.authority or None,
        )
    except PrincipalConflict:
        sys.exit(f"Username {args.username!r} is already taken")

    print(f"Created principal {principal.id} ({principal.username})")


def main() -> None:
    parser = argparse.ArgumentParser(description="Create a password-holding resource owner")
    parser.add_argument("username")
    parser.add_argument("--password", help="Password (prompted for when omitted)")
    parser.add_argument("--display-name")
    parser.add_argument("--email")
    parser.add_argument("--authority", action="append", help="Granted authority (repeatable, default ROLE_USER)")
    asyncio.run(_create(parser.parse_args()))


if __name__ == "__main__":
    main()
