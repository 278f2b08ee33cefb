"""
Bootstrap the Gmail OAuth credential without running the web server.

Usage:
    python3 bootstrap_token.py               # prints the consent URL, then asks for the code
    python3 bootstrap_token.py --code 4/0Ab...
    python3 bootstrap_token.py --print-schema
"""
from __future__ import annotations

import argparse
import sys

from dotenv import load_dotenv

from app import build_credential_manager
from errors import ConfigError, ExchangeError
from logging_utils import configure_logging
from settings import load_settings
from token_store import SUPABASE_TOKEN_TABLE_SQL


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run the Gmail OAuth consent flow and store the resulting credential.",
    )
    parser.add_argument(
        "--code",
        help="Authorization code from the redirect URL. Prompted for when omitted.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Re-authorize even if a credential is already stored.",
    )
    parser.add_argument(
        "--print-schema",
        action="store_true",
        help="Print the SQL for the Supabase token table and exit.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    if args.print_schema:
        print(SUPABASE_TOKEN_TABLE_SQL.strip())
        return 0

    load_dotenv()
    configure_logging()
    try:
        settings = load_settings()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    manager = build_credential_manager(settings)
    if manager.load() is not None and not args.force:
        print(f"A credential is already stored in the {settings.token_store} store. Use --force to replace it.", file=sys.stderr)
        return 1

    code = args.code
    if not code:
        print("Open this URL in a browser and approve access:")
        print(manager.authorize_url())
        code = input("Paste the 'code' parameter from the redirect URL: ").strip()

    try:
        credential = manager.exchange(code)
    except ExchangeError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    print(f"Saved credential to the {settings.token_store} store.")
    if not credential.refresh_token:
        print("Warning: Google did not return a refresh token; revoke access and re-run with --force.", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())
