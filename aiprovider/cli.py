"""
aiprovider CLI — operator commands for the provider layer.

Usage:
    aiprovider version                          # Show version
    aiprovider migrate [--dry-run|--check]      # Create / verify tables
    aiprovider resolve CLIENT [--consultant ID] # Which backend would serve CLIENT
    aiprovider pool                             # Shared key pool status
    aiprovider usage CONSULTANT                 # Recorded token usage totals
"""

from __future__ import annotations

import argparse
import asyncio
import logging


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="aiprovider",
        description="aiprovider — tiered Gemini backend selection with failover.",
    )
    parser.add_argument("--version", action="store_true", help="Show version and exit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log tier decisions")

    subparsers = parser.add_subparsers(dest="command")

    # migrate
    migrate_parser = subparsers.add_parser("migrate", help="Create provider tables")
    migrate_parser.add_argument(
        "--dry-run", action="store_true", help="Print SQL without executing"
    )
    migrate_parser.add_argument(
        "--check", action="store_true", help="Only check that required tables exist"
    )

    # resolve
    resolve_parser = subparsers.add_parser(
        "resolve", help="Resolve a provider without generating anything"
    )
    resolve_parser.add_argument("client", help="Client identity")
    resolve_parser.add_argument("--consultant", default=None, help="Consultant identity")

    # pool
    subparsers.add_parser("pool", help="Show shared key pool status")

    # usage
    usage_parser = subparsers.add_parser("usage", help="Show token usage totals")
    usage_parser.add_argument("consultant", help="Consultant identity")

    # version
    subparsers.add_parser("version", help="Show version")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.version or args.command == "version":
        from aiprovider import __version__

        print(f"aiprovider {__version__}")
        return 0

    if args.command == "migrate":
        return _cmd_migrate(args)
    elif args.command == "resolve":
        return _cmd_resolve(args)
    elif args.command == "pool":
        return _cmd_pool()
    elif args.command == "usage":
        return _cmd_usage(args)
    else:
        parser.print_help()
        return 0


def _find_schema_sql() -> str | None:
    """Schema SQL bundled next to the connection module."""
    from pathlib import Path

    bundled = Path(__file__).parent / "db" / "schema.sql"
    if bundled.exists():
        return bundled.read_text()
    return None


REQUIRED_TABLES = [
    "ai_backend_settings",
    "ai_backend_client_access",
    "shared_backend_config",
    "shared_backend_access",
    "shared_key_pool",
    "ai_profiles",
    "ai_token_usage",
]


def _missing_tables() -> list[str]:
    from aiprovider.db import get_connection

    with get_connection() as conn:
        cur = conn.cursor()
        cur.execute(
            "SELECT table_name FROM information_schema.tables WHERE table_schema = 'public'"
        )
        existing = {row[0] for row in cur.fetchall()}
    return [t for t in REQUIRED_TABLES if t not in existing]


def _cmd_migrate(args: argparse.Namespace) -> int:
    from aiprovider.db import close_pool, get_connection

    sql = _find_schema_sql()
    if sql is None:
        print("Error: Schema SQL not found (expected aiprovider/db/schema.sql).")
        return 1

    if args.dry_run:
        print("-- Dry run: the following SQL would be executed --")
        print(sql)
        return 0

    try:
        if not args.check:
            # One transaction: a failing statement leaves no half-built schema.
            with get_connection() as conn:
                conn.cursor().execute(sql)
            print("Schema applied.")
        missing = _missing_tables()
    except Exception as e:
        print(f"Error: {'Table check' if args.check else 'Migration'} failed: {e}")
        return 1
    finally:
        close_pool()

    if missing:
        print(f"Missing tables ({len(missing)}/{len(REQUIRED_TABLES)}):")
        for t in missing:
            print(f"  - {t}")
        print("\nRun 'aiprovider migrate' to create them.")
        return 1
    print(f"All {len(REQUIRED_TABLES)} required tables present.")
    return 0


def _cmd_resolve(args: argparse.Namespace) -> int:
    from aiprovider.db import close_pool
    from aiprovider.errors import TerminalConfigurationError
    from aiprovider.resolver import get_selector

    async def _run():
        result = await get_selector().resolve(args.client, args.consultant)
        await result.cleanup()
        return result

    try:
        result = asyncio.run(_run())
    except TerminalConfigurationError as e:
        print(f"Error: {e}")
        return 1
    finally:
        close_pool()

    print(f"Source:       {result.source}")
    print(f"Provider:     {result.metadata.display_name}")
    print(f"Key source:   {result.key_source}")
    if result.metadata.managed_by:
        print(f"Managed by:   {result.metadata.managed_by}")
    if result.metadata.expires_at:
        print(f"Expires at:   {result.metadata.expires_at.isoformat()}")
    return 0


def _cmd_pool() -> int:
    from aiprovider.db import close_pool
    from aiprovider.resolver import get_selector

    key_pool = get_selector().key_pool
    try:
        asyncio.run(key_pool.get_pool())
    except Exception as e:
        print(f"Error: Cannot read shared key pool: {e}")
        return 1
    finally:
        close_pool()

    status = key_pool.status()
    state = "enabled" if status["enabled"] else "disabled"
    print(f"Shared key pool: {state}, {status['keys']} key(s)")
    if status["enabled"] and not status["keys"]:
        print("  Pool is enabled but holds no usable keys; Tier 0 will be skipped.")
    return 0


def _cmd_usage(args: argparse.Namespace) -> int:
    from aiprovider.db import close_pool
    from aiprovider.store import count_token_usage

    try:
        totals = count_token_usage(args.consultant)
    except Exception as e:
        print(f"Error: Cannot read token usage: {e}")
        return 1
    finally:
        close_pool()

    print(f"Token usage for {args.consultant}:")
    print(f"  Calls:        {totals['calls']}")
    print(f"  Total tokens: {totals['total_tokens']}")
    print(f"  Errors:       {totals['errors']}")
    return 0
