#!/usr/bin/env python3
"""
Maintenance for the envmem database.

Applies pending schema migrations and, optionally, retries embedding for
records whose indexing failed or seeds the sample catalogue.

Usage:
    python migrate.py --dry-run              # Show pending migrations
    python migrate.py                        # Apply migrations
    python migrate.py --reindex --api-key K  # Also retry failed indexing for a tenant
    python migrate.py --seed                 # Also insert the sample catalogue
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from config import Config
from embeddings import Embedder
from env_store import EnvStore
from record_store import RecordStore
from sample_envs import sample_env_variables
from utils import resolve_tenant
from vector_index import VectorIndex


def migrate(config: Config, dry_run: bool = True) -> list[tuple[int, str]]:
    """Show or apply pending schema migrations."""
    records = RecordStore(config.sqlite_path)
    print(f"Database: {config.sqlite_path}")
    print(f"Schema version: {records.schema_version()}")

    pending = records.pending_migrations()
    print("=" * 70)
    print("MIGRATION PLAN")
    print("=" * 70)
    if not pending:
        print("\n✓ Schema is up to date")
        return []
    for number, description in pending:
        print(f"  {number:3d}: {description}")

    if dry_run:
        print("\n⚠ DRY RUN MODE - No changes applied")
        print("Run without --dry-run to apply migration")
        return []

    applied = records.migrate()
    print(f"\n✓ Migration complete! Applied {len(applied)} migrations")
    return applied


async def maintain(config: Config, api_key: str | None, reindex: bool, seed: bool) -> None:
    tenant_id = resolve_tenant(api_key)
    store = EnvStore(
        tenant_id,
        RecordStore(config.sqlite_path),
        VectorIndex(config),
        Embedder(config),
        config,
    )
    if seed:
        result = await store.bulk_upsert(sample_env_variables())
        print(f"Seeded {result['inserted']} variables for {tenant_id} ({result['indexed']} indexed)")
    if reindex:
        result = await store.reindex_pending()
        print(
            f"Reindexed {result['indexed']}/{result['attempted']} variables for {tenant_id}"
            f" ({result['failed']} failed)"
        )


def main():
    config = Config()
    parser = argparse.ArgumentParser(
        description="Apply envmem schema migrations and maintenance tasks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python migrate.py --dry-run   # Preview pending migrations
  python migrate.py --reindex   # Migrate, then retry failed embeddings
        """,
    )
    parser.add_argument("--dry-run", action="store_true", help="Preview changes without applying them")
    parser.add_argument("--reindex", action="store_true", help="Retry indexing of unindexed variables")
    parser.add_argument("--seed", action="store_true", help="Insert the sample catalogue")
    parser.add_argument("--api-key", default=config.api_key, help="Tenant API key (default: anonymous)")
    args = parser.parse_args()

    try:
        migrate(config, dry_run=args.dry_run)
        if not args.dry_run and (args.reindex or args.seed):
            asyncio.run(maintain(config, args.api_key, args.reindex, args.seed))
    except KeyboardInterrupt:
        print("\n\nMigration cancelled")
        sys.exit(1)


if __name__ == "__main__":
    main()
