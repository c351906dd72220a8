"""Backfill contact and author names on cached notes."""

from __future__ import annotations

import argparse
import json
import sys

from sqlalchemy.engine import Engine

from agents.cache_sync import BrightpearlAdapter, ContactEnricher, ErpSourceAdapter, SyncConfig
from backend.core.cache_store import get_engine
from backend.core.observability import init_observability


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Resolve missing contact names on cached notes")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report how many contact and staff ids are missing a name",
    )
    return parser.parse_args(argv)


def main(
    argv: list[str] | None = None,
    engine: Engine | None = None,
    adapter: ErpSourceAdapter | None = None,
) -> int:
    try:
        args = parse_args(argv)
        init_observability()
        enricher = ContactEnricher(
            engine or get_engine(), adapter or BrightpearlAdapter(), SyncConfig.from_settings()
        )
        if args.dry_run:
            contact_ids, staff_ids = enricher.pending_ids()
            print(json.dumps({"contacts": len(contact_ids), "staff": len(staff_ids), "dry_run": True}))
            return 0
        summary = enricher.enrich()
        print(json.dumps(summary.to_dict(), ensure_ascii=False))
        return 0 if not summary.failed else 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
