"""Purge run, sync and email logs past the retention window."""

from __future__ import annotations

import argparse
import json
import sys

from sqlalchemy.engine import Engine

from agents.dunning.runner import cleanup_logs
from backend.core.cache_store import get_engine
from backend.core.config import settings
from backend.core.observability import init_observability


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Delete logs older than the retention window")
    parser.add_argument(
        "--days",
        type=int,
        default=settings.LOG_RETENTION_DAYS,
        help="Retention in days (defaults to LOG_RETENTION_DAYS)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None, engine: Engine | None = None) -> int:
    try:
        args = parse_args(argv)
        if args.days < 1:
            print("--days must be at least 1", file=sys.stderr)
            return 2
        init_observability()
        deleted = cleanup_logs(engine or get_engine(), args.days)
        print(json.dumps({"retention_days": args.days, **deleted}))
        return 0
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
