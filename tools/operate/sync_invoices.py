"""Reconcile the ERP's open invoices into the local cache."""

from __future__ import annotations

import argparse
import json
import sys
from datetime import date

from sqlalchemy.engine import Engine

from agents.cache_sync import BrightpearlAdapter, CacheSynchronizer, ErpSourceAdapter
from backend.core.cache_store import get_engine
from backend.core.observability import init_observability, start_trace
from backend.core.observability.logging import logger


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sync open ERP invoices into the AR cache")
    parser.add_argument("--start-date", type=date.fromisoformat, help="First order date (YYYY-MM-DD)")
    parser.add_argument("--end-date", type=date.fromisoformat, help="Last order date (YYYY-MM-DD)")
    return parser.parse_args(argv)


def main(
    argv: list[str] | None = None,
    engine: Engine | None = None,
    adapter: ErpSourceAdapter | None = None,
) -> int:
    try:
        args = parse_args(argv)
        init_observability()
        trace_id = start_trace()
        synchronizer = CacheSynchronizer(engine or get_engine(), adapter or BrightpearlAdapter())
        summary = synchronizer.sync(start_date=args.start_date, end_date=args.end_date)
        logger.info("cli_sync_finished", extra={"trace_id": trace_id, "status": summary.status})
        print(json.dumps(summary.to_dict(), ensure_ascii=False))
        return 0 if summary.success else 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
