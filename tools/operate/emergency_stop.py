"""Deactivate every active dunning campaign."""

from __future__ import annotations

import argparse
import json
import sys

from sqlalchemy.engine import Engine

from agents.dunning.safety import SafetyGovernor
from backend.core.cache_store import get_engine
from backend.core.observability import init_observability


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Emergency stop for the dunning engine")
    parser.add_argument("--reason", required=True, help="Why sending is being stopped")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None, engine: Engine | None = None) -> int:
    try:
        args = parse_args(argv)
        init_observability()
        stopped = SafetyGovernor(engine or get_engine()).emergency_stop(args.reason)
        print(json.dumps({"stopped": stopped, "reason": args.reason}, ensure_ascii=False))
        print(f"EMERGENCY STOP: {stopped} campaign(s) deactivated, reason={args.reason}")
        return 0
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
