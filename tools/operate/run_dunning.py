"""Run the dunning engine once from the command line."""

from __future__ import annotations

import argparse
import json
import sys

from sqlalchemy.engine import Engine

from agents.dunning.admin import ensure_defaults
from agents.dunning.dto import TriggeredBy
from agents.dunning.orchestrator import RunOrchestrator
from agents.dunning.sender import EmailTransport
from backend.core.cache_store import get_engine
from backend.core.observability import init_observability
from backend.core.observability.logging import logger


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Schedule and send dunning emails once")
    parser.add_argument(
        "--test-mode",
        action="store_true",
        help="Use test schedule rows, cap sends and redirect to the configured test address",
    )
    parser.add_argument(
        "--seed-defaults",
        action="store_true",
        help="Insert the default campaigns and templates when missing",
    )
    return parser.parse_args(argv)


def main(
    argv: list[str] | None = None,
    engine: Engine | None = None,
    transport: EmailTransport | None = None,
) -> int:
    try:
        args = parse_args(argv)
        init_observability()
        engine = engine or get_engine()
        if args.seed_defaults:
            created = ensure_defaults(engine)
            logger.info("cli_defaults_seeded", extra=created)
        summary = RunOrchestrator(engine, transport=transport).run(
            triggered_by=TriggeredBy.CLI.value, test_mode=args.test_mode
        )
        print(json.dumps(summary.to_dict(), ensure_ascii=False, default=str))
        return 0 if summary.success else 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
