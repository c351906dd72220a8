from __future__ import annotations

import signal
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from backend.core.cache_store import AUTOMATION_LOGS, EMAIL_LOGS, SYNC_LOGS, get_engine, utcnow
from backend.core.config import settings
from backend.core.observability.logging import logger

from .admin import AdminService
from .dto import TriggeredBy


def parse_hours(value: str) -> List[int]:
    """Parse the SCHEDULE_HOURS CSV into sorted local hours."""
    hours = set()
    for part in (value or "").split(","):
        part = part.strip()
        if not part:
            continue
        hour = int(part)
        if not 0 <= hour <= 23:
            raise ValueError(f"schedule hour out of range: {hour}")
        hours.add(hour)
    return sorted(hours)


def cleanup_logs(engine: Engine, retention_days: int, now: datetime | None = None) -> Dict[str, int]:
    """Delete run, sync and email logs older than ``retention_days``."""
    cutoff = (now or utcnow()) - timedelta(days=retention_days)
    with engine.begin() as conn:
        deleted = {
            "automation_logs": conn.execute(
                sa.delete(AUTOMATION_LOGS).where(AUTOMATION_LOGS.c.run_started_at < cutoff)
            ).rowcount
            or 0,
            "sync_logs": conn.execute(
                sa.delete(SYNC_LOGS).where(SYNC_LOGS.c.sync_started_at < cutoff)
            ).rowcount
            or 0,
            "email_logs": conn.execute(
                sa.delete(EMAIL_LOGS).where(EMAIL_LOGS.c.created_at < cutoff)
            ).rowcount
            or 0,
        }
    logger.info("log_cleanup", extra={"retention_days": retention_days, **deleted})
    return deleted


class ClockRunner:
    """Fires sync + dunning runs on weekday slots in the business timezone.

    Each (date, hour) slot fires at most once per process. Monday's first
    slot also logs a weekly stats summary; the first tick on the 1st of a
    month purges old logs.
    """

    def __init__(
        self,
        engine: Engine | None = None,
        admin: AdminService | None = None,
        clock: Callable[[], datetime] | None = None,
        hours: Optional[List[int]] = None,
        timezone: str | None = None,
        retention_days: int | None = None,
    ):
        self.engine = engine or get_engine()
        self.clock = clock or utcnow
        self.admin = admin or AdminService(self.engine, clock=self.clock)
        self.hours = hours if hours is not None else parse_hours(settings.SCHEDULE_HOURS)
        self.tz = ZoneInfo(timezone or settings.SCHEDULE_TIMEZONE)
        self.retention_days = retention_days or settings.LOG_RETENTION_DAYS
        self._fired_date = None
        self._fired_hours: set[int] = set()
        self._stats_date = None
        self._cleanup_month: Optional[str] = None

    def tick(self) -> List[str]:
        """Run whatever is due now; returns the actions taken."""
        now = self.clock()
        local = now.astimezone(self.tz)
        actions: List[str] = []

        month_key = local.strftime("%Y-%m")
        if local.day == 1 and self._cleanup_month != month_key:
            self._cleanup_month = month_key
            try:
                cleanup_logs(self.engine, self.retention_days, now)
                actions.append("cleanup")
            except Exception as e:
                logger.error("log_cleanup_failed", extra={"error": str(e)})

        if local.weekday() >= 5 or local.hour not in self.hours:
            return actions
        if self._fired_date != local.date():
            self._fired_date = local.date()
            self._fired_hours = set()
        if local.hour in self._fired_hours:
            return actions
        self._fired_hours.add(local.hour)
        slot = local.strftime("%Y-%m-%dT%H")

        if local.weekday() == 0 and self._stats_date != local.date():
            self._stats_date = local.date()
            try:
                stats = self.admin.stats(days=7)
                stats.pop("recent_logs", None)
                logger.info("weekly_stats", extra=stats)
                actions.append("weekly_stats")
            except Exception as e:
                logger.error("weekly_stats_failed", extra={"error": str(e)})

        self.run_slot(slot)
        actions.append("run")
        return actions

    def run_slot(self, slot: str) -> None:
        logger.info("scheduled_slot_start", extra={"slot": slot})
        try:
            sync = self.admin.sync()
            logger.info("scheduled_sync_done", extra={"slot": slot, "status": sync.get("status")})
        except Exception as e:
            # Run proceeds on the last cached state
            logger.error("scheduled_sync_failed", extra={"slot": slot, "error": str(e)})
        summary = self.admin.run(test_mode=False, triggered_by=TriggeredBy.SCHEDULER.value)
        logger.info(
            "scheduled_run_done",
            extra={"slot": slot, "status": summary.status, "emails_sent": summary.emails_sent},
        )


_stop_event = threading.Event()


def _setup_signals() -> None:
    def _handler(signum, frame):  # noqa: ARG001
        _stop_event.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def run_forever(runner: ClockRunner | None = None, poll_s: int | None = None) -> int:
    """Poll the clock until SIGINT/SIGTERM.

    Returns recommended exit code: 0 on normal stop, 1 on fatal config error.
    """
    _setup_signals()
    try:
        runner = runner or ClockRunner()
    except (ValueError, KeyError) as e:
        logger.error("runner_config_error", extra={"error": str(e)})
        return 1

    poll = max(1, int(poll_s or settings.SCHEDULE_POLL_INTERVAL_S))
    logger.info("runner_started", extra={"hours": runner.hours, "timezone": str(runner.tz)})
    while not _stop_event.is_set():
        try:
            runner.tick()
        except Exception as e:
            logger.error("runner_tick_error", extra={"error": str(e)})
        _stop_event.wait(poll)
    logger.info("runner_stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(run_forever())
