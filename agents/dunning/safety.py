"""Safety governor for automated dunning emails.

Protects against sending too many emails, re-contacting a customer too
soon, mailing opted-out or undeliverable addresses, and provides the
emergency stop that deactivates every campaign.
"""

import logging
import re
from datetime import datetime, time as dtime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy.engine import Connection, Engine

from backend.core.cache_store import AUTOMATION_LOGS, CAMPAIGNS, EMAIL_LOGS, utcnow
from backend.core.config import settings
from backend.core.observability.health import check_database

from .config import RunConfiguration
from .dto import SkipReason, ValidationResult
from .preferences import is_opted_out

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
UNDELIVERABLE_MARKERS = ("noreply", "no-reply", "donotreply", "mailer-daemon", "postmaster")


def is_valid_email_address(address: Optional[str]) -> bool:
    """Format check plus rejection of role addresses that never read mail."""
    if not address or not isinstance(address, str):
        return False
    if not EMAIL_PATTERN.match(address):
        return False
    lowered = address.lower()
    return not any(marker in lowered for marker in UNDELIVERABLE_MARKERS)


def sent_counts(conn: Connection, now: datetime) -> Tuple[int, int]:
    """Emails sent since the start of the UTC day and within the last hour."""
    start_of_day = datetime.combine(now.date(), dtime.min, tzinfo=now.tzinfo)
    one_hour_ago = now - timedelta(hours=1)
    sent = EMAIL_LOGS.c.status == "sent"
    daily = conn.execute(
        sa.select(sa.func.count()).select_from(EMAIL_LOGS).where(sent, EMAIL_LOGS.c.created_at >= start_of_day)
    ).scalar_one()
    hourly = conn.execute(
        sa.select(sa.func.count()).select_from(EMAIL_LOGS).where(sent, EMAIL_LOGS.c.created_at >= one_hour_ago)
    ).scalar_one()
    return daily, hourly


def active_campaign_count(conn: Connection) -> int:
    return conn.execute(
        sa.select(sa.func.count()).select_from(CAMPAIGNS).where(CAMPAIGNS.c.is_active.is_(True))
    ).scalar_one()


def recent_failed_runs(conn: Connection, now: datetime) -> int:
    return conn.execute(
        sa.select(sa.func.count())
        .select_from(AUTOMATION_LOGS)
        .where(AUTOMATION_LOGS.c.status == "failed")
        .where(AUTOMATION_LOGS.c.run_started_at >= now - timedelta(hours=24))
    ).scalar_one()


class SafetyGovernor:
    """Pre-flight and send-time safety checks."""

    def __init__(
        self,
        engine: Engine,
        transport: Any = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.engine = engine
        self.transport = transport
        self.clock = clock or utcnow

    def validate_run(self, run_config: RunConfiguration) -> ValidationResult:
        """Decide whether a run may start.

        Missing sender identity, an unreachable store, or exhausted send
        limits outside test mode block the run; the rest are warnings.
        """
        result = ValidationResult()

        if not run_config.sender_email:
            result.errors.append("No sender email configured - no emails can be sent")
        elif not is_valid_email_address(run_config.sender_email):
            result.errors.append(f"Sender email {run_config.sender_email!r} is not a valid address")
        if self.transport is None:
            result.errors.append("No email transport configured")

        if check_database(self.engine) != "OK":
            result.errors.append("Database connectivity issues detected")
            return result

        with self.engine.connect() as conn:
            result.daily_sent, result.hourly_sent = sent_counts(conn, run_config.now)
            result.active_campaigns = active_campaign_count(conn)
            failures = recent_failed_runs(conn, run_config.now)

        limit_reason = self._limit_reason(result.daily_sent, result.hourly_sent, run_config)
        if limit_reason:
            if run_config.test_mode:
                result.warnings.append(f"Email limits reached but running in test mode: {limit_reason}")
            else:
                result.errors.append(f"Email limits reached: {limit_reason}")

        if result.active_campaigns == 0:
            result.warnings.append("No active email campaigns found")
        if failures > run_config.failure_warn_threshold:
            result.warnings.append(f"High number of recent automation failures ({failures})")

        logger.info(
            "Automation run validated",
            extra={
                "ok": result.ok,
                "errors": result.errors,
                "warnings": result.warnings,
                "test_mode": run_config.test_mode,
            },
        )
        return result

    def check_recipient(
        self, conn: Connection, email: str, run_config: RunConfiguration
    ) -> Optional[SkipReason]:
        """Send-time checks for one recipient; returns a skip reason or None."""
        if is_opted_out(conn, email):
            return SkipReason.CUSTOMER_OPTED_OUT

        now = self.clock()
        if not run_config.test_mode:
            recent = conn.execute(
                sa.select(EMAIL_LOGS.c.id)
                .where(EMAIL_LOGS.c.recipient_email == email.lower())
                .where(EMAIL_LOGS.c.status == "sent")
                .where(EMAIL_LOGS.c.is_test.is_(False))
                .where(EMAIL_LOGS.c.created_at >= now - timedelta(hours=run_config.cooldown_hours))
                .limit(1)
            ).first()
            if recent is not None:
                return SkipReason.RECIPIENT_COOLDOWN

        daily, hourly = sent_counts(conn, now)
        limit_reason = self._limit_reason(daily, hourly, run_config)
        if limit_reason:
            if run_config.test_mode:
                logger.warning("Send limit reached in test mode", extra={"reason": limit_reason})
            else:
                logger.warning("Send limit reached, skipping", extra={"reason": limit_reason})
                return SkipReason.SEND_LIMIT_REACHED
        return None

    def emergency_stop(self, reason: str) -> int:
        """Deactivate every active campaign in one statement."""
        with self.engine.begin() as conn:
            result = conn.execute(
                sa.update(CAMPAIGNS)
                .where(CAMPAIGNS.c.is_active.is_(True))
                .values(is_active=False, updated_at=self.clock())
            )
        stopped = result.rowcount or 0
        logger.critical(
            "EMERGENCY STOP - all automated campaigns deactivated",
            extra={"reason": reason, "campaigns_stopped": stopped},
        )
        return stopped

    def safety_metrics(self, run_config: RunConfiguration | None = None) -> Dict[str, Any]:
        now = self.clock()
        daily_limit = run_config.daily_limit if run_config else settings.DAILY_EMAIL_LIMIT
        hourly_limit = run_config.hourly_limit if run_config else settings.HOURLY_EMAIL_LIMIT

        db_status = check_database(self.engine)
        metrics: Dict[str, Any] = {
            "timestamp": now.isoformat(),
            "system_health": {"database": db_status == "OK", "email": self.transport is not None},
        }
        if db_status != "OK":
            return metrics

        with self.engine.connect() as conn:
            daily, hourly = sent_counts(conn, now)
            active = active_campaign_count(conn)
            total = conn.execute(sa.select(sa.func.count()).select_from(CAMPAIGNS)).scalar_one()
            failures = recent_failed_runs(conn, now)

        metrics.update(
            {
                "email_limits": {
                    "daily_limit": daily_limit,
                    "hourly_limit": hourly_limit,
                    "daily_used": daily,
                    "hourly_used": hourly,
                    "can_send": daily < daily_limit and hourly < hourly_limit,
                },
                "campaigns": {"active": active, "total": total},
                "recent_failures": failures,
            }
        )
        return metrics

    @staticmethod
    def _limit_reason(daily: int, hourly: int, run_config: RunConfiguration) -> Optional[str]:
        if daily >= run_config.daily_limit:
            return f"Daily email limit reached ({daily}/{run_config.daily_limit})"
        if hourly >= run_config.hourly_limit:
            return f"Hourly email limit reached ({hourly}/{run_config.hourly_limit})"
        return None
