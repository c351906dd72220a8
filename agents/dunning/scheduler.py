"""Campaign scheduler: turns eligible invoices into ``email_schedule`` rows.

Pending rows are written with insert-or-ignore against the partial unique
index ``uq_email_schedule_dedup`` so concurrent or repeated runs never
schedule the same (campaign, order, day bucket) twice.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.engine import Connection, Engine

from backend.core.cache_store import CACHED_INVOICES, EMAIL_SCHEDULE, insert_or_ignore, utcnow

from .config import RunConfiguration
from .dto import Campaign, CampaignOutcome, ScheduleStatus, SkipReason
from .eligibility import day_bucket, is_eligible
from .preferences import is_opted_out
from .safety import is_valid_email_address

logger = logging.getLogger(__name__)

MIN_CANDIDATE_DAYS = 30


def candidate_invoices(conn: Connection) -> List[sa.Row]:
    """Open invoices with a billing email, aged at least 30 days, youngest first."""
    return conn.execute(
        sa.select(
            CACHED_INVOICES.c.id,
            CACHED_INVOICES.c.billing_email,
            CACHED_INVOICES.c.days_outstanding,
        )
        .where(CACHED_INVOICES.c.outstanding_amount > 0)
        .where(CACHED_INVOICES.c.billing_email.is_not(None))
        .where(CACHED_INVOICES.c.billing_email != "")
        .where(CACHED_INVOICES.c.days_outstanding >= MIN_CANDIDATE_DAYS)
        .order_by(CACHED_INVOICES.c.days_outstanding, CACHED_INVOICES.c.id)
    ).all()


def live_schedule_exists(conn: Connection, campaign_id: int, order_id: int, bucket: str) -> bool:
    """Whether a production pending/sent row already holds the dedup slot."""
    return conn.execute(
        sa.select(EMAIL_SCHEDULE.c.id)
        .where(EMAIL_SCHEDULE.c.campaign_id == campaign_id)
        .where(EMAIL_SCHEDULE.c.order_id == order_id)
        .where(EMAIL_SCHEDULE.c.day_bucket == bucket)
        .where(EMAIL_SCHEDULE.c.is_test.is_(False))
        .where(EMAIL_SCHEDULE.c.status.in_([ScheduleStatus.PENDING.value, ScheduleStatus.SENT.value]))
        .limit(1)
    ).first() is not None


class CampaignScheduler:
    """Schedules one campaign at a time."""

    def __init__(self, engine: Engine, clock: Callable[[], datetime] | None = None):
        self.engine = engine
        self.clock = clock or utcnow

    def schedule_campaign(self, campaign: Campaign, run_config: RunConfiguration) -> CampaignOutcome:
        outcome = CampaignOutcome(campaign_id=campaign.id, campaign_type=campaign.campaign_type)
        with self.engine.connect() as conn:
            candidates = candidate_invoices(conn)
        outcome.candidates = len(candidates)

        bucket = day_bucket(campaign, run_config.today)
        for invoice in candidates:
            if not is_eligible(invoice.days_outstanding, campaign):
                continue
            outcome.eligible += 1
            if run_config.test_mode and outcome.scheduled >= run_config.test_mode_cap:
                logger.info(
                    "Test mode: scheduling limit reached for campaign",
                    extra={"campaign_type": campaign.campaign_type, "limit": run_config.test_mode_cap},
                )
                break
            self._schedule_one(campaign, invoice, bucket, run_config, outcome)

        logger.info("Campaign scheduled", extra=outcome.to_dict())
        return outcome

    def _schedule_one(
        self,
        campaign: Campaign,
        invoice: sa.Row,
        bucket: str,
        run_config: RunConfiguration,
        outcome: CampaignOutcome,
    ) -> None:
        email = invoice.billing_email.strip().lower()
        row = self._row(campaign, invoice.id, email, bucket, run_config)

        with self.engine.begin() as conn:
            # An existing production slot wins over later suppression checks
            if not run_config.test_mode and live_schedule_exists(conn, campaign.id, invoice.id, bucket):
                outcome.already_scheduled += 1
                return
            if not is_valid_email_address(email):
                self._record_skip(conn, row, SkipReason.INVALID_EMAIL)
                outcome.skip(SkipReason.INVALID_EMAIL)
                return
            if is_opted_out(conn, email):
                self._record_skip(conn, row, SkipReason.CUSTOMER_OPTED_OUT)
                outcome.skip(SkipReason.CUSTOMER_OPTED_OUT)
                return
            if campaign.max_reminders and not run_config.test_mode:
                if self._reminders_sent(conn, campaign.id, invoice.id) >= campaign.max_reminders:
                    outcome.skip(SkipReason.MAX_REMINDERS_REACHED)
                    return
            if insert_or_ignore(conn, EMAIL_SCHEDULE, row):
                outcome.scheduled += 1
            else:
                outcome.already_scheduled += 1

    def _row(
        self, campaign: Campaign, order_id: int, email: str, bucket: str, run_config: RunConfiguration
    ) -> Dict[str, Any]:
        now = self.clock()
        return {
            "campaign_id": campaign.id,
            "order_id": order_id,
            "recipient_email": email,
            "scheduled_date": run_config.today,
            "day_bucket": bucket,
            "status": ScheduleStatus.PENDING.value,
            "attempt_count": 0,
            "is_test": run_config.test_mode,
            "created_at": now,
            "updated_at": now,
        }

    @staticmethod
    def _record_skip(conn: Connection, row: Dict[str, Any], reason: SkipReason) -> None:
        """Write a skipped row once per (campaign, order, bucket, reason)."""
        exists = conn.execute(
            sa.select(EMAIL_SCHEDULE.c.id)
            .where(EMAIL_SCHEDULE.c.campaign_id == row["campaign_id"])
            .where(EMAIL_SCHEDULE.c.order_id == row["order_id"])
            .where(EMAIL_SCHEDULE.c.day_bucket == row["day_bucket"])
            .where(EMAIL_SCHEDULE.c.is_test.is_(row["is_test"]))
            .where(EMAIL_SCHEDULE.c.status == ScheduleStatus.SKIPPED.value)
            .where(EMAIL_SCHEDULE.c.skip_reason == reason.value)
            .limit(1)
        ).first()
        if exists is None:
            conn.execute(
                sa.insert(EMAIL_SCHEDULE).values(
                    **{**row, "status": ScheduleStatus.SKIPPED.value, "skip_reason": reason.value}
                )
            )

    @staticmethod
    def _reminders_sent(conn: Connection, campaign_id: int, order_id: int) -> int:
        return conn.execute(
            sa.select(sa.func.count())
            .select_from(EMAIL_SCHEDULE)
            .where(EMAIL_SCHEDULE.c.campaign_id == campaign_id)
            .where(EMAIL_SCHEDULE.c.order_id == order_id)
            .where(EMAIL_SCHEDULE.c.is_test.is_(False))
            .where(EMAIL_SCHEDULE.c.status.in_([ScheduleStatus.PENDING.value, ScheduleStatus.SENT.value]))
        ).scalar_one()


def preview_campaign(conn: Connection, campaign: Campaign, today) -> Dict[str, Any]:
    """Dry evaluation of a campaign; performs no writes."""
    bucket = day_bucket(campaign, today)
    preview: Dict[str, Any] = {
        "campaign_id": campaign.id,
        "campaign_type": campaign.campaign_type,
        "is_active": campaign.is_active,
        "eligible": 0,
        "would_schedule": 0,
        "already_scheduled": 0,
        "opted_out": 0,
        "invalid_email": 0,
        "orders": [],
    }
    for invoice in candidate_invoices(conn):
        if not is_eligible(invoice.days_outstanding, campaign):
            continue
        preview["eligible"] += 1
        email = invoice.billing_email.strip().lower()
        state: Optional[str]
        if live_schedule_exists(conn, campaign.id, invoice.id, bucket):
            state = "already_scheduled"
        elif not is_valid_email_address(email):
            state = "invalid_email"
        elif is_opted_out(conn, email):
            state = "opted_out"
        else:
            state = "would_schedule"
        preview[state] += 1
        preview["orders"].append(
            {"order_id": invoice.id, "days_outstanding": invoice.days_outstanding, "state": state}
        )
    return preview
