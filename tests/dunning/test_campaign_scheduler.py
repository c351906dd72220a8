"""Scheduling eligible invoices into the dedup-protected ledger."""

import pytest
import sqlalchemy as sa

from agents.dunning.admin import ensure_defaults
from agents.dunning.config import RunConfiguration
from agents.dunning.orchestrator import active_campaigns
from agents.dunning.preferences import PreferenceStore
from agents.dunning.scheduler import CampaignScheduler, preview_campaign
from backend.core.cache_store import EMAIL_SCHEDULE
from backend.core.config import Settings


@pytest.fixture
def campaigns(engine, clock):
    ensure_defaults(engine, clock)
    return {c.campaign_type: c for c in active_campaigns(engine)}


@pytest.fixture
def scheduler(engine, clock):
    return CampaignScheduler(engine, clock=clock)


@pytest.fixture
def run_config(engine, clock, run_settings):
    return RunConfiguration.load(engine, triggered_by="manual", settings=run_settings, clock=clock)


def _rows(engine, **filters):
    stmt = sa.select(EMAIL_SCHEDULE).order_by(EMAIL_SCHEDULE.c.id)
    for column, value in filters.items():
        stmt = stmt.where(EMAIL_SCHEDULE.c[column] == value)
    with engine.connect() as conn:
        return conn.execute(stmt).all()


class TestScheduling:
    def test_eligible_invoice_gets_one_pending_row(
        self, engine, campaigns, scheduler, run_config, add_invoice, today
    ):
        add_invoice(500, days=45, billing_email="  Billing500@Example.com ")

        outcome = scheduler.schedule_campaign(campaigns["overdue_31_60"], run_config)

        assert (outcome.eligible, outcome.scheduled, outcome.already_scheduled) == (1, 1, 0)
        [row] = _rows(engine)
        assert row.status == "pending"
        assert row.order_id == 500
        assert row.recipient_email == "billing500@example.com"
        assert row.day_bucket == "once"
        assert row.scheduled_date == today
        assert row.is_test is False

    def test_rescheduling_is_idempotent(self, engine, campaigns, scheduler, run_config, add_invoice):
        add_invoice(500, days=45)
        scheduler.schedule_campaign(campaigns["overdue_31_60"], run_config)

        outcome = scheduler.schedule_campaign(campaigns["overdue_31_60"], run_config)

        assert outcome.scheduled == 0
        assert outcome.already_scheduled == 1
        assert len(_rows(engine, status="pending")) == 1

    def test_sent_row_blocks_a_new_single_shot_row(
        self, engine, campaigns, scheduler, run_config, add_invoice, clock
    ):
        add_invoice(500, days=45)
        scheduler.schedule_campaign(campaigns["overdue_31_60"], run_config)
        with engine.begin() as conn:
            conn.execute(sa.update(EMAIL_SCHEDULE).values(status="sent"))

        clock.advance(days=5)
        later = RunConfiguration.load(engine, triggered_by="manual", clock=clock)
        outcome = scheduler.schedule_campaign(campaigns["overdue_31_60"], later)

        assert outcome.scheduled == 0
        assert outcome.already_scheduled == 1

    def test_failed_row_does_not_hold_the_slot(
        self, engine, campaigns, scheduler, run_config, add_invoice
    ):
        add_invoice(500, days=45)
        scheduler.schedule_campaign(campaigns["overdue_31_60"], run_config)
        with engine.begin() as conn:
            conn.execute(sa.update(EMAIL_SCHEDULE).values(status="failed"))

        outcome = scheduler.schedule_campaign(campaigns["overdue_31_60"], run_config)

        assert outcome.scheduled == 1
        assert [r.status for r in _rows(engine)] == ["failed", "pending"]

    def test_day_60_is_scheduled_by_both_lower_tiers(
        self, engine, campaigns, scheduler, run_config, add_invoice
    ):
        add_invoice(600, days=60)

        first = scheduler.schedule_campaign(campaigns["overdue_31_60"], run_config)
        second = scheduler.schedule_campaign(campaigns["overdue_61_90"], run_config)

        assert first.scheduled == 1
        assert second.scheduled == 1
        assert {r.campaign_id for r in _rows(engine)} == {
            campaigns["overdue_31_60"].id,
            campaigns["overdue_61_90"].id,
        }

    def test_young_and_settled_invoices_are_not_candidates(
        self, engine, campaigns, scheduler, run_config, add_invoice
    ):
        add_invoice(1, days=29)
        add_invoice(2, days=45, paid="500.00")
        add_invoice(3, days=45, billing_email=None)

        outcome = scheduler.schedule_campaign(campaigns["overdue_31_60"], run_config)

        assert outcome.candidates == 0
        assert _rows(engine) == []


class TestSuppression:
    def test_opted_out_recipient_gets_one_skipped_row(
        self, engine, campaigns, scheduler, run_config, add_invoice
    ):
        add_invoice(500, days=45)
        PreferenceStore(engine).add_opt_out("billing500@example.com", reason="asked", scope="reminders")

        first = scheduler.schedule_campaign(campaigns["overdue_31_60"], run_config)
        scheduler.schedule_campaign(campaigns["overdue_31_60"], run_config)

        assert first.scheduled == 0
        assert first.skipped == {"customer_opted_out": 1}
        rows = _rows(engine)
        assert len(rows) == 1
        assert rows[0].status == "skipped"
        assert rows[0].skip_reason == "customer_opted_out"

    def test_existing_slot_is_reported_before_a_later_opt_out(
        self, engine, campaigns, scheduler, run_config, add_invoice, today
    ):
        add_invoice(500, days=45)
        scheduler.schedule_campaign(campaigns["overdue_31_60"], run_config)
        PreferenceStore(engine).add_opt_out("billing500@example.com", scope="all")

        second = scheduler.schedule_campaign(campaigns["overdue_31_60"], run_config)

        assert second.already_scheduled == 1
        assert second.skipped == {}
        assert [r.status for r in _rows(engine)] == ["pending"]
        with engine.connect() as conn:
            preview = preview_campaign(conn, campaigns["overdue_31_60"], today)
        assert (preview["already_scheduled"], preview["opted_out"]) == (1, 0)

    def test_role_address_is_skipped_as_invalid(
        self, engine, campaigns, scheduler, run_config, add_invoice
    ):
        add_invoice(500, days=45, billing_email="noreply@example.com")

        outcome = scheduler.schedule_campaign(campaigns["overdue_31_60"], run_config)

        assert outcome.skipped == {"invalid_email": 1}
        assert _rows(engine)[0].skip_reason == "invalid_email"

    def test_recurring_reminders_stop_at_max_reminders(
        self, engine, campaigns, scheduler, run_config, add_invoice, today
    ):
        recurring = campaigns["overdue_91_plus_recurring"]
        add_invoice(700, days=101)
        with engine.begin() as conn:
            for n in range(recurring.max_reminders):
                conn.execute(
                    sa.insert(EMAIL_SCHEDULE).values(
                        campaign_id=recurring.id,
                        order_id=700,
                        recipient_email="billing700@example.com",
                        scheduled_date=today,
                        day_bucket=f"2026-0{n + 1}-01",
                        status="sent",
                        created_at=run_config.now,
                        updated_at=run_config.now,
                    )
                )

        outcome = scheduler.schedule_campaign(recurring, run_config)

        assert outcome.scheduled == 0
        assert outcome.skipped == {"max_reminders_reached": 1}

    def test_recurring_row_uses_the_run_date_bucket(
        self, engine, campaigns, scheduler, run_config, add_invoice, today
    ):
        add_invoice(700, days=101)

        outcome = scheduler.schedule_campaign(campaigns["overdue_91_plus_recurring"], run_config)

        assert outcome.scheduled == 1
        assert _rows(engine)[0].day_bucket == today.isoformat()


class TestTestMode:
    def test_test_rows_are_capped_and_bypass_the_dedup_slot(
        self, engine, campaigns, scheduler, run_config, add_invoice, clock
    ):
        for order_id in (1, 2, 3):
            add_invoice(order_id, days=45)
        scheduler.schedule_campaign(campaigns["overdue_31_60"], run_config)

        test_config = RunConfiguration.load(
            engine, triggered_by="manual", test_mode=True, settings=Settings(TEST_MODE_CAP=2), clock=clock
        )
        outcome = scheduler.schedule_campaign(campaigns["overdue_31_60"], test_config)

        assert outcome.scheduled == 2
        assert len(_rows(engine, is_test=True)) == 2
        assert len(_rows(engine, is_test=False)) == 3


class TestPreview:
    def test_preview_reports_states_without_writing(
        self, engine, campaigns, scheduler, run_config, add_invoice, today
    ):
        add_invoice(1, days=45)
        add_invoice(2, days=50)
        add_invoice(3, days=55, billing_email="postmaster@example.com")
        add_invoice(4, days=40)
        PreferenceStore(engine).add_opt_out("billing2@example.com")
        scheduler.schedule_campaign(campaigns["overdue_31_60"], run_config)
        before = len(_rows(engine))

        with engine.connect() as conn:
            preview = preview_campaign(conn, campaigns["overdue_31_60"], today)

        assert preview["eligible"] == 4
        assert preview["already_scheduled"] == 2
        assert preview["opted_out"] == 1
        assert preview["invalid_email"] == 1
        assert preview["would_schedule"] == 0
        assert len(_rows(engine)) == before
