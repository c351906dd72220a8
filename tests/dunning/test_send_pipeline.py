"""Send pipeline: send-time revalidation, delivery and email logging."""

from datetime import timedelta

import pytest
import sqlalchemy as sa

from agents.dunning.admin import ensure_defaults
from agents.dunning.config import TEST_EMAIL_KEY, RunConfiguration
from agents.dunning.preferences import PreferenceStore
from agents.dunning.sender import SendPipeline
from backend.core.cache_store import (
    CACHED_INVOICES,
    CAMPAIGNS,
    EMAIL_LOGS,
    EMAIL_SCHEDULE,
    EMAIL_TEMPLATES,
    set_app_setting,
)
from backend.core.config import Settings
from backend.core.observability.metrics import get_metrics


@pytest.fixture
def campaign_id(engine, clock):
    ensure_defaults(engine, clock)
    with engine.connect() as conn:
        return conn.execute(
            sa.select(CAMPAIGNS.c.id).where(CAMPAIGNS.c.campaign_type == "overdue_31_60")
        ).scalar_one()


@pytest.fixture
def schedule(engine, campaign_id, now, today):
    def _schedule(order_id, **overrides):
        row = {
            "campaign_id": campaign_id,
            "order_id": order_id,
            "recipient_email": f"billing{order_id}@example.com",
            "scheduled_date": today,
            "day_bucket": "once",
            "status": "pending",
            "is_test": False,
            "created_at": now,
            "updated_at": now,
        }
        row.update(overrides)
        with engine.begin() as conn:
            return conn.execute(sa.insert(EMAIL_SCHEDULE).values(**row)).inserted_primary_key[0]

    return _schedule


@pytest.fixture
def pipeline(engine, fake_transport, clock):
    return SendPipeline(engine, fake_transport, clock=clock)


@pytest.fixture
def run_config(engine, clock, run_settings):
    return RunConfiguration.load(engine, triggered_by="manual", settings=run_settings, clock=clock)


def _schedule_row(engine, schedule_id):
    with engine.connect() as conn:
        return conn.execute(sa.select(EMAIL_SCHEDULE).where(EMAIL_SCHEDULE.c.id == schedule_id)).one()


def _logs(engine):
    with engine.connect() as conn:
        return conn.execute(sa.select(EMAIL_LOGS).order_by(EMAIL_LOGS.c.id)).all()


class TestDelivery:
    def test_due_row_is_rendered_sent_and_logged(
        self, engine, pipeline, run_config, fake_transport, add_invoice, schedule
    ):
        add_invoice(500, days=45, total="500.00", paid="350.00")
        schedule_id = schedule(500)

        outcome = pipeline.process_due(run_config)

        assert (outcome.processed, outcome.sent, outcome.failed) == (1, 1, 0)
        [message] = fake_transport.sent
        assert message["to"] == "billing500@example.com"
        assert message["sender"].email == "ar@sender.example.com"
        assert message["sender"].name == "Jordan AR"
        assert message["subject"] == "Payment Reminder: Invoice #INV-500 - $150.00 Outstanding"
        assert "Outstanding Balance: $150.00" in message["body"]
        assert "Amount Paid: $350.00" in message["body"]
        assert "https://ar.example.com/api/public/opt-out?token=" in message["body"]

        row = _schedule_row(engine, schedule_id)
        [log] = _logs(engine)
        assert row.status == "sent"
        assert row.attempt_count == 1
        assert row.message_id == "<msg-1@test>"
        assert row.email_log_id == log.id
        assert log.status == "sent"
        assert log.source == "automation"
        assert log.schedule_id == schedule_id
        assert get_metrics()["dunning_emails_total{outcome=sent}"]["count"] == 1

    def test_rows_for_other_days_are_left_alone(
        self, engine, pipeline, run_config, fake_transport, add_invoice, schedule, today
    ):
        add_invoice(500, days=45)
        schedule_id = schedule(500, scheduled_date=today + timedelta(days=1))

        outcome = pipeline.process_due(run_config)

        assert outcome.processed == 0
        assert fake_transport.sent == []
        assert _schedule_row(engine, schedule_id).status == "pending"

    def test_pdf_is_attached_when_rendered(self, engine, fake_transport, clock, run_config, add_invoice, schedule):
        class Renderer:
            def render_invoice(self, invoice):
                return b"%PDF-1.4 invoice"

        add_invoice(500, days=45)
        schedule(500)

        SendPipeline(engine, fake_transport, pdf_renderer=Renderer(), clock=clock).process_due(run_config)

        [attachment] = fake_transport.sent[0]["attachments"]
        assert attachment.filename == "invoice-INV-500.pdf"
        assert attachment.content == b"%PDF-1.4 invoice"

    def test_failing_pdf_renderer_still_sends(self, engine, fake_transport, clock, run_config, add_invoice, schedule):
        class Broken:
            def render_invoice(self, invoice):
                raise RuntimeError("renderer offline")

        add_invoice(500, days=45)
        schedule(500)

        outcome = SendPipeline(engine, fake_transport, pdf_renderer=Broken(), clock=clock).process_due(run_config)

        assert outcome.sent == 1
        assert fake_transport.sent[0]["attachments"] == []


class TestSendTimeChecks:
    def test_paid_invoice_is_skipped(self, engine, pipeline, run_config, fake_transport, add_invoice, schedule):
        add_invoice(500, days=45, total="500.00", paid="500.00")
        schedule_id = schedule(500)

        outcome = pipeline.process_due(run_config)

        assert outcome.skipped == {"invoice_paid": 1}
        assert fake_transport.sent == []
        row = _schedule_row(engine, schedule_id)
        assert (row.status, row.skip_reason) == ("skipped", "invoice_paid")

    def test_invoice_gone_from_cache_is_skipped(self, engine, pipeline, run_config, add_invoice, schedule):
        add_invoice(500, days=45)
        schedule_id = schedule(500)
        with engine.begin() as conn:
            conn.execute(sa.delete(CACHED_INVOICES))

        outcome = pipeline.process_due(run_config)

        assert outcome.skipped == {"invoice_not_found": 1}
        assert _schedule_row(engine, schedule_id).skip_reason == "invoice_not_found"

    def test_opt_out_after_scheduling_is_honoured(
        self, engine, pipeline, run_config, fake_transport, add_invoice, schedule
    ):
        add_invoice(500, days=45)
        schedule(500)
        PreferenceStore(engine).add_opt_out("Billing500@example.com", scope="collections")

        outcome = pipeline.process_due(run_config)

        assert outcome.skipped == {"customer_opted_out": 1}
        assert fake_transport.sent == []

    def test_recent_email_puts_recipient_in_cooldown(
        self, engine, pipeline, run_config, fake_transport, add_invoice, schedule, now
    ):
        add_invoice(500, days=45)
        schedule(500)
        with engine.begin() as conn:
            conn.execute(
                sa.insert(EMAIL_LOGS).values(
                    order_id=499,
                    recipient_email="billing500@example.com",
                    status="sent",
                    created_at=now - timedelta(hours=2),
                )
            )

        outcome = pipeline.process_due(run_config)

        assert outcome.skipped == {"recipient_cooldown": 1}
        assert fake_transport.sent == []

    def test_daily_limit_skips_remaining_rows(
        self, engine, fake_transport, clock, add_invoice, schedule, now
    ):
        add_invoice(500, days=45)
        add_invoice(501, days=45)
        schedule(500)
        schedule(501)
        config = RunConfiguration.load(
            engine,
            triggered_by="manual",
            settings=Settings(SENDER_EMAIL="ar@sender.example.com", DAILY_EMAIL_LIMIT=1),
            clock=clock,
        )

        outcome = SendPipeline(engine, fake_transport, clock=clock).process_due(config)

        assert outcome.sent == 1
        assert outcome.skipped == {"send_limit_reached": 1}
        assert len(fake_transport.sent) == 1


class TestFailures:
    def test_missing_template_fails_the_row(self, engine, pipeline, run_config, fake_transport, add_invoice, schedule):
        add_invoice(500, days=45)
        schedule_id = schedule(500)
        with engine.begin() as conn:
            conn.execute(sa.update(EMAIL_TEMPLATES).values(is_active=False))

        outcome = pipeline.process_due(run_config)

        assert outcome.failed == 1
        assert fake_transport.sent == []
        row = _schedule_row(engine, schedule_id)
        assert (row.status, row.skip_reason) == ("failed", "template_missing")

    def test_transport_failure_is_logged_and_the_pass_continues(
        self, engine, pipeline, run_config, fake_transport, add_invoice, schedule
    ):
        add_invoice(500, days=45)
        add_invoice(501, days=45)
        first = schedule(500)
        second = schedule(501)
        fake_transport.fail_with = "mailbox unavailable"

        outcome = pipeline.process_due(run_config)

        assert (outcome.processed, outcome.failed, outcome.sent) == (2, 2, 0)
        assert len(fake_transport.sent) == 2
        for schedule_id in (first, second):
            row = _schedule_row(engine, schedule_id)
            assert row.status == "failed"
            assert row.error_message == "mailbox unavailable"
        assert [log.status for log in _logs(engine)] == ["failed", "failed"]

    def test_failed_row_is_not_retried_by_a_later_pass(
        self, engine, pipeline, run_config, fake_transport, add_invoice, schedule
    ):
        add_invoice(500, days=45)
        schedule(500)
        fake_transport.fail_with = "timeout"
        pipeline.process_due(run_config)
        fake_transport.fail_with = None

        outcome = pipeline.process_due(run_config)

        assert outcome.processed == 0
        assert len(fake_transport.sent) == 1


class TestTestMode:
    def test_test_rows_are_redirected_to_the_test_address(
        self, engine, fake_transport, clock, run_settings, add_invoice, schedule
    ):
        add_invoice(500, days=45)
        production_id = schedule(500)
        test_id = schedule(500, is_test=True)
        with engine.begin() as conn:
            set_app_setting(conn, TEST_EMAIL_KEY, "QA@Example.com")
        config = RunConfiguration.load(
            engine, triggered_by="manual", test_mode=True, settings=run_settings, clock=clock
        )

        outcome = SendPipeline(engine, fake_transport, clock=clock).process_due(config)

        assert outcome.sent == 1
        assert fake_transport.sent[0]["to"] == "qa@example.com"
        assert _schedule_row(engine, test_id).status == "sent"
        assert _schedule_row(engine, production_id).status == "pending"
        [log] = _logs(engine)
        assert log.is_test is True
        assert log.recipient_email == "qa@example.com"

    def test_opted_out_test_address_is_not_mailed(
        self, engine, fake_transport, clock, run_settings, add_invoice, schedule
    ):
        add_invoice(500, days=45)
        schedule(500, is_test=True)
        with engine.begin() as conn:
            set_app_setting(conn, TEST_EMAIL_KEY, "qa@example.com")
        PreferenceStore(engine).add_opt_out("qa@example.com")
        config = RunConfiguration.load(
            engine, triggered_by="manual", test_mode=True, settings=run_settings, clock=clock
        )

        outcome = SendPipeline(engine, fake_transport, clock=clock).process_due(config)

        assert outcome.skipped == {"test_recipient_opted_out": 1}
        assert fake_transport.sent == []
