"""Run orchestrator: one audited invocation of the dunning engine.

A run validates safety preconditions, schedules every active campaign in
ascending ``trigger_days`` order, sends what is due today and records the
totals in ``automation_logs``. The log row is always finalized.
"""

import logging
import time
from datetime import datetime
from typing import Callable, List, Optional

import sqlalchemy as sa
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from agents.shared.errors import ConfigurationError
from backend.core.cache_store import AUTOMATION_LOGS, CAMPAIGNS, EMAIL_SCHEDULE, StoreUnavailableError, utcnow
from backend.core.config import Settings
from backend.core.observability.logging import set_run_id
from backend.core.observability.metrics import increment_automation_runs, record_run_duration

from .config import RunConfiguration
from .dto import Campaign, CampaignOutcome, RunSummary, TriggeredBy
from .safety import SafetyGovernor
from .scheduler import CampaignScheduler
from .sender import BrevoTransport, EmailTransport, PdfRenderer, SendPipeline


def active_campaigns(engine: Engine) -> List[Campaign]:
    with engine.connect() as conn:
        rows = conn.execute(
            sa.select(CAMPAIGNS)
            .where(CAMPAIGNS.c.is_active.is_(True))
            .order_by(CAMPAIGNS.c.trigger_days, CAMPAIGNS.c.id)
        ).all()
    return [Campaign.from_row(r) for r in rows]


def purge_test_schedules(engine: Engine) -> int:
    with engine.begin() as conn:
        result = conn.execute(sa.delete(EMAIL_SCHEDULE).where(EMAIL_SCHEDULE.c.is_test.is_(True)))
    return result.rowcount or 0


class RunOrchestrator:
    """Dunning run orchestrator."""

    def __init__(
        self,
        engine: Engine,
        transport: EmailTransport | None = None,
        pdf_renderer: PdfRenderer | None = None,
        clock: Callable[[], datetime] | None = None,
        settings: Settings | None = None,
    ):
        """Initialize orchestrator.

        Args:
            engine: Cache store engine
            transport: Email transport (defaults to Brevo)
            pdf_renderer: Optional invoice PDF renderer
            clock: Time source shared by every component of the run
            settings: Settings override
        """
        self.engine = engine
        self.clock = clock or utcnow
        self.settings = settings
        self.transport = transport if transport is not None else BrevoTransport()
        self.governor = SafetyGovernor(engine, transport=self.transport, clock=self.clock)
        self.scheduler = CampaignScheduler(engine, clock=self.clock)
        self.pipeline = SendPipeline(
            engine,
            self.transport,
            governor=self.governor,
            pdf_renderer=pdf_renderer,
            clock=self.clock,
        )
        self.logger = logging.getLogger(__name__)

    def run(self, triggered_by: str = TriggeredBy.MANUAL.value, test_mode: bool = False) -> RunSummary:
        """Run the dunning engine once.

        Args:
            triggered_by: scheduler, manual, api or cli
            test_mode: Route the run to test schedule rows

        Returns:
            Run summary; never raises
        """
        started = time.time()
        summary = RunSummary(triggered_by=triggered_by, test_mode=test_mode)

        try:
            run_config = self._begin(triggered_by, test_mode, summary)
        except Exception as e:
            summary.status = "failed"
            summary.errors.append(f"Run could not start: {e}")
            self.logger.error("Automation run could not start", extra={"error": str(e)}, exc_info=True)
            increment_automation_runs(summary.status)
            return summary

        set_run_id(summary.run_log_id)
        self.logger.info(
            "Starting automated email run",
            extra={"triggered_by": triggered_by, "test_mode": run_config.test_mode},
        )

        try:
            self._execute(run_config, summary)
            summary.status = "completed"
        except ConfigurationError as e:
            summary.status = "failed"
            summary.errors.append(str(e))
            self.logger.error("Automation run blocked", extra={"errors": summary.errors})
        except Exception as e:
            summary.status = "failed"
            summary.errors.append(f"Unexpected error: {e}")
            self.logger.error("Automation run failed", extra={"error": str(e)}, exc_info=True)
        finally:
            if summary.status == "running":
                summary.status = "failed"
            self._finish_log(summary)
            set_run_id(None)

        increment_automation_runs(summary.status)
        record_run_duration((time.time() - started) * 1000.0)
        self.logger.info("Automation run finished", extra=summary.to_dict())
        return summary

    def _execute(self, run_config: RunConfiguration, summary: RunSummary) -> None:
        validation = self.governor.validate_run(run_config)
        summary.warnings.extend(validation.warnings)
        if not validation.ok:
            raise ConfigurationError("Safety validation failed: " + "; ".join(validation.errors))

        for campaign in active_campaigns(self.engine):
            try:
                outcome = self.scheduler.schedule_campaign(campaign, run_config)
            except Exception as e:
                outcome = CampaignOutcome(campaign_id=campaign.id, campaign_type=campaign.campaign_type)
                outcome.error = str(e)
                summary.errors.append(f"campaign {campaign.campaign_type}: {e}")
                self.logger.error(
                    "Campaign failed",
                    extra={"campaign_type": campaign.campaign_type, "error": str(e)},
                    exc_info=True,
                )
            summary.campaigns.append(outcome)
            summary.total_orders_processed += outcome.eligible
            summary.emails_scheduled += outcome.scheduled
            summary.emails_skipped += outcome.skipped_total

        send = self.pipeline.process_due(run_config)
        summary.send = send
        summary.emails_sent += send.sent
        summary.emails_failed += send.failed
        summary.emails_skipped += send.skipped_total

        if run_config.test_mode:
            purged = purge_test_schedules(self.engine)
            self.logger.info("Test schedule rows purged", extra={"rows": purged})

    def _begin(self, triggered_by: str, test_mode: bool, summary: RunSummary) -> RunConfiguration:
        try:
            run_config = RunConfiguration.load(
                self.engine,
                triggered_by=triggered_by,
                test_mode=test_mode,
                settings=self.settings,
                clock=self.clock,
            )
            summary.test_mode = run_config.test_mode
            summary.run_log_id = self._start_log(run_config)
        except OperationalError as e:
            raise StoreUnavailableError(f"cache store unavailable: {e.orig}") from e
        return run_config

    def _start_log(self, run_config: RunConfiguration) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                sa.insert(AUTOMATION_LOGS).values(
                    triggered_by=run_config.triggered_by,
                    test_mode=run_config.test_mode,
                    run_started_at=self.clock(),
                    status="running",
                )
            )
            return result.inserted_primary_key[0]

    def _finish_log(self, summary: RunSummary) -> None:
        if summary.run_log_id is None:
            return
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    sa.update(AUTOMATION_LOGS)
                    .where(AUTOMATION_LOGS.c.id == summary.run_log_id)
                    .values(
                        run_completed_at=self.clock(),
                        total_orders_processed=summary.total_orders_processed,
                        emails_scheduled=summary.emails_scheduled,
                        emails_sent=summary.emails_sent,
                        emails_failed=summary.emails_failed,
                        emails_skipped=summary.emails_skipped,
                        errors_encountered=len(summary.errors),
                        error_details="\n".join(summary.errors) or None,
                        status=summary.status,
                    )
                )
        except Exception as e:
            self.logger.error(
                "Could not finalize automation log",
                extra={"run_log_id": summary.run_log_id, "error": str(e)},
            )


def latest_run(engine: Engine) -> Optional[dict]:
    with engine.connect() as conn:
        row = conn.execute(
            sa.select(AUTOMATION_LOGS).order_by(AUTOMATION_LOGS.c.id.desc()).limit(1)
        ).mappings().first()
    return dict(row) if row else None
