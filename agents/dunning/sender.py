"""Send pipeline: delivers due schedule rows through the email transport.

Every due row is re-validated at send time (invoice still open, recipient
not opted out, cooldown and send caps) before a template is rendered and
handed to the transport. Each transport attempt leaves an ``email_logs``
row; a failure on one row never stops the pass.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

import sqlalchemy as sa
from sqlalchemy.engine import Connection, Engine

from backend.core.cache_store import (
    CACHED_INVOICES,
    CAMPAIGNS,
    EMAIL_LOGS,
    EMAIL_SCHEDULE,
    EMAIL_TEMPLATES,
    utcnow,
)
from backend.core.observability.metrics import increment_emails
from backend.integrations.brevo_client import BrevoAttachment, BrevoClient

from .config import RunConfiguration
from .dto import ScheduleStatus, SendOutcome, SkipReason
from .preferences import is_opted_out
from .safety import SafetyGovernor
from .templates import RenderedEmail, TemplateEngine, build_variables, opt_out_link

logger = logging.getLogger(__name__)


@dataclass
class EmailAttachment:
    filename: str
    content: bytes
    content_type: str = "application/pdf"


@dataclass(frozen=True)
class Sender:
    email: str
    name: str = ""


@dataclass
class TransportResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class DeliveryResult:
    """Transport result plus the ``email_logs`` row written for it."""

    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    email_log_id: Optional[int] = None


class PdfRenderer(Protocol):
    """Renders an invoice document for attachment."""

    def render_invoice(self, invoice: Mapping[str, Any]) -> Optional[bytes]:
        ...


class EmailTransport(Protocol):
    """Outbound transactional email."""

    def send(
        self,
        sender: Sender,
        to: str,
        subject: str,
        body: str,
        attachments: List[EmailAttachment],
    ) -> TransportResult:
        ...


class NullPdfRenderer:
    """Renderer that never produces an attachment."""

    def render_invoice(self, invoice: Mapping[str, Any]) -> Optional[bytes]:
        return None


class BrevoTransport:
    """``EmailTransport`` backed by the Brevo HTTP API."""

    def __init__(self, client: BrevoClient | None = None):
        self.client = client or BrevoClient()

    def send(
        self,
        sender: Sender,
        to: str,
        subject: str,
        body: str,
        attachments: List[EmailAttachment],
    ) -> TransportResult:
        response = self.client.send_transactional(
            sender_email=sender.email,
            sender_name=sender.name,
            to=to,
            subject=subject,
            text=body,
            attachments=[BrevoAttachment(name=a.filename, content=a.content) for a in attachments],
        )
        return TransportResult(
            success=response.success, message_id=response.message_id, error=response.error
        )


def load_template(conn: Connection, template_type: str) -> Optional[Dict[str, Any]]:
    """Active template row for ``template_type``, or None."""
    row = conn.execute(
        sa.select(EMAIL_TEMPLATES)
        .where(EMAIL_TEMPLATES.c.template_type == template_type)
        .where(EMAIL_TEMPLATES.c.is_active.is_(True))
    ).mappings().first()
    return dict(row) if row else None


def load_invoice(conn: Connection, order_id: int) -> Optional[Dict[str, Any]]:
    row = conn.execute(
        sa.select(CACHED_INVOICES).where(CACHED_INVOICES.c.id == order_id)
    ).mappings().first()
    return dict(row) if row else None


class SendPipeline:
    """Processes today's pending schedule rows for one run."""

    def __init__(
        self,
        engine: Engine,
        transport: EmailTransport,
        governor: SafetyGovernor | None = None,
        templates: TemplateEngine | None = None,
        pdf_renderer: PdfRenderer | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.engine = engine
        self.transport = transport
        self.clock = clock or utcnow
        self.governor = governor or SafetyGovernor(engine, transport=transport, clock=self.clock)
        self.templates = templates or TemplateEngine()
        self.pdf_renderer = pdf_renderer or NullPdfRenderer()

    def due_rows(self, run_config: RunConfiguration) -> List[sa.Row]:
        with self.engine.connect() as conn:
            return conn.execute(
                sa.select(EMAIL_SCHEDULE, CAMPAIGNS.c.template_type)
                .join(CAMPAIGNS, CAMPAIGNS.c.id == EMAIL_SCHEDULE.c.campaign_id)
                .where(EMAIL_SCHEDULE.c.scheduled_date == run_config.today)
                .where(EMAIL_SCHEDULE.c.status == ScheduleStatus.PENDING.value)
                .where(EMAIL_SCHEDULE.c.attempt_count < run_config.send_max_attempts)
                .where(EMAIL_SCHEDULE.c.is_test.is_(run_config.test_mode))
                .order_by(EMAIL_SCHEDULE.c.created_at, EMAIL_SCHEDULE.c.id)
            ).all()

    def process_due(self, run_config: RunConfiguration) -> SendOutcome:
        outcome = SendOutcome()
        rows = self.due_rows(run_config)
        logger.info(
            "Processing scheduled emails",
            extra={"due": len(rows), "test_mode": run_config.test_mode},
        )

        for row in rows:
            if run_config.test_mode and outcome.sent >= run_config.test_mode_cap:
                logger.info("Test mode: send limit reached", extra={"limit": run_config.test_mode_cap})
                break
            outcome.processed += 1
            try:
                self._process_row(row, run_config, outcome)
            except Exception as e:
                outcome.failed += 1
                outcome.errors.append(f"schedule {row.id}: {e}")
                increment_emails("failed")
                logger.error(
                    "Failed to process scheduled email",
                    extra={"schedule_id": row.id, "order_id": row.order_id, "error": str(e)},
                    exc_info=True,
                )
                self._mark(row.id, ScheduleStatus.FAILED, error_message=str(e))

        logger.info("Scheduled emails processed", extra=outcome.to_dict())
        return outcome

    def _process_row(self, row: sa.Row, run_config: RunConfiguration, outcome: SendOutcome) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                sa.update(EMAIL_SCHEDULE)
                .where(EMAIL_SCHEDULE.c.id == row.id)
                .values(
                    attempt_count=EMAIL_SCHEDULE.c.attempt_count + 1,
                    last_attempt_at=self.clock(),
                    updated_at=self.clock(),
                )
            )

        with self.engine.connect() as conn:
            reason, invoice, recipient, template = self._evaluate(conn, row, run_config)
        if reason is not None:
            return self._skip(row, reason, outcome)

        if template is None:
            outcome.failed += 1
            increment_emails("failed")
            logger.error(
                "No active template for campaign",
                extra={"schedule_id": row.id, "template_type": row.template_type},
            )
            self._mark(
                row.id,
                ScheduleStatus.FAILED,
                skip_reason=SkipReason.TEMPLATE_MISSING.value,
                error_message=f"template {row.template_type!r} missing or inactive",
            )
            return

        email = self.render(template, invoice, recipient, run_config)
        result = self.deliver(
            Sender(run_config.sender_email, run_config.sender_name),
            recipient,
            email,
            invoice,
            schedule_id=row.id,
            is_test=run_config.test_mode,
            source="automation",
        )
        if result.success:
            outcome.sent += 1
            self._mark(
                row.id,
                ScheduleStatus.SENT,
                sent_at=self.clock(),
                message_id=result.message_id,
                email_log_id=result.email_log_id,
            )
        else:
            outcome.failed += 1
            outcome.errors.append(f"schedule {row.id}: {result.error}")
            self._mark(
                row.id,
                ScheduleStatus.FAILED,
                error_message=result.error,
                email_log_id=result.email_log_id,
            )

    def _evaluate(
        self, conn: Connection, row: sa.Row, run_config: RunConfiguration
    ) -> tuple[Optional[SkipReason], Optional[Dict[str, Any]], str, Optional[Dict[str, Any]]]:
        """Send-time checks for one row: (skip reason, invoice, recipient, template)."""
        recipient = row.recipient_email
        invoice = load_invoice(conn, row.order_id)
        if invoice is None:
            return SkipReason.INVOICE_NOT_FOUND, None, recipient, None
        if invoice["outstanding_amount"] is None or invoice["outstanding_amount"] <= 0:
            return SkipReason.INVOICE_PAID, invoice, recipient, None

        reason = self.governor.check_recipient(conn, row.recipient_email, run_config)
        if reason is not None:
            return reason, invoice, recipient, None

        if run_config.test_mode and run_config.test_email:
            recipient = run_config.test_email
            if recipient != row.recipient_email and is_opted_out(conn, recipient):
                return SkipReason.TEST_RECIPIENT_OPTED_OUT, invoice, recipient, None

        return None, invoice, recipient, load_template(conn, row.template_type)

    def render(
        self,
        template: Mapping[str, Any],
        invoice: Mapping[str, Any],
        recipient: str,
        run_config: RunConfiguration,
    ) -> RenderedEmail:
        variables = build_variables(
            invoice,
            sender_name=run_config.sender_name,
            company_name=run_config.company_name,
            opt_out_link=opt_out_link(
                run_config.public_base_url, recipient, run_config.opt_out_hmac_key, self.clock()
            ),
        )
        return self.templates.render_email(template, variables)

    def deliver(
        self,
        sender: Sender,
        recipient: str,
        email: RenderedEmail,
        invoice: Mapping[str, Any],
        *,
        schedule_id: Optional[int] = None,
        is_test: bool = False,
        source: str = "automation",
    ) -> DeliveryResult:
        """Attach the invoice PDF when available, send, and log the attempt."""
        attachments: List[EmailAttachment] = []
        try:
            pdf = self.pdf_renderer.render_invoice(invoice)
            if pdf:
                reference = invoice.get("invoice_number") or invoice["id"]
                attachments.append(EmailAttachment(filename=f"invoice-{reference}.pdf", content=pdf))
        except Exception as e:
            logger.warning(
                "PDF generation failed, sending without attachment",
                extra={"order_id": invoice["id"], "error": str(e)},
            )

        try:
            result = self.transport.send(sender, recipient, email.subject, email.body, attachments)
        except Exception as e:
            result = TransportResult(success=False, error=str(e))

        status = "sent" if result.success else "failed"
        with self.engine.begin() as conn:
            log_id = conn.execute(
                sa.insert(EMAIL_LOGS).values(
                    order_id=invoice["id"],
                    schedule_id=schedule_id,
                    recipient_email=recipient.lower(),
                    subject=email.subject,
                    status=status,
                    message_id=result.message_id,
                    error_message=result.error,
                    source=source,
                    is_test=is_test,
                    created_at=self.clock(),
                )
            ).inserted_primary_key[0]

        increment_emails(status)
        if result.success:
            logger.info(
                "Sent automated email",
                extra={"order_id": invoice["id"], "schedule_id": schedule_id, "message_id": result.message_id},
            )
        else:
            logger.error(
                "Email transport failed",
                extra={"order_id": invoice["id"], "schedule_id": schedule_id, "error": result.error},
            )
        return DeliveryResult(result.success, result.message_id, result.error, log_id)

    def _skip(self, row: sa.Row, reason: SkipReason, outcome: SendOutcome) -> None:
        outcome.skip(reason)
        increment_emails("skipped")
        logger.info(
            "Skipping scheduled email",
            extra={"schedule_id": row.id, "order_id": row.order_id, "reason": reason.value},
        )
        self._mark(row.id, ScheduleStatus.SKIPPED, skip_reason=reason.value)

    def _mark(self, schedule_id: int, status: ScheduleStatus, **values: Any) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                sa.update(EMAIL_SCHEDULE)
                .where(EMAIL_SCHEDULE.c.id == schedule_id)
                .values(status=status.value, updated_at=self.clock(), **values)
            )
