"""Administrative operations over campaigns, templates, schedules and settings.

Used by the FastAPI admin routers and the operator CLIs. Every method
returns plain dicts so callers can serialize them directly.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from backend.core.cache_store import (
    AUTOMATION_LOGS,
    CAMPAIGNS,
    EMAIL_LOGS,
    EMAIL_SCHEDULE,
    EMAIL_TEMPLATES,
    get_app_setting,
    insert_or_ignore,
    parse_flag,
    set_app_setting,
    upsert,
    utcnow,
)
from backend.core.config import settings

from .config import TEST_EMAIL_KEY, TEST_MODE_KEY, RunConfiguration
from .dto import Campaign, RunSummary, TriggeredBy
from .orchestrator import RunOrchestrator
from .preferences import PreferenceStore
from .safety import SafetyGovernor, is_valid_email_address
from .scheduler import preview_campaign
from .sender import EmailTransport, SendPipeline, Sender, load_invoice, load_template
from .templates import load_defaults, verify_opt_out_token

logger = logging.getLogger(__name__)


class NotFoundError(LookupError):
    """Requested campaign, template or order does not exist."""


def ensure_defaults(engine: Engine, clock: Callable[[], datetime] | None = None) -> Dict[str, int]:
    """Seed default campaigns and templates that are not present yet."""
    now = (clock or utcnow)()
    defaults = load_defaults()
    created = {"campaigns": 0, "templates": 0}
    with engine.begin() as conn:
        for template_type, template in (defaults.get("templates") or {}).items():
            if insert_or_ignore(
                conn,
                EMAIL_TEMPLATES,
                {
                    "template_type": template_type,
                    "template_name": template["template_name"],
                    "subject_template": template["subject"],
                    "body_template": template["body"],
                    "is_active": True,
                    "updated_at": now,
                },
            ):
                created["templates"] += 1
        for campaign in defaults.get("campaigns") or []:
            if insert_or_ignore(
                conn,
                CAMPAIGNS,
                {
                    "campaign_name": campaign["campaign_name"],
                    "campaign_type": campaign["campaign_type"],
                    "trigger_days": campaign["trigger_days"],
                    "template_type": campaign["template_type"],
                    "is_active": bool(campaign.get("is_active", False)),
                    "send_frequency": campaign.get("send_frequency", "once"),
                    "recurring_interval_days": campaign.get("recurring_interval_days"),
                    "max_reminders": campaign.get("max_reminders"),
                    "created_at": now,
                    "updated_at": now,
                },
            ):
                created["campaigns"] += 1
    if created["campaigns"] or created["templates"]:
        logger.info("Default campaigns and templates seeded", extra=created)
    return created


class AdminService:
    """Admin facade for the dunning engine."""

    def __init__(
        self,
        engine: Engine,
        transport: EmailTransport | None = None,
        clock: Callable[[], datetime] | None = None,
        synchronizer_factory: Callable[[], Any] | None = None,
    ):
        self.engine = engine
        self.transport = transport
        self.clock = clock or utcnow
        self.synchronizer_factory = synchronizer_factory
        self.preferences = PreferenceStore(engine)

    # Runs

    def run(self, test_mode: bool = False, triggered_by: str = TriggeredBy.API.value) -> RunSummary:
        orchestrator = RunOrchestrator(self.engine, transport=self.transport, clock=self.clock)
        return orchestrator.run(triggered_by=triggered_by, test_mode=test_mode)

    def sync(self) -> Dict[str, Any]:
        if self.synchronizer_factory is None:
            from agents.cache_sync import BrightpearlAdapter, CacheSynchronizer

            synchronizer = CacheSynchronizer(self.engine, BrightpearlAdapter(), clock=self.clock)
        else:
            synchronizer = self.synchronizer_factory()
        return synchronizer.sync().to_dict()

    # Reporting

    def stats(self, days: int = 30) -> Dict[str, Any]:
        since = self.clock() - timedelta(days=days)
        with self.engine.connect() as conn:
            logs = conn.execute(
                sa.select(AUTOMATION_LOGS)
                .where(AUTOMATION_LOGS.c.run_started_at >= since)
                .order_by(AUTOMATION_LOGS.c.run_started_at.desc(), AUTOMATION_LOGS.c.id.desc())
            ).mappings().all()
            unique_customers = conn.execute(
                sa.select(sa.func.count(sa.distinct(EMAIL_LOGS.c.recipient_email)))
                .where(EMAIL_LOGS.c.status == "sent")
                .where(EMAIL_LOGS.c.is_test.is_(False))
                .where(EMAIL_LOGS.c.created_at >= since)
            ).scalar_one()
        return {
            "days": days,
            "total_runs": len(logs),
            "successful_runs": sum(1 for log in logs if log["status"] == "completed"),
            "failed_runs": sum(1 for log in logs if log["status"] == "failed"),
            "total_emails_sent": sum(log["emails_sent"] or 0 for log in logs),
            "total_emails_failed": sum(log["emails_failed"] or 0 for log in logs),
            "total_emails_scheduled": sum(log["emails_scheduled"] or 0 for log in logs),
            "unique_customers": unique_customers,
            "recent_logs": [dict(log) for log in logs[:10]],
        }

    def list_campaigns(self) -> List[Dict[str, Any]]:
        with self.engine.connect() as conn:
            rows = conn.execute(sa.select(CAMPAIGNS).order_by(CAMPAIGNS.c.trigger_days, CAMPAIGNS.c.id)).all()
        return [Campaign.from_row(r).to_dict() for r in rows]

    def list_schedule(self, status: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        stmt = (
            sa.select(EMAIL_SCHEDULE, CAMPAIGNS.c.campaign_name)
            .join(CAMPAIGNS, CAMPAIGNS.c.id == EMAIL_SCHEDULE.c.campaign_id)
            .order_by(EMAIL_SCHEDULE.c.created_at.desc(), EMAIL_SCHEDULE.c.id.desc())
            .limit(limit)
        )
        if status:
            stmt = stmt.where(EMAIL_SCHEDULE.c.status == status)
        with self.engine.connect() as conn:
            return [dict(r) for r in conn.execute(stmt).mappings().all()]

    def list_logs(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                sa.select(AUTOMATION_LOGS)
                .order_by(AUTOMATION_LOGS.c.run_started_at.desc(), AUTOMATION_LOGS.c.id.desc())
                .limit(limit)
            ).mappings().all()
        return [dict(r) for r in rows]

    def preview(self) -> List[Dict[str, Any]]:
        """Dry evaluation of every active campaign; nothing is written."""
        today = self.clock().date()
        with self.engine.connect() as conn:
            campaigns = conn.execute(
                sa.select(CAMPAIGNS)
                .where(CAMPAIGNS.c.is_active.is_(True))
                .order_by(CAMPAIGNS.c.trigger_days, CAMPAIGNS.c.id)
            ).all()
            return [preview_campaign(conn, Campaign.from_row(c), today) for c in campaigns]

    def safety(self) -> Dict[str, Any]:
        return SafetyGovernor(self.engine, transport=self.transport, clock=self.clock).safety_metrics()

    # Mutations

    def update_campaign(
        self,
        campaign_id: int,
        is_active: Optional[bool] = None,
        template_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        if is_active is not None:
            values["is_active"] = bool(is_active)
        with self.engine.begin() as conn:
            if template_type is not None:
                exists = conn.execute(
                    sa.select(EMAIL_TEMPLATES.c.id).where(EMAIL_TEMPLATES.c.template_type == template_type)
                ).first()
                if exists is None:
                    raise NotFoundError(f"template {template_type!r} not found")
                values["template_type"] = template_type
            if values:
                values["updated_at"] = self.clock()
                result = conn.execute(
                    sa.update(CAMPAIGNS).where(CAMPAIGNS.c.id == campaign_id).values(**values)
                )
                if not result.rowcount:
                    raise NotFoundError(f"campaign {campaign_id} not found")
            row = conn.execute(sa.select(CAMPAIGNS).where(CAMPAIGNS.c.id == campaign_id)).first()
        if row is None:
            raise NotFoundError(f"campaign {campaign_id} not found")
        logger.info("Campaign updated", extra={"campaign_id": campaign_id, **{k: v for k, v in values.items() if k != "updated_at"}})
        return Campaign.from_row(row).to_dict()

    def upsert_template(
        self,
        template_type: str,
        subject_template: str,
        body_template: str,
        template_name: Optional[str] = None,
        is_active: bool = True,
    ) -> Dict[str, Any]:
        if not subject_template or not body_template:
            raise ValueError("subject and body are required")
        now = self.clock()
        with self.engine.begin() as conn:
            upsert(
                conn,
                EMAIL_TEMPLATES,
                [
                    {
                        "template_type": template_type,
                        "template_name": template_name or template_type,
                        "subject_template": subject_template,
                        "body_template": body_template,
                        "is_active": is_active,
                        "updated_at": now,
                    }
                ],
                conflict_columns=["template_type"],
                update_columns=["subject_template", "body_template", "is_active", "updated_at"]
                + (["template_name"] if template_name else []),
            )
            row = conn.execute(
                sa.select(EMAIL_TEMPLATES).where(EMAIL_TEMPLATES.c.template_type == template_type)
            ).mappings().one()
        logger.info("Email template saved", extra={"template_type": template_type})
        return dict(row)

    def emergency_stop(self, reason: str) -> Dict[str, Any]:
        stopped = SafetyGovernor(self.engine, clock=self.clock).emergency_stop(reason)
        return {"stopped": stopped, "reason": reason}

    # Settings

    def get_settings(self) -> Dict[str, Any]:
        with self.engine.connect() as conn:
            return {
                "test_mode": parse_flag(get_app_setting(conn, TEST_MODE_KEY)),
                "test_email": get_app_setting(conn, TEST_EMAIL_KEY) or None,
            }

    def update_settings(self, test_mode: Optional[bool] = None, test_email: Optional[str] = None) -> Dict[str, Any]:
        if test_email is not None:
            test_email = test_email.strip().lower()
            if test_email and not is_valid_email_address(test_email):
                raise ValueError(f"invalid test email {test_email!r}")
        with self.engine.begin() as conn:
            if test_mode is not None:
                set_app_setting(conn, TEST_MODE_KEY, "true" if test_mode else "false")
            if test_email is not None:
                set_app_setting(conn, TEST_EMAIL_KEY, test_email or None)
        current = self.get_settings()
        logger.info("Automation settings updated", extra={"test_mode": current["test_mode"]})
        return current

    # Opt-outs

    def opt_out_by_token(self, token: str) -> str:
        email = verify_opt_out_token(
            token,
            settings.OPT_OUT_HMAC_KEY,
            max_age=timedelta(days=settings.OPT_OUT_TOKEN_MAX_AGE_DAYS),
            now=self.clock(),
        )
        self.preferences.add_opt_out(email, reason="unsubscribe link", scope="all")
        return email

    # Test email

    def send_test_email(self, order_id: int, to: str, template_type: Optional[str] = None) -> Dict[str, Any]:
        """Render a template against a cached order and send it to ``to``."""
        recipient = (to or "").strip().lower()
        if not is_valid_email_address(recipient):
            raise ValueError(f"invalid recipient {to!r}")
        if self.transport is None:
            raise ValueError("no email transport configured")

        run_config = RunConfiguration.load(
            self.engine, triggered_by=TriggeredBy.MANUAL.value, test_mode=True, clock=self.clock
        )
        with self.engine.connect() as conn:
            invoice = load_invoice(conn, order_id)
            if invoice is None:
                raise NotFoundError(f"order {order_id} not found in cache")
            if template_type is None:
                template_type = _template_for_age(conn, invoice["days_outstanding"] or 0)
            template = load_template(conn, template_type)
        if template is None:
            raise NotFoundError(f"template {template_type!r} not found or inactive")

        pipeline = SendPipeline(self.engine, self.transport, clock=self.clock)
        email = pipeline.render(template, invoice, recipient, run_config)
        result = pipeline.deliver(
            Sender(run_config.sender_email, run_config.sender_name),
            recipient,
            email,
            invoice,
            is_test=True,
            source="test",
        )
        return {
            "success": result.success,
            "message_id": result.message_id,
            "error": result.error,
            "email_log_id": result.email_log_id,
            "subject": email.subject,
            "template_type": template_type,
        }


def _template_for_age(conn, days_outstanding: int) -> str:
    """Template of the highest campaign tier the invoice has reached."""
    row = conn.execute(
        sa.select(CAMPAIGNS.c.template_type)
        .where(CAMPAIGNS.c.trigger_days <= max(days_outstanding, 0))
        .order_by(CAMPAIGNS.c.trigger_days.desc())
        .limit(1)
    ).first()
    if row is not None:
        return row.template_type
    first = conn.execute(
        sa.select(CAMPAIGNS.c.template_type).order_by(CAMPAIGNS.c.trigger_days).limit(1)
    ).first()
    if first is None:
        raise NotFoundError("no campaigns configured")
    return first.template_type
