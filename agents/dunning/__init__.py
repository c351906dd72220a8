"""Dunning engine: campaign-driven payment reminders for open invoices.

Key Components:
- Eligibility: pure campaign tier decisions on invoice age
- Scheduler: dedup-safe ``email_schedule`` rows per campaign
- Safety: pre-flight validation, send caps, cooldown, emergency stop
- Templates: placeholder rendering through Jinja2, signed opt-out links
- Sender: send-time re-validation and delivery via the email transport
- Orchestrator: one audited run over every active campaign
- Admin: operations behind the admin API and operator CLIs
"""

from .admin import AdminService, NotFoundError, ensure_defaults
from .config import RunConfiguration
from .dto import (
    Campaign,
    CampaignOutcome,
    CampaignType,
    RunSummary,
    ScheduleStatus,
    SendFrequency,
    SendOutcome,
    SkipReason,
    TriggeredBy,
    ValidationResult,
)
from .eligibility import day_bucket, is_eligible
from .orchestrator import RunOrchestrator, latest_run
from .preferences import PreferenceStore
from .safety import SafetyGovernor
from .scheduler import CampaignScheduler
from .sender import BrevoTransport, EmailTransport, NullPdfRenderer, PdfRenderer, SendPipeline
from .templates import TemplateEngine

__all__ = [
    "AdminService",
    "BrevoTransport",
    "Campaign",
    "CampaignOutcome",
    "CampaignScheduler",
    "CampaignType",
    "EmailTransport",
    "NotFoundError",
    "NullPdfRenderer",
    "PdfRenderer",
    "PreferenceStore",
    "RunConfiguration",
    "RunOrchestrator",
    "RunSummary",
    "SafetyGovernor",
    "ScheduleStatus",
    "SendFrequency",
    "SendOutcome",
    "SendPipeline",
    "SkipReason",
    "TemplateEngine",
    "TriggeredBy",
    "ValidationResult",
    "day_bucket",
    "ensure_defaults",
    "is_eligible",
    "latest_run",
]
