"""Data Transfer Objects for the dunning engine.

Campaign definitions, reason codes and the summaries returned by the
scheduler, send pipeline and run orchestrator.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class CampaignType(str, Enum):
    """Known campaign tiers."""
    OVERDUE_31_60 = "overdue_31_60"
    OVERDUE_61_90 = "overdue_61_90"
    OVERDUE_91_PLUS = "overdue_91_plus"
    OVERDUE_91_PLUS_RECURRING = "overdue_91_plus_recurring"


class SendFrequency(str, Enum):
    ONCE = "once"
    RECURRING = "recurring"


class ScheduleStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    """Reason codes stored on ``skipped`` (and template failure) schedule rows."""
    INVALID_EMAIL = "invalid_email"
    CUSTOMER_OPTED_OUT = "customer_opted_out"
    ALREADY_SCHEDULED = "already_scheduled"
    MAX_REMINDERS_REACHED = "max_reminders_reached"
    INVOICE_NOT_FOUND = "invoice_not_found"
    INVOICE_PAID = "invoice_paid"
    RECIPIENT_COOLDOWN = "recipient_cooldown"
    SEND_LIMIT_REACHED = "send_limit_reached"
    TEST_RECIPIENT_OPTED_OUT = "test_recipient_opted_out"
    TEMPLATE_MISSING = "template_missing"


class TriggeredBy(str, Enum):
    SCHEDULER = "scheduler"
    MANUAL = "manual"
    API = "api"
    CLI = "cli"


@dataclass
class Campaign:
    """Row of ``campaigns``."""

    id: int
    campaign_name: str
    campaign_type: str
    trigger_days: int
    template_type: str
    is_active: bool = False
    send_frequency: str = SendFrequency.ONCE.value
    recurring_interval_days: Optional[int] = None
    max_reminders: Optional[int] = None

    @property
    def is_recurring(self) -> bool:
        return self.send_frequency == SendFrequency.RECURRING.value

    @classmethod
    def from_row(cls, row: Any) -> "Campaign":
        data = dict(row._mapping) if hasattr(row, "_mapping") else dict(row)
        return cls(
            id=data["id"],
            campaign_name=data["campaign_name"],
            campaign_type=data["campaign_type"],
            trigger_days=data["trigger_days"],
            template_type=data["template_type"],
            is_active=bool(data.get("is_active")),
            send_frequency=data.get("send_frequency") or SendFrequency.ONCE.value,
            recurring_interval_days=data.get("recurring_interval_days"),
            max_reminders=data.get("max_reminders"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "campaign_name": self.campaign_name,
            "campaign_type": self.campaign_type,
            "trigger_days": self.trigger_days,
            "template_type": self.template_type,
            "is_active": self.is_active,
            "send_frequency": self.send_frequency,
            "recurring_interval_days": self.recurring_interval_days,
            "max_reminders": self.max_reminders,
        }


@dataclass
class ValidationResult:
    """Outcome of the pre-flight safety validation."""

    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    daily_sent: int = 0
    hourly_sent: int = 0
    active_campaigns: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "daily_sent": self.daily_sent,
            "hourly_sent": self.hourly_sent,
            "active_campaigns": self.active_campaigns,
        }


@dataclass
class CampaignOutcome:
    """Counters for scheduling one campaign."""

    campaign_id: int
    campaign_type: str
    candidates: int = 0
    eligible: int = 0
    scheduled: int = 0
    already_scheduled: int = 0
    skipped: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def skipped_total(self) -> int:
        return sum(self.skipped.values())

    def skip(self, reason: SkipReason) -> None:
        self.skipped[reason.value] = self.skipped.get(reason.value, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "campaign_id": self.campaign_id,
            "campaign_type": self.campaign_type,
            "candidates": self.candidates,
            "eligible": self.eligible,
            "scheduled": self.scheduled,
            "already_scheduled": self.already_scheduled,
            "skipped": dict(self.skipped),
            "error": self.error,
        }


@dataclass
class SendOutcome:
    """Counters for one pass over due schedule rows."""

    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    @property
    def skipped_total(self) -> int:
        return sum(self.skipped.values())

    def skip(self, reason: SkipReason) -> None:
        self.skipped[reason.value] = self.skipped.get(reason.value, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": dict(self.skipped),
            "errors": list(self.errors),
        }


@dataclass
class RunSummary:
    """Result of one orchestrated dunning run."""

    triggered_by: str
    test_mode: bool
    run_log_id: Optional[int] = None
    status: str = "running"
    total_orders_processed: int = 0
    emails_scheduled: int = 0
    emails_sent: int = 0
    emails_failed: int = 0
    emails_skipped: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    campaigns: List[CampaignOutcome] = field(default_factory=list)
    send: Optional[SendOutcome] = None

    @property
    def success(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_log_id": self.run_log_id,
            "status": self.status,
            "triggered_by": self.triggered_by,
            "test_mode": self.test_mode,
            "total_orders_processed": self.total_orders_processed,
            "emails_scheduled": self.emails_scheduled,
            "emails_sent": self.emails_sent,
            "emails_failed": self.emails_failed,
            "emails_skipped": self.emails_skipped,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "campaigns": [c.to_dict() for c in self.campaigns],
            "send": self.send.to_dict() if self.send else None,
        }
