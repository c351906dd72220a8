"""Data Transfer Objects for the cache synchronizer.

Normalizes raw ERP payloads (camelCase JSON) into typed snapshots and
carries run summaries back to callers.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from agents.shared.errors import RecordError

from .status_lookup import StatusLookup, payment_status_color

CENT = Decimal("0.01")


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse ERP timestamps (ISO strings, dates or datetimes) as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as e:
            raise RecordError(f"unparsable timestamp {value!r}") from e
        return parse_datetime(parsed)
    raise RecordError(f"unsupported timestamp type {type(value).__name__}")


def to_money(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0.00")
    try:
        return Decimal(str(value)).quantize(CENT)
    except InvalidOperation as e:
        raise RecordError(f"invalid amount {value!r}") from e


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def record_id(payload: Dict[str, Any]) -> Optional[int]:
    """Order id of a raw ERP record, or None when it has no usable id."""
    return _optional_int(payload.get("id", payload.get("orderId")))


def days_between(basis: datetime, now: datetime) -> int:
    """Whole days elapsed from ``basis`` to ``now`` (floored)."""
    return (now - basis) // timedelta(days=1)


@dataclass
class InvoiceSnapshot:
    """Denormalized row of ``cached_invoices``."""

    id: int
    order_date: datetime
    total_amount: Decimal
    paid_amount: Decimal
    order_reference: Optional[str] = None
    invoice_number: Optional[str] = None
    tax_date: Optional[datetime] = None
    payment_status: Optional[str] = None
    order_status_id: Optional[int] = None
    shipping_status_code: Optional[str] = None
    stock_status_code: Optional[str] = None
    billing_contact_id: Optional[int] = None
    billing_name: Optional[str] = None
    billing_email: Optional[str] = None
    billing_company: Optional[str] = None
    delivery_name: Optional[str] = None
    delivery_email: Optional[str] = None
    delivery_company: Optional[str] = None

    @property
    def outstanding_amount(self) -> Decimal:
        """Outstanding balance, never negative."""
        return max(self.total_amount - self.paid_amount, Decimal("0.00"))

    @property
    def aging_basis(self) -> datetime:
        return self.tax_date or self.order_date

    def days_outstanding(self, now: datetime) -> int:
        return days_between(self.aging_basis, now)

    @classmethod
    def from_erp(cls, payload: Dict[str, Any]) -> "InvoiceSnapshot":
        """Build a snapshot from an ERP open-invoice record.

        Raises:
            RecordError: If the id or order date is missing or unparsable
        """
        order_id = record_id(payload)
        if order_id is None:
            raise RecordError("record without order id")
        order_date = parse_datetime(payload.get("placedOn"))
        if order_date is None:
            raise RecordError(f"order {order_id} has no order date")

        billing_email = (payload.get("billingEmail") or "").strip() or None
        return cls(
            id=order_id,
            order_reference=payload.get("reference"),
            invoice_number=payload.get("invoiceNumber") or None,
            order_date=order_date,
            tax_date=parse_datetime(payload.get("taxDate")),
            total_amount=to_money(payload.get("total")),
            paid_amount=to_money(payload.get("paid")),
            payment_status=payload.get("orderPaymentStatus") or "UNKNOWN",
            order_status_id=_optional_int(payload.get("orderStatusId")),
            shipping_status_code=payload.get("shippingStatusCode"),
            stock_status_code=payload.get("stockStatusCode"),
            billing_contact_id=_optional_int(payload.get("billingContactId")),
            billing_name=payload.get("billingName"),
            billing_email=billing_email,
            billing_company=payload.get("billingCompany"),
            delivery_name=payload.get("deliveryName"),
            delivery_email=payload.get("deliveryEmail"),
            delivery_company=payload.get("deliveryCompany"),
        )

    def to_row(self, lookup: StatusLookup, now: datetime) -> Dict[str, Any]:
        """Row for ``cached_invoices`` with derived fields recomputed at ``now``."""
        order_status = lookup.order_status(self.order_status_id)
        shipping = lookup.shipping_status(self.shipping_status_code)
        stock = lookup.stock_status(self.stock_status_code)
        return {
            "id": self.id,
            "order_reference": self.order_reference,
            "invoice_number": self.invoice_number,
            "order_date": self.order_date,
            "tax_date": self.tax_date,
            "total_amount": self.total_amount,
            "paid_amount": self.paid_amount,
            "outstanding_amount": self.outstanding_amount,
            "payment_status": self.payment_status,
            "payment_status_color": payment_status_color(self.payment_status),
            "order_status_id": self.order_status_id,
            "order_status": order_status.label,
            "order_status_color": order_status.color,
            "shipping_status_code": self.shipping_status_code,
            "shipping_status": shipping.label,
            "shipping_status_color": shipping.color,
            "stock_status_code": self.stock_status_code,
            "stock_status": stock.label,
            "stock_status_color": stock.color,
            "billing_contact_id": self.billing_contact_id,
            "billing_name": self.billing_name,
            "billing_email": self.billing_email,
            "billing_company": self.billing_company,
            "delivery_name": self.delivery_name,
            "delivery_email": self.delivery_email,
            "delivery_company": self.delivery_company,
            "days_outstanding": self.days_outstanding(now),
            "last_updated": now,
        }


@dataclass
class NoteRecord:
    """One ERP order note."""

    order_id: int
    note_id: int
    note_text: Optional[str] = None
    contact_id: Optional[int] = None
    created_by: Optional[int] = None
    is_public: bool = False
    created_at_source: Optional[datetime] = None

    @classmethod
    def from_erp(cls, order_id: int, payload: Dict[str, Any]) -> "NoteRecord":
        note_id = _optional_int(payload.get("noteId", payload.get("id")))
        if note_id is None:
            raise RecordError(f"note without id on order {order_id}")
        return cls(
            order_id=order_id,
            note_id=note_id,
            note_text=payload.get("text"),
            contact_id=_optional_int(payload.get("contactId")),
            created_by=_optional_int(payload.get("addedBy")),
            is_public=bool(payload.get("isPublic", False)),
            created_at_source=parse_datetime(payload.get("addedOn")),
        )

    def to_row(self, cached_at: datetime) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "note_id": self.note_id,
            "note_text": self.note_text,
            "contact_id": self.contact_id,
            "created_by": self.created_by,
            "is_public": self.is_public,
            "note_type": "order_note",
            "created_at_source": self.created_at_source,
            "cached_at": cached_at,
        }


@dataclass
class ContactInfo:
    """Human-readable contact details resolved from a contact id."""

    contact_id: int
    name: Optional[str] = None
    email: Optional[str] = None
    company: Optional[str] = None

    @classmethod
    def from_erp(cls, contact_id: int, payload: Dict[str, Any]) -> "ContactInfo":
        first = (payload.get("firstName") or "").strip()
        last = (payload.get("lastName") or "").strip()
        emails = (payload.get("communication") or {}).get("emails") or {}
        organisation = payload.get("organisation") or {}
        return cls(
            contact_id=contact_id,
            name=" ".join(p for p in (first, last) if p) or None,
            email=(emails.get("PRI") or {}).get("email"),
            company=organisation.get("name"),
        )


@dataclass
class EnrichmentSummary:
    """Counters for one enrichment sub-flow."""

    processed: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SyncSummary:
    """Result of one synchronizer run."""

    status: str = "running"
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    total: int = 0
    skipped_records: int = 0
    sync_log_id: Optional[int] = None
    errors: List[str] = field(default_factory=list)
    notes: Optional[EnrichmentSummary] = None
    contacts: Optional[EnrichmentSummary] = None
    payment_links: Optional[EnrichmentSummary] = None

    @property
    def success(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "inserted": self.inserted,
            "updated": self.updated,
            "deleted": self.deleted,
            "total": self.total,
            "skipped_records": self.skipped_records,
            "sync_log_id": self.sync_log_id,
            "errors": list(self.errors),
            "notes": self.notes.to_dict() if self.notes else None,
            "contacts": self.contacts.to_dict() if self.contacts else None,
            "payment_links": self.payment_links.to_dict() if self.payment_links else None,
        }
