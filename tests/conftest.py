import inspect
import json
import socket
import warnings
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from pathlib import Path

import httpx
import pytest
import sqlalchemy as sa
from sqlalchemy.pool import StaticPool

from agents.cache_sync.dto import ContactInfo
from agents.cache_sync.status_lookup import StatusDefinitions
from agents.dunning.sender import TransportResult
from backend.core.cache_store import CACHED_INVOICES, create_all
from backend.core.config import Settings
from backend.core.observability.metrics import reset_metrics


VIOLATIONS = []
ARTIFACTS_DIR = Path("artifacts")
ARTIFACTS_DIR.mkdir(parents=True, exist_ok=True)
REPORT = ARTIFACTS_DIR / "egress-violations.json"

warnings.filterwarnings(
    "ignore",
    message="Dialect sqlite\\+pysqlite does \\*not\\* support Decimal objects natively",
)


def _is_allowed_callstack(allowed_paths: list[str]) -> bool:
    for frame in inspect.stack():
        filename = (frame.filename or "").replace("\\", "/")
        for ap in allowed_paths:
            if ap in filename:
                return True
    return False


@pytest.fixture(autouse=True, scope="session")
def egress_guard():
    allowed_client_paths = [
        "/tests/",
        "/backend/integrations/brevo_client.py",
        "/agents/shared/erp_client.py",
    ]

    real_getaddrinfo = socket.getaddrinfo
    real_create_connection = socket.create_connection
    real_httpx_init = httpx.Client.__init__

    # HTTP clients in tests run on mock transports; no sockets
    def guard_getaddrinfo(host, *args, **kwargs):
        if host in ("localhost", "127.0.0.1", "testserver"):
            return real_getaddrinfo(host, *args, **kwargs)
        VIOLATIONS.append({"fn": "getaddrinfo", "host": str(host)})
        raise RuntimeError("Egress blocked: getaddrinfo disallowed")

    def guard_create_connection(address, *args, **kwargs):
        VIOLATIONS.append({"fn": "create_connection", "address": str(address)})
        raise RuntimeError("Egress blocked: create_connection disallowed")

    def guard_httpx_init(self, *args, **kwargs):
        if not _is_allowed_callstack(allowed_client_paths):
            VIOLATIONS.append({"fn": "httpx.Client.__init__"})
            raise RuntimeError("Egress blocked: httpx.Client not allowed from this callsite")
        return real_httpx_init(self, *args, **kwargs)

    socket.getaddrinfo = guard_getaddrinfo  # type: ignore[assignment]
    socket.create_connection = guard_create_connection  # type: ignore[assignment]
    httpx.Client.__init__ = guard_httpx_init  # type: ignore[assignment]

    yield

    # Restore
    socket.getaddrinfo = real_getaddrinfo  # type: ignore[assignment]
    socket.create_connection = real_create_connection  # type: ignore[assignment]
    httpx.Client.__init__ = real_httpx_init  # type: ignore[assignment]

    REPORT.write_text(json.dumps(VIOLATIONS, indent=2))


@pytest.fixture(autouse=True)
def _fresh_metrics():
    reset_metrics()
    yield


class FixedClock:
    """Deterministic time source; ``advance`` moves it forward."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class FakeErpAdapter:
    """In-memory ERP source paginating ``invoices`` by ``page_size``."""

    def __init__(self, invoices=None, page_size: int = 2):
        self.invoices = list(invoices or [])
        self.page_size = page_size
        self.notes: dict[int, list[dict]] = {}
        self.contacts: dict[int, ContactInfo] = {}
        self.contacts_by_email: dict[str, int] = {}
        self.definitions = StatusDefinitions(
            order=[{"statusId": 1, "name": "Invoiced", "color": "#0000ff"}],
            shipping=[{"code": "ASS", "name": "All shipped", "color": "#00ff00"}],
            stock=[{"code": "SOA", "name": "All fulfilled", "color": "#00ff00"}],
        )
        self.fail_listing: Exception | None = None
        self.note_errors: dict[int, Exception] = {}
        self.calls: list[tuple] = []

    def list_open_invoices(self, start_date, end_date, page):
        self.calls.append(("list_open_invoices", page))
        if self.fail_listing is not None:
            raise self.fail_listing
        start = (page - 1) * self.page_size
        return [dict(r) for r in self.invoices[start : start + self.page_size]]

    def get_notes(self, order_id):
        self.calls.append(("get_notes", order_id))
        if order_id in self.note_errors:
            raise self.note_errors[order_id]
        return [dict(n) for n in self.notes.get(order_id, [])]

    def get_contact(self, contact_id):
        self.calls.append(("get_contact", contact_id))
        return self.contacts.get(contact_id)

    def find_contact_id_by_email(self, email):
        self.calls.append(("find_contact_id_by_email", email))
        return self.contacts_by_email.get(email.lower())

    def list_status_definitions(self):
        return self.definitions


class FakeTransport:
    """Records every message; ``fail_with`` makes sends fail."""

    def __init__(self):
        self.sent: list[dict] = []
        self.fail_with: str | None = None

    def send(self, sender, to, subject, body, attachments):
        message = {
            "sender": sender,
            "to": to,
            "subject": subject,
            "body": body,
            "attachments": list(attachments),
        }
        self.sent.append(message)
        if self.fail_with:
            return TransportResult(success=False, error=self.fail_with)
        return TransportResult(success=True, message_id=f"<msg-{len(self.sent)}@test>")


def erp_invoice(order_id: int, placed_on: str, total="500.00", paid="0.00", **extra) -> dict:
    """ERP open-invoice payload as returned by the adapter."""
    payload = {
        "id": order_id,
        "reference": f"SO-{order_id}",
        "invoiceNumber": f"INV-{order_id}",
        "placedOn": placed_on,
        "total": total,
        "paid": paid,
        "orderPaymentStatus": "UNPAID" if Decimal(paid) == 0 else "PARTIALLY_PAID",
        "orderStatusId": 1,
        "shippingStatusCode": "ASS",
        "stockStatusCode": "SOA",
        "billingContactId": 900 + order_id,
        "billingName": f"Customer {order_id}",
        "billingEmail": f"billing{order_id}@example.com",
        "billingCompany": f"Company {order_id}",
    }
    payload.update(extra)
    return payload


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 10, 14, 13, 0, tzinfo=UTC)


@pytest.fixture
def clock(now) -> FixedClock:
    return FixedClock(now)


@pytest.fixture
def engine():
    eng = sa.create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def no_sleep():
    calls: list[float] = []

    def _sleep(seconds: float) -> None:
        calls.append(seconds)

    _sleep.calls = calls  # type: ignore[attr-defined]
    return _sleep


@pytest.fixture
def fake_adapter() -> FakeErpAdapter:
    return FakeErpAdapter()


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def erp_payload():
    return erp_invoice


@pytest.fixture
def run_settings() -> Settings:
    return Settings(
        SENDER_EMAIL="ar@sender.example.com",
        SENDER_NAME="Jordan AR",
        COMPANY_NAME="Acme Supplies",
        PUBLIC_BASE_URL="https://ar.example.com",
        OPT_OUT_HMAC_KEY="test-opt-out-key",
    )


@pytest.fixture
def add_invoice(engine, now):
    """Insert a cached invoice aged ``days`` as of ``now``."""

    def _add(order_id: int, days: int, total="500.00", paid="350.00", **overrides):
        total_d = Decimal(total)
        paid_d = Decimal(paid)
        row = {
            "id": order_id,
            "order_reference": f"SO-{order_id}",
            "invoice_number": f"INV-{order_id}",
            "order_date": now - timedelta(days=days),
            "tax_date": now - timedelta(days=days),
            "total_amount": total_d,
            "paid_amount": paid_d,
            "outstanding_amount": max(total_d - paid_d, Decimal("0.00")),
            "payment_status": "PARTIALLY_PAID" if paid_d else "UNPAID",
            "billing_name": f"Customer {order_id}",
            "billing_email": f"billing{order_id}@example.com",
            "billing_company": f"Company {order_id}",
            "days_outstanding": days,
            "last_updated": now,
        }
        row.update(overrides)
        with engine.begin() as conn:
            conn.execute(sa.insert(CACHED_INVOICES).values(**row))
        return row

    return _add


@pytest.fixture
def today(now) -> date:
    return now.date()
