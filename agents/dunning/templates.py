"""Email template rendering and signed opt-out links.

Stored templates use ``{KEY}`` or ``{{KEY}}`` placeholders. They are
compiled to Jinja2 source where every literal segment is passed in as data,
so template text can never execute Jinja statements. Keys without a value
in the render context stay in the output verbatim.
"""

import base64
import hashlib
import hmac
import logging
import re
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Tuple

import yaml
from jinja2 import Environment, StrictUndefined

from backend.core.cache_store import ensure_utc, utcnow

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{\{\s*([A-Z][A-Z0-9_]*)\s*\}\}|\{([A-Z][A-Z0-9_]*)\}")
MONEY_KEYS = frozenset({"TOTAL_AMOUNT", "TOTAL_PAID", "AMOUNT_DUE"})
DEFAULTS_PATH = Path(__file__).with_name("default_templates.yaml")
OPT_OUT_PATH = "/api/public/opt-out"
DEFAULT_CUSTOMER_NAME = "Valued Customer"


class InvalidOptOutToken(ValueError):
    """Opt-out token is malformed, forged or expired."""


class RenderedEmail(NamedTuple):
    subject: str
    body: str


def money(value: Any) -> str:
    """Format an amount with exactly two decimals."""
    if value is None or value == "":
        return "0.00"
    try:
        return f"{Decimal(str(value)).quantize(Decimal('0.01')):.2f}"
    except InvalidOperation:
        return str(value)


def datefmt(value: Any) -> str:
    if value is None or value == "":
        return ""
    if isinstance(value, datetime):
        value = ensure_utc(value).date()
    if isinstance(value, date):
        return value.strftime("%m/%d/%Y")
    return str(value)


def _blank(value: Any) -> Any:
    return "" if value is None else value


class TemplateEngine:
    """Jinja2-backed renderer for placeholder templates."""

    def __init__(self):
        self.env = Environment(
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            finalize=_blank,
        )
        self.env.filters["money"] = money
        self.env.filters["datefmt"] = datefmt

    @staticmethod
    def compile(text: str, known_keys) -> Tuple[str, List[str]]:
        """Translate placeholder text into Jinja2 source plus its literal segments."""
        parts: List[str] = []
        literals: List[str] = []
        position = 0

        def literal(segment: str) -> None:
            if segment:
                parts.append("{{ _lit[%d] }}" % len(literals))
                literals.append(segment)

        for match in PLACEHOLDER.finditer(text or ""):
            key = match.group(1) or match.group(2)
            if key not in known_keys:
                continue
            literal(text[position:match.start()])
            parts.append("{{ %s | money }}" % key if key in MONEY_KEYS else "{{ %s }}" % key)
            position = match.end()
        literal((text or "")[position:])
        return "".join(parts), literals

    def render(self, text: str, variables: Mapping[str, Any]) -> str:
        source, literals = self.compile(text, variables.keys())
        return self.env.from_string(source).render(dict(variables), _lit=literals)

    def render_email(self, template: Mapping[str, Any], variables: Mapping[str, Any]) -> RenderedEmail:
        return RenderedEmail(
            subject=self.render(template["subject_template"], variables).strip(),
            body=self.render(template["body_template"], variables),
        )


def payment_status_label(total: Decimal, paid: Decimal, due: Decimal) -> str:
    if due <= 0:
        return "PAID IN FULL"
    if paid > 0:
        return "PARTIALLY PAID"
    return "UNPAID"


def payment_history(paid: Decimal) -> str:
    if paid <= 0:
        return "No payments recorded."
    return f"• Payments received to date: ${money(paid)}"


def build_variables(
    invoice: Mapping[str, Any],
    *,
    sender_name: str,
    company_name: str,
    opt_out_link: str = "",
) -> Dict[str, Any]:
    """Template context for one cached invoice row."""
    total = Decimal(str(invoice.get("total_amount") or 0))
    paid = Decimal(str(invoice.get("paid_amount") or 0))
    due = Decimal(str(invoice.get("outstanding_amount") or 0))
    return {
        "ORDER_ID": str(invoice["id"]),
        "CUSTOMER_NAME": invoice.get("billing_name") or DEFAULT_CUSTOMER_NAME,
        "COMPANY_NAME": company_name or invoice.get("billing_company") or "",
        "SENDER_NAME": sender_name or "",
        "ORDER_REFERENCE": invoice.get("order_reference") or "",
        "INVOICE_NUMBER": invoice.get("invoice_number") or "",
        "TOTAL_AMOUNT": total,
        "TOTAL_PAID": paid,
        "AMOUNT_DUE": due,
        "PAYMENT_STATUS": payment_status_label(total, paid, due),
        "PAYMENT_HISTORY": payment_history(paid),
        "DAYS_OUTSTANDING": str(invoice.get("days_outstanding") or 0),
        "TAX_DATE": datefmt(invoice.get("tax_date") or invoice.get("order_date")),
        "PAYMENT_LINK": invoice.get("payment_link_url") or "",
        "OPT_OUT_LINK": opt_out_link,
    }


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _signature(payload: str, key: str) -> str:
    return hmac.new(key.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def sign_opt_out_token(email: str, key: str, now: Optional[datetime] = None) -> str:
    """Recipient-scoped token: base64url(email:timestamp).hmac_sha256."""
    issued = int((now or utcnow()).timestamp())
    payload = _b64encode(f"{email.strip().lower()}:{issued}".encode("utf-8"))
    return f"{payload}.{_signature(payload, key)}"


def verify_opt_out_token(
    token: str,
    key: str,
    max_age: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> str:
    """Return the email address carried by a valid token.

    Raises:
        InvalidOptOutToken: If the token is malformed, forged or expired
    """
    try:
        payload, signature = (token or "").split(".", 1)
    except ValueError as e:
        raise InvalidOptOutToken("malformed token") from e
    if not hmac.compare_digest(_signature(payload, key), signature):
        raise InvalidOptOutToken("bad signature")
    try:
        email, issued = _b64decode(payload).decode("utf-8").rsplit(":", 1)
        issued_at = int(issued)
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidOptOutToken("malformed payload") from e
    if max_age is not None:
        age = (now or utcnow()).timestamp() - issued_at
        if age > max_age.total_seconds():
            raise InvalidOptOutToken("token expired")
    if not email:
        raise InvalidOptOutToken("token without email")
    return email


def opt_out_link(base_url: str, email: str, key: str, now: Optional[datetime] = None) -> str:
    return f"{base_url.rstrip('/')}{OPT_OUT_PATH}?token={sign_opt_out_token(email, key, now)}"


@lru_cache(maxsize=1)
def load_defaults(path: str = str(DEFAULTS_PATH)) -> Dict[str, Any]:
    """Default campaigns and templates shipped with the package."""
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid defaults file format: {path}")
    return data
