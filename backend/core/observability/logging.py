"""JSON structured logging with run context and PII redaction."""
import hmac
import json
import logging
import re
import sys
import threading
from datetime import UTC, datetime
from hashlib import sha256
from typing import Optional

from backend.core.config import settings

# Thread-local storage for context
_context = threading.local()

_RESERVED_ATTRS = frozenset(
    (
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
        "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
        "created", "msecs", "relativeCreated", "thread", "threadName",
        "processName", "process", "message", "taskName",
    )
)


class JSONFormatter(logging.Formatter):
    """JSON formatter with mandatory fields and PII redaction.

    String values of the message and of ``extra`` fields are masked.
    """

    def __init__(self):
        super().__init__()
        self.iban_pattern = re.compile(r'\b([A-Z]{2}\d{2}[A-Z0-9]{11,30})\b')
        self.email_pattern = re.compile(r'([\w.+\-]+@[\w\-]+\.[\w.\-]+)')
        self.phone_pattern = re.compile(r'(\+\d[\d \-/]{6,}\d)')

    def redact(self, text: str) -> str:
        """Redact PII from text."""
        if not isinstance(text, str):
            return text
        text = self.iban_pattern.sub(self._mask_iban, text)
        text = self.email_pattern.sub(self._mask_email, text)
        text = self.phone_pattern.sub(self._mask_phone, text)
        return text

    def _mask_iban(self, match) -> str:
        iban = match.group(1)
        return iban[:2] + "*" * (len(iban) - 2)

    def _mask_email(self, match) -> str:
        """Mask email: keep first char of the local part and the domain."""
        user, domain = match.group(1).split("@", 1)
        masked_user = "*" if len(user) <= 1 else user[0] + "*" * (len(user) - 1)
        return f"{masked_user}@{domain}"

    def _mask_phone(self, match) -> str:
        phone = match.group(1)
        return phone[:3] + "*" * (len(phone) - 3)

    def format(self, record):
        """Format log record as JSON with mandatory fields and PII redaction."""
        log_entry = {
            'trace_id': getattr(_context, 'trace_id', None) or 'unknown',
            'run_id': getattr(_context, 'run_id', None),
            'level': record.levelname.lower(),
            'logger': record.name,
            'msg': self.redact(record.getMessage()),
            'ts_utc': datetime.now(UTC).isoformat().replace('+00:00', 'Z'),
        }

        if record.exc_info:
            log_entry['exc_info'] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key in log_entry:
                continue
            if isinstance(value, str):
                value = self.redact(value)
            log_entry[key] = value

        return json.dumps(log_entry, default=str)


def set_trace_id(trace_id: Optional[str]) -> None:
    """Set trace ID for current thread context."""
    _context.trace_id = trace_id


def set_run_id(run_id: Optional[int]) -> None:
    """Bind the automation/sync run id to log lines of the current thread."""
    _context.run_id = run_id


def init_logging() -> None:
    """Initialize JSON logging on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get logger with JSON formatting."""
    return logging.getLogger(name)


# Convenience logger
logger = get_logger("arcache")


def hash_actor_token(token: str) -> str:
    """Return an HMAC-SHA256 hash of an admin token using ACTOR_HMAC_KEY.

    The raw token must never be logged; the hash is stable for audit lines.
    """
    key = settings.ACTOR_HMAC_KEY.encode()
    return hmac.new(key, token.encode(), sha256).hexdigest()
