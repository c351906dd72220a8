"""Error taxonomy shared by the cache synchronizer and the dunning engine."""

from __future__ import annotations


class ConfigurationError(RuntimeError):
    """Run cannot start: missing sender identity, invalid campaign data."""


class ErpError(RuntimeError):
    """Base class for failures talking to the ERP source."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ErpTransientError(ErpError):
    """Timeouts, connection resets and 5xx answers; safe to retry."""


class ErpRateLimitedError(ErpTransientError):
    """The ERP answered 429 or reported a rate limit in its body."""


class ErpUnavailableError(ErpError):
    """The open invoice listing could not be fetched; aborts a sync."""


class RecordError(ValueError):
    """A single ERP record is malformed and has to be skipped."""


def is_transient(exc: BaseException) -> bool:
    """Classify errors the retry policy may retry."""
    if isinstance(exc, ErpTransientError):
        return True
    if isinstance(exc, ErpError) and exc.status_code in (429, 503):
        return True
    return "rate limit" in str(exc).lower()
