"""Reusable retry-with-backoff policy for external calls."""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from backend.core.config import settings
from backend.core.observability.metrics import increment_erp_retries

from .errors import ErpRateLimitedError, is_transient

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """Exponential backoff with jitter.

    Delay before retry ``n`` (1-based) is ``base_delay * 2 ** (n - 1)`` plus a
    uniform jitter in ``[0, jitter]``, capped at ``max_delay``.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    jitter: float = 0.0
    max_delay: float = 30.0
    retry_on: Callable[[BaseException], bool] = is_transient
    sleep: Callable[[float], None] = time.sleep
    rng: random.Random = field(default_factory=random.Random)
    rate_limit_hits: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @classmethod
    def from_settings(cls, sleep: Callable[[float], None] | None = None) -> "RetryPolicy":
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY_MS / 1000.0,
            jitter=settings.RETRY_JITTER_MS / 1000.0,
            sleep=sleep or time.sleep,
        )

    def delay_for(self, attempt: int) -> float:
        delay = self.base_delay * (2 ** max(attempt - 1, 0))
        if self.jitter > 0:
            delay += self.rng.uniform(0, self.jitter)
        return min(delay, self.max_delay)

    def call(self, fn: Callable[..., T], *args, operation: str = "call", **kwargs) -> T:
        """Invoke ``fn`` and retry transient failures.

        The last error is re-raised once attempts are exhausted, or
        immediately when it is not retryable.
        """
        attempt = 1
        while True:
            try:
                return fn(*args, **kwargs)
            except Exception as exc:
                if isinstance(exc, ErpRateLimitedError) or "rate limit" in str(exc).lower():
                    with self._lock:
                        self.rate_limit_hits += 1
                if attempt >= self.max_attempts or not self.retry_on(exc):
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "Retrying external call",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": self.max_attempts,
                        "delay_s": round(delay, 3),
                        "error": str(exc),
                    },
                )
                increment_erp_retries(operation)
                self.sleep(delay)
                attempt += 1

