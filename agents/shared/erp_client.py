"""HTTP client for the ERP public API.

Wraps a ``requests`` session with a urllib3 retry adapter for connection
level failures and maps HTTP answers onto the shared error taxonomy so that
``RetryPolicy`` can decide what to retry.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from backend.core.config import settings

from .errors import ErpError, ErpRateLimitedError, ErpTransientError


@dataclass
class ErpResponse:
    """Represents an ERP API response."""

    status_code: int
    data: Any
    request_time: float

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429

    @property
    def is_server_error(self) -> bool:
        return 500 <= self.status_code < 600


class ErpClient:
    """Authenticated GET client for the ERP API.

    Every call carries a bounded timeout. Connection errors are retried by
    the transport adapter; 429 and 5xx answers surface as
    ``ErpRateLimitedError``/``ErpTransientError`` for the caller's policy.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        account: Optional[str] = None,
        app_ref: Optional[str] = None,
        staff_token: Optional[str] = None,
        timeout: Optional[int] = None,
        connect_retries: int = 2,
        backoff_factor: float = 1.0,
        session: Optional[requests.Session] = None,
    ):
        """Initialize ERP client.

        Args:
            base_url: Public API root, without account segment
            account: ERP account code
            app_ref: Application reference header value
            staff_token: Staff token header value
            timeout: Request timeout in seconds
            connect_retries: Connection-level retries done by urllib3
            backoff_factor: Backoff factor for connection retries
            session: Pre-built session (tests)
        """
        self.base_url = (base_url or settings.ERP_BASE_URL).rstrip("/")
        self.account = account if account is not None else settings.ERP_ACCOUNT
        self.app_ref = app_ref if app_ref is not None else settings.ERP_APP_REF
        self.staff_token = staff_token if staff_token is not None else settings.ERP_STAFF_TOKEN
        self.timeout = timeout or settings.ERP_TIMEOUT_S
        self.logger = logging.getLogger(__name__)

        if session is None:
            session = requests.Session()
            retry_strategy = Retry(
                total=connect_retries,
                connect=connect_retries,
                read=0,
                status=0,
                backoff_factor=backoff_factor,
                allowed_methods=["GET"],
            )
            adapter = HTTPAdapter(max_retries=retry_strategy)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        self.session = session

    def _headers(self) -> Dict[str, str]:
        return {
            "brightpearl-app-ref": self.app_ref,
            "brightpearl-staff-token": self.staff_token,
            "Content-Type": "application/json",
            "User-Agent": "ar-dunning-cache/1.0",
        }

    def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> ErpResponse:
        """GET ``endpoint`` relative to the account root.

        Returns:
            Response whose ``data`` is the unwrapped ``response`` member

        Raises:
            ErpRateLimitedError: On 429 or a rate-limit message
            ErpTransientError: On 5xx, timeouts or connection failures
            ErpError: On other non-2xx answers
        """
        url = f"{self.base_url}/{self.account}/{endpoint.lstrip('/')}"
        start_time = time.time()
        try:
            response = self.session.get(
                url, headers=self._headers(), params=params, timeout=self.timeout
            )
        except requests.Timeout as e:
            raise ErpTransientError(f"ERP request timed out after {self.timeout}s: {endpoint}") from e
        except requests.RequestException as e:
            self.logger.error(
                "ERP request failed",
                extra={"endpoint": endpoint, "error": str(e)},
            )
            raise ErpTransientError(f"ERP request failed: {e}") from e

        request_time = time.time() - start_time
        try:
            payload = response.json()
        except ValueError:
            payload = {"error": response.text[:500]}

        erp_response = ErpResponse(
            status_code=response.status_code,
            data=payload.get("response", payload) if isinstance(payload, dict) else payload,
            request_time=request_time,
        )
        self.logger.debug(
            "ERP response",
            extra={
                "endpoint": endpoint,
                "status_code": response.status_code,
                "request_time": round(request_time, 3),
            },
        )

        if erp_response.is_success:
            return erp_response

        message = f"ERP API error {response.status_code} on {endpoint}: {str(payload)[:300]}"
        if erp_response.is_rate_limited or "rate limit" in message.lower():
            raise ErpRateLimitedError(message, status_code=response.status_code)
        if erp_response.is_server_error:
            raise ErpTransientError(message, status_code=response.status_code)
        raise ErpError(message, status_code=response.status_code)

    def close(self):
        """Close the client session."""
        self.session.close()
