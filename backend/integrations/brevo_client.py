"""Brevo (Sendinblue) transactional email client for dunning notices.

This module provides a client for sending transactional emails via Brevo API.
Supports dry-run mode for testing and development.
"""

import base64
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

import httpx

from backend.core.config import settings


@dataclass
class BrevoAttachment:
    """File attached to an outgoing email."""

    name: str
    content: bytes

    def to_payload(self) -> dict[str, str]:
        return {"name": self.name, "content": base64.b64encode(self.content).decode("ascii")}


@dataclass
class BrevoResponse:
    """Response from Brevo API."""

    success: bool
    message_id: str | None = None
    error: str | None = None
    dry_run: bool = False
    status_code: int | None = None


def make_message_id(recipient: str, reference: str | None, ts: datetime) -> str:
    """Deterministic RFC-5322 style id for dry-run sends."""
    digest = hashlib.sha256(f"{recipient.lower()}|{reference or ''}|{ts.isoformat()}".encode()).hexdigest()
    return f"<dryrun-{digest[:24]}@arcache.local>"


class BrevoClient:
    """Brevo API client for transactional emails."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize Brevo client.

        Args:
            api_key: Brevo API key (defaults to BREVO_API_KEY)
            base_url: API root (defaults to BREVO_BASE_URL)
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.logger = logging.getLogger(__name__)
        self.api_key = settings.BREVO_API_KEY if api_key is None else api_key
        self.base_url = base_url or settings.BREVO_BASE_URL

        # Hard-bounce tracking for this process
        self._hard_bounces: set[str] = set()

        if not self.api_key:
            self.logger.warning("BREVO_API_KEY not set - only dry-run mode available")

        self._client = httpx.Client(
            base_url=self.base_url,
            headers={
                "api-key": self.api_key or "dry-run",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @property
    def dry_run(self) -> bool:
        return not self.api_key

    def send_transactional(
        self,
        sender_email: str,
        sender_name: str,
        to: str,
        subject: str,
        text: str,
        attachments: list[BrevoAttachment] | None = None,
        reference: str | None = None,
        dry_run: bool = False,
    ) -> BrevoResponse:
        """Send transactional email via Brevo API.

        Args:
            sender_email: From address
            sender_name: From display name
            to: Recipient email address
            subject: Email subject
            text: Plain-text body
            attachments: Optional file attachments
            reference: Order reference used for log correlation
            dry_run: If True, simulate sending without actual API call

        Returns:
            BrevoResponse with success status and details
        """
        if to and self.is_hard_bounced(to):
            self.logger.warning("Skipping email to hard-bounced address", extra={"reference": reference})
            return BrevoResponse(success=False, error="Email address is on hard-bounce list")

        if dry_run or not self.api_key:
            return self._handle_dry_run(to, subject, reference)

        email_data: dict = {
            "sender": {"name": sender_name, "email": sender_email},
            "to": [{"email": to}],
            "subject": subject,
            "textContent": text,
        }
        if attachments:
            email_data["attachment"] = [a.to_payload() for a in attachments]
        if reference:
            email_data["headers"] = {"X-Order-Reference": str(reference)}

        try:
            response = self._client.post("/smtp/email", json=email_data)
        except httpx.RequestError as e:
            error_msg = f"Network error sending email: {str(e)}"
            self.logger.error(error_msg, extra={"reference": reference, "error": str(e)})
            return BrevoResponse(success=False, error=error_msg)

        if response.status_code == 201:
            message_id = response.json().get("messageId")
            self.logger.info(
                "Email sent successfully via Brevo",
                extra={
                    "reference": reference,
                    "message_id": message_id,
                    "subject": subject[:50] + "..." if len(subject) > 50 else subject,
                },
            )
            return BrevoResponse(success=True, message_id=message_id, status_code=201)

        error_msg = f"Brevo API error: {response.status_code} - {response.text}"
        if response.status_code == 400 and "invalid" in response.text.lower():
            self.logger.error(
                "Hard bounce detected - adding to blocklist",
                extra={"reference": reference, "status_code": response.status_code},
            )
            self.add_hard_bounce(to)
        self.logger.error(
            "Failed to send email via Brevo",
            extra={"reference": reference, "status_code": response.status_code},
        )
        return BrevoResponse(success=False, error=error_msg, status_code=response.status_code)

    def _handle_dry_run(self, to: str, subject: str, reference: str | None) -> BrevoResponse:
        """Simulate email sending without API call."""
        self.logger.info(
            "DRY-RUN: Would send email via Brevo",
            extra={
                "reference": reference,
                "subject": subject[:50] + "..." if len(subject) > 50 else subject,
                "dry_run": True,
            },
        )
        return BrevoResponse(
            success=True, message_id=make_message_id(to, reference, datetime.now(UTC)), dry_run=True
        )

    def close(self):
        """Close HTTP client connection."""
        if hasattr(self, "_client"):
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def is_hard_bounced(self, email: str) -> bool:
        return email.lower() in self._hard_bounces

    def add_hard_bounce(self, email: str) -> None:
        self._hard_bounces.add(email.lower())
        self.logger.info("Added email to hard-bounce list")

    def remove_hard_bounce(self, email: str) -> None:
        self._hard_bounces.discard(email.lower())
