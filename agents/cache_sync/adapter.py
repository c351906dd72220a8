"""ERP source adapter: the read operations the synchronizer depends on."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional, Protocol

from agents.shared.erp_client import ErpClient
from agents.shared.errors import ErpError, ErpUnavailableError
from backend.core.config import settings

from .dto import ContactInfo
from .status_lookup import StatusDefinitions


class ErpSourceAdapter(Protocol):
    """Read-only, rate-limited view of the ERP."""

    def list_open_invoices(self, start_date: date, end_date: date, page: int) -> List[Dict[str, Any]]:
        ...

    def get_notes(self, order_id: int) -> List[Dict[str, Any]]:
        ...

    def get_contact(self, contact_id: int) -> Optional[ContactInfo]:
        ...

    def find_contact_id_by_email(self, email: str) -> Optional[int]:
        ...

    def list_status_definitions(self) -> StatusDefinitions:
        ...


class BrightpearlAdapter:
    """``ErpSourceAdapter`` over the Brightpearl public API."""

    def __init__(self, client: ErpClient | None = None, page_size: int | None = None):
        self.client = client or ErpClient()
        self.page_size = page_size or settings.ERP_PAGE_SIZE
        self.logger = logging.getLogger(__name__)

    def list_open_invoices(self, start_date: date, end_date: date, page: int) -> List[Dict[str, Any]]:
        """Fetch one page (1-based) of unpaid sales orders placed in range.

        Raises:
            ErpUnavailableError: If the page cannot be fetched
        """
        params = {
            "placedOnFrom": start_date.isoformat(),
            "placedOnTo": end_date.isoformat(),
            "firstResult": (page - 1) * self.page_size + 1,
            "pageSize": self.page_size,
        }
        try:
            response = self.client.get(settings.ERP_OPEN_INVOICES_PATH, params=params)
        except ErpError as e:
            raise ErpUnavailableError(
                f"open invoice listing failed on page {page}: {e}", status_code=e.status_code
            ) from e
        data = response.data
        if isinstance(data, dict):
            data = data.get("results", [])
        return list(data or [])

    def get_notes(self, order_id: int) -> List[Dict[str, Any]]:
        response = self.client.get(f"order-service/order/{order_id}/note")
        data = response.data or []
        return data if isinstance(data, list) else [data]

    def get_contact(self, contact_id: int) -> Optional[ContactInfo]:
        response = self.client.get(f"contact-service/contact/{contact_id}")
        data = response.data
        if isinstance(data, list):
            data = data[0] if data else None
        if not data:
            return None
        return ContactInfo.from_erp(contact_id, data)

    def find_contact_id_by_email(self, email: str) -> Optional[int]:
        response = self.client.get(
            "contact-service/contact-search", params={"primaryEmail": email}
        )
        results = (response.data or {}).get("results") or []
        if not results:
            return None
        first = results[0]
        contact_id = first[0] if isinstance(first, list) else first.get("contactId")
        return int(contact_id) if contact_id is not None else None

    def list_status_definitions(self) -> StatusDefinitions:
        order = self.client.get("order-service/order-status").data or []
        shipping = self.client.get("order-service/order-shipping-status").data or []
        stock = self.client.get("order-service/order-stock-status").data or []
        # Sales-order statuses only
        order = [row for row in order if row.get("orderTypeCode", "SO") == "SO"]
        return StatusDefinitions(order=order, shipping=shipping, stock=stock)
