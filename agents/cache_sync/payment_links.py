"""Lazy, idempotent payment-link generation for cached invoices."""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, List, Optional
from urllib.parse import urlencode

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from agents.shared.batching import chunked
from agents.shared.retry import RetryPolicy
from backend.core.cache_store import CACHED_INVOICES, PAYMENT_LINKS, insert_or_ignore, utcnow

from .adapter import ErpSourceAdapter
from .config import SyncConfig
from .dto import EnrichmentSummary

_ID_CHUNK = 500


def build_payment_link(
    base_url: str,
    account_code: str,
    channel_key: str,
    invoice_reference: str,
    contact_id: Optional[int],
    order_id: int,
) -> str:
    """Deterministic hosted-payment URL for one invoice."""
    params = {
        "accountCode": account_code,
        "channelKey": channel_key,
        "salesInvoiceId": invoice_reference,
        "contactId": "" if contact_id is None else str(contact_id),
        "salesOrderId": str(order_id),
    }
    return f"{base_url}?{urlencode(params)}"


class PaymentLinkGenerator:
    """Creates one payment link per order, never regenerating an existing one."""

    def __init__(
        self,
        engine: Engine,
        adapter: ErpSourceAdapter,
        config: SyncConfig,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.engine = engine
        self.adapter = adapter
        self.config = config
        self.retry = retry or RetryPolicy.from_settings(sleep=sleep)
        self.sleep = sleep
        self.logger = logging.getLogger(__name__)

    def orders_without_link(self, order_ids: Iterable[int]) -> List[sa.Row]:
        ids = sorted(set(order_ids))
        rows: List[sa.Row] = []
        with self.engine.connect() as conn:
            for chunk in chunked(ids, _ID_CHUNK):
                rows.extend(
                    conn.execute(
                        sa.select(
                            CACHED_INVOICES.c.id,
                            CACHED_INVOICES.c.invoice_number,
                            CACHED_INVOICES.c.billing_contact_id,
                            CACHED_INVOICES.c.billing_email,
                        )
                        .where(CACHED_INVOICES.c.id.in_(chunk))
                        .where(
                            CACHED_INVOICES.c.payment_link_url.is_(None)
                            | (CACHED_INVOICES.c.payment_link_url == "")
                        )
                        .order_by(CACHED_INVOICES.c.id)
                    ).all()
                )
        return rows

    def generate(self, order_ids: Iterable[int]) -> EnrichmentSummary:
        summary = EnrichmentSummary()
        candidates = self.orders_without_link(order_ids)
        if not candidates:
            self.logger.info("All cached invoices already have payment links")
            return summary

        batches = list(chunked(candidates, self.config.payment_link_batch_size))
        self.logger.info(
            "Generating payment links",
            extra={"orders": len(candidates), "batches": len(batches)},
        )
        for index, batch in enumerate(batches):
            for order in batch:
                summary.processed += 1
                try:
                    if self._link_order(order):
                        summary.updated += 1
                    else:
                        summary.skipped += 1
                except Exception as e:
                    summary.failed += 1
                    summary.errors.append(f"order {order.id}: {e}")
                    self.logger.error(
                        "Payment link generation failed",
                        extra={"order_id": order.id, "error": str(e)},
                    )
            if index < len(batches) - 1:
                self.sleep(self.config.payment_link_batch_delay_s)
        return summary

    def resolve_contact_id(self, order_id: int, stored_id: Optional[int], email: Optional[str]) -> Optional[int]:
        """Prefer the contact registered under the billing email over the stored id."""
        if not email:
            self.logger.warning(
                "No billing email, using stored billing contact",
                extra={"order_id": order_id, "billing_contact_id": stored_id},
            )
            return stored_id
        try:
            found = self.retry.call(
                self.adapter.find_contact_id_by_email, email, operation="find_contact_by_email"
            )
        except Exception as e:
            self.logger.warning(
                "Contact lookup by email failed, using stored billing contact",
                extra={"order_id": order_id, "error": str(e)},
            )
            return stored_id
        if found is None:
            self.logger.warning(
                "No contact found for billing email, using stored billing contact",
                extra={"order_id": order_id, "billing_contact_id": stored_id},
            )
            return stored_id
        if found != stored_id:
            self.logger.info(
                "Using contact resolved by billing email instead of stored billing contact",
                extra={"order_id": order_id, "resolved_contact_id": found, "billing_contact_id": stored_id},
            )
        return found

    def _link_order(self, order: sa.Row) -> bool:
        with self.engine.connect() as conn:
            existing = conn.execute(
                sa.select(PAYMENT_LINKS.c.payment_link).where(PAYMENT_LINKS.c.order_id == order.id)
            ).scalar_one_or_none()
        if existing:
            self._copy_to_cache(order.id, existing)
            return True

        if not order.invoice_number:
            self.logger.warning(
                "Invoice reference missing, cannot build payment link",
                extra={"order_id": order.id},
            )
            return False

        contact_id = self.resolve_contact_id(order.id, order.billing_contact_id, order.billing_email)
        link = build_payment_link(
            self.config.payment_link_base_url,
            self.config.payment_link_account_code,
            self.config.payment_link_channel_key,
            order.invoice_number,
            contact_id,
            order.id,
        )
        with self.engine.begin() as conn:
            insert_or_ignore(
                conn,
                PAYMENT_LINKS,
                {
                    "order_id": order.id,
                    "invoice_reference": order.invoice_number,
                    "billing_contact_id": contact_id,
                    "payment_link": link,
                    "created_at": utcnow(),
                },
            )
            stored = conn.execute(
                sa.select(PAYMENT_LINKS.c.payment_link).where(PAYMENT_LINKS.c.order_id == order.id)
            ).scalar_one()
            conn.execute(
                sa.update(CACHED_INVOICES)
                .where(CACHED_INVOICES.c.id == order.id)
                .values(payment_link_url=stored)
            )
        return True

    def _copy_to_cache(self, order_id: int, link: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                sa.update(CACHED_INVOICES)
                .where(CACHED_INVOICES.c.id == order_id)
                .values(payment_link_url=link)
            )
