"""Cache synchronizer: reconciles ERP open invoices into ``cached_invoices``.

Run order:
1. build the status lookup for this cycle
2. fetch every page of open invoices (nothing is deleted if this fails)
3. delete cached invoices that are no longer open
4. upsert fetched invoices in batches, replaying failed batches row by row
5. notes, contact and payment-link enrichment
6. finalize the ``sync_logs`` row
"""

from __future__ import annotations

import logging
import time
from datetime import date, datetime
from typing import Callable, Dict, Iterable, List, Optional, Set

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from agents.shared.batching import chunked
from agents.shared.errors import RecordError
from agents.shared.retry import RetryPolicy
from backend.core.cache_store import (
    CACHED_INVOICES,
    CACHED_NOTES,
    SYNC_LOGS,
    get_app_setting,
    upsert,
    utcnow,
)
from backend.core.observability.metrics import (
    increment_invoices_synced,
    increment_sync_runs,
    record_sync_duration,
)

from .adapter import ErpSourceAdapter
from .config import SyncConfig
from .contacts import ContactEnricher
from .dto import InvoiceSnapshot, SyncSummary, record_id
from .notes import NotesEnricher
from .payment_links import PaymentLinkGenerator
from .status_lookup import StatusLookup

MAX_PAGES = 10_000
_ID_CHUNK = 500


class CacheSynchronizer:
    """Reconciles the ERP source of truth into the local invoice cache."""

    def __init__(
        self,
        engine: Engine,
        adapter: ErpSourceAdapter,
        config: SyncConfig | None = None,
        retry: RetryPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        notes: NotesEnricher | None = None,
        contacts: ContactEnricher | None = None,
        payment_links: PaymentLinkGenerator | None = None,
    ):
        self.engine = engine
        self.adapter = adapter
        self.config = config or SyncConfig.from_settings()
        self.retry = retry or RetryPolicy.from_settings(sleep=sleep)
        self.clock = clock or utcnow
        self.logger = logging.getLogger(__name__)
        self.notes = notes or NotesEnricher(
            engine, adapter, self.config, retry=self.retry, clock=self.clock, sleep=sleep
        )
        self.contacts = contacts or ContactEnricher(
            engine, adapter, self.config, retry=self.retry, sleep=sleep
        )
        self.payment_links = payment_links or PaymentLinkGenerator(
            engine, adapter, self.config, retry=self.retry, sleep=sleep
        )

    def sync(self, start_date: date | None = None, end_date: date | None = None) -> SyncSummary:
        """Run one full reconciliation; never raises.

        Args:
            start_date: First order date included (defaults to config start)
            end_date: Last order date included (defaults to today)

        Returns:
            Summary with inserted/updated/deleted/total counts and status
        """
        started = time.time()
        start_date = start_date or self.config.start_date
        end_date = end_date or self.clock().date()
        summary = SyncSummary()

        try:
            summary.sync_log_id = self._start_log()
            self._run(start_date, end_date, summary)
            summary.status = "completed"
        except Exception as e:
            summary.status = "failed"
            summary.errors.append(str(e))
            self.logger.error(
                "Invoice sync failed",
                extra={"error": str(e), "start_date": str(start_date), "end_date": str(end_date)},
                exc_info=True,
            )

        self._finish_log(summary)
        increment_sync_runs(summary.status)
        increment_invoices_synced(summary.inserted, summary.updated, summary.deleted)
        record_sync_duration((time.time() - started) * 1000.0)
        self.logger.info("Invoice sync finished", extra=summary.to_dict())
        return summary

    def _run(self, start_date: date, end_date: date, summary: SyncSummary) -> None:
        lookup = self._load_status_lookup()
        records = self._fetch_all(start_date, end_date)

        now = self.clock()
        ignored = self._ignored_order_statuses()
        snapshots: Dict[int, InvoiceSnapshot] = {}
        # Still open upstream; a malformed record keeps its cached row
        unparsed_ids: Set[int] = set()
        for payload in records:
            try:
                snapshot = InvoiceSnapshot.from_erp(payload)
            except RecordError as e:
                summary.skipped_records += 1
                order_id = record_id(payload)
                if order_id is not None:
                    unparsed_ids.add(order_id)
                self.logger.warning(
                    "Skipping malformed invoice record", extra={"order_id": order_id, "error": str(e)}
                )
                continue
            if snapshot.order_status_id in ignored or snapshot.outstanding_amount <= 0:
                continue
            snapshots[snapshot.id] = snapshot

        current_ids = set(snapshots)
        existing_ids = self._existing_ids()
        summary.total = len(current_ids)

        stale_ids = existing_ids - current_ids - unparsed_ids
        summary.deleted = self._delete(stale_ids)

        rows = [snapshots[i].to_row(lookup, now) for i in sorted(current_ids)]
        for batch in chunked(rows, self.config.upsert_batch_size):
            self._upsert_batch(batch, existing_ids, summary)

        self.logger.info(
            "Invoice cache reconciled",
            extra={
                "inserted": summary.inserted,
                "updated": summary.updated,
                "deleted": summary.deleted,
                "total": summary.total,
            },
        )
        self._enrich(sorted(current_ids), summary)

    def _fetch_all(self, start_date: date, end_date: date) -> List[dict]:
        records: List[dict] = []
        for page in range(1, MAX_PAGES + 1):
            batch = self.retry.call(
                self.adapter.list_open_invoices,
                start_date,
                end_date,
                page,
                operation="list_open_invoices",
            )
            if not batch:
                break
            records.extend(batch)
        self.logger.info("Fetched open invoices", extra={"records": len(records)})
        return records

    def _load_status_lookup(self) -> StatusLookup:
        try:
            definitions = self.retry.call(
                self.adapter.list_status_definitions, operation="list_status_definitions"
            )
            return StatusLookup.from_definitions(definitions)
        except Exception as e:
            self.logger.warning(
                "Status definitions unavailable, using default labels", extra={"error": str(e)}
            )
            return StatusLookup.empty()

    def _ignored_order_statuses(self) -> Set[int]:
        with self.engine.connect() as conn:
            raw = get_app_setting(conn, "ignored_order_statuses", "")
        ignored = set()
        for token in (raw or "").split(","):
            token = token.strip()
            if token.isdigit():
                ignored.add(int(token))
        return ignored

    def _existing_ids(self) -> Set[int]:
        with self.engine.connect() as conn:
            return set(conn.execute(sa.select(CACHED_INVOICES.c.id)).scalars())

    def _delete(self, stale_ids: Iterable[int]) -> int:
        deleted = 0
        with self.engine.begin() as conn:
            for chunk in chunked(sorted(stale_ids), _ID_CHUNK):
                conn.execute(sa.delete(CACHED_NOTES).where(CACHED_NOTES.c.order_id.in_(chunk)))
                result = conn.execute(
                    sa.delete(CACHED_INVOICES).where(CACHED_INVOICES.c.id.in_(chunk))
                )
                deleted += result.rowcount or 0
        return deleted

    def _upsert_batch(self, batch: List[dict], existing_ids: Set[int], summary: SyncSummary) -> None:
        update_columns = [key for key in batch[0] if key != "id"]
        try:
            with self.engine.begin() as conn:
                upsert(conn, CACHED_INVOICES, batch, conflict_columns=["id"], update_columns=update_columns)
            self._count(batch, existing_ids, summary)
            return
        except Exception as e:
            self.logger.warning(
                "Upsert batch failed, retrying row by row",
                extra={"batch_size": len(batch), "error": str(e)},
            )

        for row in batch:
            try:
                with self.engine.begin() as conn:
                    upsert(conn, CACHED_INVOICES, [row], conflict_columns=["id"], update_columns=update_columns)
            except Exception as e:
                summary.errors.append(f"order {row['id']}: {e}")
                self.logger.error(
                    "Failed to upsert invoice", extra={"order_id": row["id"], "error": str(e)}
                )
                continue
            self._count([row], existing_ids, summary)

    @staticmethod
    def _count(rows: List[dict], existing_ids: Set[int], summary: SyncSummary) -> None:
        for row in rows:
            if row["id"] in existing_ids:
                summary.updated += 1
            else:
                summary.inserted += 1

    def _enrich(self, order_ids: List[int], summary: SyncSummary) -> None:
        if self.config.enable_notes_caching:
            try:
                summary.notes = self.notes.enrich(order_ids)
                summary.contacts = self.contacts.enrich()
            except Exception as e:
                summary.errors.append(f"notes enrichment: {e}")
                self.logger.error("Notes enrichment failed", extra={"error": str(e)})
        if self.config.enable_payment_links:
            try:
                summary.payment_links = self.payment_links.generate(order_ids)
            except Exception as e:
                summary.errors.append(f"payment links: {e}")
                self.logger.error("Payment link generation failed", extra={"error": str(e)})

    def _start_log(self) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                sa.insert(SYNC_LOGS).values(sync_started_at=self.clock(), status="running")
            )
            return result.inserted_primary_key[0]

    def _finish_log(self, summary: SyncSummary) -> None:
        if summary.sync_log_id is None:
            return
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    sa.update(SYNC_LOGS)
                    .where(SYNC_LOGS.c.id == summary.sync_log_id)
                    .values(
                        sync_completed_at=self.clock(),
                        records_processed=summary.total,
                        records_inserted=summary.inserted,
                        records_updated=summary.updated,
                        records_deleted=summary.deleted,
                        errors="\n".join(summary.errors) or None,
                        status=summary.status,
                    )
                )
        except Exception as e:
            self.logger.error(
                "Could not finalize sync log",
                extra={"sync_log_id": summary.sync_log_id, "error": str(e)},
            )


def latest_sync(engine: Engine) -> Optional[dict]:
    """Most recent ``sync_logs`` row as a dict."""
    with engine.connect() as conn:
        row = conn.execute(
            sa.select(SYNC_LOGS).order_by(SYNC_LOGS.c.id.desc()).limit(1)
        ).mappings().first()
    return dict(row) if row else None
