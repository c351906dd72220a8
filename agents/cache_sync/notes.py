"""Order notes enrichment with staleness window and rate-limit pacing."""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from agents.shared.batching import chunked
from agents.shared.errors import RecordError
from agents.shared.retry import RetryPolicy
from backend.core.cache_store import CACHED_INVOICES, CACHED_NOTES, upsert, utcnow

from .adapter import ErpSourceAdapter
from .config import SyncConfig
from .dto import EnrichmentSummary, NoteRecord

NOTE_SOURCE_COLUMNS = (
    "note_text",
    "contact_id",
    "created_by",
    "is_public",
    "note_type",
    "created_at_source",
    "cached_at",
)

_ID_CHUNK = 500


class NotesEnricher:
    """Caches ERP order notes for orders whose notes are missing or stale."""

    def __init__(
        self,
        engine: Engine,
        adapter: ErpSourceAdapter,
        config: SyncConfig,
        retry: RetryPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.engine = engine
        self.adapter = adapter
        self.config = config
        self.retry = retry or RetryPolicy.from_settings(sleep=sleep)
        self.clock = clock or utcnow
        self.sleep = sleep
        self.logger = logging.getLogger(__name__)

    def stale_order_ids(self, order_ids: Iterable[int]) -> List[int]:
        """Orders whose notes were never cached or are older than the window."""
        cutoff = self.clock() - timedelta(hours=self.config.notes_stale_hours)
        ids = sorted(set(order_ids))
        stale: List[int] = []
        with self.engine.connect() as conn:
            for chunk in chunked(ids, _ID_CHUNK):
                rows = conn.execute(
                    sa.select(CACHED_INVOICES.c.id)
                    .where(CACHED_INVOICES.c.id.in_(chunk))
                    .where(
                        CACHED_INVOICES.c.notes_synced_at.is_(None)
                        | (CACHED_INVOICES.c.notes_synced_at < cutoff)
                    )
                ).scalars()
                stale.extend(rows)
        return sorted(stale)

    def enrich(self, order_ids: Iterable[int]) -> EnrichmentSummary:
        """Fetch and cache notes for stale orders among ``order_ids``.

        A failing order is counted and left stale so the next sync retries
        it; it never aborts the remaining batches.
        """
        summary = EnrichmentSummary()
        stale = self.stale_order_ids(order_ids)
        if not stale:
            self.logger.info("All order notes are fresh, skipping notes enrichment")
            return summary

        batch_delay = self.config.notes_batch_delay_s
        slowed_down = False
        batches = list(chunked(stale, self.config.notes_batch_size))
        self.logger.info(
            "Enriching order notes",
            extra={"orders": len(stale), "batches": len(batches)},
        )

        for index, batch in enumerate(batches):
            for order_id, outcome in self._fetch_batch(batch).items():
                summary.processed += 1
                if isinstance(outcome, Exception):
                    summary.failed += 1
                    summary.errors.append(f"order {order_id}: {outcome}")
                    self.logger.warning(
                        "Giving up on order notes",
                        extra={"order_id": order_id, "error": str(outcome)},
                    )
                    continue
                summary.updated += self._store_notes(order_id, outcome)

            if not slowed_down and self.retry.rate_limit_hits > self.config.notes_slowdown_after_rate_limits:
                batch_delay *= 2
                slowed_down = True
                self.logger.warning(
                    "Rate limit hit repeatedly, doubling delay between note batches",
                    extra={"rate_limit_hits": self.retry.rate_limit_hits, "batch_delay_s": batch_delay},
                )

            if index < len(batches) - 1:
                self.sleep(batch_delay)

        return summary

    def _fetch_batch(self, batch: List[int]) -> Dict[int, object]:
        """Fetch notes for a batch with one in-flight call per order."""
        futures: Dict[int, Future] = {}
        with ThreadPoolExecutor(max_workers=len(batch), thread_name_prefix="notes") as pool:
            for position, order_id in enumerate(batch):
                if position:
                    self.sleep(self.config.notes_request_delay_s)
                futures[order_id] = pool.submit(
                    self.retry.call, self.adapter.get_notes, order_id, operation="get_notes"
                )
        results: Dict[int, object] = {}
        for order_id, future in futures.items():
            try:
                results[order_id] = future.result()
            except Exception as exc:
                results[order_id] = exc
        return results

    def _store_notes(self, order_id: int, payloads: List[dict]) -> int:
        now = self.clock()
        rows = []
        for payload in payloads:
            try:
                rows.append(NoteRecord.from_erp(order_id, payload).to_row(now))
            except RecordError as e:
                self.logger.warning(
                    "Skipping malformed note", extra={"order_id": order_id, "error": str(e)}
                )

        with self.engine.begin() as conn:
            upsert(
                conn,
                CACHED_NOTES,
                rows,
                conflict_columns=["order_id", "note_id"],
                update_columns=NOTE_SOURCE_COLUMNS,
            )
            notes_count = conn.execute(
                sa.select(sa.func.count())
                .select_from(CACHED_NOTES)
                .where(CACHED_NOTES.c.order_id == order_id)
            ).scalar_one()
            conn.execute(
                sa.update(CACHED_INVOICES)
                .where(CACHED_INVOICES.c.id == order_id)
                .values(notes_synced_at=now, notes_count=notes_count)
            )
        return len(rows)
