"""Resolve contact and author names for cached notes."""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from agents.shared.batching import chunked
from agents.shared.retry import RetryPolicy
from backend.core.cache_store import CACHED_NOTES

from .adapter import ErpSourceAdapter
from .config import SyncConfig
from .dto import ContactInfo, EnrichmentSummary


class ContactEnricher:
    """Fills ``contact_*`` and ``added_by_*`` columns left null by notes caching.

    Each distinct contact id is looked up once per pass; only null columns
    are written, so manual corrections survive.
    """

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

    def pending_ids(self) -> tuple[List[int], List[int]]:
        """Distinct contact ids and staff ids still missing a name."""
        with self.engine.connect() as conn:
            contact_ids = conn.execute(
                sa.select(CACHED_NOTES.c.contact_id)
                .where(CACHED_NOTES.c.contact_name.is_(None))
                .where(CACHED_NOTES.c.contact_id.is_not(None))
                .distinct()
            ).scalars().all()
            staff_ids = conn.execute(
                sa.select(CACHED_NOTES.c.created_by)
                .where(CACHED_NOTES.c.added_by_name.is_(None))
                .where(CACHED_NOTES.c.created_by.is_not(None))
                .distinct()
            ).scalars().all()
        return sorted(i for i in contact_ids if i > 0), sorted(i for i in staff_ids if i > 0)

    def enrich(self) -> EnrichmentSummary:
        summary = EnrichmentSummary()
        contact_ids, staff_ids = self.pending_ids()
        if not contact_ids and not staff_ids:
            self.logger.info("No notes need contact enrichment")
            return summary

        self.logger.info(
            "Enriching note contacts",
            extra={"contacts": len(contact_ids), "staff": len(staff_ids)},
        )
        resolved = self._resolve(sorted(set(contact_ids) | set(staff_ids)), summary)

        contact_updates = [resolved[i] for i in contact_ids if i in resolved]
        staff_updates = [resolved[i] for i in staff_ids if i in resolved]
        for batch in chunked(contact_updates, self.config.contact_update_batch):
            summary.updated += self._apply(batch, subject=True)
        for batch in chunked(staff_updates, self.config.contact_update_batch):
            summary.updated += self._apply(batch, subject=False)
        return summary

    def _resolve(self, ids: List[int], summary: EnrichmentSummary) -> Dict[int, ContactInfo]:
        resolved: Dict[int, ContactInfo] = {}
        for position, contact_id in enumerate(ids):
            if position:
                self.sleep(self.config.contact_lookup_delay_s)
            summary.processed += 1
            try:
                info: Optional[ContactInfo] = self.retry.call(
                    self.adapter.get_contact, contact_id, operation="get_contact"
                )
            except Exception as e:
                summary.failed += 1
                summary.errors.append(f"contact {contact_id}: {e}")
                self.logger.warning(
                    "Contact lookup failed", extra={"contact_id": contact_id, "error": str(e)}
                )
                continue
            if info is None or not info.name:
                summary.skipped += 1
                continue
            resolved[contact_id] = info
        return resolved

    def _apply(self, batch: List[ContactInfo], subject: bool) -> int:
        if subject:
            id_col, name_col = CACHED_NOTES.c.contact_id, CACHED_NOTES.c.contact_name
        else:
            id_col, name_col = CACHED_NOTES.c.created_by, CACHED_NOTES.c.added_by_name
        updated = 0
        with self.engine.begin() as conn:
            for info in batch:
                if subject:
                    values = {
                        "contact_name": info.name,
                        "contact_email": info.email,
                        "contact_company": info.company,
                    }
                else:
                    values = {"added_by_name": info.name, "added_by_email": info.email}
                result = conn.execute(
                    sa.update(CACHED_NOTES)
                    .where(id_col == info.contact_id)
                    .where(name_col.is_(None))
                    .values(**values)
                )
                updated += result.rowcount or 0
        return updated
