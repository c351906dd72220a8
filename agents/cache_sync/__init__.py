"""Cache synchronizer for ERP accounts-receivable records.

Keeps ``cached_invoices`` aligned with the ERP's open invoices and enriches
them with order notes, contact names and hosted payment links.

Key Components:
- Adapter: read-only ERP access behind a Protocol
- Status lookup: immutable code -> label/color mappings
- DTOs: invoice snapshots, notes, contacts, run summaries
- Synchronizer: fetch, delete, upsert, enrich, log
"""

from .adapter import BrightpearlAdapter, ErpSourceAdapter
from .config import SyncConfig
from .contacts import ContactEnricher
from .dto import ContactInfo, EnrichmentSummary, InvoiceSnapshot, NoteRecord, SyncSummary
from .notes import NotesEnricher
from .payment_links import PaymentLinkGenerator, build_payment_link
from .status_lookup import StatusDefinitions, StatusLookup
from .synchronizer import CacheSynchronizer, latest_sync

__all__ = [
    "BrightpearlAdapter",
    "CacheSynchronizer",
    "ContactEnricher",
    "ContactInfo",
    "EnrichmentSummary",
    "ErpSourceAdapter",
    "InvoiceSnapshot",
    "NoteRecord",
    "NotesEnricher",
    "PaymentLinkGenerator",
    "StatusDefinitions",
    "StatusLookup",
    "SyncConfig",
    "SyncSummary",
    "build_payment_link",
    "latest_sync",
]
