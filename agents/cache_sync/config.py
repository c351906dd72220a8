"""Configuration for the cache synchronizer and its enrichment sub-flows."""

from dataclasses import dataclass
from datetime import date
from typing import Any, Dict

from backend.core.config import Settings, settings as default_settings


@dataclass
class SyncConfig:
    """Tunables for one synchronizer instance.

    Defaults mirror the ERP's documented throughput limits; every value can
    be overridden through the matching ``Settings`` field.
    """

    start_date: date = date(2024, 1, 1)
    upsert_batch_size: int = 50

    enable_notes_caching: bool = True
    enable_payment_links: bool = True

    # Notes enrichment
    notes_stale_hours: int = 24
    notes_batch_size: int = 5
    notes_request_delay_s: float = 0.2
    notes_batch_delay_s: float = 2.0
    notes_slowdown_after_rate_limits: int = 3

    # Contact enrichment
    contact_lookup_delay_s: float = 0.2
    contact_update_batch: int = 100

    # Payment links
    payment_link_base_url: str = "https://bpp.withbolt.com/c/bpp/s/invoice.html"
    payment_link_account_code: str = "texon"
    payment_link_channel_key: str = "bpp"
    payment_link_batch_size: int = 10
    payment_link_batch_delay_s: float = 2.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "SyncConfig":
        """Create configuration from application settings.

        Args:
            settings: Settings instance (defaults to the global one)

        Returns:
            Configured instance
        """
        s = settings or default_settings
        return cls(
            start_date=date.fromisoformat(s.SYNC_START_DATE),
            upsert_batch_size=s.SYNC_UPSERT_BATCH,
            enable_notes_caching=s.ENABLE_NOTES_CACHING,
            enable_payment_links=s.ENABLE_AUTO_PAYMENT_LINKS,
            notes_stale_hours=s.NOTES_STALE_HOURS,
            notes_batch_size=s.NOTES_BATCH_SIZE,
            notes_request_delay_s=s.NOTES_REQUEST_DELAY_MS / 1000.0,
            notes_batch_delay_s=s.NOTES_BATCH_DELAY_MS / 1000.0,
            notes_slowdown_after_rate_limits=s.NOTES_RATE_LIMIT_SLOWDOWN_AFTER,
            contact_lookup_delay_s=s.CONTACT_LOOKUP_DELAY_MS / 1000.0,
            contact_update_batch=s.CONTACT_UPDATE_BATCH,
            payment_link_base_url=s.PAYMENT_LINK_BASE_URL,
            payment_link_account_code=s.PAYMENT_LINK_ACCOUNT_CODE,
            payment_link_channel_key=s.PAYMENT_LINK_CHANNEL_KEY,
            payment_link_batch_size=s.PAYMENT_LINK_BATCH,
            payment_link_batch_delay_s=s.PAYMENT_LINK_BATCH_DELAY_MS / 1000.0,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_date": self.start_date.isoformat(),
            "upsert_batch_size": self.upsert_batch_size,
            "enable_notes_caching": self.enable_notes_caching,
            "enable_payment_links": self.enable_payment_links,
            "notes_stale_hours": self.notes_stale_hours,
            "notes_batch_size": self.notes_batch_size,
            "payment_link_base_url": self.payment_link_base_url,
        }
