"""Customer email preferences (opt-outs)."""

import logging
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.engine import Connection, Engine

from backend.core.cache_store import CUSTOMER_PREFERENCES, upsert, utcnow

logger = logging.getLogger(__name__)

OPT_OUT_SCOPES = ("all", "reminders", "collections")


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def is_opted_out(conn: Connection, email: Optional[str]) -> bool:
    """True if the address opted out of anything; an empty address counts as opted out."""
    address = normalize_email(email)
    if not address:
        return True
    row = conn.execute(
        sa.select(
            CUSTOMER_PREFERENCES.c.opted_out_all,
            CUSTOMER_PREFERENCES.c.opted_out_reminders,
            CUSTOMER_PREFERENCES.c.opted_out_collections,
        ).where(CUSTOMER_PREFERENCES.c.email_address == address)
    ).first()
    if row is None:
        return False
    return bool(row.opted_out_all or row.opted_out_reminders or row.opted_out_collections)


class PreferenceStore:
    """Read and write ``customer_email_preferences``."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def is_opted_out(self, email: Optional[str]) -> bool:
        with self.engine.connect() as conn:
            return is_opted_out(conn, email)

    def add_opt_out(self, email: str, reason: Optional[str] = None, scope: str = "all") -> Dict[str, Any]:
        address = normalize_email(email)
        if not address:
            raise ValueError("email address required")
        if scope not in OPT_OUT_SCOPES:
            raise ValueError(f"unknown opt-out scope {scope!r}")
        now = utcnow()
        flag = f"opted_out_{scope}"
        row = {
            "email_address": address,
            "opted_out_all": scope == "all",
            "opted_out_reminders": scope == "reminders",
            "opted_out_collections": scope == "collections",
            "opt_out_date": now,
            "opt_out_reason": reason,
            "updated_at": now,
        }
        with self.engine.begin() as conn:
            upsert(
                conn,
                CUSTOMER_PREFERENCES,
                [row],
                conflict_columns=["email_address"],
                update_columns=[flag, "opt_out_date", "opt_out_reason", "updated_at"],
            )
        logger.info("Customer opted out", extra={"scope": scope, "reason": reason})
        return self.get(address)

    def remove_opt_out(self, email: str) -> bool:
        address = normalize_email(email)
        with self.engine.begin() as conn:
            result = conn.execute(
                sa.delete(CUSTOMER_PREFERENCES).where(CUSTOMER_PREFERENCES.c.email_address == address)
            )
        removed = (result.rowcount or 0) > 0
        if removed:
            logger.info("Customer opt-out removed")
        return removed

    def get(self, email: str) -> Optional[Dict[str, Any]]:
        with self.engine.connect() as conn:
            row = conn.execute(
                sa.select(CUSTOMER_PREFERENCES).where(
                    CUSTOMER_PREFERENCES.c.email_address == normalize_email(email)
                )
            ).mappings().first()
        return dict(row) if row else None

    def list_opt_outs(self, limit: int = 100) -> List[Dict[str, Any]]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                sa.select(CUSTOMER_PREFERENCES)
                .where(
                    CUSTOMER_PREFERENCES.c.opted_out_all
                    | CUSTOMER_PREFERENCES.c.opted_out_reminders
                    | CUSTOMER_PREFERENCES.c.opted_out_collections
                )
                .order_by(CUSTOMER_PREFERENCES.c.updated_at.desc())
                .limit(limit)
            ).mappings().all()
        return [dict(r) for r in rows]
