"""Relational cache store: table definitions and dialect-aware write helpers.

Every table used by the synchronizer and the dunning engine is declared on
``_METADATA`` so Alembic autogenerate and the test fixtures share one source.
Column types stay portable between PostgreSQL (production) and SQLite
(tests); timestamps are always written as UTC.
"""

from __future__ import annotations

from datetime import UTC, datetime
from functools import lru_cache
from typing import Any, Iterable, Mapping, Sequence

import sqlalchemy as sa
from sqlalchemy import MetaData, Table
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Engine

from backend.core.config import settings

_METADATA = MetaData()

CACHED_INVOICES = sa.Table(
    "cached_invoices",
    _METADATA,
    sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=False),
    sa.Column("order_reference", sa.String(128)),
    sa.Column("invoice_number", sa.String(128)),
    sa.Column("order_date", sa.DateTime(timezone=True), nullable=False),
    sa.Column("tax_date", sa.DateTime(timezone=True)),
    sa.Column("total_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
    sa.Column("paid_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
    sa.Column("outstanding_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
    sa.Column("payment_status", sa.String(32)),
    sa.Column("payment_status_color", sa.String(16)),
    sa.Column("order_status_id", sa.Integer),
    sa.Column("order_status", sa.String(128)),
    sa.Column("order_status_color", sa.String(16)),
    sa.Column("shipping_status_code", sa.String(16)),
    sa.Column("shipping_status", sa.String(128)),
    sa.Column("shipping_status_color", sa.String(16)),
    sa.Column("stock_status_code", sa.String(16)),
    sa.Column("stock_status", sa.String(128)),
    sa.Column("stock_status_color", sa.String(16)),
    sa.Column("billing_contact_id", sa.BigInteger),
    sa.Column("billing_name", sa.String(255)),
    sa.Column("billing_email", sa.String(320)),
    sa.Column("billing_company", sa.String(255)),
    sa.Column("delivery_name", sa.String(255)),
    sa.Column("delivery_email", sa.String(320)),
    sa.Column("delivery_company", sa.String(255)),
    sa.Column("days_outstanding", sa.Integer, nullable=False, server_default="0"),
    sa.Column("notes_count", sa.Integer, nullable=False, server_default="0"),
    sa.Column("notes_synced_at", sa.DateTime(timezone=True)),
    sa.Column("payment_link_url", sa.Text),
    sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
    sa.Index("ix_cached_invoices_days_outstanding", "days_outstanding"),
)

CACHED_NOTES = sa.Table(
    "cached_notes",
    _METADATA,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("order_id", sa.BigInteger, nullable=False),
    sa.Column("note_id", sa.BigInteger, nullable=False),
    sa.Column("note_text", sa.Text),
    sa.Column("contact_id", sa.BigInteger),
    sa.Column("created_by", sa.BigInteger),
    sa.Column("is_public", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.Column("note_type", sa.String(32), nullable=False, server_default="order_note"),
    sa.Column("created_at_source", sa.DateTime(timezone=True)),
    sa.Column("cached_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("contact_name", sa.String(255)),
    sa.Column("contact_email", sa.String(320)),
    sa.Column("contact_company", sa.String(255)),
    sa.Column("added_by_name", sa.String(255)),
    sa.Column("added_by_email", sa.String(320)),
    sa.UniqueConstraint("order_id", "note_id", name="uq_cached_notes_order_note"),
)

PAYMENT_LINKS = sa.Table(
    "payment_links",
    _METADATA,
    sa.Column("order_id", sa.BigInteger, primary_key=True, autoincrement=False),
    sa.Column("invoice_reference", sa.String(128), nullable=False),
    sa.Column("billing_contact_id", sa.BigInteger),
    sa.Column("payment_link", sa.Text, nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
)

SYNC_LOGS = sa.Table(
    "sync_logs",
    _METADATA,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("sync_started_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("sync_completed_at", sa.DateTime(timezone=True)),
    sa.Column("records_processed", sa.Integer, nullable=False, server_default="0"),
    sa.Column("records_inserted", sa.Integer, nullable=False, server_default="0"),
    sa.Column("records_updated", sa.Integer, nullable=False, server_default="0"),
    sa.Column("records_deleted", sa.Integer, nullable=False, server_default="0"),
    sa.Column("errors", sa.Text),
    sa.Column("status", sa.String(16), nullable=False, server_default="running"),
)

CAMPAIGNS = sa.Table(
    "campaigns",
    _METADATA,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("campaign_name", sa.String(255), nullable=False),
    sa.Column("campaign_type", sa.String(64), nullable=False, unique=True),
    sa.Column("trigger_days", sa.Integer, nullable=False),
    sa.Column("template_type", sa.String(64), nullable=False),
    sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.Column("send_frequency", sa.String(16), nullable=False, server_default="once"),
    sa.Column("recurring_interval_days", sa.Integer),
    sa.Column("max_reminders", sa.Integer),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
)

EMAIL_TEMPLATES = sa.Table(
    "email_templates",
    _METADATA,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("template_type", sa.String(64), nullable=False, unique=True),
    sa.Column("template_name", sa.String(255), nullable=False),
    sa.Column("subject_template", sa.Text, nullable=False),
    sa.Column("body_template", sa.Text, nullable=False),
    sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
)

EMAIL_SCHEDULE = sa.Table(
    "email_schedule",
    _METADATA,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("campaign_id", sa.Integer, sa.ForeignKey("campaigns.id"), nullable=False),
    sa.Column("order_id", sa.BigInteger, nullable=False),
    sa.Column("recipient_email", sa.String(320), nullable=False),
    sa.Column("scheduled_date", sa.Date, nullable=False),
    sa.Column("day_bucket", sa.String(10), nullable=False),
    sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
    sa.Column("skip_reason", sa.String(64)),
    sa.Column("attempt_count", sa.Integer, nullable=False, server_default="0"),
    sa.Column("last_attempt_at", sa.DateTime(timezone=True)),
    sa.Column("sent_at", sa.DateTime(timezone=True)),
    sa.Column("email_log_id", sa.Integer),
    sa.Column("message_id", sa.String(255)),
    sa.Column("error_message", sa.Text),
    sa.Column("is_test", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    sa.Index("ix_email_schedule_due", "scheduled_date", "status", "is_test"),
    # Dedup ledger: one live (pending/sent) production row per campaign,
    # order and day bucket ("once" for single-shot tiers).
    sa.Index(
        "uq_email_schedule_dedup",
        "campaign_id",
        "order_id",
        "day_bucket",
        unique=True,
        sqlite_where=sa.text("is_test = 0 AND status IN ('pending', 'sent')"),
        postgresql_where=sa.text("is_test = false AND status IN ('pending', 'sent')"),
    ),
)

CUSTOMER_PREFERENCES = sa.Table(
    "customer_email_preferences",
    _METADATA,
    sa.Column("email_address", sa.String(320), primary_key=True),
    sa.Column("opted_out_all", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.Column("opted_out_reminders", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.Column("opted_out_collections", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.Column("opt_out_date", sa.DateTime(timezone=True)),
    sa.Column("opt_out_reason", sa.Text),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
)

AUTOMATION_LOGS = sa.Table(
    "automation_logs",
    _METADATA,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("triggered_by", sa.String(32), nullable=False),
    sa.Column("test_mode", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.Column("run_started_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("run_completed_at", sa.DateTime(timezone=True)),
    sa.Column("total_orders_processed", sa.Integer, nullable=False, server_default="0"),
    sa.Column("emails_scheduled", sa.Integer, nullable=False, server_default="0"),
    sa.Column("emails_sent", sa.Integer, nullable=False, server_default="0"),
    sa.Column("emails_failed", sa.Integer, nullable=False, server_default="0"),
    sa.Column("emails_skipped", sa.Integer, nullable=False, server_default="0"),
    sa.Column("errors_encountered", sa.Integer, nullable=False, server_default="0"),
    sa.Column("error_details", sa.Text),
    sa.Column("status", sa.String(16), nullable=False, server_default="running"),
)

EMAIL_LOGS = sa.Table(
    "email_logs",
    _METADATA,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("order_id", sa.BigInteger),
    sa.Column("schedule_id", sa.Integer),
    sa.Column("recipient_email", sa.String(320), nullable=False),
    sa.Column("subject", sa.Text),
    sa.Column("status", sa.String(16), nullable=False),
    sa.Column("message_id", sa.String(255)),
    sa.Column("error_message", sa.Text),
    sa.Column("source", sa.String(16), nullable=False, server_default="automation"),
    sa.Column("is_test", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Index("ix_email_logs_recipient_created", "recipient_email", "created_at"),
)

APP_SETTINGS = sa.Table(
    "app_settings",
    _METADATA,
    sa.Column("key", sa.String(128), primary_key=True),
    sa.Column("value", sa.Text),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
)


class UnsupportedDialectError(RuntimeError):
    """Raised when an upsert is attempted on a dialect without ON CONFLICT."""


class StoreUnavailableError(RuntimeError):
    """Raised when the cache store cannot be reached."""


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    """Create (and cache) the SQLAlchemy engine for the cache store."""
    return sa.create_engine(settings.database_url, future=True, pool_pre_ping=True)


def create_all(engine: Engine) -> None:
    """Create every cache table (tests and local bootstrap; production uses Alembic)."""
    _METADATA.create_all(engine)


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _insert_for(conn: Connection, table: Table):
    name = conn.dialect.name
    if name == "postgresql":
        return postgresql.insert(table)
    if name == "sqlite":
        return sqlite.insert(table)
    raise UnsupportedDialectError(f"upsert not supported on dialect {name!r}")


def upsert(
    conn: Connection,
    table: Table,
    rows: Sequence[Mapping[str, Any]],
    *,
    conflict_columns: Sequence[str],
    update_columns: Iterable[str],
) -> None:
    """Insert rows, updating ``update_columns`` when the conflict key exists."""
    if not rows:
        return
    stmt = _insert_for(conn, table)
    update_columns = list(update_columns)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(conflict_columns),
        set_={col: stmt.excluded[col] for col in update_columns},
    )
    conn.execute(stmt, [dict(r) for r in rows])


def insert_or_ignore(conn: Connection, table: Table, row: Mapping[str, Any]) -> bool:
    """Insert a single row unless any unique constraint rejects it.

    Returns True when the row was written.
    """
    stmt = _insert_for(conn, table).values(**row).on_conflict_do_nothing()
    result = conn.execute(stmt)
    return (result.rowcount or 0) > 0


def get_app_setting(conn: Connection, key: str, default: str | None = None) -> str | None:
    value = conn.execute(
        sa.select(APP_SETTINGS.c.value).where(APP_SETTINGS.c.key == key)
    ).scalar_one_or_none()
    return default if value is None else value


def set_app_setting(conn: Connection, key: str, value: str | None) -> None:
    upsert(
        conn,
        APP_SETTINGS,
        [{"key": key, "value": value, "updated_at": utcnow()}],
        conflict_columns=["key"],
        update_columns=["value", "updated_at"],
    )


def parse_flag(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}
