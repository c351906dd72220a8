"""AR cache and dunning schema

Revision ID: 20251018_ar_cache_schema
Revises: None
Create Date: 2025-10-18 09:00:00
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20251018_ar_cache_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "cached_invoices",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("order_reference", sa.String(128)),
        sa.Column("invoice_number", sa.String(128)),
        _ts("order_date", nullable=False),
        _ts("tax_date"),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("paid_amount", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("outstanding_amount", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("payment_status", sa.String(32)),
        sa.Column("payment_status_color", sa.String(16)),
        sa.Column("order_status_id", sa.Integer()),
        sa.Column("order_status", sa.String(128)),
        sa.Column("order_status_color", sa.String(16)),
        sa.Column("shipping_status_code", sa.String(16)),
        sa.Column("shipping_status", sa.String(128)),
        sa.Column("shipping_status_color", sa.String(16)),
        sa.Column("stock_status_code", sa.String(16)),
        sa.Column("stock_status", sa.String(128)),
        sa.Column("stock_status_color", sa.String(16)),
        sa.Column("billing_contact_id", sa.BigInteger()),
        sa.Column("billing_name", sa.String(255)),
        sa.Column("billing_email", sa.String(320)),
        sa.Column("billing_company", sa.String(255)),
        sa.Column("delivery_name", sa.String(255)),
        sa.Column("delivery_email", sa.String(320)),
        sa.Column("delivery_company", sa.String(255)),
        sa.Column("days_outstanding", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("notes_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _ts("notes_synced_at"),
        sa.Column("payment_link_url", sa.Text()),
        _ts("last_updated", nullable=False),
    )
    op.create_index("ix_cached_invoices_days_outstanding", "cached_invoices", ["days_outstanding"])

    op.create_table(
        "cached_notes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.BigInteger(), nullable=False),
        sa.Column("note_id", sa.BigInteger(), nullable=False),
        sa.Column("note_text", sa.Text()),
        sa.Column("contact_id", sa.BigInteger()),
        sa.Column("created_by", sa.BigInteger()),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("note_type", sa.String(32), nullable=False, server_default=sa.text("'order_note'")),
        _ts("created_at_source"),
        _ts("cached_at", nullable=False),
        sa.Column("contact_name", sa.String(255)),
        sa.Column("contact_email", sa.String(320)),
        sa.Column("contact_company", sa.String(255)),
        sa.Column("added_by_name", sa.String(255)),
        sa.Column("added_by_email", sa.String(320)),
        sa.UniqueConstraint("order_id", "note_id", name="uq_cached_notes_order_note"),
    )

    op.create_table(
        "payment_links",
        sa.Column("order_id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("invoice_reference", sa.String(128), nullable=False),
        sa.Column("billing_contact_id", sa.BigInteger()),
        sa.Column("payment_link", sa.Text(), nullable=False),
        _ts("created_at", nullable=False),
    )

    op.create_table(
        "sync_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _ts("sync_started_at", nullable=False),
        _ts("sync_completed_at"),
        sa.Column("records_processed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("records_inserted", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("records_updated", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("records_deleted", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("errors", sa.Text()),
        sa.Column("status", sa.String(16), nullable=False, server_default=sa.text("'running'")),
    )

    op.create_table(
        "campaigns",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("campaign_name", sa.String(255), nullable=False),
        sa.Column("campaign_type", sa.String(64), nullable=False, unique=True),
        sa.Column("trigger_days", sa.Integer(), nullable=False),
        sa.Column("template_type", sa.String(64), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("send_frequency", sa.String(16), nullable=False, server_default=sa.text("'once'")),
        sa.Column("recurring_interval_days", sa.Integer()),
        sa.Column("max_reminders", sa.Integer()),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
    )

    op.create_table(
        "email_templates",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("template_type", sa.String(64), nullable=False, unique=True),
        sa.Column("template_name", sa.String(255), nullable=False),
        sa.Column("subject_template", sa.Text(), nullable=False),
        sa.Column("body_template", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("updated_at", nullable=False),
    )

    op.create_table(
        "email_schedule",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("campaign_id", sa.Integer(), sa.ForeignKey("campaigns.id"), nullable=False),
        sa.Column("order_id", sa.BigInteger(), nullable=False),
        sa.Column("recipient_email", sa.String(320), nullable=False),
        sa.Column("scheduled_date", sa.Date(), nullable=False),
        sa.Column("day_bucket", sa.String(10), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("skip_reason", sa.String(64)),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _ts("last_attempt_at"),
        _ts("sent_at"),
        sa.Column("email_log_id", sa.Integer()),
        sa.Column("message_id", sa.String(255)),
        sa.Column("error_message", sa.Text()),
        sa.Column("is_test", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
    )
    op.create_index("ix_email_schedule_due", "email_schedule", ["scheduled_date", "status", "is_test"])
    op.create_index(
        "uq_email_schedule_dedup",
        "email_schedule",
        ["campaign_id", "order_id", "day_bucket"],
        unique=True,
        postgresql_where=sa.text("is_test = false AND status IN ('pending', 'sent')"),
        sqlite_where=sa.text("is_test = 0 AND status IN ('pending', 'sent')"),
    )

    op.create_table(
        "customer_email_preferences",
        sa.Column("email_address", sa.String(320), primary_key=True),
        sa.Column("opted_out_all", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("opted_out_reminders", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("opted_out_collections", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("opt_out_date"),
        sa.Column("opt_out_reason", sa.Text()),
        _ts("updated_at", nullable=False),
    )

    op.create_table(
        "automation_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("triggered_by", sa.String(32), nullable=False),
        sa.Column("test_mode", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("run_started_at", nullable=False),
        _ts("run_completed_at"),
        sa.Column("total_orders_processed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("emails_scheduled", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("emails_sent", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("emails_failed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("emails_skipped", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("errors_encountered", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_details", sa.Text()),
        sa.Column("status", sa.String(16), nullable=False, server_default=sa.text("'running'")),
    )

    op.create_table(
        "email_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.BigInteger()),
        sa.Column("schedule_id", sa.Integer()),
        sa.Column("recipient_email", sa.String(320), nullable=False),
        sa.Column("subject", sa.Text()),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("message_id", sa.String(255)),
        sa.Column("error_message", sa.Text()),
        sa.Column("source", sa.String(16), nullable=False, server_default=sa.text("'automation'")),
        sa.Column("is_test", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at", nullable=False),
    )
    op.create_index(
        "ix_email_logs_recipient_created", "email_logs", ["recipient_email", "created_at"]
    )

    op.create_table(
        "app_settings",
        sa.Column("key", sa.String(128), primary_key=True),
        sa.Column("value", sa.Text()),
        _ts("updated_at", nullable=False),
    )


def downgrade() -> None:
    op.drop_table("app_settings")
    op.drop_index("ix_email_logs_recipient_created", table_name="email_logs")
    op.drop_table("email_logs")
    op.drop_table("automation_logs")
    op.drop_table("customer_email_preferences")
    op.drop_index("uq_email_schedule_dedup", table_name="email_schedule")
    op.drop_index("ix_email_schedule_due", table_name="email_schedule")
    op.drop_table("email_schedule")
    op.drop_table("email_templates")
    op.drop_table("campaigns")
    op.drop_table("sync_logs")
    op.drop_table("payment_links")
    op.drop_table("cached_notes")
    op.drop_index("ix_cached_invoices_days_outstanding", table_name="cached_invoices")
    op.drop_table("cached_invoices")
