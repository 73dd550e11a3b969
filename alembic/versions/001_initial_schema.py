"""Initial database schema.

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-18

Creates the tables for the booking lifecycle:
- Bookings with their status history and payment hold
- Processed webhook event ids
- In-app notifications
"""

from typing import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers
revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create all database tables."""

    # ==================== BOOKINGS ====================
    op.create_table(
        "bookings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("pro_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("price", sa.Integer, nullable=False),
        sa.Column("currency", sa.String(3), server_default="usd"),
        sa.Column("status", sa.String(32), nullable=False, server_default="requested", index=True),
        sa.Column("status_history", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("status_updated_at", sa.DateTime(timezone=True)),
        sa.Column("status_updated_by", sa.String(64)),
        sa.Column("payment_hold_ref", sa.String(255), unique=True),
        sa.Column("payment_state", sa.String(16), nullable=False, server_default="NONE", index=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True)),
        sa.Column("on_the_way_at", sa.DateTime(timezone=True)),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("declined_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
        sa.CheckConstraint("price >= 0", name="ck_bookings_price_nonnegative"),
    )

    # ==================== WEBHOOKS ====================
    op.create_table(
        "processed_webhook_events",
        sa.Column("event_id", sa.String(255), primary_key=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("hold_ref", sa.String(255)),
        sa.Column("status", sa.String(16), nullable=False, server_default="processing"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("processing_error", sa.Text()),
    )

    # ==================== NOTIFICATIONS ====================
    op.create_table(
        "notifications",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("recipient_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("recipient_role", sa.String(16), nullable=False),
        sa.Column("notification_type", sa.String(50), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("body", sa.Text),
        sa.Column("booking_id", postgresql.UUID(as_uuid=True), index=True),
        sa.Column("deep_link", sa.Text),
        sa.Column("read", sa.Boolean, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Stalled-capture sweep
    op.create_index(
        "ix_bookings_status_payment_state_completed_at",
        "bookings",
        ["status", "payment_state", "completed_at"],
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index("ix_bookings_status_payment_state_completed_at", table_name="bookings")
    op.drop_table("notifications")
    op.drop_table("processed_webhook_events")
    op.drop_table("bookings")
