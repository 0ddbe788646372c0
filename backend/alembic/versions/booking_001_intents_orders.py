"""Booking intents, orders and order revisions

Revision ID: booking_001
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision = "booking_001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Audit row written each time a reservation goes out for pricing with new criteria
    op.create_table(
        "booking_intents",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("reservation_id", sa.String(64)),
        sa.Column("trip_name", sa.String(255)),
        sa.Column("booking_type", sa.String(20), nullable=False),
        sa.Column("destination", sa.String(100), nullable=False),
        sa.Column("destination_city", sa.String(100)),
        sa.Column("departure_code", sa.String(10)),
        sa.Column("departure_city", sa.String(100)),
        sa.Column("check_in", sa.Date),
        sa.Column("check_out", sa.Date),
        sa.Column("travelers", sa.Integer, server_default="1"),
        sa.Column("adults", sa.Integer, server_default="1"),
        sa.Column("children", sa.Integer, server_default="0"),
        sa.Column("infants", sa.Integer, server_default="0"),
        sa.Column("estimated_price", sa.Numeric(10, 2)),
        sa.Column("currency", sa.String(3)),
        sa.Column("status", sa.String(20), server_default="pending"),
        sa.Column("criteria", JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_booking_intents_reservation_id", "booking_intents", ["reservation_id"])

    op.create_table(
        "orders",
        sa.Column("id", sa.String(40), primary_key=True),
        sa.Column("reservation_id", sa.String(64), nullable=False),
        sa.Column("intent_id", UUID(as_uuid=True), sa.ForeignKey("booking_intents.id", ondelete="SET NULL")),
        sa.Column("idempotency_key", sa.String(128), nullable=False, unique=True),
        sa.Column("booking_type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), server_default="confirmed"),
        sa.Column("total_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("confirmation_reference", sa.String(40), nullable=False),
        sa.Column("legs", JSONB, nullable=False),
        sa.Column("contact", JSONB),
        sa.Column("passengers", JSONB),
        sa.Column("criteria", JSONB),
        sa.Column("version", sa.Integer, server_default="1"),
        sa.Column("refund_amount", sa.Numeric(10, 2)),
        sa.Column("refund_currency", sa.String(3)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_orders_reservation_id", "orders", ["reservation_id"])

    # Superseded terms, kept for audit when an order is changed or cancelled
    op.create_table(
        "order_revisions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("order_id", sa.String(40), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("version", sa.Integer, nullable=False),
        sa.Column("reason", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("total_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("confirmation_reference", sa.String(40), nullable=False),
        sa.Column("legs", JSONB, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_order_revisions_order_id", "order_revisions", ["order_id"])


def downgrade() -> None:
    op.drop_index("ix_order_revisions_order_id")
    op.drop_table("order_revisions")
    op.drop_index("ix_orders_reservation_id")
    op.drop_table("orders")
    op.drop_index("ix_booking_intents_reservation_id")
    op.drop_table("booking_intents")
