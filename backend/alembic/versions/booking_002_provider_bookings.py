"""Provider bookings reported by the Duffel webhook

Revision ID: booking_002
Revises: booking_001
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision = "booking_002"
down_revision = "booking_001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "provider_bookings",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("provider_order_id", sa.String(64), nullable=False, unique=True),
        sa.Column("idempotency_key", sa.String(128)),
        sa.Column("reservation_id", sa.String(64)),
        sa.Column("order_id", sa.String(40), sa.ForeignKey("orders.id", ondelete="SET NULL")),
        sa.Column("status", sa.String(20), server_default="unmatched"),
        sa.Column("booking_reference", sa.String(40)),
        sa.Column("total_amount", sa.Numeric(10, 2)),
        sa.Column("currency", sa.String(3)),
        sa.Column("payload", JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_provider_bookings_idempotency_key", "provider_bookings", ["idempotency_key"])


def downgrade() -> None:
    op.drop_index("ix_provider_bookings_idempotency_key")
    op.drop_table("provider_bookings")
