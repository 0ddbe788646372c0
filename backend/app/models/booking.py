import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import JSON, Date, DateTime, ForeignKey, Integer, Numeric, String, Uuid, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class BookingIntent(Base):
    """Audit row written each time a reservation goes out for pricing with new criteria."""

    __tablename__ = "booking_intents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    reservation_id: Mapped[str | None] = mapped_column(String(64), index=True)
    trip_name: Mapped[str | None] = mapped_column(String(255))
    booking_type: Mapped[str] = mapped_column(String(20), nullable=False)
    destination: Mapped[str] = mapped_column(String(100), nullable=False)
    destination_city: Mapped[str | None] = mapped_column(String(100))
    departure_code: Mapped[str | None] = mapped_column(String(10))
    departure_city: Mapped[str | None] = mapped_column(String(100))
    check_in: Mapped[date | None] = mapped_column(Date)
    check_out: Mapped[date | None] = mapped_column(Date)
    travelers: Mapped[int] = mapped_column(Integer, default=1)
    adults: Mapped[int] = mapped_column(Integer, default=1)
    children: Mapped[int] = mapped_column(Integer, default=0)
    infants: Mapped[int] = mapped_column(Integer, default=0)
    estimated_price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    currency: Mapped[str | None] = mapped_column(String(3))
    status: Mapped[str] = mapped_column(String(20), default="pending")
    criteria: Mapped[dict | None] = mapped_column(JSONType)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class OrderRecord(Base):
    """A confirmed booking. Price and legs are frozen at commit time."""

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    reservation_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    intent_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("booking_intents.id", ondelete="SET NULL")
    )
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    booking_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="confirmed")
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    confirmation_reference: Mapped[str] = mapped_column(String(40), nullable=False)
    legs: Mapped[list] = mapped_column(JSONType, nullable=False)
    contact: Mapped[dict | None] = mapped_column(JSONType)
    passengers: Mapped[list | None] = mapped_column(JSONType)
    criteria: Mapped[dict | None] = mapped_column(JSONType)
    version: Mapped[int] = mapped_column(Integer, default=1)
    refund_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    refund_currency: Mapped[str | None] = mapped_column(String(3))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    revisions: Mapped[list["OrderRevision"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", order_by="OrderRevision.version"
    )


class OrderRevision(Base):
    """Superseded terms of an order, kept when a change or cancellation lands."""

    __tablename__ = "order_revisions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[str] = mapped_column(
        String(40), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    confirmation_reference: Mapped[str] = mapped_column(String(40), nullable=False)
    legs: Mapped[list] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    order: Mapped["OrderRecord"] = relationship(back_populates="revisions")


class ProviderBooking(Base):
    """A provider-side order reported by webhook, reconciled against local orders.

    ``matched`` rows belong to a stored order; ``unmatched`` ones were booked at
    the provider without a local record and need manual follow-up.
    """

    __tablename__ = "provider_bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_order_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), index=True)
    reservation_id: Mapped[str | None] = mapped_column(String(64))
    order_id: Mapped[str | None] = mapped_column(
        String(40), ForeignKey("orders.id", ondelete="SET NULL")
    )
    status: Mapped[str] = mapped_column(String(20), default="unmatched")
    booking_reference: Mapped[str | None] = mapped_column(String(40))
    total_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    currency: Mapped[str | None] = mapped_column(String(3))
    payload: Mapped[dict | None] = mapped_column(JSONType)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
