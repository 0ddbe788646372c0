"""Persistence adapter: audit intents, orders and their superseded revisions."""

import logging
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.booking import BookingIntent, OrderRecord, OrderRevision, ProviderBooking
from app.services.booking.errors import NotFoundError, VersionConflictError
from app.services.booking.types import (
    Contact,
    IntentStatus,
    Order,
    OrderLeg,
    OrderStatus,
    Passenger,
    Quote,
    SearchCriteria,
)

logger = logging.getLogger(__name__)

ORDER_STATUS_TO_INTENT = {
    OrderStatus.CONFIRMED: IntentStatus.CONFIRMED,
    OrderStatus.CANCELLED: IntentStatus.CANCELLED,
    OrderStatus.CHANGED: IntentStatus.CHANGED,
}


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def criteria_to_dict(criteria: SearchCriteria) -> dict:
    return {
        **criteria.normalized(),
        "label": criteria.label,
        "origin_city": criteria.origin_city,
        "destination_city": criteria.destination_city,
    }


def criteria_from_dict(data: dict) -> SearchCriteria:
    return SearchCriteria(
        trip_type=data["trip_type"],
        destination=data["destination"],
        start_date=date.fromisoformat(data["start_date"]) if data.get("start_date") else None,
        origin=data.get("origin", ""),
        end_date=date.fromisoformat(data["end_date"]) if data.get("end_date") else None,
        adults=data.get("adults", 1),
        children=data.get("children", 0),
        infants=data.get("infants", 0),
        cabin_class=data.get("cabin_class", "economy"),
        room_type=data.get("room_type", "double"),
        label=data.get("label", ""),
        origin_city=data.get("origin_city", ""),
        destination_city=data.get("destination_city", ""),
    )


def _legs_to_json(legs: list[OrderLeg]) -> list[dict]:
    return [
        {
            "kind": leg.kind,
            "quote": leg.quote.snapshot(),
            "provider_order_id": leg.provider_order_id,
            "booking_reference": leg.booking_reference,
        }
        for leg in legs
    ]


def _legs_from_json(data: list[dict]) -> list[OrderLeg]:
    return [
        OrderLeg(
            kind=item["kind"],
            quote=Quote.from_snapshot(item["quote"]),
            provider_order_id=item["provider_order_id"],
            booking_reference=item.get("booking_reference", ""),
        )
        for item in data
    ]


def _contact_to_json(contact: Contact | None) -> dict | None:
    if contact is None:
        return None
    return {"first_name": contact.first_name, "last_name": contact.last_name, "email": contact.email, "phone": contact.phone}


def _passengers_to_json(passengers: list[Passenger]) -> list[dict]:
    return [
        {
            "given_name": p.given_name,
            "family_name": p.family_name,
            "type": p.type,
            "born_on": p.born_on.isoformat() if p.born_on else None,
        }
        for p in passengers
    ]


def _reservation_of(idempotency_key: str | None) -> str | None:
    # Commit keys look like "<reservation_id>:v<version>"
    if not idempotency_key or ":v" not in idempotency_key:
        return None
    return idempotency_key.rsplit(":v", 1)[0]


def _provider_booking_to_dict(row: ProviderBooking) -> dict:
    return {
        "provider_order_id": row.provider_order_id,
        "idempotency_key": row.idempotency_key,
        "reservation_id": row.reservation_id,
        "order_id": row.order_id,
        "status": row.status,
        "booking_reference": row.booking_reference,
        "total_amount": Decimal(row.total_amount) if row.total_amount is not None else None,
        "currency": row.currency,
        "created_at": _aware(row.created_at),
    }


def _to_order(record: OrderRecord) -> Order:
    return Order(
        id=record.id,
        reservation_id=record.reservation_id,
        booking_type=record.booking_type,
        legs=_legs_from_json(record.legs),
        total_amount=Decimal(record.total_amount),
        currency=record.currency,
        confirmation_reference=record.confirmation_reference,
        idempotency_key=record.idempotency_key,
        status=OrderStatus(record.status),
        contact=Contact(**record.contact) if record.contact else None,
        passengers=[
            Passenger(
                given_name=p["given_name"],
                family_name=p["family_name"],
                type=p.get("type", "adult"),
                born_on=date.fromisoformat(p["born_on"]) if p.get("born_on") else None,
            )
            for p in (record.passengers or [])
        ],
        criteria=criteria_from_dict(record.criteria) if record.criteria else None,
        intent_id=str(record.intent_id) if record.intent_id else None,
        version=record.version,
        refund_amount=Decimal(record.refund_amount) if record.refund_amount is not None else None,
        refund_currency=record.refund_currency,
        created_at=_aware(record.created_at),
        updated_at=_aware(record.updated_at),
    )


class OrderRepository:
    """SQLAlchemy-backed store for intents and orders.

    Each call opens its own session from the factory, so the repository can be
    shared by background tasks without leaking sessions across requests.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def persist_intent(
        self,
        reservation_id: str,
        criteria: SearchCriteria,
        estimated_price: Decimal | None = None,
        currency: str | None = None,
    ) -> str:
        """Write the pending audit row for a trip going out to pricing."""
        async with self._session_factory() as db:
            intent = BookingIntent(
                reservation_id=reservation_id,
                trip_name=criteria.label or None,
                booking_type=criteria.trip_type,
                destination=criteria.destination,
                destination_city=criteria.destination_city or None,
                departure_code=criteria.origin or None,
                departure_city=criteria.origin_city or None,
                check_in=criteria.start_date,
                check_out=criteria.end_date,
                travelers=criteria.traveler_count,
                adults=criteria.adults,
                children=criteria.children,
                infants=criteria.infants,
                estimated_price=estimated_price,
                currency=currency,
                status=IntentStatus.PENDING.value,
                criteria=criteria_to_dict(criteria),
            )
            db.add(intent)
            await db.commit()
            logger.info(f"Booking intent {intent.id} recorded for reservation {reservation_id}")
            return str(intent.id)

    async def save_order(self, order: Order) -> Order:
        """Insert an order. A repeated idempotency key returns the stored order."""
        existing = await self.get_order_by_key(order.idempotency_key)
        if existing is not None:
            logger.info(f"Order for key {order.idempotency_key} already stored as {existing.id}")
            return existing

        async with self._session_factory() as db:
            record = OrderRecord(
                id=order.id,
                reservation_id=order.reservation_id,
                intent_id=uuid.UUID(order.intent_id) if order.intent_id else None,
                idempotency_key=order.idempotency_key,
                booking_type=order.booking_type,
                status=order.status.value,
                total_amount=order.total_amount,
                currency=order.currency,
                confirmation_reference=order.confirmation_reference,
                legs=_legs_to_json(order.legs),
                contact=_contact_to_json(order.contact),
                passengers=_passengers_to_json(order.passengers),
                criteria=criteria_to_dict(order.criteria) if order.criteria else None,
                version=order.version,
                created_at=order.created_at,
                updated_at=order.updated_at,
            )
            db.add(record)
            try:
                await db.flush()
                if order.intent_id:
                    intent = await db.get(BookingIntent, uuid.UUID(order.intent_id))
                    if intent is not None:
                        intent.status = IntentStatus.CONFIRMED.value
                # Provider may have reported these legs before we stored the order
                reported = await db.execute(
                    select(ProviderBooking).where(
                        ProviderBooking.provider_order_id.in_([leg.provider_order_id for leg in order.legs])
                    )
                )
                for row in reported.scalars():
                    row.status = "matched"
                    row.order_id = order.id
                await db.commit()
            except IntegrityError:
                await db.rollback()
                existing = await self.get_order_by_key(order.idempotency_key)
                if existing is None:
                    raise
                logger.info(f"Concurrent insert for key {order.idempotency_key}, using {existing.id}")
                return existing

        logger.info(f"Order {order.id} stored ({order.confirmation_reference}, {order.total_amount} {order.currency})")
        return order

    async def get_order(self, order_id: str) -> Order | None:
        async with self._session_factory() as db:
            record = await db.get(OrderRecord, order_id)
            return _to_order(record) if record else None

    async def get_order_by_key(self, idempotency_key: str) -> Order | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(OrderRecord).where(OrderRecord.idempotency_key == idempotency_key)
            )
            record = result.scalar_one_or_none()
            return _to_order(record) if record else None

    async def list_orders(self, reservation_id: str | None = None, limit: int = 50) -> list[Order]:
        async with self._session_factory() as db:
            query = select(OrderRecord).order_by(OrderRecord.created_at.desc()).limit(limit)
            if reservation_id:
                query = query.where(OrderRecord.reservation_id == reservation_id)
            result = await db.execute(query)
            return [_to_order(r) for r in result.scalars().all()]

    async def update_order(
        self,
        order_id: str,
        expected_version: int,
        reason: str,
        *,
        status: OrderStatus | None = None,
        total_amount: Decimal | None = None,
        currency: str | None = None,
        confirmation_reference: str | None = None,
        legs: list[OrderLeg] | None = None,
        refund_amount: Decimal | None = None,
        refund_currency: str | None = None,
        now: datetime | None = None,
    ) -> Order:
        """Apply a change or cancellation, keeping the previous terms as a revision."""
        async with self._session_factory() as db:
            record = await db.get(OrderRecord, order_id)
            if record is None:
                raise NotFoundError(f"Order {order_id} does not exist")
            if record.version != expected_version:
                raise VersionConflictError(
                    f"Order {order_id} is at version {record.version}, update was for {expected_version}",
                    expected=expected_version,
                    actual=record.version,
                )

            db.add(OrderRevision(
                order_id=record.id,
                version=record.version,
                reason=reason,
                status=record.status,
                total_amount=record.total_amount,
                currency=record.currency,
                confirmation_reference=record.confirmation_reference,
                legs=record.legs,
            ))

            if status is not None:
                record.status = status.value
            if total_amount is not None:
                record.total_amount = total_amount
            if currency is not None:
                record.currency = currency
            if confirmation_reference is not None:
                record.confirmation_reference = confirmation_reference
            if legs is not None:
                record.legs = _legs_to_json(legs)
            if refund_amount is not None:
                record.refund_amount = refund_amount
                record.refund_currency = refund_currency
            record.version += 1
            if now is not None:
                record.updated_at = now

            if status is not None and record.intent_id:
                intent = await db.get(BookingIntent, record.intent_id)
                if intent is not None:
                    intent.status = ORDER_STATUS_TO_INTENT[status].value

            await db.commit()
            await db.refresh(record)
            logger.info(f"Order {order_id} updated ({reason}) to version {record.version}")
            return _to_order(record)

    async def list_revisions(self, order_id: str) -> list[dict]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(OrderRevision)
                .where(OrderRevision.order_id == order_id)
                .order_by(OrderRevision.version)
            )
            return [
                {
                    "version": r.version,
                    "reason": r.reason,
                    "status": r.status,
                    "total_amount": Decimal(r.total_amount),
                    "currency": r.currency,
                    "confirmation_reference": r.confirmation_reference,
                    "created_at": _aware(r.created_at),
                }
                for r in result.scalars().all()
            ]


    # --- Provider reconciliation ---

    @staticmethod
    async def _provider_booking(db: AsyncSession, provider_order_id: str) -> ProviderBooking | None:
        result = await db.execute(
            select(ProviderBooking).where(ProviderBooking.provider_order_id == provider_order_id)
        )
        return result.scalar_one_or_none()

    async def record_provider_order(
        self,
        provider_order_id: str,
        idempotency_key: str | None = None,
        booking_reference: str | None = None,
        total_amount: Decimal | None = None,
        currency: str | None = None,
        payload: dict | None = None,
    ) -> dict:
        """Record an order the provider reports and match it to the stored order that booked it.

        Reports are deduplicated on the provider order id. A report with no
        matching local order is kept as ``unmatched`` for manual follow-up; it
        becomes ``matched`` if the order is stored afterwards.
        """
        async with self._session_factory() as db:
            existing = await self._provider_booking(db, provider_order_id)
            if existing is not None:
                logger.info(f"Provider order {provider_order_id} already recorded ({existing.status})")
                return _provider_booking_to_dict(existing)

            order = None
            if idempotency_key:
                result = await db.execute(
                    select(OrderRecord).where(OrderRecord.idempotency_key == idempotency_key)
                )
                order = result.scalar_one_or_none()
            matched = order is not None and any(
                leg.get("provider_order_id") == provider_order_id for leg in order.legs
            )

            row = ProviderBooking(
                provider_order_id=provider_order_id,
                idempotency_key=idempotency_key,
                reservation_id=_reservation_of(idempotency_key),
                order_id=order.id if matched else None,
                status="matched" if matched else "unmatched",
                booking_reference=booking_reference,
                total_amount=total_amount,
                currency=currency,
                payload=payload,
            )
            db.add(row)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                existing = await self._provider_booking(db, provider_order_id)
                if existing is None:
                    raise
                return _provider_booking_to_dict(existing)
            await db.refresh(row)

        if matched:
            logger.info(f"Provider order {provider_order_id} matches order {row.order_id}")
        else:
            logger.error(
                f"Provider order {provider_order_id} (key {idempotency_key}) has no local order; "
                f"manual follow-up needed"
            )
        return _provider_booking_to_dict(row)

    async def list_provider_bookings(self, status: str | None = None, limit: int = 50) -> list[dict]:
        async with self._session_factory() as db:
            query = select(ProviderBooking).order_by(ProviderBooking.created_at.desc()).limit(limit)
            if status:
                query = query.where(ProviderBooking.status == status)
            result = await db.execute(query)
            return [_provider_booking_to_dict(r) for r in result.scalars().all()]
