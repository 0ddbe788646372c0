import asyncio
import dataclasses
import itertools
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

import app.models  # noqa: F401
from app.database import Base
from app.services.booking.cancel_flow import CancelFlow
from app.services.booking.change_flow import ChangeFlow
from app.services.booking.commit import CommitCoordinator
from app.services.booking.coordinator import ReservationCoordinator
from app.services.booking.errors import NotFoundError, VersionConflictError
from app.services.booking.offer_search import ChangeResult
from app.services.booking.quote_store import QuoteStore
from app.services.booking.types import (
    Contact,
    Order,
    OrderLeg,
    Passenger,
    Quote,
    SearchCriteria,
)

START = datetime(2026, 5, 20, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClock:
    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


_ids = itertools.count(1)


def make_quote(
    clock: FakeClock,
    kind: str = "flight",
    amount: str = "900.00",
    currency: str = "USD",
    expires_in: timedelta = timedelta(minutes=15),
    provider_ref: str | None = None,
    segments: tuple = (),
    conditions: dict | None = None,
) -> Quote:
    n = next(_ids)
    if kind == "flight" and not segments:
        segments = ({"slice_id": f"sli_{n}", "origin": "JFK", "destination": "LHR", "departure_date": "2026-06-01"},)
    return Quote(
        id=f"quo_{n}",
        kind=kind,
        total_amount=Decimal(amount),
        currency=currency,
        expires_at=clock() + expires_in,
        fingerprint="fp",
        provider_ref=provider_ref or f"off_{n}",
        segments=segments,
        conditions=conditions or {},
    )


def jfk_lhr(**overrides) -> SearchCriteria:
    fields = dict(trip_type="flight", origin="JFK", destination="LHR", start_date=date(2026, 6, 1), adults=2)
    fields.update(overrides)
    return SearchCriteria(**fields)


def jane() -> Contact:
    return Contact(first_name="Jane", last_name="Doe", email="jane@example.com")


def two_passengers() -> list[Passenger]:
    return [Passenger(given_name="Jane", family_name="Doe"), Passenger(given_name="John", family_name="Doe")]


class ScriptedOffers:
    """Offer client double. Each behaviour is a value to return or an exception to raise."""

    def __init__(self):
        self.search_result: list[Quote] | Exception = []
        self.search_calls: list[SearchCriteria] = []
        self.search_gate: asyncio.Event | None = None
        self.book_errors: dict[str, Exception] = {}
        self.book_delay = 0.0
        self.book_calls: list[tuple[str, str]] = []
        self.released: list[OrderLeg] = []
        self.booked_by_key: dict[str, OrderLeg] = {}
        self.cancel_quote: Quote | Exception | None = None
        self.cancel_confirm_error: Exception | None = None
        self.cancel_confirms: list[str] = []
        self.change_result: list[Quote] | Exception = []
        self.change_confirm_error: Exception | None = None
        self.change_confirms: list[str] = []

    async def search_offers(self, criteria):
        self.search_calls.append(criteria)
        if self.search_gate is not None:
            await self.search_gate.wait()
        if isinstance(self.search_result, Exception):
            raise self.search_result
        return list(self.search_result)

    async def book_leg(self, quote, contact, passengers, idempotency_key):
        leg_key = f"{idempotency_key}:{quote.kind}"
        self.book_calls.append((leg_key, quote.id))
        if self.book_delay:
            await asyncio.sleep(self.book_delay)
        if quote.kind in self.book_errors:
            raise self.book_errors[quote.kind]
        if leg_key not in self.booked_by_key:
            n = len(self.booked_by_key) + 1
            self.booked_by_key[leg_key] = OrderLeg(
                kind=quote.kind,
                quote=quote,
                provider_order_id=f"prov_{quote.kind}_{n}",
                booking_reference=f"REF{n:03d}",
            )
        return self.booked_by_key[leg_key]

    async def release_leg(self, leg):
        self.released.append(leg)

    async def request_cancel_quote(self, order):
        if isinstance(self.cancel_quote, Exception):
            raise self.cancel_quote
        return self.cancel_quote

    async def confirm_cancel(self, order, cancel_quote):
        if self.cancel_confirm_error is not None:
            raise self.cancel_confirm_error
        self.cancel_confirms.append(order.id)

    async def search_change_offers(self, order, new_date):
        if isinstance(self.change_result, Exception):
            raise self.change_result
        return list(self.change_result)

    async def confirm_change(self, order, change_quote):
        if self.change_confirm_error is not None:
            raise self.change_confirm_error
        self.change_confirms.append(change_quote.id)
        return ChangeResult(
            booking_reference="NEWREF",
            new_total_amount=order.total_amount + change_quote.total_amount,
            currency=change_quote.currency,
            provider_change_id="oce_1",
        )


class InMemoryOrderRepository:
    def __init__(self):
        self.orders: dict[str, Order] = {}
        self.intents: dict[str, dict] = {}
        self.revisions: dict[str, list[dict]] = {}
        self.intent_error: Exception | None = None
        self.save_calls = 0

    async def persist_intent(self, reservation_id, criteria, estimated_price=None, currency=None):
        if self.intent_error is not None:
            raise self.intent_error
        intent_id = f"int_{len(self.intents) + 1}"
        self.intents[intent_id] = {"reservation_id": reservation_id, "status": "pending", "criteria": criteria}
        return intent_id

    async def save_order(self, order):
        self.save_calls += 1
        existing = await self.get_order_by_key(order.idempotency_key)
        if existing is not None:
            return existing
        self.orders[order.id] = order
        return order

    async def get_order(self, order_id):
        return self.orders.get(order_id)

    async def get_order_by_key(self, idempotency_key):
        return next((o for o in self.orders.values() if o.idempotency_key == idempotency_key), None)

    async def list_orders(self, reservation_id=None, limit=50):
        orders = [o for o in self.orders.values() if reservation_id in (None, o.reservation_id)]
        return orders[:limit]

    async def update_order(self, order_id, expected_version, reason, *, now=None, **changes):
        order = self.orders.get(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} does not exist")
        if order.version != expected_version:
            raise VersionConflictError("stale order", expected=expected_version, actual=order.version)
        self.revisions.setdefault(order_id, []).append({
            "version": order.version,
            "reason": reason,
            "status": order.status.value,
            "total_amount": order.total_amount,
            "currency": order.currency,
            "confirmation_reference": order.confirmation_reference,
            "created_at": now,
        })
        updates = {k: v for k, v in changes.items() if v is not None}
        updated = dataclasses.replace(order, version=order.version + 1, updated_at=now or order.updated_at, **updates)
        self.orders[order_id] = updated
        return updated

    async def list_revisions(self, order_id):
        return list(self.revisions.get(order_id, []))


def stored_order(clock: FakeClock, repository: InMemoryOrderRepository, **overrides) -> Order:
    """Put a confirmed one-way flight order straight into the repository."""
    quote = make_quote(clock, amount="900.00")
    fields = dict(
        id="ord_1",
        reservation_id="res_1",
        booking_type="flight",
        legs=[OrderLeg(kind="flight", quote=quote, provider_order_id="prov_flight_1", booking_reference="ABC123")],
        total_amount=Decimal("900.00"),
        currency="USD",
        confirmation_reference="ABC123",
        idempotency_key="res_1:v5",
        contact=jane(),
        criteria=jfk_lhr(),
        created_at=clock(),
        updated_at=clock(),
    )
    fields.update(overrides)
    order = Order(**fields)
    repository.orders[order.id] = order
    return order


def new_order(clock: FakeClock, intent_id=None, key="res_1:v5", order_id="ord_1") -> Order:
    """A confirmed flight order as the commit coordinator would hand it to the repository."""
    quote = make_quote(clock, amount="1050.00")
    return Order(
        id=order_id,
        reservation_id="res_1",
        booking_type="flight",
        legs=[OrderLeg(kind="flight", quote=quote, provider_order_id="ord_duffel", booking_reference="RZPNX8")],
        total_amount=Decimal("1050.00"),
        currency="USD",
        confirmation_reference="RZPNX8",
        idempotency_key=key,
        contact=jane(),
        passengers=two_passengers(),
        criteria=jfk_lhr(label="Board meeting"),
        intent_id=intent_id,
        created_at=clock(),
        updated_at=clock(),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def offers():
    return ScriptedOffers()


@pytest.fixture
def repository():
    return InMemoryOrderRepository()


@pytest.fixture
def quote_store():
    return QuoteStore()


@pytest.fixture
def committer(offers, repository, quote_store, clock):
    return CommitCoordinator(
        offers,
        repository,
        quote_store,
        clock=clock,
        min_display_seconds=0,
        progress_interval_seconds=0.01,
        progress_messages=["Securing Flights...", "Finalizing Itinerary..."],
        timeout_seconds=1.0,
    )


@pytest.fixture
def coordinator(offers, repository, quote_store, committer, clock):
    return ReservationCoordinator(offers, repository, quote_store, committer, clock=clock)


@pytest.fixture
def change_flow(offers, repository, quote_store, clock):
    return ChangeFlow(offers, repository, quote_store, clock=clock)


@pytest.fixture
def cancel_flow(offers, repository, quote_store, clock):
    return CancelFlow(offers, repository, quote_store, clock=clock)


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()
