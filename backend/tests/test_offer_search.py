import asyncio
from datetime import date, timedelta
from decimal import Decimal

import pytest

from app.services.booking.errors import ProviderRejectedError, QuoteUnavailableError
from app.services.booking.offer_search import OfferSearchClient
from app.services.booking.types import OrderLeg
from app.services.duffel_client import ProviderError

from conftest import InMemoryOrderRepository, jane, jfk_lhr, make_quote, stored_order, two_passengers

pytestmark = pytest.mark.anyio


class FakeDuffel:
    """Records adapter calls and answers with canned Duffel-shaped dicts."""

    def __init__(self):
        self.calls = []
        self.delay = 0.0
        self.error: Exception | None = None
        self.flights = [
            {
                "id": "off_1",
                "total_amount": "1000.00",
                "total_currency": "USD",
                "base_amount": "880.00",
                "tax_amount": "120.00",
                "expires_at": "2026-05-20T12:20:00Z",
                "owner_name": "British Airways",
                "slices": [{"slice_id": "sli_1", "origin": "JFK", "destination": "LHR", "departure_date": "2026-06-01"}],
                "conditions": {},
            }
        ]
        self.stays = [
            {
                "id": "rat_1",
                "accommodation_name": "Park View Hotel",
                "room_name": "Double Room",
                "total_amount": "200.00",
                "total_currency": "USD",
                "cancellation_timeline": [
                    {"before": "2026-05-30T00:00:00Z", "refund_amount": "180.00"},
                    {"before": "2026-05-18T00:00:00Z", "refund_amount": "200.00"},
                ],
            }
        ]

    async def _answer(self, name, value, **kwargs):
        self.calls.append((name, kwargs))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return value

    def search_flights(self, **kwargs):
        return self._answer("search_flights", self.flights, **kwargs)

    def search_stays(self, **kwargs):
        return self._answer("search_stays", self.stays, **kwargs)

    def create_flight_order(self, **kwargs):
        return self._answer("create_flight_order", {"id": "ord_duffel", "booking_reference": "RZPNX8"}, **kwargs)

    def create_stay_booking(self, **kwargs):
        return self._answer("create_stay_booking", {"id": "bok_duffel", "booking_reference": "H-1234"}, **kwargs)

    def create_cancellation(self, order_id):
        return self._answer(
            "create_cancellation",
            {"id": "ore_1", "refund_amount": "450.00", "refund_currency": "USD", "expires_at": "2026-05-20T12:05:00Z"},
            order_id=order_id,
        )

    def confirm_cancellation(self, cancellation_id):
        return self._answer("confirm_cancellation", {"id": cancellation_id}, cancellation_id=cancellation_id)

    def cancel_stay_booking(self, booking_id):
        return self._answer("cancel_stay_booking", {"id": booking_id}, booking_id=booking_id)

    def create_change_request(self, **kwargs):
        offers = [
            {
                "id": "oco_1",
                "change_total_amount": "80.00",
                "change_total_currency": "USD",
                "penalty_total_amount": "50.00",
                "expires_at": None,
                "slices": [],
            }
        ]
        return self._answer("create_change_request", offers, **kwargs)

    def confirm_change(self, change_offer_id, amount, currency):
        return self._answer(
            "confirm_change",
            {"id": "oce_1", "booking_reference": "RZPNX9", "new_total_currency": currency},
            change_offer_id=change_offer_id,
            amount=amount,
        )


@pytest.fixture
def duffel():
    return FakeDuffel()


@pytest.fixture
def client(duffel, clock):
    return OfferSearchClient(provider=duffel, clock=clock, timeout_seconds=0.5)


async def test_flight_quotes_carry_markup(client):
    quotes = await client.search_offers(jfk_lhr())

    assert len(quotes) == 1
    quote = quotes[0]
    assert quote.kind == "flight"
    assert quote.total_amount == Decimal("1050.00")
    assert quote.components == {"markup": Decimal("50.00"), "base": Decimal("880.00"), "tax": Decimal("120.00")}
    assert quote.provider_ref == "off_1"
    assert quote.fingerprint == jfk_lhr().fingerprint
    assert quote.segments[0]["slice_id"] == "sli_1"
    assert OfferSearchClient.provider_amount(quote) == Decimal("1000.00")


async def test_bundle_searches_both_legs(client, duffel):
    criteria = jfk_lhr(trip_type="bundle", end_date=date(2026, 6, 4), destination_city="London")

    quotes = await client.search_offers(criteria)

    assert sorted(q.kind for q in quotes) == ["flight", "hotel"]
    hotel = next(q for q in quotes if q.kind == "hotel")
    assert hotel.total_amount == Decimal("220.00")
    assert hotel.description == "Park View Hotel - Double Room"
    stay_call = next(kwargs for name, kwargs in duffel.calls if name == "search_stays")
    assert stay_call["location"] == "London"


async def test_missing_expiry_uses_default_ttl(client, duffel, clock):
    duffel.flights[0]["expires_at"] = None

    quote = (await client.search_offers(jfk_lhr()))[0]

    assert quote.expires_at == clock() + timedelta(minutes=15)


async def test_provider_error_becomes_rejection(client, duffel):
    duffel.error = ProviderError("Duffel 500", status_code=500)

    with pytest.raises(ProviderRejectedError) as exc:
        await client.search_offers(jfk_lhr())

    assert exc.value.kind == "provider-rejected"
    assert exc.value.action


async def test_slow_provider_times_out(duffel, clock):
    client = OfferSearchClient(provider=duffel, clock=clock, timeout_seconds=0.01)
    duffel.delay = 0.5

    with pytest.raises(ProviderRejectedError):
        await client.search_offers(jfk_lhr())


async def test_unreadable_offer_is_rejected(client, duffel):
    del duffel.flights[0]["total_currency"]

    with pytest.raises(ProviderRejectedError):
        await client.search_offers(jfk_lhr())


async def test_booking_pays_provider_amount(client, duffel, clock):
    quote = (await client.search_offers(jfk_lhr()))[0]

    leg = await client.book_leg(quote, jane(), two_passengers(), "res_1:v4")

    name, kwargs = duffel.calls[-1]
    assert name == "create_flight_order"
    assert kwargs["amount"] == "1000.00"
    assert kwargs["idempotency_key"] == "res_1:v4:flight"
    assert [p["given_name"] for p in kwargs["passengers"]] == ["Jane", "John"]
    assert leg.provider_order_id == "ord_duffel"
    assert leg.booking_reference == "RZPNX8"


async def test_releasing_a_flight_cancels_and_confirms(client, duffel, clock):
    leg = OrderLeg(kind="flight", quote=make_quote(clock), provider_order_id="ord_duffel", booking_reference="RZPNX8")

    await client.release_leg(leg)

    assert [name for name, _ in duffel.calls] == ["create_cancellation", "confirm_cancellation"]


async def test_refund_quote_combines_flight_and_stay(client, duffel, clock):
    repository = InMemoryOrderRepository()
    stay = make_quote(clock, kind="hotel", amount="220.00", conditions={"cancellation_timeline": duffel.stays[0]["cancellation_timeline"]})
    order = stored_order(clock, repository, booking_type="bundle")
    order.legs.append(OrderLeg(kind="hotel", quote=stay, provider_order_id="bok_duffel", booking_reference="H-1234"))

    quote = await client.request_cancel_quote(order)

    # The full refund window closed on May 18; the partial one is still open
    assert quote.total_amount == Decimal("630.00")
    assert quote.kind == "refund"
    assert quote.expires_at.isoformat() == "2026-05-20T12:05:00+00:00"
    assert [a["kind"] for a in quote.conditions["cancellations"]] == ["flight", "hotel"]

    await client.confirm_cancel(order, quote)
    assert [name for name, _ in duffel.calls[-2:]] == ["confirm_cancellation", "cancel_stay_booking"]


async def test_refund_pricing_failure_is_quote_unavailable(client, duffel, clock):
    order = stored_order(clock, InMemoryOrderRepository())
    duffel.error = ProviderError("Duffel 503", status_code=503)

    with pytest.raises(QuoteUnavailableError):
        await client.request_cancel_quote(order)


async def test_change_search_shifts_every_slice(client, duffel, clock):
    order = stored_order(clock, InMemoryOrderRepository())

    quotes = await client.search_change_offers(order, date(2026, 6, 3))

    _, kwargs = duffel.calls[-1]
    assert kwargs["order_id"] == "prov_flight_1"
    assert kwargs["add_slices"][0]["departure_date"] == "2026-06-03"
    quote = quotes[0]
    assert quote.kind == "change"
    assert quote.total_amount == Decimal("80.00")
    assert quote.components == {"penalty": Decimal("50.00")}
    assert quote.conditions["provider_order_id"] == "prov_flight_1"
    assert quote.segments[0]["departure_date"] == "2026-06-03"


async def test_confirmed_change_moves_total_by_difference(client, duffel, clock):
    order = stored_order(clock, InMemoryOrderRepository())
    change = (await client.search_change_offers(order, date(2026, 6, 3)))[0]

    result = await client.confirm_change(order, change)

    assert result.booking_reference == "RZPNX9"
    assert result.new_total_amount == Decimal("980.00")
    assert result.provider_change_id == "oce_1"
