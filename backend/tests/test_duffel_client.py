import json
from datetime import date

import httpx
import pytest

from app.config import settings
from app.services.duffel_client import DuffelClient, ProviderError

pytestmark = pytest.mark.anyio

OFFER_REQUEST_BODY = {
    "data": {
        "id": "orq_1",
        "offers": [
            {
                "id": "off_1",
                "total_amount": "812.40",
                "total_currency": "USD",
                "base_amount": "700.00",
                "tax_amount": "112.40",
                "expires_at": "2026-05-20T12:30:00Z",
                "owner": {"name": "British Airways"},
                "slices": [
                    {
                        "id": "sli_1",
                        "origin": {"iata_code": "JFK"},
                        "destination": {"iata_code": "LHR"},
                        "segments": [
                            {
                                "departing_at": "2026-06-01T18:30:00",
                                "arriving_at": "2026-06-02T06:40:00",
                                "marketing_carrier": {"iata_code": "BA"},
                                "marketing_carrier_flight_number": "178",
                            }
                        ],
                    }
                ],
                "conditions": {"refund_before_departure": {"allowed": False}},
            }
        ],
    }
}


def live_client(handler) -> DuffelClient:
    return DuffelClient(access_token="duffel_test_token", base_url="https://duffel.test", transport=httpx.MockTransport(handler))


@pytest.fixture
def sleeps(monkeypatch):
    calls = []

    async def no_sleep(seconds):
        calls.append(seconds)

    monkeypatch.setattr("app.services.duffel_client.asyncio.sleep", no_sleep)
    return calls


async def test_offer_request_is_authenticated_and_parsed():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json=OFFER_REQUEST_BODY)

    client = live_client(handler)
    offers = await client.search_flights("JFK", "LHR", date(2026, 6, 1), passenger_types=["adult", "adult"])
    await client.close()

    request = seen[0]
    assert request.url.path == "/air/offer_requests"
    assert request.headers["Authorization"] == "Bearer duffel_test_token"
    assert request.headers["Duffel-Version"] == settings.duffel_api_version
    payload = json.loads(request.content)["data"]
    assert payload["passengers"] == [{"type": "adult"}, {"type": "adult"}]
    assert payload["slices"][0]["departure_date"] == "2026-06-01"

    offer = offers[0]
    assert offer["id"] == "off_1"
    assert offer["owner_name"] == "British Airways"
    assert offer["slices"][0]["slice_id"] == "sli_1"
    assert offer["slices"][0]["departure_date"] == "2026-06-01"
    assert offer["slices"][0]["flight_numbers"] == "BA178"


async def test_rate_limit_is_retried(sleeps):
    responses = iter([httpx.Response(429, json={"errors": []}), httpx.Response(201, json=OFFER_REQUEST_BODY)])

    client = live_client(lambda request: next(responses))
    offers = await client.search_flights("JFK", "LHR", date(2026, 6, 1))

    assert len(offers) == 1
    assert sleeps == [1]


async def test_provider_error_carries_status_and_title(sleeps):
    def handler(request):
        return httpx.Response(
            422,
            json={"errors": [{"title": "Offer no longer available", "message": "Select another offer."}]},
        )

    client = live_client(handler)
    with pytest.raises(ProviderError) as exc:
        await client.create_flight_order("off_1", [], "812.40", "USD", idempotency_key="res_1:v4:flight")

    assert exc.value.status_code == 422
    assert "Offer no longer available" in str(exc.value)
    assert sleeps == []


async def test_unreachable_provider_gives_up_after_three_attempts(sleeps):
    attempts = []

    def handler(request):
        attempts.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    client = live_client(handler)
    with pytest.raises(ProviderError):
        await client.confirm_cancellation("ore_1")

    assert len(attempts) == 3
    assert sleeps == [1, 2]


async def test_body_without_data_is_rejected():
    client = live_client(lambda request: httpx.Response(200, json={"meta": {}}))

    with pytest.raises(ProviderError):
        await client.create_cancellation("ord_1")


async def test_order_carries_idempotency_key():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(201, json={"data": {"id": "ord_live", "booking_reference": "RZPNX8"}})

    client = live_client(handler)
    order = await client.create_flight_order("off_1", [], "812.40", "USD", idempotency_key="res_1:v4:flight")

    assert seen[0].headers["Idempotency-Key"] == "res_1:v4:flight"
    assert json.loads(seen[0].content)["data"]["payments"][0]["amount"] == "812.40"
    assert order == {"id": "ord_live", "booking_reference": "RZPNX8", "total_amount": "812.40", "total_currency": "USD"}


async def test_change_confirm_pays_the_difference():
    seen = []

    def handler(request):
        seen.append(request)
        if request.url.path == "/air/order_changes":
            return httpx.Response(201, json={"data": {"id": "oce_1"}})
        return httpx.Response(200, json={"data": {"id": "oce_1", "booking_reference": "NEWREF"}})

    client = live_client(handler)
    result = await client.confirm_change("oco_1", "80.00", "USD")

    assert [r.url.path for r in seen] == ["/air/order_changes", "/air/order_changes/oce_1/actions/confirm"]
    assert json.loads(seen[1].content)["data"]["payment"]["amount"] == "80.00"
    assert result["booking_reference"] == "NEWREF"
    assert result["new_total_currency"] == "USD"


async def test_mock_mode_is_deterministic():
    client = DuffelClient(access_token="")
    assert client.is_mock

    first = await client.search_flights("JFK", "LHR", date(2026, 6, 1))
    second = await client.search_flights("JFK", "LHR", date(2026, 6, 1))

    assert [o["id"] for o in first] == [o["id"] for o in second]
    assert [o["total_amount"] for o in first] == [o["total_amount"] for o in second]
    assert [float(o["total_amount"]) for o in first] == sorted(float(o["total_amount"]) for o in first)


async def test_mock_orders_replay_by_idempotency_key():
    client = DuffelClient(access_token="")

    first = await client.create_flight_order("off_1", [], "812.40", "USD", idempotency_key="res_1:v4:flight")
    again = await client.create_flight_order("off_1", [], "812.40", "USD", idempotency_key="res_1:v4:flight")
    other = await client.create_flight_order("off_1", [], "812.40", "USD", idempotency_key="res_1:v6:flight")

    assert first == again
    assert other["id"] != first["id"]

    refund = await client.create_cancellation(first["id"])
    assert refund["refund_amount"] == "406.20"
