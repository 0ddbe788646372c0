import asyncio
import logging
from datetime import date, timedelta

import pytest

from app.services.booking.commit import CommitCoordinator
from app.services.booking.coordinator import ReservationCoordinator
from app.services.booking.errors import (
    InvalidCriteriaError,
    InvalidTransitionError,
    NotFoundError,
    ProviderRejectedError,
    StaleQuoteError,
    VersionConflictError,
)
from app.services.booking.types import Contact, Passenger, ReservationState

from conftest import jane, jfk_lhr, make_quote, two_passengers

pytestmark = pytest.mark.anyio

R = ReservationState


async def priced(coordinator, offers, clock, quotes=None, criteria=None):
    offers.search_result = quotes if quotes is not None else [make_quote(clock, amount="900.00")]
    reservation = coordinator.create(criteria or jfk_lhr())
    coordinator.start_pricing(reservation.id, expected_version=reservation.version)
    return await coordinator.wait_idle(reservation.id)


async def reviewing(coordinator, offers, clock, quotes=None):
    reservation = await priced(coordinator, offers, clock, quotes)
    return coordinator.submit_details(
        reservation.id, jane(), two_passengers(), expected_version=reservation.version
    )


async def test_priced_quote_goes_stale_after_expiry(coordinator, offers, clock):
    reservation = await priced(coordinator, offers, clock)
    assert reservation.state == R.PRICED
    assert reservation.selected["flight"].total_amount == 900
    assert reservation.selected["flight"].expires_at == clock() + timedelta(minutes=15)

    reservation = coordinator.submit_details(
        reservation.id, jane(), two_passengers(), expected_version=reservation.version
    )
    assert reservation.state == R.REVIEWING

    clock.advance(minutes=16)
    with pytest.raises(StaleQuoteError) as exc:
        coordinator.confirm(reservation.id, expected_version=reservation.version)

    assert exc.value.kind == "stale-quote"
    assert reservation.state == R.REVIEWING
    assert reservation.failure.kind == "stale-quote"
    assert "Refresh" in reservation.failure.action
    assert offers.book_calls == []


async def test_empty_search_fails_pricing_and_keeps_criteria(coordinator, offers, clock):
    criteria = jfk_lhr()
    reservation = await priced(coordinator, offers, clock, quotes=[], criteria=criteria)

    assert reservation.state == R.PRICING_FAILED
    assert reservation.failure.kind == "no-offers"
    assert "dates" in reservation.failure.action
    assert reservation.criteria == criteria
    assert reservation.offers == []


async def test_retry_after_provider_failure_keeps_contact(coordinator, offers, clock):
    reservation = await reviewing(coordinator, offers, clock)
    contact = reservation.contact

    offers.search_result = ProviderRejectedError("upstream 503")
    coordinator.start_pricing(reservation.id, expected_version=reservation.version)
    reservation = await coordinator.wait_idle(reservation.id)
    assert reservation.state == R.PRICING_FAILED
    assert reservation.failure.kind == "provider-rejected"
    assert reservation.contact is contact

    offers.search_result = [make_quote(clock, amount="875.00")]
    coordinator.start_pricing(reservation.id, expected_version=reservation.version)
    reservation = await coordinator.wait_idle(reservation.id)

    # Details were already on file, so the reservation lands straight in review
    assert reservation.state == R.REVIEWING
    assert reservation.contact is contact
    assert reservation.failure is None
    assert [step.to_state for step in reservation.history][-4:] == ["draft", "pricing", "priced", "reviewing"]


async def test_no_offers_retry_with_corrected_criteria_keeps_details(coordinator, offers, clock, quote_store):
    reservation = await reviewing(coordinator, offers, clock)
    contact, passengers = reservation.contact, reservation.passengers
    coordinator.select_quote(reservation.id, reservation.selected["flight"].id)
    old_quote = reservation.selected["flight"]

    offers.search_result = []
    coordinator.start_pricing(reservation.id, criteria=jfk_lhr(destination="XXX"))
    reservation = await coordinator.wait_idle(reservation.id)
    assert reservation.state == R.PRICING_FAILED
    assert reservation.failure.kind == "no-offers"
    assert reservation.pinned == {}
    assert not quote_store.is_valid(old_quote, clock())

    corrected = jfk_lhr(destination="CDG")
    offers.search_result = [
        make_quote(clock, amount="910.00", provider_ref=old_quote.provider_ref),
        make_quote(clock, amount="640.00"),
    ]
    coordinator.start_pricing(reservation.id, criteria=corrected)
    reservation = await coordinator.wait_idle(reservation.id)

    assert "priced" in [step.to_state for step in reservation.history][-3:]
    assert reservation.state == R.REVIEWING
    assert reservation.criteria == corrected
    assert reservation.contact is contact
    assert reservation.passengers == passengers
    assert reservation.failure is None
    # The old pick was for different criteria, so the cheapest offer wins
    assert reservation.selected["flight"].total_amount == 640


async def test_double_confirm_produces_one_order(coordinator, offers, repository, clock):
    reservation = await reviewing(coordinator, offers, clock)
    version = reservation.version

    coordinator.confirm(reservation.id, expected_version=version)
    with pytest.raises(VersionConflictError):
        coordinator.confirm(reservation.id, expected_version=version)
    with pytest.raises(InvalidTransitionError):
        coordinator.confirm(reservation.id)

    reservation = await coordinator.wait_idle(reservation.id)
    assert reservation.state == R.CONFIRMED
    assert len(repository.orders) == 1
    order = next(iter(repository.orders.values()))
    assert reservation.order_id == order.id
    assert order.idempotency_key == f"{reservation.id}:v{version + 1}"
    assert order.total_amount == 900

    with pytest.raises(InvalidTransitionError):
        coordinator.confirm(reservation.id)
    assert len(offers.book_calls) == 1


async def test_invalid_criteria_rejected_before_search(coordinator, offers):
    reservation = coordinator.create(jfk_lhr(origin="", destination="", start_date=None))

    with pytest.raises(InvalidCriteriaError) as exc:
        coordinator.start_pricing(reservation.id, expected_version=0)

    assert "destination is required" in exc.value.problems
    assert "start_date is required" in exc.value.problems
    assert "origin is required for flights" in exc.value.problems
    assert reservation.state == R.DRAFT
    assert reservation.version == 0
    assert offers.search_calls == []


async def test_stale_version_rejected_before_search(coordinator, offers):
    reservation = coordinator.create(jfk_lhr())

    with pytest.raises(VersionConflictError) as exc:
        coordinator.start_pricing(reservation.id, expected_version=3)

    assert exc.value.actual == 0
    assert offers.search_calls == []


async def test_commands_refused_while_pricing(coordinator, offers, clock):
    offers.search_gate = asyncio.Event()
    offers.search_result = [make_quote(clock)]
    reservation = coordinator.create(jfk_lhr())
    coordinator.start_pricing(reservation.id)
    assert reservation.state == R.PRICING

    with pytest.raises(InvalidTransitionError):
        coordinator.update_criteria(reservation.id, jfk_lhr(destination="CDG"))
    with pytest.raises(InvalidTransitionError):
        coordinator.abandon(reservation.id)

    offers.search_gate.set()
    reservation = await coordinator.wait_idle(reservation.id)
    assert reservation.state == R.PRICED


async def test_cheapest_quote_selected_and_explicit_pick_survives_reprice(coordinator, offers, clock):
    pricey = make_quote(clock, amount="1000.00", provider_ref="off_ba")
    cheap = make_quote(clock, amount="800.00", provider_ref="off_vs")
    reservation = await priced(coordinator, offers, clock, quotes=[pricey, cheap])
    assert reservation.selected["flight"].provider_ref == "off_vs"

    coordinator.select_quote(reservation.id, pricey.id, expected_version=reservation.version)
    assert reservation.selected["flight"].id == pricey.id

    offers.search_result = [
        make_quote(clock, amount="1010.00", provider_ref="off_ba"),
        make_quote(clock, amount="790.00", provider_ref="off_vs"),
    ]
    coordinator.start_pricing(reservation.id, expected_version=reservation.version)
    reservation = await coordinator.wait_idle(reservation.id)

    assert reservation.selected["flight"].provider_ref == "off_ba"
    assert reservation.selected["flight"].total_amount == 1010


async def test_select_unknown_quote(coordinator, offers, clock):
    reservation = await priced(coordinator, offers, clock)
    with pytest.raises(NotFoundError):
        coordinator.select_quote(reservation.id, "quo_missing")


async def test_bundle_missing_flight_leg_is_no_offers(coordinator, offers, clock):
    criteria = jfk_lhr(trip_type="bundle", end_date=date(2026, 6, 8))
    reservation = await priced(
        coordinator, offers, clock, quotes=[make_quote(clock, kind="hotel", amount="640.00")], criteria=criteria
    )

    assert reservation.state == R.PRICING_FAILED
    assert reservation.failure.kind == "no-offers"
    assert "flight" in reservation.failure.message


async def test_bundle_prices_both_legs(coordinator, offers, clock):
    criteria = jfk_lhr(trip_type="bundle", end_date=date(2026, 6, 8))
    reservation = await priced(
        coordinator,
        offers,
        clock,
        quotes=[make_quote(clock, amount="900.00"), make_quote(clock, kind="hotel", amount="640.00")],
        criteria=criteria,
    )

    assert reservation.state == R.PRICED
    assert set(reservation.selected) == {"flight", "hotel"}
    assert reservation.selected_total() == 1540


async def test_commit_failure_returns_to_reviewing_and_discards_quotes(coordinator, offers, repository, clock):
    reservation = await reviewing(coordinator, offers, clock)
    offers.book_errors["flight"] = ProviderRejectedError("card declined by airline")

    coordinator.confirm(reservation.id, expected_version=reservation.version)
    reservation = await coordinator.wait_idle(reservation.id)

    assert reservation.state == R.REVIEWING
    assert reservation.failure.kind == "provider-rejected"
    assert reservation.selected == {}
    assert "commit_failed" in [step.to_state for step in reservation.history]
    assert repository.orders == {}
    assert reservation.contact is not None

    with pytest.raises(StaleQuoteError):
        coordinator.confirm(reservation.id, expected_version=reservation.version)


async def test_audit_intent_failure_does_not_block_pricing(coordinator, offers, repository, clock, caplog):
    repository.intent_error = RuntimeError("database is down")

    with caplog.at_level(logging.WARNING):
        reservation = await priced(coordinator, offers, clock)
        await coordinator.drain()

    assert reservation.state == R.PRICED
    assert reservation.intent_id is None
    assert any("Booking intent" in r.message and "database is down" in r.message for r in caplog.records)


async def test_audit_intent_follows_the_criteria_that_were_priced(coordinator, offers, repository, clock):
    reservation = await priced(coordinator, offers, clock, quotes=[], criteria=jfk_lhr(destination="XXX"))
    assert reservation.state == R.PRICING_FAILED

    offers.search_result = [make_quote(clock, amount="900.00")]
    coordinator.start_pricing(reservation.id, criteria=jfk_lhr())
    await coordinator.wait_idle(reservation.id)
    # Same criteria again: no new audit row
    coordinator.start_pricing(reservation.id)
    await coordinator.wait_idle(reservation.id)
    await coordinator.drain()

    assert [(i, row["criteria"].destination) for i, row in repository.intents.items()] == [
        ("int_1", "XXX"),
        ("int_2", "LHR"),
    ]
    assert reservation.intent_id == "int_2"

    coordinator.submit_details(reservation.id, jane(), two_passengers())
    coordinator.confirm(reservation.id)
    await coordinator.wait_idle(reservation.id)

    assert reservation.state == R.CONFIRMED
    assert repository.orders[reservation.order_id].intent_id == "int_2"


async def test_listeners_see_progress_messages(offers, repository, quote_store, clock):
    committer = CommitCoordinator(
        offers,
        repository,
        quote_store,
        clock=clock,
        min_display_seconds=0.05,
        progress_interval_seconds=0.01,
        progress_messages=["Securing Flights...", "Finalizing Itinerary..."],
    )
    coordinator = ReservationCoordinator(offers, repository, quote_store, committer, clock=clock)
    reservation = await reviewing(coordinator, offers, clock)

    events = []
    unsubscribe = coordinator.subscribe(events.append)
    coordinator.confirm(reservation.id)
    await coordinator.wait_idle(reservation.id)
    unsubscribe()

    assert events[0].state == "committing"
    assert events[-1].state == "confirmed"
    messages = [e.progress_message for e in events if e.progress_message]
    assert messages[:2] == ["Securing Flights...", "Finalizing Itinerary..."]
    assert reservation.progress_message is None


async def test_submit_details_requires_reachable_contact(coordinator, offers, clock):
    reservation = await priced(coordinator, offers, clock)

    with pytest.raises(InvalidCriteriaError) as exc:
        coordinator.submit_details(reservation.id, Contact(first_name="Jane", last_name="Doe"))
    assert "an email address or phone number is required" in exc.value.problems

    with pytest.raises(InvalidCriteriaError) as exc:
        coordinator.submit_details(reservation.id, jane(), [Passenger(given_name="Jane", family_name="Doe")])
    assert "2 travelers were searched for but 1 were given" in exc.value.problems
    assert reservation.state == R.PRICED


async def test_update_criteria_discards_quotes_keeps_details(coordinator, offers, clock, quote_store):
    reservation = await reviewing(coordinator, offers, clock)

    coordinator.update_criteria(reservation.id, jfk_lhr(destination="CDG"), expected_version=reservation.version)

    assert reservation.state == R.DRAFT
    assert reservation.offers == []
    assert reservation.selected == {}
    assert reservation.contact == jane()
    assert len(quote_store) == 0


async def test_abandon_archives_reservation(coordinator, offers, clock, quote_store):
    reservation = await priced(coordinator, offers, clock)

    coordinator.abandon(reservation.id, expected_version=reservation.version)

    assert reservation.state == R.ABANDONED
    assert len(quote_store) == 0
    with pytest.raises(InvalidTransitionError):
        coordinator.start_pricing(reservation.id)


async def test_sweep_abandons_idle_reservations(coordinator, offers, clock):
    idle = await priced(coordinator, offers, clock)
    clock.advance(hours=2)
    fresh = coordinator.create(jfk_lhr())

    abandoned = coordinator.sweep_idle(clock() - timedelta(hours=1))

    assert abandoned == 1
    assert idle.state == R.ABANDONED
    assert fresh.state == R.DRAFT

    clock.advance(hours=2)
    assert coordinator.sweep_finished(clock() - timedelta(hours=1)) == 1
    with pytest.raises(NotFoundError):
        coordinator.get(idle.id)
