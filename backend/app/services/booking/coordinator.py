"""Reservation coordinator: drives a booking from draft criteria to a confirmed order.

Commands validate and transition synchronously, then hand the external round
trip (pricing or commit) to a task owned by the reservation. While that task
runs the reservation is suspended and further commands are refused.
"""

import logging
from datetime import datetime
from decimal import Decimal

from app.config import settings
from app.services.booking.commit import CommitCoordinator
from app.services.booking.errors import (
    BookingError,
    InvalidCriteriaError,
    InvalidTransitionError,
    NoOffersError,
    NotFoundError,
    ProviderRejectedError,
    StaleQuoteError,
)
from app.services.booking.events import WorkflowHost
from app.services.booking.quote_store import QuoteStore, quote_key
from app.services.booking.state_machine import (
    RESERVATION_TRANSITIONS,
    advance,
    check_version,
    ensure_idle,
    is_suspended,
    is_terminal,
    touch,
)
from app.services.booking.types import (
    Clock,
    Contact,
    Failure,
    Passenger,
    Quote,
    Reservation,
    ReservationState,
    SearchCriteria,
    utcnow,
)

logger = logging.getLogger(__name__)

R = ReservationState
EDITABLE_STATES = (R.DRAFT, R.PRICING_FAILED, R.PRICED, R.REVIEWING)


class ReservationCoordinator(WorkflowHost):
    kind = "reservation"
    label = "Reservation"

    def __init__(
        self,
        offers,
        repository,
        quote_store: QuoteStore,
        committer: CommitCoordinator,
        clock: Clock = utcnow,
    ):
        super().__init__(clock)
        self._offers = offers
        self._repository = repository
        self._quotes = quote_store
        self._committer = committer

    def _advance(self, reservation: Reservation, target: ReservationState) -> None:
        advance(reservation, target, RESERVATION_TRANSITIONS, self._clock())

    def _require(self, reservation: Reservation, *states: ReservationState) -> None:
        if reservation.state not in states:
            raise InvalidTransitionError(
                f"Reservation {reservation.id} is {reservation.state.value}; "
                f"this step needs {' or '.join(s.value for s in states)}",
                current_state=reservation.state.value,
            )

    def _prepare(self, reservation_id: str, expected_version: int | None) -> Reservation:
        reservation = self.get(reservation_id)
        check_version(reservation, expected_version)
        ensure_idle(reservation)
        return reservation

    def _clear_quotes(self, reservation: Reservation) -> None:
        for leg in reservation.criteria.legs:
            self._quotes.discard(quote_key(reservation.id, reservation.criteria.fingerprint, leg))
        reservation.offers = []
        reservation.selected = {}

    # --- Commands ---

    def create(self, criteria: SearchCriteria, estimated_price: Decimal | None = None) -> Reservation:
        """Open a new reservation in Draft. Criteria may still be incomplete."""
        now = self._clock()
        reservation = Reservation(criteria=criteria, estimated_price=estimated_price, created_at=now, updated_at=now)
        self._add(reservation)
        logger.info(f"Reservation {reservation.id} created ({criteria.trip_type} to {criteria.destination})")
        self._publish(reservation)
        return reservation

    def get(self, reservation_id: str) -> Reservation:
        return self._lookup(reservation_id)

    def update_criteria(
        self,
        reservation_id: str,
        criteria: SearchCriteria,
        expected_version: int | None = None,
    ) -> Reservation:
        """Edit the trip. Any quotes are thrown away; traveler details are kept."""
        reservation = self._prepare(reservation_id, expected_version)
        self._require(reservation, *EDITABLE_STATES)
        self._clear_quotes(reservation)
        reservation.pinned = {}
        reservation.criteria = criteria
        reservation.failure = None
        if reservation.state == R.DRAFT:
            touch(reservation, self._clock())
        else:
            self._advance(reservation, R.DRAFT)
        self._publish(reservation)
        return reservation

    def start_pricing(
        self,
        reservation_id: str,
        expected_version: int | None = None,
        criteria: SearchCriteria | None = None,
    ) -> Reservation:
        """Validate the criteria and send them out for pricing.

        From PricingFailed the reservation passes through Draft; from Priced or
        Reviewing this is a re-price that replaces the current quotes.
        """
        reservation = self._prepare(reservation_id, expected_version)
        self._require(reservation, *EDITABLE_STATES)

        candidate = criteria or reservation.criteria
        candidate.validate(today=self._clock().date())

        if reservation.state == R.PRICING_FAILED:
            self._advance(reservation, R.DRAFT)
        if candidate.fingerprint != reservation.criteria.fingerprint:
            self._clear_quotes(reservation)
            reservation.pinned = {}
        reservation.criteria = candidate
        reservation.failure = None
        self._advance(reservation, R.PRICING)
        self._publish(reservation)

        if reservation.intent_fingerprint != candidate.fingerprint:
            reservation.intent_fingerprint = candidate.fingerprint
            self._detach(self._record_intent(reservation, candidate), f"Booking intent for {reservation.id}")
        self._spawn(reservation, self._run_pricing(reservation))
        return reservation

    def select_quote(
        self,
        reservation_id: str,
        quote_id: str,
        expected_version: int | None = None,
    ) -> Reservation:
        """Pick a specific offer instead of the cheapest one for its leg."""
        reservation = self._prepare(reservation_id, expected_version)
        self._require(reservation, R.PRICED, R.REVIEWING)
        quote = next((q for q in reservation.offers if q.id == quote_id), None)
        if quote is None:
            raise NotFoundError(f"Offer {quote_id} is not part of reservation {reservation.id}")

        self._quotes.put(quote_key(reservation.id, reservation.criteria.fingerprint, quote.kind), quote)
        reservation.selected[quote.kind] = quote
        reservation.pinned[quote.kind] = quote.provider_ref
        touch(reservation, self._clock())
        self._publish(reservation)
        return reservation

    def submit_details(
        self,
        reservation_id: str,
        contact: Contact,
        passengers: list[Passenger] | None = None,
        expected_version: int | None = None,
    ) -> Reservation:
        """Attach contact and traveler details; Priced moves on to Reviewing."""
        reservation = self._prepare(reservation_id, expected_version)
        self._require(reservation, R.PRICED, R.REVIEWING)

        passengers = list(passengers or [])
        problems = self._detail_problems(reservation, contact, passengers)
        if problems:
            raise InvalidCriteriaError(
                "Traveler details are incomplete: " + "; ".join(problems),
                action="Complete the contact and traveler fields, then continue.",
                problems=problems,
            )

        reservation.contact = contact
        reservation.passengers = passengers
        if reservation.state == R.PRICED:
            self._advance(reservation, R.REVIEWING)
        else:
            touch(reservation, self._clock())
        self._publish(reservation)
        return reservation

    @staticmethod
    def _detail_problems(reservation: Reservation, contact: Contact, passengers: list[Passenger]) -> list[str]:
        problems = contact.problems()
        for passenger in passengers:
            problems.extend(p for p in passenger.problems() if p not in problems)
        expected = reservation.criteria.traveler_count
        if passengers and len(passengers) != expected:
            problems.append(f"{expected} travelers were searched for but {len(passengers)} were given")
        return problems

    def confirm(self, reservation_id: str, expected_version: int | None = None) -> Reservation:
        """Commit the selected quotes. Refused with stale-quote if any has lapsed."""
        reservation = self._prepare(reservation_id, expected_version)
        self._require(reservation, R.REVIEWING)
        try:
            self._committer.check_quotes(reservation)
        except StaleQuoteError as e:
            reservation.failure = Failure.from_error(e)
            logger.info(f"Reservation {reservation.id}: confirm refused, quote stale")
            self._publish(reservation)
            raise

        reservation.failure = None
        self._advance(reservation, R.COMMITTING)
        self._publish(reservation)
        self._spawn(reservation, self._run_commit(reservation))
        return reservation

    def abandon(self, reservation_id: str, expected_version: int | None = None) -> Reservation:
        reservation = self._prepare(reservation_id, expected_version)
        self._abandon(reservation)
        return reservation

    def _abandon(self, reservation: Reservation) -> None:
        self._advance(reservation, R.ABANDONED)
        self._clear_quotes(reservation)
        self._quotes.purge_owner(reservation.id)
        self._publish(reservation)

    def forget(self, reservation_id: str) -> None:
        self._quotes.purge_owner(reservation_id)
        super().forget(reservation_id)

    def sweep_idle(self, idle_before: datetime) -> int:
        """Abandon editable reservations nobody has touched since ``idle_before``."""
        abandoned = 0
        for reservation in self.all():
            if is_suspended(reservation) or is_terminal(reservation):
                continue
            if reservation.updated_at < idle_before:
                logger.info(f"Reservation {reservation.id} idle since {reservation.updated_at}, abandoning")
                self._abandon(reservation)
                abandoned += 1
        return abandoned

    # --- Background round trips ---

    async def _record_intent(self, reservation: Reservation, criteria: SearchCriteria) -> None:
        """Write the audit row for this set of criteria and point the reservation at it."""
        intent_id = await self._repository.persist_intent(
            reservation.id,
            criteria,
            estimated_price=reservation.estimated_price,
            currency=settings.default_currency,
        )
        # A later write for newer criteria owns the link
        if reservation.intent_fingerprint == criteria.fingerprint:
            reservation.intent_id = intent_id

    async def _run_pricing(self, reservation: Reservation) -> None:
        criteria = reservation.criteria
        try:
            quotes = await self._offers.search_offers(criteria)
        except BookingError as e:
            self._pricing_failed(reservation, e)
            return
        except Exception as e:
            logger.exception(f"Reservation {reservation.id}: unexpected pricing error")
            self._pricing_failed(reservation, ProviderRejectedError("The offer search failed.", cause=e))
            return

        by_leg: dict[str, list[Quote]] = {}
        for quote in quotes:
            by_leg.setdefault(quote.kind, []).append(quote)
        missing = tuple(leg for leg in criteria.legs if not by_leg.get(leg))
        if missing:
            self._pricing_failed(
                reservation,
                NoOffersError(f"No {' or '.join(missing)} offers match this trip.", missing_legs=missing),
            )
            return

        selected = {}
        for leg in criteria.legs:
            leg_quotes = sorted(by_leg[leg], key=lambda q: q.total_amount)
            pinned = reservation.pinned.get(leg)
            choice = next((q for q in leg_quotes if pinned and q.provider_ref == pinned), None)
            if choice is None:
                reservation.pinned.pop(leg, None)
                choice = leg_quotes[0]
            self._quotes.put(quote_key(reservation.id, criteria.fingerprint, leg), choice)
            selected[leg] = choice

        reservation.offers = sorted(quotes, key=lambda q: (q.kind, q.total_amount))
        reservation.selected = selected
        self._advance(reservation, R.PRICED)
        logger.info(
            f"Reservation {reservation.id} priced at {reservation.selected_total()} "
            f"from {len(quotes)} offers"
        )
        if reservation.contact is not None and not self._detail_problems(
            reservation, reservation.contact, reservation.passengers
        ):
            self._advance(reservation, R.REVIEWING)
        self._publish(reservation)

    def _pricing_failed(self, reservation: Reservation, error: BookingError) -> None:
        self._clear_quotes(reservation)
        reservation.failure = Failure.from_error(error)
        self._advance(reservation, R.PRICING_FAILED)
        logger.warning(f"Reservation {reservation.id} pricing failed: {error.kind} ({error})")
        self._publish(reservation)

    async def _run_commit(self, reservation: Reservation) -> None:
        def on_progress(message: str) -> None:
            reservation.progress_message = message
            self._publish(reservation, message)

        try:
            order = await self._committer.commit(reservation, on_progress)
        except BookingError as e:
            self._commit_failed(reservation, e)
            return
        except Exception as e:
            logger.exception(f"Reservation {reservation.id}: unexpected commit error")
            self._commit_failed(reservation, ProviderRejectedError("The booking failed.", cause=e))
            return

        reservation.order_id = order.id
        reservation.progress_message = None
        self._advance(reservation, R.CONFIRMED)
        self._quotes.purge_owner(reservation.id)
        logger.info(f"Reservation {reservation.id} confirmed as order {order.id} ({order.confirmation_reference})")
        self._publish(reservation)

    def _commit_failed(self, reservation: Reservation, error: BookingError) -> None:
        reservation.progress_message = None
        reservation.failure = Failure.from_error(error)
        self._advance(reservation, R.COMMIT_FAILED)
        logger.warning(f"Reservation {reservation.id} commit failed: {error.kind} ({error})")
        self._publish(reservation)
        # The quotes that failed are never retried; a fresh pricing pass is required
        self._clear_quotes(reservation)
        self._advance(reservation, R.REVIEWING)
        self._publish(reservation)
