"""Commit coordinator: turns a reviewed reservation into exactly one order.

The provider call and the progress ticker run side by side. A successful
commit resolves only when both are done, so the confirmation never flashes
past faster than the progress messages; a failure resolves at once.
"""

import asyncio
import contextlib
import logging
from collections.abc import Callable
from decimal import Decimal

from app.config import settings
from app.services.booking.errors import BookingError, ProviderRejectedError, StaleQuoteError
from app.services.booking.quote_store import QuoteStore, quote_key
from app.services.booking.types import (
    Clock,
    Contact,
    Order,
    OrderLeg,
    Passenger,
    Quote,
    Reservation,
    SearchCriteria,
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]


class CommitCoordinator:
    def __init__(
        self,
        offers,
        repository,
        quote_store: QuoteStore,
        clock: Clock = utcnow,
        min_display_seconds: float | None = None,
        progress_interval_seconds: float | None = None,
        progress_messages: list[str] | None = None,
        timeout_seconds: float | None = None,
    ):
        self._offers = offers
        self._repository = repository
        self._quotes = quote_store
        self._clock = clock
        self._min_display = (
            settings.commit_min_display_seconds if min_display_seconds is None else min_display_seconds
        )
        self._interval = (
            settings.commit_progress_interval_seconds
            if progress_interval_seconds is None
            else progress_interval_seconds
        )
        self._messages = list(settings.commit_progress_messages if progress_messages is None else progress_messages)
        self._timeout = settings.provider_timeout_seconds if timeout_seconds is None else timeout_seconds

    @staticmethod
    def idempotency_key(reservation_id: str, version: int) -> str:
        return f"{reservation_id}:v{version}"

    def check_quotes(self, reservation: Reservation) -> list[Quote]:
        """Return the selected quotes, or raise StaleQuoteError if any is unusable now."""
        now = self._clock()
        quotes = []
        for leg in reservation.criteria.legs:
            quote = reservation.selected.get(leg)
            current = self._quotes.get(quote_key(reservation.id, reservation.criteria.fingerprint, leg))
            if quote is None or current is None or current.id != quote.id or not self._quotes.is_valid(quote, now):
                raise StaleQuoteError(f"The {leg} price is no longer valid.")
            quotes.append(quote)
        return quotes

    async def commit(self, reservation: Reservation, on_progress: ProgressCallback | None = None) -> Order:
        """Commit the reservation's selected quotes. Call while it is in Committing."""
        key = self.idempotency_key(reservation.id, reservation.version)
        quotes = self.check_quotes(reservation)

        ticker = asyncio.create_task(self._tick(on_progress))
        try:
            order = await self.commit_order(
                reservation_id=reservation.id,
                version=reservation.version,
                quotes=quotes,
                contact=reservation.contact,
                passengers=reservation.passengers,
                idempotency_key=key,
                criteria=reservation.criteria,
                intent_id=reservation.intent_id,
            )
        except BaseException:
            ticker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await ticker
            raise
        await ticker
        return order

    async def _tick(self, on_progress: ProgressCallback | None) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._min_display
        step = 0
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            if on_progress and self._messages:
                on_progress(self._messages[step % len(self._messages)])
            step += 1
            await asyncio.sleep(min(self._interval, remaining))

    async def commit_order(
        self,
        reservation_id: str,
        version: int,
        quotes: list[Quote],
        contact: Contact,
        passengers: list[Passenger],
        idempotency_key: str,
        criteria: SearchCriteria | None = None,
        intent_id: str | None = None,
    ) -> Order:
        """Book every leg in order and store the order. Safe to repeat with the same key."""
        existing = await self._repository.get_order_by_key(idempotency_key)
        if existing is not None:
            logger.info(f"Commit {idempotency_key} already produced order {existing.id}")
            return existing

        currencies = {q.currency for q in quotes}
        if len(currencies) > 1:
            raise ProviderRejectedError(
                f"Selected offers are priced in different currencies ({', '.join(sorted(currencies))})",
                action="Refresh the price and pick offers quoted in the same currency.",
            )

        booked: list[OrderLeg] = []
        for quote in quotes:
            try:
                leg = await asyncio.wait_for(
                    self._offers.book_leg(quote, contact, passengers, idempotency_key),
                    timeout=self._timeout,
                )
            except asyncio.TimeoutError as e:
                logger.error(
                    f"Commit {idempotency_key}: {quote.kind} leg timed out after {self._timeout}s, "
                    f"provider outcome unknown for offer {quote.provider_ref}"
                )
                await self._compensate(booked, idempotency_key)
                raise ProviderRejectedError(f"The {quote.kind} booking did not complete in time.", cause=e) from e
            except BookingError:
                await self._compensate(booked, idempotency_key)
                raise
            booked.append(leg)

        order = Order(
            id=new_id("ord"),
            reservation_id=reservation_id,
            booking_type=criteria.trip_type if criteria else quotes[0].kind,
            legs=booked,
            total_amount=sum((q.total_amount for q in quotes), Decimal("0")),
            currency=quotes[0].currency,
            confirmation_reference=next((leg.booking_reference for leg in booked if leg.booking_reference), "")
            or new_id("ref")[-8:].upper(),
            idempotency_key=idempotency_key,
            contact=contact,
            passengers=list(passengers),
            criteria=criteria,
            intent_id=intent_id,
            created_at=self._clock(),
            updated_at=self._clock(),
        )

        try:
            stored = await self._repository.save_order(order)
        except Exception as e:
            logger.error(f"Commit {idempotency_key}: storing order failed, releasing booked legs: {e}")
            await self._compensate(booked, idempotency_key)
            raise ProviderRejectedError("The booking could not be recorded.", cause=e) from e

        logger.info(f"Commit {idempotency_key} -> order {stored.id} (v{version})")
        return stored

    async def _compensate(self, booked: list[OrderLeg], idempotency_key: str) -> None:
        for leg in reversed(booked):
            try:
                await asyncio.wait_for(self._offers.release_leg(leg), timeout=self._timeout)
            except (BookingError, asyncio.TimeoutError) as e:
                logger.error(
                    f"Commit {idempotency_key}: could not release {leg.kind} leg "
                    f"{leg.provider_order_id} ({leg.booking_reference}); manual follow-up needed: {e}"
                )
