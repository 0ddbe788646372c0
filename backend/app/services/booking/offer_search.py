"""Offer search client: normalizes Duffel payloads into Quotes and domain errors.

Every provider round trip is bounded by ``provider_timeout_seconds``. The raw
adapter's ProviderError (and timeouts) become ProviderRejectedError for
searches, bookings and confirmations, and QuoteUnavailableError for change and
refund pricing.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from app.config import settings
from app.services.booking.errors import BookingError, ProviderRejectedError, QuoteUnavailableError
from app.services.booking.types import (
    Clock,
    Contact,
    Order,
    OrderLeg,
    Passenger,
    Quote,
    SearchCriteria,
    new_id,
    utcnow,
)
from app.services.duffel_client import DuffelClient, ProviderError, duffel_client

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass(frozen=True)
class ChangeResult:
    """What the provider reports after a fare change is paid."""

    booking_reference: str
    new_total_amount: Decimal
    currency: str
    provider_change_id: str = ""


def _money(value) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise ProviderError(f"Invalid amount from provider: {value!r}") from e


def _instant(value: str | None, fallback: datetime) -> datetime:
    if not value:
        return fallback
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable provider expiry {value!r}, using default TTL")
        return fallback
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class OfferSearchClient:
    """Bridge between the reservation workflows and the Duffel adapter."""

    def __init__(
        self,
        provider: DuffelClient | None = None,
        clock: Clock = utcnow,
        timeout_seconds: float | None = None,
    ):
        self._provider = provider or duffel_client
        self._clock = clock
        self._timeout = timeout_seconds if timeout_seconds is not None else settings.provider_timeout_seconds

    async def _call(self, awaitable, error_cls: type[BookingError], what: str):
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"Provider timed out during {what} after {self._timeout}s")
            raise error_cls(f"The provider did not answer in time while {what}.", cause=e) from e
        except ProviderError as e:
            logger.warning(f"Provider error during {what}: {e}")
            raise error_cls(f"The provider rejected the request while {what}.", cause=e) from e

    def _default_expiry(self) -> datetime:
        return self._clock() + timedelta(minutes=settings.default_quote_ttl_minutes)

    # --- Search ---

    async def search_offers(self, criteria: SearchCriteria) -> list[Quote]:
        """Price every leg the criteria ask for. Legs are searched concurrently."""
        searches = []
        if "flight" in criteria.legs:
            searches.append(self._search_flights(criteria))
        if "hotel" in criteria.legs:
            searches.append(self._search_stays(criteria))
        results = await asyncio.gather(*searches)
        quotes = [quote for leg_quotes in results for quote in leg_quotes]
        logger.info(f"Offer search for {criteria.fingerprint[:8]}: {len(quotes)} quotes")
        return quotes

    async def _search_flights(self, criteria: SearchCriteria) -> list[Quote]:
        norm = criteria.normalized()
        passenger_types = (
            ["adult"] * criteria.adults
            + ["child"] * criteria.children
            + ["infant_without_seat"] * criteria.infants
        )
        raw = await self._call(
            self._provider.search_flights(
                origin=norm["origin"],
                destination=norm["destination"],
                departure_date=criteria.start_date,
                return_date=criteria.end_date,
                passenger_types=passenger_types,
                cabin_class=norm["cabin_class"],
            ),
            ProviderRejectedError,
            "searching flights",
        )
        try:
            return [self._flight_quote(offer, criteria.fingerprint) for offer in raw]
        except (KeyError, TypeError, ProviderError) as e:
            raise ProviderRejectedError("The flight search returned unreadable offers.", cause=e) from e

    def _flight_quote(self, offer: dict, fingerprint: str) -> Quote:
        provider_total = _money(offer["total_amount"])
        markup = (provider_total * Decimal(str(settings.markup_flight_percent)) / 100).quantize(CENT, ROUND_HALF_UP)
        components = {"markup": markup}
        for name, key in (("base", "base_amount"), ("tax", "tax_amount")):
            amount = _money(offer.get(key))
            if amount is not None:
                components[name] = amount
        slices = offer.get("slices") or []
        route = " / ".join(f"{s['origin']}-{s['destination']}" for s in slices)
        return Quote(
            id=new_id("quo"),
            kind="flight",
            total_amount=provider_total + markup,
            currency=offer["total_currency"],
            expires_at=_instant(offer.get("expires_at"), self._default_expiry()),
            fingerprint=fingerprint,
            provider_ref=offer["id"],
            description=f"{offer.get('owner_name') or 'Flight'} {route}".strip(),
            components=components,
            segments=tuple(dict(s) for s in slices),
            conditions=offer.get("conditions") or {},
        )

    async def _search_stays(self, criteria: SearchCriteria) -> list[Quote]:
        location = criteria.destination_city or criteria.destination
        raw = await self._call(
            self._provider.search_stays(
                location=location,
                check_in=criteria.start_date,
                check_out=criteria.end_date,
                adults=criteria.adults,
                children=criteria.children,
            ),
            ProviderRejectedError,
            "searching hotels",
        )
        try:
            return [self._stay_quote(stay, criteria.fingerprint) for stay in raw]
        except (KeyError, TypeError, ProviderError) as e:
            raise ProviderRejectedError("The hotel search returned unreadable rates.", cause=e) from e

    def _stay_quote(self, stay: dict, fingerprint: str) -> Quote:
        provider_total = _money(stay["total_amount"])
        markup = (provider_total * Decimal(str(settings.markup_hotel_percent)) / 100).quantize(CENT, ROUND_HALF_UP)
        components = {"markup": markup}
        for name, key in (("base", "base_amount"), ("tax", "tax_amount"), ("fee", "fee_amount")):
            amount = _money(stay.get(key))
            if amount is not None:
                components[name] = amount
        return Quote(
            id=new_id("quo"),
            kind="hotel",
            total_amount=provider_total + markup,
            currency=stay["total_currency"],
            expires_at=_instant(stay.get("expires_at"), self._default_expiry()),
            fingerprint=fingerprint,
            provider_ref=stay["id"],
            description=" - ".join(p for p in (stay.get("accommodation_name"), stay.get("room_name")) if p),
            components=components,
            conditions={"cancellation_timeline": stay.get("cancellation_timeline") or []},
        )

    # --- Booking ---

    @staticmethod
    def provider_amount(quote: Quote) -> Decimal:
        """What the provider charges: the quote total without our markup."""
        return quote.total_amount - quote.components.get("markup", Decimal("0"))

    async def book_leg(
        self,
        quote: Quote,
        contact: Contact,
        passengers: list[Passenger],
        idempotency_key: str,
    ) -> OrderLeg:
        """Book one priced leg. The same key never books twice at the provider."""
        leg_key = f"{idempotency_key}:{quote.kind}"
        amount = self.provider_amount(quote)

        if quote.kind == "flight":
            payload = [
                {
                    "given_name": p.given_name,
                    "family_name": p.family_name,
                    "type": p.type,
                    "born_on": p.born_on.isoformat() if p.born_on else None,
                    "email": contact.email,
                    "phone_number": contact.phone,
                }
                for p in passengers
            ] or [{
                "given_name": contact.first_name,
                "family_name": contact.last_name,
                "type": "adult",
                "email": contact.email,
                "phone_number": contact.phone,
            }]
            result = await self._call(
                self._provider.create_flight_order(
                    offer_id=quote.provider_ref,
                    passengers=payload,
                    amount=f"{amount:.2f}",
                    currency=quote.currency,
                    idempotency_key=leg_key,
                    metadata={"idempotency_key": idempotency_key},
                ),
                ProviderRejectedError,
                "booking the flight",
            )
        else:
            guests = [{"given_name": p.given_name, "family_name": p.family_name} for p in passengers] or [
                {"given_name": contact.first_name, "family_name": contact.last_name}
            ]
            result = await self._call(
                self._provider.create_stay_booking(
                    rate_id=quote.provider_ref,
                    guests=guests,
                    email=contact.email,
                    phone_number=contact.phone,
                    idempotency_key=leg_key,
                ),
                ProviderRejectedError,
                "reserving the hotel",
            )

        logger.info(f"Booked {quote.kind} leg {result['id']} ({result.get('booking_reference', '')})")
        return OrderLeg(
            kind=quote.kind,
            quote=quote,
            provider_order_id=result["id"],
            booking_reference=result.get("booking_reference", ""),
        )

    async def release_leg(self, leg: OrderLeg) -> None:
        """Undo a booked leg (used to compensate a partially committed bundle)."""
        if leg.kind == "flight":
            cancellation = await self._call(
                self._provider.create_cancellation(leg.provider_order_id),
                ProviderRejectedError,
                "releasing the flight",
            )
            await self._call(
                self._provider.confirm_cancellation(cancellation["id"]),
                ProviderRejectedError,
                "releasing the flight",
            )
        else:
            await self._call(
                self._provider.cancel_stay_booking(leg.provider_order_id),
                ProviderRejectedError,
                "releasing the hotel",
            )
        logger.info(f"Released {leg.kind} leg {leg.provider_order_id}")

    # --- Cancellation ---

    async def request_cancel_quote(self, order: Order) -> Quote:
        """Price a cancellation of every leg of the order as one refund quote."""
        now = self._clock()
        fallback_expiry = now + timedelta(minutes=settings.cancel_quote_ttl_minutes)
        refund = Decimal("0")
        currency = order.currency
        expiries = []
        actions = []

        for leg in order.legs:
            if leg.kind == "flight":
                raw = await self._call(
                    self._provider.create_cancellation(leg.provider_order_id),
                    QuoteUnavailableError,
                    "pricing the cancellation",
                )
                try:
                    refund += _money(raw["refund_amount"]) or Decimal("0")
                except (KeyError, ProviderError) as e:
                    raise QuoteUnavailableError("The refund quote was unreadable.", cause=e) from e
                currency = raw.get("refund_currency") or currency
                expiries.append(_instant(raw.get("expires_at"), fallback_expiry))
                actions.append({"kind": "flight", "provider_order_id": leg.provider_order_id, "cancellation_id": raw["id"]})
            else:
                refund += self._stay_refund(leg, now)
                actions.append({"kind": "hotel", "provider_order_id": leg.provider_order_id})

        quote = Quote(
            id=new_id("rfq"),
            kind="refund",
            total_amount=refund.quantize(CENT, ROUND_HALF_UP),
            currency=currency,
            expires_at=min(expiries) if expiries else fallback_expiry,
            fingerprint=order.id,
            provider_ref=",".join(a.get("cancellation_id", a["provider_order_id"]) for a in actions),
            description=f"Refund for order {order.confirmation_reference}",
            conditions={"cancellations": actions},
        )
        logger.info(f"Refund quote for order {order.id}: {quote.total_amount} {quote.currency}")
        return quote

    @staticmethod
    def _stay_refund(leg: OrderLeg, now: datetime) -> Decimal:
        """Best refund still available on the stay's cancellation timeline."""
        best = Decimal("0")
        for step in leg.quote.conditions.get("cancellation_timeline") or []:
            before = _instant(step.get("before"), now)
            amount = _money(step.get("refund_amount"))
            if amount is not None and now < before and amount > best:
                best = amount
        return best

    async def confirm_cancel(self, order: Order, cancel_quote: Quote) -> None:
        for action in cancel_quote.conditions.get("cancellations") or []:
            if action["kind"] == "flight":
                await self._call(
                    self._provider.confirm_cancellation(action["cancellation_id"]),
                    ProviderRejectedError,
                    "confirming the cancellation",
                )
            else:
                await self._call(
                    self._provider.cancel_stay_booking(action["provider_order_id"]),
                    ProviderRejectedError,
                    "cancelling the hotel",
                )
        logger.info(f"Cancellation confirmed for order {order.id}")

    # --- Changes ---

    async def search_change_offers(self, order: Order, new_date: date) -> list[Quote]:
        """Ask for alternative itineraries that move the trip to ``new_date``."""
        leg = next(iter(order.flight_legs()), None)
        if leg is None or not leg.quote.segments:
            return []

        slices = [dict(s) for s in leg.quote.segments]
        first_date = date.fromisoformat(slices[0]["departure_date"])
        shift = new_date - first_date
        cabin = order.criteria.cabin_class if order.criteria else "economy"
        add_slices = [
            {
                "origin": s["origin"],
                "destination": s["destination"],
                "departure_date": (date.fromisoformat(s["departure_date"]) + shift).isoformat(),
                "cabin_class": cabin,
            }
            for s in slices
        ]

        raw = await self._call(
            self._provider.create_change_request(
                order_id=leg.provider_order_id,
                remove_slice_ids=[s["slice_id"] for s in slices],
                add_slices=add_slices,
            ),
            QuoteUnavailableError,
            "searching alternative flights",
        )

        quotes = []
        fingerprint = f"{order.id}:{new_date.isoformat()}"
        try:
            for offer in raw:
                components = {}
                penalty = _money(offer.get("penalty_total_amount"))
                if penalty is not None:
                    components["penalty"] = penalty
                quotes.append(Quote(
                    id=new_id("chq"),
                    kind="change",
                    total_amount=_money(offer["change_total_amount"]),
                    currency=offer["change_total_currency"],
                    expires_at=_instant(offer.get("expires_at"), self._default_expiry()),
                    fingerprint=fingerprint,
                    provider_ref=offer["id"],
                    description=f"Move to {new_date.isoformat()}",
                    components=components,
                    segments=tuple(dict(s) for s in (offer.get("slices") or add_slices)),
                    conditions={"provider_order_id": leg.provider_order_id},
                ))
        except (KeyError, ProviderError) as e:
            raise QuoteUnavailableError("The alternative flights were unreadable.", cause=e) from e
        return quotes

    async def confirm_change(self, order: Order, change_quote: Quote) -> ChangeResult:
        """Pay the fare difference and apply the change at the provider."""
        currency = change_quote.currency
        raw = await self._call(
            self._provider.confirm_change(change_quote.provider_ref, f"{change_quote.total_amount:.2f}", currency),
            ProviderRejectedError,
            "confirming the change",
        )
        # Our price moves by the fare difference; the provider total excludes markup
        new_total = order.total_amount + change_quote.total_amount
        return ChangeResult(
            booking_reference=raw.get("booking_reference") or order.confirmation_reference,
            new_total_amount=new_total,
            currency=raw.get("new_total_currency") or currency,
            provider_change_id=raw.get("id", ""),
        )
