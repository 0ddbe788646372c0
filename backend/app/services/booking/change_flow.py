"""Change sub-flow: move a confirmed flight order to a new date."""

import dataclasses
import logging
from datetime import date, datetime

from app.services.booking.errors import (
    BookingError,
    InvalidCriteriaError,
    InvalidTransitionError,
    NoAlternativesError,
    NotFoundError,
    OrderChangedError,
    ProviderRejectedError,
    QuoteUnavailableError,
    StaleQuoteError,
)
from app.services.booking.events import WorkflowHost
from app.services.booking.quote_store import QuoteStore, quote_key
from app.services.booking.state_machine import (
    CHANGE_TRANSITIONS,
    advance,
    check_version,
    ensure_idle,
    is_terminal,
    touch,
)
from app.services.booking.types import (
    ChangeRequest,
    ChangeState,
    Clock,
    Failure,
    Order,
    OrderLeg,
    OrderStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

C = ChangeState
CHANGEABLE_ORDER_STATUSES = (OrderStatus.CONFIRMED, OrderStatus.CHANGED)


class ChangeFlow(WorkflowHost):
    kind = "change"
    label = "Change request"

    def __init__(self, offers, repository, quote_store: QuoteStore, clock: Clock = utcnow):
        super().__init__(clock)
        self._offers = offers
        self._repository = repository
        self._quotes = quote_store

    def _advance(self, request: ChangeRequest, target: ChangeState) -> None:
        advance(request, target, CHANGE_TRANSITIONS, self._clock())

    def _key(self, request: ChangeRequest) -> str:
        return quote_key(request.id, request.order_id, "change")

    def _require(self, request: ChangeRequest, *states: ChangeState) -> None:
        if request.state not in states:
            raise InvalidTransitionError(
                f"Change request {request.id} is {request.state.value}; "
                f"this step needs {' or '.join(s.value for s in states)}",
                current_state=request.state.value,
            )

    async def _load_order(self, order_id: str) -> Order:
        order = await self._repository.get_order(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} does not exist")
        return order

    @staticmethod
    def _check_order(request: ChangeRequest, order: Order, since_priced: bool = True) -> None:
        """Refuse to go on if the order was cancelled, or revised since the alternatives were priced."""
        if order.status not in CHANGEABLE_ORDER_STATUSES:
            raise OrderChangedError(
                f"Order {order.id} became {order.status.value} while change request {request.id} was open",
                action="This booking can no longer be changed.",
                order_status=order.status.value,
            )
        if since_priced and request.order_version is not None and order.version != request.order_version:
            raise OrderChangedError(
                f"Order {order.id} is at version {order.version}, alternatives were priced "
                f"against version {request.order_version}",
                action="The booking was updated elsewhere. Search the new date again.",
                order_status=order.status.value,
            )

    def _prepare(self, request_id: str, expected_version: int | None) -> ChangeRequest:
        request = self._lookup(request_id)
        check_version(request, expected_version)
        ensure_idle(request)
        return request

    # --- Commands ---

    async def begin(self, order_id: str) -> ChangeRequest:
        """Open a change request for an order that still has flights to move."""
        order = await self._load_order(order_id)
        if order.status not in CHANGEABLE_ORDER_STATUSES:
            raise InvalidTransitionError(
                f"Order {order_id} is {order.status.value} and can no longer be changed",
                action="Start a new booking instead.",
                current_state=order.status.value,
            )
        if not order.flight_segments():
            raise InvalidTransitionError(
                f"Order {order_id} has no flights to change",
                action="Contact the hotel to change a stay.",
                current_state=order.status.value,
            )
        open_request = next(
            (r for r in self.all() if r.order_id == order_id and not is_terminal(r)),
            None,
        )
        if open_request is not None:
            raise InvalidTransitionError(
                f"Order {order_id} already has change request {open_request.id} in progress",
                action="Continue or abandon the open change first.",
                current_state=open_request.state.value,
            )

        now = self._clock()
        request = ChangeRequest(order_id=order_id, order_version=order.version, created_at=now, updated_at=now)
        self._add(request)
        logger.info(f"Change request {request.id} opened for order {order_id}")
        self._publish(request)
        return request

    def get(self, request_id: str) -> ChangeRequest:
        request = self._lookup(request_id)
        self._expire_if_stale(request)
        return request

    def search(self, request_id: str, new_date: date, expected_version: int | None = None) -> ChangeRequest:
        """Look for alternatives on ``new_date``. Also used to re-search from Reviewing."""
        request = self._prepare(request_id, expected_version)
        self._require(request, C.SELECTING_DATE, C.REVIEWING)
        if new_date < self._clock().date():
            raise InvalidCriteriaError(
                f"{new_date.isoformat()} is in the past",
                action="Pick a travel date from today onwards.",
                problems=["new date is in the past"],
            )

        self._quotes.discard(self._key(request))
        request.alternatives = []
        request.quote = None
        request.new_date = new_date
        request.failure = None
        self._advance(request, C.SEARCHING)
        self._publish(request)
        self._spawn(request, self._run_search(request, new_date))
        return request

    def select_alternative(
        self,
        request_id: str,
        quote_id: str,
        expected_version: int | None = None,
    ) -> ChangeRequest:
        request = self._prepare(request_id, expected_version)
        if self._expire_if_stale(request):
            raise StaleQuoteError("The alternative flights have expired.", action="Search the new date again.")
        self._require(request, C.REVIEWING)
        quote = next((q for q in request.alternatives if q.id == quote_id), None)
        if quote is None:
            raise NotFoundError(f"Alternative {quote_id} is not part of change request {request.id}")
        self._quotes.put(self._key(request), quote)
        request.quote = quote
        touch(request, self._clock())
        self._publish(request)
        return request

    def confirm(self, request_id: str, expected_version: int | None = None) -> ChangeRequest:
        """Pay the fare difference for the selected alternative."""
        request = self._prepare(request_id, expected_version)
        if self._expire_if_stale(request):
            raise StaleQuoteError("The fare difference has expired.", action="Search the new date again.")
        self._require(request, C.REVIEWING)

        request.failure = None
        self._advance(request, C.CONFIRMING)
        self._publish(request)
        self._spawn(request, self._run_confirm(request))
        return request

    def abandon(self, request_id: str, expected_version: int | None = None) -> ChangeRequest:
        request = self._prepare(request_id, expected_version)
        self._advance(request, C.ABANDONED)
        self._quotes.purge_owner(request.id)
        self._publish(request)
        return request

    def _expire_if_stale(self, request: ChangeRequest) -> bool:
        """Send a Reviewing request whose quote lapsed back to date selection."""
        if request.state != C.REVIEWING:
            return False
        if self._quotes.is_valid(request.quote, self._clock()):
            return False
        error = StaleQuoteError("The fare difference quote has expired.", action="Search the new date again.")
        self._quotes.discard(self._key(request))
        request.alternatives = []
        request.quote = None
        request.failure = Failure.from_error(error)
        self._advance(request, C.SELECTING_DATE)
        logger.info(f"Change request {request.id}: quote lapsed, back to date selection")
        self._publish(request)
        return True

    def sweep_idle(self, idle_before: datetime) -> int:
        abandoned = 0
        for request in self.all():
            if request.state in (C.SELECTING_DATE, C.REVIEWING) and request.updated_at < idle_before:
                self._advance(request, C.ABANDONED)
                self._quotes.purge_owner(request.id)
                self._publish(request)
                abandoned += 1
        return abandoned

    def forget(self, request_id: str) -> None:
        self._quotes.purge_owner(request_id)
        super().forget(request_id)

    # --- Background round trips ---

    async def _run_search(self, request: ChangeRequest, new_date: date) -> None:
        try:
            order = await self._load_order(request.order_id)
            self._check_order(request, order, since_priced=False)
            request.order_version = order.version
            quotes = await self._offers.search_change_offers(order, new_date)
        except OrderChangedError as e:
            self._order_moved(request, e)
            return
        except BookingError as e:
            self._search_failed(request, e)
            return
        except Exception as e:
            logger.exception(f"Change request {request.id}: unexpected search error")
            self._search_failed(request, QuoteUnavailableError("Alternative flights could not be priced.", cause=e))
            return

        if not quotes:
            self._search_failed(
                request,
                NoAlternativesError(f"No alternative flights on {new_date.isoformat()}."),
            )
            return

        request.alternatives = sorted(quotes, key=lambda q: q.total_amount)
        request.quote = request.alternatives[0]
        self._quotes.put(self._key(request), request.quote)
        self._advance(request, C.REVIEWING)
        logger.info(
            f"Change request {request.id}: {len(quotes)} alternatives, "
            f"from {request.quote.total_amount} {request.quote.currency}"
        )
        self._publish(request)

    def _search_failed(self, request: ChangeRequest, error: BookingError) -> None:
        request.failure = Failure.from_error(error)
        self._advance(request, C.SELECTING_DATE)
        logger.warning(f"Change request {request.id} search failed: {error.kind} ({error})")
        self._publish(request)

    async def _run_confirm(self, request: ChangeRequest) -> None:
        quote = request.quote
        try:
            order = await self._load_order(request.order_id)
            self._check_order(request, order)
            result = await self._offers.confirm_change(order, quote)
        except OrderChangedError as e:
            self._order_moved(request, e)
            return
        except BookingError as e:
            self._confirm_failed(request, e)
            return
        except Exception as e:
            logger.exception(f"Change request {request.id}: unexpected confirm error")
            self._confirm_failed(request, ProviderRejectedError("The change could not be confirmed.", cause=e))
            return

        changed_ref = quote.conditions.get("provider_order_id")
        legs = [
            OrderLeg(
                kind=leg.kind,
                quote=dataclasses.replace(
                    leg.quote,
                    segments=quote.segments,
                    total_amount=leg.quote.total_amount + quote.total_amount,
                ),
                provider_order_id=leg.provider_order_id,
                booking_reference=result.booking_reference,
            )
            if leg.kind == "flight" and leg.provider_order_id == changed_ref
            else leg
            for leg in order.legs
        ]
        try:
            await self._repository.update_order(
                order.id,
                order.version,
                "change",
                status=OrderStatus.CHANGED,
                total_amount=result.new_total_amount,
                confirmation_reference=result.booking_reference,
                legs=legs,
                now=self._clock(),
            )
        except Exception as e:
            logger.error(
                f"Change request {request.id}: provider applied change {result.provider_change_id} "
                f"but order {order.id} was not updated; manual follow-up needed: {e}"
            )
            self._confirm_failed(
                request,
                ProviderRejectedError("The change went through but could not be recorded.", cause=e),
            )
            return

        self._advance(request, C.SUCCEEDED)
        self._quotes.purge_owner(request.id)
        logger.info(f"Change request {request.id}: order {order.id} now {result.booking_reference}")
        self._publish(request)

    def _confirm_failed(self, request: ChangeRequest, error: BookingError) -> None:
        request.failure = Failure.from_error(error)
        self._advance(request, C.REVIEWING)
        logger.warning(f"Change request {request.id} confirm failed: {error.kind} ({error})")
        self._publish(request)

    def _order_moved(self, request: ChangeRequest, error: OrderChangedError) -> None:
        """The order moved under the request: re-search on the new terms, or stop if it was cancelled."""
        request.failure = Failure.from_error(error)
        request.alternatives = []
        request.quote = None
        self._quotes.purge_owner(request.id)
        still_open = error.order_status in {s.value for s in CHANGEABLE_ORDER_STATUSES}
        self._advance(request, C.SELECTING_DATE if still_open else C.ABANDONED)
        logger.warning(f"Change request {request.id} stopped: {error}")
        self._publish(request)
