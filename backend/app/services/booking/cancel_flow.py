"""Cancel sub-flow: quote a refund, then confirm it before the quote lapses."""

import logging
from datetime import datetime

from app.services.booking.errors import (
    BookingError,
    InvalidTransitionError,
    NotFoundError,
    OrderChangedError,
    ProviderRejectedError,
    QuoteUnavailableError,
    StaleQuoteError,
)
from app.services.booking.events import WorkflowHost
from app.services.booking.quote_store import QuoteStore, quote_key
from app.services.booking.state_machine import (
    CANCEL_TRANSITIONS,
    advance,
    check_version,
    ensure_idle,
    is_terminal,
)
from app.services.booking.types import (
    CancelRequest,
    CancelState,
    Clock,
    Failure,
    Order,
    OrderStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

X = CancelState
CANCELLABLE_ORDER_STATUSES = (OrderStatus.CONFIRMED, OrderStatus.CHANGED)


class CancelFlow(WorkflowHost):
    kind = "cancel"
    label = "Cancel request"

    def __init__(self, offers, repository, quote_store: QuoteStore, clock: Clock = utcnow):
        super().__init__(clock)
        self._offers = offers
        self._repository = repository
        self._quotes = quote_store

    def _advance(self, request: CancelRequest, target: CancelState) -> None:
        advance(request, target, CANCEL_TRANSITIONS, self._clock())

    def _key(self, request: CancelRequest) -> str:
        return quote_key(request.id, request.order_id, "refund")

    async def _load_order(self, order_id: str) -> Order:
        order = await self._repository.get_order(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} does not exist")
        return order

    async def request_quote(self, order_id: str) -> CancelRequest:
        """Start a cancellation attempt by asking the provider for a refund quote."""
        order = await self._load_order(order_id)
        if order.status not in CANCELLABLE_ORDER_STATUSES:
            raise InvalidTransitionError(
                f"Order {order_id} is {order.status.value} and cannot be cancelled",
                action="This booking is already cancelled; nothing more to do.",
                current_state=order.status.value,
            )
        open_request = next(
            (r for r in self.all() if r.order_id == order_id and not is_terminal(r)),
            None,
        )
        if open_request is not None:
            raise InvalidTransitionError(
                f"Order {order_id} already has cancel request {open_request.id} in progress",
                action="Confirm or let the open refund quote expire first.",
                current_state=open_request.state.value,
            )

        now = self._clock()
        request = CancelRequest(order_id=order_id, order_version=order.version, created_at=now, updated_at=now)
        self._add(request)
        logger.info(f"Cancel request {request.id} opened for order {order_id}")
        self._publish(request)
        self._spawn(request, self._run_quote(request, order))
        return request

    def get(self, request_id: str) -> CancelRequest:
        request = self._lookup(request_id)
        self._expire_if_lapsed(request)
        return request

    def confirm(self, request_id: str, expected_version: int | None = None) -> CancelRequest:
        """Confirm the refund. A lapsed quote moves the request to Expired instead."""
        request = self._lookup(request_id)
        check_version(request, expected_version)
        ensure_idle(request)
        if self._expire_if_lapsed(request):
            return request
        if request.state != X.QUOTE_READY:
            raise InvalidTransitionError(
                f"Cancel request {request.id} is {request.state.value}; only a ready quote can be confirmed",
                current_state=request.state.value,
                requested_state=X.CONFIRMING.value,
            )

        request.failure = None
        self._advance(request, X.CONFIRMING)
        self._publish(request)
        self._spawn(request, self._run_confirm(request))
        return request

    def _expire_if_lapsed(self, request: CancelRequest) -> bool:
        if request.state != X.QUOTE_READY:
            return False
        if self._quotes.is_valid(request.quote, self._clock()):
            return False
        error = StaleQuoteError("The refund quote has expired.", action="Request a new refund quote.")
        request.failure = Failure.from_error(error)
        self._advance(request, X.EXPIRED)
        self._quotes.purge_owner(request.id)
        logger.info(f"Cancel request {request.id}: refund quote lapsed")
        self._publish(request)
        return True

    def sweep_expired(self) -> int:
        return sum(1 for request in self.all() if self._expire_if_lapsed(request))

    def sweep_idle(self, idle_before: datetime) -> int:
        # Only a ready quote is idle; everything else is in flight or finished
        return self.sweep_expired()

    def forget(self, request_id: str) -> None:
        self._quotes.purge_owner(request_id)
        super().forget(request_id)

    # --- Background round trips ---

    async def _run_quote(self, request: CancelRequest, order: Order) -> None:
        try:
            quote = await self._offers.request_cancel_quote(order)
        except BookingError as e:
            self._quote_failed(request, e)
            return
        except Exception as e:
            logger.exception(f"Cancel request {request.id}: unexpected quote error")
            self._quote_failed(request, QuoteUnavailableError("The refund could not be priced.", cause=e))
            return

        request.quote = quote
        self._quotes.put(self._key(request), quote)
        self._advance(request, X.QUOTE_READY)
        logger.info(
            f"Cancel request {request.id}: refund {quote.total_amount} {quote.currency} "
            f"until {quote.expires_at.isoformat()}"
        )
        self._publish(request)

    def _quote_failed(self, request: CancelRequest, error: BookingError) -> None:
        request.failure = Failure.from_error(error)
        self._advance(request, X.FAILED)
        logger.warning(f"Cancel request {request.id} quote failed: {error.kind} ({error})")
        self._publish(request)

    async def _run_confirm(self, request: CancelRequest) -> None:
        quote = request.quote
        try:
            order = await self._load_order(request.order_id)
            if order.status not in CANCELLABLE_ORDER_STATUSES or order.version != request.order_version:
                raise OrderChangedError(
                    f"Order {order.id} is {order.status.value} at version {order.version}, "
                    f"refund was quoted against version {request.order_version}",
                    action="The booking changed since the refund was quoted. Request a new refund quote.",
                    order_status=order.status.value,
                )
            await self._offers.confirm_cancel(order, quote)
        except OrderChangedError as e:
            self._order_moved(request, e)
            return
        except BookingError as e:
            self._confirm_failed(request, e)
            return
        except Exception as e:
            logger.exception(f"Cancel request {request.id}: unexpected confirm error")
            self._confirm_failed(request, ProviderRejectedError("The cancellation could not be confirmed.", cause=e))
            return

        try:
            await self._repository.update_order(
                order.id,
                order.version,
                "cancel",
                status=OrderStatus.CANCELLED,
                refund_amount=quote.total_amount,
                refund_currency=quote.currency,
                now=self._clock(),
            )
        except Exception as e:
            logger.error(
                f"Cancel request {request.id}: provider cancelled order {order.id} "
                f"but it was not marked cancelled; manual follow-up needed: {e}"
            )
            self._confirm_failed(
                request,
                ProviderRejectedError("The cancellation went through but could not be recorded.", cause=e),
            )
            return

        self._advance(request, X.CANCELLED)
        self._quotes.purge_owner(request.id)
        logger.info(f"Cancel request {request.id}: order {order.id} cancelled, refund {quote.total_amount}")
        self._publish(request)

    def _confirm_failed(self, request: CancelRequest, error: BookingError) -> None:
        request.failure = Failure.from_error(error)
        self._advance(request, X.QUOTE_READY)
        logger.warning(f"Cancel request {request.id} confirm failed: {error.kind} ({error})")
        self._publish(request)

    def _order_moved(self, request: CancelRequest, error: OrderChangedError) -> None:
        # The quote no longer matches the order; this attempt is over
        request.failure = Failure.from_error(error)
        self._advance(request, X.FAILED)
        self._quotes.purge_owner(request.id)
        logger.warning(f"Cancel request {request.id} stopped: {error}")
        self._publish(request)
