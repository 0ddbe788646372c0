"""Service singletons shared by the routers and the scheduler.

Routers reach them through the ``get_*`` functions so tests can swap them
with ``app.dependency_overrides``.
"""

from fastapi import HTTPException

from app.database import async_session_factory
from app.services.booking.cancel_flow import CancelFlow
from app.services.booking.change_flow import ChangeFlow
from app.services.booking.commit import CommitCoordinator
from app.services.booking.coordinator import ReservationCoordinator
from app.services.booking.errors import BookingError
from app.services.booking.offer_search import OfferSearchClient
from app.services.booking.persistence import OrderRepository
from app.services.booking.quote_store import QuoteStore

quote_store = QuoteStore()
offer_search_client = OfferSearchClient()
order_repository = OrderRepository(async_session_factory)
commit_coordinator = CommitCoordinator(offer_search_client, order_repository, quote_store)
reservation_coordinator = ReservationCoordinator(
    offer_search_client, order_repository, quote_store, commit_coordinator
)
change_flow = ChangeFlow(offer_search_client, order_repository, quote_store)
cancel_flow = CancelFlow(offer_search_client, order_repository, quote_store)


def get_reservation_coordinator() -> ReservationCoordinator:
    return reservation_coordinator


def get_change_flow() -> ChangeFlow:
    return change_flow


def get_cancel_flow() -> CancelFlow:
    return cancel_flow


def get_order_repository() -> OrderRepository:
    return order_repository


def http_error(error: BookingError) -> HTTPException:
    """Translate a domain error into the response body the client switches on."""
    return HTTPException(status_code=error.status_code, detail=error.to_dict())
