"""Orders router: confirmed bookings and their change/cancel sub-flows."""

import logging

from fastapi import APIRouter, Depends

from app.dependencies import get_cancel_flow, get_change_flow, get_order_repository, http_error
from app.schemas.booking import (
    CancelRequestResponse,
    ChangeRequestResponse,
    ChangeSearchRequest,
    OrderResponse,
    OrderRevisionResponse,
    SelectAlternativeRequest,
    VersionedRequest,
)
from app.services.booking.cancel_flow import CancelFlow
from app.services.booking.change_flow import ChangeFlow
from app.services.booking.errors import BookingError, NotFoundError
from app.services.booking.persistence import OrderRepository

logger = logging.getLogger(__name__)

router = APIRouter()


# --- Orders ---


@router.get("/orders")
async def list_orders(
    reservation_id: str | None = None,
    limit: int = 50,
    repository: OrderRepository = Depends(get_order_repository),
):
    orders = await repository.list_orders(reservation_id=reservation_id, limit=min(limit, 200))
    return {"orders": [OrderResponse.model_validate(o) for o in orders], "count": len(orders)}


@router.get("/orders/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: str,
    repository: OrderRepository = Depends(get_order_repository),
):
    order = await repository.get_order(order_id)
    if order is None:
        raise http_error(NotFoundError(f"Order {order_id} does not exist"))
    return OrderResponse.model_validate(order)


@router.get("/orders/{order_id}/revisions", response_model=list[OrderRevisionResponse])
async def list_order_revisions(
    order_id: str,
    repository: OrderRepository = Depends(get_order_repository),
):
    """Superseded terms of the order, oldest first."""
    return await repository.list_revisions(order_id)


# --- Changes ---


@router.post("/orders/{order_id}/changes", status_code=201, response_model=ChangeRequestResponse)
async def begin_change(
    order_id: str,
    flow: ChangeFlow = Depends(get_change_flow),
):
    try:
        request = await flow.begin(order_id)
    except BookingError as e:
        raise http_error(e) from e
    return ChangeRequestResponse.model_validate(request)


@router.get("/changes/{request_id}", response_model=ChangeRequestResponse)
async def get_change(
    request_id: str,
    flow: ChangeFlow = Depends(get_change_flow),
):
    try:
        request = flow.get(request_id)
    except BookingError as e:
        raise http_error(e) from e
    return ChangeRequestResponse.model_validate(request)


@router.post("/changes/{request_id}/search", status_code=202, response_model=ChangeRequestResponse)
async def search_change(
    request_id: str,
    req: ChangeSearchRequest,
    wait: bool = False,
    flow: ChangeFlow = Depends(get_change_flow),
):
    """Search alternatives for a new departure date."""
    try:
        request = flow.search(request_id, req.new_date, expected_version=req.expected_version)
        if wait:
            request = await flow.wait_idle(request_id)
    except BookingError as e:
        raise http_error(e) from e
    return ChangeRequestResponse.model_validate(request)


@router.post("/changes/{request_id}/selection", response_model=ChangeRequestResponse)
async def select_alternative(
    request_id: str,
    req: SelectAlternativeRequest,
    flow: ChangeFlow = Depends(get_change_flow),
):
    try:
        request = flow.select_alternative(request_id, req.quote_id, expected_version=req.expected_version)
    except BookingError as e:
        raise http_error(e) from e
    return ChangeRequestResponse.model_validate(request)


@router.post("/changes/{request_id}/confirm", status_code=202, response_model=ChangeRequestResponse)
async def confirm_change(
    request_id: str,
    req: VersionedRequest,
    wait: bool = False,
    flow: ChangeFlow = Depends(get_change_flow),
):
    try:
        request = flow.confirm(request_id, expected_version=req.expected_version)
        if wait:
            request = await flow.wait_idle(request_id)
    except BookingError as e:
        raise http_error(e) from e
    return ChangeRequestResponse.model_validate(request)


@router.post("/changes/{request_id}/abandon", response_model=ChangeRequestResponse)
async def abandon_change(
    request_id: str,
    req: VersionedRequest,
    flow: ChangeFlow = Depends(get_change_flow),
):
    try:
        request = flow.abandon(request_id, expected_version=req.expected_version)
    except BookingError as e:
        raise http_error(e) from e
    return ChangeRequestResponse.model_validate(request)


# --- Cancellations ---


@router.post("/orders/{order_id}/cancellations", status_code=201, response_model=CancelRequestResponse)
async def request_cancellation(
    order_id: str,
    wait: bool = False,
    flow: CancelFlow = Depends(get_cancel_flow),
):
    """Ask for a refund quote. Confirm it before it expires."""
    try:
        request = await flow.request_quote(order_id)
        if wait:
            request = await flow.wait_idle(request.id)
    except BookingError as e:
        raise http_error(e) from e
    return CancelRequestResponse.model_validate(request)


@router.get("/cancellations/{request_id}", response_model=CancelRequestResponse)
async def get_cancellation(
    request_id: str,
    flow: CancelFlow = Depends(get_cancel_flow),
):
    try:
        request = flow.get(request_id)
    except BookingError as e:
        raise http_error(e) from e
    return CancelRequestResponse.model_validate(request)


@router.post("/cancellations/{request_id}/confirm", status_code=202, response_model=CancelRequestResponse)
async def confirm_cancellation(
    request_id: str,
    req: VersionedRequest,
    wait: bool = False,
    flow: CancelFlow = Depends(get_cancel_flow),
):
    try:
        request = flow.confirm(request_id, expected_version=req.expected_version)
        if wait:
            request = await flow.wait_idle(request_id)
    except BookingError as e:
        raise http_error(e) from e
    return CancelRequestResponse.model_validate(request)
