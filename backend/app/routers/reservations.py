"""Reservation router: create, price, review and confirm a booking."""

import logging

from fastapi import APIRouter, Depends

from app.dependencies import get_reservation_coordinator, http_error
from app.schemas.booking import (
    CreateReservationRequest,
    ReservationResponse,
    SelectQuoteRequest,
    StartPricingRequest,
    SubmitDetailsRequest,
    UpdateCriteriaRequest,
    VersionedRequest,
)
from app.services.booking.coordinator import ReservationCoordinator
from app.services.booking.errors import BookingError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", status_code=201, response_model=ReservationResponse)
async def create_reservation(
    req: CreateReservationRequest,
    coordinator: ReservationCoordinator = Depends(get_reservation_coordinator),
):
    """Open a reservation in draft."""
    reservation = coordinator.create(req.criteria.to_criteria(), estimated_price=req.estimated_price)
    return ReservationResponse.model_validate(reservation)


@router.get("/{reservation_id}", response_model=ReservationResponse)
async def get_reservation(
    reservation_id: str,
    coordinator: ReservationCoordinator = Depends(get_reservation_coordinator),
):
    try:
        reservation = coordinator.get(reservation_id)
    except BookingError as e:
        raise http_error(e) from e
    return ReservationResponse.model_validate(reservation)


@router.put("/{reservation_id}/criteria", response_model=ReservationResponse)
async def update_criteria(
    reservation_id: str,
    req: UpdateCriteriaRequest,
    coordinator: ReservationCoordinator = Depends(get_reservation_coordinator),
):
    """Edit the trip; existing prices are dropped."""
    try:
        reservation = coordinator.update_criteria(
            reservation_id, req.criteria.to_criteria(), expected_version=req.expected_version
        )
    except BookingError as e:
        raise http_error(e) from e
    return ReservationResponse.model_validate(reservation)


@router.post("/{reservation_id}/pricing", status_code=202, response_model=ReservationResponse)
async def start_pricing(
    reservation_id: str,
    req: StartPricingRequest,
    wait: bool = False,
    coordinator: ReservationCoordinator = Depends(get_reservation_coordinator),
):
    """Send the trip out for pricing. With ``wait=true`` respond once priced or failed."""
    try:
        reservation = coordinator.start_pricing(
            reservation_id,
            expected_version=req.expected_version,
            criteria=req.criteria.to_criteria() if req.criteria else None,
        )
        if wait:
            reservation = await coordinator.wait_idle(reservation_id)
    except BookingError as e:
        raise http_error(e) from e
    return ReservationResponse.model_validate(reservation)


@router.post("/{reservation_id}/selection", response_model=ReservationResponse)
async def select_quote(
    reservation_id: str,
    req: SelectQuoteRequest,
    coordinator: ReservationCoordinator = Depends(get_reservation_coordinator),
):
    try:
        reservation = coordinator.select_quote(reservation_id, req.quote_id, expected_version=req.expected_version)
    except BookingError as e:
        raise http_error(e) from e
    return ReservationResponse.model_validate(reservation)


@router.post("/{reservation_id}/details", response_model=ReservationResponse)
async def submit_details(
    reservation_id: str,
    req: SubmitDetailsRequest,
    coordinator: ReservationCoordinator = Depends(get_reservation_coordinator),
):
    """Attach contact and traveler details."""
    try:
        reservation = coordinator.submit_details(
            reservation_id,
            req.to_contact(),
            req.to_passengers(),
            expected_version=req.expected_version,
        )
    except BookingError as e:
        raise http_error(e) from e
    return ReservationResponse.model_validate(reservation)


@router.post("/{reservation_id}/confirm", status_code=202, response_model=ReservationResponse)
async def confirm_reservation(
    reservation_id: str,
    req: VersionedRequest,
    wait: bool = False,
    coordinator: ReservationCoordinator = Depends(get_reservation_coordinator),
):
    """Commit the reviewed reservation. Progress arrives through polling or ``wait=true``."""
    try:
        reservation = coordinator.confirm(reservation_id, expected_version=req.expected_version)
        if wait:
            reservation = await coordinator.wait_idle(reservation_id)
    except BookingError as e:
        raise http_error(e) from e
    return ReservationResponse.model_validate(reservation)


@router.post("/{reservation_id}/abandon", response_model=ReservationResponse)
async def abandon_reservation(
    reservation_id: str,
    req: VersionedRequest,
    coordinator: ReservationCoordinator = Depends(get_reservation_coordinator),
):
    try:
        reservation = coordinator.abandon(reservation_id, expected_version=req.expected_version)
    except BookingError as e:
        raise http_error(e) from e
    return ReservationResponse.model_validate(reservation)
