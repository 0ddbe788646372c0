from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, computed_field

from app.services.booking.types import Contact, Passenger, SearchCriteria


# --- Requests ---


class CriteriaRequest(BaseModel):
    trip_type: str = "flight"
    origin: str = ""
    destination: str = ""
    start_date: date | None = None
    end_date: date | None = None
    adults: int = 1
    children: int = 0
    infants: int = 0
    cabin_class: str = "economy"
    room_type: str = "double"
    label: str = ""
    origin_city: str = ""
    destination_city: str = ""

    def to_criteria(self) -> SearchCriteria:
        return SearchCriteria(**self.model_dump())


class CreateReservationRequest(BaseModel):
    criteria: CriteriaRequest
    estimated_price: Decimal | None = None


class VersionedRequest(BaseModel):
    expected_version: int | None = None


class UpdateCriteriaRequest(VersionedRequest):
    criteria: CriteriaRequest


class StartPricingRequest(VersionedRequest):
    criteria: CriteriaRequest | None = None


class SelectQuoteRequest(VersionedRequest):
    quote_id: str


class ContactSchema(BaseModel):
    first_name: str
    last_name: str
    email: str = ""
    phone: str = ""

    model_config = {"from_attributes": True}


class PassengerSchema(BaseModel):
    given_name: str
    family_name: str
    type: str = "adult"
    born_on: date | None = None

    model_config = {"from_attributes": True}


class SubmitDetailsRequest(VersionedRequest):
    contact: ContactSchema
    passengers: list[PassengerSchema] = []

    def to_contact(self) -> Contact:
        return Contact(**self.contact.model_dump())

    def to_passengers(self) -> list[Passenger]:
        return [Passenger(**p.model_dump()) for p in self.passengers]


class ChangeSearchRequest(VersionedRequest):
    new_date: date


class SelectAlternativeRequest(VersionedRequest):
    quote_id: str


# --- Responses ---


class QuoteResponse(BaseModel):
    id: str
    kind: str
    total_amount: Decimal
    currency: str
    expires_at: datetime
    provider: str
    description: str
    components: dict[str, Decimal]
    segments: list[dict]
    conditions: dict

    model_config = {"from_attributes": True}


class FailureResponse(BaseModel):
    kind: str
    message: str
    action: str

    model_config = {"from_attributes": True}


class TransitionResponse(BaseModel):
    from_state: str
    to_state: str
    at: datetime
    version: int

    model_config = {"from_attributes": True}


class CriteriaResponse(CriteriaRequest):
    model_config = {"from_attributes": True}

    @computed_field
    @property
    def traveler_count(self) -> int:
        return self.adults + self.children + self.infants


class ReservationResponse(BaseModel):
    id: str
    state: str
    version: int
    criteria: CriteriaResponse
    offers: list[QuoteResponse]
    selected: dict[str, QuoteResponse]
    contact: ContactSchema | None
    passengers: list[PassengerSchema]
    estimated_price: Decimal | None
    order_id: str | None
    progress_message: str | None
    failure: FailureResponse | None
    history: list[TransitionResponse]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @computed_field
    @property
    def selected_total(self) -> Decimal | None:
        if not self.selected:
            return None
        return sum((q.total_amount for q in self.selected.values()), Decimal("0"))


class OrderLegResponse(BaseModel):
    kind: str
    quote: QuoteResponse
    provider_order_id: str
    booking_reference: str

    model_config = {"from_attributes": True}


class OrderResponse(BaseModel):
    id: str
    reservation_id: str
    booking_type: str
    status: str
    legs: list[OrderLegResponse]
    total_amount: Decimal
    currency: str
    confirmation_reference: str
    contact: ContactSchema | None
    passengers: list[PassengerSchema]
    version: int
    refund_amount: Decimal | None
    refund_currency: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class OrderRevisionResponse(BaseModel):
    version: int
    reason: str
    status: str
    total_amount: Decimal
    currency: str
    confirmation_reference: str
    created_at: datetime | None


class ChangeRequestResponse(BaseModel):
    id: str
    order_id: str
    state: str
    version: int
    order_version: int | None
    new_date: date | None
    alternatives: list[QuoteResponse]
    quote: QuoteResponse | None
    failure: FailureResponse | None
    history: list[TransitionResponse]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class CancelRequestResponse(BaseModel):
    id: str
    order_id: str
    state: str
    version: int
    order_version: int | None
    quote: QuoteResponse | None
    failure: FailureResponse | None
    history: list[TransitionResponse]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ProviderBookingResponse(BaseModel):
    provider_order_id: str
    idempotency_key: str | None
    reservation_id: str | None
    order_id: str | None
    status: str
    booking_reference: str | None
    total_amount: Decimal | None
    currency: str | None
    created_at: datetime | None
