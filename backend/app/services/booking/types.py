"""Core booking types: criteria, quotes, reservations, orders and sub-flow requests."""

import hashlib
import json
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from app.services.booking.errors import BookingError, InvalidCriteriaError

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:20]}"


TRIP_TYPES = ("flight", "hotel", "bundle")
CABIN_CLASSES = ("economy", "premium_economy", "business", "first")
ROOM_TYPES = ("single", "double", "suite")
PASSENGER_TYPES = ("adult", "child", "infant_without_seat")

LEGS_BY_TRIP_TYPE = {
    "flight": ("flight",),
    "hotel": ("hotel",),
    "bundle": ("flight", "hotel"),
}


class ReservationState(str, Enum):
    DRAFT = "draft"
    PRICING = "pricing"
    PRICED = "priced"
    PRICING_FAILED = "pricing_failed"
    REVIEWING = "reviewing"
    COMMITTING = "committing"
    COMMIT_FAILED = "commit_failed"
    CONFIRMED = "confirmed"
    ABANDONED = "abandoned"


class ChangeState(str, Enum):
    SELECTING_DATE = "selecting_date"
    SEARCHING = "searching"
    REVIEWING = "reviewing"
    CONFIRMING = "confirming"
    SUCCEEDED = "succeeded"
    ABANDONED = "abandoned"


class CancelState(str, Enum):
    QUOTE_REQUESTED = "quote_requested"
    QUOTE_READY = "quote_ready"
    CONFIRMING = "confirming"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    FAILED = "failed"


class OrderStatus(str, Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    CHANGED = "changed"


class IntentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    CHANGED = "changed"


@dataclass(frozen=True)
class SearchCriteria:
    """What the traveler asked for. Immutable; a new search means a new instance."""

    trip_type: str
    destination: str
    start_date: date | None
    origin: str = ""
    end_date: date | None = None
    adults: int = 1
    children: int = 0
    infants: int = 0
    cabin_class: str = "economy"
    room_type: str = "double"
    # Presentation only, excluded from the fingerprint
    label: str = ""
    origin_city: str = ""
    destination_city: str = ""

    @property
    def legs(self) -> tuple[str, ...]:
        return LEGS_BY_TRIP_TYPE.get(self.trip_type, ())

    @property
    def traveler_count(self) -> int:
        return self.adults + self.children + self.infants

    def normalized(self) -> dict:
        return {
            "trip_type": self.trip_type.strip().lower(),
            "origin": self.origin.strip().upper(),
            "destination": self.destination.strip().upper(),
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "adults": self.adults,
            "children": self.children,
            "infants": self.infants,
            "cabin_class": self.cabin_class.strip().lower(),
            "room_type": self.room_type.strip().lower(),
        }

    @property
    def fingerprint(self) -> str:
        canonical = json.dumps(self.normalized(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()[:32]

    def validate(self, today: date | None = None) -> None:
        """Raise InvalidCriteriaError listing every missing or inconsistent field."""
        problems: list[str] = []
        norm = self.normalized()

        if norm["trip_type"] not in TRIP_TYPES:
            problems.append(f"trip_type must be one of {', '.join(TRIP_TYPES)}")
        if not norm["destination"]:
            problems.append("destination is required")
        if self.start_date is None:
            problems.append("start_date is required")
        elif today is not None and self.start_date < today:
            problems.append("start_date is in the past")
        if self.start_date and self.end_date and self.end_date < self.start_date:
            problems.append("end_date must not be before start_date")

        if "flight" in self.legs:
            if not norm["origin"]:
                problems.append("origin is required for flights")
            elif norm["origin"] == norm["destination"]:
                problems.append("origin and destination must differ")
            if norm["cabin_class"] not in CABIN_CLASSES:
                problems.append(f"cabin_class must be one of {', '.join(CABIN_CLASSES)}")

        if "hotel" in self.legs:
            if self.end_date is None:
                problems.append("end_date is required for hotel stays")
            elif self.start_date and self.end_date <= self.start_date:
                problems.append("a hotel stay needs at least one night")
            if norm["room_type"] not in ROOM_TYPES:
                problems.append(f"room_type must be one of {', '.join(ROOM_TYPES)}")

        if self.adults < 1:
            problems.append("at least one adult traveler is required")
        if self.children < 0 or self.infants < 0:
            problems.append("traveler counts cannot be negative")
        if self.infants > self.adults:
            problems.append("each infant must travel with an adult")

        if problems:
            raise InvalidCriteriaError(
                "Search details are incomplete: " + "; ".join(problems),
                problems=problems,
            )


@dataclass(frozen=True)
class Quote:
    """A priced, time-limited offer (flight, hotel room, fare change or refund)."""

    id: str
    kind: str
    total_amount: Decimal
    currency: str
    expires_at: datetime
    fingerprint: str
    provider_ref: str = ""
    provider: str = "duffel"
    description: str = ""
    components: dict[str, Decimal] = field(default_factory=dict)
    segments: tuple[dict, ...] = ()
    conditions: dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def snapshot(self) -> dict:
        """JSON-safe copy, frozen into orders and audit rows."""
        return {
            "id": self.id,
            "kind": self.kind,
            "total_amount": str(self.total_amount),
            "currency": self.currency,
            "expires_at": self.expires_at.isoformat(),
            "fingerprint": self.fingerprint,
            "provider_ref": self.provider_ref,
            "provider": self.provider,
            "description": self.description,
            "components": {k: str(v) for k, v in self.components.items()},
            "segments": [dict(s) for s in self.segments],
            "conditions": dict(self.conditions),
        }

    @classmethod
    def from_snapshot(cls, data: dict) -> "Quote":
        return cls(
            id=data["id"],
            kind=data["kind"],
            total_amount=Decimal(data["total_amount"]),
            currency=data["currency"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
            fingerprint=data.get("fingerprint", ""),
            provider_ref=data.get("provider_ref", ""),
            provider=data.get("provider", "duffel"),
            description=data.get("description", ""),
            components={k: Decimal(v) for k, v in data.get("components", {}).items()},
            segments=tuple(data.get("segments", [])),
            conditions=data.get("conditions", {}),
        )


@dataclass
class Contact:
    first_name: str
    last_name: str
    email: str = ""
    phone: str = ""

    def problems(self) -> list[str]:
        issues = []
        if not self.first_name.strip() or not self.last_name.strip():
            issues.append("contact name is required")
        email = self.email.strip()
        phone = self.phone.strip()
        if not email and not phone:
            issues.append("an email address or phone number is required")
        if email and "@" not in email:
            issues.append("email address is not valid")
        return issues

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class Passenger:
    given_name: str
    family_name: str
    type: str = "adult"
    born_on: date | None = None

    def problems(self) -> list[str]:
        issues = []
        if not self.given_name.strip() or not self.family_name.strip():
            issues.append("every traveler needs a given and family name")
        if self.type not in PASSENGER_TYPES:
            issues.append(f"traveler type must be one of {', '.join(PASSENGER_TYPES)}")
        return issues


@dataclass(frozen=True)
class Failure:
    """Last surfaced failure on a workflow object."""

    kind: str
    message: str
    action: str

    @classmethod
    def from_error(cls, error: BookingError) -> "Failure":
        return cls(kind=error.kind, message=error.message, action=error.action)


@dataclass(frozen=True)
class Transition:
    from_state: str
    to_state: str
    at: datetime
    version: int


@dataclass(kw_only=True)
class Workflow:
    """Fields shared by every coordinator-owned object."""

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    version: int = 0
    failure: Failure | None = None
    history: list[Transition] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(kw_only=True)
class Reservation(Workflow):
    criteria: SearchCriteria
    state: ReservationState = ReservationState.DRAFT
    offers: list[Quote] = field(default_factory=list)
    selected: dict[str, Quote] = field(default_factory=dict)
    # leg -> provider offer id the traveler picked by hand
    pinned: dict[str, str] = field(default_factory=dict)
    contact: Contact | None = None
    passengers: list[Passenger] = field(default_factory=list)
    estimated_price: Decimal | None = None
    intent_id: str | None = None
    # Fingerprint of the criteria the latest audit intent was written for
    intent_fingerprint: str | None = None
    order_id: str | None = None
    progress_message: str | None = None

    def selected_quotes(self) -> list[Quote]:
        return [self.selected[leg] for leg in self.criteria.legs if leg in self.selected]

    def selected_total(self) -> Decimal | None:
        quotes = self.selected_quotes()
        if not quotes:
            return None
        return sum((q.total_amount for q in quotes), Decimal("0"))


@dataclass
class OrderLeg:
    kind: str
    quote: Quote
    provider_order_id: str
    booking_reference: str


@dataclass
class Order:
    """Durable confirmed booking. Price is frozen at commit time."""

    id: str
    reservation_id: str
    booking_type: str
    legs: list[OrderLeg]
    total_amount: Decimal
    currency: str
    confirmation_reference: str
    idempotency_key: str
    status: OrderStatus = OrderStatus.CONFIRMED
    contact: Contact | None = None
    passengers: list[Passenger] = field(default_factory=list)
    criteria: SearchCriteria | None = None
    intent_id: str | None = None
    version: int = 1
    refund_amount: Decimal | None = None
    refund_currency: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def flight_legs(self) -> list[OrderLeg]:
        return [leg for leg in self.legs if leg.kind == "flight"]

    def flight_segments(self) -> list[dict]:
        return [dict(s) for leg in self.flight_legs() for s in leg.quote.segments]


@dataclass(kw_only=True)
class ChangeRequest(Workflow):
    order_id: str
    # Order version the current alternatives were priced against
    order_version: int | None = None
    state: ChangeState = ChangeState.SELECTING_DATE
    new_date: date | None = None
    alternatives: list[Quote] = field(default_factory=list)
    quote: Quote | None = None


@dataclass(kw_only=True)
class CancelRequest(Workflow):
    order_id: str
    order_version: int | None = None
    state: CancelState = CancelState.QUOTE_REQUESTED
    quote: Quote | None = None
