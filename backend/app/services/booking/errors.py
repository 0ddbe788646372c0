"""Typed booking errors.

Every error carries a stable ``kind`` the presentation layer can switch on,
a human-readable ``message`` and an ``action`` naming what the traveler should
do next. Generic "something went wrong" messages are never produced here.
"""

from dataclasses import dataclass, field
from typing import ClassVar


@dataclass(eq=False)
class BookingError(Exception):
    """Base error for the booking domain.

    Attributes:
        message: Human-readable error description
        action: Concrete remedy shown to the traveler
        cause: Optional underlying exception
    """

    message: str
    action: str = ""
    cause: Exception | None = field(default=None, repr=False)

    kind: ClassVar[str] = "booking-error"
    default_action: ClassVar[str] = "Review your booking details and try again."
    status_code: ClassVar[int] = 400

    def __post_init__(self) -> None:
        super().__init__(self.message)
        if not self.action:
            self.action = self.default_action

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message}: {self.cause}"
        return self.message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "action": self.action}


@dataclass(eq=False)
class InvalidCriteriaError(BookingError):
    """Search criteria are incomplete or inconsistent. Raised before any network call."""

    problems: list[str] = field(default_factory=list)

    kind: ClassVar[str] = "invalid-criteria"
    default_action: ClassVar[str] = "Fill in the highlighted trip fields and search again."
    status_code: ClassVar[int] = 422


@dataclass(eq=False)
class NoOffersError(BookingError):
    """The search succeeded but produced nothing bookable.

    Attributes:
        missing_legs: Requested legs (flight/hotel) that came back empty
    """

    missing_legs: tuple[str, ...] = ()

    kind: ClassVar[str] = "no-offers"
    default_action: ClassVar[str] = (
        "No bookable options for these dates or cities. "
        "Change your travel dates or destination and search again."
    )
    status_code: ClassVar[int] = 422


@dataclass(eq=False)
class StaleQuoteError(BookingError):
    """A quote expired (or was superseded) before it could be used."""

    kind: ClassVar[str] = "stale-quote"
    default_action: ClassVar[str] = "Prices have expired. Refresh the price to get a new quote."
    status_code: ClassVar[int] = 410


@dataclass(eq=False)
class ProviderRejectedError(BookingError):
    """An external call failed, timed out or was declined."""

    kind: ClassVar[str] = "provider-rejected"
    default_action: ClassVar[str] = (
        "The airline or hotel declined the request. Wait a moment, refresh the price and confirm again."
    )
    status_code: ClassVar[int] = 502


@dataclass(eq=False)
class QuoteUnavailableError(BookingError):
    """Pricing for a change or cancellation could not be obtained."""

    kind: ClassVar[str] = "quote-unavailable"
    default_action: ClassVar[str] = "We could not get a quote right now. Wait a few minutes and request a new quote."
    status_code: ClassVar[int] = 502


@dataclass(eq=False)
class NoAlternativesError(BookingError):
    """A change search returned no alternative itineraries."""

    kind: ClassVar[str] = "no-alternatives"
    default_action: ClassVar[str] = "No flights are available on that date. Pick a different date."
    status_code: ClassVar[int] = 422


@dataclass(eq=False)
class OrderChangedError(BookingError):
    """The order was cancelled or revised after a change or cancel request was priced against it.

    Attributes:
        order_status: Status of the order when the request was refused
    """

    order_status: str = ""

    kind: ClassVar[str] = "order-changed"
    default_action: ClassVar[str] = "This booking changed since the quote was made. Reload it and start again."
    status_code: ClassVar[int] = 409


@dataclass(eq=False)
class VersionConflictError(BookingError):
    """A command targeted a version that has since advanced.

    Attributes:
        expected: Version the caller computed the command against
        actual: Current version of the object
    """

    expected: int | None = None
    actual: int | None = None

    kind: ClassVar[str] = "version-conflict"
    default_action: ClassVar[str] = "This booking was updated elsewhere. Reload it and repeat your last step."
    status_code: ClassVar[int] = 409


@dataclass(eq=False)
class InvalidTransitionError(BookingError):
    """The command is not allowed in the object's current state (including while suspended)."""

    current_state: str = ""
    requested_state: str = ""

    kind: ClassVar[str] = "invalid-transition"
    default_action: ClassVar[str] = "Wait for the current step to finish, then reload the booking."
    status_code: ClassVar[int] = 409


@dataclass(eq=False)
class NotFoundError(BookingError):
    """No reservation, order or request with that identifier."""

    kind: ClassVar[str] = "not-found"
    default_action: ClassVar[str] = "Start a new booking from your trip."
    status_code: ClassVar[int] = 404
