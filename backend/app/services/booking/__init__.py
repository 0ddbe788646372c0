"""Booking engine: reservation lifecycle from search to confirmed order.

Modules:
    types           Criteria, quotes, reservations, orders, sub-flow requests
    errors          Booking error taxonomy with user-facing remedies
    quote_store     Short-lived priced offers keyed per workflow
    offer_search    Provider-facing adapter that yields normalized quotes
    state_machine   Transition tables and the single advance() function
    events          State-change listeners and per-object task ownership
    commit          Exactly-once commit with a progress display floor
    coordinator     Reservation commands (price, review, confirm, abandon)
    change_flow     Date change on a confirmed order
    cancel_flow     Refund quote and cancellation of a confirmed order
    persistence     Durable intents, orders and revisions

Pipeline:
    ReservationCoordinator -> OfferSearchClient -> QuoteStore
    -> CommitCoordinator -> OrderRepository
"""
