"""In-memory quote store: short-lived priced offers with lazy validity checks."""

import logging
from datetime import datetime

from app.services.booking.types import Quote

logger = logging.getLogger(__name__)


def quote_key(owner_id: str, fingerprint: str, leg: str) -> str:
    """Key owned by exactly one in-flight workflow (reservation, change or cancel)."""
    return f"quote:{owner_id}:{fingerprint}:{leg}"


class QuoteStore:
    """Holds the current quote per key.

    Putting a new quote under a key supersedes the previous one: the old quote
    stays readable by id but is no longer valid. Nothing is evicted in the
    background; expiry is checked against the caller's clock at read time.
    """

    def __init__(self):
        self._current: dict[str, Quote] = {}
        self._by_id: dict[str, Quote] = {}
        self._superseded: set[str] = set()
        self._key_of: dict[str, str] = {}

    def put(self, key: str, quote: Quote) -> None:
        prior = self._current.get(key)
        if prior is not None and prior.id != quote.id:
            self._superseded.add(prior.id)
        self._current[key] = quote
        self._by_id[quote.id] = quote
        self._key_of[quote.id] = key
        self._superseded.discard(quote.id)

    def get(self, key: str) -> Quote | None:
        return self._current.get(key)

    def get_by_id(self, quote_id: str) -> Quote | None:
        return self._by_id.get(quote_id)

    def is_valid(self, quote: Quote | None, now: datetime) -> bool:
        if quote is None:
            return False
        if quote.id in self._superseded:
            return False
        return not quote.is_expired(now)

    def discard(self, key: str) -> None:
        """Drop the current quote for a key; it becomes invalid but stays readable by id."""
        prior = self._current.pop(key, None)
        if prior is not None:
            self._superseded.add(prior.id)

    def purge_owner(self, owner_id: str) -> int:
        """Forget everything stored for a finished workflow."""
        prefix = f"quote:{owner_id}:"
        quote_ids = [qid for qid, key in self._key_of.items() if key.startswith(prefix)]
        for quote_id in quote_ids:
            key = self._key_of.pop(quote_id)
            if key in self._current and self._current[key].id == quote_id:
                del self._current[key]
            self._by_id.pop(quote_id, None)
            self._superseded.discard(quote_id)
        if quote_ids:
            logger.debug(f"Quote store: purged {len(quote_ids)} quotes for {owner_id}")
        return len(quote_ids)

    def __len__(self) -> int:
        return len(self._current)
