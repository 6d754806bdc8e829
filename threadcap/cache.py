"""Freshness-windowed response cache."""
from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Optional, Tuple

from .fetcher import FetchResponse
from .models import Instant


logger = logging.getLogger(__name__)


class Cache:
    """Stores raw responses by id, each with the instant it was fetched.

    ``get`` returns a stored response only when its fetch instant is strictly
    after ``after``; anything older behaves as a miss.
    """

    def get(self, id: str, after: Instant) -> Optional[FetchResponse]:  # pragma: no cover - interface only
        raise NotImplementedError

    def put(self, id: str, fetched: Instant, response: FetchResponse) -> None:  # pragma: no cover - interface only
        raise NotImplementedError


class InMemoryCache(Cache):
    """Reference in-process cache."""

    def __init__(
        self,
        on_returning_cached_response: Callable[[str, Instant, Instant, FetchResponse], None] | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[FetchResponse, Instant]] = {}
        self.on_returning_cached_response = on_returning_cached_response
        self.hits = 0

    def get(self, id: str, after: Instant) -> Optional[FetchResponse]:
        with self._lock:
            entry = self._entries.get(id)
            if entry is None or entry[1] <= after:
                return None
            self.hits += 1
        response, fetched = entry
        logger.debug("Returning cached response for %s (fetched %s)", id, fetched)
        if self.on_returning_cached_response:
            self.on_returning_cached_response(id, after, fetched, response)
        return response

    def put(self, id: str, fetched: Instant, response: FetchResponse) -> None:
        with self._lock:
            self._entries[id] = (response, fetched)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


__all__ = ["Cache", "InMemoryCache"]
