"""
Paginated, filterable item list backed by a remote list endpoint.

Each fetch is tagged with a monotonic sequence number; a response that
resolves after a newer fetch was issued is dropped, so a filter change can
never be overwritten by a stale ``load_more``.
"""

import logging
from typing import Any, List, Optional

from .errors import EngineError
from .models import Item, ItemFilters, is_provisional
from .remote import DEFAULT_TIMEOUT, RemoteEndpoint, call_remote
from .store import EntityStore

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 30


class PaginatedQuery:
    """Tracks filters, page and ``has_more`` for one item list."""

    def __init__(self, store: EntityStore, endpoint: RemoteEndpoint,
                 page_size: int = DEFAULT_PAGE_SIZE,
                 timeout: Optional[float] = DEFAULT_TIMEOUT,
                 filters: Optional[ItemFilters] = None):
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self.store = store
        self.endpoint = endpoint
        self.limit = page_size
        self.timeout = timeout
        self.filters = filters or ItemFilters()
        self.page = 1
        self.has_more = True
        self.total_count_estimate = 0
        self.last_error: Optional[EngineError] = None
        self._exhausted = False
        self._seq = 0
        self._in_flight: Optional[int] = None

    @property
    def items(self) -> List[Item]:
        return self.store.all()

    @property
    def is_fetching(self) -> bool:
        return self._in_flight is not None

    def admits(self, item: Item) -> bool:
        return self.filters.matches(item)

    def adjust_estimate(self, delta: int):
        self.total_count_estimate = max(0, self.total_count_estimate + delta)

    def _restart(self):
        self.page = 1
        self.has_more = True
        self._exhausted = False

    async def set_filters(self, **patch: Any) -> List[Item]:
        """Merge ``patch`` into the filters and refetch page 1."""
        self.filters = ItemFilters.model_validate({**self.filters.model_dump(), **patch})
        self._restart()
        return await self.fetch_page(1)

    async def refresh(self) -> List[Item]:
        """Refetch page 1 with the current filters."""
        self._restart()
        return await self.fetch_page(1)

    async def load_more(self) -> List[Item]:
        """Append the next page unless a fetch is running or nothing is left."""
        if self.is_fetching or not self.has_more:
            return self.items
        return await self.fetch_page(self.page + 1)

    async def fetch_page(self, page: int) -> List[Item]:
        """Fetch ``page`` for the current filters; page 1 replaces, later pages append."""
        if page < 1:
            raise ValueError("page must be >= 1")
        self._seq += 1
        seq = self._seq
        self._in_flight = seq
        filters = self.filters

        try:
            records = await call_remote(
                self.endpoint.list(self.store.owner_id, filters, page, self.limit), self.timeout)
        except EngineError as e:
            if seq != self._seq:
                logger.debug(f"Dropping failure of stale fetch {seq} (page {page}): {e}")
                return self.items
            self._in_flight = None
            self.last_error = e
            raise

        if seq != self._seq:
            logger.debug(f"Dropping stale fetch {seq} (page {page}); newest is {self._seq}")
            return self.items

        self._in_flight = None
        self.last_error = None
        if page == 1:
            pending = [
                item for item in self.store.all()
                if is_provisional(item.id) and filters.matches(item)
            ]
            self.store.reset(pending + list(records))
            self.total_count_estimate = len(records) if len(records) < self.limit else len(records) * 2
        else:
            self.store.upsert_many(records)
            self.total_count_estimate = max(self.total_count_estimate, len(self.store))

        self.page = page
        if len(records) < self.limit:
            self._exhausted = True
        self.has_more = not self._exhausted
        return self.items

    def reset(self):
        """Drop loaded items and invalidate any fetch still in flight."""
        self._seq += 1
        self._in_flight = None
        self.last_error = None
        self.total_count_estimate = 0
        self._restart()
        self.store.clear()
