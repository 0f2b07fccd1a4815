"""
Remote collaborator contract.

The engine talks to the authoritative store through RemoteEndpoint objects
(one per entity type and collection) and listens to a ChangeFeed for
server-pushed changes. Remote failures carry a structured code and are
decoded into the engine's error taxonomy exactly once, in call_remote.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from .errors import EngineError, NetworkError, NotFoundError, QuotaExceededError
from .models import ChangeEvent, CollectionKind, ItemFilters, ItemStats, Record

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT = 10.0


class RemoteError(Exception):
    """Failure reported by the remote store, with a machine-readable code."""

    QUOTA_EXCEEDED = "quota_exceeded"
    NOT_FOUND = "not_found"

    def __init__(self, code: str, message: str = "", limit: Optional[int] = None):
        super().__init__(message or code)
        self.code = code
        self.message = message or code
        self.limit = limit


def decode_remote_error(exc: BaseException) -> EngineError:
    """Map any exception raised by a remote call to an engine error."""
    if isinstance(exc, EngineError):
        return exc
    if isinstance(exc, RemoteError):
        if exc.code == RemoteError.QUOTA_EXCEEDED:
            return QuotaExceededError(exc.message, limit=exc.limit)
        if exc.code == RemoteError.NOT_FOUND:
            return NotFoundError(exc.message)
        return NetworkError(f"Remote error {exc.code}: {exc.message}")
    if isinstance(exc, asyncio.TimeoutError):
        return NetworkError("Remote call timed out")
    return NetworkError(f"Remote call failed: {exc}")


async def call_remote(awaitable: Awaitable[T], timeout: Optional[float] = DEFAULT_TIMEOUT) -> T:
    """Await a remote call with a timeout, raising decoded engine errors."""
    try:
        if timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        error = decode_remote_error(e)
        if error is not e:
            raise error from e
        raise


class RemoteEndpoint(ABC):
    """CRUD endpoint for one entity type of one collection."""

    @abstractmethod
    async def list(self, owner_id: str, filters: Optional[ItemFilters] = None,
                   page: int = 1, limit: Optional[int] = None) -> List[Record]:
        """Return one page of records, newest first unless the endpoint orders otherwise."""

    @abstractmethod
    async def create(self, owner_id: str, fields: Dict[str, Any]) -> Record:
        """Create a record; may raise RemoteError(QUOTA_EXCEEDED)."""

    @abstractmethod
    async def update(self, owner_id: str, record_id: str, patch: Dict[str, Any]) -> Record:
        """Apply ``patch`` and return the authoritative record."""

    @abstractmethod
    async def delete(self, owner_id: str, record_id: str) -> None:
        """Delete a record (folders cascade server-side)."""

    async def stats(self, owner_id: str, recent_days: int = 7) -> ItemStats:
        """Summary counts for an item endpoint."""
        raise NotImplementedError(f"{type(self).__name__} does not report stats")


Subscriber = Callable[[ChangeEvent], None]


class ChangeFeed:
    """Fan-out of server change events to per-owner subscribers."""

    def __init__(self):
        self._subscribers: Dict[int, tuple] = {}
        self._next_token = 0

    def subscribe(self, owner_id: str, callback: Subscriber) -> int:
        self._next_token += 1
        self._subscribers[self._next_token] = (owner_id, callback)
        return self._next_token

    def unsubscribe(self, token: int):
        self._subscribers.pop(token, None)

    def publish(self, event: ChangeEvent):
        for owner_id, callback in list(self._subscribers.values()):
            if owner_id != event.owner_id:
                continue
            try:
                callback(event)
            except Exception as e:
                # the write is already committed; keep delivering to the rest
                logger.error(f"Change subscriber failed on {event.op.value} {event.record.id}: {e}")


class Remote(ABC):
    """The authoritative store: endpoints per collection plus a change feed."""

    feed: ChangeFeed

    @abstractmethod
    def folders(self, kind: CollectionKind) -> RemoteEndpoint:
        """Folder endpoint for ``kind``; records are Folder models."""

    @abstractmethod
    def items(self, kind: CollectionKind) -> RemoteEndpoint:
        """Item endpoint for ``kind``; records are Item models."""
