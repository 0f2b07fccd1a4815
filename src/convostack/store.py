"""
Normalized, owner-scoped record store.

Holds folders or items for a single authenticated owner as an ordered list
keyed by id. It never talks to the network; the coordinator and the change
feed are its only writers.
"""

import logging
from typing import Dict, Generic, Iterable, List, Optional, Tuple, TypeVar

from .models import Record

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Record)


class EntityStore(Generic[R]):
    """Ordered map of id -> record for one owner."""

    def __init__(self, owner_id: str):
        self.owner_id = owner_id
        self._order: List[str] = []
        self._records: Dict[str, R] = {}
        self.version = 0

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records

    def _owned(self, record: R) -> bool:
        if record.owner_id != self.owner_id:
            logger.warning(f"Refusing record {record.id} owned by another user")
            return False
        return True

    def _touch(self):
        self.version += 1

    def get(self, record_id: Optional[str]) -> Optional[R]:
        if record_id is None:
            return None
        return self._records.get(record_id)

    def all(self) -> List[R]:
        return [self._records[record_id] for record_id in self._order]

    def index_of(self, record_id: str) -> Optional[int]:
        try:
            return self._order.index(record_id)
        except ValueError:
            return None

    def upsert_many(self, records: Iterable[R]) -> int:
        """Insert or replace records by id; existing records keep their position."""
        changed = 0
        for record in records:
            if not self._owned(record):
                continue
            if record.id not in self._records:
                self._order.append(record.id)
            elif self._records[record.id] == record:
                continue
            self._records[record.id] = record
            changed += 1
        if changed:
            self._touch()
        return changed

    def insert(self, record: R, index: Optional[int] = None) -> bool:
        """Insert a new record at ``index`` (end when None); replaces in place if present."""
        if not self._owned(record):
            return False
        if record.id in self._records:
            self._records[record.id] = record
        elif index is None:
            self._order.append(record.id)
            self._records[record.id] = record
        else:
            self._order.insert(max(0, min(index, len(self._order))), record.id)
            self._records[record.id] = record
        self._touch()
        return True

    def replace(self, old_id: str, record: R) -> bool:
        """Swap the record at ``old_id`` for ``record``, keeping the position."""
        if old_id not in self._records or not self._owned(record):
            return False
        if record.id != old_id and record.id in self._records:
            # already delivered (e.g. by a change event); keep one copy
            self._order.remove(record.id)
            del self._records[record.id]
        position = self._order.index(old_id)
        del self._records[old_id]
        self._order[position] = record.id
        self._records[record.id] = record
        self._touch()
        return True

    def remove(self, record_id: str) -> Optional[R]:
        record = self._records.pop(record_id, None)
        if record is not None:
            self._order.remove(record_id)
            self._touch()
        return record

    def take(self, record_ids: Iterable[str]) -> List[Tuple[int, R]]:
        """Remove records and return ``(index, record)`` pairs for a later restore."""
        wanted = set(record_ids)
        taken = [
            (position, self._records[record_id])
            for position, record_id in enumerate(self._order)
            if record_id in wanted
        ]
        if taken:
            self._order = [record_id for record_id in self._order if record_id not in wanted]
            for _, record in taken:
                del self._records[record.id]
            self._touch()
        return taken

    def restore(self, taken: Iterable[Tuple[int, R]]):
        """Undo a ``take``: put records back at the positions they came from."""
        for position, record in sorted(taken, key=lambda pair: pair[0]):
            if record.id in self._records:
                self._order.remove(record.id)
            self._order.insert(min(position, len(self._order)), record.id)
            self._records[record.id] = record
        self._touch()

    def reset(self, records: Iterable[R] = ()):
        """Replace the whole content, e.g. after a full refetch."""
        self._order = []
        self._records = {}
        for record in records:
            if self._owned(record) and record.id not in self._records:
                self._order.append(record.id)
                self._records[record.id] = record
        self._touch()

    def clear(self):
        self.reset()
