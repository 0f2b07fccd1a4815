"""
Shared fixtures and fakes for the engine tests.

FakeEndpoint is an in-memory RemoteEndpoint whose calls can be held open
(to observe optimistic state mid-flight), made to fail, or slowed down.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest

from convostack.database import Database
from convostack.models import Folder, Item, ItemFilters
from convostack.remote import RemoteEndpoint, RemoteError

OWNER = "user-1"
BASE_TIME = datetime(2025, 1, 1, 12, 0, 0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_folder(id: str, name: str, parent_id: Optional[str] = None,
                owner_id: str = OWNER, minutes: int = 0, item_count: int = 0) -> Folder:
    return Folder(
        id=id,
        owner_id=owner_id,
        name=name,
        parent_id=parent_id,
        created_at=BASE_TIME + timedelta(minutes=minutes),
        item_count=item_count,
    )


def make_item(id: str, folder_id: str = "f1", title: Optional[str] = None,
              owner_id: str = OWNER, minutes: int = 0, **extra: Any) -> Item:
    return Item(
        id=id,
        owner_id=owner_id,
        folder_id=folder_id,
        title=title or f"Item {id}",
        url_or_content=extra.pop("url_or_content", f"https://example.com/{id}"),
        created_at=BASE_TIME + timedelta(minutes=minutes),
        **extra,
    )


async def settle(rounds: int = 5):
    """Let pending tasks run up to their next suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeEndpoint(RemoteEndpoint):
    """Scriptable in-memory endpoint."""

    def __init__(self, record_type, records=()):
        self.record_type = record_type
        self.records: Dict[str, Any] = {record.id: record for record in records}
        self.calls: List[tuple] = []
        self.failures: List[BaseException] = []
        self.delay = 0.0
        self._gates: List[asyncio.Event] = []
        self._counter = 0

    def hold_next(self) -> asyncio.Event:
        """The next call blocks until the returned event is set."""
        gate = asyncio.Event()
        self._gates.append(gate)
        return gate

    def fail_next(self, exc: BaseException):
        self.failures.append(exc)

    async def _enter(self, name: str, *args):
        self.calls.append((name,) + args)
        gate = self._gates.pop(0) if self._gates else None
        failure = self.failures.pop(0) if self.failures else None
        if gate is not None:
            await gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if failure is not None:
            raise failure

    async def list(self, owner_id, filters=None, page=1, limit=None):
        await self._enter("list", filters, page, limit)
        records = [r for r in self.records.values() if r.owner_id == owner_id]
        if self.record_type is Item:
            filters = filters or ItemFilters()
            records = [r for r in records if filters.matches(r)]
            records.sort(key=lambda r: r.created_at, reverse=True)
        if limit:
            records = records[(page - 1) * limit:page * limit]
        return records

    async def create(self, owner_id, fields):
        await self._enter("create", dict(fields))
        self._counter += 1
        record = self.record_type.model_validate({
            **fields,
            "id": f"srv-{self._counter}",
            "owner_id": owner_id,
            "created_at": BASE_TIME + timedelta(days=1, minutes=self._counter),
        })
        self.records[record.id] = record
        return record

    async def update(self, owner_id, record_id, patch):
        await self._enter("update", record_id, dict(patch))
        if record_id not in self.records:
            raise RemoteError(RemoteError.NOT_FOUND, f"{record_id} not found")
        record = self.records[record_id].model_copy(update=patch)
        self.records[record_id] = record
        return record

    async def delete(self, owner_id, record_id):
        await self._enter("delete", record_id)
        if record_id not in self.records:
            raise RemoteError(RemoteError.NOT_FOUND, f"{record_id} not found")
        del self.records[record_id]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def folder_endpoint():
    return FakeEndpoint(Folder)


@pytest.fixture
def item_endpoint():
    return FakeEndpoint(Item)


@pytest.fixture
def db(tmp_path):
    """Reference remote on a throwaway SQLite file, no quotas."""
    return Database(str(tmp_path / "test.db"))


@pytest.fixture
def limited_db(tmp_path):
    """Reference remote with free tier quotas."""
    return Database(
        str(tmp_path / "limited.db"),
        quotas={"bookmarks": {"folders": 2, "items": 3}},
    )
