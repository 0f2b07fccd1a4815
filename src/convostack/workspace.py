"""
Session-scoped container for every collection of the signed-in owner.
"""

import asyncio
import logging
from typing import Dict, Optional

from .collection import HierarchicalCollection
from .config import EngineConfig
from .models import ChangeEvent, CollectionKind
from .remote import Remote

logger = logging.getLogger(__name__)


class Workspace:
    """Builds collections on sign-in and tears them down on sign-out."""

    def __init__(self, remote: Remote, config: Optional[EngineConfig] = None):
        self.remote = remote
        self.config = config or EngineConfig()
        self.owner_id: Optional[str] = None
        self.collections: Dict[CollectionKind, HierarchicalCollection] = {}
        self._subscription: Optional[int] = None

    @property
    def signed_in(self) -> bool:
        return self.owner_id is not None

    async def sign_in(self, owner_id: str, load: bool = True):
        """Create one collection per kind and (optionally) load folders and page 1."""
        if not owner_id:
            raise ValueError("owner_id is required")
        if self.owner_id is not None:
            self.sign_out()

        self.owner_id = owner_id
        self.collections = {
            kind: HierarchicalCollection(kind, self.remote, owner_id, self.config)
            for kind in CollectionKind
        }
        self._subscription = self.remote.feed.subscribe(owner_id, self._on_event)
        logger.info(f"Signed in {owner_id}")

        if load:
            await self.refresh()

    async def refresh(self):
        """Force a reload of folders and the first page of every collection."""
        loads = []
        for collection in self.collections.values():
            loads.append(collection.refresh_folders(force=True))
            loads.append(collection.refresh_items())
        await asyncio.gather(*loads)

    def sign_out(self):
        if self._subscription is not None:
            self.remote.feed.unsubscribe(self._subscription)
            self._subscription = None
        for collection in self.collections.values():
            collection.reset()
        self.collections = {}
        if self.owner_id is not None:
            logger.info(f"Signed out {self.owner_id}")
        self.owner_id = None

    def collection(self, kind: CollectionKind) -> HierarchicalCollection:
        if not self.signed_in:
            raise RuntimeError("No owner is signed in")
        return self.collections[CollectionKind(kind)]

    def _on_event(self, event: ChangeEvent):
        collection = self.collections.get(event.collection)
        if collection is not None:
            collection.apply_event(event)
