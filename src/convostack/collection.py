"""
One hierarchical collection (bookmarks or prompts) for one owner.

Wires a folder store with its coordinator, a paginated item list with its
coordinator, and the derived folder forest. UI code dispatches intents here;
it never writes to the stores directly.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from .config import EngineConfig
from .coordinator import CascadeTarget, FolderCoordinator, OptimisticCoordinator
from .errors import EngineError, NotFoundError, OperationInProgressError
from .models import (
    ChangeEvent, ChangeOp, CollectionKind, EntityType, Folder, FolderCreate, FolderUpdate, Item,
    ItemCreate, ItemStats, ItemUpdate, is_provisional,
)
from .query import PaginatedQuery
from .remote import Remote, call_remote
from .store import EntityStore
from .tree import Forest, build_tree, descendant_ids, filter_folders, scope_to_folder

logger = logging.getLogger(__name__)


class HierarchicalCollection:
    """Folders plus paginated items of one collection kind."""

    def __init__(self, kind: CollectionKind, remote: Remote, owner_id: str,
                 config: Optional[EngineConfig] = None):
        self.kind = kind
        self.owner_id = owner_id
        self.config = config or EngineConfig()
        timeout = self.config.request_timeout

        self.folder_endpoint = remote.folders(kind)
        self.item_endpoint = remote.items(kind)
        self.folder_store: EntityStore[Folder] = EntityStore(owner_id)
        self.item_store: EntityStore[Item] = EntityStore(owner_id)

        self.query = PaginatedQuery(self.item_store, self.item_endpoint,
                                    page_size=self.config.page_size, timeout=timeout)
        self.folder_ops = FolderCoordinator(self.folder_store, self.folder_endpoint,
                                            timeout=timeout, cascade=self._folder_cascade)
        self.item_ops: OptimisticCoordinator[Item] = OptimisticCoordinator(
            self.item_store, self.item_endpoint, Item,
            timeout=timeout,
            admit=self.query.admits,
            insert_at=0,
            complete=False,
            on_visible_delta=self.query.adjust_estimate,
            on_settled=self._count_item,
        )

        self.folder_error: Optional[EngineError] = None
        self._folders_fetching = False
        self._last_folder_fetch: Optional[float] = None
        self._forest: Optional[Forest] = None
        self._forest_version = -1
        self._epoch = 0
        # item id -> folder it is counted in (None once deleted)
        self._counted: Dict[str, Optional[str]] = {}

    # Derived views
    @property
    def folders(self) -> List[Folder]:
        return self.folder_store.all()

    @property
    def items(self) -> List[Item]:
        return self.query.items

    @property
    def tree(self) -> Forest:
        if self._forest is None or self._forest_version != self.folder_store.version:
            self._forest = build_tree(self.folders)
            self._forest_version = self.folder_store.version
        return self._forest

    def search_folders(self, query: Optional[str]) -> List[Folder]:
        return filter_folders(self.folders, query)

    def scope(self, folder_id: Optional[str]) -> List[Folder]:
        return scope_to_folder(self.folders, folder_id)

    def folder_path(self, folder_id: str, sep: str = " / ") -> str:
        return self.tree.path_string(folder_id, sep)

    def _folder_cascade(self, folder: Folder) -> List[CascadeTarget]:
        subtree = descendant_ids(self.folders, folder.id)
        doomed = set(subtree) | {folder.id}
        items = [item.id for item in self.item_store.all() if item.folder_id in doomed]
        return [
            CascadeTarget(self.folder_store, subtree, self.folder_ops),
            CascadeTarget(self.item_store, items, self.item_ops),
        ]

    def _count_item(self, op: ChangeOp, before: Optional[Item], after: Optional[Item]):
        """Keep Folder.item_count in step with confirmed item changes.

        Each item is counted in one folder at most; a change already counted
        (our own confirmation and its echo on the change feed) is skipped.
        """
        item_id = (after or before).id
        if item_id in self._counted:
            old = self._counted[item_id]
        elif before is not None:
            old = before.folder_id
        elif op == ChangeOp.UPDATE:
            # an unloaded item changed; we cannot tell where it was counted
            self._counted[item_id] = after.folder_id
            return
        else:
            old = None
        new = after.folder_id if after is not None else None
        self._counted[item_id] = new
        if old != new:
            self._bump_count(old, -1)
            self._bump_count(new, 1)

    def _bump_count(self, folder_id: Optional[str], delta: int):
        folder = self.folder_store.get(folder_id)
        if folder is not None:
            count = max(0, folder.item_count + delta)
            self.folder_store.upsert_many([folder.model_copy(update={"item_count": count})])

    def _require_folder(self, folder_id: str) -> Folder:
        if is_provisional(folder_id):
            raise OperationInProgressError(f"Folder {folder_id} is still being created")
        folder = self.folder_store.get(folder_id)
        if folder is None:
            raise NotFoundError(f"Folder {folder_id} not found")
        return folder

    # Folders
    async def refresh_folders(self, force: bool = False) -> List[Folder]:
        """Reload every folder; throttled unless ``force``."""
        if self._folders_fetching:
            return self.folders
        now = time.monotonic()
        if (not force and self._last_folder_fetch is not None
                and now - self._last_folder_fetch < self.config.folder_fetch_throttle):
            return self.folders

        self._folders_fetching = True
        epoch = self._epoch
        try:
            records = await call_remote(self.folder_endpoint.list(self.owner_id),
                                        self.config.request_timeout)
        except EngineError as e:
            logger.error(f"Error fetching {self.kind.value} folders: {e}")
            self.folder_error = e
            raise
        finally:
            self._folders_fetching = False

        if epoch != self._epoch:
            return self.folders
        pending = [folder for folder in self.folders if is_provisional(folder.id)]
        self.folder_store.reset(list(records) + pending)
        self._last_folder_fetch = time.monotonic()
        self.folder_error = None
        return self.folders

    async def create_folder(self, name: str, parent_id: Optional[str] = None) -> Folder:
        data = FolderCreate(name=name, parent_id=parent_id)
        if parent_id is not None:
            self._require_folder(parent_id)
        return await self.folder_ops.create(data.model_dump())

    async def rename_folder(self, folder_id: str, name: str) -> Folder:
        data = FolderUpdate(name=name)
        return await self.folder_ops.update(folder_id, data.model_dump(exclude_unset=True))

    async def move_folder(self, folder_id: str, new_parent_id: Optional[str]) -> Folder:
        return await self.folder_ops.move(folder_id, new_parent_id)

    async def delete_folder(self, folder_id: str) -> None:
        """Delete a folder; its subfolders and loaded items go with it."""
        await self.folder_ops.delete(folder_id)

    # Items
    async def set_filters(self, **patch: Any) -> List[Item]:
        return await self.query.set_filters(**patch)

    async def load_more(self) -> List[Item]:
        return await self.query.load_more()

    async def refresh_items(self) -> List[Item]:
        return await self.query.refresh()

    async def create_item(self, **fields: Any) -> Item:
        data = ItemCreate(**fields)
        self._require_folder(data.folder_id)
        return await self.item_ops.create(data.model_dump())

    async def update_item(self, item_id: str, **patch: Any) -> Item:
        changes = ItemUpdate(**patch).model_dump(exclude_unset=True)
        if changes.get("folder_id") is not None:
            self._require_folder(changes["folder_id"])
        return await self.item_ops.update(item_id, changes)

    async def move_item(self, item_id: str, folder_id: str) -> Item:
        return await self.update_item(item_id, folder_id=folder_id)

    async def delete_item(self, item_id: str) -> None:
        await self.item_ops.delete(item_id)

    async def record_usage(self, item_id: str) -> Item:
        """Count one use of an item (a prompt sent to a platform, a link opened)."""
        current = self.item_store.get(item_id)
        if current is None:
            raise NotFoundError(f"Item {item_id} not found")
        return await self.item_ops.update(item_id, {"usage": current.usage + 1})

    async def stats(self, recent_days: int = 7) -> ItemStats:
        """Totals by platform and label, plus items created in the last ``recent_days``."""
        return await call_remote(self.item_endpoint.stats(self.owner_id, recent_days),
                                 self.config.request_timeout)

    # Reconciliation
    def apply_event(self, event: ChangeEvent):
        """Fold a server change event into the local stores."""
        if event.collection != self.kind or event.owner_id != self.owner_id:
            return
        if event.entity == EntityType.FOLDER:
            self.folder_ops.apply_event(event.op, event.record)
        else:
            self.item_ops.apply_event(event.op, event.record)

    def reset(self):
        """Drop all local state (sign-out)."""
        self._epoch += 1
        self.folder_ops.reset()
        self.item_ops.reset()
        self.query.reset()
        self._last_folder_fetch = None
        self._forest = None
        self._counted = {}
        self.folder_error = None
