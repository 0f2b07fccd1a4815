"""
Pure derivations over a flat list of folders.

* build_tree: parent -> children forest with per-folder depth and path
* can_reparent: cycle guard for folder moves
* filter_folders: name search that keeps every ancestor of a match
* scope_to_folder: a folder with its ancestry and descendants

Every ancestor walk is iterative and capped at MAX_ANCESTOR_HOPS so that a
corrupted parent chain cannot hang the derivation.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Set

from .models import Folder, TreeNode

logger = logging.getLogger(__name__)

MAX_ANCESTOR_HOPS = 20

_EPOCH = datetime.min


def _index(folders: Iterable[Folder]) -> Dict[str, Folder]:
    return {folder.id: folder for folder in folders}


def _sort_key(folder: Folder):
    created = folder.created_at.replace(tzinfo=None) if folder.created_at else _EPOCH
    return (folder.name.casefold(), created)


def ancestor_chain(folder_id: str, by_id: Dict[str, Folder],
                   max_hops: int = MAX_ANCESTOR_HOPS) -> List[Folder]:
    """Ancestors of ``folder_id``, nearest first, excluding the folder itself."""
    chain: List[Folder] = []
    seen = {folder_id}
    current = by_id.get(folder_id)
    hops = 0
    while current is not None and current.parent_id and hops < max_hops:
        parent = by_id.get(current.parent_id)
        if parent is None or parent.id in seen:
            break
        chain.append(parent)
        seen.add(parent.id)
        current = parent
        hops += 1
    return chain


def ancestor_ids(folders: Iterable[Folder], folder_id: str) -> List[str]:
    return [folder.id for folder in ancestor_chain(folder_id, _index(folders))]


def descendant_ids(folders: Iterable[Folder], folder_id: str) -> List[str]:
    """Every folder below ``folder_id`` (breadth-first, cycle-safe)."""
    children: Dict[str, List[str]] = {}
    for folder in folders:
        if folder.parent_id:
            children.setdefault(folder.parent_id, []).append(folder.id)

    found: List[str] = []
    seen = {folder_id}
    queue = [folder_id]
    while queue:
        current = queue.pop(0)
        for child_id in children.get(current, []):
            if child_id not in seen:
                seen.add(child_id)
                found.append(child_id)
                queue.append(child_id)
    return found


class Forest:
    """Result of build_tree: roots plus depth/path lookups per folder id."""

    def __init__(self, roots: List[TreeNode], depths: Dict[str, int], paths: Dict[str, List[str]]):
        self.roots = roots
        self._depths = depths
        self._paths = paths

    def __len__(self) -> int:
        return len(self._depths)

    def __contains__(self, folder_id: object) -> bool:
        return folder_id in self._depths

    def depth(self, folder_id: str) -> int:
        return self._depths[folder_id]

    def path(self, folder_id: str) -> List[str]:
        return list(self._paths[folder_id])

    def path_string(self, folder_id: str, sep: str = " / ") -> str:
        return sep.join(self._paths[folder_id])

    def flatten(self) -> List[TreeNode]:
        """Depth-first pre-order listing, suitable for indented rendering."""
        ordered: List[TreeNode] = []
        stack = list(reversed(self.roots))
        while stack:
            node = stack.pop()
            ordered.append(node)
            stack.extend(reversed(node.children))
        return ordered

    def find_by_path(self, path: str, sep: str = "/") -> Optional[Folder]:
        """Resolve "Work/Notes" style paths (case-insensitive) to a folder."""
        parts = [part.strip().casefold() for part in path.split(sep) if part.strip()]
        if not parts:
            return None
        level = self.roots
        node = None
        for part in parts:
            node = next((n for n in level if n.folder.name.casefold() == part), None)
            if node is None:
                return None
            level = node.children
        return node.folder if node else None


def build_tree(folders: Sequence[Folder]) -> Forest:
    """Derive the folder forest from a flat folder list."""
    by_id = _index(folders)

    depths: Dict[str, int] = {}
    paths: Dict[str, List[str]] = {}
    for folder in folders:
        chain = ancestor_chain(folder.id, by_id)
        depths[folder.id] = len(chain)
        paths[folder.id] = [ancestor.name for ancestor in reversed(chain)] + [folder.name]

    children: Dict[str, List[Folder]] = {}
    roots: List[Folder] = []
    for folder in folders:
        if folder.parent_id and folder.parent_id in by_id and folder.parent_id != folder.id:
            children.setdefault(folder.parent_id, []).append(folder)
        else:
            roots.append(folder)

    nodes = {
        folder.id: TreeNode(folder=folder, depth=depths[folder.id], path=paths[folder.id])
        for folder in folders
    }
    placed: Set[str] = set()

    def attach(root_folders: List[Folder]) -> List[TreeNode]:
        attached = []
        queue = []
        for folder in sorted(root_folders, key=_sort_key):
            if folder.id in placed:
                continue
            placed.add(folder.id)
            attached.append(nodes[folder.id])
            queue.append(folder.id)
        while queue:
            parent_id = queue.pop(0)
            for child in sorted(children.get(parent_id, []), key=_sort_key):
                if child.id in placed:
                    continue
                placed.add(child.id)
                nodes[parent_id].children.append(nodes[child.id])
                queue.append(child.id)
        return attached

    root_nodes = attach(roots)

    # Anything still unplaced sits on a parent cycle; surface it as a root.
    stranded = [folder for folder in folders if folder.id not in placed]
    while stranded:
        logger.warning(f"Folder {stranded[0].id} is part of a parent cycle; showing it as a root")
        root_nodes.extend(attach([stranded[0]]))
        stranded = [folder for folder in stranded if folder.id not in placed]

    root_nodes.sort(key=lambda node: _sort_key(node.folder))
    return Forest(root_nodes, depths, paths)


class RejectReason(str, Enum):
    SELF_PARENT = "self_parent"
    WOULD_CREATE_CYCLE = "would_create_cycle"
    NO_OP = "no_op"


class ReparentVerdict:
    """Outcome of can_reparent: ``ok`` or a rejection reason."""

    __slots__ = ("reason",)

    def __init__(self, reason: Optional[RejectReason] = None):
        self.reason = reason

    @property
    def ok(self) -> bool:
        return self.reason is None

    def __bool__(self) -> bool:
        return self.ok

    def __eq__(self, other) -> bool:
        return isinstance(other, ReparentVerdict) and other.reason == self.reason

    def __repr__(self) -> str:
        return "ReparentVerdict(ok)" if self.ok else f"ReparentVerdict({self.reason.value})"


def can_reparent(folders: Iterable[Folder], folder_id: str,
                 new_parent_id: Optional[str]) -> ReparentVerdict:
    """Check whether moving ``folder_id`` under ``new_parent_id`` keeps the forest acyclic."""
    by_id = _index(folders)
    folder = by_id.get(folder_id)

    if new_parent_id == folder_id:
        return ReparentVerdict(RejectReason.SELF_PARENT)
    if folder is not None and folder.parent_id == new_parent_id:
        return ReparentVerdict(RejectReason.NO_OP)
    if new_parent_id is None:
        return ReparentVerdict()

    seen: Set[str] = set()
    current_id: Optional[str] = new_parent_id
    hops = 0
    while current_id is not None:
        if current_id == folder_id:
            return ReparentVerdict(RejectReason.WOULD_CREATE_CYCLE)
        if current_id in seen or hops > MAX_ANCESTOR_HOPS:
            # corrupted chain: refuse rather than guess
            logger.warning(f"Ancestor walk from {new_parent_id} did not terminate cleanly")
            return ReparentVerdict(RejectReason.WOULD_CREATE_CYCLE)
        seen.add(current_id)
        current = by_id.get(current_id)
        current_id = current.parent_id if current is not None else None
        hops += 1
    return ReparentVerdict()


def filter_folders(folders: Sequence[Folder], query: Optional[str]) -> List[Folder]:
    """Folders whose name contains ``query`` plus all of their ancestors."""
    needle = (query or "").strip().casefold()
    if not needle:
        return list(folders)

    by_id = _index(folders)
    keep: Set[str] = set()
    for folder in folders:
        if needle in folder.name.casefold():
            keep.add(folder.id)
            keep.update(ancestor.id for ancestor in ancestor_chain(folder.id, by_id))
    return [folder for folder in folders if folder.id in keep]


def scope_to_folder(folders: Sequence[Folder], folder_id: Optional[str]) -> List[Folder]:
    """The selected folder, its ancestry and all its descendants."""
    if not folder_id:
        return list(folders)
    keep = {folder_id}
    keep.update(ancestor_ids(folders, folder_id))
    keep.update(descendant_ids(folders, folder_id))
    return [folder for folder in folders if folder.id in keep]
