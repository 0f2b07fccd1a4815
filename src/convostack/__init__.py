"""
ConvoStack - bookmarks and prompts organized in nested folders.

This package provides:
- A generic hierarchical collection engine (folder forest + paginated items)
- Optimistic mutations reconciled against a remote store
- A SQLAlchemy reference remote and a CLI for local use
"""

__version__ = "0.1.0"

from .collection import HierarchicalCollection
from .database import Database
from .errors import (
    EngineError, ErrorKind, NetworkError, NotFoundError, OperationInProgressError,
    QuotaExceededError, ValidationError,
)
from .models import ChangeEvent, CollectionKind, Folder, Item, ItemFilters, TreeNode
from .workspace import Workspace

__all__ = [
    "ChangeEvent", "CollectionKind", "Database", "EngineError", "ErrorKind", "Folder",
    "HierarchicalCollection", "Item", "ItemFilters", "NetworkError", "NotFoundError",
    "OperationInProgressError", "QuotaExceededError", "TreeNode", "ValidationError", "Workspace",
]
