"""
Data models for ConvoStack.

Defines the records the engine caches (folders and items), the payloads used
to create and update them, list filters, derived tree nodes and the change
events pushed by the remote store. The SQLAlchemy tables backing the reference
remote live here as well.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

PROVISIONAL_PREFIX = "temp-"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_server_id() -> str:
    return str(uuid.uuid4())


def new_provisional_id() -> str:
    """Generate an id that can never collide with a server-issued one."""
    return f"{PROVISIONAL_PREFIX}{uuid.uuid4().hex}"


def is_provisional(record_id: Optional[str]) -> bool:
    return bool(record_id) and record_id.startswith(PROVISIONAL_PREFIX)


class CollectionKind(str, Enum):
    BOOKMARKS = "bookmarks"
    PROMPTS = "prompts"


class EntityType(str, Enum):
    FOLDER = "folder"
    ITEM = "item"


class ChangeOp(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class FolderDB(Base):
    """SQLAlchemy model for folders."""
    __tablename__ = 'folders'

    id = Column(String(64), primary_key=True, default=new_server_id)
    collection = Column(String(20), nullable=False, index=True)
    owner_id = Column(String(64), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    parent_id = Column(String(64), ForeignKey('folders.id'))
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    items = relationship("ItemDB", back_populates="folder")


class ItemDB(Base):
    """SQLAlchemy model for bookmarks and prompts."""
    __tablename__ = 'items'

    id = Column(String(64), primary_key=True, default=new_server_id)
    collection = Column(String(20), nullable=False, index=True)
    owner_id = Column(String(64), nullable=False, index=True)
    folder_id = Column(String(64), ForeignKey('folders.id'), nullable=False)
    title = Column(String(200), nullable=False)
    url_or_content = Column(Text, nullable=False)
    label = Column(String(50))
    platform = Column(String(50))
    notes = Column(Text)
    usage = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    folder = relationship("FolderDB", back_populates="items")


# Pydantic models for the engine
class Folder(BaseModel):
    """A folder as cached by the engine."""
    id: str
    owner_id: str
    name: str = Field(..., min_length=1, max_length=100)
    parent_id: Optional[str] = None
    created_at: Optional[datetime] = None
    item_count: int = 0

    class Config:
        from_attributes = True
        frozen = True


class Item(BaseModel):
    """A bookmark (url) or prompt (content) stored in a folder."""
    id: str
    owner_id: str
    folder_id: str
    title: str = Field(..., min_length=1, max_length=200)
    url_or_content: str = Field(..., min_length=1)
    label: Optional[str] = None
    platform: Optional[str] = None
    notes: Optional[str] = None
    usage: int = 0
    created_at: Optional[datetime] = None
    folder_name: Optional[str] = None

    class Config:
        from_attributes = True
        frozen = True


class FolderCreate(BaseModel):
    """Model for creating new folders."""
    name: str = Field(..., min_length=1, max_length=100)
    parent_id: Optional[str] = None


class FolderUpdate(BaseModel):
    """Model for renaming or moving folders."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    parent_id: Optional[str] = None


class ItemCreate(BaseModel):
    """Model for creating new items."""
    folder_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=200)
    url_or_content: str = Field(..., min_length=1)
    label: Optional[str] = None
    platform: Optional[str] = None
    notes: Optional[str] = None


class ItemUpdate(BaseModel):
    """Model for editing items."""
    folder_id: Optional[str] = Field(None, min_length=1)
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    url_or_content: Optional[str] = Field(None, min_length=1)
    label: Optional[str] = None
    platform: Optional[str] = None
    notes: Optional[str] = None
    usage: Optional[int] = Field(None, ge=0)


class ItemStats(BaseModel):
    """Per-owner summary of one collection."""
    total_count: int = 0
    by_platform: Dict[str, int] = {}
    by_label: Dict[str, int] = {}
    recent_count: int = 0


class ItemFilters(BaseModel):
    """Active filters of an item list."""
    folder_id: Optional[str] = None
    search: Optional[str] = None
    label: Optional[str] = None
    platform: Optional[str] = None

    class Config:
        frozen = True

    def matches(self, item: Item) -> bool:
        """Apply the same predicate the remote list endpoint applies."""
        if self.folder_id and item.folder_id != self.folder_id:
            return False
        if self.label and item.label != self.label:
            return False
        if self.platform and item.platform != self.platform:
            return False
        if self.search:
            needle = self.search.casefold()
            haystacks = [item.title, item.notes or ""]
            if not any(needle in text.casefold() for text in haystacks):
                return False
        return True


class TreeNode(BaseModel):
    """Derived tree node; recomputed from the folder store, never persisted."""
    folder: Folder
    children: List['TreeNode'] = []
    depth: int = 0
    path: List[str] = []


Record = Union[Folder, Item]


class OptimisticEnvelope(BaseModel):
    """A provisional record awaiting confirmation of its create."""
    provisional_id: str
    intent: Dict[str, Any]
    record: Record
    visible: bool = True


class ChangeEvent(BaseModel):
    """Server-pushed notification for a record of the authenticated owner."""
    collection: CollectionKind
    entity: EntityType
    op: ChangeOp
    owner_id: str
    record: Record


# Forward reference resolution
TreeNode.model_rebuild()
