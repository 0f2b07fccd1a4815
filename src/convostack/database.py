"""
Database layer for ConvoStack.

A SQLAlchemy-backed reference implementation of the remote store: owner
scoped CRUD for folders and items of every collection, per-tier quotas,
server-side cascade deletes, and change events published after each commit.
"""

import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as SchemaError
from sqlalchemy import create_engine, func, or_
from sqlalchemy.orm import Session, sessionmaker

from .models import (
    Base, ChangeEvent, ChangeOp, CollectionKind, EntityType, Folder, FolderCreate, FolderDB,
    FolderUpdate, Item, ItemCreate, ItemDB, ItemFilters, ItemStats, ItemUpdate, utcnow,
)
from .remote import ChangeFeed, Remote, RemoteEndpoint, RemoteError
from .tree import RejectReason, can_reparent, descendant_ids

logger = logging.getLogger(__name__)


class Database(Remote):
    """Database management class."""

    def __init__(self, db_path: Optional[str] = None,
                 quotas: Optional[Dict[str, Dict[str, Optional[int]]]] = None,
                 feed: Optional[ChangeFeed] = None):
        """Initialize database connection."""
        if db_path is None:
            # Default to user's data directory
            data_dir = Path.home() / ".convostack"
            data_dir.mkdir(exist_ok=True)
            db_path = str(data_dir / "convostack.db")

        self.db_path = db_path
        self.engine = create_engine(f"sqlite:///{db_path}")
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        self.quotas = quotas or {}
        self.feed = feed or ChangeFeed()

        # Create tables
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    def folders(self, kind: CollectionKind) -> RemoteEndpoint:
        return _FolderEndpoint(self, kind)

    def items(self, kind: CollectionKind) -> RemoteEndpoint:
        return _ItemEndpoint(self, kind)

    def _quota(self, kind: CollectionKind, entity: str) -> Optional[int]:
        return self.quotas.get(kind.value, {}).get(entity)

    def _publish(self, kind: CollectionKind, entity: EntityType, op: ChangeOp, record):
        self.feed.publish(ChangeEvent(
            collection=kind, entity=entity, op=op, owner_id=record.owner_id, record=record))

    # Folder operations
    def list_folders(self, kind: CollectionKind, owner_id: str,
                     page: int = 1, limit: Optional[int] = None) -> List[Folder]:
        """List an owner's folders ordered by name, with item counts."""
        with self.get_session() as session:
            query = (session.query(FolderDB)
                     .filter_by(collection=kind.value, owner_id=owner_id)
                     .order_by(FolderDB.name, FolderDB.created_at))
            if limit:
                query = query.offset((page - 1) * limit).limit(limit)

            counts = dict(
                session.query(ItemDB.folder_id, func.count(ItemDB.id))
                .filter_by(collection=kind.value, owner_id=owner_id)
                .group_by(ItemDB.folder_id)
                .all()
            )
            return [self._folder_db_to_pydantic(row, counts.get(row.id, 0)) for row in query.all()]

    def create_folder(self, kind: CollectionKind, owner_id: str, fields: Dict[str, Any]) -> Folder:
        """Create a new folder."""
        data = self._validate(FolderCreate, fields)
        with self.get_session() as session:
            if data.parent_id is not None:
                self._get_folder_row(session, kind, owner_id, data.parent_id)

            limit = self._quota(kind, "folders")
            if limit is not None:
                count = session.query(FolderDB).filter_by(collection=kind.value, owner_id=owner_id).count()
                if count >= limit:
                    raise RemoteError(RemoteError.QUOTA_EXCEEDED,
                                      f"Free tier users are limited to {limit} folders", limit=limit)

            folder_db = FolderDB(collection=kind.value, owner_id=owner_id,
                                 name=data.name, parent_id=data.parent_id)
            session.add(folder_db)
            session.commit()
            session.refresh(folder_db)
            folder = self._folder_db_to_pydantic(folder_db, 0)

        self._publish(kind, EntityType.FOLDER, ChangeOp.INSERT, folder)
        return folder

    def update_folder(self, kind: CollectionKind, owner_id: str, folder_id: str,
                      patch: Dict[str, Any]) -> Folder:
        """Rename and/or move a folder."""
        data = self._validate(FolderUpdate, patch)
        changes = data.model_dump(exclude_unset=True)
        with self.get_session() as session:
            folder_db = self._get_folder_row(session, kind, owner_id, folder_id)

            if "parent_id" in changes:
                new_parent_id = changes["parent_id"]
                if new_parent_id is not None:
                    self._get_folder_row(session, kind, owner_id, new_parent_id)
                siblings = (session.query(FolderDB)
                            .filter_by(collection=kind.value, owner_id=owner_id).all())
                verdict = can_reparent(
                    [self._folder_db_to_pydantic(row, 0) for row in siblings], folder_id, new_parent_id)
                if not verdict.ok and verdict.reason != RejectReason.NO_OP:
                    raise RemoteError("invalid_parent", f"Cannot move folder {folder_id}: {verdict.reason.value}")
                folder_db.parent_id = new_parent_id
            if changes.get("name") is not None:
                folder_db.name = changes["name"]

            session.commit()
            session.refresh(folder_db)
            count = session.query(ItemDB).filter_by(folder_id=folder_db.id).count()
            folder = self._folder_db_to_pydantic(folder_db, count)

        self._publish(kind, EntityType.FOLDER, ChangeOp.UPDATE, folder)
        return folder

    def delete_folder(self, kind: CollectionKind, owner_id: str, folder_id: str) -> None:
        """Delete a folder, its subfolders and every item inside them."""
        with self.get_session() as session:
            self._get_folder_row(session, kind, owner_id, folder_id)
            rows = session.query(FolderDB).filter_by(collection=kind.value, owner_id=owner_id).all()
            folders = [self._folder_db_to_pydantic(row, 0) for row in rows]
            doomed = [folder_id] + descendant_ids(folders, folder_id)

            item_rows = session.query(ItemDB).filter(ItemDB.folder_id.in_(doomed)).all()
            deleted_items = [self._item_db_to_pydantic(row) for row in item_rows]
            by_id = {folder.id: folder for folder in folders}
            deleted_folders = [by_id[i] for i in doomed]

            for row in item_rows:
                session.delete(row)
            session.flush()
            # children before parents
            for row in sorted((r for r in rows if r.id in doomed),
                              key=lambda r: doomed.index(r.id), reverse=True):
                session.delete(row)
                session.flush()
            session.commit()

        for item in deleted_items:
            self._publish(kind, EntityType.ITEM, ChangeOp.DELETE, item)
        for folder in deleted_folders:
            self._publish(kind, EntityType.FOLDER, ChangeOp.DELETE, folder)

    # Item operations
    def list_items(self, kind: CollectionKind, owner_id: str, filters: Optional[ItemFilters] = None,
                   page: int = 1, limit: Optional[int] = 50) -> List[Item]:
        """List items newest first with filtering and pagination."""
        filters = filters or ItemFilters()
        with self.get_session() as session:
            query = session.query(ItemDB).filter_by(collection=kind.value, owner_id=owner_id)

            if filters.folder_id:
                query = query.filter_by(folder_id=filters.folder_id)

            # Text search
            if filters.search:
                search_term = f"%{filters.search}%"
                query = query.filter(
                    or_(
                        ItemDB.title.ilike(search_term),
                        ItemDB.notes.ilike(search_term)
                    )
                )

            if filters.platform:
                query = query.filter_by(platform=filters.platform)
            if filters.label:
                query = query.filter_by(label=filters.label)

            query = query.order_by(ItemDB.created_at.desc(), ItemDB.id.desc())
            if limit:
                query = query.offset((page - 1) * limit).limit(limit)

            return [self._item_db_to_pydantic(row) for row in query.all()]

    def create_item(self, kind: CollectionKind, owner_id: str, fields: Dict[str, Any]) -> Item:
        """Create a new item."""
        data = self._validate(ItemCreate, fields)
        with self.get_session() as session:
            self._get_folder_row(session, kind, owner_id, data.folder_id)

            limit = self._quota(kind, "items")
            if limit is not None:
                count = session.query(ItemDB).filter_by(collection=kind.value, owner_id=owner_id).count()
                if count >= limit:
                    raise RemoteError(RemoteError.QUOTA_EXCEEDED,
                                      f"Free tier users are limited to {limit} {kind.value}", limit=limit)

            item_db = ItemDB(collection=kind.value, owner_id=owner_id, **data.model_dump())
            session.add(item_db)
            session.commit()
            session.refresh(item_db)
            item = self._item_db_to_pydantic(item_db)

        self._publish(kind, EntityType.ITEM, ChangeOp.INSERT, item)
        return item

    def update_item(self, kind: CollectionKind, owner_id: str, item_id: str,
                    patch: Dict[str, Any]) -> Item:
        """Update an item."""
        data = self._validate(ItemUpdate, patch)
        changes = data.model_dump(exclude_unset=True)
        with self.get_session() as session:
            item_db = self._get_item_row(session, kind, owner_id, item_id)
            if changes.get("folder_id") is not None:
                self._get_folder_row(session, kind, owner_id, changes["folder_id"])

            for key, value in changes.items():
                if key in ("folder_id", "title", "url_or_content", "usage") and value is None:
                    continue
                setattr(item_db, key, value)

            session.commit()
            session.refresh(item_db)
            item = self._item_db_to_pydantic(item_db)

        self._publish(kind, EntityType.ITEM, ChangeOp.UPDATE, item)
        return item

    def delete_item(self, kind: CollectionKind, owner_id: str, item_id: str) -> None:
        """Delete an item."""
        with self.get_session() as session:
            item_db = self._get_item_row(session, kind, owner_id, item_id)
            item = self._item_db_to_pydantic(item_db)
            session.delete(item_db)
            session.commit()

        self._publish(kind, EntityType.ITEM, ChangeOp.DELETE, item)

    def item_stats(self, kind: CollectionKind, owner_id: str, recent_days: int = 7) -> ItemStats:
        """Count an owner's items in total, by platform, by label and created recently."""
        with self.get_session() as session:
            query = session.query(ItemDB).filter_by(collection=kind.value, owner_id=owner_id)
            total = query.count()

            by_platform: Dict[str, int] = {}
            by_label: Dict[str, int] = {}
            for platform, label in query.with_entities(ItemDB.platform, ItemDB.label).all():
                platform = platform or "unknown"
                by_platform[platform] = by_platform.get(platform, 0) + 1
                if label:
                    by_label[label] = by_label.get(label, 0) + 1

            since = utcnow() - timedelta(days=recent_days)
            recent = query.filter(ItemDB.created_at >= since).count()

        return ItemStats(total_count=total, by_platform=by_platform, by_label=by_label,
                         recent_count=recent)

    # Helper methods
    @staticmethod
    def _validate(model, fields: Dict[str, Any]):
        try:
            return model.model_validate(fields)
        except SchemaError as e:
            raise RemoteError("invalid_request", str(e)) from e

    def _get_folder_row(self, session: Session, kind: CollectionKind, owner_id: str,
                        folder_id: str) -> FolderDB:
        folder_db = (session.query(FolderDB)
                     .filter_by(id=folder_id, collection=kind.value, owner_id=owner_id)
                     .first())
        if folder_db is None:
            raise RemoteError(RemoteError.NOT_FOUND, f"Folder {folder_id} not found")
        return folder_db

    def _get_item_row(self, session: Session, kind: CollectionKind, owner_id: str,
                      item_id: str) -> ItemDB:
        item_db = (session.query(ItemDB)
                   .filter_by(id=item_id, collection=kind.value, owner_id=owner_id)
                   .first())
        if item_db is None:
            raise RemoteError(RemoteError.NOT_FOUND, f"Item {item_id} not found")
        return item_db

    def _folder_db_to_pydantic(self, folder_db: FolderDB, item_count: int) -> Folder:
        """Convert SQLAlchemy folder to Pydantic model."""
        return Folder(
            id=folder_db.id,
            owner_id=folder_db.owner_id,
            name=folder_db.name,
            parent_id=folder_db.parent_id,
            created_at=folder_db.created_at,
            item_count=item_count
        )

    def _item_db_to_pydantic(self, item_db: ItemDB) -> Item:
        """Convert SQLAlchemy item to Pydantic model."""
        return Item(
            id=item_db.id,
            owner_id=item_db.owner_id,
            folder_id=item_db.folder_id,
            title=item_db.title,
            url_or_content=item_db.url_or_content,
            label=item_db.label,
            platform=item_db.platform,
            notes=item_db.notes,
            usage=item_db.usage or 0,
            created_at=item_db.created_at,
            folder_name=item_db.folder.name if item_db.folder else None
        )


class _FolderEndpoint(RemoteEndpoint):
    """Folder endpoint over a Database.

    The SQLite calls run inline and never yield to the event loop, so a call
    either completes (publishing its change events before it returns) or
    raises; the call_remote timeout cannot interrupt it.
    """

    def __init__(self, db: Database, kind: CollectionKind):
        self.db = db
        self.kind = kind

    async def list(self, owner_id, filters=None, page=1, limit=None):
        return self.db.list_folders(self.kind, owner_id, page, limit)

    async def create(self, owner_id, fields):
        return self.db.create_folder(self.kind, owner_id, fields)

    async def update(self, owner_id, record_id, patch):
        return self.db.update_folder(self.kind, owner_id, record_id, patch)

    async def delete(self, owner_id, record_id):
        self.db.delete_folder(self.kind, owner_id, record_id)


class _ItemEndpoint(RemoteEndpoint):
    """Item endpoint over a Database; runs inline like _FolderEndpoint."""

    def __init__(self, db: Database, kind: CollectionKind):
        self.db = db
        self.kind = kind

    async def list(self, owner_id, filters=None, page=1, limit=None):
        return self.db.list_items(self.kind, owner_id, filters, page, limit)

    async def create(self, owner_id, fields):
        return self.db.create_item(self.kind, owner_id, fields)

    async def update(self, owner_id, record_id, patch):
        return self.db.update_item(self.kind, owner_id, record_id, patch)

    async def delete(self, owner_id, record_id):
        self.db.delete_item(self.kind, owner_id, record_id)

    async def stats(self, owner_id, recent_days=7):
        return self.db.item_stats(self.kind, owner_id, recent_days)
