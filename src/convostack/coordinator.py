"""
Optimistic mutation coordinator.

Every create/update/delete/move is applied to the local store immediately,
then sent to the remote endpoint. On success the provisional data is replaced
by the server record; on failure the exact pre-mutation snapshot is restored
and a typed EngineError is raised.

Only one mutation may be pending per record. Change events that arrive for a
record with a pending mutation are held back and replayed once it resolves.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, Type, TypeVar

from .errors import EngineError, NotFoundError, OperationInProgressError, ValidationError
from .models import (
    ChangeOp, Folder, OptimisticEnvelope, Record, is_provisional, new_provisional_id, utcnow,
)
from .remote import DEFAULT_TIMEOUT, RemoteEndpoint, call_remote
from .store import EntityStore
from .tree import RejectReason, can_reparent

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Record)

Admit = Callable[[Any], bool]
Settled = Callable[[ChangeOp, Optional[Any], Optional[Any]], None]


class MutationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    MOVE = "move"
    DELETE = "delete"


class MutationState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


@dataclass
class Mutation:
    kind: MutationKind
    record_id: str
    state: MutationState = MutationState.PENDING
    envelope: Optional[OptimisticEnvelope] = None
    error: Optional[EngineError] = None
    result: Optional[Record] = None


@dataclass
class _Deferred:
    op: ChangeOp
    record: Record


@dataclass
class CascadeTarget:
    """Records removed together with a deleted record.

    ``owner`` is the coordinator that mutates ``store``; its pending
    mutations block the delete and its visible count follows the removal.
    """
    store: EntityStore
    ids: List[str]
    owner: Optional["OptimisticCoordinator"] = None


Cascade = Callable[[Any], List[CascadeTarget]]


@dataclass
class _Snapshot:
    taken: List[Tuple[CascadeTarget, List[Tuple[int, Record]]]] = field(default_factory=list)

    def restore(self):
        for target, pairs in reversed(self.taken):
            target.store.restore(pairs)


class OptimisticCoordinator(Generic[R]):
    """Applies mutations to one EntityStore optimistically against one endpoint.

    ``admit`` decides whether a new record belongs in the store (the active
    filters of an item list); ``insert_at`` is where new records go (None for
    the end, 0 for the top). ``complete`` marks stores that mirror the whole
    remote collection, so update events for unknown records are inserted.
    Records that stop matching ``admit`` after an update leave the store.

    ``on_settled(op, before, after)`` is told about every server-confirmed
    change: confirmed mutations and applied change events. ``before`` is the
    last known record (None when unknown) and ``after`` is None for deletes.
    """

    def __init__(self, store: EntityStore, endpoint: RemoteEndpoint, record_type: Type[R],
                 timeout: Optional[float] = DEFAULT_TIMEOUT,
                 admit: Optional[Admit] = None,
                 insert_at: Optional[int] = None,
                 cascade: Optional[Cascade] = None,
                 complete: bool = True,
                 on_visible_delta: Optional[Callable[[int], None]] = None,
                 on_settled: Optional[Settled] = None):
        self.store = store
        self.endpoint = endpoint
        self.record_type = record_type
        self.timeout = timeout
        self.insert_at = insert_at
        self.complete = complete
        self._admit = admit or (lambda record: True)
        self._cascade = cascade
        self._on_visible_delta = on_visible_delta
        self._on_settled = on_settled
        self._in_flight: Dict[str, Mutation] = {}
        self._deferred: Dict[str, List[_Deferred]] = {}
        self._epoch = 0

    @property
    def owner_id(self) -> str:
        return self.store.owner_id

    @property
    def pending(self) -> Dict[str, Mutation]:
        return dict(self._in_flight)

    def is_pending(self, record_id: str) -> bool:
        return record_id in self._in_flight

    def _delta(self, amount: int):
        if self._on_visible_delta is not None:
            self._on_visible_delta(amount)

    def _settled(self, op: ChangeOp, before: Optional[Record], after: Optional[Record]):
        if self._on_settled is not None:
            self._on_settled(op, before, after)

    def _begin(self, kind: MutationKind, record_id: str) -> Mutation:
        if record_id in self._in_flight:
            running = self._in_flight[record_id]
            raise OperationInProgressError(
                f"A {running.kind.value} of {record_id} is already in progress")
        mutation = Mutation(kind=kind, record_id=record_id)
        self._in_flight[record_id] = mutation
        return mutation

    def _finish(self, mutation: Mutation, state: MutationState, error: Optional[EngineError] = None):
        mutation.state = state
        mutation.error = error
        if self._in_flight.get(mutation.record_id) is mutation:
            del self._in_flight[mutation.record_id]
        for deferred in self._deferred.pop(mutation.record_id, []):
            self.apply_event(deferred.op, deferred.record)

    def _cascade_targets(self, record: Record) -> List[CascadeTarget]:
        own = CascadeTarget(self.store, [record.id], self)
        targets = [own]
        if self._cascade is not None:
            for target in self._cascade(record):
                if target.store is self.store:
                    own.ids.extend(i for i in target.ids if i != record.id)
                else:
                    targets.append(target)
        return targets

    def _cascade_delta(self, taken: List[Tuple[CascadeTarget, List[Tuple[int, Record]]]], sign: int):
        for target, pairs in taken:
            if pairs and target.owner is not None and target.owner is not self:
                target.owner._delta(sign * len(pairs))

    def _place(self, record_id: str, confirmed: Record, position: Optional[int], hidden: bool):
        """Put the confirmed version of an updated record where the filters want it."""
        if self._admit(confirmed):
            if record_id in self.store:
                self.store.replace(record_id, confirmed)
            elif hidden and position is not None:
                self.store.restore([(position, confirmed)])
                self._delta(1)
        elif self.store.remove(record_id) is not None:
            self._delta(-1)

    async def create(self, fields: Dict[str, Any]) -> R:
        """Create a record, showing a provisional copy until the server confirms it."""
        intent = dict(fields)
        provisional_id = new_provisional_id()
        record = self.record_type.model_validate({
            **intent,
            "id": provisional_id,
            "owner_id": self.owner_id,
            "created_at": utcnow(),
        })
        visible = self._admit(record)
        mutation = self._begin(MutationKind.CREATE, provisional_id)
        mutation.envelope = OptimisticEnvelope(
            provisional_id=provisional_id, intent=intent, record=record, visible=visible)
        epoch = self._epoch

        if visible:
            self.store.insert(record, self.insert_at)
            self._delta(1)

        try:
            confirmed = await call_remote(self.endpoint.create(self.owner_id, intent), self.timeout)
        except EngineError as e:
            if epoch == self._epoch and visible and self.store.remove(provisional_id) is not None:
                self._delta(-1)
            logger.info(f"Rolled back create {provisional_id}: {e}")
            self._finish(mutation, MutationState.ROLLED_BACK, e)
            raise

        if epoch == self._epoch:
            if provisional_id in self.store:
                if confirmed.id in self.store:
                    # the change feed delivered it first
                    self._delta(-1)
                self.store.replace(provisional_id, confirmed)
            self._settled(ChangeOp.INSERT, None, confirmed)
        mutation.result = confirmed
        logger.debug(f"Confirmed create {provisional_id} as {confirmed.id}")
        self._finish(mutation, MutationState.CONFIRMED)
        return confirmed

    async def update(self, record_id: str, patch: Dict[str, Any],
                     kind: MutationKind = MutationKind.UPDATE) -> R:
        """Patch a record locally, then remotely; restore the snapshot on failure."""
        if record_id in self._in_flight or is_provisional(record_id):
            raise OperationInProgressError(f"{record_id} has a pending change")
        current = self.store.get(record_id)
        if current is None:
            raise NotFoundError(f"Record {record_id} not found")

        mutation = self._begin(kind, record_id)
        epoch = self._epoch
        position = self.store.index_of(record_id)
        patched = current.model_copy(update=patch)
        hidden = not self._admit(patched)
        if hidden:
            self.store.remove(record_id)
            self._delta(-1)
        else:
            self.store.insert(patched)

        try:
            confirmed = await call_remote(
                self.endpoint.update(self.owner_id, record_id, dict(patch)), self.timeout)
        except EngineError as e:
            if epoch == self._epoch:
                if hidden:
                    self.store.restore([(position, current)])
                    self._delta(1)
                elif record_id in self.store:
                    self.store.insert(current)
            logger.info(f"Rolled back {kind.value} of {record_id}: {e}")
            self._finish(mutation, MutationState.ROLLED_BACK, e)
            raise

        if epoch == self._epoch:
            self._place(record_id, confirmed, position, hidden)
            self._settled(ChangeOp.UPDATE, current, confirmed)
        mutation.result = confirmed
        self._finish(mutation, MutationState.CONFIRMED)
        return confirmed

    async def delete(self, record_id: str) -> None:
        """Remove a record (and its cascade) locally, then remotely; restore on failure."""
        if record_id in self._in_flight or is_provisional(record_id):
            raise OperationInProgressError(f"{record_id} has a pending change")
        current = self.store.get(record_id)
        if current is None:
            raise NotFoundError(f"Record {record_id} not found")

        targets = self._cascade_targets(current)
        for target in targets:
            owner = target.owner or self
            busy = [i for i in target.ids if owner.is_pending(i)]
            if busy:
                raise OperationInProgressError(f"{busy[0]} has a pending change")

        mutation = self._begin(MutationKind.DELETE, record_id)
        epoch = self._epoch
        snapshot = _Snapshot([(target, target.store.take(target.ids)) for target in targets])
        self._delta(-1)
        self._cascade_delta(snapshot.taken, -1)

        try:
            await call_remote(self.endpoint.delete(self.owner_id, record_id), self.timeout)
        except EngineError as e:
            if epoch == self._epoch:
                snapshot.restore()
                self._delta(1)
                self._cascade_delta(snapshot.taken, 1)
            logger.info(f"Rolled back delete of {record_id}: {e}")
            self._finish(mutation, MutationState.ROLLED_BACK, e)
            raise

        if epoch == self._epoch:
            self._settled(ChangeOp.DELETE, current, None)
        self._finish(mutation, MutationState.CONFIRMED)

    def apply_event(self, op: ChangeOp, record: Record):
        """Reconcile a server-pushed change into the store (idempotent by id)."""
        if record.owner_id != self.owner_id:
            return
        if record.id in self._in_flight:
            self._deferred.setdefault(record.id, []).append(_Deferred(op, record))
            return

        before = self.store.get(record.id)
        if op == ChangeOp.DELETE:
            if before is not None:
                self._delta(-1)
            taken = [(target, target.store.take(target.ids)) for target in self._cascade_targets(record)]
            self._cascade_delta(taken, -1)
            self._settled(op, record, None)
            return

        if before is not None:
            if self._admit(record):
                self.store.upsert_many([record])
            else:
                self.store.remove(record.id)
                self._delta(-1)
        elif (op == ChangeOp.INSERT or self.complete) and self._admit(record):
            self.store.insert(record, self.insert_at)
            self._delta(1)
        self._settled(op, before, record)

    def reset(self):
        """Forget every pending mutation and clear the store (sign-out)."""
        self._epoch += 1
        self._in_flight.clear()
        self._deferred.clear()
        self.store.clear()


class FolderCoordinator(OptimisticCoordinator[Folder]):
    """Coordinator for folder stores; adds cycle-checked moves."""

    def __init__(self, store: EntityStore, endpoint: RemoteEndpoint, **kwargs):
        super().__init__(store, endpoint, Folder, **kwargs)

    async def move(self, folder_id: str, new_parent_id: Optional[str]) -> Folder:
        """Re-parent a folder after the cycle guard approves the move."""
        current = self.store.get(folder_id)
        if current is None:
            raise NotFoundError(f"Folder {folder_id} not found")

        verdict = can_reparent(self.store.all(), folder_id, new_parent_id)
        if verdict.reason == RejectReason.NO_OP:
            return current
        if not verdict.ok:
            if verdict.reason == RejectReason.SELF_PARENT:
                message = "A folder cannot be its own parent"
            else:
                message = "Cannot move a folder into its own subfolder"
            raise ValidationError(message, reason=verdict.reason.value)

        if new_parent_id is not None:
            if is_provisional(new_parent_id):
                raise OperationInProgressError(f"Folder {new_parent_id} is still being created")
            if new_parent_id not in self.store:
                raise NotFoundError(f"Folder {new_parent_id} not found")

        return await self.update(folder_id, {"parent_id": new_parent_id}, kind=MutationKind.MOVE)
