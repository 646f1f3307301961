from __future__ import annotations

"""
Optimistic mutation ledger.

Every speculative change is applied to :class:`LocalState` immediately and
recorded as a typed undo entry keyed by its operation id. The caller runs
the persistence request and then either :meth:`OptimisticLedger.confirm`\\ s
the entry (the snapshot is discarded) or :meth:`OptimisticLedger.rollback`\\ s
it (the snapshot is written back verbatim). Nothing expires on its own;
:meth:`OptimisticLedger.rollback_expired` is an explicit, caller-driven
timeout.
"""

import copy
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Mapping, Optional, Union

from projectsync.realtime.envelope import EntityKind, new_operation_id

from .state import Entity, LocalState

LOGGER = logging.getLogger(__name__)

TEMP_PREFIX = "temp-"


class EntityNotFound(LookupError):
    def __init__(self, kind: EntityKind, entity_id: str) -> None:
        super().__init__(f"{kind.value} {entity_id!r} is not in local state")
        self.kind = kind
        self.entity_id = entity_id


@dataclass(frozen=True)
class PendingCreate:
    operation_id: str
    kind: EntityKind
    target_id: str
    speculative: Entity
    thread_created: bool = False
    created_at: float = 0.0


@dataclass(frozen=True)
class PendingUpdate:
    operation_id: str
    kind: EntityKind
    target_id: str
    prior: Entity
    speculative: Entity
    created_at: float = 0.0


@dataclass(frozen=True)
class PendingDelete:
    operation_id: str
    kind: EntityKind
    target_id: str
    prior: Entity
    index: int
    prior_thread: Optional[List[Entity]] = None
    created_at: float = 0.0


PendingOperation = Union[PendingCreate, PendingUpdate, PendingDelete]


def is_temporary_id(entity_id: object) -> bool:
    return isinstance(entity_id, str) and entity_id.startswith(TEMP_PREFIX)


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class OptimisticLedger:
    state: LocalState
    clock: Callable[[], float] = time.monotonic
    _pending: Dict[str, PendingOperation] = field(default_factory=dict)

    # Introspection ------------------------------------------------------------
    def __contains__(self, operation_id: object) -> bool:
        return operation_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def get(self, operation_id: str) -> Optional[PendingOperation]:
        return self._pending.get(operation_id)

    def operations(self) -> List[PendingOperation]:
        return list(self._pending.values())

    # Speculative mutations ----------------------------------------------------
    def create_optimistic(self, kind: EntityKind | str, data: Mapping[str, object]) -> str:
        kind = EntityKind(kind)
        entity: Entity = copy.deepcopy(dict(data))
        task_id = entity.get("taskId") if kind is EntityKind.COMMENT else None
        if kind is EntityKind.COMMENT and not task_id:
            raise ValueError("comments require a taskId")

        operation_id = new_operation_id()
        temp_id = f"{TEMP_PREFIX}{operation_id}"
        entity["id"] = temp_id
        if kind is EntityKind.COMMENT:
            entity.setdefault("timestamp", _iso_now())
        else:
            now = _iso_now()
            entity.setdefault("createdAt", now)
            entity.setdefault("updatedAt", now)

        thread_created = kind is EntityKind.COMMENT and task_id not in self.state.comments
        self.state.prepend(kind, entity)
        self._pending[operation_id] = PendingCreate(
            operation_id=operation_id,
            kind=kind,
            target_id=temp_id,
            speculative=copy.deepcopy(entity),
            thread_created=thread_created,
            created_at=self.clock(),
        )
        LOGGER.debug("Optimistic create %s %s (op=%s)", kind.value, temp_id, operation_id)
        return operation_id

    def update_optimistic(
        self, kind: EntityKind | str, entity_id: str, patch: Mapping[str, object]
    ) -> str:
        kind = EntityKind(kind)
        found = self.state.find(kind, entity_id)
        if found is None:
            raise EntityNotFound(kind, entity_id)
        _, entity, _ = found
        prior = copy.deepcopy(entity)
        entity.update(copy.deepcopy(dict(patch)))
        entity["id"] = entity_id

        operation_id = new_operation_id()
        self._pending[operation_id] = PendingUpdate(
            operation_id=operation_id,
            kind=kind,
            target_id=entity_id,
            prior=prior,
            speculative=copy.deepcopy(entity),
            created_at=self.clock(),
        )
        LOGGER.debug("Optimistic update %s %s (op=%s)", kind.value, entity_id, operation_id)
        return operation_id

    def delete_optimistic(self, kind: EntityKind | str, entity_id: str) -> str:
        kind = EntityKind(kind)
        found = self.state.find(kind, entity_id)
        if found is None:
            raise EntityNotFound(kind, entity_id)
        items, entity, index = found
        del items[index]
        prior_thread = None
        if kind is EntityKind.TASK:
            prior_thread = self.state.drop_thread(entity_id)

        operation_id = new_operation_id()
        self._pending[operation_id] = PendingDelete(
            operation_id=operation_id,
            kind=kind,
            target_id=entity_id,
            prior=entity,
            index=index,
            prior_thread=prior_thread,
            created_at=self.clock(),
        )
        LOGGER.debug("Optimistic delete %s %s (op=%s)", kind.value, entity_id, operation_id)
        return operation_id

    # Resolution ---------------------------------------------------------------
    def confirm(
        self, operation_id: str, authoritative: Optional[Mapping[str, object]] = None
    ) -> bool:
        """Discard the undo entry; swap in the authoritative entity if given."""
        op = self._pending.pop(operation_id, None)
        if op is None:
            return False
        if isinstance(op, PendingCreate):
            self._confirm_create(op, authoritative)
        elif isinstance(op, PendingUpdate) and authoritative is not None:
            found = self.state.find(op.kind, op.target_id)
            if found is not None:
                items, _, index = found
                items[index] = copy.deepcopy(dict(authoritative))
        LOGGER.debug("Confirmed %s (op=%s)", type(op).__name__, operation_id)
        return True

    def _confirm_create(
        self, op: PendingCreate, authoritative: Optional[Mapping[str, object]]
    ) -> None:
        if authoritative is None:
            return
        final = copy.deepcopy(dict(authoritative))
        final_id = final.get("id")
        found = self.state.find(op.kind, op.target_id)
        if final_id is None or final_id == op.target_id:
            if found is not None:
                items, _, index = found
                final.setdefault("id", op.target_id)
                items[index] = final
            return
        if found is not None:
            items, _, index = found
            if self.state.contains(op.kind, str(final_id)):
                # A peer broadcast already delivered the authoritative copy.
                del items[index]
                if op.thread_created and not items:
                    self.state.comments.pop(op.speculative.get("taskId"), None)
            else:
                items[index] = final
        elif not self.state.contains(op.kind, str(final_id)):
            self.state.prepend(op.kind, final)
        self._retarget(op.target_id, str(final_id))

    def _retarget(self, old_id: str, new_id: str) -> None:
        for key, pending in list(self._pending.items()):
            if pending.target_id == old_id:
                self._pending[key] = replace(pending, target_id=new_id)

    def rollback(self, operation_id: str) -> bool:
        """Restore the recorded snapshot verbatim and drop the entry."""
        op = self._pending.pop(operation_id, None)
        if op is None:
            return False
        if isinstance(op, PendingCreate):
            self.state.remove(op.kind, op.target_id)
            task_id = op.speculative.get("taskId")
            if op.thread_created and not self.state.comments.get(task_id):
                self.state.comments.pop(task_id, None)
        elif isinstance(op, PendingUpdate):
            found = self.state.find(op.kind, op.target_id)
            if found is None:
                LOGGER.debug(
                    "Rollback of %s skipped: %s %s no longer present",
                    operation_id,
                    op.kind.value,
                    op.target_id,
                )
            else:
                items, _, index = found
                restored = copy.deepcopy(op.prior)
                # The target may have been retargeted from a temp id.
                restored["id"] = op.target_id
                items[index] = restored
        else:
            task_id = op.prior.get("taskId") if op.kind is EntityKind.COMMENT else None
            items = self.state.collection(op.kind, task_id=task_id)
            if not any(item.get("id") == op.target_id for item in items):
                items.insert(min(op.index, len(items)), op.prior)
            if op.prior_thread is not None and op.target_id not in self.state.comments:
                self.state.comments[op.target_id] = op.prior_thread
        LOGGER.info("Rolled back %s (op=%s)", type(op).__name__, operation_id)
        return True

    def rollback_expired(self, max_age: float, *, now: Optional[float] = None) -> List[str]:
        """Roll back every entry older than ``max_age`` seconds, newest first."""
        now = self.clock() if now is None else now
        expired = [
            op.operation_id
            for op in self._pending.values()
            if now - op.created_at >= max_age
        ]
        for operation_id in reversed(expired):
            self.rollback(operation_id)
        return expired


__all__ = [
    "EntityNotFound",
    "OptimisticLedger",
    "PendingCreate",
    "PendingDelete",
    "PendingOperation",
    "PendingUpdate",
    "TEMP_PREFIX",
    "is_temporary_id",
]
