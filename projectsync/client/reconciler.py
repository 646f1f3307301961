from __future__ import annotations

"""
Folds inbound relay envelopes into :class:`LocalState`.

Create echoes carrying an ``operationId`` the ledger is still holding
confirm the speculative entity instead of duplicating it. Presence
snapshots replace the user list wholesale. Types the client does not know
are accepted and ignored.
"""

import copy
import logging
from typing import Any, Callable, Dict, Mapping, Optional

from projectsync.realtime.envelope import EntityKind, Envelope, MessageType

from .ledger import OptimisticLedger, PendingCreate
from .state import LocalState

LOGGER = logging.getLogger(__name__)


def _entity_id(payload: Mapping[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = payload.get(key)
        if value:
            return str(value)
    return None


class Reconciler:
    def __init__(self, state: LocalState, ledger: Optional[OptimisticLedger] = None) -> None:
        self.state = state
        self.ledger = ledger
        self._handlers: Dict[MessageType, Callable[[Envelope], bool]] = {
            MessageType.TASK_CREATE: lambda env: self._on_create(EntityKind.TASK, env),
            MessageType.TASK_UPDATE: lambda env: self._on_update(EntityKind.TASK, env),
            MessageType.TASK_DELETE: self._on_task_delete,
            MessageType.COMMENT_CREATE: lambda env: self._on_create(EntityKind.COMMENT, env),
            MessageType.COMMENT_UPDATE: lambda env: self._on_update(EntityKind.COMMENT, env),
            MessageType.COMMENT_DELETE: self._on_comment_delete,
            MessageType.PROJECT_UPDATE: self._on_project_update,
            MessageType.PROJECT_DELETE: self._on_project_delete,
            MessageType.USER_PRESENCE: self._on_presence,
            MessageType.CONNECTION_ESTABLISHED: self._on_established,
            MessageType.ERROR: self._on_error,
        }

    def apply(self, envelope: Envelope) -> bool:
        """Apply one envelope; ``True`` when local state changed."""
        msg_type = envelope.message_type
        handler = self._handlers.get(msg_type) if msg_type is not None else None
        if handler is None:
            LOGGER.debug("Ignoring %s envelope", envelope.type)
            return False
        return handler(envelope)

    # Entity mutations ---------------------------------------------------------
    def _on_create(self, kind: EntityKind, envelope: Envelope) -> bool:
        payload = envelope.payload_dict()
        entity_id = _entity_id(payload, "id")
        if entity_id is None:
            LOGGER.warning("%s without an id ignored", envelope.type)
            return False
        if self.ledger is not None:
            pending = self.ledger.get(envelope.operation_id)
            if isinstance(pending, PendingCreate) and pending.kind is kind:
                return self.ledger.confirm(envelope.operation_id, payload)
        if self.state.contains(kind, entity_id):
            return False
        task_id = payload.get("taskId")
        if kind is EntityKind.COMMENT and not (isinstance(task_id, str) and task_id):
            LOGGER.warning("COMMENT_CREATE %s has no usable taskId", entity_id)
            return False
        self.state.prepend(kind, copy.deepcopy(payload))
        return True

    def _on_update(self, kind: EntityKind, envelope: Envelope) -> bool:
        payload = envelope.payload_dict()
        entity_id = _entity_id(payload, "id")
        changes = payload.get("changes")
        if entity_id is None or not isinstance(changes, dict):
            LOGGER.warning("%s without id/changes ignored", envelope.type)
            return False
        found = self.state.find(kind, entity_id, task_id=_entity_id(payload, "taskId"))
        if found is None:
            return False
        _, entity, _ = found
        entity.update(copy.deepcopy(changes))
        entity["id"] = entity_id
        return True

    def _on_task_delete(self, envelope: Envelope) -> bool:
        task_id = _entity_id(envelope.payload_dict(), "taskId", "id")
        if task_id is None:
            return False
        removed = self.state.remove(EntityKind.TASK, task_id) is not None
        dropped = self.state.drop_thread(task_id) is not None
        return removed or dropped

    def _on_comment_delete(self, envelope: Envelope) -> bool:
        payload = envelope.payload_dict()
        comment_id = _entity_id(payload, "id", "commentId")
        if comment_id is None:
            return False
        found = self.state.find(
            EntityKind.COMMENT, comment_id, task_id=_entity_id(payload, "taskId")
        )
        if found is None:
            return False
        items, _, index = found
        del items[index]
        return True

    def _on_project_update(self, envelope: Envelope) -> bool:
        payload = envelope.payload_dict()
        changes = payload.get("changes")
        if not isinstance(changes, dict):
            # Bare field map form: {"id": ..., "name": ...}
            changes = {k: v for k, v in payload.items() if k != "id"}
        project_id = _entity_id(payload, "id") or envelope.project_id
        if project_id is None:
            return False
        found = self.state.find(EntityKind.PROJECT, project_id)
        if found is None:
            return False
        _, entity, _ = found
        entity.update(copy.deepcopy(changes))
        entity["id"] = project_id
        return True

    def _on_project_delete(self, envelope: Envelope) -> bool:
        project_id = _entity_id(envelope.payload_dict(), "projectId", "id") or envelope.project_id
        if project_id is None:
            return False
        changed = self.state.remove(EntityKind.PROJECT, project_id) is not None
        if project_id == self.state.current_project_id:
            self.state.reset_project_view()
            changed = True
        return changed

    # Control traffic ----------------------------------------------------------
    def _on_presence(self, envelope: Envelope) -> bool:
        payload = envelope.payload_dict()
        project_id = payload.get("projectId") or envelope.project_id
        if project_id != self.state.current_project_id:
            return False
        users = payload.get("activeUsers")
        self.state.active_users = copy.deepcopy(users) if isinstance(users, list) else []
        return True

    def _on_established(self, envelope: Envelope) -> bool:
        client_id = envelope.payload_dict().get("clientId")
        if not client_id:
            return False
        self.state.client_id = str(client_id)
        return True

    def _on_error(self, envelope: Envelope) -> bool:
        payload = envelope.payload_dict()
        self.state.last_error = copy.deepcopy(payload)
        LOGGER.warning(
            "Relay reported error: %s (%s)",
            payload.get("error", "unknown"),
            payload.get("code", "-"),
        )
        return True


__all__ = ["Reconciler"]
