from __future__ import annotations

"""
Client-side store of projects, tasks and per-task comment threads.

Entities are plain JSON dictionaries keyed by ``"id"``; comments carry the
``"taskId"`` of their thread. Lists keep display order (newest first).
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from projectsync.realtime.envelope import EntityKind

Entity = Dict[str, Any]


@dataclass
class LocalState:
    projects: List[Entity] = field(default_factory=list)
    tasks: List[Entity] = field(default_factory=list)
    comments: Dict[str, List[Entity]] = field(default_factory=dict)
    current_project_id: Optional[str] = None
    active_users: List[Dict[str, Any]] = field(default_factory=list)
    client_id: Optional[str] = None
    last_error: Optional[Dict[str, Any]] = None

    def snapshot(self) -> Dict[str, Any]:
        """Deep copy of the entity data, for comparisons and debugging."""
        return copy.deepcopy(
            {
                "projects": self.projects,
                "tasks": self.tasks,
                "comments": self.comments,
                "current_project_id": self.current_project_id,
                "active_users": self.active_users,
            }
        )

    # Lookup -------------------------------------------------------------------
    def collection(self, kind: EntityKind, *, task_id: Optional[str] = None) -> List[Entity]:
        if kind is EntityKind.PROJECT:
            return self.projects
        if kind is EntityKind.TASK:
            return self.tasks
        if task_id is None:
            raise ValueError("comment collections are keyed by taskId")
        return self.comments.setdefault(task_id, [])

    def find(
        self, kind: EntityKind, entity_id: str, *, task_id: Optional[str] = None
    ) -> Optional[Tuple[List[Entity], Entity, int]]:
        """Locate an entity; returns ``(collection, entity, index)`` or ``None``."""
        if kind is EntityKind.COMMENT:
            threads = (
                [self.comments[task_id]]
                if task_id is not None and task_id in self.comments
                else list(self.comments.values())
            )
        else:
            threads = [self.collection(kind)]
        for items in threads:
            for index, item in enumerate(items):
                if item.get("id") == entity_id:
                    return items, item, index
        return None

    def contains(self, kind: EntityKind, entity_id: str) -> bool:
        return self.find(kind, entity_id) is not None

    # Mutation -----------------------------------------------------------------
    def prepend(self, kind: EntityKind, entity: Entity) -> None:
        task_id = entity.get("taskId") if kind is EntityKind.COMMENT else None
        self.collection(kind, task_id=task_id).insert(0, entity)

    def remove(self, kind: EntityKind, entity_id: str) -> Optional[Entity]:
        found = self.find(kind, entity_id)
        if found is None:
            return None
        items, entity, index = found
        del items[index]
        return entity

    def drop_thread(self, task_id: str) -> Optional[List[Entity]]:
        return self.comments.pop(task_id, None)

    def reset_project_view(self) -> None:
        self.tasks = []
        self.comments = {}
        self.active_users = []
        self.current_project_id = None


__all__ = ["Entity", "LocalState"]
