"""Client-side pieces: relay connection, local state and optimistic updates."""

from .broadcaster import RelayBroadcaster
from .connection import ConnectionManager, ConnectionState, build_ws_url
from .ledger import (
    EntityNotFound,
    OptimisticLedger,
    PendingCreate,
    PendingDelete,
    PendingUpdate,
)
from .reconciler import Reconciler
from .state import LocalState

__all__ = [
    "ConnectionManager",
    "ConnectionState",
    "EntityNotFound",
    "LocalState",
    "OptimisticLedger",
    "PendingCreate",
    "PendingDelete",
    "PendingUpdate",
    "Reconciler",
    "RelayBroadcaster",
    "build_ws_url",
]
