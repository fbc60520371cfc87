"""Backend package for Sprint Planio rooms."""

from .channel import ReplicationChannel, Subscription
from .config import BackendSettings, load_settings
from .errors import (
    ActionError,
    EvictedError,
    JoinError,
    NotLeaderError,
    PlanningError,
    RoomConflictError,
    StoreError,
    TrackerError,
)
from .identity import InMemoryIdentityStore
from .session import RoomSession
from .store import InMemoryPlanningStore, PlanningStore, PostgresPlanningStore, create_store

__all__ = [
    "ActionError",
    "BackendSettings",
    "create_store",
    "EvictedError",
    "InMemoryIdentityStore",
    "InMemoryPlanningStore",
    "JoinError",
    "load_settings",
    "NotLeaderError",
    "PlanningError",
    "PlanningStore",
    "PostgresPlanningStore",
    "ReplicationChannel",
    "RoomConflictError",
    "RoomSession",
    "StoreError",
    "Subscription",
    "TrackerError",
]
