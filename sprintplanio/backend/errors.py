"""Error taxonomy for room stores, sessions and the tracker integration."""

from __future__ import annotations


class PlanningError(Exception):
    """Base class for sprint planning errors."""


class StoreError(PlanningError):
    """Raised when the durable store rejects or fails an operation."""


class RoomConflictError(StoreError):
    """Raised when creating a room whose id already exists."""


class RecordNotFoundError(StoreError):
    """Raised when a point update or delete targets an unknown id."""


class JoinError(PlanningError):
    """Raised when a session cannot join its room. Fatal for that session."""


class ActionError(PlanningError):
    """Raised when a room action fails. The caller may retry it."""


class NotJoinedError(ActionError):
    """Raised when an action needs a local player and the session has none."""


class EvictedError(ActionError):
    """Raised for actions attempted after the local player was kicked."""


class NotLeaderError(ActionError):
    """Raised when a moderation action is attempted by a non-leader."""


class NoActiveTicketError(ActionError):
    """Raised when an action needs an active ticket and none is set."""


class TrackerError(PlanningError):
    """Raised when the external issue tracker call fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
