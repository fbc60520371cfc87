"""Domain rows shared by the stores, the replication channel and sessions."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

TICKET_PENDING = "pending"
TICKET_ACTIVE = "active"
TICKET_COMPLETED = "completed"
TICKET_STATUSES = (TICKET_PENDING, TICKET_ACTIVE, TICKET_COMPLETED)

TABLE_ROOMS = "rooms"
TABLE_PLAYERS = "players"
TABLE_TICKETS = "tickets"
TABLES = (TABLE_ROOMS, TABLE_PLAYERS, TABLE_TICKETS)

EVENT_INSERT = "insert"
EVENT_UPDATE = "update"
EVENT_DELETE = "delete"


@dataclass(frozen=True)
class Room:
    id: str
    card_deck: tuple[str, ...]
    is_revealed: bool = False
    active_ticket_id: str | None = None
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["card_deck"] = list(self.card_deck)
        return data


@dataclass(frozen=True)
class Player:
    id: str
    room_id: str
    name: str
    vote: str | None = None
    is_leader: bool = False
    is_spectator: bool = False
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class VoteSnapshot:
    """One voter's ballot captured when a ticket's score was saved."""

    id: str
    name: str
    vote: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VoteSnapshot":
        return cls(id=str(data["id"]), name=str(data["name"]), vote=str(data["vote"]))


@dataclass(frozen=True)
class Ticket:
    id: str
    room_id: str
    title: str
    status: str = TICKET_PENDING
    score: str | None = None
    votes_snapshot: tuple[VoteSnapshot, ...] | None = None
    created_at: str = ""

    @property
    def is_completed(self) -> bool:
        return self.status == TICKET_COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "room_id": self.room_id,
            "title": self.title,
            "status": self.status,
            "score": self.score,
            "votes_snapshot": (
                None if self.votes_snapshot is None else [entry.to_dict() for entry in self.votes_snapshot]
            ),
            "created_at": self.created_at,
        }


Row = Room | Player | Ticket


@dataclass(frozen=True)
class ChangeEvent:
    """A committed change of one row, as fanned out by the replication channel.

    ``row`` is the row after the change for inserts and updates, and the
    removed row for deletes.
    """

    table: str
    event_type: str
    room_id: str
    row: Row
    changed: frozenset[str] = field(default_factory=frozenset)

    @property
    def row_id(self) -> str:
        return self.row.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "eventType": self.event_type,
            "roomId": self.room_id,
            "row": self.row.to_dict(),
        }
