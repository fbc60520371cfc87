"""Local mirror of one room, owned by a single session."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sprintplanio.backend.engine import (
    PHASE_VIEW_ONLY_COMPLETED,
    average_for_players,
    compute_average,
    derive_phase,
)
from sprintplanio.backend.models import (
    EVENT_DELETE,
    EVENT_INSERT,
    TABLE_PLAYERS,
    TABLE_ROOMS,
    TABLE_TICKETS,
    ChangeEvent,
    Player,
    Room,
    Ticket,
)


@dataclass
class RoomView:
    """Rows of one room as seen by one session, merged by identity.

    Inserts for ids already present are ignored, updates overwrite by id (and
    insert unknown rows), deletes remove by id. Applying the same event twice
    leaves the view unchanged.
    """

    room_id: str
    room: Room | None = None
    players: dict[str, Player] = field(default_factory=dict)
    tickets: list[Ticket] = field(default_factory=list)
    player_id: str | None = None
    selected_vote: str | None = None

    def load_snapshot(self, room: Room, players: list[Player], tickets: list[Ticket]) -> None:
        self.room = room
        self.players = {player.id: player for player in players}
        self.tickets = list(tickets)

    def apply(self, event: ChangeEvent) -> bool:
        """Merge one change into the view; return True when anything changed."""
        if event.room_id != self.room_id:
            return False
        if event.table == TABLE_ROOMS:
            return self._apply_room(event)
        if event.table == TABLE_PLAYERS:
            return self._apply_player(event)
        if event.table == TABLE_TICKETS:
            return self._apply_ticket(event)
        return False

    def _apply_room(self, event: ChangeEvent) -> bool:
        row = event.row
        if event.event_type == EVENT_DELETE:
            return False
        if event.event_type == EVENT_INSERT and self.room is not None:
            return False
        if self.room == row:
            return False
        self.room = row
        return True

    def _apply_player(self, event: ChangeEvent) -> bool:
        row = event.row
        if event.event_type == EVENT_DELETE:
            return self.players.pop(row.id, None) is not None
        if event.event_type == EVENT_INSERT and row.id in self.players:
            return False
        if self.players.get(row.id) == row:
            return False
        self.players[row.id] = row
        return True

    def _apply_ticket(self, event: ChangeEvent) -> bool:
        row = event.row
        index = self.ticket_index(row.id)
        if event.event_type == EVENT_DELETE:
            if index is None:
                return False
            del self.tickets[index]
            return True
        if index is None:
            self.tickets.append(row)
            return True
        if event.event_type == EVENT_INSERT or self.tickets[index] == row:
            return False
        self.tickets[index] = row
        return True

    def put_player(self, player: Player) -> None:
        self.players[player.id] = player

    def ticket_index(self, ticket_id: str | None) -> int | None:
        return next((i for i, ticket in enumerate(self.tickets) if ticket.id == ticket_id), None)

    def get_ticket(self, ticket_id: str | None) -> Ticket | None:
        index = self.ticket_index(ticket_id)
        return None if index is None else self.tickets[index]

    @property
    def card_deck(self) -> tuple[str, ...]:
        return () if self.room is None else self.room.card_deck

    @property
    def is_revealed(self) -> bool:
        return self.room is not None and self.room.is_revealed

    @property
    def active_ticket(self) -> Ticket | None:
        if self.room is None:
            return None
        return self.get_ticket(self.room.active_ticket_id)

    @property
    def phase(self) -> str:
        return derive_phase(self.room, self.active_ticket)

    @property
    def is_view_only(self) -> bool:
        return self.phase == PHASE_VIEW_ONLY_COMPLETED

    @property
    def me(self) -> Player | None:
        return None if self.player_id is None else self.players.get(self.player_id)

    @property
    def is_leader(self) -> bool:
        me = self.me
        return me is not None and me.is_leader

    @property
    def leaders(self) -> list[Player]:
        return [player for player in self.players.values() if player.is_leader]

    def display_votes(self) -> list[dict[str, Any]]:
        """Votes to show: the saved snapshot in view-only mode, live votes otherwise."""
        ticket = self.active_ticket
        if self.is_view_only and ticket is not None:
            return [entry.to_dict() for entry in ticket.votes_snapshot or ()]
        return [
            {"id": player.id, "name": player.name, "vote": player.vote}
            for player in self.players.values()
            if not player.is_spectator
        ]

    @property
    def average(self) -> str | None:
        if self.is_view_only:
            return compute_average(entry["vote"] for entry in self.display_votes())
        return average_for_players(self.players.values())

    @property
    def display_average(self) -> str | None:
        ticket = self.active_ticket
        if self.is_view_only and ticket is not None and ticket.score:
            return ticket.score
        return self.average

    @property
    def voted_count(self) -> int:
        return sum(1 for player in self.players.values() if player.vote and not player.is_spectator)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the view for this session's viewer.

        Other players' live votes stay masked until reveal, also while a
        completed ticket is viewed; view-only rounds show the saved snapshot.
        """
        visible = self.is_revealed or self.is_view_only
        players: list[dict[str, Any]] = []
        for player in self.players.values():
            data = player.to_dict()
            data["has_voted"] = player.vote is not None
            if not self.is_revealed and player.id != self.player_id:
                data["vote"] = None
            players.append(data)
        return {
            "room": None if self.room is None else self.room.to_dict(),
            "players": players,
            "tickets": [ticket.to_dict() for ticket in self.tickets],
            "playerId": self.player_id,
            "selectedVote": self.selected_vote,
            "phase": self.phase,
            "isLeader": self.is_leader,
            "votedCount": self.voted_count,
            "average": self.display_average if visible else None,
            "votes": self.display_votes() if visible else [],
        }
