"""Pure room rules shared by every session: averages, agenda traversal, leadership."""

from __future__ import annotations

import math
from typing import Iterable, Sequence

from sprintplanio.backend.models import Player, Room, Ticket, VoteSnapshot

PHASE_NO_ACTIVE_TICKET = "NO_ACTIVE_TICKET"
PHASE_VOTING_HIDDEN = "VOTING_HIDDEN"
PHASE_VOTING_REVEALED = "VOTING_REVEALED"
PHASE_VIEW_ONLY_COMPLETED = "VIEW_ONLY_COMPLETED"


def numeric_vote(vote: str | None) -> float | None:
    """Return the vote as a positive finite number, or None when it does not qualify.

    The whole trimmed card must parse as a Python float (so "1e3" and "1_000"
    count); a card with trailing text such as "3abc" does not qualify.
    """
    if vote is None:
        return None
    try:
        value = float(vote.strip())
    except ValueError:
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value


def compute_average(votes: Iterable[str | None]) -> str | None:
    """Average the qualifying votes to one decimal place.

    Non-numeric, zero and negative votes are discarded. Returns None when no
    vote qualifies.
    """
    values = [value for value in (numeric_vote(vote) for vote in votes) if value is not None]
    if not values:
        return None
    return f"{sum(values) / len(values):.1f}"


def voting_players(players: Iterable[Player]) -> list[Player]:
    return [player for player in players if not player.is_spectator]


def average_for_players(players: Iterable[Player]) -> str | None:
    return compute_average(player.vote for player in voting_players(players))


def toggle_vote(current: str | None, value: str) -> str | None:
    """Casting the currently held value clears it, any other value replaces it."""
    if current == value:
        return None
    return value


def build_votes_snapshot(players: Iterable[Player]) -> tuple[VoteSnapshot, ...]:
    return tuple(
        VoteSnapshot(id=player.id, name=player.name, vote=player.vote)
        for player in voting_players(players)
        if player.vote
    )


def find_next_ticket(tickets: Sequence[Ticket], current_id: str | None) -> Ticket | None:
    """Find the first unscored, non-completed ticket after ``current_id``, wrapping around.

    ``tickets`` must be in creation order. The current ticket itself is never
    returned. Returns None when the current ticket is unknown or nothing is left.
    """
    index = next((i for i, ticket in enumerate(tickets) if ticket.id == current_id), None)
    if index is None:
        return None
    for candidate in (*tickets[index + 1 :], *tickets[:index]):
        if not candidate.is_completed and not candidate.score:
            return candidate
    return None


def leadership_winner(players: Iterable[Player]) -> Player | None:
    """Pick the single leader to keep: the lowest id among leader-flagged players."""
    leaders = [player for player in players if player.is_leader]
    if not leaders:
        return None
    return min(leaders, key=lambda player: player.id)


def should_demote(players: Iterable[Player], player_id: str | None) -> bool:
    """True when ``player_id`` is one of several leaders and is not the winner."""
    roster = list(players)
    leaders = [player for player in roster if player.is_leader]
    if player_id is None or len(leaders) < 2:
        return False
    if not any(player.id == player_id for player in leaders):
        return False
    winner = leadership_winner(leaders)
    return winner is not None and winner.id != player_id


def derive_phase(room: Room | None, active_ticket: Ticket | None) -> str:
    if room is None or room.active_ticket_id is None or active_ticket is None:
        return PHASE_NO_ACTIVE_TICKET
    if active_ticket.is_completed:
        return PHASE_VIEW_ONLY_COMPLETED
    if room.is_revealed:
        return PHASE_VOTING_REVEALED
    return PHASE_VOTING_HIDDEN
