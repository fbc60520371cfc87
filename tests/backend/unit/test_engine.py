from sprintplanio.backend.engine import (
    PHASE_NO_ACTIVE_TICKET,
    PHASE_VIEW_ONLY_COMPLETED,
    PHASE_VOTING_HIDDEN,
    PHASE_VOTING_REVEALED,
    build_votes_snapshot,
    compute_average,
    derive_phase,
    find_next_ticket,
    leadership_winner,
    numeric_vote,
    should_demote,
    toggle_vote,
)
from sprintplanio.backend.models import TICKET_ACTIVE, TICKET_COMPLETED, Player, Room, Ticket


def _player(player_id: str, vote: str | None = None, is_leader: bool = False, is_spectator: bool = False) -> Player:
    return Player(
        id=player_id,
        room_id="room-1",
        name=player_id.upper(),
        vote=vote,
        is_leader=is_leader,
        is_spectator=is_spectator,
    )


def _ticket(ticket_id: str, status: str = "pending", score: str | None = None) -> Ticket:
    return Ticket(id=ticket_id, room_id="room-1", title=ticket_id, status=status, score=score)


def test_compute_average_rounds_to_one_decimal() -> None:
    assert compute_average(["3", "5", "8"]) == "5.3"
    assert compute_average(["2", "2"]) == "2.0"
    assert compute_average(["1", "2"]) == "1.5"


def test_compute_average_ignores_non_numeric_zero_and_negative_votes() -> None:
    assert compute_average(["?", "☕", "0", "-3", None, "5"]) == "5.0"
    assert compute_average(["?", "0", None]) is None
    assert compute_average([]) is None


def test_numeric_vote_rejects_non_finite_values() -> None:
    assert numeric_vote("inf") is None
    assert numeric_vote("nan") is None
    assert numeric_vote(" 13 ") == 13.0
    assert numeric_vote("1e1") == 10.0
    assert numeric_vote("3abc") is None


def test_toggle_vote_clears_on_same_value() -> None:
    assert toggle_vote(None, "5") == "5"
    assert toggle_vote("5", "8") == "8"
    assert toggle_vote("5", "5") is None


def test_build_votes_snapshot_skips_spectators_and_missing_votes() -> None:
    snapshot = build_votes_snapshot(
        [_player("a", "3"), _player("b"), _player("c", "8", is_spectator=True), _player("d", "?")]
    )

    assert [(entry.id, entry.name, entry.vote) for entry in snapshot] == [("a", "A", "3"), ("d", "D", "?")]


def test_find_next_ticket_scans_forward_first() -> None:
    tickets = [_ticket("a", TICKET_COMPLETED, "3"), _ticket("b"), _ticket("c", TICKET_ACTIVE)]

    assert find_next_ticket(tickets, "c").id == "b"


def test_find_next_ticket_wraps_around_to_earlier_tickets() -> None:
    tickets = [_ticket("a"), _ticket("b", TICKET_ACTIVE)]

    assert find_next_ticket(tickets, "b").id == "a"


def test_find_next_ticket_skips_scored_tickets_and_returns_none_when_done() -> None:
    tickets = [_ticket("a", score="5"), _ticket("b", TICKET_ACTIVE), _ticket("c", TICKET_COMPLETED, "8")]

    assert find_next_ticket(tickets, "b") is None
    assert find_next_ticket(tickets, "missing") is None


def test_leadership_winner_is_lowest_id() -> None:
    players = [_player("b", is_leader=True), _player("a"), _player("c", is_leader=True)]

    assert leadership_winner(players).id == "b"
    assert should_demote(players, "c") is True
    assert should_demote(players, "b") is False
    assert should_demote(players, "a") is False


def test_should_demote_needs_more_than_one_leader() -> None:
    players = [_player("z", is_leader=True), _player("a")]

    assert should_demote(players, "z") is False
    assert should_demote(players, None) is False


def test_derive_phase_covers_each_room_state() -> None:
    hidden = Room(id="room-1", card_deck=("1",), active_ticket_id="t")
    revealed = Room(id="room-1", card_deck=("1",), is_revealed=True, active_ticket_id="t")

    assert derive_phase(None, None) == PHASE_NO_ACTIVE_TICKET
    assert derive_phase(Room(id="room-1", card_deck=()), None) == PHASE_NO_ACTIVE_TICKET
    assert derive_phase(hidden, _ticket("t", TICKET_ACTIVE)) == PHASE_VOTING_HIDDEN
    assert derive_phase(revealed, _ticket("t", TICKET_ACTIVE)) == PHASE_VOTING_REVEALED
    assert derive_phase(hidden, _ticket("t", TICKET_COMPLETED, "5")) == PHASE_VIEW_ONLY_COMPLETED
