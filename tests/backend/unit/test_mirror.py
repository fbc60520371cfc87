from sprintplanio.backend.engine import PHASE_VIEW_ONLY_COMPLETED, PHASE_VOTING_HIDDEN
from sprintplanio.backend.mirror import RoomView
from sprintplanio.backend.models import (
    EVENT_DELETE,
    EVENT_INSERT,
    EVENT_UPDATE,
    TABLE_PLAYERS,
    TABLE_ROOMS,
    TABLE_TICKETS,
    TICKET_ACTIVE,
    TICKET_COMPLETED,
    ChangeEvent,
    Player,
    Room,
    Ticket,
    VoteSnapshot,
)


def _event(table: str, event_type: str, row) -> ChangeEvent:
    return ChangeEvent(table=table, event_type=event_type, room_id="room-1", row=row)


def _view() -> RoomView:
    view = RoomView(room_id="room-1", player_id="alice")
    view.load_snapshot(
        Room(id="room-1", card_deck=("1", "2", "3"), active_ticket_id="t1"),
        [
            Player(id="alice", room_id="room-1", name="Alice", vote="3", is_leader=True),
            Player(id="bob", room_id="room-1", name="Bob", vote="5"),
        ],
        [Ticket(id="t1", room_id="room-1", title="Login", status=TICKET_ACTIVE)],
    )
    return view


def test_apply_merges_by_identity_and_ignores_duplicates() -> None:
    view = _view()
    carol = Player(id="carol", room_id="room-1", name="Carol")

    assert view.apply(_event(TABLE_PLAYERS, EVENT_INSERT, carol)) is True
    assert view.apply(_event(TABLE_PLAYERS, EVENT_INSERT, carol)) is False
    assert view.apply(_event(TABLE_PLAYERS, EVENT_UPDATE, Player(id="carol", room_id="room-1", name="Caz"))) is True
    assert view.players["carol"].name == "Caz"
    assert view.apply(_event(TABLE_PLAYERS, EVENT_DELETE, carol)) is True
    assert view.apply(_event(TABLE_PLAYERS, EVENT_DELETE, carol)) is False
    assert list(view.players) == ["alice", "bob"]


def test_apply_ignores_other_rooms_and_room_deletes() -> None:
    view = _view()
    foreign = ChangeEvent(
        table=TABLE_PLAYERS,
        event_type=EVENT_INSERT,
        room_id="room-2",
        row=Player(id="eve", room_id="room-2", name="Eve"),
    )

    assert view.apply(foreign) is False
    assert view.apply(_event(TABLE_ROOMS, EVENT_DELETE, view.room)) is False
    assert view.room is not None


def test_ticket_updates_keep_creation_order() -> None:
    view = _view()
    second = Ticket(id="t2", room_id="room-1", title="Logout")

    view.apply(_event(TABLE_TICKETS, EVENT_INSERT, second))
    view.apply(_event(TABLE_TICKETS, EVENT_UPDATE, Ticket(id="t1", room_id="room-1", title="Sign in")))

    assert [ticket.title for ticket in view.tickets] == ["Sign in", "Logout"]


def test_to_dict_masks_other_votes_until_revealed() -> None:
    view = _view()

    hidden = view.to_dict()

    assert hidden["phase"] == PHASE_VOTING_HIDDEN
    assert {player["id"]: player["vote"] for player in hidden["players"]} == {"alice": "3", "bob": None}
    assert all(player["has_voted"] for player in hidden["players"])
    assert hidden["average"] is None
    assert hidden["votes"] == []

    view.apply(_event(TABLE_ROOMS, EVENT_UPDATE, Room(id="room-1", card_deck=("1",), is_revealed=True, active_ticket_id="t1")))
    revealed = view.to_dict()

    assert {player["id"]: player["vote"] for player in revealed["players"]} == {"alice": "3", "bob": "5"}
    assert revealed["average"] == "4.0"


def test_view_only_shows_snapshot_instead_of_live_votes() -> None:
    view = _view()
    view.apply(
        _event(
            TABLE_TICKETS,
            EVENT_UPDATE,
            Ticket(
                id="t1",
                room_id="room-1",
                title="Login",
                status=TICKET_COMPLETED,
                score="8",
                votes_snapshot=(VoteSnapshot(id="carol", name="Carol", vote="13"), VoteSnapshot(id="bob", name="Bob", vote="3")),
            ),
        )
    )

    assert view.phase == PHASE_VIEW_ONLY_COMPLETED
    assert view.is_view_only is True
    assert [entry["name"] for entry in view.display_votes()] == ["Carol", "Bob"]
    assert view.average == "8.0"
    assert view.display_average == "8"


def test_legacy_completed_ticket_without_snapshot_shows_no_votes() -> None:
    view = _view()
    view.apply(
        _event(TABLE_TICKETS, EVENT_UPDATE, Ticket(id="t1", room_id="room-1", title="Login", status=TICKET_COMPLETED, score="5"))
    )

    assert view.display_votes() == []
    assert view.display_average == "5"


def test_spectators_are_excluded_from_average_and_count() -> None:
    view = _view()
    view.put_player(Player(id="sam", room_id="room-1", name="Sam", vote="100", is_spectator=True))

    assert view.average == "4.0"
    assert view.voted_count == 2


def test_view_only_keeps_live_votes_of_hidden_round_masked() -> None:
    view = _view()
    view.apply(
        _event(
            TABLE_TICKETS,
            EVENT_INSERT,
            Ticket(
                id="t0",
                room_id="room-1",
                title="Done",
                status=TICKET_COMPLETED,
                score="2",
                votes_snapshot=(VoteSnapshot(id="bob", name="Bob", vote="2"),),
            ),
        )
    )
    view.apply(_event(TABLE_ROOMS, EVENT_UPDATE, Room(id="room-1", card_deck=("1",), active_ticket_id="t0")))

    data = view.to_dict()

    assert data["phase"] == PHASE_VIEW_ONLY_COMPLETED
    assert {player["id"]: player["vote"] for player in data["players"]} == {"alice": "3", "bob": None}
    assert data["votes"] == [{"id": "bob", "name": "Bob", "vote": "2"}]
    assert data["average"] == "2"
