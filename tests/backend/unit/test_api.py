import asyncio

import pytest

fastapi = pytest.importorskip("fastapi")
httpx = pytest.importorskip("httpx")
from fastapi.testclient import TestClient

from sprintplanio.backend.api import create_app
from sprintplanio.backend.config import BackendSettings
from sprintplanio.backend.store import InMemoryPlanningStore


def _settings(**overrides) -> BackendSettings:
    values = {"database_url": None, "host": "127.0.0.1", "port": 8000, "auto_advance_delay": 0.0}
    values.update(overrides)
    return BackendSettings(**values)


def _seed_room(store: InMemoryPlanningStore) -> str:
    async def seed() -> str:
        await store.create_room("room-1", ["1", "2", "3"])
        alice = await store.create_player("room-1", name="Alice", is_leader=True)
        await store.update_player(alice.id, {"vote": "3"})
        return alice.id

    return asyncio.run(seed())


def _receive_until(websocket, message_type: str) -> dict:
    for _ in range(20):
        message = websocket.receive_json()
        if message["type"] == message_type:
            return message
    raise AssertionError(f"no {message_type} message received")


def test_get_room_returns_404_for_unknown_room() -> None:
    client = TestClient(create_app(store=InMemoryPlanningStore(), settings=_settings()))

    response = client.get("/api/rooms/missing")

    assert response.status_code == 404


def test_get_room_masks_votes_until_revealed() -> None:
    store = InMemoryPlanningStore()
    _seed_room(store)
    client = TestClient(create_app(store=store, settings=_settings()))

    response = client.get("/api/rooms/room-1")

    assert response.status_code == 200
    data = response.json()
    assert data["room"]["card_deck"] == ["1", "2", "3"]
    assert data["players"][0]["vote"] is None
    assert data["players"][0]["has_voted"] is True
    assert data["tickets"] == []


def test_leave_removes_player_and_is_idempotent() -> None:
    store = InMemoryPlanningStore()
    player_id = _seed_room(store)
    client = TestClient(create_app(store=store, settings=_settings()))

    first = client.post("/api/rooms/room-1/leave", json={"player_id": player_id})
    second = client.post("/api/rooms/room-1/leave", json={"player_id": player_id})

    assert first.json() == {"ok": True}
    assert second.json() == {"ok": True}
    assert asyncio.run(store.count_players("room-1")) == 0


def test_tracker_search_proxies_with_configured_credentials() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = request.read()
        return httpx.Response(200, json={"issues": []})

    settings = _settings(tracker_domain="acme.atlassian.net", tracker_email="dev@acme.io", tracker_token="secret")
    client = TestClient(
        create_app(store=InMemoryPlanningStore(), settings=settings, tracker_transport=httpx.MockTransport(handler))
    )

    response = client.post("/api/tracker/search", json={"query": "login", "max_results": 5})

    assert response.status_code == 200
    assert response.json() == {"issues": []}
    assert seen["url"] == "https://acme.atlassian.net/rest/api/3/search/jql"
    assert b'summary ~ \\"login*\\"' in seen["body"]


def test_tracker_comment_without_credentials_is_rejected() -> None:
    client = TestClient(create_app(store=InMemoryPlanningStore(), settings=_settings()))

    response = client.post("/api/tracker/comment", json={"issue_key": "PROJ-1", "comment": "hi"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Missing Jira credentials"


def test_tracker_comment_validates_issue_key() -> None:
    client = TestClient(create_app(store=InMemoryPlanningStore(), settings=_settings()))

    response = client.post("/api/tracker/comment", json={"issue_key": "not a key", "comment": "hi"})

    assert response.status_code == 422


def test_websocket_join_creates_room_and_leader() -> None:
    store = InMemoryPlanningStore()
    app = create_app(store=store, settings=_settings())

    with TestClient(app) as client:
        with client.websocket_connect("/ws/rooms/room-9?name=Alice") as websocket:
            joined = websocket.receive_json()
            state = websocket.receive_json()

    assert joined["type"] == "session.joined"
    assert state["type"] == "state.full"
    assert state["state"]["playerId"] == joined["playerId"]
    assert state["state"]["isLeader"] is True
    assert state["state"]["room"]["id"] == "room-9"


def test_websocket_without_name_waits_for_join_message() -> None:
    store = InMemoryPlanningStore()
    app = create_app(store=store, settings=_settings())

    with TestClient(app) as client:
        with client.websocket_connect("/ws/rooms/room-1") as websocket:
            awaiting = websocket.receive_json()
            websocket.receive_json()
            websocket.send_json({"type": "JOIN", "name": "Bob"})
            joined = _receive_until(websocket, "session.joined")

    assert awaiting["type"] == "session.awaiting_name"
    assert joined["playerId"]


def test_websocket_actions_sync_state_between_clients() -> None:
    store = InMemoryPlanningStore()
    app = create_app(store=store, settings=_settings())

    with TestClient(app) as client:
        with client.websocket_connect("/ws/rooms/room-1?name=Alice") as alice:
            _receive_until(alice, "state.full")
            with client.websocket_connect("/ws/rooms/room-1?name=Bob") as bob:
                _receive_until(bob, "state.full")
                _receive_until(alice, "state.full")

                alice.send_json({"type": "ADD_TICKET", "title": "PROJ-1: Login"})
                ticket_state = _receive_until(bob, "state.full")["state"]
                while not ticket_state["tickets"]:
                    ticket_state = _receive_until(bob, "state.full")["state"]

    assert ticket_state["tickets"][0]["title"] == "PROJ-1: Login"
    assert ticket_state["isLeader"] is False


def test_websocket_reports_action_errors() -> None:
    store = InMemoryPlanningStore()
    app = create_app(store=store, settings=_settings())

    with TestClient(app) as client:
        with client.websocket_connect("/ws/rooms/room-1?name=Alice") as websocket:
            _receive_until(websocket, "state.full")
            websocket.send_json({"type": "FLIP_TABLE"})
            error = _receive_until(websocket, "error")
            websocket.send_json({"type": "UPDATE_SETTINGS", "card_deck": " , "})
            empty_deck = _receive_until(websocket, "error")

    assert error["message"] == "Unknown action FLIP_TABLE"
    assert empty_deck["message"] == "Deck cannot be empty"


def test_websocket_rejoin_with_remembered_player_reuses_row() -> None:
    store = InMemoryPlanningStore()
    player_id = _seed_room(store)
    app = create_app(store=store, settings=_settings())

    with TestClient(app) as client:
        with client.websocket_connect(f"/ws/rooms/room-1?player_id={player_id}") as websocket:
            joined = websocket.receive_json()

    assert joined == {"type": "session.joined", "playerId": player_id}
    assert asyncio.run(store.count_players("room-1")) == 1


def test_websocket_answers_malformed_messages_and_stays_open() -> None:
    store = InMemoryPlanningStore()
    app = create_app(store=store, settings=_settings())

    with TestClient(app) as client:
        with client.websocket_connect("/ws/rooms/room-1?name=Alice") as websocket:
            _receive_until(websocket, "state.full")
            websocket.send_json({"type": "IMPORT_ISSUES", "issues": [{"summary": "No key"}]})
            missing_key = _receive_until(websocket, "error")
            websocket.send_text("not json")
            not_json = _receive_until(websocket, "error")
            websocket.send_json({"type": "IMPORT_ISSUES", "issues": [{"key": "PROJ-3", "summary": "Checkout"}]})
            state = _receive_until(websocket, "state.full")["state"]

    assert missing_key["message"]
    assert not_json["message"].startswith("Invalid JSON")
    assert [ticket["title"] for ticket in state["tickets"]] == ["PROJ-3: Checkout"]
    assert asyncio.run(store.list_tickets("room-1"))[0].title == "PROJ-3: Checkout"
