"""FastAPI edge: per-socket room sessions, room snapshots, leave beacon and tracker proxy."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import replace
import logging
from typing import Any, AsyncIterator

import httpx
from fastapi import Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, ValidationError

from .config import BackendSettings, load_settings
from .errors import ActionError, JoinError, TrackerError
from .identity import InMemoryIdentityStore
from .session import SESSION_AWAITING_NAME, SESSION_EVICTED, RoomSession, send_leave
from .store import PlanningStore, create_store
from .tracker import TrackerClient, TrackerCredentials, build_search_jql, import_issues

logger = logging.getLogger(__name__)

EVICTED_CLOSE_CODE = 4001


class RoomSnapshotResponse(BaseModel):
    room: dict[str, Any]
    players: list[dict[str, Any]]
    tickets: list[dict[str, Any]]


class LeaveRequest(BaseModel):
    player_id: str = Field(min_length=1)


class TrackerAuth(BaseModel):
    auth_type: str | None = None
    domain: str | None = None
    email: str | None = None
    token: str | None = None
    access_token: str | None = None
    cloud_id: str | None = None


class TrackerSearchRequest(TrackerAuth):
    jql: str | None = None
    query: str | None = None
    max_results: int = Field(default=20, ge=1, le=100)


class TrackerCommentRequest(TrackerAuth):
    issue_key: str = Field(pattern=r"^[A-Z]+-\d+$")
    comment: str = Field(min_length=1, max_length=5000)


class ImportedIssue(BaseModel):
    key: str = Field(pattern=r"^[A-Z]+-\d+$")
    summary: str = Field(min_length=1)


class ClientMessage(BaseModel):
    type: str = Field(min_length=1)
    name: str | None = None
    value: str | None = None
    title: str | None = None
    ticket_id: str | None = None
    score: str | None = None
    player_id: str | None = None
    card_deck: list[str] | str | None = None
    skip_auto_save: bool = False
    is_spectator: bool | None = None
    issues: list[ImportedIssue] = Field(default_factory=list)


class RoomSessionHub:
    """Edge-side sessions currently attached to websockets, grouped by room."""

    def __init__(self) -> None:
        self._sessions: dict[str, set[RoomSession]] = defaultdict(set)

    def attach(self, session: RoomSession) -> None:
        self._sessions[session.room_id].add(session)

    def detach(self, session: RoomSession) -> None:
        sessions = self._sessions.get(session.room_id)
        if sessions is None:
            return
        sessions.discard(session)
        if not sessions:
            self._sessions.pop(session.room_id, None)

    def sessions(self, room_id: str) -> set[RoomSession]:
        return set(self._sessions.get(room_id, set()))

    async def close_all(self) -> None:
        for sessions in list(self._sessions.values()):
            for session in list(sessions):
                await session.close()
        self._sessions.clear()


def _public_player(row: dict[str, Any], revealed: bool) -> dict[str, Any]:
    data = dict(row)
    data["has_voted"] = data.get("vote") is not None
    if not revealed:
        data["vote"] = None
    return data


def _require(value: str | None, field: str) -> str:
    if value is None or value == "":
        raise ActionError(f"'{field}' is required")
    return value


async def dispatch_message(session: RoomSession, message: ClientMessage, tracker: TrackerClient) -> Any:
    """Run one client message against the session."""
    action = message.type.upper()
    if action == "JOIN":
        return await session.join(_require(message.name, "name"))
    if action == "VOTE":
        return await session.cast_vote(_require(message.value, "value"))
    if action == "REVEAL":
        return await session.reveal()
    if action == "RESET":
        return await session.reset()
    if action == "ADD_TICKET":
        return await session.add_ticket(_require(message.title, "title"))
    if action == "RENAME_TICKET":
        return await session.rename_ticket(_require(message.ticket_id, "ticket_id"), _require(message.title, "title"))
    if action == "DELETE_TICKET":
        return await session.delete_ticket(_require(message.ticket_id, "ticket_id"))
    if action == "SET_ACTIVE_TICKET":
        return await session.set_active_ticket(
            _require(message.ticket_id, "ticket_id"),
            skip_auto_save=message.skip_auto_save,
        )
    if action == "SAVE_SCORE":
        return await session.save_score(message.score)
    if action == "UPDATE_SCORE":
        return await session.update_score(_require(message.ticket_id, "ticket_id"), _require(message.score, "score"))
    if action == "REVOTE":
        return await session.revote(_require(message.ticket_id, "ticket_id"))
    if action == "UPDATE_SETTINGS":
        return await session.update_settings(message.card_deck or "")
    if action == "SET_SPECTATOR":
        return await session.set_spectator(bool(message.is_spectator))
    if action == "TRANSFER_LEADERSHIP":
        return await session.transfer_leadership(_require(message.player_id, "player_id"))
    if action == "KICK_PLAYER":
        return await session.kick_player(_require(message.player_id, "player_id"))
    if action == "IMPORT_ISSUES":
        return await import_issues(session, [issue.model_dump() for issue in message.issues])
    if action == "POST_SCORE":
        ticket = session.view.get_ticket(_require(message.ticket_id, "ticket_id"))
        if ticket is None:
            raise ActionError("Unknown ticket")
        return await tracker.post_score(ticket)
    raise ActionError(f"Unknown action {message.type}")


def create_app(
    store: PlanningStore | None = None,
    settings: BackendSettings | None = None,
    tracker_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    app_settings = settings if settings is not None else load_settings()
    planning_store = store if store is not None else create_store(app_settings.database_url)
    session_hub = RoomSessionHub()

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        await session_hub.close_all()

    app = FastAPI(title="Sprint Planio API", version="0.1.0", lifespan=lifespan)
    app.state.session_hub = session_hub
    app.state.settings = app_settings

    def get_store() -> PlanningStore:
        return planning_store

    def tracker_for(auth: TrackerAuth | None = None) -> TrackerClient:
        defaults = TrackerCredentials.from_settings(app_settings)
        if auth is not None:
            overrides = {key: getattr(auth, key) for key in TrackerAuth.model_fields if getattr(auth, key)}
            defaults = replace(defaults, **overrides)
        return TrackerClient(defaults, timeout=app_settings.tracker_timeout, transport=tracker_transport)

    @app.get("/api/rooms/{room_id}", response_model=RoomSnapshotResponse)
    async def get_room(
        room_id: str,
        local_store: PlanningStore = Depends(get_store),
    ) -> RoomSnapshotResponse:
        room = await local_store.get_room(room_id)
        if room is None:
            raise HTTPException(status_code=404, detail="Room not found")
        players = await local_store.list_players(room_id)
        tickets = await local_store.list_tickets(room_id)
        return RoomSnapshotResponse(
            room=room.to_dict(),
            players=[_public_player(player.to_dict(), room.is_revealed) for player in players],
            tickets=[ticket.to_dict() for ticket in tickets],
        )

    @app.post("/api/rooms/{room_id}/leave")
    async def leave_room(
        room_id: str,
        payload: LeaveRequest,
        local_store: PlanningStore = Depends(get_store),
    ) -> dict[str, bool]:
        player = await local_store.get_player(payload.player_id)
        if player is not None and player.room_id == room_id:
            await send_leave(local_store, payload.player_id)
        return {"ok": True}

    @app.post("/api/tracker/search")
    async def tracker_search(payload: TrackerSearchRequest) -> dict[str, Any]:
        try:
            issues = await tracker_for(payload).search_issues(
                build_search_jql(payload.jql, payload.query),
                max_results=payload.max_results,
            )
        except TrackerError as exc:
            raise HTTPException(status_code=exc.status_code or 502, detail=str(exc)) from exc
        return {"issues": issues}

    @app.post("/api/tracker/comment")
    async def tracker_comment(payload: TrackerCommentRequest) -> dict[str, bool]:
        try:
            await tracker_for(payload).post_comment(payload.issue_key, payload.comment)
        except TrackerError as exc:
            raise HTTPException(status_code=exc.status_code or 502, detail=str(exc)) from exc
        return {"success": True}

    @app.websocket("/ws/rooms/{room_id}")
    async def room_ws(
        websocket: WebSocket,
        room_id: str,
        local_store: PlanningStore = Depends(get_store),
    ) -> None:
        name = websocket.query_params.get("name")
        remembered_id = websocket.query_params.get("player_id")
        send_lock = asyncio.Lock()
        notices: list[dict[str, str]] = []
        ready = False

        async def send(message: dict[str, Any]) -> None:
            async with send_lock:
                try:
                    await websocket.send_json(message)
                except (WebSocketDisconnect, RuntimeError):
                    logger.debug("dropping %s for closed websocket in room %s", message.get("type"), room_id)

        async def flush_notices() -> None:
            while notices:
                await send(notices.pop(0))

        async def push_state(session: RoomSession) -> None:
            if not ready:
                return
            await flush_notices()
            if session.status == SESSION_EVICTED:
                await send({"type": "session.evicted"})
                try:
                    await websocket.close(code=EVICTED_CLOSE_CODE)
                except RuntimeError:
                    logger.debug("websocket for room %s already closed", room_id)
                return
            await send({"type": "state.full", "state": session.view.to_dict()})

        session = RoomSession(
            room_id,
            store=local_store,
            channel=local_store.channel,
            identity=InMemoryIdentityStore.seeded(room_id, remembered_id),
            default_deck=app_settings.default_deck,
            auto_advance_delay=app_settings.auto_advance_delay,
            leader_reconcile_delay=app_settings.leader_reconcile_delay,
            notify=lambda level, message: notices.append({"type": "notice", "level": level, "message": message}),
            on_change=push_state,
        )

        await websocket.accept()
        try:
            await session.join(name)
        except JoinError as exc:
            await send({"type": "error", "message": str(exc), "fatal": True})
            await websocket.close(code=1011)
            return

        session_hub.attach(session)
        tracker = tracker_for()
        try:
            if session.status == SESSION_AWAITING_NAME:
                await send({"type": "session.awaiting_name"})
            else:
                await send({"type": "session.joined", "playerId": session.player_id})
            ready = True
            await push_state(session)
            session.listen()

            while session.status != SESSION_EVICTED:
                raw = await websocket.receive_text()
                was_awaiting = session.status == SESSION_AWAITING_NAME
                try:
                    message = ClientMessage.model_validate_json(raw)
                    await dispatch_message(session, message, tracker)
                except ValidationError as exc:
                    await send({"type": "error", "message": exc.errors()[0]["msg"]})
                except (ActionError, JoinError, TrackerError) as exc:
                    await send({"type": "error", "message": str(exc)})
                if was_awaiting and session.player_id is not None:
                    await send({"type": "session.joined", "playerId": session.player_id})
                await flush_notices()
        except (WebSocketDisconnect, RuntimeError):
            logger.debug("websocket for room %s closed", room_id)
        finally:
            session_hub.detach(session)
            await session.close()

    return app


app = create_app()
