"""Persistence interfaces and implementations for rooms, players and tickets."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
import json
import logging
from typing import Any, Iterable, Mapping, Protocol

from sprintplanio.backend.channel import ReplicationChannel
from sprintplanio.backend.errors import RecordNotFoundError, RoomConflictError, StoreError
from sprintplanio.backend.models import (
    EVENT_DELETE,
    EVENT_INSERT,
    EVENT_UPDATE,
    TABLE_PLAYERS,
    TABLE_ROOMS,
    TABLE_TICKETS,
    TICKET_STATUSES,
    ChangeEvent,
    Player,
    Room,
    Row,
    Ticket,
    VoteSnapshot,
)
from sprintplanio.backend.state import build_player, build_room, build_ticket

logger = logging.getLogger(__name__)

ROOM_FIELDS = frozenset({"card_deck", "is_revealed", "active_ticket_id"})
PLAYER_FIELDS = frozenset({"name", "vote", "is_leader", "is_spectator"})
TICKET_FIELDS = frozenset({"title", "status", "score", "votes_snapshot"})


class PlanningStore(Protocol):
    channel: ReplicationChannel

    async def get_room(self, room_id: str) -> Room | None:
        """Return the room, or None when it does not exist."""

    async def create_room(self, room_id: str, card_deck: Iterable[str]) -> Room:
        """Insert a room; raise RoomConflictError when the id is taken."""

    async def update_room(self, room_id: str, fields: Mapping[str, Any]) -> Room:
        """Overwrite the given room fields."""

    async def list_players(self, room_id: str) -> list[Player]:
        """Return every player of the room in join order."""

    async def count_players(self, room_id: str) -> int:
        """Return the number of players in the room."""

    async def get_player(self, player_id: str) -> Player | None:
        """Return the player, or None when the row is gone."""

    async def create_player(self, room_id: str, name: str, is_leader: bool) -> Player:
        """Insert a player row."""

    async def update_player(self, player_id: str, fields: Mapping[str, Any]) -> Player:
        """Overwrite the given fields of one player."""

    async def update_room_players(self, room_id: str, fields: Mapping[str, Any]) -> list[Player]:
        """Overwrite the given fields of every player in the room."""

    async def delete_player(self, player_id: str) -> None:
        """Remove a player row."""

    async def list_tickets(self, room_id: str) -> list[Ticket]:
        """Return the room's tickets in creation order."""

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        """Return the ticket, or None when the row is gone."""

    async def create_ticket(self, room_id: str, title: str) -> Ticket:
        """Insert a pending ticket."""

    async def update_ticket(self, ticket_id: str, fields: Mapping[str, Any]) -> Ticket:
        """Overwrite the given fields of one ticket."""

    async def delete_ticket(self, ticket_id: str) -> None:
        """Remove a ticket row."""


def _coerce_snapshot(value: Any) -> tuple[VoteSnapshot, ...] | None:
    if value is None:
        return None
    return tuple(entry if isinstance(entry, VoteSnapshot) else VoteSnapshot.from_dict(entry) for entry in value)


def clean_fields(table: str, fields: Mapping[str, Any]) -> dict[str, Any]:
    """Validate a partial update against the table's writable columns."""
    allowed = {TABLE_ROOMS: ROOM_FIELDS, TABLE_PLAYERS: PLAYER_FIELDS, TABLE_TICKETS: TICKET_FIELDS}[table]
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"unknown {table} fields: {sorted(unknown)}")
    cleaned = dict(fields)
    if "card_deck" in cleaned:
        cleaned["card_deck"] = tuple(cleaned["card_deck"])
    if "votes_snapshot" in cleaned:
        cleaned["votes_snapshot"] = _coerce_snapshot(cleaned["votes_snapshot"])
    if "status" in cleaned and cleaned["status"] not in TICKET_STATUSES:
        raise ValueError(f"unknown ticket status: {cleaned['status']!r}")
    return cleaned


@dataclass
class InMemoryPlanningStore:
    channel: ReplicationChannel = field(default_factory=ReplicationChannel)

    def __post_init__(self) -> None:
        self._rooms: dict[str, Room] = {}
        self._players: dict[str, Player] = {}
        self._tickets: dict[str, Ticket] = {}

    def _publish(self, table: str, event_type: str, row: Row, changed: Iterable[str] = ()) -> None:
        room_id = row.id if isinstance(row, Room) else row.room_id
        self.channel.publish(
            ChangeEvent(table=table, event_type=event_type, room_id=room_id, row=row, changed=frozenset(changed))
        )

    async def get_room(self, room_id: str) -> Room | None:
        return self._rooms.get(room_id)

    async def create_room(self, room_id: str, card_deck: Iterable[str]) -> Room:
        if room_id in self._rooms:
            raise RoomConflictError(f"room {room_id} already exists")
        room = build_room(room_id=room_id, card_deck=card_deck)
        self._rooms[room_id] = room
        self._publish(TABLE_ROOMS, EVENT_INSERT, room)
        return room

    async def update_room(self, room_id: str, fields: Mapping[str, Any]) -> Room:
        cleaned = clean_fields(TABLE_ROOMS, fields)
        room = self._rooms.get(room_id)
        if room is None:
            raise RecordNotFoundError(f"room {room_id} not found")
        room = replace(room, **cleaned)
        self._rooms[room_id] = room
        self._publish(TABLE_ROOMS, EVENT_UPDATE, room, cleaned)
        return room

    async def list_players(self, room_id: str) -> list[Player]:
        return [player for player in self._players.values() if player.room_id == room_id]

    async def count_players(self, room_id: str) -> int:
        return sum(1 for player in self._players.values() if player.room_id == room_id)

    async def get_player(self, player_id: str) -> Player | None:
        return self._players.get(player_id)

    async def create_player(self, room_id: str, name: str, is_leader: bool) -> Player:
        if room_id not in self._rooms:
            raise RecordNotFoundError(f"room {room_id} not found")
        player = build_player(room_id=room_id, name=name, is_leader=is_leader)
        self._players[player.id] = player
        self._publish(TABLE_PLAYERS, EVENT_INSERT, player)
        return player

    async def update_player(self, player_id: str, fields: Mapping[str, Any]) -> Player:
        cleaned = clean_fields(TABLE_PLAYERS, fields)
        player = self._players.get(player_id)
        if player is None:
            raise RecordNotFoundError(f"player {player_id} not found")
        player = replace(player, **cleaned)
        self._players[player_id] = player
        self._publish(TABLE_PLAYERS, EVENT_UPDATE, player, cleaned)
        return player

    async def update_room_players(self, room_id: str, fields: Mapping[str, Any]) -> list[Player]:
        cleaned = clean_fields(TABLE_PLAYERS, fields)
        updated: list[Player] = []
        for player_id, player in list(self._players.items()):
            if player.room_id != room_id:
                continue
            player = replace(player, **cleaned)
            self._players[player_id] = player
            self._publish(TABLE_PLAYERS, EVENT_UPDATE, player, cleaned)
            updated.append(player)
        return updated

    async def delete_player(self, player_id: str) -> None:
        player = self._players.pop(player_id, None)
        if player is None:
            raise RecordNotFoundError(f"player {player_id} not found")
        self._publish(TABLE_PLAYERS, EVENT_DELETE, player)

    async def list_tickets(self, room_id: str) -> list[Ticket]:
        return [ticket for ticket in self._tickets.values() if ticket.room_id == room_id]

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        return self._tickets.get(ticket_id)

    async def create_ticket(self, room_id: str, title: str) -> Ticket:
        if room_id not in self._rooms:
            raise RecordNotFoundError(f"room {room_id} not found")
        ticket = build_ticket(room_id=room_id, title=title)
        self._tickets[ticket.id] = ticket
        self._publish(TABLE_TICKETS, EVENT_INSERT, ticket)
        return ticket

    async def update_ticket(self, ticket_id: str, fields: Mapping[str, Any]) -> Ticket:
        cleaned = clean_fields(TABLE_TICKETS, fields)
        ticket = self._tickets.get(ticket_id)
        if ticket is None:
            raise RecordNotFoundError(f"ticket {ticket_id} not found")
        ticket = replace(ticket, **cleaned)
        self._tickets[ticket_id] = ticket
        self._publish(TABLE_TICKETS, EVENT_UPDATE, ticket, cleaned)
        return ticket

    async def delete_ticket(self, ticket_id: str) -> None:
        ticket = self._tickets.pop(ticket_id, None)
        if ticket is None:
            raise RecordNotFoundError(f"ticket {ticket_id} not found")
        self._publish(TABLE_TICKETS, EVENT_DELETE, ticket)


def _iso(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return "" if value is None else str(value)


def _json_value(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def room_from_record(record: Mapping[str, Any]) -> Room:
    return Room(
        id=record["id"],
        card_deck=tuple(_json_value(record["card_deck"]) or ()),
        is_revealed=bool(record["is_revealed"]),
        active_ticket_id=record.get("active_ticket_id"),
        created_at=_iso(record.get("created_at")),
    )


def player_from_record(record: Mapping[str, Any]) -> Player:
    return Player(
        id=str(record["id"]),
        room_id=record["room_id"],
        name=record["name"],
        vote=record.get("vote"),
        is_leader=bool(record["is_leader"]),
        is_spectator=bool(record.get("is_spectator", False)),
        created_at=_iso(record.get("created_at")),
    )


def ticket_from_record(record: Mapping[str, Any]) -> Ticket:
    snapshot = record.get("votes_snapshot")
    return Ticket(
        id=str(record["id"]),
        room_id=record["room_id"],
        title=record["title"],
        status=record["status"],
        score=record.get("score"),
        votes_snapshot=_coerce_snapshot(_json_value(snapshot)) if snapshot is not None else None,
        created_at=_iso(record.get("created_at")),
    )


def _sql_params(cleaned: Mapping[str, Any]) -> tuple[str, list[Any]]:
    assignments: list[str] = []
    params: list[Any] = []
    for column, value in cleaned.items():
        if column == "card_deck":
            assignments.append(f"{column} = %s::jsonb")
            params.append(json.dumps(list(value)))
        elif column == "votes_snapshot":
            assignments.append(f"{column} = %s::jsonb")
            params.append(None if value is None else json.dumps([entry.to_dict() for entry in value]))
        else:
            assignments.append(f"{column} = %s")
            params.append(value)
    return ", ".join(assignments), params


@dataclass
class PostgresPlanningStore:
    database_url: str
    channel: ReplicationChannel = field(default_factory=ReplicationChannel)

    async def _connect(self) -> Any:
        import psycopg
        from psycopg.rows import dict_row

        return await psycopg.AsyncConnection.connect(self.database_url, row_factory=dict_row)

    async def _run(self, sql: str, params: tuple, commit: bool) -> list[dict[str, Any]]:
        import psycopg

        try:
            async with await self._connect() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(sql, params)
                    records = list(await cur.fetchall())
                if commit:
                    await conn.commit()
        except psycopg.errors.UniqueViolation as exc:
            raise RoomConflictError(str(exc)) from exc
        except psycopg.Error as exc:
            logger.warning("store query failed: %s", exc)
            raise StoreError(str(exc)) from exc
        return records

    async def _fetch_one(self, sql: str, params: tuple) -> dict[str, Any] | None:
        records = await self._run(sql, params, commit=False)
        return records[0] if records else None

    async def _fetch_all(self, sql: str, params: tuple) -> list[dict[str, Any]]:
        return await self._run(sql, params, commit=False)

    async def _write(self, sql: str, params: tuple) -> list[dict[str, Any]]:
        records = await self._run(sql, params, commit=True)
        logger.debug("store write affected %d rows", len(records))
        return records

    def _publish(self, table: str, event_type: str, row: Row, changed: Iterable[str] = ()) -> None:
        room_id = row.id if isinstance(row, Room) else row.room_id
        self.channel.publish(
            ChangeEvent(table=table, event_type=event_type, room_id=room_id, row=row, changed=frozenset(changed))
        )

    async def get_room(self, room_id: str) -> Room | None:
        record = await self._fetch_one("SELECT * FROM rooms WHERE id = %s", (room_id,))
        return None if record is None else room_from_record(record)

    async def create_room(self, room_id: str, card_deck: Iterable[str]) -> Room:
        room = build_room(room_id=room_id, card_deck=card_deck)
        records = await self._write(
            """
            INSERT INTO rooms (id, card_deck, is_revealed, active_ticket_id, created_at)
            VALUES (%s, %s::jsonb, FALSE, NULL, %s)
            RETURNING *
            """,
            (room.id, json.dumps(list(room.card_deck)), room.created_at),
        )
        room = room_from_record(records[0])
        self._publish(TABLE_ROOMS, EVENT_INSERT, room)
        return room

    async def update_room(self, room_id: str, fields: Mapping[str, Any]) -> Room:
        cleaned = clean_fields(TABLE_ROOMS, fields)
        assignments, params = _sql_params(cleaned)
        records = await self._write(
            f"UPDATE rooms SET {assignments} WHERE id = %s RETURNING *",
            (*params, room_id),
        )
        if not records:
            raise RecordNotFoundError(f"room {room_id} not found")
        room = room_from_record(records[0])
        self._publish(TABLE_ROOMS, EVENT_UPDATE, room, cleaned)
        return room

    async def list_players(self, room_id: str) -> list[Player]:
        records = await self._fetch_all(
            "SELECT * FROM players WHERE room_id = %s ORDER BY created_at, id",
            (room_id,),
        )
        return [player_from_record(record) for record in records]

    async def count_players(self, room_id: str) -> int:
        record = await self._fetch_one("SELECT COUNT(*) AS count FROM players WHERE room_id = %s", (room_id,))
        return 0 if record is None else int(record["count"])

    async def get_player(self, player_id: str) -> Player | None:
        record = await self._fetch_one("SELECT * FROM players WHERE id = %s", (player_id,))
        return None if record is None else player_from_record(record)

    async def create_player(self, room_id: str, name: str, is_leader: bool) -> Player:
        player = build_player(room_id=room_id, name=name, is_leader=is_leader)
        records = await self._write(
            """
            INSERT INTO players (id, room_id, name, vote, is_leader, is_spectator, created_at)
            VALUES (%s, %s, %s, NULL, %s, FALSE, %s)
            RETURNING *
            """,
            (player.id, room_id, name, is_leader, player.created_at),
        )
        player = player_from_record(records[0])
        self._publish(TABLE_PLAYERS, EVENT_INSERT, player)
        return player

    async def update_player(self, player_id: str, fields: Mapping[str, Any]) -> Player:
        cleaned = clean_fields(TABLE_PLAYERS, fields)
        assignments, params = _sql_params(cleaned)
        records = await self._write(
            f"UPDATE players SET {assignments} WHERE id = %s RETURNING *",
            (*params, player_id),
        )
        if not records:
            raise RecordNotFoundError(f"player {player_id} not found")
        player = player_from_record(records[0])
        self._publish(TABLE_PLAYERS, EVENT_UPDATE, player, cleaned)
        return player

    async def update_room_players(self, room_id: str, fields: Mapping[str, Any]) -> list[Player]:
        cleaned = clean_fields(TABLE_PLAYERS, fields)
        assignments, params = _sql_params(cleaned)
        records = await self._write(
            f"UPDATE players SET {assignments} WHERE room_id = %s RETURNING *",
            (*params, room_id),
        )
        players = [player_from_record(record) for record in records]
        for player in players:
            self._publish(TABLE_PLAYERS, EVENT_UPDATE, player, cleaned)
        return players

    async def delete_player(self, player_id: str) -> None:
        records = await self._write("DELETE FROM players WHERE id = %s RETURNING *", (player_id,))
        if not records:
            raise RecordNotFoundError(f"player {player_id} not found")
        self._publish(TABLE_PLAYERS, EVENT_DELETE, player_from_record(records[0]))

    async def list_tickets(self, room_id: str) -> list[Ticket]:
        records = await self._fetch_all(
            "SELECT * FROM tickets WHERE room_id = %s ORDER BY seq",
            (room_id,),
        )
        return [ticket_from_record(record) for record in records]

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        record = await self._fetch_one("SELECT * FROM tickets WHERE id = %s", (ticket_id,))
        return None if record is None else ticket_from_record(record)

    async def create_ticket(self, room_id: str, title: str) -> Ticket:
        ticket = build_ticket(room_id=room_id, title=title)
        records = await self._write(
            """
            INSERT INTO tickets (id, room_id, title, status, score, votes_snapshot, created_at)
            VALUES (%s, %s, %s, %s, NULL, NULL, %s)
            RETURNING *
            """,
            (ticket.id, room_id, title, ticket.status, ticket.created_at),
        )
        ticket = ticket_from_record(records[0])
        self._publish(TABLE_TICKETS, EVENT_INSERT, ticket)
        return ticket

    async def update_ticket(self, ticket_id: str, fields: Mapping[str, Any]) -> Ticket:
        cleaned = clean_fields(TABLE_TICKETS, fields)
        assignments, params = _sql_params(cleaned)
        records = await self._write(
            f"UPDATE tickets SET {assignments} WHERE id = %s RETURNING *",
            (*params, ticket_id),
        )
        if not records:
            raise RecordNotFoundError(f"ticket {ticket_id} not found")
        ticket = ticket_from_record(records[0])
        self._publish(TABLE_TICKETS, EVENT_UPDATE, ticket, cleaned)
        return ticket

    async def delete_ticket(self, ticket_id: str) -> None:
        records = await self._write("DELETE FROM tickets WHERE id = %s RETURNING *", (ticket_id,))
        if not records:
            raise RecordNotFoundError(f"ticket {ticket_id} not found")
        self._publish(TABLE_TICKETS, EVENT_DELETE, ticket_from_record(records[0]))


def create_store(database_url: str | None, channel: ReplicationChannel | None = None) -> PlanningStore:
    channel = channel if channel is not None else ReplicationChannel()
    if database_url:
        return PostgresPlanningStore(database_url=database_url, channel=channel)
    return InMemoryPlanningStore(channel=channel)
