"""Row builders for rooms, players and tickets."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable
import uuid

from sprintplanio.backend.models import TICKET_PENDING, Player, Room, Ticket

DEFAULT_DECK: tuple[str, ...] = ("0", "1", "2", "3", "5", "8", "13", "21", "34", "55", "89", "?", "☕")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def parse_deck(raw: str | Iterable[str]) -> tuple[str, ...]:
    """Split a comma separated deck (or a sequence of cards) into trimmed, non-empty cards."""
    items = raw.split(",") if isinstance(raw, str) else raw
    return tuple(card.strip() for card in items if card and card.strip())


def build_room(room_id: str, card_deck: Iterable[str]) -> Room:
    """Return a fresh room: votes hidden and no active ticket."""
    return Room(
        id=room_id,
        card_deck=tuple(card_deck),
        is_revealed=False,
        active_ticket_id=None,
        created_at=_utc_now_iso(),
    )


def build_player(room_id: str, name: str, is_leader: bool) -> Player:
    return Player(
        id=new_id(),
        room_id=room_id,
        name=name,
        vote=None,
        is_leader=is_leader,
        is_spectator=False,
        created_at=_utc_now_iso(),
    )


def build_ticket(room_id: str, title: str) -> Ticket:
    return Ticket(
        id=new_id(),
        room_id=room_id,
        title=title,
        status=TICKET_PENDING,
        score=None,
        votes_snapshot=None,
        created_at=_utc_now_iso(),
    )
