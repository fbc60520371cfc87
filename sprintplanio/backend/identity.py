"""Per-room memory of the player id a browser session created.

This only makes rejoining idempotent; it is not a credential.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

KEY_PREFIX = "sprint-planio-player"


def storage_key(room_id: str) -> str:
    return f"{KEY_PREFIX}:{room_id}"


class IdentityStore(Protocol):
    def recall(self, room_id: str) -> str | None:
        """Return the remembered player id for the room."""

    def remember(self, room_id: str, player_id: str) -> None:
        """Persist the player id for future rejoins."""

    def forget(self, room_id: str) -> None:
        """Drop the remembered player id."""


@dataclass
class InMemoryIdentityStore:
    entries: dict[str, str] = field(default_factory=dict)

    @classmethod
    def seeded(cls, room_id: str, player_id: str | None) -> "InMemoryIdentityStore":
        store = cls()
        if player_id:
            store.remember(room_id, player_id)
        return store

    def recall(self, room_id: str) -> str | None:
        return self.entries.get(storage_key(room_id))

    def remember(self, room_id: str, player_id: str) -> None:
        self.entries[storage_key(room_id)] = player_id

    def forget(self, room_id: str) -> None:
        self.entries.pop(storage_key(room_id), None)
