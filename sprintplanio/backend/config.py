"""Configuration helpers for backend runtime."""

from __future__ import annotations

import os
from dataclasses import dataclass

from sprintplanio.backend.state import DEFAULT_DECK, parse_deck


@dataclass(frozen=True)
class BackendSettings:
    database_url: str | None
    host: str
    port: int
    log_level: str = "INFO"
    default_deck: tuple[str, ...] = DEFAULT_DECK
    auto_advance_delay: float = 0.3
    leader_reconcile_delay: float = 0.5
    tracker_auth_type: str = "basic"
    tracker_domain: str | None = None
    tracker_email: str | None = None
    tracker_token: str | None = None
    tracker_access_token: str | None = None
    tracker_cloud_id: str | None = None
    tracker_timeout: float = 10.0


def load_settings() -> BackendSettings:
    port_raw = os.getenv("SPRINTPLANIO_PORT", "8000")
    deck_raw = os.getenv("SPRINTPLANIO_DEFAULT_DECK")
    return BackendSettings(
        database_url=os.getenv("SPRINTPLANIO_DATABASE_URL"),
        host=os.getenv("SPRINTPLANIO_HOST", "127.0.0.1"),
        port=int(port_raw),
        log_level=os.getenv("SPRINTPLANIO_LOG_LEVEL", "INFO").upper(),
        default_deck=parse_deck(deck_raw) if deck_raw else DEFAULT_DECK,
        auto_advance_delay=float(os.getenv("SPRINTPLANIO_AUTO_ADVANCE_DELAY", "0.3")),
        leader_reconcile_delay=float(os.getenv("SPRINTPLANIO_LEADER_RECONCILE_DELAY", "0.5")),
        tracker_auth_type=os.getenv("SPRINTPLANIO_TRACKER_AUTH_TYPE", "basic").lower(),
        tracker_domain=os.getenv("SPRINTPLANIO_TRACKER_DOMAIN"),
        tracker_email=os.getenv("SPRINTPLANIO_TRACKER_EMAIL"),
        tracker_token=os.getenv("SPRINTPLANIO_TRACKER_TOKEN"),
        tracker_access_token=os.getenv("SPRINTPLANIO_TRACKER_ACCESS_TOKEN"),
        tracker_cloud_id=os.getenv("SPRINTPLANIO_TRACKER_CLOUD_ID"),
        tracker_timeout=float(os.getenv("SPRINTPLANIO_TRACKER_TIMEOUT", "10")),
    )
