"""Room session controller: joins a room, mirrors it and runs every room action."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import replace
import logging
from typing import Awaitable, Callable, Iterable

from sprintplanio.backend.channel import ReplicationChannel, Subscription
from sprintplanio.backend.engine import (
    average_for_players,
    build_votes_snapshot,
    find_next_ticket,
    should_demote,
    toggle_vote,
)
from sprintplanio.backend.errors import (
    ActionError,
    EvictedError,
    JoinError,
    NoActiveTicketError,
    NotJoinedError,
    NotLeaderError,
    StoreError,
)
from sprintplanio.backend.identity import IdentityStore
from sprintplanio.backend.mirror import RoomView
from sprintplanio.backend.models import (
    EVENT_DELETE,
    TABLE_PLAYERS,
    TICKET_ACTIVE,
    TICKET_COMPLETED,
    ChangeEvent,
    Player,
    Room,
    Ticket,
)
from sprintplanio.backend.state import DEFAULT_DECK, parse_deck
from sprintplanio.backend.store import PlanningStore

logger = logging.getLogger(__name__)

SESSION_JOINING = "JOINING"
SESSION_AWAITING_NAME = "AWAITING_NAME"
SESSION_ACTIVE = "ACTIVE"
SESSION_EVICTED = "EVICTED"
SESSION_CLOSED = "CLOSED"

ANONYMOUS_NAME = "Anonymous"

Notifier = Callable[[str, str], None]
ChangeListener = Callable[["RoomSession"], Awaitable[None]]


def _log_notice(level: str, message: str) -> None:
    logger.info("[%s] %s", level, message)


class RoomSession:
    """One participant's live session in one room.

    The session owns its ``RoomView``. Every action writes to the store and
    never edits the view ahead of the write, except leadership transfer; the
    view catches up when the change comes back over the replication channel.
    """

    def __init__(
        self,
        room_id: str,
        store: PlanningStore,
        channel: ReplicationChannel,
        identity: IdentityStore,
        *,
        default_deck: Iterable[str] = DEFAULT_DECK,
        auto_advance_delay: float = 0.3,
        leader_reconcile_delay: float = 0.0,
        notify: Notifier | None = None,
        on_change: ChangeListener | None = None,
    ) -> None:
        self.room_id = room_id
        self.store = store
        self.channel = channel
        self.identity = identity
        self.default_deck = tuple(default_deck)
        self.auto_advance_delay = auto_advance_delay
        self.leader_reconcile_delay = leader_reconcile_delay
        self._notify = notify or _log_notice
        self._on_change = on_change
        self.view = RoomView(room_id=room_id)
        self.status = SESSION_JOINING
        self._subscription: Subscription | None = None
        self._listener: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._reconcile_task: asyncio.Task | None = None
        self._demoting = False

    @property
    def player_id(self) -> str | None:
        return self.view.player_id

    @property
    def is_member(self) -> bool:
        return self.status == SESSION_ACTIVE and self.view.player_id is not None

    # ------------------------------------------------------------------ join

    async def join(self, name: str | None = None) -> RoomView:
        """Join the room, creating it when absent, and resolve the local player.

        Raises JoinError when the room can be neither read nor created. Without
        a remembered player and without a usable name the session waits in
        AWAITING_NAME for ``claim_seat``.
        """
        if self.status == SESSION_ACTIVE:
            return self.view
        if self.status == SESSION_AWAITING_NAME:
            if name and name.strip() and name.strip() != ANONYMOUS_NAME:
                await self.claim_seat(name)
            return self.view
        if self.status != SESSION_JOINING:
            raise JoinError(f"session for room {self.room_id} is {self.status.lower()}")

        room = await self._get_or_create_room()
        # Subscribe before the snapshot read so nothing committed in between is lost.
        self._subscription = self.channel.subscribe(self.room_id)
        try:
            players = await self.store.list_players(self.room_id)
            tickets = await self.store.list_tickets(self.room_id)
        except StoreError as exc:
            self._subscription.close()
            self._subscription = None
            raise JoinError("Failed to load room. Please try again.") from exc
        self.view.load_snapshot(room, players, tickets)
        await self.sync()

        if await self._resume_identity():
            return self.view
        if name and name.strip() and name.strip() != ANONYMOUS_NAME:
            await self.claim_seat(name)
        else:
            self.status = SESSION_AWAITING_NAME
        return self.view

    async def _get_or_create_room(self) -> Room:
        try:
            room = await self.store.get_room(self.room_id)
        except StoreError as exc:
            logger.warning("reading room %s failed: %s", self.room_id, exc)
            room = None
        if room is not None:
            return room
        try:
            return await self.store.create_room(self.room_id, self.default_deck)
        except StoreError as exc:
            logger.info("creating room %s failed (%s); re-reading", self.room_id, exc)
        try:
            room = await self.store.get_room(self.room_id)
        except StoreError as exc:
            raise JoinError("Failed to join room. Please try again.") from exc
        if room is None:
            raise JoinError("Failed to join room. Please try again.")
        return room

    async def _resume_identity(self) -> bool:
        stored_id = self.identity.recall(self.room_id)
        if not stored_id:
            return False
        player = self.view.players.get(stored_id)
        if player is None:
            try:
                player = await self.store.get_player(stored_id)
            except StoreError as exc:
                logger.warning("looking up remembered player %s failed: %s", stored_id, exc)
                player = None
        if player is None or player.room_id != self.room_id:
            self.identity.forget(self.room_id)
            return False
        self.view.put_player(player)
        self._become_member(player)
        await self._players_changed()
        await self._emit_change()
        return True

    async def claim_seat(self, name: str) -> Player:
        """Create the local player. Leadership goes to the first player in the room."""
        if self.status not in (SESSION_JOINING, SESSION_AWAITING_NAME):
            raise JoinError(f"cannot claim a seat while {self.status.lower()}")
        name = name.strip()
        if not name:
            raise JoinError("A name is required to join")
        try:
            count = await self.store.count_players(self.room_id)
            player = await self.store.create_player(self.room_id, name=name, is_leader=count == 0)
        except StoreError as exc:
            raise JoinError("Failed to join room. Please try again.") from exc
        self.identity.remember(self.room_id, player.id)
        if player.id not in self.view.players:
            self.view.put_player(player)
        self._become_member(player)
        logger.info("player %s joined room %s (leader=%s)", player.id, self.room_id, player.is_leader)
        await self._players_changed()
        await self._emit_change()
        return player

    def _become_member(self, player: Player) -> None:
        self.view.player_id = player.id
        self.view.selected_vote = player.vote
        self.status = SESSION_ACTIVE

    # ------------------------------------------------------------ replication

    def listen(self) -> asyncio.Task:
        """Start applying replication events in the background."""
        if self._listener is None:
            self._listener = asyncio.create_task(self._listen())
        return self._listener

    async def _listen(self) -> None:
        subscription = self._subscription
        if subscription is None:
            return
        async for event in subscription:
            await self._ingest([event, *subscription.drain()])

    async def sync(self) -> bool:
        """Apply every replication event that has already arrived."""
        if self._subscription is None:
            return False
        return await self._ingest(self._subscription.drain())

    async def settle(self) -> None:
        """Wait for scheduled follow-ups (auto-advance, reconciliation) and apply their changes."""
        while True:
            await self.sync()
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.wait(pending)

    async def _ingest(self, events: list[ChangeEvent]) -> bool:
        if self.status == SESSION_CLOSED or not events:
            return False
        changed = False
        players_changed = False
        evicted = False
        for event in events:
            if (
                event.table == TABLE_PLAYERS
                and event.event_type == EVENT_DELETE
                and self.view.player_id is not None
                and event.row.id == self.view.player_id
            ):
                evicted = True
            if self.view.apply(event):
                changed = True
                players_changed = players_changed or event.table == TABLE_PLAYERS
        if evicted:
            self._evict()
        elif players_changed:
            me = self.view.me
            if me is not None:
                self.view.selected_vote = me.vote
            await self._players_changed()
        if changed or evicted:
            await self._emit_change()
        return changed

    def _evict(self) -> None:
        logger.info("player %s was removed from room %s", self.view.player_id, self.room_id)
        self.identity.forget(self.room_id)
        self.view.player_id = None
        self.view.selected_vote = None
        self.status = SESSION_EVICTED
        self._cancel_tasks()
        if self._subscription is not None:
            self._subscription.close()
        self._notify("error", "You have been kicked from the room.")

    async def _emit_change(self) -> None:
        if self._on_change is None or self.status == SESSION_CLOSED:
            return
        await self._on_change(self)

    # ------------------------------------------------------------- leadership

    async def _players_changed(self) -> None:
        if not self.view.is_leader:
            self._demoting = False
        if not should_demote(self.view.players.values(), self.view.player_id):
            return
        if self.leader_reconcile_delay > 0:
            if self._reconcile_task is None or self._reconcile_task.done():
                self._reconcile_task = self._spawn(self._reconcile_later(self.leader_reconcile_delay))
            return
        await self.reconcile_leadership()

    async def _reconcile_later(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.reconcile_leadership()

    async def reconcile_leadership(self) -> bool:
        """Demote the local player when it is one of several leaders and not the lowest id.

        Only ever writes the local player's own flag. Returns True when a
        demotion was written.
        """
        if not self.is_member or self._demoting:
            return False
        if not should_demote(self.view.players.values(), self.view.player_id):
            return False
        self._demoting = True
        logger.warning("duplicate leader detected in room %s; demoting %s", self.room_id, self.view.player_id)
        try:
            await self.store.update_player(self.view.player_id, {"is_leader": False})
        except StoreError as exc:
            self._demoting = False
            logger.warning("leadership demotion failed in room %s: %s", self.room_id, exc)
            return False
        self._notify("info", "Leadership race resolved: You are now a member.")
        return True

    # ---------------------------------------------------------------- helpers

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _cancel_tasks(self) -> list[asyncio.Task]:
        current = asyncio.current_task()
        cancelled = [task for task in self._tasks if task is not current and not task.done()]
        for task in cancelled:
            task.cancel()
        return cancelled

    def _require_member(self) -> str:
        if self.status == SESSION_EVICTED:
            raise EvictedError("You have been kicked from the room.")
        if self.status == SESSION_CLOSED:
            raise ActionError("This room session is closed.")
        if not self.is_member:
            raise NotJoinedError("Join the room first.")
        return self.view.player_id

    def _require_leader(self) -> str:
        player_id = self._require_member()
        if not self.view.is_leader:
            raise NotLeaderError("Only the room leader can do that.")
        return player_id

    async def _guard(self, message: str, awaitable: Awaitable):
        try:
            return await awaitable
        except StoreError as exc:
            logger.warning("%s in room %s: %s", message, self.room_id, exc)
            raise ActionError(message) from exc

    def _resolve_ticket(self, ticket: Ticket | str) -> Ticket:
        ticket_id = ticket if isinstance(ticket, str) else ticket.id
        resolved = self.view.get_ticket(ticket_id)
        if resolved is None:
            if isinstance(ticket, Ticket):
                return ticket
            raise ActionError(f"Unknown ticket {ticket_id}")
        return resolved

    # ---------------------------------------------------------------- voting

    async def cast_vote(self, value: str) -> str | None:
        """Select ``value`` as the local vote, or clear it when it is already selected.

        Does nothing while votes are revealed or the active ticket is view-only.
        Returns the vote now held.
        """
        player_id = self._require_member()
        if self.view.is_view_only or self.view.is_revealed:
            return self.view.selected_vote
        me = self.view.me
        if me is not None and me.is_spectator:
            raise ActionError("Spectators cannot vote.")
        vote = toggle_vote(self.view.selected_vote, value)
        await self._guard("Failed to cast vote", self.store.update_player(player_id, {"vote": vote}))
        self.view.selected_vote = vote
        return vote

    async def reveal(self) -> str | None:
        """Reveal the votes and save their average as the active ticket's score.

        Returns the average, or None when no vote qualifies.
        """
        self._require_member()
        await self._guard("Failed to reveal votes", self.store.update_room(self.room_id, {"is_revealed": True}))
        average = average_for_players(self.view.players.values())
        active = self.view.active_ticket
        if average is not None and active is not None and not active.is_completed:
            await self.save_score(average)
        return average

    async def reset(self) -> None:
        self._require_member()
        self.view.selected_vote = None
        await self._guard("Failed to reset votes", self.store.update_room(self.room_id, {"is_revealed": False}))
        await self._guard("Failed to reset votes", self.store.update_room_players(self.room_id, {"vote": None}))

    async def set_spectator(self, is_spectator: bool) -> None:
        player_id = self._require_member()
        fields: dict[str, object] = {"is_spectator": is_spectator}
        if is_spectator:
            fields["vote"] = None
        await self._guard("Failed to update player", self.store.update_player(player_id, fields))

    async def update_settings(self, card_deck: str | Iterable[str]) -> tuple[str, ...]:
        self._require_member()
        deck = parse_deck(card_deck)
        if not deck:
            raise ActionError("Deck cannot be empty")
        await self._guard("Failed to update settings", self.store.update_room(self.room_id, {"card_deck": deck}))
        return deck

    # ---------------------------------------------------------------- agenda

    async def add_ticket(self, title: str) -> Ticket:
        self._require_member()
        title = title.strip()
        if not title:
            raise ActionError("Ticket title cannot be empty")
        return await self._guard("Failed to add ticket", self.store.create_ticket(self.room_id, title))

    async def rename_ticket(self, ticket_id: str, title: str) -> Ticket:
        self._require_member()
        title = title.strip()
        if not title:
            raise ActionError("Ticket title cannot be empty")
        return await self._guard("Failed to rename ticket", self.store.update_ticket(ticket_id, {"title": title}))

    async def delete_ticket(self, ticket_id: str) -> None:
        self._require_member()
        room = self.view.room
        if room is not None and room.active_ticket_id == ticket_id:
            await self._guard(
                "Failed to delete ticket",
                self.store.update_room(self.room_id, {"active_ticket_id": None, "is_revealed": False}),
            )
        await self._guard("Failed to delete ticket", self.store.delete_ticket(ticket_id))

    async def set_active_ticket(self, ticket: Ticket | str, skip_auto_save: bool = False) -> Ticket:
        """Make ``ticket`` the one being voted on.

        A revealed, unsaved previous ticket gets its average saved first unless
        ``skip_auto_save``. A completed ticket is entered view-only; any other
        ticket starts a fresh hidden round with every vote cleared.
        """
        self._require_member()
        target = self._resolve_ticket(ticket)
        room = self.view.room
        if (
            not skip_auto_save
            and room is not None
            and room.is_revealed
            and room.active_ticket_id
            and room.active_ticket_id != target.id
        ):
            previous = self.view.active_ticket
            average = average_for_players(self.view.players.values())
            if previous is not None and not previous.is_completed and average is not None:
                await self.save_score(average, auto_advance=False)

        self.view.selected_vote = None
        if target.is_completed:
            await self._guard(
                "Failed to change ticket",
                self.store.update_room(self.room_id, {"active_ticket_id": target.id}),
            )
            return target

        await self._guard(
            "Failed to change ticket",
            self.store.update_room(self.room_id, {"active_ticket_id": target.id, "is_revealed": False}),
        )
        await self._guard("Failed to change ticket", self.store.update_ticket(target.id, {"status": TICKET_ACTIVE}))
        await self._guard("Failed to change ticket", self.store.update_room_players(self.room_id, {"vote": None}))
        return target

    async def save_score(self, score: str | None, auto_advance: bool = True) -> Ticket | None:
        """Complete the active ticket with ``score`` and a snapshot of the current votes.

        Afterwards the next unscored ticket (creation order, wrapping around)
        becomes active after ``auto_advance_delay``. Returns that ticket, or
        None when nothing is left and the saved ticket stays view-only.
        """
        self._require_member()
        score = "" if score is None else str(score).strip()
        if not score:
            raise ActionError("A score is required")
        room = self.view.room
        ticket_id = room.active_ticket_id if room is not None else None
        if not ticket_id:
            raise NoActiveTicketError("No active ticket to score")

        snapshot = build_votes_snapshot(self.view.players.values())
        await self._guard(
            "Failed to save score",
            self.store.update_ticket(
                ticket_id,
                {"score": score, "status": TICKET_COMPLETED, "votes_snapshot": snapshot},
            ),
        )
        self._notify("success", "Score saved!")
        if not auto_advance:
            return None
        next_ticket = find_next_ticket(self.view.tickets, ticket_id)
        if next_ticket is not None:
            self._spawn(self._advance_to(next_ticket.id))
        return next_ticket

    async def _advance_to(self, ticket_id: str) -> None:
        await asyncio.sleep(self.auto_advance_delay)
        if not self.is_member:
            return
        await self.sync()
        ticket = self.view.get_ticket(ticket_id)
        if ticket is None:
            return
        try:
            await self.set_active_ticket(ticket, skip_auto_save=True)
        except ActionError as exc:
            self._notify("error", str(exc))

    async def update_score(self, ticket_id: str, score: str) -> Ticket:
        """Overwrite a completed ticket's score, leaving status and snapshot alone."""
        self._require_member()
        score = str(score).strip()
        if not score:
            raise ActionError("A score is required")
        return await self._guard("Failed to update score", self.store.update_ticket(ticket_id, {"score": score}))

    async def revote(self, ticket: Ticket | str) -> Ticket:
        """Reopen a completed ticket: clear score and snapshot, make it active, clear all votes."""
        self._require_member()
        target = self._resolve_ticket(ticket)
        await self._guard(
            "Failed to restart voting",
            self.store.update_room(self.room_id, {"active_ticket_id": target.id, "is_revealed": False}),
        )
        await self._guard(
            "Failed to restart voting",
            self.store.update_ticket(target.id, {"status": TICKET_ACTIVE, "score": None, "votes_snapshot": None}),
        )
        await self._guard("Failed to restart voting", self.store.update_room_players(self.room_id, {"vote": None}))
        self.view.selected_vote = None
        self._notify("info", f"Revoting on {target.title}")
        return target

    # ------------------------------------------------------------ moderation

    async def transfer_leadership(self, to_id: str, from_id: str | None = None) -> None:
        """Hand leadership to ``to_id``: promote first, then demote.

        The view is updated optimistically and restored if a write fails.
        """
        own_id = self._require_leader()
        from_id = from_id or own_id
        if to_id == from_id:
            return
        target = self.view.players.get(to_id)
        if target is None:
            raise ActionError(f"Unknown player {to_id}")
        source = self.view.players.get(from_id)

        self.view.put_player(replace(target, is_leader=True))
        if source is not None:
            self.view.put_player(replace(source, is_leader=False))
        await self._emit_change()

        try:
            await self.store.update_player(to_id, {"is_leader": True})
        except StoreError as exc:
            logger.warning("promoting %s failed in room %s: %s", to_id, self.room_id, exc)
            self.view.put_player(target)
            if source is not None:
                self.view.put_player(source)
            await self._emit_change()
            raise ActionError("Failed to transfer leadership") from exc

        try:
            await self.store.update_player(from_id, {"is_leader": False})
        except StoreError as exc:
            logger.warning("demoting %s failed in room %s: %s", from_id, self.room_id, exc)
            if source is not None:
                self.view.put_player(source)
            await self._emit_change()
            raise ActionError("Failed to transfer leadership") from exc
        self._notify("success", "Leadership transferred")

    async def kick_player(self, player_id: str) -> None:
        own_id = self._require_leader()
        if player_id == own_id:
            raise ActionError("You cannot kick yourself")
        await self._guard("Failed to kick player", self.store.delete_player(player_id))
        self._notify("success", "Player kicked")

    # --------------------------------------------------------------- teardown

    async def close(self, leave: bool = False) -> None:
        """Tear the session down: stop tasks, unsubscribe, optionally announce leaving.

        Leaving is best effort; a failure is only logged.
        """
        if self.status == SESSION_CLOSED:
            return
        player_id = self.view.player_id if self.status == SESSION_ACTIVE else None
        self.status = SESSION_CLOSED
        cancelled = self._cancel_tasks()
        listener = self._listener
        if listener is not None and not listener.done() and listener is not asyncio.current_task():
            listener.cancel()
            cancelled.append(listener)
        if self._subscription is not None:
            self._subscription.close()
        for task in cancelled:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if leave and player_id:
            await send_leave(self.store, player_id)


async def send_leave(store: PlanningStore, player_id: str) -> bool:
    """Best-effort leave notification: remove the player row if it still exists."""
    try:
        await store.delete_player(player_id)
    except StoreError as exc:
        logger.info("leave for player %s not applied: %s", player_id, exc)
        return False
    return True
