from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from threading import Lock
from typing import Dict, Iterator, List, Optional, Tuple
from uuid import uuid4
from weakref import WeakValueDictionary

from access import can_create_for, can_manage_rooms, can_read, can_write
from config import Settings
from conflicts import find_conflict
from errors import (
    BusyError,
    ConflictError,
    ForbiddenError,
    InvalidFieldError,
    ReservationNotFoundError,
    RoomNotFoundError,
)
from models import (
    Actor,
    ListScope,
    Reservation,
    ReservationDraft,
    ReservationFilter,
    ReservationPatch,
    Room,
    RoomDraft,
    RoomPatch,
    TimeWindow,
)
from policy import PolicyValidator

logger = logging.getLogger(__name__)


class RoomLocks:
    """
    One mutex per room id. Holding a room's lock is what makes a conflict
    check and the write that follows it a single atomic step.

    Acquisition never blocks indefinitely: each attempt waits at most
    `timeout` seconds per lock, and after `attempts` failed attempts a
    BusyError is raised.

    Entries are weak: a room's lock lives only while some caller holds or
    waits on it, so unknown or deleted room ids leave nothing behind.
    """

    def __init__(self, timeout: float, attempts: int, backoff: float) -> None:
        self._timeout = timeout
        self._attempts = attempts
        self._backoff = backoff
        self._locks: "WeakValueDictionary[str, Lock]" = WeakValueDictionary()
        self._guard = Lock()

    def _lock_for(self, room_id: str) -> Lock:
        with self._guard:
            lock = self._locks.get(room_id)
            if lock is None:
                lock = self._locks[room_id] = Lock()
            return lock

    def forget(self, room_id: str) -> None:
        with self._guard:
            self._locks.pop(room_id, None)

    def _try_acquire(self, room_ids: List[str]) -> Optional[List[Lock]]:
        acquired: List[Lock] = []
        for room_id in room_ids:
            lock = self._lock_for(room_id)
            if not lock.acquire(timeout=self._timeout):
                for held in reversed(acquired):
                    held.release()
                return None
            acquired.append(lock)
        return acquired

    @contextmanager
    def hold(self, *room_ids: str) -> Iterator[None]:
        # sorted order so two multi-room holds can never deadlock
        ordered = sorted(set(room_ids))
        acquired = None
        for attempt in range(1, self._attempts + 1):
            acquired = self._try_acquire(ordered)
            if acquired is not None:
                break
            logger.debug("Lock attempt %d/%d failed for rooms %s", attempt, self._attempts, ordered)
            if attempt < self._attempts:
                time.sleep(self._backoff * attempt)

        if acquired is None:
            logger.warning("Giving up on rooms %s after %d attempts", ordered, self._attempts)
            raise BusyError()

        try:
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


class InMemoryReservationStore:
    """
    Authoritative owner of rooms and reservations.

    Two levels of locking:
      * per-room locks (RoomLocks) serialize check-and-write for a room,
      * `_lock` is held only for the short moment a collection is read or
        swapped, so readers always see a whole mutation or none of it.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or Settings()
        self._validator = PolicyValidator(self._settings)
        self._rooms: Dict[str, Room] = {}
        self._items: Dict[str, Reservation] = {}
        self._lock = Lock()
        self._room_locks = RoomLocks(
            timeout=self._settings.lock_timeout_seconds,
            attempts=self._settings.lock_attempts,
            backoff=self._settings.lock_backoff_seconds,
        )

    # -----------------------------
    # Reads
    # -----------------------------
    def get_room(self, room_id: str) -> Room:
        with self._lock:
            room = self._rooms.get(room_id)
        if room is None:
            raise RoomNotFoundError()
        return room

    def list_rooms(self) -> List[Room]:
        with self._lock:
            rooms = list(self._rooms.values())
        rooms.sort(key=lambda r: (r.name.lower(), r.room_id))
        return rooms

    def get_reservation(self, actor: Actor, reservation_id: str) -> Reservation:
        reservation = self._require_reservation(reservation_id)
        if not can_read(actor, reservation):
            raise ForbiddenError()
        return reservation

    def list_reservations(self, actor: Actor, criteria: ReservationFilter) -> List[Reservation]:
        items, _ = self.list_reservations_with_rooms(actor, criteria)
        return items

    def list_reservations_with_rooms(
        self, actor: Actor, criteria: ReservationFilter
    ) -> Tuple[List[Reservation], Dict[str, Room]]:
        """Filtered reservations plus the rooms they sit in, read from one snapshot."""
        with self._lock:
            items = list(self._items.values())
            rooms = dict(self._rooms)

        if not actor.is_admin:
            items = [r for r in items if r.owner_id == actor.user_id]
        if criteria.room_id is not None:
            items = [r for r in items if r.room_id == criteria.room_id]

        if criteria.scope == ListScope.UPCOMING:
            items = [r for r in items if r.window.start >= criteria.now]
        elif criteria.scope == ListScope.PAST:
            items = [r for r in items if r.window.start < criteria.now]

        items.sort(
            key=lambda r: (r.window.start, r.reservation_id),
            reverse=criteria.scope == ListScope.PAST,
        )
        return items, {r.room_id: rooms[r.room_id] for r in items}

    # -----------------------------
    # Reservation writes
    # -----------------------------
    def create_reservation(self, actor: Actor, draft: ReservationDraft, now: datetime) -> Reservation:
        _require_text("title", draft.title)
        draft.window.validate()
        self._validator.validate(draft.window, now)

        owner_id = draft.owner_id or actor.user_id
        if not can_create_for(actor, owner_id):
            raise ForbiddenError("Forbidden: only admins may book on behalf of another user.")

        reservation = Reservation(
            reservation_id=f"res_{uuid4().hex}",
            title=draft.title.strip(),
            window=draft.window,
            room_id=draft.room_id,
            owner_id=owner_id,
            notes=draft.notes or "",
        )

        # rejected before locking so unknown room ids never get a lock entry
        self.get_room(reservation.room_id)
        with self._room_locks.hold(reservation.room_id):
            existing = self._room_reservations(reservation.room_id)
            self._check_conflict(existing, reservation)
            with self._lock:
                self._items[reservation.reservation_id] = reservation

        logger.info(
            "Reservation %s created in room %s by %s",
            reservation.reservation_id, reservation.room_id, actor.user_id,
        )
        return reservation

    def update_reservation(
        self,
        actor: Actor,
        reservation_id: str,
        patch: ReservationPatch,
        now: datetime,
    ) -> Reservation:
        for _ in range(self._settings.lock_attempts):
            current = self._require_reservation(reservation_id)
            if not can_write(actor, current):
                raise ForbiddenError()

            updated = self._apply_patch(current, patch, now)
            if updated.room_id != current.room_id:
                self.get_room(updated.room_id)

            with self._room_locks.hold(current.room_id, updated.room_id):
                with self._lock:
                    latest = self._items.get(reservation_id)
                if latest is None:
                    raise ReservationNotFoundError()
                if latest is not current:
                    # changed while we were validating; start over from the new state
                    continue

                existing = self._room_reservations(updated.room_id)
                self._check_conflict(existing, updated)
                if updated != current:
                    with self._lock:
                        self._items[reservation_id] = updated
                    logger.info("Reservation %s updated by %s", reservation_id, actor.user_id)
                return updated

        logger.warning("Reservation %s kept changing during update", reservation_id)
        raise BusyError()

    def delete_reservation(self, actor: Actor, reservation_id: str) -> None:
        for _ in range(self._settings.lock_attempts):
            current = self._require_reservation(reservation_id)
            if not can_write(actor, current):
                raise ForbiddenError()

            with self._room_locks.hold(current.room_id):
                with self._lock:
                    latest = self._items.get(reservation_id)
                    if latest is None:
                        raise ReservationNotFoundError()
                    if latest.room_id != current.room_id:
                        continue
                    del self._items[reservation_id]

            logger.info("Reservation %s deleted by %s", reservation_id, actor.user_id)
            return

        raise BusyError()

    # -----------------------------
    # Room writes (admin only)
    # -----------------------------
    def create_room(self, actor: Actor, draft: RoomDraft) -> Room:
        _require_admin(actor)
        _require_text("name", draft.name)
        _require_capacity(draft.capacity)

        room = Room(
            room_id=f"room_{uuid4().hex}",
            name=draft.name.strip(),
            capacity=draft.capacity,
            color=draft.color,
            description=draft.description or "",
        )
        with self._lock:
            self._rooms[room.room_id] = room

        logger.info("Room %s (%s) created by %s", room.room_id, room.name, actor.user_id)
        return room

    def update_room(self, actor: Actor, room_id: str, patch: RoomPatch) -> Room:
        _require_admin(actor)
        if patch.name is not None:
            _require_text("name", patch.name)
        if patch.capacity is not None:
            _require_capacity(patch.capacity)

        with self._lock:
            current = self._rooms.get(room_id)
            if current is None:
                raise RoomNotFoundError()
            updated = replace(
                current,
                name=patch.name.strip() if patch.name is not None else current.name,
                capacity=patch.capacity if patch.capacity is not None else current.capacity,
                color=patch.color if patch.color is not None else current.color,
                description=patch.description if patch.description is not None else current.description,
            )
            self._rooms[room_id] = updated

        logger.info("Room %s updated by %s", room_id, actor.user_id)
        return updated

    def delete_room(self, actor: Actor, room_id: str) -> int:
        """Delete a room and all of its reservations in one step. Returns how many reservations went with it."""
        _require_admin(actor)
        self.get_room(room_id)

        with self._room_locks.hold(room_id):
            with self._lock:
                if room_id not in self._rooms:
                    raise RoomNotFoundError()
                remaining = {k: r for k, r in self._items.items() if r.room_id != room_id}
                removed = len(self._items) - len(remaining)
                rooms = dict(self._rooms)
                del rooms[room_id]
                self._items, self._rooms = remaining, rooms
        self._room_locks.forget(room_id)

        logger.info("Room %s deleted by %s with %d reservation(s)", room_id, actor.user_id, removed)
        return removed

    def reset(self) -> None:
        """Clear all rooms and reservations. For testing only."""
        with self._lock:
            self._items.clear()
            self._rooms.clear()

    # -----------------------------
    # Internals
    # -----------------------------
    def _require_reservation(self, reservation_id: str) -> Reservation:
        with self._lock:
            reservation = self._items.get(reservation_id)
        if reservation is None:
            raise ReservationNotFoundError()
        return reservation

    def _room_reservations(self, room_id: str) -> List[Reservation]:
        # Caller holds the room lock, so the snapshot stays current until it writes.
        with self._lock:
            if room_id not in self._rooms:
                raise RoomNotFoundError()
            return [r for r in self._items.values() if r.room_id == room_id]

    def _check_conflict(self, existing: List[Reservation], candidate: Reservation) -> None:
        conflict_id = find_conflict(
            existing,
            candidate.room_id,
            candidate.window,
            exclude_reservation_id=candidate.reservation_id,
        )
        if conflict_id is not None:
            logger.info(
                "Reservation request for room %s conflicts with %s",
                candidate.room_id, conflict_id,
            )
            raise ConflictError(conflict_id)

    def _apply_patch(self, current: Reservation, patch: ReservationPatch, now: datetime) -> Reservation:
        if patch.title is not None:
            _require_text("title", patch.title)

        window = TimeWindow(
            start=patch.start if patch.start is not None else current.window.start,
            end=patch.end if patch.end is not None else current.window.end,
        )
        if window != current.window:
            window.validate()
            self._validator.validate(window, now)

        return replace(
            current,
            title=patch.title.strip() if patch.title is not None else current.title,
            room_id=patch.room_id if patch.room_id is not None else current.room_id,
            window=window,
            notes=patch.notes if patch.notes is not None else current.notes,
        )


def _require_admin(actor: Actor) -> None:
    if not can_manage_rooms(actor):
        raise ForbiddenError("Forbidden: only admins may manage rooms.")


def _require_text(field: str, value: Optional[str]) -> None:
    if value is None or not value.strip():
        raise InvalidFieldError(field, f"Validation error: {field} must not be empty.")


def _require_capacity(capacity: int) -> None:
    if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity < 1:
        raise InvalidFieldError("capacity", "Validation error: capacity must be an integer of at least 1.")
