from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from errors import ConflictError, ForbiddenError, ReservationError, RoomNotFoundError
from models import (
    Actor,
    CreateReservationIn,
    ListScope,
    Reservation,
    ReservationDraft,
    ReservationFilter,
    ReservationOut,
    ReservationPatch,
    Role,
    Room,
    RoomDraft,
    RoomIn,
    RoomOut,
    RoomPatch,
    RoomUpdateIn,
    TimeWindow,
    UpdateReservationIn,
    parse_iso8601_tz,
    to_utc,
    utc_iso_z,
)
from repository import InMemoryReservationStore


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ErrorInfo:
    """Transport-neutral description of a failed engine call."""

    code: str
    category: str
    message: str
    retryable: bool
    existing_reservation_id: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "code": self.code,
            "category": self.category,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.existing_reservation_id is not None:
            payload["existing_reservation_id"] = self.existing_reservation_id
        return payload


def describe_error(error: ReservationError) -> ErrorInfo:
    return ErrorInfo(
        code=error.code,
        category=error.category,
        message=error.message,
        retryable=error.retryable,
        existing_reservation_id=(
            error.existing_reservation_id if isinstance(error, ConflictError) else None
        ),
    )


def _parse_instant(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return to_utc(parse_iso8601_tz(value))


class ReservationEngine:
    """
    Single entry point for UI/API callers.

    Converts transport models to domain values, stamps calls with the clock's
    `now`, and hands everything to the store. Failures surface as
    ReservationError subclasses; `describe_error` turns them into values.
    """

    def __init__(self, store: InMemoryReservationStore, clock: Optional[Clock] = None) -> None:
        self._store = store
        self._clock = clock or utc_now

    @staticmethod
    def actor_from_session(user_id: Optional[str], role: Optional[str] = None) -> Actor:
        if user_id is None or not user_id.strip():
            raise ForbiddenError("Forbidden: missing authenticated user.")
        try:
            resolved = Role((role or Role.USER.value).strip().lower())
        except ValueError:
            raise ForbiddenError(f"Forbidden: unknown role {role!r}.") from None
        return Actor(user_id=user_id.strip(), role=resolved)

    # -----------------------------
    # Reservations
    # -----------------------------
    def create_reservation(self, actor: Actor, payload: CreateReservationIn) -> ReservationOut:
        draft = ReservationDraft(
            title=payload.title,
            room_id=payload.room_id,
            window=TimeWindow(start=_parse_instant(payload.start), end=_parse_instant(payload.end)),
            notes=payload.notes,
            owner_id=payload.owner_id,
        )
        reservation = self._store.create_reservation(actor, draft, self._clock())
        return self._to_out(reservation)

    def get_reservation(self, actor: Actor, reservation_id: str) -> ReservationOut:
        return self._to_out(self._store.get_reservation(actor, reservation_id))

    def update_reservation(
        self, actor: Actor, reservation_id: str, payload: UpdateReservationIn
    ) -> ReservationOut:
        patch = ReservationPatch(
            title=payload.title,
            room_id=payload.room_id,
            start=_parse_instant(payload.start),
            end=_parse_instant(payload.end),
            notes=payload.notes,
        )
        reservation = self._store.update_reservation(actor, reservation_id, patch, self._clock())
        return self._to_out(reservation)

    def delete_reservation(self, actor: Actor, reservation_id: str) -> None:
        # Deletion is final; there is no cancelled state.
        self._store.delete_reservation(actor, reservation_id)

    def list_reservations(
        self,
        actor: Actor,
        room_id: Optional[str] = None,
        scope: ListScope = ListScope.UPCOMING,
    ) -> List[ReservationOut]:
        criteria = ReservationFilter(now=self._clock(), scope=ListScope(scope), room_id=room_id)
        items, rooms = self._store.list_reservations_with_rooms(actor, criteria)
        return [self._to_out(r, rooms.get(r.room_id)) for r in items]

    # -----------------------------
    # Rooms
    # -----------------------------
    def create_room(self, actor: Actor, payload: RoomIn) -> RoomOut:
        room = self._store.create_room(
            actor,
            RoomDraft(
                name=payload.name,
                capacity=payload.capacity,
                color=payload.color,
                description=payload.description,
            ),
        )
        return _room_out(room)

    def get_room(self, actor: Actor, room_id: str) -> RoomOut:
        return _room_out(self._store.get_room(room_id))

    def list_rooms(self, actor: Actor) -> List[RoomOut]:
        return [_room_out(r) for r in self._store.list_rooms()]

    def update_room(self, actor: Actor, room_id: str, payload: RoomUpdateIn) -> RoomOut:
        room = self._store.update_room(
            actor,
            room_id,
            RoomPatch(
                name=payload.name,
                capacity=payload.capacity,
                color=payload.color,
                description=payload.description,
            ),
        )
        return _room_out(room)

    def delete_room(self, actor: Actor, room_id: str) -> int:
        return self._store.delete_room(actor, room_id)

    def _to_out(self, reservation: Reservation, room: Optional[Room] = None) -> ReservationOut:
        if room is None:
            try:
                room = self._store.get_room(reservation.room_id)
            except RoomNotFoundError:
                room = None
        return ReservationOut(
            reservation_id=reservation.reservation_id,
            title=reservation.title,
            room_id=reservation.room_id,
            owner_id=reservation.owner_id,
            start=utc_iso_z(reservation.window.start),
            end=utc_iso_z(reservation.window.end),
            notes=reservation.notes,
            room_name=room.name if room else None,
            room_color=room.color if room else None,
        )


def _room_out(room: Room) -> RoomOut:
    return RoomOut(
        room_id=room.room_id,
        name=room.name,
        capacity=room.capacity,
        color=room.color,
        description=room.description,
    )
