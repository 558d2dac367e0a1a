from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from threading import Barrier

import pytest

from config import Settings
from errors import (
    BusyError,
    ConflictError,
    DurationTooLongError,
    DurationTooShortError,
    ForbiddenError,
    InThePastError,
    InvalidFieldError,
    InvalidWindowError,
    OutsideBusinessHoursError,
    ReservationNotFoundError,
    RoomNotFoundError,
)
from models import (
    Actor,
    ListScope,
    ReservationDraft,
    ReservationFilter,
    ReservationPatch,
    Role,
    RoomDraft,
    RoomPatch,
    TimeWindow,
)
from repository import InMemoryReservationStore

NOW = datetime(2030, 1, 1, 0, 0, tzinfo=timezone.utc)

U1 = Actor(user_id="u1")
U2 = Actor(user_id="u2")
A1 = Actor(user_id="a1", role=Role.ADMIN)


def at(hour: int, minute: int = 0, day: int = 2) -> datetime:
    return datetime(2030, 1, day, hour, minute, tzinfo=timezone.utc)


def window(start: str, end: str, day: int = 2) -> TimeWindow:
    sh, sm = map(int, start.split(":"))
    eh, em = map(int, end.split(":"))
    return TimeWindow(start=at(sh, sm, day), end=at(eh, em, day))


@pytest.fixture
def store():
    return InMemoryReservationStore(Settings(lock_timeout_seconds=0.5, lock_attempts=3))


@pytest.fixture
def room(store):
    return store.create_room(A1, RoomDraft(name="R1", capacity=4))


def book(store, room_id, start, end, actor=U1, title="Meeting", day=2, **kwargs):
    draft = ReservationDraft(title=title, room_id=room_id, window=window(start, end, day), **kwargs)
    return store.create_reservation(actor, draft, NOW)


def listing(store, actor, scope=ListScope.ALL, room_id=None, now=NOW):
    return store.list_reservations(actor, ReservationFilter(now=now, scope=scope, room_id=room_id))


# -----------------------------
# Create
# -----------------------------
def test_booking_scenario_with_touching_boundary(store, room):
    first = book(store, room.room_id, "09:00", "10:00")
    assert first.reservation_id.startswith("res_")
    assert first.owner_id == "u1"

    with pytest.raises(ConflictError) as excinfo:
        book(store, room.room_id, "09:30", "10:30")
    assert excinfo.value.existing_reservation_id == first.reservation_id

    second = book(store, room.room_id, "10:00", "11:00")
    assert second.window.start == first.window.end


def test_same_window_in_different_rooms_is_allowed(store, room):
    other = store.create_room(A1, RoomDraft(name="R2", capacity=2))
    book(store, room.room_id, "09:00", "10:00")
    book(store, other.room_id, "09:00", "10:00")
    assert len(listing(store, A1)) == 2


def test_policy_failures_surface_verbatim(store, room):
    with pytest.raises(OutsideBusinessHoursError):
        book(store, room.room_id, "07:30", "08:30")
    with pytest.raises(DurationTooShortError):
        book(store, room.room_id, "08:00", "08:15")
    with pytest.raises(DurationTooLongError):
        book(store, room.room_id, "08:00", "13:00")
    with pytest.raises(InvalidWindowError):
        book(store, room.room_id, "10:00", "09:00")


def test_duration_checked_before_conflict(store, room):
    book(store, room.room_id, "09:00", "10:00")
    with pytest.raises(DurationTooShortError):
        book(store, room.room_id, "09:00", "09:10")


def test_in_the_past_on_create(store, room):
    draft = ReservationDraft(title="Late", room_id=room.room_id, window=window("09:00", "10:00"))
    with pytest.raises(InThePastError):
        store.create_reservation(U1, draft, at(12))


def test_unknown_room(store):
    with pytest.raises(RoomNotFoundError):
        book(store, "room_missing", "09:00", "10:00")


def test_empty_title_rejected(store, room):
    with pytest.raises(InvalidFieldError):
        book(store, room.room_id, "09:00", "10:00", title="   ")


def test_user_cannot_book_for_someone_else(store, room):
    with pytest.raises(ForbiddenError):
        book(store, room.room_id, "09:00", "10:00", owner_id="u2")


def test_admin_can_book_for_someone_else(store, room):
    reservation = book(store, room.room_id, "09:00", "10:00", actor=A1, owner_id="u2")
    assert reservation.owner_id == "u2"
    assert [r.reservation_id for r in listing(store, U2)] == [reservation.reservation_id]


# -----------------------------
# Update
# -----------------------------
def test_noop_update_is_idempotent(store, room):
    reservation = book(store, room.room_id, "09:00", "10:00", notes="bring slides")
    patch = ReservationPatch(
        title=reservation.title,
        room_id=reservation.room_id,
        start=reservation.window.start,
        end=reservation.window.end,
        notes=reservation.notes,
    )
    assert store.update_reservation(U1, reservation.reservation_id, patch, NOW) == reservation
    assert store.update_reservation(U1, reservation.reservation_id, ReservationPatch(), NOW) == reservation
    assert store.get_reservation(U1, reservation.reservation_id) == reservation


def test_update_of_unrelated_fields_skips_past_check(store, room):
    reservation = book(store, room.room_id, "09:00", "10:00")
    later = at(12)
    updated = store.update_reservation(
        U1, reservation.reservation_id, ReservationPatch(title="Retro"), later
    )
    assert updated.title == "Retro"
    assert updated.window == reservation.window


def test_update_changing_window_is_revalidated(store, room):
    reservation = book(store, room.room_id, "09:00", "10:00")
    with pytest.raises(InThePastError):
        store.update_reservation(
            U1, reservation.reservation_id, ReservationPatch(end=at(10, 30)), at(12)
        )
    with pytest.raises(DurationTooLongError):
        store.update_reservation(
            U1, reservation.reservation_id, ReservationPatch(end=at(14)), NOW
        )


def test_update_can_shrink_or_shift_against_itself(store, room):
    reservation = book(store, room.room_id, "09:00", "10:00")
    updated = store.update_reservation(
        U1, reservation.reservation_id, ReservationPatch(start=at(9, 30), end=at(10, 30)), NOW
    )
    assert updated.window == window("09:30", "10:30")
    assert updated.reservation_id == reservation.reservation_id
    assert updated.owner_id == reservation.owner_id


def test_update_into_occupied_slot_conflicts(store, room):
    first = book(store, room.room_id, "09:00", "10:00")
    second = book(store, room.room_id, "10:00", "11:00")
    with pytest.raises(ConflictError) as excinfo:
        store.update_reservation(U1, second.reservation_id, ReservationPatch(start=at(9, 30)), NOW)
    assert excinfo.value.existing_reservation_id == first.reservation_id
    assert store.get_reservation(U1, second.reservation_id) == second


def test_update_moving_rooms(store, room):
    other = store.create_room(A1, RoomDraft(name="R2", capacity=2))
    blocker = book(store, other.room_id, "09:00", "10:00", actor=U2)
    reservation = book(store, room.room_id, "09:00", "10:00")

    with pytest.raises(ConflictError):
        store.update_reservation(U1, reservation.reservation_id, ReservationPatch(room_id=other.room_id), NOW)

    store.delete_reservation(U2, blocker.reservation_id)
    moved = store.update_reservation(
        U1, reservation.reservation_id, ReservationPatch(room_id=other.room_id), NOW
    )
    assert moved.room_id == other.room_id
    assert listing(store, A1, room_id=room.room_id) == []


def test_update_to_unknown_room(store, room):
    reservation = book(store, room.room_id, "09:00", "10:00")
    with pytest.raises(RoomNotFoundError):
        store.update_reservation(U1, reservation.reservation_id, ReservationPatch(room_id="nope"), NOW)


def test_update_not_found_and_forbidden(store, room):
    reservation = book(store, room.room_id, "09:00", "10:00")
    with pytest.raises(ReservationNotFoundError):
        store.update_reservation(U1, "res_missing", ReservationPatch(title="x"), NOW)
    with pytest.raises(ForbiddenError):
        store.update_reservation(U2, reservation.reservation_id, ReservationPatch(title="x"), NOW)
    updated = store.update_reservation(A1, reservation.reservation_id, ReservationPatch(title="x"), NOW)
    assert updated.owner_id == "u1"


# -----------------------------
# Delete
# -----------------------------
def test_delete_scenario(store, room):
    reservation = book(store, room.room_id, "09:00", "10:00")

    with pytest.raises(ForbiddenError):
        store.delete_reservation(U2, reservation.reservation_id)

    store.delete_reservation(A1, reservation.reservation_id)
    assert listing(store, A1, room_id=room.room_id) == []

    with pytest.raises(ReservationNotFoundError):
        store.delete_reservation(A1, reservation.reservation_id)


def test_deleted_slot_can_be_rebooked(store, room):
    reservation = book(store, room.room_id, "09:00", "10:00")
    store.delete_reservation(U1, reservation.reservation_id)
    book(store, room.room_id, "09:00", "10:00", actor=U2)


# -----------------------------
# Listing
# -----------------------------
def test_non_admin_sees_only_own_reservations(store, room):
    book(store, room.room_id, "09:00", "10:00", actor=U1)
    book(store, room.room_id, "10:00", "11:00", actor=U2)
    book(store, room.room_id, "11:00", "12:00", actor=A1)

    for actor in (U1, U2):
        for scope in ListScope:
            assert all(r.owner_id == actor.user_id for r in listing(store, actor, scope=scope))
    assert len(listing(store, A1)) == 3


def test_scopes_and_ordering(store, room):
    early = book(store, room.room_id, "09:00", "10:00", day=2)
    middle = book(store, room.room_id, "09:00", "10:00", day=3)
    late = book(store, room.room_id, "09:00", "10:00", day=4)
    now = at(9, 0, day=3)

    upcoming = listing(store, U1, scope=ListScope.UPCOMING, now=now)
    past = listing(store, U1, scope=ListScope.PAST, now=now)
    everything = listing(store, U1, scope=ListScope.ALL, now=now)

    assert [r.reservation_id for r in upcoming] == [middle.reservation_id, late.reservation_id]
    assert [r.reservation_id for r in past] == [early.reservation_id]
    assert [r.reservation_id for r in everything] == [
        early.reservation_id, middle.reservation_id, late.reservation_id,
    ]


def test_past_scope_is_descending(store, room):
    first = book(store, room.room_id, "09:00", "10:00", day=2)
    second = book(store, room.room_id, "09:00", "10:00", day=3)
    past = listing(store, U1, scope=ListScope.PAST, now=at(0, 0, day=5))
    assert [r.reservation_id for r in past] == [second.reservation_id, first.reservation_id]


def test_room_filter(store, room):
    other = store.create_room(A1, RoomDraft(name="R2", capacity=2))
    mine = book(store, room.room_id, "09:00", "10:00")
    book(store, other.room_id, "09:00", "10:00")
    assert [r.reservation_id for r in listing(store, U1, room_id=room.room_id)] == [mine.reservation_id]


def test_get_reservation_rules(store, room):
    reservation = book(store, room.room_id, "09:00", "10:00")
    assert store.get_reservation(A1, reservation.reservation_id) == reservation
    with pytest.raises(ForbiddenError):
        store.get_reservation(U2, reservation.reservation_id)
    with pytest.raises(ReservationNotFoundError):
        store.get_reservation(U1, "res_missing")


# -----------------------------
# Rooms
# -----------------------------
def test_room_management_is_admin_only(store, room):
    with pytest.raises(ForbiddenError):
        store.create_room(U1, RoomDraft(name="R9", capacity=2))
    with pytest.raises(ForbiddenError):
        store.update_room(U1, room.room_id, RoomPatch(name="Renamed"))
    with pytest.raises(ForbiddenError):
        store.delete_room(U1, room.room_id)


def test_room_defaults_and_validation(store):
    room = store.create_room(A1, RoomDraft(name="  Board room "))
    assert room.name == "Board room"
    assert room.capacity == 1
    assert room.color == "#3174ad"
    with pytest.raises(InvalidFieldError):
        store.create_room(A1, RoomDraft(name="", capacity=2))
    with pytest.raises(InvalidFieldError):
        store.create_room(A1, RoomDraft(name="Closet", capacity=0))


def test_update_room(store, room):
    updated = store.update_room(A1, room.room_id, RoomPatch(capacity=10, color="#ff0000"))
    assert updated.capacity == 10
    assert updated.color == "#ff0000"
    assert updated.name == room.name
    assert store.get_room(room.room_id) == updated
    with pytest.raises(RoomNotFoundError):
        store.update_room(A1, "room_missing", RoomPatch(name="x"))


def test_list_rooms_sorted_by_name(store):
    for name in ("Zeta", "alpha", "Mid"):
        store.create_room(A1, RoomDraft(name=name, capacity=2))
    assert [r.name for r in store.list_rooms()] == ["alpha", "Mid", "Zeta"]


def test_delete_room_cascades(store, room):
    other = store.create_room(A1, RoomDraft(name="R2", capacity=2))
    book(store, room.room_id, "09:00", "10:00")
    book(store, room.room_id, "10:00", "11:00", actor=U2)
    survivor = book(store, other.room_id, "09:00", "10:00")

    assert store.delete_room(A1, room.room_id) == 2

    assert [r.reservation_id for r in listing(store, A1)] == [survivor.reservation_id]
    with pytest.raises(RoomNotFoundError):
        store.get_room(room.room_id)
    with pytest.raises(RoomNotFoundError):
        book(store, room.room_id, "12:00", "13:00")
    with pytest.raises(RoomNotFoundError):
        store.delete_room(A1, room.room_id)


# -----------------------------
# Concurrency
# -----------------------------
def test_concurrent_identical_requests_book_once(store, room):
    workers = 16
    barrier = Barrier(workers)

    def attempt(i):
        barrier.wait()
        try:
            book(store, room.room_id, "09:00", "10:00", actor=Actor(user_id=f"u{i}"))
            return "ok"
        except (ConflictError, BusyError) as error:
            return type(error).__name__

    with ThreadPoolExecutor(max_workers=workers) as pool:
        outcomes = list(pool.map(attempt, range(workers)))

    assert outcomes.count("ok") == 1
    assert len(outcomes) == workers
    assert len(listing(store, A1, room_id=room.room_id)) == 1


def test_held_room_lock_reports_busy():
    store = InMemoryReservationStore(
        Settings(lock_timeout_seconds=0.01, lock_attempts=2, lock_backoff_seconds=0.0)
    )
    room = store.create_room(A1, RoomDraft(name="R1", capacity=4))
    other = store.create_room(A1, RoomDraft(name="R2", capacity=4))

    with store._room_locks.hold(room.room_id):
        with pytest.raises(BusyError) as excinfo:
            book(store, room.room_id, "09:00", "10:00")
        assert excinfo.value.retryable
        # other rooms are unaffected
        book(store, other.room_id, "09:00", "10:00")

    book(store, room.room_id, "09:00", "10:00")


def test_concurrent_moves_into_one_slot_book_once(store, room):
    workers = 8
    sources = [store.create_room(A1, RoomDraft(name=f"S{i}", capacity=2)) for i in range(workers)]
    moving = [
        book(store, source.room_id, "09:00", "10:00", actor=Actor(user_id=f"u{i}"))
        for i, source in enumerate(sources)
    ]
    barrier = Barrier(workers)

    def attempt(reservation):
        barrier.wait()
        try:
            store.update_reservation(
                Actor(user_id=reservation.owner_id),
                reservation.reservation_id,
                ReservationPatch(room_id=room.room_id),
                NOW,
            )
            return "ok"
        except (ConflictError, BusyError) as error:
            return type(error).__name__

    with ThreadPoolExecutor(max_workers=workers) as pool:
        outcomes = list(pool.map(attempt, moving))

    assert outcomes.count("ok") == 1
    assert len(listing(store, A1, room_id=room.room_id)) == 1
    assert len(listing(store, A1)) == workers


def test_delete_room_racing_creates_leaves_no_orphans(store):
    workers = 8
    for _ in range(10):
        target = store.create_room(A1, RoomDraft(name="Doomed", capacity=2))
        barrier = Barrier(workers + 1)

        def create(i):
            barrier.wait()
            try:
                book(store, target.room_id, f"{9 + i}:00", f"{9 + i}:30", actor=Actor(user_id=f"u{i}"))
            except (RoomNotFoundError, BusyError):
                pass

        def remove():
            barrier.wait()
            store.delete_room(A1, target.room_id)

        with ThreadPoolExecutor(max_workers=workers + 1) as pool:
            futures = [pool.submit(create, i) for i in range(workers)]
            futures.append(pool.submit(remove))
            for future in futures:
                future.result()

        room_ids = {r.room_id for r in store.list_rooms()}
        assert all(r.room_id in room_ids for r in listing(store, A1))

    assert listing(store, A1) == []


def test_update_retries_when_reservation_changes_underneath(store, room, monkeypatch):
    reservation = book(store, room.room_id, "09:00", "10:00")
    apply_patch = store._apply_patch
    calls = []

    def racing_apply_patch(current, patch, now):
        calls.append(patch)
        if len(calls) == 1:
            # another writer lands between our read and our lock
            store.update_reservation(U1, reservation.reservation_id, ReservationPatch(notes="moved agenda"), now)
        return apply_patch(current, patch, now)

    monkeypatch.setattr(store, "_apply_patch", racing_apply_patch)
    updated = store.update_reservation(U1, reservation.reservation_id, ReservationPatch(title="Retro"), NOW)

    assert updated.title == "Retro"
    assert updated.notes == "moved agenda"
    assert store.get_reservation(U1, reservation.reservation_id) == updated


def test_update_gives_up_when_reservation_keeps_changing(store, room, monkeypatch):
    reservation = book(store, room.room_id, "09:00", "10:00")
    apply_patch = store._apply_patch
    outer = []

    def racing_apply_patch(current, patch, now):
        if patch.title == "Retro":
            outer.append(patch)
            store.update_reservation(
                U1, reservation.reservation_id, ReservationPatch(notes=f"edit {len(outer)}"), now
            )
        return apply_patch(current, patch, now)

    monkeypatch.setattr(store, "_apply_patch", racing_apply_patch)
    with pytest.raises(BusyError):
        store.update_reservation(U1, reservation.reservation_id, ReservationPatch(title="Retro"), NOW)

    assert len(outer) == 3
    assert store.get_reservation(U1, reservation.reservation_id).title == "Meeting"


def test_delete_retries_when_reservation_moves_rooms(store, room, monkeypatch):
    other = store.create_room(A1, RoomDraft(name="R2", capacity=2))
    reservation = book(store, room.room_id, "09:00", "10:00")
    require = store._require_reservation
    moved = []

    def racing_require(reservation_id):
        current = require(reservation_id)
        if not moved:
            moved.append(True)
            store.update_reservation(U1, reservation_id, ReservationPatch(room_id=other.room_id), NOW)
        return current

    monkeypatch.setattr(store, "_require_reservation", racing_require)
    store.delete_reservation(U1, reservation.reservation_id)

    assert listing(store, A1) == []


def test_unknown_and_deleted_rooms_leave_no_lock_entries(store):
    for i in range(100):
        with pytest.raises(RoomNotFoundError):
            book(store, f"bogus_{i}", "09:00", "10:00")
    room = store.create_room(A1, RoomDraft(name="R1", capacity=4))
    reservation = book(store, room.room_id, "09:00", "10:00")
    with pytest.raises(RoomNotFoundError):
        store.update_reservation(U1, reservation.reservation_id, ReservationPatch(room_id="bogus"), NOW)
    store.delete_room(A1, room.room_id)

    assert len(store._room_locks._locks) == 0


def test_listing_with_rooms_comes_from_one_snapshot(store, room):
    other = store.create_room(A1, RoomDraft(name="R2", capacity=2))
    book(store, room.room_id, "09:00", "10:00")
    book(store, other.room_id, "09:00", "10:00")

    items, rooms = store.list_reservations_with_rooms(A1, ReservationFilter(now=NOW, scope=ListScope.ALL))

    assert len(items) == 2
    assert set(rooms) == {room.room_id, other.room_id}
    assert rooms[room.room_id] == room
