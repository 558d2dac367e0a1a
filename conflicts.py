"""Detection of overlapping reservations within a room."""

from __future__ import annotations

from typing import Iterable, List, Optional

from models import Reservation, TimeWindow


def find_conflicts(
    reservations: Iterable[Reservation],
    room_id: str,
    window: TimeWindow,
    exclude_reservation_id: Optional[str] = None,
) -> List[Reservation]:
    """Return reservations in `room_id` whose window overlaps `window`, earliest first.

    Overlap rule is half-open: touching boundaries (end == start) are NOT conflicts.
    `exclude_reservation_id` lets an update be checked against everything but itself.
    """
    hits = [
        r
        for r in reservations
        if r.room_id == room_id
        and r.reservation_id != exclude_reservation_id
        and r.window.overlaps(window)
    ]
    hits.sort(key=lambda r: (r.window.start, r.reservation_id))
    return hits


def find_conflict(
    reservations: Iterable[Reservation],
    room_id: str,
    window: TimeWindow,
    exclude_reservation_id: Optional[str] = None,
) -> Optional[str]:
    hits = find_conflicts(reservations, room_id, window, exclude_reservation_id)
    if not hits:
        return None
    return hits[0].reservation_id
