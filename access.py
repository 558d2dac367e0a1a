from __future__ import annotations

from models import Actor, Reservation


def can_read(actor: Actor, reservation: Reservation) -> bool:
    return actor.is_admin or actor.user_id == reservation.owner_id


def can_write(actor: Actor, reservation: Reservation) -> bool:
    # Same rule as can_read: whoever may see a reservation may edit or delete it.
    return can_read(actor, reservation)


def can_create(actor: Actor) -> bool:
    return bool(actor.user_id)


def can_create_for(actor: Actor, owner_id: str) -> bool:
    """Only admins may book on behalf of another user."""
    return can_create(actor) and (actor.is_admin or owner_id == actor.user_id)


def can_manage_rooms(actor: Actor) -> bool:
    return actor.is_admin
