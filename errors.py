from __future__ import annotations

from typing import Optional


class ReservationError(Exception):
    """Base class for every failure the reservation engine reports."""

    code = "reservation_error"
    category = "validation"
    retryable = False
    default_message = "Reservation request failed."

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


# -----------------------------
# Validation class
# -----------------------------
class InvalidWindowError(ReservationError):
    code = "invalid_window"
    default_message = "Validation error: start must be before end."


class InvalidFieldError(ReservationError):
    code = "invalid_field"
    default_message = "Validation error: invalid field value."

    def __init__(self, field: str, message: Optional[str] = None) -> None:
        self.field = field
        super().__init__(message or f"Validation error: invalid value for '{field}'.")


class PolicyError(ReservationError):
    """A window that is well formed but breaks a booking rule."""


class DurationTooShortError(PolicyError):
    code = "duration_too_short"
    default_message = "Validation error: reservation is shorter than the minimum duration."


class DurationTooLongError(PolicyError):
    code = "duration_too_long"
    default_message = "Validation error: reservation is longer than the maximum duration."


class OutsideBusinessHoursError(PolicyError):
    code = "outside_business_hours"
    default_message = "Validation error: reservation must fall within business hours."


class InThePastError(PolicyError):
    code = "in_the_past"
    default_message = "Validation error: reservation start cannot be in the past."


# -----------------------------
# Not-found class
# -----------------------------
class RoomNotFoundError(ReservationError):
    code = "room_not_found"
    category = "not_found"
    default_message = "Room not found."


class ReservationNotFoundError(ReservationError):
    code = "reservation_not_found"
    category = "not_found"
    default_message = "Reservation not found."


# -----------------------------
# Authorization / contention
# -----------------------------
class ForbiddenError(ReservationError):
    code = "forbidden"
    category = "forbidden"
    default_message = "Forbidden: actor may not perform this operation."


class ConflictError(ReservationError):
    code = "conflict"
    category = "conflict"
    default_message = "Overlap conflict: reservation overlaps an existing reservation in this room."

    def __init__(self, existing_reservation_id: str, message: Optional[str] = None) -> None:
        self.existing_reservation_id = existing_reservation_id
        super().__init__(message)


class BusyError(ReservationError):
    code = "busy"
    category = "busy"
    retryable = True
    default_message = "Room is busy, try again shortly."
