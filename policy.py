from __future__ import annotations

from datetime import datetime
from typing import Optional

from config import Settings
from errors import (
    DurationTooLongError,
    DurationTooShortError,
    InThePastError,
    OutsideBusinessHoursError,
)
from models import TimeWindow


class PolicyValidator:
    """
    Booking rules applied to a well-formed window.

    Checks run in a fixed order and the first failure is raised:
    minimum duration, maximum duration, business hours, start in the past.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or Settings()
        self._tz = self._settings.tz()

    def validate(self, window: TimeWindow, now: datetime) -> None:
        s = self._settings
        duration = window.duration_minutes()

        if duration < s.min_duration_minutes:
            raise DurationTooShortError(
                f"Validation error: reservation must last at least {s.min_duration_minutes} minutes."
            )
        if duration > s.max_duration_minutes:
            raise DurationTooLongError(
                f"Validation error: reservation must last at most {s.max_duration_minutes} minutes."
            )
        if not self.within_business_hours(window):
            raise OutsideBusinessHoursError(
                "Validation error: reservation must fall between "
                f"{s.business_open:%H:%M} and {s.business_close:%H:%M} on a single day."
            )
        if window.start < now:
            raise InThePastError()

    def within_business_hours(self, window: TimeWindow) -> bool:
        start = window.start.astimezone(self._tz)
        end = window.end.astimezone(self._tz)
        if start.date() != end.date():
            return False

        open_, close = self._settings.business_open, self._settings.business_close
        return open_ <= start.time() <= close and open_ <= end.time() <= close


_default_validator = PolicyValidator()


def validate_window(window: TimeWindow, now: datetime) -> None:
    _default_validator.validate(window, now)
