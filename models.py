from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from errors import InvalidWindowError


DEFAULT_ROOM_COLOR = "#3174ad"


# -----------------------------
# Shared time helpers
# -----------------------------
def parse_iso8601_tz(ts: str) -> datetime:
    """
    Parse ISO-8601 timestamp with timezone into an aware datetime.
    Accepts 'Z' suffix by converting it to '+00:00'.
    """
    if not isinstance(ts, str) or not ts.strip():
        raise ValueError("timestamp must be a non-empty string")

    s = ts.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"

    dt = datetime.fromisoformat(s)  # expects offset like +02:00 or +00:00
    if dt.tzinfo is None or dt.utcoffset() is None:
        raise ValueError("timestamp must include a timezone offset")
    return dt


def to_utc(dt: datetime) -> datetime:
    # dt is aware
    return dt.astimezone(timezone.utc)


def intervals_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """
    Half-open interval overlap: [start, end)
    Overlap iff a_start < b_end AND b_start < a_end.
    Back-to-back is allowed (end == other.start is NOT overlap).
    """
    return a_start < b_end and b_start < a_end


def utc_iso_z(dt: datetime) -> str:
    return to_utc(dt).isoformat().replace("+00:00", "Z")


def _is_aware(dt: datetime) -> bool:
    return dt.tzinfo is not None and dt.utcoffset() is not None


# -----------------------------
# Domain model
# -----------------------------
@dataclass(frozen=True)
class TimeWindow:
    start: datetime  # aware
    end: datetime    # aware, exclusive

    @classmethod
    def of(cls, start: datetime, end: datetime) -> "TimeWindow":
        window = cls(start=start, end=end)
        window.validate()
        return window

    def validate(self) -> None:
        if not (_is_aware(self.start) and _is_aware(self.end)):
            raise InvalidWindowError("Validation error: start and end must include a timezone offset.")
        if not (self.start < self.end):
            raise InvalidWindowError()

    def duration_minutes(self) -> float:
        return (self.end - self.start).total_seconds() / 60

    def overlaps(self, other: "TimeWindow") -> bool:
        return intervals_overlap(self.start, self.end, other.start, other.end)

    def contains(self, other: "TimeWindow") -> bool:
        return self.start <= other.start and other.end <= self.end


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: Role = Role.USER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


@dataclass(frozen=True)
class Room:
    room_id: str
    name: str
    capacity: int
    color: str = DEFAULT_ROOM_COLOR
    description: str = ""


@dataclass(frozen=True)
class Reservation:
    reservation_id: str
    title: str
    window: TimeWindow
    room_id: str
    owner_id: str
    notes: str = ""


@dataclass(frozen=True)
class ReservationDraft:
    title: str
    room_id: str
    window: TimeWindow
    notes: str = ""
    owner_id: Optional[str] = None  # defaults to the creating actor


@dataclass(frozen=True)
class ReservationPatch:
    """Fields left as None keep their current value."""

    title: Optional[str] = None
    room_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class RoomDraft:
    name: str
    capacity: int = 1
    color: str = DEFAULT_ROOM_COLOR
    description: str = ""


@dataclass(frozen=True)
class RoomPatch:
    name: Optional[str] = None
    capacity: Optional[int] = None
    color: Optional[str] = None
    description: Optional[str] = None


class ListScope(str, Enum):
    UPCOMING = "upcoming"
    PAST = "past"
    ALL = "all"


@dataclass(frozen=True)
class ReservationFilter:
    now: datetime
    scope: ListScope = ListScope.UPCOMING
    room_id: Optional[str] = None


# -----------------------------
# API models (transport layer)
# -----------------------------
class CreateReservationIn(BaseModel):
    title: str = Field(..., min_length=1)
    room_id: str = Field(..., min_length=1)
    start: str
    end: str
    notes: str = ""
    owner_id: Optional[str] = Field(None, min_length=1)

    @field_validator("start", "end")
    @classmethod
    def must_be_iso8601_with_tz(cls, v: str) -> str:
        # Validate format + timezone presence early; actual comparison happens in the store.
        parse_iso8601_tz(v)
        return v


class UpdateReservationIn(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    room_id: Optional[str] = Field(None, min_length=1)
    start: Optional[str] = None
    end: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("start", "end")
    @classmethod
    def must_be_iso8601_with_tz(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            parse_iso8601_tz(v)
        return v


class ReservationOut(BaseModel):
    reservation_id: str
    title: str
    room_id: str
    owner_id: str
    start: str  # ISO-8601 with timezone (we return UTC with Z)
    end: str
    notes: str
    room_name: Optional[str] = None
    room_color: Optional[str] = None


class RoomIn(BaseModel):
    name: str = Field(..., min_length=1)
    capacity: int = Field(1, ge=1)
    color: str = DEFAULT_ROOM_COLOR
    description: str = ""


class RoomUpdateIn(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    capacity: Optional[int] = Field(None, ge=1)
    color: Optional[str] = None
    description: Optional[str] = None


class RoomOut(BaseModel):
    room_id: str
    name: str
    capacity: int
    color: str
    description: str
