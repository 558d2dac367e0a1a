from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import time, timezone, tzinfo
from typing import Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

ENV_PREFIX = "ROOMBOOK_"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _parse_clock(value: str) -> time:
    try:
        hours, minutes = value.strip().split(":")
        return time(int(hours), int(minutes))
    except ValueError as error:
        raise ValueError(f"expected HH:MM clock time, got {value!r}") from error


@dataclass(frozen=True)
class Settings:
    business_open: time = time(8, 0)
    business_close: time = time(18, 0)
    min_duration_minutes: int = 30
    max_duration_minutes: int = 240
    timezone: str = "UTC"
    lock_timeout_seconds: float = 1.0
    lock_attempts: int = 3
    lock_backoff_seconds: float = 0.05
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.business_open >= self.business_close:
            raise ValueError("business_open must be earlier than business_close")
        if self.min_duration_minutes <= 0:
            raise ValueError("min_duration_minutes must be positive")
        if self.max_duration_minutes < self.min_duration_minutes:
            raise ValueError("max_duration_minutes must not be below min_duration_minutes")
        if self.lock_timeout_seconds <= 0:
            raise ValueError("lock_timeout_seconds must be positive")
        if self.lock_attempts < 1:
            raise ValueError("lock_attempts must be at least 1")
        if self.lock_backoff_seconds < 0:
            raise ValueError("lock_backoff_seconds must not be negative")
        # fail at startup on unknown zone names
        self.tz()

    def tz(self) -> tzinfo:
        if self.timezone.upper() == "UTC":
            return timezone.utc
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as error:
            raise ValueError(f"unknown timezone {self.timezone!r}") from error

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from ROOMBOOK_* environment variables.
        Unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ

        overrides = {}
        for name, (field_name, convert) in _ENV_FIELDS.items():
            raw = env.get(ENV_PREFIX + name)
            if raw is None or not raw.strip():
                continue
            overrides[field_name] = convert(raw.strip())
        return cls(**overrides)


_ENV_FIELDS = {
    "BUSINESS_OPEN": ("business_open", _parse_clock),
    "BUSINESS_CLOSE": ("business_close", _parse_clock),
    "MIN_DURATION_MINUTES": ("min_duration_minutes", int),
    "MAX_DURATION_MINUTES": ("max_duration_minutes", int),
    "TIMEZONE": ("timezone", str),
    "LOCK_TIMEOUT_SECONDS": ("lock_timeout_seconds", float),
    "LOCK_ATTEMPTS": ("lock_attempts", int),
    "LOCK_BACKOFF_SECONDS": ("lock_backoff_seconds", float),
    "LOG_LEVEL": ("log_level", str.upper),
}


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)
