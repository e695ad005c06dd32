"""Domain models for offline usage leases.

A :class:`UsageRecord` is the only persisted entity. It is immutable: every
session operation loads one snapshot and, when it succeeds, saves a new one
produced with :func:`dataclasses.replace`. Results returned to callers wrap a
:class:`UsageStats` view computed from the record at the time of the call.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, auto
from typing import Optional

MAX_OFFLINE_HOURS = 1.0

# 100-nanosecond ticks counted from 0001-01-01T00:00:00 UTC.
TICK_EPOCH = datetime(1, 1, 1, tzinfo=timezone.utc)
TICKS_PER_MICROSECOND = 10


def datetime_to_ticks(value: datetime) -> int:
    if value.tzinfo is None:
        raise ValueError("timestamps must be timezone-aware")
    return timedelta_to_ticks(value - TICK_EPOCH)


def ticks_to_datetime(ticks: int) -> datetime:
    return TICK_EPOCH + ticks_to_timedelta(ticks)


def timedelta_to_ticks(value: timedelta) -> int:
    return (value // timedelta(microseconds=1)) * TICKS_PER_MICROSECOND


def ticks_to_timedelta(ticks: int) -> timedelta:
    return timedelta(microseconds=ticks // TICKS_PER_MICROSECOND)


def hours(value: timedelta) -> float:
    return value / timedelta(hours=1)


@dataclass(frozen=True)
class Credential:
    """Username/password pair identifying a usage record.

    Usernames are case-insensitive, passwords are not.
    """

    username: str
    password: str = field(repr=False)

    @property
    def identity(self) -> str:
        return f"{self.username.lower()}:{self.password}"


@dataclass(frozen=True)
class UsageRecord:
    first_login: datetime
    last_login: datetime
    last_online_login: datetime
    total_offline_time: timedelta
    is_online: bool
    session_start_time: datetime

    @classmethod
    def first_online(cls, now: datetime) -> "UsageRecord":
        """Return the record created by a first-ever online login at *now*."""

        return cls(
            first_login=now,
            last_login=now,
            last_online_login=now,
            total_offline_time=timedelta(0),
            is_online=True,
            session_start_time=now,
        )


class SessionState(Enum):
    """Session state derived from the stored record."""

    NO_RECORD = auto()
    ONLINE_ACTIVE = auto()
    OFFLINE_ACTIVE = auto()
    OFFLINE_EXHAUSTED = auto()


class FailureReason(Enum):
    NO_PRIOR_ONLINE_LOGIN = auto()
    DATA_TAMPERED = auto()
    CLOCK_RETROGRESSION = auto()
    CLOCK_MANIPULATION_DETECTED = auto()
    OFFLINE_LIMIT_EXCEEDED = auto()
    NO_RECORD = auto()


@dataclass(frozen=True)
class UsageStats:
    first_login_date: datetime
    last_login_date: datetime
    last_online_login_date: datetime
    total_offline_hours: float
    remaining_offline_hours: float
    is_currently_online: bool
    current_session_duration: timedelta
    time_manipulation_detected: bool = False


@dataclass(frozen=True)
class LoginResult:
    success: bool
    message: str
    reason: Optional[FailureReason] = None
    is_first_login: bool = False
    remaining_offline_hours: float = 0.0
    total_offline_hours_used: float = 0.0
    stats: Optional[UsageStats] = None


@dataclass(frozen=True)
class HeartbeatResult:
    success: bool
    message: str
    reason: Optional[FailureReason] = None
    stats: Optional[UsageStats] = None

    @property
    def clock_manipulation_detected(self) -> bool:
        """True when the caller is expected to terminate the session."""

        return self.reason is FailureReason.CLOCK_MANIPULATION_DETECTED
