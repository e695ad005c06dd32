"""Offline usage session state machine.

Every operation loads the record from :class:`~offline_lease.store.SecureStateStore`,
applies the offline-budget policy and clock checks, and saves a new snapshot
only when the operation succeeds (or, for heartbeats, when accrual exhausts
the budget). Nothing is cached between calls; the file is the source of truth.
The heartbeat timer lives with the caller.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .model import (
    MAX_OFFLINE_HOURS,
    Credential,
    FailureReason,
    HeartbeatResult,
    LoginResult,
    SessionState,
    UsageRecord,
    UsageStats,
    hours,
)
from .store import LoadOutcome, SecureStateStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_RECONNECT_HINT = "Please connect to the internet to continue."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UsageTracker:
    """Enforce the offline budget for credentials stored in *store*."""

    def __init__(
        self,
        store: SecureStateStore,
        *,
        clock: Optional[Clock] = None,
        max_offline_hours: float = MAX_OFFLINE_HOURS,
    ) -> None:
        if max_offline_hours <= 0:
            raise ValueError("max_offline_hours must be positive")
        self.store = store
        self.clock = clock or _utcnow
        self.max_offline_hours = max_offline_hours

    def _remaining_hours(self, record: UsageRecord) -> float:
        return max(0.0, self.max_offline_hours - hours(record.total_offline_time))

    def _is_exhausted(self, record: UsageRecord) -> bool:
        return hours(record.total_offline_time) >= self.max_offline_hours

    def _stats(self, record: UsageRecord, session_duration: timedelta) -> UsageStats:
        return UsageStats(
            first_login_date=record.first_login,
            last_login_date=record.last_login,
            last_online_login_date=record.last_online_login,
            total_offline_hours=hours(record.total_offline_time),
            remaining_offline_hours=self._remaining_hours(record),
            is_currently_online=record.is_online,
            current_session_duration=session_duration,
        )

    def _tampered_stats(self, record: UsageRecord) -> UsageStats:
        return replace(self._stats(record, timedelta(0)), time_manipulation_detected=True)

    def process_online_login(self, credential: Credential) -> LoginResult:
        """Record a caller-asserted online login and restore the full budget."""

        now = self.clock()
        loaded = self.store.load(credential)

        if loaded.record is not None:
            record = replace(
                loaded.record,
                last_login=now,
                last_online_login=now,
                total_offline_time=timedelta(0),
                is_online=True,
            )
            self.store.save(credential, record)
            logger.info("Online login for %s; offline budget reset", credential.username)
            return LoginResult(
                success=True,
                message=(
                    f"Online login successful. Your {self.max_offline_hours} hour(s) "
                    "of offline usage has been reset."
                ),
                remaining_offline_hours=self.max_offline_hours,
                stats=self._stats(record, timedelta(0)),
            )

        record = UsageRecord.first_online(now)
        self.store.save(credential, record)
        if loaded.outcome is LoadOutcome.MISSING:
            logger.info("First online login for %s", credential.username)
            message = (
                f"First login successful. You have {self.max_offline_hours} hour(s) "
                "of offline usage."
            )
        else:
            logger.warning(
                "Unreadable usage record for %s (%s) replaced by online login",
                credential.username,
                loaded.outcome.name,
            )
            message = (
                "Stored usage data could not be read and has been reset. "
                f"You have {self.max_offline_hours} hour(s) of offline usage."
            )
        return LoginResult(
            success=True,
            message=message,
            is_first_login=loaded.outcome is LoadOutcome.MISSING,
            remaining_offline_hours=self.max_offline_hours,
            stats=self._stats(record, timedelta(0)),
        )

    def process_offline_login(self, credential: Credential) -> LoginResult:
        """Start an offline session if the stored budget and clock allow it."""

        now = self.clock()
        loaded = self.store.load(credential)

        if loaded.outcome is LoadOutcome.MISSING:
            return LoginResult(
                success=False,
                reason=FailureReason.NO_PRIOR_ONLINE_LOGIN,
                message="First login must be online. Please connect to the internet.",
            )
        if loaded.record is None:
            logger.warning("Offline login refused for %s: record tampered", credential.username)
            return LoginResult(
                success=False,
                reason=FailureReason.DATA_TAMPERED,
                message=f"Data file has been tampered with. {_RECONNECT_HINT}",
            )

        record = loaded.record
        used = hours(record.total_offline_time)
        if now < record.last_login:
            logger.warning(
                "Clock retrogression for %s: now=%s last_login=%s",
                credential.username,
                now.isoformat(),
                record.last_login.isoformat(),
            )
            return LoginResult(
                success=False,
                reason=FailureReason.CLOCK_RETROGRESSION,
                message=(
                    "Clock manipulation detected. System time is earlier than last "
                    f"recorded session. {_RECONNECT_HINT}"
                ),
                total_offline_hours_used=used,
                remaining_offline_hours=self._remaining_hours(record),
                stats=self._tampered_stats(record),
            )
        if self._is_exhausted(record):
            return LoginResult(
                success=False,
                reason=FailureReason.OFFLINE_LIMIT_EXCEEDED,
                message=f"Offline usage limit exceeded ({used:.1f} hours used). {_RECONNECT_HINT}",
                total_offline_hours_used=used,
            )

        record = replace(record, is_online=False, session_start_time=now, last_login=now)
        self.store.save(credential, record)
        remaining = self._remaining_hours(record)
        logger.info("Offline session started for %s (%.4f h remaining)", credential.username, remaining)
        return LoginResult(
            success=True,
            message=f"Offline login successful. {remaining:.1f} hours remaining.",
            remaining_offline_hours=remaining,
            total_offline_hours_used=used,
            stats=self._stats(record, timedelta(0)),
        )

    def update_heartbeat(self, credential: Credential) -> HeartbeatResult:
        """Accrue offline time since the last touch and check the budget."""

        now = self.clock()
        loaded = self.store.load(credential)

        if loaded.record is None:
            tampered = loaded.outcome is not LoadOutcome.MISSING
            return HeartbeatResult(
                success=False,
                reason=FailureReason.NO_RECORD,
                message=(
                    "Data file has been tampered with. The session must end."
                    if tampered
                    else "No user data found."
                ),
            )

        record = loaded.record
        if record.is_online:
            record = replace(record, last_login=now)
            self.store.save(credential, record)
            return HeartbeatResult(
                success=True,
                message="Heartbeat updated successfully.",
                stats=self._stats(record, timedelta(0)),
            )

        delta = now - record.last_login
        if delta < timedelta(0):
            logger.warning(
                "Clock moved backwards by %s during offline session for %s",
                -delta,
                credential.username,
            )
            return HeartbeatResult(
                success=False,
                reason=FailureReason.CLOCK_MANIPULATION_DETECTED,
                message="Clock manipulation detected during offline session. The session must end.",
                stats=self._tampered_stats(record),
            )

        record = replace(
            record,
            total_offline_time=record.total_offline_time + delta,
            last_login=now,
        )
        self.store.save(credential, record)
        stats = self._stats(record, now - record.session_start_time)

        if self._is_exhausted(record):
            logger.info("Offline budget exhausted for %s", credential.username)
            return HeartbeatResult(
                success=False,
                reason=FailureReason.OFFLINE_LIMIT_EXCEEDED,
                message=(
                    f"Offline usage limit exceeded ({stats.total_offline_hours:.1f} hours used). "
                    f"{_RECONNECT_HINT}"
                ),
                stats=stats,
            )
        return HeartbeatResult(success=True, message="Heartbeat updated successfully.", stats=stats)

    def usage_stats(self, credential: Credential) -> Optional[UsageStats]:
        """Return a read-only snapshot of the stored record, or ``None``."""

        loaded = self.store.load(credential)
        if loaded.record is None:
            return None
        record = loaded.record
        if record.is_online:
            session = timedelta(0)
        else:
            session = max(timedelta(0), record.last_login - record.session_start_time)
        return self._stats(record, session)

    def session_state(self, credential: Credential) -> SessionState:
        loaded = self.store.load(credential)
        if loaded.record is None:
            return SessionState.NO_RECORD
        if loaded.record.is_online:
            return SessionState.ONLINE_ACTIVE
        if self._is_exhausted(loaded.record):
            return SessionState.OFFLINE_EXHAUSTED
        return SessionState.OFFLINE_ACTIVE
