"""Encrypted offline usage leases with clock-tamper detection."""

from .config import ConfigurationError, LeaseConfig, load_lease_config
from .model import (
    MAX_OFFLINE_HOURS,
    Credential,
    FailureReason,
    HeartbeatResult,
    LoginResult,
    SessionState,
    UsageRecord,
    UsageStats,
)
from .session import UsageTracker
from .store import LoadOutcome, LoadResult, SecureStateStore, identity_file_name

__all__ = [
    "MAX_OFFLINE_HOURS",
    "ConfigurationError",
    "Credential",
    "FailureReason",
    "HeartbeatResult",
    "LeaseConfig",
    "LoadOutcome",
    "LoadResult",
    "LoginResult",
    "SecureStateStore",
    "SessionState",
    "UsageRecord",
    "UsageStats",
    "UsageTracker",
    "identity_file_name",
    "load_lease_config",
]
