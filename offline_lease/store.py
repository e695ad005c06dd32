"""Encrypted on-disk persistence for usage records, one file per identity."""

from __future__ import annotations

import base64
import hashlib
import logging
import os
import struct
import tempfile
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Optional

from .encryption import TamperedBlobError, seal, unseal
from .kdf import PBKDF2_ITERATIONS
from .model import (
    Credential,
    UsageRecord,
    datetime_to_ticks,
    ticks_to_datetime,
    ticks_to_timedelta,
    timedelta_to_ticks,
)

logger = logging.getLogger(__name__)

RECORD_FILE_EXTENSION = ".dat"
DEFAULT_STORAGE_DIR = Path.home() / ".offline-lease" / "data"

# first_login, last_login, last_online_login, total_offline_time, is_online, session_start_time
_RECORD_STRUCT = struct.Struct("<qqqqBq")
RECORD_SIZE = _RECORD_STRUCT.size

_FILE_ATTRIBUTE_HIDDEN = 0x2
_FILE_ATTRIBUTE_NORMAL = 0x80


class RecordFormatError(ValueError):
    """Raised when authentic plaintext does not describe a usage record."""


class LoadOutcome(Enum):
    OK = auto()
    MISSING = auto()
    CORRUPTED = auto()
    INVALID_PAYLOAD = auto()


@dataclass(frozen=True)
class LoadResult:
    outcome: LoadOutcome
    record: Optional[UsageRecord] = None

    @property
    def ok(self) -> bool:
        return self.outcome is LoadOutcome.OK


def identity_file_name(credential: Credential) -> str:
    """Return the file name storing *credential*'s record.

    The name is the unpadded base64url SHA-256 of the identity string, so it
    reveals nothing about the username or password.
    """

    digest = hashlib.sha256(credential.identity.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=") + RECORD_FILE_EXTENSION


def encode_record(record: UsageRecord) -> bytes:
    return _RECORD_STRUCT.pack(
        datetime_to_ticks(record.first_login),
        datetime_to_ticks(record.last_login),
        datetime_to_ticks(record.last_online_login),
        timedelta_to_ticks(record.total_offline_time),
        1 if record.is_online else 0,
        datetime_to_ticks(record.session_start_time),
    )


def decode_record(plaintext: bytes) -> UsageRecord:
    if len(plaintext) != RECORD_SIZE:
        raise RecordFormatError(f"expected {RECORD_SIZE} bytes, got {len(plaintext)}")
    first, last, last_online, total, online_flag, session_start = _RECORD_STRUCT.unpack(plaintext)
    if online_flag not in (0, 1):
        raise RecordFormatError(f"invalid online flag byte {online_flag:#x}")
    if total < 0:
        raise RecordFormatError("negative offline duration")
    try:
        return UsageRecord(
            first_login=ticks_to_datetime(first),
            last_login=ticks_to_datetime(last),
            last_online_login=ticks_to_datetime(last_online),
            total_offline_time=ticks_to_timedelta(total),
            is_online=bool(online_flag),
            session_start_time=ticks_to_datetime(session_start),
        )
    except (OverflowError, ValueError) as exc:
        raise RecordFormatError(f"timestamp out of range: {exc}") from exc


def _set_windows_attributes(path: Path, attributes: int) -> None:
    if os.name != "nt":
        return
    import ctypes

    if not ctypes.windll.kernel32.SetFileAttributesW(str(path), attributes):
        logger.warning("Could not set attributes on %s", path)


class SecureStateStore:
    """Read and write encrypted usage records inside a storage directory.

    Record files get the hidden attribute on Windows only. POSIX has no such
    attribute, so files are hidden there only through the dot-prefixed default
    directory; a custom ``storage_dir`` leaves them visible.
    """

    def __init__(
        self,
        storage_dir: str | Path | None = None,
        *,
        kdf_iterations: int = PBKDF2_ITERATIONS,
    ) -> None:
        self.storage_dir = Path(storage_dir).expanduser() if storage_dir else DEFAULT_STORAGE_DIR
        self.kdf_iterations = kdf_iterations

    def path_for(self, credential: Credential) -> Path:
        return self.storage_dir / identity_file_name(credential)

    def seal_record(self, credential: Credential, record: UsageRecord) -> bytes:
        """Serialize and encrypt *record* with a fresh salt."""

        return seal(credential.identity, encode_record(record), iterations=self.kdf_iterations)

    def open_blob(self, credential: Credential, blob: bytes) -> LoadResult:
        """Decrypt and decode *blob*, mapping every failure to an outcome."""

        try:
            plaintext = unseal(credential.identity, blob, iterations=self.kdf_iterations)
        except TamperedBlobError as exc:
            logger.warning("Usage record rejected: %s", exc)
            return LoadResult(LoadOutcome.CORRUPTED)
        try:
            record = decode_record(plaintext)
        except RecordFormatError as exc:
            logger.warning("Usage record payload is invalid: %s", exc)
            return LoadResult(LoadOutcome.INVALID_PAYLOAD)
        return LoadResult(LoadOutcome.OK, record)

    def load(self, credential: Credential) -> LoadResult:
        path = self.path_for(credential)
        try:
            blob = path.read_bytes()
        except FileNotFoundError:
            logger.debug("No usage record at %s", path)
            return LoadResult(LoadOutcome.MISSING)
        return self.open_blob(credential, blob)

    def save(self, credential: Credential, record: UsageRecord) -> Path:
        """Atomically replace the identity's file with an encrypted *record*."""

        blob = self.seal_record(credential, record)
        self._ensure_storage_dir()
        path = self.path_for(credential)

        fd, tmp_name = tempfile.mkstemp(dir=self.storage_dir, prefix=".", suffix=".tmp")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(blob)
                handle.flush()
                os.fsync(handle.fileno())
            if path.exists():
                _set_windows_attributes(path, _FILE_ATTRIBUTE_NORMAL)
            os.replace(tmp_path, path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        _set_windows_attributes(path, _FILE_ATTRIBUTE_HIDDEN)
        logger.debug("Saved usage record to %s", path)
        return path

    def _ensure_storage_dir(self) -> None:
        if self.storage_dir.is_dir():
            return
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        _set_windows_attributes(self.storage_dir, _FILE_ATTRIBUTE_HIDDEN)
        logger.info("Created storage directory %s", self.storage_dir)


__all__ = [
    "DEFAULT_STORAGE_DIR",
    "LoadOutcome",
    "LoadResult",
    "RECORD_SIZE",
    "RecordFormatError",
    "SecureStateStore",
    "decode_record",
    "encode_record",
    "identity_file_name",
]
