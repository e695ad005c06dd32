from __future__ import annotations

import base64
import hashlib
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from offline_lease.encryption import seal
from offline_lease.model import Credential, UsageRecord, datetime_to_ticks, ticks_to_datetime
from offline_lease.store import (
    RECORD_SIZE,
    LoadOutcome,
    RecordFormatError,
    SecureStateStore,
    decode_record,
    encode_record,
    identity_file_name,
)

CREDENTIAL = Credential("Alice", "hunter2")
T0 = datetime(2026, 10, 19, 12, 30, 15, 123456, tzinfo=timezone.utc)


def _record() -> UsageRecord:
    return UsageRecord(
        first_login=T0 - timedelta(days=3),
        last_login=T0,
        last_online_login=T0 - timedelta(hours=2),
        total_offline_time=timedelta(minutes=17, microseconds=42),
        is_online=False,
        session_start_time=T0 - timedelta(minutes=10),
    )


@pytest.fixture
def store(tmp_path: Path) -> SecureStateStore:
    return SecureStateStore(tmp_path / "data")


def test_identity_file_name_is_unpadded_base64url_sha256() -> None:
    digest = hashlib.sha256(b"alice:hunter2").digest()
    expected = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=") + ".dat"

    assert identity_file_name(CREDENTIAL) == expected
    assert "=" not in expected
    assert "alice" not in expected.lower()


def test_identity_ignores_username_case_but_not_password_case() -> None:
    assert identity_file_name(Credential("ALICE", "hunter2")) == identity_file_name(CREDENTIAL)
    assert identity_file_name(Credential("alice", "Hunter2")) != identity_file_name(CREDENTIAL)


def test_identity_lowercases_non_ascii_username_without_folding() -> None:
    digest = hashlib.sha256("straße:pw".encode("utf-8")).digest()
    expected = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=") + ".dat"

    assert identity_file_name(Credential("Straße", "pw")) == expected
    assert identity_file_name(Credential("STRASSE", "pw")) != expected


def test_credential_repr_hides_password() -> None:
    assert "hunter2" not in repr(CREDENTIAL)


def test_tick_encoding_matches_dotnet_epoch() -> None:
    unix_epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)

    assert datetime_to_ticks(unix_epoch) == 621355968000000000
    assert ticks_to_datetime(621355968000000000) == unix_epoch


def test_encode_record_is_fixed_width() -> None:
    plaintext = encode_record(_record())

    assert len(plaintext) == RECORD_SIZE == 41
    assert decode_record(plaintext) == _record()


def test_decode_record_rejects_bad_online_flag() -> None:
    plaintext = bytearray(encode_record(_record()))
    plaintext[32] = 2

    with pytest.raises(RecordFormatError):
        decode_record(bytes(plaintext))


def test_save_then_load_round_trip(store: SecureStateStore) -> None:
    record = _record()
    path = store.save(CREDENTIAL, record)

    assert path.parent == store.storage_dir
    loaded = store.load(CREDENTIAL)
    assert loaded.outcome is LoadOutcome.OK
    assert loaded.record == record


def test_save_creates_storage_directory_and_leaves_no_temp_files(store: SecureStateStore) -> None:
    assert not store.storage_dir.exists()

    store.save(CREDENTIAL, _record())
    store.save(CREDENTIAL, _record())

    assert [p.name for p in store.storage_dir.iterdir()] == [identity_file_name(CREDENTIAL)]


def test_save_uses_fresh_salt_per_write(store: SecureStateStore) -> None:
    path = store.save(CREDENTIAL, _record())
    first = path.read_bytes()
    store.save(CREDENTIAL, _record())

    assert path.read_bytes() != first


def test_load_missing_file(store: SecureStateStore) -> None:
    assert store.load(CREDENTIAL).outcome is LoadOutcome.MISSING


def test_load_short_file_is_corrupted(store: SecureStateStore) -> None:
    store.storage_dir.mkdir(parents=True)
    store.path_for(CREDENTIAL).write_bytes(b"\x01" * 15)

    result = store.load(CREDENTIAL)
    assert result.outcome is LoadOutcome.CORRUPTED
    assert result.record is None


@pytest.mark.parametrize("offset", [0, 16, 40, 63, 64, 95])
def test_single_byte_flip_is_corrupted(store: SecureStateStore, offset: int) -> None:
    path = store.save(CREDENTIAL, _record())
    blob = bytearray(path.read_bytes())
    blob[offset] ^= 0x01
    path.write_bytes(bytes(blob))

    assert store.load(CREDENTIAL).outcome is LoadOutcome.CORRUPTED


def test_wrong_credential_is_corrupted_not_invalid(store: SecureStateStore) -> None:
    blob = store.seal_record(CREDENTIAL, _record())

    result = store.open_blob(Credential("alice", "hunter3"), blob)
    assert result.outcome is LoadOutcome.CORRUPTED


def test_authentic_but_malformed_payload_is_invalid(store: SecureStateStore) -> None:
    store.storage_dir.mkdir(parents=True)
    store.path_for(CREDENTIAL).write_bytes(seal(CREDENTIAL.identity, b"not a usage record"))

    assert store.load(CREDENTIAL).outcome is LoadOutcome.INVALID_PAYLOAD


def test_out_of_range_ticks_are_invalid(store: SecureStateStore) -> None:
    plaintext = bytearray(encode_record(_record()))
    plaintext[0:8] = (-1).to_bytes(8, "little", signed=True)
    blob = seal(CREDENTIAL.identity, bytes(plaintext))

    assert store.open_blob(CREDENTIAL, blob).outcome is LoadOutcome.INVALID_PAYLOAD
