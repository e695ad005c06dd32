"""Password-based key derivation for stored usage records."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100_000
KEY_LENGTH_BYTES = 32
IV_LENGTH_BYTES = 16
MAC_KEY_LENGTH_BYTES = 32


@dataclass(frozen=True)
class KeyMaterial:
    """Symmetric secrets derived from a credential and a salt."""

    key: bytes
    iv: bytes
    mac_key: bytes


def derive_key_material(
    identity: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS
) -> KeyMaterial:
    """Derive the AES key, CBC IV and HMAC key for *identity* and *salt*.

    The key and IV are the first 48 bytes of the PBKDF2-HMAC-SHA256 stream; the
    MAC key follows them.
    """

    if iterations < PBKDF2_ITERATIONS:
        raise ValueError(f"PBKDF2 iterations must be at least {PBKDF2_ITERATIONS}")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH_BYTES + IV_LENGTH_BYTES + MAC_KEY_LENGTH_BYTES,
        salt=salt,
        iterations=iterations,
    )
    stream = kdf.derive(identity.encode("utf-8"))
    logger.debug("Derived key material using PBKDF2 (%d iterations)", iterations)
    iv_end = KEY_LENGTH_BYTES + IV_LENGTH_BYTES
    return KeyMaterial(
        key=stream[:KEY_LENGTH_BYTES],
        iv=stream[KEY_LENGTH_BYTES:iv_end],
        mac_key=stream[iv_end:],
    )
