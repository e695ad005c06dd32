"""AES-CBC + HMAC sealing for usage record blobs.

A sealed blob is ``salt || ciphertext || tag``. The salt is regenerated on
every seal so two seals of the same plaintext never match. The tag is an
HMAC-SHA256 over ``salt || ciphertext`` and is checked before any decryption
happens, so a single flipped bit anywhere in the blob is reported as tampering
rather than surfacing as garbage plaintext.
"""

from __future__ import annotations

import logging
import os

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .kdf import PBKDF2_ITERATIONS, KeyMaterial, derive_key_material

logger = logging.getLogger(__name__)

SALT_SIZE = 16
TAG_SIZE = 32
_BLOCK_SIZE_BITS = algorithms.AES.block_size


class TamperedBlobError(ValueError):
    """Raised when a blob is truncated, fails authentication or cannot be unpadded."""


def _compute_tag(material: KeyMaterial, salt: bytes, ciphertext: bytes) -> hmac.HMAC:
    mac = hmac.HMAC(material.mac_key, hashes.SHA256())
    mac.update(salt)
    mac.update(ciphertext)
    return mac


def seal(
    identity: str,
    plaintext: bytes,
    *,
    iterations: int = PBKDF2_ITERATIONS,
    salt: bytes | None = None,
) -> bytes:
    """Encrypt and authenticate *plaintext* under a key derived from *identity*."""

    if salt is None:
        salt = os.urandom(SALT_SIZE)
    if len(salt) != SALT_SIZE:
        raise ValueError(f"salt must be {SALT_SIZE} bytes")
    material = derive_key_material(identity, salt, iterations)

    padder = padding.PKCS7(_BLOCK_SIZE_BITS).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(material.key), modes.CBC(material.iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    tag = _compute_tag(material, salt, ciphertext).finalize()
    return salt + ciphertext + tag


def unseal(identity: str, blob: bytes, *, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """Return the plaintext sealed in *blob*, or raise :class:`TamperedBlobError`."""

    if len(blob) < SALT_SIZE + TAG_SIZE:
        raise TamperedBlobError(f"blob too short ({len(blob)} bytes)")

    salt = blob[:SALT_SIZE]
    ciphertext = blob[SALT_SIZE:-TAG_SIZE]
    tag = blob[-TAG_SIZE:]
    material = derive_key_material(identity, salt, iterations)

    try:
        _compute_tag(material, salt, ciphertext).verify(tag)
    except InvalidSignature as exc:
        raise TamperedBlobError("authentication tag mismatch; wrong credential or modified data") from exc

    if not ciphertext or len(ciphertext) % (_BLOCK_SIZE_BITS // 8):
        raise TamperedBlobError("ciphertext is not a whole number of cipher blocks")

    decryptor = Cipher(algorithms.AES(material.key), modes.CBC(material.iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(_BLOCK_SIZE_BITS).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as exc:  # pragma: no cover - only reachable with a forged tag
        raise TamperedBlobError("invalid block padding") from exc
