# hkdf.py - HKDF (RFC 5869) over HMAC-SHA256
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import hmac
from cryptography.hazmat.primitives.kdf.hkdf import HKDF, HKDFExpand

HASH_LEN = 32
MAX_OUTPUT_LENGTH = 255 * HASH_LEN


def _check_length(length: int) -> None:
    if length <= 0 or length > MAX_OUTPUT_LENGTH:
        raise ValueError(f"HKDF output length must be in 1..{MAX_OUTPUT_LENGTH}, got {length}")


def hkdf_extract(salt: bytes, ikm: bytes) -> bytes:
    """
    HKDF-Extract: PRK = HMAC(salt, IKM).
    An empty salt is replaced by HashLen zero bytes.
    """
    h = hmac.HMAC(salt if salt else b"\x00" * HASH_LEN, hashes.SHA256())
    h.update(ikm)
    return h.finalize()


def hkdf_expand(prk: bytes, info: bytes, length: int) -> bytes:
    """HKDF-Expand of prk to length bytes."""
    _check_length(length)
    return HKDFExpand(algorithm=hashes.SHA256(), length=length, info=info).derive(prk)


def hkdf(ikm: bytes, salt: bytes, info: bytes, length: int) -> bytes:
    """Derive length bytes of key material from ikm."""
    _check_length(length)
    return HKDF(algorithm=hashes.SHA256(), length=length, salt=salt or None, info=info).derive(ikm)
