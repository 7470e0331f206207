# message.py - Double Ratchet header and message
import struct
from base64 import b64encode, b64decode
from dataclasses import dataclass
from typing import Dict, Optional

from ..utils.error_handler import MessageFormatInvalid

NONCE_LENGTH = 12
TAG_LENGTH = 16

_AD_PREFIX = b"prism-dr-v1"
_U64_MAX = 2 ** 64 - 1


def serialize(val: bytes) -> str:
    return b64encode(val).decode('utf-8')


def deserialize(val: str) -> bytes:
    return b64decode(val.encode('utf-8'), validate=True)


def _check_counter(name: str, value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= _U64_MAX:
        raise MessageFormatInvalid(f"{name} must be an unsigned 64-bit integer, got {value!r}")
    return value


@dataclass(frozen=True)
class DoubleRatchetHeader:
    ephemeral_key: bytes
    message_number: int
    previous_message_number: int
    one_time_prekey_id: Optional[int] = None

    def associated_data(self) -> bytes:
        """Canonical binary form of the header, authenticated by the AEAD."""
        prekey = b"\x00" if self.one_time_prekey_id is None else b"\x01" + struct.pack(">Q", self.one_time_prekey_id)
        return (
            _AD_PREFIX
            + struct.pack(">B", len(self.ephemeral_key)) + self.ephemeral_key
            + struct.pack(">QQ", self.message_number, self.previous_message_number)
            + prekey
        )

    def to_dict(self) -> Dict:
        return {
            'ephemeral_key': serialize(self.ephemeral_key),
            'message_number': self.message_number,
            'previous_message_number': self.previous_message_number,
            'one_time_prekey_id': self.one_time_prekey_id,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "DoubleRatchetHeader":
        try:
            ephemeral_key = deserialize(data['ephemeral_key'])
            message_number = _check_counter('message_number', data['message_number'])
            previous_message_number = _check_counter('previous_message_number', data['previous_message_number'])
            prekey_id = data.get('one_time_prekey_id')
        except (KeyError, TypeError, ValueError) as e:
            raise MessageFormatInvalid(f"Malformed header: {e}")
        if prekey_id is not None:
            prekey_id = _check_counter('one_time_prekey_id', prekey_id)
        if not 0 < len(ephemeral_key) < 256:
            raise MessageFormatInvalid(f"Invalid ephemeral key length: {len(ephemeral_key)}")
        return cls(ephemeral_key, message_number, previous_message_number, prekey_id)


@dataclass(frozen=True)
class DoubleRatchetMessage:
    """Header plus AES-GCM ciphertext (tag appended) and its nonce."""
    header: DoubleRatchetHeader
    ciphertext: bytes
    nonce: bytes

    def to_dict(self) -> Dict:
        return {
            'header': self.header.to_dict(),
            'ciphertext': serialize(self.ciphertext),
            'nonce': serialize(self.nonce),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "DoubleRatchetMessage":
        try:
            header = DoubleRatchetHeader.from_dict(data['header'])
            ciphertext = deserialize(data['ciphertext'])
            nonce = deserialize(data['nonce'])
        except (KeyError, TypeError, ValueError) as e:
            raise MessageFormatInvalid(f"Malformed message: {e}")
        if len(nonce) != NONCE_LENGTH:
            raise MessageFormatInvalid(f"Nonce must be {NONCE_LENGTH} bytes, got {len(nonce)}")
        return cls(header, ciphertext, nonce)
