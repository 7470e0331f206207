# chain.py - Symmetric key schedule and per-direction chain state machine
"""
A sending or receiving chain is either absent (``NoChain``) or established
with a chain key and a message counter (``ChainEstablished``).

Transitions:
    bootstrap   NoChain -> ChainEstablished(key, 0)
    advance     ChainEstablished(key, n) -> ChainEstablished(next_key, n + 1),
                yielding the message key for position n
    ratchet     any -> ChainEstablished(new_key, 0)
"""
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Tuple, Union

from .hkdf import hkdf

ROOT_KDF_INFO = b"DoubleRatchet"
MESSAGE_KDF_INFO = b"DoubleRatchetMessage"
KEY_LENGTH = 32


def derive_ratchet_keys(root_key: bytes, dh_shared_secret: bytes) -> Tuple[bytes, bytes]:
    """
    Given the current root key and a DH shared secret, derive (new_root_key, chain_key).
    """
    key_material = hkdf(dh_shared_secret, salt=root_key, info=ROOT_KDF_INFO, length=2 * KEY_LENGTH)
    return key_material[:KEY_LENGTH], key_material[KEY_LENGTH:]


def derive_message_key(chain_key: bytes) -> Tuple[bytes, bytes]:
    """
    Given a chain key, derive (message_key, next_chain_key).
    """
    key_material = hkdf(chain_key, salt=b"", info=MESSAGE_KDF_INFO, length=2 * KEY_LENGTH)
    return key_material[:KEY_LENGTH], key_material[KEY_LENGTH:]


@dataclass(frozen=True)
class NoChain:
    """Chain not derived yet."""

    @property
    def counter(self) -> int:
        return 0

    @property
    def established(self) -> bool:
        return False


@dataclass(frozen=True)
class ChainEstablished:
    key: bytes
    counter: int = 0

    @property
    def established(self) -> bool:
        return True

    def advance(self) -> Tuple[bytes, "ChainEstablished"]:
        message_key, next_key = derive_message_key(self.key)
        return message_key, ChainEstablished(next_key, self.counter + 1)


ChainState = Union[NoChain, ChainEstablished]


def bootstrap(state: ChainState, chain_key: bytes) -> ChainEstablished:
    if state.established:
        raise ValueError("Chain already established")
    return ChainEstablished(chain_key, 0)


def ratchet(chain_key: bytes) -> ChainEstablished:
    """Restart a chain on a fresh chain key, whatever state it was in."""
    return ChainEstablished(chain_key, 0)


SkippedKeyId = Tuple[bytes, int]


class SkippedKeyCache:
    """
    Message keys derived ahead of delivery, keyed by (ratchet public key, message number).

    Holds at most max_size entries; inserting beyond that evicts the oldest key.
    """

    def __init__(self, max_size: int, entries: Optional[Dict[SkippedKeyId, bytes]] = None):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._keys: "OrderedDict[SkippedKeyId, bytes]" = OrderedDict()
        for key_id, message_key in (entries or {}).items():
            self.put(key_id[0], key_id[1], message_key)

    def put(self, ratchet_key: bytes, message_number: int, message_key: bytes) -> None:
        self._keys[(ratchet_key, message_number)] = message_key
        while len(self._keys) > self.max_size:
            self._keys.popitem(last=False)

    def pop(self, ratchet_key: bytes, message_number: int) -> Optional[bytes]:
        return self._keys.pop((ratchet_key, message_number), None)

    def copy(self) -> "SkippedKeyCache":
        clone = SkippedKeyCache(self.max_size)
        clone._keys = OrderedDict(self._keys)
        return clone

    def items(self) -> Iterator[Tuple[SkippedKeyId, bytes]]:
        return iter(self._keys.items())

    def __contains__(self, key_id: SkippedKeyId) -> bool:
        return key_id in self._keys

    def __len__(self) -> int:
        return len(self._keys)
