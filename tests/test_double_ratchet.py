# test_double_ratchet.py - Double Ratchet sessions built from a real X3DH handshake
from dataclasses import replace

import pytest

from prism_crypto.core.double_ratchet import DoubleRatchetSession
from prism_crypto.core.message import DoubleRatchetMessage
from prism_crypto.core.serialization import dumps_session
from prism_crypto.security.keys import generate_private_key
from prism_crypto.utils.error_handler import (
    DecryptionFailed,
    InvalidCiphertext,
    MissingRecvChainKey,
    MissingSendChainKey,
    RemoteEphemeralNotAvailable,
    TooManySkippedMessages,
)


def flip_bit(data: bytes, index: int = -1) -> bytes:
    data = bytearray(data)
    data[index] ^= 0x01
    return bytes(data)


def test_round_trip(session_pair):
    """Both directions decrypt on sessions from the same handshake"""
    alice, bob = session_pair

    assert bob.decrypt(alice.encrypt(b"Hello Bob")) == b"Hello Bob"
    assert alice.decrypt(bob.encrypt(b"Hello Alice")) == b"Hello Alice"
    assert bob.decrypt(alice.encrypt(b"Again")) == b"Again"


def test_round_trip_without_one_time_prekey(pair_factory):
    alice, bob = pair_factory(use_prekey=False)

    message = alice.encrypt(b"no prekey")
    assert message.header.one_time_prekey_id is None
    assert bob.decrypt(message) == b"no prekey"
    assert alice.decrypt(bob.encrypt(b"reply")) == b"reply"


def test_first_message_carries_prekey_id_once(session_pair):
    alice, _ = session_pair

    first = alice.encrypt(b"one")
    second = alice.encrypt(b"two")

    assert first.header.one_time_prekey_id == 0
    assert second.header.one_time_prekey_id is None
    assert (first.header.message_number, second.header.message_number) == (0, 1)


def test_empty_plaintext(session_pair):
    alice, bob = session_pair
    message = alice.encrypt(b"")
    assert len(message.ciphertext) == 16
    assert bob.decrypt(message) == b""


def test_out_of_order_delivery(session_pair):
    """Messages delivered 2nd, 1st, 3rd all decrypt"""
    alice, bob = session_pair
    first, second, third = (alice.encrypt(text) for text in (b"1", b"2", b"3"))

    assert bob.decrypt(second) == b"2"
    assert len(bob.skipped_message_keys) == 1
    assert bob.decrypt(first) == b"1"
    assert len(bob.skipped_message_keys) == 0
    assert bob.decrypt(third) == b"3"


def test_replay_rejected(session_pair):
    alice, bob = session_pair
    message = alice.encrypt(b"only once")
    bob.decrypt(message)

    with pytest.raises(DecryptionFailed):
        bob.decrypt(message)


def test_replay_of_skipped_message_rejected(session_pair):
    alice, bob = session_pair
    first, second = alice.encrypt(b"1"), alice.encrypt(b"2")
    bob.decrypt(second)
    bob.decrypt(first)

    with pytest.raises(DecryptionFailed):
        bob.decrypt(first)


def test_tampered_ciphertext_rejected(session_pair):
    alice, bob = session_pair
    message = alice.encrypt(b"tamper me")

    with pytest.raises(DecryptionFailed):
        bob.decrypt(replace(message, ciphertext=flip_bit(message.ciphertext, 0)))
    assert bob.decrypt(message) == b"tamper me"


def test_tampered_nonce_rejected(session_pair):
    alice, bob = session_pair
    message = alice.encrypt(b"tamper me")

    with pytest.raises(DecryptionFailed):
        bob.decrypt(replace(message, nonce=flip_bit(message.nonce)))
    assert bob.decrypt(message) == b"tamper me"


def test_tampered_header_key_rejected(session_pair):
    alice, bob = session_pair
    message = alice.encrypt(b"tamper me")
    header = replace(message.header, ephemeral_key=flip_bit(message.header.ephemeral_key))

    with pytest.raises(DecryptionFailed):
        bob.decrypt(replace(message, header=header))
    assert bob.decrypt(message) == b"tamper me"


def test_tampered_header_counter_rejected(session_pair):
    """The header is authenticated as associated data"""
    alice, bob = session_pair
    message = alice.encrypt(b"tamper me")
    header = replace(message.header, previous_message_number=5)

    with pytest.raises(DecryptionFailed):
        bob.decrypt(replace(message, header=header))


def test_failed_decrypt_leaves_state_unchanged(session_pair):
    alice, bob = session_pair
    bob.decrypt(alice.encrypt(b"warm up"))
    alice.encrypt(b"lost")
    message = alice.encrypt(b"skips one")
    before = dumps_session(bob)

    with pytest.raises(DecryptionFailed):
        bob.decrypt(replace(message, ciphertext=flip_bit(message.ciphertext)))

    assert dumps_session(bob) == before
    assert bob.decrypt(message) == b"skips one"


def test_rotation_then_delivery_in_order(session_pair):
    """Forced rotation: old-chain message first, then new-chain message"""
    alice, bob = session_pair
    old = alice.encrypt(b"old chain")
    alice.force_rotate_local_ephemeral()
    new = alice.encrypt(b"new chain")

    assert new.header.ephemeral_key != old.header.ephemeral_key
    assert new.header.previous_message_number == 1
    assert bob.decrypt(old) == b"old chain"
    assert bob.decrypt(new) == b"new chain"


def test_rotation_then_delivery_reversed(session_pair):
    """Forced rotation: new-chain message first, old one from the cache"""
    alice, bob = session_pair
    old = alice.encrypt(b"old chain")
    alice.force_rotate_local_ephemeral()
    new = alice.encrypt(b"new chain")

    assert bob.decrypt(new) == b"new chain"
    assert bob.decrypt(old) == b"old chain"


def test_rotation_followed_by_reply(session_pair):
    alice, bob = session_pair
    alice.encrypt(b"never delivered")
    alice.force_rotate_local_ephemeral()
    assert bob.decrypt(alice.encrypt(b"after rotation")) == b"after rotation"

    assert alice.decrypt(bob.encrypt(b"reply")) == b"reply"
    assert bob.decrypt(alice.encrypt(b"and back")) == b"and back"


def test_rotation_after_reply(session_pair):
    alice, bob = session_pair
    bob.decrypt(alice.encrypt(b"hi"))
    alice.decrypt(bob.encrypt(b"hello"))

    alice.force_rotate_local_ephemeral()
    assert bob.decrypt(alice.encrypt(b"rotated")) == b"rotated"
    assert alice.decrypt(bob.encrypt(b"still fine")) == b"still fine"


def test_rotation_with_reply_in_flight_desynchronises(session_pair):
    """Rotating while the peer's first reply is unread breaks both directions"""
    alice, bob = session_pair
    bob.decrypt(alice.encrypt(b"hi"))
    reply = bob.encrypt(b"reply in flight")

    alice.force_rotate_local_ephemeral()
    rotated = alice.encrypt(b"rotated")

    with pytest.raises(DecryptionFailed):
        bob.decrypt(rotated)
    with pytest.raises(DecryptionFailed):
        alice.decrypt(reply)


def test_rotation_requires_remote_key():
    session = DoubleRatchetSession(root_key=b"\x00" * 32)
    with pytest.raises(RemoteEphemeralNotAvailable):
        session.force_rotate_local_ephemeral()


def test_skip_limit_enforced(pair_factory):
    alice, bob = pair_factory(max_skip=3)
    messages = [alice.encrypt(bytes([n])) for n in range(5)]
    before = dumps_session(bob)

    with pytest.raises(TooManySkippedMessages):
        bob.decrypt(messages[4])
    assert dumps_session(bob) == before

    assert bob.decrypt(messages[3]) == b"\x03"
    assert len(bob.skipped_message_keys) == 3


def test_encrypt_without_remote_key_fails():
    session = DoubleRatchetSession(root_key=b"\x00" * 32)

    with pytest.raises(MissingSendChainKey):
        session.encrypt(b"nobody to talk to")
    assert session.local_ephemeral is None


def test_decrypt_without_receiving_chain_fails():
    sender = generate_private_key()
    receiver = DoubleRatchetSession(root_key=b"\x01" * 32, remote_ephemeral=sender.public_key())
    message = DoubleRatchetSession(root_key=b"\x01" * 32, local_ephemeral=sender,
                                   remote_ephemeral=generate_private_key().public_key()).encrypt(b"x")

    with pytest.raises(MissingRecvChainKey):
        receiver.decrypt(message)


def test_short_ciphertext_rejected(session_pair):
    alice, bob = session_pair
    message = alice.encrypt(b"x")

    with pytest.raises(InvalidCiphertext) as excinfo:
        bob.decrypt(DoubleRatchetMessage(message.header, b"short", message.nonce))
    assert excinfo.value.length == 5


def test_root_key_length_checked():
    with pytest.raises(ValueError):
        DoubleRatchetSession(root_key=b"\x00" * 16)
