# test_message_handler.py - Wire envelopes
import pytest

from prism_crypto.security.keys import KeyBundle
from prism_crypto.utils.error_handler import MessageFormatInvalid
from prism_crypto.utils.message_handler import MessageHandler


def test_envelope_round_trip(session_pair):
    alice, bob = session_pair
    handler = MessageHandler()
    envelope = handler.create_message("alice", "bob", alice.encrypt(b"hi"))

    received = handler.deserialize_message(handler.serialize_message(envelope))
    message = handler.extract_message(received)

    assert received['version'] == MessageHandler.PROTOCOL_VERSION
    assert received['sequence_number'] == 0
    assert bob.decrypt(message) == b"hi"


def test_duplicate_detection(session_pair):
    alice, _ = session_pair
    handler = MessageHandler()
    envelope = handler.create_message("alice", "bob", alice.encrypt(b"hi"))

    assert handler.validate_message(envelope)[0]
    handler.record_message(envelope)

    valid, reason = handler.validate_message(envelope)
    assert not valid and "Duplicate" in reason
    with pytest.raises(MessageFormatInvalid):
        handler.extract_message(envelope)


def test_recorded_ids_are_bounded(session_pair, monkeypatch):
    alice, _ = session_pair
    handler = MessageHandler()
    monkeypatch.setattr(MessageHandler, "MAX_STORED_MESSAGE_IDS", 2)

    envelopes = [handler.create_message("alice", "bob", alice.encrypt(bytes([n]))) for n in range(3)]
    for envelope in envelopes:
        handler.record_message(envelope)

    assert list(handler.received_message_ids) == [e['message_id'] for e in envelopes[1:]]


@pytest.mark.parametrize("mutate, reason", [
    (lambda e: e.pop('payload'), "Missing required field"),
    (lambda e: e.update(version="0.9"), "Unsupported protocol version"),
    (lambda e: e.update(message_type=42), "Invalid message type"),
])
def test_invalid_envelopes(session_pair, mutate, reason):
    alice, _ = session_pair
    handler = MessageHandler()
    envelope = handler.create_message("alice", "bob", alice.encrypt(b"hi"))
    mutate(envelope)

    valid, message = handler.validate_message(envelope)
    assert not valid
    assert reason in message


def test_bad_json_rejected():
    with pytest.raises(MessageFormatInvalid):
        MessageHandler().deserialize_message("{oops")


def test_key_bundle_envelope(new_party):
    handler = MessageHandler()
    bundle = new_party().bundle()
    envelope = handler.create_key_bundle_message("bob", "server", bundle)

    restored = handler.extract_key_bundle(envelope)

    assert isinstance(restored, KeyBundle)
    restored.verify()
    with pytest.raises(MessageFormatInvalid):
        handler.extract_message(envelope)


def test_message_age():
    handler = MessageHandler()
    assert handler.get_message_age({'timestamp': 1000}, now=3.5) == 2.5
