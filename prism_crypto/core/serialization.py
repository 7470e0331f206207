# serialization.py - Versioned persistence schema for Double Ratchet sessions
"""
Session state schema, version 1:

    {
      "version": 1,
      "root_key": b64,
      "send_chain": null | {"key": b64, "counter": int},
      "recv_chain": null | {"key": b64, "counter": int},
      "previous_send_message_number": int,
      "local_ephemeral": null | b64 (32-byte private scalar),
      "remote_ephemeral": null | b64 (compressed point),
      "pending_prekey_id": null | int,
      "max_skip": int,
      "skipped_message_keys": [{"ratchet_key": b64, "message_number": int, "message_key": b64}, ...]
    }

Skipped keys are listed oldest first so eviction order survives a reload.
"""
import json
from base64 import b64encode, b64decode
from typing import Any, Dict, Optional

from ..security.keys import (
    private_key_bytes,
    private_key_from_bytes,
    public_key_bytes,
    public_key_from_bytes,
)
from ..utils.error_handler import StateDeserializationFailed, StateSerializationFailed
from .chain import KEY_LENGTH, ChainEstablished, ChainState, NoChain, SkippedKeyCache
from .double_ratchet import DoubleRatchetSession

SCHEMA_VERSION = 1


def _b64(value: bytes) -> str:
    return b64encode(value).decode()


def _unb64(value: str) -> bytes:
    return b64decode(value.encode(), validate=True)


def _chain_to_dict(chain: ChainState) -> Optional[Dict[str, Any]]:
    if not chain.established:
        return None
    return {'key': _b64(chain.key), 'counter': chain.counter}


def _chain_from_dict(data: Optional[Dict[str, Any]]) -> ChainState:
    if data is None:
        return NoChain()
    counter = int(data['counter'])
    if counter < 0:
        raise ValueError(f"negative chain counter {counter}")
    key = _unb64(data['key'])
    if len(key) != KEY_LENGTH:
        raise ValueError(f"chain key must be {KEY_LENGTH} bytes, got {len(key)}")
    return ChainEstablished(key, counter)


def session_to_dict(session: DoubleRatchetSession) -> Dict[str, Any]:
    try:
        return {
            'version': SCHEMA_VERSION,
            'root_key': _b64(session.root_key),
            'send_chain': _chain_to_dict(session.send_chain),
            'recv_chain': _chain_to_dict(session.recv_chain),
            'previous_send_message_number': session.previous_send_message_number,
            'local_ephemeral': _b64(private_key_bytes(session.local_ephemeral)) if session.local_ephemeral is not None else None,
            'remote_ephemeral': _b64(public_key_bytes(session.remote_ephemeral)) if session.remote_ephemeral is not None else None,
            'pending_prekey_id': session.pending_prekey_id,
            'max_skip': session.max_skip,
            'skipped_message_keys': [
                {
                    'ratchet_key': _b64(ratchet_key),
                    'message_number': message_number,
                    'message_key': _b64(message_key),
                }
                for (ratchet_key, message_number), message_key in session.skipped_message_keys.items()
            ],
        }
    except (AttributeError, TypeError, ValueError) as e:
        raise StateSerializationFailed(f"Session serialization failed: {e}")


def session_from_dict(data: Dict[str, Any]) -> DoubleRatchetSession:
    if not isinstance(data, dict):
        raise StateDeserializationFailed("Session state must be a JSON object")
    version = data.get('version')
    if version != SCHEMA_VERSION:
        raise StateDeserializationFailed(f"Unsupported session schema version: {version!r}")

    try:
        max_skip = int(data['max_skip'])
        local = data['local_ephemeral']
        remote = data['remote_ephemeral']
        pending = data['pending_prekey_id']

        session = DoubleRatchetSession(
            root_key=_unb64(data['root_key']),
            local_ephemeral=private_key_from_bytes(_unb64(local)) if local is not None else None,
            remote_ephemeral=public_key_from_bytes(_unb64(remote)) if remote is not None else None,
            prekey_id=int(pending) if pending is not None else None,
            max_skip=max_skip,
        )
        session.send_chain = _chain_from_dict(data['send_chain'])
        session.recv_chain = _chain_from_dict(data['recv_chain'])
        session.previous_send_message_number = int(data['previous_send_message_number'])

        cache = SkippedKeyCache(max_skip)
        for entry in data['skipped_message_keys']:
            cache.put(_unb64(entry['ratchet_key']), int(entry['message_number']), _unb64(entry['message_key']))
        session.skipped_message_keys = cache
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise StateDeserializationFailed(f"Session deserialization failed: {e}")

    return session


def dumps_session(session: DoubleRatchetSession) -> str:
    return json.dumps(session_to_dict(session), sort_keys=True)


def loads_session(serialized: str) -> DoubleRatchetSession:
    try:
        data = json.loads(serialized)
    except ValueError as e:
        raise StateDeserializationFailed(f"Session state is not valid JSON: {e}")
    return session_from_dict(data)
