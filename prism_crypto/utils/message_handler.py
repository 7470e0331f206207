# message_handler.py - Versioned wire envelope for Double Ratchet messages
import hashlib
import json
import time
from collections import OrderedDict
from typing import Any, Dict, Optional, Tuple

from ..core.message import DoubleRatchetMessage
from ..security.keys import KeyBundle
from .error_handler import MessageFormatInvalid


class MessageHandler:
    PROTOCOL_VERSION = "1.0"
    MESSAGE_TYPES = {
        'TEXT': 1,
        'KEY_BUNDLE': 2,
    }

    # Envelope ids remembered for duplicate detection
    MAX_STORED_MESSAGE_IDS = 1000

    REQUIRED_FIELDS = ('version', 'message_id', 'timestamp', 'from', 'to', 'message_type', 'payload')

    def __init__(self):
        self.received_message_ids: "OrderedDict[str, None]" = OrderedDict()

    def create_message(self, from_user: str, to_user: str, message: DoubleRatchetMessage) -> Dict[str, Any]:
        """Wrap a Double Ratchet message in a transport envelope"""
        payload = message.to_dict()
        return {
            'version': self.PROTOCOL_VERSION,
            'message_id': self._generate_message_id(message),
            'timestamp': int(time.time() * 1000),
            'from': from_user,
            'to': to_user,
            'message_type': self.MESSAGE_TYPES['TEXT'],
            'sequence_number': message.header.message_number,
            'payload': payload,
            'metadata': {
                'encryption_algorithm': 'AES-256-GCM',
                'kdf_algorithm': 'HKDF-SHA256',
                'dh_algorithm': 'ECDH-P256',
            },
        }

    def create_key_bundle_message(self, from_user: str, to_user: str, bundle: KeyBundle) -> Dict[str, Any]:
        """Envelope carrying a user's public key bundle"""
        payload = bundle.to_dict()
        return {
            'version': self.PROTOCOL_VERSION,
            'message_id': hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()[:16],
            'timestamp': int(time.time() * 1000),
            'from': from_user,
            'to': to_user,
            'message_type': self.MESSAGE_TYPES['KEY_BUNDLE'],
            'payload': payload,
        }

    def _generate_message_id(self, message: DoubleRatchetMessage) -> str:
        """Message ID from the message's nonce and ciphertext"""
        return hashlib.sha256(message.nonce + message.ciphertext).hexdigest()[:16]

    def validate_message(self, envelope: Dict[str, Any]) -> Tuple[bool, str]:
        """Validate envelope format and check for duplicates"""
        if not isinstance(envelope, dict):
            return False, "Envelope must be a JSON object"

        for field in self.REQUIRED_FIELDS:
            if field not in envelope:
                return False, f"Missing required field: {field}"

        if envelope['version'] != self.PROTOCOL_VERSION:
            return False, f"Unsupported protocol version: {envelope['version']}"

        if envelope['message_type'] not in self.MESSAGE_TYPES.values():
            return False, f"Invalid message type: {envelope['message_type']}"

        if envelope['message_id'] in self.received_message_ids:
            return False, f"Duplicate message ID: {envelope['message_id']}"

        return True, "Message valid"

    def record_message(self, envelope: Dict[str, Any]) -> None:
        """Remember a processed envelope id"""
        self.received_message_ids[envelope['message_id']] = None
        while len(self.received_message_ids) > self.MAX_STORED_MESSAGE_IDS:
            self.received_message_ids.popitem(last=False)

    def extract_message(self, envelope: Dict[str, Any]) -> DoubleRatchetMessage:
        """Validate an envelope and return the Double Ratchet message inside"""
        valid, reason = self.validate_message(envelope)
        if not valid:
            raise MessageFormatInvalid(reason, {'message_id': envelope.get('message_id') if isinstance(envelope, dict) else None})
        if envelope['message_type'] != self.MESSAGE_TYPES['TEXT']:
            raise MessageFormatInvalid(f"Envelope type {envelope['message_type']} does not carry a ratchet message")
        return DoubleRatchetMessage.from_dict(envelope['payload'])

    def extract_key_bundle(self, envelope: Dict[str, Any]) -> KeyBundle:
        valid, reason = self.validate_message(envelope)
        if not valid:
            raise MessageFormatInvalid(reason)
        if envelope['message_type'] != self.MESSAGE_TYPES['KEY_BUNDLE']:
            raise MessageFormatInvalid(f"Envelope type {envelope['message_type']} does not carry a key bundle")
        return KeyBundle.from_dict(envelope['payload'])

    def serialize_message(self, envelope: Dict[str, Any]) -> str:
        """Serialize envelope to JSON for network transmission"""
        return json.dumps(envelope)

    def deserialize_message(self, envelope_json: str) -> Dict[str, Any]:
        """Deserialize envelope from JSON"""
        try:
            return json.loads(envelope_json)
        except json.JSONDecodeError as e:
            raise MessageFormatInvalid(f"Invalid JSON message: {e}")

    def get_message_age(self, envelope: Dict[str, Any], now: Optional[float] = None) -> float:
        """Get age of envelope in seconds"""
        current_time = int((now if now is not None else time.time()) * 1000)
        return (current_time - envelope['timestamp']) / 1000
