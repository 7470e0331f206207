# keys.py - P-256 key material, key bundles and the private prekey store
from base64 import b64encode, b64decode
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from ..utils.error_handler import (
    KeyAgreementFailed,
    MessageFormatInvalid,
    PrekeyNotFound,
    SignatureVerificationFailed,
)

CURVE_NAME = "secp256r1"
PRIVATE_KEY_LENGTH = 32

PrivateKey = ec.EllipticCurvePrivateKey
PublicKey = ec.EllipticCurvePublicKey


def generate_private_key() -> PrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


def ecdh(private_key: PrivateKey, public_key: PublicKey) -> bytes:
    """P-256 ECDH, returning the 32-byte shared x coordinate."""
    try:
        return private_key.exchange(ec.ECDH(), public_key)
    except ValueError as e:
        raise KeyAgreementFailed(f"ECDH failed: {e}")


def sign(private_key: PrivateKey, data: bytes) -> bytes:
    return private_key.sign(data, ec.ECDSA(hashes.SHA256()))


def verify_signature(public_key: PublicKey, signature: bytes, data: bytes) -> bool:
    try:
        public_key.verify(signature, data, ec.ECDSA(hashes.SHA256()))
        return True
    except InvalidSignature:
        return False


def public_key_bytes(public_key: PublicKey) -> bytes:
    """Compressed SEC1 encoding (33 bytes)."""
    return public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.CompressedPoint
    )


def uncompressed_public_key_bytes(public_key: PublicKey) -> bytes:
    """X9.62 uncompressed encoding (65 bytes), the data covered by prekey signatures."""
    return public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint
    )


def public_key_from_bytes(data: bytes) -> PublicKey:
    """Accepts compressed or uncompressed points; raises ValueError for anything else."""
    return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256R1(), bytes(data))


def private_key_bytes(private_key: PrivateKey) -> bytes:
    return private_key.private_numbers().private_value.to_bytes(PRIVATE_KEY_LENGTH, 'big')


def private_key_from_bytes(data: bytes) -> PrivateKey:
    if len(data) != PRIVATE_KEY_LENGTH:
        raise ValueError(f"Private key must be {PRIVATE_KEY_LENGTH} bytes, got {len(data)}")
    return ec.derive_private_key(int.from_bytes(data, 'big'), ec.SECP256R1())


def public_keys_equal(a: Optional[PublicKey], b: Optional[PublicKey]) -> bool:
    if a is None or b is None:
        return False
    return public_key_bytes(a) == public_key_bytes(b)


@dataclass
class CryptoPayload:
    """Wire wrapper for keys and signatures: algorithm tag plus raw bytes."""
    algorithm: str
    data: bytes

    def to_dict(self) -> Dict[str, str]:
        return {'algorithm': self.algorithm, 'bytes': b64encode(self.data).decode()}

    @classmethod
    def from_dict(cls, payload: Dict[str, str]) -> "CryptoPayload":
        try:
            algorithm = payload['algorithm']
            data = b64decode(payload['bytes'], validate=True)
        except (KeyError, TypeError, ValueError) as e:
            raise MessageFormatInvalid(f"Malformed crypto payload: {e}")
        if algorithm != CURVE_NAME:
            raise MessageFormatInvalid(f"Unsupported algorithm: {algorithm}")
        return cls(algorithm, data)

    @classmethod
    def from_public_key(cls, public_key: PublicKey) -> "CryptoPayload":
        return cls(CURVE_NAME, public_key_bytes(public_key))

    @classmethod
    def from_private_key(cls, private_key: PrivateKey) -> "CryptoPayload":
        return cls(CURVE_NAME, private_key_bytes(private_key))

    def to_public_key(self) -> PublicKey:
        try:
            return public_key_from_bytes(self.data)
        except ValueError as e:
            raise MessageFormatInvalid(f"Invalid public key: {e}")

    def to_private_key(self) -> PrivateKey:
        try:
            return private_key_from_bytes(self.data)
        except ValueError as e:
            raise MessageFormatInvalid(f"Invalid private key: {e}")


@dataclass
class Prekey:
    """A published one-time prekey with its index."""
    key_idx: int
    key: PublicKey

    def to_dict(self) -> Dict:
        return {'key_idx': self.key_idx, 'key': CryptoPayload.from_public_key(self.key).to_dict()}

    @classmethod
    def from_dict(cls, data: Dict) -> "Prekey":
        try:
            key_idx = int(data['key_idx'])
            payload = data['key']
        except (KeyError, TypeError, ValueError) as e:
            raise MessageFormatInvalid(f"Malformed prekey: {e}")
        return cls(key_idx, CryptoPayload.from_dict(payload).to_public_key())


@dataclass
class KeyBundle:
    """Public key bundle a user uploads so others can start a chat with them."""
    identity_key: PublicKey
    signed_prekey: PublicKey
    signed_prekey_signature: bytes
    prekeys: List[Prekey] = field(default_factory=list)

    def verify(self) -> None:
        """Raise SignatureVerificationFailed unless the identity key signed the signed prekey."""
        signed_data = uncompressed_public_key_bytes(self.signed_prekey)
        if not verify_signature(self.identity_key, self.signed_prekey_signature, signed_data):
            raise SignatureVerificationFailed("Signed prekey signature does not verify against identity key")

    def get_prekey(self, key_idx: int) -> Prekey:
        for prekey in self.prekeys:
            if prekey.key_idx == key_idx:
                return prekey
        raise PrekeyNotFound(f"Prekey {key_idx} not in bundle", {'key_idx': key_idx})

    def to_dict(self) -> Dict:
        return {
            'identity_key': CryptoPayload.from_public_key(self.identity_key).to_dict(),
            'signed_prekey': CryptoPayload.from_public_key(self.signed_prekey).to_dict(),
            'signed_prekey_signature': CryptoPayload(CURVE_NAME, self.signed_prekey_signature).to_dict(),
            'prekeys': [prekey.to_dict() for prekey in self.prekeys],
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "KeyBundle":
        try:
            return cls(
                identity_key=CryptoPayload.from_dict(data['identity_key']).to_public_key(),
                signed_prekey=CryptoPayload.from_dict(data['signed_prekey']).to_public_key(),
                signed_prekey_signature=CryptoPayload.from_dict(data['signed_prekey_signature']).data,
                prekeys=[Prekey.from_dict(p) for p in data.get('prekeys', [])],
            )
        except (KeyError, TypeError) as e:
            raise MessageFormatInvalid(f"Malformed key bundle: {e}")


@dataclass
class UserKeys:
    """Private-side key material produced by the identity capability."""
    identity_key: PublicKey
    signed_prekey: PrivateKey
    signed_prekey_signature: bytes
    prekeys: List[PrivateKey]


class PrivatePrekeyStore:
    """
    Private counterpart of a published KeyBundle.

    One-time prekeys get indices from a counter that never goes backwards, so an
    index that was consumed and deleted is never handed out again.
    """

    def __init__(self, signed_prekey: PrivateKey, signed_prekey_signature: bytes):
        self.signed_prekey = signed_prekey
        self.signed_prekey_signature = signed_prekey_signature
        self.prekeys: Dict[int, PrivateKey] = {}
        self.prekey_counter = 0

    @classmethod
    def from_user_keys(cls, user_keys: UserKeys) -> "PrivatePrekeyStore":
        store = cls(user_keys.signed_prekey, user_keys.signed_prekey_signature)
        store.add_prekeys(user_keys.prekeys)
        return store

    def add_prekeys(self, keys: List[PrivateKey]) -> List[Prekey]:
        added = []
        for key in keys:
            self.prekeys[self.prekey_counter] = key
            added.append(Prekey(self.prekey_counter, key.public_key()))
            self.prekey_counter += 1
        return added

    def get_prekey(self, key_idx: int) -> Optional[PrivateKey]:
        return self.prekeys.get(key_idx)

    def delete_prekey(self, key_idx: int) -> None:
        """To be called once a peer consumed the prekey to start a chat."""
        self.prekeys.pop(key_idx, None)

    def public_prekeys(self) -> List[Prekey]:
        return [Prekey(idx, key.public_key()) for idx, key in sorted(self.prekeys.items())]

    def key_bundle(self, identity_key: PublicKey) -> KeyBundle:
        return KeyBundle(
            identity_key=identity_key,
            signed_prekey=self.signed_prekey.public_key(),
            signed_prekey_signature=self.signed_prekey_signature,
            prekeys=self.public_prekeys(),
        )

    def to_dict(self) -> Dict:
        return {
            'signed_prekey': CryptoPayload.from_private_key(self.signed_prekey).to_dict(),
            'signed_prekey_signature': b64encode(self.signed_prekey_signature).decode(),
            'prekeys': [
                {'key_idx': idx, 'key': CryptoPayload.from_private_key(key).to_dict()}
                for idx, key in sorted(self.prekeys.items())
            ],
            'prekey_counter': self.prekey_counter,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "PrivatePrekeyStore":
        try:
            store = cls(
                CryptoPayload.from_dict(data['signed_prekey']).to_private_key(),
                b64decode(data['signed_prekey_signature']),
            )
            for entry in data['prekeys']:
                store.prekeys[int(entry['key_idx'])] = CryptoPayload.from_dict(entry['key']).to_private_key()
            store.prekey_counter = int(data['prekey_counter'])
        except (KeyError, TypeError, ValueError) as e:
            raise MessageFormatInvalid(f"Malformed prekey store: {e}")
        return store
