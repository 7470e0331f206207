# tee.py - Identity key capability ("Trusted Execution Environment")
"""
The identity private key never leaves an implementation of
TrustedExecutionEnvironment. Callers get public keys, signatures and ECDH
shared secrets, never the private scalar.
"""
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from ..config import DEFAULT_PREKEY_BATCH_SIZE
from ..utils.error_handler import (
    IdentityKeyUnavailable,
    KeyAgreementFailed,
    SigningFailed,
)
from .keys import (
    PrivateKey,
    PublicKey,
    UserKeys,
    ecdh,
    generate_private_key,
    sign,
    uncompressed_public_key_bytes,
)

logger = logging.getLogger(__name__)


class TrustedExecutionEnvironment(ABC):
    """Secure holder of the long-term identity key."""

    def __init__(self, prekey_batch_size: int = DEFAULT_PREKEY_BATCH_SIZE):
        self.prekey_batch_size = prekey_batch_size

    @abstractmethod
    def _identity_private_key(self) -> PrivateKey:
        """Load or create the identity key. Raises IdentityKeyUnavailable."""

    def fetch_or_create_identity_key(self) -> PublicKey:
        """Return the identity public key, creating the key pair on first use."""
        return self._identity_private_key().public_key()

    def create_user_keys(self) -> UserKeys:
        """Create a signed prekey and a batch of one-time prekeys."""
        identity_key = self.fetch_or_create_identity_key()
        signed_prekey, signed_prekey_signature = self.create_signed_prekey()
        return UserKeys(
            identity_key=identity_key,
            signed_prekey=signed_prekey,
            signed_prekey_signature=signed_prekey_signature,
            prekeys=self.create_prekeys(self.prekey_batch_size),
        )

    def create_prekeys(self, count: int) -> List[PrivateKey]:
        return [generate_private_key() for _ in range(count)]

    def create_signed_prekey(self):
        signed_prekey = generate_private_key()
        signature = self.request_identity_signature(uncompressed_public_key_bytes(signed_prekey.public_key()))
        return signed_prekey, signature

    def request_identity_signature(self, data: bytes) -> bytes:
        """Sign data with the identity key (ECDSA P-256 / SHA-256, DER)."""
        private_key = self._identity_private_key()
        try:
            return sign(private_key, data)
        except (ValueError, TypeError) as e:
            raise SigningFailed(f"Identity signature failed: {e}")

    def compute_shared_secret_with_identity(self, remote_public_key: PublicKey) -> bytes:
        """ECDH between the identity key and a remote key-agreement key."""
        private_key = self._identity_private_key()
        if not isinstance(remote_public_key, ec.EllipticCurvePublicKey):
            raise KeyAgreementFailed("Remote key is not an EC public key")
        return ecdh(private_key, remote_public_key)


class InMemoryTee(TrustedExecutionEnvironment):
    """Identity key kept in process memory. Lost when the process exits."""

    def __init__(self, prekey_batch_size: int = DEFAULT_PREKEY_BATCH_SIZE):
        super().__init__(prekey_batch_size)
        self.__identity_key: Optional[PrivateKey] = None

    def _identity_private_key(self) -> PrivateKey:
        if self.__identity_key is None:
            self.__identity_key = generate_private_key()
        return self.__identity_key


class FileBackedTee(TrustedExecutionEnvironment):
    """
    Identity key persisted as a password-encrypted PKCS#8 PEM file.

    The key is created on first use and loaded from disk afterwards.
    """

    KEY_FILENAME = "identity_key.pem"

    def __init__(self, key_dir: Union[str, Path], password: str,
                 prekey_batch_size: int = DEFAULT_PREKEY_BATCH_SIZE):
        super().__init__(prekey_batch_size)
        if not password:
            raise ValueError("A password is required to protect the identity key")
        self.key_path = Path(key_dir) / self.KEY_FILENAME
        self.__password = password.encode()
        self.__identity_key: Optional[PrivateKey] = None

    def _identity_private_key(self) -> PrivateKey:
        if self.__identity_key is None:
            self.__identity_key = self._load_identity_key() or self._create_and_store_identity_key()
        return self.__identity_key

    def _load_identity_key(self) -> Optional[PrivateKey]:
        if not self.key_path.exists():
            return None
        try:
            key = serialization.load_pem_private_key(self.key_path.read_bytes(), password=self.__password)
        except (OSError, ValueError, TypeError) as e:
            raise IdentityKeyUnavailable(f"Cannot load identity key from {self.key_path}: {e}")
        if not isinstance(key, ec.EllipticCurvePrivateKey) or not isinstance(key.curve, ec.SECP256R1):
            raise IdentityKeyUnavailable(f"{self.key_path} does not hold a P-256 key")
        logger.debug("Loaded identity key from %s", self.key_path)
        return key

    def _create_and_store_identity_key(self) -> PrivateKey:
        key = generate_private_key()
        pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.BestAvailableEncryption(self.__password),
        )
        try:
            self.key_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, 'wb') as f:
                f.write(pem)
        except OSError as e:
            raise IdentityKeyUnavailable(f"Cannot store identity key at {self.key_path}: {e}")
        logger.info("Created new identity key at %s", self.key_path)
        return key
