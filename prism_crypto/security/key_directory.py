# key_directory.py - Key bundle gateway and an in-memory prekey directory
import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, List

from ..utils.error_handler import KeyBundleNotFound
from .keys import KeyBundle, Prekey, PublicKey

logger = logging.getLogger(__name__)


class KeyGateway(ABC):
    """Where users publish key bundles and fetch each other's"""

    @abstractmethod
    def submit_key_bundle(self, user_id: str, bundle: KeyBundle) -> None:
        ...

    @abstractmethod
    def fetch_key_bundle(self, user_id: str) -> KeyBundle:
        ...

    @abstractmethod
    def add_prekeys(self, user_id: str, prekeys: List[Prekey]) -> None:
        """Publish more one-time prekeys for an already submitted bundle"""

    def fetch_identity_key(self, user_id: str) -> PublicKey:
        """Identity key of a user, for answering a chat they started"""
        return self.fetch_key_bundle(user_id).identity_key


class InMemoryKeyDirectory(KeyGateway):
    """
    Prekey directory kept in process memory.

    Every fetch hands out at most one one-time prekey and removes it from the
    stored bundle, so no two initiators get the same prekey.
    """

    def __init__(self):
        self.user_bundles: Dict[str, KeyBundle] = {}
        self._lock = threading.Lock()

    def submit_key_bundle(self, user_id: str, bundle: KeyBundle) -> None:
        """Verify and store a user's bundle, replacing any earlier one"""
        bundle.verify()
        with self._lock:
            self.user_bundles[user_id] = KeyBundle(
                identity_key=bundle.identity_key,
                signed_prekey=bundle.signed_prekey,
                signed_prekey_signature=bundle.signed_prekey_signature,
                prekeys=list(bundle.prekeys),
            )
        logger.info("Stored key bundle for %s with %d prekeys", user_id, len(bundle.prekeys))

    def add_prekeys(self, user_id: str, prekeys: List[Prekey]) -> None:
        """Replenish the one-time prekeys of a stored bundle"""
        with self._lock:
            self._get(user_id).prekeys.extend(prekeys)

    def fetch_key_bundle(self, user_id: str) -> KeyBundle:
        with self._lock:
            stored = self._get(user_id)
            handed_out = [stored.prekeys.pop(0)] if stored.prekeys else []
        if not handed_out:
            logger.warning("Key bundle for %s has no one-time prekeys left", user_id)
        return KeyBundle(
            identity_key=stored.identity_key,
            signed_prekey=stored.signed_prekey,
            signed_prekey_signature=stored.signed_prekey_signature,
            prekeys=handed_out,
        )

    def fetch_identity_key(self, user_id: str) -> PublicKey:
        with self._lock:
            return self._get(user_id).identity_key

    def prekey_count(self, user_id: str) -> int:
        with self._lock:
            return len(self._get(user_id).prekeys)

    def has_bundle(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self.user_bundles

    def _get(self, user_id: str) -> KeyBundle:
        if user_id not in self.user_bundles:
            raise KeyBundleNotFound(f"No key bundle found for user {user_id}", {'user_id': user_id})
        return self.user_bundles[user_id]
