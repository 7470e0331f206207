# chat_service.py - Chats between users on top of X3DH and the Double Ratchet
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import Settings
from .core.double_ratchet import DoubleRatchetSession
from .core.message import DoubleRatchetMessage
from .security.key_directory import KeyGateway
from .security.keys import KeyBundle, Prekey, PrivatePrekeyStore, PublicKey, public_key_from_bytes
from .security.tee import FileBackedTee, TrustedExecutionEnvironment
from .security.x3dh import X3DH
from .utils.error_handler import (
    ErrorHandler,
    HandshakeFailed,
    MessageFormatInvalid,
    MissingPrekeys,
    PrismCryptoError,
    PrekeyNotFound,
)
from .utils.message_handler import MessageHandler
from .utils.state_manager import SessionStore

logger = logging.getLogger(__name__)


class ChatService:
    """
    One user's end of all their chats.

    Each chat is keyed by the peer's user id. Its Double Ratchet session is
    loaded from the SessionStore for every call and saved back only when the
    call succeeded, so a failure never leaves a half-updated session on disk.
    Calls on the same chat are serialized with a per-chat lock.

    The private prekeys behind the published bundle are kept in the same
    store, so a restarted service still answers chats started from it.
    """

    def __init__(self, user_id: str, tee: TrustedExecutionEnvironment,
                 gateway: KeyGateway, store: SessionStore,
                 settings: Optional[Settings] = None,
                 error_handler: Optional[ErrorHandler] = None):
        self.user_id = user_id
        self.tee = tee
        self.gateway = gateway
        self.store = store
        self.settings = settings or Settings()
        self.error_handler = error_handler or ErrorHandler()
        self.x3dh = X3DH(tee)
        self.message_handler = MessageHandler()
        self.prekey_store: Optional[PrivatePrekeyStore] = None
        if store.prekey_store_exists():
            self.prekey_store = store.load_prekey_store()

        self._chat_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._prekey_lock = threading.Lock()

    @classmethod
    def from_settings(cls, user_id: str, password: str, gateway: KeyGateway,
                      settings: Optional[Settings] = None) -> "ChatService":
        """Service whose identity key and sessions live under the configured directories"""
        settings = settings or Settings.from_env()
        tee = FileBackedTee(Path(settings.key_dir) / user_id, password, settings.prekey_batch_size)
        store = SessionStore(Path(settings.state_dir) / user_id, password)
        return cls(user_id, tee, gateway, store, settings=settings)

    def _lock_for(self, chat_id: str) -> threading.Lock:
        with self._locks_guard:
            if chat_id not in self._chat_locks:
                self._chat_locks[chat_id] = threading.Lock()
            return self._chat_locks[chat_id]

    # -- keys -----------------------------------------------------------

    def register(self) -> KeyBundle:
        """Create prekeys and publish the key bundle"""
        user_keys = self.tee.create_user_keys()
        self.prekey_store = PrivatePrekeyStore.from_user_keys(user_keys)
        bundle = self.prekey_store.key_bundle(user_keys.identity_key)
        self.store.save_prekey_store(self.prekey_store)
        self.gateway.submit_key_bundle(self.user_id, bundle)
        logger.info("Registered %s with %d one-time prekeys", self.user_id, len(bundle.prekeys))
        return bundle

    def replenish_prekeys(self, count: Optional[int] = None) -> List[Prekey]:
        """Generate more one-time prekeys and publish them"""
        if self.prekey_store is None:
            raise HandshakeFailed(f"{self.user_id} is not registered")
        new_keys = self.tee.create_prekeys(count or self.settings.prekey_batch_size)
        with self._prekey_lock:
            prekeys = self.prekey_store.add_prekeys(new_keys)
            self.store.save_prekey_store(self.prekey_store)
        self.gateway.add_prekeys(self.user_id, prekeys)
        logger.info("Published %d more one-time prekeys for %s", len(prekeys), self.user_id)
        return prekeys

    # -- chat setup -----------------------------------------------------

    def has_chat(self, peer_id: str) -> bool:
        return self.store.session_exists(peer_id)

    def start_chat(self, peer_id: str) -> DoubleRatchetSession:
        """Run X3DH against the peer's published bundle; reuses an existing chat"""
        with self._lock_for(peer_id):
            if self.store.session_exists(peer_id):
                return self.store.load_session(peer_id)

            bundle = self.gateway.fetch_key_bundle(peer_id)
            if not bundle.prekeys:
                raise MissingPrekeys(f"No one-time prekeys available for {peer_id}", {'peer_id': peer_id})

            result = self.x3dh.initiate_handshake(bundle, bundle.prekeys[0].key_idx)
            session = DoubleRatchetSession.from_handshake(result, max_skip=self.settings.max_skip)
            self.store.save_session(peer_id, session)
            logger.info("Started chat with %s using prekey %s", peer_id, result.used_prekey_id)
            return session

    def _accept_incoming(self, peer_id: str, message: DoubleRatchetMessage) -> DoubleRatchetSession:
        """Responder session for a chat the peer started with this message"""
        if self.prekey_store is None:
            raise HandshakeFailed(f"{self.user_id} is not registered")

        try:
            sender_ephemeral: PublicKey = public_key_from_bytes(message.header.ephemeral_key)
        except ValueError as e:
            raise HandshakeFailed(f"First message from {peer_id} carries an invalid ephemeral key: {e}")
        sender_identity = self.gateway.fetch_identity_key(peer_id)

        prekey_id = message.header.one_time_prekey_id
        one_time_prekey = None
        if prekey_id is not None:
            one_time_prekey = self.prekey_store.get_prekey(prekey_id)
            if one_time_prekey is None:
                raise PrekeyNotFound(f"Prekey {prekey_id} was already used or never existed",
                                     {'key_idx': prekey_id, 'peer_id': peer_id})

        root_key = self.x3dh.perform_passive_x3dh(
            sender_ephemeral=sender_ephemeral,
            sender_identity=sender_identity,
            receiver_signed_prekey=self.prekey_store.signed_prekey,
            receiver_one_time_prekey=one_time_prekey,
        )
        local_ratchet_key = one_time_prekey if one_time_prekey is not None else self.prekey_store.signed_prekey
        return DoubleRatchetSession.for_responder(root_key, local_ratchet_key, sender_ephemeral,
                                                  max_skip=self.settings.max_skip)

    # -- messaging ------------------------------------------------------

    def send_message(self, peer_id: str, text: str) -> Dict[str, Any]:
        """Encrypt text for the peer and return the wire envelope"""
        with self._lock_for(peer_id):
            session = self.store.load_session(peer_id)
            message = session.encrypt(text.encode('utf-8'))
            self.store.save_session(peer_id, session)
        return self.message_handler.create_message(self.user_id, peer_id, message)

    def receive_message(self, envelope: Dict[str, Any]) -> str:
        """Decrypt an incoming envelope, setting up the chat on a first message"""
        try:
            message = self.message_handler.extract_message(envelope)
            if envelope.get('to') != self.user_id:
                raise MessageFormatInvalid(f"Envelope addressed to {envelope.get('to')!r}, not {self.user_id}")
            peer_id = envelope['from']

            with self._lock_for(peer_id):
                is_new_chat = not self.store.session_exists(peer_id)
                if is_new_chat:
                    session = self._accept_incoming(peer_id, message)
                else:
                    session = self.store.load_session(peer_id)

                plaintext = session.decrypt(message)
                try:
                    text = plaintext.decode('utf-8')
                except UnicodeDecodeError as e:
                    raise MessageFormatInvalid(f"Message from {peer_id} is not UTF-8 text: {e}")

                self.store.save_session(peer_id, session)
                if is_new_chat and message.header.one_time_prekey_id is not None:
                    with self._prekey_lock:
                        self.prekey_store.delete_prekey(message.header.one_time_prekey_id)
                        self.store.save_prekey_store(self.prekey_store)
                    logger.info("Accepted chat from %s, consumed prekey %d",
                                peer_id, message.header.one_time_prekey_id)
                self.message_handler.record_message(envelope)
            return text
        except PrismCryptoError as e:
            self.error_handler.handle_error(e, f"receive_message for {self.user_id}")
            raise

    def delete_chat(self, peer_id: str) -> bool:
        with self._lock_for(peer_id):
            return self.store.delete_session(peer_id)
