# double_ratchet.py - Double Ratchet session
import logging
import os
from contextlib import contextmanager
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..config import DEFAULT_MAX_SKIP
from ..security.keys import (
    PrivateKey,
    PublicKey,
    ecdh,
    generate_private_key,
    public_key_bytes,
    public_key_from_bytes,
    public_keys_equal,
)
from ..utils.error_handler import (
    DecryptionFailed,
    InvalidCiphertext,
    MissingRecvChainKey,
    MissingSendChainKey,
    RemoteEphemeralNotAvailable,
    TooManySkippedMessages,
)
from .chain import (
    ChainState,
    NoChain,
    SkippedKeyCache,
    bootstrap,
    derive_message_key,
    derive_ratchet_keys,
    ratchet,
)
from .message import NONCE_LENGTH, TAG_LENGTH, DoubleRatchetHeader, DoubleRatchetMessage

logger = logging.getLogger(__name__)

__all__ = [
    'DoubleRatchetSession',
    'derive_message_key',
    'derive_ratchet_keys',
]


class DoubleRatchetSession:
    """
    One side of a two-party Double Ratchet conversation.

    The session is not thread safe; callers serialize encrypt/decrypt and
    persist the session after every call. A call that raises leaves the
    session exactly as it was before the call.
    """

    def __init__(self, root_key: bytes,
                 local_ephemeral: Optional[PrivateKey] = None,
                 remote_ephemeral: Optional[PublicKey] = None,
                 prekey_id: Optional[int] = None,
                 max_skip: int = DEFAULT_MAX_SKIP):
        if len(root_key) != 32:
            raise ValueError(f"Root key must be 32 bytes, got {len(root_key)}")
        self.root_key = root_key
        self.send_chain: ChainState = NoChain()
        self.recv_chain: ChainState = NoChain()
        self.previous_send_message_number = 0
        self.local_ephemeral = local_ephemeral
        self.remote_ephemeral = remote_ephemeral
        self.pending_prekey_id = prekey_id
        self.max_skip = max_skip
        self.skipped_message_keys = SkippedKeyCache(max_skip)

    @classmethod
    def from_handshake(cls, result, max_skip: int = DEFAULT_MAX_SKIP) -> "DoubleRatchetSession":
        """Initiator session from an X3DH HandshakeResult."""
        return cls(
            root_key=result.root_key,
            local_ephemeral=result.ephemeral_key,
            remote_ephemeral=result.remote_ratchet_key,
            prekey_id=result.used_prekey_id,
            max_skip=max_skip,
        )

    @classmethod
    def for_responder(cls, root_key: bytes, local_ratchet_key: PrivateKey,
                      sender_ephemeral: PublicKey, max_skip: int = DEFAULT_MAX_SKIP) -> "DoubleRatchetSession":
        """
        Responder session. local_ratchet_key is the private half of the prekey the
        initiator ratcheted against (one-time prekey, or signed prekey without one).
        """
        return cls(
            root_key=root_key,
            local_ephemeral=local_ratchet_key,
            remote_ephemeral=sender_ephemeral,
            max_skip=max_skip,
        )

    # -- counters -------------------------------------------------------

    @property
    def send_message_number(self) -> int:
        return self.send_chain.counter

    @property
    def recv_message_number(self) -> int:
        return self.recv_chain.counter

    # -- transactions ---------------------------------------------------

    def _snapshot(self):
        return (
            self.root_key,
            self.send_chain,
            self.recv_chain,
            self.previous_send_message_number,
            self.local_ephemeral,
            self.remote_ephemeral,
            self.pending_prekey_id,
            self.skipped_message_keys.copy(),
        )

    def _restore(self, snapshot) -> None:
        (self.root_key,
         self.send_chain,
         self.recv_chain,
         self.previous_send_message_number,
         self.local_ephemeral,
         self.remote_ephemeral,
         self.pending_prekey_id,
         self.skipped_message_keys) = snapshot

    @contextmanager
    def _transaction(self):
        snapshot = self._snapshot()
        try:
            yield
        except Exception:
            self._restore(snapshot)
            raise

    # -- ratchet steps --------------------------------------------------

    def _derive_chain_key(self, local_key: PrivateKey, remote_key: PublicKey) -> bytes:
        self.root_key, chain_key = derive_ratchet_keys(self.root_key, ecdh(local_key, remote_key))
        return chain_key

    def perform_dh_ratchet(self, new_remote_ephemeral: PublicKey) -> None:
        """
        DH ratchet step for a new remote ephemeral key: new receiving chain,
        fresh local ephemeral key, new sending chain.
        """
        self.remote_ephemeral = new_remote_ephemeral

        # Without a local key the root key is still the X3DH output; the step
        # happens on our first send instead.
        if self.local_ephemeral is None:
            logger.debug("DH ratchet deferred: no local ephemeral key yet")
            return

        self.recv_chain = ratchet(self._derive_chain_key(self.local_ephemeral, new_remote_ephemeral))
        self.previous_send_message_number = self.send_chain.counter

        new_local_ephemeral = generate_private_key()
        self.send_chain = ratchet(self._derive_chain_key(new_local_ephemeral, new_remote_ephemeral))
        self.local_ephemeral = new_local_ephemeral
        logger.debug("DH ratchet step completed (previous chain length %d)", self.previous_send_message_number)

    def force_rotate_local_ephemeral(self) -> None:
        """
        Rotate the sending ratchet key without waiting for a peer message.
        Intended for tests that exercise the receiver's DH ratchet.

        Not safe while the peer has a reply in flight on a sending chain it
        bootstrapped from the current root key: that reply and every message
        on the rotated chain fail to decrypt, and the two sessions do not
        recover. Only rotate when no such reply can exist.
        """
        if self.remote_ephemeral is None:
            raise RemoteEphemeralNotAvailable("Cannot rotate before the remote ephemeral key is known")
        new_local_ephemeral = generate_private_key()
        self.previous_send_message_number = self.send_chain.counter
        self.send_chain = ratchet(self._derive_chain_key(new_local_ephemeral, self.remote_ephemeral))
        self.local_ephemeral = new_local_ephemeral

    def _skip_recv_message_keys(self, until: int) -> None:
        """Advance the receiving chain up to (not including) until, caching each key."""
        if not self.recv_chain.established or self.remote_ephemeral is None:
            raise MissingRecvChainKey("No receiving chain to skip message keys on")
        if until - self.recv_chain.counter > self.max_skip:
            raise TooManySkippedMessages(
                f"Refusing to skip {until - self.recv_chain.counter} message keys",
                {'from': self.recv_chain.counter, 'until': until, 'max_skip': self.max_skip}
            )
        ratchet_key = public_key_bytes(self.remote_ephemeral)
        while self.recv_chain.counter < until:
            message_number = self.recv_chain.counter
            message_key, self.recv_chain = self.recv_chain.advance()
            self.skipped_message_keys.put(ratchet_key, message_number, message_key)

    # -- encrypt / decrypt ----------------------------------------------

    def encrypt(self, plaintext: bytes) -> DoubleRatchetMessage:
        with self._transaction():
            if self.local_ephemeral is None:
                self.local_ephemeral = generate_private_key()

            if not self.send_chain.established and self.remote_ephemeral is not None:
                self.send_chain = bootstrap(self.send_chain, self._derive_chain_key(self.local_ephemeral, self.remote_ephemeral))

            if not self.send_chain.established:
                raise MissingSendChainKey("No sending chain and no remote ephemeral key to derive one")

            message_number = self.send_chain.counter
            message_key, self.send_chain = self.send_chain.advance()

            header = DoubleRatchetHeader(
                ephemeral_key=public_key_bytes(self.local_ephemeral.public_key()),
                message_number=message_number,
                previous_message_number=self.previous_send_message_number,
                one_time_prekey_id=self.pending_prekey_id,
            )
            # The prekey id only serves to establish the session on the other side.
            self.pending_prekey_id = None

            nonce = os.urandom(NONCE_LENGTH)
            ciphertext = AESGCM(message_key).encrypt(nonce, plaintext, header.associated_data())

        return DoubleRatchetMessage(header=header, ciphertext=ciphertext, nonce=nonce)

    def decrypt(self, message: DoubleRatchetMessage) -> bytes:
        header = message.header
        if len(message.ciphertext) < TAG_LENGTH:
            raise InvalidCiphertext(len(message.ciphertext))

        try:
            header_key = public_key_from_bytes(header.ephemeral_key)
        except ValueError:
            raise DecryptionFailed("Header carries an invalid ephemeral key")
        header_key_bytes = public_key_bytes(header_key)
        is_current_remote = public_keys_equal(self.remote_ephemeral, header_key)

        with self._transaction():
            # Bootstrap the receiving chain on the known remote key, but only when
            # that chain is actually needed: the message belongs to it, or the
            # sender reports messages on it before ratcheting away.
            if (not self.recv_chain.established
                    and self.remote_ephemeral is not None
                    and self.local_ephemeral is not None
                    and (is_current_remote or header.previous_message_number > 0)):
                self.recv_chain = bootstrap(self.recv_chain, self._derive_chain_key(self.local_ephemeral, self.remote_ephemeral))

            cached_key = self.skipped_message_keys.pop(header_key_bytes, header.message_number)
            if cached_key is not None:
                return self._open(cached_key, message)

            if not is_current_remote:
                if header.previous_message_number > self.recv_chain.counter:
                    self._skip_recv_message_keys(header.previous_message_number)
                self.perform_dh_ratchet(header_key)

            if header.message_number > self.recv_chain.counter:
                self._skip_recv_message_keys(header.message_number)

            if not self.recv_chain.established:
                raise MissingRecvChainKey("No receiving chain to decrypt with")
            message_key, self.recv_chain = self.recv_chain.advance()
            return self._open(message_key, message)

    def _open(self, message_key: bytes, message: DoubleRatchetMessage) -> bytes:
        try:
            return AESGCM(message_key).decrypt(message.nonce, message.ciphertext, message.header.associated_data())
        except (InvalidTag, ValueError):
            raise DecryptionFailed("Message authentication failed")
