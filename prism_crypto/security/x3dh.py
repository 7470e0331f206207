# x3dh.py - X3DH (Extended Triple Diffie-Hellman) key agreement
"""
Initiator (Alice) with identity key IK_A and ephemeral key EK_A, responder (Bob)
with identity key IK_B, signed prekey SPK_B and optional one-time prekey OPK_B:

    DH1 = DH(IK_A, SPK_B)
    DH2 = DH(EK_A, IK_B)
    DH3 = DH(EK_A, SPK_B)
    DH4 = DH(EK_A, OPK_B)        only when a one-time prekey is used
    SK  = HKDF(DH1 || DH2 || DH3 [|| DH4], salt="", info="X3DH", 32)

The identity-key halves of DH1 (initiator) and DH2 (responder) are computed by
the TrustedExecutionEnvironment.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from ..core.hkdf import hkdf
from .keys import KeyBundle, PrivateKey, PublicKey, ecdh, generate_private_key
from .tee import TrustedExecutionEnvironment

logger = logging.getLogger(__name__)

X3DH_INFO = b"X3DH"
ROOT_KEY_LENGTH = 32


@dataclass
class HandshakeResult:
    """
    Output of the initiator side.

    remote_ratchet_key is the responder key the first ratchet step runs against:
    the one-time prekey when one was used, the signed prekey otherwise.
    """
    root_key: bytes
    ephemeral_key: PrivateKey
    used_prekey_id: Optional[int]
    remote_ratchet_key: PublicKey

    @property
    def ephemeral_public_key(self) -> PublicKey:
        return self.ephemeral_key.public_key()


class X3DH:
    """X3DH key agreement bound to the local identity capability"""

    def __init__(self, tee: TrustedExecutionEnvironment):
        self.tee = tee

    def initiate_handshake(self, key_bundle: KeyBundle, prekey_id: Optional[int] = None) -> HandshakeResult:
        """
        Run the initiator side against a peer's key bundle.

        Verifies the bundle signature first. When prekey_id is given the matching
        one-time prekey from the bundle takes part as DH4.
        """
        key_bundle.verify()

        one_time_prekey = None
        if prekey_id is not None:
            one_time_prekey = key_bundle.get_prekey(prekey_id).key

        ephemeral_key = generate_private_key()
        root_key = self.perform_x3dh(
            ephemeral_key,
            responder_identity=key_bundle.identity_key,
            responder_signed_prekey=key_bundle.signed_prekey,
            responder_one_time_prekey=one_time_prekey,
        )
        logger.debug("X3DH initiated (one-time prekey: %s)", prekey_id)

        return HandshakeResult(
            root_key=root_key,
            ephemeral_key=ephemeral_key,
            used_prekey_id=prekey_id,
            remote_ratchet_key=one_time_prekey if one_time_prekey is not None else key_bundle.signed_prekey,
        )

    def perform_x3dh(self, ephemeral_key: PrivateKey,
                     responder_identity: PublicKey,
                     responder_signed_prekey: PublicKey,
                     responder_one_time_prekey: Optional[PublicKey] = None) -> bytes:
        # DH1 = DH(IK_A, SPK_B)
        dh1 = self.tee.compute_shared_secret_with_identity(responder_signed_prekey)
        # DH2 = DH(EK_A, IK_B)
        dh2 = ecdh(ephemeral_key, responder_identity)
        # DH3 = DH(EK_A, SPK_B)
        dh3 = ecdh(ephemeral_key, responder_signed_prekey)

        key_material = dh1 + dh2 + dh3
        if responder_one_time_prekey is not None:
            # DH4 = DH(EK_A, OPK_B)
            key_material += ecdh(ephemeral_key, responder_one_time_prekey)

        return derive_root_key(key_material)

    def perform_passive_x3dh(self, sender_ephemeral: PublicKey,
                             sender_identity: PublicKey,
                             receiver_signed_prekey: PrivateKey,
                             receiver_one_time_prekey: Optional[PrivateKey] = None) -> bytes:
        """
        Responder side: same four DH outputs, computed from Bob's private keys.
        """
        # DH1 = DH(SPK_B, IK_A)
        dh1 = ecdh(receiver_signed_prekey, sender_identity)
        # DH2 = DH(IK_B, EK_A)
        dh2 = self.tee.compute_shared_secret_with_identity(sender_ephemeral)
        # DH3 = DH(SPK_B, EK_A)
        dh3 = ecdh(receiver_signed_prekey, sender_ephemeral)

        key_material = dh1 + dh2 + dh3
        if receiver_one_time_prekey is not None:
            # DH4 = DH(OPK_B, EK_A)
            key_material += ecdh(receiver_one_time_prekey, sender_ephemeral)

        logger.debug("Passive X3DH completed (one-time prekey used: %s)", receiver_one_time_prekey is not None)
        return derive_root_key(key_material)


def derive_root_key(key_material: bytes) -> bytes:
    return hkdf(key_material, salt=b"", info=X3DH_INFO, length=ROOT_KEY_LENGTH)
