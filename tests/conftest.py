# conftest.py - Shared fixtures: identities, key bundles and paired ratchet sessions
import pytest

from prism_crypto.core.double_ratchet import DoubleRatchetSession
from prism_crypto.security.keys import PrivatePrekeyStore
from prism_crypto.security.tee import InMemoryTee
from prism_crypto.security.x3dh import X3DH


class Party:
    """A user with an in-memory identity and a private prekey store"""

    def __init__(self, prekey_batch_size=3):
        self.tee = InMemoryTee(prekey_batch_size)
        self.x3dh = X3DH(self.tee)
        user_keys = self.tee.create_user_keys()
        self.identity_key = user_keys.identity_key
        self.prekeys = PrivatePrekeyStore.from_user_keys(user_keys)

    def bundle(self):
        return self.prekeys.key_bundle(self.identity_key)


def make_session_pair(use_prekey=True, max_skip=1000):
    """Run X3DH between two fresh parties and return (alice, bob) sessions"""
    alice, bob = Party(), Party()
    prekey_id = 0 if use_prekey else None

    result = alice.x3dh.initiate_handshake(bob.bundle(), prekey_id)
    one_time_prekey = bob.prekeys.get_prekey(prekey_id) if use_prekey else None
    root_key = bob.x3dh.perform_passive_x3dh(
        sender_ephemeral=result.ephemeral_public_key,
        sender_identity=alice.identity_key,
        receiver_signed_prekey=bob.prekeys.signed_prekey,
        receiver_one_time_prekey=one_time_prekey,
    )
    local_ratchet_key = one_time_prekey if one_time_prekey is not None else bob.prekeys.signed_prekey

    alice_session = DoubleRatchetSession.from_handshake(result, max_skip=max_skip)
    bob_session = DoubleRatchetSession.for_responder(root_key, local_ratchet_key,
                                                     result.ephemeral_public_key, max_skip=max_skip)
    return alice_session, bob_session


@pytest.fixture
def new_party():
    return Party


@pytest.fixture
def pair_factory():
    return make_session_pair


@pytest.fixture
def session_pair():
    return make_session_pair()
