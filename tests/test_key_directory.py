# test_key_directory.py - In-memory key bundle directory
import threading

import pytest

from prism_crypto.security.key_directory import InMemoryKeyDirectory
from prism_crypto.security.keys import KeyBundle, public_keys_equal
from prism_crypto.utils.error_handler import KeyBundleNotFound, SignatureVerificationFailed


def test_each_fetch_hands_out_a_different_prekey(new_party):
    bob = new_party(prekey_batch_size=2)
    directory = InMemoryKeyDirectory()
    directory.submit_key_bundle("bob", bob.bundle())

    first = directory.fetch_key_bundle("bob")
    second = directory.fetch_key_bundle("bob")
    third = directory.fetch_key_bundle("bob")

    assert [p.key_idx for p in first.prekeys] == [0]
    assert [p.key_idx for p in second.prekeys] == [1]
    assert third.prekeys == []
    assert directory.prekey_count("bob") == 0
    third.verify()


def test_identity_lookup_does_not_consume_prekeys(new_party):
    bob = new_party()
    directory = InMemoryKeyDirectory()
    directory.submit_key_bundle("bob", bob.bundle())

    assert public_keys_equal(directory.fetch_identity_key("bob"), bob.identity_key)
    assert directory.prekey_count("bob") == 3


def test_replenish(new_party):
    bob = new_party(prekey_batch_size=1)
    directory = InMemoryKeyDirectory()
    directory.submit_key_bundle("bob", bob.bundle())
    directory.fetch_key_bundle("bob")

    directory.add_prekeys("bob", bob.prekeys.add_prekeys(bob.tee.create_prekeys(2)))

    assert directory.prekey_count("bob") == 2


def test_unknown_user(new_party):
    directory = InMemoryKeyDirectory()
    assert not directory.has_bundle("nobody")
    with pytest.raises(KeyBundleNotFound):
        directory.fetch_key_bundle("nobody")


def test_unsigned_bundle_refused(new_party):
    bob, mallory = new_party(), new_party()
    bundle = bob.bundle()
    forged = KeyBundle(bundle.identity_key, mallory.prekeys.signed_prekey.public_key(),
                       bundle.signed_prekey_signature, bundle.prekeys)

    with pytest.raises(SignatureVerificationFailed):
        InMemoryKeyDirectory().submit_key_bundle("bob", forged)


def test_concurrent_submissions_are_all_visible(new_party):
    parties = {f"user{i}": new_party(prekey_batch_size=1) for i in range(8)}
    directory = InMemoryKeyDirectory()

    threads = [threading.Thread(target=directory.submit_key_bundle, args=(user_id, party.bundle()))
               for user_id, party in parties.items()]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert all(directory.has_bundle(user_id) for user_id in parties)
    assert sum(directory.prekey_count(user_id) for user_id in parties) == 8
