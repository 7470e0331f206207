# test_error_handler.py - Error taxonomy, codes and the error handler
import logging

import pytest

from prism_crypto.utils.error_handler import (
    CryptographicError,
    DecryptionFailed,
    ErrorCode,
    ErrorHandler,
    InvalidCiphertext,
    KeyMaterialError,
    MissingPrekeys,
    PrismCryptoError,
    StateNotFound,
    TooManySkippedMessages,
)


def test_codes_and_groups():
    error = TooManySkippedMessages("too many", {'max_skip': 3})

    assert isinstance(error, CryptographicError)
    assert isinstance(error, PrismCryptoError)
    assert error.error_code == ErrorCode.TOO_MANY_SKIPPED_MESSAGES
    assert error.details == {'max_skip': 3}
    assert isinstance(MissingPrekeys("none"), KeyMaterialError)
    assert InvalidCiphertext(3).details == {'length': 3}


def test_error_codes_are_unique():
    values = [code.value for code in ErrorCode]
    assert len(values) == len(set(values))


def test_handle_error_logs_and_counts(caplog):
    handler = ErrorHandler()

    with caplog.at_level(logging.ERROR, logger='prism_crypto'):
        info = handler.handle_error(DecryptionFailed("bad tag"), "decrypt")
        handler.handle_error(DecryptionFailed("bad tag"), "decrypt")
        handler.handle_error(StateNotFound("gone"), "load")

    assert info['error_code'] == "DEC_001"
    assert info['error_type'] == "DecryptionFailed"
    assert "tampered" in info['recovery_action']
    assert "Error in decrypt: DEC_001: bad tag" in caplog.text

    stats = handler.get_error_statistics()
    assert stats['total_errors'] == 3
    assert stats['error_counts'] == {'DecryptionFailed': 2, 'StateNotFound': 1}

    handler.reset_statistics()
    assert handler.get_error_statistics()['total_errors'] == 0


def test_safe_execute():
    handler = ErrorHandler()

    def fails():
        raise MissingPrekeys("no prekeys")

    assert handler.safe_execute(lambda: 42) == (True, 42, None)
    ok, result, info = handler.safe_execute(fails)
    assert not ok and result is None
    assert info['error_code'] == "KEY_003"

    with pytest.raises(ZeroDivisionError):
        handler.safe_execute(lambda: 1 / 0)
