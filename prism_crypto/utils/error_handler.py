# error_handler.py - Error taxonomy and centralized error reporting
import logging
import traceback
from enum import Enum
from typing import Optional, Dict, Any


class ErrorCode(Enum):
    # Unavailable key material
    MISSING_SEND_CHAIN_KEY = "KEY_001"
    MISSING_RECV_CHAIN_KEY = "KEY_002"
    MISSING_PREKEYS = "KEY_003"
    PREKEY_NOT_FOUND = "KEY_004"
    REMOTE_EPHEMERAL_NOT_AVAILABLE = "KEY_005"

    # Cryptographic rejection
    DECRYPTION_FAILED = "DEC_001"
    INVALID_CIPHERTEXT = "DEC_002"
    TOO_MANY_SKIPPED_MESSAGES = "DEC_003"
    SIGNATURE_VERIFICATION_FAILED = "SIG_001"

    # Identity capability failures
    IDENTITY_KEY_UNAVAILABLE = "TEE_001"
    SIGNING_FAILED = "TEE_002"
    KEY_AGREEMENT_FAILED = "TEE_003"

    # State errors
    STATE_SERIALIZATION_FAILED = "STA_001"
    STATE_DESERIALIZATION_FAILED = "STA_002"
    STATE_NOT_FOUND = "STA_003"

    # Protocol / gateway errors
    HANDSHAKE_FAILED = "PRO_001"
    KEY_BUNDLE_NOT_FOUND = "PRO_002"
    MESSAGE_FORMAT_INVALID = "PRO_003"

    # General errors
    INTERNAL_ERROR = "GEN_001"


class PrismCryptoError(Exception):
    """Base exception for all prism_crypto operations"""
    error_code = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 error_code: Optional[ErrorCode] = None):
        if error_code is not None:
            self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(f"{self.error_code.value}: {message}")


class KeyMaterialError(PrismCryptoError):
    """Key material needed for the operation does not exist (yet)"""
    pass


class CryptographicError(PrismCryptoError):
    """A cryptographic check rejected the input"""
    pass


class CapabilityError(PrismCryptoError):
    """The identity capability could not complete the request"""
    pass


class StateError(PrismCryptoError):
    """Session state could not be written or read"""
    pass


class ProtocolError(PrismCryptoError):
    """Handshake or gateway level failure"""
    pass


class MissingSendChainKey(KeyMaterialError):
    error_code = ErrorCode.MISSING_SEND_CHAIN_KEY


class MissingRecvChainKey(KeyMaterialError):
    error_code = ErrorCode.MISSING_RECV_CHAIN_KEY


class MissingPrekeys(KeyMaterialError):
    error_code = ErrorCode.MISSING_PREKEYS


class PrekeyNotFound(KeyMaterialError):
    error_code = ErrorCode.PREKEY_NOT_FOUND


class RemoteEphemeralNotAvailable(KeyMaterialError):
    error_code = ErrorCode.REMOTE_EPHEMERAL_NOT_AVAILABLE


class DecryptionFailed(CryptographicError):
    error_code = ErrorCode.DECRYPTION_FAILED


class InvalidCiphertext(CryptographicError):
    error_code = ErrorCode.INVALID_CIPHERTEXT

    def __init__(self, length: int):
        self.length = length
        super().__init__(
            f"Ciphertext too short: {length} bytes",
            {'length': length}
        )


class TooManySkippedMessages(CryptographicError):
    error_code = ErrorCode.TOO_MANY_SKIPPED_MESSAGES


class SignatureVerificationFailed(CryptographicError):
    error_code = ErrorCode.SIGNATURE_VERIFICATION_FAILED


class IdentityKeyUnavailable(CapabilityError):
    error_code = ErrorCode.IDENTITY_KEY_UNAVAILABLE


class SigningFailed(CapabilityError):
    error_code = ErrorCode.SIGNING_FAILED


class KeyAgreementFailed(CapabilityError):
    error_code = ErrorCode.KEY_AGREEMENT_FAILED


class StateSerializationFailed(StateError):
    error_code = ErrorCode.STATE_SERIALIZATION_FAILED


class StateDeserializationFailed(StateError):
    error_code = ErrorCode.STATE_DESERIALIZATION_FAILED


class StateNotFound(StateError):
    error_code = ErrorCode.STATE_NOT_FOUND


class HandshakeFailed(ProtocolError):
    error_code = ErrorCode.HANDSHAKE_FAILED


class KeyBundleNotFound(ProtocolError):
    error_code = ErrorCode.KEY_BUNDLE_NOT_FOUND


class MessageFormatInvalid(ProtocolError):
    error_code = ErrorCode.MESSAGE_FORMAT_INVALID


class ErrorHandler:
    """Centralized error logging and statistics for the calling layer"""

    def __init__(self, logger_name: str = 'prism_crypto'):
        self.error_stats: Dict[str, int] = {}
        self.logger = logging.getLogger(logger_name)

    def handle_error(self, error: Exception, context: str = "",
                     recovery_action: Optional[str] = None) -> Dict[str, Any]:
        """
        Log an error and return a dictionary describing it
        """
        error_info = {
            'context': context,
            'error_type': type(error).__name__,
            'error_message': str(error),
            'recovery_action': recovery_action or self.create_recovery_suggestion(error),
            'traceback': ''.join(traceback.format_exception(type(error), error, error.__traceback__)),
        }

        if isinstance(error, PrismCryptoError):
            error_info['error_code'] = error.error_code.value
            error_info['details'] = error.details

        error_type = type(error).__name__
        self.error_stats[error_type] = self.error_stats.get(error_type, 0) + 1

        log_message = f"Error in {context}: {error_info['error_message']}"
        if recovery_action:
            log_message += f" | Recovery: {recovery_action}"
        self.logger.error(log_message)

        if isinstance(error, PrismCryptoError) and error.details:
            self.logger.error(f"Error details: {error.details}")

        return error_info

    def safe_execute(self, operation, *args, **kwargs):
        """
        Execute an operation and capture any prism_crypto failure
        Returns (success: bool, result: Any, error_info: Dict)
        """
        try:
            result = operation(*args, **kwargs)
            return True, result, None
        except PrismCryptoError as e:
            error_info = self.handle_error(e, context=getattr(operation, '__name__', repr(operation)))
            return False, None, error_info

    def create_recovery_suggestion(self, error: Exception) -> str:
        """
        Provide recovery suggestions based on error type
        """
        if isinstance(error, (DecryptionFailed, InvalidCiphertext)):
            return "Message may have been tampered with or replayed. Discard it"
        if isinstance(error, TooManySkippedMessages):
            return "Too many messages were lost. Re-establish the session"
        if isinstance(error, SignatureVerificationFailed):
            return "Key bundle is not signed by its identity key. Do not start the chat"
        if isinstance(error, MissingPrekeys):
            return "Ask the peer to upload fresh one-time prekeys"
        if isinstance(error, KeyMaterialError):
            return "Complete the X3DH handshake before sending or receiving"
        if isinstance(error, CapabilityError):
            return "Check access to the secure key storage"
        if isinstance(error, StateError):
            return "Restore the session from a backup or reinitialize it"
        if isinstance(error, ProtocolError):
            return "Check connectivity to the key server and retry"
        return "Consider restarting the session"

    def get_error_statistics(self) -> Dict[str, Any]:
        """
        Get error statistics for monitoring and debugging
        """
        total_errors = sum(self.error_stats.values())
        return {
            'total_errors': total_errors,
            'error_counts': self.error_stats.copy(),
            'error_rates': {
                error_type: count / total_errors * 100
                for error_type, count in self.error_stats.items()
            } if total_errors > 0 else {}
        }

    def reset_statistics(self):
        """Reset error statistics"""
        self.error_stats.clear()
