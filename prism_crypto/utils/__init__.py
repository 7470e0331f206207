# Utilities Module
"""
Error taxonomy, wire envelopes and encrypted session storage.

Only the error handler is imported here; the other modules depend on the core
package and are imported directly.
"""

from .error_handler import ErrorHandler, ErrorCode, PrismCryptoError

__all__ = ['ErrorHandler', 'ErrorCode', 'PrismCryptoError']
