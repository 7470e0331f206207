# Prism Crypto
"""
End-to-end encryption for two-party chats: X3DH key agreement on P-256 and the
Double Ratchet with AES-256-GCM, plus the pieces around them
- Identity key capability (in memory or password-protected file)
- Key bundle directory with single-use one-time prekeys
- Encrypted, versioned session persistence
- Wire envelopes with duplicate detection
- Typed errors with codes and recovery suggestions
"""

__version__ = "1.0.0"

from .utils.error_handler import ErrorHandler, ErrorCode, PrismCryptoError
from .security.keys import KeyBundle, PrivatePrekeyStore
from .security.tee import TrustedExecutionEnvironment, InMemoryTee, FileBackedTee
from .security.x3dh import X3DH, HandshakeResult
from .security.key_directory import KeyGateway, InMemoryKeyDirectory
from .core.double_ratchet import DoubleRatchetSession
from .core.message import DoubleRatchetHeader, DoubleRatchetMessage
from .utils.message_handler import MessageHandler
from .utils.state_manager import SessionStore
from .config import Settings
from .chat_service import ChatService

__all__ = [
    'ErrorHandler',
    'ErrorCode',
    'PrismCryptoError',
    'KeyBundle',
    'PrivatePrekeyStore',
    'TrustedExecutionEnvironment',
    'InMemoryTee',
    'FileBackedTee',
    'X3DH',
    'HandshakeResult',
    'KeyGateway',
    'InMemoryKeyDirectory',
    'DoubleRatchetSession',
    'DoubleRatchetHeader',
    'DoubleRatchetMessage',
    'MessageHandler',
    'SessionStore',
    'Settings',
    'ChatService',
]
