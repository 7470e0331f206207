# Security Module
"""
Key material, the identity key capability, X3DH and the key bundle directory.
"""

from .keys import KeyBundle, Prekey, PrivatePrekeyStore
from .tee import TrustedExecutionEnvironment, InMemoryTee, FileBackedTee
from .x3dh import X3DH, HandshakeResult
from .key_directory import KeyGateway, InMemoryKeyDirectory

__all__ = [
    'KeyBundle', 'Prekey', 'PrivatePrekeyStore',
    'TrustedExecutionEnvironment', 'InMemoryTee', 'FileBackedTee',
    'X3DH', 'HandshakeResult',
    'KeyGateway', 'InMemoryKeyDirectory',
]
