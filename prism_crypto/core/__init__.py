# Core Double Ratchet Module
"""
Key schedule, chain state, message format and sessions of the Double Ratchet.
"""

from .double_ratchet import DoubleRatchetSession
from .message import DoubleRatchetHeader, DoubleRatchetMessage
from .serialization import dumps_session, loads_session

__all__ = ['DoubleRatchetSession', 'DoubleRatchetHeader', 'DoubleRatchetMessage', 'dumps_session', 'loads_session']
