"""
wasession: per-account session lifecycle engine for WhatsApp-style transports.

It keeps a fragile, stateful device session alive across restarts and network
failures: credential persistence, a connection state machine with a
reconnection policy, decryption-error recovery and outbound delivery tracking.
The wire protocol itself is an external collaborator (see `transport`).
"""

from __future__ import annotations

from .client import AccountSession
from .config import ProxyConfig, SessionConfig
from .delivery import DeliveryRecord, MessageStatus
from .exceptions import WASessionError
from .pairing import PairingChallenge
from .sender import DeliveryResult, SendOptions
from .service import SessionService
from .store import InMemoryAuthDatabase
from .util.events import SessionEvent

__all__ = [
    "AccountSession",
    "DeliveryRecord",
    "DeliveryResult",
    "InMemoryAuthDatabase",
    "MessageStatus",
    "PairingChallenge",
    "ProxyConfig",
    "SendOptions",
    "SessionConfig",
    "SessionEvent",
    "SessionService",
    "WASessionError",
]

__version__ = "0.1.0"
