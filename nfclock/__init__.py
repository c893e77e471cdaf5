"""
NFC door lock built on the MIFARE DESFire protocol.
"""

from .crypto import KeyType
from .desfire import AuthState, CardVersion, CommMode, DESFireSession, KeySettings
from .exceptions import (
    AuthenticationMismatch, AuthenticationRejected, DESFireError, IntegrityError,
    MalformedResponse, NotAuthenticated, NotSupported, ProtocolError,
    TransportError, TransportTimeout, UnexpectedStatus,
)

__version__ = "1.0.0"
