"""
Exception hierarchy for the DESFire protocol engine.
Every failure raised by the protocol core derives from DESFireError.
"""

from typing import Optional


class DESFireError(Exception):
    """Base class for all card protocol failures."""


class TransportError(DESFireError):
    """The reader transport failed (card removed, reader disconnected)."""


class TransportTimeout(TransportError):
    """A reader round-trip did not complete within the configured timeout."""


class MalformedResponse(DESFireError):
    """A response is truncated or carries the wrong framing marker."""


class UnexpectedStatus(DESFireError):
    """The card returned a terminal status other than the one required."""

    def __init__(self, status: int, command: Optional[int] = None, message: str = ""):
        self.status = status
        self.command = command
        super().__init__(message or self._default_message())

    @property
    def status_name(self) -> str:
        from .apdu import status_name
        return status_name(self.status)

    def _default_message(self) -> str:
        if self.command is None:
            return f"card returned {self.status_name} (0x{self.status:02X})"
        return (f"command 0x{self.command:02X} failed: "
                f"{self.status_name} (0x{self.status:02X})")


class ProtocolError(UnexpectedStatus):
    """A high-level card operation was rejected by the card."""


class AuthenticationRejected(UnexpectedStatus):
    """The card refused a step of the mutual authentication handshake."""


class AuthenticationMismatch(DESFireError):
    """The card's answer to our challenge did not match."""


class NotAuthenticated(DESFireError):
    """A protected operation was requested without an authenticated session."""


class IntegrityError(DESFireError):
    """A received CMAC did not match the locally computed one."""


class NotSupported(DESFireError):
    """The command is recognized but intentionally not implemented."""
