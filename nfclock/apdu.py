"""
DESFire APDU codec.
Wraps native DESFire commands into ISO 7816-4 APDUs (CLA=0x90),
unwraps 0x91-framed responses and reassembles multi-frame answers.
"""

import logging
from enum import IntEnum
from typing import Callable, NamedTuple, Tuple

from .exceptions import MalformedResponse, UnexpectedStatus

logger = logging.getLogger(__name__)

DESFIRE_CLA = 0x90
RESPONSE_MARKER = 0x91
MAX_PAYLOAD_LENGTH = 0xFF
DEFAULT_RESPONSE_LENGTH = 40

Transmit = Callable[[bytes, int], bytes]


# ─── DESFire Command Codes ──────────────────────────────────────────────────

class DESFireCmd(IntEnum):
    """DESFire native command codes."""
    # Security
    AUTHENTICATE_LEGACY = 0x0A
    CHANGE_KEY_SETTINGS = 0x54
    GET_KEY_SETTINGS = 0x45
    CHANGE_KEY = 0xC4
    GET_KEY_VERSION = 0x64

    # PICC level
    CREATE_APPLICATION = 0xCA
    DELETE_APPLICATION = 0xDA
    GET_APPLICATION_IDS = 0x6A
    SELECT_APPLICATION = 0x5A
    FORMAT_PICC = 0xFC
    GET_VERSION = 0x60

    # Application level
    GET_FILE_IDS = 0x6F
    GET_FILE_SETTINGS = 0xF5
    CHANGE_FILE_SETTINGS = 0x5F
    CREATE_STD_DATA_FILE = 0xCD
    CREATE_BACKUP_FILE = 0xCB
    CREATE_VALUE_FILE = 0xCC
    CREATE_LINEAR_RECORD_FILE = 0xC1
    CREATE_CYCLIC_RECORD_FILE = 0xC0
    DELETE_FILE = 0xDF

    # Data operations
    READ_DATA = 0xBD
    WRITE_DATA = 0x3D
    GET_VALUE = 0x6C
    CREDIT = 0x0C
    DEBIT = 0xDC
    LIMITED_CREDIT = 0x1C
    WRITE_RECORD = 0x3B
    READ_RECORDS = 0xBB
    CLEAR_RECORD_FILE = 0xEB
    COMMIT_TRANSACTION = 0xC7
    ABORT_TRANSACTION = 0xA7

    # Additional frame
    ADDITIONAL_FRAME = 0xAF

    # EV1
    AUTHENTICATE_ISO = 0x1A
    AUTHENTICATE_AES = 0xAA
    FREE_MEMORY = 0x6E
    GET_DF_NAMES = 0x6D
    GET_CARD_UID = 0x51
    GET_ISO_FILE_IDS = 0x61
    SET_CONFIGURATION = 0x5C


class DESFireStatus(IntEnum):
    """DESFire status codes (second byte after the 0x91 marker)."""
    SUCCESS = 0x00
    NO_CHANGES = 0x0C
    OUT_OF_EEPROM = 0x0E
    ILLEGAL_COMMAND = 0x1C
    INTEGRITY_ERROR = 0x1E
    NO_SUCH_KEY = 0x40
    LENGTH_ERROR = 0x7E
    PERMISSION_DENIED = 0x9D
    PARAMETER_ERROR = 0x9E
    APPLICATION_NOT_FOUND = 0xA0
    APPLICATION_INTEGRITY_ERROR = 0xA1
    AUTHENTICATION_ERROR = 0xAE
    MORE_FRAMES = 0xAF
    BOUNDARY_ERROR = 0xBE
    CARD_INTEGRITY_ERROR = 0xC1
    COMMAND_ABORTED = 0xCA
    CARD_DISABLED = 0xCD
    COUNT_ERROR = 0xCE
    DUPLICATE_ERROR = 0xDE
    EEPROM_ERROR = 0xEE
    FILE_NOT_FOUND = 0xF0
    FILE_INTEGRITY_ERROR = 0xF1


STATUS_TEXT = {
    DESFireStatus.SUCCESS: "Success",
    DESFireStatus.NO_CHANGES: "No changes",
    DESFireStatus.OUT_OF_EEPROM: "Out of EEPROM",
    DESFireStatus.ILLEGAL_COMMAND: "Illegal command code",
    DESFireStatus.INTEGRITY_ERROR: "Integrity error",
    DESFireStatus.NO_SUCH_KEY: "No such key",
    DESFireStatus.LENGTH_ERROR: "Length error",
    DESFireStatus.PERMISSION_DENIED: "Permission denied",
    DESFireStatus.PARAMETER_ERROR: "Parameter error",
    DESFireStatus.APPLICATION_NOT_FOUND: "Application not found",
    DESFireStatus.APPLICATION_INTEGRITY_ERROR: "Application integrity error",
    DESFireStatus.AUTHENTICATION_ERROR: "Authentication error",
    DESFireStatus.MORE_FRAMES: "Additional frame expected",
    DESFireStatus.BOUNDARY_ERROR: "Boundary error",
    DESFireStatus.CARD_INTEGRITY_ERROR: "Card integrity error",
    DESFireStatus.COMMAND_ABORTED: "Command aborted",
    DESFireStatus.CARD_DISABLED: "Card disabled",
    DESFireStatus.COUNT_ERROR: "Count error",
    DESFireStatus.DUPLICATE_ERROR: "Duplicate error",
    DESFireStatus.EEPROM_ERROR: "EEPROM error",
    DESFireStatus.FILE_NOT_FOUND: "File not found",
    DESFireStatus.FILE_INTEGRITY_ERROR: "File integrity error",
}


def status_name(status: int) -> str:
    """Human-readable name of a status byte."""
    try:
        return STATUS_TEXT[DESFireStatus(status)]
    except ValueError:
        return f"Unknown (0x{status:02X})"


# ─── Framing ────────────────────────────────────────────────────────────────

class DESFireResponse(NamedTuple):
    """Unwrapped DESFire response: payload and status byte."""
    data: bytes
    status: int

    @property
    def is_success(self) -> bool:
        return self.status == DESFireStatus.SUCCESS

    @property
    def has_more_data(self) -> bool:
        return self.status == DESFireStatus.MORE_FRAMES

    @property
    def status_text(self) -> str:
        return status_name(self.status)

    def __repr__(self):
        return f"Response(data={bytes_to_hex(self.data)}, status={self.status:02X})"


def wrap(command: int, payload: bytes = b"") -> bytes:
    """Create a DESFire wrapped APDU (CLA=0x90)."""
    payload = bytes(payload)
    if len(payload) > MAX_PAYLOAD_LENGTH:
        raise ValueError(f"payload too long for a single APDU: {len(payload)} bytes")
    if payload:
        return bytes([DESFIRE_CLA, command, 0x00, 0x00, len(payload)]) + payload + b"\x00"
    return bytes([DESFIRE_CLA, command, 0x00, 0x00, 0x00])


def unwrap(raw: bytes) -> DESFireResponse:
    """Split a raw response into payload and status byte."""
    raw = bytes(raw)
    if len(raw) < 2:
        raise MalformedResponse(f"response too short ({len(raw)} bytes)")
    if raw[-2] != RESPONSE_MARKER:
        raise MalformedResponse(f"invalid response marker 0x{raw[-2]:02X}")
    return DESFireResponse(raw[:-2], raw[-1])


def transceive(transmit: Transmit, command: int, payload: bytes = b"",
               max_response_length: int = DEFAULT_RESPONSE_LENGTH) -> DESFireResponse:
    """Send one command and return the unwrapped response, whatever its status."""
    apdu = wrap(command, payload)
    logger.debug("APDU:   %s", bytes_to_hex(apdu))
    raw = transmit(apdu, max_response_length)
    logger.debug("RESULT: %s", bytes_to_hex(raw))
    return unwrap(raw)


def reassemble(transmit: Transmit, command: int, payload: bytes = b"",
               max_response_length: int = DEFAULT_RESPONSE_LENGTH) -> Tuple[bytes, int]:
    """
    Send a command and collect every frame of the answer.

    While the card reports MORE_FRAMES an empty ADDITIONAL_FRAME command is
    sent and its payload appended. Returns (data, status) on SUCCESS and
    raises UnexpectedStatus on any other terminal status.
    """
    response = transceive(transmit, command, payload, max_response_length)
    data = bytearray(response.data)
    frames = 1
    while response.has_more_data:
        response = transceive(transmit, DESFireCmd.ADDITIONAL_FRAME, b"", max_response_length)
        data.extend(response.data)
        frames += 1

    if not response.is_success:
        raise UnexpectedStatus(response.status, command)

    if frames > 1:
        logger.debug("Reassembled %d frames (%d bytes) for command 0x%02X",
                     frames, len(data), command)
    return bytes(data), response.status


# ─── Hex Utilities ──────────────────────────────────────────────────────────

def bytes_to_hex(data: bytes, separator: str = " ") -> str:
    """Convert bytes to hex string."""
    return separator.join(f"{b:02X}" for b in data)


def hex_to_bytes(hex_string: str) -> bytes:
    """Convert hex string to bytes."""
    hex_string = hex_string.replace(" ", "").replace(":", "").replace("-", "")
    if len(hex_string) % 2 != 0:
        hex_string = "0" + hex_string
    return bytes.fromhex(hex_string)

