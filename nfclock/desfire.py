"""
MIFARE DESFire card session.
Combines the APDU codec, the key/cipher layer, the authentication handshake
and the CMAC engine behind one stateful object per reader/card pairing.
"""

import functools
import logging
import os
import threading
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Dict, List, Optional, Protocol, Union

from . import auth
from .apdu import (
    DEFAULT_RESPONSE_LENGTH, DESFireCmd, DESFireStatus, bytes_to_hex, reassemble,
)
from .cmac import CMAC_LENGTH, calculate_cmac, verify_cmac
from .crypto import CipherContext, DESFireKey, IVPhase, KeyType
from .exceptions import (
    IntegrityError, MalformedResponse, NotAuthenticated, NotSupported,
    ProtocolError, TransportError, UnexpectedStatus,
)

logger = logging.getLogger(__name__)

PICC_AID = 0x000000
MAX_AID = 0xFFFFFF
READ_RESPONSE_LENGTH = 0xFF


class Transport(Protocol):
    """Half-duplex request/response pipe to one card."""

    def transmit(self, data: bytes, max_response_length: int) -> bytes:
        ...


class AuthState(Enum):
    """Authentication status of a card session."""
    UNAUTHENTICATED = "unauthenticated"
    AWAITING_PEER_RESPONSE = "awaiting peer response"
    AUTHENTICATED = "authenticated"


class CommMode(IntEnum):
    """DESFire communication modes."""
    PLAIN = 0x00
    MACED = 0x01
    ENCRYPTED = 0x03


# ─── Key Settings ───────────────────────────────────────────────────────────

CHANGE_KEY_WITH_MASTER_KEY = 0x0
CHANGE_KEY_WITH_TARGETED_KEY = 0xE
CHANGE_KEY_FROZEN = 0xF

KEY_SETTINGS_FACTORY_DEFAULT = 0x0F


@dataclass(frozen=True)
class KeySettings:
    """
    Key settings of an application (or of the PICC).

    First byte: bit0 allow change master key, bit1 listing without master
    key, bit2 create/delete without master key, bit3 configuration
    changeable, bits 4-7 the key needed to change keys (0x0 master key,
    0xE targeted key, 0xF frozen). Second byte: key count in the low
    nibble, key type in the high nibble.
    """
    allow_change_master_key: bool = True
    listing_without_master_key: bool = True
    create_delete_without_master_key: bool = True
    configuration_changeable: bool = True
    change_key_access: int = CHANGE_KEY_WITH_MASTER_KEY
    key_count: int = 1
    key_type: KeyType = KeyType.DES

    def __post_init__(self):
        if not 0 <= self.change_key_access <= 0x0F:
            raise ValueError(f"change key access out of range: {self.change_key_access}")
        if not 0 <= self.key_count <= 0x0F:
            raise ValueError(f"key count out of range: {self.key_count}")
        object.__setattr__(self, "key_type", KeyType(self.key_type))

    @property
    def settings_byte(self) -> int:
        return ((self.change_key_access << 4)
                | (0x01 if self.allow_change_master_key else 0)
                | (0x02 if self.listing_without_master_key else 0)
                | (0x04 if self.create_delete_without_master_key else 0)
                | (0x08 if self.configuration_changeable else 0))

    def encode(self) -> bytes:
        return bytes([self.settings_byte, self.key_count | self.key_type])

    @classmethod
    def decode(cls, data: bytes) -> "KeySettings":
        if len(data) < 2:
            raise ValueError("key settings need 2 bytes")
        settings, keys = data[0], data[1]
        return cls(
            allow_change_master_key=bool(settings & 0x01),
            listing_without_master_key=bool(settings & 0x02),
            create_delete_without_master_key=bool(settings & 0x04),
            configuration_changeable=bool(settings & 0x08),
            change_key_access=(settings & 0xF0) >> 4,
            key_count=keys & 0x0F,
            key_type=KeyType(keys & 0xF0),
        )

    def to_dict(self) -> Dict:
        if self.change_key_access == CHANGE_KEY_FROZEN:
            change_key = "Frozen"
        elif self.change_key_access == CHANGE_KEY_WITH_TARGETED_KEY:
            change_key = "Targeted key"
        else:
            change_key = f"Key {self.change_key_access}"
        return {
            "Settings Byte": f"0x{self.settings_byte:02X}",
            "Allow Change Master Key": self.allow_change_master_key,
            "Allow Directory Without Master Key": self.listing_without_master_key,
            "Allow Create/Delete Without Master Key": self.create_delete_without_master_key,
            "Master Key Changeable": self.configuration_changeable,
            "Change Key With": change_key,
            "Max Keys": self.key_count,
            "Key Type": self.key_type.name,
        }


# ─── DESFire Version Info ───────────────────────────────────────────────────

STORAGE_SIZES = {
    0x16: "2 KB",
    0x18: "4 KB",
    0x1A: "8 KB",
    0x1C: "16 KB",
    0x1E: "32 KB",
}

DESFIRE_TYPES = {
    0x00: "DESFire",
    0x01: "DESFire EV1",
    0x12: "DESFire EV2",
    0x13: "DESFire EV3",
    0x30: "DESFire Light",
    0x33: "NTAG 424 DNA",
}

VERSION_LENGTH = 28


@dataclass(frozen=True)
class CardVersion:
    """Parsed GetVersion answer: hardware, software and production data."""
    hw_vendor: int
    hw_type: int
    hw_subtype: int
    hw_major: int
    hw_minor: int
    hw_storage: int
    hw_protocol: int
    sw_vendor: int
    sw_type: int
    sw_subtype: int
    sw_major: int
    sw_minor: int
    sw_storage: int
    sw_protocol: int
    uid: bytes
    batch_no: bytes
    production_week: int
    production_year: int

    @classmethod
    def parse(cls, data: bytes) -> "CardVersion":
        if len(data) != VERSION_LENGTH:
            raise MalformedResponse(
                f"version record must be {VERSION_LENGTH} bytes, got {len(data)}")
        d = bytes(data)
        return cls(*d[0:14], uid=d[14:21], batch_no=d[21:26],
                   production_week=d[26], production_year=d[27])

    @property
    def card_type(self) -> str:
        """Human-readable card type."""
        return DESFIRE_TYPES.get(self.sw_major, f"DESFire (v{self.sw_major}.{self.sw_minor})")

    @property
    def storage_size(self) -> str:
        return STORAGE_SIZES.get(self.hw_storage, f"Unknown (0x{self.hw_storage:02X})")

    @property
    def uid_hex(self) -> str:
        return self.uid.hex()

    def to_dict(self) -> Dict:
        """Return version info as dictionary."""
        return {
            "Card Type": self.card_type,
            "UID": bytes_to_hex(self.uid),
            "Hardware": {
                "Vendor": f"0x{self.hw_vendor:02X}" + (" (NXP)" if self.hw_vendor == 0x04 else ""),
                "Type": f"0x{self.hw_type:02X}",
                "Version": f"{self.hw_major}.{self.hw_minor}",
                "Storage": self.storage_size,
            },
            "Software": {
                "Vendor": f"0x{self.sw_vendor:02X}" + (" (NXP)" if self.sw_vendor == 0x04 else ""),
                "Type": f"0x{self.sw_type:02X}",
                "Version": f"{self.sw_major}.{self.sw_minor}",
            },
            "Production": {
                "Batch": bytes_to_hex(self.batch_no),
                # week and year are printed as BCD
                "Week": f"{self.production_week:02X}",
                "Year": f"20{self.production_year:02X}",
            },
        }


# ─── Helpers ────────────────────────────────────────────────────────────────

def aid_to_bytes(aid: Union[int, bytes]) -> bytes:
    """Encode an application identifier as 3 little-endian bytes."""
    if isinstance(aid, int):
        if not 0 <= aid <= MAX_AID:
            raise ValueError(f"application identifier out of range: 0x{aid:X}")
        return aid.to_bytes(3, "little")
    aid = bytes(aid)
    if len(aid) != 3:
        raise ValueError("application identifier must be 3 bytes")
    return aid


def _uint24(value: int) -> bytes:
    if not 0 <= value <= 0xFFFFFF:
        raise ValueError(f"value does not fit in 3 bytes: {value}")
    return value.to_bytes(3, "little")


def _serialized(method):
    """Run a session method under the session lock."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)
    return wrapper


def _unsupported(command: DESFireCmd):
    def method(self, *args, **kwargs):
        raise NotSupported(f"{command.name} (0x{command:02X}) is not supported")
    method.__name__ = command.name.lower()
    method.__doc__ = f"{command.name}: not supported."
    return method


# ─── DESFire Session ────────────────────────────────────────────────────────

class DESFireSession:
    """
    DESFire protocol session over one transport.

    Holds at most one authenticated key and its CBC context. Commands are
    strictly sequential; a lock serializes callers and card-removal events.
    """

    def __init__(self, transport: Transport, random_source: auth.RandomSource = os.urandom):
        self._transport = transport
        self._random_source = random_source
        self._lock = threading.RLock()
        self._key: Optional[DESFireKey] = None
        self._context: Optional[CipherContext] = None
        self._state = AuthState.UNAUTHENTICATED
        self._closed = False

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return self._state is AuthState.AUTHENTICATED

    @property
    def key(self) -> Optional[DESFireKey]:
        return self._key

    @property
    def session_key(self) -> Optional[bytes]:
        return self._key.session_key if self._key else None

    def _drop_key(self):
        if self._key is not None:
            self._key.clear_session()
        self._key = None
        self._context = None
        self._state = AuthState.UNAUTHENTICATED

    @_serialized
    def invalidate(self):
        """Forget any authentication; the session stays usable."""
        if self._key is not None:
            logger.debug("Session invalidated, dropping key %d", self._key.key_no)
        self._drop_key()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self):
        """
        Refuse every further command, e.g. after the card was removed.
        Takes effect at once; the key is dropped when any running command
        has finished.
        """
        self._closed = True
        self.invalidate()

    def _transmit(self, data: bytes, max_response_length: int) -> bytes:
        try:
            if self._closed:
                raise TransportError("card session closed")
            return self._transport.transmit(data, max_response_length)
        except TransportError:
            # chaining state may now differ from the card's
            self._drop_key()
            raise

    def _send(self, cmd: int, data: bytes = b"",
              max_response_length: int = DEFAULT_RESPONSE_LENGTH) -> bytes:
        """Send a DESFire command and handle multi-frame responses."""
        try:
            payload, _ = reassemble(self._transmit, cmd, data, max_response_length)
        except UnexpectedStatus as e:
            raise ProtocolError(e.status, cmd) from e
        return payload

    def _require_authenticated(self):
        if not self.is_authenticated:
            raise NotAuthenticated("operation requires an authenticated session")

    # ─── Authentication ──────────────────────────────────────────────

    @_serialized
    def authenticate(self, key_no: int, key: bytes, key_type: KeyType = KeyType.AES):
        """
        Mutually authenticate with the card.
        key_type selects the handshake: DES/TDES use the legacy command,
        AES the EV1 AES command.
        """
        self._drop_key()
        desfire_key = DESFireKey(key_no, key, key_type)
        context = desfire_key.new_context()
        self._state = AuthState.AWAITING_PEER_RESPONSE
        try:
            auth.authenticate(self._transmit, desfire_key, context, self._random_source)
        except Exception:
            desfire_key.clear_session()
            self._drop_key()
            raise

        self._key = desfire_key
        self._context = context
        self._state = AuthState.AUTHENTICATED
        logger.info("Authenticated with %s key %d", desfire_key.key_type.name, key_no)

    def authenticate_legacy(self, key_no: int, key: bytes):
        """DESFire legacy authentication (DES/2K3DES)."""
        self.authenticate(key_no, key, KeyType.DES)

    def authenticate_aes(self, key_no: int, key: bytes):
        """DESFire EV1 AES authentication."""
        self.authenticate(key_no, key, KeyType.AES)

    # ─── PICC Level Commands ─────────────────────────────────────────

    @_serialized
    def select_application(self, aid: Union[int, bytes]):
        """Select an application; any authentication is dropped."""
        aid_bytes = aid_to_bytes(aid)
        self._drop_key()
        self._send(DESFireCmd.SELECT_APPLICATION, aid_bytes)
        logger.debug("Selected application %s", aid_bytes[::-1].hex())

    def select_picc(self):
        """Select PICC level (AID 000000)."""
        self.select_application(PICC_AID)

    @_serialized
    def get_version(self) -> CardVersion:
        """Get card version information (hardware, software, production)."""
        return CardVersion.parse(self._send(DESFireCmd.GET_VERSION))

    @_serialized
    def get_free_memory(self) -> int:
        """Get free memory on the card (in bytes)."""
        data = self._send(DESFireCmd.FREE_MEMORY)
        if len(data) != 3:
            raise MalformedResponse(f"free memory must be 3 bytes, got {len(data)}")
        return int.from_bytes(data, "little")

    @_serialized
    def get_application_ids(self) -> List[int]:
        """Get list of application IDs on the card."""
        data = self._send(DESFireCmd.GET_APPLICATION_IDS)
        if len(data) % 3:
            raise MalformedResponse(f"application list length {len(data)} is not a multiple of 3")
        return [int.from_bytes(data[i:i + 3], "little") for i in range(0, len(data), 3)]

    @_serialized
    def create_application(self, aid: Union[int, bytes], settings: int,
                           key_count: int, key_type: KeyType = KeyType.AES):
        """Create an application; normally needs PICC master key authentication."""
        if not 0 <= settings <= 0xFF:
            raise ValueError(f"settings must be one byte: {settings}")
        if not 0 <= key_count <= 0x0F:
            raise ValueError(f"key count out of range: {key_count}")
        params = aid_to_bytes(aid) + bytes([settings, key_count | KeyType(key_type)])
        self._send(DESFireCmd.CREATE_APPLICATION, params)

    @_serialized
    def delete_application(self, aid: Union[int, bytes]):
        """Delete an application; normally needs PICC master key authentication."""
        self._send(DESFireCmd.DELETE_APPLICATION, aid_to_bytes(aid))

    @_serialized
    def format_picc(self):
        """Erase all applications; needs PICC master key authentication."""
        self._send(DESFireCmd.FORMAT_PICC)

    # ─── Key Management ──────────────────────────────────────────────

    @_serialized
    def get_key_settings(self) -> KeySettings:
        """Get key settings of the currently selected application."""
        data = self._send(DESFireCmd.GET_KEY_SETTINGS)
        try:
            return KeySettings.decode(data)
        except ValueError as e:
            raise MalformedResponse(f"invalid key settings {bytes_to_hex(data)}") from e

    @_serialized
    def get_key_version(self, key_no: int) -> int:
        """Get the version of a specific key."""
        data = self._send(DESFireCmd.GET_KEY_VERSION, bytes([key_no]))
        if len(data) < 1:
            raise MalformedResponse("empty key version")
        return data[0]

    # ─── File Commands ───────────────────────────────────────────────

    @_serialized
    def get_file_ids(self) -> List[int]:
        """Get list of file IDs in the current application."""
        return list(self._send(DESFireCmd.GET_FILE_IDS))

    @_serialized
    def read_data(self, file_no: int, offset: int = 0, length: int = 0,
                  mode: CommMode = CommMode.PLAIN) -> bytes:
        """
        Read data from a standard or backup data file.

        MACED: the trailing 8 bytes are the CMAC over data + status and are
        verified before anything is returned. ENCRYPTED: the whole answer is
        decrypted and cut to length; CRC and padding are not checked.
        length=0 returns everything the card sent.
        """
        if not 0 <= file_no <= 0x1F:
            raise ValueError(f"file number out of range: {file_no}")
        params = bytes([file_no]) + _uint24(offset) + _uint24(length)
        mode = CommMode(mode)

        if mode is CommMode.PLAIN:
            return self._send(DESFireCmd.READ_DATA, params, READ_RESPONSE_LENGTH)

        self._require_authenticated()
        key, context = self._key, self._context

        # the command MAC only advances the IV, it is not transmitted
        calculate_cmac(key, context, bytes([DESFireCmd.READ_DATA]) + params)
        data = self._send(DESFireCmd.READ_DATA, params, READ_RESPONSE_LENGTH)

        if mode is CommMode.MACED:
            if len(data) < CMAC_LENGTH:
                raise MalformedResponse(f"response too short for a CMAC ({len(data)} bytes)")
            payload, mac = data[:-CMAC_LENGTH], data[-CMAC_LENGTH:]
            try:
                verify_cmac(key, context, payload + bytes([DESFireStatus.SUCCESS]), mac)
            except IntegrityError:
                self._drop_key()
                raise
            return payload

        if not data or len(data) % key.block_size:
            raise MalformedResponse(
                f"encrypted response length {len(data)} is not a multiple of {key.block_size}")
        plaintext = key.decrypt_cbc(data, context, IVPhase.SESSION)
        return plaintext[:length] if length else plaintext

    # ─── Not Supported ───────────────────────────────────────────────

    change_key_settings = _unsupported(DESFireCmd.CHANGE_KEY_SETTINGS)
    change_key = _unsupported(DESFireCmd.CHANGE_KEY)
    get_card_uid = _unsupported(DESFireCmd.GET_CARD_UID)
    get_df_names = _unsupported(DESFireCmd.GET_DF_NAMES)
    get_file_settings = _unsupported(DESFireCmd.GET_FILE_SETTINGS)
    change_file_settings = _unsupported(DESFireCmd.CHANGE_FILE_SETTINGS)
    create_std_data_file = _unsupported(DESFireCmd.CREATE_STD_DATA_FILE)
    create_backup_data_file = _unsupported(DESFireCmd.CREATE_BACKUP_FILE)
    create_value_file = _unsupported(DESFireCmd.CREATE_VALUE_FILE)
    create_linear_record_file = _unsupported(DESFireCmd.CREATE_LINEAR_RECORD_FILE)
    create_cyclic_record_file = _unsupported(DESFireCmd.CREATE_CYCLIC_RECORD_FILE)
    delete_file = _unsupported(DESFireCmd.DELETE_FILE)
    write_data = _unsupported(DESFireCmd.WRITE_DATA)
    get_value = _unsupported(DESFireCmd.GET_VALUE)
    credit = _unsupported(DESFireCmd.CREDIT)
    debit = _unsupported(DESFireCmd.DEBIT)
    limited_credit = _unsupported(DESFireCmd.LIMITED_CREDIT)
    write_record = _unsupported(DESFireCmd.WRITE_RECORD)
    read_records = _unsupported(DESFireCmd.READ_RECORDS)
    clear_record_file = _unsupported(DESFireCmd.CLEAR_RECORD_FILE)
    commit_transaction = _unsupported(DESFireCmd.COMMIT_TRANSACTION)
    abort_transaction = _unsupported(DESFireCmd.ABORT_TRANSACTION)
