"""
DESFire key material and CBC primitives.
One key class covers both cipher families (DES/2K3DES/3K3DES and AES-128);
the chaining state lives in a separate CipherContext owned by the session.
"""

from enum import Enum, IntEnum
from typing import Optional, Tuple

from Crypto.Cipher import AES, DES, DES3


class KeyType(IntEnum):
    """Key type as encoded in the high bits of the DESFire key settings."""
    DES = 0x00
    TDES = 0x40
    AES = 0x80


class IVPhase(Enum):
    """Which IV slot an encrypt/decrypt call chains through."""
    AUTHENTICATION = "authentication"
    SESSION = "session"


KEY_LENGTHS = {
    KeyType.DES: (8, 16, 24),
    KeyType.TDES: (16, 24),
    KeyType.AES: (16,),
}

BLOCK_SIZES = {
    KeyType.DES: 8,
    KeyType.TDES: 8,
    KeyType.AES: 16,
}


def rotate_left(data: bytes) -> bytes:
    """Rotate a buffer left by one byte."""
    return data[1:] + data[:1]


def rotate_right(data: bytes) -> bytes:
    """Rotate a buffer right by one byte."""
    return data[-1:] + data[:-1]


def _strip_parity(data: bytes) -> bytes:
    return bytes(b & 0xFE for b in data)


def _new_des_cipher(key: bytes, iv: bytes):
    """
    DES family cipher in CBC mode.
    3DES keys with equal halves collapse to single DES, which pycryptodome
    refuses to build as DES3; EDE with equal keys is single DES anyway.
    """
    if len(key) == 8:
        return DES.new(key, DES.MODE_CBC, iv=iv)

    if len(key) == 16:
        if _strip_parity(key[:8]) == _strip_parity(key[8:]):
            return DES.new(key[:8], DES.MODE_CBC, iv=iv)
        return DES3.new(key, DES3.MODE_CBC, iv=iv)

    k1, k2, k3 = key[:8], key[8:16], key[16:]
    if _strip_parity(k1) == _strip_parity(k2):
        return DES.new(k3, DES.MODE_CBC, iv=iv)
    if _strip_parity(k2) == _strip_parity(k3):
        return DES.new(k1, DES.MODE_CBC, iv=iv)
    return DES3.new(key, DES3.MODE_CBC, iv=iv)


class CipherContext:
    """
    CBC chaining state for one card session.

    Holds one IV per phase. Every encrypt/decrypt call reads the IV of its
    phase and leaves the last ciphertext block behind as the next IV.
    """

    def __init__(self, block_size: int):
        self.block_size = block_size
        self._ivs = {phase: bytes(block_size) for phase in IVPhase}

    def iv(self, phase: IVPhase) -> bytes:
        return self._ivs[phase]

    def update(self, phase: IVPhase, iv: bytes):
        if len(iv) != self.block_size:
            raise ValueError(f"IV must be {self.block_size} bytes")
        self._ivs[phase] = bytes(iv)

    def clear(self, phase: IVPhase):
        """Reset the phase's IV to all zeros."""
        self._ivs[phase] = bytes(self.block_size)

    def __repr__(self):
        return f"CipherContext(block_size={self.block_size})"


class DESFireKey:
    """
    A DESFire key: the shared authentication key plus, once a handshake
    succeeded, the derived session key and its two CMAC subkeys.
    """

    def __init__(self, key_no: int, key: bytes, key_type: KeyType = KeyType.AES):
        key = bytes(key)
        key_type = KeyType(key_type)
        if key_type is KeyType.TDES and len(key) == 8:
            key_type = KeyType.DES
        if len(key) not in KEY_LENGTHS[key_type]:
            raise ValueError(f"invalid {key_type.name} key length: {len(key)} bytes")
        if not 0 <= key_no <= 0x0D:
            raise ValueError(f"key number out of range: {key_no}")

        self.key_no = key_no
        self.key_type = key_type
        self.key = key
        self.block_size = BLOCK_SIZES[key_type]

        self.session_key: Optional[bytes] = None
        self.cmac_subkeys: Optional[Tuple[bytes, bytes]] = None

    @property
    def is_aes(self) -> bool:
        return self.key_type is KeyType.AES

    @property
    def has_session(self) -> bool:
        return self.session_key is not None

    def new_context(self) -> CipherContext:
        return CipherContext(self.block_size)

    def clear_session(self):
        """Forget the session key and the CMAC subkeys together."""
        self.session_key = None
        self.cmac_subkeys = None

    # ─── CBC Primitives ──────────────────────────────────────────────

    def _cipher(self, phase: IVPhase, iv: bytes):
        if phase is IVPhase.SESSION:
            if self.session_key is None:
                raise ValueError("no session key established")
            material = self.session_key
        else:
            material = self.key

        if self.is_aes:
            return AES.new(material, AES.MODE_CBC, iv=iv)
        return _new_des_cipher(material, iv)

    def _check_aligned(self, data: bytes):
        if not data or len(data) % self.block_size:
            raise ValueError(
                f"data length {len(data)} is not a multiple of {self.block_size}")

    def encrypt_cbc(self, data: bytes, context: CipherContext, phase: IVPhase) -> bytes:
        """Encrypt block-aligned data, continuing the phase's IV chain."""
        self._check_aligned(data)
        ciphertext = self._cipher(phase, context.iv(phase)).encrypt(bytes(data))
        context.update(phase, ciphertext[-self.block_size:])
        return ciphertext

    def decrypt_cbc(self, data: bytes, context: CipherContext, phase: IVPhase) -> bytes:
        """Decrypt block-aligned data, continuing the phase's IV chain."""
        self._check_aligned(data)
        data = bytes(data)
        plaintext = self._cipher(phase, context.iv(phase)).decrypt(data)
        context.update(phase, data[-self.block_size:])
        return plaintext

    def __repr__(self):
        state = "session" if self.has_session else "no session"
        return f"DESFireKey(key_no={self.key_no}, type={self.key_type.name}, {state})"
