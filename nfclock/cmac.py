"""
CMAC engine for DESFire secure messaging.
Subkeys per NIST SP 800-38B, computed with the session key; the MAC itself
continues the session IV chain and is truncated to 8 bytes.
"""

import hmac
from typing import Tuple

from .crypto import CipherContext, DESFireKey, IVPhase
from .exceptions import IntegrityError

CMAC_LENGTH = 8

# Rb constants for 64-bit and 128-bit block ciphers
RB = {
    8: 0x1B,
    16: 0x87,
}


def shift_left(data: bytes) -> bytes:
    """Shift a byte array left by 1 bit."""
    result = bytearray(len(data))
    overflow = 0
    for i in range(len(data) - 1, -1, -1):
        result[i] = ((data[i] << 1) & 0xFF) | overflow
        overflow = 1 if (data[i] & 0x80) else 0
    return bytes(result)


def _double(block: bytes) -> bytes:
    shifted = bytearray(shift_left(block))
    if block[0] & 0x80:
        shifted[-1] ^= RB[len(block)]
    return bytes(shifted)


def derive_subkeys(key: DESFireKey, context: CipherContext) -> Tuple[bytes, bytes]:
    """
    Generate CMAC subkeys K1, K2 from the session key.

    Encrypts one zero block with a zero session IV and resets the session
    IV afterwards, so the derivation never leaks into later messages.
    """
    context.clear(IVPhase.SESSION)
    L = key.encrypt_cbc(bytes(key.block_size), context, IVPhase.SESSION)
    context.clear(IVPhase.SESSION)

    K1 = _double(L)
    K2 = _double(K1)
    return K1, K2


def _prepare_message(message: bytes, block_size: int, K1: bytes, K2: bytes) -> bytes:
    """Pad (0x80 00..) when needed and XOR the last block with K1 or K2."""
    last_complete = len(message) > 0 and len(message) % block_size == 0

    if last_complete:
        padded = bytearray(message)
        subkey = K1
    else:
        padded = bytearray(message) + bytearray([0x80])
        while len(padded) % block_size != 0:
            padded.append(0x00)
        subkey = K2

    for i in range(block_size):
        padded[-(block_size - i)] ^= subkey[i]
    return bytes(padded)


def calculate_cmac(key: DESFireKey, context: CipherContext, message: bytes) -> bytes:
    """
    Calculate the truncated CMAC of message under the session key.
    Updates the session IV of context to the full last ciphertext block.
    """
    if key.cmac_subkeys is None:
        raise ValueError("no CMAC subkeys; authenticate first")

    K1, K2 = key.cmac_subkeys
    padded = _prepare_message(bytes(message), key.block_size, K1, K2)
    encrypted = key.encrypt_cbc(padded, context, IVPhase.SESSION)
    return encrypted[-key.block_size:][:CMAC_LENGTH]


def verify_cmac(key: DESFireKey, context: CipherContext, message: bytes, received: bytes):
    """Recompute the CMAC of message and raise IntegrityError on mismatch."""
    expected = calculate_cmac(key, context, message)
    if not hmac.compare_digest(expected, bytes(received)):
        raise IntegrityError("CMAC verification failed")
