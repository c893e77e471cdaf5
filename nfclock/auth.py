"""
DESFire mutual authentication.

Three-pass challenge/response:
  1. reader sends the authenticate command with the key number,
     card answers with E(RndB) and MORE_FRAMES;
  2. reader answers E(RndA || rotl(RndB)) as an ADDITIONAL_FRAME,
     card answers E(rotl(RndA)) and SUCCESS;
  3. reader checks RndA and derives the session key.

AES chains all three ciphertexts through the authentication-phase IV of the
CipherContext, starting from zero. The DES family runs every message with
a fresh zero IV.
"""

import hmac
import logging
import os
from typing import Callable

from .apdu import DESFireCmd, DESFireStatus, Transmit, transceive
from .cmac import derive_subkeys
from .crypto import CipherContext, DESFireKey, IVPhase, rotate_left, rotate_right
from .exceptions import AuthenticationMismatch, AuthenticationRejected, MalformedResponse

logger = logging.getLogger(__name__)

RandomSource = Callable[[int], bytes]


def _restart_chain(key: DESFireKey, context: CipherContext):
    """Each DES family message starts again from a zero IV."""
    if not key.is_aes:
        context.clear(IVPhase.AUTHENTICATION)


def derive_session_key(key: DESFireKey, rnd_a: bytes, rnd_b: bytes) -> bytes:
    """
    Build the session key from both challenges.

    DES family: RndA[0:4] + RndB[0:4] twice. The repeated halves keep the
    key compatible with single DES and must be reproduced as is.
    AES: RndA[0:4] + RndB[0:4] + RndA[12:16] + RndB[12:16].
    """
    if key.is_aes:
        return rnd_a[:4] + rnd_b[:4] + rnd_a[12:16] + rnd_b[12:16]
    return rnd_a[:4] + rnd_b[:4] + rnd_a[:4] + rnd_b[:4]


def authenticate(transmit: Transmit, key: DESFireKey, context: CipherContext,
                 random_source: RandomSource = os.urandom) -> bytes:
    """
    Run the handshake for key over transmit.

    On success stores the session key and CMAC subkeys on key, resets the
    session IV and returns the session key. On failure the key is left
    without a session and AuthenticationRejected, AuthenticationMismatch or
    MalformedResponse is raised.
    """
    key.clear_session()
    context.clear(IVPhase.AUTHENTICATION)

    command = DESFireCmd.AUTHENTICATE_AES if key.is_aes else DESFireCmd.AUTHENTICATE_LEGACY
    logger.debug("Authenticating with key %d (%s)", key.key_no, key.key_type.name)

    # Step 1: request the card's challenge
    response = transceive(transmit, command, bytes([key.key_no]))
    if response.status != DESFireStatus.MORE_FRAMES:
        raise AuthenticationRejected(response.status, command,
                                     f"authentication refused: {response.status_text}")

    enc_rnd_b = response.data
    if len(enc_rnd_b) != key.block_size:
        raise MalformedResponse(f"invalid challenge length {len(enc_rnd_b)}")

    # Step 2: decrypt RndB, answer with E(RndA || RndB')
    rnd_b = key.decrypt_cbc(enc_rnd_b, context, IVPhase.AUTHENTICATION)
    rnd_b_rot = rotate_left(rnd_b)
    rnd_a = random_source(len(rnd_b))
    _restart_chain(key, context)
    enc_both = key.encrypt_cbc(rnd_a + rnd_b_rot, context, IVPhase.AUTHENTICATION)

    response = transceive(transmit, DESFireCmd.ADDITIONAL_FRAME, enc_both)
    if response.status != DESFireStatus.SUCCESS:
        raise AuthenticationRejected(response.status, DESFireCmd.ADDITIONAL_FRAME,
                                     f"challenge response refused: {response.status_text}")

    enc_rnd_a = response.data
    if len(enc_rnd_a) != len(rnd_a):
        raise MalformedResponse(f"invalid challenge answer length {len(enc_rnd_a)}")

    # Step 3: verify the card rotated our RndA
    _restart_chain(key, context)
    rnd_a2 = rotate_right(key.decrypt_cbc(enc_rnd_a, context, IVPhase.AUTHENTICATION))
    if not hmac.compare_digest(rnd_a2, rnd_a):
        raise AuthenticationMismatch("card answer does not match RndA")

    key.session_key = derive_session_key(key, rnd_a, rnd_b)
    context.clear(IVPhase.SESSION)
    key.cmac_subkeys = derive_subkeys(key, context)

    logger.debug("Key %d authenticated, session established", key.key_no)
    return key.session_key
