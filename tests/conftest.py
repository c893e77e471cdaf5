"""
Shared fixtures: a scripted transport and a simulated DESFire card.

The simulated card implements the card side of the protocol directly with
pycryptodome so the reader side is checked against an independent model.
"""

import binascii

import pytest
from Crypto.Cipher import AES, DES, DES3

RND_A_FIXTURE = bytes(range(0xA0, 0xB0))
RND_B_FIXTURE = bytes(range(0xB0, 0xC0))

ZERO_DES_KEY = bytes(16)
ZERO_AES_KEY = bytes(16)

FRAME_SIZE = 59


def fixed_random(data: bytes = RND_A_FIXTURE):
    """Random source returning a fixed prefix of data, recording requested sizes."""
    def source(n):
        source.requests.append(n)
        return data[:n]
    source.requests = []
    return source


class ScriptedTransport:
    """Replays raw responses in order and records every request."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def transmit(self, data, max_response_length):
        self.requests.append(bytes(data))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return bytes(response)


# ─── Card-side crypto ───────────────────────────────────────────────────────

def card_cipher(key: bytes, iv: bytes):
    if len(iv) == 16:
        return AES.new(key, AES.MODE_CBC, iv=iv)
    if key[:8] == key[8:16]:
        return DES.new(key[:8], DES.MODE_CBC, iv=iv)
    return DES3.new(key, DES3.MODE_CBC, iv=iv)


def _dbl(block: bytes) -> bytes:
    value = int.from_bytes(block, "big") << 1
    if block[0] & 0x80:
        value ^= 0x87 if len(block) == 16 else 0x1B
    return (value & ((1 << (8 * len(block))) - 1)).to_bytes(len(block), "big")


def rotl(data: bytes) -> bytes:
    return data[1:] + data[:1]


class CardSession:
    """Card-side session crypto after a successful handshake."""

    def __init__(self, session_key: bytes, block_size: int):
        self.key = session_key
        self.bs = block_size
        L = card_cipher(self.key, bytes(self.bs)).encrypt(bytes(self.bs))
        self.k1 = _dbl(L)
        self.k2 = _dbl(self.k1)
        self.iv = bytes(self.bs)

    def cmac(self, message: bytes) -> bytes:
        if message and len(message) % self.bs == 0:
            block = bytearray(message)
            subkey = self.k1
        else:
            block = bytearray(message) + b"\x80"
            block += bytes(-len(block) % self.bs)
            subkey = self.k2
        for i in range(self.bs):
            block[-self.bs + i] ^= subkey[i]
        encrypted = card_cipher(self.key, self.iv).encrypt(bytes(block))
        self.iv = encrypted[-self.bs:]
        return self.iv[:8]

    def encrypt(self, plaintext: bytes) -> bytes:
        encrypted = card_cipher(self.key, self.iv).encrypt(plaintext)
        self.iv = encrypted[-self.bs:]
        return encrypted


class SimulatedCard:
    """
    Minimal DESFire card model.

    applications: {aid: {"keys": {no: (type, key)}, "files": {no: (mode, data)},
                         "settings": bytes(2)}}
    File modes: "plain", "mac", "enc".
    """

    def __init__(self, uid=bytes.fromhex("04112233445566"), rnd_b=RND_B_FIXTURE):
        self.uid = uid
        self.rnd_b_source = rnd_b
        self.applications = {
            0x000000: {
                "keys": {0: ("des", ZERO_DES_KEY)},
                "files": {},
                "settings": bytes([0x0F, 0x01]),
            },
        }
        self.selected = 0x000000
        self.free_memory = 0x001E00
        self.key_versions = {0: 0x00}

        self.corrupt_auth_answer = False
        self.tamper_mac = False

        self.session = None
        self.authenticated_key = None
        self._auth = None
        self._pending = []
        self.log = []

    # ─── Helpers ─────────────────────────────────────────────────────

    @staticmethod
    def ok(data=b""):
        return bytes(data) + b"\x91\x00"

    @staticmethod
    def status(code, data=b""):
        return bytes(data) + bytes([0x91, code])

    def _frames(self, data: bytes) -> bytes:
        chunks = [data[i:i + FRAME_SIZE] for i in range(0, len(data), FRAME_SIZE)] or [b""]
        self._pending = chunks[1:]
        if self._pending:
            return self.status(0xAF, chunks[0])
        return self.ok(chunks[0])

    def _reset_auth(self):
        self.session = None
        self.authenticated_key = None
        self._auth = None

    def add_application(self, aid, key_type="aes", key=ZERO_AES_KEY, files=None,
                        settings=bytes([0x0F, 0x81])):
        self.applications[aid] = {
            "keys": {0: (key_type, key)},
            "files": dict(files or {}),
            "settings": settings,
        }

    @property
    def version(self) -> bytes:
        return (bytes([0x04, 0x01, 0x01, 0x01, 0x00, 0x18, 0x05])
                + bytes([0x04, 0x01, 0x01, 0x01, 0x04, 0x18, 0x05])
                + self.uid + bytes.fromhex("BA5E0B1234") + bytes([0x23, 0x19]))

    # ─── APDU handling ───────────────────────────────────────────────

    def transmit(self, apdu, max_response_length):
        apdu = bytes(apdu)
        assert apdu[0] == 0x90 and apdu[2:4] == b"\x00\x00"
        ins = apdu[1]
        data = apdu[5:5 + apdu[4]] if len(apdu) > 5 else b""
        self.log.append((ins, data))

        if ins == 0xAF and self._auth is not None:
            return self._auth_step2(data)
        if ins == 0xAF and not data and self._pending:
            chunk = self._pending.pop(0)
            if self._pending:
                return self.status(0xAF, chunk)
            return self.ok(chunk)

        self._pending = []
        handler = {
            0x0A: self._authenticate,
            0xAA: self._authenticate,
            0x5A: self._select,
            0x60: lambda d: self._frames(self.version),
            0x6A: self._app_ids,
            0x6E: lambda d: self.ok(self.free_memory.to_bytes(3, "little")),
            0x45: lambda d: self.ok(self.applications[self.selected]["settings"]),
            0x64: lambda d: self.ok(bytes([self.key_versions.get(d[0], 0)])),
            0xCA: self._create_application,
            0xDA: self._delete_application,
            0xFC: self._format,
            0x6F: lambda d: self.ok(bytes(sorted(self.applications[self.selected]["files"]))),
            0xBD: self._read_data,
        }.get(ins)
        if handler is None:
            return self.status(0x1C)
        return handler(data)

    def _authenticate(self, data):
        self._reset_auth()
        key_no = data[0]
        keys = self.applications[self.selected]["keys"]
        if key_no not in keys:
            return self.status(0x40)
        key_type, key = keys[key_no]
        bs = 16 if key_type == "aes" else 8
        rnd_b = self.rnd_b_source[:bs]
        enc_rnd_b = card_cipher(key, bytes(bs)).encrypt(rnd_b)
        # AES chains the handshake IV, the DES family restarts from zero
        iv = enc_rnd_b if key_type == "aes" else bytes(bs)
        self._auth = {"key_no": key_no, "key": key, "bs": bs, "rnd_b": rnd_b, "iv": iv}
        return self.status(0xAF, enc_rnd_b)

    def _auth_step2(self, data):
        auth, self._auth = self._auth, None
        bs, key = auth["bs"], auth["key"]
        if len(data) != 2 * bs:
            return self.status(0x7E)
        plain = card_cipher(key, auth["iv"]).decrypt(data)
        rnd_a, rnd_b_rot = plain[:bs], plain[bs:]
        if rnd_b_rot != rotl(auth["rnd_b"]):
            return self.status(0xAE)

        answer = bytearray(rotl(rnd_a))
        if self.corrupt_auth_answer:
            answer[3] ^= 0x01
        iv = data[-bs:] if bs == 16 else bytes(bs)
        enc_answer = card_cipher(key, iv).encrypt(bytes(answer))

        rnd_b = auth["rnd_b"]
        if bs == 16:
            session_key = rnd_a[:4] + rnd_b[:4] + rnd_a[12:16] + rnd_b[12:16]
        else:
            session_key = rnd_a[:4] + rnd_b[:4] + rnd_a[:4] + rnd_b[:4]
        self.session = CardSession(session_key, bs)
        self.authenticated_key = (self.selected, auth["key_no"])
        return self.ok(enc_answer)

    def _select(self, data):
        self._reset_auth()
        aid = int.from_bytes(data, "little")
        if aid not in self.applications:
            return self.status(0xA0)
        self.selected = aid
        return self.ok()

    def _app_ids(self, data):
        aids = [aid for aid in sorted(self.applications) if aid != 0]
        return self._frames(b"".join(aid.to_bytes(3, "little") for aid in aids))

    def _is_picc_master(self):
        return self.authenticated_key == (0x000000, 0)

    def _create_application(self, data):
        if not self._is_picc_master():
            return self.status(0xAE)
        aid = int.from_bytes(data[:3], "little")
        if aid in self.applications:
            return self.status(0xDE)
        key_type = {0x00: "des", 0x40: "des", 0x80: "aes"}[data[4] & 0xF0]
        key = ZERO_AES_KEY if key_type == "aes" else ZERO_DES_KEY
        self.applications[aid] = {
            "keys": {n: (key_type, key) for n in range(data[4] & 0x0F)},
            "files": {},
            "settings": bytes([data[3], data[4]]),
        }
        return self.ok()

    def _delete_application(self, data):
        if not self._is_picc_master():
            return self.status(0xAE)
        aid = int.from_bytes(data, "little")
        if aid not in self.applications:
            return self.status(0xA0)
        del self.applications[aid]
        return self.ok()

    def _format(self, data):
        if not self._is_picc_master():
            return self.status(0xAE)
        self.applications = {0: self.applications[0]}
        return self.ok()

    def _read_data(self, params):
        file_no = params[0]
        offset = int.from_bytes(params[1:4], "little")
        length = int.from_bytes(params[4:7], "little")
        files = self.applications[self.selected]["files"]
        if file_no not in files:
            return self.status(0xF0)
        mode, content = files[file_no]
        content = content[offset:offset + length] if length else content[offset:]

        if mode == "plain":
            return self._frames(content)
        if self.session is None:
            return self.status(0xAE)

        # the command MAC is computed on both sides but not transmitted
        self.session.cmac(bytes([0xBD]) + params)

        if mode == "mac":
            mac = bytearray(self.session.cmac(content + b"\x00"))
            if self.tamper_mac:
                mac[0] ^= 0xFF
            return self._frames(content + bytes(mac))

        crc = binascii.crc32(content + b"\x00") & 0xFFFFFFFF
        plain = content + crc.to_bytes(4, "little")
        plain += bytes(-len(plain) % self.session.bs)
        return self._frames(self.session.encrypt(plain))


@pytest.fixture
def card():
    return SimulatedCard()
