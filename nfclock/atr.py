"""
ATR (Answer To Reset) parser.
Identifies which presented cards speak the DESFire native protocol.
"""

from typing import Dict, List

from .apdu import bytes_to_hex

# Prefix patterns, checked in order; mask defaults to 0xFF per byte
ATR_PREFIX_PATTERNS = [
    # DESFire contactless via PC/SC part 3 (historical byte 0x80)
    {
        "prefix": [0x3B, 0x81, 0x80, 0x01, 0x80, 0x80],
        "type": "MIFARE DESFire",
        "family": "desfire",
    },
    # Android host card emulation
    {
        "prefix": [0x3B, 0x80, 0x80, 0x01, 0x01],
        "type": "Android HCE",
        "family": "android",
    },
    # ISO 14443-4 card carrying a TLV in its historical bytes
    {
        "prefix": [0x3B, 0x8D, 0x80, 0x01, 0x80],
        "type": "ISO 14443-4 (TLV)",
        "family": "iso14443a",
    },
    # ISO 14443 Type A, anything else
    {
        "prefix": [0x3B, 0x80],
        "mask": [0xFF, 0xF0],
        "type": "ISO 14443 Type A",
        "family": "iso14443a",
    },
]


class ATRInfo:
    """Parsed ATR information."""

    def __init__(self, atr_bytes: bytes):
        self.raw = bytes(atr_bytes)
        self.hex = bytes_to_hex(self.raw)
        self.card_type = "Unknown"
        self.card_family = "unknown"
        self.historical_bytes: bytes = b""
        self._parse()

    def _parse(self):
        """Parse ATR bytes."""
        if len(self.raw) < 2:
            return

        t0 = self.raw[1]
        num_historical = t0 & 0x0F

        # Skip interface bytes (Yi present based on T0)
        offset = 2
        y = t0 >> 4
        while y:
            if y & 0x1: offset += 1  # TAi
            if y & 0x2: offset += 1  # TBi
            if y & 0x4: offset += 1  # TCi
            if y & 0x8 and offset < len(self.raw):
                y = self.raw[offset] >> 4
                offset += 1
            else:
                break

        if offset < len(self.raw):
            self.historical_bytes = self.raw[offset:offset + num_historical]

        for pattern in ATR_PREFIX_PATTERNS:
            if self._matches(pattern["prefix"], pattern.get("mask")):
                self.card_type = pattern["type"]
                self.card_family = pattern["family"]
                return

    def _matches(self, prefix: List[int], mask=None) -> bool:
        if len(self.raw) < len(prefix):
            return False
        for i, p in enumerate(prefix):
            m = mask[i] if mask and i < len(mask) else 0xFF
            if (self.raw[i] & m) != (p & m):
                return False
        return True

    @property
    def is_desfire(self) -> bool:
        return self.card_family == "desfire"

    def to_dict(self) -> Dict:
        """Return ATR info as dictionary."""
        return {
            "ATR": self.hex,
            "Card Type": self.card_type,
            "Historical Bytes": bytes_to_hex(self.historical_bytes) if self.historical_bytes else "None",
        }

    def __str__(self):
        return f"{self.card_type} [{self.hex}]"
