"""Caller principals.

A principal is an opaque byte string (at most 29 bytes) identifying a caller.
Principals derived from a public key are *self-authenticating*: the SHA-224
digest of the DER-encoded key followed by the type tag 0x02.

Textual form: lowercase base32 (no padding) of CRC32(raw) || raw, split into
groups of five characters joined by dashes, e.g. ``2vxsx-fae``.
"""

from __future__ import annotations

import base64
import hashlib
import zlib
from dataclasses import dataclass

MAX_PRINCIPAL_LEN = 29
SELF_AUTHENTICATING_TAG = 0x02
ANONYMOUS_TAG = 0x04


def _crc32_be(data: bytes) -> bytes:
    return (zlib.crc32(data) & 0xFFFFFFFF).to_bytes(4, byteorder="big")


@dataclass(frozen=True, order=True)
class Principal:
    raw: bytes

    def __post_init__(self) -> None:
        if not isinstance(self.raw, (bytes, bytearray)):
            raise TypeError("principal bytes required")
        if len(self.raw) > MAX_PRINCIPAL_LEN:
            raise ValueError(f"principal longer than {MAX_PRINCIPAL_LEN} bytes")
        object.__setattr__(self, "raw", bytes(self.raw))

    @classmethod
    def self_authenticating(cls, public_key: bytes) -> "Principal":
        """Derive the principal of a DER-encoded public key."""
        digest = hashlib.sha224(bytes(public_key)).digest()
        return cls(digest + bytes([SELF_AUTHENTICATING_TAG]))

    @classmethod
    def anonymous(cls) -> "Principal":
        return cls(bytes([ANONYMOUS_TAG]))

    @classmethod
    def from_text(cls, text: str) -> "Principal":
        """Parse the dashed textual form, verifying the embedded checksum."""
        s = (text or "").strip().lower()
        if not s:
            raise ValueError("empty principal text")
        compact = s.replace("-", "").upper()
        compact += "=" * (-len(compact) % 8)
        try:
            decoded = base64.b32decode(compact)
        except Exception as e:
            raise ValueError(f"invalid principal text: {text!r}") from e
        if len(decoded) < 4:
            raise ValueError(f"invalid principal text: {text!r}")
        checksum, raw = decoded[:4], decoded[4:]
        if _crc32_be(raw) != checksum:
            raise ValueError(f"principal checksum mismatch: {text!r}")
        principal = cls(raw)
        # Reject non-canonical spellings (wrong grouping etc.)
        if principal.to_text() != s:
            raise ValueError(f"non-canonical principal text: {text!r}")
        return principal

    def to_text(self) -> str:
        encoded = base64.b32encode(_crc32_be(self.raw) + self.raw).decode("ascii")
        encoded = encoded.rstrip("=").lower()
        return "-".join(encoded[i:i + 5] for i in range(0, len(encoded), 5))

    def is_self_authenticating(self) -> bool:
        return len(self.raw) == MAX_PRINCIPAL_LEN and self.raw[-1] == SELF_AUTHENTICATING_TAG

    def __str__(self) -> str:
        return self.to_text()
