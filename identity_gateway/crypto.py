"""
Key helpers for devices and temporary session keys.

Devices are registered by their DER-encoded (SubjectPublicKeyInfo) public
key; the caller principal of a key is derived from that encoding. Temporary
keys are usually browser-held Ed25519 session keys, so the same helpers are
used to mint them in tooling and tests.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey, Ed25519PublicKey
)

from .principal import Principal


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def der_encode_ed25519(public_key_bytes: bytes) -> bytes:
    """DER (SubjectPublicKeyInfo) encoding of a raw 32-byte Ed25519 key."""
    if len(public_key_bytes) != 32:
        raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(public_key_bytes)}")
    public_key = Ed25519PublicKey.from_public_bytes(public_key_bytes)
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def key_fingerprint(public_key: bytes) -> str:
    """Short, log-safe fingerprint of a device public key."""
    return _sha256_hex(bytes(public_key))[:16]


@dataclass
class SessionKeyPair:
    """
    Ed25519 key pair used as a device key or as a temporary session key.

    SECURITY: the private half never leaves the holder; the gateway only
    ever sees `der_public_key` and the derived principal.
    """
    public_key_bytes: bytes
    private_key_bytes: Optional[bytes] = None

    @classmethod
    def generate(cls) -> "SessionKeyPair":
        private_key = Ed25519PrivateKey.generate()
        return cls._from_private(private_key)

    @classmethod
    def from_seed(cls, seed: bytes) -> "SessionKeyPair":
        """Deterministic key pair from a 32-byte seed."""
        if len(seed) != 32:
            raise ValueError(f"Seed must be 32 bytes, got {len(seed)}")
        return cls._from_private(Ed25519PrivateKey.from_private_bytes(seed))

    @classmethod
    def _from_private(cls, private_key: Ed25519PrivateKey) -> "SessionKeyPair":
        private_bytes = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption()
        )
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        )
        return cls(public_key_bytes=public_bytes, private_key_bytes=private_bytes)

    @property
    def der_public_key(self) -> bytes:
        return der_encode_ed25519(self.public_key_bytes)

    def principal(self) -> Principal:
        return Principal.self_authenticating(self.der_public_key)

