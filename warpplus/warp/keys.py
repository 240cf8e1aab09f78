"""WireGuard keys: generation, public key derivation and base64 form."""

from __future__ import annotations

import base64
import os
from dataclasses import dataclass

from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

KEY_LEN = 32


@dataclass(frozen=True)
class Key:
    """A public, private or pre-shared WireGuard key of exactly 32 bytes."""

    data: bytes

    def __post_init__(self) -> None:
        if len(self.data) != KEY_LEN:
            raise ValueError(f"incorrect key size: {len(self.data)}")

    @classmethod
    def from_bytes(cls, data: bytes) -> "Key":
        """Build a key from existing bytes, which must be 32 long."""
        return cls(bytes(data))

    @classmethod
    def generate(cls) -> "Key":
        """Generate a random key suitable as a pre-shared key."""
        return cls(os.urandom(KEY_LEN))

    @classmethod
    def generate_private(cls) -> "Key":
        """Generate a random, clamped Curve25519 private key."""
        raw = bytearray(cls.generate().data)
        raw[0] &= 248
        raw[31] &= 127
        raw[31] |= 64
        return cls(bytes(raw))

    def public_key(self) -> "Key":
        """Derive the public key; only meaningful when this is a private key."""
        public = X25519PrivateKey.from_private_bytes(self.data).public_key()
        return Key(public.public_bytes(Encoding.Raw, PublicFormat.Raw))

    def __bytes__(self) -> bytes:
        return self.data

    def __str__(self) -> str:
        return base64.b64encode(self.data).decode("ascii")