"""Probe a WARP endpoint by sending a WireGuard handshake initiation."""

from __future__ import annotations

import base64
import hashlib
import hmac
import ipaddress
import os
import secrets
import socket
import time
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

_CONSTRUCTION = b"Noise_IKpsk2_25519_ChaChaPoly_BLAKE2s"
_PROLOGUE = b"WireGuard v1 zx2c4 [email]"
_TAI64_EPOCH_OFFSET = 4611686018427387914
_SENDER_INDEX = 28
_RESPONSE_SIZE = 92
_READ_TIMEOUT = 5.0
_UNIX_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

KeyPair = Tuple[bytes, bytes]


def _public_of(private: bytes) -> bytes:
    key = X25519PrivateKey.from_private_bytes(private)
    return key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)


def _dh(private: bytes, public: bytes) -> bytes:
    key = X25519PrivateKey.from_private_bytes(private)
    return key.exchange(X25519PublicKey.from_public_bytes(public))


def _hash(*parts: bytes) -> bytes:
    digest = hashlib.blake2s()
    for part in parts:
        digest.update(part)
    return digest.digest()


def _hmac(key: bytes, data: bytes) -> bytes:
    return hmac.new(key, data, hashlib.blake2s).digest()


def _hkdf(chaining_key: bytes, ikm: bytes, count: int):
    temp = _hmac(chaining_key, ikm)
    outputs = []
    previous = b""
    for i in range(1, count + 1):
        previous = _hmac(temp, previous + bytes([i]))
        outputs.append(previous)
    return outputs


class _SymmetricState:
    def __init__(self) -> None:
        self.ck = self.h = _hash(_CONSTRUCTION)
        self.key: Optional[bytes] = None
        self.nonce = 0

    def mix_hash(self, data: bytes) -> None:
        self.h = _hash(self.h, data)

    def mix_key(self, ikm: bytes) -> None:
        self.ck, self.key = _hkdf(self.ck, ikm, 2)
        self.nonce = 0

    def mix_key_and_hash(self, ikm: bytes) -> None:
        self.ck, temp_h, self.key = _hkdf(self.ck, ikm, 3)
        self.mix_hash(temp_h)
        self.nonce = 0

    def _next_nonce(self) -> bytes:
        nonce = bytes(4) + self.nonce.to_bytes(8, "little")
        self.nonce += 1
        return nonce

    def encrypt_and_hash(self, plaintext: bytes) -> bytes:
        ciphertext = ChaCha20Poly1305(self.key).encrypt(self._next_nonce(), plaintext, self.h)
        self.mix_hash(ciphertext)
        return ciphertext

    def decrypt_and_hash(self, ciphertext: bytes) -> bytes:
        plaintext = ChaCha20Poly1305(self.key).decrypt(self._next_nonce(), ciphertext, self.h)
        self.mix_hash(ciphertext)
        return plaintext


class _Initiator:
    """The initiator side of a Noise IKpsk2 handshake."""

    def __init__(self, static: KeyPair, peer_public: bytes, psk: bytes, ephemeral: KeyPair) -> None:
        self._static = static
        self._peer_public = peer_public
        self._psk = psk
        self._ephemeral = ephemeral
        self._state = _SymmetricState()
        self._state.mix_hash(_PROLOGUE)
        self._state.mix_hash(peer_public)

    def write_message(self, payload: bytes) -> bytes:
        state = self._state
        e_private, e_public = self._ephemeral
        state.mix_hash(e_public)
        state.mix_key(e_public)
        state.mix_key(_dh(e_private, self._peer_public))
        encrypted_static = state.encrypt_and_hash(self._static[1])
        state.mix_key(_dh(self._static[0], self._peer_public))
        encrypted_payload = state.encrypt_and_hash(payload)
        return e_public + encrypted_static + encrypted_payload

    def read_message(self, message: bytes) -> bytes:
        state = self._state
        remote_ephemeral = bytes(message[:32])
        state.mix_hash(remote_ephemeral)
        state.mix_key(remote_ephemeral)
        state.mix_key(_dh(self._ephemeral[0], remote_ephemeral))
        state.mix_key(_dh(self._static[0], remote_ephemeral))
        state.mix_key_and_hash(self._psk)
        return state.decrypt_and_hash(bytes(message[32:]))


def _b64(text: str) -> bytes:
    return base64.b64decode(text, validate=True)


def static_keypair(private_key_b64: str) -> KeyPair:
    """Decode a base64 private key and return it with its public key."""
    private = _b64(private_key_b64)
    return private, _public_of(private)


def ephemeral_keypair() -> KeyPair:
    """Generate a random Curve25519 key pair."""
    private = os.urandom(32)
    return private, _public_of(private)


def random_int(min_value: int, max_value: int) -> int:
    """Return a random integer in ``[min_value, max_value)``, or 0 for an empty range."""
    span = max_value - min_value
    if span < 1:
        return 0
    return min_value + secrets.randbelow(span)


def tai64n(now: datetime) -> bytes:
    """Encode a moment as a 12-byte TAI64N timestamp; naive times count as UTC."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    delta = now - _UNIX_EPOCH
    seconds = delta.days * 86400 + delta.seconds
    return (
        (_TAI64_EPOCH_OFFSET + seconds).to_bytes(8, "big")
        + (now.microsecond * 1000).to_bytes(4, "big")
    )


def build_initiation(
    private_key_b64: str, peer_public_key_b64: str, preshared_key_b64: str, now: datetime
) -> Tuple[bytes, Any]:
    """Build a handshake initiation packet; return it with the state that reads the answer."""
    static = static_keypair(private_key_b64)
    peer_public = _b64(peer_public_key_b64)
    psk = _b64(preshared_key_b64) if preshared_key_b64 else bytes(32)

    initiator = _Initiator(static, peer_public, psk, ephemeral_keypair())
    message = initiator.write_message(tai64n(now))

    head = bytes([0x01, 0x00, 0x00, 0x00]) + _SENDER_INDEX.to_bytes(4, "little") + message
    mac_key = _hash(b"mac1----", peer_public)
    mac1 = hashlib.blake2s(head, key=mac_key, digest_size=16).digest()
    return head + mac1 + bytes(16), initiator


def initiate_handshake(
    server_addr, private_key_b64: str, peer_public_key_b64: str, preshared_key_b64: str
) -> float:
    """Send junk datagrams then a handshake initiation; return the RTT of the answer in seconds."""
    packet, initiator = build_initiation(
        private_key_b64, peer_public_key_b64, preshared_key_b64, datetime.now(timezone.utc)
    )
    host, port = server_addr
    ip = ipaddress.ip_address(str(host))
    family = socket.AF_INET6 if ip.version == 6 else socket.AF_INET

    with socket.socket(family, socket.SOCK_DGRAM) as conn:
        conn.connect((str(ip), int(port)))
        for _ in range(random_int(8, 15)):
            conn.send(os.urandom(random_int(40, 100)))
            time.sleep(random_int(20, 250) / 1000)

        conn.send(packet)
        started = time.monotonic()
        conn.settimeout(_READ_TIMEOUT)
        response = conn.recv(_RESPONSE_SIZE)
        rtt = time.monotonic() - started

    if len(response) < 60:
        raise ValueError(f"invalid handshake response length {len(response)} bytes")
    if response[0] != 2:
        raise ValueError("invalid response type")
    if int.from_bytes(response[8:12], "little") != _SENDER_INDEX:
        raise ValueError("invalid sender index in response")
    try:
        payload = initiator.read_message(response[12:60])
    except InvalidTag as exc:
        raise ValueError("invalid handshake response") from exc
    if payload:
        raise ValueError("unexpected payload in response")
    return rtt