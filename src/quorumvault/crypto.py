"""
Cryptographic primitives shared by the builders and the signature assembler.
"""

from __future__ import annotations

import hashlib

from coincurve import PublicKey
from Crypto.Hash import RIPEMD160
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from eth_utils import keccak

from quorumvault.constants import SECP256K1_HALF_ORDER, SECP256K1_ORDER


class CryptoError(Exception):
    pass


def hash256(data: bytes) -> bytes:
    """SHA256(SHA256(data))"""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    return RIPEMD160.new(hashlib.sha256(data).digest()).digest()


def keccak256(data: bytes) -> bytes:
    return keccak(data)


def decode_der_public_key(der: bytes) -> bytes:
    """
    Extract the raw uncompressed EC point from a DER SubjectPublicKeyInfo.

    The quorum service returns ECDSA keys in this form; address derivation
    needs the 65-byte SEC1 point.
    """
    try:
        key = serialization.load_der_public_key(der)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise CryptoError(f"Failed to parse DER public key: {e}") from e

    if not isinstance(key, ec.EllipticCurvePublicKey):
        raise CryptoError(f"Not an EC public key: {type(key).__name__}")

    return key.public_bytes(
        serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint
    )


def format_public_key(raw: bytes, compressed: bool) -> bytes:
    """Re-encode a SEC1 public key (33 or 65 bytes) in the requested form."""
    try:
        return PublicKey(raw).format(compressed=compressed)
    except ValueError as e:
        raise CryptoError(f"Invalid secp256k1 public key: {e}") from e


def encode_der_signature(r: int, s: int) -> bytes:
    """DER-encode an ECDSA (r, s) pair (no sighash byte)."""

    def der_int(value: int) -> bytes:
        body = value.to_bytes(max(1, (value.bit_length() + 7) // 8), "big")
        if body[0] & 0x80:
            body = b"\x00" + body
        return b"\x02" + bytes([len(body)]) + body

    seq = der_int(r) + der_int(s)
    return b"\x30" + bytes([len(seq)]) + seq


def decode_der_signature(der: bytes) -> tuple[int, int]:
    """Parse a strict DER ECDSA signature into (r, s)."""
    if len(der) < 8 or der[0] != 0x30 or der[1] != len(der) - 2:
        raise CryptoError("Malformed DER signature envelope")

    offset = 2
    values: list[int] = []
    for _ in range(2):
        if der[offset] != 0x02:
            raise CryptoError("Expected DER integer")
        length = der[offset + 1]
        start = offset + 2
        end = start + length
        if length == 0 or end > len(der):
            raise CryptoError("Invalid DER integer length")
        values.append(int.from_bytes(der[start:end], "big"))
        offset = end

    if offset != len(der):
        raise CryptoError("Trailing bytes after DER signature")

    return values[0], values[1]


def split_signature(signature: bytes) -> tuple[int, int, int | None]:
    """
    Split a signature returned by the quorum service.

    Accepts raw 64-byte r||s, 65-byte r||s||v, or DER. Returns (r, s, v)
    where v is None when no recovery byte was supplied.
    """
    if len(signature) == 64:
        return int.from_bytes(signature[:32], "big"), int.from_bytes(signature[32:], "big"), None
    if len(signature) == 65:
        return (
            int.from_bytes(signature[:32], "big"),
            int.from_bytes(signature[32:64], "big"),
            signature[64],
        )
    r, s = decode_der_signature(signature)
    return r, s, None


def normalize_low_s(s: int) -> tuple[int, bool]:
    """Return (low_s, flipped). Nodes reject high-S signatures."""
    if s > SECP256K1_HALF_ORDER:
        return SECP256K1_ORDER - s, True
    return s, False


def verify_digest(public_key: bytes, digest: bytes, r: int, s: int) -> bool:
    """Verify a low-S (r, s) signature over a 32-byte digest."""
    try:
        return PublicKey(public_key).verify(encode_der_signature(r, s), digest, hasher=None)
    except (ValueError, TypeError):
        return False


def recover_public_key(digest: bytes, r: int, s: int, recovery_id: int) -> bytes | None:
    """Recover the uncompressed public key, or None if recovery fails."""
    if not 0 < r < SECP256K1_ORDER or not 0 < s < SECP256K1_ORDER:
        return None
    recoverable = r.to_bytes(32, "big") + s.to_bytes(32, "big") + bytes([recovery_id])
    try:
        key = PublicKey.from_signature_and_message(recoverable, digest, hasher=None)
    except (ValueError, TypeError):
        return None
    return key.format(compressed=False)
