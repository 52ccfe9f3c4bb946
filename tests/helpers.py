"""
Deterministic secp256k1 keys and a local signer that stands in for the
quorum in tests.
"""

from __future__ import annotations

from coincurve import PrivateKey
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from quorumvault.address import derive_address
from quorumvault.models import AddressInfo, ChainParams


def make_private_key(secret: int) -> PrivateKey:
    return PrivateKey(secret.to_bytes(32, "big"))


def der_public_key_hex(secret: int) -> str:
    """SubjectPublicKeyInfo DER, as the quorum service returns ECDSA keys."""
    key = ec.derive_private_key(secret, ec.SECP256K1()).public_key()
    return key.public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    ).hex()


def sign_raw(private_key: PrivateKey, digest: bytes) -> bytes:
    """64-byte r||s over a prehashed digest."""
    return private_key.sign_recoverable(digest, hasher=None)[:64]


def address_info(private_key: PrivateKey, chain: ChainParams, key_id: str = "key-1") -> AddressInfo:
    raw = private_key.public_key.format(compressed=False)
    return AddressInfo(
        key_id=key_id,
        public_key_raw=raw.hex(),
        address=derive_address(raw, chain),
        chain=chain.kind,
    )
