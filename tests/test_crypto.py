"""
Tests for hashing, DER and signature helpers.
"""

from __future__ import annotations

import pytest

from quorumvault.constants import SECP256K1_HALF_ORDER, SECP256K1_ORDER
from quorumvault.crypto import (
    CryptoError,
    decode_der_public_key,
    decode_der_signature,
    encode_der_signature,
    format_public_key,
    hash160,
    hash256,
    keccak256,
    normalize_low_s,
    recover_public_key,
    split_signature,
    verify_digest,
)
from tests.helpers import der_public_key_hex, make_private_key, sign_raw


class TestHashes:
    def test_hash256_empty(self):
        assert hash256(b"").hex() == (
            "5df6e0e2761359d30a8275058e299fcc0381534545f55cf43e41983f5d4c9456"
        )

    def test_keccak_empty(self):
        assert keccak256(b"").hex() == (
            "c5d2460186f7233c927e7db2dcc703c0e500b653ca82273b7bfad8045d85a470"
        )

    def test_hash160_generator(self):
        pubkey = make_private_key(1).public_key.format(compressed=True)
        assert hash160(pubkey).hex() == "751e76e8199196d454941c45d1b3a323f1433bd6"


class TestPublicKeys:
    def test_decode_der_public_key(self):
        raw = decode_der_public_key(bytes.fromhex(der_public_key_hex(7)))
        assert raw == make_private_key(7).public_key.format(compressed=False)
        assert len(raw) == 65

    def test_decode_garbage(self):
        with pytest.raises(CryptoError):
            decode_der_public_key(b"\x30\x03\x02\x01\x01")

    def test_format_round_trip(self):
        uncompressed = make_private_key(3).public_key.format(compressed=False)
        compressed = format_public_key(uncompressed, compressed=True)
        assert len(compressed) == 33
        assert format_public_key(compressed, compressed=False) == uncompressed

    def test_format_invalid(self):
        with pytest.raises(CryptoError):
            format_public_key(b"\x05" * 33, compressed=True)


class TestDerSignatures:
    def test_round_trip(self):
        r = 0x80 << 248
        s = 1
        der = encode_der_signature(r, s)
        # High bit of r forces a leading zero byte
        assert der[3] == 33
        assert decode_der_signature(der) == (r, s)

    def test_matches_coincurve(self):
        key = make_private_key(11)
        digest = hash256(b"message")
        der = key.sign(digest, hasher=None)
        r, s = decode_der_signature(der)
        assert encode_der_signature(r, s) == der

    def test_trailing_bytes_rejected(self):
        der = encode_der_signature(5, 6) + b"\x00"
        with pytest.raises(CryptoError):
            decode_der_signature(der)


class TestSplitSignature:
    def test_raw_64(self):
        r, s, v = split_signature((1).to_bytes(32, "big") + (2).to_bytes(32, "big"))
        assert (r, s, v) == (1, 2, None)

    def test_raw_65(self):
        sig = (1).to_bytes(32, "big") + (2).to_bytes(32, "big") + b"\x01"
        assert split_signature(sig) == (1, 2, 1)

    def test_der(self):
        assert split_signature(encode_der_signature(9, 10)) == (9, 10, None)


class TestLowS:
    def test_low_unchanged(self):
        assert normalize_low_s(5) == (5, False)

    def test_high_flipped(self):
        s, flipped = normalize_low_s(SECP256K1_ORDER - 5)
        assert s == 5
        assert flipped

    def test_half_order_is_low(self):
        assert normalize_low_s(SECP256K1_HALF_ORDER) == (SECP256K1_HALF_ORDER, False)


class TestVerifyAndRecover:
    def test_verify(self):
        key = make_private_key(21)
        digest = hash256(b"payload")
        sig = sign_raw(key, digest)
        r, s, _ = split_signature(sig)
        assert verify_digest(key.public_key.format(), digest, r, s)

    def test_verify_wrong_digest(self):
        key = make_private_key(21)
        r, s, _ = split_signature(sign_raw(key, hash256(b"payload")))
        assert not verify_digest(key.public_key.format(), hash256(b"other"), r, s)

    def test_recover(self):
        key = make_private_key(42)
        digest = keccak256(b"payload")
        recoverable = key.sign_recoverable(digest, hasher=None)
        r, s, recid = split_signature(recoverable)
        assert recover_public_key(digest, r, s, recid) == key.public_key.format(compressed=False)

    def test_recover_out_of_range(self):
        assert recover_public_key(b"\x00" * 32, 0, 1, 0) is None
