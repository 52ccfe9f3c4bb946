"""
Address derivation and validation.

derive_address is a pure function of (public key, chain parameters):
- EVM: keccak256(uncompressed_key[1:])[-20:], EIP-55 checksum cased
- Bitcoin: Base58Check(version || RIPEMD160(SHA256(key)))
"""

from __future__ import annotations

import base58
import bech32
from eth_utils import is_checksum_address, is_hex_address, to_checksum_address

from quorumvault.constants import (
    P2PKH_VERSION_MAINNET,
    P2PKH_VERSION_TESTNET,
    P2SH_VERSION_MAINNET,
    P2SH_VERSION_TESTNET,
)
from quorumvault.crypto import CryptoError, format_public_key, hash160, keccak256
from quorumvault.errors import AddressDerivationFailed, InvalidAddress
from quorumvault.models import ChainKind, ChainParams, NetworkType


def get_bech32_hrp(network: NetworkType) -> str:
    """Get bech32 human-readable part for network."""
    return {
        NetworkType.MAINNET: "bc",
        NetworkType.TESTNET: "tb",
        NetworkType.SIGNET: "tb",
        NetworkType.REGTEST: "bcrt",
    }[network]


def _versions(network: NetworkType) -> tuple[int, int]:
    if network == NetworkType.MAINNET:
        return P2PKH_VERSION_MAINNET, P2SH_VERSION_MAINNET
    return P2PKH_VERSION_TESTNET, P2SH_VERSION_TESTNET


def derive_address(public_key_raw: bytes, chain: ChainParams) -> str:
    """Derive the chain address for a raw SEC1 public key."""
    try:
        if chain.kind == ChainKind.ETHEREUM:
            uncompressed = format_public_key(public_key_raw, compressed=False)
            return to_checksum_address(keccak256(uncompressed[1:])[-20:])

        key = format_public_key(public_key_raw, compressed=chain.compressed_keys)
    except CryptoError as e:
        raise AddressDerivationFailed(str(e)) from e

    p2pkh_version, _ = _versions(chain.network)
    return base58.b58encode_check(bytes([p2pkh_version]) + hash160(key)).decode("ascii")


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    """OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG"""
    return bytes([0x76, 0xA9, 0x14]) + pubkey_hash + bytes([0x88, 0xAC])


def address_to_scriptpubkey(address: str, network: NetworkType) -> bytes:
    """
    Convert a Bitcoin address on `network` to its scriptPubKey.

    Supports P2PKH, P2SH, P2WPKH, P2WSH and P2TR destinations.

    Raises:
        InvalidAddress: malformed, wrong network, or unsupported type
    """
    hrp = get_bech32_hrp(network)

    if address.lower().startswith(hrp + "1"):
        witver, witprog = bech32.decode(hrp, address)
        if witver is None or witprog is None:
            raise InvalidAddress(f"Invalid bech32 address: {address}")
        program = bytes(witprog)

        if witver == 0 and len(program) == 20:
            return bytes([0x00, 0x14]) + program
        if witver == 0 and len(program) == 32:
            return bytes([0x00, 0x20]) + program
        if witver == 1 and len(program) == 32:
            return bytes([0x51, 0x20]) + program
        raise InvalidAddress(f"Unsupported witness program in {address}")

    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise InvalidAddress(f"Invalid base58 address {address}: {e}") from e

    if len(decoded) != 21:
        raise InvalidAddress(f"Invalid address payload length: {address}")

    version, payload = decoded[0], decoded[1:]
    p2pkh_version, p2sh_version = _versions(network)

    if version == p2pkh_version:
        return p2pkh_script(payload)
    if version == p2sh_version:
        # OP_HASH160 <20-byte-scripthash> OP_EQUAL
        return bytes([0xA9, 0x14]) + payload + bytes([0x87])

    raise InvalidAddress(f"Address {address} is not valid on {network.value}")


def validate_address(address: str, chain: ChainParams) -> str:
    """
    Check a destination address before any network call is made.

    Returns the normalized address (checksum-cased for EVM).
    """
    if chain.kind == ChainKind.ETHEREUM:
        if not address.startswith("0x") or not is_hex_address(address):
            raise InvalidAddress(f"Not a hex address: {address}")
        body = address[2:]
        if body != body.lower() and body != body.upper() and not is_checksum_address(address):
            raise InvalidAddress(f"Bad EIP-55 checksum: {address}")
        return to_checksum_address(address)

    address_to_scriptpubkey(address, chain.network)
    return address
