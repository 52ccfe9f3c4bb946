"""
Chain and protocol constants.
"""

from __future__ import annotations

# secp256k1 group order
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
SECP256K1_HALF_ORDER = SECP256K1_ORDER // 2

SIGHASH_ALL = 0x01

# Base58Check version bytes
P2PKH_VERSION_MAINNET = 0x00
P2PKH_VERSION_TESTNET = 0x6F
P2SH_VERSION_MAINNET = 0x05
P2SH_VERSION_TESTNET = 0xC4

# Standard P2PKH dust limit in Bitcoin Core
STANDARD_DUST_LIMIT = 546  # satoshis

SATOSHIS_PER_BTC = 100_000_000
WEI_PER_ETHER = 10**18

# EIP-155: v = recovery_id + chain_id * 2 + 35
EIP155_OFFSET = 35

# BIP44 coin types used in the address-derivation endpoint
BIP44_COIN_BITCOIN = 0
BIP44_COIN_TESTNET = 1
BIP44_COIN_ETHEREUM = 60

# Default fee used by the reference payment flow
DEFAULT_UTXO_FEE = 1000  # satoshis

ETH_TRANSFER_GAS = 21_000
