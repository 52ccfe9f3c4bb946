"""
Core data models.

Wire-facing records (vaults, addresses, signing operations, chain
parameters) are pydantic models; transaction internals are dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from quorumvault.constants import (
    BIP44_COIN_BITCOIN,
    BIP44_COIN_ETHEREUM,
    BIP44_COIN_TESTNET,
)

if TYPE_CHECKING:
    from quorumvault.tx.bitcoin import BitcoinTransaction
    from quorumvault.tx.ethereum import EvmTransaction


class ChainKind(str, Enum):
    BITCOIN = "bitcoin"
    ETHEREUM = "ethereum"


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"


class ChainParams(BaseModel):
    """Network parameters for one chain."""

    kind: ChainKind
    network: NetworkType = NetworkType.MAINNET
    # Ledger name understood by the quorum service (e.g. BTCTEST, ETH)
    ledger: str
    # Chain-qualified id used by the explorer (e.g. bitcoin-testnet)
    blockchain_id: str = ""
    chain_id: int | None = None
    coin_id: int = 0
    compressed_keys: bool = True
    symbol: str = ""

    model_config = {"frozen": True}

    @property
    def is_utxo(self) -> bool:
        return self.kind == ChainKind.BITCOIN

    @classmethod
    def bitcoin(cls, network: NetworkType = NetworkType.TESTNET) -> ChainParams:
        mainnet = network == NetworkType.MAINNET
        return cls(
            kind=ChainKind.BITCOIN,
            network=network,
            ledger="BTC" if mainnet else "BTCTEST",
            blockchain_id="bitcoin-mainnet" if mainnet else "bitcoin-testnet",
            coin_id=BIP44_COIN_BITCOIN if mainnet else BIP44_COIN_TESTNET,
            symbol="BTC",
        )

    @classmethod
    def ethereum(cls, chain_id: int = 1) -> ChainParams:
        mainnet = chain_id == 1
        return cls(
            kind=ChainKind.ETHEREUM,
            network=NetworkType.MAINNET if mainnet else NetworkType.TESTNET,
            ledger="ETH" if mainnet else "ETHTEST",
            blockchain_id="ethereum-mainnet" if mainnet else f"ethereum-{chain_id}",
            chain_id=chain_id,
            coin_id=BIP44_COIN_ETHEREUM,
            compressed_keys=False,
            symbol="ETH",
        )


class VaultHierarchy(str, Enum):
    SINGLE_KEY = "NONE"
    BIP44 = "BIP44"


class CryptoKind(str, Enum):
    ECDSA = "ECDSA"
    EDDSA = "EDDSA"


class VaultStatus(str, Enum):
    CREATING = "CREATING"
    PENDING_JOIN = "PENDING_JOIN"
    ACTIVE = "ACTIVE"


class VaultSpec(BaseModel):
    """Parameters for creating a vault."""

    name: str = Field(..., min_length=1)
    hierarchy: VaultHierarchy = VaultHierarchy.BIP44
    crypto_kind: CryptoKind = CryptoKind.ECDSA
    description: str = ""
    approvers: list[str] = Field(default_factory=list)
    required_approvals: int = Field(default=1, ge=1)


class Vault(BaseModel):
    id: str
    name: str
    hierarchy: VaultHierarchy = VaultHierarchy.BIP44
    crypto_kind: CryptoKind = CryptoKind.ECDSA
    status: VaultStatus = VaultStatus.CREATING
    pending_approvers: list[str] = Field(default_factory=list)
    # Set when the service reports that creation failed
    failure_reason: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == VaultStatus.ACTIVE

    @property
    def is_bip44(self) -> bool:
        return self.hierarchy == VaultHierarchy.BIP44


class AddressInfo(BaseModel):
    """A remote-held key and its chain address. Derived once per (vault, chain)."""

    key_id: str = Field(..., min_length=1)
    public_key_raw: str = Field(..., pattern=r"^[0-9a-fA-F]+$")
    address: str
    chain: ChainKind

    model_config = {"frozen": True}

    @property
    def public_key_bytes(self) -> bytes:
        return bytes.fromhex(self.public_key_raw)


@dataclass
class UnspentOutput:
    tx_hash: str
    output_index: int
    value: int
    confirmations: int
    raw_parent_transaction: bytes
    spend_script: bytes

    @property
    def outpoint(self) -> tuple[str, int]:
        return (self.tx_hash, self.output_index)


@dataclass
class FundingState:
    balance: int
    unspent_outputs: list[UnspentOutput] = field(default_factory=list)


@dataclass
class SigningPreimage:
    """A digest that must be signed, and the key that must sign it."""

    preimage_hash: bytes
    signer_key_id: str
    # The bytes that were hashed (sent to the service for display/audit)
    raw: bytes = b""


@dataclass
class UnsignedTransaction:
    chain: ChainParams
    signer: AddressInfo
    payload: BitcoinTransaction | EvmTransaction
    preimages: list[SigningPreimage]
    spent_outputs: list[UnspentOutput] = field(default_factory=list)
    description: str = ""
    provider_data: dict[str, Any] = field(default_factory=dict)


class SigningStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"


class SigningOperation(BaseModel):
    operation_id: str
    status: SigningStatus = SigningStatus.PENDING
    # Hex signatures, positionally aligned with the request's preimages
    signatures: list[str] = Field(default_factory=list)
    pending_approvers: list[str] = Field(default_factory=list)
    is_approved: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in (SigningStatus.COMPLETED, SigningStatus.REJECTED)

    def signature_bytes(self) -> list[bytes]:
        return [bytes.fromhex(sig) for sig in self.signatures]


@dataclass(frozen=True)
class FinalizedTransaction:
    chain: ChainKind
    raw: bytes
    tx_hash: str

    @property
    def raw_hex(self) -> str:
        return self.raw.hex()
