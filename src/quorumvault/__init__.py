"""
quorumvault - custodial signing through a quorum key-management service

Creates vaults, derives their chain addresses, builds unsigned Bitcoin and
EVM transactions, collects quorum signatures and broadcasts the result.
"""

__version__ = "0.1.0"

from quorumvault.address import derive_address, validate_address
from quorumvault.assembler import SignatureAssembler
from quorumvault.config import Settings, get_settings
from quorumvault.coordinator import ApprovalMetadata, QuorumSigningCoordinator
from quorumvault.errors import (
    AddressDerivationFailed,
    BroadcastFailed,
    InsufficientFunds,
    InvalidAddress,
    NetworkError,
    PollCancelled,
    QuorumVaultError,
    SignatureMismatch,
    SigningRejected,
    TimedOut,
    VaultUnavailable,
)
from quorumvault.flow import (
    AccountFlow,
    BitcoinPaymentTask,
    EthereumTokenTask,
    FlowResult,
    FlowRunner,
    run_tasks,
)
from quorumvault.models import (
    AddressInfo,
    ChainKind,
    ChainParams,
    FinalizedTransaction,
    SigningOperation,
    UnsignedTransaction,
    UnspentOutput,
    Vault,
    VaultSpec,
)
from quorumvault.poll import CancellationToken, PollPolicy, poll_until
from quorumvault.vault import VaultLifecycleManager

__all__ = [
    "AccountFlow",
    "AddressDerivationFailed",
    "AddressInfo",
    "ApprovalMetadata",
    "BitcoinPaymentTask",
    "BroadcastFailed",
    "CancellationToken",
    "ChainKind",
    "ChainParams",
    "EthereumTokenTask",
    "FinalizedTransaction",
    "FlowResult",
    "FlowRunner",
    "InsufficientFunds",
    "InvalidAddress",
    "NetworkError",
    "PollCancelled",
    "PollPolicy",
    "QuorumSigningCoordinator",
    "QuorumVaultError",
    "Settings",
    "SignatureAssembler",
    "SignatureMismatch",
    "SigningOperation",
    "SigningRejected",
    "TimedOut",
    "UnsignedTransaction",
    "UnspentOutput",
    "Vault",
    "VaultLifecycleManager",
    "VaultSpec",
    "VaultUnavailable",
    "derive_address",
    "get_settings",
    "poll_until",
    "run_tasks",
    "validate_address",
]
