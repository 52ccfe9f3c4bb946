"""
Remote service clients.

- QuorumServiceClient: quorum key-management service (vaults, signing)
- ExplorerClient: explorer REST API for UTXO chains
- EvmRpcClient: JSON-RPC node for EVM chains
"""

from quorumvault.backends.base import LedgerClient
from quorumvault.backends.evm_rpc import EvmRpcClient
from quorumvault.backends.explorer import ExplorerClient
from quorumvault.backends.quorum import QuorumServiceClient

__all__ = [
    "EvmRpcClient",
    "ExplorerClient",
    "LedgerClient",
    "QuorumServiceClient",
]
