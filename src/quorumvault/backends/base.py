"""
Base ledger client interface.
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod

from loguru import logger

from quorumvault.models import FinalizedTransaction, FundingState
from quorumvault.poll import CancellationToken, PollPolicy, poll_until

# Environment variable to enable sensitive logging (raw transactions, keys)
SENSITIVE_LOGGING = os.environ.get("SENSITIVE_LOGGING", "").lower() in ("1", "true", "yes")


class LedgerClient(ABC):
    """
    Read funding state from, and submit transactions to, one chain.

    Network calls are not retried here; failures surface as NetworkError and
    the await_* poll loops retry the idempotent reads on their next tick.
    """

    @abstractmethod
    async def fetch_funding_state(self, address: str) -> FundingState:
        """Balance and (for UTXO chains) the unspent outputs of an address"""

    @abstractmethod
    async def broadcast(self, finalized: FinalizedTransaction) -> str:
        """Submit a signed transaction, returns its hash"""

    @abstractmethod
    async def check_confirmation(self, tx_hash: str) -> bool | None:
        """True/False once the outcome is definite, None while unknown"""

    async def await_funding(
        self,
        address: str,
        policy: PollPolicy,
        token: CancellationToken | None = None,
    ) -> FundingState:
        """Poll until the address holds a positive balance."""
        logger.info(f"Waiting for deposit to {address}")
        state = await poll_until(
            lambda: self.fetch_funding_state(address),
            lambda s: s.balance > 0,
            policy,
            token=token,
            description=f"funding of {address}",
        )
        logger.info(f"Balance of {address} is {state.balance}")
        return state

    async def await_confirmation(
        self,
        tx_hash: str,
        policy: PollPolicy,
        token: CancellationToken | None = None,
    ) -> bool:
        """Poll until the transaction has a definite outcome; returns success."""
        logger.info(f"Waiting for confirmation of {tx_hash}")
        outcome = await poll_until(
            lambda: self.check_confirmation(tx_hash),
            lambda result: result is not None,
            policy,
            token=token,
            description=f"confirmation of {tx_hash}",
        )
        if outcome:
            logger.info(f"Transaction {tx_hash} confirmed")
        else:
            logger.warning(f"Transaction {tx_hash} failed on chain")
        return bool(outcome)

    async def close(self) -> None:
        """Close backend connection"""
        pass
