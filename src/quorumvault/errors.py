"""
Error taxonomy for the vault signing flow.

Derivation, build and verification errors abort the current account only.
Network errors on idempotent reads are retried by the poll loop; nothing
else is retried automatically.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from quorumvault.models import FinalizedTransaction


class QuorumVaultError(Exception):
    """Base class for all flow errors."""


class VaultUnavailable(QuorumVaultError):
    """The vault could not be created or joined."""


class AddressDerivationFailed(QuorumVaultError):
    pass


class InsufficientFunds(QuorumVaultError):
    pass


class InvalidAddress(QuorumVaultError):
    pass


class SigningRejected(QuorumVaultError):
    """The quorum rejected the signing operation."""

    def __init__(self, message: str, operation_id: str | None = None):
        super().__init__(message)
        self.operation_id = operation_id


class SignatureMismatch(QuorumVaultError):
    """A returned signature does not verify against the holder's key."""


class NetworkError(QuorumVaultError):
    """Transport or remote-service failure."""


class TimedOut(QuorumVaultError):
    pass


class PollCancelled(QuorumVaultError):
    pass


class BroadcastFailed(QuorumVaultError):
    """Broadcast or confirmation failed; the signed transaction is kept."""

    def __init__(self, message: str, finalized: FinalizedTransaction):
        super().__init__(message)
        self.finalized = finalized
