"""
Quorum signing coordination.

An operation moves PENDING -> APPROVED -> COMPLETED as quorum members
approve, or to REJECTED at any point. Submissions are never retried
automatically; a rejected attempt is retried by submitting a fresh
operation.
"""

from __future__ import annotations

import json
from collections.abc import Callable

from loguru import logger
from pydantic import BaseModel

from quorumvault.backends.quorum import QuorumServiceClient
from quorumvault.errors import SignatureMismatch, SigningRejected
from quorumvault.models import ChainKind, SigningOperation, SigningStatus, UnsignedTransaction
from quorumvault.poll import CancellationToken, PollPolicy, poll_until

LEDGER_HASH_ALGORITHMS = {
    ChainKind.BITCOIN: "DOUBLE_SHA256",
    ChainKind.ETHEREUM: "KECCAK256",
}


class ApprovalMetadata(BaseModel):
    """What approvers see alongside a signing request."""

    vault_id: str
    description: str = ""
    callback_url: str | None = None


class QuorumSigningCoordinator:
    def __init__(self, client: QuorumServiceClient, policy: PollPolicy):
        self.client = client
        self.policy = policy

    def build_request(self, unsigned: UnsignedTransaction, metadata: ApprovalMetadata) -> dict:
        request = {
            "description": metadata.description or unsigned.description,
            "dataToSign": [p.preimage_hash.hex() for p in unsigned.preimages],
            "publicKeys": [p.signer_key_id for p in unsigned.preimages],
            "ledgerHashAlgorithm": LEDGER_HASH_ALGORITHMS[unsigned.chain.kind],
            "ledger": unsigned.chain.ledger,
            "rawTransactions": [p.raw.hex() for p in unsigned.preimages],
            "providerData": json.dumps(unsigned.provider_data),
        }
        if metadata.callback_url:
            request["callbackUrl"] = metadata.callback_url
        return request

    async def submit(self, unsigned: UnsignedTransaction, metadata: ApprovalMetadata) -> str:
        operation_id = await self.client.submit_sign(
            metadata.vault_id, self.build_request(unsigned, metadata)
        )
        logger.info(
            f"Signature process {operation_id} started for {len(unsigned.preimages)} "
            "preimage(s), must be approved by vault participants"
        )
        return operation_id

    async def await_terminal(
        self,
        operation_id: str,
        policy: PollPolicy | None = None,
        token: CancellationToken | None = None,
        on_progress: Callable[[SigningOperation], None] | None = None,
    ) -> SigningOperation:
        """
        Poll until the operation is COMPLETED or REJECTED.

        Raises:
            SigningRejected: the quorum rejected, or completed without approval
        """

        def report(operation: SigningOperation) -> None:
            logger.info(
                f"Operation {operation_id} is {operation.status.value}, waiting for: "
                f"{', '.join(operation.pending_approvers) or 'quorum'}"
            )
            if on_progress is not None:
                on_progress(operation)

        operation = await poll_until(
            lambda: self.client.get_sign_operation(operation_id),
            lambda op: op.is_terminal,
            policy or self.policy,
            token=token,
            on_pending=report,
            description=f"signing operation {operation_id}",
        )

        if operation.status == SigningStatus.REJECTED or not operation.is_approved:
            raise SigningRejected(f"Vault participants rejected {operation_id}", operation_id)

        return operation

    async def sign(
        self,
        unsigned: UnsignedTransaction,
        metadata: ApprovalMetadata,
        policy: PollPolicy | None = None,
        token: CancellationToken | None = None,
        on_progress: Callable[[SigningOperation], None] | None = None,
    ) -> SigningOperation:
        """Submit and wait; checks the signatures line up with the preimages."""
        operation_id = await self.submit(unsigned, metadata)
        operation = await self.await_terminal(
            operation_id, policy=policy, token=token, on_progress=on_progress
        )

        if len(operation.signatures) != len(unsigned.preimages):
            raise SignatureMismatch(
                f"Operation {operation_id} returned {len(operation.signatures)} signatures "
                f"for {len(unsigned.preimages)} preimages"
            )

        logger.info(f"Signatures created for operation {operation_id}")
        return operation
