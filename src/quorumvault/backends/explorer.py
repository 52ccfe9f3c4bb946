"""
Explorer-backed ledger client for UTXO chains (Blockset-style REST API).

UTXOs are reconstructed from the address's transfer history: outputs paid
to the address that no transfer from the address has consumed. Output
scripts are read from the parent transaction's raw bytes.
"""

from __future__ import annotations

import base64
from typing import Any

import httpx
from loguru import logger

from quorumvault.backends.base import SENSITIVE_LOGGING, LedgerClient
from quorumvault.errors import NetworkError
from quorumvault.models import FinalizedTransaction, FundingState, UnspentOutput
from quorumvault.tx.bitcoin import TransactionParseError, deserialize_transaction

DEFAULT_EXPLORER_TIMEOUT = 30.0


class ExplorerClient(LedgerClient):
    def __init__(
        self,
        base_url: str = "https://api.blockset.com",
        token: str = "",
        blockchain_id: str = "bitcoin-testnet",
        timeout: float = DEFAULT_EXPLORER_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.blockchain_id = blockchain_id
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> Any:
        query = {"blockchain_id": self.blockchain_id, **(params or {})}
        try:
            response = await self.client.request(
                method,
                f"{self.base_url}/{endpoint}",
                params=query,
                json=body,
                headers=self._headers,
            )
            if allow_not_found and response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            logger.error(f"Explorer request failed: {method} {endpoint} - {e}")
            raise NetworkError(f"Explorer {method} {endpoint} failed: {e}") from e
        except ValueError as e:
            raise NetworkError(f"Explorer returned invalid JSON for {endpoint}: {e}") from e

    async def get_transactions(self, address: str) -> list[dict[str, Any]]:
        data = await self._request(
            "GET", "transactions", params={"address": address, "include_raw": "true"}
        )
        return (data or {}).get("_embedded", {}).get("transactions", [])

    async def fetch_funding_state(self, address: str) -> FundingState:
        history = await self.get_transactions(address)
        try:
            return self._funding_from_history(address, history)
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            logger.error(f"Malformed transaction history for {address}: {e!r}")
            raise NetworkError(f"Explorer returned malformed history for {address}: {e!r}") from e

    @staticmethod
    def _funding_from_history(address: str, history: list[dict[str, Any]]) -> FundingState:
        # mempool transactions report null confirmations
        transactions = [t for t in history if (t.get("confirmations") or 0) >= 0]
        transfers = [
            transfer
            for t in transactions
            for transfer in (t.get("_embedded") or {}).get("transfers", [])
        ]
        received = [t for t in transfers if t.get("to_address") == address]
        spent_txids = [
            t["meta"]["txid"]
            for t in transfers
            if t.get("from_address") == address and (t.get("meta") or {}).get("txid")
        ]

        unspent = [
            output
            for output in received
            if not any(output["transaction_id"].endswith(txid) for txid in spent_txids)
        ]

        by_id = {t["transaction_id"]: t for t in transactions}
        outputs: list[UnspentOutput] = []
        for transfer in unspent:
            parent = by_id.get(transfer["transaction_id"])
            if parent is None or not parent.get("raw"):
                logger.warning(f"No raw parent for transfer in {transfer['transaction_id']}")
                continue

            index = int(transfer["meta"]["n"])
            raw = base64.b64decode(parent["raw"])
            try:
                parent_tx = deserialize_transaction(raw)
            except TransactionParseError as e:
                logger.warning(f"Skipping output of unparseable {parent['identifier']}: {e}")
                continue
            if index >= len(parent_tx.outputs):
                logger.warning(f"Output {index} missing from {parent['identifier']}")
                continue

            outputs.append(
                UnspentOutput(
                    tx_hash=parent["identifier"],
                    output_index=index,
                    value=int(transfer["amount"]["amount"]),
                    confirmations=int(parent.get("confirmations") or 0),
                    raw_parent_transaction=raw,
                    spend_script=parent_tx.outputs[index].script_pubkey,
                )
            )

        balance = sum(u.value for u in outputs)
        logger.debug(f"{address}: {len(outputs)} unspent outputs, {balance} sats")
        return FundingState(balance=balance, unspent_outputs=outputs)

    async def broadcast(self, finalized: FinalizedTransaction) -> str:
        if SENSITIVE_LOGGING:
            logger.debug(f"Broadcasting raw transaction {finalized.raw_hex}")

        result = await self._request(
            "POST",
            "transactions",
            body={
                "data": base64.b64encode(finalized.raw).decode("ascii"),
                "blockchain_id": self.blockchain_id,
                "transaction_id": f"{self.blockchain_id}:{finalized.tx_hash}",
            },
        )
        tx_hash = (result or {}).get("hash") or finalized.tx_hash
        logger.info(f"Transaction sent, txHash is {tx_hash}")
        return tx_hash

    async def check_confirmation(self, tx_hash: str) -> bool | None:
        result = await self._request(
            "GET", f"transactions/{self.blockchain_id}:{tx_hash}", allow_not_found=True
        )
        return None if result is None else True

    async def close(self) -> None:
        await self.client.aclose()
