"""
JSON-RPC ledger client for account-model (EVM) chains.
"""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from quorumvault.backends.base import SENSITIVE_LOGGING, LedgerClient
from quorumvault.errors import NetworkError
from quorumvault.models import FinalizedTransaction, FundingState

DEFAULT_RPC_TIMEOUT = 30.0


class EvmRpcClient(LedgerClient):
    def __init__(
        self,
        rpc_url: str = "http://127.0.0.1:8545",
        timeout: float = DEFAULT_RPC_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self.rpc_url = rpc_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self._request_id = 0

    async def _rpc_call(self, method: str, params: list | None = None) -> Any:
        """
        Make a JSON-RPC call.

        Raises:
            NetworkError: On transport, HTTP or RPC errors
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        try:
            response = await self.client.post(self.rpc_url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            logger.error(f"RPC call timed out: {method} - {e}")
            raise NetworkError(f"RPC {method} timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"RPC call failed: {method} - {e}")
            raise NetworkError(f"RPC {method} failed: {e}") from e
        except ValueError as e:
            raise NetworkError(f"RPC {method} returned invalid JSON: {e}") from e

        if "error" in data and data["error"]:
            error_info = data["error"]
            error_code = error_info.get("code", "unknown")
            error_msg = error_info.get("message", str(error_info))
            raise NetworkError(f"RPC error {error_code}: {error_msg}")

        return data.get("result")

    async def get_balance(self, address: str) -> int:
        return int(await self._rpc_call("eth_getBalance", [address, "latest"]), 16)

    async def get_nonce(self, address: str) -> int:
        return int(await self._rpc_call("eth_getTransactionCount", [address, "pending"]), 16)

    async def get_gas_price(self) -> int:
        return int(await self._rpc_call("eth_gasPrice"), 16)

    async def get_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        return await self._rpc_call("eth_getTransactionReceipt", [tx_hash])

    async def fetch_funding_state(self, address: str) -> FundingState:
        return FundingState(balance=await self.get_balance(address))

    async def broadcast(self, finalized: FinalizedTransaction) -> str:
        if SENSITIVE_LOGGING:
            logger.debug(f"Broadcasting raw transaction {finalized.raw_hex}")
        tx_hash = await self._rpc_call("eth_sendRawTransaction", ["0x" + finalized.raw_hex])
        logger.info(f"Transaction sent, txHash is {tx_hash}")
        return tx_hash

    async def check_confirmation(self, tx_hash: str) -> bool | None:
        receipt = await self.get_receipt(tx_hash)
        if receipt is None or receipt.get("status") is None:
            return None
        return int(receipt["status"], 16) == 1

    async def close(self) -> None:
        await self.client.aclose()
