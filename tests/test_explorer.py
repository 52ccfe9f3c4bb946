"""
Tests for the explorer ledger client (mocked transport).
"""

from __future__ import annotations

import base64
import json

import httpx
import pytest

from quorumvault.address import address_to_scriptpubkey, p2pkh_script
from quorumvault.backends.explorer import ExplorerClient
from quorumvault.errors import NetworkError, TimedOut
from quorumvault.models import ChainKind, FinalizedTransaction, NetworkType
from quorumvault.poll import PollPolicy
from quorumvault.tx.bitcoin import BitcoinTransaction, TxInput, TxOutput

ADDRESS = "mrCDrCybB6J1vRfbwM5hemdJz73FwDBC8r"
CHAIN = "bitcoin-testnet"


def parent(value: int, funding_input: str) -> BitcoinTransaction:
    return BitcoinTransaction(
        inputs=[TxInput(txid=funding_input, vout=0)],
        outputs=[
            TxOutput(
                value=value,
                script_pubkey=address_to_scriptpubkey(ADDRESS, NetworkType.TESTNET),
            ),
            TxOutput(value=12_345, script_pubkey=p2pkh_script(b"\x99" * 20)),
        ],
    )


def explorer_tx(tx: BitcoinTransaction, transfers: list[dict], confirmations: int = 3) -> dict:
    return {
        "identifier": tx.txid,
        "transaction_id": f"{CHAIN}:{tx.txid}",
        "confirmations": confirmations,
        "raw": base64.b64encode(tx.serialize()).decode(),
        "_embedded": {"transfers": transfers},
    }


def incoming(tx: BitcoinTransaction, value: int, n: int = 0) -> dict:
    return {
        "from_address": "someone",
        "to_address": ADDRESS,
        "transaction_id": f"{CHAIN}:{tx.txid}",
        "amount": {"amount": str(value), "currency_id": f"{CHAIN}:__native__"},
        "meta": {"n": str(n)},
    }


def make_client(handler) -> ExplorerClient:
    return ExplorerClient(
        "https://api.blockset.example",
        token="secret",
        blockchain_id=CHAIN,
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestFundingState:
    @pytest.fixture
    def history(self):
        tx_a = parent(50_000, "11" * 32)
        tx_b = parent(30_000, "22" * 32)
        tx_c = BitcoinTransaction(
            inputs=[TxInput(txid=tx_b.txid, vout=0)],
            outputs=[TxOutput(value=29_000, script_pubkey=p2pkh_script(b"\x77" * 20))],
        )
        tx_pending = parent(70_000, "33" * 32)
        spend = {
            "from_address": ADDRESS,
            "to_address": "elsewhere",
            "transaction_id": f"{CHAIN}:{tx_c.txid}",
            "amount": {"amount": "29000"},
            "meta": {"txid": tx_b.txid, "n": "0"},
        }
        return {
            "a": tx_a,
            "b": tx_b,
            "transactions": [
                explorer_tx(tx_a, [incoming(tx_a, 50_000)]),
                explorer_tx(tx_b, [incoming(tx_b, 30_000)]),
                explorer_tx(tx_c, [spend]),
                explorer_tx(tx_pending, [incoming(tx_pending, 70_000)], confirmations=-1),
            ],
        }

    @pytest.mark.asyncio
    async def test_unspent_outputs(self, history):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["params"] = dict(request.url.params)
            seen["auth"] = request.headers.get("authorization")
            body = {"_embedded": {"transactions": history["transactions"]}}
            return httpx.Response(200, json=body)

        client = make_client(handler)
        try:
            state = await client.fetch_funding_state(ADDRESS)
        finally:
            await client.close()

        assert seen["params"] == {
            "blockchain_id": CHAIN,
            "address": ADDRESS,
            "include_raw": "true",
        }
        assert seen["auth"] == "Bearer secret"

        assert state.balance == 50_000
        assert len(state.unspent_outputs) == 1
        output = state.unspent_outputs[0]
        assert output.tx_hash == history["a"].txid
        assert output.output_index == 0
        assert output.value == 50_000
        assert output.confirmations == 3
        assert output.spend_script == address_to_scriptpubkey(ADDRESS, NetworkType.TESTNET)
        assert output.raw_parent_transaction == history["a"].serialize()

    @pytest.mark.asyncio
    async def test_empty_history(self):
        client = make_client(lambda r: httpx.Response(200, json={}))
        try:
            state = await client.fetch_funding_state(ADDRESS)
        finally:
            await client.close()
        assert state.balance == 0
        assert state.unspent_outputs == []

    @pytest.mark.asyncio
    async def test_unparseable_parent_skipped(self, history):
        broken = dict(history["transactions"][0], raw=base64.b64encode(b"\x01\x02").decode())
        client = make_client(
            lambda r: httpx.Response(200, json={"_embedded": {"transactions": [broken]}})
        )
        try:
            state = await client.fetch_funding_state(ADDRESS)
        finally:
            await client.close()
        assert state.unspent_outputs == []

    @pytest.mark.asyncio
    async def test_mempool_transaction_with_null_confirmations(self, history):
        mempool = dict(history["transactions"][0], confirmations=None)
        client = make_client(
            lambda r: httpx.Response(200, json={"_embedded": {"transactions": [mempool]}})
        )
        try:
            state = await client.fetch_funding_state(ADDRESS)
        finally:
            await client.close()
        assert state.balance == 50_000
        assert state.unspent_outputs[0].confirmations == 0

    @pytest.mark.asyncio
    async def test_transfer_without_output_index(self, history):
        transfer = dict(incoming(history["a"], 50_000), meta={})
        broken = dict(history["transactions"][0], _embedded={"transfers": [transfer]})
        client = make_client(
            lambda r: httpx.Response(200, json={"_embedded": {"transactions": [broken]}})
        )
        try:
            with pytest.raises(NetworkError, match="malformed"):
                await client.fetch_funding_state(ADDRESS)
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_await_funding_polls_until_positive(self, history):
        responses = iter(
            [
                httpx.Response(200, json={}),
                httpx.Response(500),
                httpx.Response(200, json={"_embedded": {"transactions": history["transactions"]}}),
            ]
        )
        client = make_client(lambda r: next(responses))
        try:
            state = await client.await_funding(ADDRESS, PollPolicy(interval=0.001))
        finally:
            await client.close()
        assert state.balance == 50_000


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_broadcast_body(self):
        seen = {}
        finalized = FinalizedTransaction(
            chain=ChainKind.BITCOIN, raw=b"\x01\x02\x03", tx_hash="ab" * 32
        )

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"hash": "ab" * 32})

        client = make_client(handler)
        try:
            assert await client.broadcast(finalized) == "ab" * 32
        finally:
            await client.close()

        assert seen["method"] == "POST"
        assert seen["body"] == {
            "data": base64.b64encode(b"\x01\x02\x03").decode(),
            "blockchain_id": CHAIN,
            "transaction_id": f"{CHAIN}:{'ab' * 32}",
        }

    @pytest.mark.asyncio
    async def test_broadcast_rejected(self):
        finalized = FinalizedTransaction(chain=ChainKind.BITCOIN, raw=b"\x01", tx_hash="ab" * 32)
        client = make_client(lambda r: httpx.Response(400, json={"error": "bad tx"}))
        try:
            with pytest.raises(NetworkError):
                await client.broadcast(finalized)
        finally:
            await client.close()


class TestConfirmation:
    @pytest.mark.asyncio
    async def test_not_found_is_unknown(self):
        client = make_client(lambda r: httpx.Response(404))
        try:
            assert await client.check_confirmation("ab" * 32) is None
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_found(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path.endswith(f"/transactions/{CHAIN}:{'ab' * 32}")
            return httpx.Response(200, json={"identifier": "ab" * 32})

        client = make_client(handler)
        try:
            assert await client.check_confirmation("ab" * 32) is True
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_await_confirmation_times_out(self):
        client = make_client(lambda r: httpx.Response(404))
        try:
            with pytest.raises(TimedOut):
                await client.await_confirmation(
                    "ab" * 32, PollPolicy(interval=0.001, max_attempts=2)
                )
        finally:
            await client.close()
