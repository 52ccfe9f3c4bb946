"""
Unsigned transaction builders.

Both builders return an UnsignedTransaction whose `preimages` list holds the
exact digests the quorum must sign: one per input for UTXO chains, one for
account chains. Destination addresses are validated before anything else.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from decimal import Decimal

from loguru import logger

from quorumvault.address import address_to_scriptpubkey, validate_address
from quorumvault.constants import SATOSHIS_PER_BTC, STANDARD_DUST_LIMIT, WEI_PER_ETHER
from quorumvault.crypto import hash256, keccak256
from quorumvault.errors import InsufficientFunds
from quorumvault.models import (
    AddressInfo,
    ChainParams,
    CryptoKind,
    SigningPreimage,
    UnsignedTransaction,
    UnspentOutput,
)
from quorumvault.tx.bitcoin import BitcoinTransaction, TxInput, TxOutput, legacy_sighash_preimage
from quorumvault.tx.ethereum import EvmTransaction


def satoshi_to_btc(amount: int) -> float:
    return amount / SATOSHIS_PER_BTC


def wei_to_eth(amount: int) -> Decimal:
    return Decimal(amount) / WEI_PER_ETHER


class CoinSelectionStrategy(ABC):
    """Chooses which unspent outputs fund a payment."""

    @abstractmethod
    def select(self, utxos: Sequence[UnspentOutput], fee: int) -> list[UnspentOutput]:
        """Return the outputs to spend, in input order."""


class SpendAll(CoinSelectionStrategy):
    """Spend every available output (the reference payment flow)."""

    def select(self, utxos: Sequence[UnspentOutput], fee: int) -> list[UnspentOutput]:
        return list(utxos)


class SelectOutpoints(CoinSelectionStrategy):
    """Spend exactly the outpoints chosen by the operator."""

    def __init__(self, outpoints: Iterable[tuple[str, int]]):
        self.outpoints = list(outpoints)

    @classmethod
    def parse(cls, specs: Iterable[str]) -> SelectOutpoints:
        """Build from `txid:vout` strings."""
        outpoints = []
        for spec in specs:
            txid, _, vout = spec.partition(":")
            outpoints.append((txid, int(vout)))
        return cls(outpoints)

    def select(self, utxos: Sequence[UnspentOutput], fee: int) -> list[UnspentOutput]:
        by_outpoint = {u.outpoint: u for u in utxos}
        selected = []
        for outpoint in self.outpoints:
            if outpoint not in by_outpoint:
                raise InsufficientFunds(f"Outpoint {outpoint[0]}:{outpoint[1]} is not available")
            selected.append(by_outpoint[outpoint])
        return selected


class LargestFirst(CoinSelectionStrategy):
    """Add the largest outputs until the payment exceeds `min_output` after fee."""

    def __init__(self, min_output: int = STANDARD_DUST_LIMIT):
        self.min_output = min_output

    def select(self, utxos: Sequence[UnspentOutput], fee: int) -> list[UnspentOutput]:
        selected: list[UnspentOutput] = []
        total = 0
        for utxo in sorted(utxos, key=lambda u: u.value, reverse=True):
            selected.append(utxo)
            total += utxo.value
            if total - fee >= self.min_output:
                break
        return selected


class UtxoTransactionBuilder:
    """
    Builds a legacy P2PKH sweep: selected outputs in, one recipient output of
    (inputs - fee) out.
    """

    def __init__(self, chain: ChainParams, strategy: CoinSelectionStrategy | None = None):
        self.chain = chain
        self.strategy = strategy or SpendAll()

    def build(
        self,
        utxos: Sequence[UnspentOutput],
        recipient: str,
        fee: int,
        signer: AddressInfo,
        description: str = "",
    ) -> UnsignedTransaction:
        if fee < 0:
            raise ValueError(f"Fee must be non-negative, got {fee}")

        recipient_script = address_to_scriptpubkey(recipient, self.chain.network)

        selected = self.strategy.select(utxos, fee)
        total = sum(u.value for u in selected)
        amount = total - fee
        if not selected or amount <= 0:
            raise InsufficientFunds(
                f"Selected inputs total {total} sats, cannot pay fee of {fee} sats"
            )
        if amount < STANDARD_DUST_LIMIT:
            logger.warning(f"Output of {amount} sats is below the dust limit")

        tx = BitcoinTransaction(
            inputs=[TxInput(txid=u.tx_hash, vout=u.output_index) for u in selected],
            outputs=[TxOutput(value=amount, script_pubkey=recipient_script)],
        )

        preimages = []
        for index, utxo in enumerate(selected):
            raw = legacy_sighash_preimage(tx, index, utxo.spend_script)
            preimages.append(
                SigningPreimage(preimage_hash=hash256(raw), signer_key_id=signer.key_id, raw=raw)
            )

        logger.info(
            f"Built {len(selected)}-input transaction paying {satoshi_to_btc(amount)} "
            f"{self.chain.symbol} to {recipient} (fee {fee} sats)"
        )

        provider_data = {
            "request": {
                "amount": satoshi_to_btc(amount),
                "asset": self.chain.symbol,
                "recipientAddress": recipient,
                "fee": fee,
                "description": description,
                "coin": self.chain.coin_id,
                "account": 0,
            },
            "txs": [{"serialized": tx.serialize().hex()}],
            "recipients": [{"address": recipient, "asset": self.chain.symbol, "amount": amount}],
            "cryptoKind": CryptoKind.ECDSA.value,
        }

        return UnsignedTransaction(
            chain=self.chain,
            signer=signer,
            payload=tx,
            preimages=preimages,
            spent_outputs=list(selected),
            description=description,
            provider_data=provider_data,
        )


class AccountTransactionBuilder:
    """Builds EIP-155 legacy transactions for EVM chains."""

    def __init__(self, chain: ChainParams):
        if chain.chain_id is None:
            raise ValueError("Account-model chains need a chain_id")
        self.chain = chain

    def build(
        self,
        signer: AddressInfo,
        nonce: int,
        to: str | None,
        value: int,
        gas_price: int,
        gas_limit: int,
        data: bytes = b"",
        description: str = "",
        balance: int | None = None,
    ) -> UnsignedTransaction:
        """
        Args:
            to: Recipient, or None to create a contract from `data`
            balance: Sender balance in wei; checked against value + max gas cost when given
        """
        recipient = validate_address(to, self.chain) if to else None
        if value < 0 or nonce < 0:
            raise ValueError("Value and nonce must be non-negative")

        max_cost = value + gas_price * gas_limit
        if balance is not None and max_cost > balance:
            raise InsufficientFunds(f"Balance {balance} wei cannot cover {max_cost} wei")

        tx = EvmTransaction(
            nonce=nonce,
            gas_price=gas_price,
            gas_limit=gas_limit,
            to=recipient,
            value=value,
            data=data,
            chain_id=self.chain.chain_id,
        )
        payload = tx.signing_payload()

        logger.info(
            f"Built transaction nonce={nonce} to={recipient or '<create>'} value={value} wei "
            f"data={len(data)} bytes"
        )

        provider_data = {
            "request": {
                "amount": str(value),
                "asset": self.chain.symbol,
                "recipientAddress": recipient or "",
                "nonce": nonce,
                "gasPrice": str(gas_price),
                "gasLimit": gas_limit,
                "description": description,
            },
            "txs": [{"serialized": payload.hex()}],
            "cryptoKind": CryptoKind.ECDSA.value,
        }

        return UnsignedTransaction(
            chain=self.chain,
            signer=signer,
            payload=tx,
            preimages=[
                SigningPreimage(
                    preimage_hash=keccak256(payload), signer_key_id=signer.key_id, raw=payload
                )
            ],
            description=description,
            provider_data=provider_data,
        )
