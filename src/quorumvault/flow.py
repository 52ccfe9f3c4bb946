"""
Per-account signing flows.

Each task runs vault -> address -> funding -> build -> quorum approval ->
assembly -> broadcast -> confirmation. The account record is rewritten
after every step with an external side effect, so rerunning a task after a
crash resumes where it stopped instead of paying, deploying or minting twice.

Tasks are processed strictly one after another: concurrent quorum
operations would compete for the same approvers.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from eth_utils import to_checksum_address
from loguru import logger
from pydantic import BaseModel, Field, model_validator

from quorumvault.address import validate_address
from quorumvault.assembler import SignatureAssembler
from quorumvault.backends.base import LedgerClient
from quorumvault.backends.evm_rpc import EvmRpcClient
from quorumvault.backends.explorer import ExplorerClient
from quorumvault.backends.quorum import QuorumServiceClient
from quorumvault.config import Settings, get_settings
from quorumvault.coordinator import ApprovalMetadata, QuorumSigningCoordinator
from quorumvault.errors import BroadcastFailed, NetworkError, PollCancelled, QuorumVaultError
from quorumvault.models import (
    AddressInfo,
    ChainKind,
    ChainParams,
    CryptoKind,
    FinalizedTransaction,
    UnsignedTransaction,
    Vault,
    VaultHierarchy,
    VaultSpec,
)
from quorumvault.poll import CancellationToken
from quorumvault.records import AccountRecord, JsonFileRecordRepository, RecordStore
from quorumvault.reservations import UtxoReservations
from quorumvault.tx.builder import (
    AccountTransactionBuilder,
    CoinSelectionStrategy,
    SelectOutpoints,
    SpendAll,
    UtxoTransactionBuilder,
    wei_to_eth,
)
from quorumvault.tx.ethereum import (
    contract_address,
    decode_signed_transaction,
    encode_burn,
    encode_mint,
    encode_transfer,
)
from quorumvault.vault import VaultLifecycleManager


class Step(str, Enum):
    """Side-effecting steps; each is recorded once it has confirmed."""

    DEPLOY = "deploy"
    MINT = "mint"
    TOKEN_TRANSFER = "token_transfer"
    BURN = "burn"
    TRANSFER = "transfer"


class BitcoinPaymentTask(BaseModel):
    """Sweep the vault's Bitcoin address to `recipient`, less `fee`."""

    name: str = Field(..., min_length=1)
    recipient: str
    fee: int | None = Field(default=None, ge=0, description="Fee in sats; None uses settings")
    outpoints: list[str] = Field(default_factory=list, description="txid:vout to spend")
    description: str = ""
    hierarchy: VaultHierarchy = VaultHierarchy.BIP44
    crypto_kind: CryptoKind = CryptoKind.ECDSA


class EthereumTokenTask(BaseModel):
    """
    Token lifecycle on an EVM chain: deploy, mint to self, transfer tokens,
    burn, then transfer native value. Zero amounts skip a step.
    """

    name: str = Field(..., min_length=1)
    recipient: str | None = None
    value_wei: int = Field(default=0, ge=0)
    token_bytecode: str | None = None
    mint_amount: int = Field(default=0, ge=0)
    token_transfer_amount: int = Field(default=0, ge=0)
    burn_amount: int = Field(default=0, ge=0)
    description: str = ""
    hierarchy: VaultHierarchy = VaultHierarchy.BIP44
    crypto_kind: CryptoKind = CryptoKind.ECDSA

    @model_validator(mode="after")
    def check_steps(self) -> EthereumTokenTask:
        if (self.value_wei or self.token_transfer_amount) and not self.recipient:
            raise ValueError("recipient is required for transfers")
        if (self.mint_amount or self.burn_amount or self.token_transfer_amount) and not (
            self.token_bytecode
        ):
            raise ValueError("token_bytecode is required for token steps")
        return self


AccountTask = BitcoinPaymentTask | EthereumTokenTask


@dataclass
class FlowResult:
    name: str
    chain: ChainKind
    success: bool = False
    address: str | None = None
    tx_hashes: list[str] = field(default_factory=list)
    error: str | None = None


class AccountFlow:
    def __init__(
        self,
        settings: Settings,
        vaults: VaultLifecycleManager,
        coordinator: QuorumSigningCoordinator,
        store: RecordStore,
        explorer: LedgerClient | None = None,
        evm: EvmRpcClient | None = None,
        assembler: SignatureAssembler | None = None,
        reservations: UtxoReservations | None = None,
        strategy: CoinSelectionStrategy | None = None,
    ):
        self.settings = settings
        self.vaults = vaults
        self.coordinator = coordinator
        self.store = store
        self.explorer = explorer
        self.evm = evm
        self.assembler = assembler or SignatureAssembler()
        self.reservations = reservations or UtxoReservations()
        self.strategy = strategy or SpendAll()
        self.bitcoin = settings.bitcoin_chain()
        self.ethereum = settings.ethereum_chain()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> AccountFlow:
        settings = settings or get_settings()
        quorum = QuorumServiceClient(
            settings.quorum_url,
            username=settings.quorum_user,
            password=settings.quorum_password,
            timeout=settings.quorum_timeout,
        )
        store = RecordStore(JsonFileRecordRepository(settings.records_path))
        return cls(
            settings=settings,
            vaults=VaultLifecycleManager(quorum, store, settings.poll_policy("vault")),
            coordinator=QuorumSigningCoordinator(quorum, settings.poll_policy("sign")),
            store=store,
            explorer=ExplorerClient(
                settings.explorer_url,
                token=settings.explorer_token,
                blockchain_id=settings.bitcoin_chain().blockchain_id,
            ),
            evm=EvmRpcClient(settings.evm_rpc_url),
        )

    async def close(self) -> None:
        await self.vaults.client.close()
        if self.explorer is not None:
            await self.explorer.close()
        if self.evm is not None:
            await self.evm.close()

    async def run_task(
        self, task: AccountTask, token: CancellationToken | None = None
    ) -> FlowResult:
        """
        Run one account's flow.

        Domain errors fail this account only and are reported in the result;
        cancellation propagates so the runner can stop.
        """
        if isinstance(task, BitcoinPaymentTask):
            result = FlowResult(name=task.name, chain=ChainKind.BITCOIN)
        else:
            result = FlowResult(name=task.name, chain=ChainKind.ETHEREUM)

        try:
            if isinstance(task, BitcoinPaymentTask):
                await self._run_bitcoin(task, result, token)
            else:
                await self._run_ethereum(task, result, token)
        except PollCancelled:
            raise
        except BroadcastFailed as e:
            logger.error(f"Account {task.name} failed: {e}")
            result.tx_hashes.append(e.finalized.tx_hash)
            result.error = str(e)
            return result
        except (QuorumVaultError, ValueError) as e:
            logger.error(f"Account {task.name} failed: {e}")
            result.error = str(e)
            return result

        result.success = True
        logger.info(f"Account {task.name} done")
        return result

    def _vault_spec(self, record_name: str, task: AccountTask) -> VaultSpec:
        return VaultSpec(
            name=record_name,
            hierarchy=task.hierarchy,
            crypto_kind=task.crypto_kind,
            description=task.description or record_name,
            approvers=self.settings.approvers,
            required_approvals=self.settings.required_approvals,
        )

    async def _prepare(
        self,
        task: AccountTask,
        chain: ChainParams,
        result: FlowResult,
        token: CancellationToken | None,
    ) -> tuple[AccountRecord, Vault, AddressInfo]:
        record = await self.store.active(task.name, chain.kind)
        vault = await self.vaults.ensure_vault(self._vault_spec(record.name, task), token)
        info = await self.vaults.address_for(record.name, vault, chain)
        result.address = info.address
        refreshed = await self.store.get(record.name)
        return refreshed or record, vault, info

    async def _run_bitcoin(
        self, task: BitcoinPaymentTask, result: FlowResult, token: CancellationToken | None
    ) -> None:
        chain = self.bitcoin
        validate_address(task.recipient, chain)
        ledger = self._require(self.explorer, "explorer")

        record, vault, info = await self._prepare(task, chain, result, token)
        record = await self._resume_pending(record, ledger, token)
        if record.transfer_tx_hash:
            logger.info(f"{record.name} already paid in {record.transfer_tx_hash}")
            result.tx_hashes.append(record.transfer_tx_hash)
            return

        funding = await ledger.await_funding(
            info.address, self.settings.poll_policy("funding"), token
        )
        await self.store.update(record.name, balance_sats=funding.balance)

        strategy = SelectOutpoints.parse(task.outpoints) if task.outpoints else self.strategy
        fee = self.settings.utxo_fee if task.fee is None else task.fee
        unsigned = UtxoTransactionBuilder(chain, strategy).build(
            self.reservations.available(funding.unspent_outputs),
            task.recipient,
            fee,
            info,
            description=task.description or f"Payment from {record.name}",
        )

        self.reservations.reserve(unsigned.spent_outputs, record.name)
        try:
            record = await self._sign_and_send(
                record.name, vault, unsigned, Step.TRANSFER, ledger, token
            )
        finally:
            await self._release_settled(record.name)
        result.tx_hashes.append(record.last_tx_hash)

    async def _release_settled(self, record_name: str) -> None:
        """Release the record's outputs unless its transaction is still in flight."""
        current = await self.store.get(record_name)
        if current is not None and current.pending_tx_hash:
            logger.info(
                f"Holding outputs of {record_name} until {current.pending_tx_hash} settles"
            )
            return
        self.reservations.release(record_name)

    async def _run_ethereum(
        self, task: EthereumTokenTask, result: FlowResult, token: CancellationToken | None
    ) -> None:
        chain = self.ethereum
        recipient = validate_address(task.recipient, chain) if task.recipient else None
        evm = self._require(self.evm, "EVM RPC")

        record, vault, info = await self._prepare(task, chain, result, token)
        record = await self._resume_pending(record, evm, token)

        funding = await evm.await_funding(info.address, self.settings.poll_policy("funding"), token)
        await self.store.update(record.name, balance_eth=str(wei_to_eth(funding.balance)))

        async def send(step: Step, to: str | None, value: int, data: bytes, gas_limit: int):
            updated = await self._send_account_tx(
                record.name, vault, info, step, to, value, data, gas_limit, token
            )
            result.tx_hashes.append(updated.last_tx_hash)
            return updated

        if task.token_bytecode and not record.contract_address:
            bytecode = bytes.fromhex(task.token_bytecode.removeprefix("0x"))
            record = await send(Step.DEPLOY, None, 0, bytecode, self.settings.deploy_gas_limit)
            logger.info(f"Token contract of {record.name} deployed at {record.contract_address}")

        if task.mint_amount and not record.minted:
            record = await send(
                Step.MINT,
                record.contract_address,
                0,
                encode_mint(info.address, task.mint_amount),
                self.settings.call_gas_limit,
            )

        if task.token_transfer_amount and not record.token_transferred:
            record = await send(
                Step.TOKEN_TRANSFER,
                record.contract_address,
                0,
                encode_transfer(recipient, task.token_transfer_amount),
                self.settings.call_gas_limit,
            )

        if task.burn_amount and not record.burned:
            record = await send(
                Step.BURN,
                record.contract_address,
                0,
                encode_burn(task.burn_amount),
                self.settings.call_gas_limit,
            )

        if task.value_wei and not record.transfer_tx_hash:
            record = await send(
                Step.TRANSFER, recipient, task.value_wei, b"", self.settings.transfer_gas_limit
            )

        balance = await evm.get_balance(info.address)
        await self.store.update(record.name, balance_eth=str(wei_to_eth(balance)))

    async def _send_account_tx(
        self,
        record_name: str,
        vault: Vault,
        info: AddressInfo,
        step: Step,
        to: str | None,
        value: int,
        data: bytes,
        gas_limit: int,
        token: CancellationToken | None,
    ) -> AccountRecord:
        evm = self._require(self.evm, "EVM RPC")
        nonce = await evm.get_nonce(info.address)
        gas_price = self.settings.gas_price_wei
        if gas_price is None:
            gas_price = await evm.get_gas_price()
        balance = await evm.get_balance(info.address)

        unsigned = AccountTransactionBuilder(self.ethereum).build(
            info,
            nonce,
            to,
            value,
            gas_price,
            gas_limit,
            data=data,
            description=f"{step.value} from {record_name}",
            balance=balance,
        )
        return await self._sign_and_send(record_name, vault, unsigned, step, evm, token)

    async def _sign_and_send(
        self,
        record_name: str,
        vault: Vault,
        unsigned: UnsignedTransaction,
        step: Step,
        ledger: LedgerClient,
        token: CancellationToken | None,
    ) -> AccountRecord:
        metadata = ApprovalMetadata(vault_id=vault.id, description=unsigned.description)
        operation = await self.coordinator.sign(unsigned, metadata, token=token)
        finalized = self.assembler.finalize(unsigned, operation)

        await self.store.update(
            record_name,
            pending_tx_raw=finalized.raw_hex,
            pending_tx_hash=finalized.tx_hash,
            pending_step=step.value,
        )

        try:
            await ledger.broadcast(finalized)
        except NetworkError as e:
            raise BroadcastFailed(f"Broadcast of {finalized.tx_hash} failed: {e}", finalized) from e

        confirmed = await ledger.await_confirmation(
            finalized.tx_hash, self.settings.poll_policy("confirmation"), token
        )
        if not confirmed:
            await self._clear_pending(record_name, finalized.tx_hash)
            raise BroadcastFailed(f"Transaction {finalized.tx_hash} failed on chain", finalized)

        return await self._complete_step(record_name, step, finalized)

    async def _resume_pending(
        self, record: AccountRecord, ledger: LedgerClient, token: CancellationToken | None
    ) -> AccountRecord:
        """Settle a transaction left pending by an earlier run."""
        if not record.pending_tx_hash:
            return record

        step = Step(record.pending_step or Step.TRANSFER.value)
        finalized = FinalizedTransaction(
            chain=record.chain,
            raw=bytes.fromhex(record.pending_tx_raw or ""),
            tx_hash=record.pending_tx_hash,
        )
        logger.info(f"Resuming pending {step.value} tx {finalized.tx_hash} of {record.name}")

        if finalized.raw:
            try:
                await ledger.broadcast(finalized)
            except NetworkError as e:
                # Usually means the ledger already has it
                logger.warning(f"Rebroadcast of {finalized.tx_hash} failed: {e}")

        confirmed = await ledger.await_confirmation(
            finalized.tx_hash, self.settings.poll_policy("confirmation"), token
        )
        if confirmed:
            settled = await self._complete_step(record.name, step, finalized)
        else:
            logger.warning(f"Pending {step.value} tx {finalized.tx_hash} failed, retrying step")
            settled = await self._clear_pending(record.name, finalized.tx_hash)
        self.reservations.release(record.name)
        return settled

    async def _clear_pending(self, record_name: str, tx_hash: str) -> AccountRecord:
        return await self.store.update(
            record_name,
            pending_tx_raw=None,
            pending_tx_hash=None,
            pending_step=None,
            last_tx_hash=tx_hash,
        )

    async def _complete_step(
        self, record_name: str, step: Step, finalized: FinalizedTransaction
    ) -> AccountRecord:
        changes: dict[str, object] = {
            "pending_tx_raw": None,
            "pending_tx_hash": None,
            "pending_step": None,
            "last_tx_hash": finalized.tx_hash,
        }
        if step == Step.DEPLOY:
            changes["contract_address"] = await self._deployed_address(finalized)
        elif step == Step.MINT:
            changes["minted"] = True
        elif step == Step.TOKEN_TRANSFER:
            changes["token_transferred"] = True
        elif step == Step.BURN:
            changes["burned"] = True
        else:
            changes["transfer_tx_hash"] = finalized.tx_hash
        return await self.store.update(record_name, **changes)

    async def _deployed_address(self, finalized: FinalizedTransaction) -> str:
        evm = self._require(self.evm, "EVM RPC")
        receipt = await evm.get_receipt(finalized.tx_hash)
        if receipt and receipt.get("contractAddress"):
            return to_checksum_address(receipt["contractAddress"])

        signed = decode_signed_transaction(finalized.raw)
        sender = signed.sender()
        if sender is None:
            raise BroadcastFailed(
                f"Cannot determine contract address for {finalized.tx_hash}", finalized
            )
        return contract_address(sender, signed.tx.nonce)

    @staticmethod
    def _require(client, name: str):
        if client is None:
            raise QuorumVaultError(f"No {name} client configured")
        return client


class FlowRunner:
    """Processes account tasks one at a time, in order."""

    def __init__(self, flow: AccountFlow):
        self.flow = flow

    async def run(
        self, tasks: Sequence[AccountTask], token: CancellationToken | None = None
    ) -> list[FlowResult]:
        results: list[FlowResult] = []
        for task in tasks:
            if token is not None and token.cancelled:
                logger.warning(f"Run cancelled, skipping {len(tasks) - len(results)} task(s)")
                break
            logger.info(f"Processing account {task.name}")
            try:
                results.append(await self.flow.run_task(task, token))
            except PollCancelled as e:
                logger.warning(f"Run cancelled while processing {task.name}: {e}")
                break
            except Exception as e:
                logger.exception(f"Unexpected error processing account {task.name}")
                chain = (
                    ChainKind.BITCOIN
                    if isinstance(task, BitcoinPaymentTask)
                    else ChainKind.ETHEREUM
                )
                results.append(FlowResult(name=task.name, chain=chain, error=repr(e)))

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Processed {len(results)} account(s), {succeeded} succeeded")
        return results


async def run_tasks(
    tasks: Sequence[AccountTask],
    settings: Settings | None = None,
    token: CancellationToken | None = None,
) -> list[FlowResult]:
    """Build the flow from settings, run `tasks`, and close the clients."""
    flow = AccountFlow.from_settings(settings)
    try:
        return await FlowRunner(flow).run(tasks, token)
    finally:
        await flow.close()
