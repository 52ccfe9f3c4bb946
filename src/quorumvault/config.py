"""
Configuration management using pydantic-settings.

Every field can be set from the environment with the QUORUMVAULT_ prefix,
e.g. QUORUMVAULT_QUORUM_URL or QUORUMVAULT_SIGN_POLL_INTERVAL.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from quorumvault.constants import DEFAULT_UTXO_FEE, ETH_TRANSFER_GAS
from quorumvault.models import ChainParams, NetworkType
from quorumvault.poll import PollPolicy

PollKind = Literal["vault", "sign", "funding", "confirmation"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="QUORUMVAULT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Quorum key-management service
    quorum_url: str = "https://localhost/casp/api/v1.0/mng"
    quorum_user: str | None = None
    quorum_password: str | None = None
    quorum_timeout: float = Field(default=30.0, gt=0)
    approvers: list[str] = Field(default_factory=list)
    required_approvals: int = Field(default=1, ge=1)

    # UTXO chain
    bitcoin_network: NetworkType = NetworkType.TESTNET
    explorer_url: str = "https://api.blockset.com"
    explorer_token: str = ""
    utxo_fee: int = Field(default=DEFAULT_UTXO_FEE, ge=0, description="Fee in sats")

    # EVM chain
    evm_rpc_url: str = "http://127.0.0.1:8545"
    evm_chain_id: int = 11155111
    gas_price_wei: int | None = Field(
        default=None, ge=0, description="Fixed gas price; None asks the node"
    )
    transfer_gas_limit: int = ETH_TRANSFER_GAS
    deploy_gas_limit: int = 3_000_000
    call_gas_limit: int = 100_000

    records_path: Path = Path("accounts.json")
    log_level: str = "INFO"

    # Poll policies: interval in seconds, None limit means unbounded
    vault_poll_interval: float = Field(default=5.0, gt=0)
    vault_poll_max_attempts: int | None = None
    vault_poll_deadline: float | None = None
    sign_poll_interval: float = Field(default=1.0, gt=0)
    sign_poll_max_attempts: int | None = None
    sign_poll_deadline: float | None = 3600.0
    funding_poll_interval: float = Field(default=10.0, gt=0)
    funding_poll_max_attempts: int | None = None
    funding_poll_deadline: float | None = None
    confirmation_poll_interval: float = Field(default=5.0, gt=0)
    confirmation_poll_max_attempts: int | None = None
    confirmation_poll_deadline: float | None = 1800.0

    def poll_policy(self, kind: PollKind) -> PollPolicy:
        return PollPolicy(
            interval=getattr(self, f"{kind}_poll_interval"),
            max_attempts=getattr(self, f"{kind}_poll_max_attempts"),
            deadline=getattr(self, f"{kind}_poll_deadline"),
        )

    def bitcoin_chain(self) -> ChainParams:
        return ChainParams.bitcoin(self.bitcoin_network)

    def ethereum_chain(self) -> ChainParams:
        return ChainParams.ethereum(self.evm_chain_id)


def get_settings() -> Settings:
    return Settings()
