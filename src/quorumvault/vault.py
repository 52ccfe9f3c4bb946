"""
Vault lifecycle: find or create the vault, wait for the quorum to join, and
derive the vault's chain address exactly once per (vault, chain).
"""

from __future__ import annotations

from loguru import logger

from quorumvault.address import derive_address
from quorumvault.backends.quorum import QuorumServiceClient
from quorumvault.crypto import CryptoError, decode_der_public_key
from quorumvault.errors import AddressDerivationFailed, NetworkError, VaultUnavailable
from quorumvault.models import AddressInfo, ChainParams, CryptoKind, Vault, VaultSpec
from quorumvault.poll import CancellationToken, PollPolicy, poll_until
from quorumvault.records import AccountRecord, RecordStore


class VaultLifecycleManager:
    def __init__(self, client: QuorumServiceClient, store: RecordStore, policy: PollPolicy):
        self.client = client
        self.store = store
        self.policy = policy

    async def ensure_vault(self, spec: VaultSpec, token: CancellationToken | None = None) -> Vault:
        """
        Return the active vault named `spec.name`, creating it if needed.

        Creation only starts the process; every quorum member must join
        before the vault becomes active.

        Raises:
            VaultUnavailable: the service reports that creation failed
        """
        vault = await self.client.find_vault(spec.name)
        if vault is None:
            vault_id = await self.client.create_vault(spec)
        elif vault.is_active:
            logger.info(f"Using active vault {vault.name} ({vault.id})")
            return vault
        else:
            vault_id = vault.id

        def report(pending: Vault) -> None:
            logger.info(
                f"Vault {spec.name} is {pending.status.value}, waiting for: "
                f"{', '.join(pending.pending_approvers) or 'quorum'}"
            )

        vault = await poll_until(
            lambda: self.client.get_vault(vault_id),
            lambda v: v.is_active or v.failure_reason is not None,
            self.policy,
            token=token,
            on_pending=report,
            description=f"activation of vault {spec.name}",
        )

        if vault.failure_reason is not None:
            raise VaultUnavailable(f"Vault {spec.name} failed: {vault.failure_reason}")

        logger.info(f"Vault {vault.name} ({vault.id}) is active")
        return vault

    async def ensure_address(self, vault: Vault, chain: ChainParams) -> AddressInfo:
        """
        Fetch the vault's public key and derive its address on `chain`.

        BIP44 vaults hand out a new key on every call, so callers go through
        address_for, which caches the result.
        """
        try:
            if vault.is_bip44:
                key = await self.client.derive_public_key(vault.id, chain.coin_id)
            else:
                key = await self.client.get_public_key(vault.id)
        except NetworkError as e:
            raise AddressDerivationFailed(f"Could not fetch key for vault {vault.id}: {e}") from e

        try:
            key_bytes = bytes.fromhex(key)
            if vault.crypto_kind == CryptoKind.ECDSA:
                key_bytes = decode_der_public_key(key_bytes)
        except (ValueError, TypeError, CryptoError) as e:
            raise AddressDerivationFailed(f"Bad public key from vault {vault.id}: {e}") from e

        info = AddressInfo(
            key_id=key,
            public_key_raw=key_bytes.hex(),
            address=derive_address(key_bytes, chain),
            chain=chain.kind,
        )
        logger.info(f"Address of vault {vault.name} on {chain.ledger} is {info.address}")
        return info

    async def address_for(self, record_name: str, vault: Vault, chain: ChainParams) -> AddressInfo:
        record = await self.store.get(record_name)
        if record is None:
            raise KeyError(f"No account record named {record_name}")

        cached = record.address_info()
        if cached is not None and record.vault_id == vault.id:
            return cached

        info = await self.ensure_address(vault, chain)
        await self.store.update(
            record_name,
            vault_id=vault.id,
            address=info.address,
            key_id=info.key_id,
            public_key_der=info.key_id if vault.crypto_kind == CryptoKind.ECDSA else None,
            public_key_raw=info.public_key_raw,
        )
        return info

    async def retire(self, name: str) -> AccountRecord:
        """Start over locally under a fresh name; the remote vault is left alone."""
        return await self.store.retire(name)
