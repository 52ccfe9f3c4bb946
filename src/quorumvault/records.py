"""
Persisted account records.

One record per vault. The flow rewrites the record after every
state-advancing step (address derived, transaction pending, contract
deployed, minted, burned) so a restarted run resumes instead of repeating
completed side effects.
"""

from __future__ import annotations

import asyncio
import fcntl
import os
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from quorumvault.models import AddressInfo, ChainKind


class AccountRecord(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str
    base_name: str
    chain: ChainKind
    vault_id: str | None = None
    address: str | None = None
    key_id: str | None = None
    # Key exactly as returned by the quorum service (DER hex for ECDSA)
    public_key_der: str | None = None
    public_key_raw: str | None = None
    contract_address: str | None = None
    minted: bool = False
    burned: bool = False
    token_transferred: bool = False
    balance_eth: str | None = None
    balance_sats: int | None = None
    transfer_tx_hash: str | None = None
    last_tx_hash: str | None = None
    # Signed but not yet confirmed; kept for manual re-check or rebroadcast
    pending_tx_raw: str | None = None
    pending_tx_hash: str | None = None
    pending_step: str | None = None
    retired: bool = False

    def address_info(self) -> AddressInfo | None:
        if not (self.address and self.key_id and self.public_key_raw):
            return None
        return AddressInfo(
            key_id=self.key_id,
            public_key_raw=self.public_key_raw,
            address=self.address,
            chain=self.chain,
        )


class RecordSet(BaseModel):
    accounts: list[AccountRecord] = Field(default_factory=list)

    def find(self, name: str) -> AccountRecord | None:
        for record in self.accounts:
            if record.name == name:
                return record
        return None

    def replace(self, record: AccountRecord) -> None:
        for i, existing in enumerate(self.accounts):
            if existing.name == record.name:
                self.accounts[i] = record
                return
        self.accounts.append(record)

    def next_name(self, base_name: str) -> str:
        """`base`, then `base-2`, `base-3`, ... for each retired predecessor."""
        used = [r for r in self.accounts if r.base_name == base_name]
        return base_name if not used else f"{base_name}-{len(used) + 1}"


class AccountRecordRepository(ABC):
    @abstractmethod
    def load(self) -> RecordSet:
        """Read all records"""

    @abstractmethod
    def save(self, records: RecordSet) -> None:
        """Replace all records"""


class InMemoryRecordRepository(AccountRecordRepository):
    def __init__(self, records: RecordSet | None = None):
        self._records = records or RecordSet()

    def load(self) -> RecordSet:
        return self._records.model_copy(deep=True)

    def save(self, records: RecordSet) -> None:
        self._records = records.model_copy(deep=True)


class JsonFileRecordRepository(AccountRecordRepository):
    """JSON file guarded by an fcntl lock file for cross-process writers."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock_path = self.path.with_name(self.path.name + ".lock")

    @contextmanager
    def _locked(self, exclusive: bool) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._lock_path, "a") as lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
            try:
                yield
            finally:
                fcntl.flock(lock_file, fcntl.LOCK_UN)

    def load(self) -> RecordSet:
        with self._locked(exclusive=False):
            if not self.path.exists():
                return RecordSet()
            return RecordSet.model_validate_json(self.path.read_text(encoding="utf-8"))

    def save(self, records: RecordSet) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with self._locked(exclusive=True):
            tmp_path.write_text(records.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
            os.replace(tmp_path, self.path)


class RecordStore:
    """Serializes read-modify-write cycles on a repository."""

    def __init__(self, repository: AccountRecordRepository):
        self.repository = repository
        self._lock = asyncio.Lock()

    async def get(self, name: str) -> AccountRecord | None:
        async with self._lock:
            return self.repository.load().find(name)

    async def active(self, base_name: str, chain: ChainKind) -> AccountRecord:
        """The live record for `base_name`, created if there is none."""
        async with self._lock:
            records = self.repository.load()
            for record in records.accounts:
                if record.base_name == base_name and not record.retired:
                    return record

            record = AccountRecord(
                name=records.next_name(base_name), base_name=base_name, chain=chain
            )
            records.replace(record)
            self.repository.save(records)
            logger.debug(f"Created account record {record.name}")
            return record

    async def update(self, name: str, **changes: Any) -> AccountRecord:
        async with self._lock:
            records = self.repository.load()
            record = records.find(name)
            if record is None:
                raise KeyError(f"No account record named {name}")
            updated = record.model_copy(update=changes)
            records.replace(updated)
            self.repository.save(records)
            return updated

    async def retire(self, name: str) -> AccountRecord:
        """Mark `name` retired and allocate its successor record."""
        async with self._lock:
            records = self.repository.load()
            record = records.find(name)
            if record is None:
                raise KeyError(f"No account record named {name}")
            records.replace(record.model_copy(update={"retired": True}))

            successor = AccountRecord(
                name=records.next_name(record.base_name),
                base_name=record.base_name,
                chain=record.chain,
            )
            records.replace(successor)
            self.repository.save(records)
            logger.info(f"Retired {name}; next run uses {successor.name}")
            return successor
