"""
In-process reservation of unspent outputs.

Outputs selected for a transaction stay reserved until that signing attempt
reaches a terminal outcome, so a second payment cannot select them while
the quorum is still approving the first.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from loguru import logger

from quorumvault.errors import QuorumVaultError
from quorumvault.models import UnspentOutput


class ReservationConflict(QuorumVaultError):
    """An outpoint is already held by another owner."""


class UtxoReservations:
    def __init__(self) -> None:
        self._owners: dict[tuple[str, int], str] = {}

    def is_reserved(self, outpoint: tuple[str, int]) -> bool:
        return outpoint in self._owners

    def available(self, utxos: Iterable[UnspentOutput]) -> list[UnspentOutput]:
        return [u for u in utxos if u.outpoint not in self._owners]

    def reserve(self, utxos: Sequence[UnspentOutput], owner: str) -> None:
        """Reserve all of `utxos` for `owner`, or none of them."""
        for utxo in utxos:
            holder = self._owners.get(utxo.outpoint)
            if holder is not None and holder != owner:
                raise ReservationConflict(
                    f"{utxo.tx_hash}:{utxo.output_index} is reserved by {holder}"
                )
        for utxo in utxos:
            self._owners[utxo.outpoint] = owner
        logger.debug(f"Reserved {len(utxos)} output(s) for {owner}")

    def release(self, owner: str) -> int:
        held = [outpoint for outpoint, holder in self._owners.items() if holder == owner]
        for outpoint in held:
            del self._owners[outpoint]
        if held:
            logger.debug(f"Released {len(held)} output(s) held by {owner}")
        return len(held)

    def __len__(self) -> int:
        return len(self._owners)
