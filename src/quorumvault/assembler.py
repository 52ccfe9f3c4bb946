"""
Signature re-assembly.

Merges quorum signatures into the unsigned transaction and produces the
broadcast-ready encoding. Every signature is verified against the holder's
own public key first; an unverifiable transaction is never returned.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import replace

from loguru import logger

from quorumvault.constants import EIP155_OFFSET, SIGHASH_ALL
from quorumvault.crypto import (
    CryptoError,
    encode_der_signature,
    format_public_key,
    keccak256,
    normalize_low_s,
    recover_public_key,
    split_signature,
    verify_digest,
)
from quorumvault.errors import SignatureMismatch, SigningRejected
from quorumvault.models import (
    ChainKind,
    FinalizedTransaction,
    SigningOperation,
    SigningStatus,
    UnsignedTransaction,
)
from quorumvault.tx.bitcoin import BitcoinTransaction, compute_txid, p2pkh_script_sig
from quorumvault.tx.ethereum import EvmTransaction


def _split(signature: bytes, index: int) -> tuple[int, int, int | None]:
    try:
        return split_signature(signature)
    except (CryptoError, IndexError) as e:
        raise SignatureMismatch(f"Signature {index} is malformed: {e}") from e


class SignatureAssembler:
    def finalize(
        self, unsigned: UnsignedTransaction, operation: SigningOperation
    ) -> FinalizedTransaction:
        """Assemble from a signing operation, which must be COMPLETED and approved."""
        if operation.status == SigningStatus.REJECTED or (
            operation.status == SigningStatus.COMPLETED and not operation.is_approved
        ):
            raise SigningRejected(
                f"Operation {operation.operation_id} was rejected", operation.operation_id
            )
        if operation.status != SigningStatus.COMPLETED:
            raise ValueError(
                f"Operation {operation.operation_id} is {operation.status.value}, not COMPLETED"
            )
        return self.apply(unsigned, operation.signature_bytes())

    def apply(
        self, unsigned: UnsignedTransaction, signatures: Sequence[bytes]
    ) -> FinalizedTransaction:
        if len(signatures) != len(unsigned.preimages):
            raise SignatureMismatch(
                f"Got {len(signatures)} signatures for {len(unsigned.preimages)} preimages"
            )

        if unsigned.chain.kind == ChainKind.BITCOIN:
            finalized = self._apply_utxo(unsigned, signatures)
        else:
            finalized = self._apply_account(unsigned, signatures)

        logger.info(f"Assembled signed transaction {finalized.tx_hash}")
        return finalized

    def _apply_utxo(
        self, unsigned: UnsignedTransaction, signatures: Sequence[bytes]
    ) -> FinalizedTransaction:
        tx = unsigned.payload
        assert isinstance(tx, BitcoinTransaction)

        try:
            pubkey = format_public_key(
                unsigned.signer.public_key_bytes, compressed=unsigned.chain.compressed_keys
            )
        except CryptoError as e:
            raise SignatureMismatch(f"Holder public key is unusable: {e}") from e

        inputs = list(tx.inputs)
        for index, (preimage, signature) in enumerate(zip(unsigned.preimages, signatures)):
            r, s, _ = _split(signature, index)
            s, _ = normalize_low_s(s)

            if not verify_digest(pubkey, preimage.preimage_hash, r, s):
                raise SignatureMismatch(
                    f"Input {index} signature does not verify for {unsigned.signer.address}"
                )

            der = encode_der_signature(r, s) + bytes([SIGHASH_ALL])
            inputs[index] = replace(inputs[index], script_sig=p2pkh_script_sig(der, pubkey))

        raw = replace(tx, inputs=inputs).serialize()
        return FinalizedTransaction(chain=ChainKind.BITCOIN, raw=raw, tx_hash=compute_txid(raw))

    def _apply_account(
        self, unsigned: UnsignedTransaction, signatures: Sequence[bytes]
    ) -> FinalizedTransaction:
        tx = unsigned.payload
        assert isinstance(tx, EvmTransaction)

        digest = unsigned.preimages[0].preimage_hash
        r, s, v = _split(signatures[0], 0)
        low_s, flipped = normalize_low_s(s)

        try:
            expected = format_public_key(unsigned.signer.public_key_bytes, compressed=False)
        except CryptoError as e:
            raise SignatureMismatch(f"Holder public key is unusable: {e}") from e

        if v is None:
            candidates = [0, 1]
        else:
            if v in (0, 1):
                recovery_id = v
            elif v in (27, 28):
                recovery_id = v - 27
            else:
                recovery_id = (v - EIP155_OFFSET) % 2
            candidates = [recovery_id ^ 1 if flipped else recovery_id]

        for recovery_id in candidates:
            if recover_public_key(digest, r, low_s, recovery_id) == expected:
                break
        else:
            raise SignatureMismatch(
                f"Signature does not recover to holder address {unsigned.signer.address}"
            )

        raw = tx.encode_signed(tx.v_for(recovery_id), r, low_s)
        return FinalizedTransaction(
            chain=ChainKind.ETHEREUM, raw=raw, tx_hash="0x" + keccak256(raw).hex()
        )
