"""
EVM legacy transactions (EIP-155) and token-contract call data.

Signing payload: rlp([nonce, gasPrice, gas, to, value, data, chainId, 0, 0])
Signed envelope: rlp([nonce, gasPrice, gas, to, value, data, v, r, s])
with v = recovery_id + 35 + 2 * chainId.
"""

from __future__ import annotations

from dataclasses import dataclass

import rlp
from eth_utils import big_endian_to_int, function_signature_to_4byte_selector, to_checksum_address
from rlp.exceptions import DecodingError

from quorumvault.constants import EIP155_OFFSET
from quorumvault.crypto import keccak256, recover_public_key

TRANSFER_SIGNATURE = "transfer(address,uint256)"
MINT_SIGNATURE = "mint(address,uint256)"
BURN_SIGNATURE = "burn(uint256)"


class EvmDecodeError(Exception):
    pass


@dataclass
class EvmTransaction:
    nonce: int
    gas_price: int
    gas_limit: int
    to: str | None  # None for contract creation
    value: int
    data: bytes = b""
    chain_id: int | None = 1

    def _fields(self) -> list[int | bytes]:
        to_bytes = bytes.fromhex(self.to[2:]) if self.to else b""
        return [self.nonce, self.gas_price, self.gas_limit, to_bytes, self.value, self.data]

    def signing_payload(self) -> bytes:
        if self.chain_id is None:
            return rlp.encode(self._fields())
        return rlp.encode(self._fields() + [self.chain_id, 0, 0])

    def signing_hash(self) -> bytes:
        return keccak256(self.signing_payload())

    def v_for(self, recovery_id: int) -> int:
        if self.chain_id is None:
            return 27 + recovery_id
        return recovery_id + EIP155_OFFSET + 2 * self.chain_id

    def encode_signed(self, v: int, r: int, s: int) -> bytes:
        return rlp.encode(self._fields() + [v, r, s])


@dataclass
class SignedEvmTransaction:
    tx: EvmTransaction
    v: int
    r: int
    s: int

    @property
    def recovery_id(self) -> int:
        if self.tx.chain_id is None:
            return self.v - 27
        return self.v - EIP155_OFFSET - 2 * self.tx.chain_id

    def sender(self) -> str | None:
        """Recover the sender address from the signature."""
        pubkey = recover_public_key(self.tx.signing_hash(), self.r, self.s, self.recovery_id)
        if pubkey is None:
            return None
        return to_checksum_address(keccak256(pubkey[1:])[-20:])


def decode_signed_transaction(raw: bytes) -> SignedEvmTransaction:
    try:
        items = rlp.decode(raw)
    except DecodingError as e:
        raise EvmDecodeError(f"Invalid RLP: {e}") from e

    if not isinstance(items, list) or len(items) != 9:
        raise EvmDecodeError("Expected a 9-item legacy transaction")

    nonce, gas_price, gas_limit, to, value, data, v, r, s = items
    v_int = big_endian_to_int(v)
    chain_id = (v_int - EIP155_OFFSET) // 2 if v_int >= EIP155_OFFSET else None

    tx = EvmTransaction(
        nonce=big_endian_to_int(nonce),
        gas_price=big_endian_to_int(gas_price),
        gas_limit=big_endian_to_int(gas_limit),
        to=to_checksum_address(to) if to else None,
        value=big_endian_to_int(value),
        data=bytes(data),
        chain_id=chain_id,
    )
    return SignedEvmTransaction(tx=tx, v=v_int, r=big_endian_to_int(r), s=big_endian_to_int(s))


def encode_call(signature: str, *args: int | str) -> bytes:
    """ABI-encode a call with static address/uint256 arguments."""
    encoded = function_signature_to_4byte_selector(signature)
    for arg in args:
        if isinstance(arg, str):
            address = bytes.fromhex(arg[2:] if arg.startswith("0x") else arg)
            if len(address) != 20:
                raise ValueError(f"Invalid address argument: {arg}")
            encoded += address.rjust(32, b"\x00")
        else:
            if not 0 <= arg < 2**256:
                raise ValueError(f"uint256 out of range: {arg}")
            encoded += arg.to_bytes(32, "big")
    return encoded


def encode_transfer(recipient: str, amount: int) -> bytes:
    return encode_call(TRANSFER_SIGNATURE, recipient, amount)


def encode_mint(recipient: str, amount: int) -> bytes:
    return encode_call(MINT_SIGNATURE, recipient, amount)


def encode_burn(amount: int) -> bytes:
    return encode_call(BURN_SIGNATURE, amount)


def contract_address(sender: str, nonce: int) -> str:
    """Address of a contract created by `sender` at `nonce`."""
    return to_checksum_address(keccak256(rlp.encode([bytes.fromhex(sender[2:]), nonce]))[12:])
