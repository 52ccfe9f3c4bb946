"""
Legacy (pre-segwit) Bitcoin transaction serialization and SIGHASH_ALL.

Spends are P2PKH: each input's script-sig is `<DER sig + hashtype> <pubkey>`.
Parent transactions may be segwit-serialized, so the parser accepts the
marker/flag form as well.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field, replace

from quorumvault.constants import SIGHASH_ALL
from quorumvault.crypto import hash256


class TransactionParseError(Exception):
    pass


@dataclass
class TxInput:
    txid: str  # RPC (big-endian) hex
    vout: int
    script_sig: bytes = b""
    sequence: int = 0xFFFFFFFF


@dataclass
class TxOutput:
    value: int
    script_pubkey: bytes


@dataclass
class BitcoinTransaction:
    inputs: list[TxInput] = field(default_factory=list)
    outputs: list[TxOutput] = field(default_factory=list)
    version: int = 2
    locktime: int = 0

    def serialize(self) -> bytes:
        return serialize_transaction(self)

    @property
    def txid(self) -> str:
        return compute_txid(self.serialize())


def varint(n: int) -> bytes:
    """Encode integer as Bitcoin varint."""
    if n < 0xFD:
        return bytes([n])
    elif n <= 0xFFFF:
        return bytes([0xFD]) + struct.pack("<H", n)
    elif n <= 0xFFFFFFFF:
        return bytes([0xFE]) + struct.pack("<I", n)
    else:
        return bytes([0xFF]) + struct.pack("<Q", n)


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    """Read varint at offset, returning (value, new_offset)."""
    first = data[offset]
    offset += 1

    if first < 0xFD:
        return first, offset
    if first == 0xFD:
        return struct.unpack("<H", data[offset : offset + 2])[0], offset + 2
    if first == 0xFE:
        return struct.unpack("<I", data[offset : offset + 4])[0], offset + 4
    return struct.unpack("<Q", data[offset : offset + 8])[0], offset + 8


def push_data(data: bytes) -> bytes:
    """Script push opcode(s) for `data`."""
    if len(data) < 0x4C:
        return bytes([len(data)]) + data
    if len(data) <= 0xFF:
        return bytes([0x4C, len(data)]) + data
    return bytes([0x4D]) + struct.pack("<H", len(data)) + data


def serialize_outpoint(txid: str, vout: int) -> bytes:
    """Serialize outpoint (txid:vout)."""
    # txid is in RPC format (big-endian), need to reverse for raw tx
    return bytes.fromhex(txid)[::-1] + struct.pack("<I", vout)


def serialize_transaction(tx: BitcoinTransaction) -> bytes:
    """Serialize without witness data."""
    result = struct.pack("<I", tx.version)

    result += varint(len(tx.inputs))
    for inp in tx.inputs:
        result += serialize_outpoint(inp.txid, inp.vout)
        result += varint(len(inp.script_sig))
        result += inp.script_sig
        result += struct.pack("<I", inp.sequence)

    result += varint(len(tx.outputs))
    for out in tx.outputs:
        result += struct.pack("<Q", out.value)
        result += varint(len(out.script_pubkey))
        result += out.script_pubkey

    result += struct.pack("<I", tx.locktime)
    return result


def deserialize_transaction(raw: bytes) -> BitcoinTransaction:
    """Parse a raw transaction; witness data, if any, is skipped."""
    try:
        offset = 0
        version = struct.unpack("<I", raw[offset : offset + 4])[0]
        offset += 4

        has_witness = raw[offset] == 0x00 and raw[offset + 1] == 0x01
        if has_witness:
            offset += 2

        input_count, offset = read_varint(raw, offset)
        inputs: list[TxInput] = []
        for _ in range(input_count):
            txid = raw[offset : offset + 32][::-1].hex()
            offset += 32
            vout = struct.unpack("<I", raw[offset : offset + 4])[0]
            offset += 4
            script_len, offset = read_varint(raw, offset)
            script_sig = raw[offset : offset + script_len]
            offset += script_len
            sequence = struct.unpack("<I", raw[offset : offset + 4])[0]
            offset += 4
            inputs.append(TxInput(txid, vout, script_sig, sequence))

        output_count, offset = read_varint(raw, offset)
        outputs: list[TxOutput] = []
        for _ in range(output_count):
            value = struct.unpack("<Q", raw[offset : offset + 8])[0]
            offset += 8
            script_len, offset = read_varint(raw, offset)
            outputs.append(TxOutput(value, raw[offset : offset + script_len]))
            offset += script_len

        if has_witness:
            for _ in range(input_count):
                stack_count, offset = read_varint(raw, offset)
                for _ in range(stack_count):
                    item_len, offset = read_varint(raw, offset)
                    offset += item_len

        locktime = struct.unpack("<I", raw[offset : offset + 4])[0]
        offset += 4
    except (IndexError, struct.error) as e:
        raise TransactionParseError(f"Failed to parse transaction: {e}") from e

    if offset != len(raw):
        raise TransactionParseError(f"{len(raw) - offset} trailing bytes after transaction")

    return BitcoinTransaction(inputs=inputs, outputs=outputs, version=version, locktime=locktime)


def compute_txid(raw_without_witness: bytes) -> str:
    return hash256(raw_without_witness)[::-1].hex()


def legacy_sighash_preimage(
    tx: BitcoinTransaction,
    input_index: int,
    script_code: bytes,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """
    Bytes hashed for a legacy SIGHASH_ALL signature.

    All input scripts are blanked except the one being signed, which carries
    the spent output's script; the 4-byte sighash type is appended.
    """
    if input_index >= len(tx.inputs):
        raise IndexError(f"Input index {input_index} out of range")

    inputs = [
        replace(inp, script_sig=script_code if i == input_index else b"")
        for i, inp in enumerate(tx.inputs)
    ]
    stripped = replace(tx, inputs=inputs)
    return serialize_transaction(stripped) + struct.pack("<I", sighash_type)


def legacy_sighash(
    tx: BitcoinTransaction,
    input_index: int,
    script_code: bytes,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    return hash256(legacy_sighash_preimage(tx, input_index, script_code, sighash_type))


def p2pkh_script_sig(signature_with_hashtype: bytes, pubkey: bytes) -> bytes:
    return push_data(signature_with_hashtype) + push_data(pubkey)


def parse_p2pkh_script_sig(script_sig: bytes) -> tuple[bytes, bytes]:
    """Split `<sig> <pubkey>` back into its two pushes."""
    sig_len = script_sig[0]
    signature = script_sig[1 : 1 + sig_len]
    offset = 1 + sig_len
    pubkey_len = script_sig[offset]
    pubkey = script_sig[offset + 1 : offset + 1 + pubkey_len]
    if offset + 1 + pubkey_len != len(script_sig):
        raise TransactionParseError("Not a P2PKH script-sig")
    return signature, pubkey
