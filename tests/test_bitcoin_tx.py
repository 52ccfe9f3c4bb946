"""
Tests for legacy Bitcoin transaction serialization and sighash.
"""

from __future__ import annotations

import pytest
from coincurve import PublicKey

from quorumvault.address import p2pkh_script
from quorumvault.crypto import hash256
from quorumvault.tx.bitcoin import (
    BitcoinTransaction,
    TransactionParseError,
    TxInput,
    TxOutput,
    deserialize_transaction,
    legacy_sighash,
    legacy_sighash_preimage,
    p2pkh_script_sig,
    parse_p2pkh_script_sig,
    push_data,
    read_varint,
    varint,
)

TXID_A = "aa" * 31 + "01"
TXID_B = "bb" * 31 + "02"


def sample_tx() -> BitcoinTransaction:
    return BitcoinTransaction(
        inputs=[TxInput(txid=TXID_A, vout=0), TxInput(txid=TXID_B, vout=3)],
        outputs=[TxOutput(value=79_000, script_pubkey=p2pkh_script(b"\x11" * 20))],
    )


class TestVarint:
    @pytest.mark.parametrize("value", [0, 0xFC, 0xFD, 0xFFFF, 0x10000, 0xFFFFFFFF, 0x100000000])
    def test_round_trip(self, value):
        encoded = varint(value)
        assert read_varint(encoded, 0) == (value, len(encoded))

    def test_sizes(self):
        assert len(varint(0xFC)) == 1
        assert len(varint(0xFD)) == 3
        assert len(varint(0x10000)) == 5
        assert len(varint(0x100000000)) == 9


class TestPushData:
    def test_short(self):
        assert push_data(b"\x01" * 33) == b"\x21" + b"\x01" * 33

    def test_pushdata1(self):
        assert push_data(b"\x01" * 80)[:2] == b"\x4c\x50"


class TestSerialization:
    def test_layout(self):
        raw = sample_tx().serialize()
        assert raw[:4] == (2).to_bytes(4, "little")
        assert raw[4] == 2
        # Outpoint txid is serialized little-endian
        assert raw[5:37] == bytes.fromhex(TXID_A)[::-1]
        assert raw[-4:] == b"\x00\x00\x00\x00"

    def test_round_trip(self):
        tx = sample_tx()
        tx.inputs[0].script_sig = b"\x51"
        parsed = deserialize_transaction(tx.serialize())
        assert parsed == tx
        assert parsed.txid == tx.txid

    def test_txid_is_reversed_hash256(self):
        tx = sample_tx()
        assert tx.txid == hash256(tx.serialize())[::-1].hex()

    def test_segwit_parent(self):
        tx = sample_tx()
        legacy = tx.serialize()
        # version | marker flag | body | one empty-ish witness stack per input | locktime
        witness = b"\x01\x02\xab\xcd" + b"\x00"
        segwit = legacy[:4] + b"\x00\x01" + legacy[4:-4] + witness + legacy[-4:]
        parsed = deserialize_transaction(segwit)
        assert parsed.outputs == tx.outputs
        assert [i.txid for i in parsed.inputs] == [TXID_A, TXID_B]

    def test_truncated(self):
        with pytest.raises(TransactionParseError):
            deserialize_transaction(sample_tx().serialize()[:-6])

    def test_trailing_bytes(self):
        with pytest.raises(TransactionParseError):
            deserialize_transaction(sample_tx().serialize() + b"\x00")


class TestLegacySighash:
    def test_only_signed_input_carries_script(self):
        tx = sample_tx()
        script = p2pkh_script(b"\x22" * 20)
        preimage = legacy_sighash_preimage(tx, 1, script)

        expected = BitcoinTransaction(
            inputs=[
                TxInput(txid=TXID_A, vout=0),
                TxInput(txid=TXID_B, vout=3, script_sig=script),
            ],
            outputs=tx.outputs,
        ).serialize() + (1).to_bytes(4, "little")
        assert preimage == expected
        assert legacy_sighash(tx, 1, script) == hash256(expected)

    def test_mainnet_spend_signature_verifies(self):
        # Block 170: the first spend, paying from the block 9 coinbase
        raw = bytes.fromhex(
            "0100000001"
            "c997a5e56e104102fa209c6a852dd90660a20b2d9c352423edce25857fcd3704"
            "00000000"
            "4847"
            "304402204e45e16932b8af514961a1d3a1a25fdf3f4f7732e9d624c6c61548ab5fb8cd41"
            "0220181522ec8eca07de4860a4acdd12909d831cc56cbbac4622082221a8768d1d0901"
            "ffffffff02"
            "00ca9a3b00000000"
            "4341"
            "04ae1a62fe09c5f51b13905f07f06b99a2f7159b2225f374cd378d71302fa28414"
            "e7aab37397f554a7df5f142c21c1b7303b8a0626f1baded5c72a704f7e6cd84cac"
            "00286bee00000000"
            "4341"
            "0411db93e1dcdb8a016b49840f8c53bc1eb68a382e97b1482ecad7b148a6909a5c"
            "b2e0eaddfb84ccf9744464f82e160bfa9b8b64f9d4c03f999b8643f656b412a3ac"
            "00000000"
        )
        spent_script = bytes.fromhex(
            "41"
            "0411db93e1dcdb8a016b49840f8c53bc1eb68a382e97b1482ecad7b148a6909a5c"
            "b2e0eaddfb84ccf9744464f82e160bfa9b8b64f9d4c03f999b8643f656b412a3"
            "ac"
        )

        tx = deserialize_transaction(raw)
        assert tx.txid == "f4184fc596403b9d638783cf57adfe4c75c605f6356fbc91338530e9831e9e16"
        assert tx.inputs[0].txid == (
            "0437cd7f8525ceed2324359c2d0ba26006d92d856a9c20fa0241106ee5a597c9"
        )

        signature = tx.inputs[0].script_sig[1:]
        assert signature[-1] == 0x01
        digest = legacy_sighash(tx, 0, spent_script)
        assert PublicKey(spent_script[1:66]).verify(signature[:-1], digest, hasher=None)

    def test_transaction_not_mutated(self):
        tx = sample_tx()
        legacy_sighash_preimage(tx, 0, p2pkh_script(b"\x22" * 20))
        assert all(i.script_sig == b"" for i in tx.inputs)

    def test_inputs_differ(self):
        tx = sample_tx()
        script = p2pkh_script(b"\x22" * 20)
        assert legacy_sighash(tx, 0, script) != legacy_sighash(tx, 1, script)

    def test_index_out_of_range(self):
        with pytest.raises(IndexError):
            legacy_sighash_preimage(sample_tx(), 2, b"")


class TestScriptSig:
    def test_round_trip(self):
        sig = b"\x30" * 71 + b"\x01"
        pubkey = b"\x02" + b"\x33" * 32
        assert parse_p2pkh_script_sig(p2pkh_script_sig(sig, pubkey)) == (sig, pubkey)

    def test_rejects_extra_push(self):
        script = p2pkh_script_sig(b"\x01" * 10, b"\x02" * 33) + b"\x51"
        with pytest.raises(TransactionParseError):
            parse_p2pkh_script_sig(script)
