"""
Unit tests for the prover backends and their guest input encodings.
"""

import json
import struct
from unittest.mock import MagicMock

import pytest

from dcap_prover.attestation.collateral import CollateralBundle
from dcap_prover.attestation.types import EncodingError, ProverError, TruncatedJournalError
from dcap_prover.provers import (
    BoundlessBackend,
    GuestInput,
    PicoBackend,
    ProofResult,
    Risc0Backend,
    Sp1Backend,
)
from dcap_prover.provers.abi import decode_params, encode_params
from dcap_prover.provers.base import decode_collateral_abi, encode_collateral_abi
from dcap_prover.provers.boundless import INPUT_HEADER


@pytest.fixture
def guest_input():
    return GuestInput(
        raw_quote=b"\x04\x00\x02\x00" + b"\x99" * 40,
        collateral=CollateralBundle(
            root_ca_crl=b"\x30\x82root-crl",
            pck_crl=b"\x30\x82pck-crl",
            issuer_chain=b"-----BEGIN CERTIFICATE-----\nAAAA\n-----END CERTIFICATE-----\n",
            tcb_info='{"tcbInfo":{"id":"TDX"},"signature":"00"}',
            qe_identity='{"enclaveIdentity":{"id":"TD_QE"},"signature":"00"}',
        ),
        timestamp=1700000000,
    )


# =============================================================================
# Test ABI Codec
# =============================================================================

class TestAbiCodec:
    """Test the Solidity ABI parameter codec."""

    def test_uint64_word(self):
        """Test that uint64 is a left-padded 32-byte word."""
        assert encode_params(["uint64"], [1]) == b"\x00" * 31 + b"\x01"

    def test_bytes_layout(self):
        """Test offset, length and right-padded data of a bytes value."""
        encoded = encode_params(["bytes"], [b"\xde\xad"])
        assert len(encoded) == 96
        assert int.from_bytes(encoded[0:32], "big") == 32
        assert int.from_bytes(encoded[32:64], "big") == 2
        assert encoded[64:96] == b"\xde\xad" + b"\x00" * 30

    def test_mixed_offsets(self):
        """Test that dynamic offsets account for earlier tails."""
        encoded = encode_params(["bytes", "bytes", "uint64"], [b"a" * 33, b"b", 7])
        assert int.from_bytes(encoded[0:32], "big") == 96
        # first tail: length word + 64 padded bytes
        assert int.from_bytes(encoded[32:64], "big") == 96 + 32 + 64
        assert int.from_bytes(encoded[64:96], "big") == 7

    def test_decode_inverts_encode(self):
        """Test decoding mixed parameters."""
        types = ["string", "bytes", "uint64"]
        values = ["héllo", b"\x00\x01", 2 ** 64 - 1]
        assert decode_params(types, encode_params(types, values)) == values

    def test_uint64_overflow(self):
        """Test that values beyond uint64 are rejected."""
        with pytest.raises(EncodingError, match="uint64"):
            encode_params(["uint64"], [2 ** 64])

    def test_type_mismatch(self):
        """Test that a str is not accepted for bytes."""
        with pytest.raises(EncodingError, match="not bytes"):
            encode_params(["bytes"], ["text"])

    def test_unsupported_type(self):
        """Test that unsupported ABI types are rejected."""
        with pytest.raises(EncodingError, match="Unsupported ABI type"):
            encode_params(["address"], [b"\x00" * 20])

    def test_truncated(self):
        """Test that truncated data is rejected on decode."""
        encoded = encode_params(["bytes"], [b"x" * 40])
        with pytest.raises(EncodingError):
            decode_params(["bytes"], encoded[:80])


# =============================================================================
# Test Guest Input Encodings
# =============================================================================

class TestSolidityAbiBackends:
    """Test RISC Zero and Pico input encoding."""

    @pytest.mark.parametrize("backend_cls", [Risc0Backend, PicoBackend])
    def test_round_trip(self, backend_cls, guest_input):
        """Test that the encoded input decodes back to the guest input."""
        backend = backend_cls(b"program", MagicMock())
        assert backend_cls.decode_input(backend.encode_input(guest_input)) == guest_input

    def test_parameter_layout(self, guest_input):
        """Test the outer (bytes collateral, bytes quote, uint64 timestamp) tuple."""
        encoded = Risc0Backend(b"program", MagicMock()).encode_input(guest_input)
        collateral, quote, timestamp = decode_params(["bytes", "bytes", "uint64"], encoded)
        assert quote == guest_input.raw_quote
        assert timestamp == guest_input.timestamp
        assert collateral == encode_collateral_abi(guest_input.collateral)

    def test_risc0_and_pico_agree(self, guest_input):
        """Test that both guests take the same input bytes."""
        risc0 = Risc0Backend(b"p", MagicMock()).encode_input(guest_input)
        pico = PicoBackend(b"p", MagicMock()).encode_input(guest_input)
        assert risc0 == pico

    def test_collateral_tuple(self, guest_input):
        """Test the collateral tuple field order."""
        encoded = encode_collateral_abi(guest_input.collateral)
        values = decode_params(["bytes", "bytes", "bytes", "string", "string"], encoded)
        bundle = guest_input.collateral
        assert values == [
            bundle.root_ca_crl,
            bundle.pck_crl,
            bundle.issuer_chain,
            bundle.tcb_info,
            bundle.qe_identity,
        ]
        assert decode_collateral_abi(encoded) == bundle


class TestSp1Backend:
    """Test SP1 JSON input encoding."""

    def test_json_document(self, guest_input):
        """Test the JSON field names and encodings."""
        document = json.loads(Sp1Backend(b"elf", MagicMock()).encode_input(guest_input))
        assert document["raw_quote"] == guest_input.raw_quote.hex()
        assert document["timestamp"] == 1700000000
        assert document["collateral"]["pck_crl"] == guest_input.collateral.pck_crl.hex()
        assert document["collateral"]["tcb_info"] == guest_input.collateral.tcb_info

    def test_round_trip(self, guest_input):
        """Test that the JSON document decodes back to the guest input."""
        encoded = Sp1Backend(b"elf", MagicMock()).encode_input(guest_input)
        assert Sp1Backend.decode_input(encoded) == guest_input

    def test_invalid_document(self):
        """Test that a document missing fields is rejected."""
        with pytest.raises(EncodingError):
            Sp1Backend.decode_input(b'{"raw_quote": "00"}')


class TestBoundlessBackend:
    """Test Boundless packed input encoding."""

    def test_header(self, guest_input):
        """Test the little-endian timestamp and length header."""
        encoded = BoundlessBackend(b"img", MagicMock()).encode_input(guest_input)
        timestamp, quote_len, collateral_len = INPUT_HEADER.unpack_from(encoded, 0)
        assert timestamp == 1700000000
        assert quote_len == len(guest_input.raw_quote)
        assert encoded[16:16 + quote_len] == guest_input.raw_quote
        assert collateral_len == len(encoded) - 16 - quote_len
        assert encoded[:8] == struct.pack("<Q", 1700000000)

    def test_round_trip(self, guest_input):
        """Test that the packed input decodes back to the guest input."""
        encoded = BoundlessBackend(b"img", MagicMock()).encode_input(guest_input)
        assert BoundlessBackend.decode_input(encoded) == guest_input

    def test_length_mismatch(self, guest_input):
        """Test that lengths not matching the buffer are rejected."""
        encoded = BoundlessBackend(b"img", MagicMock()).encode_input(guest_input)
        with pytest.raises(EncodingError, match="header declares"):
            BoundlessBackend.decode_input(encoded[:-1])

    def test_timestamp_out_of_range(self, guest_input):
        """Test that a negative timestamp cannot be packed."""
        bad = GuestInput(
            raw_quote=guest_input.raw_quote,
            collateral=guest_input.collateral,
            timestamp=-1,
        )
        with pytest.raises(EncodingError):
            BoundlessBackend(b"img", MagicMock()).encode_input(bad)


# =============================================================================
# Test Engine Invocation
# =============================================================================

class TestInvoke:
    """Test proving engine invocation."""

    def test_engine_receives_program_and_input(self, guest_input):
        """Test that prove() passes the program and encoded input."""
        result = ProofResult(proof=b"seal", public_output=b"journal")
        engine = MagicMock(return_value=result)
        backend = Sp1Backend(b"elf", engine)

        assert backend.prove(guest_input) is result
        engine.assert_called_once_with(b"elf", backend.encode_input(guest_input))

    def test_engine_exception(self, guest_input):
        """Test that engine exceptions become ProverError."""
        engine = MagicMock(side_effect=ConnectionError("prover network down"))
        with pytest.raises(ProverError, match="boundless proving failed"):
            BoundlessBackend(b"img", engine).prove(guest_input)

    def test_engine_wrong_result(self, guest_input):
        """Test that an engine returning something else is a ProverError."""
        engine = MagicMock(return_value=b"not a proof result")
        with pytest.raises(ProverError, match="expected ProofResult"):
            PicoBackend(b"elf", engine).prove(guest_input)

    def test_decode_output_is_journal_decode(self):
        """Test that the public output is decoded as a journal."""
        with pytest.raises(TruncatedJournalError):
            Risc0Backend(b"elf", MagicMock()).decode_output(b"\x00")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
