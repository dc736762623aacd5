"""
Unit tests for collateral assembly and content hashing.
"""

import hashlib

import pytest
from Crypto.Hash import keccak
from cryptography import x509

from dcap_prover.attestation.cert_utils import (
    der_to_pem,
    find_certificate_ranges,
    parse_pem_chain,
)
from dcap_prover.attestation.collateral import (
    CollateralArtifacts,
    CollateralBundle,
    assemble,
    assemble_artifacts,
    collateral_hashes,
    extract_signed_json,
    keccak256,
    sha256,
)
from dcap_prover.attestation.types import (
    EncodingError,
    MissingCollateralError,
)

from builders import (
    QE_IDENTITY_JSON,
    TCB_INFO_JSON,
    CollateralSet,
    make_cert,
    to_der,
    to_pem,
)


def _keccak(data):
    return keccak.new(digest_bits=256, data=data).digest()


@pytest.fixture(scope="module")
def collateral():
    return CollateralSet()


# =============================================================================
# Test Assembly
# =============================================================================

class TestAssemble:
    """Test bundle assembly from raw artifacts."""

    def test_issuer_chain_order(self, collateral):
        """Test that the issuer chain is signing CA PEM then root CA PEM."""
        bundle = assemble(
            collateral.root_ca_crl,
            collateral.pck_crl,
            to_der(collateral.signing),
            to_der(collateral.root),
            TCB_INFO_JSON,
            QE_IDENTITY_JSON,
        )
        assert bundle.issuer_chain == to_pem(collateral.signing) + to_pem(collateral.root)

        certs = parse_pem_chain(bundle.issuer_chain)
        assert [c.subject for c in certs] == [collateral.signing.subject, collateral.root.subject]

    def test_passthrough_fields(self, collateral):
        """Test that CRLs and JSON documents are carried unchanged."""
        bundle = assemble_artifacts(collateral.artifacts())
        assert bundle.root_ca_crl == collateral.root_ca_crl
        assert bundle.pck_crl == collateral.pck_crl
        assert bundle.tcb_info == TCB_INFO_JSON
        assert bundle.qe_identity == QE_IDENTITY_JSON

    def test_invalid_der(self, collateral):
        """Test that a non-DER certificate is an encoding error."""
        with pytest.raises(EncodingError):
            assemble(
                collateral.root_ca_crl,
                collateral.pck_crl,
                b"\x30\x03\x02\x01",
                to_der(collateral.root),
                TCB_INFO_JSON,
                QE_IDENTITY_JSON,
            )

    def test_missing_artifact(self, collateral):
        """Test that an unset artifact is reported by name."""
        artifacts = CollateralArtifacts(
            root_ca_crl=collateral.root_ca_crl,
            pck_crl=collateral.pck_crl,
            tcb_signing_ca=to_der(collateral.signing),
            root_ca=to_der(collateral.root),
            tcb_info=TCB_INFO_JSON,
        )
        with pytest.raises(MissingCollateralError) as exc_info:
            assemble_artifacts(artifacts)
        assert exc_info.value.artifact == "qe_identity"


class TestCollateralArtifacts:
    """Test CollateralArtifacts helpers."""

    def test_missing_in_field_order(self):
        """Test that missing() lists unset fields in declaration order."""
        artifacts = CollateralArtifacts(pck_crl=b"crl", tcb_info="{}")
        assert artifacts.missing() == ["root_ca_crl", "tcb_signing_ca", "root_ca", "qe_identity"]

    def test_merge_keeps_set_values(self):
        """Test that merge() only fills unset artifacts."""
        mine = CollateralArtifacts(pck_crl=b"mine")
        theirs = CollateralArtifacts(pck_crl=b"theirs", root_ca_crl=b"root")
        merged = mine.merge(theirs)
        assert merged.pck_crl == b"mine"
        assert merged.root_ca_crl == b"root"
        assert merged.tcb_info is None


# =============================================================================
# Test Certificate Helpers
# =============================================================================

class TestCertUtils:
    """Test PEM/DER helpers."""

    def test_der_to_pem(self):
        """Test DER to PEM conversion."""
        cert, _ = make_cert("Test CA")
        assert der_to_pem(to_der(cert)) == to_pem(cert)

    def test_der_to_pem_invalid(self):
        """Test that invalid DER raises EncodingError."""
        with pytest.raises(EncodingError):
            der_to_pem(b"not der")

    def test_find_ranges_with_padding(self):
        """Test that null padding between certificates is skipped."""
        first, _ = make_cert("First")
        second, _ = make_cert("Second")
        blob = to_pem(first) + b"\x00\x00" + to_pem(second) + b"\x00"
        ranges = find_certificate_ranges(blob)
        assert len(ranges) == 2
        assert x509.load_pem_x509_certificate(blob[ranges[1][0]:ranges[1][1]]) == second

    def test_find_ranges_unterminated(self):
        """Test that a BEGIN marker without END ends the scan."""
        first, _ = make_cert("First")
        blob = to_pem(first) + b"-----BEGIN CERTIFICATE-----\nAAAA"
        assert len(find_certificate_ranges(blob)) == 1

    def test_parse_pem_chain_no_certificates(self):
        """Test that non-empty data without certificates is rejected."""
        with pytest.raises(EncodingError, match="No PEM certificate"):
            parse_pem_chain(b"garbage")

    def test_parse_pem_chain_empty(self):
        """Test that empty data parses to an empty chain."""
        assert parse_pem_chain(b"") == []


# =============================================================================
# Test Signed JSON Extraction
# =============================================================================

class TestExtractSignedJson:
    """Test extraction of the signed inner JSON object."""

    def test_exact_bytes(self):
        """Test that the inner object is returned byte for byte."""
        text = '{"tcbInfo": {"a": {"b": 1}, "c": "}"}, "signature": "00"}'
        assert extract_signed_json(text, "tcbInfo") == b'{"a": {"b": 1}, "c": "}"}'

    def test_escaped_quote_in_string(self):
        """Test that escaped quotes inside strings do not end the string."""
        text = '{"enclaveIdentity":{"s":"a\\"}b"},"signature":"00"}'
        assert extract_signed_json(text, "enclaveIdentity") == b'{"s":"a\\"}b"}'

    def test_missing_key(self):
        """Test that a missing key raises EncodingError."""
        with pytest.raises(EncodingError, match="does not contain"):
            extract_signed_json('{"other": {}}', "tcbInfo")

    def test_not_an_object(self):
        """Test that a non-object value raises EncodingError."""
        with pytest.raises(EncodingError, match="not an object"):
            extract_signed_json('{"tcbInfo": [1, 2]}', "tcbInfo")

    def test_unbalanced(self):
        """Test that unbalanced braces raise EncodingError."""
        with pytest.raises(EncodingError, match="mismatched braces"):
            extract_signed_json('{"tcbInfo": {"a": {}', "tcbInfo")


# =============================================================================
# Test Content Hashes
# =============================================================================

class TestCollateralHashes:
    """Test the six journal content hashes."""

    def test_hash_values(self, collateral):
        """Test each hash against its definition."""
        bundle = assemble_artifacts(collateral.artifacts())
        result = collateral_hashes(bundle)

        tcb_inner = extract_signed_json(TCB_INFO_JSON, "tcbInfo")
        qe_inner = extract_signed_json(QE_IDENTITY_JSON, "enclaveIdentity")
        root_crl = x509.load_der_x509_crl(collateral.root_ca_crl)
        pck_crl = x509.load_der_x509_crl(collateral.pck_crl)

        assert result.tcb_info == _keccak(tcb_inner)
        assert result.qe_identity == _keccak(qe_inner)
        assert result.root_ca == _keccak(collateral.root.tbs_certificate_bytes)
        assert result.tcb_signing_ca == _keccak(collateral.signing.tbs_certificate_bytes)
        assert result.root_ca_crl == _keccak(root_crl.tbs_certlist_bytes)
        assert result.pck_crl == _keccak(pck_crl.tbs_certlist_bytes)

    def test_journal_order(self, collateral):
        """Test that as_tuple() follows the journal field order."""
        result = collateral_hashes(assemble_artifacts(collateral.artifacts()))
        assert result.as_tuple() == (
            result.tcb_info,
            result.qe_identity,
            result.root_ca,
            result.tcb_signing_ca,
            result.root_ca_crl,
            result.pck_crl,
        )

    def test_custom_digest(self, collateral):
        """Test that the digest function is pluggable."""
        bundle = assemble_artifacts(collateral.artifacts())
        result = collateral_hashes(bundle, digest=lambda data: hashlib.sha3_256(data).digest())
        assert result.tcb_info == hashlib.sha3_256(
            extract_signed_json(TCB_INFO_JSON, "tcbInfo")
        ).digest()

    def test_digest_wrong_size(self, collateral):
        """Test that a digest not returning 32 bytes is rejected."""
        bundle = assemble_artifacts(collateral.artifacts())
        with pytest.raises(EncodingError, match="expected 32"):
            collateral_hashes(bundle, digest=lambda data: hashlib.sha1(data).digest())

    def test_chain_with_one_certificate(self, collateral):
        """Test that an issuer chain must hold exactly two certificates."""
        bundle = CollateralBundle(
            root_ca_crl=collateral.root_ca_crl,
            pck_crl=collateral.pck_crl,
            issuer_chain=to_pem(collateral.root),
            tcb_info=TCB_INFO_JSON,
            qe_identity=QE_IDENTITY_JSON,
        )
        with pytest.raises(EncodingError, match="2 certificates"):
            collateral_hashes(bundle)

    def test_invalid_crl(self, collateral):
        """Test that an undecodable CRL is an encoding error."""
        good = assemble_artifacts(collateral.artifacts())
        bundle = CollateralBundle(
            root_ca_crl=b"not a crl",
            pck_crl=good.pck_crl,
            issuer_chain=good.issuer_chain,
            tcb_info=good.tcb_info,
            qe_identity=good.qe_identity,
        )
        with pytest.raises(EncodingError, match="root CA"):
            collateral_hashes(bundle)

    def test_keccak256_known_values(self):
        """Test Keccak-256 (not SHA3-256) against published digests."""
        assert keccak256(b"").hex() == (
            "c5d2460186f7233c927e7db2dcc703c0e500b653ca82273b7bfad8045d85a470"
        )
        assert keccak256(b"abc").hex() == (
            "4e03657aea45a94fc7d47ba826c8d667c0d1e6e33a64a036ec44f58fa12d6c45"
        )

    def test_default_digest_is_keccak256(self, collateral):
        """Test that the default hashes are Keccak-256, not SHA-256."""
        bundle = assemble_artifacts(collateral.artifacts())
        assert collateral_hashes(bundle) == collateral_hashes(bundle, digest=keccak256)
        assert collateral_hashes(bundle) != collateral_hashes(bundle, digest=sha256)

    def test_sha256_option(self, collateral):
        """Test that SHA-256 stays available as a digest."""
        bundle = assemble_artifacts(collateral.artifacts())
        result = collateral_hashes(bundle, digest=sha256)
        assert result.tcb_info == hashlib.sha256(
            extract_signed_json(TCB_INFO_JSON, "tcbInfo")
        ).digest()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
