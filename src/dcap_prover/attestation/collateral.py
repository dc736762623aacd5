"""
Collateral bundle assembly and content hashing.

The verification oracle consumes collateral in one canonical shape: DER
CRLs, a PEM issuer chain (TCB signing CA followed by the Intel SGX Root
CA) and the TCB info / QE identity JSON documents as published by Intel
PCS. Collateral sources hand over certificates as DER, so the assembler
reconciles the two encodings.

The content hashes committed to a journal identify each artifact
independently of its transport encoding:

- TCB info / QE identity: the exact bytes of the signed inner JSON object
- certificates: the DER TBSCertificate
- CRLs: the DER TBSCertList
"""

from dataclasses import dataclass, fields
from typing import Callable, List, Optional

from Crypto.Hash import keccak
from cryptography import x509
from cryptography.hazmat.primitives import hashes

from .cert_utils import der_to_pem, parse_pem_chain
from .types import HASH_SIZE, EncodingError, MissingCollateralError

Digest = Callable[[bytes], bytes]

TCB_INFO_KEY = "tcbInfo"
QE_IDENTITY_KEY = "enclaveIdentity"


def keccak256(data: bytes) -> bytes:
    """Keccak-256 digest, the content hash the zkVM guests commit to."""
    h = keccak.new(digest_bits=256)
    h.update(data)
    return h.digest()


def sha256(data: bytes) -> bytes:
    """SHA-256 digest."""
    h = hashes.Hash(hashes.SHA256())
    h.update(data)
    return h.finalize()


# =============================================================================
# Data Structures
# =============================================================================

@dataclass(frozen=True)
class CollateralBundle:
    """
    Canonical verification input.

    Attributes:
        root_ca_crl: Intel SGX Root CA CRL (DER)
        pck_crl: PCK Platform/Processor CA CRL (DER)
        issuer_chain: TCB signing CA PEM followed by root CA PEM
        tcb_info: TCB info JSON document
        qe_identity: QE identity JSON document
    """
    root_ca_crl: bytes
    pck_crl: bytes
    issuer_chain: bytes
    tcb_info: str
    qe_identity: str


@dataclass(frozen=True)
class CollateralArtifacts:
    """
    The six raw collateral inputs, any of which may be unset.

    Certificates are DER. Used both for caller-supplied collateral and for
    what a collateral source returns.
    """
    root_ca_crl: Optional[bytes] = None
    pck_crl: Optional[bytes] = None
    tcb_signing_ca: Optional[bytes] = None
    root_ca: Optional[bytes] = None
    tcb_info: Optional[str] = None
    qe_identity: Optional[str] = None

    def missing(self) -> List[str]:
        """Names of the artifacts that are unset, in field order."""
        return [f.name for f in fields(self) if getattr(self, f.name) is None]

    def merge(self, other: "CollateralArtifacts") -> "CollateralArtifacts":
        """Fill unset artifacts from `other`; set artifacts are kept."""
        return CollateralArtifacts(**{
            f.name: getattr(self, f.name) if getattr(self, f.name) is not None
            else getattr(other, f.name)
            for f in fields(self)
        })


@dataclass(frozen=True)
class CollateralHashes:
    """Content hashes in journal order."""
    tcb_info: bytes
    qe_identity: bytes
    root_ca: bytes
    tcb_signing_ca: bytes
    root_ca_crl: bytes
    pck_crl: bytes

    def as_tuple(self) -> tuple[bytes, ...]:
        return (
            self.tcb_info,
            self.qe_identity,
            self.root_ca,
            self.tcb_signing_ca,
            self.root_ca_crl,
            self.pck_crl,
        )


# =============================================================================
# Assembly
# =============================================================================

def assemble(
    root_ca_crl: bytes,
    pck_crl: bytes,
    signing_ca_der: bytes,
    root_ca_der: bytes,
    tcb_info: str,
    qe_identity: str,
) -> CollateralBundle:
    """
    Assemble a CollateralBundle from raw artifacts.

    Each DER certificate is converted to PEM independently and the issuer
    chain is the signing CA PEM followed immediately by the root CA PEM.
    No semantic validation is performed.

    Raises:
        EncodingError: If either certificate is not valid DER
    """
    signing_ca_pem = der_to_pem(signing_ca_der)
    root_ca_pem = der_to_pem(root_ca_der)

    return CollateralBundle(
        root_ca_crl=root_ca_crl,
        pck_crl=pck_crl,
        issuer_chain=signing_ca_pem + root_ca_pem,
        tcb_info=tcb_info,
        qe_identity=qe_identity,
    )


def assemble_artifacts(artifacts: CollateralArtifacts) -> CollateralBundle:
    """
    Assemble a bundle from a complete CollateralArtifacts.

    Raises:
        MissingCollateralError: For the first unset artifact
        EncodingError: If a certificate is not valid DER
    """
    missing = artifacts.missing()
    if missing:
        raise MissingCollateralError(missing[0])

    return assemble(
        artifacts.root_ca_crl,
        artifacts.pck_crl,
        artifacts.tcb_signing_ca,
        artifacts.root_ca,
        artifacts.tcb_info,
        artifacts.qe_identity,
    )


# =============================================================================
# Content hashes
# =============================================================================

def extract_signed_json(json_text: str, json_key: str) -> bytes:
    """
    Return the exact bytes of the inner JSON object stored under `json_key`.

    Intel PCS signs the raw text of the inner object (tcbInfo or
    enclaveIdentity), not the outer wrapper, so the bytes are taken as they
    appear in the document, whitespace included.

    Raises:
        EncodingError: If the key is absent or its value is not an object
    """
    key_pattern = f'"{json_key}":'
    key_pos = json_text.find(key_pattern)
    if key_pos == -1:
        raise EncodingError(f"JSON does not contain '{json_key}' key")

    obj_start = key_pos + len(key_pattern)
    while obj_start < len(json_text) and json_text[obj_start] in " \t\n\r":
        obj_start += 1

    if obj_start >= len(json_text) or json_text[obj_start] != "{":
        raise EncodingError(f"'{json_key}' is not an object")

    # Matching closing brace, skipping string contents
    depth = 0
    obj_end = None
    in_string = False
    escape_next = False

    for i in range(obj_start, len(json_text)):
        char = json_text[i]

        if escape_next:
            escape_next = False
            continue
        if char == "\\" and in_string:
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue

        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                obj_end = i + 1
                break

    if obj_end is None:
        raise EncodingError(f"'{json_key}' JSON has mismatched braces")

    return json_text[obj_start:obj_end].encode("utf-8")


def _crl_tbs(der: bytes, name: str) -> bytes:
    try:
        return x509.load_der_x509_crl(der).tbs_certlist_bytes
    except ValueError as e:
        raise EncodingError(f"Invalid DER CRL ({name}): {e}") from e


def collateral_hashes(bundle: CollateralBundle, digest: Digest = keccak256) -> CollateralHashes:
    """
    Compute the six content hashes of a bundle in journal order.

    Args:
        bundle: Assembled collateral
        digest: Hash function mapping bytes to a 32-byte digest (Keccak-256
            by default)

    Raises:
        EncodingError: If an artifact cannot be decoded or a digest is not 32 bytes
    """
    chain = parse_pem_chain(bundle.issuer_chain)
    if len(chain) != 2:
        raise EncodingError(
            f"Issuer chain should contain 2 certificates, got {len(chain)}"
        )
    signing_ca, root_ca = chain

    result = CollateralHashes(
        tcb_info=digest(extract_signed_json(bundle.tcb_info, TCB_INFO_KEY)),
        qe_identity=digest(extract_signed_json(bundle.qe_identity, QE_IDENTITY_KEY)),
        root_ca=digest(root_ca.tbs_certificate_bytes),
        tcb_signing_ca=digest(signing_ca.tbs_certificate_bytes),
        root_ca_crl=digest(_crl_tbs(bundle.root_ca_crl, "root CA")),
        pck_crl=digest(_crl_tbs(bundle.pck_crl, "PCK")),
    )
    for value in result.as_tuple():
        if len(value) != HASH_SIZE:
            raise EncodingError(f"Digest returned {len(value)} bytes, expected {HASH_SIZE}")
    return result
