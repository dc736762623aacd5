"""
PCK certificate chain extraction for Intel DCAP quotes.

This module locates the PCK (Provisioning Certification Key) leaf
certificate inside a quote's certification data, classifies its issuing
CA and extracts the FMSPC from the Intel SGX extension. Together they
select the collateral (TCB info, PCK CRL) needed to verify the quote.

Intel SGX Extension OID hierarchy:
    1.2.840.113741.1.13.1       - SGX Extension (parent)
    1.2.840.113741.1.13.1.1     - PPID
    1.2.840.113741.1.13.1.2     - TCB
    1.2.840.113741.1.13.1.3     - PCEID
    1.2.840.113741.1.13.1.4     - FMSPC
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Union

from cryptography import x509
from pyasn1.codec.der import decoder as der_decoder
from pyasn1.type import univ

from .abi_quote import Quote, parse_quote
from .cert_utils import common_name, find_certificate_ranges
from .types import (
    FMSPC_SIZE,
    AttestationError,
    ExtensionMissingError,
    Fmspc,
    MalformedCertificateError,
    MalformedExtensionError,
    NoCertificatesFoundError,
    PckIssuer,
)

logger = logging.getLogger(__name__)

# Intel SGX OID base
_INTEL_SGX_OID_BASE = "1.2.840.113741.1.13.1"

# Intel SGX Extension OIDs
OID_SGX_EXTENSION = x509.ObjectIdentifier(_INTEL_SGX_OID_BASE)
OID_FMSPC = x509.ObjectIdentifier(f"{_INTEL_SGX_OID_BASE}.4")


@contextmanager
def _asn1_errors(label: str):
    """Wrap unexpected ASN.1 exceptions as MalformedExtensionError."""
    try:
        yield
    except AttestationError:
        raise
    except Exception as e:
        raise MalformedExtensionError(f"Unexpected ASN.1 structure in {label}: {e}") from e


@dataclass(frozen=True)
class QuoteSummary:
    """Human-facing summary of a quote: version, platform, FMSPC and PCK issuer."""
    version: int
    platform: str  # "SGX" or "TDX"
    fmspc: str  # 12 uppercase hex chars
    issuer: PckIssuer

    def __str__(self) -> str:
        return (
            f"FMSPC: {self.fmspc}\n"
            f"Platform: {self.platform}\n"
            f"Report Version: V{self.version}"
        )


def extract_fmspc_and_issuer(quote: Union[bytes, Quote]) -> tuple[Fmspc, PckIssuer]:
    """
    Extract the FMSPC and PCK issuer from a quote's certificate chain.

    The certification data holds [PCK leaf, intermediate CA, root CA] as
    concatenated PEM; only the leaf is inspected.

    Args:
        quote: Raw quote bytes or an already parsed Quote

    Returns:
        Tuple of (Fmspc, PckIssuer)

    Raises:
        QuoteParseError: If raw bytes do not parse as a quote
        NoCertificatesFoundError: If the chain holds no PEM certificate
        MalformedCertificateError: If the leaf is not a valid X.509 certificate
        UnrecognizedIssuerError: If the leaf issuer is not a PCK CA
        ExtensionMissingError: If the leaf has no Intel SGX extension
        MalformedExtensionError: If the FMSPC cannot be extracted
    """
    if not isinstance(quote, Quote):
        quote = parse_quote(bytes(quote))

    leaf = _load_pck_leaf(quote.pck_chain_pem)
    issuer = PckIssuer.from_common_name(common_name(leaf.issuer))
    fmspc = extract_fmspc(leaf)

    logger.debug("PCK leaf issued by %s CA, FMSPC %s", issuer.value, fmspc)
    return fmspc, issuer


def inspect_quote(raw_quote: bytes) -> QuoteSummary:
    """Summarize a raw quote for display."""
    quote = parse_quote(raw_quote)
    fmspc, issuer = extract_fmspc_and_issuer(quote)
    return QuoteSummary(
        version=quote.header.version,
        platform=quote.platform,
        fmspc=fmspc.hex().upper(),
        issuer=issuer,
    )


def _load_pck_leaf(cert_data: bytes) -> x509.Certificate:
    ranges = find_certificate_ranges(cert_data)
    if not ranges:
        raise NoCertificatesFoundError("No certificates found in quote certification data")

    start, end = ranges[0]
    try:
        return x509.load_pem_x509_certificate(cert_data[start:end])
    except ValueError as e:
        raise MalformedCertificateError(f"Failed to parse PCK leaf certificate: {e}") from e


def extract_fmspc(cert: x509.Certificate) -> Fmspc:
    """
    Extract the FMSPC from a PCK certificate's Intel SGX extension.

    Raises:
        ExtensionMissingError: If the SGX extension is absent
        MalformedExtensionError: If the extension structure is invalid, the
            FMSPC element is absent, or its payload is not 6 bytes
    """
    try:
        sgx_ext = cert.extensions.get_extension_for_oid(OID_SGX_EXTENSION)
    except x509.ExtensionNotFound as e:
        raise ExtensionMissingError(
            "PCK certificate does not contain Intel SGX extension "
            f"(OID {OID_SGX_EXTENSION.dotted_string})"
        ) from e
    except ValueError as e:
        raise MalformedCertificateError(f"Failed to read PCK certificate extensions: {e}") from e

    raw_value = sgx_ext.value.value
    return Fmspc(_find_fmspc(raw_value))


def _der_decode(data: bytes, label: str = "value"):
    """Decode DER data using pyasn1, rejecting trailing bytes."""
    try:
        result, remainder = der_decoder.decode(data)
    except Exception as e:
        raise MalformedExtensionError(f"Failed to decode ASN.1 {label}: {e}") from e
    if remainder:
        raise MalformedExtensionError(
            f"Unexpected leftover bytes after decoding {label}: {len(remainder)} bytes"
        )
    return result


def _find_fmspc(raw_value: bytes) -> bytes:
    """Walk the SGX extension, a SEQUENCE OF SEQUENCE(OID, value), to the FMSPC."""
    outer_seq = _der_decode(raw_value, "SGX extension")

    with _asn1_errors("SGX extension"):
        if not isinstance(outer_seq, (univ.Sequence, univ.SequenceOf)):
            raise MalformedExtensionError("SGX extension is not a SEQUENCE")

        for idx in range(len(outer_seq)):
            item = outer_seq[idx]
            if not isinstance(item, (univ.Sequence, univ.SequenceOf)) or len(item) < 2:
                raise MalformedExtensionError(
                    "Malformed SGX extension item: expected SEQUENCE(OID, value)"
                )
            oid = item[0]
            if not isinstance(oid, univ.ObjectIdentifier):
                raise MalformedExtensionError("SGX extension item does not start with an OID")
            if str(oid) != OID_FMSPC.dotted_string:
                continue

            value = item[1]
            if not isinstance(value, univ.OctetString):
                raise MalformedExtensionError("FMSPC is not an OCTET STRING")
            raw = bytes(value)
            if len(raw) != FMSPC_SIZE:
                raise MalformedExtensionError(
                    f"FMSPC has wrong size: expected {FMSPC_SIZE}, got {len(raw)}"
                )
            return raw

    raise MalformedExtensionError("FMSPC not found in PCK certificate")
