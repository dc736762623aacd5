"""
Shared certificate utilities.

This module provides the PEM/DER helpers used by the certificate chain
extractor, the collateral assembler and the Intel PCS collateral source.
"""

from typing import List, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import NameOID

from .types import EncodingError

PEM_BEGIN_MARKER = b"-----BEGIN CERTIFICATE-----"
PEM_END_MARKER = b"-----END CERTIFICATE-----"

_PEM_PADDING = b"\x00\n\r\t "


def find_certificate_ranges(blob: bytes) -> List[Tuple[int, int]]:
    """
    Locate PEM certificates inside a certification data blob.

    Each range spans from the BEGIN marker to the end of the matching END
    marker. A BEGIN marker without a following END marker ends the scan.

    Args:
        blob: Raw certification data (usually the PCK chain of a quote)

    Returns:
        Ordered list of (start, end) byte offsets, one per certificate
    """
    ranges = []
    pos = 0
    while True:
        start = blob.find(PEM_BEGIN_MARKER, pos)
        if start == -1:
            break
        end = blob.find(PEM_END_MARKER, start + len(PEM_BEGIN_MARKER))
        if end == -1:
            break
        end += len(PEM_END_MARKER)
        ranges.append((start, end))
        pos = end
    return ranges


def parse_pem_chain(pem_data: bytes) -> List[x509.Certificate]:
    """
    Parse concatenated PEM certificates.

    Leading/trailing whitespace and null bytes between certificates are
    ignored (common in quote certification data).

    Raises:
        EncodingError: If any certificate fails to parse
    """
    certs = []
    for start, end in find_certificate_ranges(pem_data):
        try:
            certs.append(x509.load_pem_x509_certificate(pem_data[start:end]))
        except ValueError as e:
            raise EncodingError(f"Failed to parse PEM certificate: {e}") from e

    if not certs and pem_data.strip(_PEM_PADDING):
        raise EncodingError("No PEM certificate found in data")
    return certs


def der_to_pem(der: bytes) -> bytes:
    """
    Convert one DER-encoded certificate to PEM.

    Raises:
        EncodingError: If the input is not a DER certificate
    """
    try:
        cert = x509.load_der_x509_certificate(der)
    except ValueError as e:
        raise EncodingError(f"Invalid DER certificate: {e}") from e
    return cert.public_bytes(serialization.Encoding.PEM)


def certs_to_pem(certs: List[x509.Certificate]) -> bytes:
    """Convert list of certificates to concatenated PEM bytes."""
    return b"".join(cert.public_bytes(serialization.Encoding.PEM) for cert in certs)


def common_name(name: x509.Name) -> Optional[str]:
    """Return the first common name attribute of an X.509 name, if any."""
    attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attrs:
        return None
    value = attrs[0].value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
