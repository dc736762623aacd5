"""
DCAP quote parsing structures and constants.

This module provides data structures and parsing logic for Intel DCAP
attestation quotes: QuoteV3 (SGX) and QuoteV4 (SGX or TDX). Parsing is
structural only; signatures and collateral are checked by the
verification oracle.
"""

import struct
from dataclasses import dataclass
from typing import List, Optional, Union

from .types import QuoteParseError

# =============================================================================
# Constants
# =============================================================================

# Quote structure sizes
HEADER_SIZE = 0x30  # 48 bytes
ENCLAVE_REPORT_SIZE = 0x180  # 384 bytes
TD_REPORT_BODY_SIZE = 0x248  # 584 bytes
SIGNATURE_DATA_SIZE_FIELD = 4

# Quote versions
QUOTE_VERSION_V3 = 3
QUOTE_VERSION_V4 = 4
QUOTE_VERSION_V5 = 5

# TEE types
TEE_SGX = 0x00000000
TEE_TDX = 0x00000081

# Attestation key type (ECDSA-256-with-P-256 curve)
ATTESTATION_KEY_TYPE_ECDSA_P256 = 2

# Certification data types
CERT_DATA_TYPE_PCK_CERT_CHAIN = 5
CERT_DATA_TYPE_QE_REPORT = 6

# Field sizes
SIGNATURE_SIZE = 0x40  # 64 bytes
ATTESTATION_KEY_SIZE = 0x40  # 64 bytes
CERT_DATA_HEADER_SIZE = 6  # 2 bytes type + 4 bytes size
QE_AUTH_DATA_SIZE_FIELD = 2
RTMR_SIZE = 0x30  # 48 bytes
RTMR_COUNT = 4

# =============================================================================
# Header offsets (relative to quote start)
# =============================================================================

HEADER_VERSION_START = 0x00
HEADER_AK_TYPE_START = 0x02
HEADER_TEE_TYPE_START = 0x04
# Bytes 0x08-0x0C are reserved in QuoteV4 (QE/PCE SVN in QuoteV3).
HEADER_RESERVED_START = 0x08
HEADER_RESERVED_END = 0x0C
HEADER_QE_VENDOR_ID_START = 0x0C
HEADER_QE_VENDOR_ID_END = 0x1C
HEADER_USER_DATA_START = 0x1C
HEADER_USER_DATA_END = 0x30

# =============================================================================
# Enclave report offsets (SGX quote body and QE report)
# =============================================================================

ER_CPU_SVN_START = 0x00
ER_CPU_SVN_END = 0x10
ER_MISC_SELECT_START = 0x10
ER_ATTRIBUTES_START = 0x30
ER_ATTRIBUTES_END = 0x40
ER_MR_ENCLAVE_START = 0x40
ER_MR_ENCLAVE_END = 0x60
ER_MR_SIGNER_START = 0x80
ER_MR_SIGNER_END = 0xA0
ER_ISV_PROD_ID_START = 0x100
ER_ISV_SVN_START = 0x102
ER_REPORT_DATA_START = 0x140
ER_REPORT_DATA_END = 0x180

# =============================================================================
# TD report body offsets (TDX quote body)
# =============================================================================

TD_TEE_TCB_SVN_START = 0x00
TD_TEE_TCB_SVN_END = 0x10
TD_MR_SEAM_START = 0x10
TD_MR_SEAM_END = 0x40
TD_MR_SIGNER_SEAM_START = 0x40
TD_MR_SIGNER_SEAM_END = 0x70
TD_SEAM_ATTRIBUTES_START = 0x70
TD_SEAM_ATTRIBUTES_END = 0x78
TD_ATTRIBUTES_START = 0x78
TD_ATTRIBUTES_END = 0x80
TD_XFAM_START = 0x80
TD_XFAM_END = 0x88
TD_MR_TD_START = 0x88
TD_MR_TD_END = 0xB8
TD_MR_CONFIG_ID_START = 0xB8
TD_MR_CONFIG_ID_END = 0xE8
TD_MR_OWNER_START = 0xE8
TD_MR_OWNER_END = 0x118
TD_MR_OWNER_CONFIG_START = 0x118
TD_MR_OWNER_CONFIG_END = 0x148
TD_RTMRS_START = 0x148
TD_REPORT_DATA_START = 0x208
TD_REPORT_DATA_END = 0x248


# =============================================================================
# Data Structures
# =============================================================================

@dataclass
class QuoteHeader:
    """Quote header (48 bytes), shared by every quote version."""
    version: int  # 2 bytes
    attestation_key_type: int  # 2 bytes - 2 for ECDSA-P256
    tee_type: int  # 4 bytes - 0x00 (SGX) or 0x81 (TDX)
    reserved: bytes  # 4 bytes
    qe_vendor_id: bytes  # 16 bytes
    user_data: bytes  # 20 bytes

    def __str__(self) -> str:
        return (
            f"QuoteHeader(version={self.version}, "
            f"ak_type={self.attestation_key_type}, "
            f"tee_type=0x{self.tee_type:x}, "
            f"qe_vendor_id={self.qe_vendor_id.hex()})"
        )


@dataclass
class EnclaveReport:
    """
    SGX enclave report (384 bytes).

    Used both as the body of an SGX quote and as the QE report inside the
    certification data.
    """
    cpu_svn: bytes  # 16 bytes
    misc_select: int  # 4 bytes
    attributes: bytes  # 16 bytes
    mr_enclave: bytes  # 32 bytes
    mr_signer: bytes  # 32 bytes
    isv_prod_id: int  # 2 bytes
    isv_svn: int  # 2 bytes
    report_data: bytes  # 64 bytes


@dataclass
class TdReportBody:
    """TD report body (584 bytes) of a TDX quote."""
    tee_tcb_svn: bytes  # 16 bytes
    mr_seam: bytes  # 48 bytes
    mr_signer_seam: bytes  # 48 bytes
    seam_attributes: bytes  # 8 bytes
    td_attributes: bytes  # 8 bytes
    xfam: bytes  # 8 bytes
    mr_td: bytes  # 48 bytes
    mr_config_id: bytes  # 48 bytes
    mr_owner: bytes  # 48 bytes
    mr_owner_config: bytes  # 48 bytes
    rtmrs: List[bytes]  # 4 x 48 bytes
    report_data: bytes  # 64 bytes


@dataclass
class PckCertChainData:
    """Certification data of type 5: the PCK chain as concatenated PEM."""
    cert_type: int
    cert_data_size: int
    cert_data: bytes


@dataclass
class QeReportCertificationData:
    """QE report, its signature and auth data, wrapping the PCK chain."""
    qe_report: bytes  # 384 bytes raw
    qe_report_parsed: EnclaveReport
    qe_report_signature: bytes  # 64 bytes
    qe_auth_data: bytes
    pck_cert_chain_data: PckCertChainData


@dataclass
class SignatureData:
    """
    Signature section of the quote.

    `qe_report_data` is present for QuoteV3 and for QuoteV4 certification
    data of type 6; a QuoteV4 carrying type 5 directly has none.
    """
    signature: bytes  # 64 bytes - ECDSA R || S
    attestation_key: bytes  # 64 bytes - raw P-256 public key
    cert_type: int
    qe_report_data: Optional[QeReportCertificationData]
    pck_cert_chain_data: PckCertChainData


@dataclass
class Quote:
    """A parsed DCAP quote (V3 or V4)."""
    header: QuoteHeader
    body: Union[EnclaveReport, TdReportBody]
    signature_data_size: int
    signature_data: SignatureData
    extra_bytes: bytes = b""

    @property
    def is_tdx(self) -> bool:
        return self.header.tee_type == TEE_TDX

    @property
    def platform(self) -> str:
        return "TDX" if self.is_tdx else "SGX"

    @property
    def report_data(self) -> bytes:
        return self.body.report_data

    @property
    def pck_chain_pem(self) -> bytes:
        """The certification data blob holding the PEM PCK chain."""
        return self.signature_data.pck_cert_chain_data.cert_data

    def __str__(self) -> str:
        return (
            f"Quote(header={self.header}, platform={self.platform}, "
            f"signature_data_size={self.signature_data_size})"
        )


# =============================================================================
# Parsing Functions
# =============================================================================

def _require(data: bytes, size: int, what: str) -> None:
    if len(data) < size:
        raise QuoteParseError(
            f"{what} too short: {len(data)} bytes, expected {size}"
        )


def _parse_header(data: bytes) -> QuoteHeader:
    _require(data, HEADER_SIZE, "Header")
    return QuoteHeader(
        version=struct.unpack_from("<H", data, HEADER_VERSION_START)[0],
        attestation_key_type=struct.unpack_from("<H", data, HEADER_AK_TYPE_START)[0],
        tee_type=struct.unpack_from("<I", data, HEADER_TEE_TYPE_START)[0],
        reserved=data[HEADER_RESERVED_START:HEADER_RESERVED_END],
        qe_vendor_id=data[HEADER_QE_VENDOR_ID_START:HEADER_QE_VENDOR_ID_END],
        user_data=data[HEADER_USER_DATA_START:HEADER_USER_DATA_END],
    )


def _parse_enclave_report(data: bytes) -> EnclaveReport:
    _require(data, ENCLAVE_REPORT_SIZE, "Enclave report")
    return EnclaveReport(
        cpu_svn=data[ER_CPU_SVN_START:ER_CPU_SVN_END],
        misc_select=struct.unpack_from("<I", data, ER_MISC_SELECT_START)[0],
        attributes=data[ER_ATTRIBUTES_START:ER_ATTRIBUTES_END],
        mr_enclave=data[ER_MR_ENCLAVE_START:ER_MR_ENCLAVE_END],
        mr_signer=data[ER_MR_SIGNER_START:ER_MR_SIGNER_END],
        isv_prod_id=struct.unpack_from("<H", data, ER_ISV_PROD_ID_START)[0],
        isv_svn=struct.unpack_from("<H", data, ER_ISV_SVN_START)[0],
        report_data=data[ER_REPORT_DATA_START:ER_REPORT_DATA_END],
    )


def _parse_td_report_body(data: bytes) -> TdReportBody:
    _require(data, TD_REPORT_BODY_SIZE, "TD report body")

    rtmrs = []
    for i in range(RTMR_COUNT):
        start = TD_RTMRS_START + (i * RTMR_SIZE)
        rtmrs.append(data[start:start + RTMR_SIZE])

    return TdReportBody(
        tee_tcb_svn=data[TD_TEE_TCB_SVN_START:TD_TEE_TCB_SVN_END],
        mr_seam=data[TD_MR_SEAM_START:TD_MR_SEAM_END],
        mr_signer_seam=data[TD_MR_SIGNER_SEAM_START:TD_MR_SIGNER_SEAM_END],
        seam_attributes=data[TD_SEAM_ATTRIBUTES_START:TD_SEAM_ATTRIBUTES_END],
        td_attributes=data[TD_ATTRIBUTES_START:TD_ATTRIBUTES_END],
        xfam=data[TD_XFAM_START:TD_XFAM_END],
        mr_td=data[TD_MR_TD_START:TD_MR_TD_END],
        mr_config_id=data[TD_MR_CONFIG_ID_START:TD_MR_CONFIG_ID_END],
        mr_owner=data[TD_MR_OWNER_START:TD_MR_OWNER_END],
        mr_owner_config=data[TD_MR_OWNER_CONFIG_START:TD_MR_OWNER_CONFIG_END],
        rtmrs=rtmrs,
        report_data=data[TD_REPORT_DATA_START:TD_REPORT_DATA_END],
    )


def _parse_cert_data_header(data: bytes, what: str) -> tuple[int, bytes]:
    """
    Parse a (type, size, data) certification data entry.

    The declared size must cover exactly the bytes that follow the header.
    """
    if len(data) < CERT_DATA_HEADER_SIZE:
        raise QuoteParseError(f"{what} too short for header")

    cert_type = struct.unpack_from("<H", data, 0)[0]
    cert_data_size = struct.unpack_from("<I", data, 2)[0]

    remaining = len(data) - CERT_DATA_HEADER_SIZE
    if remaining != cert_data_size:
        raise QuoteParseError(
            f"{what} size mismatch: declared {cert_data_size} bytes, "
            f"but {remaining} bytes remain after header"
        )
    return cert_type, data[CERT_DATA_HEADER_SIZE:]


def _parse_pck_cert_chain_data(data: bytes) -> PckCertChainData:
    cert_type, cert_data = _parse_cert_data_header(data, "PCK cert chain data")
    if cert_type != CERT_DATA_TYPE_PCK_CERT_CHAIN:
        raise QuoteParseError(
            f"Expected PCK cert chain type {CERT_DATA_TYPE_PCK_CERT_CHAIN}, got {cert_type}"
        )
    return PckCertChainData(
        cert_type=cert_type,
        cert_data_size=len(cert_data),
        cert_data=cert_data,
    )


def _parse_qe_report_certification_data(
    data: bytes,
) -> QeReportCertificationData:
    """
    Parse QE report certification data.

    Structure:
        - QE Report: 384 bytes
        - QE Report Signature: 64 bytes
        - QE Auth Data Size: 2 bytes
        - QE Auth Data: variable
        - PCK Cert Chain Data: variable (type 5)
    """
    offset = 0

    _require(data[offset:], ENCLAVE_REPORT_SIZE, "QE report")
    qe_report_raw = data[offset:offset + ENCLAVE_REPORT_SIZE]
    offset += ENCLAVE_REPORT_SIZE

    _require(data[offset:], SIGNATURE_SIZE, "QE report signature")
    qe_report_signature = data[offset:offset + SIGNATURE_SIZE]
    offset += SIGNATURE_SIZE

    _require(data[offset:], QE_AUTH_DATA_SIZE_FIELD, "QE auth data size")
    qe_auth_data_size = struct.unpack_from("<H", data, offset)[0]
    offset += QE_AUTH_DATA_SIZE_FIELD

    _require(data[offset:], qe_auth_data_size, "QE auth data")
    qe_auth_data = data[offset:offset + qe_auth_data_size]
    offset += qe_auth_data_size

    pck_cert_chain_data = _parse_pck_cert_chain_data(data[offset:])

    return QeReportCertificationData(
        qe_report=qe_report_raw,
        qe_report_parsed=_parse_enclave_report(qe_report_raw),
        qe_report_signature=qe_report_signature,
        qe_auth_data=qe_auth_data,
        pck_cert_chain_data=pck_cert_chain_data,
    )


def _parse_signature_data_v3(data: bytes) -> SignatureData:
    """
    Parse QuoteV3 signature data.

    Structure:
        - Signature: 64 bytes
        - Attestation Key: 64 bytes
        - QE report certification data without an outer header
          (the PCK chain entry follows the QE auth data)
    """
    min_size = SIGNATURE_SIZE + ATTESTATION_KEY_SIZE
    _require(data, min_size, "Signature data")

    qe_report_data = _parse_qe_report_certification_data(data[min_size:])
    return SignatureData(
        signature=data[:SIGNATURE_SIZE],
        attestation_key=data[SIGNATURE_SIZE:min_size],
        cert_type=CERT_DATA_TYPE_QE_REPORT,
        qe_report_data=qe_report_data,
        pck_cert_chain_data=qe_report_data.pck_cert_chain_data,
    )


def _parse_signature_data_v4(data: bytes) -> SignatureData:
    """
    Parse QuoteV4 signature data.

    Structure:
        - Signature: 64 bytes
        - Attestation Key: 64 bytes
        - Certification Data: type 6 (QE report wrapping type 5) or type 5
    """
    min_size = SIGNATURE_SIZE + ATTESTATION_KEY_SIZE
    _require(data, min_size + CERT_DATA_HEADER_SIZE, "Signature data")

    cert_type, cert_data = _parse_cert_data_header(data[min_size:], "Certification data")

    if cert_type == CERT_DATA_TYPE_QE_REPORT:
        qe_report_data = _parse_qe_report_certification_data(cert_data)
        pck_chain = qe_report_data.pck_cert_chain_data
    elif cert_type == CERT_DATA_TYPE_PCK_CERT_CHAIN:
        qe_report_data = None
        pck_chain = PckCertChainData(
            cert_type=cert_type,
            cert_data_size=len(cert_data),
            cert_data=cert_data,
        )
    else:
        raise QuoteParseError(f"Unsupported certification data type: {cert_type}")

    return SignatureData(
        signature=data[:SIGNATURE_SIZE],
        attestation_key=data[SIGNATURE_SIZE:min_size],
        cert_type=cert_type,
        qe_report_data=qe_report_data,
        pck_cert_chain_data=pck_chain,
    )


def _validate_header(header: QuoteHeader) -> None:
    if header.version == QUOTE_VERSION_V5:
        raise QuoteParseError(
            "QuoteV5 is not supported. Only QuoteV3 and QuoteV4 are implemented."
        )

    if header.version not in (QUOTE_VERSION_V3, QUOTE_VERSION_V4):
        raise QuoteParseError(f"Unsupported quote version: {header.version}")

    if header.attestation_key_type != ATTESTATION_KEY_TYPE_ECDSA_P256:
        raise QuoteParseError(
            f"Unsupported attestation key type: {header.attestation_key_type}. "
            f"Expected {ATTESTATION_KEY_TYPE_ECDSA_P256} (ECDSA-P256)."
        )

    if header.tee_type not in (TEE_SGX, TEE_TDX):
        raise QuoteParseError(f"Invalid TEE type: 0x{header.tee_type:x}")

    if header.version == QUOTE_VERSION_V3 and header.tee_type != TEE_SGX:
        raise QuoteParseError("QuoteV3 is only defined for SGX")


def parse_quote(data: bytes) -> Quote:
    """
    Parse a DCAP attestation quote from raw bytes.

    Args:
        data: Raw quote bytes as produced by the quoting enclave

    Returns:
        Parsed Quote structure

    Raises:
        QuoteParseError: If parsing fails or the quote format is unsupported
    """
    header = _parse_header(data)
    _validate_header(header)

    if header.tee_type == TEE_TDX:
        body_size = TD_REPORT_BODY_SIZE
    else:
        body_size = ENCLAVE_REPORT_SIZE

    body_end = HEADER_SIZE + body_size
    _require(data, body_end + SIGNATURE_DATA_SIZE_FIELD, "Quote")

    body_raw = data[HEADER_SIZE:body_end]
    if header.tee_type == TEE_TDX:
        body = _parse_td_report_body(body_raw)
    else:
        body = _parse_enclave_report(body_raw)

    signature_data_size = struct.unpack_from("<I", data, body_end)[0]
    sig_start = body_end + SIGNATURE_DATA_SIZE_FIELD
    sig_end = sig_start + signature_data_size
    if len(data) < sig_end:
        raise QuoteParseError(
            f"Quote truncated: signature data size is {signature_data_size}, "
            f"but only {len(data) - sig_start} bytes available"
        )

    if header.version == QUOTE_VERSION_V3:
        signature_data = _parse_signature_data_v3(data[sig_start:sig_end])
    else:
        signature_data = _parse_signature_data_v4(data[sig_start:sig_end])

    return Quote(
        header=header,
        body=body,
        signature_data_size=signature_data_size,
        signature_data=signature_data,
        extra_bytes=data[sig_end:],
    )
