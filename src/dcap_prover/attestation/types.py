"""
Shared types, errors, and protocol constants for quote acquisition and
collateral handling.

This module is the canonical source for types used across the device,
certificate, collateral and journal modules. It has no intra-package
dependencies, so any module can import from it without risk of circular
imports.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


# =============================================================================
# Protocol-level constants
# =============================================================================

REPORT_DATA_SIZE = 64  # caller-supplied nonce bound into the quote (bytes)
FMSPC_SIZE = 6         # Firmware/Microcode Security Patch Cluster (bytes)
HASH_SIZE = 32         # every collateral content hash in a journal (bytes)

PCK_PLATFORM_CA_CN = "Intel SGX PCK Platform CA"
PCK_PROCESSOR_CA_CN = "Intel SGX PCK Processor CA"


# =============================================================================
# Enums
# =============================================================================

class DeviceKind(str, Enum):
    """Attestation device paths a quote can be acquired from"""
    TPM = "tpm"
    CONFIGFS = "configfs"
    LEGACY = "legacy"
    MOCK = "mock"


class PckIssuer(str, Enum):
    """Intermediate CA that issued the PCK leaf certificate"""
    PLATFORM = "platform"
    PROCESSOR = "processor"

    @classmethod
    def from_common_name(cls, common_name: Optional[str]) -> "PckIssuer":
        """
        Map an issuer common name to a PckIssuer.

        The match is exact and case-sensitive; any other value raises
        UnrecognizedIssuerError carrying the observed name.
        """
        if common_name == PCK_PLATFORM_CA_CN:
            return cls.PLATFORM
        if common_name == PCK_PROCESSOR_CA_CN:
            return cls.PROCESSOR
        raise UnrecognizedIssuerError(common_name or "")


# =============================================================================
# Errors
# =============================================================================

class AttestationError(Exception):
    """Base class for all dcap-prover errors"""
    kind = "unknown"


class FirmwareError(AttestationError):
    """Raised when the TEE device or its firmware interface fails"""
    kind = "firmware"

class IOFailureError(AttestationError):
    """Raised on transport, decode or protocol failures while acquiring a report"""
    kind = "io"

class PermissionDeniedError(AttestationError):
    """Raised when the process may not access the attestation device"""
    kind = "permission"

class TpmError(AttestationError):
    """Raised when reading the vTPM NV index fails"""
    kind = "tpm"

class UnknownError(AttestationError):
    """Raised for device failures that fit no other category"""
    kind = "unknown"

class InvalidRequestError(AttestationError):
    """Raised when an acquisition request is rejected before any I/O"""
    kind = "invalid_request"

class NoCertificatesFoundError(AttestationError):
    """Raised when a quote's certification data holds no PEM certificate"""
    kind = "no_certificates"

class MalformedCertificateError(AttestationError):
    """Raised when the PCK leaf certificate cannot be parsed"""
    kind = "malformed_certificate"

class UnrecognizedIssuerError(AttestationError):
    """Raised when the PCK leaf issuer is neither Platform nor Processor CA"""
    kind = "unrecognized_issuer"

    def __init__(self, issuer: str):
        super().__init__(f"Unrecognized PCK issuer: {issuer!r}")
        self.issuer = issuer

class ExtensionMissingError(AttestationError):
    """Raised when the PCK leaf has no Intel SGX extension"""
    kind = "extension_missing"

class MalformedExtensionError(AttestationError):
    """Raised when the Intel SGX extension cannot be walked to a valid FMSPC"""
    kind = "malformed_extension"

class EncodingError(AttestationError):
    """Raised when a value cannot be encoded or decoded in its wire format"""
    kind = "encoding"

class MissingCollateralError(AttestationError):
    """Raised when a collateral artifact is unavailable after fetching"""
    kind = "missing_collateral"

    def __init__(self, artifact: str):
        super().__init__(f"Missing collateral artifact: {artifact}")
        self.artifact = artifact

class VerificationFailedError(AttestationError):
    """Raised when the verification oracle rejects a quote"""
    kind = "verification_failed"

class TruncatedJournalError(AttestationError):
    """Raised when a journal buffer is shorter than its declared layout"""
    kind = "truncated_journal"

class QuoteParseError(AttestationError):
    """Raised when a raw quote does not follow the DCAP quote layout"""
    kind = "quote_parse"

class CollateralFetchError(AttestationError):
    """Raised when collateral cannot be fetched from a collateral source"""
    kind = "collateral_fetch"

class ProverError(AttestationError):
    """Raised when a proving engine fails or returns unusable output"""
    kind = "prover"

class JournalMismatchError(AttestationError):
    """Raised when a proof's public output differs from the local journal"""
    kind = "journal_mismatch"


# =============================================================================
# Data types
# =============================================================================

@dataclass(frozen=True)
class AcquiredReport:
    """
    A report acquired from an attestation device.

    For every device kind except TPM, `report` is a DCAP quote and
    `report_data` is the 64-byte nonce bound into it. For TPM the quote
    was produced by the metadata service, `report_data` is None and
    `var_data` carries the HCL runtime claims.
    """
    report: bytes
    var_data: Optional[bytes]
    report_data: Optional[bytes]
    device_kind: DeviceKind


@dataclass(frozen=True)
class Fmspc:
    """FMSPC of the platform, as found in the PCK leaf certificate"""
    raw: bytes

    def __post_init__(self):
        if len(self.raw) != FMSPC_SIZE:
            raise MalformedExtensionError(
                f"FMSPC has wrong size: expected {FMSPC_SIZE}, got {len(self.raw)}"
            )

    def hex(self) -> str:
        return self.raw.hex()

    def __str__(self) -> str:
        return self.hex()


@dataclass(frozen=True)
class VerificationResult:
    """Opaque output of the verification oracle and the time it was checked at"""
    output: bytes
    timestamp: int
