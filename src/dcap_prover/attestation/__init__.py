from .abi_quote import Quote, parse_quote
from .collateral import (
    CollateralArtifacts,
    CollateralBundle,
    CollateralHashes,
    assemble,
    assemble_artifacts,
    collateral_hashes,
)
from .device import DeviceConfig, ReportAcquirer, acquire
from .pck_extensions import QuoteSummary, extract_fmspc_and_issuer, inspect_quote
from .pcs import CollateralSource, IntelPcsCollateralSource
from .types import (
    AcquiredReport,
    AttestationError,
    DeviceKind,
    Fmspc,
    PckIssuer,
    VerificationResult,
)

__all__ = [
    'Quote',
    'parse_quote',
    'CollateralArtifacts',
    'CollateralBundle',
    'CollateralHashes',
    'assemble',
    'assemble_artifacts',
    'collateral_hashes',
    'DeviceConfig',
    'ReportAcquirer',
    'acquire',
    'QuoteSummary',
    'extract_fmspc_and_issuer',
    'inspect_quote',
    'CollateralSource',
    'IntelPcsCollateralSource',
    'AcquiredReport',
    'AttestationError',
    'DeviceKind',
    'Fmspc',
    'PckIssuer',
    'VerificationResult',
]
