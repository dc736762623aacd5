from .attestation import (
    AttestationError,
    CollateralArtifacts,
    CollateralBundle,
    DeviceKind,
    IntelPcsCollateralSource,
    ReportAcquirer,
    acquire,
    extract_fmspc_and_issuer,
    inspect_quote,
)
from .journal import Journal
from .pipeline import (
    PipelineConfig,
    RunFailedError,
    VerificationOrchestrator,
    parse_quote_batch,
    parse_quote_hex,
    prove,
)

__all__ = [
    'AttestationError',
    'CollateralArtifacts',
    'CollateralBundle',
    'DeviceKind',
    'IntelPcsCollateralSource',
    'ReportAcquirer',
    'acquire',
    'extract_fmspc_and_issuer',
    'inspect_quote',
    'Journal',
    'PipelineConfig',
    'RunFailedError',
    'VerificationOrchestrator',
    'parse_quote_batch',
    'parse_quote_hex',
    'prove',
]
