"""
Verification orchestration.

This module provides the high-level entry point that turns an attestation
device (or an already acquired quote) into a journal. It coordinates:

- Report acquisition (attestation.device)
- Collateral resolution (caller-supplied, then a collateral source)
- Bundle assembly and content hashing (attestation.collateral)
- The external verification oracle
- Journal encoding (journal)

Usage:
    from dcap_prover.pipeline import VerificationOrchestrator

    orchestrator = VerificationOrchestrator(oracle, IntelPcsCollateralSource())
    journal = orchestrator.run(DeviceKind.CONFIGFS)
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from .attestation.abi_quote import Quote, parse_quote
from .attestation.collateral import (
    CollateralArtifacts,
    CollateralBundle,
    CollateralHashes,
    Digest,
    assemble_artifacts,
    collateral_hashes,
    keccak256,
)
from .attestation.device import DeviceConfig, ReportAcquirer
from .attestation.pcs import CollateralSource
from .attestation.types import (
    AcquiredReport,
    AttestationError,
    CollateralFetchError,
    DeviceKind,
    EncodingError,
    InvalidRequestError,
    JournalMismatchError,
    MissingCollateralError,
    UnknownError,
    VerificationFailedError,
    VerificationResult,
)
from .attestation.utils import decode_hex
from .journal import Journal, decode, encode
from .provers.base import GuestInput, ProofResult, ProverBackend

logger = logging.getLogger(__name__)

Oracle = Callable[[int, CollateralBundle, Quote], bytes]


# =============================================================================
# Configuration
# =============================================================================

@dataclass(frozen=True)
class PipelineConfig:
    """
    Configuration for a verification run.

    Attributes:
        timestamp: Verification time (unix seconds); the current time if None
        digest: Content hash used for the journal's collateral hashes
        device: Device and metadata-service settings for acquisition
    """
    timestamp: Optional[int] = None
    digest: Digest = keccak256
    device: DeviceConfig = field(default_factory=DeviceConfig)


_DEFAULT_CONFIG = PipelineConfig()


# =============================================================================
# Run state
# =============================================================================

class RunState(str, Enum):
    """Stages of a verification run, in order."""
    START = "start"
    REPORT_ACQUIRED = "report_acquired"
    COLLATERAL_RESOLVED = "collateral_resolved"
    BUNDLE_ASSEMBLED = "bundle_assembled"
    VERIFIED = "verified"
    JOURNAL_EMITTED = "journal_emitted"
    FAILED = "failed"


class RunFailedError(AttestationError):
    """
    Raised when a verification run fails.

    `step` is the state the run was entering and `cause` the typed error
    that stopped it.
    """
    kind = "run_failed"

    def __init__(self, step: RunState, cause: Exception):
        super().__init__(f"Run failed entering {step.value}: {cause}")
        self.step = step
        self.cause = cause


@dataclass
class JournalRun:
    """Everything a successful run produced."""
    raw_quote: bytes
    report: Optional[AcquiredReport]
    bundle: CollateralBundle
    result: VerificationResult
    hashes: CollateralHashes
    journal: Journal
    journal_bytes: bytes
    states: List[RunState] = field(default_factory=list)

    def guest_input(self) -> GuestInput:
        return GuestInput(
            raw_quote=self.raw_quote,
            collateral=self.bundle,
            timestamp=self.journal.timestamp,
        )


class _Run:
    """Per-run state tracking; never shared between runs."""

    def __init__(self):
        self.state = RunState.START
        self.states = [RunState.START]

    def step(self, target: RunState, fn, *args):
        try:
            value = fn(*args)
        except AttestationError as e:
            self._fail(target, e)
        except Exception as e:
            self._fail(target, UnknownError(f"Unexpected failure: {e}"), e)
        self.state = target
        self.states.append(target)
        logger.debug("Run entered %s", target.value)
        return value

    def _fail(self, target: RunState, error: AttestationError, original: Optional[Exception] = None):
        self.state = RunState.FAILED
        self.states.append(RunState.FAILED)
        logger.warning("Run failed entering %s: %s", target.value, error)
        raise RunFailedError(target, error) from (original or error)


def _check_raw_quote(raw_quote: bytes) -> None:
    if not raw_quote:
        raise InvalidRequestError("Empty quote")


# =============================================================================
# Orchestrator
# =============================================================================

class VerificationOrchestrator:
    """
    Runs acquisition -> collateral -> assembly -> oracle -> journal.

    Args:
        oracle: Verification callable `(timestamp, bundle, quote) -> bytes`
        collateral_source: Source for artifacts the caller does not supply
        acquirer: Report acquirer (a default one is created if None)
        config: Run configuration
    """

    def __init__(
        self,
        oracle: Oracle,
        collateral_source: Optional[CollateralSource] = None,
        acquirer: Optional[ReportAcquirer] = None,
        config: Optional[PipelineConfig] = None,
    ):
        self.oracle = oracle
        self.collateral_source = collateral_source
        self.config = config or _DEFAULT_CONFIG
        self.acquirer = acquirer or ReportAcquirer(self.config.device)

    def run(
        self,
        device_kind: Optional[DeviceKind] = None,
        report_data: Optional[bytes] = None,
        collateral: Optional[CollateralArtifacts] = None,
    ) -> Journal:
        """
        Acquire a quote from a device and produce its journal.

        Raises:
            RunFailedError: With the failing step and typed cause
        """
        return self.execute(device_kind, report_data, collateral).journal

    def run_with_quote(
        self,
        raw_quote: bytes,
        collateral: Optional[CollateralArtifacts] = None,
    ) -> Journal:
        """
        Produce the journal of an already acquired quote.

        Raises:
            RunFailedError: With the failing step and typed cause
        """
        return self.execute_quote(raw_quote, collateral).journal

    def execute(
        self,
        device_kind: Optional[DeviceKind] = None,
        report_data: Optional[bytes] = None,
        collateral: Optional[CollateralArtifacts] = None,
    ) -> JournalRun:
        """Like run(), but return every intermediate product."""
        run = _Run()
        report = run.step(
            RunState.REPORT_ACQUIRED, self.acquirer.acquire, device_kind, report_data
        )
        return self._finish(run, report.report, report, collateral)

    def execute_quote(
        self,
        raw_quote: bytes,
        collateral: Optional[CollateralArtifacts] = None,
    ) -> JournalRun:
        """Like run_with_quote(), but return every intermediate product."""
        run = _Run()
        run.step(RunState.REPORT_ACQUIRED, _check_raw_quote, raw_quote)
        return self._finish(run, raw_quote, None, collateral)

    def _finish(
        self,
        run: _Run,
        raw_quote: bytes,
        report: Optional[AcquiredReport],
        collateral: Optional[CollateralArtifacts],
    ) -> JournalRun:
        artifacts = run.step(
            RunState.COLLATERAL_RESOLVED, self._resolve_collateral, raw_quote, collateral
        )
        bundle = run.step(RunState.BUNDLE_ASSEMBLED, assemble_artifacts, artifacts)

        timestamp = self.config.timestamp
        if timestamp is None:
            timestamp = int(time.time())

        result = run.step(RunState.VERIFIED, self._verify, timestamp, bundle, raw_quote)
        hashes, journal_bytes = run.step(
            RunState.JOURNAL_EMITTED, self._emit, result, bundle
        )

        journal = decode(journal_bytes)
        logger.info("Emitted %d byte journal at timestamp %d", len(journal_bytes), timestamp)
        return JournalRun(
            raw_quote=raw_quote,
            report=report,
            bundle=bundle,
            result=result,
            hashes=hashes,
            journal=journal,
            journal_bytes=journal_bytes,
            states=list(run.states),
        )

    def _resolve_collateral(
        self, raw_quote: bytes, collateral: Optional[CollateralArtifacts]
    ) -> CollateralArtifacts:
        artifacts = collateral or CollateralArtifacts()
        if not artifacts.missing():
            return artifacts

        if self.collateral_source is not None:
            logger.debug("Fetching missing collateral: %s", ", ".join(artifacts.missing()))
            try:
                fetched = self.collateral_source.fetch(raw_quote)
            except AttestationError:
                raise
            except Exception as e:
                raise CollateralFetchError(f"Collateral source failed: {e}") from e
            artifacts = artifacts.merge(fetched)

        missing = artifacts.missing()
        if missing:
            raise MissingCollateralError(missing[0])
        return artifacts

    def _verify(self, timestamp: int, bundle: CollateralBundle, raw_quote: bytes) -> VerificationResult:
        quote = parse_quote(raw_quote)
        try:
            output = self.oracle(timestamp, bundle, quote)
        except Exception as e:
            raise VerificationFailedError(f"Quote verification failed: {e}") from e
        if not isinstance(output, (bytes, bytearray)):
            raise VerificationFailedError(
                f"Oracle returned {type(output).__name__}, expected bytes"
            )
        return VerificationResult(output=bytes(output), timestamp=timestamp)

    def _emit(self, result: VerificationResult, bundle: CollateralBundle):
        hashes = collateral_hashes(bundle, self.config.digest)
        return hashes, encode(result, result.timestamp, hashes)


# =============================================================================
# Proving
# =============================================================================

def prove(journal_run: JournalRun, backend: ProverBackend) -> ProofResult:
    """
    Prove a completed run with a prover backend.

    The backend's public output must decode to the journal emitted locally.

    Raises:
        ProverError: If the backend fails
        JournalMismatchError: If the proven journal differs from the local one
    """
    proof = backend.prove(journal_run.guest_input())
    proven = backend.decode_output(proof.public_output)
    if proven != journal_run.journal:
        raise JournalMismatchError(
            f"Proven journal differs from local journal:\n"
            f"  proven: {proven}\n"
            f"  local:  {journal_run.journal}"
        )
    logger.info("Proof verified against local journal")
    return proof


# =============================================================================
# Quote input helpers
# =============================================================================

def parse_quote_hex(text: str) -> bytes:
    """
    Decode one hex-encoded quote (optional 0x prefix).

    Raises:
        EncodingError: If the text is empty or not valid hex
    """
    try:
        raw = decode_hex(text)
    except ValueError as e:
        raise EncodingError(str(e)) from e
    if not raw:
        raise EncodingError("Empty quote")
    return raw


def parse_quote_batch(text: str) -> List[bytes]:
    """
    Decode a comma-separated list of hex quotes.

    Surrounding whitespace and empty entries are ignored.

    Raises:
        EncodingError: If any entry is not valid hex
    """
    return [parse_quote_hex(item) for item in text.split(",") if item.strip()]
