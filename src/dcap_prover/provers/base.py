"""
Prover backend interface.

A prover backend packages a verified run for one zkVM guest program:
it encodes the guest input in the program's format, hands it to a proving
engine, and decodes the proof's public output back into a Journal. The
proving engine itself (local prover, remote network, ...) is injected as
a callable.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

from ..attestation.collateral import CollateralBundle
from ..attestation.types import AttestationError, ProverError
from ..journal import Journal, decode
from .abi import decode_params, encode_params

logger = logging.getLogger(__name__)

COLLATERAL_ABI_TYPES = ("bytes", "bytes", "bytes", "string", "string")
GUEST_INPUT_ABI_TYPES = ("bytes", "bytes", "uint64")


@dataclass(frozen=True)
class GuestInput:
    """What a guest program needs to verify a quote and emit its journal."""
    raw_quote: bytes
    collateral: CollateralBundle
    timestamp: int


@dataclass(frozen=True)
class ProofResult:
    """A proof and the public output (journal bytes) it commits to."""
    proof: bytes
    public_output: bytes


ProvingEngine = Callable[[bytes, bytes], ProofResult]


def encode_collateral_abi(bundle: CollateralBundle) -> bytes:
    """ABI-encode a bundle as (bytes, bytes, bytes, string, string)."""
    return encode_params(
        COLLATERAL_ABI_TYPES,
        (
            bundle.root_ca_crl,
            bundle.pck_crl,
            bundle.issuer_chain,
            bundle.tcb_info,
            bundle.qe_identity,
        ),
    )


def decode_collateral_abi(data: bytes) -> CollateralBundle:
    root_ca_crl, pck_crl, issuer_chain, tcb_info, qe_identity = decode_params(
        COLLATERAL_ABI_TYPES, data
    )
    return CollateralBundle(
        root_ca_crl=root_ca_crl,
        pck_crl=pck_crl,
        issuer_chain=issuer_chain,
        tcb_info=tcb_info,
        qe_identity=qe_identity,
    )


class ProverBackend(ABC):
    """
    Adapter between a verified run and one guest program.

    Args:
        program: Guest program image (ELF, image ID, ...) passed to the engine
        engine: Callable `(program, input_bytes) -> ProofResult`
    """

    name = "prover"

    def __init__(self, program: bytes, engine: ProvingEngine):
        self.program = program
        self.engine = engine

    @abstractmethod
    def encode_input(self, guest_input: GuestInput) -> bytes:
        """Serialize the guest input in the program's format."""

    def invoke(self, program: bytes, input_bytes: bytes) -> ProofResult:
        """
        Run the proving engine.

        Raises:
            ProverError: If the engine fails or returns something else than a ProofResult
        """
        logger.debug("Invoking %s engine with %d input bytes", self.name, len(input_bytes))
        try:
            result = self.engine(program, input_bytes)
        except AttestationError:
            raise
        except Exception as e:
            raise ProverError(f"{self.name} proving failed: {e}") from e
        if not isinstance(result, ProofResult):
            raise ProverError(
                f"{self.name} engine returned {type(result).__name__}, expected ProofResult"
            )
        return result

    def decode_output(self, public_output: bytes) -> Journal:
        """Decode the proof's public output, which is the journal."""
        return decode(public_output)

    def prove(self, guest_input: GuestInput) -> ProofResult:
        return self.invoke(self.program, self.encode_input(guest_input))


class SolidityAbiBackend(ProverBackend):
    """Guest input as abi.encode(bytes collateral, bytes quote, uint64 timestamp)."""

    def encode_input(self, guest_input: GuestInput) -> bytes:
        return encode_params(
            GUEST_INPUT_ABI_TYPES,
            (
                encode_collateral_abi(guest_input.collateral),
                guest_input.raw_quote,
                guest_input.timestamp,
            ),
        )

    @staticmethod
    def decode_input(data: bytes) -> GuestInput:
        collateral, raw_quote, timestamp = decode_params(GUEST_INPUT_ABI_TYPES, data)
        return GuestInput(
            raw_quote=raw_quote,
            collateral=decode_collateral_abi(collateral),
            timestamp=timestamp,
        )
