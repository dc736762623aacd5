"""RISC Zero guest program adapter."""

from .base import SolidityAbiBackend


class Risc0Backend(SolidityAbiBackend):
    """
    Adapter for the RISC Zero DCAP guest.

    The guest reads abi.encode(bytes collateral, bytes quote, uint64 timestamp)
    from its input and commits the journal as its public output.
    """

    name = "risc0"
