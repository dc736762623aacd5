"""Pico guest program adapter."""

from .base import SolidityAbiBackend


class PicoBackend(SolidityAbiBackend):
    """Adapter for the Pico DCAP guest; same input layout as RISC Zero."""

    name = "pico"
