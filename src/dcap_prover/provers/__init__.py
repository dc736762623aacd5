from .base import GuestInput, ProofResult, ProverBackend, ProvingEngine
from .boundless import BoundlessBackend
from .pico import PicoBackend
from .risc0 import Risc0Backend
from .sp1 import Sp1Backend

__all__ = [
    "GuestInput",
    "ProofResult",
    "ProverBackend",
    "ProvingEngine",
    "Risc0Backend",
    "PicoBackend",
    "Sp1Backend",
    "BoundlessBackend",
]
