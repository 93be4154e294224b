"""Proof pipeline: universal setup, circuit setup, prove and verify."""

from velo.proving.backend import ProofBundle, ProvingBackend, get_backend
from velo.proving.pipeline import ProofPipeline

__all__ = [
    "ProofBundle",
    "ProvingBackend",
    "get_backend",
    "ProofPipeline",
]
