"""Proving backend interface and the proof bundle exchanged with the ledger."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from velo.circuit.r1cs import ConstraintSystem


@dataclass
class ProofBundle:
    """A proof together with the public signals it was generated for."""

    proof: Dict
    public_signals: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"proof": self.proof, "publicSignals": list(self.public_signals)}

    @classmethod
    def from_dict(cls, data: dict) -> "ProofBundle":
        return cls(proof=dict(data["proof"]), public_signals=[str(s) for s in data["publicSignals"]])


class ProvingBackend(ABC):
    """
    One proof system behind the pipeline.

    Backends own the on-disk format of their universal parameters and
    proving key; the pipeline owns where those files live.
    """

    name: str = ""
    universal_name: str = ""
    proving_key_name: str = ""

    @abstractmethod
    def universal_setup(self, power: int, out_path: Path, entropy: bytes) -> Path:
        """Generate universal parameters for up to 2^power constraints."""

    @abstractmethod
    def verify_universal(self, path: Path) -> None:
        """Check a universal parameter file; raise CeremonyError if it is invalid."""

    @abstractmethod
    def universal_power(self, path: Path) -> int:
        """Maximum constraint count exponent a universal file supports."""

    @abstractmethod
    def circuit_setup(self, universal_path: Path, r1cs_path: Path, out_dir: Path,
                      entropy: bytes) -> Tuple[Path, Path]:
        """Phase-2 contribution; returns (proving key path, verification key path)."""

    @abstractmethod
    def prove(self, proving_key_path: Path, cs: ConstraintSystem, circuit_digest: str) -> Dict:
        """Produce a proof for a satisfied constraint system."""

    @abstractmethod
    def verify(self, verification_key: Dict, public_signals: Sequence[str], proof: Dict) -> bool:
        """Check a proof against its public signals."""


def get_backend(name: str, snarkjs_bin: Optional[str] = None) -> ProvingBackend:
    """
    Instantiate a backend by name.

    Raises:
        ValueError: If the name is unknown
    """
    if name == "local":
        from velo.proving.local import LocalBackend
        return LocalBackend()
    if name == "snarkjs":
        from velo.proving.snarkjs import SnarkjsBackend
        return SnarkjsBackend(binary=snarkjs_bin or "snarkjs")
    raise ValueError(f"Unknown proving backend: {name}")
