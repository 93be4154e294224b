"""Groth16 over BN254 through the snarkjs command line.

The circuit is compiled in Python to an iden3 .r1cs file and witnesses are
written as .wtns, so snarkjs only runs the ceremony, proving and
verification steps.
"""

import json
import logging
import os
import struct
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple, Type

from velo.circuit.r1cs import ConstraintSystem
from velo.exceptions import ArtifactMissing, CeremonyError, ProofGenerationError, VeloError
from velo.proving.backend import ProvingBackend

logger = logging.getLogger(__name__)


class SnarkjsBackend(ProvingBackend):
    """Drive snarkjs as a subprocess."""

    name = "snarkjs"
    universal_name = "universal.ptau"
    proving_key_name = "withdraw_final.zkey"

    def __init__(self, binary: str = "snarkjs", timeout: Optional[float] = None):
        self.binary = binary
        self.timeout = timeout

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        cmd = [self.binary, *args]
        logger.info(f"Running {' '.join(cmd)}")
        try:
            return subprocess.run(cmd, capture_output=True, text=True, check=False, timeout=self.timeout)
        except FileNotFoundError as e:
            raise ArtifactMissing(
                f"snarkjs executable '{self.binary}' not found; install it with 'npm install -g snarkjs'"
            ) from e
        except subprocess.TimeoutExpired as e:
            raise ProofGenerationError(f"snarkjs timed out after {self.timeout}s") from e

    def _check(self, step: str, *args: str, error: Type[VeloError] = CeremonyError) -> str:
        result = self._run(*args)
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            raise error(f"{step} failed: {detail}")
        return result.stdout

    def universal_setup(self, power: int, out_path: Path, entropy: bytes) -> Path:
        out_path = Path(out_path)
        work = out_path.parent
        initial = work / "pot_0000.ptau"
        contributed = work / "pot_0001.ptau"

        self._check("powersoftau new", "powersoftau", "new", "bn128", str(power), str(initial))
        self._check(
            "powersoftau contribute",
            "powersoftau", "contribute", str(initial), str(contributed),
            "--name=velo local contribution", f"-e={entropy.hex()}",
        )
        self._check("powersoftau prepare phase2", "powersoftau", "prepare", "phase2", str(contributed), str(out_path))

        for leftover in (initial, contributed):
            if leftover.exists():
                leftover.unlink()
        return out_path

    def verify_universal(self, path: Path) -> None:
        if not Path(path).exists():
            raise ArtifactMissing(f"Universal parameters not found at {path}")
        self._check("powersoftau verify", "powersoftau", "verify", str(path))

    def universal_power(self, path: Path) -> int:
        """Read the power field from a .ptau header section."""
        try:
            data = Path(path).read_bytes()
        except FileNotFoundError as e:
            raise ArtifactMissing(f"Universal parameters not found at {path}") from e
        if data[:4] != b"ptau":
            raise CeremonyError(f"{path} is not a ptau file")
        _, n_sections = struct.unpack_from("<II", data, 4)
        offset = 12
        for _ in range(n_sections):
            section_type, size = struct.unpack_from("<IQ", data, offset)
            offset += 12
            if section_type == 1:
                (n8,) = struct.unpack_from("<I", data, offset)
                (power,) = struct.unpack_from("<I", data, offset + 4 + n8)
                return power
            offset += size
        raise CeremonyError(f"{path} has no header section")

    def circuit_setup(self, universal_path: Path, r1cs_path: Path, out_dir: Path,
                      entropy: bytes) -> Tuple[Path, Path]:
        out_dir = Path(out_dir)
        initial = out_dir / "withdraw_0000.zkey"
        final = out_dir / self.proving_key_name
        vk_path = out_dir / "verification_key.json"

        self._check("groth16 setup", "groth16", "setup", str(r1cs_path), str(universal_path), str(initial))
        self._check(
            "zkey contribute",
            "zkey", "contribute", str(initial), str(final),
            "--name=velo phase2 contribution", f"-e={entropy.hex()}",
        )
        self._check("zkey export verificationkey", "zkey", "export", "verificationkey", str(final), str(vk_path))

        if initial.exists():
            initial.unlink()
        return final, vk_path

    def prove(self, proving_key_path: Path, cs: ConstraintSystem, circuit_digest: str) -> Dict:
        if not Path(proving_key_path).exists():
            raise ArtifactMissing(f"Proving key not found at {proving_key_path}; run setup first")

        with tempfile.TemporaryDirectory(prefix="velo-prove-") as tmp:
            witness_path = os.path.join(tmp, "witness.wtns")
            proof_path = os.path.join(tmp, "proof.json")
            public_path = os.path.join(tmp, "public.json")
            Path(witness_path).write_bytes(cs.to_wtns_bytes())

            self._check(
                "groth16 prove",
                "groth16", "prove", str(proving_key_path), witness_path, proof_path, public_path,
                error=ProofGenerationError,
            )
            proof = json.loads(Path(proof_path).read_text())
            public = [int(v) for v in json.loads(Path(public_path).read_text())]

        if public != cs.public_values:
            raise ProofGenerationError("snarkjs returned public signals that differ from the witness")
        return proof

    def verify(self, verification_key: Dict, public_signals: Sequence[str], proof: Dict) -> bool:
        with tempfile.TemporaryDirectory(prefix="velo-verify-") as tmp:
            paths = {}
            for name, payload in (("vk", verification_key), ("public", list(public_signals)), ("proof", proof)):
                paths[name] = os.path.join(tmp, f"{name}.json")
                Path(paths[name]).write_text(json.dumps(payload))
            result = self._run("groth16", "verify", paths["vk"], paths["public"], paths["proof"])
        if result.returncode != 0:
            logger.info(f"snarkjs rejected proof: {(result.stdout or result.stderr).strip()}")
            return False
        return True
