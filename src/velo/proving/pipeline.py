"""Setup, proving and verification for the withdraw circuit.

Artifacts (under the artifacts directory):
    withdraw.r1cs            compiled circuit
    universal.json|.ptau     universal parameters (backend specific)
    proving_key.json|.zkey   circuit-specific proving key
    verification_key.json    exported verification key
    manifest.json            circuit digest, depth and backend of the last setup
"""

import asyncio
import hashlib
import json
import logging
import os
import shutil
from concurrent.futures import Executor
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Sequence, Union

from velo.circuit.withdraw import WithdrawInputs, compile_circuit, synthesize
from velo.core.merkle_tree import DEFAULT_DEPTH
from velo.exceptions import ArtifactMissing, CeremonyError, ConstraintViolation
from velo.proving.backend import ProofBundle, ProvingBackend, get_backend

logger = logging.getLogger(__name__)

R1CS_NAME = "withdraw.r1cs"
VERIFICATION_KEY_NAME = "verification_key.json"
MANIFEST_NAME = "manifest.json"


def file_sha256(path: Union[str, Path]) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


class ProofPipeline:
    """
    Owns the artifacts directory and sequences the setup phases.

    Universal setup, then circuit setup, then any number of prove/verify
    calls. Each phase checks that its inputs exist and raises ArtifactMissing
    otherwise, and prove/verify refuse keys produced for a different circuit.
    """

    def __init__(self, artifacts_dir: Union[str, Path], backend: Optional[ProvingBackend] = None,
                 depth: int = DEFAULT_DEPTH, environment: str = "development"):
        self.artifacts_dir = Path(artifacts_dir)
        self.backend = backend or get_backend("local")
        self.depth = depth
        self.environment = environment
        self._circuit_digest: Optional[str] = None
        self._verification_key: Optional[Dict] = None

    @classmethod
    def from_settings(cls, settings) -> "ProofPipeline":
        return cls(
            artifacts_dir=settings.artifacts_dir,
            backend=get_backend(settings.proving_backend, settings.snarkjs_bin),
            depth=settings.merkle_depth,
            environment=settings.environment,
        )

    # Paths
    @property
    def r1cs_path(self) -> Path:
        return self.artifacts_dir / R1CS_NAME

    @property
    def universal_path(self) -> Path:
        return self.artifacts_dir / self.backend.universal_name

    @property
    def proving_key_path(self) -> Path:
        return self.artifacts_dir / self.backend.proving_key_name

    @property
    def verification_key_path(self) -> Path:
        return self.artifacts_dir / VERIFICATION_KEY_NAME

    @property
    def manifest_path(self) -> Path:
        return self.artifacts_dir / MANIFEST_NAME

    @property
    def circuit_digest(self) -> str:
        """Digest of the constraint structure for this depth."""
        if self._circuit_digest is None:
            self._circuit_digest = compile_circuit(self.depth).digest()
        return self._circuit_digest

    def compile(self) -> Dict:
        """
        Write the compiled circuit.

        Returns:
            dict: Constraint system statistics plus its digest
        """
        self.artifacts_dir.mkdir(parents=True, exist_ok=True)
        cs = compile_circuit(self.depth)
        data = cs.to_r1cs_bytes()
        self.r1cs_path.write_bytes(data)
        self._circuit_digest = hashlib.sha256(data).hexdigest()
        stats = cs.stats()
        stats["digest"] = self._circuit_digest
        logger.info(f"Compiled withdraw circuit (depth {self.depth}): {stats['constraints']} constraints")
        return stats

    # Phase 1
    def universal_setup(self, power: int, entropy: Optional[bytes] = None) -> Path:
        """
        Generate universal parameters locally.

        A locally generated reference string is only as trustworthy as the
        machine that produced it, so it is refused in production.

        Raises:
            CeremonyError: In the production environment
        """
        if self.environment == "production":
            raise CeremonyError(
                "Local universal setup is refused in production; import a public ceremony file instead"
            )
        logger.warning("Generating universal parameters locally; INSECURE, for non-production use only")
        self.artifacts_dir.mkdir(parents=True, exist_ok=True)
        path = self.backend.universal_setup(power, self.universal_path, entropy or os.urandom(32))
        logger.info(f"Universal parameters (2^{power}) written to {path}")
        return path

    def import_universal(self, source: Union[str, Path], expected_sha256: Optional[str]) -> Path:
        """
        Install universal parameters from a public multi-party ceremony.

        Raises:
            ArtifactMissing: If the source file does not exist
            CeremonyError: If the digest does not match or the transcript fails verification
        """
        source = Path(source)
        if not source.exists():
            raise ArtifactMissing(f"Ceremony file not found at {source}")
        if expected_sha256 is None:
            if self.environment == "production":
                raise CeremonyError("A published ceremony digest is required in production")
            logger.warning(f"Importing {source} without a published digest to compare against")
        else:
            actual = file_sha256(source)
            if actual.lower() != expected_sha256.lower():
                raise CeremonyError(f"Ceremony file digest {actual} does not match expected {expected_sha256}")

        self.backend.verify_universal(source)
        self.artifacts_dir.mkdir(parents=True, exist_ok=True)
        if source.resolve() != self.universal_path.resolve():
            shutil.copyfile(source, self.universal_path)
        logger.info(f"Imported universal parameters from {source}")
        return self.universal_path

    # Phase 2
    def circuit_setup(self, entropy: Optional[bytes] = None) -> Dict:
        """
        Compile the circuit, apply a phase-2 contribution and export the verification key.

        Must be re-run whenever the constraint structure changes.

        Raises:
            ArtifactMissing: If the universal parameters are missing
            CeremonyError: If the circuit is too large for them
        """
        if not self.universal_path.exists():
            raise ArtifactMissing(f"Universal parameters not found at {self.universal_path}; run universal setup first")

        stats = self.compile()
        power = self.backend.universal_power(self.universal_path)
        if stats["constraints"] > 2**power:
            raise CeremonyError(
                f"Circuit has {stats['constraints']} constraints but universal parameters support 2^{power}"
            )

        pk_path, vk_path = self.backend.circuit_setup(
            self.universal_path, self.r1cs_path, self.artifacts_dir, entropy or os.urandom(32)
        )
        manifest = {
            "backend": self.backend.name,
            "circuitDigest": stats["digest"],
            "depth": self.depth,
            "power": power,
            "constraints": stats["constraints"],
            "universalSha256": file_sha256(self.universal_path),
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        self.manifest_path.write_text(json.dumps(manifest, indent=2))
        self._verification_key = None
        logger.info(f"Circuit setup complete: proving key {pk_path.name}, verification key {vk_path.name}")
        return manifest

    def _require_current_setup(self) -> Dict:
        try:
            manifest = json.loads(self.manifest_path.read_text())
        except FileNotFoundError as e:
            raise ArtifactMissing(f"No setup manifest in {self.artifacts_dir}; run setup first") from e
        if manifest.get("backend") != self.backend.name:
            raise ArtifactMissing(
                f"Artifacts were produced by the {manifest.get('backend')} backend; re-run setup"
            )
        if manifest.get("circuitDigest") != self.circuit_digest:
            raise ArtifactMissing("Setup artifacts belong to a different circuit; re-run setup")
        return manifest

    def load_verification_key(self) -> Dict:
        if self._verification_key is None:
            self._require_current_setup()
            try:
                self._verification_key = json.loads(self.verification_key_path.read_text())
            except FileNotFoundError as e:
                raise ArtifactMissing(f"Verification key not found at {self.verification_key_path}") from e
        return self._verification_key

    # Prove / verify
    def prove(self, inputs: WithdrawInputs) -> ProofBundle:
        """
        Generate a proof for a full assignment.

        Raises:
            ArtifactMissing: If setup has not been run for this circuit
            ConstraintViolation: If the assignment does not satisfy the circuit
        """
        self._require_current_setup()
        if not self.proving_key_path.exists():
            raise ArtifactMissing(f"Proving key not found at {self.proving_key_path}; run setup first")

        try:
            cs = synthesize(inputs, self.depth)
        except ValueError as e:
            raise ConstraintViolation(str(e)) from e
        cs.check()

        proof = self.backend.prove(self.proving_key_path, cs, self.circuit_digest)
        return ProofBundle(proof=proof, public_signals=[str(v) for v in cs.public_values])

    async def prove_async(self, inputs: WithdrawInputs, executor: Optional[Executor] = None) -> ProofBundle:
        """Run prove() in an executor so the event loop stays responsive."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(executor, self.prove, inputs)

    def verify(self, public_signals: Sequence[Union[str, int]], proof: Dict) -> bool:
        """
        Check a proof against exactly these public signals.

        Raises:
            ArtifactMissing: If no verification key for this circuit exists
        """
        verification_key = self.load_verification_key()
        return self.backend.verify(verification_key, [str(s) for s in public_signals], proof)

    def verify_bundle(self, bundle: ProofBundle) -> bool:
        return self.verify(bundle.public_signals, bundle.proof)

    def status(self) -> Dict[str, bool]:
        return {
            "r1cs": self.r1cs_path.exists(),
            "universal": self.universal_path.exists(),
            "provingKey": self.proving_key_path.exists(),
            "verificationKey": self.verification_key_path.exists(),
            "manifest": self.manifest_path.exists(),
        }
