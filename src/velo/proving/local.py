"""In-process development backend.

NOT PRODUCTION-READY. Proofs are ECDSA (P-256) signatures by a key derived
during circuit setup over the circuit digest, the public signals and a
blinded commitment to the witness. Whoever holds the proving key can sign
any statement, so this backend only demonstrates the pipeline shape (setup
artifacts, witness checking, public-signal binding). Use the snarkjs backend
for real Groth16 proofs.
"""

import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

from Crypto.Hash import SHA256
from Crypto.PublicKey import ECC
from Crypto.Signature import DSS

from velo.circuit.r1cs import ConstraintSystem, read_r1cs_header
from velo.exceptions import ArtifactMissing, CeremonyError
from velo.proving.backend import ProvingBackend
from velo.utils.hash import FIELD_MODULUS, sha256

logger = logging.getLogger(__name__)

PROTOCOL = "velo-local"
SRS_PROTOCOL = "velo-local-srs"
CURVE = "P-256"
CURVE_ORDER = 0xFFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551


def _transcript_hash(power: int, tau_x: str, tau_y: str, contributions: List[Dict]) -> str:
    payload = json.dumps(
        {"power": power, "tauG": [tau_x, tau_y], "contributions": contributions},
        sort_keys=True,
    )
    return sha256(payload).hex()


def _proof_message(circuit_digest: str, public_values: Sequence[int], witness_commitment: bytes) -> SHA256.SHA256Hash:
    h = SHA256.new(PROTOCOL.encode())
    h.update(bytes.fromhex(circuit_digest))
    for value in public_values:
        h.update(value.to_bytes(32, "big"))
    h.update(witness_commitment)
    return h


def _load_json(path: Path, what: str) -> Dict:
    try:
        return json.loads(Path(path).read_text())
    except FileNotFoundError as e:
        raise ArtifactMissing(f"{what} not found at {path}; run setup first") from e


class LocalBackend(ProvingBackend):
    """Signature-based stand-in for a SNARK, for development and tests."""

    name = "local"
    universal_name = "universal.json"
    proving_key_name = "proving_key.json"

    def universal_setup(self, power: int, out_path: Path, entropy: bytes) -> Path:
        # tau is dropped as soon as tau*G is known
        tau_point = ECC.generate(curve=CURVE).pointQ
        tau_x = format(int(tau_point.x), "064x")
        tau_y = format(int(tau_point.y), "064x")
        contributions = [{"name": "local", "hash": sha256(entropy).hex()}]

        params = {
            "protocol": SRS_PROTOCOL,
            "curve": CURVE,
            "power": power,
            "tauG": {"x": tau_x, "y": tau_y},
            "contributions": contributions,
            "transcriptHash": _transcript_hash(power, tau_x, tau_y, contributions),
        }
        Path(out_path).write_text(json.dumps(params, indent=2))
        return Path(out_path)

    def verify_universal(self, path: Path) -> None:
        params = _load_json(path, "Universal parameters")
        try:
            tau_x = params["tauG"]["x"]
            tau_y = params["tauG"]["y"]
            ECC.EccPoint(int(tau_x, 16), int(tau_y, 16), curve=CURVE)
            expected = _transcript_hash(params["power"], tau_x, tau_y, params["contributions"])
        except (KeyError, TypeError, ValueError) as e:
            raise CeremonyError(f"Universal parameters are malformed: {e}") from e
        if params.get("protocol") != SRS_PROTOCOL or expected != params.get("transcriptHash"):
            raise CeremonyError("Universal parameter transcript does not check out")

    def universal_power(self, path: Path) -> int:
        return int(_load_json(path, "Universal parameters")["power"])

    def circuit_setup(self, universal_path: Path, r1cs_path: Path, out_dir: Path,
                      entropy: bytes) -> Tuple[Path, Path]:
        params = _load_json(universal_path, "Universal parameters")
        try:
            r1cs = Path(r1cs_path).read_bytes()
        except FileNotFoundError as e:
            raise ArtifactMissing(f"Compiled circuit not found at {r1cs_path}") from e

        header = read_r1cs_header(r1cs)
        circuit_digest = sha256(r1cs).hex()
        contribution_hash = sha256(entropy).hex()

        seed = sha256(bytes.fromhex(params["transcriptHash"]) + bytes.fromhex(circuit_digest) + entropy)
        d = int.from_bytes(seed, "big") % (CURVE_ORDER - 1) + 1
        key = ECC.construct(curve=CURVE, d=d)

        proving_key = {
            "protocol": PROTOCOL,
            "circuitDigest": circuit_digest,
            "privateKey": key.export_key(format="PEM"),
        }
        verification_key = {
            "protocol": PROTOCOL,
            "curve": CURVE,
            "nPublic": header["public_inputs"],
            "circuitDigest": circuit_digest,
            "publicKey": key.public_key().export_key(format="PEM"),
            "srsTranscript": params["transcriptHash"],
            "contributionHash": contribution_hash,
        }

        out_dir = Path(out_dir)
        pk_path = out_dir / self.proving_key_name
        vk_path = out_dir / "verification_key.json"
        pk_path.write_text(json.dumps(proving_key, indent=2))
        vk_path.write_text(json.dumps(verification_key, indent=2))
        return pk_path, vk_path

    def prove(self, proving_key_path: Path, cs: ConstraintSystem, circuit_digest: str) -> Dict:
        proving_key = _load_json(proving_key_path, "Proving key")
        if proving_key.get("circuitDigest") != circuit_digest:
            raise ArtifactMissing("Proving key was built for a different circuit; re-run setup")

        key = ECC.import_key(proving_key["privateKey"])
        blinding = os.urandom(32)
        witness_commitment = sha256(blinding + b"".join(v.to_bytes(32, "big") for v in cs.witness))

        h = _proof_message(circuit_digest, cs.public_values, witness_commitment)
        signature = DSS.new(key, "fips-186-3").sign(h)
        logger.debug(f"Signed local proof for circuit {circuit_digest[:12]}")
        return {
            "protocol": PROTOCOL,
            "witnessCommitment": witness_commitment.hex(),
            "signature": signature.hex(),
        }

    def verify(self, verification_key: Dict, public_signals: Sequence[str], proof: Dict) -> bool:
        if verification_key.get("protocol") != PROTOCOL or proof.get("protocol") != PROTOCOL:
            return False
        if len(public_signals) != verification_key.get("nPublic"):
            return False
        try:
            values = [int(s) for s in public_signals]
            if any(not 0 <= v < FIELD_MODULUS for v in values):
                return False
            h = _proof_message(
                verification_key["circuitDigest"],
                values,
                bytes.fromhex(proof["witnessCommitment"]),
            )
            key = ECC.import_key(verification_key["publicKey"])
            DSS.new(key, "fips-186-3").verify(h, bytes.fromhex(proof["signature"]))
        except (KeyError, TypeError, ValueError):
            return False
        return True
