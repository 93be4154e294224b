"""Tests for the velo command line."""

import json

import pytest
from click.testing import CliRunner

from velo.circuit.withdraw import WithdrawInputs
from velo.cli import cli
from velo.config import get_settings
from velo.core.commitment import Note
from velo.core.merkle_tree import MerkleTree
from velo.core.pools import PoolSize
from velo.crypto.keys import Keypair
from velo.security.auth import verify_relay_token


@pytest.fixture
def runner(monkeypatch):
    monkeypatch.setenv("VELO_ENVIRONMENT", "test")
    monkeypatch.setenv("VELO_JWT_SECRET", "cli-secret")
    get_settings.cache_clear()
    yield CliRunner()
    get_settings.cache_clear()


@pytest.fixture
def artifacts(runner, tmp_path):
    path = tmp_path / "artifacts"
    result = runner.invoke(cli, ["setup", "--artifacts", str(path), "--depth", "2", "--power", "12"])
    assert result.exit_code == 0, result.output
    return path


def write_inputs(path, depth=2):
    tree = MerkleTree(depth=depth)
    note = Note.generate(PoolSize.SMALL)
    tree.append(note.commitment)
    elements, indices = tree.path_for(0)
    inputs = WithdrawInputs.from_note(
        note, tree.root, elements, indices,
        recipient=Keypair.generate().public_bytes, relayer=Keypair.generate().public_bytes, fee=10_000,
    )
    path.write_text(json.dumps(inputs.to_dict()))
    return path


class TestSetup:

    def test_setup_writes_manifest(self, artifacts):
        manifest = json.loads((artifacts / "manifest.json").read_text())
        assert manifest["depth"] == 2
        assert manifest["backend"] == "local"

    def test_status(self, runner, artifacts):
        result = runner.invoke(cli, ["status", "--artifacts", str(artifacts), "--depth", "2"])
        assert result.exit_code == 0
        assert all(json.loads(result.stdout).values())

    def test_import_with_wrong_digest(self, runner, artifacts, tmp_path):
        result = runner.invoke(cli, [
            "setup", "--artifacts", str(tmp_path / "other"), "--depth", "2",
            "--ptau", str(artifacts / "universal.json"), "--ptau-sha256", "00" * 32,
        ])
        assert result.exit_code == 1
        assert "does not match" in result.output


class TestProveVerify:

    def test_prove_and_verify(self, runner, artifacts, tmp_path):
        inputs = write_inputs(tmp_path / "inputs.json")
        proof = tmp_path / "proof.json"

        result = runner.invoke(cli, ["prove", "--artifacts", str(artifacts), "--depth", "2",
                                     str(inputs), "--out", str(proof)])
        assert result.exit_code == 0, result.output
        assert len(json.loads(proof.read_text())["publicSignals"]) == 6

        result = runner.invoke(cli, ["verify", "--artifacts", str(artifacts), "--depth", "2", str(proof)])
        assert result.exit_code == 0
        assert "Proof is valid" in result.output

    def test_tampered_proof_is_invalid(self, runner, artifacts, tmp_path):
        inputs = write_inputs(tmp_path / "inputs.json")
        result = runner.invoke(cli, ["prove", "--artifacts", str(artifacts), "--depth", "2", str(inputs)])
        bundle = json.loads(result.stdout)
        bundle["publicSignals"][4] = "1"
        proof = tmp_path / "proof.json"
        proof.write_text(json.dumps(bundle))

        result = runner.invoke(cli, ["verify", "--artifacts", str(artifacts), "--depth", "2", str(proof)])
        assert result.exit_code == 1
        assert "INVALID" in result.output

    def test_prove_without_setup(self, runner, tmp_path):
        inputs = write_inputs(tmp_path / "inputs.json")
        result = runner.invoke(cli, ["prove", "--artifacts", str(tmp_path / "empty"), "--depth", "2", str(inputs)])
        assert result.exit_code == 1
        assert "run setup first" in result.output

    def test_bad_inputs_file(self, runner, artifacts, tmp_path):
        bad = tmp_path / "bad.json"
        bad.write_text(json.dumps({"root": "1"}))
        result = runner.invoke(cli, ["prove", "--artifacts", str(artifacts), "--depth", "2", str(bad)])
        assert result.exit_code == 1
        assert "Invalid inputs file" in result.output


class TestNotes:

    def test_new_and_inspect(self, runner):
        result = runner.invoke(cli, ["note", "new", "--pool", "MEDIUM"])
        assert result.exit_code == 0
        note_string = result.stdout.splitlines()[0]
        note = Note.decode(note_string)
        assert note.pool is PoolSize.MEDIUM

        result = runner.invoke(cli, ["note", "inspect", note_string])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["commitment"] == note.commitment_hex
        assert "secret" not in data
        assert "nullifier" not in data

    def test_inspect_garbage(self, runner):
        result = runner.invoke(cli, ["note", "inspect", "hello"])
        assert result.exit_code == 1


class TestSplit:

    def test_describe(self, runner):
        result = runner.invoke(cli, ["split", "1.5", "--seed", "1"])
        assert result.exit_code == 0
        assert result.stdout.startswith("1x 1 SOL + 5x 0.1 SOL")

    def test_json(self, runner):
        result = runner.invoke(cli, ["split", "0.3", "--seed", "1", "--json"])
        data = json.loads(result.stdout)
        assert data["numTransactions"] == 3
        assert data["unfulfilled"] == 0

    def test_strict_remainder(self, runner):
        result = runner.invoke(cli, ["split", "0.25", "--strict"])
        assert result.exit_code == 1
        assert "below the smallest denomination" in result.output

    def test_not_a_number(self, runner):
        result = runner.invoke(cli, ["split", "lots"])
        assert result.exit_code == 1


class TestToken:

    def test_token(self, runner):
        result = runner.invoke(cli, ["token", "wallet-app", "--minutes", "5"])
        assert result.exit_code == 0
        token = result.stdout.splitlines()[0]
        assert verify_relay_token(token, "cli-secret")["sub"] == "wallet-app"
