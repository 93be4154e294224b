"""Pytest configuration and fixtures."""

import pytest
import sys
from pathlib import Path

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from velo.config import VeloSettings
from velo.core.commitment import Note
from velo.core.pools import PoolSize
from velo.crypto.keys import Keypair
from velo.ledger import InMemoryLedger, NETWORK_FEE, SignedInstruction, bootstrap_ledger
from velo.proving.pipeline import ProofPipeline
from velo.relayer.fees import FeeSchedule
from velo.relayer.service import RelayerService
from velo.storage import DatabaseManager

PROOF_DEPTH = 4


def deposit_note(ledger: InMemoryLedger, depositor: Keypair, note: Note) -> Note:
    """Deposit a note and return it with its leaf index."""
    result = ledger.submit(SignedInstruction.create(
        depositor, ledger.program_id, "deposit",
        {"denomination": note.denomination, "commitment": note.commitment_hex},
    ))
    return note.with_leaf_index(result.return_data["leafIndex"])


@pytest.fixture
def relayer_keypair():
    return Keypair.generate()


@pytest.fixture
def depositor():
    return Keypair.generate()


@pytest.fixture
def ledger(relayer_keypair, depositor):
    """In-memory ledger with all pools initialized and a funded depositor."""
    ledger = bootstrap_ledger(Keypair.generate())
    ledger.airdrop(relayer_keypair.address, 100 * NETWORK_FEE)
    ledger.airdrop(depositor.address, 50 * PoolSize.LARGE.lamports)
    return ledger


@pytest.fixture
def deposit(ledger, depositor):
    """Factory fixture: deposit a fresh note in a pool."""
    def _deposit(pool: PoolSize = PoolSize.MEDIUM) -> Note:
        return deposit_note(ledger, depositor, Note.generate(pool))
    return _deposit


@pytest.fixture
def db():
    manager = DatabaseManager("sqlite://")
    manager.create_tables()
    yield manager
    manager.drop_tables()


@pytest.fixture
def service(relayer_keypair, ledger, db):
    """Relayer in test mode against the in-memory ledger."""
    return RelayerService(
        keypair=relayer_keypair,
        ledger=ledger,
        accumulator=ledger,
        spend_checker=ledger,
        fees=FeeSchedule(),
        mode="test",
        db=db,
    )


@pytest.fixture(scope="session")
def proof_pipeline(tmp_path_factory):
    """Local-backend pipeline at a small depth with setup already run."""
    pipeline = ProofPipeline(tmp_path_factory.mktemp("artifacts"), depth=PROOF_DEPTH)
    pipeline.universal_setup(power=14)
    pipeline.circuit_setup()
    return pipeline


@pytest.fixture
def settings(tmp_path):
    return VeloSettings(
        environment="test",
        artifacts_dir=tmp_path / "artifacts",
        database_url="sqlite://",
    )
