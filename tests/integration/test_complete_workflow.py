"""Integration tests for the complete Velo workflow."""

import asyncio
import random

import pytest
from fastapi.testclient import TestClient

from velo.api.routes import create_app
from velo.circuit.withdraw import WithdrawInputs
from velo.core.commitment import Note
from velo.core.pools import PoolSize
from velo.crypto.keys import Keypair
from velo.crypto.stealth import StealthKeys, StealthPayment
from velo.exceptions import NullifierAlreadySpent, PartialSplitFailure
from velo.ledger import NETWORK_FEE, InMemoryLedger, SignedInstruction, bootstrap_ledger
from velo.relayer.client import RelayerClient
from velo.relayer.service import RelayerService
from velo.scheduler.split import execute_split, plan_split, validate_notes


def deposit(ledger, depositor, pool):
    note = Note.generate(pool)
    result = ledger.submit(SignedInstruction.create(depositor, ledger.program_id, "deposit", {
        "denomination": note.denomination, "commitment": note.commitment_hex,
    }))
    return note.with_leaf_index(result.return_data["leafIndex"])


@pytest.fixture
def relayer(service, settings):
    app = create_app(service=service, settings=settings)
    return RelayerClient(base_url="http://testserver", client=TestClient(app), sleep=lambda _: None)


class TestTestModeWorkflow:
    """Deposit, back up the note, relay through HTTP."""

    def test_single_withdrawal(self, relayer, ledger, depositor):
        note = deposit(ledger, depositor, PoolSize.MEDIUM)
        backup = note.encode()

        restored = Note.decode(backup)
        recipient = Keypair.generate().address
        quote = relayer.estimate_fee(PoolSize.MEDIUM)
        result = relayer.relay_withdraw(restored, recipient)

        assert result["fee"] == quote["fee"]
        assert ledger.balance(recipient) == quote["recipientAmount"]
        assert relayer.info()["totalRelayed"] == 1
        with pytest.raises(NullifierAlreadySpent):
            relayer.relay_withdraw(restored, Keypair.generate().address)

    def test_split_withdrawal(self, relayer, ledger, depositor):
        plan = plan_split("1.2", rng=random.Random(11), min_delay=0, max_delay=0)
        notes = [deposit(ledger, depositor, pool) for pool in (PoolSize.MEDIUM, PoolSize.SMALL, PoolSize.SMALL)]
        assert validate_notes(plan, notes).valid
        recipient = Keypair.generate().address

        async def send_one(pool, index):
            note = next(n for n in notes if n.pool is pool and not n.used)
            note.mark_used()
            result = await asyncio.to_thread(relayer.relay_withdraw, note, recipient)
            return result["signature"]

        statuses = asyncio.run(execute_split(plan, send_one))

        fees = relayer.estimate_fee(PoolSize.MEDIUM)["fee"] + 2 * relayer.estimate_fee(PoolSize.SMALL)["fee"]
        assert len(statuses) == 3
        assert ledger.balance(recipient) == plan.total_amount - fees
        assert all(note.used for note in notes)

    def test_split_stops_at_first_failure(self, relayer, ledger, depositor):
        plan = plan_split("0.3", rng=random.Random(3), min_delay=0, max_delay=0)
        note = deposit(ledger, depositor, PoolSize.SMALL)
        deposit(ledger, depositor, PoolSize.SMALL)

        async def send_one(pool, index):
            # every part reuses the same note, so the second one is a double spend
            result = await asyncio.to_thread(relayer.relay_withdraw, note, Keypair.generate().address)
            return result["signature"]

        with pytest.raises(PartialSplitFailure) as excinfo:
            asyncio.run(execute_split(plan, send_one))
        assert len(excinfo.value.completed) == 1
        assert "already spent" in excinfo.value.failed.error

    def test_stealth_withdrawal(self, relayer, ledger, depositor):
        keys = StealthKeys.generate()
        note = deposit(ledger, depositor, PoolSize.SMALL)

        result = relayer.relay_stealth(note, keys.meta_address.encode())

        payment = StealthPayment(result["stealthAddress"], result["ephemeralPublicKey"], result["viewTag"])
        assert keys.scan(payment) is not None
        assert ledger.balance(payment.stealth_address) == result["recipientAmount"]


class TestProofModeWorkflow:
    """Same flow with the ledger verifying withdrawal proofs."""

    @pytest.fixture
    def proof_ledger(self, proof_pipeline, depositor):
        ledger = bootstrap_ledger(
            Keypair.generate(), ledger=InMemoryLedger(verifier=proof_pipeline.verify, depth=proof_pipeline.depth),
        )
        ledger.airdrop(depositor.address, 10 * PoolSize.LARGE.lamports)
        return ledger

    @pytest.fixture
    def proof_relayer(self, proof_ledger, proof_pipeline, relayer_keypair, settings):
        proof_ledger.airdrop(relayer_keypair.address, 100 * NETWORK_FEE)
        service = RelayerService(relayer_keypair, proof_ledger, proof_ledger, proof_ledger,
                                 mode="proof", pipeline=proof_pipeline)
        app = create_app(service=service, settings=settings)
        return RelayerClient(base_url="http://testserver", client=TestClient(app), sleep=lambda _: None)

    def test_relayer_proves(self, proof_relayer, proof_ledger, depositor):
        notes = [deposit(proof_ledger, depositor, PoolSize.SMALL) for _ in range(3)]
        recipient = Keypair.generate().address

        result = proof_relayer.relay_withdraw(notes[1], recipient)

        assert result["mode"] == "proof"
        assert proof_ledger.balance(recipient) == result["recipientAmount"]
        assert proof_ledger.is_spent(PoolSize.SMALL, notes[1].nullifier_hash)
        assert not proof_ledger.is_spent(PoolSize.SMALL, notes[0].nullifier_hash)

    def test_client_proves(self, proof_relayer, proof_ledger, proof_pipeline, depositor, relayer_keypair):
        from velo.utils.encoding import b58decode

        note = deposit(proof_ledger, depositor, PoolSize.MEDIUM)
        recipient = Keypair.generate().address
        fee = proof_relayer.estimate_fee(PoolSize.MEDIUM)["fee"]
        relayer_address = proof_relayer.info()["address"]
        assert relayer_address == relayer_keypair.address

        snapshot = proof_ledger.snapshot(note.pool)
        elements, indices = proof_ledger.path_for(note.pool, note.leaf_index)
        bundle = proof_pipeline.prove(WithdrawInputs.from_note(
            note, snapshot.root, elements, indices,
            recipient=b58decode(recipient), relayer=b58decode(relayer_address), fee=fee,
        ))
        # another deposit lands before the relay; the proof's root is still in the history
        deposit(proof_ledger, depositor, PoolSize.MEDIUM)

        result = proof_relayer.relay_withdraw(note, recipient, proof=bundle)

        assert result["fee"] == fee
        assert proof_ledger.balance(recipient) == note.denomination - fee
