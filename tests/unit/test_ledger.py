"""Tests for the in-memory ledger program."""

import pytest

from velo.core.commitment import Note
from velo.core.merkle_tree import compute_root_from_path
from velo.core.pools import PoolSize, PoolState, pool_address, vault_address
from velo.crypto.keys import Keypair
from velo.exceptions import (
    InsufficientPoolLiquidity,
    LedgerError,
    NullifierAlreadySpent,
    ProofVerificationError,
    StaleRoot,
    UnknownPoolError,
)
from velo.ledger import NETWORK_FEE, InMemoryLedger, SignedInstruction, bootstrap_ledger


def withdraw_test(ledger, signer, note, recipient, fee=10_000):
    return ledger.submit(SignedInstruction.create(
        signer, ledger.program_id, "withdraw_test",
        {
            "denomination": note.denomination,
            "nullifierHash": note.nullifier_hash_hex,
            "recipient": recipient,
            "fee": fee,
        },
    ))


class TestInstructions:

    def test_signed_instruction_verifies(self, ledger):
        keypair = Keypair.generate()
        ix = SignedInstruction.create(keypair, ledger.program_id, "deposit", {"denomination": 1})
        assert ix.verify()
        ix.data["denomination"] = 2
        assert not ix.verify()

    def test_unknown_instruction_name(self, ledger):
        with pytest.raises(ValueError):
            SignedInstruction.create(Keypair.generate(), ledger.program_id, "close_pool", {})

    def test_tampered_instruction_rejected(self, ledger, depositor):
        ix = SignedInstruction.create(depositor, ledger.program_id, "deposit", {
            "denomination": PoolSize.SMALL.lamports, "commitment": Note.generate(PoolSize.SMALL).commitment_hex,
        })
        ix.data["denomination"] = PoolSize.LARGE.lamports
        with pytest.raises(LedgerError, match="signature"):
            ledger.submit(ix)

    def test_other_program_rejected(self, ledger, depositor):
        other = Keypair.generate().address
        ix = SignedInstruction.create(depositor, other, "deposit", {"denomination": 1, "commitment": "00"})
        with pytest.raises(LedgerError):
            ledger.submit(ix)

    def test_fee_payer_must_cover_network_fee(self, ledger):
        broke = Keypair.generate()
        with pytest.raises(LedgerError, match="network fee"):
            ledger.submit(SignedInstruction.create(broke, ledger.program_id, "deposit", {
                "denomination": PoolSize.SMALL.lamports, "commitment": "00" * 32,
            }))

    def test_malformed_data(self, ledger, depositor):
        with pytest.raises(LedgerError, match="Malformed"):
            ledger.submit(SignedInstruction.create(depositor, ledger.program_id, "deposit", {"denomination": 1}))


class TestPools:

    def test_bootstrap_initializes_every_pool(self, ledger):
        for pool in PoolSize:
            state = PoolState.decode(ledger.account_data(pool_address(pool, ledger.program_id)))
            assert state.denomination == pool.lamports
            assert state.next_index == 0

    def test_double_initialize(self, ledger):
        authority = Keypair.generate()
        ledger.airdrop(authority.address, NETWORK_FEE)
        with pytest.raises(LedgerError, match="already initialized"):
            ledger.submit(SignedInstruction.create(
                authority, ledger.program_id, "initialize_pool", {"denomination": PoolSize.SMALL.lamports},
            ))

    def test_uninitialized_pool(self):
        ledger = bootstrap_ledger(Keypair.generate(), pools=[PoolSize.SMALL])
        with pytest.raises(UnknownPoolError):
            ledger.snapshot(PoolSize.LARGE)

    def test_unknown_account(self, ledger):
        with pytest.raises(LedgerError):
            ledger.account_data(Keypair.generate().address)


class TestDeposit:

    def test_deposit_moves_funds_and_appends(self, ledger, depositor, deposit):
        before = ledger.balance(depositor.address)
        note = deposit(PoolSize.MEDIUM)

        assert note.leaf_index == 0
        assert ledger.balance(depositor.address) == before - PoolSize.MEDIUM.lamports - NETWORK_FEE
        assert ledger.vault_balance(PoolSize.MEDIUM) == PoolSize.MEDIUM.lamports
        assert ledger.index_of(PoolSize.MEDIUM, note.commitment) == 0

        state = PoolState.decode(ledger.account_data(pool_address(PoolSize.MEDIUM, ledger.program_id)))
        assert state.next_index == 1
        assert state.total_deposits == PoolSize.MEDIUM.lamports
        assert int.from_bytes(state.merkle_root, "big") == ledger.snapshot(PoolSize.MEDIUM).root

    def test_deposits_are_per_pool(self, ledger, deposit):
        deposit(PoolSize.SMALL)
        note = deposit(PoolSize.MEDIUM)
        assert note.leaf_index == 0
        assert ledger.vault_balance(PoolSize.SMALL) == PoolSize.SMALL.lamports

    def test_path_matches_root(self, ledger, deposit):
        notes = [deposit(PoolSize.SMALL) for _ in range(3)]
        elements, indices = ledger.path_for(PoolSize.SMALL, notes[1].leaf_index)
        assert compute_root_from_path(notes[1].commitment, elements, indices) == ledger.snapshot(PoolSize.SMALL).root

    def test_depositor_without_funds(self, ledger):
        poor = Keypair.generate()
        ledger.airdrop(poor.address, NETWORK_FEE * 2)
        with pytest.raises(LedgerError, match="cannot cover"):
            ledger.submit(SignedInstruction.create(poor, ledger.program_id, "deposit", {
                "denomination": PoolSize.SMALL.lamports, "commitment": Note.generate(PoolSize.SMALL).commitment_hex,
            }))


class TestWithdrawTest:

    def test_pays_recipient_and_signer(self, ledger, deposit, relayer_keypair):
        note = deposit(PoolSize.MEDIUM)
        recipient = Keypair.generate().address
        relayer_before = ledger.balance(relayer_keypair.address)

        result = withdraw_test(ledger, relayer_keypair, note, recipient, fee=5_000_000)

        assert result.return_data == {"recipientAmount": 995_000_000, "fee": 5_000_000}
        assert ledger.balance(recipient) == 995_000_000
        assert ledger.balance(relayer_keypair.address) == relayer_before + 5_000_000 - NETWORK_FEE
        assert ledger.vault_balance(PoolSize.MEDIUM) == 0
        assert ledger.is_spent(PoolSize.MEDIUM, note.nullifier_hash)

    def test_double_spend(self, ledger, deposit, relayer_keypair):
        note = deposit(PoolSize.SMALL)
        deposit(PoolSize.SMALL)
        withdraw_test(ledger, relayer_keypair, note, Keypair.generate().address)
        with pytest.raises(NullifierAlreadySpent):
            withdraw_test(ledger, relayer_keypair, note, Keypair.generate().address)

    def test_empty_vault(self, ledger, relayer_keypair):
        with pytest.raises(InsufficientPoolLiquidity):
            withdraw_test(ledger, relayer_keypair, Note.generate(PoolSize.LARGE), Keypair.generate().address)

    def test_fee_above_denomination(self, ledger, deposit, relayer_keypair):
        note = deposit(PoolSize.SMALL)
        with pytest.raises(LedgerError, match="Fee"):
            withdraw_test(ledger, relayer_keypair, note, Keypair.generate().address,
                          fee=PoolSize.SMALL.lamports + 1)

    def test_rejected_withdrawal_charges_nothing(self, ledger, relayer_keypair):
        before = ledger.balance(relayer_keypair.address)
        with pytest.raises(InsufficientPoolLiquidity):
            withdraw_test(ledger, relayer_keypair, Note.generate(PoolSize.LARGE), Keypair.generate().address)
        assert ledger.balance(relayer_keypair.address) == before


class TestProofWithdraw:

    def _withdraw(self, ledger, signer, signals, recipient, proof=None):
        return ledger.submit(SignedInstruction.create(signer, ledger.program_id, "withdraw", {
            "denomination": PoolSize.SMALL.lamports,
            "proof": proof or {"ok": True},
            "publicSignals": [str(s) for s in signals],
            "recipient": recipient,
        }))

    def _signals(self, ledger, note, recipient, relayer, fee=10_000, refund=0):
        from velo.utils.hash import address_to_field
        from velo.utils.encoding import b58decode

        return [
            ledger.snapshot(PoolSize.SMALL).root,
            note.nullifier_hash,
            address_to_field(b58decode(recipient)),
            address_to_field(relayer.public_bytes),
            fee,
            refund,
        ]

    @pytest.fixture
    def proof_ledger(self, relayer_keypair, depositor):
        verified = []

        def verifier(signals, proof):
            verified.append(signals)
            return proof.get("ok", False)

        ledger = bootstrap_ledger(Keypair.generate(), ledger=InMemoryLedger(verifier=verifier, depth=4))
        ledger.airdrop(relayer_keypair.address, 100 * NETWORK_FEE)
        ledger.airdrop(depositor.address, 10 * PoolSize.LARGE.lamports)
        ledger.verified = verified
        return ledger

    def test_valid_withdrawal(self, proof_ledger, depositor, relayer_keypair):
        note = Note.generate(PoolSize.SMALL)
        proof_ledger.submit(SignedInstruction.create(depositor, proof_ledger.program_id, "deposit", {
            "denomination": note.denomination, "commitment": note.commitment_hex,
        }))
        recipient = Keypair.generate().address
        signals = self._signals(proof_ledger, note, recipient, relayer_keypair)

        self._withdraw(proof_ledger, relayer_keypair, signals, recipient)

        assert proof_ledger.balance(recipient) == PoolSize.SMALL.lamports - 10_000
        assert proof_ledger.verified == [[str(s) for s in signals]]

    def test_checks_before_verifier(self, proof_ledger, depositor, relayer_keypair):
        note = Note.generate(PoolSize.SMALL)
        proof_ledger.submit(SignedInstruction.create(depositor, proof_ledger.program_id, "deposit", {
            "denomination": note.denomination, "commitment": note.commitment_hex,
        }))
        recipient = Keypair.generate().address
        good = self._signals(proof_ledger, note, recipient, relayer_keypair)

        stale = list(good)
        stale[0] = 12345
        with pytest.raises(StaleRoot):
            self._withdraw(proof_ledger, relayer_keypair, stale, recipient)

        with pytest.raises(ProofVerificationError, match="Recipient"):
            self._withdraw(proof_ledger, relayer_keypair, good, Keypair.generate().address)

        other_relayer = Keypair.generate()
        proof_ledger.airdrop(other_relayer.address, NETWORK_FEE)
        with pytest.raises(ProofVerificationError, match="Relayer"):
            self._withdraw(proof_ledger, other_relayer, good, recipient)

        refund = list(good)
        refund[5] = 1
        with pytest.raises(LedgerError, match="Refunds"):
            self._withdraw(proof_ledger, relayer_keypair, refund, recipient)

        with pytest.raises(ProofVerificationError, match="did not verify"):
            self._withdraw(proof_ledger, relayer_keypair, good, recipient, proof={"ok": False})

        assert proof_ledger.verified == [[str(s) for s in good]]
        assert not proof_ledger.is_spent(PoolSize.SMALL, note.nullifier_hash)

    def test_disabled_without_verifier(self, ledger, deposit, relayer_keypair):
        note = deposit(PoolSize.SMALL)
        recipient = Keypair.generate().address
        signals = self._signals(ledger, note, recipient, relayer_keypair)
        with pytest.raises(LedgerError, match="disabled"):
            self._withdraw(ledger, relayer_keypair, signals, recipient)

    def test_wrong_signal_count(self, proof_ledger, relayer_keypair):
        with pytest.raises(LedgerError, match="six"):
            self._withdraw(proof_ledger, relayer_keypair, [1, 2, 3], Keypair.generate().address)
