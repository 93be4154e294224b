"""In-memory ledger program for development and tests."""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from velo.core.merkle_tree import DEFAULT_DEPTH, DEFAULT_ROOT_HISTORY, AccumulatorSnapshot, MerkleTree
from velo.core.pools import DEFAULT_PROGRAM_ID, PoolSize, PoolState, pool_address, vault_address
from velo.crypto.keys import Keypair
from velo.exceptions import (
    InsufficientPoolLiquidity,
    LedgerError,
    NullifierAlreadySpent,
    ProofVerificationError,
    StaleRoot,
    UnknownPoolError,
)
from velo.ledger.base import LedgerProgram, SignedInstruction, TransactionResult
from velo.utils.encoding import b58decode
from velo.utils.hash import address_to_field, field_to_bytes

logger = logging.getLogger(__name__)

NETWORK_FEE = 5_000

ProofVerifier = Callable[[Sequence[str], Dict], bool]


@dataclass
class _Pool:
    authority: str
    pool: PoolSize
    tree: MerkleTree
    total_deposits: int = 0
    spent: Set[int] = field(default_factory=set)


class InMemoryLedger(LedgerProgram):
    """
    A single-process stand-in for the deployed program.

    Applies the same checks the program does: signed instructions, one
    accumulator per tier, spent-nullifier tracking, vault liquidity and (for
    proof withdrawals) a proof verifier plus public-signal checks. All
    instructions run under one lock, which gives the single-writer ordering
    the chain provides.
    """

    def __init__(self, program_id: str = DEFAULT_PROGRAM_ID, verifier: Optional[ProofVerifier] = None,
                 depth: int = DEFAULT_DEPTH, root_history_size: int = DEFAULT_ROOT_HISTORY):
        self.program_id = program_id
        self.verifier = verifier
        self.depth = depth
        self.root_history_size = root_history_size
        self._pools: Dict[PoolSize, _Pool] = {}
        self._balances: Dict[str, int] = {}
        self._lock = threading.RLock()

    # Accounts
    def airdrop(self, address: str, lamports: int) -> None:
        with self._lock:
            self._balances[address] = self._balances.get(address, 0) + lamports

    def balance(self, address: str) -> int:
        with self._lock:
            return self._balances.get(address, 0)

    def account_data(self, address: str) -> bytes:
        with self._lock:
            for size, state in self._pools.items():
                if pool_address(size, self.program_id) == address:
                    return PoolState(
                        authority=b58decode(state.authority, expected_length=32),
                        denomination=size.lamports,
                        merkle_root=field_to_bytes(state.tree.root),
                        next_index=state.tree.next_index,
                        total_deposits=state.total_deposits,
                    ).encode()
        raise LedgerError(f"Account {address} does not exist")

    def _pool(self, pool: PoolSize) -> _Pool:
        try:
            return self._pools[PoolSize(pool)]
        except (KeyError, ValueError) as e:
            raise UnknownPoolError(f"Pool {pool} has not been initialized") from e

    def vault_balance(self, pool: PoolSize) -> int:
        return self.balance(vault_address(pool, self.program_id))

    # AccumulatorReader
    def snapshot(self, pool: PoolSize) -> AccumulatorSnapshot:
        with self._lock:
            return self._pool(pool).tree.snapshot()

    def path_for(self, pool: PoolSize, leaf_index: int,
                 at_root: Optional[int] = None) -> Tuple[List[int], List[int]]:
        with self._lock:
            return self._pool(pool).tree.path_for(leaf_index, at_root=at_root)

    def index_of(self, pool: PoolSize, commitment: int) -> Optional[int]:
        with self._lock:
            return self._pool(pool).tree.index_of(commitment)

    def is_known_root(self, pool: PoolSize, root: int) -> bool:
        with self._lock:
            return self._pool(pool).tree.is_known_root(root)

    # SpendChecker
    def is_spent(self, pool: PoolSize, nullifier_hash: int) -> bool:
        with self._lock:
            return nullifier_hash in self._pool(pool).spent

    # Instructions
    def submit(self, instruction: SignedInstruction) -> TransactionResult:
        """
        Execute a signed instruction atomically.

        Raises:
            LedgerError: Or one of its subclasses when the program rejects it
        """
        if instruction.program_id != self.program_id:
            raise LedgerError("Instruction targets a different program")
        if not instruction.verify():
            raise LedgerError("Invalid instruction signature")

        handler = getattr(self, f"_ix_{instruction.name}", None)
        if handler is None:
            raise LedgerError(f"Unknown instruction: {instruction.name}")

        with self._lock:
            if self._balances.get(instruction.signer, 0) < NETWORK_FEE:
                raise LedgerError("Fee payer cannot cover the network fee")
            try:
                return_data = handler(instruction.signer, instruction.data)
            except (KeyError, TypeError, ValueError) as e:
                raise LedgerError(f"Malformed {instruction.name} instruction: {e}") from e
            self._balances[instruction.signer] -= NETWORK_FEE

        logger.debug(f"Executed {instruction.name} signed by {instruction.signer}")
        return TransactionResult(signature=instruction.transaction_id, return_data=return_data)

    def _ix_initialize_pool(self, signer: str, data: Dict) -> Dict:
        size = PoolSize.from_lamports(int(data["denomination"]))
        if size in self._pools:
            raise LedgerError(f"Pool {size.value} is already initialized")
        self._pools[size] = _Pool(
            authority=signer,
            pool=size,
            tree=MerkleTree(self.depth, self.root_history_size),
        )
        return {"pool": pool_address(size, self.program_id), "vault": vault_address(size, self.program_id)}

    def _ix_deposit(self, signer: str, data: Dict) -> Dict:
        state = self._pool(PoolSize.from_lamports(int(data["denomination"])))
        commitment = int(data["commitment"], 16)
        denomination = state.pool.lamports
        if self._balances.get(signer, 0) < denomination + NETWORK_FEE:
            raise LedgerError("Depositor cannot cover the denomination")

        leaf_index = state.tree.append(commitment)
        self._balances[signer] -= denomination
        vault = vault_address(state.pool, self.program_id)
        self._balances[vault] = self._balances.get(vault, 0) + denomination
        state.total_deposits += denomination
        return {"leafIndex": leaf_index, "root": format(state.tree.root, "064x")}

    def _pay_out(self, state: _Pool, nullifier_hash: int, recipient: str, relayer: str, fee: int) -> Dict:
        denomination = state.pool.lamports
        if nullifier_hash in state.spent:
            raise NullifierAlreadySpent("Nullifier has already been spent")
        if not 0 <= fee <= denomination:
            raise LedgerError("Fee exceeds the denomination")
        b58decode(recipient, expected_length=32)

        vault = vault_address(state.pool, self.program_id)
        if self._balances.get(vault, 0) < denomination:
            raise InsufficientPoolLiquidity(f"Vault for {state.pool.value} cannot cover a withdrawal")

        state.spent.add(nullifier_hash)
        self._balances[vault] -= denomination
        self._balances[recipient] = self._balances.get(recipient, 0) + denomination - fee
        self._balances[relayer] = self._balances.get(relayer, 0) + fee
        return {"recipientAmount": denomination - fee, "fee": fee}

    def _ix_withdraw_test(self, signer: str, data: Dict) -> Dict:
        state = self._pool(PoolSize.from_lamports(int(data["denomination"])))
        nullifier_hash = int(data["nullifierHash"], 16)
        return self._pay_out(state, nullifier_hash, data["recipient"], signer, int(data["fee"]))

    def _ix_withdraw(self, signer: str, data: Dict) -> Dict:
        state = self._pool(PoolSize.from_lamports(int(data["denomination"])))
        signals = [int(s) for s in data["publicSignals"]]
        if len(signals) != 6:
            raise LedgerError("Expected six public signals")
        root, nullifier_hash, recipient_field, relayer_field, fee, refund = signals

        if not state.tree.is_known_root(root):
            raise StaleRoot("Proof was built against an unknown or expired root")
        if nullifier_hash in state.spent:
            raise NullifierAlreadySpent("Nullifier has already been spent")
        recipient = data["recipient"]
        if recipient_field != address_to_field(b58decode(recipient, expected_length=32)):
            raise ProofVerificationError("Recipient does not match the proof")
        if relayer_field != address_to_field(b58decode(signer, expected_length=32)):
            raise ProofVerificationError("Relayer does not match the proof")
        if refund != 0:
            raise LedgerError("Refunds are not supported")
        if self.verifier is None:
            raise LedgerError("Proof withdrawals are disabled on this ledger")
        if not self.verifier(data["publicSignals"], data["proof"]):
            raise ProofVerificationError("Withdrawal proof did not verify")

        return self._pay_out(state, nullifier_hash, recipient, signer, fee)


def bootstrap_ledger(authority: Keypair, ledger: Optional[InMemoryLedger] = None,
                     pools: Sequence[PoolSize] = tuple(PoolSize), airdrop: int = 10 * NETWORK_FEE,
                     **kwargs) -> InMemoryLedger:
    """Create (or reuse) an in-memory ledger with the given pools initialized by `authority`."""
    if ledger is None:
        ledger = InMemoryLedger(**kwargs)
    ledger.airdrop(authority.address, airdrop + NETWORK_FEE * len(pools))
    for pool in pools:
        ledger.submit(SignedInstruction.create(
            authority, ledger.program_id, "initialize_pool", {"denomination": pool.lamports},
        ))
    logger.info(f"Initialized {len(pools)} pools on in-memory ledger {ledger.program_id}")
    return ledger
