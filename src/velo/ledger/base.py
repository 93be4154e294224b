"""Interfaces to the ledger program and its signed instructions."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Tuple

from velo.core.merkle_tree import AccumulatorSnapshot
from velo.core.pools import PoolSize
from velo.crypto.keys import Keypair, verify_signature
from velo.utils.encoding import b58decode, b58encode
from velo.utils.hash import discriminator

INSTRUCTIONS = ("initialize_pool", "deposit", "withdraw", "withdraw_test")


class AccumulatorReader(Protocol):
    """Read access to each pool's Merkle accumulator."""

    def snapshot(self, pool: PoolSize) -> AccumulatorSnapshot: ...

    def path_for(self, pool: PoolSize, leaf_index: int,
                 at_root: Optional[int] = None) -> Tuple[List[int], List[int]]: ...

    def index_of(self, pool: PoolSize, commitment: int) -> Optional[int]: ...

    def is_known_root(self, pool: PoolSize, root: int) -> bool: ...


class SpendChecker(Protocol):
    """Authoritative spent-nullifier lookups."""

    def is_spent(self, pool: PoolSize, nullifier_hash: int) -> bool: ...


def instruction_message(program_id: str, name: str, data: Dict) -> bytes:
    """Bytes a fee payer signs: discriminator, program id, canonical JSON data."""
    payload = json.dumps(data, sort_keys=True, separators=(",", ":")).encode()
    return discriminator("global", name) + b58decode(program_id, expected_length=32) + payload


@dataclass
class SignedInstruction:
    """An instruction to the ledger program, signed by its fee payer."""

    program_id: str
    name: str
    data: Dict
    signer: str
    signature: bytes

    @classmethod
    def create(cls, keypair: Keypair, program_id: str, name: str, data: Dict) -> "SignedInstruction":
        if name not in INSTRUCTIONS:
            raise ValueError(f"Unknown instruction: {name}")
        message = instruction_message(program_id, name, data)
        return cls(program_id, name, dict(data), keypair.address, keypair.sign(message))

    def verify(self) -> bool:
        return verify_signature(self.signer, instruction_message(self.program_id, self.name, self.data),
                                self.signature)

    @property
    def transaction_id(self) -> str:
        return b58encode(self.signature)


@dataclass
class TransactionResult:
    """Outcome of a confirmed instruction."""

    signature: str
    return_data: Dict = field(default_factory=dict)


class LedgerProgram(ABC):
    """The on-chain program, treated as a black box."""

    @abstractmethod
    def submit(self, instruction: SignedInstruction) -> TransactionResult:
        """Execute a signed instruction or raise a LedgerError subclass."""

    @abstractmethod
    def account_data(self, address: str) -> bytes:
        """Raw account bytes."""

    @abstractmethod
    def balance(self, address: str) -> int:
        """Lamports held by an account."""
