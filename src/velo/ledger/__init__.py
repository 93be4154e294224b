"""Ledger program seam: interfaces, signed instructions and an in-memory fake."""

from velo.ledger.base import (
    AccumulatorReader,
    LedgerProgram,
    SignedInstruction,
    SpendChecker,
    TransactionResult,
)
from velo.ledger.memory import InMemoryLedger, NETWORK_FEE, bootstrap_ledger

__all__ = [
    "AccumulatorReader",
    "LedgerProgram",
    "SignedInstruction",
    "SpendChecker",
    "TransactionResult",
    "InMemoryLedger",
    "NETWORK_FEE",
    "bootstrap_ledger",
]
