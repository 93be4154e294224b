"""Withdraw circuit: constraint system, gadgets and signal schema."""

from velo.circuit.r1cs import ConstraintSystem, LinearCombination, read_r1cs_header
from velo.circuit.withdraw import PUBLIC_SIGNALS, WithdrawInputs, binding_digest, compile_circuit, synthesize

__all__ = [
    "ConstraintSystem",
    "LinearCombination",
    "read_r1cs_header",
    "PUBLIC_SIGNALS",
    "WithdrawInputs",
    "binding_digest",
    "compile_circuit",
    "synthesize",
]
