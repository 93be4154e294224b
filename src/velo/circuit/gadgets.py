"""Reusable circuit gadgets."""

from typing import List, Sequence, Tuple

from velo.circuit.r1cs import ConstraintSystem, LinearCombination, Term
from velo.crypto.poseidon import (
    RATE,
    TOTAL_ROUNDS,
    is_full_round,
    mds_matrix,
    round_constants,
)


def sbox(cs: ConstraintSystem, x: LinearCombination, label: str) -> LinearCombination:
    """x^5 with three multiplication constraints."""
    x2 = cs.multiply(x, x, f"{label}.x2")
    x4 = cs.multiply(x2, x2, f"{label}.x4")
    return cs.multiply(x4, x, f"{label}.x5")


def poseidon_permutation(cs: ConstraintSystem, state: Sequence[LinearCombination],
                         label: str) -> List[LinearCombination]:
    """In-circuit replay of velo.crypto.poseidon.permute."""
    constants = round_constants()
    mds = mds_matrix()
    state = list(state)

    for r in range(TOTAL_ROUNDS):
        state = [s + c for s, c in zip(state, constants[r])]
        if is_full_round(r):
            state = [sbox(cs, s, f"{label}.r{r}.l{i}") for i, s in enumerate(state)]
        else:
            state[0] = sbox(cs, state[0], f"{label}.r{r}.l0")
        state = [
            sum((s.scale(m) for m, s in zip(row, state)), LinearCombination())
            for row in mds
        ]

    return state


def poseidon(cs: ConstraintSystem, inputs: Sequence[Term], label: str) -> LinearCombination:
    """
    In-circuit Poseidon sponge matching velo.crypto.poseidon.poseidon_hash.

    The digest is pinned to its own wire so later gadgets see a single term
    rather than the partial-round linear combination.
    """
    if not inputs:
        raise ValueError("poseidon needs at least one input")

    inputs = [LinearCombination.lift(value) for value in inputs]
    state = [LinearCombination.constant(len(inputs)), LinearCombination(), LinearCombination()]
    for offset in range(0, len(inputs), RATE):
        chunk = inputs[offset:offset + RATE]
        state[1] = state[1] + chunk[0]
        if len(chunk) > 1:
            state[2] = state[2] + chunk[1]
        state = poseidon_permutation(cs, state, f"{label}.p{offset // RATE}")

    out = cs.intermediate(f"{label}.out", cs.value(state[1]))
    cs.enforce_equal(state[1], out, f"{label}.out")
    return out


def assert_boolean(cs: ConstraintSystem, bit: LinearCombination, label: str) -> None:
    """bit * (bit - 1) = 0"""
    cs.enforce(bit, bit - 1, 0, label)


def conditional_swap(cs: ConstraintSystem, current: LinearCombination, sibling: LinearCombination,
                     bit: LinearCombination, label: str) -> Tuple[LinearCombination, LinearCombination]:
    """
    Order a (current, sibling) pair by a path bit.

    bit = 0 keeps current on the left, bit = 1 moves it to the right. Uses one
    constraint: d = bit * (sibling - current).
    """
    delta = cs.multiply(bit, sibling - current, f"{label}.swap")
    return current + delta, sibling - delta


