"""Poseidon-style permutation over the BN254 scalar field.

The same round structure is replayed constraint-by-constraint inside the
withdraw circuit (see velo.circuit.gadgets), so any change here changes the
circuit and invalidates existing proving keys.

Parameters:
    - width t = 3 (capacity 1, rate 2)
    - S-box x^5
    - 8 full rounds, 57 partial rounds
    - round constants: sha256("velo.poseidon.rc" || round || lane) mod p
    - MDS: Cauchy matrix 1 / (i + j + t)
"""

from functools import lru_cache
from typing import List, Sequence, Tuple

from velo.utils.hash import FIELD_MODULUS, sha256

WIDTH = 3
RATE = 2
FULL_ROUNDS = 8
PARTIAL_ROUNDS = 57
ALPHA = 5
TOTAL_ROUNDS = FULL_ROUNDS + PARTIAL_ROUNDS


@lru_cache(maxsize=1)
def round_constants() -> Tuple[Tuple[int, ...], ...]:
    """Per-round additive constants, one tuple of WIDTH lanes per round."""
    rounds = []
    for r in range(TOTAL_ROUNDS):
        lanes = []
        for i in range(WIDTH):
            seed = b"velo.poseidon.rc" + r.to_bytes(2, "big") + i.to_bytes(1, "big")
            lanes.append(int.from_bytes(sha256(seed), "big") % FIELD_MODULUS)
        rounds.append(tuple(lanes))
    return tuple(rounds)


@lru_cache(maxsize=1)
def mds_matrix() -> Tuple[Tuple[int, ...], ...]:
    return tuple(
        tuple(pow(i + j + WIDTH, -1, FIELD_MODULUS) for j in range(WIDTH))
        for i in range(WIDTH)
    )


def is_full_round(r: int) -> bool:
    half = FULL_ROUNDS // 2
    return r < half or r >= half + PARTIAL_ROUNDS


def permute(state: Sequence[int]) -> List[int]:
    """Apply the permutation to a WIDTH-element state."""
    if len(state) != WIDTH:
        raise ValueError(f"State must have {WIDTH} elements")

    p = FIELD_MODULUS
    constants = round_constants()
    mds = mds_matrix()
    state = [s % p for s in state]

    for r in range(TOTAL_ROUNDS):
        state = [(s + c) % p for s, c in zip(state, constants[r])]
        if is_full_round(r):
            state = [pow(s, ALPHA, p) for s in state]
        else:
            state[0] = pow(state[0], ALPHA, p)
        state = [sum(m * s for m, s in zip(row, state)) % p for row in mds]

    return state


def poseidon_hash(*inputs: int) -> int:
    """
    Hash one or more field elements.

    The capacity lane is initialised with the number of inputs so that
    H(a) and H(a, 0) differ. Inputs are absorbed two at a time.

    Args:
        *inputs: Field elements (integers in [0, p))

    Returns:
        int: Field element digest
    """
    if not inputs:
        raise ValueError("poseidon_hash needs at least one input")
    for value in inputs:
        if not isinstance(value, int) or not 0 <= value < FIELD_MODULUS:
            raise ValueError("Inputs must be canonical field elements")

    state = [len(inputs), 0, 0]
    for offset in range(0, len(inputs), RATE):
        chunk = list(inputs[offset:offset + RATE])
        chunk += [0] * (RATE - len(chunk))
        state[1] = (state[1] + chunk[0]) % FIELD_MODULUS
        state[2] = (state[2] + chunk[1]) % FIELD_MODULUS
        state = permute(state)
    return state[1]
