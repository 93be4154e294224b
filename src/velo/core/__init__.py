"""Core protocol objects: notes, accumulators and denomination pools."""

from velo.core.commitment import Commitment, Note, parse_commitment_hex
from velo.core.merkle_tree import AccumulatorSnapshot, MerkleTree, compute_root_from_path, zero_hashes
from velo.core.pools import (
    LAMPORTS_PER_SOL,
    PoolSize,
    PoolState,
    find_program_address,
    pool_address,
    vault_address,
)

__all__ = [
    "Commitment",
    "Note",
    "parse_commitment_hex",
    "AccumulatorSnapshot",
    "MerkleTree",
    "compute_root_from_path",
    "zero_hashes",
    "LAMPORTS_PER_SOL",
    "PoolSize",
    "PoolState",
    "find_program_address",
    "pool_address",
    "vault_address",
]
