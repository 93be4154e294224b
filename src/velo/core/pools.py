"""Denomination pools and their program-derived account addresses."""

import struct
from functools import lru_cache
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from Crypto.Signature import eddsa

from velo.utils.encoding import b58decode, b58encode
from velo.utils.hash import discriminator, sha256

LAMPORTS_PER_SOL = 1_000_000_000
DEFAULT_PROGRAM_ID = "DSQt1z5wNcmE5h2XL1K1QAWHy28iJufg52aGy3kn8pEc"

POOL_SEED = b"pool"
VAULT_SEED = b"vault"
PDA_MARKER = b"ProgramDerivedAddress"


class PoolSize(str, Enum):
    """Fixed deposit tiers."""
    SMALL = "SMALL"
    MEDIUM = "MEDIUM"
    LARGE = "LARGE"

    @property
    def lamports(self) -> int:
        return POOL_LAMPORTS[self]

    @property
    def sol(self) -> float:
        return self.lamports / LAMPORTS_PER_SOL

    @classmethod
    def from_lamports(cls, lamports: int) -> "PoolSize":
        for size, amount in POOL_LAMPORTS.items():
            if amount == lamports:
                return size
        raise ValueError(f"No pool with denomination {lamports} lamports")

    @classmethod
    def ordered(cls) -> List["PoolSize"]:
        """Tiers from largest to smallest denomination."""
        return sorted(cls, key=lambda size: size.lamports, reverse=True)


POOL_LAMPORTS = {
    PoolSize.SMALL: 100_000_000,
    PoolSize.MEDIUM: 1_000_000_000,
    PoolSize.LARGE: 10_000_000_000,
}


def is_on_curve(candidate: bytes) -> bool:
    """Check whether 32 bytes decode to a valid Ed25519 point."""
    try:
        eddsa.import_public_key(candidate)
    except ValueError:
        return False
    return True


def create_program_address(seeds: Sequence[bytes], program_id: str) -> bytes:
    """
    Hash seeds into an address owned by the program.

    Raises:
        ValueError: If the digest happens to be a valid curve point, since
            such an address could have a private key.
    """
    program_bytes = b58decode(program_id, expected_length=32)
    material = b"".join(seeds) + program_bytes + PDA_MARKER
    address = sha256(material)
    if is_on_curve(address):
        raise ValueError("Derived address lies on the Ed25519 curve")
    return address


def find_program_address(seeds: Sequence[bytes], program_id: str) -> Tuple[str, int]:
    """
    Find the first off-curve program address, searching bump seeds 255 down to 0.

    Returns:
        Tuple[str, int]: (base58 address, bump)
    """
    for bump in range(255, -1, -1):
        try:
            address = create_program_address(list(seeds) + [bytes([bump])], program_id)
        except ValueError:
            continue
        return b58encode(address), bump
    raise ValueError("Unable to find a viable program address bump seed")


def denomination_seed(denomination: int) -> bytes:
    return struct.pack("<Q", denomination)


@lru_cache(maxsize=None)
def pool_address(pool: PoolSize, program_id: str = DEFAULT_PROGRAM_ID) -> str:
    """Address of the pool state account for a tier."""
    address, _ = find_program_address([POOL_SEED, denomination_seed(pool.lamports)], program_id)
    return address


@lru_cache(maxsize=None)
def vault_address(pool: PoolSize, program_id: str = DEFAULT_PROGRAM_ID) -> str:
    """Address of the vault holding a tier's deposits."""
    address, _ = find_program_address([VAULT_SEED, denomination_seed(pool.lamports)], program_id)
    return address


POOL_STATE_DISCRIMINATOR = discriminator("account", "MixerPool")
POOL_STATE_FORMAT = "<32sQ32sIQ"
POOL_STATE_SIZE = struct.calcsize(POOL_STATE_FORMAT)


@dataclass
class PoolState:
    """Decoded pool account: authority, denomination, root, next index, total deposits."""

    authority: bytes
    denomination: int
    merkle_root: bytes
    next_index: int
    total_deposits: int

    def encode(self, with_discriminator: bool = True) -> bytes:
        body = struct.pack(
            POOL_STATE_FORMAT,
            self.authority,
            self.denomination,
            self.merkle_root,
            self.next_index,
            self.total_deposits,
        )
        return (POOL_STATE_DISCRIMINATOR + body) if with_discriminator else body

    @classmethod
    def decode(cls, data: bytes) -> "PoolState":
        """
        Decode raw account bytes.

        Accepts the bare 84-byte layout or the same layout behind the
        8-byte account discriminator.

        Raises:
            ValueError: If the length or discriminator does not match
        """
        if len(data) == POOL_STATE_SIZE + 8:
            if data[:8] != POOL_STATE_DISCRIMINATOR:
                raise ValueError("Account discriminator mismatch")
            data = data[8:]
        if len(data) != POOL_STATE_SIZE:
            raise ValueError(f"Pool state must be {POOL_STATE_SIZE} bytes, got {len(data)}")
        authority, denomination, root, next_index, total = struct.unpack(POOL_STATE_FORMAT, data)
        return cls(authority, denomination, root, next_index, total)

    @property
    def pool(self) -> Optional[PoolSize]:
        try:
            return PoolSize.from_lamports(self.denomination)
        except ValueError:
            return None

    def to_dict(self) -> dict:
        return {
            "authority": b58encode(self.authority),
            "denomination": self.denomination,
            "merkleRoot": self.merkle_root.hex(),
            "nextIndex": self.next_index,
            "totalDeposits": self.total_deposits,
        }
