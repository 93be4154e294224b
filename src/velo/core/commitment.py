"""Note commitments and nullifier hashes."""

import os
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional

from velo.core.pools import PoolSize
from velo.crypto.poseidon import poseidon_hash
from velo.exceptions import MalformedNote
from velo.utils.encoding import b58decode, b58encode
from velo.utils.hash import bytes_to_field, field_to_bytes

NOTE_PREFIX = "velo-note-v1"


class Commitment:
    """
    Commitment scheme over the circuit hash.

    commitment = H(nullifier, secret), nullifierHash = H(nullifier). Both
    values are reduced into the scalar field before hashing so that the
    native result and the in-circuit recomputation agree.
    """

    # Constants
    SECRET_SIZE = 32  # bytes
    NULLIFIER_SIZE = 32  # bytes

    @staticmethod
    def generate_secret() -> bytes:
        return os.urandom(Commitment.SECRET_SIZE)

    @staticmethod
    def generate_nullifier() -> bytes:
        return os.urandom(Commitment.NULLIFIER_SIZE)

    @staticmethod
    def _check(value: bytes, name: str) -> None:
        if not isinstance(value, bytes) or len(value) != 32:
            raise MalformedNote(f"{name} must be 32 bytes")

    @staticmethod
    def compute_commitment(nullifier: bytes, secret: bytes) -> int:
        """
        Compute the leaf value H(nullifier, secret).

        Args:
            nullifier: 32-byte nullifier
            secret: 32-byte secret

        Returns:
            int: Field element stored in the accumulator

        Raises:
            MalformedNote: If either input is not 32 bytes
        """
        Commitment._check(nullifier, "Nullifier")
        Commitment._check(secret, "Secret")
        return poseidon_hash(bytes_to_field(nullifier), bytes_to_field(secret))

    @staticmethod
    def compute_nullifier_hash(nullifier: bytes) -> int:
        """Compute H(nullifier); independent of the secret."""
        Commitment._check(nullifier, "Nullifier")
        return poseidon_hash(bytes_to_field(nullifier))

    @staticmethod
    def verify_commitment(commitment: int, nullifier: bytes, secret: bytes) -> bool:
        try:
            return Commitment.compute_commitment(nullifier, secret) == commitment
        except MalformedNote:
            return False


@dataclass
class Note:
    """A spendable deposit note."""

    pool: PoolSize
    nullifier: bytes
    secret: bytes
    commitment: int
    nullifier_hash: int
    leaf_index: Optional[int] = None
    used: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def generate(cls, pool: PoolSize) -> "Note":
        """Draw a fresh nullifier and secret for a pool tier."""
        nullifier = Commitment.generate_nullifier()
        secret = Commitment.generate_secret()
        return cls.from_parts(pool, nullifier, secret)

    @classmethod
    def from_parts(cls, pool: PoolSize, nullifier: bytes, secret: bytes,
                   leaf_index: Optional[int] = None) -> "Note":
        return cls(
            pool=PoolSize(pool),
            nullifier=nullifier,
            secret=secret,
            commitment=Commitment.compute_commitment(nullifier, secret),
            nullifier_hash=Commitment.compute_nullifier_hash(nullifier),
            leaf_index=leaf_index,
        )

    @property
    def denomination(self) -> int:
        return self.pool.lamports

    @property
    def commitment_hex(self) -> str:
        return field_to_bytes(self.commitment).hex()

    @property
    def nullifier_hash_hex(self) -> str:
        return field_to_bytes(self.nullifier_hash).hex()

    def with_leaf_index(self, leaf_index: int) -> "Note":
        return replace(self, leaf_index=leaf_index)

    def mark_used(self) -> None:
        """Flag the note as spent. Spending is one-way."""
        if self.used:
            raise MalformedNote("Note has already been used")
        self.used = True

    def encode(self) -> str:
        """Serialize as velo-note-v1:<POOL>:<nullifier>:<secret>[:<leafIndex>]."""
        parts = [NOTE_PREFIX, self.pool.value, b58encode(self.nullifier), b58encode(self.secret)]
        if self.leaf_index is not None:
            parts.append(str(self.leaf_index))
        return ":".join(parts)

    @classmethod
    def decode(cls, text: str) -> "Note":
        """
        Parse a note string produced by encode().

        Raises:
            MalformedNote: If the text is not a well-formed note
        """
        parts = text.strip().split(":")
        if len(parts) not in (4, 5) or parts[0] != NOTE_PREFIX:
            raise MalformedNote("Not a velo note")
        try:
            pool = PoolSize(parts[1])
            nullifier = b58decode(parts[2], expected_length=32)
            secret = b58decode(parts[3], expected_length=32)
            leaf_index = int(parts[4]) if len(parts) == 5 else None
        except ValueError as e:
            raise MalformedNote(f"Malformed note: {e}") from e
        if leaf_index is not None and leaf_index < 0:
            raise MalformedNote("Leaf index must not be negative")
        return cls.from_parts(pool, nullifier, secret, leaf_index)

    def to_dict(self) -> dict:
        return {
            "poolSize": self.pool.value,
            "amount": self.pool.sol,
            "commitment": self.commitment_hex,
            "nullifier": b58encode(self.nullifier),
            "secret": b58encode(self.secret),
            "nullifierHash": self.nullifier_hash_hex,
            "leafIndex": self.leaf_index,
            "used": self.used,
            "createdAt": self.created_at.isoformat(),
        }


def parse_commitment_hex(value: str) -> int:
    """
    Parse a 64-character hex commitment into a field element.

    Raises:
        MalformedNote: If the text is not 64 hex characters or not canonical
    """
    if not isinstance(value, str) or len(value) != 64:
        raise MalformedNote("Invalid commitment format (expected 64 char hex)")
    try:
        commitment = int(value, 16)
        field_to_bytes(commitment)
    except ValueError as e:
        raise MalformedNote("Invalid commitment format (expected 64 char hex)") from e
    return commitment
