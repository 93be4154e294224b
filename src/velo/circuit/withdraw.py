"""The withdraw circuit.

Public signals, in order: root, nullifierHash, recipient, relayer, fee, refund.
Private signals: nullifier, secret, pathElements[depth], pathIndices[depth]
and the binding digest.

Constraints:
    1. commitment = H(nullifier, secret), recomputed in-circuit
    2. H(nullifier) == nullifierHash
    3. the Merkle recursion from commitment along the path equals root
    4. H(nullifier, recipient, relayer, fee, refund) == bindingDigest, so each
       bound field enters constraints whose satisfaction depends on its value
"""

from dataclasses import dataclass, field
from typing import List, Optional

from velo.circuit.gadgets import assert_boolean, conditional_swap, poseidon
from velo.circuit.r1cs import ConstraintSystem
from velo.core.commitment import Note
from velo.core.merkle_tree import DEFAULT_DEPTH
from velo.crypto.poseidon import poseidon_hash
from velo.utils.hash import FIELD_MODULUS, address_to_field, bytes_to_field

PUBLIC_SIGNALS = ("root", "nullifierHash", "recipient", "relayer", "fee", "refund")


def binding_digest(nullifier: int, recipient: int, relayer: int, fee: int, refund: int) -> int:
    return poseidon_hash(nullifier, recipient, relayer, fee, refund)


@dataclass
class WithdrawInputs:
    """Full assignment for one withdrawal proof."""

    root: int
    nullifier_hash: int
    recipient: int
    relayer: int
    fee: int
    refund: int
    nullifier: int
    secret: int
    path_elements: List[int] = field(default_factory=list)
    path_indices: List[int] = field(default_factory=list)

    @property
    def depth(self) -> int:
        return len(self.path_elements)

    def public_signals(self) -> List[int]:
        return [self.root, self.nullifier_hash, self.recipient, self.relayer, self.fee, self.refund]

    @classmethod
    def zero(cls, depth: int = DEFAULT_DEPTH) -> "WithdrawInputs":
        """Placeholder assignment used to derive the constraint structure."""
        return cls(0, 0, 0, 0, 0, 0, 0, 0, [0] * depth, [0] * depth)

    @classmethod
    def from_note(cls, note: Note, root: int, path_elements: List[int], path_indices: List[int],
                  recipient: bytes, relayer: bytes, fee: int, refund: int = 0) -> "WithdrawInputs":
        """
        Assemble inputs for spending a note.

        Args:
            note: The note being withdrawn
            root: Accumulator root the path was read against
            path_elements: Sibling hashes from the accumulator
            path_indices: Left/right bits from the accumulator
            recipient: 32-byte recipient address
            relayer: 32-byte relayer address
            fee: Relayer fee in lamports
            refund: Refund in lamports (unused on this ledger, bound anyway)
        """
        return cls(
            root=root,
            nullifier_hash=note.nullifier_hash,
            recipient=address_to_field(recipient),
            relayer=address_to_field(relayer),
            fee=fee,
            refund=refund,
            nullifier=bytes_to_field(note.nullifier),
            secret=bytes_to_field(note.secret),
            path_elements=list(path_elements),
            path_indices=list(path_indices),
        )

    def to_dict(self) -> dict:
        """JSON input file layout (decimal strings, camelCase)."""
        return {
            "root": str(self.root),
            "nullifierHash": str(self.nullifier_hash),
            "recipient": str(self.recipient),
            "relayer": str(self.relayer),
            "fee": str(self.fee),
            "refund": str(self.refund),
            "nullifier": str(self.nullifier),
            "secret": str(self.secret),
            "pathElements": [str(v) for v in self.path_elements],
            "pathIndices": [str(v) for v in self.path_indices],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WithdrawInputs":
        """
        Parse the JSON input layout.

        Raises:
            ValueError: If a field is missing or not an integer
        """
        try:
            return cls(
                root=int(data["root"]),
                nullifier_hash=int(data["nullifierHash"]),
                recipient=int(data["recipient"]),
                relayer=int(data["relayer"]),
                fee=int(data["fee"]),
                refund=int(data["refund"]),
                nullifier=int(data["nullifier"]),
                secret=int(data["secret"]),
                path_elements=[int(v) for v in data["pathElements"]],
                path_indices=[int(v) for v in data["pathIndices"]],
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Invalid withdraw input: {e}") from e


def synthesize(inputs: WithdrawInputs, depth: Optional[int] = None) -> ConstraintSystem:
    """
    Build the constraint system together with its witness.

    The constraint structure only depends on depth, never on the assignment,
    so synthesizing WithdrawInputs.zero(depth) yields the circuit used at setup.

    Raises:
        ValueError: If path lengths do not match depth or values are out of range
    """
    depth = inputs.depth if depth is None else depth
    if len(inputs.path_elements) != depth or len(inputs.path_indices) != depth:
        raise ValueError(f"Path must have exactly {depth} elements and indices")
    for value in inputs.public_signals() + [inputs.nullifier, inputs.secret] + inputs.path_elements:
        if not 0 <= value < FIELD_MODULUS:
            raise ValueError("Signal values must be field elements")

    cs = ConstraintSystem()

    root = cs.public_input("main.root", inputs.root)
    nullifier_hash = cs.public_input("main.nullifierHash", inputs.nullifier_hash)
    recipient = cs.public_input("main.recipient", inputs.recipient)
    relayer = cs.public_input("main.relayer", inputs.relayer)
    fee = cs.public_input("main.fee", inputs.fee)
    refund = cs.public_input("main.refund", inputs.refund)

    nullifier = cs.private_input("main.nullifier", inputs.nullifier)
    secret = cs.private_input("main.secret", inputs.secret)
    siblings = [
        cs.private_input(f"main.pathElements[{i}]", v) for i, v in enumerate(inputs.path_elements)
    ]
    bits = [
        cs.private_input(f"main.pathIndices[{i}]", v) for i, v in enumerate(inputs.path_indices)
    ]
    bound = cs.private_input(
        "main.bindingDigest",
        binding_digest(inputs.nullifier, inputs.recipient, inputs.relayer, inputs.fee, inputs.refund),
    )

    commitment = poseidon(cs, [nullifier, secret], "commitment")

    computed_nullifier_hash = poseidon(cs, [nullifier], "nullifierHasher")
    cs.enforce_equal(computed_nullifier_hash, nullifier_hash, "nullifierHash matches")

    current = commitment
    for level in range(depth):
        assert_boolean(cs, bits[level], f"tree.level{level}.bit")
        left, right = conditional_swap(cs, current, siblings[level], bits[level], f"tree.level{level}")
        current = poseidon(cs, [left, right], f"tree.level{level}.hash")
    cs.enforce_equal(current, root, "merkle root matches")

    binding = poseidon(cs, [nullifier, recipient, relayer, fee, refund], "binding")
    cs.enforce_equal(binding, bound, "public inputs bound")

    return cs


def compile_circuit(depth: int = DEFAULT_DEPTH) -> ConstraintSystem:
    """Constraint structure for a tree of the given depth."""
    return synthesize(WithdrawInputs.zero(depth), depth)
