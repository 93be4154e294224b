"""Append-only Merkle accumulator over the circuit hash."""

from collections import deque
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from velo.crypto.poseidon import poseidon_hash
from velo.exceptions import InvalidLeafIndexError, StaleRoot, TreeFullError
from velo.utils.hash import FIELD_MODULUS

DEFAULT_DEPTH = 20
DEFAULT_ROOT_HISTORY = 30

_zero_cache: Dict[int, List[int]] = {}


def merkle_hash(left: int, right: int) -> int:
    """Parent node of two children."""
    return poseidon_hash(left, right)


def zero_hashes(depth: int) -> List[int]:
    """
    Roots of empty subtrees: zeros[0] = 0, zeros[i] = H(zeros[i-1], zeros[i-1]).

    The returned list has depth + 1 entries; zeros[depth] is the empty root.
    """
    if depth not in _zero_cache:
        zeros = [0]
        for _ in range(depth):
            zeros.append(merkle_hash(zeros[-1], zeros[-1]))
        _zero_cache[depth] = zeros
    return list(_zero_cache[depth])


def compute_root_from_path(leaf: int, path_elements: Sequence[int], path_indices: Sequence[int]) -> int:
    """
    Replay the membership recursion the withdraw circuit enforces.

    At each level an index bit of 0 means the running value is the left child
    and 1 means it is the right child.
    """
    if len(path_elements) != len(path_indices):
        raise ValueError("Path elements and indices must have the same length")

    current = leaf
    for sibling, bit in zip(path_elements, path_indices):
        if bit == 0:
            current = merkle_hash(current, sibling)
        elif bit == 1:
            current = merkle_hash(sibling, current)
        else:
            raise ValueError("Path indices must be 0 or 1")
    return current


@dataclass(frozen=True)
class AccumulatorSnapshot:
    """A consistent (root, nextIndex) pair to build proofs against."""

    root: int
    next_index: int


class MerkleTree:
    """
    Fixed-depth, append-only Merkle tree of note commitments.

    Nodes are kept in a sparse dictionary keyed by (level, position); any
    position never written is the empty-subtree hash for its level. The tree
    also remembers the last few roots so that a proof built against a root
    that was current moments ago can still be accepted.
    """

    def __init__(self, depth: int = DEFAULT_DEPTH, root_history_size: int = DEFAULT_ROOT_HISTORY):
        """
        Initialize an empty tree.

        Args:
            depth: Number of levels below the root (default 20)
            root_history_size: How many recent roots count as known

        Raises:
            ValueError: If depth or history size is out of range
        """
        if depth < 1 or depth > 32:
            raise ValueError("Tree depth must be between 1 and 32")
        if root_history_size < 1:
            raise ValueError("Root history must keep at least one root")

        self.depth = depth
        self.max_leaves = 2**depth
        self.zeros = zero_hashes(depth)

        self.leaves: List[int] = []
        self.nodes: Dict[Tuple[int, int], int] = {}
        self._leaf_positions: Dict[int, int] = {}

        self._root = self.zeros[depth]
        self._roots = deque([self._root], maxlen=root_history_size)

    def _node(self, level: int, position: int) -> int:
        return self.nodes.get((level, position), self.zeros[level])

    def append(self, leaf: int) -> int:
        """
        Append a commitment and return its leaf index.

        Raises:
            ValueError: If the leaf is not a nonzero field element
            TreeFullError: If the tree already holds 2^depth leaves
        """
        if not isinstance(leaf, int) or not 0 <= leaf < FIELD_MODULUS:
            raise ValueError("Leaf must be a field element")
        if leaf == 0:
            raise ValueError("Leaf 0 is the empty-slot value")
        if len(self.leaves) >= self.max_leaves:
            raise TreeFullError(f"Tree is full (max {self.max_leaves} commitments)")

        leaf_index = len(self.leaves)
        self.leaves.append(leaf)
        self._leaf_positions.setdefault(leaf, leaf_index)
        self.nodes[(0, leaf_index)] = leaf

        position = leaf_index
        current = leaf
        for level in range(self.depth):
            if position % 2 == 0:
                current = merkle_hash(current, self._node(level, position + 1))
            else:
                current = merkle_hash(self._node(level, position - 1), current)
            position >>= 1
            self.nodes[(level + 1, position)] = current

        self._root = current
        self._roots.append(current)
        return leaf_index

    def path_for(self, leaf_index: int, at_root: Optional[int] = None) -> Tuple[List[int], List[int]]:
        """
        Inclusion path for a previously appended leaf.

        Args:
            leaf_index: Index returned by append()
            at_root: If given, the root the caller snapshotted; the query fails
                when the tree has advanced since

        Returns:
            (path_elements, path_indices), each of length depth

        Raises:
            InvalidLeafIndexError: If the leaf has not been appended
            StaleRoot: If at_root is no longer the current root
        """
        if leaf_index < 0 or leaf_index >= len(self.leaves):
            raise InvalidLeafIndexError(f"Invalid leaf index: {leaf_index}")
        if at_root is not None and at_root != self._root:
            raise StaleRoot("Accumulator root advanced since the snapshot was taken")

        elements = []
        indices = []
        position = leaf_index
        for level in range(self.depth):
            elements.append(self._node(level, position ^ 1))
            indices.append(position & 1)
            position >>= 1
        return elements, indices

    def verify_path(self, leaf: int, path_elements: Sequence[int], path_indices: Sequence[int]) -> bool:
        """Check that a path leads from leaf to a known root."""
        if len(path_elements) != self.depth or len(path_indices) != self.depth:
            return False
        try:
            return self.is_known_root(compute_root_from_path(leaf, path_elements, path_indices))
        except ValueError:
            return False

    def index_of(self, leaf: int) -> Optional[int]:
        """First index holding this commitment, or None."""
        return self._leaf_positions.get(leaf)

    def is_known_root(self, root: int) -> bool:
        return root in self._roots

    def snapshot(self) -> AccumulatorSnapshot:
        return AccumulatorSnapshot(root=self._root, next_index=len(self.leaves))

    @property
    def root(self) -> int:
        """Get the current Merkle root."""
        return self._root

    @property
    def next_index(self) -> int:
        return len(self.leaves)

    def get_state(self) -> dict:
        """
        Get the current state of the tree for serialization.

        Returns:
            dict: Tree state including leaves, depth, and root
        """
        return {
            "depth": self.depth,
            "max_leaves": self.max_leaves,
            "next_index": len(self.leaves),
            "leaves": [format(leaf, "064x") for leaf in self.leaves],
            "root": format(self._root, "064x"),
        }

    def __len__(self) -> int:
        return len(self.leaves)

    def __repr__(self) -> str:
        return (
            f"MerkleTree(depth={self.depth}, "
            f"leaves={len(self.leaves)}/{self.max_leaves}, "
            f"root={format(self._root, '064x')[:16]}...)"
        )
