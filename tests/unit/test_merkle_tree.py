"""Tests for the Merkle accumulator."""

import pytest

from velo.core.merkle_tree import (
    DEFAULT_DEPTH,
    MerkleTree,
    compute_root_from_path,
    merkle_hash,
    zero_hashes,
)
from velo.crypto.poseidon import poseidon_hash
from velo.exceptions import InvalidLeafIndexError, StaleRoot, TreeFullError
from velo.utils.hash import FIELD_MODULUS


@pytest.fixture
def merkle_tree():
    """Create a small test tree."""
    return MerkleTree(depth=4, root_history_size=3)


class TestMerkleTreeInitialization:
    """Tests for tree initialization."""

    def test_default_depth(self):
        tree = MerkleTree()
        assert tree.depth == DEFAULT_DEPTH == 20
        assert tree.max_leaves == 2**20
        assert len(tree) == 0

    def test_invalid_depth(self):
        with pytest.raises(ValueError):
            MerkleTree(depth=0)
        with pytest.raises(ValueError):
            MerkleTree(depth=33)
        with pytest.raises(ValueError):
            MerkleTree(depth=4, root_history_size=0)

    def test_empty_root_is_zero_hash(self, merkle_tree):
        assert merkle_tree.root == zero_hashes(4)[4]
        assert merkle_tree.snapshot().next_index == 0

    def test_zero_hashes(self):
        zeros = zero_hashes(3)
        assert len(zeros) == 4
        assert zeros[0] == 0
        for i in range(1, 4):
            assert zeros[i] == poseidon_hash(zeros[i - 1], zeros[i - 1])


class TestMerkleTreeAppend:
    """Tests for appending leaves."""

    def test_append_returns_sequential_indices(self, merkle_tree):
        assert [merkle_tree.append(v) for v in (11, 22, 33)] == [0, 1, 2]
        assert merkle_tree.next_index == 3

    def test_root_matches_manual_computation(self):
        tree = MerkleTree(depth=2)
        tree.append(1)
        tree.append(2)
        tree.append(3)
        left = merkle_hash(1, 2)
        right = merkle_hash(3, 0)
        assert tree.root == merkle_hash(left, right)

    def test_root_changes_on_append(self, merkle_tree):
        roots = {merkle_tree.root}
        for value in range(1, 5):
            merkle_tree.append(value)
            roots.add(merkle_tree.root)
        assert len(roots) == 5

    def test_tree_full(self):
        tree = MerkleTree(depth=2)
        for value in range(4):
            tree.append(value + 1)
        with pytest.raises(TreeFullError):
            tree.append(99)

    def test_rejects_non_field_leaf(self, merkle_tree):
        with pytest.raises(ValueError):
            merkle_tree.append(FIELD_MODULUS)
        with pytest.raises(ValueError):
            merkle_tree.append(b"bytes")

    def test_rejects_empty_slot_leaf(self, merkle_tree):
        empty_root = merkle_tree.root
        with pytest.raises(ValueError):
            merkle_tree.append(0)
        assert merkle_tree.root == empty_root
        assert len(merkle_tree) == 0

    def test_index_of(self, merkle_tree):
        merkle_tree.append(5)
        merkle_tree.append(6)
        assert merkle_tree.index_of(6) == 1
        assert merkle_tree.index_of(7) is None


class TestMerklePaths:
    """Tests for inclusion paths."""

    def test_paths_verify_for_every_leaf(self, merkle_tree):
        leaves = [101, 202, 303, 404, 505]
        for leaf in leaves:
            merkle_tree.append(leaf)
        for index, leaf in enumerate(leaves):
            elements, indices = merkle_tree.path_for(index)
            assert len(elements) == len(indices) == 4
            assert compute_root_from_path(leaf, elements, indices) == merkle_tree.root
            assert merkle_tree.verify_path(leaf, elements, indices)

    def test_path_indices_are_index_bits(self, merkle_tree):
        for value in range(6):
            merkle_tree.append(value + 1)
        _, indices = merkle_tree.path_for(5)
        assert indices == [1, 0, 1, 0]

    def test_wrong_leaf_fails(self, merkle_tree):
        merkle_tree.append(1)
        elements, indices = merkle_tree.path_for(0)
        assert not merkle_tree.verify_path(2, elements, indices)

    def test_bad_path_shape_fails(self, merkle_tree):
        merkle_tree.append(1)
        elements, indices = merkle_tree.path_for(0)
        assert not merkle_tree.verify_path(1, elements[:-1], indices[:-1])
        assert not merkle_tree.verify_path(1, elements, [2] + indices[1:])

    def test_invalid_leaf_index(self, merkle_tree):
        merkle_tree.append(1)
        with pytest.raises(InvalidLeafIndexError):
            merkle_tree.path_for(1)
        with pytest.raises(InvalidLeafIndexError):
            merkle_tree.path_for(-1)

    def test_stale_snapshot(self, merkle_tree):
        merkle_tree.append(1)
        snapshot = merkle_tree.snapshot()
        merkle_tree.append(2)
        with pytest.raises(StaleRoot):
            merkle_tree.path_for(0, at_root=snapshot.root)
        elements, indices = merkle_tree.path_for(0, at_root=merkle_tree.root)
        assert compute_root_from_path(1, elements, indices) == merkle_tree.root

    def test_recent_roots_stay_known(self, merkle_tree):
        merkle_tree.append(1)
        old_elements, old_indices = merkle_tree.path_for(0)
        old_root = merkle_tree.root
        merkle_tree.append(2)
        assert merkle_tree.is_known_root(old_root)
        assert merkle_tree.verify_path(1, old_elements, old_indices)

    def test_root_history_expires(self, merkle_tree):
        merkle_tree.append(1)
        old_root = merkle_tree.root
        for value in range(2, 5):
            merkle_tree.append(value)
        assert not merkle_tree.is_known_root(old_root)

    def test_depth_twenty_left_path_of_zero_siblings(self):
        """A single leaf at index 0 has all-zero siblings and an all-left path."""
        tree = MerkleTree()
        leaf = poseidon_hash(1, 2)
        tree.append(leaf)
        elements, indices = tree.path_for(0)
        zeros = zero_hashes(20)
        assert elements == zeros[:20]
        assert indices == [0] * 20

        expected = leaf
        for level in range(20):
            expected = poseidon_hash(expected, zeros[level])
        assert tree.root == expected
        assert compute_root_from_path(leaf, elements, indices) == expected


class TestMerkleTreeState:

    def test_get_state(self, merkle_tree):
        merkle_tree.append(255)
        state = merkle_tree.get_state()
        assert state["depth"] == 4
        assert state["next_index"] == 1
        assert state["leaves"] == [format(255, "064x")]
        assert state["root"] == format(merkle_tree.root, "064x")

    def test_repr(self, merkle_tree):
        assert "depth=4" in repr(merkle_tree)
