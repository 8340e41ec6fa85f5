"""
Commitment tree tests: root determinism, odd-leaf policy, inclusion proofs,
capacity and concurrent inserts.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import threading

import pytest


class TestRootComputation:
    """Root shape for small trees follows the sentinel pairing rule."""

    def test_empty_tree_has_fixed_root(self):
        from ledgerfold.tree import EMPTY_ROOT, CommitmentTree

        tree = CommitmentTree()
        assert tree.size == 0
        assert tree.root() == EMPTY_ROOT

    def test_single_leaf_root_is_leaf_hash(self, leaf_factory):
        from ledgerfold.tree import CommitmentTree

        tree = CommitmentTree()
        leaf = leaf_factory(0)
        assert tree.insert(leaf) == 0
        assert tree.root() == leaf.hash

    def test_two_leaves(self, leaf_factory):
        from ledgerfold.tree import CommitmentTree, node_hash

        a, b = leaf_factory(0), leaf_factory(1)
        tree = CommitmentTree.from_leaves([a, b])
        assert tree.root() == node_hash(a.hash, b.hash)

    def test_odd_leaf_pairs_with_sentinel(self, leaf_factory):
        from ledgerfold.tree import SENTINEL_HASH, CommitmentTree, node_hash

        a, b, c = leaf_factory(0), leaf_factory(1), leaf_factory(2)
        tree = CommitmentTree.from_leaves([a, b, c])
        expected = node_hash(node_hash(a.hash, b.hash), node_hash(c.hash, SENTINEL_HASH))
        assert tree.root() == expected

    def test_repeating_last_leaf_changes_root(self, leaf_factory):
        from ledgerfold.tree import merkle_root

        hashes = [leaf_factory(i).hash for i in range(3)]
        assert merkle_root(hashes) != merkle_root(hashes + [hashes[-1]])

    @pytest.mark.parametrize("n", [1, 2, 3, 4, 5, 7, 8, 9, 16, 17, 33])
    def test_incremental_root_matches_full_recompute(self, tree_factory, n):
        from ledgerfold.tree import merkle_root

        tree = tree_factory(n)
        assert tree.root() == merkle_root(tree.leaf_hashes())

    def test_reinsertion_is_deterministic(self, tree_factory):
        assert tree_factory(13).root() == tree_factory(13).root()

    def test_leaf_hash_is_domain_separated(self, leaf_factory):
        import hashlib

        from ledgerfold.core import canonical_json_bytes

        leaf = leaf_factory(0)
        assert leaf.hash == hashlib.sha256(b"\x00" + canonical_json_bytes(leaf.to_dict())).hexdigest()
        assert leaf.hash != hashlib.sha256(canonical_json_bytes(leaf.to_dict())).hexdigest()


class TestInclusionProofs:
    """verify_inclusion(proof_for(p), root()) holds for every inserted p."""

    @pytest.mark.parametrize("n", [1, 2, 3, 5, 8, 11, 17])
    def test_every_position_verifies(self, tree_factory, n):
        from ledgerfold.tree import verify_inclusion

        tree = tree_factory(n)
        root = tree.root()
        for p in range(n):
            proof = tree.proof_for(p)
            assert proof.tree_size == n
            assert verify_inclusion(proof, root), f"position {p} of {n}"

    def test_proof_fails_against_later_root(self, tree_factory, leaf_factory):
        from ledgerfold.tree import verify_inclusion

        tree = tree_factory(6)
        proof = tree.proof_for(2)
        tree.insert(leaf_factory(100))
        assert not verify_inclusion(proof, tree.root())
        assert verify_inclusion(tree.proof_for(2), tree.root())

    def test_tampered_leaf_hash_fails(self, tree_factory):
        from dataclasses import replace

        from ledgerfold.tree import verify_inclusion

        tree = tree_factory(8)
        proof = tree.proof_for(3)
        forged = replace(proof, leaf_hash=tree.leaf_hash_at(4))
        assert not verify_inclusion(forged, tree.root())

    def test_wrong_sibling_side_fails(self, tree_factory):
        from dataclasses import replace

        from ledgerfold.tree import ProofStep, verify_inclusion

        tree = tree_factory(4)
        proof = tree.proof_for(0)
        first = proof.path[0]
        flipped = ProofStep(side="left" if first.side == "right" else "right", hash=first.hash)
        forged = replace(proof, path=(flipped,) + proof.path[1:])
        assert not verify_inclusion(forged, tree.root())

    def test_position_outside_tree_fails(self, tree_factory):
        from dataclasses import replace

        from ledgerfold.tree import verify_inclusion

        tree = tree_factory(4)
        proof = replace(tree.proof_for(1), position=9)
        assert not verify_inclusion(proof, tree.root())

    def test_proof_survives_serialization(self, tree_factory):
        from ledgerfold.tree import InclusionProof, verify_inclusion

        tree = tree_factory(7)
        restored = InclusionProof.from_dict(tree.proof_for(6).to_dict())
        assert verify_inclusion(restored, tree.root())

    def test_proof_for_missing_position_raises(self, tree_factory):
        tree = tree_factory(3)
        with pytest.raises(IndexError):
            tree.proof_for(3)


class TestCapacity:

    def test_capacity_is_two_to_the_depth(self, tree_factory, leaf_factory):
        from ledgerfold.errors import CapacityExceeded

        tree = tree_factory(4, max_depth=2)
        assert tree.capacity == 4
        assert tree.is_full
        with pytest.raises(CapacityExceeded) as exc:
            tree.insert(leaf_factory(99))
        assert exc.value.capacity == 4
        assert tree.size == 4

    def test_invalid_depth_rejected(self):
        from ledgerfold.tree import CommitmentTree

        with pytest.raises(ValueError):
            CommitmentTree(max_depth=0)


class TestConcurrentInserts:

    def test_parallel_inserts_assign_unique_positions(self, leaf_factory):
        from ledgerfold.tree import CommitmentTree, merkle_root, verify_inclusion

        tree = CommitmentTree()
        leaves = [leaf_factory(i) for i in range(64)]
        positions = []
        lock = threading.Lock()

        def worker(chunk):
            for leaf in chunk:
                p = tree.insert(leaf)
                with lock:
                    positions.append(p)

        threads = [threading.Thread(target=worker, args=(leaves[i::4],)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(positions) == list(range(64))
        assert tree.root() == merkle_root(tree.leaf_hashes())
        for p in range(0, 64, 7):
            assert verify_inclusion(tree.proof_for(p), tree.root())


@pytest.mark.slow
class TestLargeTree:

    def test_every_proof_verifies_in_a_deep_tree(self, leaf_factory):
        from ledgerfold.tree import CommitmentTree, merkle_root, verify_inclusion

        tree = CommitmentTree(max_depth=13)
        for i in range(5000):
            tree.insert(leaf_factory(i))

        root = tree.root()
        assert root == merkle_root(tree.leaf_hashes())
        for p in range(tree.size):
            proof = tree.proof_for(p)
            assert len(proof.path) == 13
            assert verify_inclusion(proof, root)
