"""Incremental commitment tree.

Append-only binary hash tree over leaf hashes in insertion order. Inserting a
leaf recomputes only the rightmost path (O(log n)); every other node is
untouched because positions never move.

Hashing (shared with the leaf encoding in ``ledgerfold.items``):
- leaf = SHA256(0x00 || leaf_bytes)
- node = SHA256(0x01 || left || right)

Odd-node policy: at every level an unpaired last node is paired with the fixed
SENTINEL_HASH. It is never duplicated, so a tree of n leaves cannot collide
with a tree of n+1 leaves whose last leaf repeats. The empty tree has root
EMPTY_ROOT; a single-leaf tree has the leaf hash as its root.

Inclusion proofs are the sibling path leaf -> root with each step tagged
``left`` or ``right``, the same shape as MMR peak paths.
"""

from __future__ import annotations

import hashlib
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ledgerfold.core import is_valid_sha256
from ledgerfold.errors import CapacityExceeded
from ledgerfold.items import Leaf
from ledgerfold.observability import Layer, get_logger

NODE_PREFIX = b"\x01"

EMPTY_ROOT = hashlib.sha256(b"ledgerfold:empty-tree").hexdigest()
SENTINEL_HASH = hashlib.sha256(b"ledgerfold:sentinel").hexdigest()

DEFAULT_MAX_DEPTH = 20

_log = get_logger("commitment_tree", Layer.TREE)


def node_hash(left_hex: str, right_hex: str) -> str:
    """Compute a parent hash from two child hashes (each 32 bytes hex)."""
    left = bytes.fromhex(left_hex)
    right = bytes.fromhex(right_hex)
    return hashlib.sha256(NODE_PREFIX + left + right).hexdigest()


def merkle_root(leaf_hashes: Iterable[str]) -> str:
    """Compute the root of a full tree from scratch."""
    level = list(leaf_hashes)
    if not level:
        return EMPTY_ROOT
    while len(level) > 1:
        nxt: List[str] = []
        for i in range(0, len(level), 2):
            right = level[i + 1] if i + 1 < len(level) else SENTINEL_HASH
            nxt.append(node_hash(level[i], right))
        level = nxt
    return level[0]


@dataclass(frozen=True)
class ProofStep:
    side: str  # "left" or "right": where the sibling sits
    hash: str

    def to_dict(self) -> Dict[str, str]:
        return {"side": self.side, "hash": self.hash}


@dataclass(frozen=True)
class InclusionProof:
    position: int
    leaf_hash: str
    tree_size: int
    root: str
    path: Tuple[ProofStep, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position,
            "leaf_hash": self.leaf_hash,
            "tree_size": self.tree_size,
            "root": self.root,
            "path": [s.to_dict() for s in self.path],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InclusionProof":
        return cls(
            position=int(data["position"]),
            leaf_hash=str(data["leaf_hash"]),
            tree_size=int(data["tree_size"]),
            root=str(data["root"]),
            path=tuple(ProofStep(side=str(s["side"]), hash=str(s["hash"])) for s in data["path"]),
        )


@dataclass(frozen=True)
class TreeSnapshot:
    size: int
    root: str


def verify_inclusion(proof: InclusionProof, root: str) -> bool:
    """Check that ``proof`` links its leaf hash to ``root``.

    Pure function of its arguments; cost is logarithmic in tree size.
    """
    if not is_valid_sha256(proof.leaf_hash) or not is_valid_sha256(root):
        return False
    if proof.position < 0 or proof.position >= proof.tree_size:
        return False

    cur = proof.leaf_hash
    index = proof.position
    for step in proof.path:
        if not is_valid_sha256(step.hash):
            return False
        # The sibling side is fixed by the position bit at this level.
        expected_side = "left" if index & 1 else "right"
        if step.side != expected_side:
            return False
        cur = node_hash(step.hash, cur) if step.side == "left" else node_hash(cur, step.hash)
        index >>= 1
    if index != 0:
        return False
    return cur == root


class CommitmentTree:
    """
    Append-only commitment tree with a fixed maximum depth.

    All mutations are serialized by a lock. Readers see a consistent,
    already-committed prefix: ``snapshot()`` returns size and root observed
    together.
    """

    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH):
        if max_depth < 1:
            raise ValueError("max_depth must be >= 1")
        self.max_depth = max_depth
        self.capacity = 1 << max_depth
        self._leaves: List[Leaf] = []
        # _levels[0] holds leaf hashes; the last level holds the root once size >= 1.
        self._levels: List[List[str]] = [[]]
        self._lock = threading.RLock()

    @classmethod
    def from_leaves(cls, leaves: Iterable[Leaf], max_depth: int = DEFAULT_MAX_DEPTH) -> "CommitmentTree":
        """Rebuild a tree by replaying leaves in position order."""
        tree = cls(max_depth=max_depth)
        for leaf in leaves:
            tree.insert(leaf)
        return tree

    def __len__(self) -> int:
        return self.size

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._leaves)

    @property
    def is_full(self) -> bool:
        return self.size >= self.capacity

    def insert(self, leaf: Leaf) -> int:
        """Append a leaf and return its permanent position."""
        with self._lock:
            if len(self._leaves) >= self.capacity:
                raise CapacityExceeded(self.capacity)
            position = len(self._leaves)
            self._leaves.append(leaf)
            self._levels[0].append(leaf.hash)
            self._update_rightmost_path(position)
            root = self._root_locked()

        _log.debug(
            "Leaf inserted",
            operation="insert",
            position=position,
            item_id=leaf.item_id,
            root=root,
        )
        return position

    def _update_rightmost_path(self, position: int) -> None:
        index = position
        level = 0
        while len(self._levels[level]) > 1:
            nodes = self._levels[level]
            parent = index // 2
            left = nodes[2 * parent]
            right = nodes[2 * parent + 1] if 2 * parent + 1 < len(nodes) else SENTINEL_HASH
            digest = node_hash(left, right)

            if level + 1 == len(self._levels):
                self._levels.append([])
            above = self._levels[level + 1]
            if parent < len(above):
                above[parent] = digest
            else:
                above.append(digest)

            index = parent
            level += 1

    def _root_locked(self) -> str:
        if not self._leaves:
            return EMPTY_ROOT
        return self._levels[-1][0]

    def root(self) -> str:
        with self._lock:
            return self._root_locked()

    def snapshot(self) -> TreeSnapshot:
        with self._lock:
            return TreeSnapshot(size=len(self._leaves), root=self._root_locked())

    def leaf(self, position: int) -> Leaf:
        with self._lock:
            self._check_position(position)
            return self._leaves[position]

    def leaf_hash_at(self, position: int) -> str:
        with self._lock:
            self._check_position(position)
            return self._levels[0][position]

    def leaf_hashes(self, start: int = 0, end: Optional[int] = None) -> List[str]:
        with self._lock:
            stop = len(self._leaves) if end is None else end
            if start < 0 or stop > len(self._leaves) or start > stop:
                raise IndexError(f"range [{start}, {stop}) outside tree of size {len(self._leaves)}")
            return list(self._levels[0][start:stop])

    def leaves(self) -> List[Leaf]:
        with self._lock:
            return list(self._leaves)

    def _check_position(self, position: int) -> None:
        if position < 0 or position >= len(self._leaves):
            raise IndexError(f"position {position} outside tree of size {len(self._leaves)}")

    def proof_for(self, position: int) -> InclusionProof:
        """Sibling path from the leaf at ``position`` up to the current root."""
        with self._lock:
            self._check_position(position)
            path: List[ProofStep] = []
            index = position
            for nodes in self._levels[:-1]:
                sibling = index ^ 1
                sibling_hash = nodes[sibling] if sibling < len(nodes) else SENTINEL_HASH
                side = "left" if sibling < index else "right"
                path.append(ProofStep(side=side, hash=sibling_hash))
                index //= 2
            return InclusionProof(
                position=position,
                leaf_hash=self._levels[0][position],
                tree_size=len(self._leaves),
                root=self._root_locked(),
                path=tuple(path),
            )

    verify_inclusion = staticmethod(verify_inclusion)
