"""Items and the leaves that commit them.

An Item is an immutable payload plus mutable metadata (owner, tags). Its
identity is the SHA-256 of the payload, computed once at creation. When an
item enters the commitment tree it is frozen into a Leaf:

    (item_id, content_hash, metadata_hash)

The leaf hash is domain separated from internal nodes:

    leaf = SHA256(0x00 || canonical_json(leaf))
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Tuple

from ledgerfold.core import canonical_json_bytes, canonical_digest, is_valid_sha256, sha256_bytes

LEAF_PREFIX = b"\x00"


@dataclass(frozen=True)
class Leaf:
    item_id: str
    content_hash: str
    metadata_hash: str

    def __post_init__(self):
        for name in ("item_id", "content_hash", "metadata_hash"):
            if not is_valid_sha256(getattr(self, name)):
                raise ValueError(f"{name} must be 64 lowercase hex chars")

    def to_dict(self) -> Dict[str, str]:
        return {
            "item_id": self.item_id,
            "content_hash": self.content_hash,
            "metadata_hash": self.metadata_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Leaf":
        return cls(
            item_id=str(data["item_id"]),
            content_hash=str(data["content_hash"]),
            metadata_hash=str(data["metadata_hash"]),
        )

    @property
    def hash(self) -> str:
        """Domain-separated leaf hash used as the tree's bottom level."""
        return hashlib.sha256(LEAF_PREFIX + canonical_json_bytes(self.to_dict())).hexdigest()


@dataclass
class Item:
    """
    A committed unit of content.

    ``content_hash`` never changes after creation; ``owner`` and ``tags``
    are metadata and may be updated through ownership transfers, but the
    metadata hash recorded in the leaf is the one observed at insertion.
    """
    content_hash: str
    owner: str = ""
    tags: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if not is_valid_sha256(self.content_hash):
            raise ValueError("content_hash must be 64 lowercase hex chars")
        self.tags = tuple(self.tags)

    @classmethod
    def create(cls, payload: bytes, owner: str = "", tags: Optional[Iterable[str]] = None) -> "Item":
        return cls(content_hash=sha256_bytes(payload), owner=owner, tags=tuple(tags or ()))

    @property
    def item_id(self) -> str:
        return self.content_hash

    def metadata(self) -> Dict[str, Any]:
        return {"owner": self.owner, "tags": sorted(self.tags)}

    @property
    def metadata_hash(self) -> str:
        return canonical_digest(self.metadata())

    def to_leaf(self) -> Leaf:
        return Leaf(
            item_id=self.item_id,
            content_hash=self.content_hash,
            metadata_hash=self.metadata_hash,
        )
