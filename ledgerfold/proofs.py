"""
Ledgerfold Proof Layer

Per-item proofs, recursive aggregate proofs and the pluggable backend that
produces and checks them.

Proof model:
    ItemProof       attests one leaf (position, leaf hash), signed by the
                    item's producer.
    AggregateProof  attests a contiguous leaf range [start, end) against the
                    tree root observed at aggregation time.

Both satisfy the same Aggregatable capability (covered range, range
commitment, recursion depth, canonical statement), so an aggregate can be
folded into a larger aggregate exactly like an item proof can.

Range commitment:
    C([start, end)) = sum_{p in range} H(p || leaf_hash[p])   (mod BN254 Fr)

The sum is additive, so folding adjacent children yields the same
commitment as proving the whole range directly. A verifier recomputes it
from the public leaf hashes alone.

The reference backend signs canonical statements with Ed25519 keys resolved
from a public KeyRegistry. Circuit-level proof systems plug in behind the
same ProofBackend protocol.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from ledgerfold.core import (
    b64url_decode,
    b64url_encode,
    canonical_digest,
    canonical_json_bytes,
    is_valid_sha256,
    sha256_bytes,
)


# =============================================================================
# FIELD ARITHMETIC
# =============================================================================

@dataclass(frozen=True)
class FieldElement:
    """
    Element of the BN254 scalar field, kept as a 64-char hex string.

    All arithmetic is performed modulo the field order so commitments stay
    valid field elements regardless of how many terms are summed.
    """
    value: str

    FIELD_MODULUS = 0x30644e72e131a029b85045b68181585d2833e84879b9709143e1f593f0000001

    def __post_init__(self):
        if len(self.value) != 64 or not all(c in "0123456789abcdef" for c in self.value):
            raise ValueError("Field element must be 64 lowercase hex chars")

    @classmethod
    def zero(cls) -> "FieldElement":
        return cls("0" * 64)

    @classmethod
    def from_int(cls, n: int) -> "FieldElement":
        return cls(format(n % cls.FIELD_MODULUS, "064x"))

    def to_int(self) -> int:
        return int(self.value, 16)

    def __add__(self, other: "FieldElement") -> "FieldElement":
        return FieldElement.from_int(self.to_int() + other.to_int())


def range_term(position: int, leaf_hash: str) -> FieldElement:
    digest = sha256_bytes(f"ledgerfold:range-term:{position}:{leaf_hash}".encode("utf-8"))
    return FieldElement.from_int(int(digest, 16))


def range_commitment(start: int, leaf_hashes: Sequence[str]) -> str:
    """Commitment over leaves ``start .. start + len(leaf_hashes)``."""
    total = FieldElement.zero()
    for offset, lh in enumerate(leaf_hashes):
        total = total + range_term(start + offset, lh)
    return total.value


# =============================================================================
# KEYS
# =============================================================================

class SigningKey:
    """An Ed25519 private key with a registry identifier."""

    def __init__(self, key_id: str, private_key: Ed25519PrivateKey):
        self.key_id = key_id
        self._private_key = private_key

    @classmethod
    def generate(cls, key_id: str) -> "SigningKey":
        return cls(key_id, Ed25519PrivateKey.generate())

    @classmethod
    def from_jwk(cls, jwk: Dict[str, Any]) -> "SigningKey":
        """Load from a private OKP JWK: {"kty":"OKP","crv":"Ed25519","x":...,"d":...,"kid":...}."""
        if jwk.get("kty") != "OKP" or jwk.get("crv") != "Ed25519":
            raise ValueError("Only OKP/Ed25519 JWK is supported")
        d = jwk.get("d")
        if not isinstance(d, str) or not d:
            raise ValueError("JWK missing private key 'd'")
        priv_bytes = b64url_decode(d)
        if len(priv_bytes) != 32:
            raise ValueError("Ed25519 private key must be 32 bytes")
        return cls(str(jwk.get("kid") or "key-1"), Ed25519PrivateKey.from_private_bytes(priv_bytes))

    def to_jwk(self) -> Dict[str, str]:
        d = self._private_key.private_bytes(
            serialization.Encoding.Raw,
            serialization.PrivateFormat.Raw,
            serialization.NoEncryption(),
        )
        jwk = public_key_to_jwk(self.key_id, self.public_key)
        jwk["d"] = b64url_encode(d)
        return jwk

    @property
    def public_key(self) -> Ed25519PublicKey:
        return self._private_key.public_key()

    def sign(self, message: bytes) -> str:
        return b64url_encode(self._private_key.sign(message))


def public_key_to_jwk(key_id: str, public_key: Ed25519PublicKey) -> Dict[str, str]:
    raw = public_key.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)
    return {"kty": "OKP", "crv": "Ed25519", "x": b64url_encode(raw), "kid": key_id}


class KeyRegistry:
    """
    Public verification keys by id.

    Verification never needs anything beyond this registry, the proof and the
    public inputs.
    """

    def __init__(self):
        self._keys: Dict[str, Ed25519PublicKey] = {}
        self._lock = threading.Lock()

    def register(self, key_id: str, public_key: Ed25519PublicKey) -> None:
        with self._lock:
            existing = self._keys.get(key_id)
            if existing is not None and _raw(existing) != _raw(public_key):
                raise ValueError(f"Key id already registered with a different key: {key_id}")
            self._keys[key_id] = public_key

    def register_signing_key(self, key: SigningKey) -> None:
        self.register(key.key_id, key.public_key)

    def get(self, key_id: str) -> Optional[Ed25519PublicKey]:
        with self._lock:
            return self._keys.get(key_id)

    def __contains__(self, key_id: object) -> bool:
        with self._lock:
            return key_id in self._keys

    def verify(self, key_id: str, message: bytes, signature_b64: str) -> bool:
        public_key = self.get(key_id)
        if public_key is None:
            return False
        try:
            sig = b64url_decode(signature_b64)
        except (ValueError, TypeError):
            return False
        if len(sig) != 64:
            return False
        try:
            public_key.verify(sig, message)
        except InvalidSignature:
            return False
        return True

    def to_jwks(self) -> Dict[str, Any]:
        with self._lock:
            return {"keys": [public_key_to_jwk(k, v) for k, v in sorted(self._keys.items())]}

    @classmethod
    def from_jwks(cls, data: Dict[str, Any]) -> "KeyRegistry":
        registry = cls()
        for jwk in data.get("keys", []):
            if jwk.get("kty") != "OKP" or jwk.get("crv") != "Ed25519":
                raise ValueError("Only OKP/Ed25519 keys are supported")
            raw = b64url_decode(str(jwk["x"]))
            registry.register(str(jwk["kid"]), Ed25519PublicKey.from_public_bytes(raw))
        return registry


def _raw(public_key: Ed25519PublicKey) -> bytes:
    return public_key.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)


# =============================================================================
# PROOF TYPES
# =============================================================================

class Aggregatable(Protocol):
    """Capability shared by item and aggregate proofs."""

    @property
    def covered_range(self) -> Tuple[int, int]: ...

    @property
    def range_commitment(self) -> str: ...

    @property
    def depth(self) -> int: ...

    @property
    def digest(self) -> str: ...

    def statement(self) -> Dict[str, Any]: ...

    def signer_id(self) -> str: ...

    def signature(self) -> str: ...


@dataclass(frozen=True)
class ItemProof:
    """Producer's attestation of a single leaf."""
    position: int
    leaf_hash: str
    key_id: str
    proof_data: str  # b64url Ed25519 signature over statement()

    @property
    def covered_range(self) -> Tuple[int, int]:
        return (self.position, self.position + 1)

    @property
    def range_commitment(self) -> str:
        return range_commitment(self.position, [self.leaf_hash])

    @property
    def depth(self) -> int:
        return 0

    def statement(self) -> Dict[str, Any]:
        return {"kind": "item", "position": self.position, "leaf_hash": self.leaf_hash}

    def signer_id(self) -> str:
        return self.key_id

    def signature(self) -> str:
        return self.proof_data

    @property
    def digest(self) -> str:
        return canonical_digest(self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": "item",
            "position": self.position,
            "leaf_hash": self.leaf_hash,
            "key_id": self.key_id,
            "proof_data": self.proof_data,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ItemProof":
        return cls(
            position=int(data["position"]),
            leaf_hash=str(data["leaf_hash"]),
            key_id=str(data["key_id"]),
            proof_data=str(data["proof_data"]),
        )


@dataclass(frozen=True)
class AggregateProof:
    """
    Recursive proof over the contiguous leaf range [start, end).

    Logically supersedes the proofs it folds; those are referenced by digest
    in ``children`` and are never deleted.
    """
    start: int
    end: int
    root_at_aggregation: str
    tree_size: int
    range_commitment: str
    depth: int
    verification_key_id: str
    proof_blob: str  # b64url Ed25519 signature over statement()
    children: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def covered_range(self) -> Tuple[int, int]:
        return (self.start, self.end)

    @property
    def size(self) -> int:
        return self.end - self.start

    def covers(self, position: int) -> bool:
        return self.start <= position < self.end

    def statement(self) -> Dict[str, Any]:
        return {
            "kind": "aggregate",
            "start": self.start,
            "end": self.end,
            "root": self.root_at_aggregation,
            "tree_size": self.tree_size,
            "range_commitment": self.range_commitment,
            "depth": self.depth,
            "children": list(self.children),
        }

    def signer_id(self) -> str:
        return self.verification_key_id

    def signature(self) -> str:
        return self.proof_blob

    @property
    def digest(self) -> str:
        """Content-addressed identifier; anchoring is idempotent on it."""
        return canonical_digest(self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": "aggregate",
            "start": self.start,
            "end": self.end,
            "root_at_aggregation": self.root_at_aggregation,
            "tree_size": self.tree_size,
            "range_commitment": self.range_commitment,
            "depth": self.depth,
            "verification_key_id": self.verification_key_id,
            "proof_blob": self.proof_blob,
            "children": list(self.children),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AggregateProof":
        return cls(
            start=int(data["start"]),
            end=int(data["end"]),
            root_at_aggregation=str(data["root_at_aggregation"]),
            tree_size=int(data["tree_size"]),
            range_commitment=str(data["range_commitment"]),
            depth=int(data["depth"]),
            verification_key_id=str(data["verification_key_id"]),
            proof_blob=str(data["proof_blob"]),
            children=tuple(str(c) for c in data.get("children", [])),
        )


@dataclass(frozen=True)
class PublicInputs:
    """What a verifier is given alongside an aggregate proof."""
    root: str
    start: int
    leaf_hashes: Tuple[str, ...]

    @property
    def end(self) -> int:
        return self.start + len(self.leaf_hashes)

    def to_dict(self) -> Dict[str, Any]:
        return {"root": self.root, "start": self.start, "leaf_hashes": list(self.leaf_hashes)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PublicInputs":
        return cls(
            root=str(data["root"]),
            start=int(data["start"]),
            leaf_hashes=tuple(str(h) for h in data["leaf_hashes"]),
        )


def prove_item(key: SigningKey, position: int, leaf_hash: str) -> ItemProof:
    """Produce the item proof a producer submits for its leaf."""
    if not is_valid_sha256(leaf_hash):
        raise ValueError("leaf_hash must be 64 lowercase hex chars")
    statement = {"kind": "item", "position": position, "leaf_hash": leaf_hash}
    return ItemProof(
        position=position,
        leaf_hash=leaf_hash,
        key_id=key.key_id,
        proof_data=key.sign(canonical_json_bytes(statement)),
    )


def check_contiguous(proofs: Sequence[Aggregatable]) -> List[Aggregatable]:
    """Sort proofs by range and require that they tile one contiguous range."""
    if not proofs:
        raise ValueError("Cannot aggregate empty proof list")
    ordered = sorted(proofs, key=lambda p: p.covered_range[0])
    for prev, cur in zip(ordered, ordered[1:]):
        if prev.covered_range[1] != cur.covered_range[0]:
            raise ValueError(
                f"Proofs are not contiguous: {prev.covered_range} then {cur.covered_range}"
            )
    return ordered


# =============================================================================
# BACKEND
# =============================================================================

class ProofBackend(Protocol):
    """Pluggable proof system used by the aggregator."""

    def verify_item(self, proof: ItemProof) -> bool:
        ...

    def aggregate(
        self,
        proofs: Sequence[Aggregatable],
        root: str,
        tree_size: int,
    ) -> AggregateProof:
        """Fold contiguous proofs into one bound to ``root``."""
        ...

    def verify(self, proof: AggregateProof, public_inputs: PublicInputs) -> bool:
        """Stateless check of an aggregate against public inputs."""
        ...


class Ed25519ProofBackend:
    """
    Reference backend: proofs are Ed25519 signatures over canonical statements.

    Before signing an aggregate statement the backend checks every child's
    signature, so an aggregate transitively attests everything it folds.
    """

    def __init__(self, signing_key: SigningKey, registry: KeyRegistry):
        self._key = signing_key
        self.registry = registry
        registry.register_signing_key(signing_key)

    @property
    def key_id(self) -> str:
        return self._key.key_id

    def prove_item(self, position: int, leaf_hash: str) -> ItemProof:
        return prove_item(self._key, position, leaf_hash)

    def verify_item(self, proof: ItemProof) -> bool:
        if not is_valid_sha256(proof.leaf_hash) or proof.position < 0:
            return False
        return self.registry.verify(
            proof.key_id, canonical_json_bytes(proof.statement()), proof.proof_data
        )

    def check_signature(self, proof: Aggregatable) -> bool:
        return self.registry.verify(
            proof.signer_id(), canonical_json_bytes(proof.statement()), proof.signature()
        )

    def aggregate(
        self,
        proofs: Sequence[Aggregatable],
        root: str,
        tree_size: int,
    ) -> AggregateProof:
        ordered = check_contiguous(proofs)
        for child in ordered:
            if not self.check_signature(child):
                raise ValueError(f"Child proof for {child.covered_range} has an invalid signature")

        start = ordered[0].covered_range[0]
        end = ordered[-1].covered_range[1]
        if end > tree_size:
            raise ValueError(f"Range [{start}, {end}) exceeds tree size {tree_size}")

        commitment = FieldElement.zero()
        for child in ordered:
            commitment = commitment + FieldElement(child.range_commitment)

        unsigned = AggregateProof(
            start=start,
            end=end,
            root_at_aggregation=root,
            tree_size=tree_size,
            range_commitment=commitment.value,
            depth=max(child.depth for child in ordered) + 1,
            verification_key_id=self._key.key_id,
            proof_blob="",
            children=tuple(child.digest for child in ordered),
        )
        blob = self._key.sign(canonical_json_bytes(unsigned.statement()))
        return replace(unsigned, proof_blob=blob)

    def verify(self, proof: AggregateProof, public_inputs: PublicInputs) -> bool:
        return verify_aggregate(proof, public_inputs, self.registry)


def verify_aggregate(
    proof: AggregateProof,
    public_inputs: PublicInputs,
    registry: KeyRegistry,
) -> bool:
    """
    Verify an aggregate proof using only public material.

    Checks, in order: the range matches the supplied leaf hashes, the proof
    is bound to the supplied root, the range commitment recomputes from the
    leaf hashes, and the signature verifies under the registered key.
    """
    if proof.start != public_inputs.start or proof.end != public_inputs.end:
        return False
    if proof.start < 0 or proof.end <= proof.start or proof.end > proof.tree_size:
        return False
    if proof.root_at_aggregation != public_inputs.root:
        return False
    if not all(is_valid_sha256(h) for h in public_inputs.leaf_hashes):
        return False
    try:
        expected = range_commitment(public_inputs.start, public_inputs.leaf_hashes)
    except ValueError:
        return False
    if expected != proof.range_commitment:
        return False
    return registry.verify(
        proof.verification_key_id,
        canonical_json_bytes(proof.statement()),
        proof.proof_blob,
    )
