"""
LEDGERFOLD — Batch Commitment and Recursive Proof Aggregation

Items are committed as leaves of an append-only hash tree. Their proofs are
buffered and folded, together with the tree root, into recursive aggregate
proofs. Each item then moves through an anchoring lifecycle, every step of
which is recorded in a hash-chained provenance log, and anchored items are
delivered to recipients with bounded retry and rerouting.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                              EPOCH ENGINE                                │
    │                                                                          │
    │  SURFACES                                                               │
    │    api.py          Retrieval and verification HTTP API                  │
    │    cli.py          Config, tree, history and verification commands      │
    │                                                                          │
    │  LIFECYCLE                                                              │
    │    engine.py       One owned epoch: wiring, anchoring, recovery         │
    │    state.py        Per-item state machine with anchor retry             │
    │    distribution.py Delivery jobs, backoff, reroute, dead letters        │
    │    anchor.py       External ledger gateway protocol                     │
    │                                                                          │
    │  COMMITMENT                                                             │
    │    tree.py         Incremental commitment tree and inclusion proofs     │
    │    proofs.py       Item and aggregate proofs, Ed25519 backend           │
    │    aggregator.py   Buffered rounds and MMR-style peak folding           │
    │    provenance.py   Hash-chained per-item history                        │
    │                                                                          │
    │  FOUNDATION                                                             │
    │    core.py, items.py, errors.py, config.py, observability.py,           │
    │    resilience.py, schema.py, storage.py                                 │
    └─────────────────────────────────────────────────────────────────────────┘

Copyright (c) 2026 Momentum. All rights reserved.
"""

__version__ = "0.1.0"


# Lazy imports keep `import ledgerfold` free of the HTTP stack.
def __getattr__(name):
    if name in ("CommitmentTree", "InclusionProof", "verify_inclusion", "merkle_root"):
        from ledgerfold import tree
        return getattr(tree, name)

    if name in ("ItemProof", "AggregateProof", "PublicInputs", "SigningKey",
                "KeyRegistry", "Ed25519ProofBackend", "verify_aggregate", "prove_item"):
        from ledgerfold import proofs
        return getattr(proofs, name)

    if name in ("ProofAggregator",):
        from ledgerfold import aggregator
        return getattr(aggregator, name)

    if name in ("AssetState", "AssetStateMachine"):
        from ledgerfold import state
        return getattr(state, name)

    if name in ("ProvenanceLog", "ProvenanceEntry", "EventKind", "verify_chain"):
        from ledgerfold import provenance
        return getattr(provenance, name)

    if name in ("DistributionScheduler", "DistributionJob", "JobStatus"):
        from ledgerfold import distribution
        return getattr(distribution, name)

    if name in ("Epoch",):
        from ledgerfold import engine
        return getattr(engine, name)

    if name in ("Item", "Leaf"):
        from ledgerfold import items
        return getattr(items, name)

    raise AttributeError(f"module 'ledgerfold' has no attribute '{name}'")


__all__ = [
    "__version__",
    "CommitmentTree",
    "InclusionProof",
    "verify_inclusion",
    "merkle_root",
    "ItemProof",
    "AggregateProof",
    "PublicInputs",
    "SigningKey",
    "KeyRegistry",
    "Ed25519ProofBackend",
    "verify_aggregate",
    "prove_item",
    "ProofAggregator",
    "AssetState",
    "AssetStateMachine",
    "ProvenanceLog",
    "ProvenanceEntry",
    "EventKind",
    "verify_chain",
    "DistributionScheduler",
    "DistributionJob",
    "JobStatus",
    "Epoch",
    "Item",
    "Leaf",
]
