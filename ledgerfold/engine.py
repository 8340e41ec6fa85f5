"""
Ledgerfold Epoch Engine

One epoch owns one commitment tree and everything that depends on it. It is
created at epoch start, passed explicitly to whoever needs it, and sealed
when the tree reaches capacity; nothing here is process-global.

    add_item ──► CommitmentTree ──► AssetStateMachine.register (PENDING)
    submit_proof ──► ProofAggregator ──round──► aggregate
                                                   │
        commit covered items (COMMITTED) ◄─────────┤
        submit_anchor ──► AnchorGateway            │
        confirm_anchors ──► ANCHORED ──► DistributionScheduler.enqueue(owner)

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import random
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from ledgerfold.aggregator import ProofAggregator
from ledgerfold.anchor import AnchorGateway, AnchorReceipt
from ledgerfold.config import LedgerfoldConfig, get_config
from ledgerfold.distribution import DistributionScheduler, Transport
from ledgerfold.errors import (
    AnchorSubmitFailed,
    CapacityExceeded,
    ChainTampered,
    EpochSealed,
    ProofInvalid,
    UnknownItem,
)
from ledgerfold.items import Item, Leaf
from ledgerfold.observability import Layer, get_logger, timed_operation
from ledgerfold.proofs import (
    AggregateProof,
    Ed25519ProofBackend,
    ItemProof,
    KeyRegistry,
    PublicInputs,
    SigningKey,
)
from ledgerfold.provenance import History, ProvenanceLog
from ledgerfold.resilience import RetryPolicy
from ledgerfold.state import AssetState, AssetStateMachine, ItemRecord
from ledgerfold.storage import LedgerStore, MemoryStore
from ledgerfold.tree import CommitmentTree, InclusionProof

_log = get_logger("epoch", Layer.ENGINE)


def generate_epoch_id() -> str:
    return f"epoch-{uuid.uuid4().hex[:12]}"


class Epoch:
    """
    Single owned instance of the tree, aggregator, state machine,
    provenance log and scheduler for one commitment epoch.
    """

    def __init__(
        self,
        signing_key: SigningKey,
        gateway: AnchorGateway,
        transport: Optional[Transport] = None,
        store: Optional[LedgerStore] = None,
        config: Optional[LedgerfoldConfig] = None,
        epoch_id: str = "",
        registry: Optional[KeyRegistry] = None,
        anchor_retry: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
        delivery_clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ):
        cfg = config or get_config()
        self.epoch_id = epoch_id or generate_epoch_id()
        self.config = cfg
        self.store = store if store is not None else MemoryStore()
        self.registry = registry if registry is not None else KeyRegistry()
        self.backend = Ed25519ProofBackend(signing_key, self.registry)
        self.gateway = gateway

        self.tree = CommitmentTree(max_depth=cfg.tree.max_depth.get())
        self.aggregator = ProofAggregator(
            self.tree,
            self.backend,
            recursion_interval=cfg.aggregation.recursion_interval.get(),
            max_wait_seconds=cfg.aggregation.max_wait_seconds.get(),
            stale_retry_limit=cfg.aggregation.stale_retry_limit.get(),
            clock=clock,
        )
        self.provenance = ProvenanceLog(sink=self.store)
        self.state = AssetStateMachine(
            self.provenance,
            anchor_retry=anchor_retry or RetryPolicy(
                max_attempts=cfg.anchor.max_retry_attempts.get(),
                base_delay_seconds=cfg.anchor.base_delay_seconds.get(),
                max_delay_seconds=cfg.anchor.max_delay_seconds.get(),
                non_retryable_exceptions=(ProofInvalid, ChainTampered),
            ),
            anchor_timeout_seconds=cfg.anchor.timeout_seconds.get(),
        )

        self.scheduler: Optional[DistributionScheduler] = None
        if transport is not None:
            dist = cfg.distribution
            self.scheduler = DistributionScheduler(
                transport,
                self.provenance,
                self.state,
                signing_key,
                max_attempts=dist.max_attempts.get(),
                base_delay_seconds=dist.base_delay_seconds.get(),
                max_delay_seconds=dist.max_delay_seconds.get(),
                jitter_factor=dist.jitter_factor.get(),
                reroute_window_seconds=dist.reroute_window_seconds.get(),
                max_workers=dist.max_workers.get(),
                attempt_timeout_seconds=dist.attempt_timeout_seconds.get(),
                clock=delivery_clock,
                rng=rng,
                store=self.store,
            )

        self._positions: Dict[str, int] = {}
        self._proofs: Dict[int, ItemProof] = {}
        self._pending_receipts: List[Tuple[AnchorReceipt, List[str]]] = []
        self._sealed = False
        self._restoring = False
        self._lock = threading.RLock()
        self.aggregator.add_listener(self._on_aggregate)

        _log.info(
            "Epoch opened",
            operation="open",
            epoch_id=self.epoch_id,
            capacity=self.tree.capacity,
        )

    # ------------------------------------------------------------------
    # items and proofs
    # ------------------------------------------------------------------

    @property
    def sealed(self) -> bool:
        with self._lock:
            return self._sealed

    def add_item(self, item: Item) -> int:
        """Commit an item as the next leaf; returns its position."""
        leaf = item.to_leaf()
        with self._lock:
            if self._sealed:
                raise EpochSealed(self.epoch_id, self.tree.capacity)
            if item.item_id in self._positions:
                raise ValueError(f"Item already committed in this epoch: {item.item_id}")
            try:
                position = self.tree.insert(leaf)
            except CapacityExceeded:
                self._sealed = True
                raise EpochSealed(self.epoch_id, self.tree.capacity) from None
            self.store.append_leaf(leaf)
            self._positions[item.item_id] = position
            self.state.register(
                item.item_id,
                position,
                owner=item.owner,
                payload={"leaf_hash": leaf.hash, "epoch_id": self.epoch_id},
            )
            if self.tree.is_full:
                self._sealed = True
                _log.info("Epoch sealed at capacity", operation="seal", epoch_id=self.epoch_id)
        return position

    def position_of(self, item_id: str) -> int:
        with self._lock:
            position = self._positions.get(item_id)
        if position is None:
            raise UnknownItem(item_id)
        return position

    def submit_proof(self, position: int, proof: ItemProof) -> List[AggregateProof]:
        """Hand a producer's item proof to the aggregator."""
        produced = self.aggregator.submit(position, proof)
        with self._lock:
            self._proofs[position] = proof
        return produced

    def prove_and_submit(self, item_id: str) -> List[AggregateProof]:
        """Submit an item proof signed with the epoch's own key."""
        position = self.position_of(item_id)
        proof = self.backend.prove_item(position, self.tree.leaf_hash_at(position))
        return self.submit_proof(position, proof)

    # ------------------------------------------------------------------
    # aggregates and anchoring
    # ------------------------------------------------------------------

    def _item_ids_in(self, aggregate: AggregateProof) -> List[str]:
        end = min(aggregate.end, self.tree.size)
        return [self.tree.leaf(p).item_id for p in range(max(aggregate.start, 0), end)]

    def _verify(self, aggregate: AggregateProof) -> bool:
        """Check an aggregate against the leaf hashes this epoch committed."""
        try:
            leaf_hashes = self.tree.leaf_hashes(aggregate.start, aggregate.end)
        except IndexError:
            return False
        inputs = PublicInputs(
            root=aggregate.root_at_aggregation,
            start=aggregate.start,
            leaf_hashes=tuple(leaf_hashes),
        )
        return self.backend.verify(aggregate, inputs)

    def _on_aggregate(self, aggregate: AggregateProof) -> None:
        pending = [
            item_id for item_id in self._item_ids_in(aggregate)
            if self.state.state_of(item_id) == AssetState.PENDING
        ]
        if not self._verify(aggregate):
            _log.error(
                "Aggregate failed verification",
                operation="verify",
                error_code="AGGREGATE_INVALID",
                aggregate=aggregate.digest,
                start=aggregate.start,
                end=aggregate.end,
            )
            self.aggregator.discard(aggregate)
            for item_id in pending:
                self.state.fail(item_id, "aggregate verification failed")
            return

        self.store.append_aggregate(aggregate)
        committed = []
        for item_id in pending:
            self.state.commit(item_id, aggregate)
            committed.append(item_id)
        if committed:
            self._anchor(aggregate, committed)

    def _anchor(self, aggregate: AggregateProof, item_ids: List[str]) -> Optional[AnchorReceipt]:
        try:
            receipt = self.state.submit_anchor(aggregate, item_ids, self.gateway)
        except AnchorSubmitFailed as e:
            # Items are FAILED now; retry_failed() makes them eligible again.
            _log.warning(
                "Aggregate left unanchored",
                operation="anchor",
                aggregate=aggregate.digest,
                items=len(item_ids),
                reason=str(e),
            )
            return None
        with self._lock:
            self._pending_receipts.append((receipt, list(item_ids)))
        if not self._restoring:
            self.confirm_anchors()
        return receipt

    def confirm_anchors(self) -> List[str]:
        """Move items of confirmed receipts to ANCHORED and queue delivery."""
        with self._lock:
            pending = list(self._pending_receipts)
        anchored: List[str] = []
        for receipt, item_ids in pending:
            done = self.state.confirm_anchor(receipt, item_ids, self.gateway)
            if not done and any(
                self.state.state_of(i) == AssetState.COMMITTED for i in item_ids
            ):
                continue
            with self._lock:
                if (receipt, item_ids) in self._pending_receipts:
                    self._pending_receipts.remove((receipt, item_ids))
            anchored.extend(done)

        for item_id in anchored:
            owner = self.state.record(item_id).owner
            if self.scheduler is not None and owner:
                self.scheduler.enqueue(item_id, owner)
        return anchored

    def pending_receipts(self) -> List[AnchorReceipt]:
        with self._lock:
            return [receipt for receipt, _ in self._pending_receipts]

    def retry_failed(self, item_ids: Optional[List[str]] = None) -> List[AggregateProof]:
        """Return FAILED items to PENDING and resubmit their proofs."""
        targets = item_ids if item_ids is not None else self.state.items_in(AssetState.FAILED)
        produced: List[AggregateProof] = []
        for item_id in targets:
            self.state.retry(item_id)
            position = self.position_of(item_id)
            self.aggregator.release([position])
            with self._lock:
                proof = self._proofs.get(position)
            if proof is None:
                _log.info(
                    "Retried item awaits a new proof",
                    operation="retry",
                    item_id=item_id,
                    position=position,
                )
                continue
            produced.extend(self.aggregator.submit(position, proof))
        return produced

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def transfer_ownership(self, item_id: str, new_owner: str) -> None:
        self.state.record_ownership(item_id, new_owner)

    def history(self, item_id: str) -> Tuple[History, ItemRecord]:
        """Ordered provenance and current record; read-only."""
        record = self.state.record(item_id)
        return self.provenance.history_of(item_id), record

    def inclusion(self, position: int) -> InclusionProof:
        return self.tree.proof_for(position)

    def stats(self) -> Dict[str, Any]:
        counts = {s.value: len(self.state.items_in(s)) for s in AssetState}
        return {
            "epoch_id": self.epoch_id,
            "size": self.tree.size,
            "capacity": self.tree.capacity,
            "root": self.tree.root(),
            "sealed": self.sealed,
            "buffered": len(self.aggregator.pending_positions()),
            "aggregates": len(self.aggregator.aggregates()),
            "states": counts,
        }

    # ------------------------------------------------------------------
    # driving the epoch
    # ------------------------------------------------------------------

    def run_once(self, now: Optional[float] = None, delivery_now: Optional[float] = None) -> Dict[str, int]:
        """One pass: timed aggregation, anchor confirmation, delivery."""
        produced = self.aggregator.tick(now)
        anchored = self.confirm_anchors()
        delivered = []
        if self.scheduler is not None:
            delivered = self.scheduler.run_pending(delivery_now)
        return {"aggregates": len(produced), "anchored": len(anchored), "deliveries": len(delivered)}

    def seal(self) -> List[AggregateProof]:
        """Stop accepting items and aggregate whatever is buffered."""
        with self._lock:
            self._sealed = True
        _log.info("Epoch sealed", operation="seal", epoch_id=self.epoch_id, size=self.tree.size)
        return self.aggregator.aggregate()

    def start(self) -> None:
        self.aggregator.start(self.config.aggregation.timer_poll_seconds.get())

    def close(self) -> None:
        self.aggregator.stop()
        if self.scheduler is not None:
            self.scheduler.shutdown()
        _log.info("Epoch closed", operation="close", epoch_id=self.epoch_id)

    # ------------------------------------------------------------------
    # recovery
    # ------------------------------------------------------------------

    @classmethod
    def restore(
        cls,
        store: LedgerStore,
        signing_key: SigningKey,
        gateway: AnchorGateway,
        transport: Optional[Transport] = None,
        **kwargs: Any,
    ) -> "Epoch":
        """Rebuild an epoch from persisted leaves, provenance, aggregates and jobs.

        Provenance chains are verified while loading; a broken chain raises
        ChainTampered. Committed items whose anchor was never confirmed are
        resubmitted, which the gateway treats idempotently.
        """
        epoch = cls(signing_key, gateway, transport=transport, store=store, **kwargs)
        leaves: List[Leaf] = store.load_leaves()
        with epoch._lock:
            for leaf in leaves:
                position = epoch.tree.insert(leaf)
                epoch._positions[leaf.item_id] = position
            epoch._sealed = epoch.tree.is_full

        epoch.provenance.load(store.load_provenance())
        epoch.state.replay(leaf.item_id for leaf in leaves)
        epoch.aggregator.restore(store.load_aggregates())
        if epoch.scheduler is not None:
            epoch.scheduler.load_jobs(store.load_jobs())

        epoch._resume_anchoring()
        _log.info(
            "Epoch restored",
            operation="restore",
            epoch_id=epoch.epoch_id,
            size=epoch.tree.size,
            root=epoch.tree.root(),
        )
        return epoch

    @timed_operation(_log, "resume_anchoring")
    def _resume_anchoring(self) -> None:
        by_digest = {agg.digest: agg for agg in self.aggregator.aggregates()}
        waiting: Dict[str, List[str]] = {}
        for item_id in self.state.items_in(AssetState.COMMITTED):
            digest = self.state.record(item_id).aggregate_digest
            waiting.setdefault(digest, []).append(item_id)

        self._restoring = True
        try:
            for digest, item_ids in waiting.items():
                aggregate = by_digest.get(digest)
                if aggregate is None:
                    raise ValueError(f"Committed items reference unknown aggregate {digest}")
                self._anchor(aggregate, item_ids)
        finally:
            self._restoring = False
        self.confirm_anchors()
