"""
Ledgerfold Proof Aggregator

Buffers per-item proofs and folds them, together with the tree root, into
recursive aggregate proofs.

Lifecycle of a proof:

    submit(position, proof)
        │  validated against the tree and the backend; rejects never buffer
        ▼
    buffer ──(recursion_interval reached | oldest waited max_wait)──► round
                                                                        │
        swap buffer out; later submissions start the next batch         │
        split batch into contiguous runs; one aggregate per run ◄───────┘
        re-read root and retry if the tree moved while proving
                                                                        │
    peaks: adjacent aggregates of equal depth fold into one, MMR style  ▼

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from ledgerfold.errors import AggregationStale, ProofInvalid
from ledgerfold.observability import Layer, get_logger
from ledgerfold.proofs import Aggregatable, AggregateProof, ItemProof, ProofBackend
from ledgerfold.tree import CommitmentTree

_log = get_logger("proof_aggregator", Layer.AGGREGATION)

AggregateListener = Callable[[AggregateProof], None]


@dataclass
class BufferedProof:
    position: int
    proof: ItemProof
    received_at: float


def contiguous_runs(positions: Iterable[int]) -> List[List[int]]:
    """Group sorted positions into maximal runs of consecutive integers."""
    runs: List[List[int]] = []
    for p in sorted(positions):
        if runs and runs[-1][-1] + 1 == p:
            runs[-1].append(p)
        else:
            runs.append([p])
    return runs


class ProofAggregator:
    """
    Folds item proofs into aggregate proofs bound to the commitment tree.

    Rounds run synchronously in the thread that crosses the size threshold,
    from ``tick()``, or from the optional background timer started with
    ``start()``. Listeners registered with ``add_listener`` receive every
    aggregate after it is recorded, folded peaks included.
    """

    def __init__(
        self,
        tree: CommitmentTree,
        backend: ProofBackend,
        recursion_interval: int = 10,
        max_wait_seconds: float = 30.0,
        stale_retry_limit: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        if recursion_interval < 1:
            raise ValueError("recursion_interval must be >= 1")
        if stale_retry_limit < 1:
            raise ValueError("stale_retry_limit must be >= 1")
        self.tree = tree
        self.backend = backend
        self.recursion_interval = recursion_interval
        self.max_wait_seconds = max_wait_seconds
        self.stale_retry_limit = stale_retry_limit
        self._clock = clock

        self._buffer: Dict[int, BufferedProof] = {}
        self._covered: Set[int] = set()
        self._aggregates: List[AggregateProof] = []
        self._peaks: List[AggregateProof] = []
        self._listeners: List[AggregateListener] = []

        self._lock = threading.RLock()
        self._round_lock = threading.Lock()
        self._stop = threading.Event()
        self._timer: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # submission
    # ------------------------------------------------------------------

    def add_listener(self, listener: AggregateListener) -> None:
        self._listeners.append(listener)

    def submit(self, leaf_position: int, item_proof: ItemProof) -> List[AggregateProof]:
        """
        Validate and buffer an item proof.

        Returns the aggregates produced if this submission completed a batch,
        otherwise an empty list. Raises ProofInvalid without buffering
        anything when the proof does not check out.
        """
        self._validate(leaf_position, item_proof)

        with self._lock:
            if leaf_position in self._buffer or leaf_position in self._covered:
                raise ProofInvalid(leaf_position, "position already buffered or aggregated")
            self._buffer[leaf_position] = BufferedProof(
                position=leaf_position,
                proof=item_proof,
                received_at=self._clock(),
            )
            buffered = len(self._buffer)

        _log.debug("Item proof buffered", operation="submit", position=leaf_position, buffered=buffered)

        if buffered >= self.recursion_interval:
            return self._run_round(due_only=True)
        return []

    def _validate(self, position: int, proof: ItemProof) -> None:
        if proof.position != position:
            self._reject(position, f"proof is for position {proof.position}")
        if position < 0 or position >= self.tree.size:
            self._reject(position, "no leaf at this position")
        if self.tree.leaf_hash_at(position) != proof.leaf_hash:
            self._reject(position, "leaf hash does not match the committed leaf")
        if not self.backend.verify_item(proof):
            self._reject(position, "item proof failed verification")

    def _reject(self, position: int, reason: str) -> None:
        _log.warning("Item proof rejected", operation="submit", position=position, reason=reason)
        raise ProofInvalid(position, reason)

    # ------------------------------------------------------------------
    # rounds
    # ------------------------------------------------------------------

    def _is_due(self, now: float) -> bool:
        if not self._buffer:
            return False
        if len(self._buffer) >= self.recursion_interval:
            return True
        oldest = min(bp.received_at for bp in self._buffer.values())
        return now - oldest >= self.max_wait_seconds

    def tick(self, now: Optional[float] = None) -> List[AggregateProof]:
        """Run a round if the size or wait threshold has been reached."""
        return self._run_round(due_only=True, now=now)

    def aggregate(self) -> List[AggregateProof]:
        """Run a round over whatever is buffered, regardless of thresholds."""
        return self._run_round(due_only=False)

    def _run_round(self, due_only: bool, now: Optional[float] = None) -> List[AggregateProof]:
        with self._round_lock:
            with self._lock:
                if due_only and not self._is_due(self._clock() if now is None else now):
                    return []
                batch = self._buffer
                self._buffer = {}
            if not batch:
                return []

            try:
                produced = self._aggregate_batch(batch)
            except AggregationStale:
                with self._lock:
                    for position, bp in batch.items():
                        self._buffer.setdefault(position, bp)
                raise

            with self._lock:
                for agg in produced:
                    self._covered.update(range(agg.start, agg.end))
                    self._aggregates.append(agg)
                    self._add_peak(agg)

        for agg in produced:
            _log.info(
                "Aggregate produced",
                operation="aggregate",
                start=agg.start,
                end=agg.end,
                root=agg.root_at_aggregation,
                digest=agg.digest,
            )
            for listener in self._listeners:
                listener(agg)
        self._fold_peaks()
        return produced

    def _aggregate_batch(self, batch: Dict[int, BufferedProof]) -> List[AggregateProof]:
        runs = contiguous_runs(batch)
        return self._prove_against_current_root(
            [[batch[p].proof for p in run] for run in runs]
        )

    def _prove_against_current_root(
        self,
        groups: Sequence[Sequence[Aggregatable]],
    ) -> List[AggregateProof]:
        snap = self.tree.snapshot()
        observed = snap.root
        for attempt in range(1, self.stale_retry_limit + 1):
            produced = [self.backend.aggregate(group, snap.root, snap.size) for group in groups]
            observed = self.tree.root()
            if observed == snap.root:
                return produced
            _log.warning(
                "Tree root moved during aggregation; retrying",
                operation="aggregate",
                attempt=attempt,
                expected_root=snap.root,
                observed_root=observed,
            )
            if attempt < self.stale_retry_limit:
                snap = self.tree.snapshot()
        raise AggregationStale(snap.root, observed, self.stale_retry_limit)

    # ------------------------------------------------------------------
    # recursive folding
    # ------------------------------------------------------------------

    def fold(self, proofs: Sequence[Aggregatable]) -> AggregateProof:
        """Fold adjacent item or aggregate proofs into one covering their union."""
        with self._round_lock:
            folded = self._prove_against_current_root([proofs])[0]
        _log.info(
            "Proofs folded",
            operation="fold",
            start=folded.start,
            end=folded.end,
            depth=folded.depth,
            inputs=len(proofs),
        )
        return folded

    def _add_peak(self, agg: AggregateProof) -> None:
        for peak in self._peaks:
            if peak.start < agg.end and agg.start < peak.end:
                # Re-aggregation of a released range; existing peak already covers it.
                return
        self._peaks.append(agg)
        self._peaks.sort(key=lambda p: p.start)

    def _next_mergeable(self) -> Optional[int]:
        for i in range(len(self._peaks) - 1):
            left, right = self._peaks[i], self._peaks[i + 1]
            if left.end == right.start and left.depth == right.depth:
                return i
        return None

    def _fold_peaks(self) -> None:
        while True:
            with self._lock:
                i = self._next_mergeable()
                if i is None:
                    return
                pair = [self._peaks[i], self._peaks[i + 1]]
            try:
                merged = self.fold(pair)
            except AggregationStale as e:
                _log.warning("Peak folding deferred", operation="fold", reason=str(e))
                return
            with self._lock:
                if pair[0] not in self._peaks or pair[1] not in self._peaks:
                    continue
                self._peaks.remove(pair[0])
                self._peaks.remove(pair[1])
                self._peaks.append(merged)
                self._peaks.sort(key=lambda p: p.start)
                self._aggregates.append(merged)
            for listener in self._listeners:
                listener(merged)

    # ------------------------------------------------------------------
    # bookkeeping
    # ------------------------------------------------------------------

    def release(self, positions: Iterable[int]) -> None:
        """Allow positions to be submitted and aggregated again.

        Used when the items behind an aggregate failed anchoring and were
        retried. Existing aggregate proofs remain valid and are kept.
        """
        with self._lock:
            for p in positions:
                self._covered.discard(p)

    def discard(self, aggregate: AggregateProof) -> None:
        """Forget an aggregate that failed verification.

        Positions no other aggregate covers become submittable again.
        """
        with self._lock:
            if aggregate in self._aggregates:
                self._aggregates.remove(aggregate)
            if aggregate in self._peaks:
                self._peaks.remove(aggregate)
            for p in range(aggregate.start, aggregate.end):
                if not any(agg.covers(p) for agg in self._aggregates):
                    self._covered.discard(p)

    def restore(self, aggregates: Iterable[AggregateProof]) -> None:
        """Reload previously produced aggregates (e.g. from storage)."""
        with self._lock:
            for agg in aggregates:
                self._aggregates.append(agg)
                self._covered.update(range(agg.start, agg.end))
                # A folded aggregate replaces the peaks it was built from.
                self._peaks = [
                    p for p in self._peaks if not (agg.start <= p.start and p.end <= agg.end)
                ]
                self._add_peak(agg)

    def pending_positions(self) -> List[int]:
        with self._lock:
            return sorted(self._buffer)

    def is_covered(self, position: int) -> bool:
        with self._lock:
            return position in self._covered

    def aggregates(self) -> List[AggregateProof]:
        with self._lock:
            return list(self._aggregates)

    def peaks(self) -> List[AggregateProof]:
        with self._lock:
            return list(self._peaks)

    def aggregate_for(self, position: int) -> Optional[AggregateProof]:
        """Most recent aggregate covering ``position``."""
        with self._lock:
            for agg in reversed(self._aggregates):
                if agg.covers(position):
                    return agg
        return None

    # ------------------------------------------------------------------
    # background timer
    # ------------------------------------------------------------------

    def start(self, poll_seconds: float = 1.0) -> None:
        """Start a daemon thread that fires wait-threshold rounds."""
        if self._timer is not None and self._timer.is_alive():
            return
        self._stop.clear()
        self._timer = threading.Thread(
            target=self._timer_loop,
            args=(poll_seconds,),
            name="ledgerfold-aggregation-timer",
            daemon=True,
        )
        self._timer.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._timer is not None:
            self._timer.join(timeout)
            self._timer = None

    def _timer_loop(self, poll_seconds: float) -> None:
        while not self._stop.wait(poll_seconds):
            try:
                self.tick()
            except AggregationStale as e:
                # Batch went back to the buffer; the next tick retries it.
                _log.warning("Timed aggregation round deferred", operation="tick", reason=str(e))
