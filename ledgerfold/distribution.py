"""
Ledgerfold Distribution Scheduler

Delivers anchored items to recipients through an external Transport,
tolerating transient failures with explicit per-job state and a
deterministic backoff function.

Job lifecycle:

    QUEUED ──dispatch──► IN_FLIGHT ──ok──► DELIVERED (archived)
      ▲                      │
      │  backoff elapsed     ├── transient failure ──► QUEUED (next_eligible_time)
      │                      ├── recipient inactive ─► REROUTED (next window)
      └── shutdown cancel ◄──┤
                             └── attempts exhausted ─► DEAD_LETTERED (archived)

At most one job per item is in flight at any time. Every attempt carries a
hard deadline; a deadline miss is a transient failure like any other, but
the item counts as in flight until the timed-out call has really returned.
Dead-lettered jobs are never scheduled again.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import concurrent.futures
import math
import random
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Tuple

from ledgerfold.core import canonical_json_bytes, now_iso8601
from ledgerfold.errors import DeliveryNotEligible, RecipientInactive
from ledgerfold.observability import Layer, get_logger
from ledgerfold.proofs import KeyRegistry, SigningKey
from ledgerfold.provenance import EventKind, ProvenanceLog
from ledgerfold.resilience import BackoffStrategy, CallOutcome, DeadlineExceeded, Timeout, backoff_delay
from ledgerfold.state import AssetState, AssetStateMachine

_log = get_logger("distribution_scheduler", Layer.DISTRIBUTION)


class JobStatus(Enum):
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    DELIVERED = "delivered"
    REROUTED = "rerouted"
    DEAD_LETTERED = "dead_lettered"

    def is_schedulable(self) -> bool:
        return self in {JobStatus.QUEUED, JobStatus.REROUTED}

    def is_terminal(self) -> bool:
        return self in {JobStatus.DELIVERED, JobStatus.DEAD_LETTERED}


@dataclass
class DistributionJob:
    """Delivery of one item to one recipient."""
    item_id: str
    recipient: str
    attempt_count: int = 0
    status: JobStatus = JobStatus.QUEUED
    last_error: str = ""
    next_eligible_time: float = 0.0
    created_at: str = ""
    updated_at: str = ""

    @property
    def key(self) -> Tuple[str, str]:
        return (self.item_id, self.recipient)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "recipient": self.recipient,
            "attempt_count": self.attempt_count,
            "status": self.status.value,
            "last_error": self.last_error,
            "next_eligible_time": self.next_eligible_time,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DistributionJob":
        return cls(
            item_id=str(data["item_id"]),
            recipient=str(data["recipient"]),
            attempt_count=int(data.get("attempt_count", 0)),
            status=JobStatus(data.get("status", "queued")),
            last_error=str(data.get("last_error", "")),
            next_eligible_time=float(data.get("next_eligible_time", 0.0)),
            created_at=str(data.get("created_at", "")),
            updated_at=str(data.get("updated_at", "")),
        )


@dataclass(frozen=True)
class DeliveryReceipt:
    """Transport acknowledgement of a delivery."""
    item_id: str
    recipient: str
    transport_reference: str
    delivered_at: str


class Transport(Protocol):
    """Consumed delivery capability.

    Raises DeliveryFailed for transient failures and RecipientInactive when
    the recipient cannot currently accept deliveries.
    """

    def deliver(self, item_id: str, recipient: str) -> DeliveryReceipt: ...


class JobStore(Protocol):
    def save_jobs(self, jobs: List[DistributionJob]) -> None: ...


# =============================================================================
# DELIVERY PROOFS
# =============================================================================

@dataclass(frozen=True)
class DeliveryProof:
    """Scheduler-signed statement that an item reached a recipient."""
    item_id: str
    recipient: str
    attempt_count: int
    transport_reference: str
    delivered_at: str
    key_id: str
    signature: str = ""

    def statement(self) -> Dict[str, Any]:
        return {
            "kind": "delivery",
            "item_id": self.item_id,
            "recipient": self.recipient,
            "attempt_count": self.attempt_count,
            "transport_reference": self.transport_reference,
            "delivered_at": self.delivered_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        d = self.statement()
        d["key_id"] = self.key_id
        d["signature"] = self.signature
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeliveryProof":
        return cls(
            item_id=str(data["item_id"]),
            recipient=str(data["recipient"]),
            attempt_count=int(data["attempt_count"]),
            transport_reference=str(data["transport_reference"]),
            delivered_at=str(data["delivered_at"]),
            key_id=str(data["key_id"]),
            signature=str(data.get("signature", "")),
        )


def sign_delivery(key: SigningKey, receipt: DeliveryReceipt, attempt_count: int) -> DeliveryProof:
    unsigned = DeliveryProof(
        item_id=receipt.item_id,
        recipient=receipt.recipient,
        attempt_count=attempt_count,
        transport_reference=receipt.transport_reference,
        delivered_at=receipt.delivered_at,
        key_id=key.key_id,
    )
    return replace(unsigned, signature=key.sign(canonical_json_bytes(unsigned.statement())))


def verify_delivery_proof(proof: DeliveryProof, registry: KeyRegistry) -> bool:
    return registry.verify(proof.key_id, canonical_json_bytes(proof.statement()), proof.signature)


# =============================================================================
# SCHEDULER
# =============================================================================

DeadLetterCallback = Callable[[DistributionJob], None]


class DistributionScheduler:
    """
    Bounded-pool delivery scheduler.

    ``run_pending`` selects every eligible job (at most one per item),
    delivers them concurrently on the worker pool and settles each outcome
    before returning. It is safe to call from several threads at once.
    """

    def __init__(
        self,
        transport: Transport,
        provenance: ProvenanceLog,
        state_machine: AssetStateMachine,
        signing_key: SigningKey,
        max_attempts: int = 5,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 300.0,
        jitter_factor: float = 0.5,
        reroute_window_seconds: float = 600.0,
        max_workers: int = 8,
        attempt_timeout_seconds: float = 10.0,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
        on_dead_letter: Optional[DeadLetterCallback] = None,
        store: Optional[JobStore] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if reroute_window_seconds <= 0:
            raise ValueError("reroute_window_seconds must be > 0")
        self.transport = transport
        self.provenance = provenance
        self.state_machine = state_machine
        self._key = signing_key
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.jitter_factor = jitter_factor
        self.reroute_window_seconds = reroute_window_seconds
        self._clock = clock
        self._rng = rng or random.Random()
        self._on_dead_letter = on_dead_letter
        self._store = store
        self._attempt_timeout = Timeout(seconds=attempt_timeout_seconds, name="distribution.deliver")

        self._jobs: Dict[Tuple[str, str], DistributionJob] = {}
        self._archive: Dict[Tuple[str, str], DistributionJob] = {}
        self._dead_letters: List[DistributionJob] = []
        self._in_flight: Set[str] = set()
        # item_id -> (job, outcome) for attempts that missed their deadline but still run
        self._abandoned: Dict[str, Tuple[DistributionJob, CallOutcome]] = {}
        self._lock = threading.RLock()
        self._closed = False
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="ledgerfold-delivery"
        )

    # ------------------------------------------------------------------
    # jobs
    # ------------------------------------------------------------------

    def enqueue(self, item_id: str, recipient: str) -> DistributionJob:
        """Queue delivery of an anchored item. Idempotent per (item, recipient)."""
        state = self.state_machine.state_of(item_id)
        if state != AssetState.ANCHORED:
            raise DeliveryNotEligible(item_id, state.value)

        key = (item_id, recipient)
        with self._lock:
            existing = self._jobs.get(key) or self._archive.get(key)
            if existing is not None:
                return replace(existing)
            now = now_iso8601()
            job = DistributionJob(
                item_id=item_id,
                recipient=recipient,
                created_at=now,
                updated_at=now,
            )
            self._jobs[key] = job
            self._persist()

        _log.info("Delivery job queued", operation="enqueue", item_id=item_id, recipient=recipient)
        return replace(job)

    def job(self, item_id: str, recipient: str) -> Optional[DistributionJob]:
        with self._lock:
            found = self._jobs.get((item_id, recipient)) or self._archive.get((item_id, recipient))
            return replace(found) if found is not None else None

    def jobs(self) -> List[DistributionJob]:
        """Active (non-archived) jobs."""
        with self._lock:
            return [replace(j) for j in self._jobs.values()]

    def archived(self) -> List[DistributionJob]:
        with self._lock:
            return [replace(j) for j in self._archive.values()]

    def dead_letters(self) -> List[DistributionJob]:
        with self._lock:
            return [replace(j) for j in self._dead_letters]

    def in_flight_items(self) -> List[str]:
        with self._lock:
            return sorted(self._in_flight)

    def next_wakeup(self) -> Optional[float]:
        """Earliest time a schedulable job becomes eligible, if any."""
        with self._lock:
            times = [j.next_eligible_time for j in self._jobs.values() if j.status.is_schedulable()]
        return min(times) if times else None

    def load_jobs(self, jobs: List[DistributionJob]) -> None:
        """Install persisted jobs. Jobs caught in flight are queued again."""
        with self._lock:
            for job in jobs:
                if job.status == JobStatus.IN_FLIGHT:
                    job.status = JobStatus.QUEUED
                if job.status.is_terminal():
                    self._archive[job.key] = job
                    if job.status == JobStatus.DEAD_LETTERED:
                        self._dead_letters.append(job)
                else:
                    self._jobs[job.key] = job

    # ------------------------------------------------------------------
    # scheduling
    # ------------------------------------------------------------------

    def reroute_time(self, now: float) -> float:
        """Start of the next batched low-cost delivery window after ``now``."""
        window = self.reroute_window_seconds
        return (math.floor(now / window) + 1) * window

    def retry_delay(self, attempt: int) -> float:
        return backoff_delay(
            attempt,
            self.base_delay_seconds,
            self.max_delay_seconds,
            BackoffStrategy.EXPONENTIAL_JITTER,
            self.jitter_factor,
            self._rng,
        )

    def _reap_abandoned(self) -> List[DistributionJob]:
        """Release items whose timed-out attempt has finished; settle late successes."""
        settled: List[DistributionJob] = []
        for item_id, (job, outcome) in list(self._abandoned.items()):
            if not outcome.done.is_set():
                continue
            del self._abandoned[item_id]
            self._in_flight.discard(item_id)
            if outcome.error is not None:
                continue
            if job.status.is_schedulable():
                self._settle_success(job, outcome.value)
                settled.append(replace(job))
            else:
                _log.warning(
                    "Timed-out delivery completed after the job was settled",
                    operation="deliver",
                    item_id=job.item_id,
                    recipient=job.recipient,
                    status=job.status.value,
                )
        return settled

    def _select(self, now: float) -> List[DistributionJob]:
        selected: List[DistributionJob] = []
        candidates = sorted(self._jobs.values(), key=lambda j: j.next_eligible_time)
        for job in candidates:
            if not job.status.is_schedulable() or job.next_eligible_time > now:
                continue
            if job.item_id in self._in_flight:
                continue
            job.status = JobStatus.IN_FLIGHT
            job.attempt_count += 1
            job.updated_at = now_iso8601()
            self._in_flight.add(job.item_id)
            selected.append(job)
        return selected

    def run_pending(self, now: Optional[float] = None) -> List[DistributionJob]:
        """Dispatch every eligible job and settle the outcomes.

        Returns snapshots of the jobs that were attempted, in their settled
        state, together with jobs whose earlier timed-out attempt turned out
        to succeed. An item stays in flight until a timed-out attempt for it
        has actually returned.
        """
        now = self._clock() if now is None else now
        with self._lock:
            if self._closed:
                return []
            late = self._reap_abandoned()
            dispatched = self._select(now)
            futures = {
                self._executor.submit(self._deliver, job.item_id, job.recipient): job
                for job in dispatched
            }
            if dispatched or late:
                self._persist()

        if futures:
            _log.debug("Delivery attempts dispatched", operation="run_pending", count=len(futures))
        concurrent.futures.wait(futures)

        settled: List[DistributionJob] = list(late)
        for future, job in futures.items():
            with self._lock:
                if future.cancelled():
                    self._return_cancelled(job)
                else:
                    exc = future.exception()
                    if exc is None:
                        self._settle_success(job, future.result())
                    else:
                        self._settle_failure(job, exc, now)
                        self._track_abandoned(job, exc)
                if job.item_id not in self._abandoned:
                    self._in_flight.discard(job.item_id)
                self._persist()
                settled.append(replace(job))
        return settled

    def _track_abandoned(self, job: DistributionJob, exc: BaseException) -> None:
        if isinstance(exc, DeadlineExceeded) and exc.outcome is not None:
            self._abandoned[job.item_id] = (job, exc.outcome)

    def _deliver(self, item_id: str, recipient: str) -> DeliveryReceipt:
        return self._attempt_timeout.execute(lambda: self.transport.deliver(item_id, recipient))

    # ------------------------------------------------------------------
    # outcomes (called with self._lock held)
    # ------------------------------------------------------------------

    def _return_cancelled(self, job: DistributionJob) -> None:
        job.status = JobStatus.QUEUED
        job.attempt_count -= 1
        job.updated_at = now_iso8601()
        _log.info(
            "Delivery attempt cancelled",
            operation="cancel",
            item_id=job.item_id,
            recipient=job.recipient,
        )

    def _settle_success(self, job: DistributionJob, receipt: DeliveryReceipt) -> None:
        proof = sign_delivery(self._key, receipt, job.attempt_count)
        self.provenance.append(job.item_id, EventKind.DELIVERED, proof.to_dict())
        job.status = JobStatus.DELIVERED
        job.last_error = ""
        job.updated_at = now_iso8601()
        self._jobs.pop(job.key, None)
        self._archive[job.key] = job
        _log.info(
            "Item delivered",
            operation="deliver",
            item_id=job.item_id,
            recipient=job.recipient,
            attempts=job.attempt_count,
        )

    def _settle_failure(self, job: DistributionJob, exc: BaseException, now: float) -> None:
        job.last_error = f"{type(exc).__name__}: {exc}"
        job.updated_at = now_iso8601()

        if job.attempt_count >= self.max_attempts:
            self._dead_letter(job)
            return

        if isinstance(exc, RecipientInactive):
            job.status = JobStatus.REROUTED
            job.next_eligible_time = self.reroute_time(now)
            _log.info(
                "Recipient inactive; job rerouted",
                operation="reroute",
                item_id=job.item_id,
                recipient=job.recipient,
                attempt=job.attempt_count,
                next_eligible_time=job.next_eligible_time,
            )
            return

        delay = self.retry_delay(job.attempt_count)
        job.status = JobStatus.QUEUED
        job.next_eligible_time = now + delay
        _log.warning(
            "Delivery attempt failed; backing off",
            operation="deliver",
            item_id=job.item_id,
            recipient=job.recipient,
            attempt=job.attempt_count,
            delay_seconds=round(delay, 3),
            error=job.last_error,
        )

    def _dead_letter(self, job: DistributionJob) -> None:
        job.status = JobStatus.DEAD_LETTERED
        self.provenance.append(
            job.item_id,
            EventKind.DEAD_LETTERED,
            {
                "recipient": job.recipient,
                "attempt_count": job.attempt_count,
                "last_error": job.last_error,
            },
        )
        self._jobs.pop(job.key, None)
        self._archive[job.key] = job
        self._dead_letters.append(job)
        _log.error(
            "Delivery job dead-lettered",
            error_code="DELIVERY_DEAD_LETTERED",
            item_id=job.item_id,
            recipient=job.recipient,
            attempts=job.attempt_count,
            last_error=job.last_error,
        )
        if self._on_dead_letter is not None:
            self._on_dead_letter(replace(job))

    def _persist(self) -> None:
        if self._store is not None:
            self._store.save_jobs(
                [replace(j) for j in list(self._jobs.values()) + list(self._archive.values())]
            )

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work and cancel attempts that have not started."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=True)
        _log.info("Distribution scheduler stopped", operation="shutdown")

    def __enter__(self) -> "DistributionScheduler":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()
