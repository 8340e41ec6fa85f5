"""
Ledgerfold Asset State Machine

Per-item lifecycle:

    ┌─────────┐  commit   ┌───────────┐  confirm  ┌──────────┐
    │ PENDING │ ────────► │ COMMITTED │ ────────► │ ANCHORED │
    └─────────┘           └───────────┘           └──────────┘
         ▲  │                   │
   retry │  │ fail              │ fail
         │  ▼                   ▼
       ┌───────────────────────────┐
       │          FAILED           │
       └───────────────────────────┘

Every transition takes the item's lock, appends exactly one provenance entry
and only then changes the state, so history and state can never disagree.
Illegal transitions raise InvalidTransition and append nothing.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from ledgerfold.anchor import AnchorGateway, AnchorReceipt
from ledgerfold.core import now_iso8601
from ledgerfold.errors import (
    AnchorSubmitFailed,
    ChainTampered,
    InvalidTransition,
    ProofInvalid,
    UnknownItem,
)
from ledgerfold.observability import Layer, get_logger
from ledgerfold.proofs import AggregateProof
from ledgerfold.provenance import EventKind, ProvenanceEntry, ProvenanceLog
from ledgerfold.resilience import RetryExhaustedError, RetryPolicy, Timeout

_log = get_logger("asset_state_machine", Layer.STATE)


class AssetState(Enum):
    """Lifecycle states of a committed item."""
    PENDING = "pending"
    COMMITTED = "committed"
    ANCHORED = "anchored"
    FAILED = "failed"

    def is_final(self) -> bool:
        return self == AssetState.ANCHORED

    def can_fail(self) -> bool:
        return self in {AssetState.PENDING, AssetState.COMMITTED}


VALID_TRANSITIONS: Dict[AssetState, Set[AssetState]] = {
    AssetState.PENDING: {AssetState.COMMITTED, AssetState.FAILED},
    AssetState.COMMITTED: {AssetState.ANCHORED, AssetState.FAILED},
    AssetState.FAILED: {AssetState.PENDING},
    AssetState.ANCHORED: set(),
}

_TRANSITION_EVENTS: Dict[AssetState, EventKind] = {
    AssetState.COMMITTED: EventKind.COMMITTED,
    AssetState.ANCHORED: EventKind.ANCHORED,
    AssetState.FAILED: EventKind.FAILED,
    AssetState.PENDING: EventKind.RETRIED,
}

_DELIVERY_EVENTS = {EventKind.DELIVERED.value, EventKind.DEAD_LETTERED.value}


@dataclass
class ItemRecord:
    """Mutable lifecycle record owned by the state machine."""
    item_id: str
    position: int
    owner: str = ""
    state: AssetState = AssetState.PENDING
    aggregate_digest: str = ""
    anchor_receipt_id: str = ""
    failure_reason: str = ""
    failure_count: int = 0
    updated_at: str = field(default_factory=now_iso8601)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "position": self.position,
            "owner": self.owner,
            "state": self.state.value,
            "aggregate_digest": self.aggregate_digest,
            "anchor_receipt_id": self.anchor_receipt_id,
            "failure_reason": self.failure_reason,
            "failure_count": self.failure_count,
            "updated_at": self.updated_at,
        }

    def copy(self) -> "ItemRecord":
        return replace(self)


def default_anchor_retry() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=3,
        base_delay_seconds=0.5,
        max_delay_seconds=30.0,
        non_retryable_exceptions=(ProofInvalid, ChainTampered),
    )


class AssetStateMachine:
    """
    Owns AssetState for every item and linearizes its transitions.

    Anchor submission goes through a bounded RetryPolicy with a per-call
    Timeout; once retries are exhausted every covered item moves to FAILED.
    """

    def __init__(
        self,
        provenance: ProvenanceLog,
        anchor_retry: Optional[RetryPolicy] = None,
        anchor_timeout_seconds: float = 10.0,
    ):
        self.provenance = provenance
        self._anchor_retry = anchor_retry or default_anchor_retry()
        self._anchor_timeout = Timeout(seconds=anchor_timeout_seconds, name="anchor.submit")
        self._records: Dict[str, ItemRecord] = {}
        self._item_locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------
    # registration and lookup
    # ------------------------------------------------------------------

    def register(
        self,
        item_id: str,
        position: int,
        owner: str = "",
        payload: Optional[Dict[str, Any]] = None,
    ) -> ItemRecord:
        """Create the item in PENDING, recording a ``registered`` event."""
        with self._registry_lock:
            if item_id in self._records:
                raise ValueError(f"Item already registered: {item_id}")
            lock = threading.RLock()
            self._item_locks[item_id] = lock
            with lock:
                entry = self.provenance.append(
                    item_id,
                    EventKind.REGISTERED,
                    {"position": position, "owner": owner, **(payload or {})},
                )
                record = ItemRecord(
                    item_id=item_id,
                    position=position,
                    owner=owner,
                    updated_at=entry.timestamp,
                )
                self._records[item_id] = record

        _log.info("Item registered", operation="register", item_id=item_id, position=position)
        return record.copy()

    def has(self, item_id: str) -> bool:
        with self._registry_lock:
            return item_id in self._records

    def _lock_for(self, item_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._item_locks.get(item_id)
        if lock is None:
            raise UnknownItem(item_id)
        return lock

    def record(self, item_id: str) -> ItemRecord:
        with self._lock_for(item_id):
            return self._records[item_id].copy()

    def state_of(self, item_id: str) -> AssetState:
        with self._lock_for(item_id):
            return self._records[item_id].state

    def items_in(self, state: AssetState) -> List[str]:
        with self._registry_lock:
            records = list(self._records.values())
        return [r.item_id for r in records if r.state == state]

    def records(self) -> List[ItemRecord]:
        with self._registry_lock:
            return [r.copy() for r in self._records.values()]

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------

    def _transition(
        self,
        item_id: str,
        target: AssetState,
        payload: Dict[str, Any],
        **updates: Any,
    ) -> ProvenanceEntry:
        with self._lock_for(item_id):
            record = self._records[item_id]
            if target not in VALID_TRANSITIONS[record.state]:
                raise InvalidTransition(item_id, record.state.value, target.value)

            entry = self.provenance.append(
                item_id,
                _TRANSITION_EVENTS[target],
                {"from": record.state.value, "to": target.value, **payload},
            )
            previous = record.state
            record.state = target
            for key, value in updates.items():
                setattr(record, key, value)
            record.updated_at = entry.timestamp

        _log.info(
            "State transition",
            operation="transition",
            item_id=item_id,
            from_state=previous.value,
            to_state=target.value,
            sequence_no=entry.sequence_no,
        )
        return entry

    def commit(self, item_id: str, aggregate: AggregateProof) -> ProvenanceEntry:
        """PENDING -> COMMITTED on an aggregate that covers the item."""
        position = self.record(item_id).position
        if not aggregate.covers(position):
            raise ProofInvalid(position, f"aggregate [{aggregate.start}, {aggregate.end}) does not cover item")
        return self._transition(
            item_id,
            AssetState.COMMITTED,
            {
                "aggregate_digest": aggregate.digest,
                "range": [aggregate.start, aggregate.end],
                "root": aggregate.root_at_aggregation,
            },
            aggregate_digest=aggregate.digest,
        )

    def mark_anchored(self, item_id: str, receipt: AnchorReceipt) -> ProvenanceEntry:
        """COMMITTED -> ANCHORED once the external ledger confirms."""
        return self._transition(
            item_id,
            AssetState.ANCHORED,
            {
                "receipt_id": receipt.receipt_id,
                "root": receipt.root,
                "ledger_reference": receipt.ledger_reference,
            },
            anchor_receipt_id=receipt.receipt_id,
        )

    def fail(self, item_id: str, reason: str) -> ProvenanceEntry:
        with self._lock_for(item_id):
            count = self._records[item_id].failure_count + 1
            return self._transition(
                item_id,
                AssetState.FAILED,
                {"reason": reason},
                failure_reason=reason,
                failure_count=count,
            )

    def retry(self, item_id: str) -> ProvenanceEntry:
        """FAILED -> PENDING; the item becomes eligible for re-aggregation."""
        return self._transition(
            item_id,
            AssetState.PENDING,
            {},
            aggregate_digest="",
            anchor_receipt_id="",
        )

    def record_ownership(self, item_id: str, new_owner: str) -> ProvenanceEntry:
        """Metadata update; appends an event without changing lifecycle state."""
        with self._lock_for(item_id):
            record = self._records[item_id]
            entry = self.provenance.append(
                item_id,
                EventKind.OWNERSHIP_CHANGED,
                {"from": record.owner, "to": new_owner},
            )
            record.owner = new_owner
            record.updated_at = entry.timestamp
        _log.info("Ownership changed", operation="ownership", item_id=item_id, owner=new_owner)
        return entry

    # ------------------------------------------------------------------
    # anchoring
    # ------------------------------------------------------------------

    def submit_anchor(
        self,
        aggregate: AggregateProof,
        item_ids: Iterable[str],
        gateway: AnchorGateway,
    ) -> AnchorReceipt:
        """
        Submit an aggregate root with bounded retry and a per-call deadline.

        On success each item gets an ``anchor_submitted`` event. When retries
        are exhausted every covered item that can still fail moves to FAILED
        and AnchorSubmitFailed is raised.
        """
        ids = list(item_ids)

        def on_retry(attempt: int, exc: Exception, delay: float) -> None:
            _log.warning(
                "Anchor submission failed; backing off",
                operation="anchor_submit",
                aggregate=aggregate.digest,
                attempt=attempt,
                delay_seconds=round(delay, 3),
                error=str(exc),
            )

        try:
            receipt = self._anchor_retry.execute(
                lambda: self._anchor_timeout.execute(lambda: gateway.submit(aggregate)),
                on_retry=on_retry,
            )
        except RetryExhaustedError as e:
            reason = f"anchor submission failed: {e.last_exception}"
            for item_id in ids:
                with self._lock_for(item_id):
                    if self._records[item_id].state.can_fail():
                        self.fail(item_id, reason)
            _log.error(
                "Anchor submission exhausted retries",
                error_code="ANCHOR_SUBMIT_FAILED",
                aggregate=aggregate.digest,
                attempts=e.attempts,
                items=len(ids),
            )
            raise AnchorSubmitFailed(aggregate.digest, e.attempts, e.last_exception) from e

        for item_id in ids:
            with self._lock_for(item_id):
                record = self._records[item_id]
                entry = self.provenance.append(
                    item_id,
                    EventKind.ANCHOR_SUBMITTED,
                    {"receipt_id": receipt.receipt_id, "aggregate_digest": aggregate.digest},
                )
                record.anchor_receipt_id = receipt.receipt_id
                record.updated_at = entry.timestamp

        _log.info(
            "Aggregate submitted for anchoring",
            operation="anchor_submit",
            aggregate=aggregate.digest,
            receipt_id=receipt.receipt_id,
        )
        return receipt

    def confirm_anchor(
        self,
        receipt: AnchorReceipt,
        item_ids: Iterable[str],
        gateway: AnchorGateway,
    ) -> List[str]:
        """Move committed items to ANCHORED if the gateway confirms the receipt."""
        if not gateway.confirm(receipt):
            return []
        anchored: List[str] = []
        for item_id in item_ids:
            with self._lock_for(item_id):
                if self._records[item_id].state != AssetState.COMMITTED:
                    continue
                self.mark_anchored(item_id, receipt)
            anchored.append(item_id)
        return anchored

    # ------------------------------------------------------------------
    # recovery
    # ------------------------------------------------------------------

    def replay(self, item_ids: Iterable[str]) -> None:
        """Rebuild records from already-loaded provenance histories."""
        for item_id in item_ids:
            history = self.provenance.history_of(item_id)
            if len(history) == 0 or history[0].event_kind != EventKind.REGISTERED.value:
                raise ValueError(f"History of {item_id} does not start with a registration")
            first = history[0].payload
            record = ItemRecord(
                item_id=item_id,
                position=int(first["position"]),
                owner=str(first.get("owner", "")),
            )
            for entry in history:
                kind = entry.event_kind
                if kind in _DELIVERY_EVENTS:
                    # Written by the scheduler; the record is untouched.
                    continue
                if kind in (EventKind.COMMITTED.value, EventKind.ANCHORED.value,
                            EventKind.FAILED.value, EventKind.RETRIED.value):
                    record.state = AssetState(entry.payload["to"])
                if kind == EventKind.COMMITTED.value:
                    record.aggregate_digest = str(entry.payload.get("aggregate_digest", ""))
                elif kind in (EventKind.ANCHOR_SUBMITTED.value, EventKind.ANCHORED.value):
                    record.anchor_receipt_id = str(entry.payload.get("receipt_id", ""))
                elif kind == EventKind.FAILED.value:
                    record.failure_reason = str(entry.payload.get("reason", ""))
                    record.failure_count += 1
                elif kind == EventKind.RETRIED.value:
                    record.aggregate_digest = ""
                    record.anchor_receipt_id = ""
                elif kind == EventKind.OWNERSHIP_CHANGED.value:
                    record.owner = str(entry.payload.get("to", ""))
                record.updated_at = entry.timestamp
            with self._registry_lock:
                self._records[item_id] = record
                self._item_locks[item_id] = threading.RLock()
