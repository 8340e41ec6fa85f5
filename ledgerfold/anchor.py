"""
Ledgerfold Anchor Gateway

The only component that talks to the external ledger. An aggregate proof's
root is submitted; the gateway returns a receipt and later reports whether
the submission is confirmed.

    ┌──────────────────┐   submit(aggregate)    ┌──────────────────┐
    │ AssetStateMachine│ ─────────────────────► │  AnchorGateway   │
    │  (retry/backoff) │ ◄───────────────────── │ (external ledger)│
    └──────────────────┘   AnchorReceipt        └──────────────────┘
                           confirm(receipt) -> bool

Submission must be idempotent per aggregate digest: resubmitting the same
aggregate yields the same receipt rather than a second anchor.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple, Type

from ledgerfold.core import now_iso8601, sha256_bytes
from ledgerfold.proofs import AggregateProof


class AnchorStatus(Enum):
    """Status of an anchor submission."""
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class AnchorReceipt:
    """Gateway acknowledgement of an anchored aggregate root."""
    receipt_id: str
    aggregate_digest: str
    root: str
    start: int
    end: int
    submitted_at: str
    ledger_reference: str = ""

    @property
    def covered_range(self) -> Tuple[int, int]:
        return (self.start, self.end)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "receipt_id": self.receipt_id,
            "aggregate_digest": self.aggregate_digest,
            "root": self.root,
            "start": self.start,
            "end": self.end,
            "submitted_at": self.submitted_at,
            "ledger_reference": self.ledger_reference,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnchorReceipt":
        return cls(
            receipt_id=str(data["receipt_id"]),
            aggregate_digest=str(data["aggregate_digest"]),
            root=str(data["root"]),
            start=int(data["start"]),
            end=int(data["end"]),
            submitted_at=str(data["submitted_at"]),
            ledger_reference=str(data.get("ledger_reference", "")),
        )


class AnchorGateway(Protocol):
    """Protocol for external ledger anchoring."""

    def submit(self, aggregate: AggregateProof) -> AnchorReceipt:
        """Persist the aggregate root externally. Idempotent per aggregate digest."""
        ...

    def confirm(self, receipt: AnchorReceipt) -> bool:
        """True once the anchored root is final on the external ledger."""
        ...


class InMemoryAnchorGateway:
    """
    In-process gateway for tests and local runs.

    Failures can be scripted with ``fail_next``; confirmation is immediate
    unless ``auto_confirm`` is disabled, in which case ``mark_confirmed``
    finalizes a receipt.
    """

    def __init__(self, auto_confirm: bool = True):
        self.auto_confirm = auto_confirm
        self._receipts: Dict[str, AnchorReceipt] = {}
        self._confirmed: set = set()
        self._failures: List[Exception] = []
        self._lock = threading.Lock()
        self.submit_calls = 0
        self._height = 0

    def fail_next(self, count: int, exc_type: Type[Exception] = ConnectionError) -> None:
        """Make the next ``count`` submit calls raise ``exc_type``."""
        with self._lock:
            self._failures.extend(exc_type("anchor gateway unavailable") for _ in range(count))

    def submit(self, aggregate: AggregateProof) -> AnchorReceipt:
        with self._lock:
            self.submit_calls += 1
            if self._failures:
                raise self._failures.pop(0)

            digest = aggregate.digest
            existing = self._receipts.get(digest)
            if existing is not None:
                return existing

            self._height += 1
            receipt = AnchorReceipt(
                receipt_id=f"anchor-{digest[:16]}",
                aggregate_digest=digest,
                root=aggregate.root_at_aggregation,
                start=aggregate.start,
                end=aggregate.end,
                submitted_at=now_iso8601(),
                ledger_reference=sha256_bytes(f"{self._height}:{digest}".encode("utf-8")),
            )
            self._receipts[digest] = receipt
            if self.auto_confirm:
                self._confirmed.add(receipt.receipt_id)
            return receipt

    def confirm(self, receipt: AnchorReceipt) -> bool:
        with self._lock:
            return receipt.receipt_id in self._confirmed

    def mark_confirmed(self, receipt_id: str) -> None:
        with self._lock:
            self._confirmed.add(receipt_id)

    def receipt_for(self, aggregate_digest: str) -> Optional[AnchorReceipt]:
        with self._lock:
            return self._receipts.get(aggregate_digest)

    def receipts(self) -> List[AnchorReceipt]:
        with self._lock:
            return list(self._receipts.values())
