"""
Ledgerfold Provenance Log

Append-only, hash-chained history per item. Entry i stores the hash of
entry i-1 (entry 0 chains to GENESIS_HASH), and every entry hash covers all
of the entry's fields, so a single altered byte anywhere in the history is
detected by ``verify_chain``.

    entry_hash = SHA256(canonical_json({item_id, sequence_no, event_kind,
                                        timestamp, prev_entry_hash, payload}))

Writers submit entries through ``append``; nothing edits an entry once
written.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Protocol, Sequence

from ledgerfold.core import GENESIS_HASH, canonical_digest, now_iso8601
from ledgerfold.errors import ChainTampered
from ledgerfold.observability import Layer, get_logger

_log = get_logger("provenance_log", Layer.PROVENANCE)


class EventKind(Enum):
    """Kinds of provenance events."""
    REGISTERED = "registered"
    COMMITTED = "committed"
    ANCHOR_SUBMITTED = "anchor_submitted"
    ANCHORED = "anchored"
    FAILED = "failed"
    RETRIED = "retried"
    OWNERSHIP_CHANGED = "ownership_changed"
    DELIVERED = "delivered"
    DEAD_LETTERED = "dead_lettered"


@dataclass(frozen=True)
class ProvenanceEntry:
    item_id: str
    sequence_no: int
    event_kind: str
    timestamp: str
    prev_entry_hash: str
    payload: Dict[str, Any] = field(default_factory=dict)
    entry_hash: str = ""

    def hash_content(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "sequence_no": self.sequence_no,
            "event_kind": self.event_kind,
            "timestamp": self.timestamp,
            "prev_entry_hash": self.prev_entry_hash,
            "payload": self.payload,
        }

    def compute_hash(self) -> str:
        return canonical_digest(self.hash_content())

    def to_dict(self) -> Dict[str, Any]:
        d = self.hash_content()
        d["entry_hash"] = self.entry_hash
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProvenanceEntry":
        return cls(
            item_id=str(data["item_id"]),
            sequence_no=int(data["sequence_no"]),
            event_kind=str(data["event_kind"]),
            timestamp=str(data["timestamp"]),
            prev_entry_hash=str(data["prev_entry_hash"]),
            payload=dict(data.get("payload") or {}),
            entry_hash=str(data["entry_hash"]),
        )


def _chain_break(entries: Sequence[ProvenanceEntry]) -> Optional[tuple]:
    """Return (sequence_no, reason) of the first broken link, or None."""
    prev = GENESIS_HASH
    item_id = entries[0].item_id if entries else ""
    for i, entry in enumerate(entries):
        if entry.item_id != item_id:
            return (i, "entry belongs to a different item")
        if entry.sequence_no != i:
            return (i, f"sequence gap (found {entry.sequence_no})")
        if entry.prev_entry_hash != prev:
            return (i, "prev_entry_hash does not match predecessor")
        if entry.compute_hash() != entry.entry_hash:
            return (i, "entry hash does not match content")
        prev = entry.entry_hash
    return None


def verify_chain(entries: Iterable[ProvenanceEntry]) -> bool:
    """True iff ``entries`` form one intact chain starting at genesis."""
    return _chain_break(list(entries)) is None


def require_chain(entries: Iterable[ProvenanceEntry]) -> None:
    """Raise ChainTampered at the first broken link."""
    items = list(entries)
    broken = _chain_break(items)
    if broken is not None:
        seq, reason = broken
        raise ChainTampered(items[0].item_id, seq, reason)


class History:
    """
    Lazy, restartable view of one item's history.

    Bounded by the number of entries at the moment ``history_of`` was
    called; entries appended afterwards are not visible through this view.
    Iterating again starts from sequence 0.
    """

    def __init__(self, chain: List[ProvenanceEntry], bound: int, item_id: str):
        self._chain = chain
        self._bound = bound
        self.item_id = item_id

    def __iter__(self) -> Iterator[ProvenanceEntry]:
        for i in range(self._bound):
            yield self._chain[i]

    def __len__(self) -> int:
        return self._bound

    def __getitem__(self, index: int) -> ProvenanceEntry:
        if index < 0:
            index += self._bound
        if index < 0 or index >= self._bound:
            raise IndexError("history index out of range")
        return self._chain[index]

    def verify(self) -> bool:
        return verify_chain(self)


class ProvenanceSink(Protocol):
    def append_provenance(self, entry: ProvenanceEntry) -> None: ...


class ProvenanceLog:
    """Per-item hash-chained event log."""

    def __init__(
        self,
        sink: Optional[ProvenanceSink] = None,
        clock: Callable[[], str] = now_iso8601,
    ):
        self._chains: Dict[str, List[ProvenanceEntry]] = {}
        self._lock = threading.RLock()
        self._sink = sink
        self._clock = clock

    def append(
        self,
        item_id: str,
        event_kind: EventKind,
        payload: Optional[Dict[str, Any]] = None,
    ) -> ProvenanceEntry:
        with self._lock:
            chain = self._chains.setdefault(item_id, [])
            prev = chain[-1].entry_hash if chain else GENESIS_HASH
            unsealed = ProvenanceEntry(
                item_id=item_id,
                sequence_no=len(chain),
                event_kind=event_kind.value,
                timestamp=self._clock(),
                prev_entry_hash=prev,
                payload=dict(payload or {}),
            )
            entry = replace(unsealed, entry_hash=unsealed.compute_hash())
            if self._sink is not None:
                self._sink.append_provenance(entry)
            chain.append(entry)

        _log.debug(
            "Provenance entry appended",
            operation="append",
            item_id=item_id,
            sequence_no=entry.sequence_no,
            event_kind=entry.event_kind,
        )
        return entry

    def history_of(self, item_id: str) -> History:
        with self._lock:
            chain = self._chains.get(item_id, [])
            return History(chain, len(chain), item_id)

    def entries(self, item_id: str) -> List[ProvenanceEntry]:
        with self._lock:
            return list(self._chains.get(item_id, []))

    def head(self, item_id: str) -> Optional[ProvenanceEntry]:
        with self._lock:
            chain = self._chains.get(item_id)
            return chain[-1] if chain else None

    def count(self, item_id: str, event_kind: Optional[EventKind] = None) -> int:
        with self._lock:
            chain = self._chains.get(item_id, [])
            if event_kind is None:
                return len(chain)
            return sum(1 for e in chain if e.event_kind == event_kind.value)

    def item_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._chains)

    def verify_item(self, item_id: str) -> bool:
        return verify_chain(self.entries(item_id))

    def load(self, entries: Iterable[ProvenanceEntry]) -> None:
        """Install previously persisted entries after verifying each chain."""
        grouped: Dict[str, List[ProvenanceEntry]] = {}
        for entry in entries:
            grouped.setdefault(entry.item_id, []).append(entry)
        for item_id, chain in grouped.items():
            chain.sort(key=lambda e: e.sequence_no)
            require_chain(chain)
        with self._lock:
            for item_id, chain in grouped.items():
                if item_id in self._chains:
                    raise ValueError(f"Provenance for {item_id} is already loaded")
                self._chains[item_id] = chain
        _log.info("Provenance loaded", operation="load", items=len(grouped))
