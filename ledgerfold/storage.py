"""
Ledgerfold Persisted State

Layout of the file backend (one directory per epoch):

    <root>/
        leaves.jsonl               append-only, one leaf per tree position
        aggregates.jsonl           append-only, keyed by [start, end)
        provenance/<item_id>.jsonl append-only, one file per item, by sequence
        jobs.json                  distribution job table, rewritten atomically

Every record is checked against its JSON Schema when loaded; a malformed
line fails the load instead of being skipped.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, List, Protocol, Union

from ledgerfold.core import is_valid_sha256
from ledgerfold.distribution import DistributionJob
from ledgerfold.items import Leaf
from ledgerfold.observability import Layer, get_logger
from ledgerfold.proofs import AggregateProof
from ledgerfold.provenance import ProvenanceEntry
from ledgerfold.schema import require_valid

_log = get_logger("store", Layer.STORAGE)

LEAVES_FILE = "leaves.jsonl"
AGGREGATES_FILE = "aggregates.jsonl"
PROVENANCE_DIR = "provenance"
JOBS_FILE = "jobs.json"


class LedgerStore(Protocol):
    """Persistence consumed by the epoch engine."""

    def append_leaf(self, leaf: Leaf) -> None: ...

    def append_aggregate(self, aggregate: AggregateProof) -> None: ...

    def append_provenance(self, entry: ProvenanceEntry) -> None: ...

    def save_jobs(self, jobs: List[DistributionJob]) -> None: ...

    def load_leaves(self) -> List[Leaf]: ...

    def load_aggregates(self) -> List[AggregateProof]: ...

    def load_provenance(self) -> List[ProvenanceEntry]: ...

    def load_jobs(self) -> List[DistributionJob]: ...


class MemoryStore:
    """In-process store; state lives as long as the object."""

    def __init__(self):
        self._leaves: List[Leaf] = []
        self._aggregates: List[AggregateProof] = []
        self._provenance: List[ProvenanceEntry] = []
        self._jobs: List[DistributionJob] = []
        self._lock = threading.Lock()

    def append_leaf(self, leaf: Leaf) -> None:
        with self._lock:
            self._leaves.append(leaf)

    def append_aggregate(self, aggregate: AggregateProof) -> None:
        with self._lock:
            self._aggregates.append(aggregate)

    def append_provenance(self, entry: ProvenanceEntry) -> None:
        with self._lock:
            self._provenance.append(entry)

    def save_jobs(self, jobs: List[DistributionJob]) -> None:
        with self._lock:
            self._jobs = [DistributionJob.from_dict(j.to_dict()) for j in jobs]

    def load_leaves(self) -> List[Leaf]:
        with self._lock:
            return list(self._leaves)

    def load_aggregates(self) -> List[AggregateProof]:
        with self._lock:
            return list(self._aggregates)

    def load_provenance(self) -> List[ProvenanceEntry]:
        with self._lock:
            return list(self._provenance)

    def load_jobs(self) -> List[DistributionJob]:
        with self._lock:
            return [DistributionJob.from_dict(j.to_dict()) for j in self._jobs]


def append_jsonl(path: Path, obj: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(obj, separators=(",", ":"), sort_keys=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(line + "\n")
        f.flush()
        os.fsync(f.fileno())


def iter_jsonl(path: Path) -> Iterator[Dict[str, Any]]:
    if not path.exists():
        return
    with open(path, "r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as e:
                raise ValueError(f"{path}:{lineno}: invalid JSON: {e}") from e


def atomic_write_json(path: Path, obj: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, sort_keys=True)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


class FileStore:
    """Append-only JSONL store rooted at one directory."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / PROVENANCE_DIR).mkdir(exist_ok=True)
        self._lock = threading.Lock()

    @property
    def leaves_path(self) -> Path:
        return self.root / LEAVES_FILE

    @property
    def aggregates_path(self) -> Path:
        return self.root / AGGREGATES_FILE

    @property
    def jobs_path(self) -> Path:
        return self.root / JOBS_FILE

    def provenance_path(self, item_id: str) -> Path:
        if not is_valid_sha256(item_id):
            raise ValueError(f"item_id must be a sha256 hex digest: {item_id!r}")
        return self.root / PROVENANCE_DIR / f"{item_id}.jsonl"

    # writes

    def append_leaf(self, leaf: Leaf) -> None:
        with self._lock:
            append_jsonl(self.leaves_path, leaf.to_dict())

    def append_aggregate(self, aggregate: AggregateProof) -> None:
        with self._lock:
            append_jsonl(self.aggregates_path, aggregate.to_dict())

    def append_provenance(self, entry: ProvenanceEntry) -> None:
        path = self.provenance_path(entry.item_id)
        with self._lock:
            append_jsonl(path, entry.to_dict())

    def save_jobs(self, jobs: List[DistributionJob]) -> None:
        with self._lock:
            atomic_write_json(self.jobs_path, {"jobs": [j.to_dict() for j in jobs]})

    # reads

    def load_leaves(self) -> List[Leaf]:
        leaves = []
        for record in iter_jsonl(self.leaves_path):
            require_valid(record, "leaf")
            leaves.append(Leaf.from_dict(record))
        return leaves

    def load_aggregates(self) -> List[AggregateProof]:
        aggregates = []
        for record in iter_jsonl(self.aggregates_path):
            require_valid(record, "aggregate-proof")
            aggregates.append(AggregateProof.from_dict(record))
        return aggregates

    def load_provenance(self) -> List[ProvenanceEntry]:
        entries = []
        for path in sorted((self.root / PROVENANCE_DIR).glob("*.jsonl")):
            for record in iter_jsonl(path):
                require_valid(record, "provenance-entry")
                if record["item_id"] != path.stem:
                    raise ValueError(f"{path}: entry for {record['item_id']} in the wrong file")
                entries.append(ProvenanceEntry.from_dict(record))
        return entries

    def load_jobs(self) -> List[DistributionJob]:
        if not self.jobs_path.exists():
            return []
        data = json.loads(self.jobs_path.read_text(encoding="utf-8"))
        jobs = []
        for record in data.get("jobs", []):
            require_valid(record, "distribution-job")
            jobs.append(DistributionJob.from_dict(record))
        return jobs


def open_store(backend: str, path: Union[str, Path] = "") -> LedgerStore:
    """Build a store from the ``storage`` config section values."""
    if backend == "memory":
        return MemoryStore()
    if backend == "file":
        if not path:
            raise ValueError("file storage backend requires a path")
        _log.info("Using file store", operation="open", path=str(path))
        return FileStore(path)
    raise ValueError(f"Unknown storage backend: {backend}")
