"""
Persistence and schema tests: JSONL store layout, schema validation on load
and store selection.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import json

import pytest


@pytest.fixture
def sample(tree_factory, backend, producer_key):
    """A leaf, an aggregate, a provenance chain and a job for one item."""
    from ledgerfold.distribution import DistributionJob, JobStatus
    from ledgerfold.proofs import prove_item
    from ledgerfold.provenance import EventKind, ProvenanceLog

    tree = tree_factory(2)
    proofs = [prove_item(producer_key, p, tree.leaf_hash_at(p)) for p in range(2)]
    aggregate = backend.aggregate(proofs, tree.root(), tree.size)
    leaf = tree.leaf(0)
    log = ProvenanceLog()
    log.append(leaf.item_id, EventKind.REGISTERED, {"position": 0, "owner": "alice"})
    log.append(leaf.item_id, EventKind.COMMITTED, {"aggregate_digest": aggregate.digest})
    job = DistributionJob(leaf.item_id, "bob", attempt_count=1, status=JobStatus.REROUTED, next_eligible_time=600.0)
    return leaf, aggregate, log.entries(leaf.item_id), job


def _fill(store, sample):
    leaf, aggregate, entries, job = sample
    store.append_leaf(leaf)
    store.append_aggregate(aggregate)
    for entry in entries:
        store.append_provenance(entry)
    store.save_jobs([job])


class TestSchemas:

    def test_documents_validate(self, sample):
        from ledgerfold.schema import validate_document

        leaf, aggregate, entries, job = sample
        assert validate_document(leaf.to_dict(), "leaf") == []
        assert validate_document(aggregate.to_dict(), "aggregate-proof") == []
        assert validate_document(entries[0].to_dict(), "provenance-entry") == []
        assert validate_document(job.to_dict(), "distribution-job") == []

    def test_errors_carry_json_path(self, sample):
        from ledgerfold.schema import validate_document

        _, aggregate, _, _ = sample
        doc = aggregate.to_dict()
        doc["root_at_aggregation"] = "XYZ"
        errors = validate_document(doc, "aggregate-proof")
        assert len(errors) == 1
        assert errors[0].startswith("$.root_at_aggregation")

    def test_unknown_fields_rejected(self, sample):
        from ledgerfold.schema import validate_document

        leaf, _, _, _ = sample
        doc = dict(leaf.to_dict(), extra=1)
        assert validate_document(doc, "leaf") != []

    def test_public_inputs_need_leaves(self):
        from ledgerfold.schema import validate_document

        doc = {"root": "a" * 64, "start": 0, "leaf_hashes": []}
        assert validate_document(doc, "public-inputs") != []

    def test_require_valid_raises(self):
        from ledgerfold.errors import SchemaError
        from ledgerfold.schema import require_valid

        with pytest.raises(SchemaError) as exc:
            require_valid({"item_id": "nope"}, "leaf")
        assert exc.value.schema_name == "leaf"
        assert exc.value.errors

    def test_unknown_schema(self):
        from ledgerfold.schema import schema_validator

        with pytest.raises(KeyError):
            schema_validator("nonexistent")

    def test_every_packaged_schema_loads(self):
        from ledgerfold.schema import SCHEMA_NAMES, schema_validator

        for name in SCHEMA_NAMES:
            schema_validator(name).check_schema(schema_validator(name).schema)


class TestMemoryStore:

    def test_round_trip(self, sample):
        from ledgerfold.storage import MemoryStore

        store = MemoryStore()
        _fill(store, sample)
        leaf, aggregate, entries, job = sample
        assert store.load_leaves() == [leaf]
        assert store.load_aggregates() == [aggregate]
        assert store.load_provenance() == entries
        assert store.load_jobs() == [job]

    def test_jobs_are_copied(self, sample):
        from ledgerfold.distribution import JobStatus
        from ledgerfold.storage import MemoryStore

        store = MemoryStore()
        _, _, _, job = sample
        store.save_jobs([job])
        job.status = JobStatus.DELIVERED
        assert store.load_jobs()[0].status == JobStatus.REROUTED


class TestFileStore:

    def test_layout(self, tmp_path, sample):
        from ledgerfold.storage import FileStore

        store = FileStore(tmp_path / "epoch")
        _fill(store, sample)
        leaf, _, entries, _ = sample

        root = tmp_path / "epoch"
        assert len((root / "leaves.jsonl").read_text(encoding="utf-8").splitlines()) == 1
        assert len((root / "aggregates.jsonl").read_text(encoding="utf-8").splitlines()) == 1
        lines = (root / "provenance" / f"{leaf.item_id}.jsonl").read_text(encoding="utf-8").splitlines()
        assert [json.loads(line)["sequence_no"] for line in lines] == [0, 1]
        assert json.loads((root / "jobs.json").read_text(encoding="utf-8"))["jobs"][0]["status"] == "rerouted"
        assert not (root / "jobs.json.tmp").exists()

    def test_reopen_loads_everything(self, tmp_path, sample):
        from ledgerfold.storage import FileStore

        _fill(FileStore(tmp_path), sample)
        leaf, aggregate, entries, job = sample

        reopened = FileStore(tmp_path)
        assert reopened.load_leaves() == [leaf]
        assert reopened.load_aggregates() == [aggregate]
        assert reopened.load_provenance() == entries
        assert reopened.load_jobs() == [job]

    def test_empty_directory(self, tmp_path):
        from ledgerfold.storage import FileStore

        store = FileStore(tmp_path)
        assert store.load_leaves() == []
        assert store.load_provenance() == []
        assert store.load_jobs() == []

    def test_malformed_line_fails_load(self, tmp_path, sample):
        from ledgerfold.storage import FileStore

        store = FileStore(tmp_path)
        _fill(store, sample)
        with open(store.leaves_path, "a", encoding="utf-8") as f:
            f.write("{not json\n")
        with pytest.raises(ValueError, match="invalid JSON"):
            store.load_leaves()

    def test_schema_violation_fails_load(self, tmp_path, sample):
        from ledgerfold.errors import SchemaError
        from ledgerfold.storage import FileStore, append_jsonl

        store = FileStore(tmp_path)
        _fill(store, sample)
        append_jsonl(store.aggregates_path, {"kind": "aggregate", "start": -1})
        with pytest.raises(SchemaError):
            store.load_aggregates()

    def test_misfiled_entry_rejected(self, tmp_path, sample):
        from ledgerfold.storage import FileStore, append_jsonl

        store = FileStore(tmp_path)
        _, _, entries, _ = sample
        append_jsonl(store.provenance_path("e" * 64), entries[0].to_dict())
        with pytest.raises(ValueError, match="wrong file"):
            store.load_provenance()

    def test_item_id_must_be_digest(self, tmp_path):
        from ledgerfold.storage import FileStore

        with pytest.raises(ValueError):
            FileStore(tmp_path).provenance_path("../escape")


class TestOpenStore:

    def test_backends(self, tmp_path):
        from ledgerfold.storage import FileStore, MemoryStore, open_store

        assert isinstance(open_store("memory"), MemoryStore)
        assert isinstance(open_store("file", tmp_path / "data"), FileStore)
        with pytest.raises(ValueError):
            open_store("file")
        with pytest.raises(ValueError):
            open_store("s3", tmp_path)
