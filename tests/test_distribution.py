"""
Distribution scheduler tests: backoff, dead-lettering, rerouting, the
one-in-flight-per-item rule, deadlines and shutdown.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import random
import threading

import pytest


class ScriptedTransport:
    """
    Transport whose outcomes are scripted per (item, recipient).

    Each scripted entry is an exception class to raise or None for success;
    once the script runs out every call succeeds. ``gates`` blocks a
    recipient's delivery until the matching event is set.
    """

    def __init__(self, script=None):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.calls = []
        self.gates = {}
        self.started = threading.Event()
        self._active = {}
        self.max_concurrent_per_item = 0
        self._lock = threading.Lock()

    def deliver(self, item_id, recipient):
        from ledgerfold.distribution import DeliveryReceipt

        with self._lock:
            self.calls.append((item_id, recipient))
            self._active[item_id] = self._active.get(item_id, 0) + 1
            self.max_concurrent_per_item = max(self.max_concurrent_per_item, self._active[item_id])
            outcomes = self.script.get((item_id, recipient), [])
            outcome = outcomes.pop(0) if outcomes else None
        try:
            self.started.set()
            gate = self.gates.get(recipient)
            if gate is not None:
                gate.wait(5.0)
            if outcome is not None:
                raise outcome(item_id, recipient, "scripted failure")
            return DeliveryReceipt(
                item_id=item_id,
                recipient=recipient,
                transport_reference=f"tx-{len(self.calls)}",
                delivered_at="2026-01-01T00:00:00+00:00",
            )
        finally:
            with self._lock:
                self._active[item_id] -= 1


@pytest.fixture
def anchored_items(tree_factory, backend, producer_key, no_sleep_retry):
    """State machine holding ``n`` anchored items."""
    from ledgerfold.anchor import InMemoryAnchorGateway
    from ledgerfold.proofs import prove_item
    from ledgerfold.provenance import ProvenanceLog
    from ledgerfold.state import AssetStateMachine

    def build(n=1, anchored=None):
        tree = tree_factory(n)
        proofs = [prove_item(producer_key, p, tree.leaf_hash_at(p)) for p in range(n)]
        aggregate = backend.aggregate(proofs, tree.root(), tree.size)
        ids = [tree.leaf(p).item_id for p in range(n)]
        machine = AssetStateMachine(ProvenanceLog(), anchor_retry=no_sleep_retry())
        for p, item_id in enumerate(ids):
            machine.register(item_id, p, owner="alice")
        to_anchor = ids if anchored is None else ids[:anchored]
        for item_id in to_anchor:
            machine.commit(item_id, aggregate)
        if to_anchor:
            gateway = InMemoryAnchorGateway()
            receipt = machine.submit_anchor(aggregate, to_anchor, gateway)
            machine.confirm_anchor(receipt, to_anchor, gateway)
        return machine, ids

    return build


@pytest.fixture
def scheduler_factory(signing_key):
    from ledgerfold.distribution import DistributionScheduler

    created = []

    def build(machine, transport, **kwargs):
        kwargs.setdefault("rng", random.Random(11))
        scheduler = DistributionScheduler(
            transport,
            machine.provenance,
            machine,
            signing_key,
            **kwargs,
        )
        created.append(scheduler)
        return scheduler

    yield build
    for scheduler in created:
        scheduler.shutdown()


class TestEnqueue:

    def test_only_anchored_items(self, anchored_items, scheduler_factory):
        from ledgerfold.errors import DeliveryNotEligible

        machine, ids = anchored_items(2, anchored=1)
        scheduler = scheduler_factory(machine, ScriptedTransport())
        scheduler.enqueue(ids[0], "bob")
        with pytest.raises(DeliveryNotEligible) as exc:
            scheduler.enqueue(ids[1], "bob")
        assert exc.value.state == "pending"

    def test_idempotent_per_recipient(self, anchored_items, scheduler_factory):
        from ledgerfold.distribution import JobStatus

        machine, ids = anchored_items(1)
        scheduler = scheduler_factory(machine, ScriptedTransport())
        first = scheduler.enqueue(ids[0], "bob")
        second = scheduler.enqueue(ids[0], "bob")
        scheduler.enqueue(ids[0], "carol")

        assert first == second
        assert first.status == JobStatus.QUEUED
        assert first.attempt_count == 0
        assert len(scheduler.jobs()) == 2

    def test_enqueue_after_delivery_returns_archived_job(self, anchored_items, scheduler_factory):
        from ledgerfold.distribution import JobStatus

        machine, ids = anchored_items(1)
        transport = ScriptedTransport()
        scheduler = scheduler_factory(machine, transport)
        scheduler.enqueue(ids[0], "bob")
        scheduler.run_pending(now=0.0)

        again = scheduler.enqueue(ids[0], "bob")
        assert again.status == JobStatus.DELIVERED
        assert scheduler.run_pending(now=10.0) == []
        assert len(transport.calls) == 1


class TestRetryAndBackoff:

    def test_three_failures_then_success(self, anchored_items, scheduler_factory, registry):
        from ledgerfold.distribution import DeliveryProof, JobStatus, verify_delivery_proof
        from ledgerfold.errors import DeliveryFailed
        from ledgerfold.provenance import EventKind

        machine, ids = anchored_items(1)
        item = ids[0]
        transport = ScriptedTransport({(item, "bob"): [DeliveryFailed] * 3})
        scheduler = scheduler_factory(machine, transport, max_attempts=5)
        scheduler.enqueue(item, "bob")

        for now in (0.0, 1000.0, 2000.0):
            (job,) = scheduler.run_pending(now=now)
            assert job.status == JobStatus.QUEUED
            assert job.next_eligible_time > now
            assert "scripted failure" in job.last_error

        (job,) = scheduler.run_pending(now=3000.0)
        assert job.status == JobStatus.DELIVERED
        assert job.attempt_count == 4
        assert scheduler.jobs() == []
        assert [j.key for j in scheduler.archived()] == [(item, "bob")]

        assert machine.provenance.count(item, EventKind.DELIVERED) == 1
        delivered = machine.provenance.head(item)
        proof = DeliveryProof.from_dict(delivered.payload)
        assert proof.attempt_count == 4
        assert verify_delivery_proof(proof, registry)
        assert machine.provenance.verify_item(item)

    def test_backoff_delays_next_attempt(self, anchored_items, scheduler_factory):
        from ledgerfold.errors import DeliveryFailed

        machine, ids = anchored_items(1)
        transport = ScriptedTransport({(ids[0], "bob"): [DeliveryFailed]})
        scheduler = scheduler_factory(machine, transport, base_delay_seconds=10.0, jitter_factor=0.5)
        scheduler.enqueue(ids[0], "bob")

        (job,) = scheduler.run_pending(now=100.0)
        assert 110.0 <= job.next_eligible_time <= 115.0
        assert scheduler.next_wakeup() == job.next_eligible_time
        assert scheduler.run_pending(now=109.9) == []
        assert len(transport.calls) == 1

        (job,) = scheduler.run_pending(now=job.next_eligible_time)
        assert job.attempt_count == 2
        assert scheduler.next_wakeup() is None

    def test_delay_is_capped(self, anchored_items, scheduler_factory):
        machine, _ = anchored_items(1)
        scheduler = scheduler_factory(machine, ScriptedTransport(), max_delay_seconds=300.0)
        assert scheduler.retry_delay(30) == 300.0

    def test_dead_letter_after_max_attempts(self, anchored_items, scheduler_factory):
        from ledgerfold.distribution import JobStatus
        from ledgerfold.errors import DeliveryFailed
        from ledgerfold.provenance import EventKind

        machine, ids = anchored_items(1)
        item = ids[0]
        transport = ScriptedTransport({(item, "bob"): [DeliveryFailed] * 10})
        dead = []
        scheduler = scheduler_factory(machine, transport, max_attempts=3, on_dead_letter=dead.append)
        scheduler.enqueue(item, "bob")

        for now in (0.0, 1000.0, 2000.0):
            scheduler.run_pending(now=now)

        job = scheduler.job(item, "bob")
        assert job.status == JobStatus.DEAD_LETTERED
        assert job.attempt_count == 3
        assert [j.key for j in scheduler.dead_letters()] == [(item, "bob")]
        assert scheduler.jobs() == []
        assert [j.key for j in scheduler.archived()] == [(item, "bob")]
        assert [j.key for j in dead] == [(item, "bob")]
        entry = machine.provenance.head(item)
        assert entry.event_kind == EventKind.DEAD_LETTERED.value
        assert entry.payload["attempt_count"] == 3

        assert scheduler.run_pending(now=1_000_000.0) == []
        assert len(transport.calls) == 3

    def test_dead_letter_check_precedes_reroute(self, anchored_items, scheduler_factory):
        from ledgerfold.distribution import JobStatus
        from ledgerfold.errors import RecipientInactive

        machine, ids = anchored_items(1)
        transport = ScriptedTransport({(ids[0], "bob"): [RecipientInactive]})
        scheduler = scheduler_factory(machine, transport, max_attempts=1)
        scheduler.enqueue(ids[0], "bob")
        (job,) = scheduler.run_pending(now=0.0)
        assert job.status == JobStatus.DEAD_LETTERED


class TestReroute:

    def test_inactive_recipient_waits_for_next_window(self, anchored_items, scheduler_factory):
        from ledgerfold.distribution import JobStatus
        from ledgerfold.errors import RecipientInactive

        machine, ids = anchored_items(1)
        transport = ScriptedTransport({(ids[0], "bob"): [RecipientInactive]})
        scheduler = scheduler_factory(machine, transport, reroute_window_seconds=600.0)
        scheduler.enqueue(ids[0], "bob")

        (job,) = scheduler.run_pending(now=100.0)
        assert job.status == JobStatus.REROUTED
        assert job.next_eligible_time == 600.0
        assert scheduler.run_pending(now=599.0) == []

        (job,) = scheduler.run_pending(now=600.0)
        assert job.status == JobStatus.DELIVERED
        assert job.attempt_count == 2

    def test_window_boundaries(self, anchored_items, scheduler_factory):
        machine, _ = anchored_items(1)
        scheduler = scheduler_factory(machine, ScriptedTransport(), reroute_window_seconds=600.0)
        assert scheduler.reroute_time(0.0) == 600.0
        assert scheduler.reroute_time(600.0) == 1200.0
        assert scheduler.reroute_time(1199.5) == 1200.0


class TestConcurrency:

    def test_one_attempt_per_item_per_round(self, anchored_items, scheduler_factory):
        machine, ids = anchored_items(1)
        transport = ScriptedTransport()
        scheduler = scheduler_factory(machine, transport)
        scheduler.enqueue(ids[0], "bob")
        scheduler.enqueue(ids[0], "carol")

        first = scheduler.run_pending(now=0.0)
        second = scheduler.run_pending(now=0.0)
        assert [j.recipient for j in first] == ["bob"]
        assert [j.recipient for j in second] == ["carol"]
        assert transport.max_concurrent_per_item == 1

    def test_distinct_items_run_in_parallel(self, anchored_items, scheduler_factory):
        machine, ids = anchored_items(4)
        transport = ScriptedTransport()
        scheduler = scheduler_factory(machine, transport, max_workers=4)
        for item_id in ids:
            scheduler.enqueue(item_id, "bob")
        settled = scheduler.run_pending(now=0.0)
        assert sorted(j.item_id for j in settled) == sorted(ids)

    def test_concurrent_rounds_skip_in_flight_item(self, anchored_items, scheduler_factory):
        from ledgerfold.distribution import JobStatus

        machine, ids = anchored_items(1)
        transport = ScriptedTransport()
        gate = threading.Event()
        transport.gates["bob"] = gate
        scheduler = scheduler_factory(machine, transport)
        scheduler.enqueue(ids[0], "bob")
        scheduler.enqueue(ids[0], "carol")

        results = []
        runner = threading.Thread(target=lambda: results.extend(scheduler.run_pending(now=0.0)))
        runner.start()
        try:
            assert transport.started.wait(5.0)
            assert scheduler.in_flight_items() == [ids[0]]
            assert scheduler.run_pending(now=0.0) == []
        finally:
            gate.set()
            runner.join(5.0)

        assert [j.status for j in results] == [JobStatus.DELIVERED]
        assert scheduler.in_flight_items() == []
        assert transport.max_concurrent_per_item == 1

    def test_deadline_miss_is_transient(self, anchored_items, scheduler_factory):
        from ledgerfold.distribution import JobStatus

        machine, ids = anchored_items(1)
        transport = ScriptedTransport()
        gate = threading.Event()
        transport.gates["bob"] = gate
        scheduler = scheduler_factory(machine, transport, attempt_timeout_seconds=0.05)
        scheduler.enqueue(ids[0], "bob")
        try:
            (job,) = scheduler.run_pending(now=0.0)
        finally:
            gate.set()
        assert job.status == JobStatus.QUEUED
        assert job.last_error.startswith("DeadlineExceeded")

    def test_timed_out_attempt_blocks_next_round(self, anchored_items, scheduler_factory):
        from ledgerfold.distribution import JobStatus

        machine, ids = anchored_items(1)
        transport = ScriptedTransport()
        gate = threading.Event()
        transport.gates["bob"] = gate
        scheduler = scheduler_factory(
            machine, transport, attempt_timeout_seconds=0.05, base_delay_seconds=0.0, jitter_factor=0.0,
        )
        scheduler.enqueue(ids[0], "bob")
        try:
            (job,) = scheduler.run_pending(now=0.0)
            assert job.status == JobStatus.QUEUED
            assert scheduler.run_pending(now=1000.0) == []
            assert scheduler.in_flight_items() == [ids[0]]
        finally:
            gate.set()

        assert len(transport.calls) == 1
        assert transport.max_concurrent_per_item == 1

    def test_late_success_settles_job(self, anchored_items, scheduler_factory):
        from ledgerfold.distribution import JobStatus

        machine, ids = anchored_items(1)
        transport = ScriptedTransport()
        gate = threading.Event()
        transport.gates["bob"] = gate
        scheduler = scheduler_factory(machine, transport, attempt_timeout_seconds=0.05)
        scheduler.enqueue(ids[0], "bob")
        try:
            scheduler.run_pending(now=0.0)
        finally:
            gate.set()

        _, outcome = scheduler._abandoned[ids[0]]
        assert outcome.done.wait(5.0)

        (job,) = scheduler.run_pending(now=1000.0)
        assert job.status == JobStatus.DELIVERED
        assert job.attempt_count == 1
        assert len(transport.calls) == 1
        assert scheduler.in_flight_items() == []
        assert machine.provenance.head(ids[0]).event_kind == "delivered"

    def test_shutdown_cancels_unstarted_attempts(self, anchored_items, scheduler_factory):
        from ledgerfold.distribution import JobStatus

        machine, ids = anchored_items(2)
        transport = ScriptedTransport()
        gate = threading.Event()
        transport.gates["bob"] = gate
        scheduler = scheduler_factory(machine, transport, max_workers=1)
        scheduler.enqueue(ids[0], "bob")
        scheduler.enqueue(ids[1], "carol")

        results = []
        runner = threading.Thread(target=lambda: results.extend(scheduler.run_pending(now=0.0)))
        runner.start()
        try:
            assert transport.started.wait(5.0)
            scheduler.shutdown(wait=False)
        finally:
            gate.set()
            runner.join(5.0)

        by_recipient = {j.recipient: j for j in results}
        assert by_recipient["bob"].status == JobStatus.DELIVERED
        assert by_recipient["carol"].status == JobStatus.QUEUED
        assert by_recipient["carol"].attempt_count == 0
        assert transport.calls == [(ids[0], "bob")]
        assert scheduler.run_pending(now=10.0) == []


class TestPersistence:

    class RecordingStore:
        def __init__(self):
            self.saved = []

        def save_jobs(self, jobs):
            self.saved.append([j.to_dict() for j in jobs])

    def test_every_change_is_saved(self, anchored_items, scheduler_factory):
        machine, ids = anchored_items(1)
        store = self.RecordingStore()
        scheduler = scheduler_factory(machine, ScriptedTransport(), store=store)
        scheduler.enqueue(ids[0], "bob")
        assert store.saved[-1][0]["status"] == "queued"
        scheduler.run_pending(now=0.0)
        assert store.saved[-1][0]["status"] == "delivered"

    def test_in_flight_jobs_requeued_on_load(self, anchored_items, scheduler_factory):
        from ledgerfold.distribution import DistributionJob, JobStatus

        machine, ids = anchored_items(2)
        scheduler = scheduler_factory(machine, ScriptedTransport())
        scheduler.load_jobs([
            DistributionJob(ids[0], "bob", attempt_count=2, status=JobStatus.IN_FLIGHT),
            DistributionJob(ids[1], "bob", attempt_count=1, status=JobStatus.DELIVERED),
            DistributionJob(ids[1], "carol", attempt_count=5, status=JobStatus.DEAD_LETTERED),
        ])

        active = scheduler.jobs()
        assert [(j.item_id, j.status, j.attempt_count) for j in active] == [(ids[0], JobStatus.QUEUED, 2)]
        assert [j.key for j in scheduler.archived()] == [(ids[1], "bob"), (ids[1], "carol")]
        assert [j.key for j in scheduler.dead_letters()] == [(ids[1], "carol")]

        (job,) = scheduler.run_pending(now=0.0)
        assert job.attempt_count == 3

    def test_job_serialization(self):
        from ledgerfold.distribution import DistributionJob, JobStatus

        job = DistributionJob("a" * 64, "bob", attempt_count=2, status=JobStatus.REROUTED, next_eligible_time=600.0)
        assert DistributionJob.from_dict(job.to_dict()) == job


class TestDeliveryProof:

    def test_tampered_proof_fails(self, signing_key):
        from dataclasses import replace

        from ledgerfold.distribution import DeliveryReceipt, sign_delivery, verify_delivery_proof
        from ledgerfold.proofs import KeyRegistry

        registry = KeyRegistry()
        registry.register_signing_key(signing_key)
        receipt = DeliveryReceipt("a" * 64, "bob", "tx-1", "2026-01-01T00:00:00+00:00")
        proof = sign_delivery(signing_key, receipt, 1)

        assert verify_delivery_proof(proof, registry)
        assert not verify_delivery_proof(replace(proof, recipient="mallory"), registry)
        assert not verify_delivery_proof(replace(proof, attempt_count=2), registry)
