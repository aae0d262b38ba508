"""Integration tests for ClipQueueManager.

Each test drives one or more instances against a temporary shared store,
mostly through poll_once() so the claim timing is deterministic.
"""

import json
import os
import subprocess
import sys
import threading
import time
from datetime import timedelta
from pathlib import Path

import pytest

from clip_queue.queue import (
    ArtifactReference,
    ClipQueueManager,
    JobStatus,
    SQLiteJobStore,
    SubmissionError,
)
from clip_queue.queue.models import utcnow


def succeeding_pipeline(job):
    return ArtifactReference(uri=f"cdn://{job.lookup_hash}")


def failing_pipeline(job):
    raise RuntimeError("render farm unavailable")


# Runs one instance whose job outlives the shutdown grace period
SLOW_INSTANCE_SCRIPT = """
import json
import sys
import time

from clip_queue.models import QueueConfig
from clip_queue.queue import ArtifactReference, ClipQueueManager, SQLiteJobStore


def slow_pipeline(job):
    time.sleep(30)
    return ArtifactReference(uri="cdn://slow")


store = SQLiteJobStore(sys.argv[1])
manager = ClipQueueManager(
    store, slow_pipeline, QueueConfig(shutdown_grace_s=0.2), instance_id="inst-exit"
)
manager.submit("H1", json.loads(sys.argv[2]))
manager.poll_once()
manager.shutdown()
"""


def wait_for(predicate, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture
def managers(store, fast_config):
    """Factory for managers on the shared store; all are shut down afterwards."""
    created = []

    def _make(pipeline=succeeding_pipeline, instance_id=None, job_store=None, **kwargs):
        manager = ClipQueueManager(
            job_store or store, pipeline, fast_config, instance_id=instance_id, **kwargs
        )
        created.append(manager)
        return manager

    yield _make

    for manager in created:
        manager.shutdown(grace_s=1.0)


def run_one(manager):
    job = manager.poll_once()
    assert job is not None
    assert manager.wait_idle(timeout=5.0)
    return job


class TestScenarios:
    """End-to-end lifecycle scenarios."""

    def test_always_failing_job_ends_failed(self, managers, make_payload):
        manager = managers(failing_pipeline)
        manager.submit("H1", make_payload(), max_attempts=3)

        for _ in range(3):
            run_one(manager)

        status = manager.get_status("H1")
        assert status.status == JobStatus.FAILED
        assert status.attempts == 3
        assert len(status.error_history) == 3
        assert "render farm unavailable" in status.last_error
        assert manager.poll_once() is None

    def test_successful_job_completes_first_try(self, managers, store, make_payload):
        manager = managers()
        manager.submit("H2", make_payload())

        run_one(manager)

        job = store.get("H2")
        assert job.status == JobStatus.COMPLETED
        assert job.attempts == 1
        assert job.artifact.uri == "cdn://H2"
        assert job.instance_id is None

    def test_crashed_claim_reclaimed_then_completed(
        self, managers, store, make_payload, fast_config
    ):
        manager = managers()
        manager.submit("H3", make_payload())
        store.claim_next("crashed-instance")

        reclaimed = manager.reclaimer.sweep(
            now=utcnow() + timedelta(seconds=fast_config.heartbeat_timeout_s + 1)
        )

        assert [r.lookup_hash for r in reclaimed] == ["H3"]
        job = store.get("H3")
        assert job.status == JobStatus.QUEUED
        assert job.instance_id is None

        run_one(manager)

        job = store.get("H3")
        assert job.status == JobStatus.COMPLETED
        assert job.attempts == 2

    def test_duplicate_submission_before_completion(self, managers, store, make_payload):
        manager = managers()
        assert manager.submit("H4", make_payload()).status == JobStatus.QUEUED
        assert manager.submit("H4", make_payload()).status == JobStatus.QUEUED

        store.claim_next("other-instance")
        assert manager.submit("H4", make_payload()).status == JobStatus.PROCESSING

        assert sum(store.count_by_status().values()) == 1

    def test_two_instances_race_for_one_job(self, managers, temp_db, make_payload):
        store_a = SQLiteJobStore(temp_db)
        store_b = SQLiteJobStore(temp_db)
        try:
            gate = threading.Event()

            def blocking_pipeline(job):
                gate.wait(5)
                return ArtifactReference(uri="cdn://H5")

            first = managers(blocking_pipeline, instance_id="inst-a", job_store=store_a)
            second = managers(blocking_pipeline, instance_id="inst-b", job_store=store_b)
            first.submit("H5", make_payload())

            barrier = threading.Barrier(2)
            results = {}

            def poll(manager):
                barrier.wait()
                results[manager.instance_id] = manager.poll_once()

            threads = [threading.Thread(target=poll, args=(m,)) for m in (first, second)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=10)

            winners = [iid for iid, job in results.items() if job is not None]
            assert len(winners) == 1
            assert store_a.get("H5").instance_id == winners[0]

            gate.set()
            assert first.wait_idle(5) and second.wait_idle(5)
            assert store_a.get("H5").status == JobStatus.COMPLETED
        finally:
            for m_store in (store_a, store_b):
                m_store.close()


class TestSubmit:
    """Test submission validation."""

    def test_malformed_payload_rejected(self, managers, store):
        manager = managers()

        with pytest.raises(SubmissionError):
            manager.submit("bad", {"kind": "clip", "timestamps": [5, 1]})

        assert store.get("bad") is None

    def test_unknown_kind_rejected(self, managers, make_payload):
        payload = make_payload()
        payload["kind"] = "podcast"

        with pytest.raises(SubmissionError):
            managers().submit("bad", payload)

    def test_empty_lookup_hash_rejected(self, managers, make_payload):
        with pytest.raises(SubmissionError):
            managers().submit("  ", make_payload())

    def test_default_max_attempts_from_config(self, managers, store, make_payload):
        managers().submit("H1", make_payload())
        assert store.get("H1").max_attempts == 3

    def test_submission_is_not_processing(self, managers, store, make_payload):
        manager = managers()
        manager.submit("H1", make_payload())

        assert manager.active_workers == 0
        assert store.get("H1").status == JobStatus.QUEUED


class TestStatus:
    """Test status queries."""

    def test_status_positions(self, managers, make_payload):
        gate = threading.Event()

        def blocking_pipeline(job):
            gate.wait(5)
            return ArtifactReference(uri="cdn://done")

        manager = managers(blocking_pipeline)
        manager.submit("running", make_payload(), priority=5)
        manager.submit("waiting", make_payload())
        manager.poll_once()
        try:
            running = manager.get_status("running")
            waiting = manager.get_status("waiting")

            assert running.status == JobStatus.PROCESSING
            assert running.position == 0
            assert running.estimated_wait == "Currently processing"
            assert waiting.position == 1
            assert waiting.estimated_wait == "Queue position: 1"
            assert manager.get_status("missing") is None
        finally:
            gate.set()
            manager.wait_idle(5)

        done = manager.get_status("running")
        assert done.status == JobStatus.COMPLETED
        assert done.position is None
        assert done.estimated_wait == "Completed"

    def test_queue_stats(self, managers, make_payload):
        gate = threading.Event()

        def blocking_pipeline(job):
            gate.wait(5)
            return ArtifactReference(uri="cdn://done")

        manager = managers(blocking_pipeline, instance_id="inst-a")
        manager.submit("H1", make_payload())
        manager.submit("H2", make_payload())
        manager.poll_once()
        try:
            stats = manager.get_queue_stats()

            assert stats.instance_id == "inst-a"
            assert stats.max_concurrent == 2
            assert stats.active_workers == 1
            assert stats.processing_jobs == ["H1"]
            assert stats.by_status == {"queued": 1, "processing": 1, "completed": 0, "failed": 0}
        finally:
            gate.set()
            manager.wait_idle(5)

    def test_transitions(self, managers, make_payload):
        manager = managers()
        manager.submit("H1", make_payload())
        run_one(manager)

        states = [t.to_state for t in manager.get_transitions("H1")]
        assert states == ["queued", "processing", "completed"]


class TestConcurrencyLimit:
    """Test max_concurrent enforcement."""

    def test_no_claim_when_slots_full(self, managers, store, make_payload):
        gate = threading.Event()

        def blocking_pipeline(job):
            gate.wait(5)
            return ArtifactReference(uri="cdn://done")

        manager = managers(blocking_pipeline)
        for i in range(3):
            manager.submit(f"H{i}", make_payload())

        try:
            assert manager.poll_once() is not None
            assert manager.poll_once() is not None
            assert manager.poll_once() is None
            assert store.count_by_status()["queued"] == 1
        finally:
            gate.set()
            manager.wait_idle(5)


class TestShutdown:
    """Test graceful shutdown."""

    def test_shutdown_releases_ownership(self, managers, store, make_payload):
        gate = threading.Event()

        def blocking_pipeline(job):
            gate.wait(5)
            return ArtifactReference(uri="cdn://late")

        manager = managers(blocking_pipeline, instance_id="inst-a")
        manager.submit("H1", make_payload())
        manager.poll_once()

        released = manager.shutdown(grace_s=0.1)

        assert released == 1
        job = store.get("H1")
        assert job.status == JobStatus.QUEUED
        assert job.instance_id is None
        assert store.list_jobs(instance_id="inst-a") == []

        # The late result of the released job is dropped
        gate.set()
        assert wait_for(lambda: manager.active_workers == 0)
        assert store.get("H1").status == JobStatus.QUEUED

    def test_shutdown_requeues_job_on_final_attempt(self, managers, store, make_payload):
        gate = threading.Event()

        def blocking_pipeline(job):
            gate.wait(5)
            return ArtifactReference(uri="cdn://late")

        manager = managers(blocking_pipeline, instance_id="inst-a")
        manager.submit("H1", make_payload(), max_attempts=1)
        manager.poll_once()
        assert store.get("H1").attempts == 1

        assert manager.shutdown(grace_s=0.1) == 1

        # Success inside the grace period is dropped; the job stays claimable
        gate.set()
        assert wait_for(lambda: manager.active_workers == 0)
        job = store.get("H1")
        assert job.status == JobStatus.QUEUED
        assert job.attempts == 0
        assert job.error_history == []
        assert store.claim_next("inst-b").lookup_hash == "H1"

    def test_shutdown_returns_when_grace_expires(self, managers, store, make_payload):
        gate = threading.Event()

        def blocking_pipeline(job):
            gate.wait(10)
            return ArtifactReference(uri="cdn://late")

        manager = managers(blocking_pipeline)
        manager.submit("H1", make_payload())
        manager.poll_once()

        started = time.monotonic()
        try:
            manager.shutdown(grace_s=0.2)
            assert time.monotonic() - started < 2.0
            assert manager.active_workers == 1
        finally:
            gate.set()
            manager.wait_idle(5)

    def test_process_exits_when_grace_expires(self, temp_db, make_payload):
        env = dict(os.environ)
        src = str(Path(__file__).resolve().parents[1] / "src")
        env["PYTHONPATH"] = os.pathsep.join(p for p in (src, env.get("PYTHONPATH")) if p)

        started = time.monotonic()
        subprocess.run(
            [sys.executable, "-c", SLOW_INSTANCE_SCRIPT, temp_db, json.dumps(make_payload())],
            env=env,
            check=True,
            timeout=25,
        )
        assert time.monotonic() - started < 15

        store = SQLiteJobStore(temp_db)
        job = store.get("H1")
        store.close()
        assert job.status == JobStatus.QUEUED
        assert job.instance_id is None

    def test_shutdown_is_idempotent(self, managers):
        manager = managers()
        manager.start()

        assert manager.shutdown() == 0
        assert manager.shutdown() == 0
        assert not manager.running

    def test_no_claims_after_shutdown(self, managers, store, make_payload):
        manager = managers()
        manager.shutdown()
        manager.submit("H1", make_payload())

        assert manager.poll_once() is None
        assert store.get("H1").status == JobStatus.QUEUED
        with pytest.raises(RuntimeError):
            manager.start()

    def test_stop_request(self, managers):
        manager = managers()
        assert manager.wait_for_stop(0) is False
        manager.request_stop()
        assert manager.wait_for_stop(0) is True


class TestBackgroundThreads:
    """Test the running instance with its own timers."""

    def test_started_instance_processes_queue(self, managers, store, make_payload):
        manager = managers()
        with manager:
            for i in range(4):
                manager.submit(f"H{i}", make_payload(guid=f"episode-{i}"))

            assert wait_for(lambda: store.count_by_status()["completed"] == 4)

        assert store.count_by_status()["processing"] == 0

    def test_started_instance_reclaims_orphans(self, managers, store, make_payload):
        manager = managers()
        manager.submit("H3", make_payload())
        store.claim_next("crashed", now=utcnow() - timedelta(hours=1))

        manager.start()

        assert wait_for(lambda: store.get("H3").status == JobStatus.COMPLETED)
        assert store.get("H3").attempts == 2

    def test_instance_heartbeat_keeps_jobs_fresh(self, managers, store, make_payload):
        gate = threading.Event()

        def blocking_pipeline(job):
            gate.wait(5)
            return ArtifactReference(uri="cdn://done")

        manager = managers(blocking_pipeline)
        manager.submit("H1", make_payload())
        job = manager.poll_once()
        try:
            assert manager.instance_heartbeat.beat() == 1
            assert wait_for(lambda: store.get("H1").heartbeat_at > job.heartbeat_at)
            assert manager.reclaimer.sweep() == []
        finally:
            gate.set()
            manager.wait_idle(5)
