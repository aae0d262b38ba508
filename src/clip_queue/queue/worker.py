"""Execution harness and worker pool for claimed jobs.

This module provides:
- JobWorkerPool: fixed daemon worker threads with an active-job counter
- ExecutionHarness: runs the pipeline for one claimed job with a per-job
  heartbeat thread and maps the outcome onto the job record
- Error classification (permanent vs transient)
"""

import logging
import queue
import threading
import time
from concurrent.futures import Future
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .backends import JobStore, ResultPublisher, WorkerPool
from .errors import PermanentJobError, StageError, StoreError
from .models import ArtifactReference, JobOutcome, JobRecord, JobStatus
from .pipeline import Pipeline, verify_artifact
from .publisher import publish_safely
from .timers import PeriodicTask

logger = logging.getLogger(__name__)


class JobWorkerPool(WorkerPool):
    """Fixed set of daemon worker threads for claimed jobs.

    Threads rather than processes: jobs spend their time waiting on external
    services (lookup, render farm, upload), and the harness needs to share the
    instance's store and counters. Workers are daemon threads so a job still
    running after the shutdown grace period cannot keep the process alive.

    Features:
    - Context manager for startup/shutdown
    - Active-job counter the scheduler checks before claiming
    - wait_idle() for bounded drain on shutdown
    """

    def __init__(self, n_workers: int):
        """Initialize worker pool.

        Args:
            n_workers: Number of parallel workers (the instance's max_concurrent)
        """
        self.n_workers = n_workers
        self._tasks: Optional[queue.SimpleQueue] = None
        self._threads: List[threading.Thread] = []
        self._active = 0
        self._idle = threading.Condition()

    def __enter__(self):
        return self.start()

    def __exit__(self, *args):
        self.shutdown(wait=True)

    def start(self) -> "JobWorkerPool":
        with self._idle:
            if self._tasks is None:
                self._tasks = queue.SimpleQueue()
                self._threads = [
                    threading.Thread(
                        target=self._worker_loop,
                        args=(self._tasks,),
                        name=f"clip-worker_{i}",
                        daemon=True,
                    )
                    for i in range(self.n_workers)
                ]
                for thread in self._threads:
                    thread.start()
        return self

    @property
    def active(self) -> int:
        with self._idle:
            return self._active

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        """Submit task to worker pool; counts as active until it returns."""
        with self._idle:
            if self._tasks is None:
                raise RuntimeError("Worker pool not initialized (use with statement or start())")
            future: Future = Future()
            self._active += 1
            self._tasks.put((future, fn, args, kwargs))
        return future

    def _worker_loop(self, tasks: queue.SimpleQueue) -> None:
        while True:
            item = tasks.get()
            if item is None:
                return
            future, fn, args, kwargs = item
            if not future.set_running_or_notify_cancel():
                self._done()
                continue
            try:
                result = fn(*args, **kwargs)
            except BaseException as e:
                self._done()
                future.set_exception(e)
            else:
                self._done()
                future.set_result(result)

    def _done(self) -> None:
        with self._idle:
            self._active -= 1
            self._idle.notify_all()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: self._active == 0, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work.

        Args:
            wait: If True, wait for running jobs to complete
        """
        with self._idle:
            tasks, threads = self._tasks, self._threads
            self._tasks, self._threads = None, []
        if tasks is None:
            return
        for _ in threads:
            tasks.put(None)
        if wait:
            for thread in threads:
                thread.join()


def is_permanent_error(exc: BaseException) -> bool:
    """Permanent errors skip the remaining attempts."""
    if isinstance(exc, StageError):
        exc = exc.cause
    return isinstance(exc, PermanentJobError)


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, StageError):
        return str(exc)
    return f"{type(exc).__name__}: {exc}"


class ExecutionHarness:
    """Runs one claimed job and records its outcome.

    Every store write is conditional on this instance still holding the
    claim; when the job was reclaimed or released meanwhile the outcome is
    logged and dropped.
    """

    def __init__(
        self,
        store: JobStore,
        instance_id: str,
        pipeline: Pipeline,
        publisher: Optional[ResultPublisher] = None,
        heartbeat_interval_s: float = 30.0,
    ):
        self.store = store
        self.instance_id = instance_id
        self.pipeline = pipeline
        self.publisher = publisher
        self.heartbeat_interval_s = heartbeat_interval_s

    def run(self, job: JobRecord) -> JobOutcome:
        """Process a claimed job end to end.

        Error handling:
        - PermanentJobError (directly or from a critical stage): failed now
        - Any other exception: retried while attempts remain
        - Missing/empty artifact: treated as a failure, not a success
        """
        start_time = time.time()
        logger.info("Processing job %s on instance %s", job.lookup_hash, self.instance_id)
        publish_safely(
            self.publisher,
            job.lookup_hash,
            "processing",
            {"attempt": job.attempts, "instanceId": self.instance_id},
        )

        heartbeat = self._start_heartbeat(job.lookup_hash)
        try:
            try:
                artifact = verify_artifact(self.pipeline(job))
            finally:
                heartbeat.stop()
        except Exception as e:
            return self._record_failure(job, e, time.time() - start_time)

        return self._record_success(job, artifact, time.time() - start_time)

    def _start_heartbeat(self, lookup_hash: str) -> PeriodicTask:
        """Per-job heartbeat thread; its connection is closed when it stops."""
        return PeriodicTask(
            name=f"heartbeat-{lookup_hash[:12]}",
            interval_s=self.heartbeat_interval_s,
            fn=lambda: self._beat(lookup_hash),
            on_exit=self.store.close_thread_connection,
        ).start()

    def _beat(self, lookup_hash: str) -> None:
        if not self.store.heartbeat(lookup_hash, self.instance_id):
            logger.warning("Heartbeat for %s matched nothing; claim was lost", lookup_hash)

    def _record_success(
        self, job: JobRecord, artifact: ArtifactReference, duration: float
    ) -> JobOutcome:
        stage_errors = artifact.metadata.get("stage_errors", {})
        try:
            held = self.store.complete(job.lookup_hash, self.instance_id, artifact)
        except StoreError as e:
            logger.error(
                "Job %s finished but completion could not be recorded: %s", job.lookup_hash, e
            )
            return JobOutcome(
                lookup_hash=job.lookup_hash,
                artifact=artifact,
                error_message=str(e),
                duration_s=duration,
                stage_errors=stage_errors,
            )

        if not held:
            logger.warning(
                "Job %s finished after its claim was lost; outcome not recorded", job.lookup_hash
            )
            return JobOutcome(
                lookup_hash=job.lookup_hash,
                artifact=artifact,
                duration_s=duration,
                stage_errors=stage_errors,
            )

        logger.info("Job %s completed in %.2fs: %s", job.lookup_hash, duration, artifact.uri)
        publish_safely(
            self.publisher,
            job.lookup_hash,
            "completed",
            {
                "artifact_uri": artifact.uri,
                "completedAt": datetime.now(timezone.utc).isoformat(),
                "processingStages": artifact.metadata.get("completed_stages", []),
            },
        )
        return JobOutcome(
            lookup_hash=job.lookup_hash,
            status=JobStatus.COMPLETED,
            artifact=artifact,
            duration_s=duration,
            stage_errors=stage_errors,
        )

    def _record_failure(self, job: JobRecord, exc: Exception, duration: float) -> JobOutcome:
        error_message = describe_error(exc)
        permanent = is_permanent_error(exc)
        stage_errors = {exc.stage: str(exc.cause)} if isinstance(exc, StageError) else {}
        logger.error(
            "Job %s failed (attempt %d/%d): %s",
            job.lookup_hash,
            job.attempts,
            job.max_attempts,
            error_message,
            exc_info=exc,
        )

        try:
            new_status = self.store.fail(
                job.lookup_hash, self.instance_id, error_message, retry=not permanent
            )
        except StoreError as e:
            logger.error("Failure of job %s could not be recorded: %s", job.lookup_hash, e)
            new_status = None

        if new_status is None:
            logger.warning("Job %s failure not recorded; claim was lost", job.lookup_hash)
        elif new_status == JobStatus.QUEUED:
            logger.info("Job %s queued for retry", job.lookup_hash)
        else:
            logger.info("Job %s marked as failed", job.lookup_hash)

        if new_status is not None:
            publish_safely(
                self.publisher,
                job.lookup_hash,
                new_status.value,
                {"lastError": error_message, "attempt": job.attempts},
            )

        return JobOutcome(
            lookup_hash=job.lookup_hash,
            status=new_status,
            error_message=error_message,
            duration_s=duration,
            stage_errors=stage_errors,
        )
