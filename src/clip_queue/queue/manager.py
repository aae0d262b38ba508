"""Per-instance queue manager.

ClipQueueManager wires one instance together:

    submit() ──> JobStore <── ClaimScheduler ──> JobWorkerPool ──> ExecutionHarness
                    ^                                                    │
                    ├── InstanceHeartbeat (batched heartbeat)             │
                    ├── OrphanReclaimer (crash recovery)                  │
                    └────────────── complete() / fail() <─────────────────┘

Any number of managers (in any number of processes) may share one store;
they coordinate only through it.
"""

import logging
import signal
import threading
import uuid
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from ..models import ClipQueueConfig, QueueConfig
from .backends import JobStore, ResultPublisher
from .errors import SubmissionError
from .liveness import InstanceHeartbeat, OrphanReclaimer
from .models import (
    JobPayload,
    JobRecord,
    JobStatus,
    JobStatusView,
    QueueStats,
    StateTransition,
    SubmitResult,
    parse_payload,
)
from .pipeline import Pipeline
from .publisher import NullPublisher
from .scheduler import ClaimScheduler
from .worker import ExecutionHarness, JobWorkerPool

logger = logging.getLogger(__name__)


def submit_job(
    store: JobStore,
    lookup_hash: str,
    payload: Union[JobPayload, Dict[str, Any]],
    priority: int = 0,
    max_attempts: int = 3,
) -> SubmitResult:
    """Validate and persist a job; no processing happens here.

    Raises:
        SubmissionError: Empty lookup hash, bad max_attempts or malformed payload
            (nothing is stored)
        StoreError: Store unavailable
    """
    if not lookup_hash or not lookup_hash.strip():
        raise SubmissionError("lookup_hash must be a non-empty string")
    if max_attempts < 1:
        raise SubmissionError(f"max_attempts must be >= 1, got {max_attempts}")

    try:
        job_payload = parse_payload(payload)
    except ValidationError as e:
        raise SubmissionError(f"Invalid payload for {lookup_hash}: {e}") from e

    return store.enqueue(lookup_hash, job_payload, priority=priority, max_attempts=max_attempts)


def job_status(store: JobStore, lookup_hash: str) -> Optional[JobStatusView]:
    """Status, retry state and queue position of one job (None if unknown)."""
    job = store.get(lookup_hash)
    if job is None:
        return None

    position = None
    if job.status == JobStatus.PROCESSING:
        position = 0
    elif job.status == JobStatus.QUEUED:
        position = store.queue_position(lookup_hash)

    return JobStatusView(
        lookup_hash=job.lookup_hash,
        status=job.status,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        last_error=job.last_error,
        error_history=job.error_history,
        position=position,
        estimated_wait=_describe_wait(job.status, position),
    )


class ClipQueueManager:
    """Submission, scheduling, liveness and shutdown for one instance.

    Usage:
        manager = ClipQueueManager(store, pipeline, config)
        manager.start()
        manager.submit(lookup_hash, payload)
        ...
        manager.shutdown()
    """

    def __init__(
        self,
        store: JobStore,
        pipeline: Pipeline,
        config: Optional[QueueConfig] = None,
        instance_id: Optional[str] = None,
        publisher: Optional[ResultPublisher] = None,
    ):
        """
        Args:
            store: Shared job store
            pipeline: Callable producing an ArtifactReference for a claimed job
            config: Scheduling/liveness parameters (defaults if None)
            instance_id: Identity of this instance (random UUID if None)
            publisher: Optional work-product side channel
        """
        self.store = store
        self.config = config or QueueConfig()
        self.instance_id = instance_id or str(uuid.uuid4())
        self.publisher = publisher or NullPublisher()

        self.pool = JobWorkerPool(n_workers=self.config.max_concurrent)
        self.harness = ExecutionHarness(
            store,
            self.instance_id,
            pipeline,
            publisher=self.publisher,
            heartbeat_interval_s=self.config.heartbeat_interval_s,
        )
        self.scheduler = ClaimScheduler(
            store,
            self.instance_id,
            self.pool,
            self.harness.run,
            max_concurrent=self.config.max_concurrent,
            poll_interval_s=self.config.poll_interval_s,
        )
        self.instance_heartbeat = InstanceHeartbeat(
            store, self.instance_id, self.config.instance_heartbeat_interval_s
        )
        self.reclaimer = OrphanReclaimer(
            store,
            heartbeat_timeout_s=self.config.heartbeat_timeout_s,
            job_timeout_s=self.config.job_timeout_s,
            interval_s=self.config.reclaim_interval_s,
        )

        self._started = False
        self._shut_down = False
        self._lifecycle_lock = threading.Lock()
        self._stop_event = threading.Event()

        logger.info("ClipQueueManager initialized with instance_id: %s", self.instance_id)

    @classmethod
    def from_config(
        cls,
        config: ClipQueueConfig,
        pipeline: Pipeline,
        instance_id: Optional[str] = None,
    ) -> "ClipQueueManager":
        """Build a manager over the SQLite store (and results table) named in config."""
        from .publisher import SQLiteResultPublisher
        from .sqlite_backend import SQLiteJobStore

        store = SQLiteJobStore(
            config.store.db_path,
            busy_timeout_s=config.store.busy_timeout_s,
            lock_retries=config.store.lock_retries,
        )
        publisher = None
        if config.results.enabled:
            publisher = SQLiteResultPublisher(config.results.db_path or config.store.db_path)
        return cls(store, pipeline, config.queue, instance_id=instance_id, publisher=publisher)

    def __enter__(self):
        return self.start()

    def __exit__(self, *args):
        self.shutdown()

    # -- lifecycle ------------------------------------------------------------

    @property
    def active_workers(self) -> int:
        return self.pool.active

    @property
    def running(self) -> bool:
        return self._started and not self._shut_down

    def start(self) -> "ClipQueueManager":
        """Start the worker pool and the background timers."""
        with self._lifecycle_lock:
            if self._shut_down:
                raise RuntimeError(f"Instance {self.instance_id} was already shut down")
            if self._started:
                return self
            self.pool.start()
            self.reclaimer.start()
            self.instance_heartbeat.start()
            self.scheduler.start()
            self._started = True
        return self

    def poll_once(self) -> Optional[JobRecord]:
        """Run one scheduler tick in the calling thread."""
        if self._shut_down:
            return None
        self.pool.start()
        return self.scheduler.tick()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no job is running on this instance (True) or timeout (False)."""
        return self.pool.wait_idle(timeout=timeout)

    def shutdown(self, grace_s: Optional[float] = None) -> int:
        """Graceful shutdown; safe to call more than once.

        Steps:
            1. Stop claiming, heartbeating and reclaiming
            2. Hand every job held by this instance back to the queue
            3. Wait up to grace_s for running jobs, then return regardless

        Returns:
            Number of jobs released (0 on repeated calls)
        """
        with self._lifecycle_lock:
            if self._shut_down:
                return 0
            self._shut_down = True
        self._stop_event.set()

        grace = self.config.shutdown_grace_s if grace_s is None else grace_s
        logger.info("Instance %s shutting down gracefully...", self.instance_id)

        self.scheduler.stop()
        self.instance_heartbeat.stop()
        self.reclaimer.stop()

        released = self.store.release_instance(self.instance_id)
        logger.info("Released %d jobs back to queue", released)

        if self.pool.active:
            logger.info("Waiting for %d jobs to complete...", self.pool.active)
        if not self.pool.wait_idle(timeout=grace):
            logger.warning(
                "Shutdown grace of %ss expired with %d jobs still running",
                grace,
                self.pool.active,
            )
        self.pool.shutdown(wait=False)

        logger.info("Instance %s shutdown complete", self.instance_id)
        return released

    def request_stop(self) -> None:
        self._stop_event.set()

    def wait_for_stop(self, timeout: Optional[float] = None) -> bool:
        """Wait until a stop was requested (signal or request_stop)."""
        return self._stop_event.wait(timeout)

    def install_signal_handlers(self) -> None:
        """Turn SIGINT/SIGTERM into a stop request. Main thread only."""

        def handle(signum, frame):
            logger.info("Received signal %s, stopping instance %s", signum, self.instance_id)
            self._stop_event.set()

        signal.signal(signal.SIGINT, handle)
        signal.signal(signal.SIGTERM, handle)

    # -- submission -----------------------------------------------------------

    def submit(
        self,
        lookup_hash: str,
        payload: Union[JobPayload, Dict[str, Any]],
        priority: int = 0,
        max_attempts: Optional[int] = None,
    ) -> SubmitResult:
        """Persist a job idempotently; processing happens later on some instance."""
        if max_attempts is None:
            max_attempts = self.config.max_attempts
        return submit_job(self.store, lookup_hash, payload, priority, max_attempts)

    # -- status ---------------------------------------------------------------

    def get_status(self, lookup_hash: str) -> Optional[JobStatusView]:
        return job_status(self.store, lookup_hash)

    def get_queue_stats(self) -> QueueStats:
        processing = self.store.list_jobs(
            status=JobStatus.PROCESSING, instance_id=self.instance_id
        )
        return QueueStats(
            by_status=self.store.count_by_status(),
            active_workers=self.pool.active,
            max_concurrent=self.config.max_concurrent,
            instance_id=self.instance_id,
            processing_jobs=[job.lookup_hash for job in processing],
        )

    def get_transitions(self, lookup_hash: str) -> List[StateTransition]:
        return self.store.get_transitions(lookup_hash)


def _describe_wait(status: JobStatus, position: Optional[int]) -> str:
    if status == JobStatus.PROCESSING:
        return "Currently processing"
    if status == JobStatus.QUEUED:
        return f"Queue position: {position}" if position else "Queued"
    if status == JobStatus.COMPLETED:
        return "Completed"
    return "Failed"
