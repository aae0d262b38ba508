"""Claim scheduler: the per-instance polling loop.

Each tick claims at most one job, and only while the instance has a free
worker slot. Claimed jobs go to the worker pool so the poller never waits
on execution.
"""

import logging
import threading
from concurrent.futures import Future
from typing import Callable, Optional

from .backends import JobStore, WorkerPool
from .errors import StoreError
from .models import JobOutcome, JobRecord
from .timers import PeriodicTask

logger = logging.getLogger(__name__)


class ClaimScheduler:
    """Poll the shared store and hand claimed jobs to the worker pool."""

    def __init__(
        self,
        store: JobStore,
        instance_id: str,
        pool: WorkerPool,
        handler: Callable[[JobRecord], JobOutcome],
        max_concurrent: int,
        poll_interval_s: float,
    ):
        """
        Args:
            store: Shared job store
            instance_id: Identity stamped on claimed jobs
            pool: Executor for claimed jobs
            handler: Runs one claimed job (ExecutionHarness.run)
            max_concurrent: Worker slots of this instance
            poll_interval_s: Seconds between ticks
        """
        self.store = store
        self.instance_id = instance_id
        self.pool = pool
        self.handler = handler
        self.max_concurrent = max_concurrent
        self.poll_interval_s = poll_interval_s

        self._stopped = threading.Event()
        # Serializes the slot check and the claim when tick() is also called directly
        self._tick_lock = threading.Lock()
        self._task = PeriodicTask(
            name="claim-poller",
            interval_s=poll_interval_s,
            fn=self.tick,
            on_exit=store.close_thread_connection,
        )

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def start(self) -> None:
        self._stopped.clear()
        self._task.start()
        logger.info("Job poller started - checking every %ss", self.poll_interval_s)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Stop claiming; an in-progress tick finishes first."""
        self._stopped.set()
        self._task.stop(timeout=timeout)

    def tick(self) -> Optional[JobRecord]:
        """Claim and dispatch at most one job.

        Returns:
            The dispatched job, or None (no free slot, nothing eligible,
            lost race, store unavailable, or stopped)
        """
        with self._tick_lock:
            if self.stopped or self.pool.active >= self.max_concurrent:
                return None

            try:
                job = self.store.claim_next(self.instance_id)
            except StoreError as e:
                logger.error("Failed to claim job: %s", e)
                return None

            if job is None:
                return None

            try:
                future = self.pool.submit(self.handler, job)
            except RuntimeError as e:
                # Job stays held by this instance until release or reclaim
                logger.error("Could not dispatch claimed job %s: %s", job.lookup_hash, e)
                return None

        future.add_done_callback(lambda f: self._log_unhandled(job.lookup_hash, f))
        return job

    def _log_unhandled(self, lookup_hash: str, future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Failed to process claimed job %s", lookup_hash, exc_info=exc)
