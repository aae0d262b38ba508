"""Liveness subsystem: instance-wide heartbeat and orphan reclaimer.

The per-job heartbeat lives in the harness. These two run independently of
it and of claim polling:

- InstanceHeartbeat refreshes every job this instance holds in one UPDATE
- OrphanReclaimer returns processing jobs of dead or hung instances to the
  queue; safe to run from every instance at once
"""

import logging
from datetime import datetime
from typing import List, Optional

from .backends import JobStore
from .errors import StoreError
from .models import JobStatus, ReclaimedJob
from .timers import PeriodicTask

logger = logging.getLogger(__name__)


class InstanceHeartbeat:
    """Batched heartbeat proving this instance is alive."""

    def __init__(self, store: JobStore, instance_id: str, interval_s: float):
        self.store = store
        self.instance_id = instance_id
        self.interval_s = interval_s
        self._task = PeriodicTask(
            name="instance-heartbeat",
            interval_s=interval_s,
            fn=self.beat,
            on_exit=store.close_thread_connection,
        )

    def start(self) -> None:
        self._task.start()
        logger.info("Heartbeat started - updating every %ss", self.interval_s)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._task.stop(timeout=timeout)

    def beat(self) -> int:
        """Refresh all held jobs; returns how many were refreshed."""
        try:
            refreshed = self.store.heartbeat_instance(self.instance_id)
        except StoreError as e:
            logger.error("Heartbeat update failed: %s", e)
            return 0
        logger.debug("Heartbeat refreshed %d jobs for %s", refreshed, self.instance_id)
        return refreshed


class OrphanReclaimer:
    """Periodic sweep for processing jobs whose owner stopped heartbeating."""

    def __init__(
        self,
        store: JobStore,
        heartbeat_timeout_s: float,
        job_timeout_s: float,
        interval_s: float,
    ):
        """
        Args:
            store: Shared job store
            heartbeat_timeout_s: Heartbeat age after which a job is orphaned
            job_timeout_s: Claim age after which a job is orphaned regardless of heartbeats
            interval_s: Seconds between sweeps
        """
        self.store = store
        self.heartbeat_timeout_s = heartbeat_timeout_s
        self.job_timeout_s = job_timeout_s
        self.interval_s = interval_s
        self._task = PeriodicTask(
            name="orphan-reclaimer",
            interval_s=interval_s,
            fn=self.sweep,
            run_immediately=True,
            on_exit=store.close_thread_connection,
        )

    def start(self) -> None:
        # First sweep runs at start-up to recover from a crash of this host
        self._task.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._task.stop(timeout=timeout)

    def sweep(self, now: Optional[datetime] = None) -> List[ReclaimedJob]:
        """Reclaim orphaned jobs once.

        Returns:
            Jobs reset to queued (or failed when out of attempts); empty on store errors
        """
        try:
            reclaimed = self.store.reclaim_orphans(
                self.heartbeat_timeout_s, self.job_timeout_s, now=now
            )
        except StoreError as e:
            logger.error("Failed to reclaim orphaned jobs: %s", e)
            return []

        if not reclaimed:
            logger.debug("No orphaned jobs found")
            return reclaimed

        for job in reclaimed:
            if job.status == JobStatus.FAILED:
                logger.warning(
                    "Orphaned job %s (instance %s) out of attempts, marked failed",
                    job.lookup_hash,
                    job.previous_instance_id,
                )
            else:
                logger.warning(
                    "Reclaimed orphaned job %s from instance %s",
                    job.lookup_hash,
                    job.previous_instance_id,
                )
        logger.info("Reclaimed %d orphaned jobs", len(reclaimed))
        return reclaimed
