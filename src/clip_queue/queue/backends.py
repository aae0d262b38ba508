from __future__ import annotations

"""Abstract base classes for the job store, result publication and worker pool.

These interfaces keep the scheduler, harness and liveness code independent of
the storage engine. The SQLite implementation is the reference backend; any
store offering an atomic conditional update can implement JobStore.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

if TYPE_CHECKING:
    from .models import (
        ArtifactReference,
        JobPayload,
        JobRecord,
        JobStatus,
        ReclaimedJob,
        StateTransition,
        SubmitResult,
    )


class JobStore(ABC):
    """Shared, persistent table of job records keyed by lookup hash.

    Implementations must provide:
    - Atomic claim (two racing claimers produce exactly one winner)
    - Compare-and-set on status/instance_id for every transition
    - Idempotent enqueue keyed on lookup_hash
    - Orphan reclaim safe to run from many instances at once
    """

    @abstractmethod
    def enqueue(
        self,
        lookup_hash: str,
        payload: "JobPayload",
        priority: int = 0,
        max_attempts: int = 3,
    ) -> "SubmitResult":
        """Insert a queued job, or report the state of the existing one.

        Implementation notes:
        - queued/processing/completed records are returned unchanged
        - failed records are re-armed: queued, attempts=0, last_error cleared
        - error_history is never truncated
        """

    @abstractmethod
    def claim_next(
        self, instance_id: str, now: Optional[datetime] = None
    ) -> Optional["JobRecord"]:
        """Atomically claim the next eligible job for instance_id.

        Returns:
            The claimed record (status=processing, attempts incremented),
            or None if nothing is eligible or another instance won the race.

        Implementation notes:
        - Eligible: status=queued AND attempts < max_attempts AND not_before passed
        - Order: priority DESC, queued_at ASC
        - Sets instance_id, claimed_at = started_at = heartbeat_at = now
        """

    @abstractmethod
    def heartbeat(self, lookup_hash: str, instance_id: str) -> bool:
        """Refresh heartbeat_at if instance_id still holds the claim.

        Returns:
            False if the claim was lost (reclaimed, released or finished)
        """

    @abstractmethod
    def heartbeat_instance(self, instance_id: str) -> int:
        """Refresh heartbeat_at for every processing job held by instance_id.

        Returns:
            Number of records refreshed
        """

    @abstractmethod
    def complete(
        self, lookup_hash: str, instance_id: str, artifact: "ArtifactReference"
    ) -> bool:
        """Mark a held job completed and release ownership.

        Returns:
            False if instance_id no longer holds the claim (nothing written)
        """

    @abstractmethod
    def fail(
        self, lookup_hash: str, instance_id: str, error: str, retry: bool = True
    ) -> Optional["JobStatus"]:
        """Record a failed attempt on a held job.

        Appends to error_history and sets last_error. Requeues when retry is
        allowed and attempts < max_attempts, otherwise marks failed.

        Returns:
            The new status, or None if the claim was lost (nothing written)
        """

    @abstractmethod
    def reclaim_orphans(
        self,
        heartbeat_timeout_s: float,
        job_timeout_s: float,
        now: Optional[datetime] = None,
    ) -> List["ReclaimedJob"]:
        """Reset processing jobs whose owner stopped proving liveness.

        Implementation notes:
        - Stale: heartbeat_at older than heartbeat_timeout_s, heartbeat_at
          absent, or claimed_at older than job_timeout_s
        - Staleness is re-checked inside the write (fresh heartbeat wins)
        - attempts is NOT incremented; exhausted jobs become failed instead
        """

    @abstractmethod
    def release_instance(self, instance_id: str) -> int:
        """Return every processing job held by instance_id to the queue.

        The interrupted attempt is refunded, so even a job on its last
        attempt is requeued.

        Returns:
            Number of released records
        """

    @abstractmethod
    def get(self, lookup_hash: str) -> Optional["JobRecord"]:
        """Fetch one record, or None if unknown."""

    @abstractmethod
    def queue_position(self, lookup_hash: str) -> Optional[int]:
        """1-based place of a queued job in claim order, None if not queued."""

    @abstractmethod
    def count_by_status(self) -> Dict[str, int]:
        """Record counts for every status (zero-filled)."""

    @abstractmethod
    def list_jobs(
        self, status: Optional[str] = None, instance_id: Optional[str] = None
    ) -> List["JobRecord"]:
        """Query records, optionally filtered.

        Can be O(n) - only used for status and admin commands.
        """

    @abstractmethod
    def get_transitions(self, lookup_hash: str) -> List["StateTransition"]:
        """Audit trail of one job, oldest first."""

    def close_thread_connection(self) -> None:
        """Release per-thread resources; no-op for stores without any."""


class ResultPublisher(ABC):
    """Best-effort side channel mirroring job outcomes into a work-product store."""

    @abstractmethod
    def publish(self, lookup_hash: str, status: str, result: Dict[str, Any]) -> None:
        """Merge result fields into the work product for lookup_hash.

        Args:
            lookup_hash: Job key
            status: Work product status (queued, processing, completed, failed)
            result: Fields merged into the stored result document
        """

    def close(self) -> None:
        """Release connections; no-op for publishers without any."""


class WorkerPool(ABC):
    """Bounded executor for claimed jobs."""

    @abstractmethod
    def submit(self, fn: Callable, *args, **kwargs) -> Any:
        """Run fn in the pool without blocking the caller.

        Returns:
            Future or task handle
        """

    @property
    @abstractmethod
    def active(self) -> int:
        """Jobs currently dispatched and not yet finished."""

    @abstractmethod
    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no job is active.

        Returns:
            True if the pool drained, False on timeout
        """

    @abstractmethod
    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work.

        Args:
            wait: If True, wait for running jobs to finish
        """
