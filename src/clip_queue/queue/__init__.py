"""Persistent multi-instance job queue for clip generation."""

from .backends import JobStore, ResultPublisher, WorkerPool
from .errors import (
    ArtifactVerificationError,
    PermanentJobError,
    QueueError,
    StageError,
    StoreError,
    SubmissionError,
)
from .hashing import compute_lookup_hash
from .liveness import InstanceHeartbeat, OrphanReclaimer
from .manager import ClipQueueManager
from .models import (
    ArtifactReference,
    ClipData,
    ClipPayload,
    ErrorEntry,
    JobOutcome,
    JobRecord,
    JobStatus,
    JobStatusView,
    QueueStats,
    RenderRequest,
    Subtitle,
    SubmitResult,
)
from .pipeline import Stage, StagedPipeline, build_clip_pipeline
from .publisher import NullPublisher, SQLiteResultPublisher
from .scheduler import ClaimScheduler
from .sqlite_backend import SQLiteJobStore
from .worker import ExecutionHarness, JobWorkerPool

__all__ = [
    "JobStore",
    "ResultPublisher",
    "WorkerPool",
    "QueueError",
    "SubmissionError",
    "StoreError",
    "PermanentJobError",
    "StageError",
    "ArtifactVerificationError",
    "compute_lookup_hash",
    "InstanceHeartbeat",
    "OrphanReclaimer",
    "ClipQueueManager",
    "ArtifactReference",
    "ClipData",
    "ClipPayload",
    "ErrorEntry",
    "JobOutcome",
    "JobRecord",
    "JobStatus",
    "JobStatusView",
    "QueueStats",
    "RenderRequest",
    "Subtitle",
    "SubmitResult",
    "Stage",
    "StagedPipeline",
    "build_clip_pipeline",
    "NullPublisher",
    "SQLiteResultPublisher",
    "ClaimScheduler",
    "SQLiteJobStore",
    "ExecutionHarness",
    "JobWorkerPool",
]
