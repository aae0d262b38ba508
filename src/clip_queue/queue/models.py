"""Pydantic models for job queue data structures.

This module defines the type-safe models used throughout the queue system.
All models use Pydantic for validation and serialization.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware current time used for every stored timestamp."""
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Job processing states with explicit semantics.

    State transitions:
        queued → processing      (instance claims the job)
        processing → completed   (pipeline succeeded + artifact verified)
        processing → queued      (failure with attempts left, reclaim, shutdown)
        processing → failed      (attempts exhausted or permanent error)
        failed → queued          (explicit re-arm via resubmission)
    """

    QUEUED = "queued"  # Waiting for a claim
    PROCESSING = "processing"  # Claimed by an instance
    COMPLETED = "completed"  # Artifact produced and verified
    FAILED = "failed"  # Terminal until re-armed


class TimeContext(BaseModel):
    """Time window attached to a clip by the search layer."""

    start_time: Optional[float] = Field(default=None, ge=0.0, description="Window start (s)")
    end_time: Optional[float] = Field(default=None, ge=0.0, description="Window end (s)")


class ClipData(BaseModel):
    """Clip description as produced upstream.

    Unknown keys are kept so renderers can read fields the queue does not care about.
    """

    model_config = ConfigDict(extra="allow")

    quote: str = Field(default="", description="Text shown with the clip")
    guid: Optional[str] = Field(default=None, description="Episode GUID")
    feed_id: Optional[str] = Field(default=None, description="Podcast feed identifier")
    share_link: Optional[str] = Field(default=None, description="Public share link")
    time_context: TimeContext = Field(default_factory=TimeContext)


class Subtitle(BaseModel):
    """One timed subtitle line."""

    start: float = Field(ge=0.0, description="Start time in seconds")
    end: float = Field(ge=0.0, description="End time in seconds")
    text: str


class ClipPayload(BaseModel):
    """Work description for a clip job.

    Owned by the submitter until claimed, read-only to the harness.
    """

    kind: Literal["clip"] = "clip"
    clip: ClipData
    timestamps: Optional[List[float]] = Field(
        default=None, description="Explicit [start, end] override in seconds"
    )
    subtitles: Optional[List[Subtitle]] = Field(
        default=None, description="Precomputed subtitles (skips generation)"
    )
    not_before: Optional[datetime] = Field(
        default=None, description="Job is not claimed before this time"
    )

    @field_validator("timestamps")
    @classmethod
    def valid_time_range(cls, v: Optional[List[float]]) -> Optional[List[float]]:
        """Validate that the override is a non-negative, increasing pair."""
        if v is None:
            return v
        if len(v) != 2:
            raise ValueError(f"timestamps must be [start, end], got {len(v)} values")
        start, end = v
        if start < 0 or end <= start:
            raise ValueError(f"invalid time range {start}-{end}")
        return v

    @field_validator("not_before")
    @classmethod
    def aware_not_before(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


# Single tagged kind today; new kinds join this union with their own literal tag
JobPayload = ClipPayload


def parse_payload(data: Union[JobPayload, Dict[str, Any]]) -> JobPayload:
    """Validate raw submitter data into a payload model.

    Raises:
        pydantic.ValidationError: If the payload is malformed
    """
    if isinstance(data, ClipPayload):
        return data
    return ClipPayload.model_validate(data)


class ErrorEntry(BaseModel):
    """One failed attempt in a job's error trail."""

    attempt: int = Field(..., ge=0, description="Attempt number that failed")
    error: str = Field(..., description="Error message")
    timestamp: datetime = Field(default_factory=utcnow)


class ArtifactReference(BaseModel):
    """Pointer to the produced artifact (e.g. CDN file id or URL)."""

    uri: str = Field(..., description="Artifact location; empty means nothing was produced")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RenderRequest(BaseModel):
    """Everything the external renderer needs for one clip."""

    lookup_hash: str
    clip: ClipData
    start: float = Field(ge=0.0)
    end: float = Field(gt=0.0)
    text: str = ""
    subtitles: Optional[List[Subtitle]] = None


class JobRecord(BaseModel):
    """Persistent job record, one per lookup hash."""

    lookup_hash: str = Field(..., min_length=1, description="Unique business key")
    status: JobStatus = Field(default=JobStatus.QUEUED)
    priority: int = Field(default=0, description="Higher = claimed first")
    attempts: int = Field(default=0, ge=0, description="Claims so far")
    max_attempts: int = Field(default=3, ge=1, description="Max retry limit")
    payload: JobPayload
    instance_id: Optional[str] = Field(default=None, description="Instance holding the claim")
    claimed_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None
    queued_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    not_before: Optional[datetime] = None
    last_error: Optional[str] = None
    error_history: List[ErrorEntry] = Field(default_factory=list)
    artifact: Optional[ArtifactReference] = None


class SubmitResult(BaseModel):
    """Answer to a submission."""

    status: JobStatus
    lookup_hash: str


class JobStatusView(BaseModel):
    """Operational view of one job."""

    lookup_hash: str
    status: JobStatus
    attempts: int
    max_attempts: int
    last_error: Optional[str] = None
    error_history: List[ErrorEntry] = Field(default_factory=list)
    position: Optional[int] = Field(
        default=None, description="0 while processing, 1-based claim order while queued"
    )
    estimated_wait: str = Field(default="", description="Human-readable queue state")


class QueueStats(BaseModel):
    """Queue-wide counts plus this instance's load."""

    by_status: Dict[str, int]
    active_workers: int
    max_concurrent: int
    instance_id: str
    processing_jobs: List[str] = Field(default_factory=list)


class JobOutcome(BaseModel):
    """Processing outcome returned by the harness.

    `status` is None when the claim was lost before the outcome could be recorded.
    """

    lookup_hash: str
    status: Optional[JobStatus] = None
    artifact: Optional[ArtifactReference] = None
    error_message: Optional[str] = None
    duration_s: float = Field(default=0.0, ge=0.0)
    stage_errors: Dict[str, str] = Field(default_factory=dict)


class ReclaimedJob(BaseModel):
    """A processing job the reclaimer took back."""

    lookup_hash: str
    previous_instance_id: Optional[str] = None
    status: JobStatus = Field(..., description="queued, or failed when attempts were exhausted")


class StateTransition(BaseModel):
    """Audit log entry for job state changes."""

    id: Optional[int] = Field(default=None, description="Auto-increment ID")
    lookup_hash: str
    from_state: Optional[str] = None
    to_state: str
    timestamp: datetime = Field(default_factory=utcnow)
    instance_id: Optional[str] = Field(default=None, description="Instance that caused it")
    error_snippet: Optional[str] = Field(default=None, description="First 200 chars of error")
