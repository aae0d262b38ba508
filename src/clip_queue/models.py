"""Pydantic models for configuration and validation."""

from typing import Optional

from pydantic import BaseModel, Field, model_validator


class QueueConfig(BaseModel):
    """Scheduling, liveness and retry parameters for one instance."""

    max_concurrent: int = Field(
        default=2, gt=0, description="Maximum jobs processed at once by this instance"
    )
    poll_interval_s: float = Field(
        default=5.0, gt=0.0, description="Seconds between claim attempts"
    )
    heartbeat_interval_s: float = Field(
        default=30.0, gt=0.0, description="Per-job heartbeat refresh interval in seconds"
    )
    instance_heartbeat_interval_s: float = Field(
        default=30.0,
        gt=0.0,
        description="Interval of the batched heartbeat for all jobs held by this instance",
    )
    heartbeat_timeout_s: float = Field(
        default=600.0,
        gt=0.0,
        description="A processing job whose heartbeat is older than this is reclaimed",
    )
    job_timeout_s: float = Field(
        default=1800.0,
        gt=0.0,
        description="Absolute limit on claim age, reclaimed even if heartbeats keep flowing",
    )
    reclaim_interval_s: float = Field(
        default=60.0, gt=0.0, description="Seconds between orphan reclaim sweeps"
    )
    shutdown_grace_s: float = Field(
        default=30.0, ge=0.0, description="How long shutdown waits for in-flight jobs"
    )
    max_attempts: int = Field(default=3, ge=1, description="Default retry limit for new jobs")

    @model_validator(mode="after")
    def heartbeat_below_timeout(self) -> "QueueConfig":
        """A heartbeat slower than the staleness threshold would reclaim healthy jobs."""
        for name in ("heartbeat_interval_s", "instance_heartbeat_interval_s"):
            if getattr(self, name) >= self.heartbeat_timeout_s:
                raise ValueError(
                    f"{name} ({getattr(self, name)}) must be < "
                    f"heartbeat_timeout_s ({self.heartbeat_timeout_s})"
                )
        return self


class StoreConfig(BaseModel):
    """Shared job store location and lock handling."""

    db_path: str = Field(default="clip_queue.db", description="Path to the shared SQLite file")
    busy_timeout_s: float = Field(
        default=5.0, ge=0.0, description="SQLite busy timeout before raising 'database is locked'"
    )
    lock_retries: int = Field(
        default=3, ge=1, description="Attempts for a write transaction under lock contention"
    )


class ResultsConfig(BaseModel):
    """Optional mirror of job outcomes for read access elsewhere."""

    enabled: bool = Field(default=False, description="Publish job outcomes to the results table")
    db_path: Optional[str] = Field(
        default=None, description="Results database (None = same file as the job store)"
    )


class ClipQueueConfig(BaseModel):
    """Complete application configuration with validation."""

    queue: QueueConfig = Field(default_factory=QueueConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    results: ResultsConfig = Field(default_factory=ResultsConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "ClipQueueConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "ClipQueueConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("db") is not None:
            config_dict["store"]["db_path"] = cli_args["db"]
        if cli_args.get("max_concurrent") is not None:
            config_dict["queue"]["max_concurrent"] = cli_args["max_concurrent"]
        if cli_args.get("poll_interval") is not None:
            config_dict["queue"]["poll_interval_s"] = cli_args["poll_interval"]
        if cli_args.get("max_attempts") is not None:
            config_dict["queue"]["max_attempts"] = cli_args["max_attempts"]
        if cli_args.get("results_db") is not None:
            config_dict["results"]["enabled"] = True
            config_dict["results"]["db_path"] = cli_args["results_db"]

        return ClipQueueConfig.from_dict(config_dict)
