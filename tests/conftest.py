import tempfile
from pathlib import Path

import pytest

from clip_queue.models import QueueConfig
from clip_queue.queue import SQLiteJobStore


@pytest.fixture
def temp_db():
    """Create temporary database path for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield str(Path(tmpdir) / "test_queue.db")


@pytest.fixture
def store(temp_db):
    """SQLiteJobStore on a fresh file."""
    s = SQLiteJobStore(temp_db)
    yield s
    s.close()


@pytest.fixture
def make_payload():
    """Factory for raw clip payload dicts."""

    def _make(guid="episode-1", start=10.0, end=40.0, quote="what a moment", **clip_fields):
        clip = {"quote": quote, "guid": guid, "feed_id": "feed-42"}
        clip.update(clip_fields)
        payload = {"kind": "clip", "clip": clip}
        if start is not None and end is not None:
            payload["timestamps"] = [start, end]
        return payload

    return _make


@pytest.fixture
def fast_config():
    """Short intervals so liveness behaviour is observable in tests."""
    return QueueConfig(
        max_concurrent=2,
        poll_interval_s=0.05,
        heartbeat_interval_s=0.05,
        instance_heartbeat_interval_s=0.05,
        heartbeat_timeout_s=2.0,
        job_timeout_s=60.0,
        reclaim_interval_s=0.5,
        shutdown_grace_s=1.0,
        max_attempts=3,
    )

