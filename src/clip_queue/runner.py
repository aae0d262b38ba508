"""High-level entry points used by the CLI.

This module sits on top of the queue package and turns resolved
configuration into running instances:

Usage:
    conf = config.resolve_config({"db": "shared.db"})

    # Submit a clip request
    runner.submit_payload(conf, payload_dict)

    # Run an instance until SIGINT/SIGTERM (or until the queue is drained)
    pipeline = runner.load_pipeline("myproject.render:make_pipeline", conf)
    runner.run_worker(conf, pipeline, drain=True)
"""

import importlib
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from tqdm import tqdm

from .models import ClipQueueConfig
from .queue import (
    ClipQueueManager,
    OrphanReclaimer,
    SQLiteJobStore,
    SubmissionError,
    SubmitResult,
    compute_lookup_hash,
)
from .queue.manager import submit_job
from .queue.models import ReclaimedJob
from .queue.pipeline import Pipeline

logger = logging.getLogger(__name__)

# Sleep between drain iterations when no job could be claimed
DRAIN_TICK_S = 0.5


def open_store(conf: ClipQueueConfig) -> SQLiteJobStore:
    return SQLiteJobStore(
        conf.store.db_path,
        busy_timeout_s=conf.store.busy_timeout_s,
        lock_retries=conf.store.lock_retries,
    )


def load_pipeline(target: str, conf: ClipQueueConfig) -> Pipeline:
    """Import a pipeline factory given as "module:callable" and build the pipeline.

    The factory is called with the resolved config and must return a callable
    taking a JobRecord and returning an ArtifactReference.

    Raises:
        ValueError: If the target is malformed, missing, or not callable
    """
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Pipeline must be given as module:callable, got '{target}'")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ValueError(f"Cannot import pipeline module '{module_name}': {e}") from e

    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ValueError(f"'{attr}' in module '{module_name}' is not a callable")

    pipeline = factory(conf)
    if not callable(pipeline):
        raise ValueError(f"Pipeline factory '{target}' returned {type(pipeline).__name__}")
    return pipeline


def submit_payload(
    conf: ClipQueueConfig,
    payload: Dict[str, Any],
    lookup_hash: Optional[str] = None,
    priority: int = 0,
    max_attempts: Optional[int] = None,
) -> SubmitResult:
    """Submit one clip request, deriving the lookup hash from the payload if not given.

    Raises:
        SubmissionError: Malformed payload or lookup hash
        StoreError: Store unavailable
    """
    if lookup_hash is None:
        try:
            lookup_hash = compute_lookup_hash(payload)
        except ValidationError as e:
            raise SubmissionError(f"Invalid payload: {e}") from e

    store = open_store(conf)
    try:
        return submit_job(
            store,
            lookup_hash,
            payload,
            priority=priority,
            max_attempts=conf.queue.max_attempts if max_attempts is None else max_attempts,
        )
    finally:
        store.close()


def reclaim_once(conf: ClipQueueConfig) -> List[ReclaimedJob]:
    """One orphan sweep with the configured thresholds."""
    store = open_store(conf)
    try:
        reclaimer = OrphanReclaimer(
            store,
            heartbeat_timeout_s=conf.queue.heartbeat_timeout_s,
            job_timeout_s=conf.queue.job_timeout_s,
            interval_s=conf.queue.reclaim_interval_s,
        )
        return reclaimer.sweep()
    finally:
        store.close()


def drain_queue(manager: ClipQueueManager, tick_s: float = DRAIN_TICK_S) -> Dict[str, int]:
    """Keep claiming until nothing this instance could claim is left.

    Stops when no job is running here, no job is processing anywhere and a
    claim attempt came back empty. Queued jobs held back by not_before are
    left in place.

    Returns:
        Final count per status
    """
    store = manager.store
    counts = store.count_by_status()
    finished_before = counts["completed"] + counts["failed"]

    with tqdm(total=counts["queued"] + counts["processing"], desc="Draining", unit="job") as bar:
        while not manager.wait_for_stop(0):
            idle = manager.active_workers == 0
            job = manager.poll_once()

            counts = store.count_by_status()
            finished = max(0, counts["completed"] + counts["failed"] - finished_before)
            bar.total = max(bar.total or 0, finished + counts["queued"] + counts["processing"])
            bar.n = min(finished, bar.total)
            bar.refresh()

            if job is None:
                if idle and counts["processing"] == 0:
                    break
                manager.wait_for_stop(tick_s)

    return counts


def run_worker(
    conf: ClipQueueConfig,
    pipeline: Pipeline,
    drain: bool = False,
    instance_id: Optional[str] = None,
    install_signals: bool = True,
) -> Dict[str, Any]:
    """Run one instance until stopped (or drained), then shut down gracefully.

    Returns:
        Summary with instance_id, released job count and final status counts
    """
    manager = ClipQueueManager.from_config(conf, pipeline, instance_id=instance_id)
    if install_signals:
        manager.install_signal_handlers()

    print(f"--- Starting clip-queue instance {manager.instance_id} ---")
    print(f"Store:          {conf.store.db_path}")
    print(f"Max concurrent: {conf.queue.max_concurrent}")

    manager.start()
    try:
        if drain:
            drain_queue(manager)
        else:
            while not manager.wait_for_stop(1.0):
                pass
    finally:
        released = manager.shutdown()

    counts = manager.store.count_by_status()
    manager.publisher.close()
    manager.store.close()
    return {"instance_id": manager.instance_id, "released": released, "counts": counts}
