"""SQLite implementation of JobStore.

This module provides the shared, crash-safe job table using:
- sqlite-utils for schema management and reads
- WAL mode so readers never block the claiming writer
- BEGIN IMMEDIATE transactions for every state transition
- Exponential backoff retry for database lock handling
- Compare-and-set predicates on status/instance_id for every mutation
- A state transition log as audit trail

Several processes may open the same file; each thread gets its own connection.
"""

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

try:
    from sqlite_utils import Database
    from sqlite_utils.db import NotFoundError
except ImportError:
    raise ImportError(
        "sqlite-utils is required for queue functionality. "
        "Install it with: pip install sqlite-utils"
    )

from .backends import JobStore
from .errors import StoreError
from .models import (
    ArtifactReference,
    ErrorEntry,
    JobPayload,
    JobRecord,
    JobStatus,
    ReclaimedJob,
    StateTransition,
    SubmitResult,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ERROR_CHARS = 2000

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS jobs (
    lookup_hash TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    priority INTEGER NOT NULL DEFAULT 0,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    payload TEXT NOT NULL,
    instance_id TEXT,
    claimed_at TEXT,
    heartbeat_at TEXT,
    queued_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    failed_at TEXT,
    not_before TEXT,
    last_error TEXT,
    error_history TEXT NOT NULL DEFAULT '[]',
    artifact TEXT
);

-- Claim selection: status filter, then priority band, then FIFO
CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(status, priority DESC, queued_at ASC);
-- Liveness sweeps: per-instance heartbeat refresh and release
CREATE INDEX IF NOT EXISTS idx_jobs_liveness ON jobs(instance_id, heartbeat_at);

CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    lookup_hash TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    instance_id TEXT,
    error_snippet TEXT
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(lookup_hash, id);
"""

# A processing job is stale when its heartbeat is old or missing, or the claim itself is too old
STALE_PREDICATE = (
    "status = 'processing' AND ("
    "heartbeat_at IS NULL OR heartbeat_at < :heartbeat_cutoff OR claimed_at < :claim_cutoff)"
)


def _ts(dt: datetime) -> str:
    """Fixed-width UTC ISO string; lexical order equals time order."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _truncate(error: Optional[str]) -> Optional[str]:
    return error[:MAX_ERROR_CHARS] if error else error


def _fetch_dicts(cursor: sqlite3.Cursor) -> List[Dict[str, Any]]:
    columns = [c[0] for c in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


class SQLiteJobStore(JobStore):
    """SQLite-based job store with atomic claim and conditional transitions.

    Concurrency safety:
    - BEGIN IMMEDIATE takes the write lock at transaction start, so a
      select-then-update can never interleave with another instance's claim
    - Every UPDATE repeats the precondition it depends on (status, owner,
      staleness), so a lost race changes zero rows instead of corrupting state
    - Exponential backoff handles transient lock contention
    """

    def __init__(self, db_path: str, busy_timeout_s: float = 5.0, lock_retries: int = 3):
        """Open (and create if needed) the job database.

        Args:
            db_path: Path to SQLite database file shared by all instances
            busy_timeout_s: How long SQLite waits on a lock before raising
            lock_retries: Attempts per write transaction on 'database is locked'
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_s = busy_timeout_s
        self.lock_retries = lock_retries

        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()

        with self._store_errors("create schema"):
            self.db.executescript(SCHEMA_SQL)

    @property
    def db(self) -> Database:
        """Connection owned by the calling thread (sqlite3 objects are not thread-safe)."""
        db = getattr(self._local, "db", None)
        if db is None:
            # Autocommit mode: transactions are opened explicitly with BEGIN IMMEDIATE.
            # Each connection is used by one thread only; close() may run elsewhere.
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_s,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            db = Database(conn)
            self._local.db = db
            with self._connections_lock:
                self._connections.append(conn)
        return db

    def close_thread_connection(self) -> None:
        """Close the calling thread's connection; called by short-lived threads on exit."""
        db = getattr(self._local, "db", None)
        if db is None:
            return
        with self._connections_lock:
            if db.conn in self._connections:
                self._connections.remove(db.conn)
        db.conn.close()
        self._local.db = None

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    # -- transaction plumbing -------------------------------------------------

    @contextmanager
    def _store_errors(self, action: str):
        try:
            yield
        except sqlite3.Error as e:
            raise StoreError(f"Failed to {action}: {e}") from e

    @contextmanager
    def _transaction(self):
        conn = self.db.conn
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

    def _write(self, action: str, fn: Callable[[sqlite3.Connection], T]) -> T:
        """Run fn inside BEGIN IMMEDIATE with backoff on SQLITE_BUSY.

        Backoff: 100ms, 200ms, 400ms, ... between attempts.

        Raises:
            StoreError: If the store stays locked or any other SQLite error occurs
        """
        for attempt in range(self.lock_retries):
            try:
                with self._transaction() as conn:
                    return fn(conn)
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < self.lock_retries - 1:
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise StoreError(f"Failed to {action}: {e}") from e
            except sqlite3.Error as e:
                raise StoreError(f"Failed to {action}: {e}") from e
        raise StoreError(f"Failed to {action}: database is locked")

    def _log_transition(
        self,
        conn: sqlite3.Connection,
        lookup_hash: str,
        from_state: Optional[str],
        to_state: str,
        instance_id: Optional[str] = None,
        error: Optional[str] = None,
        now: Optional[str] = None,
    ) -> None:
        """Append to the audit trail inside the caller's transaction."""
        conn.execute(
            """
            INSERT INTO state_transitions
                (lookup_hash, from_state, to_state, timestamp, instance_id, error_snippet)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                lookup_hash,
                from_state,
                to_state,
                now or _ts(utcnow()),
                instance_id,
                error[:200] if error else None,
            ),
        )

    def _row_to_record(self, row: Dict[str, Any]) -> JobRecord:
        """Convert a jobs row (JSON columns still encoded) to JobRecord."""
        data = dict(row)
        data["payload"] = json.loads(data["payload"])
        data["error_history"] = json.loads(data["error_history"]) if data.get("error_history") else []
        data["artifact"] = json.loads(data["artifact"]) if data.get("artifact") else None
        return JobRecord.model_validate(data)

    # -- submission -----------------------------------------------------------

    def enqueue(
        self,
        lookup_hash: str,
        payload: JobPayload,
        priority: int = 0,
        max_attempts: int = 3,
    ) -> SubmitResult:
        """Insert a queued job, or report the existing one (idempotent).

        Idempotency:
        - queued, processing or completed: no-op, current status returned
        - failed: re-armed to queued with attempts=0 and last_error cleared
        - missing: inserted as queued
        """
        payload_json = payload.model_dump_json()
        not_before = _ts(payload.not_before) if payload.not_before else None

        def op(conn: sqlite3.Connection) -> Tuple[JobStatus, str]:
            now = _ts(utcnow())
            row = conn.execute(
                "SELECT status FROM jobs WHERE lookup_hash = ?", (lookup_hash,)
            ).fetchone()

            if row is None:
                conn.execute(
                    """
                    INSERT INTO jobs (
                        lookup_hash, status, priority, attempts, max_attempts,
                        payload, queued_at, not_before, error_history
                    ) VALUES (?, ?, ?, 0, ?, ?, ?, ?, '[]')
                    """,
                    (
                        lookup_hash,
                        JobStatus.QUEUED.value,
                        priority,
                        max_attempts,
                        payload_json,
                        now,
                        not_before,
                    ),
                )
                self._log_transition(conn, lookup_hash, None, JobStatus.QUEUED.value, now=now)
                return JobStatus.QUEUED, "inserted"

            status = JobStatus(row[0])
            if status != JobStatus.FAILED:
                return status, "existing"

            # Explicit re-arm; error_history stays as audit trail
            conn.execute(
                """
                UPDATE jobs
                SET status = ?, attempts = 0, last_error = NULL,
                    queued_at = ?, failed_at = NULL
                WHERE lookup_hash = ? AND status = ?
                """,
                (JobStatus.QUEUED.value, now, lookup_hash, JobStatus.FAILED.value),
            )
            self._log_transition(
                conn,
                lookup_hash,
                JobStatus.FAILED.value,
                JobStatus.QUEUED.value,
                error="Re-armed by resubmission",
                now=now,
            )
            return JobStatus.QUEUED, "rearmed"

        status, action = self._write("enqueue job", op)
        if action == "inserted":
            logger.info("Job %s added to persistent queue", lookup_hash)
        elif action == "rearmed":
            logger.info("Failed job %s re-armed for retry", lookup_hash)
        else:
            logger.debug("Job %s already %s, submission ignored", lookup_hash, status.value)
        return SubmitResult(status=status, lookup_hash=lookup_hash)

    # -- claiming -------------------------------------------------------------

    def claim_next(self, instance_id: str, now: Optional[datetime] = None) -> Optional[JobRecord]:
        """Atomically claim the next eligible job.

        Atomicity: BEGIN IMMEDIATE + UPDATE ... WHERE status='queued' RETURNING.
        The outer status check makes a lost race a zero-row update.
        """

        def op(conn: sqlite3.Connection) -> Optional[Dict[str, Any]]:
            stamp = _ts(now or utcnow())
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = :processing,
                    instance_id = :instance_id,
                    claimed_at = :now,
                    started_at = :now,
                    heartbeat_at = :now,
                    attempts = attempts + 1
                WHERE lookup_hash = (
                    SELECT lookup_hash FROM jobs
                    WHERE status = :queued
                      AND attempts < max_attempts
                      AND (not_before IS NULL OR not_before <= :now)
                    ORDER BY priority DESC, queued_at ASC
                    LIMIT 1
                )
                AND status = :queued
                RETURNING *
                """,
                {
                    "processing": JobStatus.PROCESSING.value,
                    "queued": JobStatus.QUEUED.value,
                    "instance_id": instance_id,
                    "now": stamp,
                },
            )
            rows = _fetch_dicts(cursor)
            if not rows:
                return None

            self._log_transition(
                conn,
                rows[0]["lookup_hash"],
                JobStatus.QUEUED.value,
                JobStatus.PROCESSING.value,
                instance_id=instance_id,
                now=stamp,
            )
            return rows[0]

        row = self._write("claim job", op)
        if row is None:
            return None

        job = self._row_to_record(row)
        logger.info(
            "Claimed job %s (attempt %d/%d) on instance %s",
            job.lookup_hash,
            job.attempts,
            job.max_attempts,
            instance_id,
        )
        return job

    # -- heartbeats -----------------------------------------------------------

    def heartbeat(self, lookup_hash: str, instance_id: str) -> bool:
        """Refresh heartbeat_at while instance_id still holds the claim."""

        def op(conn: sqlite3.Connection) -> int:
            return conn.execute(
                """
                UPDATE jobs
                SET heartbeat_at = ?
                WHERE lookup_hash = ? AND instance_id = ? AND status = ?
                """,
                (_ts(utcnow()), lookup_hash, instance_id, JobStatus.PROCESSING.value),
            ).rowcount

        return self._write("update heartbeat", op) > 0

    def heartbeat_instance(self, instance_id: str) -> int:
        """Batched heartbeat for every job held by instance_id."""

        def op(conn: sqlite3.Connection) -> int:
            return conn.execute(
                """
                UPDATE jobs
                SET heartbeat_at = ?
                WHERE instance_id = ? AND status = ?
                """,
                (_ts(utcnow()), instance_id, JobStatus.PROCESSING.value),
            ).rowcount

        return self._write("update instance heartbeat", op)

    # -- outcomes -------------------------------------------------------------

    def complete(self, lookup_hash: str, instance_id: str, artifact: ArtifactReference) -> bool:
        """Mark job completed and release ownership (only if still held)."""

        def op(conn: sqlite3.Connection) -> int:
            now = _ts(utcnow())
            updated = conn.execute(
                """
                UPDATE jobs
                SET status = ?, completed_at = ?, instance_id = NULL, artifact = ?
                WHERE lookup_hash = ? AND instance_id = ? AND status = ?
                """,
                (
                    JobStatus.COMPLETED.value,
                    now,
                    artifact.model_dump_json(),
                    lookup_hash,
                    instance_id,
                    JobStatus.PROCESSING.value,
                ),
            ).rowcount
            if updated:
                self._log_transition(
                    conn,
                    lookup_hash,
                    JobStatus.PROCESSING.value,
                    JobStatus.COMPLETED.value,
                    instance_id=instance_id,
                    now=now,
                )
            return updated

        return self._write("complete job", op) > 0

    def fail(
        self, lookup_hash: str, instance_id: str, error: str, retry: bool = True
    ) -> Optional[JobStatus]:
        """Record a failed attempt; requeue while attempts remain.

        Retry logic:
        - retry=True and attempts < max_attempts: back to 'queued'
        - otherwise: 'failed' (terminal until re-armed)
        """
        error = _truncate(error) or "Unknown error"

        def op(conn: sqlite3.Connection) -> Optional[JobStatus]:
            now_dt = utcnow()
            now = _ts(now_dt)
            row = conn.execute(
                """
                SELECT attempts, max_attempts, error_history FROM jobs
                WHERE lookup_hash = ? AND instance_id = ? AND status = ?
                """,
                (lookup_hash, instance_id, JobStatus.PROCESSING.value),
            ).fetchone()
            if row is None:
                return None

            attempts, max_attempts, history_json = row
            history = json.loads(history_json) if history_json else []
            history.append(
                ErrorEntry(attempt=attempts, error=error, timestamp=now_dt).model_dump(mode="json")
            )

            if retry and attempts < max_attempts:
                new_status = JobStatus.QUEUED
                conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?, instance_id = NULL, claimed_at = NULL,
                        heartbeat_at = NULL, started_at = NULL,
                        last_error = ?, error_history = ?
                    WHERE lookup_hash = ? AND instance_id = ? AND status = ?
                    """,
                    (
                        new_status.value,
                        error,
                        json.dumps(history),
                        lookup_hash,
                        instance_id,
                        JobStatus.PROCESSING.value,
                    ),
                )
            else:
                new_status = JobStatus.FAILED
                conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?, failed_at = ?, instance_id = NULL,
                        claimed_at = NULL, heartbeat_at = NULL,
                        last_error = ?, error_history = ?
                    WHERE lookup_hash = ? AND instance_id = ? AND status = ?
                    """,
                    (
                        new_status.value,
                        now,
                        error,
                        json.dumps(history),
                        lookup_hash,
                        instance_id,
                        JobStatus.PROCESSING.value,
                    ),
                )

            self._log_transition(
                conn,
                lookup_hash,
                JobStatus.PROCESSING.value,
                new_status.value,
                instance_id=instance_id,
                error=error,
                now=now,
            )
            return new_status

        return self._write("record job failure", op)

    # -- liveness -------------------------------------------------------------

    def _reset_claims(
        self,
        conn: sqlite3.Connection,
        where: str,
        params: Dict[str, Any],
        reason: str,
        now_dt: datetime,
        refund_attempt: bool = False,
    ) -> List[ReclaimedJob]:
        """Return matching processing jobs to the pool.

        With refund_attempt, the interrupted attempt is given back and the job
        is always requeued. Otherwise jobs that already used every attempt are
        failed, since the claim predicate would never pick them up again.
        """
        now = _ts(now_dt)
        rows = conn.execute(
            f"""
            SELECT lookup_hash, instance_id, attempts, max_attempts, error_history
            FROM jobs WHERE {where}
            """,
            params,
        ).fetchall()

        reset = []
        for lookup_hash, previous_owner, attempts, max_attempts, history_json in rows:
            row_params = dict(params, lookup_hash=lookup_hash, now=now)

            if refund_attempt:
                error = reason
                new_status = JobStatus.QUEUED
                updated = conn.execute(
                    f"""
                    UPDATE jobs
                    SET status = 'queued', instance_id = NULL, claimed_at = NULL,
                        heartbeat_at = NULL, started_at = NULL,
                        attempts = MAX(attempts - 1, 0)
                    WHERE lookup_hash = :lookup_hash AND {where}
                    """,
                    row_params,
                ).rowcount
            elif attempts >= max_attempts:
                error = f"{reason}; attempts exhausted"
                history = json.loads(history_json) if history_json else []
                history.append(
                    ErrorEntry(attempt=attempts, error=error, timestamp=now_dt).model_dump(
                        mode="json"
                    )
                )
                new_status = JobStatus.FAILED
                updated = conn.execute(
                    f"""
                    UPDATE jobs
                    SET status = 'failed', failed_at = :now, instance_id = NULL,
                        claimed_at = NULL, heartbeat_at = NULL,
                        last_error = :error, error_history = :history
                    WHERE lookup_hash = :lookup_hash AND {where}
                    """,
                    dict(row_params, error=error, history=json.dumps(history)),
                ).rowcount
            else:
                error = reason
                new_status = JobStatus.QUEUED
                updated = conn.execute(
                    f"""
                    UPDATE jobs
                    SET status = 'queued', instance_id = NULL, claimed_at = NULL,
                        heartbeat_at = NULL, started_at = NULL
                    WHERE lookup_hash = :lookup_hash AND {where}
                    """,
                    row_params,
                ).rowcount

            if updated:
                self._log_transition(
                    conn,
                    lookup_hash,
                    JobStatus.PROCESSING.value,
                    new_status.value,
                    instance_id=previous_owner,
                    error=error,
                    now=now,
                )
                reset.append(
                    ReclaimedJob(
                        lookup_hash=lookup_hash,
                        previous_instance_id=previous_owner,
                        status=new_status,
                    )
                )
        return reset

    def reclaim_orphans(
        self,
        heartbeat_timeout_s: float,
        job_timeout_s: float,
        now: Optional[datetime] = None,
    ) -> List[ReclaimedJob]:
        """Crash recovery: reset processing jobs with a stale heartbeat or claim.

        Does not touch attempts; the increment already happened at claim time.
        """
        now_dt = now or utcnow()
        params = {
            "heartbeat_cutoff": _ts(now_dt - timedelta(seconds=heartbeat_timeout_s)),
            "claim_cutoff": _ts(now_dt - timedelta(seconds=job_timeout_s)),
        }
        return self._write(
            "reclaim orphaned jobs",
            lambda conn: self._reset_claims(
                conn, STALE_PREDICATE, params, "Reclaimed after heartbeat timeout", now_dt
            ),
        )

    def release_instance(self, instance_id: str) -> int:
        """Graceful shutdown: hand every job held by instance_id back to the queue.

        The interrupted attempt is not a failure, so it is refunded.
        """
        released = self._write(
            "release instance jobs",
            lambda conn: self._reset_claims(
                conn,
                "status = 'processing' AND instance_id = :owner",
                {"owner": instance_id},
                "Released by graceful shutdown",
                utcnow(),
                refund_attempt=True,
            ),
        )
        return len(released)

    # -- queries --------------------------------------------------------------

    def get(self, lookup_hash: str) -> Optional[JobRecord]:
        """Fetch one job by lookup hash (indexed primary key lookup)."""
        with self._store_errors("read job"):
            try:
                row = self.db["jobs"].get(lookup_hash)
            except NotFoundError:
                return None
        return self._row_to_record(row)

    def queue_position(self, lookup_hash: str) -> Optional[int]:
        """1-based position in claim order (priority DESC, queued_at ASC)."""
        with self._store_errors("compute queue position"):
            row = self.db.execute(
                "SELECT status, priority, queued_at FROM jobs WHERE lookup_hash = ?",
                [lookup_hash],
            ).fetchone()
            if row is None or row[0] != JobStatus.QUEUED.value:
                return None

            _, priority, queued_at = row
            ahead = self.db["jobs"].count_where(
                "status = ? AND (priority > ? OR (priority = ? AND queued_at < ?))",
                [JobStatus.QUEUED.value, priority, priority, queued_at],
            )
        return ahead + 1

    def count_by_status(self) -> Dict[str, int]:
        """Record counts per status, zero-filled."""
        counts = {status.value: 0 for status in JobStatus}
        with self._store_errors("count jobs"):
            for status, count in self.db.execute(
                "SELECT status, COUNT(*) FROM jobs GROUP BY status"
            ).fetchall():
                counts[status] = count
        return counts

    def list_jobs(
        self, status: Optional[str] = None, instance_id: Optional[str] = None
    ) -> List[JobRecord]:
        """Query jobs by status and/or owner, in claim order."""
        clauses, args = [], []
        if status:
            clauses.append("status = ?")
            args.append(status.value if isinstance(status, JobStatus) else status)
        if instance_id:
            clauses.append("instance_id = ?")
            args.append(instance_id)

        with self._store_errors("list jobs"):
            rows = list(
                self.db["jobs"].rows_where(
                    " AND ".join(clauses) or None,
                    args,
                    order_by="priority desc, queued_at",
                )
            )
        return [self._row_to_record(row) for row in rows]

    def get_transitions(self, lookup_hash: str) -> List[StateTransition]:
        """Audit trail for one job, oldest first."""
        with self._store_errors("read transitions"):
            rows = list(
                self.db["state_transitions"].rows_where(
                    "lookup_hash = ?", [lookup_hash], order_by="id"
                )
            )
        return [StateTransition(**row) for row in rows]
