"""Result publication: mirror job outcomes into a work-product store.

Publication is best effort. The job record is the source of truth; a
publisher that is down or broken must never fail a job, so callers go
through publish_safely().
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from sqlite_utils import Database
from sqlite_utils.db import NotFoundError

from ..config import merge_dicts
from .backends import ResultPublisher

logger = logging.getLogger(__name__)

WORK_PRODUCTS_SQL = """
CREATE TABLE IF NOT EXISTS work_products (
    lookup_hash TEXT PRIMARY KEY,
    status TEXT,
    result TEXT,
    artifact_uri TEXT,
    last_updated TEXT
);
"""


class NullPublisher(ResultPublisher):
    """Publisher used when no work-product store is configured."""

    def publish(self, lookup_hash: str, status: str, result: Dict[str, Any]) -> None:
        return None


class SQLiteResultPublisher(ResultPublisher):
    """Work products in a `work_products` table, result fields merged per update.

    Concurrent writers are last-writer-wins per field, which is acceptable
    because a re-executed job publishes the same fields again.
    """

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._connections = []
        self._connections_lock = threading.Lock()

        self.db.executescript(WORK_PRODUCTS_SQL)

    @property
    def db(self) -> Database:
        db = getattr(self._local, "db", None)
        if db is None:
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            db = Database(conn)
            self._local.db = db
            with self._connections_lock:
                self._connections.append(conn)
        return db

    def close(self) -> None:
        """Close every connection opened by this publisher."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    def get(self, lookup_hash: str) -> Optional[Dict[str, Any]]:
        """Current work product, result decoded, or None."""
        try:
            row = self.db["work_products"].get(lookup_hash)
        except NotFoundError:
            return None
        row = dict(row)
        row["result"] = json.loads(row["result"]) if row.get("result") else {}
        return row

    def publish(self, lookup_hash: str, status: str, result: Dict[str, Any]) -> None:
        existing = self.get(lookup_hash)
        merged = merge_dicts(existing["result"], result) if existing else dict(result)

        record = {
            "lookup_hash": lookup_hash,
            "status": status,
            "result": json.dumps(merged, default=str),
            "last_updated": datetime.now(timezone.utc).isoformat(),
        }
        if result.get("artifact_uri"):
            record["artifact_uri"] = result["artifact_uri"]

        self.db["work_products"].upsert(record, pk="lookup_hash")


def publish_safely(
    publisher: Optional[ResultPublisher], lookup_hash: str, status: str, result: Dict[str, Any]
) -> None:
    """Call-and-forget publication; errors are logged, never raised."""
    if publisher is None:
        return
    try:
        publisher.publish(lookup_hash, status, result)
    except Exception as e:
        logger.warning("Result publication failed for %s (%s): %s", lookup_hash, status, e)
