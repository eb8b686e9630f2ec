"""SQLiteStore — the default local publish record log.

Why SQLite:
- Batteries included: ships with Python, no extra dependencies.
- Indexed lookups on the idempotency key are microseconds, and every publish
  attempt starts with one.
- One database file can be shared by several processes (e.g. a CI cache
  directory); per-PR flock files next to it keep their publishes exclusive.

Schema:
  publish_records — one row per record, INSERT only. Comment lists are kept
                    as JSON columns to avoid JOINs in the read path.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from quickreview_store.base import BaseStore, StoreError
from quickreview_store.locking import file_lock, lock_name
from quickreview_store.models import PublishRecord, comments_from_list, comments_to_list

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS publish_records (
    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
    platform             TEXT NOT NULL,
    repo                 TEXT NOT NULL,
    pr_number            INTEGER NOT NULL,
    content_hash         TEXT NOT NULL,
    status               TEXT NOT NULL,
    summary_id           TEXT,
    head_sha             TEXT,
    verdict              TEXT,
    recorded_at          TEXT,
    posted_comments_json TEXT DEFAULT '[]',
    failed_comments_json TEXT DEFAULT '[]'
);
CREATE INDEX IF NOT EXISTS idx_records_repo ON publish_records (repo, pr_number);
CREATE INDEX IF NOT EXISTS idx_records_key  ON publish_records (platform, repo, pr_number, content_hash);
"""


class SQLiteStore(BaseStore):
    """Stores publish records in a local SQLite database file.

    The database file path defaults to `.quickreview.db` in the current
    working directory. Configure via .quickreview.yml: `store_path: /path/to/db`.
    """

    def __init__(self, db_path: str = ".quickreview.db", lock_timeout: float | None = 300):
        super().__init__(lock_timeout=lock_timeout)
        self._db_path = db_path
        # Parallel runs share one store instance across threads.
        self._conn = sqlite3.connect(db_path, check_same_thread=False, timeout=30)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA)
        self._conn.commit()
        self._db_lock = threading.Lock()

    def append(self, record: PublishRecord) -> None:
        try:
            with self._db_lock:
                self._conn.execute(
                    """
                    INSERT INTO publish_records
                      (platform, repo, pr_number, content_hash, status, summary_id,
                       head_sha, verdict, recorded_at, posted_comments_json, failed_comments_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.platform,
                        record.repo,
                        record.pr_number,
                        record.content_hash,
                        record.status,
                        record.summary_id,
                        record.head_sha,
                        record.verdict,
                        record.recorded_at,
                        json.dumps(comments_to_list(record.posted_comments)),
                        json.dumps(comments_to_list(record.failed_comments)),
                    ),
                )
                self._conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Could not append publish record to {self._db_path}: {e}") from e

    def list_records(self, repo: str, pr_number: int | None = None) -> list[PublishRecord]:
        if pr_number is not None:
            return self._query(
                "SELECT * FROM publish_records WHERE repo=? AND pr_number=? ORDER BY id",
                (repo, pr_number),
            )
        return self._query("SELECT * FROM publish_records WHERE repo=? ORDER BY id", (repo,))

    def latest(self, platform: str, repo: str, pr_number: int, content_hash: str) -> PublishRecord | None:
        rows = self._query(
            """
            SELECT * FROM publish_records
            WHERE platform=? AND repo=? AND pr_number=? AND content_hash=?
            ORDER BY id DESC LIMIT 1
            """,
            (platform, repo, pr_number, content_hash),
        )
        return rows[0] if rows else None

    @contextmanager
    def lock(self, platform: str, repo: str, pr_number: int) -> Iterator[None]:
        with super().lock(platform, repo, pr_number):
            if self._db_path == ":memory:":
                yield
                return
            lock_dir = Path(f"{self._db_path}.locks")
            timeout = self._lock_timeout if self._lock_timeout is not None else float("inf")
            with file_lock(lock_dir / f"{lock_name(platform, repo, pr_number)}.lock", timeout):
                yield

    def close(self) -> None:
        self._conn.close()

    def _query(self, sql: str, params: tuple) -> list[PublishRecord]:
        try:
            with self._db_lock:
                rows = self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Could not read publish records from {self._db_path}: {e}") from e
        return [self._row_to_record(r) for r in rows]

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> PublishRecord:
        return PublishRecord(
            platform=row["platform"],
            repo=row["repo"],
            pr_number=row["pr_number"],
            content_hash=row["content_hash"],
            status=row["status"],
            summary_id=row["summary_id"] or "",
            head_sha=row["head_sha"] or "",
            verdict=row["verdict"] or "",
            recorded_at=row["recorded_at"] or "",
            posted_comments=comments_from_list(json.loads(row["posted_comments_json"] or "[]")),
            failed_comments=comments_from_list(json.loads(row["failed_comments_json"] or "[]")),
        )
