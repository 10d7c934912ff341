"""
Database operations for the task runner.

Holds the append-only run history (the outcome log) and the per-schedule
trigger state, both in one SQLite file.
"""

import sqlite3
import threading
import logging
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from taskrunner.errors import OutcomeLogError
from taskrunner.models import RunRecord, RunStatus


logger = logging.getLogger("taskrunner.db")

# Default database path
DEFAULT_DB_PATH = Path("data/taskrunner.db")

# Rows fetched per round trip when iterating history
QUERY_PAGE_SIZE = 200


def _ts(value: datetime) -> str:
    # Fixed width so text ordering matches time ordering
    return value.isoformat(timespec='microseconds')


@contextmanager
def get_db_connection(db_path: Path = None):
    """
    Context manager for database connections.

    Args:
        db_path: Path to the database file

    Yields:
        sqlite3 connection with row factory set to Row
    """
    path = Path(db_path or DEFAULT_DB_PATH)
    path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(path), timeout=30)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def init_database(db_path: Path = None) -> None:
    """
    Initialize the database with required tables.

    Args:
        db_path: Path to the database file
    """
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS run_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_name TEXT NOT NULL,
                started_at TEXT NOT NULL,
                finished_at TEXT NOT NULL,
                duration_ms INTEGER NOT NULL,
                attempt_count INTEGER NOT NULL,
                status TEXT NOT NULL,
                error_message TEXT,
                trigger_type TEXT DEFAULT 'manual'
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS schedule_state (
                schedule_key TEXT PRIMARY KEY,
                anchor TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_run_records_job_started "
            "ON run_records(job_name, started_at, id)"
        )
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_run_records_started "
            "ON run_records(started_at, id)"
        )

        conn.commit()


def _row_to_record(row: sqlite3.Row) -> RunRecord:
    return RunRecord(
        id=row['id'],
        job_name=row['job_name'],
        started_at=datetime.fromisoformat(row['started_at']),
        finished_at=datetime.fromisoformat(row['finished_at']),
        attempt_count=row['attempt_count'],
        status=RunStatus(row['status']),
        error_message=row['error_message'],
        trigger_type=row['trigger_type'],
    )


class RunHistory:
    """
    Lazy, restartable view over run records ordered by started_at.

    Rows are fetched a page at a time while iterating. Iterating again
    runs the query again, so new records show up.
    """

    def __init__(
        self,
        db_path: Path,
        job_name: str = None,
        since: datetime = None,
        limit: int = None,
        page_size: int = QUERY_PAGE_SIZE
    ):
        self.db_path = db_path
        self.job_name = job_name
        self.since = since
        self.limit = limit
        self.page_size = page_size

    def __iter__(self) -> Iterator[RunRecord]:
        yielded = 0
        cursor_key = None

        while self.limit is None or yielded < self.limit:
            page = self._fetch_page(cursor_key)
            for row in page:
                if self.limit is not None and yielded >= self.limit:
                    return
                yield _row_to_record(row)
                yielded += 1
            if len(page) < self.page_size:
                return
            last = page[-1]
            cursor_key = (last['started_at'], last['id'])

    def _fetch_page(self, after) -> List[sqlite3.Row]:
        clauses = []
        params: List[Any] = []
        if self.job_name is not None:
            clauses.append("job_name = ?")
            params.append(self.job_name)
        if self.since is not None:
            clauses.append("started_at >= ?")
            params.append(_ts(self.since))
        if after is not None:
            clauses.append("(started_at > ? OR (started_at = ? AND id > ?))")
            params.extend([after[0], after[0], after[1]])

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with get_db_connection(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT * FROM run_records {where} ORDER BY started_at, id LIMIT ?",
                params + [self.page_size]
            )
            return cursor.fetchall()

    def all(self) -> List[RunRecord]:
        return list(self)


class OutcomeLog:
    """
    Append-only record of job runs.

    Appends are serialized through a lock so records land in completion
    order even when jobs finish concurrently. A failed append raises
    OutcomeLogError; callers must not carry on as if the run was recorded.

    Usage:
        log = OutcomeLog(Path("data/taskrunner.db"))
        log.append(record)
        for record in log.query('backup'):
            ...
    """

    def __init__(self, db_path: Path = None):
        self.db_path = Path(db_path or DEFAULT_DB_PATH)
        self._write_lock = threading.Lock()
        try:
            init_database(self.db_path)
        except (sqlite3.Error, OSError) as e:
            raise OutcomeLogError(f"Cannot open run history at {self.db_path}: {e}") from e

    def append(self, record: RunRecord) -> RunRecord:
        """
        Persist a finished run record.

        Returns:
            The record with its database id set

        Raises:
            OutcomeLogError: if the record could not be written
        """
        with self._write_lock:
            try:
                with get_db_connection(self.db_path) as conn:
                    cursor = conn.cursor()
                    cursor.execute("""
                        INSERT INTO run_records (
                            job_name, started_at, finished_at, duration_ms,
                            attempt_count, status, error_message, trigger_type
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """, (
                        record.job_name, _ts(record.started_at), _ts(record.finished_at),
                        record.duration_ms, record.attempt_count, record.status.value,
                        record.error_message, record.trigger_type
                    ))
                    conn.commit()
                    record_id = cursor.lastrowid
            except (sqlite3.Error, OSError) as e:
                logger.critical(f"Failed to record run of '{record.job_name}': {e}")
                raise OutcomeLogError(f"Failed to record run of '{record.job_name}': {e}") from e

        return RunRecord(
            id=record_id,
            job_name=record.job_name,
            started_at=record.started_at,
            finished_at=record.finished_at,
            attempt_count=record.attempt_count,
            status=record.status,
            error_message=record.error_message,
            trigger_type=record.trigger_type,
        )

    def query(self, job_name: str = None, since: datetime = None, limit: int = None) -> RunHistory:
        """
        Run records ordered by started_at ascending.

        Args:
            job_name: Only records for this job
            since: Only records started at or after this time
            limit: Stop after this many records
        """
        return RunHistory(self.db_path, job_name=job_name, since=since, limit=limit)

    def last_run(self, job_name: str) -> Optional[RunRecord]:
        """Most recently started run of a job."""
        with get_db_connection(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT * FROM run_records
                WHERE job_name = ?
                ORDER BY started_at DESC, id DESC
                LIMIT 1
            """, (job_name,))
            row = cursor.fetchone()
            return _row_to_record(row) if row else None

    def stats(self, job_name: str = None) -> Dict[str, Any]:
        """Run counts per status, overall or for one job."""
        where, params = ("WHERE job_name = ?", (job_name,)) if job_name else ("", ())
        with get_db_connection(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(f"""
                SELECT
                    COUNT(*) as total,
                    SUM(CASE WHEN status = 'success' THEN 1 ELSE 0 END) as successes,
                    SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) as failures,
                    SUM(CASE WHEN status = 'timed_out' THEN 1 ELSE 0 END) as timeouts,
                    SUM(CASE WHEN status = 'skipped_overlap' THEN 1 ELSE 0 END) as skipped,
                    AVG(CASE WHEN status != 'skipped_overlap' THEN duration_ms END) as avg_duration_ms
                FROM run_records
                {where}
            """, params)
            row = cursor.fetchone()

        total = row['total'] or 0
        successes = row['successes'] or 0
        executed = total - (row['skipped'] or 0)
        return {
            'total_runs': total,
            'successes': successes,
            'failures': row['failures'] or 0,
            'timeouts': row['timeouts'] or 0,
            'skipped_overlap': row['skipped'] or 0,
            'avg_duration_ms': round(row['avg_duration_ms']) if row['avg_duration_ms'] is not None else None,
            'success_rate': round(successes / executed * 100, 1) if executed else 0,
        }

    # --- Trigger state ---

    def load_schedule_state(self) -> Dict[str, datetime]:
        """Anchor time per schedule key, as last saved."""
        with get_db_connection(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT schedule_key, anchor FROM schedule_state")
            return {
                row['schedule_key']: datetime.fromisoformat(row['anchor'])
                for row in cursor.fetchall()
            }

    def save_schedule_state(self, anchors: Dict[str, datetime]) -> None:
        """
        Upsert anchors for the given schedule keys.

        Raises:
            OutcomeLogError: if the state could not be written
        """
        now = _ts(datetime.now())
        with self._write_lock:
            try:
                with get_db_connection(self.db_path) as conn:
                    conn.executemany("""
                        INSERT INTO schedule_state (schedule_key, anchor, updated_at)
                        VALUES (?, ?, ?)
                        ON CONFLICT(schedule_key) DO UPDATE SET
                            anchor = excluded.anchor,
                            updated_at = excluded.updated_at
                    """, [(key, _ts(anchor), now) for key, anchor in anchors.items()])
                    conn.commit()
            except (sqlite3.Error, OSError) as e:
                raise OutcomeLogError(f"Failed to save schedule state: {e}") from e
