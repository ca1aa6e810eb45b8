import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Mapping

import structlog

from tokenledger.aggregation import Bucket, project_sessions, summarize
from tokenledger.checkpoints import STATUS_ERROR, FileCheckpoint
from tokenledger.errors import StorageError
from tokenledger.models import (
    AggregateStatistics,
    DateRange,
    IntegrityReport,
    ProjectSessions,
    SessionSortOrder,
    StoreStats,
)

logger = structlog.get_logger()

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS usage_buckets (
        date TEXT NOT NULL,
        model TEXT NOT NULL,
        project_path TEXT NOT NULL,
        project_name TEXT NOT NULL,
        request_count INTEGER NOT NULL DEFAULT 0,
        input_tokens INTEGER NOT NULL DEFAULT 0,
        output_tokens INTEGER NOT NULL DEFAULT 0,
        cache_write_tokens INTEGER NOT NULL DEFAULT 0,
        cache_read_tokens INTEGER NOT NULL DEFAULT 0,
        cost_units INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (date, model, project_path)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS bucket_sessions (
        date TEXT NOT NULL,
        model TEXT NOT NULL,
        project_path TEXT NOT NULL,
        session_id TEXT NOT NULL,
        PRIMARY KEY (date, model, project_path, session_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS seen_keys (
        dedup_key TEXT PRIMARY KEY,
        source_file TEXT NOT NULL,
        first_seen REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS file_checkpoints (
        file_path TEXT PRIMARY KEY,
        file_size INTEGER NOT NULL,
        last_modified REAL NOT NULL,
        byte_offset INTEGER NOT NULL,
        entry_count INTEGER NOT NULL DEFAULT 0,
        processing_status TEXT NOT NULL,
        error_message TEXT,
        last_processed REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_usage_buckets_date ON usage_buckets(date)",
    """
    CREATE INDEX IF NOT EXISTS idx_usage_buckets_project
    ON usage_buckets(project_path)
    """,
)

_TABLES = ("usage_buckets", "bucket_sessions", "seen_keys", "file_checkpoints")


def get_connection(db_path: "str | Path") -> "sqlite3.Connection":
    """
    opens a connection in autocommit mode; transactions are explicit.
    """
    conn = sqlite3.connect(str(db_path), timeout=30, isolation_level=None)
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    return conn


class UsageStore:
    """
    UsageStore persists the aggregate buckets together with the state
    needed to continue ingestion: dedup keys and file checkpoints.

    A batch of bucket deltas, its seen keys and its checkpoints land in
    one transaction. Readers use their own read transaction, so under
    WAL they see a whole batch or none of it.
    """

    def __init__(self, db_path: "str | Path") -> "None":
        self.db_path = str(db_path)

    @contextmanager
    def _connection(self) -> "Iterator[sqlite3.Connection]":
        try:
            conn = get_connection(self.db_path)
        except sqlite3.Error as exc:
            raise StorageError(f"cannot open {self.db_path}: {exc}") from exc
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> "Iterator[sqlite3.Connection]":
        with self._connection() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise StorageError(f"write to {self.db_path} failed: {exc}") from exc
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    @contextmanager
    def _read(self) -> "Iterator[sqlite3.Connection]":
        with self._connection() as conn:
            try:
                conn.execute("BEGIN")
                yield conn
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise StorageError(f"read from {self.db_path} failed: {exc}") from exc

    def initialize_schema(self) -> "None":
        """
        creates the database file and its tables if missing.
        """
        if self.db_path != ":memory:":
            try:
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise StorageError(f"cannot create {self.db_path}: {exc}") from exc

        with self._transaction() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        logger.debug("storage_schema_initialized", db_path=self.db_path)

    def reset(self) -> "None":
        """
        drops every bucket, key and checkpoint, as a full sync does
        before rescanning.
        """
        with self._transaction() as conn:
            for table in _TABLES:
                conn.execute(f"DELETE FROM {table}")
        logger.info("storage_reset", db_path=self.db_path)

    def load_seen_keys(self) -> "list[str]":
        with self._read() as conn:
            rows = conn.execute("SELECT dedup_key FROM seen_keys").fetchall()
        return [row[0] for row in rows]

    def load_checkpoints(self) -> "list[FileCheckpoint]":
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT file_path, file_size, last_modified, byte_offset,
                       entry_count, processing_status, error_message
                FROM file_checkpoints
                """
            ).fetchall()
        return [
            FileCheckpoint(
                file_path=row[0],
                file_size=row[1],
                last_modified=row[2],
                byte_offset=row[3],
                entry_count=row[4],
                processing_status=row[5],
                error_message=row[6],
            )
            for row in rows
        ]

    def commit_batch(
        self,
        buckets: "Iterable[Bucket]",
        seen_keys: "Mapping[str, str]",
        checkpoints: "Iterable[FileCheckpoint]",
        forgotten_files: "Iterable[str]" = (),
    ) -> "None":
        """
        adds bucket deltas to the stored sums and records the batch's
        seen keys (key -> source file) and checkpoints, atomically.
        """
        now = time.time()
        with self._transaction() as conn:
            for bucket in buckets:
                conn.execute(
                    """
                    INSERT INTO usage_buckets (
                        date, model, project_path, project_name,
                        request_count, input_tokens, output_tokens,
                        cache_write_tokens, cache_read_tokens, cost_units
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (date, model, project_path) DO UPDATE SET
                        request_count = request_count + excluded.request_count,
                        input_tokens = input_tokens + excluded.input_tokens,
                        output_tokens = output_tokens + excluded.output_tokens,
                        cache_write_tokens =
                            cache_write_tokens + excluded.cache_write_tokens,
                        cache_read_tokens =
                            cache_read_tokens + excluded.cache_read_tokens,
                        cost_units = cost_units + excluded.cost_units
                    """,
                    (
                        bucket.date_string,
                        bucket.model,
                        bucket.project_path,
                        bucket.project_name,
                        bucket.request_count,
                        bucket.input_tokens,
                        bucket.output_tokens,
                        bucket.cache_write_tokens,
                        bucket.cache_read_tokens,
                        bucket.cost_units,
                    ),
                )
                conn.executemany(
                    """
                    INSERT OR IGNORE INTO bucket_sessions
                        (date, model, project_path, session_id)
                    VALUES (?, ?, ?, ?)
                    """,
                    [
                        (bucket.date_string, bucket.model, bucket.project_path, s)
                        for s in sorted(bucket.session_ids)
                    ],
                )

            conn.executemany(
                """
                INSERT OR IGNORE INTO seen_keys (dedup_key, source_file, first_seen)
                VALUES (?, ?, ?)
                """,
                [(key, source, now) for key, source in seen_keys.items()],
            )
            conn.executemany(
                """
                INSERT OR REPLACE INTO file_checkpoints (
                    file_path, file_size, last_modified, byte_offset,
                    entry_count, processing_status, error_message, last_processed
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        c.file_path,
                        c.file_size,
                        c.last_modified,
                        c.byte_offset,
                        c.entry_count,
                        c.processing_status,
                        c.error_message,
                        now,
                    )
                    for c in checkpoints
                ],
            )
            conn.executemany(
                "DELETE FROM file_checkpoints WHERE file_path = ?",
                [(path,) for path in forgotten_files],
            )

    def load_buckets(
        self,
        date_range: "DateRange | None" = None,
        project_path: "str | None" = None,
    ) -> "list[Bucket]":
        """
        reads the buckets matching the filter, sessions included, in
        one read transaction.
        """
        conditions: "list[str]" = []
        params: "list[str]" = []
        if date_range is not None and date_range.start is not None:
            conditions.append("date >= ?")
            params.append(date_range.start)
        if date_range is not None and date_range.end is not None:
            conditions.append("date <= ?")
            params.append(date_range.end)
        if project_path is not None:
            conditions.append("project_path = ?")
            params.append(project_path)
        where = " WHERE " + " AND ".join(conditions) if conditions else ""

        with self._read() as conn:
            rows = conn.execute(
                f"""
                SELECT date, model, project_path, project_name, request_count,
                       input_tokens, output_tokens, cache_write_tokens,
                       cache_read_tokens, cost_units
                FROM usage_buckets{where}
                ORDER BY date, model, project_path
                """,
                params,
            ).fetchall()
            session_rows = conn.execute(
                f"""
                SELECT date, model, project_path, session_id
                FROM bucket_sessions{where}
                """,
                params,
            ).fetchall()

        buckets: "dict[tuple[str, str, str], Bucket]" = {}
        for row in rows:
            bucket = Bucket(
                date_string=row[0],
                model=row[1],
                project_path=row[2],
                project_name=row[3],
                request_count=row[4],
                input_tokens=row[5],
                output_tokens=row[6],
                cache_write_tokens=row[7],
                cache_read_tokens=row[8],
                cost_units=row[9],
            )
            buckets[bucket.key] = bucket
        for date_string, model, path, session_id in session_rows:
            bucket = buckets.get((date_string, model, path))
            if bucket is not None:
                bucket.session_ids.add(session_id)

        return list(buckets.values())

    def query_statistics(
        self,
        date_range: "DateRange | None" = None,
        project_path: "str | None" = None,
    ) -> "AggregateStatistics":
        return summarize(self.load_buckets(date_range, project_path))

    def session_statistics(
        self,
        date_range: "DateRange | None" = None,
        project_path: "str | None" = None,
        sort_order: "SessionSortOrder" = SessionSortOrder.COST_DESCENDING,
    ) -> "list[ProjectSessions]":
        return project_sessions(self.load_buckets(date_range, project_path), sort_order)

    def stats(self) -> "StoreStats":
        with self._read() as conn:
            buckets = conn.execute("SELECT COUNT(*) FROM usage_buckets").fetchone()
            sessions = conn.execute(
                "SELECT COUNT(DISTINCT session_id) FROM bucket_sessions"
            ).fetchone()
            seen_keys = conn.execute("SELECT COUNT(*) FROM seen_keys").fetchone()
            checkpoints = conn.execute(
                """
                SELECT COUNT(*),
                       COALESCE(SUM(processing_status = ?), 0)
                FROM file_checkpoints
                """,
                (STATUS_ERROR,),
            ).fetchone()
        return StoreStats(
            buckets=buckets[0],
            sessions=sessions[0],
            seen_keys=seen_keys[0],
            checkpoints=checkpoints[0],
            failed_checkpoints=checkpoints[1],
        )

    def validate_integrity(self) -> "IntegrityReport":
        """
        checks the database file and the relations between tables:
        session rows need a bucket, buckets with requests need a
        session, sums are never negative and no checkpoint points
        past the end of its file.
        """
        issues: "list[str]" = []
        with self._read() as conn:
            result = conn.execute("PRAGMA quick_check").fetchone()[0]
            if result != "ok":
                issues.append(f"quick_check: {result}")

            orphans = conn.execute(
                """
                SELECT COUNT(*) FROM bucket_sessions s
                WHERE NOT EXISTS (
                    SELECT 1 FROM usage_buckets b
                    WHERE b.date = s.date AND b.model = s.model
                      AND b.project_path = s.project_path
                )
                """
            ).fetchone()[0]
            if orphans:
                issues.append(f"{orphans} session rows without a bucket")

            sessionless = conn.execute(
                """
                SELECT COUNT(*) FROM usage_buckets b
                WHERE b.request_count > 0 AND NOT EXISTS (
                    SELECT 1 FROM bucket_sessions s
                    WHERE b.date = s.date AND b.model = s.model
                      AND b.project_path = s.project_path
                )
                """
            ).fetchone()[0]
            if sessionless:
                issues.append(f"{sessionless} buckets without a session")

            negative = conn.execute(
                """
                SELECT COUNT(*) FROM usage_buckets
                WHERE request_count < 0 OR input_tokens < 0
                   OR output_tokens < 0 OR cache_write_tokens < 0
                   OR cache_read_tokens < 0 OR cost_units < 0
                """
            ).fetchone()[0]
            if negative:
                issues.append(f"{negative} buckets with negative sums")

            overrun = conn.execute(
                "SELECT COUNT(*) FROM file_checkpoints WHERE byte_offset > file_size"
            ).fetchone()[0]
            if overrun:
                issues.append(f"{overrun} checkpoints past the end of their file")

            checked = conn.execute(
                """
                SELECT (SELECT COUNT(*) FROM usage_buckets)
                     + (SELECT COUNT(*) FROM bucket_sessions)
                     + (SELECT COUNT(*) FROM file_checkpoints)
                """
            ).fetchone()[0]

        report = IntegrityReport(checked_items=checked, issues=tuple(issues))
        if report.is_valid:
            logger.debug("storage_integrity_ok", checked=checked)
        else:
            logger.warning("storage_integrity_issues", issues=list(issues))
        return report
