import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from .errors import BatchInsertError, NotRegisteredError, SourceNotFoundError
from .models import (
    ColumnInfo,
    ExternalSource,
    JobStatus,
    SourceKind,
    SyncedRow,
    SyncedTable,
    SyncJob,
    SyncStatus,
)
from .querybuilder import register_functions
from .values import (
    from_iso,
    original_id,
    serialize_document,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS external_sources (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    descriptor TEXT NOT NULL,
    kind TEXT NOT NULL,
    sync_status TEXT NOT NULL DEFAULT 'pending',
    last_synced_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS synced_tables (
    id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL REFERENCES external_sources(id) ON DELETE CASCADE,
    table_name TEXT NOT NULL,
    columns TEXT NOT NULL DEFAULT '[]',
    row_count INTEGER NOT NULL DEFAULT 0,
    last_synced_at TEXT,
    last_data_synced_at TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (source_id, table_name)
);

CREATE TABLE IF NOT EXISTS synced_rows (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    synced_table_id TEXT NOT NULL REFERENCES synced_tables(id) ON DELETE CASCADE,
    source_id TEXT NOT NULL,
    table_name TEXT NOT NULL,
    original_id TEXT NOT NULL,
    data TEXT NOT NULL,
    synced_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_synced_rows_scope ON synced_rows (source_id, table_name, synced_at);
CREATE INDEX IF NOT EXISTS idx_synced_rows_table ON synced_rows (synced_table_id);

CREATE TABLE IF NOT EXISTS sync_jobs (
    id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL REFERENCES external_sources(id) ON DELETE CASCADE,
    table_name TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    rows_synced INTEGER NOT NULL DEFAULT 0,
    error_message TEXT
);

CREATE TABLE IF NOT EXISTS dashboard_cache (
    source_id TEXT NOT NULL,
    item_id TEXT NOT NULL,
    item_type TEXT NOT NULL,
    spec TEXT NOT NULL,
    result TEXT NOT NULL,
    computed_at TEXT NOT NULL,
    PRIMARY KEY (source_id, item_id)
);

CREATE TABLE IF NOT EXISTS dashboard_configs (
    source_id TEXT PRIMARY KEY,
    config TEXT NOT NULL,
    model TEXT,
    reasoning TEXT,
    generated_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS custom_charts (
    source_id TEXT NOT NULL,
    chart_id TEXT NOT NULL,
    spec TEXT NOT NULL,
    result TEXT NOT NULL,
    computed_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (source_id, chart_id)
);
"""


class Database:
    """SQLite connection shared by every store.

    Opened once at service start and closed at shutdown. All statements go
    through one re-entrant lock, so a transaction is never interleaved with
    reads from another request thread.
    """

    def __init__(self, path: str):
        if path != ":memory:":
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self.path = path
        self.conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self.conn.execute("PRAGMA foreign_keys = ON")
        register_functions(self.conn)
        self.conn.executescript(SCHEMA)

    def query(self, sql: str, params: Any = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def query_one(self, sql: str, params: Any = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def execute(self, sql: str, params: Any = ()) -> int:
        with self._lock:
            return self.conn.execute(sql, params).rowcount

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self.conn.execute("BEGIN")
            try:
                yield self.conn
            except BaseException:
                if self.conn.in_transaction:
                    self.conn.execute("ROLLBACK")
                raise
            else:
                self.conn.execute("COMMIT")

    def close(self) -> None:
        with self._lock:
            self.conn.close()


def create_database(backend: str, path: str) -> Database:
    backend = backend.lower()
    if backend == "sqlite":
        return Database(path)
    return Database(":memory:")


def _source_from_row(row: sqlite3.Row) -> ExternalSource:
    return ExternalSource(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        descriptor=row["descriptor"],
        kind=SourceKind(row["kind"]),
        sync_status=SyncStatus(row["sync_status"]),
        last_synced_at=from_iso(row["last_synced_at"]),
        created_at=from_iso(row["created_at"]),
    )


def _table_from_row(row: sqlite3.Row) -> SyncedTable:
    return SyncedTable(
        id=row["id"],
        source_id=row["source_id"],
        table_name=row["table_name"],
        columns=[ColumnInfo(**column) for column in json.loads(row["columns"])],
        row_count=row["row_count"],
        last_synced_at=from_iso(row["last_synced_at"]),
        last_data_synced_at=from_iso(row["last_data_synced_at"]),
        created_at=from_iso(row["created_at"]),
    )


def _job_from_row(row: sqlite3.Row) -> SyncJob:
    return SyncJob(
        id=row["id"],
        source_id=row["source_id"],
        table_name=row["table_name"],
        status=JobStatus(row["status"]),
        started_at=from_iso(row["started_at"]),
        completed_at=from_iso(row["completed_at"]),
        rows_synced=row["rows_synced"],
        error_message=row["error_message"],
    )


class RowStore:
    """Sources, registered tables, synced rows and sync jobs."""

    def __init__(self, db: Database):
        self.db = db

    # sources

    def add_source(self, source: ExternalSource) -> ExternalSource:
        self.db.execute(
            """
            INSERT INTO external_sources
                (id, name, description, descriptor, kind, sync_status, last_synced_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                source.id,
                source.name,
                source.description,
                source.descriptor,
                source.kind.value,
                source.sync_status.value,
                to_iso(source.last_synced_at),
                to_iso(source.created_at),
            ),
        )
        return source

    def get_source(self, source_id: str) -> ExternalSource:
        row = self.db.query_one("SELECT * FROM external_sources WHERE id = ?", (source_id,))
        if row is None:
            raise SourceNotFoundError(source_id)
        return _source_from_row(row)

    def list_sources(self) -> List[ExternalSource]:
        rows = self.db.query("SELECT * FROM external_sources ORDER BY name")
        return [_source_from_row(row) for row in rows]

    def set_sync_status(self, source_id: str, status: SyncStatus) -> None:
        self.db.execute(
            "UPDATE external_sources SET sync_status = ? WHERE id = ?",
            (status.value, source_id),
        )

    def mark_source_synced(self, source_id: str, at: Optional[datetime] = None) -> None:
        self.db.execute(
            "UPDATE external_sources SET last_synced_at = ? WHERE id = ?",
            (to_iso(at or utc_now()), source_id),
        )

    # tables

    def register_table(
        self,
        source_id: str,
        table_name: str,
        columns: Optional[Sequence[ColumnInfo]] = None,
    ) -> SyncedTable:
        self.get_source(source_id)
        table = SyncedTable(
            source_id=source_id,
            table_name=table_name,
            columns=list(columns or []),
        )
        self.db.execute(
            """
            INSERT INTO synced_tables (id, source_id, table_name, columns, row_count, created_at)
            VALUES (?, ?, ?, ?, 0, ?)
            ON CONFLICT (source_id, table_name) DO NOTHING
            """,
            (
                table.id,
                source_id,
                table_name,
                json.dumps([column.model_dump() for column in table.columns]),
                to_iso(table.created_at),
            ),
        )
        return self.get_table(source_id, table_name)

    def get_table(self, source_id: str, table_name: str) -> SyncedTable:
        row = self.db.query_one(
            "SELECT * FROM synced_tables WHERE source_id = ? AND table_name = ?",
            (source_id, table_name),
        )
        if row is None:
            raise NotRegisteredError(source_id, table_name)
        return _table_from_row(row)

    def list_tables(self, source_id: str) -> List[SyncedTable]:
        rows = self.db.query(
            "SELECT * FROM synced_tables WHERE source_id = ? ORDER BY table_name",
            (source_id,),
        )
        return [_table_from_row(row) for row in rows]

    def set_columns(self, table_id: str, columns: Sequence[ColumnInfo]) -> None:
        self.db.execute(
            "UPDATE synced_tables SET columns = ? WHERE id = ?",
            (json.dumps([column.model_dump() for column in columns]), table_id),
        )

    # rows

    def replace_rows(
        self,
        table: SyncedTable,
        documents: Sequence[Mapping[str, Any]],
        batch_size: int,
        synced_at: Optional[datetime] = None,
    ) -> int:
        """Swap the table's rows for ``documents`` in a single transaction.

        A failing batch raises ``BatchInsertError`` with its 1-based index and
        the whole replacement is rolled back, leaving the previous snapshot.
        """
        stamp = to_iso(synced_at or utc_now())
        batch_size = max(1, batch_size)
        inserted = 0
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM synced_rows WHERE synced_table_id = ?", (table.id,))
            for start in range(0, len(documents), batch_size):
                batch_index = start // batch_size + 1
                batch = documents[start:start + batch_size]
                try:
                    conn.executemany(
                        """
                        INSERT INTO synced_rows
                            (synced_table_id, source_id, table_name, original_id, data, synced_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        [
                            (
                                table.id,
                                table.source_id,
                                table.table_name,
                                original_id(document),
                                serialize_document(document),
                                stamp,
                            )
                            for document in batch
                        ],
                    )
                except (sqlite3.Error, TypeError, ValueError) as exc:
                    raise BatchInsertError(table.table_name, batch_index, str(exc)) from exc
                inserted += len(batch)
                logger.debug(
                    "Inserted batch %d for %s: %d rows", batch_index, table.table_name, len(batch)
                )
        return inserted

    def mark_table_synced(
        self, table_id: str, row_count: int, at: Optional[datetime] = None
    ) -> None:
        stamp = to_iso(at or utc_now())
        self.db.execute(
            """
            UPDATE synced_tables
            SET row_count = ?, last_synced_at = ?, last_data_synced_at = ?
            WHERE id = ?
            """,
            (row_count, stamp, stamp, table_id),
        )

    def list_rows(self, table_id: str, limit: Optional[int] = None) -> List[SyncedRow]:
        sql = "SELECT * FROM synced_rows WHERE synced_table_id = ? ORDER BY id"
        params: List[Any] = [table_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._row(row) for row in self.db.query(sql, params)]

    def sample_rows(self, table_id: str, limit: int) -> List[Dict[str, Any]]:
        rows = self.db.query(
            "SELECT data FROM synced_rows WHERE synced_table_id = ? ORDER BY RANDOM() LIMIT ?",
            (table_id, limit),
        )
        return [json.loads(row["data"]) for row in rows]

    def count_rows(self, table_id: str) -> int:
        row = self.db.query_one(
            "SELECT COUNT(*) AS c FROM synced_rows WHERE synced_table_id = ?", (table_id,)
        )
        return row["c"]

    @staticmethod
    def _row(row: sqlite3.Row) -> SyncedRow:
        return SyncedRow(
            id=row["id"],
            synced_table_id=row["synced_table_id"],
            source_id=row["source_id"],
            table_name=row["table_name"],
            original_id=row["original_id"],
            data=json.loads(row["data"]),
            synced_at=from_iso(row["synced_at"]),
        )

    # jobs

    def start_job(self, source_id: str, table_name: str) -> SyncJob:
        job = SyncJob(source_id=source_id, table_name=table_name)
        self.db.execute(
            """
            INSERT INTO sync_jobs (id, source_id, table_name, status, started_at, rows_synced)
            VALUES (?, ?, ?, ?, ?, 0)
            """,
            (job.id, source_id, table_name, job.status.value, to_iso(job.started_at)),
        )
        return job

    def finish_job(
        self,
        job_id: str,
        status: JobStatus,
        rows_synced: int = 0,
        error_message: Optional[str] = None,
    ) -> None:
        self.db.execute(
            """
            UPDATE sync_jobs
            SET status = ?, completed_at = ?, rows_synced = ?, error_message = ?
            WHERE id = ?
            """,
            (status.value, to_iso(utc_now()), rows_synced, error_message, job_id),
        )

    def recent_jobs(self, source_id: str, limit: int = 10) -> List[SyncJob]:
        rows = self.db.query(
            "SELECT * FROM sync_jobs WHERE source_id = ? ORDER BY started_at DESC LIMIT ?",
            (source_id, limit),
        )
        return [_job_from_row(row) for row in rows]
