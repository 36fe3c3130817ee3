import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import httpx

from .connectors import Connector, connect, parse_descriptor, validate_table_name
from .errors import ConnectError, DashSyncError, SyncError
from .models import (
    ColumnInfo,
    ExternalSource,
    JobStatus,
    SourceKind,
    SourceSyncResult,
    SyncedTable,
    SyncStatus,
    TableSyncResult,
)
from .store import RowStore
from .values import type_name, utc_now

logger = logging.getLogger(__name__)

ConnectorFactory = Callable[[ExternalSource], Connector]


def infer_columns(document: Mapping[str, Any]) -> List[ColumnInfo]:
    return [ColumnInfo(name=name, type=type_name(value)) for name, value in document.items()]


class SyncEngine:
    """Replace-all snapshot sync from external sources into the row store."""

    def __init__(
        self,
        store: RowStore,
        batch_size: int = 1000,
        timeout: float = 30.0,
        connector_factory: Optional[ConnectorFactory] = None,
        http_transport: Optional[httpx.BaseTransport] = None,
    ):
        self.store = store
        self.batch_size = batch_size
        self.timeout = timeout
        self.connector_factory = connector_factory
        self.http_transport = http_transport

    def _connect(self, source: ExternalSource) -> Connector:
        if self.connector_factory is not None:
            return self.connector_factory(source)
        return connect(source.descriptor, timeout=self.timeout, http_transport=self.http_transport)

    def register_source(
        self,
        name: str,
        kind: SourceKind,
        descriptor: str,
        description: Optional[str] = None,
    ) -> ExternalSource:
        parse_descriptor(descriptor)
        source = ExternalSource(name=name, kind=kind, descriptor=descriptor, description=description)
        logger.info("Registered source %s (%s)", source.id, kind.value)
        return self.store.add_source(source)

    def register_table(
        self,
        source_id: str,
        table_name: str,
        columns: Optional[Sequence[ColumnInfo]] = None,
    ) -> SyncedTable:
        validate_table_name(table_name)
        return self.store.register_table(source_id, table_name, columns)

    def register_discovered_tables(self, source_id: str) -> List[SyncedTable]:
        source = self.store.get_source(source_id)
        connector = self._connect(source)
        try:
            names = connector.list_tables()
        finally:
            connector.close()
        return [self.register_table(source_id, name) for name in names]

    def test_source(self, source_id: str) -> ExternalSource:
        source = self.store.get_source(source_id)
        connector = self._connect(source)
        try:
            connector.test_connection()
        finally:
            connector.close()
        return source

    def sync_table(self, source_id: str, table_name: str) -> TableSyncResult:
        source = self.store.get_source(source_id)
        table = self.store.get_table(source_id, table_name)
        connector = self._connect(source)
        try:
            rows = self._sync(connector, table)
        finally:
            connector.close()
        self.store.mark_source_synced(source_id)
        return TableSyncResult(table_name=table_name, success=True, rows_synced=rows)

    def sync_all(self, source_id: str) -> SourceSyncResult:
        source = self.store.get_source(source_id)
        tables = self.store.list_tables(source_id)
        started_at = utc_now()
        if not tables:
            logger.info("No tables registered for source %s", source_id)
            return SourceSyncResult(source_id=source_id, started_at=started_at, finished_at=utc_now())

        self.store.set_sync_status(source_id, SyncStatus.SYNCING)
        results: List[TableSyncResult] = []
        try:
            connector = self._connect(source)
        except ConnectError:
            self.store.set_sync_status(source_id, SyncStatus.ERROR)
            raise
        try:
            for table in tables:
                try:
                    rows = self._sync(connector, table)
                except DashSyncError as exc:
                    results.append(
                        TableSyncResult(table_name=table.table_name, success=False, error=str(exc))
                    )
                else:
                    results.append(
                        TableSyncResult(table_name=table.table_name, success=True, rows_synced=rows)
                    )
        except Exception:
            self.store.set_sync_status(source_id, SyncStatus.ERROR)
            raise
        finally:
            connector.close()

        finished_at = utc_now()
        self.store.mark_source_synced(source_id, finished_at)
        self.store.set_sync_status(source_id, SyncStatus.ACTIVE)

        success_count = sum(1 for result in results if result.success)
        total_rows = sum(result.rows_synced for result in results)
        logger.info(
            "Synced %d/%d tables for source %s, %d rows",
            success_count,
            len(tables),
            source_id,
            total_rows,
        )
        return SourceSyncResult(
            source_id=source_id,
            started_at=started_at,
            finished_at=finished_at,
            results=results,
            total_tables=len(tables),
            success_count=success_count,
            failed_count=len(tables) - success_count,
            total_rows=total_rows,
        )

    def _sync(self, connector: Connector, table: SyncedTable) -> int:
        job = self.store.start_job(table.source_id, table.table_name)
        try:
            documents = connector.fetch_all(table.table_name)
            logger.info("Fetched %d rows from %s", len(documents), table.table_name)
            if documents and not table.columns:
                self.store.set_columns(table.id, infer_columns(documents[0]))
            synced_at = utc_now()
            inserted = self.store.replace_rows(table, documents, self.batch_size, synced_at)
            self.store.mark_table_synced(table.id, inserted, synced_at)
        except DashSyncError as exc:
            logger.error("Sync failed for %s: %s", table.table_name, exc)
            self.store.finish_job(job.id, JobStatus.ERROR, error_message=str(exc))
            raise
        except Exception as exc:
            logger.exception("Unexpected error syncing %s", table.table_name)
            error = SyncError(table.table_name, str(exc) or type(exc).__name__)
            self.store.finish_job(job.id, JobStatus.ERROR, error_message=str(error))
            raise error from exc
        self.store.finish_job(job.id, JobStatus.COMPLETED, rows_synced=inserted)
        return inserted

    def status(self, source_id: str) -> Dict[str, Any]:
        return {
            "source": self.store.get_source(source_id),
            "tables": self.store.list_tables(source_id),
            "jobs": self.store.recent_jobs(source_id),
        }
