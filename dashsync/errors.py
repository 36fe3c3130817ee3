from typing import Optional


class DashSyncError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500


class SourceNotFoundError(DashSyncError):
    status_code = 404

    def __init__(self, source_id: str):
        super().__init__(f"Source '{source_id}' not found")
        self.source_id = source_id


class ConnectError(DashSyncError):
    """The external source could not be reached or authenticated."""

    status_code = 502


class DescriptorError(ConnectError):
    """The connection descriptor does not match any supported shape."""

    status_code = 400


class FetchError(DashSyncError):
    status_code = 502


class NotRegisteredError(DashSyncError):
    status_code = 404

    def __init__(self, source_id: str, table_name: str):
        super().__init__(
            f"Table '{table_name}' is not registered for source '{source_id}'. "
            "Register it before syncing."
        )
        self.source_id = source_id
        self.table_name = table_name


class BatchInsertError(DashSyncError):
    status_code = 500

    def __init__(self, table_name: str, batch_index: int, reason: str):
        super().__init__(
            f"Failed to insert batch {batch_index} for table '{table_name}': {reason}"
        )
        self.table_name = table_name
        self.batch_index = batch_index
        self.reason = reason


class SyncError(DashSyncError):
    """A table sync failed for a reason other than a known fetch or insert error."""

    status_code = 500

    def __init__(self, table_name: str, reason: str):
        super().__init__(f"Sync failed for table '{table_name}': {reason}")
        self.table_name = table_name
        self.reason = reason


class AggregationError(DashSyncError):
    status_code = 422


class InvalidFieldError(AggregationError):
    def __init__(self, field: Optional[str]):
        super().__init__(f"Invalid field name: {field!r}")
        self.field = field


class ConfigGenerationError(DashSyncError):
    status_code = 502


class ConfigNotFoundError(DashSyncError):
    status_code = 404

    def __init__(self, source_id: str):
        super().__init__(
            f"No dashboard configuration stored for source '{source_id}'. "
            "Generate the dashboard first."
        )
        self.source_id = source_id


class NoTablesError(DashSyncError):
    status_code = 409

    def __init__(self, source_id: str):
        super().__init__(
            f"No synced tables found for source '{source_id}'. Sync the source first."
        )
        self.source_id = source_id


class ItemNotFoundError(DashSyncError):
    status_code = 404


class InvalidRequestError(DashSyncError):
    status_code = 400
