from typing import Any, Dict, List

import pytest

from dashsync.aggregation import AggregationEngine
from dashsync.cache import ConfigStore, CustomChartStore, DashboardCache
from dashsync.dashboard import DashboardOrchestrator
from dashsync.errors import FetchError
from dashsync.models import SourceKind
from dashsync.store import Database, RowStore
from dashsync.sync import SyncEngine

USERS = [
    {"status": "active", "created_at": "2024-01-05T00:00:00"},
    {"status": "inactive", "created_at": "2024-01-05T00:00:00"},
    {"status": "active", "created_at": "2024-02-01T00:00:00"},
]


class StaticConnector:
    """In-memory connector serving fixed documents per table."""

    def __init__(self, tables: Dict[str, List[Dict[str, Any]]]):
        self.tables = tables
        self.closed = False
        self.fetches: List[str] = []

    def fetch_all(self, table_name: str) -> List[Dict[str, Any]]:
        self.fetches.append(table_name)
        if table_name not in self.tables:
            raise FetchError(f"Table '{table_name}' does not exist")
        return [dict(row) for row in self.tables[table_name]]

    def test_connection(self) -> None:
        pass

    def list_tables(self) -> List[str]:
        return sorted(self.tables)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def db():
    database = Database(":memory:")
    yield database
    database.close()


@pytest.fixture
def store(db):
    return RowStore(db)


@pytest.fixture
def tables():
    return {"users": [dict(row) for row in USERS]}


@pytest.fixture
def connector(tables):
    return StaticConnector(tables)


@pytest.fixture
def sync_engine(store, connector):
    return SyncEngine(store, batch_size=2, connector_factory=lambda source: connector)


@pytest.fixture
def source(sync_engine):
    return sync_engine.register_source(
        "analytics", SourceKind.POSTGRES, "https://example.supabase.co|anon-key"
    )


@pytest.fixture
def synced_users(sync_engine, source):
    sync_engine.register_table(source.id, "users")
    sync_engine.sync_table(source.id, "users")
    return source


@pytest.fixture
def engine(db):
    return AggregationEngine(db)


@pytest.fixture
def cache(db):
    return DashboardCache(db)


@pytest.fixture
def configs(db):
    return ConfigStore(db)


@pytest.fixture
def make_orchestrator(store, engine, cache, configs, db):
    def build(generator=None):
        return DashboardOrchestrator(
            store, engine, cache, configs, CustomChartStore(db), generator=generator
        )

    return build
