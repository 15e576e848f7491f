"""Shared fixtures: an in-memory customer store and a wired-up service."""

import pytest

from gridquery.config import Config
from gridquery.datatable import (
    DataTableService,
    DatasetLoader,
    DatasetSpec,
    ExecutionContext,
    ExtensionContext,
    ExtensionRegistry,
    QueryRequest,
    SqliteExecutor,
)


# Customers whose name contains "abc" (stored upper case)
SEARCH_HITS = {3, 7, 11, 19}
LIVE_CUSTOMERS = 25
INACTIVE = {5, 10, 15, 20, 25}


def seed_customers(executor: SqliteExecutor):
    conn = executor.connection
    conn.execute(
        "CREATE TABLE customers ("
        "id INTEGER PRIMARY KEY, name TEXT, email TEXT, status TEXT, deleted_at TEXT)"
    )
    rows = []
    for i in range(1, LIVE_CUSTOMERS + 1):
        name = f"ABC Holdings {i}" if i in SEARCH_HITS else f"Customer {i}"
        status = 'inactive' if i in INACTIVE else 'active'
        rows.append((i, name, f"c{i}@example.com", status, None))
    # Soft-deleted rows, excluded by the dataset's static condition
    rows.append((26, "Deleted abc 26", "c26@example.com", 'active', '2024-01-01'))
    rows.append((27, "Deleted 27", "c27@example.com", 'active', '2024-01-01'))
    conn.executemany("INSERT INTO customers VALUES (?, ?, ?, ?, ?)", rows)
    conn.commit()


class CountingExecutor:
    """Test double that records every call before delegating."""

    def __init__(self, inner):
        self.inner = inner
        self.calls = []

    def execute(self, sql, params):
        self.calls.append(('execute', sql, tuple(params)))
        return self.inner.execute(sql, params)

    def scalar(self, sql, params):
        self.calls.append(('scalar', sql, tuple(params)))
        return self.inner.scalar(sql, params)


def customers_spec(**overrides) -> DatasetSpec:
    values = dict(
        table='customers',
        columns=['customers.id', 'customers.name', 'customers.email'],
        searchable_columns=['customers.name', 'customers.email'],
        primary_key='customers.id',
        conditions=['customers.deleted_at IS NULL'],
    )
    values.update(overrides)
    return DatasetSpec(**values)


@pytest.fixture
def store():
    executor = SqliteExecutor(":memory:")
    seed_customers(executor)
    yield executor
    executor.close()


@pytest.fixture
def executor(store):
    return CountingExecutor(store)


@pytest.fixture
def loader(tmp_path):
    loader = DatasetLoader(datasets_dir=str(tmp_path))
    loader.add('customers', customers_spec())
    loader.add(
        'customer_status',
        customers_spec(
            name='customer_status',
            status_column='customers.status',
            status_default='active',
        ),
    )
    loader.add('vip', customers_spec(name='vip'))
    return loader


@pytest.fixture
def registry():
    return ExtensionRegistry()


@pytest.fixture
def service(loader, executor, registry):
    return DataTableService(loader, executor, registry, Config())


@pytest.fixture
def execution_context():
    return ExecutionContext(correlation_id="test-123", interface="test", user_id="tester")


@pytest.fixture
def ext_context(execution_context):
    return ExtensionContext(
        request=QueryRequest(draw=1),
        dataset=customers_spec(),
        execution=execution_context,
    )
