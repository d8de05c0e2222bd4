"""
Shared test fixtures.

The mock Supabase client keeps rows per table, applies eq filters, enforces
the catalog's unique keys, and can be told to fail specific writes.
"""

import os
import sys
from pathlib import Path

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

# Settings require these before first import
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_KEY", "test-anon-key")
os.environ.setdefault("STAGE_IMAGES", "false")

import pytest
from unittest.mock import patch
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Generator, Optional
from uuid import uuid4

from postgrest.exceptions import APIError

from tests.factories import OrderHtmlFactory

# ===================
# MOCK SUPABASE CLIENT
# ===================

# Unique keys enforced by the catalog schema
UNIQUE_KEYS = {
    "components": [("part_number",)],
    "orders": [("order_number", "supplier")],
}


class MockSupabaseResponse:
    """Mock Supabase query response."""

    def __init__(self, data: list = None, count: int = None):
        self.data = data or []
        self.count = count if count is not None else len(self.data)


@dataclass
class FailureRule:
    """Raise `error` when a matching query executes."""
    table: str
    operation: str
    error: Exception
    when: Optional[Callable[[Any], bool]] = None
    times: Optional[int] = None  # None means every time


class MockSupabaseQuery:
    """Chainable query builder that runs against the owning client's rows."""

    def __init__(self, client: "MockSupabaseClient", table: str, operation: str, payload: Any = None):
        self._client = client
        self._table = table
        self._operation = operation
        self._payload = payload
        self._filters: list[tuple[str, Any, bool]] = []
        self._order: Optional[tuple[str, bool]] = None
        self._limit: Optional[int] = None
        self._is_single = False

    def select(self, *args, **kwargs):
        return self

    def eq(self, column, value):
        self._filters.append((column, value, True))
        return self

    def neq(self, column, value):
        self._filters.append((column, value, False))
        return self

    def is_(self, column, value):
        self._filters.append((column, None if value == "null" else value, True))
        return self

    def order(self, column, desc: bool = False, **kwargs):
        self._order = (column, desc)
        return self

    def limit(self, count):
        self._limit = count
        return self

    def single(self):
        self._is_single = True
        return self

    def _matches(self, row: dict) -> bool:
        for column, value, equal in self._filters:
            if (row.get(column) == value) != equal:
                return False
        return True

    def execute(self) -> MockSupabaseResponse:
        self._client._maybe_fail(self._table, self._operation, self._payload)
        rows = self._client.rows(self._table)

        if self._operation == "insert":
            payload = self._payload if isinstance(self._payload, list) else [self._payload]
            inserted = [self._client._insert(self._table, row) for row in payload]
            return MockSupabaseResponse(data=[dict(r) for r in inserted])

        matched = [r for r in rows if self._matches(r)]

        if self._operation == "update":
            for row in matched:
                row.update(self._payload)
                row["updated_at"] = _now()
            return MockSupabaseResponse(data=[dict(r) for r in matched])

        if self._operation == "delete":
            for row in matched:
                rows.remove(row)
            return MockSupabaseResponse(data=[dict(r) for r in matched])

        total = len(matched)
        if self._order is not None:
            column, desc = self._order
            matched = sorted(matched, key=lambda r: r.get(column) or "", reverse=desc)
        if self._limit is not None:
            matched = matched[: self._limit]
        data = [dict(r) for r in matched]
        if self._is_single:
            return MockSupabaseResponse(data=data[0] if data else None, count=1 if data else 0)
        return MockSupabaseResponse(data=data, count=total)


class MockSupabaseTable:
    """Entry point for queries on one table."""

    def __init__(self, client: "MockSupabaseClient", name: str):
        self._client = client
        self._name = name

    def select(self, *args, **kwargs):
        return MockSupabaseQuery(self._client, self._name, "select")

    def insert(self, data):
        return MockSupabaseQuery(self._client, self._name, "insert", data)

    def update(self, data):
        return MockSupabaseQuery(self._client, self._name, "update", data)

    def delete(self):
        return MockSupabaseQuery(self._client, self._name, "delete")


class MockSupabaseClient:
    """Stateful mock Supabase client."""

    def __init__(self):
        self._tables: dict[str, list[dict]] = {}
        self._failures: list[FailureRule] = []
        self.calls: list[tuple[str, str]] = []

    def set_table_data(self, table_name: str, data: list, count: int = None):
        """Seed rows for a table (count is accepted for compatibility and ignored)."""
        self._tables[table_name] = [dict(row) for row in data]

    def rows(self, table_name: str) -> list[dict]:
        return self._tables.setdefault(table_name, [])

    def table(self, name: str) -> MockSupabaseTable:
        return MockSupabaseTable(self, name)

    def fail_on(
        self,
        table: str,
        operation: str,
        error: Exception,
        when: Optional[Callable[[Any], bool]] = None,
        times: Optional[int] = None,
    ) -> None:
        """
        Make a write fail.

        Usage:
            mock_supabase.fail_on("order_items", "insert", api_error("22P02"),
                                  when=lambda row: row["product_title"] == "Broken")
        """
        self._failures.append(FailureRule(table, operation, error, when, times))

    def _maybe_fail(self, table: str, operation: str, payload: Any) -> None:
        self.calls.append((table, operation))
        for rule in self._failures:
            if rule.table != table or rule.operation != operation:
                continue
            if rule.times is not None and rule.times <= 0:
                continue
            if rule.when is not None and not rule.when(payload):
                continue
            if rule.times is not None:
                rule.times -= 1
            raise rule.error

    def _insert(self, table: str, row: dict) -> dict:
        rows = self.rows(table)
        for key in UNIQUE_KEYS.get(table, []):
            values = tuple(row.get(column) for column in key)
            if any(v is None for v in values):
                continue
            if any(tuple(r.get(column) for column in key) == values for r in rows):
                raise api_error("23505", f"duplicate key value violates unique constraint on {key}")
        stored = {"id": str(uuid4()), "created_at": _now(), **row}
        rows.append(stored)
        return stored


def api_error(code: str, message: str = "query failed") -> APIError:
    return APIError({"code": code, "message": message, "details": message, "hint": None})


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ===================
# FIXTURES
# ===================

@pytest.fixture
def mock_supabase() -> MockSupabaseClient:
    """
    Create a mock Supabase client.

    Usage:
        def test_something(mock_supabase):
            mock_supabase.set_table_data("components", [
                {"id": "1", "name": "NE555", "part_number": "NE555", ...}
            ])
    """
    return MockSupabaseClient()


@pytest.fixture
def mock_db(mock_supabase) -> Generator:
    """
    Patch the database client with mock.

    Singletons are reset so services built during the test pick up the mock.
    """
    with patch("config.database.get_supabase_client", return_value=mock_supabase):
        with patch("services.catalog_store.get_supabase_client", return_value=mock_supabase):
            with patch("services.catalog_store._catalog_store", None):
                with patch("services.order_import_service._order_import_service", None):
                    yield mock_supabase


@pytest.fixture(autouse=True)
def clear_preview_cache():
    from services.preview_cache_service import clear_previews
    clear_previews()
    yield
    clear_previews()


@pytest.fixture
def sample_order_html() -> str:
    """Order export page with two orders (three items)."""
    return OrderHtmlFactory.page(
        OrderHtmlFactory.order(
            order_number="8100000000000001",
            order_date="Mar 5, 2024",
            status="Completed",
            store="Tech Parts Store",
            items=[
                OrderHtmlFactory.item("10K Ohm Resistor 1/4W", unit_price=1.50, quantity=2),
                OrderHtmlFactory.item("NE555 Timer IC DIP-8", unit_price=0.80, quantity=10),
            ],
        ),
        OrderHtmlFactory.order(
            order_number="8100000000000002",
            order_date="Apr 12, 2024",
            status="Awaiting delivery",
            store="Maker Shop",
            items=[
                OrderHtmlFactory.item("Ceramic Capacitor 100nF 50V", unit_price=2.00, quantity=1),
            ],
        ),
    )


# ===================
# API TEST CLIENT
# ===================

@pytest.fixture
def test_client():
    """
    Create FastAPI test client.

    Usage:
        def test_endpoint(test_client):
            response = test_client.get("/")
            assert response.status_code == 200
    """
    from fastapi.testclient import TestClient
    from main import app

    return TestClient(app)


@pytest.fixture
def test_client_with_mock_db(mock_db):
    """
    Create FastAPI test client with mocked database.

    Usage:
        def test_endpoint(test_client_with_mock_db, mock_supabase):
            mock_supabase.set_table_data("components", [...])
            response = test_client_with_mock_db.get("/api/import/history")
    """
    from fastapi.testclient import TestClient
    from main import app

    yield TestClient(app)
