"""
Unit tests for CatalogStore and its unit of work.

Run: pytest tests/unit/test_catalog_store.py -v
"""

import httpx
import pytest

from exceptions import ConflictError, DatabaseError, DuplicateError, StorageUnavailableError
from services.catalog_store import CatalogStore
from tests.conftest import api_error
from tests.factories import ComponentFactory


class TestCatalogStoreLookups:
    """Tests for read operations."""

    def test_get_order_matches_number_and_supplier(self, mock_db, mock_supabase):
        """Should find an order only under its own supplier."""
        mock_supabase.set_table_data("orders", [
            {"id": "o1", "order_number": "8100", "supplier": "Shop A"},
        ])
        store = CatalogStore()

        assert store.get_order("8100", "Shop A")["id"] == "o1"
        assert store.get_order("8100", "Shop B") is None

    def test_component_lookups(self, mock_db, mock_supabase):
        """Should look components up by part number and by name."""
        component = ComponentFactory.create(name="NE555 Timer", part_number="NE555")
        mock_supabase.set_table_data("components", [component])
        store = CatalogStore()

        assert store.get_component_by_part_number("NE555")["id"] == component["id"]
        assert store.get_component_by_name("NE555 Timer")["id"] == component["id"]
        assert store.get_component_by_part_number("LM358") is None


class TestUnitOfWork:
    """Tests for unit_of_work() and savepoints."""

    def test_commit_keeps_writes(self, mock_db, mock_supabase):
        """Should keep every write when the block succeeds."""
        store = CatalogStore()

        with store.unit_of_work("ok") as uow:
            uow.insert("components", {"name": "A"})
            uow.insert("components", {"name": "B"})

        assert len(mock_supabase.rows("components")) == 2

    def test_rollback_undoes_inserts_and_increments(self, mock_db, mock_supabase):
        """Should delete inserted rows and reverse increments on failure."""
        # Arrange
        existing = ComponentFactory.create(quantity=5)
        mock_supabase.set_table_data("components", [existing])
        store = CatalogStore()

        # Act
        with pytest.raises(RuntimeError):
            with store.unit_of_work("failing") as uow:
                uow.insert("components", {"name": "New"})
                uow.increment("components", existing["id"], "quantity", 4)
                raise RuntimeError("boom")

        # Assert
        rows = mock_supabase.rows("components")
        assert len(rows) == 1
        assert rows[0]["quantity"] == 5

    def test_savepoint_undoes_only_inner_writes(self, mock_db, mock_supabase):
        """Should roll back the savepoint and keep earlier writes."""
        store = CatalogStore()

        with store.unit_of_work("partial") as uow:
            uow.insert("orders", {"order_number": "1", "supplier": "S"})
            with pytest.raises(ValueError):
                with uow.savepoint():
                    uow.insert("order_items", {"product_title": "bad"})
                    raise ValueError("item failed")
            uow.insert("order_items", {"product_title": "good"})

        assert len(mock_supabase.rows("orders")) == 1
        assert [r["product_title"] for r in mock_supabase.rows("order_items")] == ["good"]

    def test_failed_compensation_continues(self, mock_db, mock_supabase):
        """Should keep undoing the remaining writes if one undo fails."""
        store = CatalogStore()
        mock_supabase.fail_on("order_items", "delete", api_error("XX000"))

        with pytest.raises(RuntimeError):
            with store.unit_of_work("messy") as uow:
                uow.insert("orders", {"order_number": "1", "supplier": "S"})
                uow.insert("order_items", {"product_title": "stuck"})
                raise RuntimeError("boom")

        assert mock_supabase.rows("orders") == []
        assert len(mock_supabase.rows("order_items")) == 1

    def test_rollback_keeps_concurrent_increment(self, mock_db, mock_supabase):
        """Should reverse only this unit's delta when another import also added stock."""
        # Arrange
        existing = ComponentFactory.create(quantity=5)
        mock_supabase.set_table_data("components", [existing])
        store = CatalogStore()

        # Act
        with pytest.raises(RuntimeError):
            with store.unit_of_work("failing") as uow:
                uow.increment("components", existing["id"], "quantity", 3)
                # Another import adds 2 before this unit fails
                mock_supabase.rows("components")[0]["quantity"] += 2
                raise RuntimeError("boom")

        # Assert
        assert mock_supabase.rows("components")[0]["quantity"] == 7

    def test_backfill_rollback_skips_changed_field(self, mock_db, mock_supabase):
        """Should leave a backfilled field alone once someone else changed it."""
        existing = ComponentFactory.create(description=None, image_url=None)
        mock_supabase.set_table_data("components", [existing])
        store = CatalogStore()

        with pytest.raises(RuntimeError):
            with store.unit_of_work("failing") as uow:
                uow.backfill("components", existing, {"description": "ours", "image_url": "img.jpg"})
                mock_supabase.rows("components")[0]["description"] = "edited by hand"
                raise RuntimeError("boom")

        row = mock_supabase.rows("components")[0]
        assert row["description"] == "edited by hand"
        assert row["image_url"] is None


class TestIncrementColumn:
    """Tests for increment_column() compare-and-set."""

    def test_retries_after_concurrent_change(self, mock_db, mock_supabase):
        """Should re-read and keep both changes when the row moves underneath."""
        # Arrange
        existing = ComponentFactory.create(quantity=5)
        mock_supabase.set_table_data("components", [existing])
        bumped = []

        def bump_once(payload):
            if not bumped:
                bumped.append(True)
                mock_supabase.rows("components")[0]["quantity"] += 2
            return False

        mock_supabase.fail_on("components", "update", RuntimeError("unused"), when=bump_once)
        store = CatalogStore()

        # Act
        store.increment_column("components", existing["id"], "quantity", 3)

        # Assert
        assert mock_supabase.rows("components")[0]["quantity"] == 10

    def test_gives_up_when_row_keeps_changing(self, mock_db, mock_supabase):
        """Should raise ConflictError after the retry limit."""
        existing = ComponentFactory.create(quantity=5)
        mock_supabase.set_table_data("components", [existing])

        def always_bump(payload):
            mock_supabase.rows("components")[0]["quantity"] += 1
            return False

        mock_supabase.fail_on("components", "update", RuntimeError("unused"), when=always_bump)
        store = CatalogStore()

        with pytest.raises(ConflictError):
            store.increment_column("components", existing["id"], "quantity", 3)

    def test_null_quantity_counts_as_zero(self, mock_db, mock_supabase):
        """Should treat a missing quantity as zero."""
        existing = ComponentFactory.create()
        existing["quantity"] = None
        mock_supabase.set_table_data("components", [existing])
        store = CatalogStore()

        store.increment_column("components", existing["id"], "quantity", 4)

        assert mock_supabase.rows("components")[0]["quantity"] == 4


class TestErrorMapping:
    """Tests for client error translation."""

    def test_unique_violation(self, mock_db, mock_supabase):
        """Should raise DuplicateError on a unique key conflict."""
        mock_supabase.set_table_data("components", [ComponentFactory.create(part_number="NE555")])
        store = CatalogStore()

        with pytest.raises(DuplicateError):
            store.insert_row("components", {"name": "x", "part_number": "NE555"})

    def test_other_api_error(self, mock_db, mock_supabase):
        """Should raise DatabaseError for other API errors."""
        mock_supabase.fail_on("components", "insert", api_error("22P02", "invalid input"))
        store = CatalogStore()

        with pytest.raises(DatabaseError):
            store.insert_row("components", {"name": "x"})

    def test_transport_error(self, mock_db, mock_supabase):
        """Should raise StorageUnavailableError when the store is unreachable."""
        mock_supabase.fail_on("orders", "select", httpx.ConnectError("connection refused"))
        store = CatalogStore()

        with pytest.raises(StorageUnavailableError) as exc_info:
            store.get_order("1", "S")
        assert exc_info.value.status_code == 503
