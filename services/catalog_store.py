"""
Catalog store backed by Supabase.

Supabase's REST API has no client-side transactions, so a unit of work
records a compensating action for every write it makes and replays them in
reverse on failure:
    - an insert is undone by deleting the row
    - a quantity increment is undone by the opposite increment
    - a backfilled field is cleared again only while it still holds the
      value this unit wrote

Quantity changes are compare-and-set deltas, never absolute values, so
another import's stock changes to the same component survive both commit
and rollback. Savepoints mark a position in the write log so a single item
can be undone without touching the rest of its order.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Optional
import structlog

import httpx
from postgrest.exceptions import APIError

from config import get_supabase_client
from exceptions import (
    ConflictError,
    DatabaseError,
    DuplicateError,
    StorageUnavailableError,
)

logger = structlog.get_logger(__name__)

# Postgres unique_violation
UNIQUE_VIOLATION = "23505"

# Compare-and-set retries for one increment
MAX_INCREMENT_ATTEMPTS = 5


@dataclass
class Compensation:
    """Undo step for one write."""
    table: str
    row_id: str
    kind: str  # "delete" | "increment" | "restore"
    column: Optional[str] = None
    delta: int = 0
    written: Any = None
    previous: Any = None


class UnitOfWork:
    """
    Write log for one order import.

    Use via CatalogStore.unit_of_work(); never commit partially.
    """

    def __init__(self, store: "CatalogStore", label: str):
        self.store = store
        self.label = label
        self._log: list[Compensation] = []

    @property
    def writes(self) -> int:
        return len(self._log)

    def insert(self, table: str, row: dict) -> dict:
        inserted = self.store.insert_row(table, row)
        self._log.append(Compensation(table=table, row_id=inserted["id"], kind="delete"))
        return inserted

    def increment(self, table: str, row_id: str, column: str, delta: int) -> dict:
        """Add delta to a numeric column; undone by subtracting it again."""
        updated = self.store.increment_column(table, row_id, column, delta)
        self._log.append(
            Compensation(table=table, row_id=row_id, kind="increment", column=column, delta=delta)
        )
        return updated

    def backfill(self, table: str, current: dict, changes: dict) -> dict:
        """
        Fill columns that were empty when `current` was read.

        Args:
            table: Table name
            current: Row as read before the write (must include id)
            changes: Column -> new value
        """
        updated = self.store.update_row(table, current["id"], changes)
        for column, value in changes.items():
            self._log.append(Compensation(
                table=table,
                row_id=current["id"],
                kind="restore",
                column=column,
                written=value,
                previous=current.get(column),
            ))
        return updated

    @contextmanager
    def savepoint(self) -> Iterator["UnitOfWork"]:
        """Undo only the writes made inside the block if it raises."""
        mark = len(self._log)
        try:
            yield self
        except Exception:
            self._rollback_to(mark)
            raise

    def rollback(self) -> None:
        self._rollback_to(0)

    def _rollback_to(self, mark: int) -> None:
        undone = 0
        while len(self._log) > mark:
            step = self._log.pop()
            try:
                self._undo(step)
                undone += 1
            except Exception as e:
                # Keep undoing the rest; the row is left for manual cleanup
                logger.error(
                    "compensation_failed",
                    unit=self.label,
                    table=step.table,
                    row_id=step.row_id,
                    kind=step.kind,
                    error=str(e)
                )
        logger.info("unit_of_work_rolled_back", unit=self.label, undone=undone, to_mark=mark)

    def _undo(self, step: Compensation) -> None:
        if step.kind == "delete":
            self.store.delete_row(step.table, step.row_id)
        elif step.kind == "increment":
            self.store.increment_column(step.table, step.row_id, step.column, -step.delta)
        else:
            restored = self.store.update_row_if(
                step.table,
                step.row_id,
                {step.column: step.previous},
                expected={step.column: step.written},
            )
            if not restored:
                logger.info(
                    "compensation_skipped_changed_field",
                    unit=self.label,
                    table=step.table,
                    row_id=step.row_id,
                    column=step.column
                )


class CatalogStore:
    """
    Lookups and writes for components, orders and order items.

    Translates client failures into application errors:
        - transport failures -> StorageUnavailableError
        - unique violations -> DuplicateError
        - anything else -> DatabaseError
    """

    COMPONENTS = "components"
    ORDERS = "orders"
    ORDER_ITEMS = "order_items"

    def __init__(self):
        self.db = get_supabase_client()

    # ===================
    # READ OPERATIONS
    # ===================

    def get_order(self, order_number: str, supplier: str) -> Optional[dict]:
        """Persisted order with this (order number, supplier), if any."""
        result = self._execute(
            "select",
            self.ORDERS,
            self.db.table(self.ORDERS)
            .select("id, order_number, supplier")
            .eq("order_number", order_number)
            .eq("supplier", supplier)
            .limit(1)
        )
        return result.data[0] if result.data else None

    def get_component_by_part_number(self, part_number: str) -> Optional[dict]:
        result = self._execute(
            "select",
            self.COMPONENTS,
            self.db.table(self.COMPONENTS)
            .select("*")
            .eq("part_number", part_number)
            .limit(1)
        )
        return result.data[0] if result.data else None

    def get_component_by_name(self, name: str) -> Optional[dict]:
        result = self._execute(
            "select",
            self.COMPONENTS,
            self.db.table(self.COMPONENTS)
            .select("*")
            .eq("name", name)
            .limit(1)
        )
        return result.data[0] if result.data else None

    def list_imported_orders(self, import_source: str, limit: int = 500) -> list[dict]:
        """Imported order headers, newest import first."""
        result = self._execute(
            "select",
            self.ORDERS,
            self.db.table(self.ORDERS)
            .select("id, order_number, supplier, order_date, total_amount, import_source, import_date")
            .eq("import_source", import_source)
            .order("import_date", desc=True)
            .limit(limit)
        )
        return result.data or []

    # ===================
    # WRITE OPERATIONS
    # ===================

    @contextmanager
    def unit_of_work(self, label: str) -> Iterator[UnitOfWork]:
        """
        Group the writes of one order.

        Any exception inside the block undoes every write made through the
        yielded UnitOfWork and is re-raised.
        """
        uow = UnitOfWork(self, label)
        logger.debug("unit_of_work_started", unit=label)
        try:
            yield uow
        except BaseException as e:
            logger.warning(
                "unit_of_work_failed",
                unit=label,
                writes=uow.writes,
                error=str(e),
                error_type=type(e).__name__
            )
            uow.rollback()
            raise
        logger.debug("unit_of_work_committed", unit=label, writes=uow.writes)

    def insert_row(self, table: str, row: dict) -> dict:
        result = self._execute("insert", table, self.db.table(table).insert(row))
        if not result.data:
            raise DatabaseError("insert", f"no row returned from {table}")
        return result.data[0]

    def update_row(self, table: str, row_id: str, changes: dict) -> dict:
        result = self._execute(
            "update", table, self.db.table(table).update(changes).eq("id", row_id)
        )
        return result.data[0] if result.data else {"id": row_id, **changes}

    def update_row_if(self, table: str, row_id: str, changes: dict, expected: dict) -> bool:
        """
        Update a row only while `expected` columns still hold their values.

        Returns:
            True when a row matched and was updated
        """
        query = self.db.table(table).update(changes).eq("id", row_id)
        for column, value in expected.items():
            query = query.is_(column, "null") if value is None else query.eq(column, value)
        result = self._execute("update", table, query)
        return bool(result.data)

    def increment_column(self, table: str, row_id: str, column: str, delta: int) -> dict:
        """
        Add delta to a numeric column with compare-and-set.

        The write only lands while the column still holds the value just
        read; a concurrent change makes it re-read and retry.

        Raises:
            ConflictError: If the row kept changing for every attempt
            DatabaseError: If the row does not exist
        """
        for attempt in range(1, MAX_INCREMENT_ATTEMPTS + 1):
            result = self._execute(
                "select",
                table,
                self.db.table(table).select(f"id, {column}").eq("id", row_id).limit(1)
            )
            if not result.data:
                raise DatabaseError("update", f"{table} row {row_id} not found")

            current = result.data[0].get(column)
            new_value = (current or 0) + delta
            if self.update_row_if(table, row_id, {column: new_value}, expected={column: current}):
                return {"id": row_id, column: new_value}

            logger.info(
                "increment_conflict_retry",
                table=table,
                row_id=row_id,
                column=column,
                attempt=attempt
            )

        raise ConflictError(
            f"{table} row {row_id} changed during every update attempt",
            code="CONCURRENT_UPDATE",
            details={"table": table, "column": column}
        )

    def delete_row(self, table: str, row_id: str) -> None:
        self._execute("delete", table, self.db.table(table).delete().eq("id", row_id))

    # ===================
    # HELPERS
    # ===================

    def _execute(self, operation: str, table: str, query):
        try:
            return query.execute()
        except (httpx.HTTPError, OSError) as e:
            logger.error(
                "catalog_store_unreachable",
                operation=operation,
                table=table,
                error=str(e),
                error_type=type(e).__name__
            )
            raise StorageUnavailableError(
                f"Catalog store unreachable during {operation} on {table}",
                details={"error": str(e)}
            ) from e
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                logger.info("catalog_unique_violation", table=table, details=e.details)
                raise DuplicateError(table, "key", str(e.details or e.message)) from e
            logger.error(
                "catalog_store_api_error",
                operation=operation,
                table=table,
                code=e.code,
                error=e.message
            )
            raise DatabaseError(operation, e.message or str(e), details={"table": table, "code": e.code}) from e
        except Exception as e:
            logger.error(
                "catalog_store_failed",
                operation=operation,
                table=table,
                error=str(e),
                error_type=type(e).__name__
            )
            raise DatabaseError(operation, str(e), details={"table": table}) from e


# Singleton instance for convenience
_catalog_store: Optional[CatalogStore] = None

def get_catalog_store() -> CatalogStore:
    """Get or create CatalogStore instance."""
    global _catalog_store
    if _catalog_store is None:
        _catalog_store = CatalogStore()
    return _catalog_store
