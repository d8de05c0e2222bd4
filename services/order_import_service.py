"""
Order import reconciliation.

Commits parsed orders into the catalog one order at a time. Each order's
header row, item rows and the component creates/updates they trigger share a
unit of work, so a failed order leaves nothing behind and never touches
orders committed before it. Inside an order every item runs in a savepoint.

Error handling:
    DuplicateOrderSkip / OrderPersistError -> order skipped or failed, batch continues
    ItemPersistError / ComponentResolutionWarning -> recorded, order still imported
    StorageUnavailableError -> in-flight order undone, remaining orders not attempted
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Event
from typing import Optional
import structlog

from exceptions import (
    AppError,
    ComponentResolutionWarning,
    DuplicateError,
    DuplicateOrderSkip,
    ItemPersistError,
    OrderPersistError,
    StorageUnavailableError,
)
from models.order_import import (
    ComponentCandidate,
    ImportHistoryEntry,
    ImportOptions,
    ImportResult,
    ItemImportOutcome,
    ParsedOrder,
    ParsedOrderItem,
    ResolutionAction,
)
from parsers.component_spec_parser import DEFAULT_CATEGORY
from services.catalog_store import CatalogStore, UnitOfWork, get_catalog_store
from services.import_confidence import calculate_import_confidence, needs_manual_review

logger = structlog.get_logger(__name__)

# Constants
IMPORT_SOURCE = "aliexpress"
UPLOADS_URL_PREFIX = "/uploads/"


@dataclass
class OrderContext:
    """Per-order scratch state; merged into the result only on commit."""
    order: ParsedOrder
    order_id: Optional[str] = None
    outcomes: list[ItemImportOutcome] = field(default_factory=list)
    component_ids: list[str] = field(default_factory=list)
    created_ids: set[str] = field(default_factory=set)
    errors: list[str] = field(default_factory=list)


class OrderImportService:
    """
    Reconciles parsed orders against the parts catalog.

    Component resolution per item:
        1. exact part number match
        2. exact name match (when match_by_title)
        3. create from the candidate (when create_components)
        4. otherwise unlinked and flagged for review
    """

    def __init__(self, store: Optional[CatalogStore] = None):
        self.store = store or get_catalog_store()

    def import_orders(
        self,
        orders: list[ParsedOrder],
        options: Optional[ImportOptions] = None,
        cancel_event: Optional[Event] = None,
    ) -> ImportResult:
        """
        Commit a batch of parsed orders.

        Args:
            orders: Orders from a preview, possibly edited by the user
            options: Reconciliation switches (defaults if omitted)
            cancel_event: Checked before each order

        Returns:
            ImportResult with imported/skipped/failed counts and per-item outcomes
        """
        options = options or ImportOptions()
        result = ImportResult()
        # Components created by this call; they always accumulate quantity
        created_this_call: set[str] = set()

        logger.info(
            "order_import_started",
            orders=len(orders),
            items=sum(len(o.items) for o in orders),
            **options.model_dump()
        )

        for position, order in enumerate(orders, start=1):
            if cancel_event is not None and cancel_event.is_set():
                remaining = len(orders) - position + 1
                result.aborted = True
                result.errors.append(f"Import cancelled; {remaining} orders not processed")
                logger.warning("order_import_cancelled", remaining=remaining)
                break

            try:
                ctx = self._import_order(order, options, created_this_call)
            except DuplicateOrderSkip as skip:
                result.skipped += 1
                result.errors.append(str(skip))
                logger.info(
                    "order_skipped_duplicate",
                    order_number=order.order_number,
                    supplier=order.supplier
                )
                continue
            except OrderPersistError as e:
                result.failed += 1
                result.errors.append(str(e))
                logger.warning("order_persist_failed", order_number=order.order_number, reason=e.reason)
                continue
            except StorageUnavailableError as e:
                remaining = len(orders) - position
                result.failed += 1
                result.aborted = True
                result.errors.append(
                    f"Order {order.order_number}: {e.message}; "
                    f"{remaining} remaining orders not processed"
                )
                logger.error(
                    "storage_unavailable_abort",
                    order_number=order.order_number,
                    committed=result.imported,
                    remaining=remaining
                )
                break
            except AppError as e:
                result.failed += 1
                result.errors.append(f"Order {order.order_number}: {e.message}")
                logger.warning("order_import_failed", order_number=order.order_number, error=e.message)
                continue

            result.imported += 1
            result.order_ids.append(ctx.order_id)
            for component_id in ctx.component_ids:
                result.add_component_id(component_id)
            result.items.extend(ctx.outcomes)
            result.errors.extend(ctx.errors)
            created_this_call |= ctx.created_ids

        logger.info(
            "order_import_complete",
            imported=result.imported,
            skipped=result.skipped,
            failed=result.failed,
            components=len(result.component_ids),
            aborted=result.aborted
        )
        return result

    # ===================
    # ORDER
    # ===================

    def _import_order(
        self,
        order: ParsedOrder,
        options: ImportOptions,
        created_this_call: set[str],
    ) -> OrderContext:
        if not options.allow_duplicates:
            if self.store.get_order(order.order_number, order.supplier) is not None:
                raise DuplicateOrderSkip(order.order_number, order.supplier)

        ctx = OrderContext(order=order)
        with self.store.unit_of_work(f"order:{order.order_number}") as uow:
            try:
                order_row = uow.insert(CatalogStore.ORDERS, _order_row(order))
            except DuplicateError:
                # Lost a race with a concurrent import of the same order
                if options.allow_duplicates:
                    raise OrderPersistError(order.order_number, "conflicts with an existing order")
                raise DuplicateOrderSkip(order.order_number, order.supplier)
            except StorageUnavailableError:
                raise
            except AppError as e:
                raise OrderPersistError(order.order_number, e.message)

            ctx.order_id = order_row["id"]
            for item in order.items:
                ctx.outcomes.append(
                    self._import_item(uow, ctx, item, options, created_this_call)
                )

        logger.info(
            "order_imported",
            order_number=order.order_number,
            order_id=ctx.order_id,
            items=len(order.items),
            review=sum(1 for o in ctx.outcomes if o.manual_review)
        )
        return ctx

    # ===================
    # ITEM
    # ===================

    def _import_item(
        self,
        uow: UnitOfWork,
        ctx: OrderContext,
        item: ParsedOrderItem,
        options: ImportOptions,
        created_this_call: set[str],
    ) -> ItemImportOutcome:
        confidence = calculate_import_confidence(item.parsed_component)
        fresh_ids = created_this_call | ctx.created_ids

        try:
            with uow.savepoint():
                component_id, action = self._resolve_component(uow, item, options, fresh_ids)
                manual_review = needs_manual_review(confidence, component_id)
                item_row = uow.insert(
                    CatalogStore.ORDER_ITEMS,
                    _item_row(ctx.order_id, item, component_id, confidence, manual_review)
                )
        except StorageUnavailableError:
            raise
        except AppError as e:
            error = ItemPersistError(item.product_title, e.message)
            ctx.errors.append(str(error))
            logger.warning(
                "item_persist_failed",
                order_number=ctx.order.order_number,
                title=item.product_title[:80],
                error=e.message
            )
            return ItemImportOutcome(
                order_number=ctx.order.order_number,
                product_title=item.product_title,
                action=ResolutionAction.UNLINKED,
                confidence=confidence,
                manual_review=True,
            )

        if component_id is not None:
            if component_id not in ctx.component_ids:
                ctx.component_ids.append(component_id)
            if action == ResolutionAction.CREATED:
                ctx.created_ids.add(component_id)
        else:
            ctx.errors.append(str(ComponentResolutionWarning(item.product_title)))

        return ItemImportOutcome(
            order_number=ctx.order.order_number,
            product_title=item.product_title,
            item_id=item_row["id"],
            component_id=component_id,
            action=action,
            confidence=confidence,
            manual_review=manual_review,
        )

    def _resolve_component(
        self,
        uow: UnitOfWork,
        item: ParsedOrderItem,
        options: ImportOptions,
        fresh_ids: set[str],
    ) -> tuple[Optional[str], ResolutionAction]:
        candidate = item.parsed_component
        match = None

        if candidate is not None and candidate.part_number:
            match = self.store.get_component_by_part_number(candidate.part_number)
        if match is None and options.match_by_title:
            name = candidate.name if candidate is not None else item.product_title
            match = self.store.get_component_by_name(name)

        if match is not None:
            self._apply_to_existing(uow, match, item, options, fresh=match["id"] in fresh_ids)
            return match["id"], ResolutionAction.MATCHED

        if not options.create_components:
            return None, ResolutionAction.UNLINKED

        try:
            row = uow.insert(CatalogStore.COMPONENTS, _component_row(item))
        except DuplicateError:
            # Another import created this part number first
            if candidate is None or not candidate.part_number:
                raise
            match = self.store.get_component_by_part_number(candidate.part_number)
            if match is None:
                raise
            self._apply_to_existing(uow, match, item, options, fresh=False)
            return match["id"], ResolutionAction.MATCHED

        logger.debug("component_created", component_id=row["id"], name=row.get("name"))
        return row["id"], ResolutionAction.CREATED

    def _apply_to_existing(
        self,
        uow: UnitOfWork,
        component: dict,
        item: ParsedOrderItem,
        options: ImportOptions,
        fresh: bool,
    ) -> None:
        """Add stock and backfill empty descriptive fields."""
        if not (options.update_existing or fresh):
            return

        uow.increment(CatalogStore.COMPONENTS, component["id"], "quantity", item.quantity)
        if not options.update_existing:
            return

        changes: dict = {}
        candidate = item.parsed_component
        if not component.get("description") and candidate is not None and candidate.description:
            changes["description"] = candidate.description
        image_url = _component_image_url(item)
        if not component.get("image_url") and image_url:
            changes["image_url"] = image_url
        if changes:
            uow.backfill(CatalogStore.COMPONENTS, component, changes)

    # ===================
    # HISTORY
    # ===================

    def get_import_history(self, limit: int = 500) -> list[ImportHistoryEntry]:
        """Imported orders grouped by import day, newest first."""
        rows = self.store.list_imported_orders(IMPORT_SOURCE, limit=limit)

        groups: dict[str, list[dict]] = {}
        for row in rows:
            day = (row.get("import_date") or "")[:10]
            if day:
                groups.setdefault(day, []).append(row)

        history = []
        for day in sorted(groups, reverse=True):
            day_rows = groups[day]
            order_dates = [_as_utc(r["order_date"]) for r in day_rows if r.get("order_date")]
            history.append(ImportHistoryEntry(
                import_date=day,
                import_source=IMPORT_SOURCE,
                order_count=len(day_rows),
                total_value=round(sum(float(r.get("total_amount") or 0) for r in day_rows), 2),
                earliest_order_date=min(order_dates) if order_dates else None,
                latest_order_date=max(order_dates) if order_dates else None,
            ))
        return history


# ===================
# ROW BUILDERS
# ===================

def _as_utc(value) -> datetime:
    """Timestamps from the store may be naive or aware; compare them as UTC."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _order_row(order: ParsedOrder) -> dict:
    now = datetime.now(timezone.utc)
    return {
        "order_number": order.order_number,
        "supplier": order.supplier,
        "supplier_order_id": order.order_number,
        "order_date": order.order_date.isoformat() if order.order_date else None,
        "total_amount": order.total_amount,
        "status": order.status.value,
        "import_source": IMPORT_SOURCE,
        "import_date": now.isoformat(),
        "notes": f"Imported from AliExpress HTML on {now.date().isoformat()}",
        "original_data": order.model_dump(mode="json", by_alias=True, exclude={"items"}),
    }


def _item_row(
    order_id: str,
    item: ParsedOrderItem,
    component_id: Optional[str],
    confidence: float,
    manual_review: bool,
) -> dict:
    return {
        "order_id": order_id,
        "component_id": component_id,
        "product_title": item.product_title,
        "product_url": item.product_url,
        "image_url": item.image_url,
        "local_image_path": item.local_image_path,
        "quantity": item.quantity,
        "unit_cost": item.unit_price,
        "total_cost": item.total_price,
        "specifications": item.specifications,
        "variation": item.variation,
        "import_confidence": confidence,
        "manual_review": manual_review,
        "notes": None if component_id else "No matching component; needs review",
    }


def _component_image_url(item: ParsedOrderItem) -> Optional[str]:
    if item.local_image_path:
        return UPLOADS_URL_PREFIX + item.local_image_path.lstrip("/")
    return item.image_url


def _spec_json(spec) -> Optional[dict]:
    return spec.model_dump(mode="json", exclude_none=True) if spec is not None else None


def _component_row(item: ParsedOrderItem) -> dict:
    candidate = item.parsed_component or ComponentCandidate(
        name=item.product_title,
        category=DEFAULT_CATEGORY,
    )
    return {
        "name": candidate.name,
        "part_number": candidate.part_number,
        "manufacturer": candidate.manufacturer,
        "description": candidate.description,
        "category": candidate.category,
        "subcategory": candidate.subcategory,
        "tags": candidate.tags,
        "package_type": candidate.package_type,
        "voltage": _spec_json(candidate.voltage),
        "current": _spec_json(candidate.current),
        "resistance": _spec_json(candidate.resistance),
        "capacitance": _spec_json(candidate.capacitance),
        "frequency": _spec_json(candidate.frequency),
        "pin_count": candidate.pin_count,
        "protocols": candidate.protocols,
        "quantity": item.quantity,
        "min_threshold": 0,
        "unit_cost": item.unit_price,
        "image_url": _component_image_url(item),
        "status": "available",
    }


# Singleton instance for convenience
_order_import_service: Optional[OrderImportService] = None

def get_order_import_service() -> OrderImportService:
    """Get or create OrderImportService instance."""
    global _order_import_service
    if _order_import_service is None:
        _order_import_service = OrderImportService()
    return _order_import_service
