"""
Order import schemas: parsed orders, component candidates, commit payloads
and results.

Wire format is camelCase (the import UI posts back the preview verbatim),
Python attributes stay snake_case.
"""

from pydantic import ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel
from typing import Annotated, Literal, Optional, Union
from enum import Enum
from datetime import date, datetime

from config.settings import settings
from models.base import BaseSchema


class ImportSchema(BaseSchema):
    """BaseSchema with camelCase aliases; accepts either spelling on input."""
    model_config = ConfigDict(
        from_attributes=True,
        str_strip_whitespace=True,
        validate_assignment=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class OrderStatus(str, Enum):
    """Normalized marketplace order status."""
    PENDING = "pending"
    ORDERED = "ordered"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class ProgressStage(str, Enum):
    """Preview lifecycle stages, in emission order."""
    PARSING = "parsing"
    STRUCTURING = "structuring"
    DOWNLOADING_IMAGES = "downloading-images"
    COMPLETE = "complete"


# Stage ordering; events never move backwards
STAGE_ORDER = {
    ProgressStage.PARSING: 0,
    ProgressStage.STRUCTURING: 1,
    ProgressStage.DOWNLOADING_IMAGES: 2,
    ProgressStage.COMPLETE: 3,
}


class ResolutionAction(str, Enum):
    """How an item was linked to the catalog."""
    MATCHED = "matched"
    CREATED = "created"
    UNLINKED = "unlinked"


# ===================
# ELECTRICAL SPECS
# ===================

class VoltageSpec(ImportSchema):
    kind: Literal["voltage"] = "voltage"
    nominal: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None
    unit: Literal["V"] = "V"


class CurrentSpec(ImportSchema):
    kind: Literal["current"] = "current"
    value: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None
    unit: Literal["A", "mA", "µA"] = "A"


class ResistanceSpec(ImportSchema):
    kind: Literal["resistance"] = "resistance"
    value: float = Field(..., ge=0)
    unit: Literal["Ω", "kΩ", "MΩ", "GΩ"] = "Ω"
    tolerance: Optional[str] = None


class CapacitanceSpec(ImportSchema):
    kind: Literal["capacitance"] = "capacitance"
    value: float = Field(..., ge=0)
    unit: Literal["pF", "nF", "µF", "mF"] = "µF"
    voltage_rating: Optional[float] = None


class FrequencySpec(ImportSchema):
    kind: Literal["frequency"] = "frequency"
    value: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None
    unit: Literal["Hz", "kHz", "MHz", "GHz"] = "Hz"


ElectricalSpec = Annotated[
    Union[VoltageSpec, CurrentSpec, ResistanceSpec, CapacitanceSpec, FrequencySpec],
    Field(discriminator="kind"),
]


# ===================
# PARSED DOCUMENT
# ===================

class ComponentCandidate(ImportSchema):
    """Catalog component inferred from an item title. Not persisted as-is."""

    name: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    subcategory: Optional[str] = None
    part_number: Optional[str] = None
    manufacturer: Optional[str] = None
    description: Optional[str] = None
    tags: list[str] = Field(default_factory=list, max_length=10)
    package_type: Optional[str] = None
    voltage: Optional[VoltageSpec] = None
    current: Optional[CurrentSpec] = None
    resistance: Optional[ResistanceSpec] = None
    capacitance: Optional[CapacitanceSpec] = None
    frequency: Optional[FrequencySpec] = None
    pin_count: Optional[int] = Field(None, ge=1)
    protocols: list[str] = Field(default_factory=list)

    @field_validator("tags")
    @classmethod
    def limit_tag_length(cls, v: list[str]) -> list[str]:
        return [tag[:50] for tag in v if tag]

    @property
    def electrical_specs(self) -> list[ElectricalSpec]:
        """Every recognized electrical quantity, in a fixed order."""
        specs = [self.voltage, self.current, self.resistance, self.capacitance, self.frequency]
        return [s for s in specs if s is not None]


class ParsedOrderItem(ImportSchema):
    """One purchased line within an order."""

    product_title: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1, le=10000)
    unit_price: float = Field(0.0, ge=0)
    total_price: float = Field(0.0, ge=0)
    image_url: Optional[str] = None
    local_image_path: Optional[str] = None
    product_url: Optional[str] = None
    variation: Optional[str] = None
    specifications: dict[str, str] = Field(default_factory=dict)
    parsed_component: Optional[ComponentCandidate] = None


class ParsedOrder(ImportSchema):
    """A marketplace order extracted from the export."""

    order_number: str = Field(..., min_length=1, max_length=50)
    supplier: str = Field(..., min_length=1, max_length=100)
    seller_name: Optional[str] = None
    order_date: Optional[datetime] = None
    total_amount: float = Field(0.0, ge=0)
    status: OrderStatus = OrderStatus.ORDERED
    raw_snapshot_ref: Optional[str] = None
    items: list[ParsedOrderItem] = Field(default_factory=list)

    @property
    def identity_key(self) -> tuple[str, str]:
        """Duplicate-detection key."""
        return (self.order_number, self.supplier)


class PartialParseWarning(ImportSchema):
    """A block or item the parser had to skip."""

    scope: Literal["order", "item"]
    index: int
    reason: str
    order_number: Optional[str] = None

    def __str__(self) -> str:
        where = f"{self.scope} {self.index}"
        if self.order_number:
            where += f" (order {self.order_number})"
        return f"Skipped {where}: {self.reason}"


class DateRange(ImportSchema):
    earliest: Optional[datetime] = None
    latest: Optional[datetime] = None


class PreviewStatistics(ImportSchema):
    """Summary shown above the preview table."""

    total_orders: int = 0
    total_items: int = 0
    total_value: float = 0.0
    suppliers: list[str] = Field(default_factory=list)
    date_range: DateRange = Field(default_factory=DateRange)
    skipped_blocks: int = 0
    warnings: list[str] = Field(default_factory=list)


class ProgressEvent(ImportSchema):
    """Lifecycle notification emitted while a document is parsed."""

    stage: ProgressStage
    sequence: int = Field(..., ge=1)
    message: str = ""
    orders_found: int = 0
    current_order: int = 0
    total_items: int = 0
    processed_items: int = 0
    images_staged: int = 0


class PreviewResponse(ImportSchema):
    success: bool = True
    preview_id: Optional[str] = None
    preview: list[ParsedOrder] = Field(default_factory=list)
    statistics: PreviewStatistics = Field(default_factory=PreviewStatistics)


# ===================
# COMMIT
# ===================

class ImportOptions(ImportSchema):
    """Reconciliation switches chosen by the user."""

    create_components: bool = True
    update_existing: bool = True
    allow_duplicates: bool = False
    match_by_title: bool = True


class ImportCommitRequest(ImportSchema):
    """
    Commit payload.

    Either the (possibly edited) orders or a previewId referencing a cached
    preview must be supplied; orders win when both are present.
    """

    orders: Optional[list[ParsedOrder]] = None
    preview_id: Optional[str] = None
    import_options: ImportOptions = Field(default_factory=ImportOptions)

    @field_validator("orders")
    @classmethod
    def check_batch_limits(cls, v: Optional[list[ParsedOrder]]) -> Optional[list[ParsedOrder]]:
        if v is None:
            return v
        if len(v) > settings.max_import_orders:
            raise ValueError(
                f"At most {settings.max_import_orders} orders per import"
            )
        for order in v:
            if len(order.items) > settings.max_items_per_order:
                raise ValueError(
                    f"Order {order.order_number} has more than "
                    f"{settings.max_items_per_order} items"
                )
        return v

    @model_validator(mode="after")
    def require_source(self) -> "ImportCommitRequest":
        if self.orders is None and not self.preview_id:
            raise ValueError("Either orders or previewId is required")
        return self


class ItemImportOutcome(ImportSchema):
    """Per-item reconciliation outcome."""

    order_number: str
    product_title: str
    item_id: Optional[str] = None
    component_id: Optional[str] = None
    action: ResolutionAction
    confidence: float = Field(..., ge=0, le=1)
    manual_review: bool


class ImportResult(ImportSchema):
    """Aggregate outcome of one commit call."""

    imported: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)
    order_ids: list[str] = Field(default_factory=list)
    component_ids: list[str] = Field(default_factory=list)
    items: list[ItemImportOutcome] = Field(default_factory=list)
    aborted: bool = False

    def add_component_id(self, component_id: str) -> None:
        if component_id not in self.component_ids:
            self.component_ids.append(component_id)


class ImportCommitResponse(ImportSchema):
    success: bool
    results: ImportResult


# ===================
# HISTORY
# ===================

class ImportHistoryEntry(ImportSchema):
    """Imported orders grouped by the day they were imported."""

    import_date: date
    import_source: str
    order_count: int
    total_value: float
    earliest_order_date: Optional[datetime] = None
    latest_order_date: Optional[datetime] = None
