"""
Pydantic models for validation and serialization.
"""

from models.base import BaseSchema
from models.order_import import (
    ImportSchema,
    OrderStatus,
    ProgressStage,
    ResolutionAction,
    VoltageSpec,
    CurrentSpec,
    ResistanceSpec,
    CapacitanceSpec,
    FrequencySpec,
    ElectricalSpec,
    ComponentCandidate,
    ParsedOrderItem,
    ParsedOrder,
    PartialParseWarning,
    DateRange,
    PreviewStatistics,
    ProgressEvent,
    PreviewResponse,
    ImportOptions,
    ImportCommitRequest,
    ItemImportOutcome,
    ImportResult,
    ImportCommitResponse,
    ImportHistoryEntry,
)
