"""
Progress reporting for document parsing.

One ProgressReporter per import session: it numbers events, keeps stages
moving forward, and shields the parser from a misbehaving sink.
"""

from typing import Callable, Optional
import structlog

from models.order_import import ProgressEvent, ProgressStage, STAGE_ORDER

logger = structlog.get_logger(__name__)

ProgressSink = Callable[[ProgressEvent], None]


class ProgressReporter:
    """
    Emits ordered, monotonic ProgressEvents to an optional sink.

    A sink that raises is logged and otherwise ignored. With no sink,
    emit() is a no-op apart from bookkeeping.
    """

    def __init__(self, sink: Optional[ProgressSink] = None):
        self._sink = sink
        self._sequence = 0
        self._stage: Optional[ProgressStage] = None

    @property
    def sequence(self) -> int:
        return self._sequence

    @property
    def stage(self) -> Optional[ProgressStage]:
        return self._stage

    def emit(self, stage: ProgressStage, message: str = "", **counts) -> Optional[ProgressEvent]:
        """
        Emit one event.

        Args:
            stage: Lifecycle stage; never earlier than the last one emitted
            message: Short human-readable status
            **counts: orders_found, current_order, total_items, ...

        Returns:
            The event sent, or None when the stage would move backwards
        """
        if self._stage is not None and STAGE_ORDER[stage] < STAGE_ORDER[self._stage]:
            logger.warning(
                "progress_stage_regression_dropped",
                current=self._stage.value,
                attempted=stage.value
            )
            return None

        self._stage = stage
        self._sequence += 1
        event = ProgressEvent(
            stage=stage,
            sequence=self._sequence,
            message=message,
            **counts
        )

        if self._sink is None:
            return event

        try:
            self._sink(event)
        except Exception as e:
            logger.warning(
                "progress_sink_failed",
                stage=stage.value,
                sequence=self._sequence,
                error=str(e),
                error_type=type(e).__name__
            )
        return event
