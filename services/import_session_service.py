"""
Import session orchestration.

An ImportSession serves one preview or commit request. It owns its own event
channel, cancellation signal and timeouts, so concurrent sessions share no
mutable state. Parsing and reconciliation run in worker threads; progress
events cross back to the event loop in emission order.

Cancellation: when a streaming client disconnects, the session sets its
cancel signal. The parser checks it between order blocks and between image
downloads and stops there; the reconciler checks it between orders.

Image staging has its own budget, separate from the parse ceiling. A slow
image host only costs the thumbnails that were not staged in time.
"""

from threading import Event
from typing import AsyncIterator, Optional
import asyncio
import uuid
import structlog

from config.settings import settings
from exceptions import (
    AppError,
    ImportTimeoutError,
    PreviewNotFoundError,
)
from models.order_import import (
    ImportCommitRequest,
    ImportResult,
    PreviewResponse,
    ProgressEvent,
    ProgressStage,
)
from parsers.order_html_parser import (
    OrderParseResult,
    finish_order_parse,
    read_order_document,
    stage_order_images,
)
from parsers.progress import ProgressReporter
from services.image_staging_service import ImageStager
from services.order_import_service import OrderImportService, get_order_import_service
from services.preview_cache_service import delete_preview, retrieve_preview, store_preview

logger = structlog.get_logger(__name__)

# Marks the end of the event stream
_END = object()


class ImportSession:
    """
    One import request.

    Usage (streaming):
        session = ImportSession()
        async for payload in session.events(content):
            ...

    Usage (single response):
        response = await session.preview(content)
        payload = session.terminal_payload(response)
    """

    def __init__(
        self,
        parse_timeout: Optional[float] = None,
        commit_timeout: Optional[float] = None,
        staging_timeout: Optional[float] = None,
        image_stager: Optional[ImageStager] = None,
        stage_images: Optional[bool] = None,
        import_service: Optional[OrderImportService] = None,
    ):
        self.session_id = str(uuid.uuid4())
        self.cancel_event = Event()
        self.parse_timeout = parse_timeout or settings.parse_timeout_seconds
        self.commit_timeout = commit_timeout or settings.commit_timeout_seconds
        self.staging_timeout = staging_timeout or settings.image_staging_timeout_seconds
        self.stage_images = settings.stage_images if stage_images is None else stage_images
        self._image_stager = image_stager
        self._import_service = import_service
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._final_event: Optional[ProgressEvent] = None
        self.log = logger.bind(session_id=self.session_id)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        """Ask running parse/commit work to stop at its next checkpoint."""
        if not self.cancel_event.is_set():
            self.log.info("import_session_cancelled")
        self.cancel_event.set()

    # ===================
    # PREVIEW
    # ===================

    async def preview(self, content: bytes) -> PreviewResponse:
        """
        Parse an uploaded document without touching the catalog.

        Parsing is bounded by parse_timeout. Image staging runs afterwards
        under its own staging_timeout; when that runs out the remaining
        items keep their remote image URL and the preview still succeeds.

        Raises:
            DocumentFormatError: If the document is not markup
            ImportTimeoutError: If parsing exceeds parse_timeout
            ImportCancelledError: If the session was cancelled
        """
        self._loop = asyncio.get_running_loop()
        reporter = ProgressReporter(self._publish)

        self.log.info("import_preview_started", size=len(content))
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(read_order_document, content, reporter, self.cancel_event),
                timeout=self.parse_timeout,
            )
        except asyncio.TimeoutError:
            self.cancel_event.set()
            self.log.error("import_preview_timeout", timeout=self.parse_timeout)
            raise ImportTimeoutError("preview", self.parse_timeout)

        if self.stage_images:
            await self._stage(result, reporter)
        finish_order_parse(result, reporter)

        preview_id = store_preview(result.orders)
        statistics = result.statistics()
        self.log.info(
            "import_preview_complete",
            preview_id=preview_id,
            orders=statistics.total_orders,
            items=statistics.total_items,
            images_staged=result.images_staged,
            skipped_blocks=statistics.skipped_blocks
        )
        return PreviewResponse(
            success=True,
            preview_id=preview_id,
            preview=result.orders,
            statistics=statistics,
        )

    async def _stage(self, result: OrderParseResult, reporter: ProgressReporter) -> None:
        stop_event = Event()
        try:
            await asyncio.wait_for(
                asyncio.to_thread(
                    stage_order_images,
                    result,
                    self._get_image_stager().stage,
                    reporter,
                    self.cancel_event,
                    stop_event,
                ),
                timeout=self.staging_timeout,
            )
        except asyncio.TimeoutError:
            # The worker stops after the image in flight
            stop_event.set()
            self.log.warning(
                "image_staging_timeout",
                timeout=self.staging_timeout,
                staged=result.images_staged
            )

    async def events(self, content: bytes) -> AsyncIterator[dict]:
        """
        Progress payloads followed by exactly one terminal payload.

        The terminal payload is {stage: "complete", preview, statistics, ...}
        or {stage: "error", error}. Closing the iterator early cancels the
        session.
        """
        self._queue = asyncio.Queue()
        task = asyncio.create_task(self._run_preview(content))
        finished = False
        try:
            while True:
                event = await self._queue.get()
                if event is _END:
                    break
                yield event.model_dump(mode="json", by_alias=True)

            try:
                response = await task
            except AppError as e:
                self.log.warning("import_preview_failed", code=e.code, error=e.message)
                finished = True
                yield {"stage": "error", "success": False, "error": e.to_dict()["error"]}
                return
            except Exception as e:
                self.log.error("import_preview_crashed", error=str(e), error_type=type(e).__name__)
                finished = True
                yield {
                    "stage": "error",
                    "success": False,
                    "error": {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred"},
                }
                return

            finished = True
            yield self.terminal_payload(response)
        finally:
            if not finished:
                self.log.info("import_preview_client_disconnected")
                self.cancel()
                task.cancel()

    def terminal_payload(self, response: PreviewResponse) -> dict:
        """The final {stage: "complete", ...} object."""
        payload = {"stage": ProgressStage.COMPLETE.value}
        if self._final_event is not None:
            payload.update(self._final_event.model_dump(mode="json", by_alias=True))
        payload.update(response.model_dump(mode="json", by_alias=True))
        return payload

    async def _run_preview(self, content: bytes) -> PreviewResponse:
        try:
            return await self.preview(content)
        finally:
            self._queue.put_nowait(_END)

    def _publish(self, event: ProgressEvent) -> None:
        """Progress sink; called from the parser thread."""
        if event.stage == ProgressStage.COMPLETE:
            # Folded into the terminal payload
            self._final_event = event
            return
        if self._queue is None or self._loop is None or self.cancelled:
            return
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    def _get_image_stager(self) -> ImageStager:
        if self._image_stager is None:
            self._image_stager = ImageStager()
        return self._image_stager

    # ===================
    # COMMIT
    # ===================

    async def commit(self, request: ImportCommitRequest) -> ImportResult:
        """
        Reconcile approved orders against the catalog.

        Raises:
            PreviewNotFoundError: If previewId is given without orders and has expired
            ImportTimeoutError: If the commit exceeds commit_timeout
        """
        orders = request.orders
        if orders is None:
            orders = retrieve_preview(request.preview_id)
            if orders is None:
                raise PreviewNotFoundError(request.preview_id)

        service = self._import_service or get_order_import_service()
        self.log.info("import_commit_started", orders=len(orders), preview_id=request.preview_id)
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(
                    service.import_orders,
                    orders,
                    request.import_options,
                    self.cancel_event,
                ),
                timeout=self.commit_timeout,
            )
        except asyncio.TimeoutError:
            # Orders already committed stay; the rest are not attempted
            self.cancel_event.set()
            self.log.error("import_commit_timeout", timeout=self.commit_timeout)
            raise ImportTimeoutError("commit", self.commit_timeout)

        if request.preview_id and not result.aborted:
            delete_preview(request.preview_id)
        return result
