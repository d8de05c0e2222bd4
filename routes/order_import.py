"""
Order import API routes.

Preview an AliExpress order export (HTML or MHTML), then commit the approved
orders into the parts catalog.
"""

from fastapi import APIRouter, File, Query, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from typing import AsyncIterator, Optional
import json
import structlog

from config.settings import settings
from models.order_import import (
    ImportCommitRequest,
    ImportCommitResponse,
    ImportHistoryEntry,
)
from services.import_session_service import ImportSession
from services.order_import_service import get_order_import_service
from exceptions import AppError, UploadRejectedError

logger = structlog.get_logger(__name__)

router = APIRouter()

ALLOWED_EXTENSIONS = (".html", ".htm", ".mhtml", ".mht")
ALLOWED_CONTENT_TYPES = {
    "text/html",
    "message/rfc822",
    "multipart/related",
    "application/x-mimearchive",
}
NDJSON_MEDIA_TYPE = "application/x-ndjson"
SSE_MEDIA_TYPE = "text/event-stream"


# ===================
# EXCEPTION HANDLER
# ===================

def handle_error(e: Exception) -> JSONResponse:
    """Convert exception to JSON response."""
    if isinstance(e, AppError):
        return JSONResponse(
            status_code=e.status_code,
            content=e.to_dict()
        )
    logger.error("unexpected_error", error=str(e), type=type(e).__name__)
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred"
            }
        }
    )


# ===================
# UPLOAD HELPERS
# ===================

def _check_file_type(upload: UploadFile) -> None:
    filename = (upload.filename or "").lower()
    content_type = (upload.content_type or "").split(";")[0].strip().lower()
    if filename.endswith(ALLOWED_EXTENSIONS) or content_type in ALLOWED_CONTENT_TYPES:
        return
    raise UploadRejectedError(
        "Only HTML or MHTML order exports are accepted",
        status_code=415,
        code="UNSUPPORTED_FILE_TYPE",
        details={"filename": upload.filename, "content_type": upload.content_type}
    )


async def _read_upload(upload: Optional[UploadFile]) -> bytes:
    """Validate and read the uploaded export."""
    if upload is None or not upload.filename:
        raise UploadRejectedError("No file uploaded; expected form field 'htmlFile'")

    _check_file_type(upload)

    limit = settings.max_upload_bytes
    content = await upload.read(limit + 1)
    if len(content) > limit:
        raise UploadRejectedError(
            f"File exceeds the {settings.max_upload_mb} MB upload limit",
            status_code=413,
            code="FILE_TOO_LARGE",
            details={"max_mb": settings.max_upload_mb}
        )
    return content


async def _ndjson_stream(events: AsyncIterator[dict]) -> AsyncIterator[str]:
    try:
        async for payload in events:
            yield json.dumps(payload) + "\n"
    finally:
        await events.aclose()


async def _sse_stream(events: AsyncIterator[dict]) -> AsyncIterator[str]:
    try:
        async for payload in events:
            yield f"data: {json.dumps(payload)}\n\n"
    finally:
        await events.aclose()


# ===================
# ROUTES
# ===================

@router.post("/aliexpress/preview")
async def preview_aliexpress_orders(
    request: Request,
    html_file: Optional[UploadFile] = File(None, alias="htmlFile"),
):
    """
    Parse an AliExpress order export without writing to the catalog.

    Streams progress as NDJSON (Accept: application/x-ndjson) or SSE
    (Accept: text/event-stream); otherwise returns the terminal payload as a
    single JSON object.

    Returns:
        {stage: "complete", success, previewId, preview, statistics}
    """
    try:
        content = await _read_upload(html_file)
        accept = request.headers.get("accept", "")
        session = ImportSession()

        logger.info(
            "import_preview_requested",
            filename=html_file.filename,
            size=len(content),
            accept=accept
        )

        if NDJSON_MEDIA_TYPE in accept:
            return StreamingResponse(
                _ndjson_stream(session.events(content)),
                media_type=NDJSON_MEDIA_TYPE
            )
        if SSE_MEDIA_TYPE in accept:
            return StreamingResponse(
                _sse_stream(session.events(content)),
                media_type=SSE_MEDIA_TYPE,
                headers={"Cache-Control": "no-cache"}
            )

        response = await session.preview(content)
        return session.terminal_payload(response)

    except Exception as e:
        return handle_error(e)


@router.post("/aliexpress/import", response_model=ImportCommitResponse)
async def import_aliexpress_orders(data: ImportCommitRequest):
    """
    Commit approved orders into the catalog.

    Each order is committed on its own; a failing order never rolls back
    the orders before it.

    Returns:
        ImportCommitResponse; success is false only when the batch was aborted
    """
    try:
        session = ImportSession()
        results = await session.commit(data)
        return ImportCommitResponse(success=not results.aborted, results=results)

    except Exception as e:
        return handle_error(e)


@router.get("/history", response_model=list[ImportHistoryEntry])
async def get_import_history(
    limit: int = Query(500, ge=1, le=5000, description="Max order rows to scan"),
):
    """Imported orders grouped by import day, newest first."""
    try:
        service = get_order_import_service()
        return service.get_import_history(limit=limit)

    except Exception as e:
        return handle_error(e)
