"""
File API Router: thin layer over the pipeline, store and streaming gateway

  POST   /api/v1/files/upload    multipart `file` → 202 once the pending record exists
  GET    /api/v1/files           owner's records, newest first (?status= filter)
  GET    /api/v1/files/events    SSE stream of recordChanged / recordRemoved / liveness
  GET    /api/v1/files/{id}      one record
  DELETE /api/v1/files/{id}      remove a record (204)

Request lifecycle (upload):
  ┌──────────────────────────────────────────────────────────────┐
  │ 1. JWT verification → owner_id (never client-supplied)        │
  │ 2. Read bytes, early 413 on Content-Length                    │
  │ 3. Start tracked background pipeline run                      │
  │ 4. Wait for the pending record (or a pre-record failure)      │
  │ 5. 202 + record id; progress follows on /files/events         │
  └──────────────────────────────────────────────────────────────┘

Pre-record pipeline failures map to 400 / 409 / 413 / 422 / 503 / 500 with a
structured ErrorResponse body. Record store outages on reads are handled
app-wide (503).
"""

from __future__ import annotations

import logging
import mimetypes
import uuid
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, File, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response, StreamingResponse

from fileflow.auth.dependencies import CurrentOwner, Ingestion, Notifier, OptionalOwner, Store
from fileflow.core.config import settings
from fileflow.realtime.gateway import StreamConnection
from fileflow.schemas.files import (
    HTTP_STATUS_BY_CODE,
    ErrorResponse,
    FileErrors,
    FileListResponse,
    FileRecord,
    FileStatus,
    FileUploadResponse,
)
from fileflow.services.errors import ErrorCode, FileTooLargeError, PipelineError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/files", tags=["Files"])

SSE_HEADERS = {
    "Cache-Control":     "no-cache",
    "Connection":        "keep-alive",
    "X-Accel-Buffering": "no",  # disable nginx buffering for SSE
}

# multipart framing allowance on top of the file itself
_FORM_OVERHEAD_BYTES = 4096


# ---------------------------------------------------------------------------
# POST /files/upload
# ---------------------------------------------------------------------------

@router.post(
    "/upload",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a file for processing",
    responses={
        202: {"model": FileUploadResponse, "description": "Record created; processing continues asynchronously"},
        400: {"model": ErrorResponse, "description": "Missing or invalid file"},
        401: {"model": ErrorResponse, "description": "Missing or invalid JWT"},
        409: {"model": ErrorResponse, "description": "Identical file already uploaded by this owner"},
        413: {"model": ErrorResponse, "description": "File exceeds the upload limit"},
        422: {"model": ErrorResponse, "description": "File content could not be extracted"},
        503: {"model": ErrorResponse, "description": "Record store unavailable"},
    },
)
async def upload_file(
    request:   Request,
    owner_id:  CurrentOwner,
    ingestion: Ingestion,
    file:      Optional[UploadFile] = File(None, description="File to process (max 10 MB)"),
) -> JSONResponse:
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

    if file is None or not file.filename:
        return _error(status.HTTP_400_BAD_REQUEST, FileErrors.missing_file(), request_id)

    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > settings.max_upload_bytes + _FORM_OVERHEAD_BYTES:
        return _error(
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            FileErrors.file_too_large(int(content_length), settings.max_upload_bytes),
            request_id,
        )

    data = await file.read()
    content_type = (
        file.content_type
        or mimetypes.guess_type(file.filename)[0]
        or "application/octet-stream"
    )

    try:
        record = await ingestion.submit(data, file.filename, owner_id, content_type)
    except PipelineError as exc:
        return _pipeline_error(exc, request_id)

    body = FileUploadResponse(
        id=record.id,
        filename=record.filename,
        file_type=record.file_type,
        status=record.status,
        checksum=record.content_hash,
        size_bytes=len(data),
        created_at=record.created_at,
    )
    logger.info("Upload accepted | owner=%s record=%s size=%d", owner_id, record.id, len(data))
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=body.model_dump(mode="json"),
        headers={
            "X-Request-ID": request_id,
            "X-File-ID":    str(record.id),
            "Location":     f"/api/v1/files/{record.id}",
        },
    )


# ---------------------------------------------------------------------------
# GET /files
# ---------------------------------------------------------------------------

@router.get(
    "",
    response_model=FileListResponse,
    summary="List the caller's files",
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
)
async def list_files(
    owner_id: CurrentOwner,
    store:    Store,
    status_filter: Optional[str] = Query(None, alias="status", description="pending | processing | ready | failed"),
):
    status_value: FileStatus | None = None
    if status_filter:
        try:
            status_value = FileStatus(status_filter)
        except ValueError:
            return _error(status.HTTP_400_BAD_REQUEST, FileErrors.invalid_status_filter(status_filter))

    files = await store.list_by_owner(owner_id, status_value)
    return FileListResponse(files=files, count=len(files))


# ---------------------------------------------------------------------------
# GET /files/events: SSE stream (declared before /{record_id})
# ---------------------------------------------------------------------------

@router.get(
    "/events",
    summary="Stream file record changes via Server-Sent Events",
    description=(
        "Each event is `data: <json>` with eventType recordChanged | recordRemoved | "
        "liveness | error. Unauthenticated requests get one error event (HTTP 401)."
    ),
    response_class=StreamingResponse,
)
async def stream_events(
    request:  Request,
    owner_id: OptionalOwner,
    notifier: Notifier,
) -> StreamingResponse:
    connection = StreamConnection(notifier, owner_id, is_disconnected=request.is_disconnected)
    return StreamingResponse(
        connection.events(),
        status_code=status.HTTP_401_UNAUTHORIZED if owner_id is None else status.HTTP_200_OK,
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


# ---------------------------------------------------------------------------
# GET /files/{record_id}
# ---------------------------------------------------------------------------

@router.get(
    "/{record_id}",
    response_model=FileRecord,
    summary="Fetch one file record",
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def get_file(record_id: UUID, owner_id: CurrentOwner, store: Store):
    record = await store.get(owner_id, record_id)
    if record is None:
        return _error(status.HTTP_404_NOT_FOUND, FileErrors.file_not_found(record_id))
    return record


# ---------------------------------------------------------------------------
# DELETE /files/{record_id}
# ---------------------------------------------------------------------------

@router.delete(
    "/{record_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a file record",
    responses={
        204: {"description": "Record deleted"},
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
)
async def delete_file(record_id: UUID, owner_id: CurrentOwner, store: Store) -> Response:
    deleted = await store.delete(owner_id, record_id)
    if not deleted:
        return _error(status.HTTP_404_NOT_FOUND, FileErrors.file_not_found(record_id))
    logger.info("File deleted | owner=%s record=%s", owner_id, record_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Error helpers
# ---------------------------------------------------------------------------

def _error(status_code: int, body: ErrorResponse, request_id: str | None = None) -> JSONResponse:
    if request_id:
        body.request_id = request_id
    headers = {"X-Request-ID": request_id} if request_id else None
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"), headers=headers)


def _pipeline_error(exc: PipelineError, request_id: str) -> JSONResponse:
    if isinstance(exc, FileTooLargeError):
        return _error(
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            FileErrors.file_too_large(exc.size_bytes, exc.limit_bytes),
            request_id,
        )

    status_code = HTTP_STATUS_BY_CODE.get(exc.code.value, status.HTTP_500_INTERNAL_SERVER_ERROR)
    if exc.code == ErrorCode.UNKNOWN_ERROR:
        logger.error("Upload failed before record creation | request_id=%s error=%r", request_id, exc)
        return _error(status_code, FileErrors.internal_error(request_id), request_id)

    logger.info("Upload rejected | code=%s request_id=%s message=%s", exc.code.value, request_id, exc.message)
    return _error(status_code, FileErrors.pipeline_error(exc.code.value, exc.message, exc.details), request_id)
