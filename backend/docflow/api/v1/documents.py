"""
Document Processing API Router

  POST   /api/v1/documents/upload             file → store → extract → submit
  POST   /api/v1/documents/text               raw text → submit
  GET    /api/v1/documents/{id}/status        poll status + queue position
  GET    /api/v1/documents/{id}/logs          processing stage trail
  POST   /api/v1/documents/{id}/reprocess     clear chunks, run again
  POST   /api/v1/documents/{id}/cancel        drop queued / stop running job
  DELETE /api/v1/documents/{id}               cancel, remove rows and file

Request lifecycle (upload):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. Content type / extension check (400)                 │
  │ 2. Read at most MAX_FILE_SIZE + 1 bytes (413 if over)   │
  │ 3. Bytes written to the FileStore (local or S3)         │
  │ 4. Document row inserted (status=pending)               │
  │ 5. Text extracted (PDF / DOCX / audio / plain)          │
  │ 6. JobCoordinator.submit → accepted | queued  (202)     │
  └─────────────────────────────────────────────────────────┘

A document whose extraction fails, or whose submission is rejected, is moved
straight to 'error' so it never lingers in 'pending'.
"""

from __future__ import annotations

import logging
import os
import uuid
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, File, Form, Response, UploadFile, status
from fastapi.responses import JSONResponse

from docflow.api.dependencies import Container, RequestId
from docflow.core.errors import classify_error
from docflow.processing.chunking import normalize_text
from docflow.schemas.documents import (
    ALLOWED_CONTENT_TYPES,
    ALLOWED_EXTENSIONS,
    DocumentErrors,
    DocumentStatusResponse,
    ErrorResponse,
    ProcessingLogEntry,
    ReprocessRequest,
    SubmissionResponse,
    TextSubmissionRequest,
)
from docflow.services.coordinator import SubmissionOutcome, SubmissionResult
from docflow.services.container import ServiceContainer

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Document Processing"],
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _error(status_code: int, body: ErrorResponse, request_id: Optional[str]) -> JSONResponse:
    body.request_id = request_id
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


async def _submission_response(
    container:  ServiceContainer,
    result:     SubmissionResult,
    request_id: Optional[str],
) -> JSONResponse:
    if result.outcome is SubmissionOutcome.REJECTED:
        code = (
            status.HTTP_503_SERVICE_UNAVAILABLE
            if result.reason == "coordinator is shutting down"
            else status.HTTP_409_CONFLICT
        )
        return _error(code, DocumentErrors.rejected(result.document_id, result.reason or ""), request_id)

    doc = await container.documents.get(result.document_id)
    body = SubmissionResponse(
        document_id=result.document_id,
        outcome=result.outcome.value,
        queue_position=result.position,
        status=doc.status if doc else "pending",
    )
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=body.model_dump(mode="json"),
        headers={
            "X-Document-ID": str(result.document_id),
            "Location":      f"/api/v1/documents/{result.document_id}/status",
        },
    )


async def _settle_rejected(container: ServiceContainer, result: SubmissionResult) -> None:
    """A freshly created document that was not admitted must not stay pending."""
    if result.outcome is not SubmissionOutcome.REJECTED:
        return
    reason = result.reason or "submission rejected"
    await container.documents.mark_error(result.document_id, reason)
    await container.logs.log(result.document_id, "submit", "failed", message=reason)
    logger.warning("Submission rejected | doc=%s reason=%s", result.document_id, reason)


def _is_allowed(content_type: str, filename: str) -> bool:
    ext = os.path.splitext(filename)[1].lower()
    return content_type in ALLOWED_CONTENT_TYPES or ext in ALLOWED_EXTENSIONS


# ---------------------------------------------------------------------------
# POST /documents/upload
# ---------------------------------------------------------------------------

@router.post(
    "/upload",
    response_model=SubmissionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a document for processing",
    description=(
        "Accepts PDF, DOCX, TXT, Markdown or audio files up to MAX_FILE_SIZE bytes. "
        "Returns 202 once the job is accepted or queued; processing is asynchronous. "
        "Poll GET /documents/{id}/status for progress."
    ),
    responses={
        202: {"model": SubmissionResponse, "description": "Accepted or queued"},
        400: {"model": ErrorResponse, "description": "Unsupported type or empty file"},
        409: {"model": ErrorResponse, "description": "Submission rejected"},
        413: {"model": ErrorResponse, "description": "File exceeds MAX_FILE_SIZE"},
        422: {"model": ErrorResponse, "description": "No text could be extracted"},
    },
)
async def upload_document(
    container:  Container,
    request_id: RequestId,
    file:       UploadFile = File(..., description="Document file (PDF, DOCX, TXT, MD, audio)"),
    title:      Optional[str] = Form(None, max_length=255, description="Display title; defaults to the filename"),
) -> JSONResponse:
    filename     = file.filename or "upload"
    content_type = (file.content_type or "application/octet-stream").lower()
    max_bytes    = container.settings.max_file_size

    if not _is_allowed(content_type, filename):
        return _error(
            status.HTTP_400_BAD_REQUEST,
            DocumentErrors.unsupported_file_type(filename, content_type),
            request_id,
        )

    data = await file.read(max_bytes + 1)
    if len(data) > max_bytes:
        return _error(
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            DocumentErrors.file_too_large(len(data), max_bytes),
            request_id,
        )
    if not data:
        return _error(status.HTTP_400_BAD_REQUEST, DocumentErrors.empty_file(filename), request_id)

    document_id = uuid.uuid4()
    file_path   = await container.files.put(document_id, filename, data, content_type)
    doc = await container.documents.create(
        title=title or filename,
        file_path=file_path,
        content_type=content_type,
        size_bytes=len(data),
        document_id=document_id,
    )

    await container.logs.log(doc.id, "extract", "started", details={"bytes": len(data)})
    try:
        extracted = await container.extractor.extract(data, content_type, filename)
    except Exception as exc:
        error = classify_error(exc)
        await container.documents.mark_error(doc.id, error.user_message)
        await container.logs.log(doc.id, "extract", "failed", message=error.user_message)
        logger.warning("Extraction failed | doc=%s file=%s error=%s", doc.id, filename, error)
        return _error(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            DocumentErrors.extraction_failed(filename, error.user_message),
            request_id,
        )
    await container.logs.log(
        doc.id, "extract", "completed",
        details={"method": extracted.method, "pages": extracted.pages, "chars": len(extracted.text)},
    )

    result = await container.coordinator.submit(
        doc.id, extracted.text, title=doc.title, time_segments=extracted.segments or None,
    )
    await _settle_rejected(container, result)
    logger.info(
        "Upload submitted | doc=%s file=%s bytes=%d outcome=%s",
        doc.id, filename, len(data), result.outcome.value,
    )
    return await _submission_response(container, result, request_id)


# ---------------------------------------------------------------------------
# POST /documents/text
# ---------------------------------------------------------------------------

@router.post(
    "/text",
    response_model=SubmissionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit raw text for processing",
    responses={
        202: {"model": SubmissionResponse},
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
)
async def submit_text(
    body:       TextSubmissionRequest,
    container:  Container,
    request_id: RequestId,
) -> JSONResponse:
    if not normalize_text(body.text):
        return _error(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            ErrorResponse(error_code="EMPTY_TEXT", message="Document text is empty."),
            request_id,
        )
    doc = await container.documents.create(title=body.title, text_length=len(body.text))
    result = await container.coordinator.submit(doc.id, body.text, title=body.title)
    await _settle_rejected(container, result)
    return await _submission_response(container, result, request_id)


# ---------------------------------------------------------------------------
# GET /documents/{document_id}/status
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/status",
    response_model=DocumentStatusResponse,
    summary="Poll processing status",
    responses={404: {"model": ErrorResponse}},
)
async def get_document_status(
    document_id: UUID,
    container:   Container,
    request_id:  RequestId,
):
    view = await container.coordinator.get_status(document_id)
    if view is None:
        return _error(status.HTTP_404_NOT_FOUND, DocumentErrors.not_found(document_id), request_id)
    return DocumentStatusResponse(
        document_id=view.document_id,
        status=view.status,
        error_message=view.error_message,
        chunk_count=view.chunk_count,
        queue_position=view.queue_position,
    )


# ---------------------------------------------------------------------------
# GET /documents/{document_id}/logs
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/logs",
    response_model=list[ProcessingLogEntry],
    summary="Processing stage trail",
    responses={404: {"model": ErrorResponse}},
)
async def get_processing_logs(
    document_id: UUID,
    container:   Container,
    request_id:  RequestId,
):
    if await container.documents.get(document_id) is None:
        return _error(status.HTTP_404_NOT_FOUND, DocumentErrors.not_found(document_id), request_id)
    entries = await container.logs.list_logs(document_id)
    return [
        ProcessingLogEntry(
            stage=e.stage,
            status=e.status,
            message=e.message,
            details=e.details or {},
            created_at=e.created_at,
        )
        for e in entries
    ]


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/reprocess
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/reprocess",
    response_model=SubmissionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Clear stored chunks and process the document again",
    responses={
        202: {"model": SubmissionResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
)
async def reprocess_document(
    document_id: UUID,
    container:   Container,
    request_id:  RequestId,
    body:        Optional[ReprocessRequest] = None,
) -> JSONResponse:
    doc = await container.documents.get(document_id)
    if doc is None:
        return _error(status.HTTP_404_NOT_FOUND, DocumentErrors.not_found(document_id), request_id)

    text     = body.text if body else None
    segments = None
    if not text:
        if not doc.file_path:
            return _error(
                status.HTTP_422_UNPROCESSABLE_ENTITY,
                ErrorResponse(
                    error_code="NO_SOURCE",
                    message="Document has no stored file; supply text to reprocess it.",
                ),
                request_id,
            )
        filename = os.path.basename(doc.file_path)
        try:
            data      = await container.files.get(doc.file_path)
            extracted = await container.extractor.extract(data, doc.content_type or "", filename)
        except FileNotFoundError:
            return _error(
                status.HTTP_422_UNPROCESSABLE_ENTITY,
                DocumentErrors.extraction_failed(filename, "stored file is missing"),
                request_id,
            )
        except Exception as exc:
            error = classify_error(exc)
            await container.logs.log(document_id, "extract", "failed", message=error.user_message)
            logger.warning("Re-extraction failed | doc=%s file=%s error=%s", document_id, filename, error)
            return _error(
                status.HTTP_422_UNPROCESSABLE_ENTITY,
                DocumentErrors.extraction_failed(filename, error.user_message),
                request_id,
            )
        text     = extracted.text
        segments = extracted.segments or None

    result = await container.coordinator.reprocess(
        document_id, text, title=doc.title, time_segments=segments,
    )
    return await _submission_response(container, result, request_id)


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/cancel
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/cancel",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Cancel a queued or running job",
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def cancel_document(
    document_id: UUID,
    container:   Container,
    request_id:  RequestId,
):
    if await container.documents.get(document_id) is None:
        return _error(status.HTTP_404_NOT_FOUND, DocumentErrors.not_found(document_id), request_id)
    if not await container.coordinator.cancel(document_id):
        return _error(status.HTTP_409_CONFLICT, DocumentErrors.not_cancellable(document_id), request_id)
    return {"document_id": str(document_id), "cancelled": True}


# ---------------------------------------------------------------------------
# DELETE /documents/{document_id}
# ---------------------------------------------------------------------------

@router.delete(
    "/{document_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a document, its chunks and its stored file",
    responses={204: {"description": "Document deleted"}, 404: {"model": ErrorResponse}},
)
async def delete_document(
    document_id: UUID,
    container:   Container,
    request_id:  RequestId,
):
    await container.coordinator.cancel(document_id)
    if container.coordinator.is_in_flight(document_id):
        # running job stops at its next batch boundary; rows stay until then
        return _error(
            status.HTTP_409_CONFLICT,
            ErrorResponse(
                error_code="STILL_PROCESSING",
                message=f"Document {document_id} is stopping; retry the delete shortly.",
            ),
            request_id,
        )
    doc = await container.documents.delete(document_id)
    if doc is None:
        return _error(status.HTTP_404_NOT_FOUND, DocumentErrors.not_found(document_id), request_id)

    if doc.file_path:
        try:
            await container.files.delete(doc.file_path)
        except FileNotFoundError:
            logger.warning("Stored file already gone | doc=%s path=%s", document_id, doc.file_path)
    logger.info("Document deleted | doc=%s", document_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
