"""
Document Processing — Pydantic Request/Response Schemas

Covers:
  - Upload / text submission (202 Accepted with the coordinator outcome)
  - Status polling (GET /documents/{id}/status)
  - Monitoring views (processing load, stuck documents, circuit breakers)
  - Uniform structured error bodies (400, 404, 409, 413, 422, 500)

The upload size limit is not defined here: it is Settings.max_file_size,
passed into the error factory by the route.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Allowed MIME types: checked before the file is stored
# ---------------------------------------------------------------------------

ALLOWED_CONTENT_TYPES: frozenset[str] = frozenset(
    {
        "application/pdf",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",  # .docx
        "text/plain",
        "text/markdown",
        "audio/mpeg",
        "audio/mp4",
        "audio/x-m4a",
        "audio/wav",
        "audio/x-wav",
        "audio/webm",
        "audio/ogg",
    }
)

ALLOWED_EXTENSIONS: frozenset[str] = frozenset(
    {".pdf", ".docx", ".txt", ".md", ".mp3", ".m4a", ".wav", ".webm", ".ogg"}
)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class TextSubmissionRequest(BaseModel):
    """POST /documents/text — create a document from raw text and submit it."""
    title: str = Field("", max_length=255)
    text:  str = Field(..., min_length=1, description="Document text to chunk and embed")


class ReprocessRequest(BaseModel):
    """
    POST /documents/{id}/reprocess.

    text is optional when the document has a stored source file; the file
    is re-extracted in that case.
    """
    text: Optional[str] = Field(None, description="Replacement text; omit to re-extract the stored file")


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class SubmissionResponse(BaseModel):
    """Returned by upload / text / reprocess — HTTP 202 unless rejected."""
    document_id:    UUID
    outcome:        str            = Field(..., description="accepted | queued | rejected")
    reason:         Optional[str]  = None
    queue_position: Optional[int]  = None
    status:         str            = Field(..., description="Document status right after submission")


class DocumentStatusResponse(BaseModel):
    """Polled by clients to track processing progress."""
    document_id:    UUID
    status:         str            = Field(..., description="pending | processing | ready | error")
    error_message:  Optional[str]  = None
    chunk_count:    int            = Field(0, description="Chunks stored so far")
    queue_position: Optional[int]  = None


class ProcessingLogEntry(BaseModel):
    stage:      str
    status:     str
    message:    Optional[str] = None
    details:    dict          = Field(default_factory=dict)
    created_at: datetime


class ProcessingLoadResponse(BaseModel):
    active:         int
    queued:         int
    max_concurrent: int
    utilization:    float
    by_status:      dict[str, int] = Field(default_factory=dict)


class StuckDocument(BaseModel):
    document_id:           UUID
    title:                 str
    processing_started_at: Optional[datetime]
    chunk_count:           int


class StuckDocumentsResponse(BaseModel):
    threshold_ms: int
    count:        int
    documents:    list[StuckDocument]


class CircuitBreakerView(BaseModel):
    dependency: str
    state:      str
    failures:   int


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   Optional[str] = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str           = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: Optional[str]     = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps route handlers thin)
# ---------------------------------------------------------------------------

class DocumentErrors:
    """Factories for every documented error case."""

    @staticmethod
    def unsupported_file_type(filename: str, detected_type: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="UNSUPPORTED_FILE_TYPE",
            message=f"File type '{detected_type}' is not supported.",
            details=[
                ErrorDetail(
                    field="file",
                    message=(
                        f"'{filename}' has an unsupported type '{detected_type}'. "
                        f"Allowed: PDF, DOCX, TXT, MD, audio."
                    ),
                    code="UNSUPPORTED_FILE_TYPE",
                )
            ],
        )

    @staticmethod
    def file_too_large(size_bytes: int, max_bytes: int) -> ErrorResponse:
        max_mb = max_bytes / (1024 * 1024)
        return ErrorResponse(
            error_code="FILE_TOO_LARGE",
            message=f"Uploaded file exceeds the {max_mb:g} MB limit.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received {size_bytes:,} bytes; limit is {max_bytes:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @staticmethod
    def empty_file(filename: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="EMPTY_FILE",
            message=f"'{filename}' is empty.",
            details=[ErrorDetail(field="file", message="File has zero bytes.", code="EMPTY_FILE")],
        )

    @staticmethod
    def extraction_failed(filename: str, reason: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="EXTRACTION_FAILED",
            message=f"Could not extract text from '{filename}'.",
            details=[ErrorDetail(field="file", message=reason, code="EXTRACTION_FAILED")],
        )

    @staticmethod
    def not_found(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_NOT_FOUND",
            message=f"Document {document_id} does not exist.",
        )

    @staticmethod
    def rejected(document_id: UUID, reason: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="SUBMISSION_REJECTED",
            message=f"Document {document_id} was not submitted: {reason}",
            details=[ErrorDetail(message=reason, code="SUBMISSION_REJECTED")],
        )

    @staticmethod
    def not_cancellable(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="NOT_CANCELLABLE",
            message=f"Document {document_id} is not queued or processing.",
        )
