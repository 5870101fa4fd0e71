"""
Storage Capabilities — Abstract Interfaces

The pipeline depends on these interfaces only. Implementations:

  DocumentRepository  SqlDocumentRepository   (storage/sql.py)
  ChunkStore          SqlChunkStore           (storage/sql.py)
  ProcessingLogStore  SqlProcessingLogStore   (storage/sql.py)
  FileStore           S3FileStore             (storage/s3.py)
                      LocalFileStore          (storage/local.py)

Contract for every implementation:
  • Status transitions are guarded: a transition that is not allowed from
    the document's current status returns False and changes nothing.
  • insert_chunks() is atomic: either every row of the batch is visible
    afterwards or none is.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Optional, Sequence

from docflow.models.documents import Document, DocumentChunk, ProcessingLog
from docflow.processing.chunking import Chunk

Vector = list[float]


class DocumentStatus(str, Enum):
    PENDING    = "pending"
    PROCESSING = "processing"
    READY      = "ready"
    ERROR      = "error"


TERMINAL_STATUSES = frozenset({DocumentStatus.READY, DocumentStatus.ERROR})

# Forward-only transitions. {ready, error} → pending is NOT listed: it only
# happens through DocumentRepository.reset_for_reprocessing().
ALLOWED_TRANSITIONS: dict[DocumentStatus, frozenset[DocumentStatus]] = {
    DocumentStatus.PENDING:    frozenset({DocumentStatus.PROCESSING, DocumentStatus.ERROR}),
    DocumentStatus.PROCESSING: frozenset({DocumentStatus.READY, DocumentStatus.ERROR}),
    DocumentStatus.READY:      frozenset(),
    DocumentStatus.ERROR:      frozenset(),
}


def sources_for(target: DocumentStatus) -> list[str]:
    """Statuses from which `target` may be entered."""
    return [src.value for src, targets in ALLOWED_TRANSITIONS.items() if target in targets]


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class DocumentRepository(ABC):

    @abstractmethod
    async def create(
        self,
        title:        str = "",
        text_length:  int = 0,
        file_path:    Optional[str] = None,
        content_type: Optional[str] = None,
        size_bytes:   Optional[int] = None,
        document_id:  Optional[uuid.UUID] = None,
    ) -> Document:
        ...

    @abstractmethod
    async def get(self, document_id: uuid.UUID) -> Optional[Document]:
        ...

    @abstractmethod
    async def mark_processing(self, document_id: uuid.UUID, text_length: int) -> bool:
        """pending → processing; stamps processing_started_at."""

    @abstractmethod
    async def mark_ready(self, document_id: uuid.UUID, chunk_count: int) -> bool:
        """processing → ready."""

    @abstractmethod
    async def mark_error(self, document_id: uuid.UUID, message: str) -> bool:
        """{pending, processing} → error with a human-readable message."""

    @abstractmethod
    async def reset_for_reprocessing(self, document_id: uuid.UUID) -> bool:
        """{ready, error} → pending; clears error_message and counters."""

    @abstractmethod
    async def update_progress(self, document_id: uuid.UUID, chunk_count: int) -> None:
        ...

    @abstractmethod
    async def set_abstract(self, document_id: uuid.UUID, abstract: str) -> None:
        ...

    @abstractmethod
    async def set_keywords(self, document_id: uuid.UUID, keywords: list[dict]) -> None:
        ...

    @abstractmethod
    async def list_stuck(self, started_before: datetime) -> list[Document]:
        """Documents in 'processing' whose processing_started_at < started_before."""

    @abstractmethod
    async def fail_if_stuck(
        self,
        document_id:    uuid.UUID,
        started_before: datetime,
        message:        str,
    ) -> bool:
        """
        Atomically move one stuck document to 'error'.

        Returns False (and changes nothing) when the document is no longer
        stuck — already resolved, reprocessed, or restarted since.
        """

    @abstractmethod
    async def delete(self, document_id: uuid.UUID) -> Optional[Document]:
        """Delete the document row (chunks and logs cascade). Returns the deleted row."""

    @abstractmethod
    async def count_by_status(self) -> dict[str, int]:
        ...


# ---------------------------------------------------------------------------
# Chunks
# ---------------------------------------------------------------------------

class ChunkStore(ABC):

    @abstractmethod
    async def insert_chunks(
        self,
        document_id: uuid.UUID,
        pairs:       Sequence[tuple[Chunk, Vector]],
    ) -> int:
        """Insert one batch in a single transaction. Returns rows written."""

    @abstractmethod
    async def delete_document_chunks(self, document_id: uuid.UUID) -> int:
        ...

    @abstractmethod
    async def count_chunks(self, document_id: uuid.UUID) -> int:
        ...

    @abstractmethod
    async def list_chunks(self, document_id: uuid.UUID) -> list[DocumentChunk]:
        """Stored chunks ordered by chunk_index."""


# ---------------------------------------------------------------------------
# Processing logs
# ---------------------------------------------------------------------------

class ProcessingLogStore(ABC):

    @abstractmethod
    async def log(
        self,
        document_id: uuid.UUID,
        stage:       str,
        status:      str,
        message:     Optional[str] = None,
        details:     Optional[dict] = None,
    ) -> None:
        ...

    @abstractmethod
    async def list_logs(self, document_id: uuid.UUID) -> list[ProcessingLog]:
        ...


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

class FileStore(ABC):
    """Store bytes, return a path. Transport details stay behind this seam."""

    @abstractmethod
    async def put(
        self,
        document_id:  uuid.UUID,
        filename:     str,
        data:         bytes,
        content_type: Optional[str] = None,
    ) -> str:
        ...

    @abstractmethod
    async def get(self, path: str) -> bytes:
        ...

    @abstractmethod
    async def delete(self, path: str) -> None:
        ...
