"""
SQLAlchemy ORM Models — Documents, Chunks & Processing Logs

Mapped classes (2.x style) for full async support. Column types are the
dialect-neutral ones (Uuid, JSON, DateTime) so the same models run on
PostgreSQL (asyncpg) in production and SQLite (aiosqlite) in tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model: documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Tracks a single document from submission → chunking → embedding → stored.

    State machine (status column):
        pending    — accepted, waiting for a processing slot
        processing — chunks being embedded and stored
        ready      — every chunk stored with its embedding
        error      — failed; error_message holds a human-readable reason

    Transitions only advance pending → processing → {ready, error}.
    {ready, error} → pending happens only through explicit reprocessing.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'ready', 'error')",
            name="documents_status_check",
        ),
        Index("idx_documents_status", "status", "updated_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    title: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Source file (optional: plain-text submissions have none)
    file_path: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Path returned by the FileStore when the upload was stored",
    )
    content_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    size_bytes: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    # Processing state machine
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="pending",
        server_default="pending",
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='error'",
    )

    text_length: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    chunk_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    abstract:    Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    keywords:    Mapped[Optional[list]] = mapped_column(
        JSON,
        nullable=True,
        comment="[{term, weight}] with weights in 0.1-1.0, highest first",
    )

    processing_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Set when status becomes 'processing'; read by the stuck sweep",
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<Document id={self.id} status={self.status} chunks={self.chunk_count}>"


# ---------------------------------------------------------------------------
# DocumentChunk model: document_chunks
# ---------------------------------------------------------------------------

class DocumentChunk(Base):
    """
    One stored chunk with its embedding.

    UNIQUE(document_id, chunk_index) rejects duplicate writes; reprocessing
    clears a document's chunks before writing new ones.
    """

    __tablename__ = "document_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_document_chunks_position"),
        Index("idx_document_chunks_document_id", "document_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_id:    Mapped[str] = mapped_column(Text, nullable=False)
    content:     Mapped[str] = mapped_column(Text, nullable=False)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    char_start:  Mapped[int] = mapped_column(Integer, nullable=False)
    char_end:    Mapped[int] = mapped_column(Integer, nullable=False)
    page_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    start_time:  Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    end_time:    Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    embedding:   Mapped[list] = mapped_column(
        JSON,
        nullable=False,
        comment="Embedding vector as a JSON array of floats",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# ---------------------------------------------------------------------------
# ProcessingLog model: processing_logs
# ---------------------------------------------------------------------------

class ProcessingLog(Base):
    """
    Append-only trail of pipeline stages for one document.

    stage  : extract | chunk | keywords | embed | store | complete | error | sweep
    status : started | progress | completed | failed
    """

    __tablename__ = "processing_logs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('started', 'progress', 'completed', 'failed')",
            name="processing_logs_status_check",
        ),
        Index("idx_processing_logs_document_id", "document_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    stage:   Mapped[str]           = mapped_column(Text, nullable=False)
    status:  Mapped[str]           = mapped_column(Text, nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<ProcessingLog doc={self.document_id} stage={self.stage!r} "
            f"status={self.status!r}>"
        )
