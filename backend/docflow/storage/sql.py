"""
SQLAlchemy implementations of the storage capabilities.

Every method opens its own `session.begin()` unit of work. Status changes
are single conditional UPDATEs (`WHERE status IN (...)`), so two workers
racing on the same document cannot both win a transition, and a rowcount
of 0 means "not allowed from the current status".
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from sqlalchemy import delete, func, insert, select, update

from docflow.db.session import SessionFactory, transaction
from docflow.models.documents import Document, DocumentChunk, ProcessingLog
from docflow.processing.chunking import Chunk
from docflow.storage.base import (
    ChunkStore,
    DocumentRepository,
    DocumentStatus,
    ProcessingLogStore,
    Vector,
    sources_for,
)

logger = logging.getLogger(__name__)

Now = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class SqlDocumentRepository(DocumentRepository):

    def __init__(self, session_factory: SessionFactory, now: Now = utc_now) -> None:
        self._sessions = session_factory
        self._now      = now

    async def create(
        self,
        title:        str = "",
        text_length:  int = 0,
        file_path:    Optional[str] = None,
        content_type: Optional[str] = None,
        size_bytes:   Optional[int] = None,
        document_id:  Optional[uuid.UUID] = None,
    ) -> Document:
        now = self._now()
        doc = Document(
            id=document_id or uuid.uuid4(),
            title=title,
            text_length=text_length,
            file_path=file_path,
            content_type=content_type,
            size_bytes=size_bytes,
            status=DocumentStatus.PENDING.value,
            chunk_count=0,
            created_at=now,
            updated_at=now,
        )
        async with transaction(self._sessions) as session:
            session.add(doc)
        logger.info("Document created | doc=%s title=%r", doc.id, title)
        return doc

    async def get(self, document_id: uuid.UUID) -> Optional[Document]:
        async with self._sessions() as session:
            return await session.get(Document, document_id)

    async def _transition(
        self,
        document_id: uuid.UUID,
        target:      DocumentStatus,
        sources:     list[str],
        **values,
    ) -> bool:
        stmt = (
            update(Document)
            .where(Document.id == document_id, Document.status.in_(sources))
            .values(status=target.value, updated_at=self._now(), **values)
        )
        async with transaction(self._sessions) as session:
            result = await session.execute(stmt)
        changed = result.rowcount == 1
        if not changed:
            logger.debug(
                "Transition refused | doc=%s target=%s allowed_from=%s",
                document_id, target.value, sources,
            )
        return changed

    async def mark_processing(self, document_id: uuid.UUID, text_length: int) -> bool:
        return await self._transition(
            document_id,
            DocumentStatus.PROCESSING,
            sources_for(DocumentStatus.PROCESSING),
            processing_started_at=self._now(),
            text_length=text_length,
            error_message=None,
        )

    async def mark_ready(self, document_id: uuid.UUID, chunk_count: int) -> bool:
        return await self._transition(
            document_id,
            DocumentStatus.READY,
            sources_for(DocumentStatus.READY),
            chunk_count=chunk_count,
            error_message=None,
        )

    async def mark_error(self, document_id: uuid.UUID, message: str) -> bool:
        return await self._transition(
            document_id,
            DocumentStatus.ERROR,
            sources_for(DocumentStatus.ERROR),
            error_message=message,
        )

    async def reset_for_reprocessing(self, document_id: uuid.UUID) -> bool:
        return await self._transition(
            document_id,
            DocumentStatus.PENDING,
            [DocumentStatus.READY.value, DocumentStatus.ERROR.value],
            error_message=None,
            chunk_count=0,
            abstract=None,
            keywords=None,
            processing_started_at=None,
        )

    async def update_progress(self, document_id: uuid.UUID, chunk_count: int) -> None:
        stmt = (
            update(Document)
            .where(
                Document.id == document_id,
                Document.status == DocumentStatus.PROCESSING.value,
            )
            .values(chunk_count=chunk_count, updated_at=self._now())
        )
        async with transaction(self._sessions) as session:
            await session.execute(stmt)

    async def set_abstract(self, document_id: uuid.UUID, abstract: str) -> None:
        stmt = update(Document).where(Document.id == document_id).values(abstract=abstract)
        async with transaction(self._sessions) as session:
            await session.execute(stmt)

    async def set_keywords(self, document_id: uuid.UUID, keywords: list[dict]) -> None:
        stmt = update(Document).where(Document.id == document_id).values(keywords=keywords)
        async with transaction(self._sessions) as session:
            await session.execute(stmt)

    async def list_stuck(self, started_before: datetime) -> list[Document]:
        stmt = (
            select(Document)
            .where(
                Document.status == DocumentStatus.PROCESSING.value,
                Document.processing_started_at < started_before,
            )
            .order_by(Document.processing_started_at)
        )
        async with self._sessions() as session:
            return list((await session.scalars(stmt)).all())

    async def fail_if_stuck(
        self,
        document_id:    uuid.UUID,
        started_before: datetime,
        message:        str,
    ) -> bool:
        stmt = (
            update(Document)
            .where(
                Document.id == document_id,
                Document.status == DocumentStatus.PROCESSING.value,
                Document.processing_started_at < started_before,
            )
            .values(
                status=DocumentStatus.ERROR.value,
                error_message=message,
                updated_at=self._now(),
            )
        )
        async with transaction(self._sessions) as session:
            result = await session.execute(stmt)
        return result.rowcount == 1

    async def delete(self, document_id: uuid.UUID) -> Optional[Document]:
        async with transaction(self._sessions) as session:
            doc = await session.get(Document, document_id)
            if doc is None:
                return None
            # explicit deletes: SQLite ignores ON DELETE CASCADE unless enabled
            await session.execute(delete(DocumentChunk).where(DocumentChunk.document_id == document_id))
            await session.execute(delete(ProcessingLog).where(ProcessingLog.document_id == document_id))
            await session.delete(doc)
        logger.info("Document deleted | doc=%s", document_id)
        return doc

    async def count_by_status(self) -> dict[str, int]:
        stmt = select(Document.status, func.count()).group_by(Document.status)
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).all()
        counts = {s.value: 0 for s in DocumentStatus}
        counts.update({status: n for status, n in rows})
        return counts


# ---------------------------------------------------------------------------
# Chunks
# ---------------------------------------------------------------------------

class SqlChunkStore(ChunkStore):

    def __init__(self, session_factory: SessionFactory) -> None:
        self._sessions = session_factory

    async def insert_chunks(
        self,
        document_id: uuid.UUID,
        pairs:       Sequence[tuple[Chunk, Vector]],
    ) -> int:
        if not pairs:
            return 0
        rows = [
            {
                "document_id": document_id,
                "chunk_index": chunk.index,
                "chunk_id":    chunk.chunk_id,
                "content":     chunk.text,
                "token_count": chunk.token_count,
                "char_start":  chunk.char_start,
                "char_end":    chunk.char_end,
                "page_number": chunk.page_number,
                "start_time":  chunk.start_time,
                "end_time":    chunk.end_time,
                "embedding":   list(vector),
            }
            for chunk, vector in pairs
        ]
        async with transaction(self._sessions) as session:
            await session.execute(insert(DocumentChunk), rows)
        return len(rows)

    async def delete_document_chunks(self, document_id: uuid.UUID) -> int:
        stmt = delete(DocumentChunk).where(DocumentChunk.document_id == document_id)
        async with transaction(self._sessions) as session:
            result = await session.execute(stmt)
        logger.info("Chunks cleared | doc=%s rows=%d", document_id, result.rowcount)
        return result.rowcount

    async def count_chunks(self, document_id: uuid.UUID) -> int:
        stmt = select(func.count()).select_from(DocumentChunk).where(
            DocumentChunk.document_id == document_id
        )
        async with self._sessions() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def list_chunks(self, document_id: uuid.UUID) -> list[DocumentChunk]:
        stmt = (
            select(DocumentChunk)
            .where(DocumentChunk.document_id == document_id)
            .order_by(DocumentChunk.chunk_index)
        )
        async with self._sessions() as session:
            return list((await session.scalars(stmt)).all())


# ---------------------------------------------------------------------------
# Processing logs
# ---------------------------------------------------------------------------

class SqlProcessingLogStore(ProcessingLogStore):

    def __init__(self, session_factory: SessionFactory, now: Now = utc_now) -> None:
        self._sessions = session_factory
        self._now      = now

    async def log(
        self,
        document_id: uuid.UUID,
        stage:       str,
        status:      str,
        message:     Optional[str] = None,
        details:     Optional[dict] = None,
    ) -> None:
        entry = ProcessingLog(
            document_id=document_id,
            stage=stage,
            status=status,
            message=message,
            details=details or {},
            created_at=self._now(),
        )
        async with transaction(self._sessions) as session:
            session.add(entry)

    async def list_logs(self, document_id: uuid.UUID) -> list[ProcessingLog]:
        stmt = (
            select(ProcessingLog)
            .where(ProcessingLog.document_id == document_id)
            .order_by(ProcessingLog.id)
        )
        async with self._sessions() as session:
            return list((await session.scalars(stmt)).all())
