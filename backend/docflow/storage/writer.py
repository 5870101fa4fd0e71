"""
Storage Writer — batched, atomic persistence of (chunk, embedding) pairs.

An embedding batch (≤ embedding_batch_size pairs) is split into insert units
of at most `insert_batch_size` rows. Each unit is committed in its own
transaction:

  • a failing unit leaves no partial rows behind
  • units committed before the failure stay intact
  • the document is marked 'error' and PersistenceError is raised
    (storage failures are not retried automatically)

Pairs are validated before anything is written: every pair must belong to
the target document and carry a non-empty vector.
"""

from __future__ import annotations

import logging
import uuid
from typing import Sequence

from docflow.core.errors import PersistenceError
from docflow.processing.chunking import Chunk
from docflow.storage.base import ChunkStore, DocumentRepository, Vector

logger = logging.getLogger(__name__)


class StorageWriter:

    def __init__(
        self,
        chunks:            ChunkStore,
        documents:         DocumentRepository,
        insert_batch_size: int = 200,
    ) -> None:
        if insert_batch_size < 1:
            raise ValueError("insert_batch_size must be >= 1")
        self._chunks            = chunks
        self._documents         = documents
        self._insert_batch_size = insert_batch_size

    async def write_batch(
        self,
        document_id: uuid.UUID,
        pairs:       Sequence[tuple[Chunk, Vector]],
    ) -> int:
        """
        Persist pairs in insert units. Returns the number of rows written.

        Raises:
            PersistenceError: after marking the document 'error'.
        """
        if not pairs:
            return 0

        expected_id = str(document_id)
        for chunk, vector in pairs:
            if chunk.document_id != expected_id:
                raise ValueError(
                    f"chunk {chunk.index} belongs to {chunk.document_id}, not {expected_id}"
                )
            if not vector:
                raise ValueError(f"chunk {chunk.index} has an empty embedding")

        written = 0
        for offset in range(0, len(pairs), self._insert_batch_size):
            unit = pairs[offset : offset + self._insert_batch_size]
            try:
                written += await self._chunks.insert_chunks(document_id, unit)
            except Exception as exc:
                first, last = unit[0][0].index, unit[-1][0].index
                message = (
                    f"failed to save chunks {first}-{last}: "
                    f"{type(exc).__name__}: {exc}"
                )
                logger.error(
                    "Storage write failed | doc=%s chunks=%d-%d error=%s",
                    document_id, first, last, exc,
                )
                await self._documents.mark_error(document_id, message)
                raise PersistenceError(message) from exc

        logger.debug("Storage write ok | doc=%s rows=%d", document_id, written)
        return written
