"""
Local filesystem File Store (development and tests).

Files land in <root>/<document_id>/<sanitized filename>. Blocking file I/O
runs in a worker thread so the event loop is never blocked.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import uuid
from pathlib import Path
from typing import Optional

from docflow.storage.base import FileStore
from docflow.storage.s3 import sanitize_filename

logger = logging.getLogger(__name__)


class LocalFileStore(FileStore):

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        target = Path(path).resolve()
        if self._root not in target.parents:
            raise ValueError(f"path outside storage root: {path!r}")
        return target

    async def put(
        self,
        document_id:  uuid.UUID,
        filename:     str,
        data:         bytes,
        content_type: Optional[str] = None,
    ) -> str:
        target = self._root / str(document_id) / sanitize_filename(filename)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.info("Local upload ok | doc=%s path=%s size=%d", document_id, target, len(data))
        return str(target)

    async def get(self, path: str) -> bytes:
        return await asyncio.to_thread(self._resolve(path).read_bytes)

    async def delete(self, path: str) -> None:
        target = self._resolve(path)

        def _remove() -> None:
            target.unlink(missing_ok=True)
            parent = target.parent
            if parent != self._root and parent.is_dir() and not any(parent.iterdir()):
                shutil.rmtree(parent, ignore_errors=True)

        await asyncio.to_thread(_remove)
        logger.info("Local delete | path=%s", target)
