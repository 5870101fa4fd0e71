"""
Text Extraction
═══════════════

Turns an uploaded file into the plain text the chunker consumes.

  application/pdf           pypdf, one "[Page N]" marker before each page
  …wordprocessingml…/.docx  python-docx paragraphs
  audio/*                   OpenAI transcription (verbose_json) with timed
                            segments, used by the chunker for time ranges
  anything else             UTF-8, falling back to latin-1

Page markers are the only page signal the chunker needs:

    [Page 1]
    first page text

    [Page 2]
    second page text

Parsing is CPU-bound and runs in a worker thread; transcription is an
outbound call and goes through the "transcription" ResilientCaller when
one is supplied.
"""

from __future__ import annotations

import asyncio
import io
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from docflow.core.errors import (
    EmptyDocumentError,
    PermanentDependencyError,
    UnreadableDocumentError,
)
from docflow.processing.chunking import TimeSegment
from docflow.resilience.retry import ResilientCaller

logger = logging.getLogger(__name__)

_AUDIO_EXTENSIONS = (".mp3", ".m4a", ".wav", ".webm", ".ogg", ".mp4", ".mpeg", ".mpga")


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class ExtractionResult:
    """
    text     : full text (page markers included for PDFs)
    pages    : page count (1 for non-paginated formats)
    method   : "pypdf" | "python-docx" | "transcription" | "plain"
    segments : timed transcript segments (audio only)
    """
    text:       str
    pages:      int
    method:     str
    segments:   list[TimeSegment] = field(default_factory=list)
    elapsed_ms: float = 0.0


def is_audio(content_type: str, filename: str) -> bool:
    return content_type.startswith("audio/") or filename.lower().endswith(_AUDIO_EXTENSIONS)


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class TextExtractor:
    """
    Usage:
        extractor = TextExtractor(openai_api_key=settings.openai_api_key, caller=caller)
        result    = await extractor.extract(data, content_type, filename)
    """

    def __init__(
        self,
        openai_api_key:      str = "",
        transcription_model: str = "whisper-1",
        caller:              Optional[ResilientCaller] = None,
    ) -> None:
        self._api_key             = openai_api_key
        self._transcription_model = transcription_model
        self._caller              = caller

    async def extract(self, data: bytes, content_type: str, filename: str) -> ExtractionResult:
        t0 = time.monotonic()
        content_type = (content_type or "").lower()
        lowered      = filename.lower()

        if content_type == "application/pdf" or lowered.endswith(".pdf"):
            text, pages = await self._parse(extract_pdf, data, filename)
            result = ExtractionResult(text=text, pages=pages, method="pypdf")
        elif "wordprocessingml" in content_type or lowered.endswith(".docx"):
            text = await self._parse(extract_docx, data, filename)
            result = ExtractionResult(text=text, pages=1, method="python-docx")
        elif is_audio(content_type, filename):
            result = await self._transcribe(data, filename)
        else:
            result = ExtractionResult(text=decode_text(data), pages=1, method="plain")

        result.elapsed_ms = (time.monotonic() - t0) * 1000
        if not result.text.strip():
            raise EmptyDocumentError(f"no text could be extracted from {filename}")

        logger.info(
            "Extraction done | file=%s method=%s pages=%d chars=%d segments=%d elapsed_ms=%.0f",
            filename, result.method, result.pages, len(result.text),
            len(result.segments), result.elapsed_ms,
        )
        return result

    @staticmethod
    async def _parse(parser, data: bytes, filename: str):
        try:
            return await asyncio.to_thread(parser, data)
        except Exception as exc:
            logger.warning("Parse failed | file=%s error=%s: %s", filename, type(exc).__name__, exc)
            raise UnreadableDocumentError(f"{filename} could not be parsed") from exc

    async def _transcribe(self, data: bytes, filename: str) -> ExtractionResult:
        if not self._api_key:
            raise PermanentDependencyError(
                "audio transcription is not configured", dependency="transcription"
            )

        from openai import AsyncOpenAI

        client = AsyncOpenAI(api_key=self._api_key, max_retries=0)

        async def _call():
            return await client.audio.transcriptions.create(
                model=self._transcription_model,
                file=(filename, io.BytesIO(data)),
                response_format="verbose_json",
            )

        if self._caller is not None:
            response = await self._caller.call(_call, operation=f"transcribe {filename}")
        else:
            response = await _call()

        segments = [
            TimeSegment(
                start=float(getattr(seg, "start", 0.0) or 0.0),
                end=float(getattr(seg, "end", 0.0) or 0.0),
                text=str(getattr(seg, "text", "") or "").strip(),
            )
            for seg in (getattr(response, "segments", None) or [])
        ]
        return ExtractionResult(
            text=response.text or "",
            pages=1,
            method="transcription",
            segments=[s for s in segments if s.text],
        )


# ---------------------------------------------------------------------------
# Format helpers
# ---------------------------------------------------------------------------

def extract_pdf(data: bytes) -> tuple[str, int]:
    """Extract text from PDF bytes using pypdf, with a [Page N] marker per page."""
    from pypdf import PdfReader

    reader = PdfReader(io.BytesIO(data))
    texts  = [(page.extract_text() or "").strip() for page in reader.pages]
    if not any(texts):
        # scanned / image-only PDF: markers alone are not content
        return "", len(texts)
    parts = [f"[Page {n}]\n{t}" for n, t in enumerate(texts, start=1)]
    return "\n\n".join(parts), len(texts)


def extract_docx(data: bytes) -> str:
    """Extract text from DOCX bytes using python-docx."""
    import docx

    doc = docx.Document(io.BytesIO(data))
    return "\n".join(para.text for para in doc.paragraphs if para.text.strip())


def decode_text(data: bytes) -> str:
    # Plain text / markdown: decode with UTF-8, fallback to latin-1
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1", errors="replace")
