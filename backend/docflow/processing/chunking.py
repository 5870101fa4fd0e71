"""
Text Chunker  —  Fixed-Window Segmentation with Overlap
══════════════════════════════════════════════════════════

Window arithmetic
─────────────────
  Token budgets are converted to characters once, using the configured
  characters-per-token estimate (no tokenizer dependency):

    window = chunk_size × chars_per_token          (500 × 4 = 2000 chars)
    step   = (chunk_size − overlap) × chars_per_token   (400 × 4 = 1600)

  Windows start at 0, step, 2·step, … and the final window is truncated to
  the remaining text, never padded. Once a window reaches the end of the
  text no further windows are produced, so a text shorter than one window
  yields exactly one chunk.

    2100 chars → [0, 2000)  [1600, 2100)

Guarantees
──────────
  • Coverage: every character of the text lies in at least one window.
  • Contiguous indices 0, 1, 2, … (windows that are pure whitespace are
    skipped without leaving an index gap).
  • Consecutive windows overlap by exactly overlap × chars_per_token chars
    (except where the last window is truncated).
  • Deterministic and side-effect free: same text + same policy → the same
    chunk sequence.

Metadata
────────
  page_number  PDF extraction inserts "[Page N]" markers. A chunk takes the
               LAST marker inside its window, otherwise the last marker
               before it, otherwise page 1.
  start/end    Audio transcripts carry timed segments. A chunk's time range
  time         spans the segments overlapping its character range (nearest
               neighbours when none overlap).
"""

from __future__ import annotations

import hashlib
import logging
import re
import unicodedata
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence

logger = logging.getLogger(__name__)

_PAGE_MARKER_RE = re.compile(r"\[Page (\d+)\]")


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChunkingPolicy:
    chunk_size:      int = 500   # tokens
    overlap:         int = 100   # tokens
    chars_per_token: int = 4

    def __post_init__(self) -> None:
        if self.chunk_size <= 0 or self.chars_per_token <= 0:
            raise ValueError("chunk_size and chars_per_token must be positive")
        if not 0 <= self.overlap < self.chunk_size:
            raise ValueError(
                f"overlap must be in [0, chunk_size); got overlap={self.overlap} "
                f"chunk_size={self.chunk_size}"
            )

    @classmethod
    def from_settings(cls, settings) -> "ChunkingPolicy":
        return cls(
            chunk_size=settings.chunk_size,
            overlap=settings.chunk_overlap,
            chars_per_token=settings.chars_per_token,
        )

    @property
    def window_chars(self) -> int:
        return self.chunk_size * self.chars_per_token

    @property
    def overlap_chars(self) -> int:
        return self.overlap * self.chars_per_token

    @property
    def step_chars(self) -> int:
        return self.window_chars - self.overlap_chars


@dataclass(frozen=True)
class TimeSegment:
    """One timed span of an audio transcript (seconds)."""
    start: float
    end:   float
    text:  str


@dataclass(frozen=True)
class Chunk:
    """
    One immutable slice of document text, ready for embedding.

    text is the exact span text[char_start:char_end] of the normalized
    document, so a stored embedding is always paired with the precise
    characters that produced it.
    """
    document_id: str
    index:       int              # 0-based, contiguous
    text:        str
    char_start:  int
    char_end:    int              # exclusive
    token_count: int              # len(text) // chars_per_token, at least 1
    page_number: int = 1
    start_time:  Optional[float] = None
    end_time:    Optional[float] = None

    @property
    def chunk_id(self) -> str:
        return make_chunk_id(self.document_id, self.index)


# ---------------------------------------------------------------------------
# Chunker
# ---------------------------------------------------------------------------

class TextChunker:
    """
    Stateless fixed-window chunker.

    Usage:
        chunker = TextChunker(ChunkingPolicy.from_settings(settings))
        chunks  = chunker.chunk(text, document_id=str(doc.id))

        # lazily, restartable (each call starts a fresh walk)
        for chunk in chunker.iter_chunks(text, document_id):
            ...
    """

    def __init__(self, policy: ChunkingPolicy | None = None) -> None:
        self._policy = policy or ChunkingPolicy()

    @property
    def policy(self) -> ChunkingPolicy:
        return self._policy

    def chunk(
        self,
        text:          str,
        document_id:   str,
        time_segments: Sequence[TimeSegment] | None = None,
    ) -> list[Chunk]:
        chunks = list(self.iter_chunks(text, document_id, time_segments))
        logger.debug(
            "TextChunker | doc=%s chars=%d chunks=%d window=%d step=%d",
            document_id, len(text), len(chunks),
            self._policy.window_chars, self._policy.step_chars,
        )
        return chunks

    def iter_chunks(
        self,
        text:          str,
        document_id:   str,
        time_segments: Sequence[TimeSegment] | None = None,
    ) -> Iterator[Chunk]:
        window = self._policy.window_chars
        step   = self._policy.step_chars
        cpt    = self._policy.chars_per_token

        markers  = _find_page_markers(text)
        segments = _locate_segments(text, time_segments) if time_segments else []

        index = 0
        start = 0
        length = len(text)
        while start < length:
            end  = min(start + window, length)
            span = text[start:end]

            if span.strip():
                time_range = _time_range(start, end, segments) if segments else None
                yield Chunk(
                    document_id=document_id,
                    index=index,
                    text=span,
                    char_start=start,
                    char_end=end,
                    token_count=max(1, len(span) // cpt),
                    page_number=_page_for_window(start, end, markers),
                    start_time=time_range[0] if time_range else None,
                    end_time=time_range[1] if time_range else None,
                )
                index += 1

            if end >= length:
                break
            start += step


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def normalize_text(text: str) -> str:
    """
    Normalize Unicode, strip invisible characters, collapse excess whitespace.
    Preserves paragraph breaks (double newlines).
    """
    text = unicodedata.normalize("NFC", text)
    text = re.sub(r"[\u00a0\u200b\u200c\u200d\ufeff]", " ", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    # Collapse 3+ newlines to a paragraph break
    text = re.sub(r"\n{3,}", "\n\n", text)
    lines = [line.rstrip() for line in text.split("\n")]
    return "\n".join(lines).strip()


def make_chunk_id(document_id: str, chunk_index: int) -> str:
    """Deterministic chunk ID: sha256(document_id:chunk_index)[:32]."""
    raw = f"{document_id}:{chunk_index}"
    return hashlib.sha256(raw.encode()).hexdigest()[:32]


def _find_page_markers(text: str) -> list[tuple[int, int]]:
    """[(char_position, page_number), …] in text order."""
    return [(m.start(), int(m.group(1))) for m in _PAGE_MARKER_RE.finditer(text)]


def _page_for_window(start: int, end: int, markers: list[tuple[int, int]]) -> int:
    page = 1
    for position, page_num in markers:
        if position >= end:
            break
        # markers before the window are overwritten by any inside it
        page = page_num
    return max(1, page)


def _locate_segments(
    text:     str,
    segments: Sequence[TimeSegment],
) -> list[tuple[int, int, float, float]]:
    """
    Find each transcript segment's character range in the full text.

    Returns [(char_start, char_end, start_time, end_time), …]. Segments whose
    text cannot be found (after the previous match) are dropped.
    """
    located: list[tuple[int, int, float, float]] = []
    cursor = 0
    for seg in segments:
        seg_text = (seg.text or "").strip()
        if not seg_text:
            continue
        pos = text.find(seg_text, cursor)
        if pos == -1:
            continue
        located.append((pos, pos + len(seg_text), seg.start or 0.0, seg.end or 0.0))
        cursor = pos + len(seg_text)
    return located


def _time_range(
    start:    int,
    end:      int,
    segments: list[tuple[int, int, float, float]],
) -> Optional[tuple[float, float]]:
    overlapping = [s for s in segments if s[0] < end and s[1] > start]
    if overlapping:
        return overlapping[0][2], overlapping[-1][3]

    before = [s for s in segments if s[1] <= start]
    after  = [s for s in segments if s[0] >= end]
    if before and after:
        return before[-1][2], after[0][3]
    if before:
        return before[-1][2], before[-1][3]
    if after:
        return after[0][2], after[0][3]
    return None
