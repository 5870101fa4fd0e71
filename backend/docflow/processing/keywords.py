"""
Keyword Extraction  —  Batched AI Keywords with a Frequency Fallback
═══════════════════════════════════════════════════════════════════════

Pipeline:
  1. plan_keyword_batches()   pack chunk text greedily into batches of at most
                              `batch_chars` characters (a single oversized
                              chunk still forms its own batch)
  2. one chat call per batch  JSON mode, through the "ai_abstract"
                              ResilientCaller; batches run concurrently
  3. parse_keywords()         {"keywords": [{"term", "weight"}]} with terms
                              lower-cased and weights clamped to 0.1-1.0
  4. merge_keyword_batches()  duplicates averaged, +5% per extra batch a
                              term appears in (max +50%), top 30 kept,
                              weights rescaled to 0.1-1.0

A failed batch contributes nothing. When no batch yields a keyword the
generator falls back to word / phrase frequency over the same chunks.
Like the abstract, keywords never fail a document: generate() returns None
when there is nothing to report.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections import Counter
from dataclasses import dataclass
from typing import Optional, Sequence

from docflow.core.errors import PipelineError
from docflow.processing.chunking import Chunk
from docflow.processing.summarizer import AbstractModel
from docflow.resilience.retry import ResilientCaller

logger = logging.getLogger(__name__)

MAX_KEYWORDS       = 30
MIN_WEIGHT         = 0.1
MAX_WEIGHT         = 1.0
BATCH_BOOST_STEP   = 0.05
BATCH_BOOST_CAP    = 0.5
DEFAULT_WEIGHT     = 0.5

_SYSTEM_PROMPT = (
    "You are an expert at analyzing document content and extracting key terms "
    "and concepts. Identify the most important keywords, phrases, and concepts "
    "that would be useful for a word cloud visualization. Focus on domain-specific "
    "terms, key concepts, and important topics. Always respond with valid JSON."
)

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


@dataclass(frozen=True)
class Keyword:
    term:   str
    weight: float

    def as_dict(self) -> dict:
        return {"term": self.term, "weight": round(self.weight, 4)}


# ---------------------------------------------------------------------------
# Batching, parsing and merging (pure)
# ---------------------------------------------------------------------------

def plan_keyword_batches(chunks: Sequence[Chunk], batch_chars: int) -> list[list[str]]:
    batches: list[list[str]] = []
    current: list[str] = []
    size = 0
    for chunk in chunks:
        text = chunk.text.strip()
        if not text:
            continue
        if current and size + len(text) > batch_chars:
            batches.append(current)
            current, size = [], 0
        current.append(text)
        size += len(text) + 2    # "\n\n" separator
    if current:
        batches.append(current)
    return batches


def parse_keywords(content: str) -> list[Keyword]:
    """
    Parse a model reply. Accepts the object wrapped in prose, and "word" or
    "text" in place of "term".

    Raises:
        ValueError: the reply holds no JSON object.
    """
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        match = _JSON_OBJECT.search(content)
        if match is None:
            raise ValueError("reply is not a JSON object")
        parsed = json.loads(match.group(0))

    items = parsed.get("keywords", parsed.get("keyword", [])) if isinstance(parsed, dict) else []
    if not isinstance(items, list):
        return []

    out: list[Keyword] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        term = str(item.get("term") or item.get("word") or item.get("text") or "").strip().lower()
        if not term:
            continue
        weight = item.get("weight")
        if isinstance(weight, (int, float)) and not isinstance(weight, bool):
            weight = min(MAX_WEIGHT, max(MIN_WEIGHT, float(weight)))
        else:
            weight = DEFAULT_WEIGHT
        out.append(Keyword(term, weight))
    return out


def merge_keyword_batches(
    batches: Sequence[Sequence[Keyword]],
    limit:   int = MAX_KEYWORDS,
) -> list[Keyword]:
    totals: dict[str, list[float]] = {}
    for batch in batches:
        for kw in batch:
            term = kw.term.strip().lower()
            if term:
                totals.setdefault(term, []).append(kw.weight)

    boosted = []
    for term, weights in totals.items():
        mean  = sum(weights) / len(weights)
        boost = min(BATCH_BOOST_CAP, (len(weights) - 1) * BATCH_BOOST_STEP)
        boosted.append(Keyword(term, min(MAX_WEIGHT, mean * (1 + boost))))

    # highest weight first; ties keep first-seen order
    boosted.sort(key=lambda k: -k.weight)
    return _rescale(boosted[:limit])


def _rescale(keywords: list[Keyword]) -> list[Keyword]:
    if not keywords:
        return []
    low  = min(k.weight for k in keywords)
    high = max(k.weight for k in keywords)
    if high == low:
        return [Keyword(k.term, DEFAULT_WEIGHT) for k in keywords]
    span = high - low
    return [
        Keyword(k.term, MIN_WEIGHT + (k.weight - low) / span * (MAX_WEIGHT - MIN_WEIGHT))
        for k in keywords
    ]


# ---------------------------------------------------------------------------
# Frequency fallback
# ---------------------------------------------------------------------------

_STOP_WORDS = frozenset("""
    a an and are as at be been but by can come did do does done for from get
    got had has have he her here him his how if in into is it its just like
    made make many may more most much must not now of off on one only or our
    out over said same see should so some such than that the their them then
    there these they this those through too two under up use used using very
    was were what when where which who why will with would you your also any
    each other page
""".split())

_WORD = re.compile(r"[a-z][a-z0-9-]*")


def _tokens(text: str) -> list[str]:
    words = []
    for raw in text.lower().split():
        if raw.startswith(("http", "www")) or "://" in raw:
            continue
        for word in _WORD.findall(raw):
            if len(word) >= 3 and word not in _STOP_WORDS:
                words.append(word)
    return words


def keywords_from_frequency(chunks: Sequence[Chunk], limit: int = MAX_KEYWORDS) -> list[Keyword]:
    """Single words and two-word phrases ranked by how often they occur."""
    counts: Counter[str] = Counter()
    for chunk in chunks:
        words = _tokens(chunk.text)
        counts.update(words)
        counts.update(f"{a} {b}" for a, b in zip(words, words[1:]))

    # a phrase seen once is noise
    ranked = [
        (term, n) for term, n in counts.most_common()
        if " " not in term or n > 1
    ][:limit]
    if not ranked:
        return []
    top = ranked[0][1]
    return _rescale([Keyword(term, n / top) for term, n in ranked])


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class KeywordSet:
    keywords: list[Keyword]
    method:   str            # "ai-batched-<n>" or "frequency"

    def as_json(self) -> list[dict]:
        return [k.as_dict() for k in self.keywords]


class KeywordGenerator:
    """
    Usage:
        generator = KeywordGenerator(model, caller, batch_chars=400_000)
        result    = await generator.generate(title, chunks)   # KeywordSet | None
    """

    def __init__(
        self,
        model:       AbstractModel,
        caller:      ResilientCaller,
        batch_chars: int = 400_000,
        limit:       int = MAX_KEYWORDS,
    ) -> None:
        self._model       = model
        self._caller      = caller
        self._batch_chars = batch_chars
        self._limit       = limit

    async def generate(self, title: str, chunks: Sequence[Chunk]) -> Optional[KeywordSet]:
        batches = plan_keyword_batches(chunks, self._batch_chars)
        if not batches:
            return None

        results = await asyncio.gather(*(
            self._batch(title, texts, n, len(batches))
            for n, texts in enumerate(batches, start=1)
        ))
        merged = merge_keyword_batches([r for r in results if r], self._limit)

        if merged:
            method = f"ai-batched-{len(batches)}"
        else:
            merged = keywords_from_frequency(chunks, self._limit)
            method = "frequency"
            logger.warning("Keywords from frequency | title=%r batches=%d", title, len(batches))

        if not merged:
            return None
        logger.info(
            "Keywords generated | title=%r method=%s keywords=%d",
            title, method, len(merged),
        )
        return KeywordSet(merged, method)

    async def _batch(self, title: str, texts: list[str], n: int, total: int) -> list[Keyword]:
        prompt = (
            "Analyze the following document content and extract 20-30 key terms, "
            "phrases, and concepts that best represent this document section. For each "
            "term, assign a weight from 0.1 to 1.0 based on its importance.\n\n"
            f'Document title: "{title or "Untitled"}"\n\n'
            f"Content (batch {n}/{total}):\n" + "\n\n".join(texts) + "\n\n"
            'Return a JSON object with a "keywords" array of objects, each with "term" '
            '(string) and "weight" (number). Provide ONLY the JSON object.'
        )
        try:
            content = await self._caller.call(
                lambda: self._model.complete(_SYSTEM_PROMPT, prompt, max_tokens=800, json_mode=True),
                operation=f"keywords batch {n}/{total}",
            )
            return parse_keywords(content)
        except (PipelineError, ValueError) as exc:
            logger.warning("Keyword batch skipped | batch=%d/%d error=%s", n, total, exc)
            return []
