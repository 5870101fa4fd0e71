"""
AI Abstract Generator

Produces a ~100-word abstract for a document from its chunk text using an
OpenAI chat model. The call runs through the "ai_abstract" ResilientCaller
(same retry policy and breaker semantics as embeddings, own timeouts).

Failure is non-fatal: generate() returns None and the document still
completes. Input is capped at ai_max_chars characters.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional, Sequence

from docflow.core.errors import PipelineError
from docflow.processing.chunking import Chunk
from docflow.resilience.retry import ResilientCaller

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = (
    "You are an expert at creating concise, informative abstracts from document "
    "content. Create a 100-word abstract that captures the key themes, purpose, "
    "and scope of the document."
)


def build_abstract_input(chunks: Sequence[Chunk], max_chars: int) -> str:
    """
    Join chunk text without the overlapping prefix of each following chunk,
    truncated to max_chars.
    """
    parts: list[str] = []
    covered = 0
    for chunk in chunks:
        if chunk.char_end <= covered:
            continue
        skip = max(0, covered - chunk.char_start)
        parts.append(chunk.text[skip:])
        covered = chunk.char_end
    text = "".join(parts)
    if len(text) > max_chars:
        text = text[:max_chars] + "..."
    return text


class AbstractModel(ABC):
    """Chat completion used for the abstract and for keyword extraction."""

    @abstractmethod
    async def complete(
        self,
        system:     str,
        user:       str,
        max_tokens: int  = 200,
        json_mode:  bool = False,
    ) -> str:
        ...


class OpenAIAbstractModel(AbstractModel):

    def __init__(self, model: str = "gpt-4o-mini", api_key: str = "") -> None:
        self._model   = model
        self._api_key = api_key
        self._client  = None

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self._api_key or None, max_retries=0)
        return self._client

    async def complete(
        self,
        system:     str,
        user:       str,
        max_tokens: int  = 200,
        json_mode:  bool = False,
    ) -> str:
        extra = {"response_format": {"type": "json_object"}} if json_mode else {}
        response = await self._get_client().chat.completions.create(
            model=self._model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            temperature=0.7,
            max_tokens=max_tokens,
            **extra,
        )
        return (response.choices[0].message.content or "").strip()


class AbstractGenerator:

    def __init__(
        self,
        model:     AbstractModel,
        caller:    ResilientCaller,
        max_chars: int = 400_000,
    ) -> None:
        self._model     = model
        self._caller    = caller
        self._max_chars = max_chars

    async def generate(self, title: str, chunks: Sequence[Chunk]) -> Optional[str]:
        if not chunks:
            return None

        content = build_abstract_input(chunks, self._max_chars)
        prompt = (
            f'Please create a 100-word abstract for a document titled "{title or "Untitled"}". '
            f"Base your abstract on the following content from the document:\n\n{content}\n\n"
            "Provide ONLY the abstract text, no additional commentary."
        )

        try:
            abstract = await self._caller.call(
                lambda: self._model.complete(_SYSTEM_PROMPT, prompt),
                operation="generate abstract",
            )
        except PipelineError as exc:
            logger.warning("Abstract skipped | title=%r error=%s", title, exc)
            return None

        logger.info("Abstract generated | title=%r words=%d", title, len(abstract.split()))
        return abstract or None
