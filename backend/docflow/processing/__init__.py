"""
Document Processing Package
════════════════════════════

The stateless building blocks of the ingestion pipeline:

  Text Extraction → Chunking → (AI abstract, keywords) → Embedding batches

Modules
───────
  extractor.py   PDF / DOCX / plain text / audio transcription to text
  chunking.py    Fixed-window chunker with token-budget overlap
  embeddings.py  Sequential embedding batcher behind the resilience layer
  summarizer.py  Optional AI abstract, non-fatal on failure
  keywords.py    Batched AI keywords with a word-frequency fallback

Orchestration (status, storage, concurrency) lives in docflow.services.
"""

from docflow.processing.chunking import Chunk, ChunkingPolicy, TextChunker, normalize_text
from docflow.processing.embeddings import (
    EmbeddingBatch,
    EmbeddingBatcher,
    EmbeddingProvider,
    EmbeddingResult,
)
from docflow.processing.extractor import ExtractionResult, TextExtractor

__all__ = [
    "Chunk",
    "ChunkingPolicy",
    "TextChunker",
    "normalize_text",
    "EmbeddingBatch",
    "EmbeddingBatcher",
    "EmbeddingProvider",
    "EmbeddingResult",
    "ExtractionResult",
    "TextExtractor",
]
