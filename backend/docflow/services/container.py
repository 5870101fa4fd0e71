"""
Application container — wires every component from one Settings instance.

Built once per process (FastAPI lifespan, Celery worker) and passed down by
reference. Tests build their own container with fakes injected:

    container = build_container(
        settings,
        session_factory=factory,
        embedding_provider=FakeEmbeddingProvider(),
        file_store=LocalFileStore(tmp_path),
    )
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from docflow.core.config import Settings
from docflow.db.session import SessionFactory, create_engine, create_session_factory
from docflow.processing.chunking import ChunkingPolicy, TextChunker
from docflow.processing.embeddings import (
    EmbeddingBatcher,
    EmbeddingProvider,
    OpenAIEmbeddingProvider,
)
from docflow.processing.extractor import TextExtractor
from docflow.processing.keywords import KeywordGenerator
from docflow.processing.summarizer import AbstractGenerator, AbstractModel, OpenAIAbstractModel
from docflow.resilience.circuit_breaker import CircuitBreakerRegistry
from docflow.resilience.retry import ResilientCaller
from docflow.services.coordinator import JobCoordinator
from docflow.services.pipeline import DocumentPipeline
from docflow.services.sweeper import StuckDocumentSweeper
from docflow.storage.base import FileStore
from docflow.storage.local import LocalFileStore
from docflow.storage.s3 import S3FileStore
from docflow.storage.sql import (
    SqlChunkStore,
    SqlDocumentRepository,
    SqlProcessingLogStore,
    utc_now,
)
from docflow.storage.writer import StorageWriter

logger = logging.getLogger(__name__)

# Dependency names: one circuit breaker each
EMBEDDINGS    = "embeddings"
AI_ABSTRACT   = "ai_abstract"
TRANSCRIPTION = "transcription"


@dataclass
class ServiceContainer:
    settings:    Settings
    engine:      Optional[AsyncEngine]
    sessions:    SessionFactory
    breakers:    CircuitBreakerRegistry
    documents:   SqlDocumentRepository
    chunks:      SqlChunkStore
    logs:        SqlProcessingLogStore
    files:       FileStore
    extractor:   TextExtractor
    pipeline:    DocumentPipeline
    sweeper:     StuckDocumentSweeper
    coordinator: JobCoordinator

    async def dispose(self) -> None:
        await self.coordinator.close()
        if self.engine is not None:
            await self.engine.dispose()


def build_file_store(settings: Settings) -> FileStore:
    if settings.file_store_backend == "s3":
        return S3FileStore.from_settings(settings)
    return LocalFileStore(settings.local_storage_dir)


def build_container(
    settings:           Settings,
    session_factory:    Optional[SessionFactory] = None,
    embedding_provider: Optional[EmbeddingProvider] = None,
    abstract_model:     Optional[AbstractModel] = None,
    keyword_model:      Optional[AbstractModel] = None,
    file_store:         Optional[FileStore] = None,
    sleep:              Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng:                Callable[[], float] = random.random,
    now=utc_now,
) -> ServiceContainer:
    engine = None
    if session_factory is None:
        engine          = create_engine(settings)
        session_factory = create_session_factory(engine)

    breakers = CircuitBreakerRegistry.from_settings(settings)
    policy   = settings.retry_policy

    def caller(dependency: str, timeouts: tuple[float, float]) -> ResilientCaller:
        soft, hard = timeouts
        return ResilientCaller(
            breaker=breakers.get(dependency),
            policy=policy,
            soft_timeout=soft,
            hard_timeout=hard,
            sleep=sleep,
            rng=rng,
        )

    documents = SqlDocumentRepository(session_factory, now=now)
    chunks    = SqlChunkStore(session_factory)
    logs      = SqlProcessingLogStore(session_factory, now=now)

    provider = embedding_provider or OpenAIEmbeddingProvider(
        model=settings.embedding_model,
        api_key=settings.openai_api_key,
    )
    batcher = EmbeddingBatcher(
        provider,
        caller(EMBEDDINGS, settings.embedding_timeouts),
        batch_size=settings.embedding_batch_size,
        base_delay=settings.base_batch_delay_ms / 1000,
        sleep=sleep,
    )

    summarizer = None
    if abstract_model is not None or (settings.ai_abstract_enabled and settings.openai_api_key):
        summarizer = AbstractGenerator(
            abstract_model or OpenAIAbstractModel(settings.ai_abstract_model, settings.openai_api_key),
            caller(AI_ABSTRACT, settings.ai_abstract_timeouts),
            max_chars=settings.ai_max_chars,
        )

    keywords = None
    if keyword_model is not None or (settings.ai_keywords_enabled and settings.openai_api_key):
        keywords = KeywordGenerator(
            keyword_model or OpenAIAbstractModel(settings.ai_abstract_model, settings.openai_api_key),
            caller(AI_ABSTRACT, settings.ai_abstract_timeouts),
            batch_chars=settings.ai_keyword_batch_chars,
        )

    pipeline = DocumentPipeline(
        documents=documents,
        logs=logs,
        chunker=TextChunker(ChunkingPolicy.from_settings(settings)),
        batcher=batcher,
        writer=StorageWriter(chunks, documents, settings.storage_insert_batch_size),
        summarizer=summarizer,
        keywords=keywords,
    )
    sweeper = StuckDocumentSweeper.from_settings(settings, documents, logs, now=now)
    coordinator = JobCoordinator(
        pipeline,
        documents,
        chunks,
        max_concurrent_jobs=settings.max_concurrent_processing_jobs,
        sweeper=sweeper,
        sweep_interval=settings.stuck_sweep_interval / 1000,
    )
    extractor = TextExtractor(
        openai_api_key=settings.openai_api_key,
        transcription_model=settings.transcription_model,
        caller=caller(TRANSCRIPTION, settings.transcription_timeouts),
    )

    logger.info(
        "Container built | chunk=%d/%d batch=%d insert_batch=%d max_jobs=%d breaker=%d/%dms",
        settings.chunk_size, settings.chunk_overlap, settings.embedding_batch_size,
        settings.storage_insert_batch_size, settings.max_concurrent_processing_jobs,
        settings.circuit_breaker_threshold, settings.circuit_breaker_timeout,
    )
    return ServiceContainer(
        settings=settings,
        engine=engine,
        sessions=session_factory,
        breakers=breakers,
        documents=documents,
        chunks=chunks,
        logs=logs,
        files=file_store or build_file_store(settings),
        extractor=extractor,
        pipeline=pipeline,
        sweeper=sweeper,
        coordinator=coordinator,
    )
