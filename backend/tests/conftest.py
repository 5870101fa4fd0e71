"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  function-scoped : test_settings, db_engine, session_factory, repositories,
                    fake_provider, recording_sleep, fake_clock, make_container

Environment strategy:
  - Every test gets its own SQLite database file under tmp_path (aiosqlite),
    so no PostgreSQL is needed and tests never share state.
  - The embedding provider is a deterministic in-process fake; no OpenAI
    calls are made. AI abstracts are disabled unless a test injects a model.
  - Sleeps are recorded instead of awaited, so retry backoff and
    inter-batch delays are asserted without real waiting.

How to run:
  pytest                                   # all tests
  pytest -m unit                           # unit tests only
  pytest -m integration                    # HTTP tests through the ASGI app
  pytest backend/tests/unit/test_chunking.py
"""

from __future__ import annotations

import asyncio
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional, Sequence

import pytest
import pytest_asyncio

# ─────────────────────────────────────────────────────────────────────────────
# Patch environment BEFORE any docflow imports so Settings read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",          "sqlite+aiosqlite:///./docflow_test.db")
os.environ.setdefault("OPENAI_API_KEY",        "")
os.environ.setdefault("AI_ABSTRACT_ENABLED",   "false")
os.environ.setdefault("FILE_STORE_BACKEND",    "local")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("APP_ENV",               "development")

from docflow.core.config import Settings  # noqa: E402
from docflow.db.session import create_engine, create_schema, create_session_factory  # noqa: E402
from docflow.processing.embeddings import EmbeddingProvider  # noqa: E402
from docflow.services.container import build_container  # noqa: E402
from docflow.storage.local import LocalFileStore  # noqa: E402
from docflow.storage.sql import (  # noqa: E402
    SqlChunkStore,
    SqlDocumentRepository,
    SqlProcessingLogStore,
)


# ─────────────────────────────────────────────────────────────────────────────
# Fakes
# ─────────────────────────────────────────────────────────────────────────────

class FakeEmbeddingProvider(EmbeddingProvider):
    """
    Deterministic embeddings: vector = [len(text), index-in-batch, 1.0, ...].

    failures      : exceptions raised by the next calls, in order
    short_by      : drop this many vectors from every response
    delay         : seconds to await inside each call (real sleep)
    """

    def __init__(self, dim: int = 8) -> None:
        self.dim = dim
        self.calls: list[list[str]] = []
        self.failures: list[BaseException] = []
        self.short_by = 0
        self.delay = 0.0
        self.gate: Optional[asyncio.Event] = None

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        vectors = [
            [float(len(t)), float(i)] + [1.0] * (self.dim - 2)
            for i, t in enumerate(texts)
        ]
        return vectors[: len(vectors) - self.short_by] if self.short_by else vectors

    @property
    def batch_sizes(self) -> list[int]:
        return [len(c) for c in self.calls]


class RecordingSleep:
    """Stands in for asyncio.sleep; records every requested delay."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)

    @property
    def total(self) -> float:
        return sum(self.delays)


class FakeClock:
    """Monotonic clock for circuit breakers; advance() moves time forward."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWallClock:
    """UTC wall clock for repositories and the stuck sweep."""

    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class HTTPStatusError(Exception):
    """Vendor-style error carrying an HTTP status code."""

    def __init__(self, status_code: int, message: str = "") -> None:
        super().__init__(message or f"HTTP {status_code}")
        self.status_code = status_code


# ─────────────────────────────────────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'docflow.db'}",
        local_storage_dir=str(tmp_path / "uploads"),
        openai_api_key="",
        ai_abstract_enabled=False,
        ai_keywords_enabled=False,
        base_batch_delay_ms=50,
        retry_jitter=False,
    )


@pytest.fixture
def make_settings(test_settings):
    """Factory: copy of test_settings with overrides (re-validated)."""
    def _build(**overrides) -> Settings:
        data = test_settings.model_dump()
        data.update(overrides)
        return Settings(_env_file=None, **data)
    return _build


# ─────────────────────────────────────────────────────────────────────────────
# Database
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_engine(test_settings) -> AsyncGenerator:
    engine = create_engine(test_settings)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def wall_clock() -> FakeWallClock:
    return FakeWallClock()


@pytest.fixture
def documents(session_factory, wall_clock) -> SqlDocumentRepository:
    return SqlDocumentRepository(session_factory, now=wall_clock)


@pytest.fixture
def chunk_store(session_factory) -> SqlChunkStore:
    return SqlChunkStore(session_factory)


@pytest.fixture
def log_store(session_factory, wall_clock) -> SqlProcessingLogStore:
    return SqlProcessingLogStore(session_factory, now=wall_clock)


# ─────────────────────────────────────────────────────────────────────────────
# Fakes as fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def fake_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def http_error():
    return HTTPStatusError


@pytest.fixture
def document_id() -> uuid.UUID:
    return uuid.UUID("cccccccc-cccc-cccc-cccc-cccccccccccc")


# ─────────────────────────────────────────────────────────────────────────────
# Container factory
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def make_container(
    make_settings,
    session_factory,
    fake_provider,
    recording_sleep,
    wall_clock,
    tmp_path,
):
    """
    Factory: full ServiceContainer on the per-test database with the fake
    provider and recorded sleeps. Coordinators are closed on teardown.
    """
    built = []

    def _build(abstract_model=None, keyword_model=None, **overrides):
        container = build_container(
            make_settings(**overrides),
            session_factory=session_factory,
            embedding_provider=fake_provider,
            abstract_model=abstract_model,
            keyword_model=keyword_model,
            file_store=LocalFileStore(tmp_path / "files"),
            sleep=recording_sleep,
            rng=lambda: 1.0,
            now=wall_clock,
        )
        built.append(container)
        return container

    yield _build

    for container in built:
        await container.coordinator.close(timeout=5)


@pytest.fixture
def long_text():
    """Factory: n characters of non-whitespace text with word breaks."""
    def _build(n: int) -> str:
        words = ("lorem ipsum dolor sit amet consectetur adipiscing elit " * (n // 50 + 1))
        return words[:n - 1] + "x"
    return _build
