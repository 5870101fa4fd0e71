"""
Application configuration via environment variables (12-factor).

Every pipeline tunable has a declared valid range. Pydantic BaseSettings
parses and validates all values once at startup:

  • build_settings()  → raises ConfigurationError with every violation
  • load_settings()   → logs the violations and falls back to defaults
  • get_settings()    → process-wide cached instance for the app factory

Components never import a module-level settings object; they receive a
Settings instance (or a policy derived from it) through their constructor.
Tests construct Settings(...) directly instead of mutating globals.

Size-limit authority:
  MAX_FILE_SIZE is the only upload size limit. The HTTP layer reads it from
  Settings; there is no separate per-role limit.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from docflow.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

MiB = 1024 * 1024


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Database
    # ------------------------------------------------------------------
    database_url: str = "sqlite+aiosqlite:///./docflow.db"

    db_pool_size:    int  = 10
    db_max_overflow: int  = 20
    db_echo_sql:     bool = False   # set True in local dev to log queries

    # ------------------------------------------------------------------
    # File storage
    # ------------------------------------------------------------------
    file_store_backend: str = "local"   # "local" | "s3"
    local_storage_dir:  str = "./uploads"

    aws_region: str = "us-east-1"
    s3_bucket:  str = "docflow-documents"

    # Local dev: set these; prod: use the task role (no static keys)
    aws_access_key_id:     str = ""
    aws_secret_access_key: str = ""

    max_file_size: int = Field(100 * MiB, ge=1, le=1024 * MiB)   # bytes

    # ------------------------------------------------------------------
    # Chunking
    # ------------------------------------------------------------------
    chunk_size:      int = Field(500, ge=100, le=5000)   # tokens
    chunk_overlap:   int = Field(100, ge=0, le=500)      # tokens
    chars_per_token: int = Field(4, ge=1, le=16)

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------
    openai_api_key: str = ""

    embedding_model:        str = "text-embedding-3-small"
    embedding_batch_size:   int = Field(200, ge=1, le=1000)
    base_batch_delay_ms:    int = Field(50, ge=0, le=10_000)
    embedding_timeout:      int = Field(30_000, ge=1000, le=300_000)   # ms, soft
    embedding_hard_timeout: int = Field(45_000, ge=1000, le=600_000)   # ms, hard

    # ------------------------------------------------------------------
    # Retry / circuit breaker
    # ------------------------------------------------------------------
    max_retries:         int   = Field(3, ge=0, le=10)
    retry_initial_delay: int   = Field(1000, ge=0, le=60_000)    # ms
    retry_max_delay:     int   = Field(10_000, ge=0, le=300_000) # ms
    retry_multiplier:    float = Field(2.0, ge=1.0, le=10.0)
    retry_jitter:        bool  = True

    circuit_breaker_threshold: int = Field(5, ge=1, le=100)
    circuit_breaker_timeout:   int = Field(60_000, ge=1000, le=3_600_000)   # ms

    # ------------------------------------------------------------------
    # Storage writer
    # ------------------------------------------------------------------
    storage_insert_batch_size: int = Field(200, ge=1, le=1000)

    # ------------------------------------------------------------------
    # Job coordinator
    # ------------------------------------------------------------------
    max_concurrent_processing_jobs: int = Field(5, ge=1, le=100)
    stuck_document_threshold:       int = Field(300_000, ge=10_000, le=86_400_000)   # ms
    stuck_sweep_interval:           int = Field(60_000, ge=1000, le=3_600_000)       # ms

    # ------------------------------------------------------------------
    # AI abstract generation
    # ------------------------------------------------------------------
    ai_abstract_enabled:      bool = True
    ai_abstract_model:        str  = "gpt-4o-mini"
    ai_abstract_timeout:      int  = Field(30_000, ge=1000, le=300_000)   # ms
    ai_abstract_hard_timeout: int  = Field(45_000, ge=1000, le=600_000)   # ms
    ai_max_chars:             int  = Field(400_000, ge=1000, le=2_000_000)
    ai_keywords_enabled:      bool = True
    ai_keyword_batch_chars:   int  = Field(400_000, ge=1000, le=2_000_000)

    # ------------------------------------------------------------------
    # Audio transcription
    # ------------------------------------------------------------------
    transcription_model:        str = "whisper-1"
    transcription_timeout:      int = Field(300_000, ge=1000, le=1_800_000)   # ms
    transcription_hard_timeout: int = Field(600_000, ge=1000, le=3_600_000)   # ms

    # ------------------------------------------------------------------
    # Background workers
    # ------------------------------------------------------------------
    celery_broker_url:     str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/1"

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------
    app_env: str = "development"   # development | staging | production
    debug: bool = False

    @model_validator(mode="after")
    def _check_combinations(self) -> "Settings":
        problems: list[str] = []
        if self.chunk_overlap >= self.chunk_size:
            problems.append(
                f"chunk_overlap ({self.chunk_overlap}) must be smaller than "
                f"chunk_size ({self.chunk_size})"
            )
        if self.embedding_hard_timeout <= self.embedding_timeout:
            problems.append(
                f"embedding_hard_timeout ({self.embedding_hard_timeout}) must be "
                f"greater than embedding_timeout ({self.embedding_timeout})"
            )
        if self.ai_abstract_hard_timeout <= self.ai_abstract_timeout:
            problems.append(
                f"ai_abstract_hard_timeout ({self.ai_abstract_hard_timeout}) must be "
                f"greater than ai_abstract_timeout ({self.ai_abstract_timeout})"
            )
        if self.transcription_hard_timeout <= self.transcription_timeout:
            problems.append(
                f"transcription_hard_timeout ({self.transcription_hard_timeout}) must be "
                f"greater than transcription_timeout ({self.transcription_timeout})"
            )
        if self.retry_max_delay < self.retry_initial_delay:
            problems.append(
                f"retry_max_delay ({self.retry_max_delay}) must be at least "
                f"retry_initial_delay ({self.retry_initial_delay})"
            )
        if problems:
            raise ValueError("; ".join(problems))
        return self

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    # ------------------------------------------------------------------
    # Derived policies (unit conversion lives here, not in components)
    # ------------------------------------------------------------------

    @property
    def chunk_size_chars(self) -> int:
        return self.chunk_size * self.chars_per_token

    @property
    def chunk_step_chars(self) -> int:
        return (self.chunk_size - self.chunk_overlap) * self.chars_per_token

    @property
    def retry_policy(self):
        from docflow.resilience.retry import RetryPolicy
        return RetryPolicy(
            max_retries=self.max_retries,
            initial_delay=self.retry_initial_delay / 1000,
            max_delay=self.retry_max_delay / 1000,
            multiplier=self.retry_multiplier,
            jitter=self.retry_jitter,
        )

    @property
    def embedding_timeouts(self) -> tuple[float, float]:
        """(soft, hard) per-call timeouts in seconds."""
        return self.embedding_timeout / 1000, self.embedding_hard_timeout / 1000

    @property
    def ai_abstract_timeouts(self) -> tuple[float, float]:
        return self.ai_abstract_timeout / 1000, self.ai_abstract_hard_timeout / 1000

    @property
    def transcription_timeouts(self) -> tuple[float, float]:
        return self.transcription_timeout / 1000, self.transcription_hard_timeout / 1000


# Fields that are pipeline tunables. On validation failure these reset to
# their declared defaults; connection settings keep their environment values.
TUNABLE_FIELDS = (
    "max_file_size",
    "chunk_size", "chunk_overlap", "chars_per_token",
    "embedding_batch_size", "base_batch_delay_ms",
    "embedding_timeout", "embedding_hard_timeout",
    "max_retries", "retry_initial_delay", "retry_max_delay",
    "retry_multiplier", "retry_jitter",
    "circuit_breaker_threshold", "circuit_breaker_timeout",
    "storage_insert_batch_size",
    "max_concurrent_processing_jobs", "stuck_document_threshold",
    "stuck_sweep_interval",
    "ai_abstract_timeout", "ai_abstract_hard_timeout", "ai_max_chars",
    "ai_keyword_batch_chars",
    "transcription_timeout", "transcription_hard_timeout",
)


def _violations(exc: ValidationError) -> list[str]:
    out: list[str] = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "settings"
        msg = err.get("msg", "invalid value")
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        if loc == "settings":
            out.extend(f"{loc}: {part}" for part in msg.split("; "))
        else:
            out.append(f"{loc}: {msg}")
    return out


def _failed_fields(exc: ValidationError) -> set[str]:
    names: set[str] = set()
    for err in exc.errors():
        loc = err.get("loc", ())
        if loc and str(loc[0]) in Settings.model_fields:
            names.add(str(loc[0]))
    return names


def _defaults_for(names) -> dict[str, Any]:
    return {name: Settings.model_fields[name].get_default() for name in names}


def build_settings(**overrides: Any) -> Settings:
    """
    Construct and validate Settings.

    Field-level failures stop pydantic before the cross-field rules run, so
    a second pass pins every failed field to its default and collects the
    cross-field violations among the remaining values.

    Raises:
        ConfigurationError: with the aggregated list of every violation.
    """
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        violations = _violations(exc)
        failed = _failed_fields(exc)
        if failed:
            try:
                Settings(**{**overrides, **_defaults_for(failed)})
            except ValidationError as second:
                violations.extend(v for v in _violations(second) if v not in violations)
        raise ConfigurationError(violations) from exc


def load_settings(**overrides: Any) -> Settings:
    """
    Startup loader: never refuses to start on bad settings.

    Violations are logged one per line, then every tunable is pinned to its
    declared default while non-tunable settings are still read from the
    environment. A non-tunable that cannot be parsed falls back to its
    default as well.
    """
    try:
        return build_settings(**overrides)
    except ConfigurationError as exc:
        for violation in exc.violations:
            logger.error("Config violation | %s", violation)
        logger.warning(
            "Config invalid | violations=%d falling back to default tunables",
            len(exc.violations),
        )

    safe_overrides = {k: v for k, v in overrides.items() if k not in TUNABLE_FIELDS}
    pinned = {**safe_overrides, **_defaults_for(TUNABLE_FIELDS)}
    try:
        return Settings(**pinned)
    except ValidationError as exc:
        failed = _failed_fields(exc)
        logger.warning("Config fallback | defaults for fields=%s", ",".join(sorted(failed)))
        return Settings(**{**pinned, **_defaults_for(failed)})


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
