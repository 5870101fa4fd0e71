"""
FastAPI Application — Entry Point

Document processing API: upload → extract → chunk → embed → store.

Architecture:
  - All routes are versioned under /api/v1/
  - One ServiceContainer per process, built in the lifespan from Settings
    and exposed to routes as app.state.container
  - The JobCoordinator runs jobs inside this event loop and sweeps stuck
    documents on a fixed interval
  - Structured JSON error responses on all 4xx/5xx

Middleware stack (innermost → outermost):
  1. CORS — restrict to configured origins
  2. Request ID injection — X-Request-ID header on every response
  3. Trusted host — reject unexpected Host headers in production
  4. Gzip — compress responses > 1 KB
  5. Request logging — structured log per request with latency
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from docflow.api.v1.documents import router as documents_router
from docflow.api.v1.processing import router as processing_router
from docflow.core.config import Settings, get_settings
from docflow.core.errors import PipelineError
from docflow.db.session import check_db_health, create_schema
from docflow.schemas.documents import ErrorDetail, ErrorResponse
from docflow.services.container import ServiceContainer, build_container

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    settings:  Optional[Settings] = None,
    container: Optional[ServiceContainer] = None,
) -> FastAPI:
    """
    Build the app. Tests pass a pre-built container (in-memory database,
    fake embedding provider); production builds one from the environment.
    """
    settings = settings or (container.settings if container else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Run on startup: build the container, check the database, start the
        coordinator. Run on shutdown: stop the coordinator, dispose pools.
        """
        owned = container is None
        app.state.container = container or build_container(settings)
        c: ServiceContainer = app.state.container

        logger.info(
            "Starting docflow | env=%s file_store=%s embedding_model=%s",
            settings.app_env, settings.file_store_backend, settings.embedding_model,
        )

        if c.engine is not None:
            db_health = await check_db_health(c.engine)
            if db_health["status"] != "ok":
                logger.critical("Database health check failed at startup: %s", db_health)
                raise RuntimeError(f"DB unavailable: {db_health}")
            if not settings.is_production:
                await create_schema(c.engine)
            logger.info("Database: connected")

        await c.coordinator.start()

        yield

        logger.info("Shutting down docflow")
        if owned:
            await c.dispose()
        else:
            await c.coordinator.close()

    app = FastAPI(
        title="Docflow Document Processing API",
        description=(
            "Chunk, embed and store documents with bounded concurrency, "
            "retries and circuit breaking around every outbound call."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order: last added = outermost)
    # ----------------------------------------------------------------

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    allowed_origins = ["*"] if settings.app_env == "development" else []
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-Document-ID", "Location"],
    )

    if settings.is_production:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=["*.docflow.internal"])

    # ----------------------------------------------------------------
    # Request ID + structured logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert Pydantic/FastAPI validation errors to structured ErrorResponse."""
        details = [
            ErrorDetail(
                field=" → ".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=details,
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(PipelineError)
    async def pipeline_exception_handler(request: Request, exc: PipelineError):
        """Known pipeline failures: retryable ones are 503, the rest 502."""
        logger.warning("Pipeline error | path=%s error=%s", request.url.path, exc)
        body = ErrorResponse(
            error_code=type(exc).__name__.removesuffix("Error").upper() or "PIPELINE",
            message=exc.user_message,
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(
            status_code=(
                status.HTTP_503_SERVICE_UNAVAILABLE if exc.retryable
                else status.HTTP_502_BAD_GATEWAY
            ),
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        body = ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router,  prefix="/api/v1")
    app.include_router(processing_router, prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health & readiness endpoints (used by load balancer)
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness check",
        description="Returns 200 if the process is alive. No external checks.",
    )
    async def health() -> dict:
        return {"status": "ok", "service": "docflow-api"}

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness check",
        description="Returns 200 only if the database is reachable.",
    )
    async def readiness(request: Request) -> JSONResponse:
        c: ServiceContainer = request.app.state.container
        db_status = await check_db_health(c.engine) if c.engine is not None else {"status": "ok"}
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": db_status, "active_jobs": c.coordinator.load().active},
        )

    return app


# ---------------------------------------------------------------------------
# Application factory (uvicorn --factory docflow.main:build_app)
# ---------------------------------------------------------------------------

def build_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings)
    return create_app(settings)


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "docflow.main:build_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=_settings.app_env == "development",
        log_level="debug" if _settings.debug else "info",
        access_log=True,
    )
