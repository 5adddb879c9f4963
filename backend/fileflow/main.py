"""
FastAPI Application: Entry Point

Fileflow: upload → extract → compress → embed, with live record updates

Architecture:
  - All routes are versioned under /api/v1/
  - Authentication is JWT-based (any OIDC issuer) enforced per-route;
    the owner id always comes from the verified token
  - Pipeline runs are in-process asyncio tasks owned by IngestionService
  - Record changes fan out per owner through ChangeNotifier to SSE streams
  - Structured JSON error responses on all 4xx/5xx

Middleware stack (innermost → outermost):
  1. CORS: restrict to configured origins
  2. Request ID injection: X-Request-ID header on every response
  3. Trusted host: reject unexpected Host headers in production
  4. Gzip: compress responses > 1 KB (event streams are left alone)
  5. Request logging: structured log per request with latency
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from fileflow.api.v1.files import router as files_router
from fileflow.core.config import settings
from fileflow.realtime.notifier import ChangeNotifier
from fileflow.schemas.files import ErrorDetail, ErrorResponse, FileErrors
from fileflow.services.ingestion import IngestionService
from fileflow.services.pipeline import PipelineOrchestrator
from fileflow.store.base import RecordStore, RecordStoreError
from fileflow.store.factory import get_record_store

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

# Seconds in-flight pipeline runs get to finish on shutdown
_DRAIN_TIMEOUT = 30.0


# ---------------------------------------------------------------------------
# Application lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

async def _init_postgres() -> None:
    from fileflow.db.session import check_db_health, get_engine
    from fileflow.models.files import init_schema

    db_health = await check_db_health()
    if db_health["status"] != "ok":
        logger.critical("Database health check failed at startup: %s", db_health)
        raise RuntimeError(f"DB unavailable: {db_health}")

    await init_schema(get_engine())
    logger.info("Database: connected, schema ready")


def build_services(app: FastAPI, store: RecordStore | None = None) -> None:
    """Wire store → notifier → orchestrator → ingestion onto app.state."""
    store = store or get_record_store()
    orchestrator = PipelineOrchestrator(store)
    app.state.record_store = store
    app.state.notifier     = ChangeNotifier(store)
    app.state.ingestion    = IngestionService(orchestrator)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: validate store connectivity, install schema, wire services.
    Shutdown: let in-flight runs finish, close streams, release pools.
    """
    logger.info(
        "Starting Fileflow | env=%s store=%s",
        settings.app_env, settings.record_store_backend,
    )

    if getattr(app.state, "record_store", None) is None:
        if settings.record_store_backend == "postgres":
            await _init_postgres()
        build_services(app)

    logger.info("Auth issuer: %s", settings.auth_issuer or "-")
    logger.info("Compression model: %s | embedding model: %s (%d dims)",
                settings.compression_model, settings.embedding_model, settings.embedding_dimensions)

    yield

    logger.info("Shutting down Fileflow")
    await app.state.ingestion.drain(timeout=_DRAIN_TIMEOUT)
    await app.state.notifier.close_all()
    await app.state.record_store.close()
    if settings.record_store_backend == "postgres":
        from fileflow.db.session import dispose_engine
        await dispose_engine()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Fileflow",
        description=(
            "File ingestion API: text extraction, LLM compression and embedding, "
            "with per-owner live record updates over Server-Sent Events."
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

    allowed_origins = (
        ["*"] if settings.app_env == "development"
        else [
            "https://app.fileflow.io",
        ]
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-File-ID", "Location"],
    )

    if settings.is_production:
        app.add_middleware(
            TrustedHostMiddleware,
            allowed_hosts=["api.fileflow.io", "*.fileflow.io"],
        )

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

    @app.exception_handler(RecordStoreError)
    async def store_exception_handler(request: Request, exc: RecordStoreError):
        """Record store outage on a read/delete path: retryable, so 503."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.error(
            "Record store error | path=%s request_id=%s error=%s",
            request.url.path, request_id, exc,
        )
        body = FileErrors.store_error()
        body.request_id = request_id
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=body.model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions: never expose stack traces."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        body = FileErrors.internal_error(request_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(files_router, prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health & readiness endpoints (no auth: used by load balancer)
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness probe",
        description="Returns 200 if the process is alive. No external checks.",
    )
    async def health() -> dict:
        return {"status": "ok", "service": "fileflow-api"}

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness probe",
        description="Returns 200 only if the record store is reachable.",
    )
    async def readiness(request: Request) -> JSONResponse:
        store: RecordStore | None = getattr(request.app.state, "record_store", None)
        reachable = store is not None and await store.ping()
        if not reachable:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "record_store": "unreachable"},
            )
        ingestion = request.app.state.ingestion
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={
                "status": "ready",
                "record_store": "ok",
                "in_flight": ingestion.in_flight,
                "streams": request.app.state.notifier.active_subscriptions,
            },
        )

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "fileflow.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
