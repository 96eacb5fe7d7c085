# rule_scheduler/main.py
"""
Rule Scheduler Service - Main Application
Pattern-driven rule generation, predictive scheduling and resource optimization
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Type

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
import structlog

from rule_scheduler.api.v1.router import api_router
from rule_scheduler.core.config import Settings, get_settings
from rule_scheduler.core.database import init_database, close_database, get_database_health
from rule_scheduler.core.exceptions import (
    ConcurrentModificationException, FeatureDisabledException, InvalidCronExpressionException,
    PredictionNotFoundException, RuleNotFoundException, SchedulerServiceException,
    StoreUnavailableException
)
from rule_scheduler.core.logging import setup_logging
from rule_scheduler.core.monitoring import render_metrics
from rule_scheduler.services.conflict_resolver import ConflictResolver
from rule_scheduler.services.inference import create_inference_backend
from rule_scheduler.services.pipeline import SchedulingPipeline
from rule_scheduler.services.predictive_scheduler import PredictiveSchedulingEngine
from rule_scheduler.services.resource_monitor import PsutilResourceSampler
from rule_scheduler.services.resource_optimizer import ResourceOptimizationEngine
from rule_scheduler.services.rule_generation import RuleGenerationEngine
from rule_scheduler.services.store import SchedulerStore
from rule_scheduler.services.task_materializer import StoreTaskMaterializer

logger = structlog.get_logger(__name__)

# Checked in order, so subclasses come before their parents
EXCEPTION_STATUS_CODES: Dict[Type[SchedulerServiceException], int] = {
    FeatureDisabledException: 409,
    ConcurrentModificationException: 409,
    RuleNotFoundException: 404,
    PredictionNotFoundException: 404,
    InvalidCronExpressionException: 422,
    StoreUnavailableException: 503,
}


def status_code_for(exc: SchedulerServiceException) -> int:
    for exc_type, status_code in EXCEPTION_STATUS_CODES.items():
        if isinstance(exc, exc_type):
            return status_code
    return 500


def wire_services(app: FastAPI, store: SchedulerStore, settings: Settings, inference=None,
                  sampler=None, materializer=None):
    """Build the engines around a store and attach them to ``app.state``"""
    resolver = ConflictResolver(settings.conflict_resolution_strategy)

    app.state.settings = settings
    app.state.store = store
    app.state.inference = inference or create_inference_backend(settings)
    app.state.rule_engine = RuleGenerationEngine(store, settings, resolver)
    app.state.predictive_engine = PredictiveSchedulingEngine(
        store, settings,
        inference=app.state.inference,
        materializer=materializer or StoreTaskMaterializer(store)
    )
    app.state.optimization_engine = ResourceOptimizationEngine(
        store, settings,
        sampler=sampler or PsutilResourceSampler(settings),
        resolver=resolver
    )
    app.state.pipeline = SchedulingPipeline(
        app.state.rule_engine, app.state.predictive_engine, app.state.optimization_engine, settings
    )


async def _shutdown(app: FastAPI) -> List[str]:
    """Close collaborators in reverse start order; returns the failures"""
    steps = [
        ("inference backend", app.state.inference.close),
        ("database", close_database),
    ]
    errors = []
    for name, close in steps:
        try:
            await close()
        except Exception as e:
            errors.append(f"{name}: {e}")
    return errors


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    setup_logging(settings)
    logger.info("Starting Rule Scheduler Service", environment=settings.environment)
    app.state.startup_time = time.time()

    session_maker = await init_database(settings)
    wire_services(app, SchedulerStore(session_maker), settings)
    logger.info(
        "Scheduling engines ready",
        llm_inference=settings.llm_enabled,
        predictive_scheduling=settings.predictive_scheduling_enabled,
        auto_optimization=settings.auto_optimization_enabled,
        conflict_strategy=settings.conflict_resolution_strategy
    )

    try:
        yield
    finally:
        started = time.time()
        errors = await _shutdown(app)
        elapsed = f"{time.time() - started:.2f}"
        if errors:
            logger.warning("Shutdown finished with errors", shutdown_duration_seconds=elapsed, errors=errors)
        else:
            logger.info("Rule Scheduler Service stopped", shutdown_duration_seconds=elapsed)


def _error_response(request: Request, status_code: int, message: str, error_type: str,
                    details: Optional[Dict[str, Any]] = None) -> JSONResponse:
    request_id = getattr(request.state, "request_id", "unknown")
    error: Dict[str, Any] = {
        "message": message,
        "type": error_type,
        "request_id": request_id,
        "timestamp": time.time(),
    }
    if details is not None:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"error": error},
                        headers={"X-Request-ID": request_id})


def create_app(settings: Optional[Settings] = None, use_lifespan: bool = True) -> FastAPI:
    """Create the FastAPI application; tests pass ``use_lifespan=False`` and wire services themselves"""
    settings = settings or get_settings()
    show_docs = settings.debug

    app = FastAPI(
        title=settings.app_name,
        description="Pattern-driven scheduling rules, predictive scheduling and resource optimization",
        version=settings.version,
        lifespan=lifespan if use_lifespan else None,
        docs_url="/docs" if show_docs else None,
        redoc_url="/redoc" if show_docs else None,
        openapi_url="/openapi.json" if show_docs else None
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    @app.middleware("http")
    async def request_logging(request: Request, call_next):
        request.state.request_id = request_id = uuid.uuid4().hex[:8]
        started = time.perf_counter()

        response = await call_next(request)

        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{elapsed_ms / 1000:.3f}s"
        log = logger.info if response.status_code < 400 else logger.warning
        log(
            "HTTP request",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            response_time_ms=round(elapsed_ms, 2)
        )
        return response

    @app.exception_handler(SchedulerServiceException)
    async def scheduler_exception_handler(request: Request, exc: SchedulerServiceException):
        status_code = status_code_for(exc)
        log = logger.error if status_code >= 500 else logger.warning
        log(
            "Scheduler exception",
            request_id=getattr(request.state, "request_id", "unknown"),
            status_code=status_code,
            error=exc.message,
            error_type=type(exc).__name__,
            path=request.url.path
        )
        return _error_response(request, status_code, exc.message, type(exc).__name__, exc.details)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled exception",
            request_id=getattr(request.state, "request_id", "unknown"),
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            exc_info=True
        )
        message = str(exc) if settings.debug else "An unexpected error occurred"
        return _error_response(request, 500, message, "internal_server_error")

    app.include_router(api_router, prefix="/api/v1")

    @app.get("/", summary="Service Information")
    async def root():
        startup_time = getattr(app.state, "startup_time", None)
        return {
            "service": settings.app_name,
            "version": settings.version,
            "environment": settings.environment,
            "uptime_seconds": time.time() - startup_time if startup_time else None,
            "endpoints": {
                "health": "/health",
                "metrics": "/metrics",
                "api_base": "/api/v1/scheduling"
            }
        }

    @app.get("/health", summary="Health Check")
    async def health_check():
        """Liveness plus database connectivity; 503 when the database is down"""
        try:
            database = await get_database_health()
        except Exception as e:
            logger.warning("Database health check failed", error=str(e))
            database = {"status": "unhealthy", "error": str(e)}

        healthy = database.get("status") == "healthy"
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "unhealthy",
                "version": settings.version,
                "checked_at": time.time(),
                "components": {"database": database}
            }
        )

    @app.get("/metrics", summary="Prometheus Metrics", response_class=PlainTextResponse)
    async def metrics():
        if not settings.enable_metrics:
            return JSONResponse(status_code=404, content={"error": "Metrics are disabled"})
        payload, content_type = render_metrics()
        return Response(content=payload, media_type=content_type)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "rule_scheduler.main:app",
        host=_settings.host,
        port=_settings.port,
        workers=_settings.max_workers,
        reload=_settings.debug
    )
