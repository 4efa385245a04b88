"""
FastAPI front end for the CRM PDF generator.

Accepts render requests, applies admission control and enqueues jobs.
The rendering itself happens in the worker process (see worker.py); this
process only talks to the queue. Enqueue-and-wait endpoints hold the
request open until the worker reports a terminal state.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import GeneratorSettings, get_settings, validate_config_on_startup
from .context import ServiceContext
from .errors import (
    AdmissionError,
    JobExecutionFailure,
    JobNotFoundError,
    ValidationError,
)
from .models import HealthResponse, ServiceInfoResponse
from .routes import queue_router, render_router

logger = logging.getLogger(__name__)

SERVICE_NAME = "crm-pdf-generator"


def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )


def create_app(
    context: Optional[ServiceContext] = None,
    settings: Optional[GeneratorSettings] = None,
) -> FastAPI:
    """
    Build the API application.

    Args:
        context: Pre-built, already started context (tests). When omitted the
            context is built from settings at start-up and closed at shutdown.
        settings: Settings used for CORS and for building the context
    """
    if settings is None:
        settings = context.settings if context is not None else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if app.state.context is None:
            _configure_logging()
            validated = validate_config_on_startup(settings)
            owned = ServiceContext.build(validated)
            await owned.start()
            await owned.queue.start_listener()
            app.state.context = owned
            logger.info(f"{SERVICE_NAME} API ready (queue '{validated.queue_name}')")
        try:
            yield
        finally:
            if owned is not None:
                await owned.close()
                app.state.context = None

    app = FastAPI(
        title="CRM PDF Generator",
        version=__version__,
        description="Queue-backed PDF generation for CRM itineraries, invoices and vouchers",
        lifespan=lifespan,
    )
    app.state.context = context

    if settings.cors_origins_list:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins_list,
            allow_credentials=settings.cors_origins_list != ["*"],
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )

    _register_exception_handlers(app)

    app.include_router(render_router)
    app.include_router(queue_router)

    @app.get("/", response_model=ServiceInfoResponse)
    async def root() -> ServiceInfoResponse:
        return ServiceInfoResponse(
            service=SERVICE_NAME,
            version=__version__,
            timestamp=datetime.now(timezone.utc),
        )

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request) -> HealthResponse:
        """
        Health check endpoint for container orchestration.

        Healthy when the queue backend answers; degraded otherwise.
        """
        ctx: Optional[ServiceContext] = request.app.state.context
        connected = False
        outstanding = None
        ceiling = settings.admission_ceiling
        if ctx is not None:
            ceiling = ctx.settings.admission_ceiling
            try:
                outstanding = await ctx.queue.count()
                connected = True
            except Exception as e:
                logger.warning(f"Health check could not reach the queue: {e}")

        return HealthResponse(
            status="healthy" if connected else "degraded",
            timestamp=datetime.now(timezone.utc),
            queue_connected=connected,
            outstanding_jobs=outstanding,
            admission_ceiling=ceiling,
        )

    return app


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationError)
    async def on_validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content=exc.to_dict())

    @app.exception_handler(AdmissionError)
    async def on_admission_error(request: Request, exc: AdmissionError) -> JSONResponse:
        return JSONResponse(
            status_code=429,
            content={
                "error": "Too many PDF jobs in progress",
                "message": str(exc),
                "retryAfter": exc.retry_after,
            },
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(JobNotFoundError)
    async def on_not_found(request: Request, exc: JobNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": str(exc), "jobId": exc.job_id})

    @app.exception_handler(JobExecutionFailure)
    async def on_job_failure(request: Request, exc: JobExecutionFailure) -> JSONResponse:
        logger.error(f"[{exc.job_id}] PDF generation error: {exc.reason}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "PDF generation failed",
                "message": exc.reason,
                "jobId": exc.job_id,
            },
        )


app = create_app()
