"""
FastAPI backend for the workflow execution engine.

Wires the job queue, graph walker, trigger dispatcher and background
services through dependency injection.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.health import get_health_status, set_startup_time
from core.logging import configure_logging, get_logger
from routers import executions, forms, jobs, public, webhook, workflow
from routers.deps import error_response
from services.execution.errors import EngineError

# Initialize settings and logging
settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)

# Suppress noisy loggers
logging.getLogger("apscheduler").setLevel(logging.WARNING)
logging.getLogger("apscheduler.scheduler").setLevel(logging.WARNING)
logging.getLogger("apscheduler.executors").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    app_settings = container.settings()
    logger.info("Starting workflow engine")
    set_startup_time()

    # Start services
    await container.database().startup()
    await container.sweeper().start()
    await container.schedule_service().start()

    worker = container.worker()
    if app_settings.worker_enabled:
        await worker.start()

    logger.info("Services started successfully", worker_enabled=app_settings.worker_enabled)
    yield

    # Shutdown in reverse order
    if worker.is_running:
        await worker.stop()
    container.schedule_service().shutdown()
    await container.sweeper().stop()
    await container.database().shutdown()
    logger.info("Services shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Workflow Execution Engine",
    version="1.0.0",
    description="Durable job queue, graph walker and trigger dispatch for workflow automation",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if exc.status_code >= 500:
        logger.error("Engine error", path=request.url.path, code=exc.code, error=exc.message)
    return error_response(exc)


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("Unhandled exception", path=request.url.path,
                         error_type=type(e).__name__, error=str(e), exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": "Internal server error",
                    "code": "INTERNAL_ERROR",
                }
            )


app.add_middleware(CatchAllExceptionsMiddleware)

# Add CORS middleware (must be AFTER exception middleware)
logger.info("Configuring CORS middleware",
            origins_count=len(settings.cors_origins),
            origins=settings.cors_origins)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(workflow.router)
app.include_router(public.router)
app.include_router(jobs.router)
app.include_router(executions.router)
app.include_router(forms.router)
app.include_router(webhook.router)


@app.get("/health")
async def health_check():
    """Detailed health check."""
    health = await get_health_status(
        container.database(),
        container.job_queue(),
        container.worker(),
        container.settings(),
    )
    health["service"] = "workflow-engine"
    health["version"] = app.version
    return health


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting workflow engine",
                host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        reload_dirs=["."] if settings.debug else None,
        reload_excludes=["*.pyc", "__pycache__", "*.log", "*.db"] if settings.debug else None,
    )
