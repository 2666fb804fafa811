"""Health check utilities for service monitoring.

Provides uptime tracking and the engine health status for the /health endpoint.
"""
import time
from typing import Dict, Any, TYPE_CHECKING

if TYPE_CHECKING:
    from core.config import Settings
    from core.database import Database
    from services.execution.queue import JobQueue
    from services.execution.worker import WorkflowWorker

# Module-level startup time tracking
_startup_time: float = 0.0


def set_startup_time() -> None:
    """Record the application startup time. Call once during lifespan startup."""
    global _startup_time
    _startup_time = time.time()


def get_uptime() -> float:
    """Get uptime in seconds since startup."""
    return time.time() - _startup_time if _startup_time else 0.0


async def get_health_status(
    database: "Database",
    job_queue: "JobQueue",
    worker: "WorkflowWorker",
    settings: "Settings"
) -> Dict[str, Any]:
    """Get health status for /health endpoint.

    Returns:
        Dict containing status, uptime, queue depth and worker state.
    """
    db_healthy = await database.ping()
    queue = await job_queue.queue_status() if db_healthy else {}

    return {
        "status": "healthy" if db_healthy else "degraded",
        "uptime_seconds": round(get_uptime(), 1),
        "checks": {
            "database": db_healthy,
        },
        "queue": queue,
        "worker": {
            "enabled": settings.worker_enabled,
            "running": worker.is_running,
            "concurrency": settings.worker_concurrency,
            "poll_interval": settings.worker_poll_interval,
        },
    }
