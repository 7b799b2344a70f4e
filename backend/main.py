"""FastAPI application entry point."""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from config import settings
from database import init_db, close_db


class JSONFormatter(logging.Formatter):
    """JSON log formatter for log aggregation platforms."""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def build_log_handler() -> logging.Handler:
    """JSON lines when LOG_FORMAT_JSON is set, plain text otherwise."""
    handler = logging.StreamHandler()
    if settings.log_format_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        ))
    return handler


# Configure logging
log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
handler = build_log_handler()

logging.basicConfig(level=log_level, handlers=[handler])
# httpx logs every request line at INFO, including the backend URLs
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    logger.info("Starting Job Orchestrator...")

    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    from services.engine import get_orchestrator

    orchestrator = get_orchestrator()

    # The bus is needed to consume events and to publish status changes
    if settings.enable_consumer or settings.enable_scheduler:
        try:
            await orchestrator.start(consume=settings.enable_consumer)
        except Exception as e:
            logger.warning(f"Message bus not available, status events will only be logged: {e}")
    else:
        logger.info("Consumer disabled via ENABLE_CONSUMER=false")

    # Use ENABLE_SCHEDULER=true on exactly one worker per deployment
    if settings.enable_scheduler:
        from jobs.scheduler import start_scheduler
        await start_scheduler()
    else:
        logger.info("Scheduler disabled via ENABLE_SCHEDULER=false")

    logger.info("Startup complete")
    yield

    logger.info("Shutting down...")
    if settings.enable_scheduler:
        from jobs.scheduler import stop_scheduler
        await stop_scheduler()
    try:
        await orchestrator.stop()
    except Exception as e:
        logger.warning(f"Orchestrator shutdown error: {e}")
    await close_db()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Job Orchestrator",
    description="Launches requested jobs on automation backends and tracks them to completion",
    version="1.0.0",
    lifespan=lifespan,
)


# Health check endpoint
@app.get("/api/health")
async def health_check():
    """Health check: the service is up and its store answers."""
    from database import async_session_maker
    from sqlalchemy import text

    result = {"status": "healthy", "service": "job-orchestrator"}

    try:
        async with async_session_maker() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Health check database probe failed: {e}")
        result["status"] = "unhealthy"
        result["note"] = "Database unreachable"
        return JSONResponse(status_code=503, content=result)

    result["scheduler"] = settings.enable_scheduler
    result["consumer"] = settings.enable_consumer
    return result


# API info endpoint
@app.get("/api/info")
async def api_info():
    """API information endpoint."""
    return {
        "name": "Job Orchestrator API",
        "version": "1.0.0",
        "backends": ["awx", "oo"],
        "features": [
            "Idempotent request ingestion",
            "Launch retry with exponential backoff",
            "Status polling with timeout",
            "Status change events",
        ],
    }


# Include API routers
from api import job_executions, system

app.include_router(job_executions.router, prefix="/api/job-executions", tags=["Job Executions"])
app.include_router(system.router, prefix="/api/system", tags=["System"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
