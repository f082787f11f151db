"""FastAPI application entry point."""

import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

from fastapi import FastAPI, HTTPException
from fastapi.staticfiles import StaticFiles
from fastapi.responses import FileResponse

from config import settings


class JSONFormatter(logging.Formatter):
    """JSON log formatter for Railway compatibility."""

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


# Configure logging - use JSON in production (Railway), plain text locally
log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
handler = logging.StreamHandler()

if os.environ.get("RAILWAY_ENVIRONMENT"):
    handler.setFormatter(JSONFormatter())
else:
    handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    ))

logging.basicConfig(level=log_level, handlers=[handler])
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    logger.info("Starting Productive Exporter...")

    # Use ENABLE_JOB_SWEEPER=false to keep finished jobs around indefinitely
    if settings.enable_job_sweeper:
        try:
            from jobs.scheduler import start_scheduler
            await start_scheduler()
            logger.info("Scheduler started")
        except Exception as e:
            logger.warning(f"Scheduler not started: {e}")
    else:
        logger.info("Job sweeper disabled via ENABLE_JOB_SWEEPER=false")

    logger.info("Startup complete")
    yield

    logger.info("Shutting down...")
    if settings.enable_job_sweeper:
        from jobs.scheduler import stop_scheduler
        await stop_scheduler()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Productive Exporter",
    description="Export Productive tasks to CSV and replicate them into Linear",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/api/health")
async def health_check():
    """Health check endpoint with job registry counts."""
    from services.job_registry import job_registry

    jobs = job_registry.list_all()
    counts = {}
    for job in jobs:
        counts[job.status] = counts.get(job.status, 0) + 1

    return {"status": "healthy", "service": "productive-exporter", "jobs": counts}


@app.get("/api/info")
async def api_info():
    """API information endpoint."""
    return {
        "name": "Productive Exporter API",
        "version": "1.0.0",
        "features": [
            "Productive task export to CSV",
            "Live progress stream",
            "Linear issue replication",
            "Attachment migration",
        ],
    }


# Include API routers
from api import export, linear

app.include_router(export.router, prefix="/api/export", tags=["Export"])
app.include_router(linear.router, prefix="/api/linear", tags=["Linear"])


# Serve React frontend (static files) - only if frontend is built
static_path = Path(__file__).parent / "static"
assets_path = static_path / "assets"
index_path = static_path / "index.html"

if assets_path.exists():
    app.mount("/assets", StaticFiles(directory=assets_path), name="assets")

    @app.get("/{full_path:path}")
    async def serve_frontend(full_path: str):
        """Serve React frontend for all non-API routes."""
        if full_path.startswith("api/"):
            raise HTTPException(status_code=404, detail="Not found")
        if index_path.exists():
            return FileResponse(index_path)
        return {"message": "Frontend not built yet"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
