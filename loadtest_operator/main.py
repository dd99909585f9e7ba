"""
Load-Test Run Controller - Main Application Entry Point

FastAPI application hosting the reconcile controller and its inspection API.
"""

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import logging
import uvicorn
from fastapi import FastAPI

from loadtest_operator.api.routes import runs
from loadtest_operator.config import settings
from loadtest_operator.core.log_context import ReconcileContextFilter
from loadtest_operator.core.runtime import runtime

# Configure logging
# Use uvicorn's colored "LEVEL:" prefix for all loggers so controller output
# lines up with the server's own. The context filter supplies `run_ref`.
from uvicorn.logging import DefaultFormatter

console_handler = logging.StreamHandler()
console_handler.setFormatter(DefaultFormatter(fmt=settings.LOG_FORMAT, use_colors=True))
console_handler.addFilter(ReconcileContextFilter())

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    handlers=[console_handler],
)

# Worker probes and cloud calls would otherwise log every request.
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Starting controller (max concurrent reconciles: %d)",
        settings.MAX_CONCURRENT_RECONCILES,
    )
    await runtime.start()
    try:
        yield
    finally:
        await runtime.stop()


app = FastAPI(
    title="Load-Test Run Controller",
    description="Drives distributed load-test runs from creation to completion",
    lifespan=lifespan,
)

app.include_router(runs.router, prefix="/api", tags=["runs"])


@app.get("/health")
async def health() -> dict[str, Any]:
    return {
        "status": "ok" if runtime.controller.running else "stopped",
        "queue_depth": len(runtime.controller.queue),
        "timestamp": datetime.now(UTC).isoformat(),
    }


if __name__ == "__main__":
    uvicorn.run(
        "loadtest_operator.main:app",
        host=settings.APP_HOST,
        port=settings.APP_PORT,
        reload=settings.APP_RELOAD,
    )
