import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import cron, health, orders
from .api.dependencies import get_reconciler, get_scheduler
from .config import settings
from .db import get_repository
from .logging_config import setup_logging
from .middleware.logging_middleware import RequestLoggingMiddleware
from .runtime import PeriodicJob, PeriodicRunner

setup_logging()
logger = logging.getLogger(__name__)

_runner: Optional[PeriodicRunner] = None


async def _sweep_job() -> None:
    await get_scheduler().sweep()


async def _reconcile_job() -> None:
    await get_reconciler().reconcile()


def build_runner() -> PeriodicRunner:
    runner = PeriodicRunner()
    if settings.signer_relay_url:
        runner.register(PeriodicJob("sweep", settings.scheduler_interval_seconds, _sweep_job))
    else:
        logger.warning("SIGNER_RELAY_URL not set; in-process sweeps disabled")
    runner.register(PeriodicJob("reconcile", settings.reconcile_interval_seconds, _reconcile_job))
    return runner


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the in-process runner when enabled; close storage on shutdown."""
    global _runner
    logger.info("Starting DCA engine")
    if settings.scheduler_enabled:
        _runner = build_runner()
        await _runner.start()

    yield

    logger.info("Shutting down DCA engine")
    if _runner is not None:
        await _runner.stop()
        _runner = None
    await get_repository().close()


# Create FastAPI app
app = FastAPI(
    title="DCA Engine",
    description="Recurring-order execution engine",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(orders.router)
app.include_router(cron.router)


@app.get("/")
async def root():
    """Root endpoint with basic info"""
    return {
        "name": "DCA Engine",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/healthz",
        "runner": _runner.status() if _runner is not None else None,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "dca_engine.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
