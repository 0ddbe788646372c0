import logging
import os
from contextlib import asynccontextmanager
from datetime import timedelta
from logging.handlers import RotatingFileHandler
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings

# ─── Logging setup (file + console) ───
_LOG_DIR = Path(__file__).resolve().parent.parent / "logs"
_LOG_DIR.mkdir(exist_ok=True)

_log_level = getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO)

logging.basicConfig(
    level=_log_level,
    format="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[
        logging.StreamHandler(),
        RotatingFileHandler(
            _LOG_DIR / "tripcommit.log",
            maxBytes=10 * 1024 * 1024,  # 10 MB
            backupCount=5,
            encoding="utf-8",
        ),
    ],
)

# Quiet noisy libraries
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

from app.routers import orders, reservations, webhooks

logger = logging.getLogger(__name__)


async def sweep_workflows() -> None:
    """Abandon idle reservations/changes, expire lapsed refund quotes, drop finished objects."""
    from app.dependencies import cancel_flow, change_flow, reservation_coordinator
    from app.services.booking.types import utcnow

    horizon = utcnow() - timedelta(minutes=settings.reservation_idle_timeout_minutes)
    abandoned = reservation_coordinator.sweep_idle(horizon) + change_flow.sweep_idle(horizon)
    expired = cancel_flow.sweep_expired()
    dropped = sum(host.sweep_finished(horizon) for host in (reservation_coordinator, change_flow, cancel_flow))
    if abandoned or expired or dropped:
        logger.info(f"Workflow sweep: {abandoned} abandoned, {expired} refund quotes expired, {dropped} archived dropped")


@asynccontextmanager
async def lifespan(app: FastAPI):
    from app.services.duffel_client import duffel_client

    if duffel_client.is_mock:
        logger.warning("DUFFEL_ACCESS_TOKEN not set, using deterministic mock offers")

    # Startup: launch background scheduler
    scheduler = None
    if settings.scheduler_enabled:
        try:
            from apscheduler.schedulers.asyncio import AsyncIOScheduler
            from apscheduler.triggers.interval import IntervalTrigger

            scheduler = AsyncIOScheduler()
            scheduler.add_job(
                sweep_workflows,
                IntervalTrigger(minutes=settings.reservation_sweep_interval_minutes),
                id="workflow_sweep",
            )
            scheduler.start()
            logger.info("Background scheduler started")
        except Exception as e:
            logger.error(f"Scheduler failed to start: {e}")

    yield

    # Shutdown
    if scheduler:
        scheduler.shutdown(wait=False)
        logger.info("Background scheduler stopped")

    from app.dependencies import cancel_flow, change_flow, reservation_coordinator

    for host in (reservation_coordinator, change_flow, cancel_flow):
        await host.shutdown()
    await duffel_client.close()


app = FastAPI(
    title="TripCommit",
    description="Reservation lifecycle coordinator: price, commit, change and cancel trips",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(reservations.router, prefix="/api/reservations", tags=["reservations"])
app.include_router(orders.router, prefix="/api", tags=["orders", "changes", "cancellations"])
app.include_router(webhooks.router, prefix="/api", tags=["webhooks"])


@app.get("/api/health")
async def health_check():
    return {"status": "ok", "service": "tripcommit"}
