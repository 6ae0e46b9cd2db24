from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CollectorRegistry
from prometheus_fastapi_instrumentator import Instrumentator
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from .routers import notifications, points, leaderboard
from .core.config import get_settings
from .core.errors import ServiceError, service_error_handler
from .core.logging_setup import setup_logging
from .core.nats import nats_close, publish_change, subscribe_changes
from .deps import get_notification_service, get_points_service, get_store
from .services.triggers import build_trigger_router

settings = get_settings()
logger = logging.getLogger(__name__)
scheduler = AsyncIOScheduler()

async def sweep_scheduled_notifications():
    try:
        await get_notification_service().process_scheduled_notifications()
    except Exception:
        logger.exception("Error processing scheduled notifications")

async def scheduled_monthly_reset():
    try:
        await get_points_service().reset_monthly_points("scheduled")
    except Exception:
        logger.exception("Scheduled monthly reset failed")

@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.log_level)
    store = get_store()
    if settings.store_backend != "memory":
        from .db import init_db
        await init_db()

    triggers = build_trigger_router(get_notification_service())
    if settings.trigger_transport == "nats":
        # committed changes go to the bus; one replica in the queue group handles each
        store.add_listener(publish_change)
        try:
            await subscribe_changes(triggers.handle)
        except Exception:
            logger.exception("NATS unavailable; change events will not be handled by this replica")
    else:
        store.add_listener(triggers.handle)

    if settings.enable_scheduler:
        scheduler.add_job(sweep_scheduled_notifications, "interval", minutes=settings.scheduled_sweep_minutes)
        scheduler.add_job(
            scheduled_monthly_reset,
            CronTrigger.from_crontab(settings.monthly_reset_cron, timezone=settings.monthly_reset_timezone),
        )
        scheduler.start()

    yield

    if scheduler.running:
        scheduler.shutdown(wait=False)
    await nats_close()

app = FastAPI(title="notify-points-svc", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_exception_handler(ServiceError, service_error_handler)

app.include_router(notifications.router)
app.include_router(points.router)
app.include_router(leaderboard.router)

@app.get("/health")
async def health():
    return {"status": "ok", "service": "notify-points-svc"}

# own registry per app so both services can be imported into one process
Instrumentator(registry=CollectorRegistry()).instrument(app).expose(app)
