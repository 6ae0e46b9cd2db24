from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CollectorRegistry
from prometheus_fastapi_instrumentator import Instrumentator

from .routers import credentials
from .core.config import get_settings
from .core.logging_setup import setup_logging
from .core.redis import ping_redis
from .core.nats import nats_close, subscribe_changes
from .deps import get_credential_service
from .services.profile_watch import ProfileChangeCoalescer, handle_user_change

settings = get_settings()
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.log_level)
    # best-effort connect to infra; service still runs if these fail
    if not await ping_redis():
        logger.warning("Redis unreachable at startup")

    coalescer = ProfileChangeCoalescer(get_credential_service().regenerate, settings.profile_debounce_seconds)
    if settings.enable_profile_watch:
        try:
            await subscribe_changes(lambda evt: handle_user_change(evt, coalescer))
        except Exception:
            logger.exception("NATS unavailable; profile changes will not regenerate credentials")
    yield
    await coalescer.close()
    await nats_close()

app = FastAPI(title="credential-svc", lifespan=lifespan)

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

app.include_router(credentials.router)

@app.get("/health")
async def health():
    return {"status": "ok", "service": "credential-svc"}

# own registry per app so both services can be imported into one process
Instrumentator(registry=CollectorRegistry()).instrument(app).expose(app)
