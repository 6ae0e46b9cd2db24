from __future__ import annotations
from typing import Any, Dict
from fastapi import Header
import time
import httpx
import jwt

from .core.config import get_settings
from .core.errors import Unauthenticated
from .core.push import ExpoPushClient, FcmPushClient
from .core.store import DocumentStore, MemoryDocumentStore
from .services.notifications import NotificationService
from .services.points import PointsLedgerService

settings = get_settings()

_JWKS: Dict[str, Any] | None = None
_JWKS_TS: float = 0.0
_JWKS_TTL: int = 3600

async def fetch_jwks() -> Dict[str, Any]:
    global _JWKS, _JWKS_TS
    now = time.time()
    if _JWKS is None or (now - _JWKS_TS) > _JWKS_TTL:
        async with httpx.AsyncClient() as client:
            r = await client.get(settings.auth_jwks_url, timeout=5.0)
            r.raise_for_status()
            _JWKS = r.json()
            _JWKS_TS = now
    return _JWKS

async def get_signing_key():
    from jwt.algorithms import RSAAlgorithm
    jwks = await fetch_jwks()
    key = jwks["keys"][0]
    return RSAAlgorithm.from_jwk(key)

async def get_caller_id(authorization: str | None = Header(default=None)) -> str | None:
    """None when no bearer token was sent; the services decide whether that is allowed."""
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    token = authorization.split(" ", 1)[1].strip()
    key = await get_signing_key()
    try:
        payload = jwt.decode(
            token, key=key, algorithms=["RS256"], issuer=settings.token_issuer, options={"verify_aud": False},
        )
    except jwt.PyJWTError:
        raise Unauthenticated("Invalid token")
    if not payload.get("sub"):
        raise Unauthenticated("Invalid token payload")
    return str(payload["sub"])

# --- shared collaborators (one per process)

_store: DocumentStore | None = None
_notifications: NotificationService | None = None
_points: PointsLedgerService | None = None

def get_store() -> DocumentStore:
    global _store
    if _store is None:
        opts = dict(
            max_batch_writes=settings.store_max_batch_writes,
            transaction_attempts=settings.store_transaction_attempts,
        )
        if settings.store_backend == "memory":
            _store = MemoryDocumentStore(**opts)
        else:
            from .core.sql_store import SqlDocumentStore
            from .db import async_session_maker
            _store = SqlDocumentStore(async_session_maker, **opts)
    return _store

def get_notification_service() -> NotificationService:
    global _notifications
    if _notifications is None:
        _notifications = NotificationService(
            get_store(),
            FcmPushClient(
                project_id=settings.fcm_project_id,
                access_token=settings.fcm_access_token,
                base_url=settings.fcm_base_url,
                timeout=settings.push_timeout_seconds,
            ),
            ExpoPushClient(url=settings.expo_push_url, timeout=settings.push_timeout_seconds),
            batch_write_limit=settings.batch_write_limit,
            native_multicast_limit=settings.fcm_multicast_limit,
        )
    return _notifications

def get_points_service() -> PointsLedgerService:
    global _points
    if _points is None:
        _points = PointsLedgerService(get_store(), batch_write_limit=settings.batch_write_limit)
    return _points
