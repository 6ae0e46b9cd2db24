from __future__ import annotations
import logging
import secrets
import redis.asyncio as redis
from .config import get_settings

logger = logging.getLogger(__name__)

_settings = get_settings()
_r: redis.Redis | None = None

def get_redis() -> redis.Redis:
    global _r
    if _r is None:
        _r = redis.from_url(_settings.redis_url, decode_responses=True)
    return _r

async def ping_redis() -> bool:
    try:
        r = get_redis()
        pong = await r.ping()
        return bool(pong)
    except redis.RedisError:
        logger.warning("Redis ping failed", exc_info=True)
        return False

# ---- Per-subject signing secrets ----
class SubjectSecretStore:
    """One random secret per subject, created once and never shared."""

    def __init__(self, r: redis.Redis):
        self._r = r

    @staticmethod
    def _key(subject_id: str) -> str:
        return f"qr:secret:{subject_id}"

    async def ensure(self, subject_id: str) -> str:
        # NX: concurrent first calls agree on a single secret
        await self._r.set(self._key(subject_id), secrets.token_urlsafe(32), nx=True)
        return await self._r.get(self._key(subject_id))

    async def get(self, subject_id: str) -> str | None:
        return await self._r.get(self._key(subject_id))

# ---- Replay guard, scoped to an event ----
async def used_nonce_once(event_id: str, nonce: str, ttl_seconds: int) -> bool:
    """
    Return True if this credential nonce is admitted to the event for the
    first time, False if it was already presented there (replay).
    """
    r = get_redis()
    ok = await r.set(f"qr:nonce:{event_id}:{nonce}", "1", ex=ttl_seconds, nx=True)
    return bool(ok)

# ---- Simple fixed-window rate limit per IP/route ----
async def allow_request(ip: str, route_key: str) -> bool:
    """
    Fixed window: increment a counter key; allow if <= max.
    """
    if not _settings.rl_enabled:
        return True
    r = get_redis()
    key = f"rl:{route_key}:{ip}"
    pipe = r.pipeline()
    pipe.incr(key)
    pipe.expire(key, _settings.rl_window_seconds)
    count, _ = await pipe.execute()
    return int(count) <= _settings.rl_max_reqs
