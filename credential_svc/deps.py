from __future__ import annotations
from typing import Any, Dict
from datetime import timedelta
from fastapi import Header, HTTPException, status
import time
import httpx
import jwt

from .core.config import get_settings
from .core.redis import SubjectSecretStore, get_redis
from .services.credentials import CredentialService

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

async def get_claims(authorization: str | None = Header(default=None)) -> Dict[str, Any]:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    token = authorization.split(" ", 1)[1].strip()
    key = await get_signing_key()
    try:
        payload = jwt.decode(
            token, key=key, algorithms=["RS256"], issuer=settings.token_issuer, options={"verify_aud": False},
        )
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    if not payload.get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return payload

_service: CredentialService | None = None

def get_secret_store() -> SubjectSecretStore:
    return SubjectSecretStore(get_redis())

def get_credential_service() -> CredentialService:
    global _service
    if _service is None:
        _service = CredentialService(
            get_redis(),
            get_secret_store(),
            ttl=timedelta(hours=settings.credential_ttl_hours),
            history_limit=settings.credential_history_limit,
        )
    return _service
