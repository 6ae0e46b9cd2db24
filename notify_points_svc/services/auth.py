from __future__ import annotations
from ..core.errors import PermissionDenied, Unauthenticated
from ..core.store import DocumentStore

def is_admin(user: dict | None) -> bool:
    if not user:
        return False
    return bool(user.get("isAdmin")) or user.get("role") == "admin"

def require_caller(caller_id: str | None) -> str:
    if not caller_id:
        raise Unauthenticated("User must be authenticated")
    return caller_id

async def require_admin(store: DocumentStore, caller_id: str | None) -> str:
    """Gate for privileged entry points; runs before any target data is touched."""
    uid = require_caller(caller_id)
    caller = await store.get(f"users/{uid}")
    if caller is None or not is_admin(caller.data):
        raise PermissionDenied("Admin privileges required")
    return uid
