from __future__ import annotations
from fastapi import APIRouter, Depends

from ..core.store import DocumentStore
from ..deps import get_caller_id, get_notification_service, get_store
from ..schemas import CongratulateRequest
from ..services.auth import require_admin
from ..services.notifications import NotificationService

router = APIRouter(prefix="/leaderboard", tags=["leaderboard"])

@router.post("/congratulate")
async def congratulate_top_users(
    payload: CongratulateRequest | None = None,
    caller_id: str | None = Depends(get_caller_id),
    store: DocumentStore = Depends(get_store),
    svc: NotificationService = Depends(get_notification_service),
):
    admin_id = await require_admin(store, caller_id)
    limit = payload.limit if payload else None
    return await svc.congratulate_top_monthly_users(admin_id, limit)
