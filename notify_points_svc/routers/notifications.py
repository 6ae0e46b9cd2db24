from __future__ import annotations
from fastapi import APIRouter, Depends

from ..core.store import DocumentStore
from ..deps import get_caller_id, get_notification_service, get_store
from ..schemas import SendTestNotificationRequest
from ..services.auth import require_admin, require_caller
from ..services.notifications import NotificationService

router = APIRouter(prefix="/notifications", tags=["notifications"])

@router.post("/{notification_id}/read")
async def mark_read(
    notification_id: str,
    caller_id: str | None = Depends(get_caller_id),
    svc: NotificationService = Depends(get_notification_service),
):
    uid = require_caller(caller_id)
    await svc.mark_notification_read(notification_id, uid)
    return {"success": True}

# Admin diagnostic: native transport only
@router.post("/test")
async def send_test(
    payload: SendTestNotificationRequest,
    caller_id: str | None = Depends(get_caller_id),
    store: DocumentStore = Depends(get_store),
    svc: NotificationService = Depends(get_notification_service),
):
    await require_admin(store, caller_id)
    return await svc.send_test_notification(payload.target_user_id, payload.title, payload.message)
