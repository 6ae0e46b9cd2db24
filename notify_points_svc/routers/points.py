from __future__ import annotations
from fastapi import APIRouter, Depends

from ..core.store import DocumentStore
from ..deps import get_caller_id, get_points_service, get_store
from ..schemas import EditPointsRequest
from ..services.auth import require_admin
from ..services.points import PointsLedgerService

router = APIRouter(prefix="/points", tags=["points"])

@router.post("/monthly-reset")
async def manual_monthly_reset(
    caller_id: str | None = Depends(get_caller_id),
    store: DocumentStore = Depends(get_store),
    svc: PointsLedgerService = Depends(get_points_service),
):
    admin_id = await require_admin(store, caller_id)
    count = await svc.reset_monthly_points("manual", admin_id)
    return {"success": True, "count": count}

@router.post("/edit")
async def edit_points(
    payload: EditPointsRequest,
    caller_id: str | None = Depends(get_caller_id),
    store: DocumentStore = Depends(get_store),
    svc: PointsLedgerService = Depends(get_points_service),
):
    admin_id = await require_admin(store, caller_id)
    await svc.edit_user_points(payload.target_user_id, payload.delta, payload.reason, admin_id)
    return {"success": True}
