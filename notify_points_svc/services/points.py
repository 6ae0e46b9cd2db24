from __future__ import annotations
import logging
import math
from typing import Any, Literal

from ..core.errors import InvalidArgument, NotFound
from ..core.store import SERVER_TIMESTAMP, DocumentStore, Transaction, new_id

logger = logging.getLogger(__name__)

ResetTrigger = Literal["scheduled", "manual"]

def _as_number(value: Any) -> float:
    """Stored balance as a number; anything unreadable counts as 0."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return 0
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return 0
    return int(value) if float(value).is_integer() else value

def _finite_delta(delta: Any) -> float:
    if isinstance(delta, bool):
        raise InvalidArgument("targetUserId and numeric delta are required")
    if isinstance(delta, str):
        try:
            delta = float(delta)
        except ValueError:
            raise InvalidArgument("targetUserId and numeric delta are required")
    if not isinstance(delta, (int, float)) or not math.isfinite(delta):
        raise InvalidArgument("targetUserId and numeric delta are required")
    return int(delta) if float(delta).is_integer() else delta

class PointsLedgerService:
    """Balance mutations on users/{uid}, each paired with a points_history entry."""

    def __init__(self, store: DocumentStore, *, batch_write_limit: int = 450):
        self.store = store
        self.batch_write_limit = batch_write_limit

    async def reset_monthly_points(self, trigger: ResetTrigger = "scheduled", actor_id: str | None = None) -> int:
        limit = max(2, min(self.batch_write_limit, self.store.max_batch_writes))
        users = await self.store.query("users")
        reason = "Automatic monthly reset" if trigger == "scheduled" else "Manual monthly reset"
        source = "scheduled_monthly_reset" if trigger == "scheduled" else "manual_monthly_reset"

        batch = self.store.batch()
        batches = 0
        for snap in users:
            # the balance write and its ledger entry always share a batch
            if len(batch) + 2 > limit:
                await batch.commit()
                batches += 1
                batch = self.store.batch()
            before = _as_number(snap.get("monthly_points"))
            batch.update(snap.path, {"monthly_points": 0, "updatedAt": SERVER_TIMESTAMP})
            batch.set(f"{snap.path}/points_history/{new_id()}", {
                "delta": -before,
                "activity": "monthly_reset",
                "reason": reason,
                "before": {"monthly_points": before},
                "after": {"monthly_points": 0},
                "source": source,
                "adminId": actor_id,
                "createdAt": SERVER_TIMESTAMP,
            })
        if len(batch):
            await batch.commit()
            batches += 1

        await self.store.batch().set("system/leaderboard", {
            "last_monthly_reset": SERVER_TIMESTAMP,
            "last_monthly_reset_count": len(users),
            "last_monthly_reset_trigger": trigger,
            "last_monthly_reset_admin": actor_id,
        }, merge=True).commit()
        logger.info("Monthly reset (%s) completed for %d users in %d batches", trigger, len(users), batches)
        return len(users)

    async def edit_user_points(self, target_user_id: Any, delta: Any, reason: str | None, actor_id: str) -> None:
        if not target_user_id or not isinstance(target_user_id, str):
            raise InvalidArgument("targetUserId and numeric delta are required")
        amount = _finite_delta(delta)
        path = f"users/{target_user_id}"

        async def apply(trx: Transaction) -> None:
            snap = await trx.get(path)
            if snap is None:
                raise NotFound("User not found")
            legacy = snap.get("total_points")
            if legacy is None:
                legacy = snap.get("points")
            total = _as_number(legacy)
            monthly = _as_number(snap.get("monthly_points"))
            new_total = max(0, total + amount)
            new_monthly = max(0, monthly + amount)
            trx.update(path, {
                "total_points": new_total,
                "monthly_points": new_monthly,
                "points": new_total,
                "updatedAt": SERVER_TIMESTAMP,
            })
            trx.set(f"{path}/points_history/{new_id()}", {
                "delta": amount,
                "activity": "admin_edit",
                "reason": reason or "Admin points adjustment",
                "before": {"total_points": total, "monthly_points": monthly},
                "after": {"total_points": new_total, "monthly_points": new_monthly},
                "source": "admin_edit_points",
                "adminId": actor_id,
                "createdAt": SERVER_TIMESTAMP,
            })

        await self.store.run_transaction(apply)
        logger.info("Points for %s adjusted by %s (admin %s)", target_user_id, amount, actor_id)
