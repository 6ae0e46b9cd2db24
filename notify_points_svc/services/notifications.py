from __future__ import annotations
import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Iterable

from ..core.errors import InvalidArgument, NotFound
from ..core.push import UNREGISTERED_CODES, PushClient, SendResponse
from ..core.store import (
    ArrayUnion, DELETE_FIELD, SERVER_TIMESTAMP, DocumentNotFound, DocumentStore, new_id, utcnow,
)
from ..schemas import FanOutResult, PushTargets, UserNotificationPayload
from .auth import is_admin

logger = logging.getLogger(__name__)

NO_TOKENS_ERROR = "No valid push tokens found"

def _chunks(items: list, size: int) -> Iterable[list]:
    for i in range(0, len(items), size):
        yield items[i:i + size]

class NotificationService:
    """
    Push fan-out and per-user notification documents.

    Delivery is accounted per recipient: a user counts as delivered when any of
    their tokens succeeded on any transport, otherwise as failed. Users without
    tokens are skipped and count in neither.
    """

    def __init__(
        self,
        store: DocumentStore,
        native: PushClient,
        bridge: PushClient,
        *,
        batch_write_limit: int = 450,
        native_multicast_limit: int = 500,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.native = native
        self.bridge = bridge
        self.batch_write_limit = batch_write_limit
        self.native_multicast_limit = native_multicast_limit
        self.clock = clock

    @property
    def _batch_limit(self) -> int:
        return max(1, min(self.batch_write_limit, self.store.max_batch_writes))

    async def resolve_push_targets(self, user_ids: Iterable[str]) -> PushTargets:
        targets = PushTargets()
        for uid in dict.fromkeys(user_ids):
            try:
                snap = await self.store.get(f"users/{uid}")
            except Exception:
                logger.warning("Error reading user %s for push tokens", uid, exc_info=True)
                continue
            if snap is None:
                continue
            fcm, expo = snap.get("fcmToken"), snap.get("expoPushToken")
            if isinstance(fcm, str) and fcm:
                targets.native.append((fcm, uid))
            if isinstance(expo, str) and expo:
                targets.bridge.append((expo, uid))
        return targets

    async def fan_out(self, notification_id: str, notification: dict) -> FanOutResult:
        path = f"notifications/{notification_id}"
        target_users = list(notification.get("targetUsers") or [])

        try:
            targets = await self.resolve_push_targets(target_users)
        except Exception as e:
            logger.exception("Error resolving push targets for notification %s", notification_id)
            await self._record(path, sent_to=[], delivered=0, failed=0, error=str(e))
            return FanOutResult(error=str(e))

        if not targets.recipients:
            logger.info("No valid push tokens found for notification %s", notification_id)
            await self._record(path, sent_to=[], delivered=0, failed=0, error=NO_TOKENS_ERROR)
            return FanOutResult(error=NO_TOKENS_ERROR)

        title = notification.get("title") or ""
        body = notification.get("message") or ""
        data = {
            "notificationId": notification_id,
            "type": notification.get("type") or "general",
            "priority": notification.get("priority") or "normal",
        }
        (native_res, native_errs), (bridge_res, bridge_errs) = await asyncio.gather(
            self._send(self.native, targets.fcm_tokens, self.native_multicast_limit, "native", title, body, data),
            self._send(self.bridge, targets.expo_tokens, None, "bridge", title, body, data),
        )

        delivered_users: set[str] = set()
        for responses, owners in ((native_res, targets.owners("native")), (bridge_res, targets.owners("bridge"))):
            for r in responses:
                if r.success:
                    delivered_users.update(owners.get(r.token, []))
        delivered = len(delivered_users)
        failed = len(targets.recipients) - delivered
        errors = native_errs + bridge_errs
        error = "; ".join(errors) if errors else None
        logger.info("Notification %s: delivered=%d failed=%d", notification_id, delivered, failed)

        await self._record(path, sent_to=target_users, delivered=delivered, failed=failed, error=error)

        dead = [r.token for r in native_res if not r.success and r.error_code in UNREGISTERED_CODES]
        if dead:
            await self._prune_native_tokens(dead, targets)
        return FanOutResult(delivered=delivered, failed=failed, error=error, pruned_tokens=dead)

    async def _send(
        self,
        client: PushClient,
        tokens: list[str],
        chunk_size: int | None,
        name: str,
        title: str,
        body: str,
        data: dict[str, str],
    ) -> tuple[list[SendResponse], list[str]]:
        """Send on one transport; exceptions become failed responses so the other transport is unaffected."""
        if not tokens:
            return [], []
        responses: list[SendResponse] = []
        errors: list[str] = []
        for chunk in _chunks(tokens, chunk_size or len(tokens)):
            try:
                result = await client.send_multicast(chunk, title=title, body=body, data=data)
            except Exception as e:
                logger.exception("%s push transport failed for %d tokens", name, len(chunk))
                errors.append(f"{name} transport: {e}")
                responses.extend(SendResponse(t, False, "transport-error") for t in chunk)
                continue
            logger.info("%s sent. Success: %d, Failed: %d", name, result.success_count, result.failure_count)
            responses.extend(result.responses)
        return responses, errors

    async def _record(self, path: str, *, sent_to: list, delivered: int, failed: int, error: str | None) -> None:
        fields: dict[str, Any] = {
            "sentTo": sent_to,
            "deliveredTo": delivered,
            "failedDeliveries": failed,
            "lastUpdated": SERVER_TIMESTAMP,
        }
        if error:
            fields["error"] = error
        else:
            fields["sentAt"] = SERVER_TIMESTAMP
        await self.store.batch().update(path, fields).commit()

    async def _prune_native_tokens(self, dead_tokens: list[str], targets: PushTargets) -> None:
        owners = targets.owners("native")
        user_ids = list(dict.fromkeys(uid for t in dead_tokens for uid in owners.get(t, [])))
        for chunk in _chunks(user_ids, self._batch_limit):
            batch = self.store.batch()
            for uid in chunk:
                batch.update(f"users/{uid}", {"fcmToken": DELETE_FIELD, "lastTokenUpdate": SERVER_TIMESTAMP})
            await batch.commit()
        logger.info("Removed invalid FCM tokens for users %s", user_ids)

    async def process_scheduled_notifications(self) -> int:
        """Flip due scheduled notifications to sent; the update trigger does the delivery."""
        due = await self.store.query(
            "notifications",
            [("status", "==", "scheduled"), ("scheduledFor", "<=", self.clock())],
        )
        if not due:
            logger.info("No scheduled notifications to process")
            return 0
        for chunk in _chunks(due, self._batch_limit):
            batch = self.store.batch()
            for snap in chunk:
                batch.update(snap.path, {"status": "sent", "processedAt": SERVER_TIMESTAMP})
            await batch.commit()
        logger.info("Processed %d scheduled notifications", len(due))
        return len(due)

    async def non_admin_user_ids(self) -> list[str]:
        return [s.id for s in await self.store.query("users") if not is_admin(s.data)]

    async def fan_out_user_notifications(self, target_user_ids: list[str], payload: UserNotificationPayload) -> int:
        """One users/{uid}/notifications doc per target; commit errors propagate, nothing is retried."""
        for chunk in _chunks(list(target_user_ids), self._batch_limit):
            batch = self.store.batch()
            for uid in chunk:
                batch.set(f"users/{uid}/notifications/{new_id()}", {
                    "title": payload.title,
                    "description": payload.description,
                    "type": payload.type,
                    "relatedId": payload.related_id,
                    "isAdminCreated": payload.is_admin_created,
                    "read": False,
                    "time": SERVER_TIMESTAMP,
                })
            await batch.commit()
        return len(target_user_ids)

    async def mark_notification_read(self, notification_id: str, user_id: str) -> None:
        if not notification_id:
            raise InvalidArgument("notificationId is required")
        try:
            await self.store.batch().update(f"notifications/{notification_id}", {
                "readBy": ArrayUnion([user_id]),
                "lastUpdated": SERVER_TIMESTAMP,
            }).commit()
        except DocumentNotFound:
            raise NotFound("Notification not found")
        logger.info("Notification %s marked as read by user %s", notification_id, user_id)

    async def send_test_notification(self, target_user_id: Any, title: str | None = None, message: str | None = None) -> dict:
        if not target_user_id or not isinstance(target_user_id, str):
            raise InvalidArgument("targetUserId is required")
        targets = await self.resolve_push_targets([target_user_id])
        if not targets.fcm_tokens:
            raise NotFound("No valid FCM token found for user")
        result = await self.native.send_multicast(
            targets.fcm_tokens,
            title=title or "Test Notification",
            body=message or "This is a test notification from E-SERBISYO admin",
            data={"type": "test", "priority": "normal"},
        )
        return {"success": True, "delivered": result.success_count, "failed": result.failure_count}

    async def congratulate_top_monthly_users(self, actor_id: str, limit: Any = None) -> dict:
        try:
            n = int(float(5 if limit is None else limit))
        except (TypeError, ValueError, OverflowError):
            raise InvalidArgument("limit must be a number")
        n = min(max(n, 1), 20)
        top = await self.store.query("users", order_by="monthly_points", descending=True, limit=n)
        user_ids = [s.id for s in top]
        if not user_ids:
            return {"success": True, "delivered": 0}
        path = await self.store.add("notifications", {
            "title": "Congratulations to our Top Contributors! 🎉",
            "message": "Kudos to this month's top community contributors. Keep it up! 🏆",
            "type": "achievement",
            "priority": "high",
            "status": "sent",
            "targetUsers": user_ids,
            "createdBy": actor_id,
            "createdAt": SERVER_TIMESTAMP,
        })
        return {"success": True, "notificationId": path.rsplit("/", 1)[1], "targeted": len(user_ids)}
