from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from ..core.store import DocumentChangeEvent
from ..schemas import FanOutResult, UserNotificationPayload
from .notifications import NotificationService

logger = logging.getLogger(__name__)

@dataclass
class TriggerResult:
    handled: bool
    action: str | None = None
    fan_out: FanOutResult | None = None
    written: int = 0

Handler = Callable[[DocumentChangeEvent], Awaitable[TriggerResult]]

_SKIPPED = TriggerResult(handled=False)

class NotificationCreatedTrigger:
    def __init__(self, notifications: NotificationService):
        self.notifications = notifications

    async def __call__(self, evt: DocumentChangeEvent) -> TriggerResult:
        data = evt.after or {}
        if data.get("status") != "sent":
            return _SKIPPED
        result = await self.notifications.fan_out(evt.document_id, data)
        return TriggerResult(handled=True, action="fan_out", fan_out=result)

class NotificationStatusTrigger:
    """Fans out exactly once, on the transition into `sent`; later edits are ignored."""

    def __init__(self, notifications: NotificationService):
        self.notifications = notifications

    async def __call__(self, evt: DocumentChangeEvent) -> TriggerResult:
        before, after = evt.before or {}, evt.after or {}
        if before.get("status") == "sent" or after.get("status") != "sent":
            return _SKIPPED
        result = await self.notifications.fan_out(evt.document_id, after)
        return TriggerResult(handled=True, action="fan_out", fan_out=result)

class ContentCreatedTrigger:
    def __init__(self, notifications: NotificationService, kind: str):
        self.notifications = notifications
        self.kind = kind  # event | program

    async def __call__(self, evt: DocumentChangeEvent) -> TriggerResult:
        data = evt.after or {}
        label = "Event" if self.kind == "event" else "Program"
        payload = UserNotificationPayload(
            title=data.get("title") or f"New {label}",
            description=data.get("description") or f"A new {self.kind} has been posted.",
            type=self.kind,
            related_id=evt.document_id,
        )
        targets = await self.notifications.non_admin_user_ids()
        written = await self.notifications.fan_out_user_notifications(targets, payload)
        logger.info("%s %s: wrote %d user notifications", label, evt.document_id, written)
        return TriggerResult(handled=True, action="user_notifications", written=written)

class TriggerRouter:
    def __init__(self):
        self._handlers: dict[tuple[str, str], Handler] = {}

    def register(self, collection: str, kind: str, handler: Handler) -> None:
        self._handlers[(collection, kind)] = handler

    async def handle(self, evt: DocumentChangeEvent) -> TriggerResult:
        handler = self._handlers.get((evt.collection, evt.kind))
        if handler is None:
            return _SKIPPED
        return await handler(evt)

def build_trigger_router(notifications: NotificationService) -> TriggerRouter:
    router = TriggerRouter()
    router.register("notifications", "created", NotificationCreatedTrigger(notifications))
    router.register("notifications", "updated", NotificationStatusTrigger(notifications))
    router.register("events", "created", ContentCreatedTrigger(notifications, "event"))
    router.register("programs", "created", ContentCreatedTrigger(notifications, "program"))
    return router
