from datetime import timedelta

import pytest

from conftest import NOW, FakePushClient, put
from notify_points_svc.core.errors import InvalidArgument, NotFound
from notify_points_svc.services.notifications import NO_TOKENS_ERROR, NotificationService
from notify_points_svc.services.triggers import build_trigger_router

DEAD = "messaging/registration-token-not-registered"

async def _notification(store, nid, **fields):
    data = {"title": "Clinic day", "message": "Free check-ups", "status": "sent", **fields}
    await put(store, f"notifications/{nid}", data)
    return data

async def test_resolve_skips_users_without_tokens(store, notifications):
    await put(store, "users/a", {"fcmToken": "fa"})
    await put(store, "users/b", {"expoPushToken": "ExponentPushToken[b]"})
    await put(store, "users/c", {"name": "no tokens"})

    targets = await notifications.resolve_push_targets(["a", "b", "c", "missing", "a"])
    assert targets.fcm_tokens == ["fa"]
    assert targets.expo_tokens == ["ExponentPushToken[b]"]
    assert targets.recipients == {"a", "b"}

async def test_fan_out_counts_resolved_recipients(store, notifications, native, bridge):
    await put(store, "users/a", {"fcmToken": "fa"})
    await put(store, "users/b", {"expoPushToken": "eb"})
    await put(store, "users/c", {})
    data = await _notification(store, "n1", targetUsers=["a", "b", "c"], type="announcement")

    result = await notifications.fan_out("n1", data)

    assert (result.delivered, result.failed, result.error) == (2, 0, None)
    assert native.sent_tokens == ["fa"]
    assert bridge.sent_tokens == ["eb"]
    assert native.calls[0]["data"] == {"notificationId": "n1", "type": "announcement", "priority": "normal"}
    doc = (await store.get("notifications/n1")).data
    assert doc["sentTo"] == ["a", "b", "c"]
    assert doc["deliveredTo"] == 2
    assert doc["failedDeliveries"] == 0
    assert "sentAt" in doc
    assert "error" not in doc

async def test_fan_out_without_tokens_records_error(store, notifications, native, bridge):
    await put(store, "users/c", {})
    data = await _notification(store, "n1", targetUsers=["c", "ghost"])

    result = await notifications.fan_out("n1", data)

    assert result.error == NO_TOKENS_ERROR
    assert native.calls == [] and bridge.calls == []
    doc = (await store.get("notifications/n1")).data
    assert doc["error"] == NO_TOKENS_ERROR
    assert doc["deliveredTo"] == 0 and doc["failedDeliveries"] == 0

async def test_any_successful_token_delivers_the_user(store, bridge):
    native = FakePushClient(codes={"fa": "messaging/server-unavailable"})
    svc = NotificationService(store, native, bridge)
    await put(store, "users/a", {"fcmToken": "fa", "expoPushToken": "ea"})
    data = await _notification(store, "n1", targetUsers=["a"])

    result = await svc.fan_out("n1", data)
    assert (result.delivered, result.failed) == (1, 0)

async def test_dead_native_tokens_are_pruned(store, bridge):
    native = FakePushClient(codes={"dead": DEAD, "busy": "messaging/server-unavailable"})
    svc = NotificationService(store, native, bridge)
    await put(store, "users/a", {"fcmToken": "ok"})
    await put(store, "users/b", {"fcmToken": "dead", "name": "Ben"})
    await put(store, "users/c", {"fcmToken": "busy"})
    data = await _notification(store, "n1", targetUsers=["a", "b", "c"])

    result = await svc.fan_out("n1", data)

    assert (result.delivered, result.failed) == (1, 2)
    assert result.error is None
    assert result.pruned_tokens == ["dead"]
    b = (await store.get("users/b")).data
    assert "fcmToken" not in b
    assert b["name"] == "Ben"
    assert "lastTokenUpdate" in b
    assert (await store.get("users/c")).data["fcmToken"] == "busy"

async def test_shared_dead_token_prunes_every_owner(store, bridge):
    native = FakePushClient(codes={"shared": "messaging/invalid-registration-token"})
    svc = NotificationService(store, native, bridge)
    await put(store, "users/a", {"fcmToken": "shared"})
    await put(store, "users/b", {"fcmToken": "shared"})
    data = await _notification(store, "n1", targetUsers=["a", "b"])

    await svc.fan_out("n1", data)

    assert native.sent_tokens == ["shared"]
    assert "fcmToken" not in (await store.get("users/a")).data
    assert "fcmToken" not in (await store.get("users/b")).data

async def test_native_outage_does_not_block_bridge(store, bridge):
    native = FakePushClient(raises=RuntimeError("fcm down"))
    svc = NotificationService(store, native, bridge)
    await put(store, "users/a", {"fcmToken": "fa"})
    await put(store, "users/b", {"expoPushToken": "eb"})
    data = await _notification(store, "n1", targetUsers=["a", "b"])

    result = await svc.fan_out("n1", data)

    assert bridge.sent_tokens == ["eb"]
    assert (result.delivered, result.failed) == (1, 1)
    assert "fcm down" in result.error
    assert (await store.get("notifications/n1")).data["error"] == result.error
    assert "fcmToken" in (await store.get("users/a")).data

async def test_native_tokens_are_chunked(store, native, bridge):
    svc = NotificationService(store, native, bridge, native_multicast_limit=2)
    for i in range(5):
        await put(store, f"users/u{i}", {"fcmToken": f"t{i}"})
    data = await _notification(store, "n1", targetUsers=[f"u{i}" for i in range(5)])

    result = await svc.fan_out("n1", data)

    assert [len(c["tokens"]) for c in native.calls] == [2, 2, 1]
    assert result.delivered == 5

async def test_sweep_flips_only_due_notifications(store, notifications):
    await _notification(store, "due", status="scheduled", scheduledFor=NOW - timedelta(minutes=1))
    await _notification(store, "later", status="scheduled", scheduledFor=NOW + timedelta(hours=1))
    await _notification(store, "done", status="sent")

    assert await notifications.process_scheduled_notifications() == 1
    due = (await store.get("notifications/due")).data
    assert due["status"] == "sent"
    assert "processedAt" in due
    assert (await store.get("notifications/later")).data["status"] == "scheduled"
    assert await notifications.process_scheduled_notifications() == 0

async def test_sweep_triggers_exactly_one_fan_out(store, bridge):
    native = FakePushClient(codes={"dead": DEAD})
    svc = NotificationService(store, native, bridge, clock=lambda: NOW)
    await put(store, "users/a", {"fcmToken": "ok"})
    await put(store, "users/b", {"fcmToken": "dead"})
    await put(store, "users/c", {"expoPushToken": "ec"})
    await _notification(store, "n1", status="scheduled", scheduledFor=NOW, targetUsers=["a", "b", "c", "ghost"])
    store.add_listener(build_trigger_router(svc).handle)

    await svc.process_scheduled_notifications()
    await svc.process_scheduled_notifications()

    assert len(native.calls) == 1
    assert len(bridge.calls) == 1
    doc = (await store.get("notifications/n1")).data
    assert doc["deliveredTo"] + doc["failedDeliveries"] == 3
    assert (doc["deliveredTo"], doc["failedDeliveries"]) == (2, 1)

async def test_sent_notification_is_not_resent_on_edit(store, native, notifications):
    await put(store, "users/a", {"fcmToken": "fa"})
    store.add_listener(build_trigger_router(notifications).handle)

    await _notification(store, "n1", targetUsers=["a"])
    assert len(native.calls) == 1

    await store.batch().update("notifications/n1", {"title": "Clinic day (moved)"}).commit()
    await store.batch().update("notifications/n1", {"status": "sent"}).commit()
    assert len(native.calls) == 1

async def test_user_notifications_written_per_target(store, notifications):
    svc = NotificationService(store, notifications.native, notifications.bridge, batch_write_limit=2)
    from notify_points_svc.schemas import UserNotificationPayload

    payload = UserNotificationPayload(title="Zumba", description="Plaza, 6am", type="event", related_id="e1")
    assert await svc.fan_out_user_notifications(["a", "b", "c"], payload) == 3

    for uid in ("a", "b", "c"):
        docs = await store.query(f"users/{uid}/notifications")
        assert len(docs) == 1
        assert docs[0].data["relatedId"] == "e1"
        assert docs[0].data["read"] is False
        assert docs[0].data["isAdminCreated"] is True

async def test_mark_read_is_idempotent(store, notifications):
    await _notification(store, "n1")
    await notifications.mark_notification_read("n1", "u1")
    await notifications.mark_notification_read("n1", "u1")
    await notifications.mark_notification_read("n1", "u2")
    assert (await store.get("notifications/n1")).data["readBy"] == ["u1", "u2"]

    with pytest.raises(NotFound):
        await notifications.mark_notification_read("missing", "u1")

async def test_send_test_notification(store, notifications, native, bridge):
    await put(store, "users/a", {"fcmToken": "fa", "expoPushToken": "ea"})
    await put(store, "users/b", {"expoPushToken": "eb"})

    result = await notifications.send_test_notification("a", message="ping")
    assert result == {"success": True, "delivered": 1, "failed": 0}
    assert native.calls[0]["title"] == "Test Notification"
    assert native.calls[0]["body"] == "ping"
    assert bridge.calls == []

    with pytest.raises(NotFound):
        await notifications.send_test_notification("b")
    with pytest.raises(InvalidArgument):
        await notifications.send_test_notification(None)

async def test_congratulate_top_monthly_users(store, notifications):
    await put(store, "users/a", {"monthly_points": 10})
    await put(store, "users/b", {"monthly_points": 50})
    await put(store, "users/c", {"monthly_points": 30})
    await put(store, "users/d", {"name": "never scored"})

    result = await notifications.congratulate_top_monthly_users("admin1", limit=2)

    assert result["success"] is True
    assert result["targeted"] == 2
    doc = (await store.get(f"notifications/{result['notificationId']}")).data
    assert doc["targetUsers"] == ["b", "c"]
    assert doc["status"] == "sent"
    assert doc["type"] == "achievement"
    assert doc["priority"] == "high"
    assert doc["createdBy"] == "admin1"

    assert (await notifications.congratulate_top_monthly_users("admin1", limit=100))["targeted"] == 3
    assert (await notifications.congratulate_top_monthly_users("admin1", limit=0))["targeted"] == 1
    with pytest.raises(InvalidArgument):
        await notifications.congratulate_top_monthly_users("admin1", limit="lots")

async def test_congratulate_with_no_users(notifications):
    assert await notifications.congratulate_top_monthly_users("admin1") == {"success": True, "delivered": 0}
