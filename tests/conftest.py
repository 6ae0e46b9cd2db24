import os

# settings are read once at import time; keep tests off real infrastructure
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("TRIGGER_TRANSPORT", "inline")
os.environ.setdefault("ENABLE_SCHEDULER", "false")
os.environ.setdefault("ENABLE_PROFILE_WATCH", "false")
os.environ.setdefault("RL_ENABLED", "true")

from datetime import datetime, timezone

import pytest

from notify_points_svc.core.push import MulticastResult, SendResponse
from notify_points_svc.core.store import MemoryDocumentStore
from notify_points_svc.services.notifications import NotificationService
from notify_points_svc.services.points import PointsLedgerService

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

class FakePushClient:
    """Records every multicast; tokens listed in `codes` fail with that error code."""

    def __init__(self, codes=None, raises=None):
        self.codes = dict(codes or {})
        self.raises = raises
        self.calls = []

    async def send_multicast(self, tokens, *, title, body, data):
        self.calls.append({"tokens": list(tokens), "title": title, "body": body, "data": dict(data)})
        if self.raises:
            raise self.raises
        return MulticastResult([
            SendResponse(t, t not in self.codes, self.codes.get(t)) for t in tokens
        ])

    @property
    def sent_tokens(self):
        return [t for c in self.calls for t in c["tokens"]]

@pytest.fixture
def store():
    return MemoryDocumentStore()

@pytest.fixture
def native():
    return FakePushClient()

@pytest.fixture
def bridge():
    return FakePushClient()

@pytest.fixture
def notifications(store, native, bridge):
    return NotificationService(store, native, bridge, clock=lambda: NOW)

@pytest.fixture
def points(store):
    return PointsLedgerService(store)

async def put(store, path, data):
    await store.batch().set(path, data).commit()
