from __future__ import annotations
import json
import logging
from typing import Sequence, Awaitable, Callable
from nats.aio.client import Client as NATS
from ..core.config import get_settings
from ..core.store import DocumentChangeEvent

logger = logging.getLogger(__name__)

_settings = get_settings()
_nats = NATS()

async def nats_connect():
    if not _nats.is_connected:
        servers: Sequence[str] = [u.strip() for u in _settings.nats_urls.split(",") if u.strip()]
        await _nats.connect(servers=servers)

async def nats_close():
    try:
        if _nats.is_connected:
            await _nats.drain()
    except Exception:
        logger.warning("NATS drain failed", exc_info=True)

async def publish_change(evt: DocumentChangeEvent) -> None:
    """Store listener: forward a committed change to the bus."""
    await nats_connect()
    await _nats.publish(_settings.nats_subject_changes, json.dumps(evt.to_dict(), default=str).encode())

async def subscribe_changes(cb: Callable[[DocumentChangeEvent], Awaitable[object]]):
    """
    Subscribe to docstore.changes in the service queue group, so each change
    is handled by one replica. Message body:
      {"kind": "updated", "path": "notifications/abc", "before": {...}, "after": {...}}
    """
    await nats_connect()
    async def _handler(msg):
        try:
            evt = DocumentChangeEvent.from_dict(json.loads(msg.data))
        except (ValueError, KeyError, TypeError):
            logger.warning("Dropping malformed change event: %r", msg.data[:200])
            return
        try:
            await cb(evt)
        except Exception:
            # keep the subscription alive
            logger.exception("Change handler failed for %s %s", evt.kind, evt.path)
    await _nats.subscribe(_settings.nats_subject_changes, queue=_settings.nats_queue_group, cb=_handler)
