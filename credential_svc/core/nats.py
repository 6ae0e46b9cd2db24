from __future__ import annotations
import json
import logging
from typing import Sequence, Awaitable, Callable
from nats.aio.client import Client as NATS
from .config import get_settings

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

async def subscribe_changes(cb: Callable[[dict], Awaitable[object]]):
    """
    Subscribe to document change events and invoke cb(evt_dict).
    evt example:
      {
        "kind": "updated",
        "path": "users/u1",
        "before": {"name": "Ana", ...},
        "after": {"name": "Ana Cruz", ...}
      }
    """
    await nats_connect()
    async def _handler(msg):
        try:
            data = json.loads(msg.data)
        except ValueError:
            logger.warning("Dropping malformed change event")
            return
        try:
            await cb(data)
        except Exception:
            logger.exception("Change handler failed for %s", data.get("path") if isinstance(data, dict) else data)
    await _nats.subscribe(_settings.nats_subject_changes, queue=_settings.nats_queue_group, cb=_handler)
