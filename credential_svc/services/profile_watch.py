from __future__ import annotations
import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable

from ..schemas import SubjectProfile

logger = logging.getLogger(__name__)

# profile fields that end up inside a credential
QR_FIELDS = frozenset({"name", "firstName", "lastName", "address", "age", "mobile", "phone"})

def changed_profile_fields(before: dict | None, after: dict | None) -> set[str]:
    before, after = before or {}, after or {}
    return {f for f in QR_FIELDS if before.get(f) != after.get(f)}

def subject_from_user_doc(user_id: str, data: dict[str, Any]) -> SubjectProfile:
    return SubjectProfile(
        subject_id=user_id,
        name=data.get("name"),
        first_name=data.get("firstName"),
        last_name=data.get("lastName"),
        address=data.get("address"),
        age=data.get("age"),
        mobile=data.get("mobile"),
        phone=data.get("phone"),
    )

class ProfileChangeCoalescer:
    """
    Debounces profile changes per subject. A burst of relevant changes ends
    in a single regenerate call with the newest snapshot once the subject
    has been quiet for `quiet_period` seconds.
    """

    def __init__(self, regenerate: Callable[[SubjectProfile], Awaitable[Any]], quiet_period: float = 2.0):
        self._regenerate = regenerate
        self.quiet_period = quiet_period
        self._pending: dict[str, SubjectProfile] = {}
        self._deadlines: dict[str, float] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._running: set[asyncio.Task] = set()

    def notify(self, subject: SubjectProfile, changed_fields: Iterable[str]) -> bool:
        if not QR_FIELDS.intersection(changed_fields):
            return False
        sid = subject.subject_id
        loop = asyncio.get_running_loop()
        self._pending[sid] = subject
        self._deadlines[sid] = loop.time() + self.quiet_period
        if sid not in self._tasks:
            task = loop.create_task(self._run(sid))
            self._tasks[sid] = task
            self._running.add(task)
            task.add_done_callback(self._running.discard)
        return True

    async def _run(self, sid: str) -> None:
        loop = asyncio.get_running_loop()
        while True:
            delay = self._deadlines[sid] - loop.time()
            if delay <= 0:
                break
            await asyncio.sleep(delay)
        subject = self._pending.pop(sid)
        del self._deadlines[sid]
        del self._tasks[sid]
        try:
            await self._regenerate(subject)
        except Exception:
            logger.exception("Credential regeneration failed for %s", sid)

    async def drain(self) -> None:
        """Wait for every scheduled regeneration to finish."""
        while self._running:
            await asyncio.gather(*list(self._running))

    async def close(self) -> None:
        tasks = list(self._running)
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._pending.clear()
        self._deadlines.clear()

async def handle_user_change(evt: dict, coalescer: ProfileChangeCoalescer) -> bool:
    """Feed a `users/{uid}` update from the change bus into the coalescer."""
    path = str(evt.get("path") or "")
    parts = path.strip("/").split("/")
    if evt.get("kind") != "updated" or len(parts) != 2 or parts[0] != "users":
        return False
    changed = changed_profile_fields(evt.get("before"), evt.get("after"))
    return coalescer.notify(subject_from_user_doc(parts[1], evt.get("after") or {}), changed)
