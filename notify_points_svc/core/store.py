"""
Document store adapter.

Services talk to the store through `DocumentStore`: slash-separated document
paths (``users/u1``, ``users/u1/points_history/abc``), batched writes capped at
``max_batch_writes``, and optimistic transactions that are re-run when a
document they read changed before commit.

Every committed write produces a `DocumentChangeEvent` for the registered
listeners; that is how create/update triggers are wired.
"""
from __future__ import annotations
import asyncio
import copy
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
ChangeListener = Callable[["DocumentChangeEvent"], Awaitable[None]]

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def new_id() -> str:
    return uuid.uuid4().hex[:20]

def split_path(path: str) -> tuple[str, str]:
    parts = path.strip("/").split("/")
    if len(parts) < 2 or len(parts) % 2:
        raise ValueError(f"not a document path: {path!r}")
    return "/".join(parts[:-1]), parts[-1]

# --- errors

class StoreError(Exception):
    pass

class DocumentNotFound(StoreError):
    def __init__(self, path: str):
        super().__init__(f"no document to update: {path}")
        self.path = path

class WriteConflict(StoreError):
    pass

class TransactionAborted(StoreError):
    pass

class BatchLimitExceeded(StoreError):
    pass

# --- field transforms

class _Sentinel:
    def __init__(self, name: str):
        self._name = name

    def __repr__(self) -> str:
        return self._name

SERVER_TIMESTAMP = _Sentinel("SERVER_TIMESTAMP")
DELETE_FIELD = _Sentinel("DELETE_FIELD")

class ArrayUnion:
    def __init__(self, values: Iterable[Any]):
        self.values = list(values)

class ArrayRemove:
    def __init__(self, values: Iterable[Any]):
        self.values = list(values)

def to_storable(value: Any, now: datetime) -> Any:
    """Normalise a value to JSON-native types; datetimes become ISO-8601 UTC strings."""
    if value is SERVER_TIMESTAMP:
        return now.isoformat()
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, dict):
        return {str(k): to_storable(v, now) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_storable(v, now) for v in value]
    return value

def _apply_fields(target: dict, fields: dict, now: datetime) -> dict:
    for key, value in fields.items():
        if value is DELETE_FIELD:
            target.pop(key, None)
        elif isinstance(value, ArrayUnion):
            existing = list(target.get(key) or [])
            for v in to_storable(value.values, now):
                if v not in existing:
                    existing.append(v)
            target[key] = existing
        elif isinstance(value, ArrayRemove):
            drop = to_storable(value.values, now)
            target[key] = [v for v in (target.get(key) or []) if v not in drop]
        else:
            target[key] = to_storable(value, now)
    return target

@dataclass
class _Write:
    op: str  # set | update | delete
    path: str
    data: dict | None = None
    merge: bool = False

def apply_write(current: dict | None, w: _Write, now: datetime) -> dict | None:
    if w.op == "delete":
        return None
    if w.op == "update":
        if current is None:
            raise DocumentNotFound(w.path)
        return _apply_fields(copy.deepcopy(current), w.data or {}, now)
    base = copy.deepcopy(current) if (w.merge and current is not None) else {}
    return _apply_fields(base, w.data or {}, now)

# --- snapshots & events

@dataclass
class DocumentSnapshot:
    path: str
    data: dict
    version: int = 1

    @property
    def id(self) -> str:
        return split_path(self.path)[1]

    @property
    def collection(self) -> str:
        return split_path(self.path)[0]

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

@dataclass
class DocumentChangeEvent:
    kind: str  # created | updated | deleted
    path: str
    before: dict | None = None
    after: dict | None = None

    @property
    def collection(self) -> str:
        return split_path(self.path)[0]

    @property
    def document_id(self) -> str:
        return split_path(self.path)[1]

    def to_dict(self) -> dict:
        return {"kind": self.kind, "path": self.path, "before": self.before, "after": self.after}

    @classmethod
    def from_dict(cls, evt: dict) -> "DocumentChangeEvent":
        return cls(kind=evt["kind"], path=evt["path"], before=evt.get("before"), after=evt.get("after"))

def change_event(path: str, before: dict | None, after: dict | None) -> DocumentChangeEvent | None:
    if before is None and after is None:
        return None
    if before is None:
        kind = "created"
    elif after is None:
        kind = "deleted"
    else:
        kind = "updated"
    return DocumentChangeEvent(kind=kind, path=path, before=before, after=after)

# --- queries

_OPS: dict[str, Callable[[Any, Any], bool]] = {
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
    "in": lambda a, b: a in b,
    "array-contains": lambda a, b: isinstance(a, list) and b in a,
}

Filter = tuple[str, str, Any]

def matches(data: dict, where: Sequence[Filter], now: datetime) -> bool:
    for field_name, op, value in where:
        if field_name not in data or data[field_name] is None:
            return False
        try:
            if not _OPS[op](data[field_name], to_storable(value, now)):
                return False
        except TypeError:
            return False
    return True

def run_query(
    snaps: Iterable[DocumentSnapshot],
    where: Sequence[Filter] = (),
    *,
    order_by: str | None = None,
    descending: bool = False,
    limit: int | None = None,
) -> list[DocumentSnapshot]:
    now = utcnow()
    rows = [s for s in snaps if matches(s.data, where, now)]
    if order_by:
        # documents without the order field are excluded, as in the hosted store
        rows = [s for s in rows if s.data.get(order_by) is not None]
        rows.sort(key=lambda s: (s.data[order_by], s.path), reverse=descending)
    else:
        rows.sort(key=lambda s: s.path)
    if limit is not None:
        rows = rows[:limit]
    return rows

# --- batches & transactions

class WriteBatch:
    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._writes: list[_Write] = []
        self._committed = False

    def __len__(self) -> int:
        return len(self._writes)

    def _add(self, w: _Write) -> "WriteBatch":
        if self._committed:
            raise StoreError("batch already committed")
        if len(self._writes) >= self._store.max_batch_writes:
            raise BatchLimitExceeded(f"batch holds at most {self._store.max_batch_writes} writes")
        split_path(w.path)
        self._writes.append(w)
        return self

    def set(self, path: str, data: dict, *, merge: bool = False) -> "WriteBatch":
        return self._add(_Write("set", path, dict(data), merge))

    def update(self, path: str, fields: dict) -> "WriteBatch":
        return self._add(_Write("update", path, dict(fields)))

    def delete(self, path: str) -> "WriteBatch":
        return self._add(_Write("delete", path))

    async def commit(self) -> list[DocumentChangeEvent]:
        if self._committed:
            raise StoreError("batch already committed")
        self._committed = True
        if not self._writes:
            return []
        return await self._store._commit(self._writes, {})

class Transaction(WriteBatch):
    """Reads are recorded with their version; the commit fails if any of them moved."""

    def __init__(self, store: "DocumentStore"):
        super().__init__(store)
        self._reads: dict[str, int] = {}

    async def get(self, path: str) -> DocumentSnapshot | None:
        if self._writes:
            raise StoreError("transaction reads must come before writes")
        snap = await self._store.get(path)
        self._reads[path] = snap.version if snap else 0
        return snap

    async def commit(self) -> list[DocumentChangeEvent]:
        raise StoreError("transactions are committed by run_transaction")

class DocumentStore:
    def __init__(self, *, max_batch_writes: int = 500, transaction_attempts: int = 5):
        self.max_batch_writes = max_batch_writes
        self.transaction_attempts = transaction_attempts
        self._listeners: list[ChangeListener] = []

    def add_listener(self, cb: ChangeListener) -> None:
        self._listeners.append(cb)

    # backend primitives
    async def _read(self, path: str) -> DocumentSnapshot | None:
        raise NotImplementedError

    async def _list(self, collection: str) -> list[DocumentSnapshot]:
        raise NotImplementedError

    async def _apply(self, writes: Sequence[_Write], preconditions: dict[str, int], now: datetime) -> list[DocumentChangeEvent]:
        """Apply all writes atomically; raise WriteConflict if a precondition version moved."""
        raise NotImplementedError

    # public API
    async def get(self, path: str) -> DocumentSnapshot | None:
        split_path(path)
        return await self._read(path)

    async def query(
        self,
        collection: str,
        where: Sequence[Filter] = (),
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[DocumentSnapshot]:
        snaps = await self._list(collection.strip("/"))
        return run_query(snaps, where, order_by=order_by, descending=descending, limit=limit)

    async def add(self, collection: str, data: dict) -> str:
        path = f"{collection.strip('/')}/{new_id()}"
        await self.batch().set(path, data).commit()
        return path

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        for attempt in range(1, self.transaction_attempts + 1):
            trx = Transaction(self)
            result = await fn(trx)
            try:
                events = await self._apply(trx._writes, trx._reads, utcnow())
            except WriteConflict:
                logger.debug("transaction conflict, attempt %d/%d", attempt, self.transaction_attempts)
                continue
            await self._emit(events)
            return result
        raise TransactionAborted(f"transaction gave up after {self.transaction_attempts} attempts")

    async def _commit(self, writes: Sequence[_Write], preconditions: dict[str, int]) -> list[DocumentChangeEvent]:
        # blind writes are recomputed from current data on each attempt
        for attempt in range(1, self.transaction_attempts + 1):
            try:
                events = await self._apply(writes, preconditions, utcnow())
            except WriteConflict:
                logger.debug("batch conflict, attempt %d/%d", attempt, self.transaction_attempts)
                continue
            await self._emit(events)
            return events
        raise TransactionAborted(f"batch gave up after {self.transaction_attempts} attempts")

    async def _emit(self, events: Sequence[DocumentChangeEvent]) -> None:
        for evt in events:
            for cb in self._listeners:
                try:
                    await cb(evt)
                except Exception:
                    # the write is already committed; a failing trigger must not undo it
                    logger.exception("change listener failed for %s %s", evt.kind, evt.path)

class MemoryDocumentStore(DocumentStore):
    """Process-local backend for development and tests."""

    def __init__(self, **kwargs: Any):
        super().__init__(**kwargs)
        self._docs: dict[str, tuple[dict, int]] = {}
        self._lock = asyncio.Lock()

    async def _read(self, path: str) -> DocumentSnapshot | None:
        entry = self._docs.get(path)
        if entry is None:
            return None
        return DocumentSnapshot(path=path, data=copy.deepcopy(entry[0]), version=entry[1])

    async def _list(self, collection: str) -> list[DocumentSnapshot]:
        return [
            DocumentSnapshot(path=p, data=copy.deepcopy(d), version=v)
            for p, (d, v) in self._docs.items()
            if split_path(p)[0] == collection
        ]

    async def _apply(self, writes: Sequence[_Write], preconditions: dict[str, int], now: datetime) -> list[DocumentChangeEvent]:
        async with self._lock:
            for path, expected in preconditions.items():
                entry = self._docs.get(path)
                if (entry[1] if entry else 0) != expected:
                    raise WriteConflict(path)

            staged: dict[str, tuple[dict | None, int]] = {}
            events: list[DocumentChangeEvent] = []
            for w in writes:
                if w.path in staged:
                    cur, ver = staged[w.path]
                else:
                    cur, ver = self._docs.get(w.path, (None, 0))
                new = apply_write(cur, w, now)
                staged[w.path] = (new, ver + 1)
                evt = change_event(w.path, copy.deepcopy(cur), copy.deepcopy(new))
                if evt:
                    events.append(evt)

            for path, (data, ver) in staged.items():
                if data is None:
                    self._docs.pop(path, None)
                else:
                    self._docs[path] = (data, ver)
            return events
