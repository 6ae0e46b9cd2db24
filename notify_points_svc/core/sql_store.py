from __future__ import annotations
import copy
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import Document
from .store import (
    DocumentChangeEvent, DocumentSnapshot, DocumentStore, WriteConflict, _Write,
    apply_write, change_event, split_path,
)

class SqlDocumentStore(DocumentStore):
    """
    Documents kept as JSON rows in one table. Every write is a conditional
    statement on the row version read inside the same DB transaction, so a
    concurrent writer turns into WriteConflict (and a retry) instead of a lost update.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], **kwargs: Any):
        super().__init__(**kwargs)
        self._session_maker = session_maker

    async def _read(self, path: str) -> DocumentSnapshot | None:
        async with self._session_maker() as db:
            row = (await db.execute(select(Document).where(Document.path == path))).scalar_one_or_none()
            if row is None:
                return None
            return DocumentSnapshot(path=row.path, data=copy.deepcopy(row.data), version=row.version)

    async def _list(self, collection: str) -> list[DocumentSnapshot]:
        async with self._session_maker() as db:
            rows = (await db.execute(select(Document).where(Document.collection == collection))).scalars().all()
            return [DocumentSnapshot(path=r.path, data=copy.deepcopy(r.data), version=r.version) for r in rows]

    async def _apply(self, writes: Sequence[_Write], preconditions: dict[str, int], now: datetime) -> list[DocumentChangeEvent]:
        events: list[DocumentChangeEvent] = []
        async with self._session_maker() as db:
            async with db.begin():
                originals: dict[str, tuple[dict | None, int]] = {}
                staged: dict[str, dict | None] = {}
                for w in writes:
                    if w.path not in originals:
                        row = (await db.execute(
                            select(Document.data, Document.version).where(Document.path == w.path).with_for_update()
                        )).one_or_none()
                        originals[w.path] = (row.data, row.version) if row else (None, 0)
                        staged[w.path] = copy.deepcopy(originals[w.path][0])
                    cur = staged[w.path]
                    new = apply_write(cur, w, now)
                    staged[w.path] = new
                    evt = change_event(w.path, copy.deepcopy(cur), copy.deepcopy(new))
                    if evt:
                        events.append(evt)

                for path, new in staged.items():
                    orig, ver = originals[path]
                    if preconditions.get(path, ver) != ver:
                        raise WriteConflict(path)
                    await self._flush(db, path, orig, ver, new, now)

                # read-only preconditions are checked after the writes hold their locks
                for path, expected in preconditions.items():
                    if path in staged:
                        continue
                    ver = (await db.execute(select(Document.version).where(Document.path == path))).scalar_one_or_none()
                    if (ver or 0) != expected:
                        raise WriteConflict(path)
        return events

    async def _flush(self, db: AsyncSession, path: str, orig: dict | None, ver: int, new: dict | None, now: datetime) -> None:
        if orig is None and new is None:
            return
        if orig is None:
            try:
                await db.execute(insert(Document).values(
                    path=path, collection=split_path(path)[0], data=new, version=1, created_at=now, updated_at=now,
                ))
            except IntegrityError as e:
                raise WriteConflict(path) from e
            return
        if new is None:
            stmt = delete(Document).where(Document.path == path, Document.version == ver)
        else:
            stmt = (
                update(Document)
                .where(Document.path == path, Document.version == ver)
                .values(data=new, version=ver + 1, updated_at=now)
            )
        result = await db.execute(stmt.execution_options(synchronize_session=False))
        if result.rowcount != 1:
            raise WriteConflict(path)
