from __future__ import annotations
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable

import redis.asyncio as redis
from pydantic import ValidationError

from ..core.credentials import now_iso, parse_iso, sign_payload
from ..core.redis import SubjectSecretStore
from ..schemas import Credential, CredentialPayload, GenerateResult, SubjectProfile

logger = logging.getLogger(__name__)

class MissingSecretError(Exception):
    def __init__(self, subject_id: str):
        super().__init__(f"no signing secret provisioned for subject {subject_id}")
        self.subject_id = subject_id

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

class CredentialService:
    """
    Current credential and capped history per subject, kept in Redis:
      cred:current:{sid}  -> JSON credential
      cred:history:{sid}  -> list of JSON credentials, oldest first
    """

    def __init__(
        self,
        r: redis.Redis,
        secrets: SubjectSecretStore,
        *,
        ttl: timedelta = timedelta(hours=24),
        history_limit: int = 10,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._r = r
        self.secrets = secrets
        self.ttl = ttl
        self.history_limit = history_limit
        self.clock = clock

    @staticmethod
    def _current_key(subject_id: str) -> str:
        return f"cred:current:{subject_id}"

    @staticmethod
    def _history_key(subject_id: str) -> str:
        return f"cred:history:{subject_id}"

    async def generate(self, subject: SubjectProfile) -> GenerateResult:
        secret = await self.secrets.get(subject.subject_id)
        if not secret:
            raise MissingSecretError(subject.subject_id)

        now = self.clock()
        payload = CredentialPayload(
            subject_id=subject.subject_id,
            display_name=subject.display_name,
            address=subject.address,
            age=subject.age,
            mobile=subject.mobile or subject.phone,
            issued_at=now_iso(now),
            nonce=str(uuid.uuid4()),
        )
        credential = Credential(
            payload=payload,
            signature=sign_payload(payload.model_dump(by_alias=True), secret),
            generated_at=now_iso(now),
        )

        raw = credential.model_dump_json(by_alias=True)
        try:
            pipe = self._r.pipeline(transaction=True)
            pipe.set(self._current_key(subject.subject_id), raw)
            pipe.rpush(self._history_key(subject.subject_id), raw)
            pipe.ltrim(self._history_key(subject.subject_id), -self.history_limit, -1)
            await pipe.execute()
        except redis.RedisError as e:
            logger.error("Failed to persist credential for %s: %s", subject.subject_id, e)
            return GenerateResult(success=False, error=str(e))
        logger.info("Generated credential for %s", subject.subject_id)
        return GenerateResult(success=True, credential=credential)

    def _load(self, raw: str | None) -> Credential | None:
        if raw is None:
            return None
        try:
            return Credential.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding unreadable stored credential")
            return None

    def _is_fresh(self, credential: Credential) -> bool:
        try:
            issued = parse_iso(credential.payload.issued_at)
        except ValueError:
            return False
        return self.clock() - issued <= self.ttl

    async def get_current(self, subject_id: str) -> Credential | None:
        credential = self._load(await self._r.get(self._current_key(subject_id)))
        if credential is None or not self._is_fresh(credential):
            return None
        return credential

    async def invalidate(self, subject_id: str) -> None:
        await self._r.delete(self._current_key(subject_id))

    async def history(self, subject_id: str) -> list[Credential]:
        rows = await self._r.lrange(self._history_key(subject_id), 0, -1)
        return [c for c in map(self._load, rows) if c is not None]

    async def regenerate(self, subject: SubjectProfile) -> GenerateResult:
        await self.secrets.ensure(subject.subject_id)
        await self.invalidate(subject.subject_id)
        return await self.generate(subject)

    async def get_or_generate(self, subject: SubjectProfile, force: bool = False) -> GenerateResult:
        if not force:
            current = await self.get_current(subject.subject_id)
            if current is not None:
                return GenerateResult(success=True, credential=current)
        return await self.regenerate(subject)

    async def last_known_subject(self, subject_id: str) -> SubjectProfile | None:
        """Profile snapshot of the most recent credential, current or not."""
        past = await self.history(subject_id)
        if not past:
            return None
        p = past[-1].payload
        return SubjectProfile(subject_id=p.subject_id, name=p.display_name, address=p.address, age=p.age, mobile=p.mobile)
