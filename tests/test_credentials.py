import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest
import redis.asyncio as redis
from fakeredis import aioredis as fake_aioredis

from credential_svc.core.credentials import UNSIGNED_REASON, embedded_subject_id, encode, validate
from credential_svc.core.redis import SubjectSecretStore
from credential_svc.schemas import SubjectProfile
from credential_svc.services.credentials import CredentialService, MissingSecretError
from credential_svc.services.profile_watch import (
    ProfileChangeCoalescer, changed_profile_fields, handle_user_change,
)

T0 = datetime(2026, 5, 4, 9, 30, tzinfo=timezone.utc)
DAY = timedelta(hours=24)

class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

@pytest.fixture
def r():
    return fake_aioredis.FakeRedis(decode_responses=True)

@pytest.fixture
def clock():
    return Clock(T0)

@pytest.fixture
def secrets_store(r):
    return SubjectSecretStore(r)

@pytest.fixture
def svc(r, secrets_store, clock):
    return CredentialService(r, secrets_store, clock=clock)

@pytest.fixture
def lola():
    return SubjectProfile(subject_id="u1", first_name="Lola", last_name="Basyang", address="Purok 3", age=72, phone="0917")

async def _issue(svc, subject):
    await svc.secrets.ensure(subject.subject_id)
    result = await svc.generate(subject)
    assert result.success
    return result.credential

async def test_round_trip_and_tampering(svc, secrets_store, lola):
    credential = await _issue(svc, lola)
    secret = await secrets_store.get("u1")
    wire = encode(credential)

    result = validate(wire, secret, T0)
    assert result.valid is True
    assert result.subject_id == "u1"
    assert result.payload.display_name == "Lola Basyang"
    assert result.payload.mobile == "0917"
    assert result.payload.version == "1.0"

    data = json.loads(wire)
    sig = data["signature"]
    data["signature"] = ("0" if sig[0] != "0" else "1") + sig[1:]
    flipped = validate(json.dumps(data), secret, T0)
    assert (flipped.valid, flipped.error) == (False, "Invalid signature")

    data = json.loads(wire)
    data["payload"]["displayName"] = "Someone Else"
    assert validate(json.dumps(data), secret, T0).error == "Invalid signature"

async def test_other_subjects_secret_does_not_verify(svc, secrets_store, lola):
    credential = await _issue(svc, lola)
    other = await secrets_store.ensure("u2")
    assert other != await secrets_store.get("u1")
    assert validate(encode(credential), other, T0).error == "Invalid signature"

async def test_expiry_boundary(svc, secrets_store, lola, clock):
    credential = await _issue(svc, lola)
    secret = await secrets_store.get("u1")
    wire = encode(credential)

    assert validate(wire, secret, T0 + DAY - timedelta(seconds=1)).valid is True
    late = validate(wire, secret, T0 + DAY + timedelta(seconds=1))
    assert (late.valid, late.error) == (False, "Credential expired")

    clock.now = T0 + DAY - timedelta(seconds=1)
    assert await svc.get_current("u1") is not None
    clock.now = T0 + DAY + timedelta(seconds=1)
    assert await svc.get_current("u1") is None

async def test_history_is_capped_oldest_first(svc, lola, clock):
    issued = []
    for i in range(12):
        clock.now = T0 + timedelta(minutes=i)
        issued.append(await _issue(svc, lola))

    history = await svc.history("u1")
    assert [c.payload.nonce for c in history] == [c.payload.nonce for c in issued[2:]]
    assert (await svc.get_current("u1")).payload.nonce == issued[-1].payload.nonce

async def test_invalidate_keeps_history(svc, lola):
    await _issue(svc, lola)
    await svc.invalidate("u1")
    await svc.invalidate("u1")
    assert await svc.get_current("u1") is None
    assert len(await svc.history("u1")) == 1

async def test_generate_requires_a_provisioned_secret(svc, lola):
    with pytest.raises(MissingSecretError):
        await svc.generate(lola)

async def test_secret_is_provisioned_once(secrets_store):
    first = await secrets_store.ensure("u1")
    assert await secrets_store.ensure("u1") == first
    assert len(first) >= 32

async def test_persistence_failure_is_reported(svc, r, lola, monkeypatch):
    await svc.secrets.ensure("u1")

    class BrokenPipeline:
        def __getattr__(self, name):
            return lambda *a, **kw: self

        async def execute(self):
            raise redis.ConnectionError("connection reset")

    monkeypatch.setattr(r, "pipeline", lambda transaction=True: BrokenPipeline())
    result = await svc.generate(lola)
    assert result.success is False
    assert "connection reset" in result.error

async def test_get_or_generate_reuses_fresh_credential(svc, lola, clock):
    first = (await svc.get_or_generate(lola)).credential
    assert (await svc.get_or_generate(lola)).credential.payload.nonce == first.payload.nonce

    forced = (await svc.get_or_generate(lola, force=True)).credential
    assert forced.payload.nonce != first.payload.nonce

    clock.now = T0 + DAY + timedelta(minutes=1)
    renewed = (await svc.get_or_generate(lola)).credential
    assert renewed.payload.nonce != forced.payload.nonce

@pytest.mark.parametrize("value, error", [
    ("{not json", "Malformed credential"),
    ("[1, 2]", "Malformed credential"),
    ('{"payload": {"subjectId": "u1"}}', "Missing payload or signature"),
    ('{"payload": "x", "signature": "ab"}', "Missing payload or signature"),
    ('{"payload": {"subjectId": "u1", "displayName": "A", "issuedAt": "2026-05-04T09:30:00Z"}, "signature": "ab"}',
     "Missing required field: nonce"),
    ('{"payload": {"subjectId": "u1", "displayName": "A", "issuedAt": "yesterday", "nonce": "n"}, "signature": "ab"}',
     "Invalid issuedAt timestamp"),
    ('{"payload": {"subjectId": "u1", "displayName": "A", "issuedAt": "2026-05-04T09:30:00Z", "nonce": "n"}, "signature": "ab"}',
     "Invalid signature"),
])
def test_validation_fails_closed(value, error):
    result = validate(value, "s" * 43, T0)
    assert result.valid is False
    assert result.error == error

_SIGNED_SHAPE = '{"payload": {"subjectId": "u1", "displayName": %s, "issuedAt": "2026-05-04T09:30:00Z", "nonce": "n"}, "signature": %s}'

@pytest.mark.parametrize("value, error", [
    ("[" * 100_000 + "]" * 100_000, "Malformed credential"),
    (_SIGNED_SHAPE % ('"\\ud800"', '"ab"'), "Malformed credential"),
    (_SIGNED_SHAPE % ('"A"', '"\\udc00"'), "Malformed credential"),
    (_SIGNED_SHAPE % ('"A"', '"\u00e9\u00e9"'), "Invalid signature"),
], ids=["deep-nesting", "surrogate-in-payload", "surrogate-signature", "non-ascii-signature"])
def test_hostile_input_is_rejected_without_raising(value, error):
    result = validate(value, "s" * 43, T0)
    assert result.valid is False
    assert result.error == error

def test_unencodable_subject_id_is_not_looked_up():
    value = '{"payload": {"subjectId": "\\udfff", "displayName": "A", "issuedAt": "2026-05-04T09:30:00Z", "nonce": "n"}, "signature": "ab"}'
    assert embedded_subject_id(value) is None
    result = validate(value, None, T0)
    assert (result.subject_id, result.error) == (None, "Unknown subject")

def test_unknown_subject_fails_closed():
    value = '{"payload": {"subjectId": "u1", "displayName": "A", "issuedAt": "2026-05-04T09:30:00Z", "nonce": "n"}, "signature": "ab"}'
    assert validate(value, None, T0).error == "Unknown subject"

@pytest.mark.parametrize("value, subject", [
    ("user123", "user123"),
    ("12345", "12345"),
    ("eserbisyo://user/abc-9", "abc-9"),
])
def test_plain_identifier_needs_manual_check(value, subject):
    result = validate(value, None, T0)
    assert result.valid is False
    assert result.subject_id == subject
    assert result.error == UNSIGNED_REASON
    assert embedded_subject_id(value) == subject

# --- auto-regeneration

def test_changed_profile_fields_only_reports_credential_fields():
    before = {"name": "Ana", "total_points": 1, "mobile": "1"}
    after = {"name": "Ana Cruz", "total_points": 9, "mobile": "1"}
    assert changed_profile_fields(before, after) == {"name"}

async def test_coalescer_collapses_a_burst():
    calls = []

    async def regenerate(subject):
        calls.append(subject)

    coalescer = ProfileChangeCoalescer(regenerate, quiet_period=0.05)
    for name in ("A", "Ab", "Abe"):
        assert coalescer.notify(SubjectProfile(subject_id="u1", name=name), {"name"}) is True
        await asyncio.sleep(0.01)
    assert coalescer.notify(SubjectProfile(subject_id="u1", name="ignored"), {"total_points"}) is False
    coalescer.notify(SubjectProfile(subject_id="u2", name="Ben"), {"address"})

    await coalescer.drain()
    assert sorted((s.subject_id, s.name) for s in calls) == [("u1", "Abe"), ("u2", "Ben")]

    coalescer.notify(SubjectProfile(subject_id="u1", name="Abel"), {"name"})
    await coalescer.drain()
    assert [s.name for s in calls if s.subject_id == "u1"] == ["Abe", "Abel"]

async def test_coalescer_drives_regeneration(svc, lola):
    await _issue(svc, lola)
    old = await svc.get_current("u1")
    coalescer = ProfileChangeCoalescer(svc.regenerate, quiet_period=0.01)

    evt = {
        "kind": "updated",
        "path": "users/u1",
        "before": {"firstName": "Lola", "lastName": "Basyang"},
        "after": {"firstName": "Lola", "lastName": "Basyang-Cruz", "age": 73},
    }
    assert await handle_user_change(evt, coalescer) is True
    assert await handle_user_change({**evt, "after": evt["before"]}, coalescer) is False
    assert await handle_user_change({**evt, "path": "notifications/n1"}, coalescer) is False
    await coalescer.drain()

    current = await svc.get_current("u1")
    assert current.payload.display_name == "Lola Basyang-Cruz"
    assert current.payload.nonce != old.payload.nonce
    assert len(await svc.history("u1")) == 2
