"""
Credential wire format.

A credential is the JSON object ``{"payload": {...}, "signature": hex, "generatedAt": iso}``.
The signature is HMAC-SHA256 keyed by the subject's own secret over the
canonical JSON of ``payload`` exactly as it appears on the wire, so fields
added by newer issuers are still covered.
"""
from __future__ import annotations
import hashlib
import hmac
import json
import re
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import ValidationError

from ..schemas import Credential, CredentialPayload, ValidationResult

REQUIRED_FIELDS = ("subjectId", "displayName", "issuedAt", "nonce")
DEFAULT_TTL = timedelta(hours=24)
UNSIGNED_REASON = "Unsigned identifier; manual verification required"

_DEEP_LINK = re.compile(r"^eserbisyo://user/([A-Za-z0-9_\-]{1,128})/?$")
_BARE_ID = re.compile(r"^[A-Za-z0-9_\-]{1,128}$")

def now_iso(now: datetime | None = None) -> str:
    return (now or datetime.now(timezone.utc)).isoformat().replace("+00:00", "Z")

def parse_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)

def canonical_json(obj: Any) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

def sign_payload(payload: dict, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), canonical_json(payload), hashlib.sha256).hexdigest()

def encode(credential: Credential) -> str:
    return json.dumps(credential.model_dump(by_alias=True), separators=(",", ":"), ensure_ascii=False)

def _plain_subject(value: str) -> str | None:
    value = value.strip()
    m = _DEEP_LINK.match(value)
    if m:
        return m.group(1)
    if _BARE_ID.match(value):
        return value
    return None

def _parse(value: str) -> dict | None:
    try:
        data = json.loads(value)
    except (TypeError, ValueError, RecursionError):
        return None
    return data if isinstance(data, dict) else None

def _subject_of(payload: Any) -> str | None:
    sid = payload.get("subjectId") if isinstance(payload, dict) else None
    if not isinstance(sid, str):
        return None
    try:
        sid.encode("utf-8")
    except UnicodeEncodeError:
        # lone surrogates cannot be used as a lookup key
        return None
    return sid

def embedded_subject_id(value: str) -> str | None:
    """Subject id a scanned value claims to be for, without checking anything else."""
    data = _parse(value)
    if data is None:
        return _plain_subject(value)
    return _subject_of(data.get("payload"))

def validate(serialized: str, secret: str | None, now: datetime, ttl: timedelta = DEFAULT_TTL) -> ValidationResult:
    """Fail-closed check of a scanned value. Never raises."""
    data = _parse(serialized)
    if data is None:
        sid = _plain_subject(serialized) if isinstance(serialized, str) else None
        if sid:
            return ValidationResult(valid=False, subject_id=sid, error=UNSIGNED_REASON)
        return ValidationResult(valid=False, error="Malformed credential")

    payload, signature = data.get("payload"), data.get("signature")
    if not isinstance(payload, dict) or not isinstance(signature, str) or not signature:
        return ValidationResult(valid=False, error="Missing payload or signature")

    sid = _subject_of(payload)
    for name in REQUIRED_FIELDS:
        if payload.get(name) in (None, ""):
            return ValidationResult(valid=False, subject_id=sid, error=f"Missing required field: {name}")

    try:
        issued_at = parse_iso(str(payload["issuedAt"]))
    except ValueError:
        return ValidationResult(valid=False, subject_id=sid, error="Invalid issuedAt timestamp")

    if not secret:
        return ValidationResult(valid=False, subject_id=sid, error="Unknown subject")
    try:
        matches = hmac.compare_digest(sign_payload(payload, secret).encode("ascii"), signature.encode("utf-8"))
    except UnicodeEncodeError:
        return ValidationResult(valid=False, subject_id=sid, error="Malformed credential")
    if not matches:
        return ValidationResult(valid=False, subject_id=sid, error="Invalid signature")

    if now - issued_at > ttl:
        return ValidationResult(valid=False, subject_id=sid, error="Credential expired")

    try:
        parsed = CredentialPayload.model_validate(payload)
    except ValidationError:
        return ValidationResult(valid=False, subject_id=sid, error="Malformed credential payload")
    return ValidationResult(valid=True, payload=parsed, subject_id=sid)
