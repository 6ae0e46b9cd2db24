from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

# per-token codes meaning the token will never work again
UNREGISTERED_CODES = frozenset({
    "messaging/registration-token-not-registered",
    "messaging/invalid-registration-token",
})

_FCM_ERROR_CODES = {
    "UNREGISTERED": "messaging/registration-token-not-registered",
    "SENDER_ID_MISMATCH": "messaging/mismatched-credential",
    "QUOTA_EXCEEDED": "messaging/message-rate-exceeded",
    "UNAVAILABLE": "messaging/server-unavailable",
    "INTERNAL": "messaging/internal-error",
    "THIRD_PARTY_AUTH_ERROR": "messaging/third-party-auth-error",
    "INVALID_ARGUMENT": "messaging/invalid-argument",
}

@dataclass
class SendResponse:
    token: str
    success: bool
    error_code: str | None = None

@dataclass
class MulticastResult:
    responses: list[SendResponse] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.responses if r.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.responses if not r.success)

class PushClient(Protocol):
    async def send_multicast(self, tokens: list[str], *, title: str, body: str, data: dict[str, str]) -> MulticastResult: ...

def _fcm_error_code(resp: httpx.Response) -> str:
    try:
        err = resp.json().get("error", {})
    except ValueError:
        return f"messaging/http-{resp.status_code}"
    for detail in err.get("details", []):
        code = detail.get("errorCode")
        if code == "INVALID_ARGUMENT" and "registration token" in (err.get("message") or "").lower():
            return "messaging/invalid-registration-token"
        if code:
            return _FCM_ERROR_CODES.get(code, "messaging/" + code.lower().replace("_", "-"))
    status = err.get("status") or f"http-{resp.status_code}"
    return "messaging/" + str(status).lower().replace("_", "-")

class FcmPushClient:
    """Native transport: FCM HTTP v1, one request per token, sent concurrently."""

    def __init__(
        self,
        *,
        project_id: str | None,
        access_token: str | None,
        base_url: str = "https://fcm.googleapis.com",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._project_id = project_id
        self._access_token = access_token
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def send_multicast(self, tokens: list[str], *, title: str, body: str, data: dict[str, str]) -> MulticastResult:
        if not self._project_id or not self._access_token:
            raise RuntimeError("FCM transport is not configured (FCM_PROJECT_ID / FCM_ACCESS_TOKEN)")
        url = f"{self._base_url}/v1/projects/{self._project_id}/messages:send"
        headers = {"Authorization": f"Bearer {self._access_token}", "Content-Type": "application/json"}
        async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
            responses = await asyncio.gather(*(
                self._send_one(client, url, headers, t, title=title, body=body, data=data) for t in tokens
            ))
        return MulticastResult(list(responses))

    async def _send_one(self, client: httpx.AsyncClient, url: str, headers: dict, token: str, *, title: str, body: str, data: dict[str, str]) -> SendResponse:
        message = {
            "message": {
                "token": token,
                "notification": {"title": title, "body": body},
                "data": {k: str(v) for k, v in data.items()},
            }
        }
        try:
            r = await client.post(url, json=message, headers=headers)
        except httpx.HTTPError as e:
            logger.warning("FCM request failed: %s", e)
            return SendResponse(token, False, "messaging/internal-error")
        if r.is_success:
            return SendResponse(token, True)
        return SendResponse(token, False, _fcm_error_code(r))

class ExpoPushClient:
    """Bridge transport: one POST for all tokens, outcome only at HTTP-status granularity."""

    def __init__(self, *, url: str = "https://exp.host/--/api/v2/push/send", timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None):
        self._url = url
        self._timeout = timeout
        self._transport = transport

    async def send_multicast(self, tokens: list[str], *, title: str, body: str, data: dict[str, str]) -> MulticastResult:
        messages = [{"to": t, "title": title, "body": body, "data": data or {}} for t in tokens]
        async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
            r = await client.post(self._url, json=messages, headers={"Content-Type": "application/json"})
        if not r.is_success:
            logger.error("Expo push API failed with status %s", r.status_code)
            return MulticastResult([SendResponse(t, False, f"http-{r.status_code}") for t in tokens])
        return MulticastResult([SendResponse(t, True) for t in tokens])
