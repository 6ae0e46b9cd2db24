from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Literal
from pydantic import BaseModel, ConfigDict, Field

# --- push targets / delivery

@dataclass
class PushTargets:
    native: list[tuple[str, str]] = field(default_factory=list)  # (fcm token, user id)
    bridge: list[tuple[str, str]] = field(default_factory=list)  # (expo token, user id)

    @property
    def fcm_tokens(self) -> list[str]:
        return list(dict.fromkeys(t for t, _ in self.native))

    @property
    def expo_tokens(self) -> list[str]:
        return list(dict.fromkeys(t for t, _ in self.bridge))

    @property
    def recipients(self) -> set[str]:
        return {uid for _, uid in self.native} | {uid for _, uid in self.bridge}

    def owners(self, transport: Literal["native", "bridge"]) -> dict[str, list[str]]:
        out: dict[str, list[str]] = {}
        for token, uid in getattr(self, transport):
            out.setdefault(token, []).append(uid)
        return out

@dataclass
class FanOutResult:
    delivered: int = 0
    failed: int = 0
    error: str | None = None
    pruned_tokens: list[str] = field(default_factory=list)

# --- per-user content notifications

class UserNotificationPayload(BaseModel):
    title: str
    description: str
    type: Literal["event", "program"]
    related_id: str
    is_admin_created: bool = True

# --- callable endpoints (validated by the services to surface typed errors)

class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

class EditPointsRequest(_Body):
    target_user_id: Any = Field(default=None, alias="targetUserId")
    delta: Any = None
    reason: str | None = None

class SendTestNotificationRequest(_Body):
    target_user_id: Any = Field(default=None, alias="targetUserId")
    title: str | None = None
    message: str | None = None

class CongratulateRequest(_Body):
    limit: Any = None
