from __future__ import annotations
from pydantic_settings import BaseSettings
from pydantic import Field

class Settings(BaseSettings):
    auth_jwks_url: str = Field("http://localhost:8001/.well-known/jwks.json", alias="AUTH_JWKS_URL")
    token_issuer: str = Field("authentication-svc", alias="TOKEN_ISSUER")

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # Credentials
    credential_ttl_hours: int = Field(default=24, alias="CREDENTIAL_TTL_HOURS")
    credential_history_limit: int = Field(default=10, alias="CREDENTIAL_HISTORY_LIMIT")
    profile_debounce_seconds: float = Field(default=2.0, alias="PROFILE_DEBOUNCE_SECONDS")

    # Redis (secrets, current/history credentials, replay guard, rate limit)
    redis_url: str = Field("redis://127.0.0.1:6379/0", alias="REDIS_URL")
    rl_enabled: bool = Field(default=True, alias="RL_ENABLED")
    rl_window_seconds: int = Field(default=60, alias="RL_WINDOW_SECONDS")
    rl_max_reqs: int = Field(default=60, alias="RL_MAX_REQS")

    # NATS: users/{uid} updates drive auto-regeneration
    nats_urls: str = Field("nats://127.0.0.1:4222", alias="NATS_URLS")
    nats_subject_changes: str = Field("docstore.changes", alias="NATS_SUBJECT_CHANGES")
    nats_queue_group: str = Field("credential-svc", alias="NATS_QUEUE_GROUP")
    enable_profile_watch: bool = Field(default=True, alias="ENABLE_PROFILE_WATCH")

    class Config:
        env_file = ".env"
        env_prefix = ""
        case_sensitive = False

_settings: Settings | None = None
def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
