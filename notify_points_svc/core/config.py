from __future__ import annotations
from pydantic_settings import BaseSettings
from pydantic import Field

class Settings(BaseSettings):
    # Document store: "sql" (DATABASE_URL) or "memory" (single-process dev)
    store_backend: str = Field("sql", alias="STORE_BACKEND")
    database_url: str = Field("sqlite+aiosqlite:///./notify_points.db", alias="DATABASE_URL")
    store_max_batch_writes: int = Field(500, alias="STORE_MAX_BATCH_WRITES")
    store_transaction_attempts: int = Field(5, alias="STORE_TRANSACTION_ATTEMPTS")

    auth_jwks_url: str = Field("http://localhost:8001/.well-known/jwks.json", alias="AUTH_JWKS_URL")
    token_issuer: str = Field("authentication-svc", alias="TOKEN_ISSUER")

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # Bulk writes stay under the store ceiling
    batch_write_limit: int = Field(450, alias="BATCH_WRITE_LIMIT")

    # Push transports
    fcm_project_id: str | None = Field(default=None, alias="FCM_PROJECT_ID")
    fcm_access_token: str | None = Field(default=None, alias="FCM_ACCESS_TOKEN")
    fcm_base_url: str = Field("https://fcm.googleapis.com", alias="FCM_BASE_URL")
    fcm_multicast_limit: int = Field(500, alias="FCM_MULTICAST_LIMIT")
    expo_push_url: str = Field("https://exp.host/--/api/v2/push/send", alias="EXPO_PUSH_URL")
    push_timeout_seconds: float = Field(10.0, alias="PUSH_TIMEOUT_SECONDS")

    # Triggers: "nats" publishes change events and consumes them; "inline" dispatches in-process
    trigger_transport: str = Field("inline", alias="TRIGGER_TRANSPORT")
    nats_urls: str = Field("nats://127.0.0.1:4222", alias="NATS_URLS")
    nats_subject_changes: str = Field("docstore.changes", alias="NATS_SUBJECT_CHANGES")
    nats_queue_group: str = Field("notify-points-svc", alias="NATS_QUEUE_GROUP")

    # Timers
    scheduled_sweep_minutes: int = Field(5, alias="SCHEDULED_SWEEP_MINUTES")
    monthly_reset_cron: str = Field("0 0 1 * *", alias="MONTHLY_RESET_CRON")
    monthly_reset_timezone: str = Field("UTC", alias="MONTHLY_RESET_TIMEZONE")
    enable_scheduler: bool = Field(default=True, alias="ENABLE_SCHEDULER")

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
