from __future__ import annotations
from pydantic_settings import BaseSettings
from pydantic import Field

class Settings(BaseSettings):
    database_url: str = Field("sqlite+aiosqlite:///./churchcheck.db", alias="DATABASE_URL")

    # Auth: RS256 via JWKS, or a shared HS256 secret for kiosks / tests
    auth_jwks_url: str | None = Field(default=None, alias="AUTH_JWKS_URL")
    auth_shared_secret: str | None = Field(default=None, alias="AUTH_SHARED_SECRET")
    # checked on RS256 tokens only
    token_issuer: str = Field("authentication-svc", alias="TOKEN_ISSUER")

    # Redis (PIN lookup rate limit)
    redis_url: str = Field("redis://127.0.0.1:6379/0", alias="REDIS_URL")
    rl_enabled: bool = Field(default=True, alias="RL_ENABLED")
    rl_window_seconds: int = Field(default=60, alias="RL_WINDOW_SECONDS")
    rl_max_reqs: int = Field(default=60, alias="RL_MAX_REQS")

    # NATS (CheckedIn events for the label printers)
    nats_urls: str = Field("nats://127.0.0.1:4222", alias="NATS_URLS")
    nats_subject_checkin: str = Field("checkins.opened", alias="NATS_SUBJECT_CHECKIN")
    nats_enabled: bool = Field(default=True, alias="NATS_ENABLED")

    # Kiosk <-> central reconciliation
    central_base_url: str | None = Field(default=None, alias="CENTRAL_BASE_URL")
    central_token: str | None = Field(default=None, alias="CENTRAL_TOKEN")
    sync_org_id: str | None = Field(default=None, alias="SYNC_ORG_ID")
    sync_interval_seconds: int = Field(default=300, alias="SYNC_INTERVAL_SECONDS")
    sync_retention_days: int = Field(default=90, alias="SYNC_RETENTION_DAYS")

    # Check-in engine
    pickup_code_length: int = Field(default=4, alias="PICKUP_CODE_LENGTH")
    pin_assign_retries: int = Field(default=8, alias="PIN_ASSIGN_RETRIES")
    default_streak_reset_days: int = Field(default=7, alias="DEFAULT_STREAK_RESET_DAYS")
    session_max_age_hours: int = Field(default=18, alias="SESSION_MAX_AGE_HOURS")
    sweep_interval_seconds: int = Field(default=900, alias="SWEEP_INTERVAL_SECONDS")
    seed_preset_rewards: bool = Field(default=True, alias="SEED_PRESET_REWARDS")

    log_level: str = Field("INFO", alias="LOG_LEVEL")
    cors_origins: str = Field(
        "http://localhost:5173,http://127.0.0.1:5173,http://localhost:3000,http://127.0.0.1:3000",
        alias="CORS_ORIGINS",
    )

    class Config:
        env_file = ".env"
        env_prefix = ""
        case_sensitive = False

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

_settings: Settings | None = None
def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
