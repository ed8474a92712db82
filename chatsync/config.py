import os
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class Settings(BaseModel):

    mongo_url: str = "mongodb://localhost:27017"
    mongo_db: str = "chat"
    redis_url: Optional[str] = None

    user_id: str = ""
    club_ids: List[str] = Field(default_factory=list)
    state_path: str = "chatsync_state.json"

    debounce_ms: int = Field(500, ge=0)
    batch_size: int = Field(10, ge=1)
    max_retries: int = Field(3, ge=0)
    remote_attempts: int = Field(1, ge=1)

    active_ttl_s: float = Field(300.0, gt=0)

    health_interval_s: float = Field(15.0, gt=0)
    silence_window_s: float = Field(30.0, gt=0)
    reset_cooldown_s: float = Field(2.0, ge=1.0, le=3.0)
    max_failed_resets: int = Field(3, ge=1)

    reconcile_interval_s: float = Field(300.0, gt=0)
    reconcile_timeout_s: float = Field(10.0, gt=0)

    log_level: str = "INFO"

    @field_validator("club_ids", mode="before")
    @classmethod
    def _split_club_ids(cls, value):
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @classmethod
    def from_env(cls) -> "Settings":
        env = {
            "mongo_url": os.getenv("MONGO_URL"),
            "mongo_db": os.getenv("MONGO_DB"),
            "redis_url": os.getenv("REDIS_URL"),
            "user_id": os.getenv("CHATSYNC_USER_ID"),
            "club_ids": os.getenv("CHATSYNC_CLUB_IDS"),
            "state_path": os.getenv("CHATSYNC_STATE_PATH"),
            "debounce_ms": os.getenv("CHATSYNC_DEBOUNCE_MS"),
            "batch_size": os.getenv("CHATSYNC_BATCH_SIZE"),
            "max_retries": os.getenv("CHATSYNC_MAX_RETRIES"),
            "remote_attempts": os.getenv("CHATSYNC_REMOTE_ATTEMPTS"),
            "active_ttl_s": os.getenv("CHATSYNC_ACTIVE_TTL_S"),
            "health_interval_s": os.getenv("CHATSYNC_HEALTH_INTERVAL_S"),
            "silence_window_s": os.getenv("CHATSYNC_SILENCE_WINDOW_S"),
            "reset_cooldown_s": os.getenv("CHATSYNC_RESET_COOLDOWN_S"),
            "max_failed_resets": os.getenv("CHATSYNC_MAX_FAILED_RESETS"),
            "reconcile_interval_s": os.getenv("CHATSYNC_RECONCILE_INTERVAL_S"),
            "reconcile_timeout_s": os.getenv("CHATSYNC_RECONCILE_TIMEOUT_S"),
            "log_level": os.getenv("CHATSYNC_LOG_LEVEL"),
        }
        # unset variables fall back to the field defaults
        return cls(**{k: v for k, v in env.items() if v is not None and v != ""})

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000.0

    @property
    def active_ttl_ms(self) -> int:
        return int(self.active_ttl_s * 1000)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings
