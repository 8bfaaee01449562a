"""
Engine configuration using 12-factor environment variables.
"""
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AttachmentLimits(BaseModel):
    """Ceilings enforced by the attach and send mutations."""

    max_count: int = 10
    max_total_bytes: int = 10 * 1024 * 1024
    max_media_bytes: int = 5 * 1024 * 1024


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Clubs Sync Engine")
    app_version: str = Field(default="1.0.0")
    debug: bool = Field(default=False)

    # Session identity (resolved by the host's auth layer)
    user_id: str = Field(default="user123")
    user_name: str = Field(default="User")

    # Local cache
    cache_url: str = Field(default="sqlite:///./data/clubsync.db")
    applied_op_history: int = Field(default=500, ge=1, description="Recent op ids remembered per room")

    # Network collaborator
    api_base_url: str = Field(default="http://localhost:3000")
    api_timeout_seconds: float = Field(default=10.0)

    # Realtime channel
    reconnect_attempts: int = Field(default=3, ge=0)
    reconnect_delay_seconds: float = Field(default=1.0, ge=0)
    reconnect_backoff: float = Field(default=1.0, ge=1.0, description="Delay multiplier per attempt; 1.0 means fixed delay")
    delivery_mode: str = Field(default="fire_and_forget")  # fire_and_forget or ack
    dedup_window_size: int = Field(default=1000, ge=1)

    # Rate limiting
    rate_limit_window_seconds: float = Field(default=60.0, gt=0)
    rate_limit_max_actions: int = Field(default=30, ge=1)

    # Attachments
    max_attachments_per_message: int = Field(default=10, ge=0)
    max_attachment_bytes: int = Field(default=10 * 1024 * 1024, ge=0)
    max_media_bytes: int = Field(default=5 * 1024 * 1024, ge=0)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")  # json or text

    @property
    def is_ack_delivery(self) -> bool:
        """Whether channel sends wait for a transport acknowledgement."""
        return self.delivery_mode.lower() == "ack"

    @property
    def attachment_limits(self) -> AttachmentLimits:
        return AttachmentLimits(
            max_count=self.max_attachments_per_message,
            max_total_bytes=self.max_attachment_bytes,
            max_media_bytes=self.max_media_bytes,
        )


@lru_cache()
def get_settings(env_file: Optional[str] = None) -> Settings:
    """Get cached settings instance."""
    if env_file:
        return Settings(_env_file=env_file)
    return Settings()
