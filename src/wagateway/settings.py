from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict

from .config import (
    GatewayConfig,
    MediaConfig,
    QueueConfig,
    ReconnectConfig,
    SchedulerConfig,
    WebhookConfig,
)


class Settings(BaseSettings):
    SUPABASE_URL: str = ""
    SUPABASE_KEY: str = ""
    MEDIA_BUCKET: str = "chat-media"

    LOG_LEVEL: str = "INFO"

    QUEUE_CONCURRENCY: int = 10
    RECONNECT_STEP_S: float = 2.0
    RECONNECT_CAP_S: float = 60.0
    REMINDER_INTERVAL_S: float = 60.0
    WEBHOOK_TIMEOUT_S: float = 3.0
    RESTORE_STAGGER_S: float = 2.5

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    def to_config(self) -> GatewayConfig:
        return GatewayConfig(
            reconnect=ReconnectConfig(step_s=self.RECONNECT_STEP_S, cap_s=self.RECONNECT_CAP_S),
            queue=QueueConfig(concurrency=self.QUEUE_CONCURRENCY),
            media=MediaConfig(bucket=self.MEDIA_BUCKET),
            webhook=WebhookConfig(timeout_s=self.WEBHOOK_TIMEOUT_S),
            scheduler=SchedulerConfig(interval_s=self.REMINDER_INTERVAL_S),
            restore_stagger_s=self.RESTORE_STAGGER_S,
        )
