from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field

from .constants import BROWSER_USER_AGENT


@dataclass(slots=True)
class ReconnectConfig:
    step_s: float = 2.0
    cap_s: float = 60.0

    def delay_for(self, attempt: int) -> float:
        return min(attempt * self.step_s, self.cap_s)


@dataclass(slots=True)
class QueueConfig:
    concurrency: int = 10


@dataclass(slots=True)
class HistoryConfig:
    months_limit: int = 8
    per_chat_limit: int = 10
    contact_batch_size: int = 25
    contact_batch_pause_s: float = 0.2
    chat_pause_s: float = 0.05
    download_media: bool = True
    profile_pic_timeout_s: float = 10.0


@dataclass(slots=True)
class SenderConfig:
    initial_delay_s: tuple[float, float] = (0.3, 0.8)
    per_char_s: float = 0.1
    max_typing_s: float = 10.0
    default_typing_s: float = 2.0
    recording_s: tuple[float, float] = (3.0, 6.0)
    strict_recipient_check: bool = False


@dataclass(slots=True)
class MediaConfig:
    bucket: str = "chat-media"
    download_timeout_s: float = 30.0
    user_agent: str = BROWSER_USER_AGENT


@dataclass(slots=True)
class WebhookConfig:
    timeout_s: float = 3.0
    max_logged_body: int = 1000


@dataclass(slots=True)
class SchedulerConfig:
    interval_s: float = 60.0
    lookahead_s: float = 24 * 60 * 60
    confirmation_window_s: float = 60 * 60
    margin_s: float = 2 * 60
    # Zone used to render [date] and [time] in templates.
    tz: dt.tzinfo = dt.timezone.utc


@dataclass(slots=True)
class PresenceConfig:
    debounce_s: float = 60.0


@dataclass(slots=True)
class GatewayConfig:
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    sender: SenderConfig = field(default_factory=SenderConfig)
    media: MediaConfig = field(default_factory=MediaConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    presence: PresenceConfig = field(default_factory=PresenceConfig)

    restore_stagger_s: float = 2.5
    # Short-lived dedup windows.
    message_dedup_ttl_s: float = 10.0
    lead_lock_ttl_s: float = 2.0
    profile_pic_max_age_s: float = 24 * 60 * 60
