"""Configuration schema using Pydantic."""

import re
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from insightsbot.bot.errors import ConfigError

_TOKEN_PATTERN = re.compile(r"^\d+:[\w-]{20,}$")


class TelegramConfig(BaseModel):
    """Telegram connection configuration."""
    token: str = ""  # Bot token from @BotFather
    mode: Literal["polling", "webhook"] = "polling"
    webhook_url: str | None = None  # Public HTTPS URL registered with Telegram
    webhook_host: str = "0.0.0.0"
    webhook_port: int = 7071
    webhook_secret: str | None = None  # Checked against X-Telegram-Bot-Api-Secret-Token
    poll_timeout: int = 30
    allowed_updates: list[str] = Field(
        default_factory=lambda: ["message", "edited_message", "callback_query"]
    )


class DispatchConfig(BaseModel):
    """Inbound event processing."""
    max_in_flight: int = 32
    handler_timeout: float | None = 60.0  # None disables the per-event deadline
    shutdown_timeout: float = 30.0


class RateLimitConfig(BaseModel):
    """Outbound token bucket (Telegram allows ~30 messages/second per bot)."""
    capacity: int = 30
    refill_rate: float = 30.0  # tokens per second
    acquire_timeout: float = 30.0


class DeliveryConfig(BaseModel):
    """Outbound message shaping and retries."""
    max_message_length: int = 4096
    max_attempts: int = 3
    backoff_base: float = 0.5  # seconds, doubled per attempt


class Config(BaseSettings):
    """Root configuration for insightsbot."""
    model_config = SettingsConfigDict(env_prefix="INSIGHTSBOT_", env_nested_delimiter="__")

    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)

    def validate_for_start(self) -> None:
        """Raise ConfigError if the bot cannot start with these values."""
        token = self.telegram.token
        if not token:
            raise ConfigError("Telegram bot token is not configured")
        if not _TOKEN_PATTERN.match(token):
            raise ConfigError("Telegram bot token is malformed (expected '<id>:<secret>')")
        if self.telegram.mode == "webhook" and not self.telegram.webhook_url:
            raise ConfigError("Webhook mode requires telegram.webhook_url")
        if self.dispatch.max_in_flight <= 0:
            raise ConfigError("dispatch.max_in_flight must be positive")
        if self.rate_limit.capacity <= 0 or self.rate_limit.refill_rate <= 0:
            raise ConfigError("rate_limit.capacity and rate_limit.refill_rate must be positive")
        if self.delivery.max_message_length <= 0:
            raise ConfigError("delivery.max_message_length must be positive")
        if self.delivery.max_attempts <= 0:
            raise ConfigError("delivery.max_attempts must be positive")
