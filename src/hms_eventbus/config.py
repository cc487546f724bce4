"""Strongly typed event bus configuration."""

from __future__ import annotations

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .messaging.rabbitmq import build_connection_url
from .resilience import RetryConfig


class EventBusSettings(BaseSettings):
    """Runtime configuration loaded from environment variables and `.env` files."""

    model_config = SettingsConfigDict(
        env_prefix="EVENTBUS_", env_file=".env", env_nested_delimiter="__", extra="ignore"
    )

    service_name: str = Field(default="hms-service", description="Service identifier")

    # Broker
    connection: str = Field(
        default="localhost", description="Broker host name or full amqp:// URL"
    )
    username: str | None = Field(default=None, description="Broker user name")
    password: str | None = Field(default=None, description="Broker password")
    port: int = Field(default=5672, description="Broker port", ge=1, le=65535)
    virtual_host: str = Field(default="/", description="Broker virtual host")
    retry_count: int = Field(
        default=5, description="Total connect/publish attempts before giving up", ge=1
    )
    retry_initial_delay: float = Field(
        default=1.0, description="Seconds before the first retry", ge=0.0
    )
    retry_multiplier: float = Field(default=2.0, description="Backoff multiplier", ge=1.0)
    retry_max_delay: float = Field(default=30.0, description="Backoff ceiling in seconds", ge=0.0)

    # Bus
    subscription_client_name: str = Field(
        default="", description="Queue name of this service; defaults to service_name"
    )
    exchange_name: str = Field(default="hms_event_bus", description="Topic exchange name")
    prefetch_count: int = Field(default=10, description="Unacknowledged deliveries per consumer", ge=1)
    max_redelivery_count: int = Field(
        default=5, description="Deliveries before a failing message is dead-lettered", ge=1
    )
    dead_letter_enabled: bool = Field(default=True, description="Declare the dead-letter path")
    shutdown_grace_period: float = Field(
        default=30.0, description="Seconds to wait for in-flight work on shutdown", ge=0.0
    )

    # Outbox
    outbox_poll_interval: float = Field(
        default=5.0, description="Seconds between outbox publisher passes", gt=0.0
    )
    outbox_batch_size: int = Field(default=100, description="Entries read per drain query", ge=1)
    outbox_in_progress_timeout: float = Field(
        default=300.0, description="Seconds before an IN_PROGRESS claim can be reclaimed", gt=0.0
    )

    # Storage
    database_url: str = Field(
        default="sqlite+aiosqlite:///./eventbus.db", description="SQLAlchemy async URL"
    )
    database_echo: bool = Field(default=False, description="Echo SQL statements")

    log_level: str = Field(default="INFO", description="Application log level")

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        allowed = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
        upper_value = value.upper()
        if upper_value not in allowed:
            msg = f"Invalid log level '{value}'. Choose one of: {', '.join(sorted(allowed))}."
            raise ValueError(msg)
        return upper_value

    @field_validator("exchange_name")
    @classmethod
    def _validate_exchange_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("exchange_name must not be empty")
        return value

    @model_validator(mode="after")
    def _default_client_name(self) -> EventBusSettings:
        if not self.subscription_client_name:
            self.subscription_client_name = self.service_name
        return self

    @property
    def connection_url(self) -> str:
        """Return the AMQP URL for the configured broker."""
        return build_connection_url(
            self.connection,
            port=self.port,
            username=self.username,
            password=self.password,
            virtual_host=self.virtual_host,
        )

    def retry_config(self) -> RetryConfig:
        """Return the bounded backoff policy for connect and publish."""
        return RetryConfig(
            max_attempts=self.retry_count,
            base_delay=self.retry_initial_delay,
            max_delay=max(self.retry_max_delay, self.retry_initial_delay),
            backoff_multiplier=self.retry_multiplier,
        )
