"""Configuration management for the MindPlus optimizer bridge.

This module provides centralized configuration with support for:
- Environment variables (primary)
- Sensible defaults for all settings
- Type validation via Pydantic
- Easy testing through config overrides

Environment Variables:
    MPB_ENABLED: Start the bridge at all (default: true)
    MPB_HOST: Address to bind or connect to (default: 127.0.0.1)
    MPB_PORT: TCP port (default: 5590)
    MPB_BIND: Bind the ROUTER socket instead of connecting (default: true)
    MPB_SAMPLING_INTERVAL: Ticks between snapshots (default: 1)
    MPB_LOG_LEVEL: Logging level (default: INFO)
    MPB_DEBUG_LOGGING: Force DEBUG logging (default: false)

Usage:
    from mindplus_bridge.config import get_config, BridgeConfig

    # Get the singleton config instance
    config = get_config()

    # For testing, create a custom config
    test_config = BridgeConfig(port=5999, sampling_interval=10)
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Literal, Protocol

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mindplus_bridge.protocol import (
    DEFAULT_HEARTBEAT_TIMEOUT_TICKS,
    DEFAULT_HOST,
    DEFAULT_MAX_RECONNECT_ATTEMPTS,
    DEFAULT_MAX_RECONNECT_DELAY,
    DEFAULT_PORT,
    DEFAULT_QUEUE_CAPACITY,
    DEFAULT_RECONNECT_DELAY,
    DEFAULT_RETRY_WINDOW,
    MAX_MESSAGE_SIZE,
    SCHEMA_VERSION,
    format_endpoint,
)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class BridgeConfig(BaseSettings):
    """Bridge configuration with environment variable support.

    All settings can be overridden via environment variables prefixed with
    MPB_. For example, MPB_PORT=5999 sets port to 5999. Instances are frozen:
    the bridge reads its configuration once at initialization.

    Attributes:
        enabled: When False the bridge initializes as a no-op
        host: Address for the ROUTER socket
        port: TCP port for the ROUTER socket
        bind: Bind to host:port when True, connect when False
        schema_version: Envelope schema version accepted from peers
        inbound_capacity: Commands buffered between transport and tick loop
        outbound_capacity: Messages buffered between tick loop and transport
        sampling_interval: A snapshot is taken every N ticks
        heartbeat_timeout_ticks: Ticks of silence before a session goes stale
        reconnect_delay: Base reconnect backoff in seconds
        max_reconnect_delay: Reconnect backoff cap in seconds
        max_reconnect_attempts: Reconnect attempts before giving up
        retry_window_seconds: Queued outbound messages older than this are dropped
        max_message_size: Largest accepted frame body in bytes
        cleanup_stale_port: Terminate a stale process holding the port at startup
        tick_rate: Ticks per second for the standalone mock host
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        debug_logging: Force DEBUG logging regardless of log_level
    """

    model_config = SettingsConfigDict(
        env_prefix="MPB_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    enabled: bool = Field(default=True, description="Start the bridge at all")

    # Network configuration
    host: str = Field(
        default=DEFAULT_HOST,
        description="Address to bind or connect the ROUTER socket to",
    )
    port: int = Field(
        default=DEFAULT_PORT,
        ge=1,
        le=65535,
        description="TCP port for the ROUTER socket",
    )
    bind: bool = Field(
        default=True,
        description="Bind the socket when true, connect to the optimizer when false",
    )
    schema_version: int = Field(
        default=SCHEMA_VERSION,
        ge=0,
        le=0xFFFF,
        description="Envelope schema version accepted from peers",
    )
    max_message_size: int = Field(
        default=MAX_MESSAGE_SIZE,
        ge=1024,
        description="Largest accepted frame body (bytes)",
    )

    # Queues and sampling
    inbound_capacity: int = Field(
        default=DEFAULT_QUEUE_CAPACITY,
        ge=1,
        description="Commands buffered between transport and tick loop",
    )
    outbound_capacity: int = Field(
        default=DEFAULT_QUEUE_CAPACITY,
        ge=1,
        description="Messages buffered between tick loop and transport",
    )
    sampling_interval: int = Field(
        default=1,
        ge=1,
        description="Take a snapshot every N ticks",
    )
    heartbeat_timeout_ticks: int = Field(
        default=DEFAULT_HEARTBEAT_TIMEOUT_TICKS,
        ge=1,
        description="Ticks without traffic before a session goes stale",
    )

    # Reconnect configuration
    reconnect_delay: float = Field(
        default=DEFAULT_RECONNECT_DELAY,
        gt=0,
        description="Base reconnect backoff (seconds)",
    )
    max_reconnect_delay: float = Field(
        default=DEFAULT_MAX_RECONNECT_DELAY,
        gt=0,
        description="Reconnect backoff cap (seconds)",
    )
    max_reconnect_attempts: int = Field(
        default=DEFAULT_MAX_RECONNECT_ATTEMPTS,
        ge=1,
        description="Reconnect attempts before reporting a persistent disconnect",
    )
    retry_window_seconds: float = Field(
        default=DEFAULT_RETRY_WINDOW,
        gt=0,
        description="Outbound messages older than this are dropped (seconds)",
    )

    # Startup and mock host
    cleanup_stale_port: bool = Field(
        default=False,
        description="Terminate a stale process holding the bind port at startup",
    )
    tick_rate: float = Field(
        default=20.0,
        gt=0,
        description="Ticks per second when running the standalone mock host",
    )

    # Logging configuration
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    debug_logging: bool = Field(
        default=False,
        description="Force DEBUG logging",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        """Normalize log level to uppercase."""
        if isinstance(v, str):
            return v.upper()
        return v

    @model_validator(mode="after")
    def validate_reconnect_delays(self) -> BridgeConfig:
        """Validate that the backoff cap is not below the base delay."""
        if self.max_reconnect_delay < self.reconnect_delay:
            raise ValueError(
                "max_reconnect_delay must be >= reconnect_delay. "
                "Check MPB_RECONNECT_DELAY and MPB_MAX_RECONNECT_DELAY."
            )
        return self

    @property
    def endpoint(self) -> str:
        """The ZeroMQ endpoint derived from host, port and bind."""
        return format_endpoint(self.host, self.port, bind=self.bind)

    @property
    def effective_log_level(self) -> str:
        """log_level, or DEBUG when debug_logging is set."""
        return "DEBUG" if self.debug_logging else self.log_level

    def setup_logging(self) -> None:
        """Configure logging based on config settings."""
        # stderr keeps stdout free for the host's own output
        logging.basicConfig(
            level=getattr(logging, self.effective_log_level, logging.INFO),
            format=LOG_FORMAT,
            stream=sys.stderr,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary for logging/debugging.

        Returns:
            Dictionary of all config values
        """
        return self.model_dump()


class ConfigProvider(Protocol):
    """Source of bridge configuration, read once at initialization."""

    def load(self) -> BridgeConfig:
        """Return the configuration to use."""
        ...


class EnvConfigProvider:
    """Loads configuration from MPB_* environment variables and .env."""

    def load(self) -> BridgeConfig:
        return BridgeConfig()


class StaticConfigProvider:
    """Provides a fixed configuration, for tests and embedding hosts."""

    def __init__(self, config: BridgeConfig | None = None, **overrides: Any) -> None:
        if config is None:
            config = BridgeConfig(**overrides)
        elif overrides:
            config = BridgeConfig(**{**config.model_dump(), **overrides})
        self._config = config

    def load(self) -> BridgeConfig:
        return self._config


# Module-level singleton instance
_config_instance: BridgeConfig | None = None


def get_config() -> BridgeConfig:
    """Get the singleton configuration instance.

    Creates the config on first call, caching it for subsequent calls.
    The config is loaded from environment variables and optional .env file.

    Returns:
        The BridgeConfig singleton instance

    Note:
        For testing, use set_config() to inject a test configuration,
        or call reset_config() to force reloading from environment.
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = BridgeConfig()
    return _config_instance


def set_config(config: BridgeConfig) -> None:
    """Set the configuration instance (primarily for testing).

    Args:
        config: BridgeConfig instance to use as the singleton
    """
    global _config_instance
    _config_instance = config


def reset_config() -> None:
    """Reset the configuration singleton.

    Forces the next get_config() call to reload from environment.
    """
    global _config_instance
    _config_instance = None
