"""Tests for configuration system.

Tests the configuration module's ability to:
- Load settings from environment variables
- Use sensible defaults when not configured
- Validate configuration values
- Provide configuration to the bridge through providers
"""

from __future__ import annotations

import logging
import os
from collections.abc import Generator
from unittest import mock

import pytest
from pydantic import ValidationError

from mindplus_bridge.config import (
    BridgeConfig,
    EnvConfigProvider,
    StaticConfigProvider,
    get_config,
    reset_config,
    set_config,
)
from mindplus_bridge.protocol import DEFAULT_PORT, MAX_MESSAGE_SIZE, SCHEMA_VERSION


# ==============================================================================
# Test Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def clean_env() -> Generator[None, None, None]:
    """Clean MPB_ environment variables before and after each test."""
    original_env = {k: v for k, v in os.environ.items() if k.startswith("MPB_")}

    reset_config()
    for key in original_env:
        del os.environ[key]

    yield

    for key in list(os.environ.keys()):
        if key.startswith("MPB_"):
            del os.environ[key]
    os.environ.update(original_env)

    reset_config()


# ==============================================================================
# Happy Path Tests
# ==============================================================================


class TestConfigHappyPath:
    """Tests for normal configuration operation."""

    def test_default_values(self) -> None:
        """Defaults work when no config is set."""
        config = BridgeConfig()

        assert config.enabled is True
        assert config.host == "127.0.0.1"
        assert config.port == DEFAULT_PORT
        assert config.bind is True
        assert config.schema_version == SCHEMA_VERSION
        assert config.inbound_capacity == 256
        assert config.outbound_capacity == 256
        assert config.sampling_interval == 1
        assert config.heartbeat_timeout_ticks == 100
        assert config.reconnect_delay == 1.0
        assert config.max_reconnect_delay == 10.0
        assert config.max_reconnect_attempts == 5
        assert config.retry_window_seconds == 5.0
        assert config.max_message_size == MAX_MESSAGE_SIZE
        assert config.cleanup_stale_port is False
        assert config.log_level == "INFO"
        assert config.debug_logging is False

    def test_env_override(self) -> None:
        """Environment variables override defaults."""
        os.environ["MPB_PORT"] = "6100"
        os.environ["MPB_SAMPLING_INTERVAL"] = "10"
        os.environ["MPB_ENABLED"] = "false"

        config = BridgeConfig()

        assert config.port == 6100
        assert config.sampling_interval == 10
        assert config.enabled is False

    def test_log_level_normalized(self) -> None:
        os.environ["MPB_LOG_LEVEL"] = "debug"

        assert BridgeConfig().log_level == "DEBUG"

    def test_endpoint(self) -> None:
        assert BridgeConfig(port=6000).endpoint == "tcp://127.0.0.1:6000"
        assert BridgeConfig(host="0.0.0.0", port=6000).endpoint == "tcp://*:6000"
        assert (
            BridgeConfig(host="10.0.0.2", port=6000, bind=False).endpoint
            == "tcp://10.0.0.2:6000"
        )

    def test_debug_logging_forces_debug(self) -> None:
        config = BridgeConfig(log_level="WARNING", debug_logging=True)

        assert config.effective_log_level == "DEBUG"
        with mock.patch("logging.basicConfig") as basic_config:
            config.setup_logging()
        assert basic_config.call_args.kwargs["level"] == logging.DEBUG

    def test_setup_logging_uses_level(self) -> None:
        config = BridgeConfig(log_level="ERROR")

        with mock.patch("logging.basicConfig") as basic_config:
            config.setup_logging()

        kwargs = basic_config.call_args.kwargs
        assert kwargs["level"] == logging.ERROR
        assert kwargs["format"] == (
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    def test_to_dict(self) -> None:
        data = BridgeConfig(port=6200).to_dict()

        assert data["port"] == 6200
        assert "retry_window_seconds" in data


# ==============================================================================
# Validation Tests
# ==============================================================================


class TestConfigValidation:
    """Tests for invalid configuration."""

    @pytest.mark.parametrize("port", [0, 70000])
    def test_invalid_port(self, port: int) -> None:
        with pytest.raises(ValidationError):
            BridgeConfig(port=port)

    def test_invalid_port_from_env(self) -> None:
        os.environ["MPB_PORT"] = "not-a-port"

        with pytest.raises(ValidationError):
            BridgeConfig()

    @pytest.mark.parametrize(
        "field", ["inbound_capacity", "outbound_capacity", "sampling_interval"]
    )
    def test_zero_sizes_rejected(self, field: str) -> None:
        with pytest.raises(ValidationError):
            BridgeConfig(**{field: 0})

    def test_invalid_log_level(self) -> None:
        with pytest.raises(ValidationError):
            BridgeConfig(log_level="LOUD")

    def test_backoff_cap_below_base(self) -> None:
        """max_reconnect_delay must not be below reconnect_delay."""
        with pytest.raises(ValidationError, match="max_reconnect_delay"):
            BridgeConfig(reconnect_delay=5.0, max_reconnect_delay=1.0)

    def test_frozen(self) -> None:
        """Configuration cannot change once loaded."""
        config = BridgeConfig()

        with pytest.raises(ValidationError):
            config.port = 6000  # type: ignore[misc]


# ==============================================================================
# Singleton and Providers
# ==============================================================================


class TestSingleton:
    """Tests for get_config/set_config/reset_config."""

    def test_get_config_caches(self) -> None:
        assert get_config() is get_config()

    def test_set_config(self) -> None:
        custom = BridgeConfig(port=6300)
        set_config(custom)

        assert get_config() is custom

    def test_reset_config_reloads(self) -> None:
        first = get_config()
        os.environ["MPB_PORT"] = "6400"
        reset_config()

        second = get_config()

        assert second is not first
        assert second.port == 6400


class TestProviders:
    """Tests for configuration providers."""

    def test_env_provider_reads_environment(self) -> None:
        os.environ["MPB_HEARTBEAT_TIMEOUT_TICKS"] = "40"

        config = EnvConfigProvider().load()

        assert config.heartbeat_timeout_ticks == 40

    def test_static_provider_overrides(self) -> None:
        provider = StaticConfigProvider(port=6500, sampling_interval=4)

        config = provider.load()

        assert config.port == 6500
        assert config.sampling_interval == 4
        assert provider.load() is config

    def test_static_provider_merges_into_config(self) -> None:
        base = BridgeConfig(port=6600)

        config = StaticConfigProvider(base, enabled=False).load()

        assert config.port == 6600
        assert config.enabled is False

    def test_static_provider_validates_overrides(self) -> None:
        with pytest.raises(ValidationError):
            StaticConfigProvider(BridgeConfig(), port=0)
