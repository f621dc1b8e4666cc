"""Tests for the host adapter."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from mindplus_bridge.config import StaticConfigProvider
from mindplus_bridge.errors import FatalInitError
from mindplus_bridge.mock import MockSimulation
from mindplus_bridge.mod import OptimizerBridgeMod
from mindplus_bridge.transport import ChannelState, TransportChannel


class TestLifecycle:
    """Tests for initialize/on_tick/shutdown."""

    def test_runs_ticks(self, free_port: int) -> None:
        simulation = MockSimulation.with_entities(2)

        with OptimizerBridgeMod(StaticConfigProvider(port=free_port)) as bridge:
            assert bridge.enabled
            assert bridge.transport is not None
            assert bridge.transport.state is ChannelState.OPEN

            report = bridge.on_tick(1, simulation)

            assert report is not None
            assert report.tick == 1
            assert report.snapshot is not None
            transport = bridge.transport

        assert transport.state is ChannelState.CLOSED
        assert bridge.transport is None
        assert bridge.on_tick(2, simulation) is None

    def test_uses_config_values(self, free_port: int) -> None:
        provider = StaticConfigProvider(
            port=free_port, inbound_capacity=3, sampling_interval=7
        )

        with OptimizerBridgeMod(provider) as bridge:
            assert bridge.inbound is not None and bridge.inbound.capacity == 3
            assert bridge.synchronizer is not None
            assert bridge.synchronizer.sampling_interval == 7

    def test_disabled_is_noop(self) -> None:
        """enabled=False initializes without opening a socket."""
        bridge = OptimizerBridgeMod(StaticConfigProvider(enabled=False))

        bridge.initialize()

        assert not bridge.enabled
        assert bridge.transport is None
        assert bridge.on_tick(1, MockSimulation()) is None
        bridge.shutdown()

    def test_on_tick_before_initialize(self) -> None:
        bridge = OptimizerBridgeMod(StaticConfigProvider(enabled=False))

        assert bridge.on_tick(1, MockSimulation()) is None

    def test_initialize_twice(self, free_port: int) -> None:
        bridge = OptimizerBridgeMod(StaticConfigProvider(port=free_port))
        bridge.initialize()
        try:
            transport = bridge.transport
            bridge.initialize()
            assert bridge.transport is transport
        finally:
            bridge.shutdown()

    def test_shutdown_twice(self, free_port: int) -> None:
        bridge = OptimizerBridgeMod(StaticConfigProvider(port=free_port))
        bridge.initialize()

        bridge.shutdown()
        bridge.shutdown()

        assert bridge.transport is None


class TestErrors:
    """Tests for startup failures."""

    def test_fatal_init_propagates(self) -> None:
        bridge = OptimizerBridgeMod(StaticConfigProvider())

        with patch.object(
            TransportChannel, "start", side_effect=FatalInitError("port busy")
        ):
            with pytest.raises(FatalInitError, match="port busy"):
                bridge.initialize()

        assert bridge.config is None
        assert not bridge.enabled

    def test_cleans_stale_port_when_configured(self, free_port: int) -> None:
        provider = StaticConfigProvider(port=free_port, cleanup_stale_port=True)

        with patch("mindplus_bridge.mod.cleanup_stale_port") as cleanup:
            with OptimizerBridgeMod(provider):
                pass

        cleanup.assert_called_once_with("127.0.0.1", free_port)

    def test_no_cleanup_by_default(self, free_port: int) -> None:
        with patch("mindplus_bridge.mod.cleanup_stale_port") as cleanup:
            with OptimizerBridgeMod(StaticConfigProvider(port=free_port)):
                pass

        cleanup.assert_not_called()
