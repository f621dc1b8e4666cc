"""Host adapter: the object a game host holds to run the bridge.

The host calls initialize() once at startup, on_tick() from its simulation
thread once per tick and shutdown() on exit. Only FatalInitError escapes
to the host.
"""

from __future__ import annotations

import logging

from mindplus_bridge.config import BridgeConfig, ConfigProvider, EnvConfigProvider
from mindplus_bridge.errors import FatalInitError
from mindplus_bridge.queues import InboundQueue, OutboundQueue
from mindplus_bridge.session import SessionRegistry
from mindplus_bridge.startup import cleanup_stale_port
from mindplus_bridge.synchronizer import (
    SimulationAccessor,
    TickReport,
    TickSynchronizer,
)
from mindplus_bridge.transport import TransportChannel

logger = logging.getLogger(__name__)


class OptimizerBridgeMod:
    """Wires configuration, queues, sessions, synchronizer and transport.

    Usage:
        with OptimizerBridgeMod() as bridge:
            while running:
                world.tick()
                bridge.on_tick(world.tick_number, accessor)
    """

    def __init__(self, provider: ConfigProvider | None = None) -> None:
        self._provider = provider if provider is not None else EnvConfigProvider()
        self.config: BridgeConfig | None = None
        self.inbound: InboundQueue | None = None
        self.outbound: OutboundQueue | None = None
        self.registry: SessionRegistry | None = None
        self.synchronizer: TickSynchronizer | None = None
        self.transport: TransportChannel | None = None

    @property
    def enabled(self) -> bool:
        """True once initialized with the bridge enabled."""
        return self.synchronizer is not None

    def initialize(self) -> None:
        """Read configuration and start the transport.

        Raises:
            FatalInitError: If the transport cannot open its socket
        """
        if self.config is not None:
            return

        config = self._provider.load()
        self.config = config
        if not config.enabled:
            logger.info("Optimizer bridge disabled by configuration")
            return

        logger.debug("Bridge config: %s", config.to_dict())
        if config.cleanup_stale_port and config.bind:
            cleanup_stale_port(config.host, config.port)

        inbound = InboundQueue(config.inbound_capacity)
        outbound = OutboundQueue(config.outbound_capacity)
        registry = SessionRegistry(config.heartbeat_timeout_ticks)
        transport = TransportChannel.from_config(config, inbound, outbound, registry)
        try:
            transport.start()
        except FatalInitError:
            self.config = None
            raise

        self.inbound = inbound
        self.outbound = outbound
        self.registry = registry
        self.transport = transport
        self.synchronizer = TickSynchronizer(
            registry,
            inbound,
            outbound,
            sampling_interval=config.sampling_interval,
        )
        logger.info(
            "Optimizer bridge ready on %s (schema v%d, snapshot every %d tick(s))",
            config.endpoint,
            config.schema_version,
            config.sampling_interval,
        )

    def on_tick(self, tick: int, accessor: SimulationAccessor) -> TickReport | None:
        """Run one synchronization step from the host's simulation thread.

        Returns:
            The step's TickReport, or None when the bridge is not running
        """
        if self.synchronizer is None:
            return None
        return self.synchronizer.on_tick(tick, accessor)

    def shutdown(self) -> None:
        """Stop the transport and release the socket. Safe to call twice."""
        if self.transport is not None:
            self.transport.stop()
            logger.info("Optimizer bridge shut down")
        self.transport = None
        self.synchronizer = None
        self.config = None

    def __enter__(self) -> OptimizerBridgeMod:
        self.initialize()
        return self

    def __exit__(self, *exc: object) -> None:
        self.shutdown()
