"""Run the bridge against the mock simulation.

Usage:
    python -m mindplus_bridge

Environment Variables:
    MPB_HOST: Address to bind (default: 127.0.0.1)
    MPB_PORT: TCP port (default: 5590)
    MPB_TICK_RATE: Mock ticks per second (default: 20)
    MPB_SAMPLING_INTERVAL: Ticks between snapshots (default: 1)
    MPB_LOG_LEVEL: Logging level (default: INFO)
    MPB_MOCK_ENTITIES: Number of mock entities (default: 8)
"""

from __future__ import annotations

import logging
import os
import sys
import time

from pydantic import ValidationError

from mindplus_bridge import __version__
from mindplus_bridge.config import StaticConfigProvider, get_config
from mindplus_bridge.errors import FatalInitError
from mindplus_bridge.mock import MockSimulation
from mindplus_bridge.mod import OptimizerBridgeMod

logger = logging.getLogger(__name__)


def run_mock_host(
    bridge: OptimizerBridgeMod,
    simulation: MockSimulation,
    tick_rate: float,
    max_ticks: int | None = None,
) -> int:
    """Drive the bridge from a fixed-rate tick loop.

    Args:
        bridge: An initialized bridge
        simulation: The mock world to tick
        tick_rate: Ticks per second
        max_ticks: Stop after this many ticks (run forever when None)

    Returns:
        The number of ticks run
    """
    period = 1.0 / tick_rate
    tick = 0
    next_deadline = time.monotonic()
    while max_ticks is None or tick < max_ticks:
        tick += 1
        simulation.step()
        bridge.on_tick(tick, simulation)

        next_deadline += period
        delay = next_deadline - time.monotonic()
        if delay > 0:
            time.sleep(delay)
        else:
            # Fell behind, don't try to catch up
            next_deadline = time.monotonic()
    return tick


def main() -> int:
    """Main entry point."""
    try:
        config = get_config()
    except ValidationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    config.setup_logging()

    entity_count = int(os.environ.get("MPB_MOCK_ENTITIES", "8"))
    simulation = MockSimulation.with_entities(entity_count)

    print(f"MindPlus optimizer bridge v{__version__} (mock host)", file=sys.stderr)
    print(f"  Endpoint: {config.endpoint}", file=sys.stderr)
    print(f"  Tick rate: {config.tick_rate:g}/s", file=sys.stderr)
    print(f"  Snapshot every {config.sampling_interval} tick(s)", file=sys.stderr)

    bridge = OptimizerBridgeMod(StaticConfigProvider(config))
    try:
        with bridge:
            print("Press Ctrl+C to stop.", file=sys.stderr)
            run_mock_host(bridge, simulation, config.tick_rate)
    except FatalInitError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nBridge stopped.", file=sys.stderr)
        return 0
    return 0


if __name__ == "__main__":
    sys.exit(main())
