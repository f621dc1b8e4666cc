"""Shared fixtures for bridge unit tests."""

from __future__ import annotations

import socket
from collections.abc import Callable
from typing import Any

import pytest

from mindplus_bridge.codec import EnvelopeCodec
from mindplus_bridge.mock import MockSimulation
from mindplus_bridge.models import Command, Heartbeat, MessageKind
from mindplus_bridge.queues import InboundCommand, InboundQueue, OutboundQueue
from mindplus_bridge.session import SessionRegistry
from mindplus_bridge.synchronizer import TickSynchronizer


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def codec() -> EnvelopeCodec:
    """Codec at the current schema version."""
    return EnvelopeCodec()


@pytest.fixture
def registry() -> SessionRegistry:
    """Registry with a timeout long enough not to interfere with tests."""
    return SessionRegistry(heartbeat_timeout_ticks=100)


@pytest.fixture
def inbound() -> InboundQueue:
    return InboundQueue(capacity=16)


@pytest.fixture
def outbound() -> OutboundQueue:
    return OutboundQueue(capacity=64)


@pytest.fixture
def synchronizer(
    registry: SessionRegistry, inbound: InboundQueue, outbound: OutboundQueue
) -> TickSynchronizer:
    """Synchronizer snapshotting every tick with a fixed clock."""
    return TickSynchronizer(
        registry, inbound, outbound, clock=lambda: 1_700_000_000_000
    )


@pytest.fixture
def simulation() -> MockSimulation:
    """Mock world with three entities (ids 1, 2, 3)."""
    return MockSimulation.with_entities(3, seed=42)


@pytest.fixture
def make_command() -> Callable[..., Command]:
    """Build a Command, defaulting to a valid set_render_distance."""

    def _make(
        correlation_id: int,
        action: str = "set_render_distance",
        parameters: dict[str, Any] | None = None,
        target_tick: int | None = None,
    ) -> Command:
        if parameters is None:
            parameters = {"chunks": 8}
        return Command(
            correlation_id=correlation_id,
            action=action,
            parameters=parameters,
            target_tick=target_tick,
        )

    return _make


@pytest.fixture
def activate(registry: SessionRegistry) -> Callable[..., None]:
    """Give a peer an ACTIVE session as of the given tick."""

    def _activate(peer_id: bytes, tick: int = 0) -> None:
        registry.request_touch(peer_id, handshake=True)
        registry.sweep_stale(tick)

    return _activate


@pytest.fixture
def enqueue(inbound: InboundQueue) -> Callable[..., None]:
    """Push a command as if the transport had received it."""

    def _enqueue(peer_id: bytes, sequence: int, command: Command) -> None:
        inbound.push(InboundCommand(peer_id, sequence, command))

    return _enqueue


@pytest.fixture
def command_frame(codec: EnvelopeCodec) -> Callable[[Command, int], bytes]:
    """Encode a command into a wire frame with the given sequence."""

    def _frame(command: Command, sequence: int) -> bytes:
        envelope = codec.make_envelope(
            MessageKind.COMMAND,
            command,
            correlation_id=command.correlation_id,
            sequence=sequence,
        )
        return codec.encode(envelope)

    return _frame


@pytest.fixture
def heartbeat_frame(codec: EnvelopeCodec) -> Callable[..., bytes]:
    """Encode a heartbeat into a wire frame."""

    def _frame(correlation_id: int = 1, goodbye: bool = False) -> bytes:
        envelope = codec.make_envelope(
            MessageKind.HEARTBEAT,
            Heartbeat(sent_at=1, goodbye=goodbye),
            correlation_id=correlation_id,
        )
        return codec.encode(envelope)

    return _frame


@pytest.fixture
def free_port() -> int:
    """Get a free port for testing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]
