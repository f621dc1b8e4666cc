"""Bounded queues that carry values between the transport and the tick loop.

Provides:
- InboundCommand / OutboundMessage: frozen queue entries
- InboundQueue: multi-producer, single-consumer, reject-newest on overflow
- OutboundQueue: single-producer, multi-consumer, drop-oldest on overflow

Both queues hold a lock only for the deque operation itself, so neither side
waits for longer than a push or pop takes.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field

from mindplus_bridge.errors import QueueOverflowError
from mindplus_bridge.models import Command, MessageKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class InboundCommand:
    """A decoded command together with where and when it arrived."""

    peer_id: bytes
    sequence: int
    command: Command
    received_at: float = field(default_factory=time.monotonic)


@dataclass(frozen=True, slots=True)
class OutboundMessage:
    """An encoded payload waiting to be framed and sent.

    Attributes:
        kind: Envelope kind
        payload: msgpack payload bytes
        recipients: Peer ids to deliver to
        correlation_id: Correlation id echoed to the peer (0 for snapshots)
        tick: Tick the message was produced on
        created_at: Monotonic creation time, used for the retry window
    """

    kind: MessageKind
    payload: bytes
    recipients: tuple[bytes, ...]
    correlation_id: int = 0
    tick: int = 0
    created_at: float = field(default_factory=time.monotonic)


class InboundQueue:
    """Bounded command queue from the transport thread to the tick loop.

    When full, the newest command is rejected so the simulation is never
    flooded. The caller is expected to tell the sender.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._items: deque[InboundCommand] = deque()
        self._lock = threading.Lock()
        self.rejected_count = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def push(self, item: InboundCommand) -> None:
        """Append a command.

        Args:
            item: The command to enqueue

        Raises:
            QueueOverflowError: If the queue is at capacity
        """
        with self._lock:
            if len(self._items) >= self.capacity:
                self.rejected_count += 1
                raise QueueOverflowError(
                    f"inbound queue full ({self.capacity}), rejected "
                    f"correlation id {item.command.correlation_id}"
                )
            self._items.append(item)

    def drain(self) -> list[InboundCommand]:
        """Remove and return every queued command in arrival order."""
        with self._lock:
            items = list(self._items)
            self._items.clear()
        return items


class OutboundQueue:
    """Bounded message queue from the tick loop to the transport thread.

    When full, the oldest message is evicted: the optimizer wants the
    freshest state, not a backlog.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._items: deque[OutboundMessage] = deque()
        self._lock = threading.Lock()
        self.dropped_count = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def publish(self, item: OutboundMessage) -> OutboundMessage | None:
        """Append a message, evicting the oldest one when full.

        Args:
            item: The message to enqueue

        Returns:
            The evicted message, or None if nothing was dropped
        """
        evicted: OutboundMessage | None = None
        with self._lock:
            if len(self._items) >= self.capacity:
                evicted = self._items.popleft()
                self.dropped_count += 1
            self._items.append(item)
        if evicted is not None:
            logger.debug(
                "Outbound queue full (%d), dropped oldest %s from tick %d",
                self.capacity,
                evicted.kind.name,
                evicted.tick,
            )
        return evicted

    def pop(self) -> OutboundMessage | None:
        """Remove and return the oldest message, or None if empty."""
        with self._lock:
            if not self._items:
                return None
            return self._items.popleft()

    def drain(self) -> list[OutboundMessage]:
        """Remove and return every queued message, oldest first."""
        with self._lock:
            items = list(self._items)
            self._items.clear()
        return items
