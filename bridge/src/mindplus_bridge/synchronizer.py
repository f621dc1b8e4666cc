"""Tick synchronizer: the point where commands meet the simulation.

Invoked once per host tick on the simulation thread. Each call:
1. Sweeps stale sessions
2. Drains the inbound command queue (at most its capacity)
3. Validates and applies commands in arrival order, answering each with an
   ACK or an ERROR
4. Captures and publishes a snapshot on sampled ticks

Nothing here blocks: the queues are drained and published to without
waiting, and the accessor is only touched inside on_tick.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from mindplus_bridge.codec import pack_payload
from mindplus_bridge.errors import CommandValidationError, ErrorCode
from mindplus_bridge.models import (
    REQUIRED_PARAMETERS,
    Ack,
    Command,
    EntityState,
    ErrorReport,
    MessageKind,
    Snapshot,
    entity_from_host,
)
from mindplus_bridge.queues import (
    InboundCommand,
    InboundQueue,
    OutboundMessage,
    OutboundQueue,
)
from mindplus_bridge.session import SessionRegistry, SessionState

logger = logging.getLogger(__name__)


class SimulationAccessor(Protocol):
    """Read and mutate access to simulation state, valid for one tick."""

    def read_entities(self) -> Iterable[EntityState | Mapping[str, Any]]:
        """Return the current entities in a stable order."""
        ...

    def has_entity(self, entity_id: int) -> bool:
        """Check whether an entity exists."""
        ...

    def apply(self, command: Command) -> None:
        """Apply a validated command to the simulation."""
        ...


@dataclass
class TickReport:
    """What a single on_tick call did."""

    tick: int
    applied: int = 0
    rejected: int = 0
    dropped: int = 0
    closed_sessions: int = 0
    snapshot: Snapshot | None = None
    snapshot_failed: bool = False


def _epoch_millis() -> int:
    return int(time.time() * 1000)


class TickSynchronizer:
    """Binds the queues, the session registry and the host simulation.

    Attributes:
        sampling_interval: A snapshot is captured when tick % interval == 0
    """

    def __init__(
        self,
        registry: SessionRegistry,
        inbound: InboundQueue,
        outbound: OutboundQueue,
        *,
        sampling_interval: int = 1,
        clock: Callable[[], int] = _epoch_millis,
    ) -> None:
        if sampling_interval < 1:
            raise ValueError("sampling_interval must be at least 1")
        self._registry = registry
        self._inbound = inbound
        self._outbound = outbound
        self.sampling_interval = sampling_interval
        self._clock = clock
        self.last_tick: int | None = None

    def on_tick(self, tick: int, accessor: SimulationAccessor) -> TickReport:
        """Run one synchronization step.

        Args:
            tick: The host's tick number
            accessor: Simulation access scoped to this call

        Returns:
            A TickReport describing the step
        """
        if self.last_tick is not None and tick <= self.last_tick:
            logger.warning("Tick went from %d to %d", self.last_tick, tick)
        self.last_tick = tick

        report = TickReport(tick=tick)
        closed = self._registry.sweep_stale(tick)
        report.closed_sessions = len(closed)

        for item in self._inbound.drain():
            self._process(item, tick, accessor, report)

        if tick % self.sampling_interval == 0:
            try:
                report.snapshot = self.capture_snapshot(tick, accessor)
            except Exception as e:
                report.snapshot_failed = True
                logger.error(
                    "Snapshot capture on tick %d failed: %s: %s",
                    tick,
                    type(e).__name__,
                    e,
                    exc_info=True,
                )
            else:
                self._publish_snapshot(report.snapshot)

        if report.rejected or report.dropped:
            logger.debug(
                "Tick %d: applied=%d rejected=%d dropped=%d",
                tick,
                report.applied,
                report.rejected,
                report.dropped,
            )
        return report

    def _publish_snapshot(self, snapshot: Snapshot) -> None:
        recipients = self._registry.active_recipients()
        if recipients:
            self._outbound.publish(
                OutboundMessage(
                    kind=MessageKind.SNAPSHOT,
                    payload=pack_payload(snapshot),
                    recipients=recipients,
                    tick=snapshot.tick,
                )
            )

    def capture_snapshot(self, tick: int, accessor: SimulationAccessor) -> Snapshot:
        """Copy the current simulation state into an immutable Snapshot."""
        entities = tuple(entity_from_host(raw) for raw in accessor.read_entities())
        return Snapshot(tick=tick, timestamp=self._clock(), entities=entities)

    def _process(
        self,
        item: InboundCommand,
        tick: int,
        accessor: SimulationAccessor,
        report: TickReport,
    ) -> None:
        command = item.command
        session = self._registry.get(item.peer_id)
        if session is None:
            logger.warning(
                "Dropping command %d from peer %s: session closed",
                command.correlation_id,
                item.peer_id.hex(),
            )
            report.dropped += 1
            return

        try:
            if session.state is SessionState.CONNECTING:
                raise CommandValidationError(
                    ErrorCode.HANDSHAKE_REQUIRED,
                    "send a HEARTBEAT before commands",
                )
            if session.state is SessionState.STALE:
                raise CommandValidationError(
                    ErrorCode.SESSION_STALE, f"session {session.id} is stale"
                )
            self.check_command(command, tick, accessor)
            code = self._registry.admit(
                command.correlation_id, item.peer_id, item.sequence
            )
            if code is ErrorCode.OUT_OF_ORDER:
                raise CommandValidationError(
                    code,
                    f"sequence {item.sequence} is not after "
                    f"{session.last_inbound_sequence}",
                )
            if code is not None:
                raise CommandValidationError(
                    code, f"correlation id {command.correlation_id} already seen"
                )
        except CommandValidationError as e:
            report.rejected += 1
            self._reply_error(
                item.peer_id, command.correlation_id, e.code, str(e), tick
            )
            return

        try:
            accessor.apply(command)
        except Exception as e:
            logger.error(
                "Applying %s (correlation id %d) failed: %s",
                command.action,
                command.correlation_id,
                e,
                exc_info=True,
            )
            report.rejected += 1
            self._reply_error(
                item.peer_id,
                command.correlation_id,
                ErrorCode.APPLY_FAILED,
                f"{type(e).__name__}: {e}",
                tick,
            )
        else:
            report.applied += 1
            self._outbound.publish(
                OutboundMessage(
                    kind=MessageKind.ACK,
                    payload=pack_payload(Ack(tick=tick)),
                    recipients=(item.peer_id,),
                    correlation_id=command.correlation_id,
                    tick=tick,
                )
            )
        finally:
            self._registry.complete(item.peer_id, command.correlation_id)

    def check_command(
        self, command: Command, tick: int, accessor: SimulationAccessor
    ) -> None:
        """Validate a command against the current simulation state.

        Raises:
            CommandValidationError: If the action is unknown, a required
                parameter is missing, the target tick has elapsed, a
                referenced entity does not exist or the entity lookup raised
        """
        action = command.resolved_action()
        if action is None:
            raise CommandValidationError(
                ErrorCode.UNKNOWN_ACTION, f"unknown action {command.action!r}"
            )

        required = REQUIRED_PARAMETERS[action]
        missing = [p for p in required if p not in command.parameters]
        if missing:
            raise CommandValidationError(
                ErrorCode.MISSING_PARAMETER,
                f"{action.value} requires {', '.join(missing)}",
            )

        if command.target_tick is not None and command.target_tick < tick:
            raise CommandValidationError(
                ErrorCode.TICK_ELAPSED,
                f"target tick {command.target_tick} elapsed (now {tick})",
            )

        if "entity_id" in command.parameters:
            entity_id = command.parameters["entity_id"]
            try:
                exists = isinstance(entity_id, int) and accessor.has_entity(entity_id)
            except Exception as e:
                logger.error(
                    "Entity lookup for %r failed: %s", entity_id, e, exc_info=True
                )
                raise CommandValidationError(
                    ErrorCode.ENTITY_LOOKUP_FAILED,
                    f"lookup of entity {entity_id!r} failed: {type(e).__name__}: {e}",
                ) from e
            if not exists:
                raise CommandValidationError(
                    ErrorCode.UNKNOWN_ENTITY, f"entity {entity_id!r} does not exist"
                )

    def _reply_error(
        self,
        peer_id: bytes,
        correlation_id: int,
        code: ErrorCode,
        message: str,
        tick: int,
    ) -> None:
        logger.info(
            "Rejected command %d from peer %s: %s (%s)",
            correlation_id,
            peer_id.hex(),
            code.value,
            message,
        )
        self._outbound.publish(
            OutboundMessage(
                kind=MessageKind.ERROR,
                payload=pack_payload(ErrorReport(code=code, message=message)),
                recipients=(peer_id,),
                correlation_id=correlation_id,
                tick=tick,
            )
        )
