"""Bridge data models.

Pydantic models for the wire envelope and its payloads. All models are
frozen: a Snapshot is a point-in-time copy of simulation state, never a
live view into it.
"""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field

from mindplus_bridge.errors import ErrorCode
from mindplus_bridge.protocol import UINT64_MAX

AttributeValue = Union[bool, int, float, str]


class BaseBridgeModel(BaseModel):
    """Base model for all bridge payloads.

    Frozen so that instances can cross thread boundaries safely. Extra
    fields sent by newer optimizers are ignored.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)


class MessageKind(IntEnum):
    """Envelope kind, encoded as a single byte on the wire."""

    SNAPSHOT = 1
    COMMAND = 2
    HEARTBEAT = 3
    ERROR = 4
    ACK = 5


class CommandAction(str, Enum):
    """Mutations the optimizer may request."""

    MOVE_ENTITY = "move_entity"
    SET_RENDER_DISTANCE = "set_render_distance"
    SET_SIMULATION_DISTANCE = "set_simulation_distance"
    SET_BRIGHTNESS = "set_brightness"
    PRELOAD_CHUNKS = "preload_chunks"


# Parameters each action must carry
REQUIRED_PARAMETERS: dict[CommandAction, tuple[str, ...]] = {
    CommandAction.MOVE_ENTITY: ("entity_id", "x", "y", "z"),
    CommandAction.SET_RENDER_DISTANCE: ("chunks",),
    CommandAction.SET_SIMULATION_DISTANCE: ("chunks",),
    CommandAction.SET_BRIGHTNESS: ("enhanced",),
    CommandAction.PRELOAD_CHUNKS: ("radius",),
}


class Envelope(BaseBridgeModel):
    """The framed, versioned unit of wire communication."""

    version: int = Field(ge=0, le=0xFFFF)
    kind: MessageKind
    correlation_id: int = Field(default=0, ge=0, le=UINT64_MAX)
    sequence: int = Field(default=0, ge=0, le=UINT64_MAX)
    payload: bytes = Field(
        min_length=1, description="msgpack map validated against the kind's model"
    )


class EntityState(BaseBridgeModel):
    """State of a single simulation entity at capture time."""

    entity_id: int
    entity_type: str = "unknown"
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    attributes: dict[str, AttributeValue] = Field(default_factory=dict)


class Snapshot(BaseBridgeModel):
    """Immutable, timestamped copy of simulation state sent outward."""

    tick: int = Field(ge=0, le=UINT64_MAX)
    timestamp: int = Field(ge=0, description="Milliseconds since the epoch")
    entities: tuple[EntityState, ...] = ()


class Command(BaseBridgeModel):
    """Inbound request to mutate simulation state.

    ``action`` is kept as a plain string on the wire so that an unknown
    action still decodes and can be answered with an ERROR carrying the
    command's correlation id.
    """

    correlation_id: int = Field(ge=0, le=UINT64_MAX)
    target_tick: int | None = Field(default=None, ge=0, le=UINT64_MAX)
    action: str
    parameters: dict[str, Any] = Field(default_factory=dict)

    def resolved_action(self) -> CommandAction | None:
        """Return the CommandAction for this command, or None if unknown."""
        try:
            return CommandAction(self.action)
        except ValueError:
            return None


class Heartbeat(BaseBridgeModel):
    """Liveness ping. ``goodbye`` requests an explicit disconnect."""

    sent_at: int = 0
    goodbye: bool = False


class ErrorReport(BaseBridgeModel):
    """Payload of an ERROR envelope."""

    code: ErrorCode
    message: str = ""


class Ack(BaseBridgeModel):
    """Payload of an ACK envelope: the tick the command was applied on."""

    tick: int = Field(ge=0, le=UINT64_MAX)


# Payload schema for each envelope kind
PAYLOAD_MODELS: dict[MessageKind, type[BaseBridgeModel]] = {
    MessageKind.SNAPSHOT: Snapshot,
    MessageKind.COMMAND: Command,
    MessageKind.HEARTBEAT: Heartbeat,
    MessageKind.ERROR: ErrorReport,
    MessageKind.ACK: Ack,
}


def entity_from_host(raw: EntityState | dict[str, Any]) -> EntityState:
    """Copy a host-provided entity record into an EntityState.

    Args:
        raw: An EntityState or a mapping with EntityState fields

    Returns:
        A new EntityState that shares no mutable state with ``raw``
    """
    if isinstance(raw, EntityState):
        return raw.model_copy(deep=True)
    return EntityState.model_validate(dict(raw))
