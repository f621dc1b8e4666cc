"""Mock simulation for development and testing.

Provides:
- MockEntity: mutable entity record owned by the mock world
- MockSimulation: an in-memory SimulationAccessor

This module allows running and testing the bridge without the game by:
1. Holding a small world of wandering entities and client settings
2. Applying every CommandAction to that world
3. Advancing deterministically from a seed with step()
"""

from __future__ import annotations

import logging
import random
from collections.abc import Iterator
from dataclasses import dataclass, field

from mindplus_bridge.models import Command, CommandAction, EntityState

logger = logging.getLogger(__name__)

RENDER_DISTANCE_RANGE = (2, 32)
SIMULATION_DISTANCE_RANGE = (5, 32)


class MockSimulationError(ValueError):
    """Raised when a command's parameters cannot be applied to the mock world."""


@dataclass
class MockEntity:
    """Mutable entity record. Snapshots copy it into an EntityState."""

    entity_id: int
    entity_type: str
    x: float = 0.0
    y: float = 64.0
    z: float = 0.0
    attributes: dict[str, bool | int | float | str] = field(default_factory=dict)

    def to_state(self) -> EntityState:
        return EntityState(
            entity_id=self.entity_id,
            entity_type=self.entity_type,
            x=self.x,
            y=self.y,
            z=self.z,
            attributes=dict(self.attributes),
        )


def _require_int(command: Command, name: str, low: int, high: int) -> int:
    value = command.parameters[name]
    if isinstance(value, bool) or not isinstance(value, int):
        raise MockSimulationError(f"{name} must be an integer, got {value!r}")
    if not low <= value <= high:
        raise MockSimulationError(f"{name} must be within {low}..{high}, got {value}")
    return value


def _require_float(command: Command, name: str) -> float:
    value = command.parameters[name]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MockSimulationError(f"{name} must be a number, got {value!r}")
    return float(value)


class MockSimulation:
    """In-memory world implementing the SimulationAccessor protocol.

    Usage:
        sim = MockSimulation.with_entities(3, seed=7)
        for tick in range(1, 100):
            sim.step()
            bridge.on_tick(tick, sim)
    """

    def __init__(self, seed: int | None = None) -> None:
        self.entities: dict[int, MockEntity] = {}
        self.render_distance = 12
        self.simulation_distance = 10
        self.brightness_enhanced = False
        self.preloaded_radius = 0
        self.applied: list[Command] = []
        self._random = random.Random(seed)

    @classmethod
    def with_entities(cls, count: int, seed: int | None = None) -> MockSimulation:
        """Create a world populated with ``count`` entities, ids starting at 1."""
        sim = cls(seed=seed)
        kinds = ("zombie", "skeleton", "villager", "cow")
        for entity_id in range(1, count + 1):
            sim.add_entity(
                MockEntity(
                    entity_id=entity_id,
                    entity_type=kinds[(entity_id - 1) % len(kinds)],
                    x=sim._random.uniform(-32, 32),
                    z=sim._random.uniform(-32, 32),
                    attributes={"health": 20.0},
                )
            )
        return sim

    def add_entity(self, entity: MockEntity) -> None:
        self.entities[entity.entity_id] = entity

    def remove_entity(self, entity_id: int) -> None:
        self.entities.pop(entity_id, None)

    def step(self) -> None:
        """Advance the world one tick: every entity wanders a little."""
        for entity in self.entities.values():
            entity.x += self._random.uniform(-0.5, 0.5)
            entity.z += self._random.uniform(-0.5, 0.5)

    # SimulationAccessor

    def read_entities(self) -> Iterator[EntityState]:
        for entity_id in sorted(self.entities):
            yield self.entities[entity_id].to_state()

    def has_entity(self, entity_id: int) -> bool:
        return entity_id in self.entities

    def apply(self, command: Command) -> None:
        """Apply a validated command.

        Raises:
            MockSimulationError: If a parameter has the wrong type or range
        """
        action = command.resolved_action()
        if action is CommandAction.MOVE_ENTITY:
            entity = self.entities[command.parameters["entity_id"]]
            entity.x = _require_float(command, "x")
            entity.y = _require_float(command, "y")
            entity.z = _require_float(command, "z")
        elif action is CommandAction.SET_RENDER_DISTANCE:
            self.render_distance = _require_int(
                command, "chunks", *RENDER_DISTANCE_RANGE
            )
        elif action is CommandAction.SET_SIMULATION_DISTANCE:
            self.simulation_distance = _require_int(
                command, "chunks", *SIMULATION_DISTANCE_RANGE
            )
        elif action is CommandAction.SET_BRIGHTNESS:
            enhanced = command.parameters["enhanced"]
            if not isinstance(enhanced, bool):
                raise MockSimulationError(
                    f"enhanced must be a boolean, got {enhanced!r}"
                )
            self.brightness_enhanced = enhanced
        elif action is CommandAction.PRELOAD_CHUNKS:
            self.preloaded_radius = _require_int(command, "radius", 0, 32)
        else:
            raise MockSimulationError(f"unsupported action {command.action!r}")

        self.applied.append(command)
        logger.debug("Mock applied %s %s", command.action, command.parameters)
