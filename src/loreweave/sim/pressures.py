from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from loreweave.sim.rules import RuleModule

if TYPE_CHECKING:
    from loreweave.sim.core import Simulation
    from loreweave.sim.graph import WorldGraph

PRESSURE_MIN = 0.0
PRESSURE_MAX = 100.0
MAX_PRESSURE_DELTA_PER_TICK = 15.0
DEFAULT_COOLDOWN_PERIOD = 10
PRESSURE_UPDATE_EVENT_TYPE = "pressure_update"


def clamp_pressure(value: float) -> float:
    return max(PRESSURE_MIN, min(PRESSURE_MAX, value))


@dataclass(frozen=True)
class GrowthFactor:
    """One declarative growth term: ``rate`` per matching entity."""

    rate: float
    kind: str | None = None
    subtype: str | None = None
    tag: str | None = None
    status: str | None = None

    def contribution(self, graph: WorldGraph) -> float:
        count = 0
        for entity in graph.get_entities():
            if self.kind is not None and entity.kind != self.kind:
                continue
            if self.subtype is not None and entity.subtype != self.subtype:
                continue
            if self.status is not None and entity.status != self.status:
                continue
            if self.tag is not None and self.tag not in entity.tags:
                continue
            count += 1
        return self.rate * count


@dataclass(frozen=True)
class PressureDefinition:
    pressure_id: str
    name: str
    initial_value: float = 0.0
    decay: float = 0.0
    growth_factors: tuple[GrowthFactor, ...] = ()
    growth: Callable[[WorldGraph], float] | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not isinstance(self.pressure_id, str) or not self.pressure_id:
            raise ValueError("pressure_id must be a non-empty string")
        if not PRESSURE_MIN <= self.initial_value <= PRESSURE_MAX:
            raise ValueError(f"pressure {self.pressure_id!r} initial_value must be within [0, 100]")
        if self.decay < 0:
            raise ValueError(f"pressure {self.pressure_id!r} decay must be >= 0")

    def raw_growth(self, graph: WorldGraph) -> float:
        total = sum(factor.contribution(graph) for factor in self.growth_factors)
        if self.growth is not None:
            total += float(self.growth(graph))
        return total


class PressureTracker:
    """Current pressure values, always clamped to [0, 100]."""

    def __init__(self, initial: dict[str, float] | None = None) -> None:
        self._values: dict[str, float] = {}
        for pressure_id, value in (initial or {}).items():
            self.set(pressure_id, value)

    def get(self, pressure_id: str) -> float:
        return self._values.get(pressure_id, 0.0)

    def set(self, pressure_id: str, value: float) -> float:
        if not isinstance(pressure_id, str) or not pressure_id:
            raise ValueError("pressure_id must be a non-empty string")
        self._values[pressure_id] = clamp_pressure(float(value))
        return self._values[pressure_id]

    def modify(self, pressure_id: str, delta: float) -> float:
        return self.set(pressure_id, self.get(pressure_id) + float(delta))

    def ids(self) -> list[str]:
        return sorted(self._values)

    def to_dict(self) -> dict[str, float]:
        return {pressure_id: self._values[pressure_id] for pressure_id in sorted(self._values)}


class CooldownTracker:
    """Tick at which each (entity, relationship kind) pair last formed a relationship."""

    def __init__(self) -> None:
        self._last_formed: dict[str, dict[str, int]] = {}

    def record(self, entity_id: str, relationship_kind: str, tick: int) -> None:
        self._last_formed.setdefault(entity_id, {})[relationship_kind] = int(tick)

    def last_formed(self, entity_id: str, relationship_kind: str) -> int | None:
        return self._last_formed.get(entity_id, {}).get(relationship_kind)

    def can_form(self, entity_id: str, relationship_kind: str, current_tick: int, cooldown_ticks: int) -> bool:
        last = self.last_formed(entity_id, relationship_kind)
        if last is None:
            return True
        return current_tick - last >= cooldown_ticks

    def remaining(self, entity_id: str, relationship_kind: str, current_tick: int, period: int = DEFAULT_COOLDOWN_PERIOD) -> int:
        last = self.last_formed(entity_id, relationship_kind)
        if last is None:
            return 0
        return max(0, period - (current_tick - last))

    def forget_entity(self, entity_id: str) -> None:
        self._last_formed.pop(entity_id, None)

    def to_dict(self) -> dict[str, dict[str, int]]:
        return {
            entity_id: dict(sorted(kinds.items()))
            for entity_id, kinds in sorted(self._last_formed.items())
        }


def pressure_delta(
    definition: PressureDefinition,
    graph: WorldGraph,
    *,
    era_modifier: float = 1.0,
) -> float:
    """Per-tick change for one pressure.

    Growth is damped as the value approaches the ceiling, decay always pulls
    down, the era scales both, and the result is capped to
    ``MAX_PRESSURE_DELTA_PER_TICK`` in either direction.
    """
    current = graph.pressures.get(definition.pressure_id)
    growth_scaling = max(0.1, 1.0 - (current / PRESSURE_MAX) ** 2)
    growth = definition.raw_growth(graph) * growth_scaling
    delta = (growth - definition.decay) * era_modifier
    return max(-MAX_PRESSURE_DELTA_PER_TICK, min(MAX_PRESSURE_DELTA_PER_TICK, delta))


def update_pressures(
    graph: WorldGraph,
    definitions: list[PressureDefinition],
    pressure_modifiers: dict[str, float] | None = None,
) -> dict[str, float]:
    modifiers = pressure_modifiers or {}
    deltas = {
        definition.pressure_id: pressure_delta(
            definition,
            graph,
            era_modifier=modifiers.get(definition.pressure_id, 1.0),
        )
        for definition in definitions
    }
    applied: dict[str, float] = {}
    for pressure_id, delta in deltas.items():
        before = graph.pressures.get(pressure_id)
        applied[pressure_id] = graph.pressures.modify(pressure_id, delta) - before
    return applied


class PressureModule(RuleModule):
    """Applies natural growth/decay to every configured pressure at tick end."""

    name = "pressures"

    def __init__(self, definitions: list[PressureDefinition]) -> None:
        seen: set[str] = set()
        for definition in definitions:
            if definition.pressure_id in seen:
                raise ValueError(f"duplicate pressure_id: {definition.pressure_id}")
            seen.add(definition.pressure_id)
        self._definitions = list(definitions)

    @property
    def definitions(self) -> list[PressureDefinition]:
        return list(self._definitions)

    def on_simulation_start(self, sim: Simulation) -> None:
        known = set(sim.graph.pressures.ids())
        for definition in self._definitions:
            if definition.pressure_id not in known:
                sim.graph.pressures.set(definition.pressure_id, definition.initial_value)

    def on_tick_end(self, sim: Simulation, tick: int) -> None:
        era = sim.current_era()
        modifiers = era.pressure_modifiers if era is not None else {}
        applied = update_pressures(sim.graph, self._definitions, modifiers)
        params: dict[str, Any] = {
            "deltas": {pressure_id: round(delta, 6) for pressure_id, delta in sorted(applied.items())},
            "values": {pressure_id: round(value, 6) for pressure_id, value in sim.graph.pressures.to_dict().items()},
        }
        sim.record_outcome(tick=tick, event_type=PRESSURE_UPDATE_EVENT_TYPE, key=f"pressures:{tick}", params=params)
