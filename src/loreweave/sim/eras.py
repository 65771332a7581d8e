from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from loreweave.sim.rules import RuleModule

if TYPE_CHECKING:
    from loreweave.sim.core import Simulation

logger = logging.getLogger(__name__)

ERA_CHANGED_EVENT_TYPE = "era_changed"
DEFAULT_TEMPLATE_WEIGHT = 1.0


@dataclass(frozen=True)
class Era:
    era_id: str
    name: str
    duration_ticks: int
    template_weights: dict[str, float] = field(default_factory=dict)
    pressure_modifiers: dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.era_id, str) or not self.era_id:
            raise ValueError("era_id must be a non-empty string")
        if not isinstance(self.duration_ticks, int) or self.duration_ticks <= 0:
            raise ValueError("duration_ticks must be a positive integer")
        for template_id, weight in self.template_weights.items():
            if weight < 0:
                raise ValueError(f"template_weights[{template_id}] must be non-negative")

    def template_weight(self, template_id: str) -> float:
        return float(self.template_weights.get(template_id, DEFAULT_TEMPLATE_WEIGHT))

    def pressure_modifier(self, pressure_id: str) -> float:
        return float(self.pressure_modifiers.get(pressure_id, 1.0))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.era_id,
            "name": self.name,
            "duration_ticks": self.duration_ticks,
            "template_weights": dict(sorted(self.template_weights.items())),
            "pressure_modifiers": dict(sorted(self.pressure_modifiers.items())),
        }


class EraScheduleModule(RuleModule):
    """Moves the world through the configured eras in order.

    The final era never expires. Entering an era resets the creation rate
    limit and the selector's diversity tracking, then notifies every rule
    module through ``on_era_changed``.
    """

    name = "eras"

    def on_simulation_start(self, sim: Simulation) -> None:
        state = sim.get_rules_state(self.name)
        if "era_started_at" not in state:
            sim.set_rules_state(self.name, {"era_started_at": sim.graph.tick})

    def on_tick_start(self, sim: Simulation, tick: int) -> None:
        era = sim.current_era()
        if era is None:
            return
        started_at = int(sim.get_rules_state(self.name).get("era_started_at", 0))
        if tick - started_at < era.duration_ticks:
            return
        next_era_id = self._next_era_id(sim, era.era_id)
        if next_era_id is None:
            return

        sim.graph.current_era = next_era_id
        sim.graph.rate_limit.creations_this_epoch = 0
        sim.target_selector.reset_diversity_tracking()
        sim.set_rules_state(self.name, {"era_started_at": tick})
        logger.info("tick %d: era %s -> %s", tick, era.era_id, next_era_id)
        sim.record_outcome(
            tick=tick,
            event_type=ERA_CHANGED_EVENT_TYPE,
            key=f"era:{tick}:{next_era_id}",
            params={"previous_era": era.era_id, "era": next_era_id},
        )
        sim.notify_era_changed(era.era_id, next_era_id)

    @staticmethod
    def _next_era_id(sim: Simulation, era_id: str) -> str | None:
        era_ids = list(sim.eras)
        position = era_ids.index(era_id)
        if position + 1 >= len(era_ids):
            return None
        return era_ids[position + 1]
