from __future__ import annotations

import copy
import hashlib
import random
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from loreweave.sim.coordinates import CoordinateContext
from loreweave.sim.graph import WorldGraph
from loreweave.sim.rng import derive_stream_seed
from loreweave.sim.rules import RuleModule
from loreweave.sim.selection import TargetSelector
from loreweave.sim.view import TemplateGraphView

if TYPE_CHECKING:
    from loreweave.sim.eras import Era

RNG_GROWTH_STREAM_NAME = "rng_growth"
RNG_SELECTION_STREAM_NAME = "rng_selection"
RNG_PLACEMENT_STREAM_NAME = "rng_placement"
MAX_EVENT_TRACE = 256


def _is_json_primitive(value: Any) -> bool:
    return value is None or isinstance(value, (bool, int, float, str))


def _validate_json_value(value: Any, *, field_name: str) -> None:
    if _is_json_primitive(value):
        return
    if isinstance(value, list):
        for item in value:
            _validate_json_value(item, field_name=field_name)
        return
    if isinstance(value, dict):
        for key, nested_value in value.items():
            if not isinstance(key, str):
                raise ValueError(f"{field_name} keys must be strings")
            _validate_json_value(nested_value, field_name=field_name)
        return
    raise ValueError(f"{field_name} must contain only canonical JSON primitives")


@dataclass
class SimulationState:
    graph: WorldGraph
    rules_state: dict[str, dict[str, Any]] = field(default_factory=dict)
    event_trace: list[dict[str, Any]] = field(default_factory=list)

    @property
    def tick(self) -> int:
        return self.graph.tick


class Simulation:
    """Tick driver that owns the world graph and runs rule modules against it.

    The graph is the single store every component reads and writes; rule
    modules (era schedule, growth phase, pressure drift) observe it through
    the lifecycle hooks and record their outcomes in the bounded event trace.
    """

    def __init__(
        self,
        graph: WorldGraph,
        seed: int,
        *,
        coordinates: CoordinateContext | None = None,
        eras: list[Era] | None = None,
    ) -> None:
        self.state = SimulationState(graph=graph)
        self.seed = seed
        self.master_seed = seed
        self.coordinates = coordinates
        self.eras: dict[str, Era] = {}
        for era in eras or []:
            if era.era_id in self.eras:
                raise ValueError(f"duplicate era_id: {era.era_id}")
            self.eras[era.era_id] = era
        if graph.current_era is None and self.eras:
            graph.current_era = next(iter(self.eras))
        self.rule_modules: list[RuleModule] = []
        self.target_selector = TargetSelector()
        self._rng_streams: dict[str, random.Random] = {}

    @property
    def graph(self) -> WorldGraph:
        return self.state.graph

    def current_era(self) -> Era | None:
        if self.graph.current_era is None:
            return None
        return self.eras.get(self.graph.current_era)

    def view(self) -> TemplateGraphView:
        return TemplateGraphView(
            self.graph,
            coordinates=self.coordinates,
            rng=self.rng_stream(RNG_PLACEMENT_STREAM_NAME),
            selector=self.target_selector,
            selection_rng=self.rng_stream(RNG_SELECTION_STREAM_NAME),
        )

    def get_event_trace(self) -> list[dict[str, Any]]:
        return copy.deepcopy(self.state.event_trace)

    def advance_ticks(self, ticks: int) -> None:
        if not isinstance(ticks, int) or ticks < 0:
            raise ValueError("ticks must be a non-negative integer")
        for _ in range(ticks):
            self._tick_once()

    def rng_state_payload(self) -> dict[str, Any]:
        return {
            "master_seed": self.master_seed,
            "rng_stream_states": {
                name: stream.getstate()
                for name, stream in sorted(self._rng_streams.items(), key=lambda item: item[0])
            },
        }

    def rng_stream(self, name: str) -> random.Random:
        if name not in self._rng_streams:
            self._rng_streams[name] = random.Random(
                derive_stream_seed(master_seed=self.master_seed, stream_name=name)
            )
        return self._rng_streams[name]

    def get_rule_module(self, module_name: str) -> RuleModule | None:
        for module in self.rule_modules:
            if module.name == module_name:
                return module
        return None

    def register_rule_module(self, module: RuleModule) -> None:
        if any(existing.name == module.name for existing in self.rule_modules):
            raise ValueError(f"duplicate rule module name: {module.name}")
        self.rule_modules.append(module)
        module.on_simulation_start(self)

    def get_rules_state(self, module_name: str) -> dict[str, Any]:
        existing = self.state.rules_state.get(module_name, {})
        return copy.deepcopy(existing)

    def set_rules_state(self, module_name: str, state: dict[str, Any]) -> None:
        if not isinstance(module_name, str) or not module_name:
            raise ValueError("module_name must be a non-empty string")
        if not isinstance(state, dict):
            raise ValueError("rules_state value must be a dict")
        _validate_json_value(state, field_name="rules_state")
        self.state.rules_state[module_name] = copy.deepcopy(state)

    def notify_era_changed(self, previous_era_id: str | None, era_id: str) -> None:
        for module in self.rule_modules:
            module.on_era_changed(self, previous_era_id, era_id)

    def record_outcome(self, *, tick: int, event_type: str, key: str, params: dict[str, Any]) -> None:
        self._append_event_trace_entry(
            {
                "tick": tick,
                "event_id": self._trace_event_id_as_int(key),
                "event_type": event_type,
                "params": params,
                "module_hooks_called": True,
            }
        )

    def simulation_payload(self) -> dict[str, Any]:
        return {
            "schema_version": 1,
            "seed": self.seed,
            "master_seed": self.master_seed,
            "tick": self.state.tick,
            "current_era": self.graph.current_era,
            "rng_state": self.rng_state_payload(),
            "rules_state": dict(sorted(self.state.rules_state.items())),
            "graph": self.graph.to_dict(),
            "regions": self.regions_payload(),
            "event_trace": copy.deepcopy(self.state.event_trace),
        }

    def regions_payload(self) -> dict[str, list[dict[str, Any]]]:
        if self.coordinates is None or self.coordinates.region_service is None:
            return {}
        return self.coordinates.region_service.export()

    def _tick_once(self) -> None:
        tick = self.graph.tick
        for module in self.rule_modules:
            module.on_tick_start(self, tick)
        for module in self.rule_modules:
            module.on_tick_end(self, tick)
        self.graph.tick += 1

    def _append_event_trace_entry(self, entry: dict[str, Any]) -> None:
        if not isinstance(entry, dict):
            raise ValueError("event_trace entries must be objects")
        required = {"tick", "event_id", "event_type", "params"}
        if not required.issubset(entry):
            raise ValueError("event_trace entries missing required fields")
        if not isinstance(entry["tick"], int) or entry["tick"] < 0:
            raise ValueError("event_trace tick must be a non-negative integer")
        if not isinstance(entry["event_id"], int):
            raise ValueError("event_trace event_id must be an integer")
        if not isinstance(entry["event_type"], str) or not entry["event_type"]:
            raise ValueError("event_trace event_type must be a non-empty string")
        if not isinstance(entry["params"], dict):
            raise ValueError("event_trace params must be an object")
        _validate_json_value(entry["params"], field_name="event_trace.params")
        self.state.event_trace.append(copy.deepcopy(entry))
        if len(self.state.event_trace) > MAX_EVENT_TRACE:
            overflow = len(self.state.event_trace) - MAX_EVENT_TRACE
            del self.state.event_trace[:overflow]

    @staticmethod
    def _trace_event_id_as_int(key: str) -> int:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return int(digest[:16], 16)
