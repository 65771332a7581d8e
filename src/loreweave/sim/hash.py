from __future__ import annotations

import hashlib
import json
from typing import Any

from loreweave.sim.core import Simulation
from loreweave.sim.graph import WorldGraph


def _digest(payload: dict[str, Any]) -> str:
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def graph_hash(graph: WorldGraph) -> str:
    return _digest(graph.to_dict())


def simulation_hash(simulation: Simulation) -> str:
    payload = {
        "seed": simulation.seed,
        "master_seed": simulation.master_seed,
        "rng_state": simulation.rng_state_payload(),
        "tick": simulation.state.tick,
        "current_era": simulation.graph.current_era,
        "eras": [era.to_dict() for era in simulation.eras.values()],
        "rule_modules": [module.name for module in simulation.rule_modules],
        "graph": simulation.graph.to_dict(),
        "regions": simulation.regions_payload(),
        "rules_state": dict(sorted(simulation.state.rules_state.items())),
        "event_trace": simulation.get_event_trace(),
    }
    return _digest(payload)
