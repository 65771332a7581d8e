import random

import pytest

from loreweave.sim.coordinates import CoordinateContext, Point, SemanticEncoder
from loreweave.sim.core import RNG_GROWTH_STREAM_NAME, RNG_SELECTION_STREAM_NAME, Simulation
from loreweave.sim.eras import Era
from loreweave.sim.graph import Entity, WorldGraph
from loreweave.sim.hash import graph_hash, simulation_hash
from loreweave.sim.regions import KindRegionService
from loreweave.sim.rng import derive_stream_seed


def _build_sim(seed: int = 123) -> Simulation:
    graph = WorldGraph()
    graph.set_entity(Entity(id="npc-a", kind="npc", name="Ash"))
    return Simulation(graph, seed=seed)


def test_derived_stream_seed_is_stable_and_named() -> None:
    assert derive_stream_seed(master_seed=12345, stream_name=RNG_GROWTH_STREAM_NAME) == derive_stream_seed(
        master_seed=12345, stream_name=RNG_GROWTH_STREAM_NAME
    )
    assert derive_stream_seed(master_seed=12345, stream_name=RNG_GROWTH_STREAM_NAME) != derive_stream_seed(
        master_seed=12345, stream_name=RNG_SELECTION_STREAM_NAME
    )


def test_selection_draws_do_not_perturb_growth_stream() -> None:
    sim_a = _build_sim(seed=987)
    sim_b = _build_sim(seed=987)

    values_before = [sim_a.rng_stream(RNG_GROWTH_STREAM_NAME).random() for _ in range(3)]
    for _ in range(100):
        sim_b.rng_stream(RNG_SELECTION_STREAM_NAME).random()
    values_after = [sim_b.rng_stream(RNG_GROWTH_STREAM_NAME).random() for _ in range(3)]

    assert values_before == values_after


def test_rules_state_in_hash() -> None:
    sim_a = _build_sim(seed=77)
    sim_b = _build_sim(seed=77)

    baseline_hash = simulation_hash(sim_a)
    sim_b.set_rules_state("module_a", {"counter": 1, "nested": {"flag": True}})

    assert simulation_hash(sim_a) == baseline_hash
    assert simulation_hash(sim_b) != baseline_hash
    assert graph_hash(sim_a.graph) == graph_hash(sim_b.graph)


def test_rules_state_is_copied_and_validated() -> None:
    sim = _build_sim()
    state = {"tasks": ["a", "b"]}
    sim.set_rules_state("growth", state)
    state["tasks"].append("c")

    assert sim.get_rules_state("growth") == {"tasks": ["a", "b"]}
    assert sim.get_rules_state("unknown") == {}
    with pytest.raises(ValueError, match="rules_state value must be a dict"):
        sim.set_rules_state("growth", ["a"])
    with pytest.raises(ValueError, match="canonical JSON primitives"):
        sim.set_rules_state("growth", {"when": object()})


def test_record_outcome_builds_trace_entries() -> None:
    sim = _build_sim()

    sim.record_outcome(tick=0, event_type="growth_outcome", key="growth:0:0", params={"outcome": "applied"})

    entry = sim.get_event_trace()[0]
    assert entry["event_type"] == "growth_outcome"
    assert entry["params"] == {"outcome": "applied"}
    assert entry["module_hooks_called"] is True
    assert isinstance(entry["event_id"], int)
    with pytest.raises(ValueError, match="event_trace tick must be a non-negative integer"):
        sim.record_outcome(tick=-1, event_type="growth_outcome", key="k", params={})
    with pytest.raises(ValueError, match="event_trace.params must contain only canonical JSON primitives"):
        sim.record_outcome(tick=0, event_type="growth_outcome", key="k", params={"bad": {1, 2}})


def test_simulation_payload_snapshot() -> None:
    sim = Simulation(WorldGraph(), seed=4, eras=[Era(era_id="dawn", name="Dawn", duration_ticks=3)])
    sim.rng_stream(RNG_GROWTH_STREAM_NAME).random()
    sim.advance_ticks(2)

    payload = sim.simulation_payload()

    assert payload["tick"] == 2
    assert payload["current_era"] == "dawn"
    assert list(payload["rng_state"]["rng_stream_states"]) == [RNG_GROWTH_STREAM_NAME]
    with pytest.raises(ValueError, match="ticks must be a non-negative integer"):
        sim.advance_ticks(-1)


def test_duplicate_era_ids_are_rejected() -> None:
    with pytest.raises(ValueError, match="duplicate era_id: dawn"):
        Simulation(
            WorldGraph(),
            seed=1,
            eras=[Era(era_id="dawn", name="Dawn", duration_ticks=1), Era(era_id="dawn", name="Again", duration_ticks=1)],
        )


def test_emergent_regions_are_part_of_the_hash() -> None:
    def build() -> Simulation:
        context = CoordinateContext(encoder=SemanticEncoder([], {}), region_service=KindRegionService(), extra_kinds={"location"})
        return Simulation(WorldGraph(), seed=9, coordinates=context)

    sim_a = build()
    sim_b = build()
    assert simulation_hash(sim_a) == simulation_hash(sim_b)
    assert sim_a.simulation_payload()["regions"] == {}

    result = sim_b.coordinates.region_service.create_emergent_region(
        "location", Point(50, 50), "New Reach", "desc", 0, random.Random(1)
    )

    assert result.success
    assert simulation_hash(sim_a) != simulation_hash(sim_b)
    assert graph_hash(sim_a.graph) == graph_hash(sim_b.graph)
    regions = sim_b.simulation_payload()["regions"]
    assert [region["id"] for region in regions["location"]] == ["new_reach"]
