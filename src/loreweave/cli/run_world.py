from __future__ import annotations

import argparse
import json
import logging
from collections import Counter
from pathlib import Path
from typing import Sequence

from loreweave.content.templates import (
    DEFAULT_TEMPLATE_LIBRARY_PATH,
    build_template_registry,
    load_template_library_json,
)
from loreweave.content.world_config import DEFAULT_WORLD_CONFIG_PATH, build_simulation, load_world_config_json
from loreweave.sim.core import Simulation
from loreweave.sim.growth import GROWTH_OUTCOME_EVENT_TYPE
from loreweave.sim.hash import simulation_hash

logger = logging.getLogger(__name__)

TRACE_PRINT_LIMIT_DEFAULT = 0


def _non_negative_int(value: str) -> int:
    parsed = int(value)
    if parsed < 0:
        raise argparse.ArgumentTypeError("value must be >= 0")
    return parsed


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="loreweave-run",
        description="Grow a seed world for N ticks with a template library and print the resulting world summary.",
    )
    parser.add_argument("--world", default=DEFAULT_WORLD_CONFIG_PATH, help="Path to seed world JSON")
    parser.add_argument("--templates", default=DEFAULT_TEMPLATE_LIBRARY_PATH, help="Path to template library JSON")
    parser.add_argument("--ticks", type=_non_negative_int, default=10, help="Ticks to simulate")
    parser.add_argument("--seed", type=int, default=None, help="Override the seed from the world file")
    parser.add_argument("--per-tick", action="store_true", help="Print simulation hash after each tick")
    parser.add_argument(
        "--print-trace",
        type=_non_negative_int,
        default=TRACE_PRINT_LIMIT_DEFAULT,
        help="Print the last N growth outcomes from the event trace",
    )
    parser.add_argument("--dump-final-payload", help="Optional path to write the final simulation payload JSON")
    parser.add_argument("--verbose", action="store_true", help="Log growth decisions to stderr")
    return parser


def _print_header(world_id: str, simulation: Simulation, template_count: int) -> None:
    print(
        "header "
        f"world_id={world_id} "
        f"seed={simulation.seed} "
        f"tick={simulation.state.tick} "
        f"era={simulation.graph.current_era or '-'} "
        f"entity_count={simulation.graph.get_entity_count()} "
        f"template_count={template_count}"
    )


def _print_summary(simulation: Simulation) -> None:
    graph = simulation.graph
    print(
        "summary "
        f"tick={simulation.state.tick} "
        f"era={graph.current_era or '-'} "
        f"entities={graph.get_entity_count()} "
        f"relationships={graph.get_relationship_count()}"
    )
    counts = Counter(entity.kind for entity in graph.get_entities())
    if not counts:
        print("kinds none")
    for kind in sorted(counts):
        print(f"kind {kind}={counts[kind]}")
    pressures = graph.pressures.to_dict()
    if not pressures:
        print("pressures none")
    for pressure_id, value in pressures.items():
        print(f"pressure {pressure_id}={value:.2f}")


def _print_trace(simulation: Simulation, limit: int) -> None:
    print(f"trace.limit={limit}")
    outcomes = [entry for entry in simulation.get_event_trace() if entry.get("event_type") == GROWTH_OUTCOME_EVENT_TYPE]
    recent = outcomes[-limit:] if limit else []
    if not recent:
        print("trace none")
    for entry in recent:
        params = entry.get("params", {})
        created = params.get("entities_created") or []
        print(
            "trace "
            f"tick={entry.get('tick', '?')} "
            f"outcome={params.get('outcome', '?')} "
            f"template_id={params.get('template_id', '-')} "
            f"target_id={params.get('target_id') or '-'} "
            f"created={','.join(created) if created else '-'}"
        )


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    try:
        config = load_world_config_json(args.world)
        library = load_template_library_json(args.templates)
        simulation = build_simulation(config, build_template_registry(library), seed=args.seed)

        _print_header(config.world_id, simulation, len(library.templates))
        logger.info("running %d ticks", args.ticks)
        if args.per_tick and args.ticks > 0:
            for _ in range(args.ticks):
                simulation.advance_ticks(1)
                print(f"tick={simulation.state.tick} hash={simulation_hash(simulation)}")
        else:
            simulation.advance_ticks(args.ticks)

        _print_summary(simulation)
        if args.print_trace:
            _print_trace(simulation, args.print_trace)
        print(f"simulation_hash={simulation_hash(simulation)}")

        if args.dump_final_payload:
            Path(args.dump_final_payload).write_text(
                json.dumps(simulation.simulation_payload(), sort_keys=True, indent=2),
                encoding="utf-8",
            )
            print(f"dumped_final_payload={args.dump_final_payload}")
    except (OSError, ValueError) as exc:
        print(f"error: {exc}")
        return 1

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
