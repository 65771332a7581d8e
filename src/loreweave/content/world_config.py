from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loreweave.sim.contracts import LineageRule
from loreweave.sim.coordinates import AXIS_NAMES, CoordinateContext, KindAxes, SemanticAxis, SemanticEncoder
from loreweave.sim.core import Simulation
from loreweave.sim.eras import Era, EraScheduleModule
from loreweave.sim.graph import IMMUTABLE_FACT_CATEGORY, Entity, Relationship, WorldGraph
from loreweave.sim.growth import GrowthModule
from loreweave.sim.pressures import GrowthFactor, PressureDefinition, PressureModule
from loreweave.sim.regions import EmergentRegionConfig, KindRegionService, Region
from loreweave.sim.templates import TemplateRegistry

WORLD_CONFIG_SCHEMA_VERSION = 1
DEFAULT_WORLD_CONFIG_PATH = "content/examples/seed_world.json"
DEFAULT_SEED = 0


@dataclass(frozen=True)
class CoordinateConfig:
    axes: tuple[KindAxes, ...] = ()
    tag_weights: dict[str, dict[str, dict[str, float]]] = field(default_factory=dict)
    regions: dict[str, tuple[Region, ...]] = field(default_factory=dict)
    emergent: dict[str, EmergentRegionConfig] = field(default_factory=dict)

    def build_context(self) -> CoordinateContext | None:
        if not self.axes and not self.regions:
            return None
        encoder = SemanticEncoder(list(self.axes), self.tag_weights)
        service = None
        if self.regions or self.emergent:
            service = KindRegionService(
                {kind: list(regions) for kind, regions in self.regions.items()},
                emergent_configs=dict(self.emergent),
            )
        return CoordinateContext(encoder=encoder, region_service=service, extra_kinds=set(self.regions))


@dataclass(frozen=True)
class WorldConfig:
    schema_version: int
    world_id: str
    seed: int
    templates_per_tick: int
    entities: tuple[Entity, ...]
    relationships: tuple[Relationship, ...]
    pressures: tuple[PressureDefinition, ...]
    eras: tuple[Era, ...]
    coordinates: CoordinateConfig
    population_targets: dict[str, int]
    lineage: tuple[LineageRule, ...]
    protected_categories: frozenset[str]


def load_world_config_json(path: str | Path) -> WorldConfig:
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    return validate_world_config_payload(payload)


def validate_world_config_payload(payload: dict[str, Any]) -> WorldConfig:
    if not isinstance(payload, dict):
        raise ValueError("world config payload must be an object")

    schema_version = payload.get("schema_version")
    if not isinstance(schema_version, int):
        raise ValueError("world config payload must contain integer field: schema_version")
    if schema_version != WORLD_CONFIG_SCHEMA_VERSION:
        raise ValueError(f"unsupported world config schema_version: {schema_version}")

    world_id = payload.get("world_id")
    if not isinstance(world_id, str) or not world_id:
        raise ValueError("world_id must be a non-empty string")

    seed = payload.get("seed", DEFAULT_SEED)
    if not isinstance(seed, int) or isinstance(seed, bool):
        raise ValueError("seed must be an integer")

    templates_per_tick = payload.get("templates_per_tick", 1)
    if not isinstance(templates_per_tick, int) or templates_per_tick < 0:
        raise ValueError("templates_per_tick must be integer >= 0")

    entities = validate_entities_payload(_list(payload, "entities"))
    entity_ids = {entity.id for entity in entities}
    relationships = validate_relationships_payload(_list(payload, "relationships"), entity_ids)

    protected = payload.get("protected_categories", [IMMUTABLE_FACT_CATEGORY])
    if not isinstance(protected, list) or not all(isinstance(item, str) and item for item in protected):
        raise ValueError("protected_categories must be a list of non-empty strings")

    return WorldConfig(
        schema_version=schema_version,
        world_id=world_id,
        seed=seed,
        templates_per_tick=templates_per_tick,
        entities=entities,
        relationships=relationships,
        pressures=validate_pressures_payload(_list(payload, "pressures")),
        eras=validate_eras_payload(_list(payload, "eras")),
        coordinates=validate_coordinates_payload(payload.get("coordinates", {})),
        population_targets=validate_population_targets_payload(payload.get("population_targets", {})),
        lineage=validate_lineage_payload(_list(payload, "lineage")),
        protected_categories=frozenset(protected),
    )


def _list(payload: dict[str, Any], key: str) -> list[Any]:
    value = payload.get(key, [])
    if not isinstance(value, list):
        raise ValueError(f"{key} must be a list")
    return value


def _object(value: Any, where: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ValueError(f"{where} must be an object")
    return value


def _number(row: dict[str, Any], key: str, where: str, default: float) -> float:
    value = row.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{where}.{key} must be a number")
    return float(value)


def validate_entities_payload(rows: list[Any]) -> tuple[Entity, ...]:
    seen_ids: set[str] = set()
    entities: list[Entity] = []
    for index, row in enumerate(rows):
        _object(row, f"entities[{index}]")
        try:
            entity = Entity.from_dict(row)
        except ValueError as error:
            raise ValueError(f"entities[{index}]: {error}") from error
        if entity.id in seen_ids:
            raise ValueError(f"duplicate entity id: {entity.id}")
        seen_ids.add(entity.id)
        entities.append(entity)
    return tuple(entities)


def validate_relationships_payload(rows: list[Any], entity_ids: set[str]) -> tuple[Relationship, ...]:
    seen_keys: set[tuple[str, str, str]] = set()
    relationships: list[Relationship] = []
    for index, row in enumerate(rows):
        _object(row, f"relationships[{index}]")
        try:
            relationship = Relationship.from_dict(row)
        except ValueError as error:
            raise ValueError(f"relationships[{index}]: {error}") from error
        for endpoint in (relationship.src, relationship.dst):
            if endpoint not in entity_ids:
                raise ValueError(f"relationships[{index}] references unknown entity: {endpoint}")
        if relationship.key in seen_keys:
            raise ValueError(f"duplicate relationship: {relationship.kind} {relationship.src}->{relationship.dst}")
        seen_keys.add(relationship.key)
        relationships.append(relationship)
    return tuple(relationships)


def validate_pressures_payload(rows: list[Any]) -> tuple[PressureDefinition, ...]:
    seen_ids: set[str] = set()
    pressures: list[PressureDefinition] = []
    for index, row in enumerate(rows):
        where = f"pressures[{index}]"
        _object(row, where)
        pressure_id = row.get("id")
        if not isinstance(pressure_id, str) or not pressure_id:
            raise ValueError(f"{where}.id must be a non-empty string")
        if pressure_id in seen_ids:
            raise ValueError(f"duplicate pressure id: {pressure_id}")
        seen_ids.add(pressure_id)

        factors: list[GrowthFactor] = []
        growth_rows = row.get("growth", [])
        if not isinstance(growth_rows, list):
            raise ValueError(f"{where}.growth must be a list")
        for factor_index, factor_row in enumerate(growth_rows):
            factor_where = f"{where}.growth[{factor_index}]"
            _object(factor_row, factor_where)
            if "rate" not in factor_row:
                raise ValueError(f"{factor_where}.rate is required")
            factors.append(
                GrowthFactor(
                    rate=_number(factor_row, "rate", factor_where, 0.0),
                    kind=factor_row.get("kind"),
                    subtype=factor_row.get("subtype"),
                    tag=factor_row.get("tag"),
                    status=factor_row.get("status"),
                )
            )
        try:
            pressures.append(
                PressureDefinition(
                    pressure_id=pressure_id,
                    name=str(row.get("name", pressure_id)),
                    initial_value=_number(row, "initial_value", where, 0.0),
                    decay=_number(row, "decay", where, 0.0),
                    growth_factors=tuple(factors),
                )
            )
        except ValueError as error:
            raise ValueError(f"{where}: {error}") from error
    return tuple(pressures)


def _float_map(value: Any, where: str) -> dict[str, float]:
    _object(value, where)
    result: dict[str, float] = {}
    for key, item in value.items():
        if isinstance(item, bool) or not isinstance(item, (int, float)):
            raise ValueError(f"{where}[{key}] must be a number")
        result[str(key)] = float(item)
    return result


def validate_eras_payload(rows: list[Any]) -> tuple[Era, ...]:
    seen_ids: set[str] = set()
    eras: list[Era] = []
    for index, row in enumerate(rows):
        where = f"eras[{index}]"
        _object(row, where)
        era_id = row.get("id")
        if not isinstance(era_id, str) or not era_id:
            raise ValueError(f"{where}.id must be a non-empty string")
        if era_id in seen_ids:
            raise ValueError(f"duplicate era id: {era_id}")
        seen_ids.add(era_id)
        duration_ticks = row.get("duration_ticks")
        if not isinstance(duration_ticks, int) or duration_ticks <= 0:
            raise ValueError(f"{where}.duration_ticks must be integer > 0")
        eras.append(
            Era(
                era_id=era_id,
                name=str(row.get("name", era_id)),
                duration_ticks=duration_ticks,
                template_weights=_float_map(row.get("template_weights", {}), f"{where}.template_weights"),
                pressure_modifiers=_float_map(row.get("pressure_modifiers", {}), f"{where}.pressure_modifiers"),
            )
        )
    return tuple(eras)


def _axis_from_row(row: Any, where: str) -> SemanticAxis:
    _object(row, where)
    try:
        return SemanticAxis(
            name=str(row.get("name", "")),
            low_concept=str(row.get("low", "")),
            high_concept=str(row.get("high", "")),
            related_pressure=row.get("related_pressure"),
            pressure_correlation=_number(row, "pressure_correlation", where, 0.0),
        )
    except ValueError as error:
        raise ValueError(f"{where}: {error}") from error


def validate_coordinates_payload(payload: Any) -> CoordinateConfig:
    """Parse the ``coordinates`` block: per-kind axes, tag weights, seed regions and emergent settings."""
    _object(payload, "coordinates")

    axes: list[KindAxes] = []
    raw_axes = _object(payload.get("axes", {}), "coordinates.axes")
    for kind in sorted(raw_axes):
        kind_row = _object(raw_axes[kind], f"coordinates.axes.{kind}")
        missing = [axis for axis in AXIS_NAMES if axis not in kind_row]
        if missing:
            raise ValueError(f"coordinates.axes.{kind} missing axes: {', '.join(missing)}")
        axes.append(
            KindAxes(
                entity_kind=kind,
                x=_axis_from_row(kind_row["x"], f"coordinates.axes.{kind}.x"),
                y=_axis_from_row(kind_row["y"], f"coordinates.axes.{kind}.y"),
                z=_axis_from_row(kind_row["z"], f"coordinates.axes.{kind}.z"),
            )
        )

    tag_weights: dict[str, dict[str, dict[str, float]]] = {}
    raw_weights = _object(payload.get("tag_weights", {}), "coordinates.tag_weights")
    for tag, per_kind in raw_weights.items():
        kinds = _object(per_kind, f"coordinates.tag_weights.{tag}")
        tag_weights[tag] = {}
        for kind, weights in kinds.items():
            where = f"coordinates.tag_weights.{tag}.{kind}"
            tag_weights[tag][kind] = _float_map(weights, where)

    regions: dict[str, tuple[Region, ...]] = {}
    raw_regions = _object(payload.get("regions", {}), "coordinates.regions")
    for kind, rows in raw_regions.items():
        if not isinstance(rows, list):
            raise ValueError(f"coordinates.regions.{kind} must be a list")
        parsed_regions: list[Region] = []
        seen_ids: set[str] = set()
        for index, row in enumerate(rows):
            try:
                region = Region.from_dict(row)
            except ValueError as error:
                raise ValueError(f"coordinates.regions.{kind}[{index}]: {error}") from error
            if region.region_id in seen_ids:
                raise ValueError(f"duplicate region id for {kind}: {region.region_id}")
            seen_ids.add(region.region_id)
            parsed_regions.append(region)
        regions[kind] = tuple(parsed_regions)

    emergent: dict[str, EmergentRegionConfig] = {}
    raw_emergent = _object(payload.get("emergent", {}), "coordinates.emergent")
    for kind, row in raw_emergent.items():
        where = f"coordinates.emergent.{kind}"
        _object(row, where)
        max_attempts = row.get("max_attempts", 50)
        if not isinstance(max_attempts, int):
            raise ValueError(f"{where}.max_attempts must be an integer")
        try:
            emergent[kind] = EmergentRegionConfig(
                min_distance_from_existing=_number(row, "min_distance_from_existing", where, 5.0),
                default_radius=_number(row, "default_radius", where, 10.0),
                max_attempts=max_attempts,
            )
        except ValueError as error:
            raise ValueError(f"{where}: {error}") from error

    return CoordinateConfig(axes=tuple(axes), tag_weights=tag_weights, regions=regions, emergent=emergent)


def validate_population_targets_payload(payload: Any) -> dict[str, int]:
    _object(payload, "population_targets")
    targets: dict[str, int] = {}
    for key, value in payload.items():
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            raise ValueError(f"population_targets[{key}] must be integer > 0")
        targets[str(key)] = value
    return targets


def validate_lineage_payload(rows: list[Any]) -> tuple[LineageRule, ...]:
    rules: list[LineageRule] = []
    for index, row in enumerate(rows):
        where = f"lineage[{index}]"
        _object(row, where)
        for key in ("kind", "relationship_kind"):
            if not isinstance(row.get(key), str) or not row.get(key):
                raise ValueError(f"{where}.{key} must be a non-empty string")
        try:
            rules.append(
                LineageRule(
                    kind=row["kind"],
                    relationship_kind=row["relationship_kind"],
                    distance_min=_number(row, "distance_min", where, 0.0),
                    distance_max=_number(row, "distance_max", where, 1.0),
                    prefer_same_subtype=bool(row.get("prefer_same_subtype", True)),
                )
            )
        except ValueError as error:
            raise ValueError(f"{where}: {error}") from error
    return tuple(rules)


def build_world_graph(config: WorldConfig) -> WorldGraph:
    graph = WorldGraph(protected_categories=config.protected_categories)
    for entity in config.entities:
        graph.set_entity(entity)
    for relationship in config.relationships:
        if not graph.push_relationship(relationship):
            raise ValueError(f"seed relationship rejected: {relationship.kind} {relationship.src}->{relationship.dst}")
    for pressure in config.pressures:
        graph.pressures.set(pressure.pressure_id, pressure.initial_value)
    return graph


def build_simulation(config: WorldConfig, registry: TemplateRegistry, *, seed: int | None = None) -> Simulation:
    """Assemble a ready-to-run simulation: era schedule, growth phase, then pressure drift."""
    simulation = Simulation(
        build_world_graph(config),
        seed=config.seed if seed is None else seed,
        coordinates=config.coordinates.build_context(),
        eras=list(config.eras),
    )
    simulation.register_rule_module(EraScheduleModule())
    simulation.register_rule_module(
        GrowthModule(
            registry,
            templates_per_tick=config.templates_per_tick,
            population_targets=config.population_targets,
            lineage_rules=list(config.lineage),
        )
    )
    simulation.register_rule_module(PressureModule(list(config.pressures)))
    return simulation
