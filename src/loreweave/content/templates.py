from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loreweave.sim.contracts import (
    AllOf,
    AnyOf,
    Clause,
    ComponentContract,
    CooldownElapsed,
    CreationsPerEpoch,
    EntityCountMax,
    EntityCountMin,
    EraMatch,
    PressureAnyAbove,
    PressureThreshold,
    RandomChance,
    TagAbsent,
    TagExists,
)
from loreweave.sim.graph import PROMINENCE_ORDER, Entity, EntityCriteria, EntityDraft
from loreweave.sim.mutations import Mutation, mutation_from_dict
from loreweave.sim.selection import AvoidBias, DiversityTracking, PreferBias, SelectionBias
from loreweave.sim.templates import (
    EntityRef,
    EntityReference,
    GrowthTemplate,
    ProducedKind,
    RelationshipDraft,
    TemplateMetadata,
    TemplateRegistry,
    TemplateResult,
    parse_ref,
)
from loreweave.sim.view import TemplateGraphView

TEMPLATE_LIBRARY_SCHEMA_VERSION = 1
DEFAULT_TEMPLATE_LIBRARY_PATH = "content/examples/templates.json"
TARGET_REFS = {"$target", "$self"}


@dataclass(frozen=True)
class TargetDef:
    kind: str
    subtype: str | None = None
    status: str | None = None
    tag: str | None = None
    bias: SelectionBias | None = None
    candidates: int = 1


@dataclass(frozen=True)
class CreationDef:
    kind: str
    subtype: str
    name: str = ""
    description: str = ""
    status: str = "active"
    prominence: str = "marginal"
    culture: str | None = None
    tags: dict[str, str | bool] = field(default_factory=dict)
    region: str | None = None


@dataclass(frozen=True)
class RelationshipDef:
    kind: str
    src: str
    dst: str
    strength: float = 0.5
    category: str | None = None
    distance: float | None = None


@dataclass(frozen=True)
class TemplateDef:
    template_id: str
    name: str
    description: str
    enabled_by: tuple[Clause, ...]
    saturation: tuple[Clause, ...]
    max_runs: int | None
    target: TargetDef | None
    creation: tuple[CreationDef, ...]
    relationships: tuple[RelationshipDef, ...]
    state_updates: tuple[Mutation, ...]
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class TemplateLibrary:
    schema_version: int
    templates: tuple[TemplateDef, ...]

    def by_id(self) -> dict[str, TemplateDef]:
        return {template.template_id: template for template in self.templates}


def load_template_library_json(path: str | Path) -> TemplateLibrary:
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    return validate_template_library_payload(payload)


def validate_template_library_payload(payload: dict[str, Any]) -> TemplateLibrary:
    if not isinstance(payload, dict):
        raise ValueError("template library payload must be an object")

    schema_version = payload.get("schema_version")
    if not isinstance(schema_version, int):
        raise ValueError("template library payload must contain integer field: schema_version")
    if schema_version != TEMPLATE_LIBRARY_SCHEMA_VERSION:
        raise ValueError(f"unsupported template library schema_version: {schema_version}")

    rows = payload.get("templates")
    if not isinstance(rows, list):
        raise ValueError("template library payload must contain list field: templates")

    seen_ids: set[str] = set()
    templates: list[TemplateDef] = []
    for index, row in enumerate(rows):
        template = _template_from_row(row, f"templates[{index}]")
        if template.template_id in seen_ids:
            raise ValueError(f"duplicate template id: {template.template_id}")
        seen_ids.add(template.template_id)
        templates.append(template)
    return TemplateLibrary(schema_version=schema_version, templates=tuple(templates))


def build_template_registry(library: TemplateLibrary) -> TemplateRegistry:
    return TemplateRegistry([growth_template_from_def(template) for template in library.templates])


# -- row parsing --------------------------------------------------------------


def _require_str(row: dict[str, Any], key: str, where: str) -> str:
    value = row.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"{where}.{key} must be a non-empty string")
    return value


def _optional_str(row: dict[str, Any], key: str, where: str) -> str | None:
    value = row.get(key)
    if value is not None and (not isinstance(value, str) or not value):
        raise ValueError(f"{where}.{key} must be a non-empty string when present")
    return value


def _number(row: dict[str, Any], key: str, where: str, default: float | None = None) -> float:
    value = row.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{where}.{key} must be a number")
    return float(value)


def _str_tuple(row: dict[str, Any], key: str, where: str) -> tuple[str, ...]:
    value = row.get(key, [])
    if not isinstance(value, list) or not all(isinstance(item, str) and item for item in value):
        raise ValueError(f"{where}.{key} must be a list of non-empty strings")
    return tuple(value)


def _template_from_row(row: Any, where: str) -> TemplateDef:
    if not isinstance(row, dict):
        raise ValueError(f"{where} must be an object")
    template_id = _require_str(row, "id", where)

    max_runs = row.get("max_runs")
    if max_runs is not None and (not isinstance(max_runs, int) or max_runs <= 0):
        raise ValueError(f"{where}.max_runs must be integer > 0")

    raw_target = row.get("target")
    target = _target_from_row(raw_target, f"{where}.target") if raw_target is not None else None

    creation = tuple(
        _creation_from_row(entry, f"{where}.creation[{index}]")
        for index, entry in enumerate(_list(row, "creation", where))
    )
    relationships = tuple(
        _relationship_from_row(entry, f"{where}.relationships[{index}]", len(creation), target is not None)
        for index, entry in enumerate(_list(row, "relationships", where))
    )
    state_updates: list[Mutation] = []
    for index, entry in enumerate(_list(row, "state_updates", where)):
        try:
            state_updates.append(mutation_from_dict(entry))
        except ValueError as error:
            raise ValueError(f"{where}.state_updates[{index}]: {error}") from error

    return TemplateDef(
        template_id=template_id,
        name=str(row.get("name", template_id)),
        description=str(row.get("description", "")),
        enabled_by=tuple(
            clause_from_dict(entry, f"{where}.applicability[{index}]", template_id)
            for index, entry in enumerate(_list(row, "applicability", where))
        ),
        saturation=tuple(
            clause_from_dict(entry, f"{where}.saturation[{index}]", template_id)
            for index, entry in enumerate(_list(row, "saturation", where))
        ),
        max_runs=max_runs,
        target=target,
        creation=creation,
        relationships=relationships,
        state_updates=tuple(state_updates),
        tags=_str_tuple(row, "tags", where),
    )


def _list(row: dict[str, Any], key: str, where: str) -> list[Any]:
    value = row.get(key, [])
    if not isinstance(value, list):
        raise ValueError(f"{where}.{key} must be a list")
    return value


def clause_from_dict(payload: Any, where: str, template_id: str) -> Clause:
    """Parse one applicability clause; ``cooldown_elapsed`` defaults to the owning template."""
    if not isinstance(payload, dict):
        raise ValueError(f"{where} must be an object")
    clause_type = payload.get("type")
    if clause_type == "pressure_threshold":
        raw_max = payload.get("max")
        return PressureThreshold(
            pressure_id=_require_str(payload, "pressure_id", where),
            min=_number(payload, "min", where, 0.0),
            max=float(raw_max) if raw_max is not None else None,
        )
    if clause_type == "pressure_any_above":
        return PressureAnyAbove(
            pressure_ids=_str_tuple(payload, "pressure_ids", where),
            threshold=_number(payload, "threshold", where),
        )
    if clause_type == "entity_count_min":
        return EntityCountMin(
            kind=_require_str(payload, "kind", where),
            min=int(_number(payload, "min", where)),
            subtype=_optional_str(payload, "subtype", where),
        )
    if clause_type == "entity_count_max":
        return EntityCountMax(
            kind=_require_str(payload, "kind", where),
            max=int(_number(payload, "max", where)),
            subtype=_optional_str(payload, "subtype", where),
            overshoot_factor=_number(payload, "overshoot_factor", where, 1.5),
        )
    if clause_type == "era_match":
        return EraMatch(eras=_str_tuple(payload, "eras", where))
    if clause_type == "random_chance":
        return RandomChance(probability=_number(payload, "probability", where))
    if clause_type == "cooldown_elapsed":
        return CooldownElapsed(
            template_id=_optional_str(payload, "template_id", where) or template_id,
            ticks=int(_number(payload, "ticks", where)),
        )
    if clause_type == "creations_per_epoch":
        return CreationsPerEpoch(max_per_epoch=int(_number(payload, "max_per_epoch", where)))
    if clause_type == "tag_exists":
        return TagExists(tag=_require_str(payload, "tag", where), kind=_optional_str(payload, "kind", where))
    if clause_type == "tag_absent":
        return TagAbsent(tag=_require_str(payload, "tag", where), kind=_optional_str(payload, "kind", where))
    if clause_type in {"all_of", "any_of"}:
        nested = tuple(
            clause_from_dict(entry, f"{where}.clauses[{index}]", template_id)
            for index, entry in enumerate(_list(payload, "clauses", where))
        )
        return AllOf(clauses=nested) if clause_type == "all_of" else AnyOf(clauses=nested)
    raise ValueError(f"{where}.type unsupported clause type: {clause_type}")


def _bias_from_row(payload: Any, where: str) -> SelectionBias:
    if not isinstance(payload, dict):
        raise ValueError(f"{where} must be an object")
    prefer = None
    if "prefer" in payload:
        row = payload["prefer"]
        if not isinstance(row, dict):
            raise ValueError(f"{where}.prefer must be an object")
        prefer = PreferBias(
            subtypes=_str_tuple(row, "subtypes", f"{where}.prefer"),
            tags=_str_tuple(row, "tags", f"{where}.prefer"),
            prominence=_str_tuple(row, "prominence", f"{where}.prefer"),
            boost=_number(row, "boost", f"{where}.prefer", 1.0),
        )
    avoid = None
    if "avoid" in payload:
        row = payload["avoid"]
        if not isinstance(row, dict):
            raise ValueError(f"{where}.avoid must be an object")
        max_total = row.get("max_total_relationships")
        if max_total is not None and (not isinstance(max_total, int) or max_total <= 0):
            raise ValueError(f"{where}.avoid.max_total_relationships must be integer > 0")
        avoid = AvoidBias(
            relationship_kinds=_str_tuple(row, "relationship_kinds", f"{where}.avoid"),
            hub_penalty_strength=_number(row, "hub_penalty_strength", f"{where}.avoid", 1.0),
            max_total_relationships=max_total,
        )
    diversity = None
    if "diversity" in payload:
        row = payload["diversity"]
        if not isinstance(row, dict):
            raise ValueError(f"{where}.diversity must be an object")
        diversity = DiversityTracking(
            tracking_id=_require_str(row, "tracking_id", f"{where}.diversity"),
            strength=_number(row, "strength", f"{where}.diversity", 1.0),
        )
    return SelectionBias(prefer=prefer, avoid=avoid, diversity=diversity)


def _target_from_row(payload: Any, where: str) -> TargetDef:
    if not isinstance(payload, dict):
        raise ValueError(f"{where} must be an object")
    candidates = payload.get("candidates", 1)
    if not isinstance(candidates, int) or candidates <= 0:
        raise ValueError(f"{where}.candidates must be integer > 0")
    raw_bias = payload.get("bias")
    return TargetDef(
        kind=_require_str(payload, "kind", where),
        subtype=_optional_str(payload, "subtype", where),
        status=_optional_str(payload, "status", where),
        tag=_optional_str(payload, "tag", where),
        bias=_bias_from_row(raw_bias, f"{where}.bias") if raw_bias is not None else None,
        candidates=candidates,
    )


def _creation_from_row(payload: Any, where: str) -> CreationDef:
    if not isinstance(payload, dict):
        raise ValueError(f"{where} must be an object")
    prominence = payload.get("prominence", "marginal")
    if prominence not in PROMINENCE_ORDER:
        raise ValueError(f"{where}.prominence must be one of: {', '.join(PROMINENCE_ORDER)}")
    tags = payload.get("tags", {})
    if not isinstance(tags, dict) or not all(isinstance(value, (str, bool)) for value in tags.values()):
        raise ValueError(f"{where}.tags must map tag names to strings or booleans")
    return CreationDef(
        kind=_require_str(payload, "kind", where),
        subtype=_require_str(payload, "subtype", where),
        name=str(payload.get("name", "")),
        description=str(payload.get("description", "")),
        status=str(payload.get("status", "active")),
        prominence=prominence,
        culture=_optional_str(payload, "culture", where),
        tags=dict(tags),
        region=_optional_str(payload, "region", where),
    )


def _relationship_from_row(payload: Any, where: str, created: int, has_target: bool) -> RelationshipDef:
    if not isinstance(payload, dict):
        raise ValueError(f"{where} must be an object")
    endpoints = {key: _require_str(payload, key, where) for key in ("src", "dst")}
    for key, ref in endpoints.items():
        if ref in TARGET_REFS:
            if not has_target:
                raise ValueError(f"{where}.{key} refers to {ref} but the template declares no target")
            continue
        parsed = parse_ref(ref)
        if isinstance(parsed, EntityRef) and parsed.entity_id.startswith("$"):
            raise ValueError(f"{where}.{key} unknown binding: {ref}")
        if not isinstance(parsed, EntityRef) and parsed.index >= created:
            raise ValueError(f"{where}.{key} placeholder {ref} has no matching creation entry")
    raw_distance = payload.get("distance")
    strength = _number(payload, "strength", where, 0.5)
    if not 0.0 <= strength <= 1.0:
        raise ValueError(f"{where}.strength must be within [0, 1]")
    return RelationshipDef(
        kind=_require_str(payload, "kind", where),
        src=endpoints["src"],
        dst=endpoints["dst"],
        strength=strength,
        category=_optional_str(payload, "category", where),
        distance=float(raw_distance) if raw_distance is not None else None,
    )


# -- behaviour ----------------------------------------------------------------


def _render(text: str, view: TemplateGraphView, kind: str | None, target: Entity | None) -> str:
    rendered = text.replace("{count}", str(view.get_entity_count(kind) + 1))
    return rendered.replace("{target}", target.name if target is not None else "")


def growth_template_from_def(definition: TemplateDef) -> GrowthTemplate:
    """Wrap a declarative definition in the capability record the growth phase runs.

    ``$target`` and ``$self`` both name the entity the template was pointed
    at; ``culture: "$target"`` copies its culture onto created entities.
    """
    target_def = definition.target

    def find_targets(view: TemplateGraphView) -> list[Entity]:
        if target_def is None:
            return []
        if target_def.bias is not None:
            bias = SelectionBias(
                prefer=target_def.bias.prefer,
                avoid=target_def.bias.avoid,
                diversity=target_def.bias.diversity,
                subtype=target_def.subtype,
                status=target_def.status,
                tag=target_def.tag,
            )
            return view.select_targets(target_def.kind, target_def.candidates, bias).existing
        criteria = EntityCriteria(
            kind=target_def.kind,
            subtype=target_def.subtype,
            status=target_def.status,
            tag=target_def.tag,
        )
        return view.find_entities(criteria)

    def can_apply(view: TemplateGraphView) -> bool:
        if target_def is None:
            return True
        criteria = EntityCriteria(
            kind=target_def.kind,
            subtype=target_def.subtype,
            status=target_def.status,
            tag=target_def.tag,
        )
        return bool(view.find_entities(criteria))

    def endpoint(ref: str, target: Entity | None) -> EntityReference:
        if ref in TARGET_REFS:
            if target is None:
                raise ValueError(f"template {definition.template_id} needs a target for {ref}")
            return EntityRef(target.id)
        return parse_ref(ref)

    def expand(view: TemplateGraphView, target: Entity | None) -> TemplateResult:
        if target_def is not None and target is None:
            raise ValueError(f"template {definition.template_id} found no target")
        drafts: list[EntityDraft] = []
        for creation in definition.creation:
            culture = creation.culture
            if culture in TARGET_REFS:
                culture = target.culture if target is not None else None
            coordinates = None
            if creation.region is not None:
                coordinates = view.place_in_region(creation.kind, creation.region)
                if coordinates is None:
                    raise ValueError(f"region {creation.region} has no room for another {creation.kind}")
            drafts.append(
                EntityDraft(
                    kind=creation.kind,
                    subtype=creation.subtype,
                    name=_render(creation.name, view, creation.kind, target),
                    description=_render(creation.description, view, creation.kind, target),
                    status=creation.status,
                    prominence=creation.prominence,
                    culture=culture,
                    tags=dict(creation.tags),
                    coordinates=coordinates,
                )
            )
        relationships = [
            RelationshipDraft(
                kind=relationship.kind,
                src=endpoint(relationship.src, target),
                dst=endpoint(relationship.dst, target),
                strength=relationship.strength,
                category=relationship.category,
                distance=relationship.distance,
            )
            for relationship in definition.relationships
        ]
        return TemplateResult(
            entities=drafts,
            relationships=relationships,
            mutations=list(definition.state_updates),
            description=_render(definition.description or definition.name, view, None, target),
        )

    produces = []
    for creation in definition.creation:
        produced = ProducedKind(kind=creation.kind, subtype=creation.subtype)
        if produced not in produces:
            produces.append(produced)

    return GrowthTemplate(
        template_id=definition.template_id,
        name=definition.name,
        expand=expand,
        contract=ComponentContract(enabled_by=definition.enabled_by, saturation=definition.saturation),
        metadata=TemplateMetadata(produces=tuple(produces), tags=definition.tags, max_runs=definition.max_runs),
        can_apply=can_apply,
        find_targets=find_targets,
    )
