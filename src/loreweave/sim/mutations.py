from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from loreweave.sim.graph import (
    DEFAULT_RELATIONSHIP_STRENGTH,
    PROMINENCE_ORDER,
    RELATIONSHIP_DIRECTIONS,
    Entity,
    Relationship,
    RelationshipKey,
    TagValue,
    WorldGraph,
    step_prominence,
)
from loreweave.sim.templates import PendingRef, parse_ref

PROMINENCE_LOCKED_TAG = "prominence_locked"
TRANSFER_STRENGTH = 0.8
SELF_REF = "$self"
RELATED_BINDING = "related"


# -- conditions ---------------------------------------------------------------


@dataclass(frozen=True)
class HasTag:
    entity: str
    tag: str

    def holds(self, ctx: MutationContext) -> bool:
        entity = ctx.resolve(self.entity)
        return entity is not None and self.tag in entity.tags


@dataclass(frozen=True)
class HasStatus:
    entity: str
    status: str

    def holds(self, ctx: MutationContext) -> bool:
        entity = ctx.resolve(self.entity)
        return entity is not None and entity.status == self.status


@dataclass(frozen=True)
class PressureAbove:
    pressure_id: str
    threshold: float

    def holds(self, ctx: MutationContext) -> bool:
        return ctx.graph.get_pressure(self.pressure_id) > self.threshold


Condition = Union[HasTag, HasStatus, PressureAbove]


# -- declared mutations -------------------------------------------------------


@dataclass(frozen=True)
class SetTag:
    entity: str
    tag: str
    value: TagValue = True
    value_from: str | None = None


@dataclass(frozen=True)
class RemoveTag:
    entity: str
    tag: str


@dataclass(frozen=True)
class CreateRelationship:
    kind: str
    src: str
    dst: str
    strength: float = DEFAULT_RELATIONSHIP_STRENGTH
    category: str | None = None
    bidirectional: bool = False


@dataclass(frozen=True)
class ArchiveRelationship:
    entity: str
    relationship_kind: str
    with_entity: str | None = None
    direction: str = "both"


@dataclass(frozen=True)
class AdjustRelationshipStrength:
    kind: str
    src: str
    dst: str
    delta: float
    bidirectional: bool = False


@dataclass(frozen=True)
class ChangeStatus:
    entity: str
    new_status: str


@dataclass(frozen=True)
class AdjustProminence:
    entity: str
    direction: str


@dataclass(frozen=True)
class ModifyPressure:
    pressure_id: str
    delta: float


@dataclass(frozen=True)
class UpdateRateLimit:
    pass


@dataclass(frozen=True)
class TransferRelationship:
    entity: str
    relationship_kind: str
    from_entity: str
    to_entity: str
    condition: Condition | None = None


@dataclass(frozen=True)
class ForEachRelated:
    relationship: str
    actions: tuple[Mutation, ...]
    direction: str = "both"
    target_kind: str | None = None
    target_subtype: str | None = None


@dataclass(frozen=True)
class Conditional:
    condition: Condition
    then_actions: tuple[Mutation, ...]
    else_actions: tuple[Mutation, ...] = ()


@dataclass(frozen=True)
class UnknownMutation:
    mutation_type: str
    payload: dict[str, Any] = field(default_factory=dict, compare=False)


Mutation = Union[
    SetTag,
    RemoveTag,
    CreateRelationship,
    ArchiveRelationship,
    AdjustRelationshipStrength,
    ChangeStatus,
    AdjustProminence,
    ModifyPressure,
    UpdateRateLimit,
    TransferRelationship,
    ForEachRelated,
    Conditional,
    UnknownMutation,
]


# -- results ------------------------------------------------------------------


@dataclass
class EntityModification:
    entity_id: str
    changes: dict[str, Any]


@dataclass(frozen=True)
class StrengthAdjustment:
    kind: str
    src: str
    dst: str
    delta: float

    @property
    def key(self) -> RelationshipKey:
        return (self.src, self.dst, self.kind)


@dataclass
class MutationResult:
    applied: bool = True
    diagnostic: str = ""
    entity_modifications: list[EntityModification] = field(default_factory=list)
    relationships_created: list[Relationship] = field(default_factory=list)
    relationships_archived: list[RelationshipKey] = field(default_factory=list)
    relationships_adjusted: list[StrengthAdjustment] = field(default_factory=list)
    pressure_changes: dict[str, float] = field(default_factory=dict)
    rate_limit_updated: bool = False

    @classmethod
    def rejected(cls, diagnostic: str) -> MutationResult:
        return cls(applied=False, diagnostic=diagnostic)

    def merge(self, other: MutationResult) -> None:
        self.entity_modifications.extend(other.entity_modifications)
        known = {relationship.key for relationship in self.relationships_created}
        for relationship in other.relationships_created:
            if relationship.key not in known:
                known.add(relationship.key)
                self.relationships_created.append(relationship)
        for key in other.relationships_archived:
            if key not in self.relationships_archived:
                self.relationships_archived.append(key)
        self.relationships_adjusted.extend(other.relationships_adjusted)
        for pressure_id, delta in other.pressure_changes.items():
            self.pressure_changes[pressure_id] = self.pressure_changes.get(pressure_id, 0.0) + delta
        self.rate_limit_updated = self.rate_limit_updated or other.rate_limit_updated


@dataclass
class MutationContext:
    """What a declared mutation may refer to.

    ``self_entity`` answers ``$self``; ``entities`` answers ``$name``
    bindings; ``pending_ids`` maps placeholder indices of the current
    expansion onto committed ids; anything else is looked up as a plain id.
    """

    graph: WorldGraph
    tick: int | None = None
    self_entity: Entity | None = None
    entities: dict[str, Entity] = field(default_factory=dict)
    values: dict[str, Any] = field(default_factory=dict)
    pending_ids: dict[int, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.tick is None:
            self.tick = self.graph.tick

    def resolve(self, ref: str) -> Entity | None:
        if not isinstance(ref, str) or not ref:
            return None
        if ref == SELF_REF:
            return self.graph.get_entity(self.self_entity.id) if self.self_entity is not None else None
        if ref.startswith("$"):
            bound = self.entities.get(ref[1:])
            return self.graph.get_entity(bound.id) if bound is not None else None
        parsed = parse_ref(ref)
        if isinstance(parsed, PendingRef):
            entity_id = self.pending_ids.get(parsed.index)
            return self.graph.get_entity(entity_id) if entity_id is not None else None
        return self.graph.get_entity(parsed.entity_id)

    def with_binding(self, name: str, entity: Entity) -> MutationContext:
        return MutationContext(
            graph=self.graph,
            tick=self.tick,
            self_entity=self.self_entity,
            entities={**self.entities, name: entity},
            values=self.values,
            pending_ids=self.pending_ids,
        )


# -- prepare ------------------------------------------------------------------


def prepare_mutation(mutation: Mutation, ctx: MutationContext) -> MutationResult:
    """Describe what ``mutation`` would change without writing to the graph.

    A mutation whose references cannot be resolved is rejected whole:
    ``applied`` is False, the diagnostic names the problem and no change
    lists are populated. A reference that cannot be parsed is rejected the
    same way.
    """
    try:
        return _prepare(mutation, ctx)
    except ValueError as error:
        return MutationResult.rejected(f"invalid mutation: {error}")


def _prepare(mutation: Mutation, ctx: MutationContext) -> MutationResult:
    if isinstance(mutation, SetTag):
        return _prepare_set_tag(mutation, ctx)
    if isinstance(mutation, RemoveTag):
        return _prepare_remove_tag(mutation, ctx)
    if isinstance(mutation, CreateRelationship):
        return _prepare_create_relationship(mutation, ctx)
    if isinstance(mutation, ArchiveRelationship):
        return _prepare_archive_relationship(mutation, ctx)
    if isinstance(mutation, AdjustRelationshipStrength):
        return _prepare_adjust_strength(mutation, ctx)
    if isinstance(mutation, ChangeStatus):
        return _prepare_change_status(mutation, ctx)
    if isinstance(mutation, AdjustProminence):
        return _prepare_adjust_prominence(mutation, ctx)
    if isinstance(mutation, ModifyPressure):
        sign = "+" if mutation.delta >= 0 else ""
        return MutationResult(
            pressure_changes={mutation.pressure_id: float(mutation.delta)},
            diagnostic=f"pressure {mutation.pressure_id} {sign}{mutation.delta}",
        )
    if isinstance(mutation, UpdateRateLimit):
        return MutationResult(rate_limit_updated=True, diagnostic="rate limit updated")
    if isinstance(mutation, TransferRelationship):
        return _prepare_transfer_relationship(mutation, ctx)
    if isinstance(mutation, ForEachRelated):
        return _prepare_for_each_related(mutation, ctx)
    if isinstance(mutation, Conditional):
        return _prepare_conditional(mutation, ctx)
    if isinstance(mutation, UnknownMutation):
        return MutationResult.rejected(f"unknown mutation type: {mutation.mutation_type}")
    return MutationResult.rejected(f"unknown mutation type: {type(mutation).__name__}")


def _prepare_set_tag(mutation: SetTag, ctx: MutationContext) -> MutationResult:
    if not isinstance(mutation.tag, str) or not mutation.tag.strip():
        return MutationResult.rejected("set_tag missing tag")
    entity = ctx.resolve(mutation.entity)
    if entity is None:
        return MutationResult.rejected(f"entity {mutation.entity} not found")
    value: TagValue = mutation.value
    if mutation.value_from is not None:
        if mutation.value_from not in ctx.values:
            return MutationResult.rejected(f"value source {mutation.value_from} not found")
        source = ctx.values[mutation.value_from]
        if not isinstance(source, (str, bool)):
            return MutationResult.rejected(f"value source {mutation.value_from} is not a valid tag value")
        value = source
    return MutationResult(
        entity_modifications=[EntityModification(entity.id, {"tags": {mutation.tag: value}})],
        diagnostic=f"set {mutation.tag}={value} on {entity.name}",
    )


def _prepare_remove_tag(mutation: RemoveTag, ctx: MutationContext) -> MutationResult:
    entity = ctx.resolve(mutation.entity)
    if entity is None:
        return MutationResult.rejected(f"entity {mutation.entity} not found")
    return MutationResult(
        entity_modifications=[EntityModification(entity.id, {"tags": {mutation.tag: None}})],
        diagnostic=f"removed {mutation.tag} from {entity.name}",
    )


def _prepare_create_relationship(mutation: CreateRelationship, ctx: MutationContext) -> MutationResult:
    src = ctx.resolve(mutation.src)
    if src is None:
        return MutationResult.rejected(f"source entity {mutation.src} not found")
    dst = ctx.resolve(mutation.dst)
    if dst is None:
        return MutationResult.rejected(f"destination entity {mutation.dst} not found")
    if src.id == dst.id:
        return MutationResult.rejected(f"cannot relate {src.id} to itself")
    if not 0.0 <= mutation.strength <= 1.0:
        return MutationResult.rejected("relationship strength must be within [0, 1]")

    pairs = [(src.id, dst.id)]
    if mutation.bidirectional:
        pairs.append((dst.id, src.id))
    for pair_src, pair_dst in pairs:
        if ctx.graph.get_relationship(pair_src, pair_dst, mutation.kind) is not None:
            return MutationResult.rejected(f"relationship {mutation.kind} {pair_src}->{pair_dst} already exists")

    created = [
        Relationship(
            kind=mutation.kind,
            src=pair_src,
            dst=pair_dst,
            strength=mutation.strength,
            category=mutation.category,
        )
        for pair_src, pair_dst in pairs
    ]
    return MutationResult(
        relationships_created=created,
        diagnostic=f"created {mutation.kind} between {src.name} and {dst.name}",
    )


def _matches_direction(relationship: Relationship, entity_id: str, direction: str) -> bool:
    if direction == "src":
        return relationship.src == entity_id
    if direction == "dst":
        return relationship.dst == entity_id
    return relationship.touches(entity_id)


def _prepare_archive_relationship(mutation: ArchiveRelationship, ctx: MutationContext) -> MutationResult:
    if mutation.direction not in RELATIONSHIP_DIRECTIONS:
        return MutationResult.rejected(f"invalid direction {mutation.direction}")
    entity = ctx.resolve(mutation.entity)
    if entity is None:
        return MutationResult.rejected(f"entity {mutation.entity} not found")
    counterpart: Entity | None = None
    if mutation.with_entity is not None and mutation.with_entity != "any":
        counterpart = ctx.resolve(mutation.with_entity)
        if counterpart is None:
            return MutationResult.rejected(f"entity {mutation.with_entity} not found for archive_relationship")

    archived: list[RelationshipKey] = []
    protected = 0
    for relationship in ctx.graph.get_entity_relationships(entity.id):
        if relationship.kind != mutation.relationship_kind or not relationship.is_active:
            continue
        if counterpart is not None and relationship.other_end(entity.id) != counterpart.id:
            continue
        if not _matches_direction(relationship, entity.id, mutation.direction):
            continue
        if ctx.graph.is_protected(relationship):
            protected += 1
            continue
        archived.append(relationship.key)

    diagnostic = f"archived {len(archived)} {mutation.relationship_kind} relationships"
    if protected:
        diagnostic += f" (skipped {protected} protected)"
    return MutationResult(relationships_archived=archived, diagnostic=diagnostic)


def _prepare_adjust_strength(mutation: AdjustRelationshipStrength, ctx: MutationContext) -> MutationResult:
    src = ctx.resolve(mutation.src)
    dst = ctx.resolve(mutation.dst)
    if src is None or dst is None:
        return MutationResult.rejected(f"relationship endpoints not found ({mutation.src} -> {mutation.dst})")

    pairs = [(src.id, dst.id)]
    if mutation.bidirectional:
        pairs.append((dst.id, src.id))
    adjustments: list[StrengthAdjustment] = []
    for pair_src, pair_dst in pairs:
        relationship = ctx.graph.get_relationship(pair_src, pair_dst, mutation.kind)
        if relationship is None:
            return MutationResult.rejected(f"relationship {mutation.kind} {pair_src}->{pair_dst} not found")
        if ctx.graph.is_protected(relationship):
            return MutationResult.rejected(
                f"relationship {mutation.kind} {pair_src}->{pair_dst} is protected ({relationship.category})"
            )
        adjustments.append(StrengthAdjustment(kind=mutation.kind, src=pair_src, dst=pair_dst, delta=float(mutation.delta)))
    return MutationResult(
        relationships_adjusted=adjustments,
        diagnostic=f"adjusted {mutation.kind} by {mutation.delta}",
    )


def _prepare_change_status(mutation: ChangeStatus, ctx: MutationContext) -> MutationResult:
    entity = ctx.resolve(mutation.entity)
    if entity is None:
        return MutationResult.rejected(f"entity {mutation.entity} not found")
    return MutationResult(
        entity_modifications=[EntityModification(entity.id, {"status": mutation.new_status})],
        diagnostic=f"changed {entity.name} status to {mutation.new_status}",
    )


def _prepare_adjust_prominence(mutation: AdjustProminence, ctx: MutationContext) -> MutationResult:
    if mutation.direction not in {"up", "down"}:
        return MutationResult.rejected(f"invalid prominence direction {mutation.direction}")
    entity = ctx.resolve(mutation.entity)
    if entity is None:
        return MutationResult.rejected(f"entity {mutation.entity} not found")
    if PROMINENCE_LOCKED_TAG in entity.tags:
        return MutationResult(diagnostic=f"{entity.name} prominence locked")

    new_prominence = step_prominence(entity.prominence, mutation.direction)
    if new_prominence == entity.prominence:
        extreme = "maximum" if mutation.direction == "up" else "minimum"
        return MutationResult(diagnostic=f"{entity.name} prominence already at {extreme}")
    return MutationResult(
        entity_modifications=[EntityModification(entity.id, {"prominence": new_prominence})],
        diagnostic=f"adjusted {entity.name} prominence {mutation.direction} to {new_prominence}",
    )


def _prepare_transfer_relationship(mutation: TransferRelationship, ctx: MutationContext) -> MutationResult:
    entity = ctx.resolve(mutation.entity)
    if entity is None:
        return MutationResult.rejected(f"entity {mutation.entity} not found")
    source = ctx.resolve(mutation.from_entity)
    if source is None:
        return MutationResult.rejected(f"from entity {mutation.from_entity} not found")
    destination = ctx.resolve(mutation.to_entity)
    if destination is None:
        return MutationResult.rejected(f"to entity {mutation.to_entity} not found")
    if mutation.condition is not None and not mutation.condition.holds(ctx):
        return MutationResult(diagnostic="transfer_relationship condition not met")

    archived: list[RelationshipKey] = []
    for relationship in ctx.graph.get_entity_relationships(entity.id):
        if relationship.kind != mutation.relationship_kind or not relationship.is_active:
            continue
        if relationship.other_end(entity.id) != source.id:
            continue
        if ctx.graph.is_protected(relationship):
            return MutationResult.rejected(
                f"relationship {relationship.kind} {relationship.src}->{relationship.dst} is protected ({relationship.category})"
            )
        archived.append(relationship.key)
        break

    created: list[Relationship] = []
    if ctx.graph.get_relationship(entity.id, destination.id, mutation.relationship_kind) is None:
        created.append(
            Relationship(kind=mutation.relationship_kind, src=entity.id, dst=destination.id, strength=TRANSFER_STRENGTH)
        )
    if archived:
        diagnostic = f"transferred {mutation.relationship_kind} from {source.name} to {destination.name}"
    else:
        diagnostic = f"created {mutation.relationship_kind} to {destination.name} (no previous relationship found)"
    return MutationResult(relationships_created=created, relationships_archived=archived, diagnostic=diagnostic)


def _prepare_nested(actions: tuple[Mutation, ...], ctx: MutationContext, result: MutationResult) -> list[str]:
    diagnostics: list[str] = []
    for action in actions:
        nested = prepare_mutation(action, ctx)
        if nested.applied:
            result.merge(nested)
        diagnostics.append(nested.diagnostic)
    return diagnostics


def _prepare_for_each_related(mutation: ForEachRelated, ctx: MutationContext) -> MutationResult:
    if ctx.self_entity is None:
        return MutationResult.rejected("for_each_related requires $self context")
    if mutation.direction not in RELATIONSHIP_DIRECTIONS:
        return MutationResult.rejected(f"invalid direction {mutation.direction}")
    self_id = ctx.self_entity.id

    related_ids: list[str] = []
    for relationship in ctx.graph.get_entity_relationships(self_id, mutation.direction):
        if relationship.kind != mutation.relationship or not relationship.is_active:
            continue
        other_id = relationship.other_end(self_id)
        if other_id not in related_ids:
            related_ids.append(other_id)

    result = MutationResult()
    diagnostics: list[str] = []
    processed = 0
    for related_id in related_ids:
        related = ctx.graph.get_entity(related_id)
        if related is None:
            continue
        if mutation.target_kind is not None and related.kind != mutation.target_kind:
            continue
        if mutation.target_subtype is not None and related.subtype != mutation.target_subtype:
            continue
        processed += 1
        diagnostics.extend(_prepare_nested(mutation.actions, ctx.with_binding(RELATED_BINDING, related), result))
    result.diagnostic = f"for_each_related: processed {processed} entities. {'; '.join(diagnostics)}".rstrip()
    return result


def _prepare_conditional(mutation: Conditional, ctx: MutationContext) -> MutationResult:
    met = mutation.condition.holds(ctx)
    result = MutationResult()
    diagnostics = _prepare_nested(mutation.then_actions if met else mutation.else_actions, ctx, result)
    result.diagnostic = f"conditional ({'then' if met else 'else'}): {'; '.join(diagnostics)}"
    return result


# -- commit -------------------------------------------------------------------


def _validate_against_graph(result: MutationResult, graph: WorldGraph) -> None:
    for modification in result.entity_modifications:
        if not graph.has_entity(modification.entity_id):
            raise ValueError(f"stale mutation result: entity {modification.entity_id} no longer exists")
        prominence = modification.changes.get("prominence")
        if prominence is not None and prominence not in PROMINENCE_ORDER:
            raise ValueError(f"mutation result carries unknown prominence {prominence}")
    for relationship in result.relationships_created:
        if not graph.has_entity(relationship.src) or not graph.has_entity(relationship.dst):
            raise ValueError(f"stale mutation result: endpoint missing for {relationship.key}")
        if graph.get_relationship(*relationship.key) is not None:
            raise ValueError(f"stale mutation result: relationship {relationship.key} already exists")
    for key in result.relationships_archived:
        if graph.get_relationship(*key) is None:
            raise ValueError(f"stale mutation result: relationship {key} no longer exists")
    for adjustment in result.relationships_adjusted:
        if graph.get_relationship(*adjustment.key) is None:
            raise ValueError(f"stale mutation result: relationship {adjustment.key} no longer exists")


def apply_mutation_result(result: MutationResult, ctx: MutationContext) -> None:
    """Commit a prepared result in the fixed order entities, relationships, pressures, rate limit.

    The whole result is checked against the current graph before the first
    write, so a result that has gone stale is refused without partial state.
    """
    if not result.applied:
        raise ValueError(f"cannot apply a rejected mutation result: {result.diagnostic}")
    graph = ctx.graph
    _validate_against_graph(result, graph)

    for modification in result.entity_modifications:
        graph.update_entity(modification.entity_id, modification.changes)
    for relationship in result.relationships_created:
        graph.push_relationship(relationship)
    for key in result.relationships_archived:
        graph.archive_relationship(*key)
    for adjustment in result.relationships_adjusted:
        graph.modify_relationship_strength(adjustment.src, adjustment.dst, adjustment.kind, adjustment.delta)
    for pressure_id, delta in result.pressure_changes.items():
        graph.modify_pressure(pressure_id, delta)
    if result.rate_limit_updated:
        graph.rate_limit.last_creation_tick = ctx.tick if ctx.tick is not None else graph.tick
        graph.rate_limit.creations_this_epoch += 1


def apply_mutation(mutation: Mutation, ctx: MutationContext) -> MutationResult:
    result = prepare_mutation(mutation, ctx)
    if result.applied:
        apply_mutation_result(result, ctx)
    return result


# -- JSON form ----------------------------------------------------------------


def _require_str(payload: dict[str, Any], key: str, mutation_type: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"{mutation_type}.{key} must be a non-empty string")
    return value


def _require_number(payload: dict[str, Any], key: str, mutation_type: str) -> float:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{mutation_type}.{key} must be a number")
    return float(value)


def condition_from_dict(payload: dict[str, Any]) -> Condition:
    if not isinstance(payload, dict):
        raise ValueError("condition must be an object")
    condition_type = payload.get("type")
    if condition_type == "has_tag":
        return HasTag(entity=_require_str(payload, "entity", "has_tag"), tag=_require_str(payload, "tag", "has_tag"))
    if condition_type == "has_status":
        return HasStatus(
            entity=_require_str(payload, "entity", "has_status"),
            status=_require_str(payload, "status", "has_status"),
        )
    if condition_type == "pressure_above":
        return PressureAbove(
            pressure_id=_require_str(payload, "pressure_id", "pressure_above"),
            threshold=_require_number(payload, "threshold", "pressure_above"),
        )
    raise ValueError(f"unsupported condition type: {condition_type}")


def _actions_from_list(payload: Any, field_name: str) -> tuple[Mutation, ...]:
    if not isinstance(payload, list):
        raise ValueError(f"{field_name} must be a list")
    return tuple(mutation_from_dict(entry) for entry in payload)


def mutation_from_dict(payload: dict[str, Any]) -> Mutation:
    """Parse the JSON form of a declared mutation.

    Unrecognised ``type`` values become ``UnknownMutation`` so they degrade at
    prepare time; a recognised type with malformed fields raises ``ValueError``.
    """
    if not isinstance(payload, dict):
        raise ValueError("mutation must be an object")
    mutation_type = payload.get("type")
    if not isinstance(mutation_type, str) or not mutation_type:
        raise ValueError("mutation.type must be a non-empty string")

    if mutation_type == "set_tag":
        value = payload.get("value", True)
        if not isinstance(value, (str, bool)):
            raise ValueError("set_tag.value must be a string or boolean")
        return SetTag(
            entity=_require_str(payload, "entity", mutation_type),
            tag=_require_str(payload, "tag", mutation_type),
            value=value,
            value_from=payload.get("value_from"),
        )
    if mutation_type == "remove_tag":
        return RemoveTag(entity=_require_str(payload, "entity", mutation_type), tag=_require_str(payload, "tag", mutation_type))
    if mutation_type == "create_relationship":
        return CreateRelationship(
            kind=_require_str(payload, "kind", mutation_type),
            src=_require_str(payload, "src", mutation_type),
            dst=_require_str(payload, "dst", mutation_type),
            strength=float(payload.get("strength", DEFAULT_RELATIONSHIP_STRENGTH)),
            category=payload.get("category"),
            bidirectional=bool(payload.get("bidirectional", False)),
        )
    if mutation_type == "archive_relationship":
        return ArchiveRelationship(
            entity=_require_str(payload, "entity", mutation_type),
            relationship_kind=_require_str(payload, "relationship_kind", mutation_type),
            with_entity=payload.get("with"),
            direction=str(payload.get("direction", "both")),
        )
    if mutation_type == "adjust_relationship_strength":
        return AdjustRelationshipStrength(
            kind=_require_str(payload, "kind", mutation_type),
            src=_require_str(payload, "src", mutation_type),
            dst=_require_str(payload, "dst", mutation_type),
            delta=_require_number(payload, "delta", mutation_type),
            bidirectional=bool(payload.get("bidirectional", False)),
        )
    if mutation_type == "change_status":
        return ChangeStatus(
            entity=_require_str(payload, "entity", mutation_type),
            new_status=_require_str(payload, "new_status", mutation_type),
        )
    if mutation_type == "adjust_prominence":
        direction = _require_str(payload, "direction", mutation_type)
        if direction not in {"up", "down"}:
            raise ValueError("adjust_prominence.direction must be 'up' or 'down'")
        return AdjustProminence(entity=_require_str(payload, "entity", mutation_type), direction=direction)
    if mutation_type == "modify_pressure":
        return ModifyPressure(
            pressure_id=_require_str(payload, "pressure_id", mutation_type),
            delta=_require_number(payload, "delta", mutation_type),
        )
    if mutation_type == "update_rate_limit":
        return UpdateRateLimit()
    if mutation_type == "transfer_relationship":
        raw_condition = payload.get("condition")
        return TransferRelationship(
            entity=_require_str(payload, "entity", mutation_type),
            relationship_kind=_require_str(payload, "relationship_kind", mutation_type),
            from_entity=_require_str(payload, "from", mutation_type),
            to_entity=_require_str(payload, "to", mutation_type),
            condition=condition_from_dict(raw_condition) if raw_condition is not None else None,
        )
    if mutation_type == "for_each_related":
        return ForEachRelated(
            relationship=_require_str(payload, "relationship", mutation_type),
            actions=_actions_from_list(payload.get("actions"), "for_each_related.actions"),
            direction=str(payload.get("direction", "both")),
            target_kind=payload.get("target_kind"),
            target_subtype=payload.get("target_subtype"),
        )
    if mutation_type == "conditional":
        return Conditional(
            condition=condition_from_dict(payload.get("condition")),
            then_actions=_actions_from_list(payload.get("then", []), "conditional.then"),
            else_actions=_actions_from_list(payload.get("else", []), "conditional.else"),
        )
    return UnknownMutation(mutation_type=mutation_type, payload=dict(payload))
