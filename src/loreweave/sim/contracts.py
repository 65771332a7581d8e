from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Union

from loreweave.sim.graph import EntityCriteria, Relationship, WorldGraph

if TYPE_CHECKING:
    from loreweave.sim.templates import GrowthTemplate
    from loreweave.sim.view import TemplateGraphView

DEFAULT_OVERSHOOT_FACTOR = 1.5
LINEAGE_CATEGORY = "lineage"


@dataclass(frozen=True)
class PressureThreshold:
    pressure_id: str
    min: float = 0.0
    max: float | None = None

    def evaluate(self, view: TemplateGraphView, rng: random.Random) -> str | None:
        value = view.get_pressure(self.pressure_id)
        if value < self.min:
            return f"pressure {self.pressure_id}={value:.2f} below {self.min}"
        if self.max is not None and value > self.max:
            return f"pressure {self.pressure_id}={value:.2f} above {self.max}"
        return None


@dataclass(frozen=True)
class PressureAnyAbove:
    pressure_ids: tuple[str, ...]
    threshold: float

    def evaluate(self, view: TemplateGraphView, rng: random.Random) -> str | None:
        if any(view.get_pressure(pressure_id) > self.threshold for pressure_id in self.pressure_ids):
            return None
        return f"no pressure of {', '.join(self.pressure_ids)} above {self.threshold}"


@dataclass(frozen=True)
class EntityCountMin:
    kind: str
    min: int
    subtype: str | None = None

    def evaluate(self, view: TemplateGraphView, rng: random.Random) -> str | None:
        count = view.get_entity_count(self.kind, self.subtype)
        if count < self.min:
            return f"{_label(self.kind, self.subtype)} count {count} below minimum {self.min}"
        return None


@dataclass(frozen=True)
class EntityCountMax:
    """Saturation clause: holds until the population reaches ``max * overshoot_factor``."""

    kind: str
    max: int
    subtype: str | None = None
    overshoot_factor: float = DEFAULT_OVERSHOOT_FACTOR

    def evaluate(self, view: TemplateGraphView, rng: random.Random) -> str | None:
        count = view.get_entity_count(self.kind, self.subtype)
        ceiling = self.max * self.overshoot_factor
        if count >= ceiling:
            return f"{_label(self.kind, self.subtype)} saturated at {count} (ceiling {ceiling:g})"
        return None


@dataclass(frozen=True)
class EraMatch:
    eras: tuple[str, ...]

    def evaluate(self, view: TemplateGraphView, rng: random.Random) -> str | None:
        if view.current_era in self.eras:
            return None
        return f"era {view.current_era} not in {', '.join(self.eras)}"


@dataclass(frozen=True)
class RandomChance:
    probability: float

    def __post_init__(self) -> None:
        if not 0.0 <= self.probability <= 1.0:
            raise ValueError("random chance probability must be within [0, 1]")

    def evaluate(self, view: TemplateGraphView, rng: random.Random) -> str | None:
        if rng.random() < self.probability:
            return None
        return f"random chance {self.probability} not met"


@dataclass(frozen=True)
class CooldownElapsed:
    """Holds when ``template_id`` has never fired or fired at least ``ticks`` ago."""

    template_id: str
    ticks: int

    def evaluate(self, view: TemplateGraphView, rng: random.Random) -> str | None:
        last = view.template_last_fired(self.template_id)
        if last is None or view.tick - last >= self.ticks:
            return None
        return f"template {self.template_id} on cooldown for {self.ticks - (view.tick - last)} more ticks"


@dataclass(frozen=True)
class CreationsPerEpoch:
    max_per_epoch: int

    def evaluate(self, view: TemplateGraphView, rng: random.Random) -> str | None:
        created = view.get_rate_limit()["creations_this_epoch"]
        if created < self.max_per_epoch:
            return None
        return f"creation rate limit reached ({created}/{self.max_per_epoch} this epoch)"


@dataclass(frozen=True)
class TagExists:
    tag: str
    kind: str | None = None

    def evaluate(self, view: TemplateGraphView, rng: random.Random) -> str | None:
        if view.find_entities(EntityCriteria(kind=self.kind, tag=self.tag)):
            return None
        return f"no {self.kind or 'entity'} carries tag {self.tag}"


@dataclass(frozen=True)
class TagAbsent:
    tag: str
    kind: str | None = None

    def evaluate(self, view: TemplateGraphView, rng: random.Random) -> str | None:
        if not view.find_entities(EntityCriteria(kind=self.kind, tag=self.tag)):
            return None
        return f"tag {self.tag} already present"


@dataclass(frozen=True)
class CustomPredicate:
    description: str
    predicate: Callable[[TemplateGraphView], bool] = field(compare=False)

    def evaluate(self, view: TemplateGraphView, rng: random.Random) -> str | None:
        if self.predicate(view):
            return None
        return f"custom predicate failed: {self.description}"


@dataclass(frozen=True)
class AllOf:
    clauses: tuple[Clause, ...]

    def evaluate(self, view: TemplateGraphView, rng: random.Random) -> str | None:
        reasons = [reason for reason in (clause.evaluate(view, rng) for clause in self.clauses) if reason]
        if not reasons:
            return None
        return "; ".join(reasons)


@dataclass(frozen=True)
class AnyOf:
    clauses: tuple[Clause, ...]

    def evaluate(self, view: TemplateGraphView, rng: random.Random) -> str | None:
        if not self.clauses:
            return None
        reasons: list[str] = []
        for clause in self.clauses:
            reason = clause.evaluate(view, rng)
            if reason is None:
                return None
            reasons.append(reason)
        return "none of: " + " | ".join(reasons)


Clause = Union[
    PressureThreshold,
    PressureAnyAbove,
    EntityCountMin,
    EntityCountMax,
    EraMatch,
    RandomChance,
    CooldownElapsed,
    CreationsPerEpoch,
    TagExists,
    TagAbsent,
    CustomPredicate,
    AllOf,
    AnyOf,
]


@dataclass(frozen=True)
class ComponentContract:
    enabled_by: tuple[Clause, ...] = ()
    saturation: tuple[Clause, ...] = ()


@dataclass(frozen=True)
class ApplicabilityCheck:
    allowed: bool
    reasons: tuple[str, ...] = ()


@dataclass(frozen=True)
class LineageRule:
    """Links each new ``kind`` entity to an older one of the same kind."""

    kind: str
    relationship_kind: str
    distance_min: float
    distance_max: float
    prefer_same_subtype: bool = True

    def __post_init__(self) -> None:
        if not 0.0 <= self.distance_min <= self.distance_max <= 1.0:
            raise ValueError("lineage distance range must satisfy 0 <= min <= max <= 1")


def check_contract(template: GrowthTemplate, view: TemplateGraphView, rng: random.Random) -> ApplicabilityCheck:
    """Evaluate every clause of the template's contract.

    All clauses are evaluated so the result carries every failing reason;
    an empty contract is vacuously allowed.
    """
    reasons: list[str] = []
    for clause in (*template.contract.enabled_by, *template.contract.saturation):
        reason = clause.evaluate(view, rng)
        if reason is not None:
            reasons.append(reason)
    return ApplicabilityCheck(allowed=not reasons, reasons=tuple(reasons))


def check_saturation(
    template: GrowthTemplate,
    view: TemplateGraphView,
    population_targets: dict[str, int],
    overshoot_factor: float = DEFAULT_OVERSHOOT_FACTOR,
) -> str | None:
    """Block a template only when every kind it produces is over its population target.

    Targets are keyed ``kind`` or ``kind:subtype``; the subtype key wins when
    both exist. Produced kinds without a target never count as saturated.
    """
    saturated: list[str] = []
    open_kinds = 0
    for produced in template.metadata.produces:
        label = _label(produced.kind, produced.subtype)
        target = population_targets.get(label) if produced.subtype else None
        count_subtype = produced.subtype if target is not None else None
        if target is None:
            target = population_targets.get(produced.kind)
        if target is None:
            open_kinds += 1
            continue
        count = view.get_entity_count(produced.kind, count_subtype)
        if count >= target * overshoot_factor:
            saturated.append(f"{label} ({count}/{target})")
        else:
            open_kinds += 1
    if saturated and open_kinds == 0:
        return f"all produced kinds saturated: {', '.join(saturated)}"
    return None


def enforce_lineage(
    graph: WorldGraph,
    created_ids: list[str],
    rules: list[LineageRule],
    rng: random.Random,
) -> list[Relationship]:
    rules_by_kind = {rule.kind: rule for rule in rules}
    created = set(created_ids)
    added: list[Relationship] = []
    for entity_id in created_ids:
        entity = graph.get_entity(entity_id)
        if entity is None or entity.kind not in rules_by_kind:
            continue
        rule = rules_by_kind[entity.kind]
        ancestors = [
            candidate
            for candidate in graph.get_entities_by_kind(entity.kind)
            if candidate.id not in created
        ]
        if rule.prefer_same_subtype:
            same_subtype = [candidate for candidate in ancestors if candidate.subtype == entity.subtype]
            ancestors = same_subtype or ancestors
        if not ancestors:
            continue
        ancestor = rng.choice(sorted(ancestors, key=lambda candidate: candidate.id))
        relationship = Relationship(
            kind=rule.relationship_kind,
            src=entity.id,
            dst=ancestor.id,
            distance=rule.distance_min + rng.random() * (rule.distance_max - rule.distance_min),
            category=LINEAGE_CATEGORY,
        )
        if graph.push_relationship(relationship):
            added.append(relationship)
    return added


def _label(kind: str, subtype: str | None) -> str:
    return f"{kind}:{subtype}" if subtype else kind
