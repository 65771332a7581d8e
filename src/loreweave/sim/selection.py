from __future__ import annotations

import math
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from loreweave.sim.graph import Entity, EntityCriteria, EntityDraft
from loreweave.sim.rng import weighted_sample_without_replacement

if TYPE_CHECKING:
    from loreweave.sim.view import TemplateGraphView

BASE_SCORE = 1.0
DEFAULT_PREFERENCE_BOOST = 1.0
DEFAULT_HUB_PENALTY_STRENGTH = 1.0
DEFAULT_DIVERSITY_STRENGTH = 1.0
DEFAULT_SATURATION_THRESHOLD = 0.1
OVERCONNECTION_FREE_LINKS = 5
LOCATION_RELATIONSHIP_KIND = "resident_of"


@dataclass(frozen=True)
class ScoredCandidate:
    entity: Entity
    score: float


@dataclass(frozen=True)
class SaturationContext:
    requested_count: int
    best_candidate_score: float
    candidates: tuple[ScoredCandidate, ...]


EntityFactory = Callable[["TemplateGraphView", SaturationContext], EntityDraft]


@dataclass(frozen=True)
class PreferBias:
    subtypes: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    prominence: tuple[str, ...] = ()
    same_location_as: str | None = None
    same_culture_as: str | None = None
    boost: float = DEFAULT_PREFERENCE_BOOST


@dataclass(frozen=True)
class ExcludeRelated:
    entity_id: str
    relationship_kind: str | None = None


@dataclass(frozen=True)
class AvoidBias:
    relationship_kinds: tuple[str, ...] = ()
    hub_penalty_strength: float = DEFAULT_HUB_PENALTY_STRENGTH
    max_total_relationships: int | None = None
    exclude_related_to: ExcludeRelated | None = None
    different_culture_from: str | None = None
    cross_culture_penalty: float = 0.5

    def __post_init__(self) -> None:
        if self.hub_penalty_strength < 0:
            raise ValueError("hub_penalty_strength must be >= 0")
        if not 0.0 <= self.cross_culture_penalty <= 1.0:
            raise ValueError("cross_culture_penalty must be within [0, 1]")


@dataclass(frozen=True)
class DiversityTracking:
    tracking_id: str
    strength: float = DEFAULT_DIVERSITY_STRENGTH


@dataclass(frozen=True)
class CreateIfSaturated:
    factory: EntityFactory
    threshold: float = DEFAULT_SATURATION_THRESHOLD
    max_created: int | None = None


@dataclass(frozen=True)
class SelectionBias:
    prefer: PreferBias | None = None
    avoid: AvoidBias | None = None
    diversity: DiversityTracking | None = None
    create_if_saturated: CreateIfSaturated | None = None
    subtype: str | None = None
    status: str | None = None
    tag: str | None = None
    exclude: tuple[str, ...] = ()


@dataclass
class SelectionResult:
    existing: list[Entity] = field(default_factory=list)
    created: list[EntityDraft] = field(default_factory=list)
    diagnostics: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.existing) + len(self.created)


class SelectionTracker:
    """Per-bucket counts of how often each entity has been selected during a run."""

    def __init__(self) -> None:
        self._counts: dict[str, dict[str, int]] = {}

    def track(self, tracking_id: str, entity_id: str) -> None:
        bucket = self._counts.setdefault(tracking_id, {})
        bucket[entity_id] = bucket.get(entity_id, 0) + 1

    def get_count(self, tracking_id: str, entity_id: str) -> int:
        return self._counts.get(tracking_id, {}).get(entity_id, 0)

    def reset(self, tracking_id: str | None = None) -> None:
        if tracking_id is None:
            self._counts.clear()
        else:
            self._counts.pop(tracking_id, None)

    def to_dict(self) -> dict[str, dict[str, int]]:
        return {
            tracking_id: dict(sorted(bucket.items()))
            for tracking_id, bucket in sorted(self._counts.items())
        }

    def load(self, payload: dict[str, Any]) -> None:
        if not isinstance(payload, dict):
            raise ValueError("selection tracker state must be an object")
        counts: dict[str, dict[str, int]] = {}
        for tracking_id, bucket in payload.items():
            if not isinstance(bucket, dict):
                raise ValueError(f"selection tracker bucket {tracking_id!r} must be an object")
            counts[str(tracking_id)] = {str(entity_id): int(count) for entity_id, count in bucket.items()}
        self._counts = counts


class TargetSelector:
    """Weighted target selection that resists super-hub formation.

    Candidates start at ``BASE_SCORE`` and gain an additive boost for each
    matched preference, then take multiplicative penalties for avoided
    relationship kinds (quadratic), general over-connection, cross-culture
    mismatch and repeated selection under a diversity bucket. Picks are drawn
    by weighted sampling without replacement from the injected generator, so
    strong candidates are favoured without a strict top-N cut.
    """

    def __init__(self, tracker: SelectionTracker | None = None) -> None:
        self.tracker = tracker or SelectionTracker()

    def select_targets(
        self,
        view: TemplateGraphView,
        kind: str,
        count: int,
        bias: SelectionBias | None = None,
        *,
        rng: random.Random,
    ) -> SelectionResult:
        if count < 0:
            raise ValueError("count must be >= 0")
        bias = bias or SelectionBias()
        candidates = view.find_entities(
            EntityCriteria(
                kind=kind,
                subtype=bias.subtype,
                status=bias.status,
                tag=bias.tag,
                exclude=tuple(bias.exclude),
            )
        )
        scored = [ScoredCandidate(entity=entity, score=self.score_candidate(view, entity, bias)) for entity in candidates]
        scored = self._apply_hard_filters(view, scored, bias)
        scored.sort(key=lambda candidate: (-candidate.score, candidate.entity.id))

        diagnostics = _score_diagnostics(len(candidates), scored)
        if count == 0:
            return SelectionResult(diagnostics=diagnostics + ["creation_triggered=False"])

        saturation = bias.create_if_saturated
        best_score = scored[0].score if scored else 0.0
        if saturation is not None and best_score < saturation.threshold:
            return self._create_new_entities(view, count, bias, saturation, scored, diagnostics, rng)

        selected = _sample_positive(rng, scored, count)
        existing = [candidate.entity for candidate in selected]
        self._track(bias, existing)
        diagnostics.append("creation_triggered=False")
        return SelectionResult(existing=existing, created=[], diagnostics=diagnostics)

    def score_candidate(self, view: TemplateGraphView, entity: Entity, bias: SelectionBias) -> float:
        score = BASE_SCORE
        prefer = bias.prefer
        if prefer is not None:
            if entity.subtype in prefer.subtypes:
                score += prefer.boost
            if any(tag in entity.tags for tag in prefer.tags):
                score += prefer.boost
            if entity.prominence in prefer.prominence:
                score += prefer.boost
            if prefer.same_location_as is not None and _shares_location(view, entity, prefer.same_location_as):
                score += prefer.boost
            if prefer.same_culture_as is not None:
                reference = view.get_entity(prefer.same_culture_as)
                if reference is not None and reference.culture is not None and entity.culture == reference.culture:
                    score += prefer.boost

        avoid = bias.avoid
        if avoid is not None:
            active_links = [link for link in entity.links if link.is_active]
            avoided = sum(1 for link in active_links if link.kind in avoid.relationship_kinds)
            if avoided > 0:
                score *= 1.0 / (1.0 + avoided * avoided * avoid.hub_penalty_strength)
            if len(active_links) > OVERCONNECTION_FREE_LINKS:
                score *= 1.0 / (1.0 + math.sqrt(len(active_links) - OVERCONNECTION_FREE_LINKS))
            if avoid.different_culture_from is not None:
                reference = view.get_entity(avoid.different_culture_from)
                if reference is not None and entity.culture != reference.culture:
                    score *= avoid.cross_culture_penalty

        diversity = bias.diversity
        if diversity is not None:
            times = self.tracker.get_count(diversity.tracking_id, entity.id)
            if times > 0:
                score *= 1.0 / (1.0 + times**diversity.strength)
        return max(0.0, score)

    def reset_diversity_tracking(self, tracking_id: str | None = None) -> None:
        self.tracker.reset(tracking_id)

    def _apply_hard_filters(
        self,
        view: TemplateGraphView,
        scored: list[ScoredCandidate],
        bias: SelectionBias,
    ) -> list[ScoredCandidate]:
        avoid = bias.avoid
        if avoid is None:
            return scored
        filtered = scored
        if avoid.max_total_relationships is not None:
            cap = avoid.max_total_relationships
            filtered = [
                candidate
                for candidate in filtered
                if sum(1 for link in candidate.entity.links if link.is_active) < cap
            ]
        if avoid.exclude_related_to is not None:
            rule = avoid.exclude_related_to
            filtered = [
                candidate
                for candidate in filtered
                if not view.has_relationship(candidate.entity.id, rule.entity_id, rule.relationship_kind)
            ]
        return filtered

    def _create_new_entities(
        self,
        view: TemplateGraphView,
        count: int,
        bias: SelectionBias,
        saturation: CreateIfSaturated,
        scored: list[ScoredCandidate],
        diagnostics: list[str],
        rng: random.Random,
    ) -> SelectionResult:
        max_created = saturation.max_created if saturation.max_created is not None else math.ceil(count / 2)
        to_create = min(count, max(0, max_created))
        context = SaturationContext(
            requested_count=count,
            best_candidate_score=scored[0].score if scored else 0.0,
            candidates=tuple(scored),
        )
        created = [saturation.factory(view, context) for _ in range(to_create)]

        remaining = count - to_create
        selected = _sample_positive(rng, scored, remaining)
        existing = [candidate.entity for candidate in selected]
        self._track(bias, existing)
        diagnostics.append("creation_triggered=True")
        diagnostics.append(
            f"creation_reason=best score {context.best_candidate_score:.2f} < threshold {saturation.threshold}"
        )
        return SelectionResult(existing=existing, created=created, diagnostics=diagnostics)

    def _track(self, bias: SelectionBias, selected: list[Entity]) -> None:
        if bias.diversity is None:
            return
        for entity in selected:
            self.tracker.track(bias.diversity.tracking_id, entity.id)


def _sample_positive(rng: random.Random, scored: list[ScoredCandidate], count: int) -> list[ScoredCandidate]:
    # A zero score means the candidate is never drawn.
    pool = [candidate for candidate in scored if candidate.score > 0.0]
    return weighted_sample_without_replacement(rng, pool, [candidate.score for candidate in pool], count)


def _shares_location(view: TemplateGraphView, entity: Entity, reference_id: str) -> bool:
    reference = view.get_entity(reference_id)
    if reference is None:
        return False
    reference_locations = {
        link.dst for link in reference.links if link.kind == LOCATION_RELATIONSHIP_KIND and link.src == reference.id
    }
    return any(
        link.kind == LOCATION_RELATIONSHIP_KIND and link.src == entity.id and link.dst in reference_locations
        for link in entity.links
    )


def _score_diagnostics(evaluated: int, scored: list[ScoredCandidate]) -> list[str]:
    scores = [candidate.score for candidate in scored]
    best = max(scores, default=0.0)
    worst = min(scores, default=0.0)
    average = sum(scores) / len(scores) if scores else 0.0
    return [
        f"candidates_evaluated={evaluated}",
        f"best_score={best:.4f}",
        f"worst_score={worst:.4f}",
        f"avg_score={average:.4f}",
    ]
