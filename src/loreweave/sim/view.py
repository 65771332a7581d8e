from __future__ import annotations

import math
import random
from dataclasses import dataclass, replace
from typing import Any

from loreweave.sim.coordinates import (
    AXIS_CENTER,
    CoordinateContext,
    CoordinateConfigError,
    Point,
    RegionSystemError,
    centroid,
    clamp_axis,
)
from loreweave.sim.graph import Entity, EntityCriteria, EntityDraft, Relationship, WorldGraph
from loreweave.sim.pressures import DEFAULT_COOLDOWN_PERIOD
from loreweave.sim.regions import (
    DEFAULT_SATURATION_DENSITY,
    REGION_SAMPLE_ATTEMPTS,
    KindRegionService,
    Region,
    RegionLookup,
    RegionStats,
    contains_point,
)
from loreweave.sim.selection import SelectionBias, SelectionResult, TargetSelector

PLACEMENT_ATTEMPTS = 50
PLACEMENT_Z_JITTER = 10.0
FALLBACK_JITTER = 4.0
DEFAULT_MIN_DISTANCE = 0.05
DEFAULT_MAX_DISTANCE = 0.3
DEFAULT_REGION_MIN_DISTANCE = 5.0
DEFAULT_MAX_SEARCH_RADIUS = 20.0
LOCATION_RELATIONSHIP_KINDS = ("resident_of", "located_at")
MEMBERSHIP_RELATIONSHIP_KINDS = ("member_of",)
LEADERSHIP_RELATIONSHIP_KINDS = ("leader_of",)


@dataclass(frozen=True)
class EntityDistance:
    entity: Entity
    distance: float


@dataclass(frozen=True)
class SemanticProperty:
    value: float
    concept: str


class TemplateGraphView:
    """The restricted surface growth templates see.

    Reads go straight through to the store (and therefore hand out copies).
    The only writes exposed here are entity placement helpers, which stamp
    coordinates and region tags before handing the entity to the store.
    """

    def __init__(
        self,
        graph: WorldGraph,
        *,
        coordinates: CoordinateContext | None = None,
        rng: random.Random | None = None,
        selector: TargetSelector | None = None,
        selection_rng: random.Random | None = None,
    ) -> None:
        self._graph = graph
        self._coordinates = coordinates
        self._rng = rng or random.Random(0)
        self._selector = selector or TargetSelector()
        self._selection_rng = selection_rng or self._rng

    # -- world signals --------------------------------------------------------

    @property
    def tick(self) -> int:
        return self._graph.tick

    @property
    def current_era(self) -> str | None:
        return self._graph.current_era

    @property
    def rng(self) -> random.Random:
        return self._rng

    def get_pressure(self, pressure_id: str) -> float:
        return self._graph.get_pressure(pressure_id)

    def get_all_pressures(self) -> dict[str, float]:
        return self._graph.pressures.to_dict()

    def get_rate_limit(self) -> dict[str, int]:
        return self._graph.rate_limit.to_dict()

    def template_last_fired(self, template_id: str) -> int | None:
        return self._graph.template_last_fired.get(template_id)

    def template_run_count(self, template_id: str) -> int:
        return self._graph.template_run_counts.get(template_id, 0)

    # -- entities and relationships -------------------------------------------

    def get_entity(self, entity_id: str) -> Entity | None:
        return self._graph.get_entity(entity_id)

    def has_entity(self, entity_id: str) -> bool:
        return self._graph.has_entity(entity_id)

    def get_entity_count(self, kind: str | None = None, subtype: str | None = None) -> int:
        return self._graph.get_entity_count(kind, subtype)

    def find_entities(self, criteria: EntityCriteria | None = None, **filters: Any) -> list[Entity]:
        if criteria is None:
            if "exclude" in filters:
                filters["exclude"] = tuple(filters["exclude"])
            criteria = EntityCriteria(**filters)
        return self._graph.find_entities(criteria)

    def get_all_relationships(self) -> list[Relationship]:
        return self._graph.get_relationships()

    def get_relationships(self, entity_id: str, kind: str | None = None) -> list[Relationship]:
        return [
            relationship
            for relationship in self._graph.get_entity_relationships(entity_id)
            if kind is None or relationship.kind == kind
        ]

    def get_related_entities(
        self,
        entity_id: str,
        relationship_kind: str | None = None,
        direction: str = "both",
    ) -> list[Entity]:
        related: list[Entity] = []
        seen: set[str] = set()
        for relationship in self._graph.get_entity_relationships(entity_id, direction):
            if relationship_kind is not None and relationship.kind != relationship_kind:
                continue
            if not relationship.is_active:
                continue
            other_id = relationship.other_end(entity_id)
            if other_id in seen:
                continue
            other = self._graph.get_entity(other_id)
            if other is not None:
                seen.add(other_id)
                related.append(other)
        return related

    def has_relationship(self, src: str, dst: str, kind: str | None = None) -> bool:
        return self._graph.has_relationship(src, dst, kind)

    def get_relationship_cooldown(self, entity_id: str, relationship_kind: str, period: int = DEFAULT_COOLDOWN_PERIOD) -> int:
        return self._graph.cooldowns.remaining(entity_id, relationship_kind, self._graph.tick, period)

    def can_form_relationship(
        self,
        entity_id: str,
        relationship_kind: str,
        cooldown: int = DEFAULT_COOLDOWN_PERIOD,
    ) -> bool:
        return self._graph.cooldowns.can_form(entity_id, relationship_kind, self._graph.tick, cooldown)

    def get_location(self, entity_id: str) -> Entity | None:
        entity = self._graph.get_entity(entity_id)
        if entity is None:
            return None
        for link in entity.links:
            if link.kind in LOCATION_RELATIONSHIP_KINDS and link.is_active:
                return self._graph.get_entity(link.other_end(entity_id))
        return None

    def get_faction_members(self, faction_id: str) -> list[Entity]:
        return [
            entity
            for entity in self._graph.get_connected_entities(faction_id)
            if any(
                link.kind in MEMBERSHIP_RELATIONSHIP_KINDS and link.dst == faction_id and link.src == entity.id
                for link in entity.links
            )
        ]

    def get_faction_leader(self, faction_id: str) -> Entity | None:
        for entity in self._graph.get_connected_entities(faction_id):
            if any(
                link.kind in LEADERSHIP_RELATIONSHIP_KINDS and link.dst == faction_id and link.src == entity.id
                for link in entity.links
            ):
                return entity
        return None

    def select_targets(self, kind: str, count: int, bias: SelectionBias | None = None) -> SelectionResult:
        return self._selector.select_targets(self, kind, count, bias, rng=self._selection_rng)

    # -- coordinates ----------------------------------------------------------

    def _require_coordinates(self, kind: str) -> CoordinateContext:
        if self._coordinates is None:
            raise CoordinateConfigError(f"coordinate system is not configured for entity kind: {kind}")
        self._coordinates.require_kind(kind)
        return self._coordinates

    def has_coordinate_space(self, kind: str) -> bool:
        return self._coordinates is not None and self._coordinates.is_configured(kind)

    def _kind_points(self, kind: str) -> list[Point]:
        return [entity.coordinates for entity in self._graph.get_entities_by_kind(kind) if entity.coordinates is not None]

    def derive_coordinates(
        self,
        references: list[Entity],
        target_kind: str,
        axis_hint: list[str] | dict[str, Any] | None = None,
        *,
        min_distance: float = DEFAULT_MIN_DISTANCE,
        max_distance: float = DEFAULT_MAX_DISTANCE,
    ) -> Point:
        """Place a new ``target_kind`` entity near the centroid of ``references``.

        Distances are fractions of the axis span. With ``axis_hint`` tags the
        centroid is blended toward their semantic encoding; without usable
        reference coordinates the start point is that encoding (or the space
        centre). Up to ``PLACEMENT_ATTEMPTS`` offsets are
        tried that keep ``min_distance`` from every existing point of the
        kind; failing that, the start point is returned with a small jitter.
        """
        context = self._require_coordinates(target_kind)
        if not 0.0 <= min_distance <= max_distance:
            raise ValueError("derive_coordinates requires 0 <= min_distance <= max_distance")

        start = centroid([entity.coordinates for entity in references if entity.coordinates is not None])
        if start is None:
            if axis_hint and context.encoder.has_config_for_kind(target_kind):
                start = context.encoder.encode(target_kind, axis_hint, self._rng).point
            else:
                start = Point(AXIS_CENTER, AXIS_CENTER, AXIS_CENTER)
        elif axis_hint and context.encoder.has_config_for_kind(target_kind):
            start = context.encoder.encode_with_reference(target_kind, axis_hint, start, self._rng).point

        min_units = min_distance * 100
        max_units = max_distance * 100
        existing = self._kind_points(target_kind)
        for _ in range(PLACEMENT_ATTEMPTS):
            angle = self._rng.random() * 2 * math.pi
            distance = min_units + self._rng.random() * (max_units - min_units)
            candidate = Point(
                x=clamp_axis(start.x + math.cos(angle) * distance),
                y=clamp_axis(start.y + math.sin(angle) * distance),
                z=clamp_axis(start.z + (self._rng.random() - 0.5) * PLACEMENT_Z_JITTER),
            )
            if all(candidate.distance_to(point) >= min_units for point in existing):
                return candidate

        return Point(
            x=clamp_axis(start.x + (self._rng.random() - 0.5) * FALLBACK_JITTER),
            y=clamp_axis(start.y + (self._rng.random() - 0.5) * FALLBACK_JITTER),
            z=clamp_axis(start.z + (self._rng.random() - 0.5) * FALLBACK_JITTER),
        )

    def get_distance(self, first: Entity, second: Entity) -> float | None:
        if first.coordinates is None or second.coordinates is None:
            return None
        return first.coordinates.distance_to(second.coordinates)

    def find_nearest_entities(self, reference: Entity, target_kind: str, limit: int | None = None) -> list[EntityDistance]:
        if reference.coordinates is None:
            return []
        results = self._distances_from(reference, target_kind)
        return results[:limit] if limit else results

    def find_entities_in_radius(self, reference: Entity, radius: float, target_kind: str | None = None) -> list[EntityDistance]:
        if reference.coordinates is None:
            return []
        return [result for result in self._distances_from(reference, target_kind) if result.distance <= radius]

    def _distances_from(self, reference: Entity, target_kind: str | None) -> list[EntityDistance]:
        results: list[EntityDistance] = []
        for entity in self._graph.get_entities():
            if target_kind is not None and entity.kind != target_kind:
                continue
            if entity.id == reference.id:
                continue
            distance = self.get_distance(reference, entity)
            if distance is not None:
                results.append(EntityDistance(entity=entity, distance=distance))
        results.sort(key=lambda result: (result.distance, result.entity.id))
        return results

    def get_semantic_properties(self, entity: Entity) -> dict[str, SemanticProperty] | None:
        if self._coordinates is None or entity.coordinates is None:
            return None
        axes = self._coordinates.encoder.get_axes(entity.kind)
        if axes is None:
            return None
        point = entity.coordinates
        return {
            axis.name: SemanticProperty(value=value, concept=axis.describe(value))
            for axis, value in zip(axes.axes(), (point.x, point.y, point.z))
        }

    # -- regions --------------------------------------------------------------

    def _require_regions(self, kind: str) -> KindRegionService:
        if self._coordinates is None:
            raise RegionSystemError(f"region system is not configured for entity kind: {kind}")
        return self._coordinates.require_regions(kind)

    def has_region_system(self, kind: str) -> bool:
        return (
            self._coordinates is not None
            and self._coordinates.region_service is not None
            and self._coordinates.region_service.has_kind(kind)
        )

    def get_region(self, kind: str, region_id: str) -> Region | None:
        return self._require_regions(kind).get_region(kind, region_id)

    def get_all_regions(self, kind: str) -> list[Region]:
        return self._require_regions(kind).get_regions(kind)

    def lookup_region(self, kind: str, point: Point) -> RegionLookup:
        return self._require_regions(kind).lookup_region(kind, point)

    def get_entity_region(self, entity: Entity) -> Region | None:
        if entity.coordinates is None:
            return None
        return self.lookup_region(entity.kind, entity.coordinates).primary

    def get_region_tags(self, kind: str, point: Point) -> dict[str, str | bool]:
        return self._require_regions(kind).get_tags_for_point(kind, point)

    def find_entities_in_region(self, kind: str, region_id: str) -> list[Entity]:
        region = self.get_region(kind, region_id)
        if region is None:
            return []
        return [
            entity
            for entity in self._graph.get_entities_by_kind(kind)
            if entity.coordinates is not None and contains_point(region, entity.coordinates)
        ]

    def _region_points(self, kind: str, region_id: str) -> list[Point]:
        return [entity.coordinates for entity in self.find_entities_in_region(kind, region_id) if entity.coordinates is not None]

    def get_region_density(self, kind: str, region_id: str) -> float:
        mapper = self._require_regions(kind).get_mapper(kind)
        return mapper.get_region_density(region_id, self._region_points(kind, region_id))

    def is_region_saturated(self, kind: str, region_id: str, threshold: float = DEFAULT_SATURATION_DENSITY) -> bool:
        mapper = self._require_regions(kind).get_mapper(kind)
        return mapper.is_region_saturated(region_id, self._region_points(kind, region_id), threshold)

    def get_region_stats(self, kind: str) -> RegionStats:
        return self._require_regions(kind).get_mapper(kind).get_stats()

    def place_in_region(self, kind: str, region_id: str, *, min_distance: float = DEFAULT_REGION_MIN_DISTANCE) -> Point | None:
        mapper = self._require_regions(kind).get_mapper(kind)
        if mapper.get_region(region_id) is None:
            return None
        return mapper.sample_region(
            region_id,
            self._rng,
            avoid=self._region_points(kind, region_id),
            min_distance=min_distance,
        )

    def place_near(
        self,
        kind: str,
        reference: Point,
        *,
        min_distance: float = DEFAULT_REGION_MIN_DISTANCE,
        max_search_radius: float = DEFAULT_MAX_SEARCH_RADIUS,
    ) -> Point | None:
        self._require_regions(kind)
        existing = self._kind_points(kind)
        for _ in range(REGION_SAMPLE_ATTEMPTS):
            angle = self._rng.random() * 2 * math.pi
            distance = min_distance + self._rng.random() * max(0.0, max_search_radius - min_distance)
            candidate = Point(
                x=clamp_axis(reference.x + math.cos(angle) * distance),
                y=clamp_axis(reference.y + math.sin(angle) * distance),
                z=reference.z,
            )
            if all(candidate.distance_to(point) >= min_distance for point in existing):
                return candidate
        return None

    def add_entity_in_region(
        self,
        draft: EntityDraft,
        region_id: str,
        *,
        min_distance: float = DEFAULT_REGION_MIN_DISTANCE,
    ) -> str | None:
        point = self.place_in_region(draft.kind, region_id, min_distance=min_distance)
        if point is None:
            return None
        return self.create_entity(replace(draft, coordinates=point))

    def add_entity_near_entity(
        self,
        draft: EntityDraft,
        reference: Entity,
        *,
        min_distance: float = DEFAULT_REGION_MIN_DISTANCE,
        max_search_radius: float = DEFAULT_MAX_SEARCH_RADIUS,
    ) -> str | None:
        if reference.coordinates is None:
            raise ValueError(f"reference entity {reference.id!r} has no coordinates")
        point = self.place_near(
            draft.kind,
            reference.coordinates,
            min_distance=min_distance,
            max_search_radius=max_search_radius,
        )
        if point is None:
            return None
        return self.create_entity(replace(draft, coordinates=point))

    # -- commits --------------------------------------------------------------

    def create_entity(self, draft: EntityDraft, *, allow_emergent_region: bool = False) -> str:
        """Commit ``draft`` to the store, merging region tags for its position.

        Kinds with a configured coordinate space must arrive with coordinates.
        """
        if self.has_coordinate_space(draft.kind) and draft.coordinates is None:
            raise CoordinateConfigError(f"entity kind {draft.kind!r} requires coordinates in its configured space")
        tags = dict(draft.tags)
        if draft.coordinates is not None and self.has_region_system(draft.kind):
            service = self._require_regions(draft.kind)
            region_tags, _ = service.process_entity_placement(
                draft.kind,
                draft.coordinates,
                self._graph.tick,
                self._rng,
                entity_name=draft.name or None,
                allow_emergent=allow_emergent_region,
            )
            tags = {**region_tags, **tags}
        return self._graph.create_entity(**{**draft.create_kwargs(), "tags": tags})
