from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from loreweave.sim.coordinates import Point
from loreweave.sim.pressures import CooldownTracker, PressureTracker

PROMINENCE_ORDER = ("forgotten", "marginal", "recognized", "renowned", "mythic")
DEFAULT_PROMINENCE = "marginal"
DEFAULT_STATUS = "active"
DEFAULT_SUBTYPE = "default"
DEFAULT_RELATIONSHIP_STRENGTH = 0.5
RELATIONSHIP_ACTIVE = "active"
RELATIONSHIP_HISTORICAL = "historical"
IMMUTABLE_FACT_CATEGORY = "immutable_fact"
MAX_HISTORY = 512
RELATIONSHIP_DIRECTIONS = {"src", "dst", "both"}

TagValue = str | bool
RelationshipKey = tuple[str, str, str]

_UPDATABLE_ENTITY_FIELDS = {
    "kind",
    "subtype",
    "name",
    "description",
    "status",
    "prominence",
    "culture",
    "tags",
    "coordinates",
}


def prominence_index(prominence: str) -> int:
    if prominence not in PROMINENCE_ORDER:
        raise ValueError(f"unknown prominence: {prominence}")
    return PROMINENCE_ORDER.index(prominence)


def step_prominence(prominence: str, direction: str) -> str:
    """Move exactly one step along ``PROMINENCE_ORDER``, saturating at either end."""
    if direction not in {"up", "down"}:
        raise ValueError("prominence direction must be 'up' or 'down'")
    index = prominence_index(prominence) + (1 if direction == "up" else -1)
    return PROMINENCE_ORDER[max(0, min(len(PROMINENCE_ORDER) - 1, index))]


def _validate_tags(tags: Any, *, field_name: str, allow_removal: bool = False) -> None:
    if not isinstance(tags, dict):
        raise ValueError(f"{field_name} must be an object")
    for key, value in tags.items():
        if not isinstance(key, str) or not key:
            raise ValueError(f"{field_name} keys must be non-empty strings")
        if value is None and allow_removal:
            continue
        if not isinstance(value, (str, bool)):
            raise ValueError(f"{field_name}[{key}] must be a string or boolean")


@dataclass
class Relationship:
    kind: str
    src: str
    dst: str
    strength: float = DEFAULT_RELATIONSHIP_STRENGTH
    status: str = RELATIONSHIP_ACTIVE
    category: str | None = None
    distance: float | None = None
    catalyzed_by: str | None = None
    created_at: int | None = None
    archived_at: int | None = None

    def __post_init__(self) -> None:
        for field_name in ("kind", "src", "dst"):
            value = getattr(self, field_name)
            if not isinstance(value, str) or not value:
                raise ValueError(f"relationship {field_name} must be a non-empty string")
        if not 0.0 <= float(self.strength) <= 1.0:
            raise ValueError("relationship strength must be within [0, 1]")
        if self.distance is not None and not 0.0 <= float(self.distance) <= 1.0:
            raise ValueError("relationship distance must be within [0, 1]")

    @property
    def key(self) -> RelationshipKey:
        return (self.src, self.dst, self.kind)

    @property
    def is_active(self) -> bool:
        return self.status != RELATIONSHIP_HISTORICAL

    def touches(self, entity_id: str) -> bool:
        return self.src == entity_id or self.dst == entity_id

    def other_end(self, entity_id: str) -> str:
        return self.dst if self.src == entity_id else self.src

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "src": self.src,
            "dst": self.dst,
            "strength": self.strength,
            "status": self.status,
            "category": self.category,
            "distance": self.distance,
            "catalyzed_by": self.catalyzed_by,
            "created_at": self.created_at,
            "archived_at": self.archived_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Relationship:
        if not isinstance(payload, dict):
            raise ValueError("relationship must be an object")
        return cls(
            kind=str(payload.get("kind", "")),
            src=str(payload.get("src", "")),
            dst=str(payload.get("dst", "")),
            strength=float(payload.get("strength", DEFAULT_RELATIONSHIP_STRENGTH)),
            status=str(payload.get("status", RELATIONSHIP_ACTIVE)),
            category=payload.get("category"),
            distance=(float(payload["distance"]) if payload.get("distance") is not None else None),
            catalyzed_by=payload.get("catalyzed_by"),
            created_at=payload.get("created_at"),
            archived_at=payload.get("archived_at"),
        )


@dataclass
class Entity:
    id: str
    kind: str
    subtype: str = DEFAULT_SUBTYPE
    name: str = ""
    description: str = ""
    status: str = DEFAULT_STATUS
    prominence: str = DEFAULT_PROMINENCE
    culture: str | None = None
    tags: dict[str, TagValue] = field(default_factory=dict)
    links: list[Relationship] = field(default_factory=list)
    coordinates: Point | None = None
    created_at: int = 0
    updated_at: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id:
            raise ValueError("entity id must be a non-empty string")
        if not isinstance(self.kind, str) or not self.kind:
            raise ValueError("entity kind must be a non-empty string")
        if self.prominence not in PROMINENCE_ORDER:
            raise ValueError(f"entity prominence must be one of: {', '.join(PROMINENCE_ORDER)}")
        _validate_tags(self.tags, field_name="entity.tags")

    def has_tag(self, tag: str, value: TagValue | None = None) -> bool:
        if tag not in self.tags:
            return False
        return value is None or self.tags[tag] == value

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "subtype": self.subtype,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "prominence": self.prominence,
            "culture": self.culture,
            "tags": dict(sorted(self.tags.items())),
            "coordinates": self.coordinates.to_dict() if self.coordinates is not None else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Entity:
        if not isinstance(payload, dict):
            raise ValueError("entity must be an object")
        raw_coordinates = payload.get("coordinates")
        return cls(
            id=str(payload.get("id", "")),
            kind=str(payload.get("kind", "")),
            subtype=str(payload.get("subtype", DEFAULT_SUBTYPE)),
            name=str(payload.get("name", "")),
            description=str(payload.get("description", "")),
            status=str(payload.get("status", DEFAULT_STATUS)),
            prominence=str(payload.get("prominence", DEFAULT_PROMINENCE)),
            culture=payload.get("culture"),
            tags=dict(payload.get("tags", {})),
            coordinates=Point.from_dict(raw_coordinates) if raw_coordinates is not None else None,
            created_at=int(payload.get("created_at", 0)),
            updated_at=int(payload.get("updated_at", 0)),
        )


@dataclass
class EntityDraft:
    """An entity that has been described but not yet committed to a graph."""

    kind: str
    subtype: str = DEFAULT_SUBTYPE
    name: str = ""
    description: str = ""
    status: str = DEFAULT_STATUS
    prominence: str = DEFAULT_PROMINENCE
    culture: str | None = None
    tags: dict[str, TagValue] = field(default_factory=dict)
    coordinates: Point | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.kind, str) or not self.kind:
            raise ValueError("entity draft kind must be a non-empty string")
        if self.prominence not in PROMINENCE_ORDER:
            raise ValueError(f"entity draft prominence must be one of: {', '.join(PROMINENCE_ORDER)}")
        _validate_tags(self.tags, field_name="entity_draft.tags")

    def create_kwargs(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "subtype": self.subtype,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "prominence": self.prominence,
            "culture": self.culture,
            "tags": dict(self.tags),
            "coordinates": self.coordinates,
        }


@dataclass(frozen=True)
class EntityCriteria:
    kind: str | None = None
    subtype: str | None = None
    status: str | None = None
    prominence: str | None = None
    culture: str | None = None
    tag: str | None = None
    exclude: tuple[str, ...] = ()

    def matches(self, entity: Entity) -> bool:
        if entity.id in self.exclude:
            return False
        if self.kind is not None and entity.kind != self.kind:
            return False
        if self.subtype is not None and entity.subtype != self.subtype:
            return False
        if self.status is not None and entity.status != self.status:
            return False
        if self.prominence is not None and entity.prominence != self.prominence:
            return False
        if self.culture is not None and entity.culture != self.culture:
            return False
        if self.tag is not None and self.tag not in entity.tags:
            return False
        return True


@dataclass(frozen=True)
class RelationshipCriteria:
    kind: str | None = None
    src: str | None = None
    dst: str | None = None
    category: str | None = None
    min_strength: float | None = None
    status: str | None = None

    def matches(self, relationship: Relationship) -> bool:
        if self.kind is not None and relationship.kind != self.kind:
            return False
        if self.src is not None and relationship.src != self.src:
            return False
        if self.dst is not None and relationship.dst != self.dst:
            return False
        if self.category is not None and relationship.category != self.category:
            return False
        if self.min_strength is not None and relationship.strength < self.min_strength:
            return False
        if self.status is not None and relationship.status != self.status:
            return False
        return True


@dataclass
class RateLimitState:
    last_creation_tick: int = 0
    creations_this_epoch: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"last_creation_tick": self.last_creation_tick, "creations_this_epoch": self.creations_this_epoch}


@dataclass
class HistoryEvent:
    tick: int
    era: str | None
    event_type: str
    description: str
    entities_created: list[str] = field(default_factory=list)
    relationships_created: list[dict[str, Any]] = field(default_factory=list)
    entities_modified: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tick": self.tick,
            "era": self.era,
            "event_type": self.event_type,
            "description": self.description,
            "entities_created": list(self.entities_created),
            "relationships_created": copy.deepcopy(self.relationships_created),
            "entities_modified": list(self.entities_modified),
        }


class WorldGraph:
    """In-memory entity/relationship store plus the world-level signals templates read.

    Every read accessor hands out deep copies, so callers may freely mutate
    what they receive. Each entity's ``links`` are materialised from the
    relationship index on read, which keeps the cache consistent with the
    relationship list on both endpoints.
    """

    def __init__(self, *, protected_categories: frozenset[str] = frozenset({IMMUTABLE_FACT_CATEGORY})) -> None:
        self.tick = 0
        self.current_era: str | None = None
        self.pressures = PressureTracker()
        self.cooldowns = CooldownTracker()
        self.rate_limit = RateLimitState()
        self.history: list[HistoryEvent] = []
        self.template_last_fired: dict[str, int] = {}
        self.template_run_counts: dict[str, int] = {}
        self.protected_categories = frozenset(protected_categories)
        self._entities: dict[str, Entity] = {}
        self._relationships: dict[RelationshipKey, Relationship] = {}
        self._links: dict[str, list[RelationshipKey]] = {}
        self._next_entity_counter = 1

    # -- entity reads ---------------------------------------------------------

    def _snapshot(self, entity: Entity) -> Entity:
        snapshot = copy.deepcopy(entity)
        snapshot.links = [copy.deepcopy(self._relationships[key]) for key in self._links.get(entity.id, [])]
        return snapshot

    def get_entity(self, entity_id: str) -> Entity | None:
        entity = self._entities.get(entity_id)
        return self._snapshot(entity) if entity is not None else None

    def has_entity(self, entity_id: str) -> bool:
        return entity_id in self._entities

    def get_entity_count(self, kind: str | None = None, subtype: str | None = None) -> int:
        if kind is None and subtype is None:
            return len(self._entities)
        criteria = EntityCriteria(kind=kind, subtype=subtype)
        return sum(1 for entity in self._entities.values() if criteria.matches(entity))

    def get_entities(self) -> list[Entity]:
        return [self._snapshot(entity) for entity in self._entities.values()]

    def get_entity_ids(self) -> list[str]:
        return list(self._entities)

    def find_entities(self, criteria: EntityCriteria | None = None) -> list[Entity]:
        criteria = criteria or EntityCriteria()
        return [self._snapshot(entity) for entity in self._entities.values() if criteria.matches(entity)]

    def get_entities_by_kind(self, kind: str) -> list[Entity]:
        return self.find_entities(EntityCriteria(kind=kind))

    def get_connected_entities(self, entity_id: str, relation_kind: str | None = None) -> list[Entity]:
        connected: dict[str, None] = {}
        for key in self._links.get(entity_id, []):
            relationship = self._relationships[key]
            if relation_kind is not None and relationship.kind != relation_kind:
                continue
            connected.setdefault(relationship.other_end(entity_id), None)
        return [self._snapshot(self._entities[other]) for other in connected if other in self._entities]

    def link_count(self, entity_id: str, kind: str | None = None, *, active_only: bool = True) -> int:
        count = 0
        for key in self._links.get(entity_id, []):
            relationship = self._relationships[key]
            if kind is not None and relationship.kind != kind:
                continue
            if active_only and not relationship.is_active:
                continue
            count += 1
        return count

    # -- entity mutations -----------------------------------------------------

    def set_entity(self, entity: Entity) -> None:
        stored = copy.deepcopy(entity)
        stored.links = []
        self._entities[stored.id] = stored
        self._links.setdefault(stored.id, [])

    def allocate_entity_id(self, kind: str) -> str:
        while True:
            entity_id = f"{kind}-{self._next_entity_counter}"
            self._next_entity_counter += 1
            if entity_id not in self._entities:
                return entity_id

    def create_entity(
        self,
        *,
        kind: str,
        subtype: str = DEFAULT_SUBTYPE,
        name: str = "",
        description: str = "",
        status: str = DEFAULT_STATUS,
        prominence: str = DEFAULT_PROMINENCE,
        culture: str | None = None,
        tags: dict[str, TagValue] | None = None,
        coordinates: Point | None = None,
        entity_id: str | None = None,
    ) -> str:
        if entity_id is not None and entity_id in self._entities:
            raise ValueError(f"duplicate entity id: {entity_id}")
        new_id = entity_id or self.allocate_entity_id(kind)
        entity = Entity(
            id=new_id,
            kind=kind,
            subtype=subtype,
            name=name or new_id,
            description=description,
            status=status,
            prominence=prominence,
            culture=culture,
            tags=dict(tags or {}),
            coordinates=coordinates,
            created_at=self.tick,
            updated_at=self.tick,
        )
        self.set_entity(entity)
        return new_id

    def update_entity(self, entity_id: str, changes: dict[str, Any]) -> bool:
        """Apply ``changes`` to a stored entity; returns False when the id is unknown.

        ``tags`` are merged (a ``None`` value removes that tag); every other
        field is replaced. Changes naming a field outside
        ``_UPDATABLE_ENTITY_FIELDS`` or carrying an invalid value are rejected
        whole and also return False.
        """
        entity = self._entities.get(entity_id)
        if entity is None:
            return False
        if set(changes) - _UPDATABLE_ENTITY_FIELDS:
            return False
        if "prominence" in changes and changes["prominence"] not in PROMINENCE_ORDER:
            return False
        if "tags" in changes:
            try:
                _validate_tags(changes["tags"], field_name="changes.tags", allow_removal=True)
            except ValueError:
                return False

        for field_name, value in changes.items():
            if field_name == "tags":
                for tag, tag_value in value.items():
                    if tag_value is None:
                        entity.tags.pop(tag, None)
                    else:
                        entity.tags[tag] = tag_value
            else:
                setattr(entity, field_name, copy.deepcopy(value))
        entity.updated_at = self.tick
        return True

    def delete_entity(self, entity_id: str) -> bool:
        if entity_id not in self._entities:
            return False
        for key in list(self._links.get(entity_id, [])):
            self._drop_relationship(key)
        del self._entities[entity_id]
        self._links.pop(entity_id, None)
        self.cooldowns.forget_entity(entity_id)
        return True

    # -- relationship reads ---------------------------------------------------

    def get_relationships(self) -> list[Relationship]:
        return [copy.deepcopy(relationship) for relationship in self._relationships.values()]

    def get_relationship(self, src: str, dst: str, kind: str) -> Relationship | None:
        relationship = self._relationships.get((src, dst, kind))
        return copy.deepcopy(relationship) if relationship is not None else None

    def get_relationship_count(self) -> int:
        return len(self._relationships)

    def find_relationships(self, criteria: RelationshipCriteria | None = None) -> list[Relationship]:
        criteria = criteria or RelationshipCriteria()
        return [copy.deepcopy(rel) for rel in self._relationships.values() if criteria.matches(rel)]

    def get_entity_relationships(self, entity_id: str, direction: str = "both") -> list[Relationship]:
        if direction not in RELATIONSHIP_DIRECTIONS:
            raise ValueError(f"direction must be one of: {sorted(RELATIONSHIP_DIRECTIONS)}")
        found: list[Relationship] = []
        for key in self._links.get(entity_id, []):
            relationship = self._relationships[key]
            if direction == "src" and relationship.src != entity_id:
                continue
            if direction == "dst" and relationship.dst != entity_id:
                continue
            found.append(copy.deepcopy(relationship))
        return found

    def has_relationship(self, src: str, dst: str, kind: str | None = None) -> bool:
        for key in self._links.get(src, []):
            relationship = self._relationships[key]
            if kind is not None and relationship.kind != kind:
                continue
            if {relationship.src, relationship.dst} == {src, dst} and (src != dst or relationship.src == relationship.dst):
                return True
        return False

    def is_protected(self, relationship: Relationship) -> bool:
        return relationship.category is not None and relationship.category in self.protected_categories

    # -- relationship mutations -----------------------------------------------

    def push_relationship(self, relationship: Relationship) -> bool:
        """Insert ``relationship``; False when an endpoint is missing or the key already exists."""
        if relationship.src not in self._entities or relationship.dst not in self._entities:
            return False
        if relationship.key in self._relationships:
            return False
        stored = copy.deepcopy(relationship)
        if stored.created_at is None:
            stored.created_at = self.tick
        self._relationships[stored.key] = stored
        self._links[stored.src].append(stored.key)
        if stored.dst != stored.src:
            self._links[stored.dst].append(stored.key)
        self._entities[stored.src].updated_at = self.tick
        self._entities[stored.dst].updated_at = self.tick
        self.cooldowns.record(stored.src, stored.kind, self.tick)
        self.cooldowns.record(stored.dst, stored.kind, self.tick)
        return True

    def remove_relationship(self, src: str, dst: str, kind: str) -> bool:
        key = (src, dst, kind)
        if key not in self._relationships:
            return False
        self._drop_relationship(key)
        for entity_id in (src, dst):
            if entity_id in self._entities:
                self._entities[entity_id].updated_at = self.tick
        return True

    def _drop_relationship(self, key: RelationshipKey) -> None:
        relationship = self._relationships.pop(key)
        for entity_id in {relationship.src, relationship.dst}:
            links = self._links.get(entity_id)
            if links is not None and key in links:
                links.remove(key)

    def archive_relationship(self, src: str, dst: str, kind: str) -> bool:
        relationship = self._relationships.get((src, dst, kind))
        if relationship is None or not relationship.is_active:
            return False
        relationship.status = RELATIONSHIP_HISTORICAL
        relationship.archived_at = self.tick
        self._entities[src].updated_at = self.tick
        self._entities[dst].updated_at = self.tick
        return True

    def modify_relationship_strength(self, src: str, dst: str, kind: str, delta: float) -> bool:
        relationship = self._relationships.get((src, dst, kind))
        if relationship is None:
            return False
        relationship.strength = max(0.0, min(1.0, relationship.strength + float(delta)))
        self._entities[src].updated_at = self.tick
        return True

    # -- world signals --------------------------------------------------------

    def get_pressure(self, pressure_id: str) -> float:
        return self.pressures.get(pressure_id)

    def modify_pressure(self, pressure_id: str, delta: float) -> float:
        return self.pressures.modify(pressure_id, delta)

    def record_template_run(self, template_id: str) -> None:
        self.template_last_fired[template_id] = self.tick
        self.template_run_counts[template_id] = self.template_run_counts.get(template_id, 0) + 1

    def record_history(self, event: HistoryEvent) -> None:
        self.history.append(event)
        if len(self.history) > MAX_HISTORY:
            del self.history[: len(self.history) - MAX_HISTORY]

    def to_dict(self) -> dict[str, Any]:
        return {
            "tick": self.tick,
            "current_era": self.current_era,
            "entities": [self._entities[entity_id].to_dict() for entity_id in sorted(self._entities)],
            "relationships": [self._relationships[key].to_dict() for key in sorted(self._relationships)],
            "pressures": self.pressures.to_dict(),
            "cooldowns": self.cooldowns.to_dict(),
            "rate_limit": self.rate_limit.to_dict(),
            "history": [event.to_dict() for event in self.history],
            "template_last_fired": dict(sorted(self.template_last_fired.items())),
            "template_run_counts": dict(sorted(self.template_run_counts.items())),
        }
