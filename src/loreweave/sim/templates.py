from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Union

from loreweave.sim.contracts import ComponentContract
from loreweave.sim.graph import DEFAULT_RELATIONSHIP_STRENGTH, Entity, EntityDraft

if TYPE_CHECKING:
    from loreweave.sim.mutations import Mutation
    from loreweave.sim.view import TemplateGraphView

PLACEHOLDER_PATTERN = re.compile(r"^will-be-assigned-(\d+)$")


@dataclass(frozen=True)
class PendingRef:
    """Index into the ``entities`` list of the same ``TemplateResult``."""

    index: int

    def __post_init__(self) -> None:
        if not isinstance(self.index, int) or self.index < 0:
            raise ValueError("pending reference index must be a non-negative integer")


@dataclass(frozen=True)
class EntityRef:
    entity_id: str


EntityReference = Union[PendingRef, EntityRef]


def parse_ref(value: EntityReference | str) -> EntityReference:
    if isinstance(value, (PendingRef, EntityRef)):
        return value
    if not isinstance(value, str) or not value:
        raise ValueError("entity reference must be a non-empty string")
    match = PLACEHOLDER_PATTERN.match(value)
    if match:
        return PendingRef(int(match.group(1)))
    return EntityRef(value)


def resolve_ref(value: EntityReference | str, pending_ids: dict[int, str]) -> str | None:
    """Committed id for a reference; None when it points at an uncommitted placeholder."""
    ref = parse_ref(value)
    if isinstance(ref, PendingRef):
        return pending_ids.get(ref.index)
    return ref.entity_id


@dataclass(frozen=True)
class RelationshipDraft:
    kind: str
    src: EntityReference | str
    dst: EntityReference | str
    strength: float = DEFAULT_RELATIONSHIP_STRENGTH
    category: str | None = None
    distance: float | None = None
    catalyzed_by: str | None = None


@dataclass
class TemplateResult:
    entities: list[EntityDraft] = field(default_factory=list)
    relationships: list[RelationshipDraft] = field(default_factory=list)
    mutations: list[Mutation] = field(default_factory=list)
    description: str = ""

    def validate_placeholders(self) -> None:
        for draft in self.relationships:
            for value in (draft.src, draft.dst):
                ref = parse_ref(value)
                if isinstance(ref, PendingRef) and ref.index >= len(self.entities):
                    raise ValueError(
                        f"relationship {draft.kind} refers to placeholder {ref.index} with only {len(self.entities)} entities"
                    )


@dataclass(frozen=True)
class ProducedKind:
    kind: str
    subtype: str | None = None


@dataclass(frozen=True)
class TemplateMetadata:
    produces: tuple[ProducedKind, ...] = ()
    tags: tuple[str, ...] = ()
    max_runs: int | None = None


def _always(view: TemplateGraphView) -> bool:
    return True


def _no_targets(view: TemplateGraphView) -> list[Entity]:
    return []


@dataclass(frozen=True)
class GrowthTemplate:
    """A growth rule: contract and metadata plus the behaviour that expands it.

    ``find_targets`` returning an empty list means the template runs once
    without a target; ``expand`` may raise ``ValueError`` to abandon a single
    expansion.
    """

    template_id: str
    name: str
    expand: Callable[[TemplateGraphView, Entity | None], TemplateResult]
    contract: ComponentContract = field(default_factory=ComponentContract)
    metadata: TemplateMetadata = field(default_factory=TemplateMetadata)
    can_apply: Callable[[TemplateGraphView], bool] = _always
    find_targets: Callable[[TemplateGraphView], list[Entity]] = _no_targets

    def __post_init__(self) -> None:
        if not isinstance(self.template_id, str) or not self.template_id:
            raise ValueError("template_id must be a non-empty string")


class TemplateRegistry:
    def __init__(self, templates: list[GrowthTemplate] | None = None) -> None:
        self._templates: dict[str, GrowthTemplate] = {}
        for template in templates or []:
            self.register(template)

    def register(self, template: GrowthTemplate) -> None:
        if template.template_id in self._templates:
            raise ValueError(f"duplicate template_id: {template.template_id}")
        self._templates[template.template_id] = template

    def get(self, template_id: str) -> GrowthTemplate | None:
        return self._templates.get(template_id)

    def ids(self) -> list[str]:
        return list(self._templates)

    def templates(self) -> list[GrowthTemplate]:
        return list(self._templates.values())

    def __len__(self) -> int:
        return len(self._templates)
