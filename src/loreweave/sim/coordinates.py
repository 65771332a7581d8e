from __future__ import annotations

import math
import random
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from loreweave.sim.regions import KindRegionService

AXIS_MIN = 0.0
AXIS_MAX = 100.0
AXIS_CENTER = 50.0
ENCODER_JITTER = 2.0
DEFAULT_BLEND_FACTOR = 0.7
UNCONFIGURED_BLEND_FACTOR = 0.3
AXIS_NAMES = ("x", "y", "z")


class CoordinateConfigError(ValueError):
    """Raised when a coordinate space is requested for an unconfigured entity kind."""


class RegionSystemError(ValueError):
    """Raised when a region operation is requested without a configured region system."""


def clamp_axis(value: float) -> float:
    return max(AXIS_MIN, min(AXIS_MAX, value))


@dataclass(frozen=True)
class Point:
    x: float
    y: float
    z: float = AXIS_CENTER

    def distance_to(self, other: Point) -> float:
        return math.sqrt((self.x - other.x) ** 2 + (self.y - other.y) ** 2 + (self.z - other.z) ** 2)

    def planar_distance_to(self, other: Point) -> float:
        return math.hypot(self.x - other.x, self.y - other.y)

    def clamped(self) -> Point:
        return Point(x=clamp_axis(self.x), y=clamp_axis(self.y), z=clamp_axis(self.z))

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y, "z": self.z}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Point:
        if not isinstance(payload, dict):
            raise ValueError("coordinates must be an object")
        for axis in ("x", "y"):
            if not isinstance(payload.get(axis), (int, float)) or isinstance(payload.get(axis), bool):
                raise ValueError(f"coordinates.{axis} must be a number")
        z = payload.get("z", AXIS_CENTER)
        if not isinstance(z, (int, float)) or isinstance(z, bool):
            raise ValueError("coordinates.z must be a number")
        return cls(x=float(payload["x"]), y=float(payload["y"]), z=float(z))


def centroid(points: list[Point]) -> Point | None:
    if not points:
        return None
    count = len(points)
    return Point(
        x=sum(point.x for point in points) / count,
        y=sum(point.y for point in points) / count,
        z=sum(point.z for point in points) / count,
    )


@dataclass(frozen=True)
class SemanticAxis:
    name: str
    low_concept: str
    high_concept: str
    related_pressure: str | None = None
    pressure_correlation: float = 0.0

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name:
            raise ValueError("semantic axis name must be a non-empty string")
        if not -1.0 <= self.pressure_correlation <= 1.0:
            raise ValueError("semantic axis pressure_correlation must be within [-1, 1]")

    def describe(self, value: float) -> str:
        if value < 33:
            return self.low_concept
        if value > 66:
            return self.high_concept
        return "neutral"


@dataclass(frozen=True)
class KindAxes:
    entity_kind: str
    x: SemanticAxis
    y: SemanticAxis
    z: SemanticAxis

    def axes(self) -> tuple[SemanticAxis, SemanticAxis, SemanticAxis]:
        return (self.x, self.y, self.z)


@dataclass(frozen=True)
class SemanticEncodingResult:
    point: Point
    contributing_tags: tuple[str, ...]
    unconfigured_tags: tuple[str, ...]

    @property
    def has_configured_weights(self) -> bool:
        return bool(self.contributing_tags)


class SemanticEncoder:
    """Maps tag sets onto per-kind semantic axes.

    Each tag contributes one vote per axis: its configured weight for that
    kind and axis, or the axis centre when unconfigured. Votes are averaged,
    jittered by a couple of units and clamped to the axis range.
    """

    def __init__(
        self,
        axes: list[KindAxes],
        tag_weights: dict[str, dict[str, dict[str, float]]] | None = None,
    ) -> None:
        self._axes_by_kind = {entry.entity_kind: entry for entry in axes}
        self._tag_weights = {tag: dict(kinds) for tag, kinds in (tag_weights or {}).items()}

    def has_config_for_kind(self, entity_kind: str) -> bool:
        return entity_kind in self._axes_by_kind

    def get_axes(self, entity_kind: str) -> KindAxes | None:
        return self._axes_by_kind.get(entity_kind)

    def configured_kinds(self) -> tuple[str, ...]:
        return tuple(sorted(self._axes_by_kind))

    def encode(self, entity_kind: str, tags: list[str] | dict[str, Any], rng: random.Random) -> SemanticEncodingResult:
        axes = self._axes_by_kind.get(entity_kind)
        if axes is None:
            return SemanticEncodingResult(point=Point(AXIS_CENTER, AXIS_CENTER, AXIS_CENTER), contributing_tags=(), unconfigured_tags=())

        tag_names = sorted(tags) if isinstance(tags, dict) else list(tags)
        contributing: list[str] = []
        unconfigured: list[str] = []
        votes: dict[str, list[float]] = {axis: [] for axis in AXIS_NAMES}
        for tag in tag_names:
            kind_weights = self._tag_weights.get(tag, {}).get(entity_kind)
            if kind_weights is None:
                unconfigured.append(tag)
                for axis in AXIS_NAMES:
                    votes[axis].append(AXIS_CENTER)
                continue
            contributing.append(tag)
            for axis_key, axis in zip(AXIS_NAMES, axes.axes()):
                votes[axis_key].append(float(kind_weights.get(axis.name, AXIS_CENTER)))

        averaged = {
            axis: (sum(values) / len(values)) if values else AXIS_CENTER
            for axis, values in votes.items()
        }
        point = Point(
            x=clamp_axis(averaged["x"] + _jitter(rng)),
            y=clamp_axis(averaged["y"] + _jitter(rng)),
            z=clamp_axis(averaged["z"] + _jitter(rng)),
        )
        return SemanticEncodingResult(
            point=point,
            contributing_tags=tuple(contributing),
            unconfigured_tags=tuple(unconfigured),
        )

    def encode_with_reference(
        self,
        entity_kind: str,
        tags: list[str] | dict[str, Any],
        reference: Point,
        rng: random.Random,
        blend_factor: float = DEFAULT_BLEND_FACTOR,
    ) -> SemanticEncodingResult:
        semantic = self.encode(entity_kind, tags, rng)
        blend = blend_factor if semantic.has_configured_weights else UNCONFIGURED_BLEND_FACTOR
        point = Point(
            x=clamp_axis(semantic.point.x * blend + reference.x * (1 - blend) + _jitter(rng)),
            y=clamp_axis(semantic.point.y * blend + reference.y * (1 - blend) + _jitter(rng)),
            z=clamp_axis(semantic.point.z * blend + reference.z * (1 - blend) + _jitter(rng)),
        )
        return SemanticEncodingResult(
            point=point,
            contributing_tags=semantic.contributing_tags,
            unconfigured_tags=semantic.unconfigured_tags,
        )


def _jitter(rng: random.Random) -> float:
    return (rng.random() - 0.5) * 2 * ENCODER_JITTER


@dataclass
class CoordinateContext:
    """Per-run coordinate configuration: which kinds own a space, and their regions."""

    encoder: SemanticEncoder
    region_service: KindRegionService | None = None
    extra_kinds: set[str] = field(default_factory=set)

    def is_configured(self, entity_kind: str) -> bool:
        return self.encoder.has_config_for_kind(entity_kind) or entity_kind in self.extra_kinds

    def require_kind(self, entity_kind: str) -> None:
        if not self.is_configured(entity_kind):
            raise CoordinateConfigError(f"coordinate system is not configured for entity kind: {entity_kind}")

    def require_regions(self, entity_kind: str) -> KindRegionService:
        if self.region_service is None or not self.region_service.has_kind(entity_kind):
            raise RegionSystemError(f"region system is not configured for entity kind: {entity_kind}")
        return self.region_service
