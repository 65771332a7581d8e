from __future__ import annotations

import math
import random
import re
from dataclasses import dataclass, field
from typing import Any

from loreweave.sim.coordinates import AXIS_CENTER, AXIS_MAX, AXIS_MIN, Point, clamp_axis

REGION_SAMPLE_ATTEMPTS = 100
DEFAULT_SATURATION_DENSITY = 0.01
EMERGENT_SEARCH_RADIUS_BASE = 20.0
EMERGENT_SEARCH_RADIUS_SPAN = 50.0
UNASSIGNED_REGION_TAG = "unassigned"
SUPPORTED_SHAPES = {"circle", "rect", "polygon"}


@dataclass(frozen=True)
class CircleBounds:
    center_x: float
    center_y: float
    radius: float

    def __post_init__(self) -> None:
        if self.radius <= 0:
            raise ValueError("circle bounds radius must be > 0")

    def to_dict(self) -> dict[str, Any]:
        return {"shape": "circle", "center": {"x": self.center_x, "y": self.center_y}, "radius": self.radius}


@dataclass(frozen=True)
class RectBounds:
    x1: float
    y1: float
    x2: float
    y2: float

    def __post_init__(self) -> None:
        if self.x2 <= self.x1 or self.y2 <= self.y1:
            raise ValueError("rect bounds must satisfy x1 < x2 and y1 < y2")

    def to_dict(self) -> dict[str, Any]:
        return {"shape": "rect", "x1": self.x1, "y1": self.y1, "x2": self.x2, "y2": self.y2}


@dataclass(frozen=True)
class PolygonBounds:
    points: tuple[tuple[float, float], ...]

    def __post_init__(self) -> None:
        if len(self.points) < 3:
            raise ValueError("polygon bounds require at least 3 points")

    def to_dict(self) -> dict[str, Any]:
        return {"shape": "polygon", "points": [{"x": x, "y": y} for x, y in self.points]}


RegionBounds = CircleBounds | RectBounds | PolygonBounds


def bounds_from_dict(payload: dict[str, Any]) -> RegionBounds:
    if not isinstance(payload, dict):
        raise ValueError("region bounds must be an object")
    shape = payload.get("shape")
    if shape not in SUPPORTED_SHAPES:
        raise ValueError(f"unsupported region shape: {shape}")
    if shape == "circle":
        center = payload.get("center")
        if not isinstance(center, dict):
            raise ValueError("circle bounds must contain object field: center")
        return CircleBounds(center_x=float(center["x"]), center_y=float(center["y"]), radius=float(payload["radius"]))
    if shape == "rect":
        return RectBounds(
            x1=float(payload["x1"]),
            y1=float(payload["y1"]),
            x2=float(payload["x2"]),
            y2=float(payload["y2"]),
        )
    raw_points = payload.get("points")
    if not isinstance(raw_points, list):
        raise ValueError("polygon bounds must contain list field: points")
    return PolygonBounds(points=tuple((float(point["x"]), float(point["y"])) for point in raw_points))


@dataclass(frozen=True)
class Region:
    region_id: str
    label: str
    bounds: RegionBounds
    description: str = ""
    z_range: tuple[float, float] | None = None
    auto_tags: tuple[str, ...] = ()
    parent_region: str | None = None
    emergent: bool = False
    created_at: int | None = None
    created_by: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.region_id, str) or not self.region_id:
            raise ValueError("region_id must be a non-empty string")
        if not isinstance(self.label, str) or not self.label:
            raise ValueError("region label must be a non-empty string")
        if self.z_range is not None and self.z_range[0] > self.z_range[1]:
            raise ValueError("region z_range min must be <= max")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.region_id,
            "label": self.label,
            "description": self.description,
            "bounds": self.bounds.to_dict(),
            "z_range": list(self.z_range) if self.z_range is not None else None,
            "auto_tags": list(self.auto_tags),
            "parent_region": self.parent_region,
            "emergent": self.emergent,
            "created_at": self.created_at,
            "created_by": self.created_by,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Region:
        if not isinstance(payload, dict):
            raise ValueError("region must be an object")
        raw_z = payload.get("z_range")
        z_range = None
        if raw_z is not None:
            if not isinstance(raw_z, list) or len(raw_z) != 2:
                raise ValueError("region z_range must be a [min, max] list")
            z_range = (float(raw_z[0]), float(raw_z[1]))
        return cls(
            region_id=str(payload.get("id", "")),
            label=str(payload.get("label", "")),
            description=str(payload.get("description", "")),
            bounds=bounds_from_dict(payload.get("bounds")),
            z_range=z_range,
            auto_tags=tuple(str(tag) for tag in payload.get("auto_tags", [])),
            parent_region=payload.get("parent_region"),
            emergent=bool(payload.get("emergent", False)),
            created_at=payload.get("created_at"),
            created_by=payload.get("created_by"),
            metadata=dict(payload.get("metadata", {})),
        )


@dataclass(frozen=True)
class NearestRegion:
    region: Region
    distance: float


@dataclass(frozen=True)
class RegionLookup:
    primary: Region | None
    all: tuple[Region, ...]
    nearest: NearestRegion | None


@dataclass(frozen=True)
class PreferredArea:
    center_x: float
    center_y: float
    weight: float


@dataclass(frozen=True)
class EmergentRegionConfig:
    min_distance_from_existing: float = 5.0
    default_radius: float = 10.0
    default_z_range: tuple[float, float] = (AXIS_MIN, AXIS_MAX)
    max_attempts: int = 50
    preferred_area: PreferredArea | None = None

    def __post_init__(self) -> None:
        if self.default_radius <= 0:
            raise ValueError("emergent default_radius must be > 0")
        if not isinstance(self.max_attempts, int) or self.max_attempts <= 0:
            raise ValueError("emergent max_attempts must be a positive integer")


@dataclass(frozen=True)
class EmergentRegionResult:
    success: bool
    region: Region | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class RegionStats:
    total_regions: int
    emergent_regions: int
    predefined_regions: int
    total_area: float


def region_area(region: Region) -> float:
    bounds = region.bounds
    if isinstance(bounds, CircleBounds):
        return math.pi * bounds.radius * bounds.radius
    if isinstance(bounds, RectBounds):
        return (bounds.x2 - bounds.x1) * (bounds.y2 - bounds.y1)
    return _polygon_area(bounds.points)


def _polygon_area(points: tuple[tuple[float, float], ...]) -> float:
    area = 0.0
    for index, (x_i, y_i) in enumerate(points):
        x_j, y_j = points[(index + 1) % len(points)]
        area += x_i * y_j - x_j * y_i
    return abs(area) / 2


def _polygon_centroid(points: tuple[tuple[float, float], ...]) -> tuple[float, float]:
    return (
        sum(x for x, _ in points) / len(points),
        sum(y for _, y in points) / len(points),
    )


def _point_in_polygon(x: float, y: float, points: tuple[tuple[float, float], ...]) -> bool:
    inside = False
    j = len(points) - 1
    for i in range(len(points)):
        x_i, y_i = points[i]
        x_j, y_j = points[j]
        if (y_i > y) != (y_j > y) and x < (x_j - x_i) * (y - y_i) / (y_j - y_i) + x_i:
            inside = not inside
        j = i
    return inside


def _z_center(region: Region) -> float:
    if region.z_range is None:
        return AXIS_CENTER
    return (region.z_range[0] + region.z_range[1]) / 2


def region_center(region: Region) -> Point:
    bounds = region.bounds
    if isinstance(bounds, CircleBounds):
        return Point(bounds.center_x, bounds.center_y, _z_center(region))
    if isinstance(bounds, RectBounds):
        return Point((bounds.x1 + bounds.x2) / 2, (bounds.y1 + bounds.y2) / 2, _z_center(region))
    x, y = _polygon_centroid(bounds.points)
    return Point(x, y, _z_center(region))


def region_radius(region: Region) -> float:
    bounds = region.bounds
    if isinstance(bounds, CircleBounds):
        return bounds.radius
    if isinstance(bounds, RectBounds):
        return math.hypot(bounds.x2 - bounds.x1, bounds.y2 - bounds.y1) / 2
    return math.sqrt(region_area(region) / math.pi)


def contains_point(region: Region, point: Point) -> bool:
    if region.z_range is not None and not region.z_range[0] <= point.z <= region.z_range[1]:
        return False
    bounds = region.bounds
    if isinstance(bounds, CircleBounds):
        dx = point.x - bounds.center_x
        dy = point.y - bounds.center_y
        return dx * dx + dy * dy <= bounds.radius * bounds.radius
    if isinstance(bounds, RectBounds):
        return bounds.x1 <= point.x <= bounds.x2 and bounds.y1 <= point.y <= bounds.y2
    return _point_in_polygon(point.x, point.y, bounds.points)


def distance_to_region(region: Region, point: Point) -> float:
    bounds = region.bounds
    if isinstance(bounds, CircleBounds):
        return max(0.0, math.hypot(point.x - bounds.center_x, point.y - bounds.center_y) - bounds.radius)
    if isinstance(bounds, RectBounds):
        dx = max(bounds.x1 - point.x, 0.0, point.x - bounds.x2)
        dy = max(bounds.y1 - point.y, 0.0, point.y - bounds.y2)
        return math.hypot(dx, dy)
    x, y = _polygon_centroid(bounds.points)
    return math.hypot(point.x - x, point.y - y)


def slugify_label(label: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", label.lower()).strip("_") or "region"


class RegionMapper:
    """Named regions inside one kind's coordinate space."""

    def __init__(
        self,
        regions: list[Region] | None = None,
        *,
        allow_emergent: bool = True,
        emergent_config: EmergentRegionConfig | None = None,
        default_tags: tuple[str, ...] = (),
    ) -> None:
        self._regions: dict[str, Region] = {}
        self.allow_emergent = allow_emergent
        self.emergent_config = emergent_config or EmergentRegionConfig()
        self.default_tags = default_tags
        for region in regions or []:
            self.add_region(region)

    def get_all_regions(self) -> list[Region]:
        return list(self._regions.values())

    def get_region(self, region_id: str) -> Region | None:
        return self._regions.get(region_id)

    def add_region(self, region: Region) -> None:
        if region.region_id in self._regions:
            raise ValueError(f"duplicate region id: {region.region_id}")
        if region.parent_region is not None and region.parent_region not in self._regions:
            raise ValueError(f"region {region.region_id!r} references unknown parent_region {region.parent_region!r}")
        self._regions[region.region_id] = region

    def remove_region(self, region_id: str) -> bool:
        return self._regions.pop(region_id, None) is not None

    def lookup(self, point: Point) -> RegionLookup:
        containing: list[Region] = []
        nearest: NearestRegion | None = None
        for region in self._regions.values():
            if contains_point(region, point):
                containing.append(region)
                continue
            distance = distance_to_region(region, point)
            if nearest is None or distance < nearest.distance:
                nearest = NearestRegion(region=region, distance=distance)
        containing.sort(key=region_area)
        return RegionLookup(
            primary=containing[0] if containing else None,
            all=tuple(containing),
            nearest=nearest if not containing else None,
        )

    def describe(self, point: Point, default_label: str = "Uncharted") -> str:
        result = self.lookup(point)
        if not result.all:
            return default_label
        return " in ".join(region.label for region in result.all)

    def get_tags_for_point(self, point: Point) -> dict[str, str | bool]:
        result = self.lookup(point)
        tags: dict[str, str | bool] = {}
        if not result.all:
            for tag in self.default_tags:
                tags[tag] = True
            tags["region"] = UNASSIGNED_REGION_TAG
            return tags
        if result.primary is not None:
            tags["region"] = result.primary.region_id
        if len(result.all) > 1:
            tags["regions"] = ",".join(region.region_id for region in result.all)
        for region in result.all:
            for tag in region.auto_tags:
                tags[tag] = True
        return tags

    def sample_region(
        self,
        region_id: str,
        rng: random.Random,
        *,
        avoid: list[Point] | None = None,
        min_distance: float = 0.0,
        z: float | None = None,
    ) -> Point | None:
        region = self._regions.get(region_id)
        if region is None:
            return None
        for _ in range(REGION_SAMPLE_ATTEMPTS):
            point = self._sample_within(region, rng, z=z)
            if avoid and min_distance > 0 and any(point.distance_to(other) < min_distance for other in avoid):
                continue
            return point
        return region_center(region)

    def _sample_within(self, region: Region, rng: random.Random, *, z: float | None) -> Point:
        bounds = region.bounds
        if isinstance(bounds, CircleBounds):
            radius = bounds.radius * math.sqrt(rng.random())
            theta = rng.random() * 2 * math.pi
            x = bounds.center_x + radius * math.cos(theta)
            y = bounds.center_y + radius * math.sin(theta)
        elif isinstance(bounds, RectBounds):
            x = bounds.x1 + rng.random() * (bounds.x2 - bounds.x1)
            y = bounds.y1 + rng.random() * (bounds.y2 - bounds.y1)
        else:
            xs = [px for px, _ in bounds.points]
            ys = [py for _, py in bounds.points]
            x, y = _polygon_centroid(bounds.points)
            for _ in range(REGION_SAMPLE_ATTEMPTS):
                cx = min(xs) + rng.random() * (max(xs) - min(xs))
                cy = min(ys) + rng.random() * (max(ys) - min(ys))
                if _point_in_polygon(cx, cy, bounds.points):
                    x, y = cx, cy
                    break
        if z is None:
            z = region.z_range[0] + rng.random() * (region.z_range[1] - region.z_range[0]) if region.z_range else AXIS_CENTER
        return Point(clamp_axis(x), clamp_axis(y), z)

    def create_emergent_region(
        self,
        near: Point,
        label: str,
        description: str,
        tick: int,
        rng: random.Random,
        *,
        created_by: str | None = None,
        config: EmergentRegionConfig | None = None,
    ) -> EmergentRegionResult:
        if not self.allow_emergent:
            return EmergentRegionResult(success=False, failure_reason="Emergent regions not allowed")
        emergent_config = config or self.emergent_config
        position = self._find_emergent_position(near, emergent_config, rng)
        if position is None:
            return EmergentRegionResult(success=False, failure_reason="Could not find valid position")

        region = Region(
            region_id=self._generate_region_id(label),
            label=label,
            description=description,
            bounds=CircleBounds(center_x=position[0], center_y=position[1], radius=emergent_config.default_radius),
            z_range=emergent_config.default_z_range,
            auto_tags=("emergent", f"created:tick-{tick}"),
            emergent=True,
            created_at=tick,
            created_by=created_by,
        )
        self._regions[region.region_id] = region
        return EmergentRegionResult(success=True, region=region)

    def _find_emergent_position(
        self,
        near: Point,
        config: EmergentRegionConfig,
        rng: random.Random,
    ) -> tuple[float, float] | None:
        margin = config.default_radius
        for attempt in range(config.max_attempts):
            search_radius = EMERGENT_SEARCH_RADIUS_BASE + (attempt / config.max_attempts) * EMERGENT_SEARCH_RADIUS_SPAN
            angle = rng.random() * 2 * math.pi
            distance = rng.random() * search_radius
            x = near.x + distance * math.cos(angle)
            y = near.y + distance * math.sin(angle)
            if config.preferred_area is not None:
                weight = config.preferred_area.weight
                x = x * (1 - weight) + config.preferred_area.center_x * weight
                y = y * (1 - weight) + config.preferred_area.center_y * weight
            x = max(margin, min(AXIS_MAX - margin, x))
            y = max(margin, min(AXIS_MAX - margin, y))

            candidate = Point(x, y)
            valid = True
            for region in self._regions.values():
                required = region_radius(region) + config.default_radius + config.min_distance_from_existing
                if candidate.planar_distance_to(region_center(region)) < required:
                    valid = False
                    break
            if valid:
                return (x, y)
        return None

    def _generate_region_id(self, label: str) -> str:
        base = slugify_label(label)
        region_id = base
        counter = 1
        while region_id in self._regions:
            region_id = f"{base}_{counter}"
            counter += 1
        return region_id

    def get_region_density(self, region_id: str, points: list[Point]) -> float:
        region = self._regions.get(region_id)
        if region is None:
            return 0.0
        area = region_area(region)
        if area <= 0:
            return 0.0
        return sum(1 for point in points if contains_point(region, point)) / area

    def is_region_saturated(self, region_id: str, points: list[Point], threshold: float = DEFAULT_SATURATION_DENSITY) -> bool:
        return self.get_region_density(region_id, points) >= threshold

    def get_stats(self) -> RegionStats:
        regions = list(self._regions.values())
        return RegionStats(
            total_regions=len(regions),
            emergent_regions=sum(1 for region in regions if region.emergent),
            predefined_regions=sum(1 for region in regions if not region.emergent),
            total_area=sum(region_area(region) for region in regions),
        )


class KindRegionService:
    """One ``RegionMapper`` per entity kind; kinds never share regions."""

    def __init__(
        self,
        seed_regions: dict[str, list[Region]] | None = None,
        *,
        default_emergent_config: EmergentRegionConfig | None = None,
        emergent_configs: dict[str, EmergentRegionConfig] | None = None,
    ) -> None:
        self.default_emergent_config = default_emergent_config or EmergentRegionConfig()
        self._mappers: dict[str, RegionMapper] = {}
        emergent_configs = emergent_configs or {}
        for kind in sorted(seed_regions or {}):
            self._mappers[kind] = RegionMapper(
                list(seed_regions[kind]),
                emergent_config=emergent_configs.get(kind, self.default_emergent_config),
            )

    def configured_kinds(self) -> list[str]:
        return sorted(self._mappers)

    def has_kind(self, kind: str) -> bool:
        return kind in self._mappers

    def get_mapper(self, kind: str) -> RegionMapper:
        mapper = self._mappers.get(kind)
        if mapper is None:
            mapper = RegionMapper(emergent_config=self.default_emergent_config)
            self._mappers[kind] = mapper
        return mapper

    def get_regions(self, kind: str) -> list[Region]:
        mapper = self._mappers.get(kind)
        return mapper.get_all_regions() if mapper is not None else []

    def get_region(self, kind: str, region_id: str) -> Region | None:
        mapper = self._mappers.get(kind)
        return mapper.get_region(region_id) if mapper is not None else None

    def lookup_region(self, kind: str, point: Point) -> RegionLookup:
        return self.get_mapper(kind).lookup(point)

    def get_tags_for_point(self, kind: str, point: Point) -> dict[str, str | bool]:
        return self.get_mapper(kind).get_tags_for_point(point)

    def create_emergent_region(
        self,
        kind: str,
        near: Point,
        label: str,
        description: str,
        tick: int,
        rng: random.Random,
        created_by: str | None = None,
    ) -> EmergentRegionResult:
        return self.get_mapper(kind).create_emergent_region(near, label, description, tick, rng, created_by=created_by)

    def process_entity_placement(
        self,
        kind: str,
        point: Point,
        tick: int,
        rng: random.Random,
        *,
        entity_name: str | None = None,
        allow_emergent: bool = False,
    ) -> tuple[dict[str, str | bool], Region | None]:
        """Return region tags for a placement, optionally founding a region when the point is uncharted."""
        mapper = self.get_mapper(kind)
        lookup = mapper.lookup(point)
        created: Region | None = None
        if lookup.primary is None and allow_emergent:
            label = f"{entity_name} reach" if entity_name else f"{kind} frontier"
            result = mapper.create_emergent_region(point, label, f"Emergent {kind} region", tick, rng, created_by=entity_name)
            if result.success:
                created = result.region
        return mapper.get_tags_for_point(point), created

    def export(self) -> dict[str, list[dict[str, Any]]]:
        return {kind: [region.to_dict() for region in self._mappers[kind].get_all_regions()] for kind in sorted(self._mappers)}

