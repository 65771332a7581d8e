import random

import pytest

from loreweave.sim.coordinates import (
    KindAxes,
    Point,
    SemanticAxis,
    SemanticEncoder,
    centroid,
)
from loreweave.sim.regions import (
    CircleBounds,
    EmergentRegionConfig,
    KindRegionService,
    RectBounds,
    Region,
    RegionMapper,
    bounds_from_dict,
    contains_point,
    region_area,
)


def _build_mapper() -> RegionMapper:
    return RegionMapper(
        [
            Region(
                region_id="coast",
                label="Coast",
                bounds=CircleBounds(center_x=30, center_y=30, radius=20),
                auto_tags=("coastal_region",),
            ),
            Region(
                region_id="cove",
                label="Cove",
                bounds=CircleBounds(center_x=30, center_y=30, radius=5),
                auto_tags=("sheltered",),
                parent_region="coast",
            ),
            Region(region_id="peaks", label="Peaks", bounds=RectBounds(x1=60, y1=60, x2=90, y2=90)),
        ]
    )


def _build_encoder() -> SemanticEncoder:
    return SemanticEncoder(
        [
            KindAxes(
                entity_kind="location",
                x=SemanticAxis(name="order", low_concept="wild", high_concept="civilized"),
                y=SemanticAxis(name="wealth", low_concept="poor", high_concept="rich"),
                z=SemanticAxis(name="elevation", low_concept="lowland", high_concept="highland"),
            )
        ],
        {"mountain": {"location": {"order": 40, "wealth": 30, "elevation": 90}}},
    )


def test_lookup_prefers_smallest_containing_region() -> None:
    mapper = _build_mapper()

    result = mapper.lookup(Point(31, 31))

    assert result.primary.region_id == "cove"
    assert [region.region_id for region in result.all] == ["cove", "coast"]
    assert result.nearest is None
    assert mapper.describe(Point(31, 31)) == "Cove in Coast"


def test_lookup_reports_nearest_only_when_uncontained() -> None:
    mapper = _build_mapper()

    result = mapper.lookup(Point(95, 95))

    assert result.primary is None
    assert result.all == ()
    assert result.nearest.region.region_id == "peaks"
    assert result.nearest.distance == pytest.approx(5 * 2**0.5)


def test_tags_for_point_merge_auto_tags() -> None:
    mapper = _build_mapper()

    assert mapper.get_tags_for_point(Point(31, 31)) == {
        "region": "cove",
        "regions": "cove,coast",
        "sheltered": True,
        "coastal_region": True,
    }
    assert mapper.get_tags_for_point(Point(50, 95)) == {"region": "unassigned"}


def test_region_geometry_helpers() -> None:
    square = Region(region_id="sq", label="Square", bounds=RectBounds(x1=0, y1=0, x2=10, y2=10), z_range=(0, 20))

    assert region_area(square) == 100
    assert contains_point(square, Point(5, 5, 10))
    assert not contains_point(square, Point(5, 5, 50))
    assert bounds_from_dict({"shape": "circle", "center": {"x": 1, "y": 2}, "radius": 3}) == CircleBounds(1, 2, 3)
    with pytest.raises(ValueError, match="unsupported region shape"):
        bounds_from_dict({"shape": "hexagon"})


def test_add_region_validates_ids_and_parents() -> None:
    mapper = _build_mapper()

    with pytest.raises(ValueError, match="duplicate region id"):
        mapper.add_region(Region(region_id="coast", label="Again", bounds=CircleBounds(1, 1, 1)))
    with pytest.raises(ValueError, match="unknown parent_region"):
        mapper.add_region(Region(region_id="isle", label="Isle", bounds=CircleBounds(1, 1, 1), parent_region="sea"))


def test_sample_region_stays_inside_bounds() -> None:
    mapper = _build_mapper()
    rng = random.Random(5)
    peaks = mapper.get_region("peaks")

    for _ in range(20):
        point = mapper.sample_region("peaks", rng)
        assert contains_point(peaks, point)
    assert mapper.sample_region("missing", rng) is None


def test_emergent_region_respects_spacing_and_reports_failure() -> None:
    mapper = RegionMapper(
        [Region(region_id="everything", label="Everything", bounds=CircleBounds(50, 50, 60))],
        emergent_config=EmergentRegionConfig(max_attempts=5),
    )

    result = mapper.create_emergent_region(Point(50, 50), "New Reach", "desc", 3, random.Random(1))

    assert not result.success
    assert result.failure_reason == "Could not find valid position"

    open_mapper = RegionMapper()
    created = open_mapper.create_emergent_region(Point(50, 50), "New Reach", "desc", 3, random.Random(1), created_by="tester")
    assert created.success
    assert created.region.region_id == "new_reach"
    assert created.region.emergent
    assert created.region.created_at == 3
    assert "emergent" in created.region.auto_tags
    assert open_mapper.get_stats().emergent_regions == 1


def test_region_saturation_uses_density() -> None:
    mapper = _build_mapper()
    points = [Point(70, 70), Point(80, 80), Point(10, 95)]

    assert mapper.get_region_density("peaks", points) == pytest.approx(2 / 900)
    assert not mapper.is_region_saturated("peaks", points)
    assert mapper.is_region_saturated("peaks", points, threshold=0.002)


def test_kind_region_service_keeps_kinds_apart() -> None:
    service = KindRegionService({"location": [Region(region_id="coast", label="Coast", bounds=CircleBounds(30, 30, 20))]})

    assert service.has_kind("location")
    assert not service.has_kind("npc")
    assert service.get_regions("npc") == []
    tags, created = service.process_entity_placement("location", Point(30, 30), 0, random.Random(2))
    assert tags["region"] == "coast"
    assert created is None

    tags, created = service.process_entity_placement(
        "location", Point(90, 90), 4, random.Random(2), entity_name="Far Hold", allow_emergent=True
    )
    assert created is not None
    assert created.created_by == "Far Hold"
    assert service.get_region("location", created.region_id) == created


def test_semantic_encoder_votes_and_falls_back_to_center() -> None:
    encoder = _build_encoder()
    rng = random.Random(11)

    mountain = encoder.encode("location", ["mountain"], rng)
    assert mountain.contributing_tags == ("mountain",)
    assert mountain.point.z == pytest.approx(90, abs=2.0)

    mixed = encoder.encode("location", ["mountain", "misty"], rng)
    assert mixed.unconfigured_tags == ("misty",)
    assert mixed.point.z == pytest.approx(70, abs=2.0)

    unknown_kind = encoder.encode("npc", ["mountain"], rng)
    assert unknown_kind.point == Point(50, 50, 50)


def test_semantic_axis_describes_extremes() -> None:
    axis = SemanticAxis(name="order", low_concept="wild", high_concept="civilized")

    assert axis.describe(10) == "wild"
    assert axis.describe(50) == "neutral"
    assert axis.describe(90) == "civilized"


def test_centroid_of_points() -> None:
    assert centroid([]) is None
    assert centroid([Point(0, 0, 0), Point(10, 20, 30)]) == Point(5, 10, 15)


def test_encode_with_reference_blends_toward_semantic_point() -> None:
    encoder = _build_encoder()
    reference = Point(0, 0, 0)

    configured = encoder.encode_with_reference("location", ["mountain"], reference, random.Random(3))
    assert configured.contributing_tags == ("mountain",)
    assert configured.point.z == pytest.approx(63, abs=4.0)

    unconfigured = encoder.encode_with_reference("location", ["misty"], reference, random.Random(3))
    assert unconfigured.unconfigured_tags == ("misty",)
    assert unconfigured.point.x == pytest.approx(15, abs=4.0)
