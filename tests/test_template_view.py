import random

import pytest

from loreweave.sim.coordinates import (
    CoordinateConfigError,
    CoordinateContext,
    KindAxes,
    Point,
    RegionSystemError,
    SemanticAxis,
    SemanticEncoder,
)
from loreweave.sim.graph import Entity, EntityDraft, Relationship, WorldGraph
from loreweave.sim.regions import CircleBounds, KindRegionService, Region, contains_point
from loreweave.sim.view import TemplateGraphView


def _build_context() -> CoordinateContext:
    encoder = SemanticEncoder(
        [
            KindAxes(
                entity_kind="location",
                x=SemanticAxis(name="order", low_concept="wild", high_concept="civilized"),
                y=SemanticAxis(name="wealth", low_concept="poor", high_concept="rich"),
                z=SemanticAxis(name="elevation", low_concept="lowland", high_concept="highland"),
            )
        ],
        {"port": {"location": {"order": 80, "wealth": 70, "elevation": 10}}},
    )
    service = KindRegionService(
        {
            "location": [
                Region(
                    region_id="coast",
                    label="Coast",
                    bounds=CircleBounds(30, 30, 20),
                    auto_tags=("coastal_region",),
                )
            ]
        }
    )
    return CoordinateContext(encoder=encoder, region_service=service)


def _build_view(graph: WorldGraph | None = None, *, with_coordinates: bool = True) -> TemplateGraphView:
    return TemplateGraphView(
        graph or WorldGraph(),
        coordinates=_build_context() if with_coordinates else None,
        rng=random.Random(17),
    )


def test_derive_coordinates_requires_configured_kind() -> None:
    view = _build_view()

    with pytest.raises(CoordinateConfigError, match="not configured for entity kind: npc"):
        view.derive_coordinates([], "npc")
    with pytest.raises(CoordinateConfigError):
        _build_view(with_coordinates=False).derive_coordinates([], "location")


def test_derive_coordinates_stays_near_reference_centroid() -> None:
    graph = WorldGraph()
    graph.set_entity(Entity(id="loc-a", kind="location", coordinates=Point(40, 40, 50)))
    graph.set_entity(Entity(id="loc-b", kind="location", coordinates=Point(60, 60, 50)))
    view = _build_view(graph)

    point = view.derive_coordinates([graph.get_entity("loc-a"), graph.get_entity("loc-b")], "location")

    assert point.planar_distance_to(Point(50, 50)) <= 30.0 + 1e-9
    assert point.distance_to(Point(40, 40, 50)) >= 5.0
    assert point.distance_to(Point(60, 60, 50)) >= 5.0


def test_derive_coordinates_uses_tag_hint_without_references() -> None:
    view = _build_view()

    point = view.derive_coordinates([], "location", ["port"], min_distance=0.0, max_distance=0.0)

    assert point.x == pytest.approx(80, abs=2.0)
    assert point.y == pytest.approx(70, abs=2.0)


def test_derive_coordinates_blends_tag_hint_with_references() -> None:
    graph = WorldGraph()
    graph.set_entity(Entity(id="loc-a", kind="location", coordinates=Point(20, 20, 50)))
    view = _build_view(graph)

    point = view.derive_coordinates([graph.get_entity("loc-a")], "location", ["port"], min_distance=0.0, max_distance=0.0)

    assert point.x == pytest.approx(62, abs=5.0)
    assert point.y == pytest.approx(55, abs=5.0)
    assert 20 < point.x < 80
    assert 20 < point.y < 70


def test_place_near_keeps_depth_and_search_ring() -> None:
    view = _build_view()
    reference = Point(50, 50, 40)

    for _ in range(5):
        point = view.place_near("location", reference)
        assert 5.0 - 1e-9 <= point.planar_distance_to(reference) <= 20.0 + 1e-9
        assert point.z == 40

    with pytest.raises(RegionSystemError):
        _build_view(with_coordinates=False).place_near("location", reference)


def test_add_entity_near_entity_places_around_reference() -> None:
    graph = WorldGraph()
    graph.set_entity(Entity(id="loc-anchor", kind="location", coordinates=Point(50, 50, 40)))
    graph.set_entity(Entity(id="npc-drifter", kind="npc"))
    view = _build_view(graph)
    anchor = graph.get_entity("loc-anchor")

    entity_id = view.add_entity_near_entity(EntityDraft(kind="location", name="Outpost"), anchor)

    created = view.get_entity(entity_id)
    assert created.name == "Outpost"
    assert 5.0 - 1e-9 <= created.coordinates.distance_to(anchor.coordinates) <= 20.0 + 1e-9
    with pytest.raises(ValueError, match="reference entity 'npc-drifter' has no coordinates"):
        view.add_entity_near_entity(EntityDraft(kind="location", name="Lost"), graph.get_entity("npc-drifter"))


def test_create_entity_requires_coordinates_for_configured_kind() -> None:
    view = _build_view()

    with pytest.raises(CoordinateConfigError, match="requires coordinates"):
        view.create_entity(EntityDraft(kind="location", name="Nowhere"))

    npc_id = view.create_entity(EntityDraft(kind="npc", name="Wanderer"))
    assert view.get_entity(npc_id).coordinates is None


def test_create_entity_merges_region_tags_under_draft_tags() -> None:
    view = _build_view()

    entity_id = view.create_entity(
        EntityDraft(kind="location", name="Quay", tags={"region": "custom", "port": True}, coordinates=Point(30, 30))
    )
    created = view.get_entity(entity_id)
    assert created.tags == {"region": "custom", "coastal_region": True, "port": True}

    outside_id = view.create_entity(EntityDraft(kind="location", name="Far", coordinates=Point(90, 90)))
    assert view.get_entity(outside_id).tags == {"region": "unassigned"}


def test_region_helpers_require_region_system() -> None:
    view = _build_view()

    assert view.has_region_system("location")
    assert not view.has_region_system("npc")
    with pytest.raises(RegionSystemError, match="region system is not configured"):
        view.get_all_regions("npc")
    with pytest.raises(RegionSystemError):
        _build_view(with_coordinates=False).place_in_region("location", "coast")


def test_place_in_region_samples_inside_region() -> None:
    view = _build_view()

    point = view.place_in_region("location", "coast")

    assert contains_point(view.get_region("location", "coast"), point)
    assert view.place_in_region("location", "missing") is None


def test_add_entity_in_region_and_find_it_again() -> None:
    view = _build_view()

    entity_id = view.add_entity_in_region(EntityDraft(kind="location", name="Dock"), "coast")

    assert [entity.id for entity in view.find_entities_in_region("location", "coast")] == [entity_id]
    assert view.get_entity_region(view.get_entity(entity_id)).region_id == "coast"
    assert view.get_region_stats("location").total_regions == 1


def test_faction_helpers_follow_membership_and_leadership() -> None:
    graph = WorldGraph()
    graph.set_entity(Entity(id="fac-1", kind="faction"))
    graph.set_entity(Entity(id="npc-1", kind="npc"))
    graph.set_entity(Entity(id="npc-2", kind="npc"))
    graph.set_entity(Entity(id="loc-1", kind="location"))
    graph.push_relationship(Relationship(kind="member_of", src="npc-1", dst="fac-1"))
    graph.push_relationship(Relationship(kind="member_of", src="npc-2", dst="fac-1"))
    graph.push_relationship(Relationship(kind="leader_of", src="npc-2", dst="fac-1"))
    graph.push_relationship(Relationship(kind="resident_of", src="npc-1", dst="loc-1"))
    view = TemplateGraphView(graph)

    assert [entity.id for entity in view.get_faction_members("fac-1")] == ["npc-1", "npc-2"]
    assert view.get_faction_leader("fac-1").id == "npc-2"
    assert view.get_location("npc-1").id == "loc-1"
    assert view.get_location("npc-2") is None
    assert [entity.id for entity in view.get_related_entities("fac-1", "member_of")] == ["npc-1", "npc-2"]


def test_find_nearest_entities_orders_by_distance() -> None:
    graph = WorldGraph()
    graph.set_entity(Entity(id="loc-a", kind="location", coordinates=Point(10, 10)))
    graph.set_entity(Entity(id="loc-b", kind="location", coordinates=Point(20, 10)))
    graph.set_entity(Entity(id="loc-c", kind="location", coordinates=Point(12, 10)))
    graph.set_entity(Entity(id="npc-a", kind="npc"))
    view = _build_view(graph)
    reference = graph.get_entity("loc-a")

    nearest = view.find_nearest_entities(reference, "location")

    assert [(result.entity.id, result.distance) for result in nearest] == [("loc-c", 2.0), ("loc-b", 10.0)]
    assert [result.entity.id for result in view.find_entities_in_radius(reference, 5.0)] == ["loc-c"]
    assert view.get_distance(reference, graph.get_entity("npc-a")) is None


def test_semantic_properties_describe_axes() -> None:
    graph = WorldGraph()
    graph.set_entity(Entity(id="loc-a", kind="location", coordinates=Point(90, 10, 50)))
    view = _build_view(graph)

    properties = view.get_semantic_properties(graph.get_entity("loc-a"))

    assert properties["order"].concept == "civilized"
    assert properties["wealth"].concept == "poor"
    assert properties["elevation"].concept == "neutral"
