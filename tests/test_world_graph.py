import pytest

from loreweave.sim.coordinates import Point
from loreweave.sim.graph import (
    PROMINENCE_ORDER,
    Entity,
    EntityCriteria,
    Relationship,
    RelationshipCriteria,
    WorldGraph,
    step_prominence,
)


def _build_graph() -> WorldGraph:
    graph = WorldGraph()
    graph.set_entity(Entity(id="npc-a", kind="npc", subtype="hero", name="Ash", culture="tidefolk", tags={"brave": True}))
    graph.set_entity(Entity(id="npc-b", kind="npc", subtype="merchant", name="Bryn", culture="highlanders"))
    graph.set_entity(Entity(id="loc-x", kind="location", subtype="settlement", name="Harbor"))
    return graph


def _assert_links_consistent(graph: WorldGraph) -> None:
    for entity in graph.get_entities():
        expected = sorted(rel.key for rel in graph.get_relationships() if rel.touches(entity.id))
        assert sorted(link.key for link in entity.links) == expected


def test_push_relationship_updates_links_on_both_endpoints() -> None:
    graph = _build_graph()
    graph.tick = 4

    assert graph.push_relationship(Relationship(kind="resident_of", src="npc-a", dst="loc-x", strength=0.7))

    src = graph.get_entity("npc-a")
    dst = graph.get_entity("loc-x")
    assert [link.key for link in src.links] == [("npc-a", "loc-x", "resident_of")]
    assert [link.key for link in dst.links] == [("npc-a", "loc-x", "resident_of")]
    assert src.updated_at == 4
    assert dst.updated_at == 4
    assert graph.get_relationship("npc-a", "loc-x", "resident_of").created_at == 4
    _assert_links_consistent(graph)


def test_push_relationship_rejects_duplicates_and_missing_endpoints() -> None:
    graph = _build_graph()

    assert graph.push_relationship(Relationship(kind="ally_of", src="npc-a", dst="npc-b"))
    assert not graph.push_relationship(Relationship(kind="ally_of", src="npc-a", dst="npc-b", strength=0.9))
    assert not graph.push_relationship(Relationship(kind="ally_of", src="npc-a", dst="npc-missing"))
    assert graph.get_relationship_count() == 1
    assert graph.get_relationship("npc-a", "npc-b", "ally_of").strength == 0.5


def test_reads_return_copies() -> None:
    graph = _build_graph()
    graph.push_relationship(Relationship(kind="ally_of", src="npc-a", dst="npc-b"))

    entity = graph.get_entity("npc-a")
    entity.tags["brave"] = False
    entity.name = "Changed"
    entity.links.clear()
    graph.get_relationships()[0].strength = 0.99

    fresh = graph.get_entity("npc-a")
    assert fresh.tags == {"brave": True}
    assert fresh.name == "Ash"
    assert len(fresh.links) == 1
    assert graph.get_relationship("npc-a", "npc-b", "ally_of").strength == 0.5


def test_set_entity_normalizes_links_to_store_view() -> None:
    graph = _build_graph()
    graph.push_relationship(Relationship(kind="ally_of", src="npc-a", dst="npc-b"))
    stale = graph.get_entity("npc-a")
    stale.links = [Relationship(kind="bogus", src="npc-a", dst="loc-x")]
    stale.description = "Rewritten"

    graph.set_entity(stale)

    stored = graph.get_entity("npc-a")
    assert stored.description == "Rewritten"
    assert [link.kind for link in stored.links] == ["ally_of"]
    _assert_links_consistent(graph)


def test_create_entity_allocates_kind_counter_ids() -> None:
    graph = _build_graph()
    graph.tick = 3

    first = graph.create_entity(kind="faction", name="Guild")
    second = graph.create_entity(kind="faction", coordinates=Point(10, 20, 30))

    assert first == "faction-1"
    assert second == "faction-2"
    created = graph.get_entity(second)
    assert created.name == "faction-2"
    assert created.created_at == 3
    assert created.coordinates == Point(10, 20, 30)


def test_create_entity_rejects_duplicate_explicit_id() -> None:
    graph = _build_graph()

    with pytest.raises(ValueError, match="duplicate entity id"):
        graph.create_entity(kind="npc", entity_id="npc-a")


def test_update_entity_merges_tags_and_never_raises() -> None:
    graph = _build_graph()
    graph.tick = 9

    assert graph.update_entity("npc-a", {"tags": {"wary": True, "brave": None}, "status": "exiled"})
    updated = graph.get_entity("npc-a")
    assert updated.tags == {"wary": True}
    assert updated.status == "exiled"
    assert updated.updated_at == 9

    assert not graph.update_entity("npc-missing", {"status": "dead"})
    assert not graph.update_entity("npc-a", {"id": "other"})
    assert not graph.update_entity("npc-a", {"links": []})
    assert not graph.update_entity("npc-a", {"prominence": "legendary"})
    assert not graph.update_entity("npc-a", {"tags": {"count": 3}})
    assert graph.get_entity("npc-a").status == "exiled"


def test_delete_entity_drops_its_relationships() -> None:
    graph = _build_graph()
    graph.push_relationship(Relationship(kind="ally_of", src="npc-a", dst="npc-b"))
    graph.push_relationship(Relationship(kind="resident_of", src="npc-b", dst="loc-x"))

    assert graph.delete_entity("npc-a")
    assert not graph.delete_entity("npc-a")

    assert graph.get_relationship_count() == 1
    assert [link.kind for link in graph.get_entity("npc-b").links] == ["resident_of"]
    assert graph.cooldowns.last_formed("npc-a", "ally_of") is None
    _assert_links_consistent(graph)


def test_remove_and_archive_relationship() -> None:
    graph = _build_graph()
    graph.push_relationship(Relationship(kind="ally_of", src="npc-a", dst="npc-b"))
    graph.push_relationship(Relationship(kind="rival_of", src="npc-a", dst="npc-b"))
    graph.tick = 12

    assert graph.archive_relationship("npc-a", "npc-b", "rival_of")
    assert not graph.archive_relationship("npc-a", "npc-b", "rival_of")
    archived = graph.get_relationship("npc-a", "npc-b", "rival_of")
    assert archived.status == "historical"
    assert archived.archived_at == 12
    assert graph.link_count("npc-a") == 1
    assert graph.link_count("npc-a", active_only=False) == 2

    assert graph.remove_relationship("npc-a", "npc-b", "ally_of")
    assert not graph.remove_relationship("npc-a", "npc-b", "ally_of")
    _assert_links_consistent(graph)


def test_modify_relationship_strength_clamps() -> None:
    graph = _build_graph()
    graph.push_relationship(Relationship(kind="ally_of", src="npc-a", dst="npc-b", strength=0.8))

    assert graph.modify_relationship_strength("npc-a", "npc-b", "ally_of", 0.5)
    assert graph.get_relationship("npc-a", "npc-b", "ally_of").strength == 1.0
    assert graph.modify_relationship_strength("npc-a", "npc-b", "ally_of", -3)
    assert graph.get_relationship("npc-a", "npc-b", "ally_of").strength == 0.0
    assert not graph.modify_relationship_strength("npc-b", "npc-a", "ally_of", 0.1)


def test_find_entities_combines_criteria() -> None:
    graph = _build_graph()

    assert [e.id for e in graph.find_entities(EntityCriteria(kind="npc"))] == ["npc-a", "npc-b"]
    assert [e.id for e in graph.find_entities(EntityCriteria(kind="npc", tag="brave"))] == ["npc-a"]
    assert [e.id for e in graph.find_entities(EntityCriteria(kind="npc", exclude=("npc-a",)))] == ["npc-b"]
    assert [e.id for e in graph.find_entities(EntityCriteria(culture="highlanders"))] == ["npc-b"]
    assert graph.find_entities(EntityCriteria(kind="npc", subtype="hero", status="dead")) == []
    assert len(graph.find_entities()) == 3


def test_relationship_queries() -> None:
    graph = _build_graph()
    graph.push_relationship(Relationship(kind="ally_of", src="npc-a", dst="npc-b", strength=0.9))
    graph.push_relationship(Relationship(kind="resident_of", src="npc-a", dst="loc-x", category="fact"))

    assert graph.has_relationship("npc-b", "npc-a")
    assert graph.has_relationship("npc-b", "npc-a", "ally_of")
    assert not graph.has_relationship("npc-b", "loc-x")
    assert [rel.kind for rel in graph.get_entity_relationships("npc-a", "src")] == ["ally_of", "resident_of"]
    assert [rel.kind for rel in graph.get_entity_relationships("npc-b", "src")] == []
    assert [rel.kind for rel in graph.get_entity_relationships("npc-b", "dst")] == ["ally_of"]
    assert [rel.kind for rel in graph.find_relationships(RelationshipCriteria(min_strength=0.6))] == ["ally_of"]
    assert [rel.kind for rel in graph.find_relationships(RelationshipCriteria(category="fact"))] == ["resident_of"]
    assert [entity.id for entity in graph.get_connected_entities("npc-a", "resident_of")] == ["loc-x"]

    with pytest.raises(ValueError, match="direction must be one of"):
        graph.get_entity_relationships("npc-a", "sideways")


def test_prominence_steps_saturate_at_the_ends() -> None:
    assert step_prominence("marginal", "up") == "recognized"
    assert step_prominence("marginal", "down") == "forgotten"
    assert step_prominence(PROMINENCE_ORDER[-1], "up") == "mythic"
    assert step_prominence(PROMINENCE_ORDER[0], "down") == "forgotten"


def test_entity_validation() -> None:
    with pytest.raises(ValueError, match="entity id must be a non-empty string"):
        Entity(id="", kind="npc")
    with pytest.raises(ValueError, match="entity prominence must be one of"):
        Entity(id="npc-z", kind="npc", prominence="famous")
    with pytest.raises(ValueError, match="relationship strength must be within"):
        Relationship(kind="ally_of", src="a", dst="b", strength=1.5)


def test_entity_round_trips_through_dict() -> None:
    entity = Entity(id="loc-y", kind="location", tags={"coastal": True}, coordinates=Point(1, 2, 3), created_at=5)

    restored = Entity.from_dict(entity.to_dict())

    assert restored == entity
