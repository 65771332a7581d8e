import pytest

from loreweave.sim.graph import IMMUTABLE_FACT_CATEGORY, Entity, Relationship, WorldGraph
from loreweave.sim.mutations import (
    PROMINENCE_LOCKED_TAG,
    TRANSFER_STRENGTH,
    AdjustProminence,
    AdjustRelationshipStrength,
    ArchiveRelationship,
    ChangeStatus,
    Conditional,
    CreateRelationship,
    ForEachRelated,
    HasTag,
    ModifyPressure,
    MutationContext,
    MutationResult,
    PressureAbove,
    RemoveTag,
    SetTag,
    TransferRelationship,
    UnknownMutation,
    UpdateRateLimit,
    apply_mutation,
    apply_mutation_result,
    condition_from_dict,
    mutation_from_dict,
    prepare_mutation,
)


def _build_graph() -> WorldGraph:
    graph = WorldGraph()
    graph.set_entity(Entity(id="npc-a", kind="npc", name="Ash", tags={"scholar": True}))
    graph.set_entity(Entity(id="npc-b", kind="npc", name="Bryn"))
    graph.set_entity(Entity(id="npc-c", kind="npc", name="Cael", prominence="mythic"))
    graph.set_entity(Entity(id="fac-a", kind="faction", name="Lanterns"))
    graph.set_entity(Entity(id="fac-b", kind="faction", name="Tides"))
    graph.push_relationship(Relationship(kind="member_of", src="npc-a", dst="fac-a"))
    graph.push_relationship(Relationship(kind="member_of", src="npc-b", dst="fac-a"))
    graph.tick = 5
    return graph


def _ctx(graph: WorldGraph, self_id: str | None = "npc-a", **kwargs) -> MutationContext:
    self_entity = graph.get_entity(self_id) if self_id else None
    return MutationContext(graph=graph, self_entity=self_entity, **kwargs)


def test_set_and_remove_tag_resolve_self() -> None:
    graph = _build_graph()

    result = apply_mutation(SetTag(entity="$self", tag="exiled"), _ctx(graph))
    assert result.applied
    assert graph.get_entity("npc-a").tags == {"scholar": True, "exiled": True}

    apply_mutation(RemoveTag(entity="npc-a", tag="scholar"), _ctx(graph))
    assert graph.get_entity("npc-a").tags == {"exiled": True}


def test_set_tag_value_from_context_values() -> None:
    graph = _build_graph()

    apply_mutation(SetTag(entity="$self", tag="oath", value_from="oath_name"), _ctx(graph, values={"oath_name": "tide"}))
    assert graph.get_entity("npc-a").tags["oath"] == "tide"

    missing = prepare_mutation(SetTag(entity="$self", tag="oath", value_from="other"), _ctx(graph))
    assert not missing.applied
    assert missing.diagnostic == "value source other not found"


def test_failed_prepare_leaves_graph_untouched() -> None:
    graph = _build_graph()
    before = graph.to_dict()

    for mutation in (
        SetTag(entity="npc-missing", tag="x"),
        ChangeStatus(entity="$nobody", new_status="dead"),
        CreateRelationship(kind="ally_of", src="npc-a", dst="npc-a"),
        AdjustRelationshipStrength(kind="ally_of", src="npc-a", dst="npc-b", delta=0.1),
    ):
        result = apply_mutation(mutation, _ctx(graph))
        assert not result.applied
        assert result.entity_modifications == []
        assert result.relationships_created == []

    assert graph.to_dict() == before


def test_failed_prepare_is_idempotent() -> None:
    graph = _build_graph()
    before = graph.to_dict()
    mutation = AdjustProminence(entity="npc-missing", direction="up")

    first = prepare_mutation(mutation, _ctx(graph))
    second = prepare_mutation(mutation, _ctx(graph))

    assert (first.applied, first.diagnostic) == (False, "entity npc-missing not found")
    assert (second.applied, second.diagnostic) == (first.applied, first.diagnostic)
    assert second.entity_modifications == first.entity_modifications == []
    assert graph.to_dict() == before


def test_malformed_references_are_rejected_not_raised() -> None:
    graph = _build_graph()
    before = graph.to_dict()

    for mutation in (
        SetTag(entity="", tag="x"),
        SetTag(entity=None, tag="x"),
        SetTag(entity="$self", tag=None),
        CreateRelationship(kind="ally_of", src=None, dst="npc-b"),
    ):
        result = prepare_mutation(mutation, _ctx(graph))
        assert not result.applied

    invalid = prepare_mutation(CreateRelationship(kind="", src="npc-a", dst="npc-b"), _ctx(graph))
    assert not invalid.applied
    assert invalid.diagnostic == "invalid mutation: relationship kind must be a non-empty string"
    assert graph.to_dict() == before


def test_bidirectional_creation_is_all_or_nothing() -> None:
    graph = _build_graph()
    graph.push_relationship(Relationship(kind="ally_of", src="npc-b", dst="npc-a"))

    rejected = apply_mutation(CreateRelationship(kind="ally_of", src="npc-a", dst="npc-b", bidirectional=True), _ctx(graph))

    assert not rejected.applied
    assert rejected.diagnostic == "relationship ally_of npc-b->npc-a already exists"
    assert graph.get_relationship("npc-a", "npc-b", "ally_of") is None

    created = apply_mutation(
        CreateRelationship(kind="rival_of", src="npc-a", dst="npc-b", strength=0.3, bidirectional=True), _ctx(graph)
    )
    assert created.applied
    assert graph.get_relationship("npc-a", "npc-b", "rival_of").strength == 0.3
    assert graph.get_relationship("npc-b", "npc-a", "rival_of").strength == 0.3


def test_prominence_at_maximum_is_a_noop() -> None:
    graph = _build_graph()

    result = apply_mutation(AdjustProminence(entity="npc-c", direction="up"), _ctx(graph))

    assert result.applied
    assert result.entity_modifications == []
    assert result.diagnostic == "Cael prominence already at maximum"
    assert graph.get_entity("npc-c").prominence == "mythic"

    apply_mutation(AdjustProminence(entity="npc-c", direction="down"), _ctx(graph))
    assert graph.get_entity("npc-c").prominence == "renowned"


def test_locked_prominence_is_left_alone() -> None:
    graph = _build_graph()
    graph.update_entity("npc-b", {"tags": {PROMINENCE_LOCKED_TAG: True}})

    result = apply_mutation(AdjustProminence(entity="npc-b", direction="up"), _ctx(graph))

    assert result.applied
    assert result.diagnostic == "Bryn prominence locked"
    assert graph.get_entity("npc-b").prominence == "marginal"


def test_unknown_mutation_type_is_rejected_with_name() -> None:
    result = prepare_mutation(UnknownMutation(mutation_type="summon_dragon"), _ctx(_build_graph()))

    assert not result.applied
    assert result.diagnostic == "unknown mutation type: summon_dragon"


def test_archive_skips_protected_relationships() -> None:
    graph = _build_graph()
    graph.push_relationship(Relationship(kind="member_of", src="npc-a", dst="fac-b", category=IMMUTABLE_FACT_CATEGORY))

    result = apply_mutation(ArchiveRelationship(entity="$self", relationship_kind="member_of"), _ctx(graph))

    assert result.diagnostic == "archived 1 member_of relationships (skipped 1 protected)"
    assert graph.get_relationship("npc-a", "fac-a", "member_of").status == "historical"
    assert graph.get_relationship("npc-a", "fac-b", "member_of").is_active


def test_archive_with_specific_counterpart_and_direction() -> None:
    graph = _build_graph()

    assert apply_mutation(ArchiveRelationship(entity="fac-a", relationship_kind="member_of", direction="src"), _ctx(graph)).diagnostic == (
        "archived 0 member_of relationships"
    )
    apply_mutation(ArchiveRelationship(entity="fac-a", relationship_kind="member_of", with_entity="npc-b"), _ctx(graph))
    assert graph.get_relationship("npc-a", "fac-a", "member_of").is_active
    assert not graph.get_relationship("npc-b", "fac-a", "member_of").is_active


def test_adjust_strength_refuses_protected_relationships() -> None:
    graph = _build_graph()
    graph.push_relationship(Relationship(kind="sworn_to", src="npc-a", dst="npc-b", category=IMMUTABLE_FACT_CATEGORY))

    result = apply_mutation(AdjustRelationshipStrength(kind="sworn_to", src="npc-a", dst="npc-b", delta=0.2), _ctx(graph))

    assert not result.applied
    assert "is protected" in result.diagnostic
    assert graph.get_relationship("npc-a", "npc-b", "sworn_to").strength == 0.5


def test_transfer_relationship_archives_old_and_creates_new() -> None:
    graph = _build_graph()

    result = apply_mutation(
        TransferRelationship(entity="$self", relationship_kind="member_of", from_entity="fac-a", to_entity="fac-b"),
        _ctx(graph),
    )

    assert result.diagnostic == "transferred member_of from Lanterns to Tides"
    assert not graph.get_relationship("npc-a", "fac-a", "member_of").is_active
    assert graph.get_relationship("npc-a", "fac-b", "member_of").strength == TRANSFER_STRENGTH


def test_transfer_respects_condition() -> None:
    graph = _build_graph()

    result = apply_mutation(
        TransferRelationship(
            entity="$self",
            relationship_kind="member_of",
            from_entity="fac-a",
            to_entity="fac-b",
            condition=PressureAbove(pressure_id="conflict", threshold=50),
        ),
        _ctx(graph),
    )

    assert result.diagnostic == "transfer_relationship condition not met"
    assert graph.get_relationship("npc-a", "fac-b", "member_of") is None


def test_for_each_related_binds_each_related_entity() -> None:
    graph = _build_graph()

    result = apply_mutation(
        ForEachRelated(relationship="member_of", actions=(SetTag(entity="$related", tag="mourning"),), direction="dst"),
        _ctx(graph, self_id="fac-a"),
    )

    assert result.diagnostic.startswith("for_each_related: processed 2 entities.")
    assert graph.get_entity("npc-a").has_tag("mourning")
    assert graph.get_entity("npc-b").has_tag("mourning")
    assert not graph.get_entity("fac-a").has_tag("mourning")

    no_self = prepare_mutation(ForEachRelated(relationship="member_of", actions=()), _ctx(graph, self_id=None))
    assert not no_self.applied


def test_conditional_picks_branch() -> None:
    graph = _build_graph()
    mutation = Conditional(
        condition=HasTag(entity="$self", tag="scholar"),
        then_actions=(ChangeStatus(entity="$self", new_status="studying"), ModifyPressure(pressure_id="magic", delta=4)),
        else_actions=(ChangeStatus(entity="$self", new_status="idle"),),
    )

    apply_mutation(mutation, _ctx(graph))
    apply_mutation(mutation, _ctx(graph, self_id="npc-b"))

    assert graph.get_entity("npc-a").status == "studying"
    assert graph.get_entity("npc-b").status == "idle"
    assert graph.get_pressure("magic") == 4.0


def test_update_rate_limit_stamps_tick() -> None:
    graph = _build_graph()

    apply_mutation(UpdateRateLimit(), _ctx(graph))

    assert graph.rate_limit.to_dict() == {"last_creation_tick": 5, "creations_this_epoch": 1}


def test_stale_result_is_refused_before_any_write() -> None:
    graph = _build_graph()
    ctx = _ctx(graph)
    result = prepare_mutation(
        Conditional(
            condition=HasTag(entity="$self", tag="scholar"),
            then_actions=(SetTag(entity="$self", tag="sworn"), CreateRelationship(kind="ally_of", src="$self", dst="npc-b")),
        ),
        ctx,
    )
    graph.push_relationship(Relationship(kind="ally_of", src="npc-a", dst="npc-b"))

    with pytest.raises(ValueError, match="stale mutation result"):
        apply_mutation_result(result, ctx)
    assert not graph.get_entity("npc-a").has_tag("sworn")


def test_rejected_result_cannot_be_applied() -> None:
    with pytest.raises(ValueError, match="cannot apply a rejected mutation result"):
        apply_mutation_result(MutationResult.rejected("nope"), _ctx(_build_graph()))


def test_merge_dedupes_relationship_keys() -> None:
    first = MutationResult(relationships_created=[Relationship(kind="ally_of", src="a", dst="b")], pressure_changes={"p": 1.0})
    second = MutationResult(relationships_created=[Relationship(kind="ally_of", src="a", dst="b")], pressure_changes={"p": 2.0})

    first.merge(second)

    assert len(first.relationships_created) == 1
    assert first.pressure_changes == {"p": 3.0}


def test_mutation_from_dict_parses_nested_forms() -> None:
    mutation = mutation_from_dict(
        {
            "type": "conditional",
            "condition": {"type": "has_tag", "entity": "$self", "tag": "scholar"},
            "then": [{"type": "archive_relationship", "entity": "$self", "relationship_kind": "member_of", "with": "fac-a"}],
            "else": [
                {
                    "type": "for_each_related",
                    "relationship": "member_of",
                    "actions": [{"type": "adjust_prominence", "entity": "$related", "direction": "up"}],
                }
            ],
        }
    )

    assert mutation == Conditional(
        condition=HasTag(entity="$self", tag="scholar"),
        then_actions=(ArchiveRelationship(entity="$self", relationship_kind="member_of", with_entity="fac-a"),),
        else_actions=(ForEachRelated(relationship="member_of", actions=(AdjustProminence(entity="$related", direction="up"),)),),
    )
    assert mutation_from_dict({"type": "transfer_relationship", "entity": "$self", "relationship_kind": "member_of", "from": "a", "to": "b"}).to_entity == "b"
    assert mutation_from_dict({"type": "open_portal", "size": 3}) == UnknownMutation(mutation_type="open_portal")


def test_mutation_from_dict_rejects_malformed_known_types() -> None:
    with pytest.raises(ValueError, match="set_tag.tag must be a non-empty string"):
        mutation_from_dict({"type": "set_tag", "entity": "$self"})
    with pytest.raises(ValueError, match="modify_pressure.delta must be a number"):
        mutation_from_dict({"type": "modify_pressure", "pressure_id": "conflict", "delta": "lots"})
    with pytest.raises(ValueError, match="adjust_prominence.direction must be"):
        mutation_from_dict({"type": "adjust_prominence", "entity": "$self", "direction": "sideways"})
    with pytest.raises(ValueError, match="mutation.type must be a non-empty string"):
        mutation_from_dict({"entity": "$self"})
    with pytest.raises(ValueError, match="unsupported condition type"):
        condition_from_dict({"type": "phase_of_moon"})
