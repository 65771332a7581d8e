from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from loreweave.sim.contracts import LineageRule, check_contract, check_saturation, enforce_lineage
from loreweave.sim.core import RNG_GROWTH_STREAM_NAME
from loreweave.sim.graph import Entity, HistoryEvent, Relationship
from loreweave.sim.mutations import MutationContext, apply_mutation_result, prepare_mutation
from loreweave.sim.rng import weighted_index
from loreweave.sim.rules import RuleModule
from loreweave.sim.templates import GrowthTemplate, TemplateRegistry, TemplateResult, resolve_ref

if TYPE_CHECKING:
    from loreweave.sim.core import Simulation
    from loreweave.sim.view import TemplateGraphView

logger = logging.getLogger(__name__)

GROWTH_OUTCOME_EVENT_TYPE = "growth_outcome"
OUTCOME_APPLIED = "applied"
OUTCOME_NO_ELIGIBLE_TEMPLATES = "no_eligible_templates"
OUTCOME_EXPAND_FAILED = "expand_failed"
TARGET_BINDING = "target"


@dataclass
class GrowthOutcome:
    outcome: str
    template_id: str | None = None
    target_id: str | None = None
    entities_created: list[str] = field(default_factory=list)
    relationships_created: list[Relationship] = field(default_factory=list)
    entities_modified: list[str] = field(default_factory=list)
    diagnostics: list[str] = field(default_factory=list)
    rejections: dict[str, list[str]] = field(default_factory=dict)

    def to_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {"outcome": self.outcome}
        if self.template_id is not None:
            params["template_id"] = self.template_id
            params["target_id"] = self.target_id
            params["entities_created"] = list(self.entities_created)
            params["relationships_created"] = len(self.relationships_created)
            params["entities_modified"] = list(self.entities_modified)
        if self.diagnostics:
            params["diagnostics"] = list(self.diagnostics)
        if self.rejections:
            params["rejections"] = {template_id: list(reasons) for template_id, reasons in sorted(self.rejections.items())}
        return params


class GrowthModule(RuleModule):
    """Runs the template growth phase at the start of every tick.

    Each growth step gathers the templates whose contract, saturation check,
    ``can_apply`` and run cap all allow them, samples one weighted by the
    current era and damped by how often it already ran, expands it against a
    target and commits the result. Every step leaves one ``growth_outcome``
    entry in the event trace.
    """

    name = "growth"

    def __init__(
        self,
        registry: TemplateRegistry,
        *,
        templates_per_tick: int = 1,
        population_targets: dict[str, int] | None = None,
        lineage_rules: list[LineageRule] | None = None,
    ) -> None:
        if not isinstance(templates_per_tick, int) or templates_per_tick < 0:
            raise ValueError("templates_per_tick must be a non-negative integer")
        self.registry = registry
        self.templates_per_tick = templates_per_tick
        self.population_targets = dict(population_targets or {})
        self.lineage_rules = list(lineage_rules or [])

    def on_simulation_start(self, sim: Simulation) -> None:
        state = sim.get_rules_state(self.name)
        if "selection_tracker" in state:
            sim.target_selector.tracker.load(state["selection_tracker"])

    def on_tick_start(self, sim: Simulation, tick: int) -> None:
        for step in range(self.templates_per_tick):
            self.run_growth_step(sim, tick, step)
        self._save_tracker(sim)

    def on_era_changed(self, sim: Simulation, previous_era_id: str | None, era_id: str) -> None:
        self._save_tracker(sim)

    def _save_tracker(self, sim: Simulation) -> None:
        sim.set_rules_state(self.name, {"selection_tracker": sim.target_selector.tracker.to_dict()})

    # -- growth step ----------------------------------------------------------

    def eligible_templates(self, sim: Simulation, view: TemplateGraphView, rng: random.Random) -> tuple[list[GrowthTemplate], dict[str, list[str]]]:
        eligible: list[GrowthTemplate] = []
        rejections: dict[str, list[str]] = {}
        for template in self.registry.templates():
            reasons = self._rejection_reasons(template, view, rng)
            if reasons:
                rejections[template.template_id] = reasons
            else:
                eligible.append(template)
        return eligible, rejections

    def _rejection_reasons(self, template: GrowthTemplate, view: TemplateGraphView, rng: random.Random) -> list[str]:
        runs = view.template_run_count(template.template_id)
        if template.metadata.max_runs is not None and runs >= template.metadata.max_runs:
            return [f"max runs reached ({runs}/{template.metadata.max_runs})"]
        saturated = check_saturation(template, view, self.population_targets)
        if saturated is not None:
            return [saturated]
        check = check_contract(template, view, rng)
        if not check.allowed:
            return list(check.reasons)
        if not template.can_apply(view):
            return ["can_apply returned false"]
        return []

    def _template_weight(self, sim: Simulation, view: TemplateGraphView, template: GrowthTemplate) -> float:
        era = sim.current_era()
        era_weight = era.template_weight(template.template_id) if era is not None else 1.0
        runs = view.template_run_count(template.template_id)
        return era_weight / (1 + runs**2)

    def run_growth_step(self, sim: Simulation, tick: int, step: int = 0) -> GrowthOutcome:
        view = sim.view()
        rng = sim.rng_stream(RNG_GROWTH_STREAM_NAME)
        eligible, rejections = self.eligible_templates(sim, view, rng)
        weights = [self._template_weight(sim, view, template) for template in eligible]
        if not eligible or all(weight <= 0.0 for weight in weights):
            outcome = GrowthOutcome(outcome=OUTCOME_NO_ELIGIBLE_TEMPLATES, rejections=rejections)
            logger.debug("tick %d: no eligible templates (%d rejected)", tick, len(rejections))
            return self._finish(sim, tick, step, outcome)

        template = eligible[weighted_index(rng, weights)]
        targets = sorted(template.find_targets(view), key=lambda entity: entity.id)
        target = rng.choice(targets) if targets else None
        outcome = GrowthOutcome(
            outcome=OUTCOME_APPLIED,
            template_id=template.template_id,
            target_id=target.id if target is not None else None,
        )

        try:
            result = template.expand(view, target)
            result.validate_placeholders()
        except ValueError as error:
            outcome.outcome = OUTCOME_EXPAND_FAILED
            outcome.diagnostics.append(str(error))
            logger.warning("tick %d: template %s failed to expand: %s", tick, template.template_id, error)
            return self._finish(sim, tick, step, outcome)

        self._commit(sim, view, template, target, result, outcome, rng)
        sim.graph.record_template_run(template.template_id)
        sim.graph.record_history(
            HistoryEvent(
                tick=tick,
                era=sim.graph.current_era,
                event_type="growth",
                description=result.description or template.name,
                entities_created=list(outcome.entities_created),
                relationships_created=[relationship.to_dict() for relationship in outcome.relationships_created],
                entities_modified=list(outcome.entities_modified),
            )
        )
        logger.debug(
            "tick %d: %s created %d entities and %d relationships",
            tick,
            template.template_id,
            len(outcome.entities_created),
            len(outcome.relationships_created),
        )
        return self._finish(sim, tick, step, outcome)

    def _commit(
        self,
        sim: Simulation,
        view: TemplateGraphView,
        template: GrowthTemplate,
        target: Entity | None,
        result: TemplateResult,
        outcome: GrowthOutcome,
        rng: random.Random,
    ) -> None:
        graph = sim.graph
        pending_ids: dict[int, str] = {}
        for index, draft in enumerate(result.entities):
            if draft.coordinates is None and view.has_coordinate_space(draft.kind):
                references = [target] if target is not None and target.kind == draft.kind else []
                draft = replace(
                    draft,
                    coordinates=view.derive_coordinates(references, draft.kind, axis_hint=sorted(draft.tags)),
                )
            entity_id = view.create_entity(draft)
            pending_ids[index] = entity_id
            outcome.entities_created.append(entity_id)

        for draft in result.relationships:
            src = resolve_ref(draft.src, pending_ids)
            dst = resolve_ref(draft.dst, pending_ids)
            if src is None or dst is None:
                outcome.diagnostics.append(f"unresolved placeholder in {draft.kind} relationship")
                continue
            relationship = Relationship(
                kind=draft.kind,
                src=src,
                dst=dst,
                strength=draft.strength,
                category=draft.category,
                distance=draft.distance,
                catalyzed_by=draft.catalyzed_by or template.template_id,
            )
            if graph.push_relationship(relationship):
                outcome.relationships_created.append(graph.get_relationship(src, dst, draft.kind))
            else:
                outcome.diagnostics.append(f"relationship {draft.kind} {src}->{dst} rejected by the store")

        ctx = MutationContext(
            graph=graph,
            tick=graph.tick,
            self_entity=target,
            entities={TARGET_BINDING: target} if target is not None else {},
            pending_ids=pending_ids,
        )
        for mutation in result.mutations:
            prepared = prepare_mutation(mutation, ctx)
            if prepared.diagnostic:
                outcome.diagnostics.append(prepared.diagnostic)
            if not prepared.applied:
                continue
            apply_mutation_result(prepared, ctx)
            outcome.relationships_created.extend(prepared.relationships_created)
            for modification in prepared.entity_modifications:
                if modification.entity_id not in outcome.entities_modified:
                    outcome.entities_modified.append(modification.entity_id)

        outcome.relationships_created.extend(enforce_lineage(graph, outcome.entities_created, self.lineage_rules, rng))

    def _finish(self, sim: Simulation, tick: int, step: int, outcome: GrowthOutcome) -> GrowthOutcome:
        sim.record_outcome(
            tick=tick,
            event_type=GROWTH_OUTCOME_EVENT_TYPE,
            key=f"growth:{tick}:{step}",
            params=outcome.to_params(),
        )
        return outcome
