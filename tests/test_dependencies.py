"""Tests for seqjobs.dependencies.

Covers warning evaluation, cascading enforcement, intent warnings and
rule validation.
"""

import itertools

import pytest

from seqjobs.dependencies import (
    STAGE_DEPENDENCY_RULES,
    enforce,
    enforce_with_warnings,
    evaluate,
    group_warnings_by_stage,
    intent_warning,
    validate_rules,
)
from seqjobs.errors import DependencyCycleError
from seqjobs.schemas import DependencyRule, StageKey, StageState, WorkflowState


def _state(**enabled: bool) -> WorkflowState:
    """Build a state where only the named stages are toggled."""
    base = WorkflowState.build()
    for name, on in enabled.items():
        base = base.with_stage(StageKey(name), on)
    return base


def _all_states():
    for bits in itertools.product([False, True], repeat=len(StageKey)):
        yield _state(**{key.value: bit for key, bit in zip(StageKey, bits)})


class TestEvaluate:
    """Tests for evaluate()."""

    def test_no_warnings_when_satisfied(self):
        state = _state(input=True, assembly=True, taxonomy=True)
        assert evaluate(state) == []

    def test_warning_for_taxonomy_without_assembly(self):
        state = _state(input=True, taxonomy=True)
        warnings = evaluate(state)
        assert [w.stage for w in warnings] == [StageKey.TAXONOMY]
        assert "Assembly & Binning" in warnings[0].message

    def test_disabled_stage_never_warns(self):
        state = _state(taxonomy=False, assembly=False)
        assert evaluate(state) == []

    def test_warnings_in_rule_order(self):
        state = _state(phylogeny=True, preprocessing=True, taxonomy=True)
        assert [w.stage for w in evaluate(state)] == [
            StageKey.PREPROCESSING,
            StageKey.TAXONOMY,
            StageKey.PHYLOGENY,
        ]

    def test_does_not_mutate(self):
        state = _state(taxonomy=True)
        evaluate(state)
        assert state.is_enabled(StageKey.TAXONOMY)


class TestEnforce:
    """Tests for enforce()."""

    def test_disables_taxonomy_without_assembly(self):
        state = _state(input=True, assembly=False, taxonomy=True)
        result, warnings = enforce_with_warnings(state)
        assert not result.is_enabled(StageKey.ASSEMBLY)
        assert not result.is_enabled(StageKey.TAXONOMY)
        assert [w.stage for w in warnings] == [StageKey.TAXONOMY]

    def test_cascades_through_chain(self):
        state = _state(input=False, assembly=True, annotation=True, phylogeny=True)
        result = enforce(state)
        assert result.enabled_stages() == []

    def test_keeps_valid_stages(self):
        state = _state(input=True, assembly=True, annotation=True, phylogeny=True)
        assert enforce(state) == state

    def test_preserves_config(self, workflow_dict):
        state = WorkflowState.from_dict(workflow_dict).with_stage(StageKey.INPUT, False)
        result = enforce(state)
        assert result[StageKey.TAXONOMY].config == state[StageKey.TAXONOMY].config

    def test_input_not_mutated(self):
        state = _state(taxonomy=True)
        enforce(state)
        assert state.is_enabled(StageKey.TAXONOMY)

    def test_idempotent_and_only_disables(self):
        for state in _all_states():
            once = enforce(state)
            assert enforce(once) == once
            assert evaluate(once) == []
            for key in StageKey:
                if once.is_enabled(key):
                    assert state.is_enabled(key)

    def test_cascade_warnings_cover_every_disabled_stage(self):
        state = _state(assembly=True, taxonomy=True, annotation=True, phylogeny=True)
        _, warnings = enforce_with_warnings(state)
        assert [w.stage for w in warnings] == [
            StageKey.ASSEMBLY,
            StageKey.TAXONOMY,
            StageKey.ANNOTATION,
            StageKey.PHYLOGENY,
        ]


class TestIntentWarning:
    """Tests for intent_warning()."""

    def test_none_toggled(self):
        assert intent_warning(_state(taxonomy=True), None) == []

    def test_stage_without_rule(self):
        assert intent_warning(_state(), StageKey.INPUT) == []

    def test_reports_only_toggled_stage(self):
        state = _state(taxonomy=True, phylogeny=True)
        warnings = intent_warning(state, StageKey.PHYLOGENY)
        assert len(warnings) == 1
        assert warnings[0].stage == StageKey.PHYLOGENY

    def test_satisfied_requirements(self):
        state = _state(input=True, assembly=True)
        assert intent_warning(state, StageKey.ASSEMBLY) == []

    def test_accepts_stage_name(self):
        assert len(intent_warning(_state(taxonomy=True), "taxonomy")) == 1


class TestGroupWarnings:

    def test_groups_in_order(self):
        warnings = evaluate(_state(taxonomy=True, specialized=True))
        grouped = group_warnings_by_stage(warnings + warnings[:1])
        assert list(grouped) == [StageKey.TAXONOMY, StageKey.SPECIALIZED]
        assert len(grouped[StageKey.TAXONOMY]) == 2


class TestValidateRules:

    def test_builtin_rules_are_acyclic(self):
        validate_rules(STAGE_DEPENDENCY_RULES)

    def test_cycle_rejected(self):
        rules = (
            DependencyRule(StageKey.ASSEMBLY, (StageKey.TAXONOMY,), "a"),
            DependencyRule(StageKey.TAXONOMY, (StageKey.ASSEMBLY,), "b"),
        )
        with pytest.raises(DependencyCycleError, match="cycle"):
            validate_rules(rules)

    def test_unknown_stage_rejected(self):
        rules = (DependencyRule(StageKey.ASSEMBLY, ("reads",), "a"),)
        with pytest.raises(DependencyCycleError, match="Unknown stage"):
            validate_rules(rules)

    def test_enforce_bound_with_cyclic_rules_still_terminates(self):
        rules = (
            DependencyRule(StageKey.ASSEMBLY, (StageKey.TAXONOMY,), "a"),
            DependencyRule(StageKey.TAXONOMY, (StageKey.ASSEMBLY,), "b"),
        )
        state = WorkflowState.build({
            StageKey.ASSEMBLY: StageState.disabled(StageKey.ASSEMBLY),
            StageKey.TAXONOMY: StageState.disabled(StageKey.TAXONOMY),
        }).with_stage(StageKey.ASSEMBLY, True)
        result = enforce(state, rules)
        assert result.enabled_stages() == []
