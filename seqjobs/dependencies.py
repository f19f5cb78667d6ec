"""
Dependency evaluation for MAGUS stage selection.

Rules are declarative: a stage may only be enabled when every stage it
requires is enabled. Violations are advisory warnings; enforce() repairs a
state by disabling violators until nothing changes.
"""

import logging
from collections import defaultdict
from typing import Iterable, Optional, Sequence

from seqjobs.errors import DependencyCycleError
from seqjobs.schemas import (
    DependencyRule,
    DependencyWarning,
    StageKey,
    WorkflowState,
)

logger = logging.getLogger(__name__)


STAGE_DEPENDENCY_RULES: tuple[DependencyRule, ...] = (
    DependencyRule(
        stage=StageKey.PREPROCESSING,
        requires=(StageKey.INPUT,),
        message="Read QC and preprocessing require an input FASTQ file and execution settings.",
    ),
    DependencyRule(
        stage=StageKey.ASSEMBLY,
        requires=(StageKey.INPUT,),
        message="Assembly requires sequencing input and execution configuration.",
    ),
    DependencyRule(
        stage=StageKey.TAXONOMY,
        requires=(StageKey.ASSEMBLY,),
        message="Taxonomy requires assemblies or MAGs from the Assembly & Binning stage.",
    ),
    DependencyRule(
        stage=StageKey.SPECIALIZED,
        requires=(StageKey.ASSEMBLY,),
        message="Virus and eukaryote detection require assemblies or bins.",
    ),
    DependencyRule(
        stage=StageKey.ANNOTATION,
        requires=(StageKey.ASSEMBLY,),
        message="Annotation requires assembled contigs or MAGs.",
    ),
    DependencyRule(
        stage=StageKey.PHYLOGENY,
        requires=(StageKey.ANNOTATION,),
        message="Phylogeny requires annotated genes from the Annotation stage.",
    ),
)


def validate_rules(rules: Sequence[DependencyRule]) -> None:
    """
    Check that rules only name known stages and form a DAG.

    Raises:
        DependencyCycleError: On an unknown stage or a cycle
    """
    graph: dict[StageKey, set[StageKey]] = defaultdict(set)
    for rule in rules:
        for key in (rule.stage, *rule.requires):
            if not isinstance(key, StageKey):
                raise DependencyCycleError(f"Unknown stage in dependency rule: {key!r}")
        graph[rule.stage].update(rule.requires)

    visiting: set[StageKey] = set()
    done: set[StageKey] = set()

    def visit(node: StageKey, path: list[StageKey]) -> None:
        if node in done:
            return
        if node in visiting:
            cycle = " -> ".join(k.value for k in (*path, node))
            raise DependencyCycleError(f"Dependency cycle: {cycle}")
        visiting.add(node)
        for dep in sorted(graph.get(node, ())):
            visit(dep, [*path, node])
        visiting.discard(node)
        done.add(node)

    for node in list(graph):
        visit(node, [])


def _violates(state: WorkflowState, rule: DependencyRule) -> bool:
    return state.is_enabled(rule.stage) and any(
        not state.is_enabled(req) for req in rule.requires
    )


def evaluate(
    state: WorkflowState,
    rules: Sequence[DependencyRule] = STAGE_DEPENDENCY_RULES,
) -> list[DependencyWarning]:
    """
    Return one warning per enabled stage with a disabled requirement.

    Warnings are in rule-declaration order. The state is not modified.
    """
    return [
        DependencyWarning(stage=rule.stage, message=rule.message)
        for rule in rules
        if _violates(state, rule)
    ]


def enforce(
    state: WorkflowState,
    rules: Sequence[DependencyRule] = STAGE_DEPENDENCY_RULES,
) -> WorkflowState:
    """
    Disable every stage that violates its rule, repeating until stable.

    Disabling one stage can cascade (assembly off turns taxonomy off, which
    then turns nothing else off). Each pass either changes at least one
    stage or ends the loop, so the number of passes is bounded by the
    number of stages.

    Args:
        state: Workflow to repair; never mutated
        rules: Dependency rules, defaults to the MAGUS rules

    Returns:
        A new WorkflowState with no violations

    Raises:
        DependencyCycleError: If the bound is exceeded
    """
    max_passes = len(StageKey) + 1
    current = state
    for _ in range(max_passes):
        violators = [rule.stage for rule in rules if _violates(current, rule)]
        if not violators:
            return current
        for key in violators:
            logger.debug(f"Disabling stage {key.value}: unmet dependency")
            current = current.with_stage(key, enabled=False)
    raise DependencyCycleError(
        f"Dependency enforcement did not settle after {max_passes} passes"
    )


def enforce_with_warnings(
    state: WorkflowState,
    rules: Sequence[DependencyRule] = STAGE_DEPENDENCY_RULES,
) -> tuple[WorkflowState, list[DependencyWarning]]:
    """
    Enforce rules and report every stage that enforcement switched off.

    Returns:
        (enforced state, warnings in rule-declaration order)
    """
    enforced = enforce(state, rules)
    turned_off = {
        key for key in StageKey
        if state.is_enabled(key) and not enforced.is_enabled(key)
    }
    warnings = [
        DependencyWarning(stage=rule.stage, message=rule.message)
        for rule in rules
        if rule.stage in turned_off
    ]
    return enforced, warnings


def intent_warning(
    state: WorkflowState,
    last_toggled: Optional[StageKey],
    rules: Sequence[DependencyRule] = STAGE_DEPENDENCY_RULES,
) -> list[DependencyWarning]:
    """
    Warning for the stage the user just toggled, if its requirements are off.

    Only the toggled stage is reported, not the cascade. Returns an empty
    list when nothing was toggled or the stage has no rule.
    """
    if last_toggled is None:
        return []
    key = StageKey(last_toggled)
    for rule in rules:
        if rule.stage != key:
            continue
        if any(not state.is_enabled(req) for req in rule.requires):
            return [DependencyWarning(stage=key, message=rule.message)]
        return []
    return []


def group_warnings_by_stage(
    warnings: Iterable[DependencyWarning],
) -> dict[StageKey, list[str]]:
    """Group warning messages under their stage, preserving order."""
    grouped: dict[StageKey, list[str]] = {}
    for warning in warnings:
        grouped.setdefault(warning.stage, []).append(warning.message)
    return grouped


validate_rules(STAGE_DEPENDENCY_RULES)
