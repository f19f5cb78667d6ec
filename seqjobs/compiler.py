"""
Workflow compiler for seqjobs.

Compiles a WorkflowState into an ordered tuple of WorkflowSteps:
- Stages are visited in declaration order (StageKey order)
- Each stage emits its sub-steps in a fixed order
- Disabled stages and disabled sub-features emit nothing
- Absent or partial configuration yields fewer steps, never an exception

compile_plan() then resolves a stored job (MAGUS or XTree) into the argv
list the worker executes. An empty MAGUS plan is a caller-level error.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from seqjobs.commands import build_command, build_xtree_command
from seqjobs.dependencies import enforce
from seqjobs.errors import CompileError
from seqjobs.schemas import (
    AnnotationConfig,
    AssemblyConfig,
    Job,
    PhylogenyConfig,
    PreprocessingConfig,
    SpecializedConfig,
    StageConfig,
    StageKey,
    TaxonomyConfig,
    Tool,
    WorkflowState,
    WorkflowStep,
    XTreeParams,
)


NO_STEPS_MESSAGE = "no workflow steps enabled"


def _args(value: Any) -> Mapping[str, Any]:
    """Step arguments from a config section; non-mappings contribute none."""
    if isinstance(value, Mapping):
        return dict(value)
    return {}


def _step(stage: StageKey, sub: str, args: Any) -> WorkflowStep:
    return WorkflowStep(id=sub, stage=stage, command=f"magus {sub}", args=_args(args))


def _preprocessing_steps(cfg: PreprocessingConfig) -> list[WorkflowStep]:
    return [_step(StageKey.PREPROCESSING, "qc", cfg.raw)]


def _assembly_steps(cfg: AssemblyConfig) -> list[WorkflowStep]:
    raw = cfg.raw
    steps = []
    if cfg.single_assembly:
        steps.append(_step(StageKey.ASSEMBLY, "single-assembly", raw.get("singleAssembly")))
    if cfg.binning:
        steps.append(_step(StageKey.ASSEMBLY, "binning", raw.get("binning")))
    if cfg.cluster_contigs:
        steps.append(_step(StageKey.ASSEMBLY, "cluster-contigs", raw.get("clusterContigs")))
    if cfg.coassembly:
        steps.append(_step(StageKey.ASSEMBLY, "coassembly", raw.get("coassembly")))
        if cfg.coassembly_binning:
            steps.append(_step(StageKey.ASSEMBLY, "coassembly-binning", raw.get("coassemblyBinning")))
    return steps


def _taxonomy_steps(cfg: TaxonomyConfig) -> list[WorkflowStep]:
    steps = []
    if cfg.taxonomy:
        steps.append(_step(StageKey.TAXONOMY, "taxonomy", cfg.section("taxonomy")))
    if cfg.filter_mags:
        steps.append(_step(StageKey.TAXONOMY, "filter-mags", cfg.section("filter_mags")))
    return steps


def _specialized_steps(cfg: SpecializedConfig) -> list[WorkflowStep]:
    steps = []
    if cfg.viruses:
        steps.append(_step(StageKey.SPECIALIZED, "find-viruses", cfg.section("viruses")))
    if cfg.eukaryotes:
        steps.append(_step(StageKey.SPECIALIZED, "find-euks", cfg.section("eukaryotes")))
    if cfg.dereplication:
        steps.append(_step(StageKey.SPECIALIZED, "dereplicate", cfg.section("dereplication")))
    return steps


def _annotation_steps(cfg: AnnotationConfig) -> list[WorkflowStep]:
    steps = []
    if cfg.orf_calling:
        steps.append(_step(StageKey.ANNOTATION, "call-orfs", cfg.section("orf_calling")))
    if cfg.annotation:
        steps.append(_step(StageKey.ANNOTATION, "annotate", cfg.section("annotation")))
    if cfg.gene_catalog:
        catalog = cfg.section("gene_catalog")
        steps.append(_step(StageKey.ANNOTATION, "build-gene-catalog", catalog))
        steps.append(_step(StageKey.ANNOTATION, "consolidate-gene-catalog", catalog))
    return steps


def _phylogeny_steps(cfg: PhylogenyConfig) -> list[WorkflowStep]:
    steps = []
    if cfg.phylogeny:
        steps.append(_step(StageKey.PHYLOGENY, "build-tree", cfg.section("phylogeny")))
    if cfg.finalize_mags:
        steps.append(_step(StageKey.PHYLOGENY, "finalize-bacterial-mags", cfg.section("finalize_mags")))
    return steps


# Input contributes no step; every other stage has exactly one emitter
STAGE_EMITTERS: dict[StageKey, Optional[Callable[[Any], list[WorkflowStep]]]] = {
    StageKey.INPUT: None,
    StageKey.PREPROCESSING: _preprocessing_steps,
    StageKey.ASSEMBLY: _assembly_steps,
    StageKey.TAXONOMY: _taxonomy_steps,
    StageKey.SPECIALIZED: _specialized_steps,
    StageKey.ANNOTATION: _annotation_steps,
    StageKey.PHYLOGENY: _phylogeny_steps,
}


def compile_workflow(state: WorkflowState) -> tuple[WorkflowStep, ...]:
    """
    Compile a workflow into ordered steps.

    Pure and deterministic: equal states give equal step tuples.

    Args:
        state: Workflow selection, normally already passed through enforce()

    Returns:
        Steps in stage-declaration order, possibly empty
    """
    steps: list[WorkflowStep] = []
    for key in StageKey:
        stage = state[key]
        emit = STAGE_EMITTERS[key]
        if emit is None or not stage.enabled:
            continue
        config: StageConfig = stage.config
        steps.extend(emit(config))
    return tuple(steps)


def require_steps(steps: tuple[WorkflowStep, ...]) -> tuple[WorkflowStep, ...]:
    """
    Reject an empty compiled workflow.

    Raises:
        CompileError: "no workflow steps enabled"
    """
    if not steps:
        raise CompileError(NO_STEPS_MESSAGE)
    return steps


@dataclass(frozen=True)
class PlannedCommand:
    """One argv to execute, labeled with the step it came from."""
    step_id: str
    argv: tuple[str, ...]

    @property
    def command_line(self) -> str:
        return " ".join(self.argv)


def plan_magus(
    state: WorkflowState,
    input_path: Path,
    magus_path: str = "magus",
) -> list[PlannedCommand]:
    """
    Compile and build argv for every MAGUS step.

    The leading "magus" token is replaced by `magus_path` and the job's
    input file is passed to every step with --input.

    Raises:
        CompileError: If no steps are enabled
    """
    steps = require_steps(compile_workflow(state))
    plan = []
    for step in steps:
        argv = build_command(step)
        argv[0] = magus_path
        argv[2:2] = ["--input", str(input_path)]
        plan.append(PlannedCommand(step_id=step.id, argv=tuple(argv)))
    return plan


def plan_xtree(
    params: XTreeParams,
    input_path: Path,
    xtree_path: str = "xtree",
    mapping_path: Optional[Path] = None,
    output_db_path: str = "xtree.db",
) -> list[PlannedCommand]:
    """Resolve the single XTree invocation."""
    command = build_xtree_command(
        xtree_path,
        str(input_path),
        params,
        map_path=str(mapping_path) if mapping_path else None,
        output_db_path=output_db_path,
    )
    return [PlannedCommand(step_id=f"xtree-{params.mode.value.lower()}", argv=command.argv)]


def compile_plan(
    job: Job,
    params: Mapping[str, Any],
    input_path: Path,
    magus_path: str = "magus",
    xtree_path: str = "xtree",
    mapping_path: Optional[Path] = None,
    output_db_path: str = "xtree.db",
) -> list[PlannedCommand]:
    """
    Resolve a stored job into the commands the worker runs.

    Args:
        job: Job metadata
        params: Contents of params.json
        input_path: The job's input sequence file
        magus_path: MAGUS executable
        xtree_path: XTree executable
        mapping_path: Optional XTree BUILD mapping file
        output_db_path: Where XTree BUILD writes its database

    Returns:
        Ordered commands, never empty

    Raises:
        CompileError: On an empty MAGUS workflow or unreadable XTree params
    """
    if job.tool == Tool.MAGUS:
        state = enforce(WorkflowState.from_dict(params))
        return plan_magus(state, input_path, magus_path)

    try:
        xtree_params = XTreeParams.from_dict(params)
    except ValueError as e:
        raise CompileError(f"Invalid XTree parameters: {e}") from e
    return plan_xtree(xtree_params, input_path, xtree_path, mapping_path, output_db_path)
