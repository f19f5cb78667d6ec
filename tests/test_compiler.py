"""Tests for seqjobs.compiler.

Covers step ordering, per-stage sub-step conditions, tolerance of missing
configuration, the empty-workflow error and plan resolution.
"""

from datetime import datetime, timezone
from pathlib import Path

import pytest

from seqjobs.compiler import (
    NO_STEPS_MESSAGE,
    compile_plan,
    compile_workflow,
    plan_magus,
    require_steps,
)
from seqjobs.errors import CompileError
from seqjobs.schemas import Job, StageKey, Tool, WorkflowState


def _only(stage: str, config=None) -> WorkflowState:
    return WorkflowState.from_dict({"stages": {stage: {"enabled": True, "config": config or {}}}})


def _ids(state: WorkflowState) -> list[str]:
    return [step.id for step in compile_workflow(state)]


class TestCompileWorkflow:
    """Tests for compile_workflow()."""

    def test_full_workflow_order(self, workflow_dict):
        assert _ids(WorkflowState.from_dict(workflow_dict)) == [
            "qc",
            "single-assembly",
            "binning",
            "coassembly",
            "coassembly-binning",
            "taxonomy",
            "filter-mags",
            "find-viruses",
            "call-orfs",
            "annotate",
            "build-gene-catalog",
            "consolidate-gene-catalog",
            "build-tree",
            "finalize-bacterial-mags",
        ]

    def test_deterministic(self, workflow_dict):
        first = compile_workflow(WorkflowState.from_dict(workflow_dict))
        second = compile_workflow(WorkflowState.from_dict(workflow_dict))
        assert first == second
        assert [s.to_dict() for s in first] == [s.to_dict() for s in second]

    def test_empty_state(self):
        assert compile_workflow(WorkflowState.from_dict({})) == ()

    def test_input_contributes_nothing(self):
        assert _ids(_only("input", {"threads": 8})) == []

    def test_disabled_stage_contributes_nothing(self, workflow_dict):
        workflow_dict["stages"]["assembly"]["enabled"] = False
        ids = _ids(WorkflowState.from_dict(workflow_dict))
        assert "single-assembly" not in ids
        assert "binning" not in ids

    def test_preprocessing_args_are_whole_config(self):
        (step,) = compile_workflow(_only("preprocessing", {"enabled": True, "minKmers": 10}))
        assert step.command == "magus qc"
        assert step.stage == StageKey.PREPROCESSING
        assert dict(step.args) == {"enabled": True, "minKmers": 10}

    def test_assembly_defaults(self):
        assert _ids(_only("assembly")) == ["single-assembly", "binning"]

    def test_assembly_explicit_false(self):
        assert _ids(_only("assembly", {"singleAssembly": False, "binning": False})) == []

    def test_assembly_cluster_contigs(self):
        ids = _ids(_only("assembly", {"clusterContigs": {"identity": 0.99}}))
        assert ids == ["single-assembly", "binning", "cluster-contigs"]

    def test_empty_sections_turn_features_on(self):
        config = {"clusterContigs": {}, "coassembly": {}, "coassemblyBinning": {}}
        ids = _ids(_only("assembly", config))
        assert ids == ["single-assembly", "binning", "cluster-contigs", "coassembly", "coassembly-binning"]
        assert dict(compile_workflow(_only("assembly", config))[2].args) == {}

    def test_false_sections_stay_off(self):
        config = {"clusterContigs": False, "coassembly": None}
        assert _ids(_only("assembly", config)) == ["single-assembly", "binning"]

    def test_coassembly_binning_needs_coassembly(self):
        ids = _ids(_only("assembly", {"coassemblyBinning": {"x": 1}}))
        assert "coassembly-binning" not in ids

    def test_coassembly_without_binning(self):
        ids = _ids(_only("assembly", {"coassembly": True}))
        assert ids[-1] == "coassembly"

    def test_boolean_section_gives_empty_args(self):
        steps = compile_workflow(_only("assembly", {"coassembly": True}))
        assert dict(steps[-1].args) == {}

    def test_taxonomy_defaults_on(self):
        assert _ids(_only("taxonomy")) == ["taxonomy"]

    def test_taxonomy_disabled(self):
        assert _ids(_only("taxonomy", {"taxonomy": {"enabled": False}})) == []

    def test_specialized_requires_explicit_enable(self):
        assert _ids(_only("specialized", {"viruses": {}})) == []
        ids = _ids(_only("specialized", {
            "dereplication": {"enabled": True},
            "eukaryotes": {"enabled": True},
            "viruses": {"enabled": True},
        }))
        assert ids == ["find-viruses", "find-euks", "dereplicate"]

    def test_annotation_order(self):
        ids = _ids(_only("annotation", {"gene_catalog": {"enabled": True}}))
        assert ids == ["call-orfs", "annotate", "build-gene-catalog", "consolidate-gene-catalog"]

    def test_gene_catalog_steps_share_args(self):
        steps = compile_workflow(_only("annotation", {"gene_catalog": {"enabled": True, "identity_threshold": 0.9}}))
        assert steps[-1].args == steps[-2].args

    def test_phylogeny_off_by_default(self):
        assert _ids(_only("phylogeny")) == []

    def test_malformed_config_is_disabled_not_error(self):
        state = WorkflowState.from_dict({"stages": {
            "taxonomy": {"enabled": True, "config": "garbage"},
            "annotation": {"enabled": True, "config": {"orf_calling": "yes", "annotation": None}},
        }})
        assert _ids(state) == ["taxonomy", "call-orfs", "annotate"]


class TestRequireSteps:

    def test_empty_raises(self):
        with pytest.raises(CompileError, match=NO_STEPS_MESSAGE):
            require_steps(())

    def test_non_empty_passes_through(self, workflow_dict):
        steps = compile_workflow(WorkflowState.from_dict(workflow_dict))
        assert require_steps(steps) is steps


class TestPlan:
    """Tests for plan_magus() and compile_plan()."""

    def test_magus_plan_uses_binary_and_input(self):
        state = _only("preprocessing", {"minKmers": 10})
        (command,) = plan_magus(state, Path("/jobs/x/input/reads.fastq"), "/opt/magus/magus")
        assert command.step_id == "qc"
        assert command.argv == (
            "/opt/magus/magus", "qc", "--input", "/jobs/x/input/reads.fastq", "--min-kmers", "10",
        )

    def test_magus_plan_empty_raises(self):
        with pytest.raises(CompileError, match="no workflow steps enabled"):
            plan_magus(WorkflowState.from_dict({}), Path("in.fq"))

    def test_compile_plan_enforces_dependencies(self, workflow_dict):
        workflow_dict["stages"]["assembly"]["enabled"] = False
        job = Job(id="J1", tool=Tool.MAGUS, email="a@b.c", created_at=datetime.now(timezone.utc))
        plan = compile_plan(job, workflow_dict, Path("in.fq"))
        assert [c.step_id for c in plan] == ["qc"]

    def test_compile_plan_xtree(self):
        job = Job(id="J2", tool=Tool.XTREE, email="a@b.c", created_at=datetime.now(timezone.utc), mode="ALIGN")
        plan = compile_plan(job, {"mode": "ALIGN", "align": {"db": "gtdb.xtr"}}, Path("in.fa"), xtree_path="xt")
        assert len(plan) == 1
        assert plan[0].step_id == "xtree-align"
        assert plan[0].argv == ("xt", "ALIGN", "--seqs", "in.fa", "--db", "gtdb.xtr")

    def test_compile_plan_bad_xtree_mode(self):
        job = Job(id="J3", tool=Tool.XTREE, email="a@b.c", created_at=datetime.now(timezone.utc))
        with pytest.raises(CompileError, match="Invalid XTree parameters"):
            compile_plan(job, {"mode": "PRUNE"}, Path("in.fa"))
