"""Tests for seqjobs.commands: generic flag flattening and the XTree schema."""

import pytest

from seqjobs.commands import build_command, build_xtree_command, render_value, to_flag
from seqjobs.commands.xtree import ALIGN_FLAGS, BUILD_FLAGS, GLOBAL_FLAGS
from seqjobs.schemas import StageKey, WorkflowStep, XTreeParams


def _step(args, command="tool qc") -> WorkflowStep:
    return WorkflowStep(id="qc", stage=StageKey.PREPROCESSING, command=command, args=args)


class TestToFlag:

    @pytest.mark.parametrize("key,flag", [
        ("minContig", "--min-contig"),
        ("min_contig", "--min-contig"),
        ("annotation.evalue_full", "--annotation-evalue-full"),
        ("threads", "--threads"),
        ("coverageThreshold.minValue", "--coverage-threshold-min-value"),
    ])
    def test_conversion(self, key, flag):
        assert to_flag(key) == flag

    def test_stable(self):
        assert to_flag("maxWorkers") == to_flag("maxWorkers")


class TestRenderValue:

    def test_integral_float(self):
        assert render_value(100000000.0) == "100000000"

    def test_fraction(self):
        assert render_value(0.95) == "0.95"

    def test_bool(self):
        assert render_value(True) == "true"


class TestBuildCommand:
    """Tests for build_command()."""

    def test_reference_example(self):
        argv = build_command(_step({"enabled": True, "minKmers": 10}))
        assert argv == ["tool", "qc", "--enabled", "--min-kmers", "10"]

    def test_false_and_none_omitted(self):
        assert build_command(_step({"a": False, "b": None})) == ["tool", "qc"]

    def test_list_comma_joined(self):
        argv = build_command(_step({"samples": ["s1", "s2", 3]}))
        assert argv == ["tool", "qc", "--samples", "s1,s2,3"]

    def test_empty_list_omitted(self):
        assert build_command(_step({"samples": []})) == ["tool", "qc"]

    def test_nested_flattened(self):
        argv = build_command(_step({
            "subsample": {"enabled": True, "depth": 100000000},
            "filter": {"min_kmers": 10, "skip": False},
        }))
        assert argv == [
            "tool", "qc",
            "--subsample-enabled",
            "--subsample-depth", "100000000",
            "--filter-min-kmers", "10",
        ]

    def test_order_follows_mapping(self):
        argv = build_command(_step({"z": 1, "a": 2}))
        assert argv == ["tool", "qc", "--z", "1", "--a", "2"]

    def test_deterministic(self):
        step = _step({"x": {"y": [1, 2]}, "flag": True})
        assert build_command(step) == build_command(step)

    def test_multi_token_command(self):
        argv = build_command(_step({}, command="magus  build-gene-catalog"))
        assert argv == ["magus", "build-gene-catalog"]


class TestXTreeCommand:
    """Tests for build_xtree_command()."""

    def test_align_full(self):
        params = XTreeParams.from_dict({
            "mode": "ALIGN",
            "global": {"threads": 16, "logOut": "run.log"},
            "align": {
                "db": "gtdb.xtr",
                "confidence": 0.5,
                "outputs": {"perq": True, "ref": False, "tax": True, "cov": True, "orthog": True},
                "algorithms": {"redistribute": True, "fastRedistribute": True, "shallowLca": True},
                "performance": {"copyMem": True, "doForage": True, "halfForage": True, "noAdamantium": True},
            },
        })
        result = build_xtree_command("xtree", "reads.fa", params)
        assert list(result.argv) == [
            "xtree", "ALIGN", "--seqs", "reads.fa",
            "--threads", "16",
            "--log-out", "run.log",
            "--db", "gtdb.xtr",
            "--confidence", "0.5",
            "--perq-out", "per_query.tsv",
            "--tax-out", "taxonomy.tsv",
            "--cov-out", "coverage.tsv",
            "--orthog-out", "orthogonal.tsv",
            "--redistribute",
            "--fast-redistribute",
            "--shallow-lca",
            "--copymem",
            "--doforage",
            "--half-forage",
            "--no-adamantium",
        ]
        assert result.command == " ".join(result.argv)

    def test_align_without_section(self):
        params = XTreeParams.from_dict({"mode": "ALIGN"})
        assert build_xtree_command("xtree", "r.fa", params).argv == ("xtree", "ALIGN", "--seqs", "r.fa")

    def test_threads_zero_kept(self):
        params = XTreeParams.from_dict({"mode": "ALIGN", "global": {"threads": 0}})
        assert "--threads" in build_xtree_command("xtree", "r.fa", params).argv

    def test_build_with_map(self):
        params = XTreeParams.from_dict({"mode": "BUILD", "build": {"comp": 2, "k": 29}})
        result = build_xtree_command("xtree", "refs.fa", params, map_path="map.tsv", output_db_path="out.xtr")
        assert list(result.argv) == [
            "xtree", "BUILD", "--seqs", "refs.fa",
            "--map", "map.tsv",
            "--comp", "2",
            "--k", "29",
            "--db", "out.xtr",
        ]

    def test_build_default_db(self):
        params = XTreeParams.from_dict({"mode": "build", "build": {}})
        assert build_xtree_command("xtree", "refs.fa", params).argv[-2:] == ("--db", "xtree.db")

    def test_build_ignores_align_section(self):
        params = XTreeParams.from_dict({"mode": "BUILD", "align": {"db": "x"}, "build": {}})
        argv = build_xtree_command("xtree", "refs.fa", params).argv
        assert argv.count("--db") == 1

    def test_invalid_mode(self):
        with pytest.raises(ValueError):
            XTreeParams.from_dict({"mode": "SEARCH"})

    def test_schema_flags_unique(self):
        flags = [spec.flag for spec in GLOBAL_FLAGS + ALIGN_FLAGS + BUILD_FLAGS]
        assert len(flags) == len(set(flags))
