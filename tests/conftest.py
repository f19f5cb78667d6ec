import stat
from pathlib import Path

import pytest

from seqjobs.config import WorkerConfig
from seqjobs.store import FileJobStore, InMemoryJobStore


ENV_VARS = (
    "SEQJOBS_HOME",
    "SEQJOBS_JOBS_DIR",
    "SEQJOBS_LOCK_PATH",
    "SEQJOBS_EXECUTION_MODE",
    "SEQJOBS_MAGUS_PATH",
    "SEQJOBS_XTREE_PATH",
    "SEQJOBS_LOG_LEVEL",
    "USE_EXECUTION_STUBS",
    "EMAIL_HOST",
    "EMAIL_PORT",
    "EMAIL_USER",
    "EMAIL_PASS",
    "EMAIL_SECURE",
    "EMAIL_FROM",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Keep the developer's environment and .env out of every test."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def workflow_dict() -> dict:
    """A workflow with every stage on and a mix of sub-features."""
    return {
        "stages": {
            "input": {"enabled": True, "config": {"mode": "local", "seqtype": "short", "threads": 8}},
            "preprocessing": {"enabled": True, "config": {"enabled": True, "minKmers": 10}},
            "assembly": {
                "enabled": True,
                "config": {
                    "singleAssembly": {"threads": 14},
                    "binning": {"completeness": 50, "contamination": 10},
                    "coassembly": {"maxWorkers": 4},
                    "coassemblyBinning": {"testMode": True},
                },
            },
            "taxonomy": {
                "enabled": True,
                "config": {"taxonomy": {"coverage_cutoff": 0.5}, "filter_mags": {"enabled": True, "kmer_threshold": 3}},
            },
            "specialized": {
                "enabled": True,
                "config": {"viruses": {"enabled": True, "min_length": 5000}, "eukaryotes": {"enabled": False}},
            },
            "annotation": {
                "enabled": True,
                "config": {"gene_catalog": {"enabled": True, "identity_threshold": 0.95}},
            },
            "phylogeny": {
                "enabled": True,
                "config": {"phylogeny": {"enabled": True, "iqtree": True}, "finalize_mags": {"enabled": True}},
            },
        }
    }


@pytest.fixture
def input_file(tmp_path) -> Path:
    path = tmp_path / "uploads" / "reads.fastq"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("@r1\nACGT\n+\nIIII\n")
    return path


@pytest.fixture
def file_store(tmp_path) -> FileJobStore:
    return FileJobStore(tmp_path / "jobs")


@pytest.fixture
def memory_store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def worker_config(tmp_path) -> WorkerConfig:
    config = WorkerConfig.defaults(tmp_path / "home")
    config.jobs_dir = tmp_path / "jobs"
    config.execution_mode = "stub"
    config.stub_delay = 0
    return config


@pytest.fixture
def make_script(tmp_path):
    """Write an executable shell script and return its path."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)

    def _make(name: str, body: str) -> Path:
        path = bin_dir / name
        path.write_text("#!/bin/sh\n" + body + "\n")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _make
