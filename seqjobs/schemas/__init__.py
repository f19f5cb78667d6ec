"""
Schemas for seqjobs.

- workflow: MAGUS stage selection, per-stage config variants, compiled steps
- job: Job metadata and status lifecycle
- xtree: XTree parameters
"""

from .workflow import (
    StageKey,
    StageConfig,
    InputConfig,
    PreprocessingConfig,
    AssemblyConfig,
    TaxonomyConfig,
    SpecializedConfig,
    AnnotationConfig,
    PhylogenyConfig,
    STAGE_CONFIG_TYPES,
    StageState,
    WorkflowState,
    DependencyRule,
    DependencyWarning,
    WorkflowStep,
)
from .job import Tool, Status, TRANSITIONS, Job, JobStatus
from .xtree import XTreeMode, XTreeParams

__all__ = [
    "StageKey",
    "StageConfig",
    "InputConfig",
    "PreprocessingConfig",
    "AssemblyConfig",
    "TaxonomyConfig",
    "SpecializedConfig",
    "AnnotationConfig",
    "PhylogenyConfig",
    "STAGE_CONFIG_TYPES",
    "StageState",
    "WorkflowState",
    "DependencyRule",
    "DependencyWarning",
    "WorkflowStep",
    "Tool",
    "Status",
    "TRANSITIONS",
    "Job",
    "JobStatus",
    "XTreeMode",
    "XTreeParams",
]
