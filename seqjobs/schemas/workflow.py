"""
Workflow schemas - stage selection and per-stage configuration for MAGUS.

A WorkflowState holds one StageState per StageKey. Every key is always
present: absent stages are filled in as disabled with an empty config.

Stage configuration is a closed set of tagged variants, one class per
stage. Each variant wraps the free-form mapping submitted by the form layer
and exposes the switches the compiler reads as typed properties. Missing or
malformed sub-sections mean "feature disabled" (or the stage's documented
default), never an error.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, ClassVar, Mapping, Optional


class StageKey(str, Enum):
    """MAGUS pipeline stages in declaration order."""
    INPUT = "input"
    PREPROCESSING = "preprocessing"
    ASSEMBLY = "assembly"
    TAXONOMY = "taxonomy"
    SPECIALIZED = "specialized"
    ANNOTATION = "annotation"
    PHYLOGENY = "phylogeny"


def _section(raw: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    """Return a nested mapping, or an empty one when absent or not a mapping."""
    value = raw.get(name)
    if isinstance(value, Mapping):
        return value
    return {}


def _on_unless_disabled(raw: Mapping[str, Any], name: str) -> bool:
    """Sub-feature runs unless its section explicitly says enabled: false."""
    return _section(raw, name).get("enabled") is not False


def _on_if_enabled(raw: Mapping[str, Any], name: str) -> bool:
    """Sub-feature runs only when its section says enabled: true."""
    return bool(_section(raw, name).get("enabled"))


def _present(raw: Mapping[str, Any], name: str) -> bool:
    """Opt-in sub-feature: any section mapping, even an empty one, turns it on."""
    value = raw.get(name)
    return isinstance(value, Mapping) or bool(value)


@dataclass(frozen=True)
class StageConfig:
    """
    Base class for per-stage configuration variants.

    Attributes:
        raw: The submitted configuration mapping, kept in declaration order
             so the command builder can emit it unchanged.
    """
    stage: ClassVar[StageKey]
    raw: Mapping[str, Any] = field(default_factory=dict)

    def section(self, name: str) -> Mapping[str, Any]:
        """Nested mapping `name`, or {} when absent."""
        return _section(self.raw, name)

    def to_dict(self) -> dict[str, Any]:
        return dict(self.raw)

    @classmethod
    def from_dict(cls, data: Any) -> "StageConfig":
        if not isinstance(data, Mapping):
            data = {}
        return cls(raw=dict(data))


@dataclass(frozen=True)
class InputConfig(StageConfig):
    """Execution settings for the input stage. Contributes no steps."""
    stage: ClassVar[StageKey] = StageKey.INPUT


@dataclass(frozen=True)
class PreprocessingConfig(StageConfig):
    """Read QC, subsampling and k-mer filtering. The whole map feeds `magus qc`."""
    stage: ClassVar[StageKey] = StageKey.PREPROCESSING


@dataclass(frozen=True)
class AssemblyConfig(StageConfig):
    """Single assembly, binning, contig clustering and co-assembly."""
    stage: ClassVar[StageKey] = StageKey.ASSEMBLY

    @property
    def single_assembly(self) -> bool:
        return self.raw.get("singleAssembly") is not False

    @property
    def binning(self) -> bool:
        return self.raw.get("binning") is not False

    @property
    def cluster_contigs(self) -> bool:
        return _present(self.raw, "clusterContigs")

    @property
    def coassembly(self) -> bool:
        return _present(self.raw, "coassembly")

    @property
    def coassembly_binning(self) -> bool:
        # Only meaningful when coassembly itself is on
        return self.coassembly and _present(self.raw, "coassemblyBinning")


@dataclass(frozen=True)
class TaxonomyConfig(StageConfig):
    stage: ClassVar[StageKey] = StageKey.TAXONOMY

    @property
    def taxonomy(self) -> bool:
        return _on_unless_disabled(self.raw, "taxonomy")

    @property
    def filter_mags(self) -> bool:
        return _on_if_enabled(self.raw, "filter_mags")


@dataclass(frozen=True)
class SpecializedConfig(StageConfig):
    """Virus and eukaryote detection plus dereplication."""
    stage: ClassVar[StageKey] = StageKey.SPECIALIZED

    @property
    def viruses(self) -> bool:
        return _on_if_enabled(self.raw, "viruses")

    @property
    def eukaryotes(self) -> bool:
        return _on_if_enabled(self.raw, "eukaryotes")

    @property
    def dereplication(self) -> bool:
        return _on_if_enabled(self.raw, "dereplication")


@dataclass(frozen=True)
class AnnotationConfig(StageConfig):
    stage: ClassVar[StageKey] = StageKey.ANNOTATION

    @property
    def orf_calling(self) -> bool:
        return _on_unless_disabled(self.raw, "orf_calling")

    @property
    def annotation(self) -> bool:
        return _on_unless_disabled(self.raw, "annotation")

    @property
    def gene_catalog(self) -> bool:
        return _on_if_enabled(self.raw, "gene_catalog")


@dataclass(frozen=True)
class PhylogenyConfig(StageConfig):
    stage: ClassVar[StageKey] = StageKey.PHYLOGENY

    @property
    def phylogeny(self) -> bool:
        return _on_if_enabled(self.raw, "phylogeny")

    @property
    def finalize_mags(self) -> bool:
        return _on_if_enabled(self.raw, "finalize_mags")


STAGE_CONFIG_TYPES: Mapping[StageKey, type[StageConfig]] = MappingProxyType({
    cls.stage: cls
    for cls in (
        InputConfig,
        PreprocessingConfig,
        AssemblyConfig,
        TaxonomyConfig,
        SpecializedConfig,
        AnnotationConfig,
        PhylogenyConfig,
    )
})


@dataclass(frozen=True)
class StageState:
    """
    Toggle plus configuration for one stage.

    Attributes:
        enabled: Whether the stage should run
        config: The stage's configuration variant
    """
    enabled: bool
    config: StageConfig

    def to_dict(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "config": self.config.to_dict()}

    @classmethod
    def from_dict(cls, key: StageKey, data: Any) -> "StageState":
        if not isinstance(data, Mapping):
            data = {}
        config_type = STAGE_CONFIG_TYPES[key]
        return cls(
            enabled=data.get("enabled") is True,
            config=config_type.from_dict(data.get("config")),
        )

    @classmethod
    def disabled(cls, key: StageKey) -> "StageState":
        return cls(enabled=False, config=STAGE_CONFIG_TYPES[key]())


@dataclass(frozen=True)
class WorkflowState:
    """
    Complete stage selection for one MAGUS job.

    Construct through from_dict() or WorkflowState.build(); both guarantee
    that every StageKey has an entry.
    """
    stages: Mapping[StageKey, StageState]

    def __post_init__(self):
        missing = [k.value for k in StageKey if k not in self.stages]
        if missing:
            raise ValueError(f"WorkflowState missing stages: {missing}")

    def __getitem__(self, key: StageKey) -> StageState:
        return self.stages[StageKey(key)]

    def is_enabled(self, key: StageKey) -> bool:
        return self[key].enabled

    def with_stage(self, key: StageKey, enabled: bool) -> "WorkflowState":
        """Return a copy with one stage's toggle changed."""
        key = StageKey(key)
        stages = dict(self.stages)
        stages[key] = StageState(enabled=enabled, config=stages[key].config)
        return WorkflowState(stages=stages)

    def enabled_stages(self) -> list[StageKey]:
        return [k for k in StageKey if self.stages[k].enabled]

    @classmethod
    def build(cls, stages: Optional[Mapping[StageKey, StageState]] = None) -> "WorkflowState":
        """Build a state, filling absent stages as disabled."""
        stages = dict(stages or {})
        return cls(stages={
            key: stages.get(key) or StageState.disabled(key)
            for key in StageKey
        })

    def to_dict(self) -> dict[str, Any]:
        return {
            "stages": {key.value: self.stages[key].to_dict() for key in StageKey}
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WorkflowState":
        """
        Parse a workflow from its JSON form.

        Accepts either {"stages": {...}} or the bare stage mapping. Unknown
        stage names are ignored.
        """
        if not isinstance(data, Mapping):
            data = {}
        stages_data = data.get("stages", data)
        if not isinstance(stages_data, Mapping):
            stages_data = {}
        return cls(stages={
            key: StageState.from_dict(key, stages_data.get(key.value))
            for key in StageKey
        })


@dataclass(frozen=True)
class DependencyRule:
    """A stage may only be enabled when every stage in `requires` is enabled."""
    stage: StageKey
    requires: tuple[StageKey, ...]
    message: str


@dataclass(frozen=True)
class DependencyWarning:
    """Advisory message for a violated rule. Never persisted."""
    stage: StageKey
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"stage": self.stage.value, "message": self.message}


@dataclass(frozen=True)
class WorkflowStep:
    """
    One executable invocation produced by the compiler.

    Attributes:
        id: Unique within a compiled workflow (e.g. "call-orfs")
        stage: Stage that contributed the step
        command: Base command, whitespace separated (e.g. "magus call-orfs")
        args: Argument mapping in declaration order
    """
    id: str
    stage: StageKey
    command: str
    args: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "stage": self.stage.value,
            "command": self.command,
            "args": dict(self.args),
        }
