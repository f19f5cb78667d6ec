"""
XTree command builder.

XTree's flags are declared as an ordered schema instead of being derived
from parameter names. Each FlagSpec names where its value lives in
XTreeParams, the flag to emit, and how the value is rendered:

- VALUE: flag followed by the value, skipped when the value is None
- TEXT: like VALUE but also skipped for empty strings
- SWITCH: bare flag when the value is truthy
- OUTPUT: flag followed by a fixed file name when the value is truthy
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from seqjobs.commands.base import render_value
from seqjobs.schemas import XTreeMode, XTreeParams


class FlagKind(str, Enum):
    VALUE = "value"
    TEXT = "text"
    SWITCH = "switch"
    OUTPUT = "output"


@dataclass(frozen=True)
class FlagSpec:
    """
    One declared XTree flag.

    Attributes:
        path: Dotted location inside the params section (e.g. "outputs.perq")
        flag: Flag emitted on the command line
        kind: How the value is rendered
        output: Fixed file name for OUTPUT flags
    """
    path: str
    flag: str
    kind: FlagKind
    output: Optional[str] = None

    def lookup(self, section: Optional[dict]) -> Any:
        value: Any = section
        for part in self.path.split("."):
            if not isinstance(value, dict):
                return None
            value = value.get(part)
        return value

    def emit(self, section: Optional[dict]) -> list[str]:
        value = self.lookup(section)
        if self.kind == FlagKind.VALUE:
            return [] if value is None else [self.flag, render_value(value)]
        if self.kind == FlagKind.TEXT:
            return [self.flag, str(value)] if value else []
        if self.kind == FlagKind.SWITCH:
            return [self.flag] if value else []
        return [self.flag, self.output] if value else []


GLOBAL_FLAGS: tuple[FlagSpec, ...] = (
    FlagSpec("threads", "--threads", FlagKind.VALUE),
    FlagSpec("logOut", "--log-out", FlagKind.TEXT),
)

ALIGN_FLAGS: tuple[FlagSpec, ...] = (
    FlagSpec("db", "--db", FlagKind.TEXT),
    FlagSpec("confidence", "--confidence", FlagKind.VALUE),
    FlagSpec("outputs.perq", "--perq-out", FlagKind.OUTPUT, "per_query.tsv"),
    FlagSpec("outputs.ref", "--ref-out", FlagKind.OUTPUT, "reference.tsv"),
    FlagSpec("outputs.tax", "--tax-out", FlagKind.OUTPUT, "taxonomy.tsv"),
    FlagSpec("outputs.cov", "--cov-out", FlagKind.OUTPUT, "coverage.tsv"),
    FlagSpec("outputs.orthog", "--orthog-out", FlagKind.OUTPUT, "orthogonal.tsv"),
    FlagSpec("algorithms.redistribute", "--redistribute", FlagKind.SWITCH),
    FlagSpec("algorithms.fastRedistribute", "--fast-redistribute", FlagKind.SWITCH),
    FlagSpec("algorithms.shallowLca", "--shallow-lca", FlagKind.SWITCH),
    FlagSpec("performance.copyMem", "--copymem", FlagKind.SWITCH),
    FlagSpec("performance.doForage", "--doforage", FlagKind.SWITCH),
    FlagSpec("performance.halfForage", "--half-forage", FlagKind.SWITCH),
    FlagSpec("performance.noAdamantium", "--no-adamantium", FlagKind.SWITCH),
)

BUILD_FLAGS: tuple[FlagSpec, ...] = (
    FlagSpec("comp", "--comp", FlagKind.VALUE),
    FlagSpec("k", "--k", FlagKind.VALUE),
)


@dataclass(frozen=True)
class XTreeCommand:
    argv: tuple[str, ...]

    @property
    def command(self) -> str:
        return " ".join(self.argv)


def _emit_all(specs: tuple[FlagSpec, ...], section: Optional[dict]) -> list[str]:
    argv: list[str] = []
    for spec in specs:
        argv.extend(spec.emit(section))
    return argv


def build_xtree_command(
    xtree_path: str,
    seq_path: str,
    params: XTreeParams,
    map_path: Optional[str] = None,
    output_db_path: str = "xtree.db",
) -> XTreeCommand:
    """
    Build the XTree argv.

    Layout: executable, mode, --seqs, global flags, then the ALIGN or BUILD
    flags. ALIGN flags need an `align` section and BUILD flags a `build`
    section; BUILD always ends with --db pointing at the output database.

    Args:
        xtree_path: XTree executable
        seq_path: Input sequences
        params: Parsed XTree parameters
        map_path: Optional taxonomy mapping file for BUILD
        output_db_path: Database written by BUILD

    Returns:
        XTreeCommand with argv and the space-joined command string
    """
    argv = [xtree_path, params.mode.value, "--seqs", seq_path]
    argv += _emit_all(GLOBAL_FLAGS, dict(params.global_))

    if params.mode == XTreeMode.ALIGN and params.align is not None:
        argv += _emit_all(ALIGN_FLAGS, dict(params.align))

    if params.mode == XTreeMode.BUILD and params.build is not None:
        if map_path:
            argv += ["--map", map_path]
        argv += _emit_all(BUILD_FLAGS, dict(params.build))
        argv += ["--db", output_db_path]

    return XTreeCommand(argv=tuple(argv))
