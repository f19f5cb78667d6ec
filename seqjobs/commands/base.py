"""
Generic argument flattening for MAGUS workflow steps.

A step's argument mapping becomes CLI flags:
- None and False are omitted, True is a bare flag
- Sequences become one comma-joined value, empty sequences are omitted
- Nested mappings are flattened with dot-joined keys
- Everything else is the flag followed by its string form
"""

import re
from typing import Any, Mapping

from seqjobs.schemas import WorkflowStep


_UPPER = re.compile(r"[A-Z]")


def to_flag(key: str) -> str:
    """
    Convert a camelCase, snake_case or dotted key to a long flag.

    minContig -> --min-contig, min_contig -> --min-contig,
    annotation.evalue_full -> --annotation-evalue-full
    """
    name = key.replace(".", "-").replace("_", "-")
    name = _UPPER.sub(lambda m: "-" + m.group(0).lower(), name)
    return "--" + name


def render_value(value: Any) -> str:
    """String form of a scalar as it appears on the command line."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _append_arg(argv: list[str], key: str, value: Any) -> None:
    if value is None:
        return

    if isinstance(value, bool):
        if value:
            argv.append(to_flag(key))
        return

    if isinstance(value, (list, tuple)):
        if not value:
            return
        argv.extend([to_flag(key), ",".join(render_value(v) for v in value)])
        return

    if isinstance(value, Mapping):
        for sub_key, sub_value in value.items():
            _append_arg(argv, f"{key}.{sub_key}", sub_value)
        return

    argv.extend([to_flag(key), render_value(value)])


def build_command(step: WorkflowStep) -> list[str]:
    """
    Build the argv for one workflow step.

    Args:
        step: Compiled step; `command` supplies the leading tokens

    Returns:
        New argv list, flags in argument-map order
    """
    argv = step.command.split()
    for key, value in (step.args or {}).items():
        _append_arg(argv, key, value)
    return argv
