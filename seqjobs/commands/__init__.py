"""
Command builders.

- base: generic flag flattening for compiled MAGUS steps
- xtree: declared flag schema for XTree
"""

from .base import build_command, render_value, to_flag
from .xtree import FlagKind, FlagSpec, XTreeCommand, build_xtree_command

__all__ = [
    "build_command",
    "render_value",
    "to_flag",
    "FlagKind",
    "FlagSpec",
    "XTreeCommand",
    "build_xtree_command",
]
