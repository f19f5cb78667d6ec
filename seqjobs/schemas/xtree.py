"""
XTree parameter schema.

XTree runs as a single command in one of two modes. ALIGN maps reads
against an existing database; BUILD creates a database from reference
sequences and an optional taxonomy mapping file.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional


class XTreeMode(str, Enum):
    ALIGN = "ALIGN"
    BUILD = "BUILD"


@dataclass(frozen=True)
class XTreeParams:
    """
    Parsed XTree parameters.

    Sections mirror the submission form; each is a plain mapping and
    absent sections are empty.
    """
    mode: XTreeMode
    global_: Mapping[str, Any] = field(default_factory=dict)
    align: Optional[Mapping[str, Any]] = None
    build: Optional[Mapping[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"mode": self.mode.value}
        if self.global_:
            result["global"] = dict(self.global_)
        if self.align is not None:
            result["align"] = dict(self.align)
        if self.build is not None:
            result["build"] = dict(self.build)
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "XTreeParams":
        """
        Raises:
            ValueError: If mode is missing or not ALIGN/BUILD
        """
        mode = XTreeMode(str(data.get("mode", "")).upper())

        def _mapping(name: str) -> Optional[Mapping[str, Any]]:
            value = data.get(name)
            return dict(value) if isinstance(value, Mapping) else None

        return cls(
            mode=mode,
            global_=_mapping("global") or {},
            align=_mapping("align"),
            build=_mapping("build"),
        )
