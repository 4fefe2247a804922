"""
vm_wasm.diagnostics — stage-tagged messages collected across a build.

A Diagnostic is produced by any stage (resolve, freeze, build, optimize, abi,
cache, manifest). Severity `error` halts the pipeline at the end of the
producing stage; `warning` never halts and is always surfaced to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class Stage(str, Enum):
    CONFIG = "config"
    MANIFEST = "manifest"
    RESOLVE = "resolve"
    FREEZE = "freeze"
    BUILD = "build"
    OPTIMIZE = "optimize"
    ABI = "abi"
    CACHE = "cache"
    OUTPUT = "output"


@dataclass(frozen=True)
class Diagnostic:
    stage: str
    severity: Severity
    message: str
    module: Optional[str] = None
    line: Optional[int] = None

    @property
    def is_error(self) -> bool:
        return self.severity is Severity.ERROR

    def location(self) -> Optional[str]:
        if self.module is None:
            return None
        return f"{self.module}:{self.line}" if self.line is not None else self.module

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "severity": self.severity.value,
            "message": self.message,
            "module": self.module,
            "line": self.line,
        }

    def __str__(self) -> str:
        loc = self.location()
        suffix = f" ({loc})" if loc else ""
        return f"{self.stage}: {self.severity.value}: {self.message}{suffix}"


def error(stage: Stage | str, message: str, *, module: Optional[str] = None, line: Optional[int] = None) -> Diagnostic:
    return Diagnostic(_stage(stage), Severity.ERROR, message, module, line)


def warning(stage: Stage | str, message: str, *, module: Optional[str] = None, line: Optional[int] = None) -> Diagnostic:
    return Diagnostic(_stage(stage), Severity.WARNING, message, module, line)


def _stage(stage: Stage | str) -> str:
    return stage.value if isinstance(stage, Stage) else str(stage)


@dataclass
class DiagnosticBag:
    """Ordered, append-only collection used by one stage (or a whole build)."""

    items: List[Diagnostic] = field(default_factory=list)

    def add(self, diag: Diagnostic) -> None:
        self.items.append(diag)

    def extend(self, diags: Iterable[Diagnostic]) -> None:
        self.items.extend(diags)

    @property
    def errors(self) -> List[Diagnostic]:
        return [d for d in self.items if d.is_error]

    @property
    def warnings(self) -> List[Diagnostic]:
        return [d for d in self.items if not d.is_error]

    def has_errors(self) -> bool:
        return any(d.is_error for d in self.items)

    def __iter__(self) -> Iterator[Diagnostic]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)


__all__ = ["Severity", "Stage", "Diagnostic", "DiagnosticBag", "error", "warning"]
