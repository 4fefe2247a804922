"""
vm_wasm.errors
--------------

Error taxonomy for the contract compiler.

- One root `CompilerError` with a machine-stable `code`, a human `message`,
  JSON-safe `data`, a `retryable` hint and the `diagnostics` collected by the
  stage that raised it.
- One subclass per failure class:

  ConfigError        bad compiler environment (VM_WASM_* variables)
  ManifestError      invalid project manifest (user-fixable)
  ResolutionError    unresolvable / version-mismatched import (user-fixable)
  FreezeError        a source file could not be captured
  StaleSourceError   a source file changed mid-build (retry by re-running)
  NativeBuildError   external toolchain failure, carries captured stderr
  OptimizationError  malformed intermediate binary (internal bug)
  AbiError           unsupported contract method shape (user-fixable)
  CacheError         cache directory unusable
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .diagnostics import Diagnostic, Stage, error as error_diag


class ErrorCode(str, Enum):
    CONFIG = "VMWASM/CONFIG"
    MANIFEST = "VMWASM/MANIFEST"
    RESOLUTION = "VMWASM/RESOLUTION"
    FREEZE = "VMWASM/FREEZE"
    STALE_SOURCE = "VMWASM/STALE_SOURCE"
    NATIVE_BUILD = "VMWASM/NATIVE_BUILD"
    OPTIMIZATION = "VMWASM/OPTIMIZATION"
    ABI = "VMWASM/ABI"
    CACHE = "VMWASM/CACHE"
    OUTPUT = "VMWASM/OUTPUT"


@dataclass(eq=False)
class CompilerError(Exception):
    """
    Root error for compiler stages.

    Attributes
    ----------
    code: str
        Machine-stable error code (see ErrorCode).
    message: str
        Human hint suitable for logs and CLI output.
    data: dict
        Optional machine data (module names, paths, exit codes). JSON-safe.
    retryable: bool
        Whether re-running the same build may succeed without changing inputs.
    diagnostics: list[Diagnostic]
        Error (and warning) diagnostics gathered by the failing stage.
    """

    code: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    retryable: bool = False
    diagnostics: List[Diagnostic] = field(default_factory=list)

    stage = Stage.OUTPUT

    def __post_init__(self) -> None:
        super().__init__(f"{_code_str(self.code)}: {self.message}")

    def as_diagnostics(self) -> List[Diagnostic]:
        """Diagnostics carried by the error, or one synthesized from its message."""
        if any(d.is_error for d in self.diagnostics):
            return list(self.diagnostics)
        return list(self.diagnostics) + [error_diag(self.stage, self.message)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": _code_str(self.code),
            "message": self.message,
            "data": _jsonmap(self.data),
            "retryable": self.retryable,
            "diagnostics": [d.to_dict() for d in self.as_diagnostics()],
        }

    def __str__(self) -> str:
        parts = [f"{_code_str(self.code)}: {self.message}"]
        if self.data:
            preview = ", ".join(f"{k}={_preview(v)}" for k, v in self.data.items())
            parts.append(f"[{preview}]")
        return " ".join(parts)


class ConfigError(CompilerError, ValueError):
    stage = Stage.CONFIG

    def __init__(self, message: str = "invalid compiler configuration", **data: Any) -> None:
        super().__init__(code=ErrorCode.CONFIG, message=message, data=_jsonmap(data))


class ManifestError(CompilerError):
    stage = Stage.MANIFEST

    def __init__(self, message: str = "invalid project manifest", **data: Any) -> None:
        super().__init__(code=ErrorCode.MANIFEST, message=message, data=_jsonmap(data))


class ResolutionError(CompilerError):
    stage = Stage.RESOLVE

    def __init__(
        self,
        message: str = "dependency resolution failed",
        *,
        diagnostics: Optional[Iterable[Diagnostic]] = None,
        **data: Any,
    ) -> None:
        super().__init__(
            code=ErrorCode.RESOLUTION,
            message=message,
            data=_jsonmap(data),
            diagnostics=list(diagnostics or ()),
        )


class FreezeError(CompilerError):
    stage = Stage.FREEZE

    def __init__(self, message: str = "cannot capture sources", **data: Any) -> None:
        super().__init__(code=ErrorCode.FREEZE, message=message, data=_jsonmap(data))


class StaleSourceError(FreezeError):
    def __init__(self, module: str, path: str, expected: str, got: Optional[str]) -> None:
        CompilerError.__init__(
            self,
            code=ErrorCode.STALE_SOURCE,
            message=f"source of {module} changed during the build; re-run to pick up the new contents",
            data={"module": module, "path": path, "expected": expected, "got": got},
            retryable=True,
            diagnostics=[
                error_diag(Stage.FREEZE, f"source changed since resolution: {path}", module=module)
            ],
        )


class NativeBuildError(CompilerError):
    stage = Stage.BUILD

    def __init__(self, message: str = "native build failed", *, stderr: str = "", **data: Any) -> None:
        super().__init__(
            code=ErrorCode.NATIVE_BUILD,
            message=message,
            data=_jsonmap({**data, "stderr": stderr}),
        )

    @property
    def stderr(self) -> str:
        return str(self.data.get("stderr") or "")


class OptimizationError(CompilerError):
    stage = Stage.OPTIMIZE

    def __init__(self, message: str = "optimization failed", **data: Any) -> None:
        super().__init__(code=ErrorCode.OPTIMIZATION, message=message, data=_jsonmap(data))


class AbiError(CompilerError):
    stage = Stage.ABI

    def __init__(
        self,
        message: str = "unsupported contract method shape",
        *,
        diagnostics: Optional[Iterable[Diagnostic]] = None,
        **data: Any,
    ) -> None:
        super().__init__(
            code=ErrorCode.ABI,
            message=message,
            data=_jsonmap(data),
            diagnostics=list(diagnostics or ()),
        )


class CacheError(CompilerError):
    stage = Stage.CACHE

    def __init__(self, message: str = "build cache unusable", **data: Any) -> None:
        super().__init__(code=ErrorCode.CACHE, message=message, data=_jsonmap(data))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _code_str(code: Any) -> str:
    return code.value if isinstance(code, Enum) else str(code)


def _jsonmap(data: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: _coerce_json(v) for k, v in data.items()}


def _coerce_json(v: Any) -> Any:
    # Keep JSON primitives; stringify the rest; hex-encode bytes.
    if v is None or isinstance(v, (bool, int, float, str)):
        return v
    if isinstance(v, (list, tuple)):
        return [_coerce_json(x) for x in v]
    if isinstance(v, dict):
        return {str(k): _coerce_json(x) for k, x in v.items()}
    if isinstance(v, (bytes, bytearray)):
        return v.hex()
    return str(v)


def _preview(v: Any, limit: int = 96) -> str:
    s = str(_coerce_json(v))
    return s if len(s) <= limit else s[:limit] + "…"


__all__ = [
    "ErrorCode",
    "CompilerError",
    "ConfigError",
    "ManifestError",
    "ResolutionError",
    "FreezeError",
    "StaleSourceError",
    "NativeBuildError",
    "OptimizationError",
    "AbiError",
    "CacheError",
]
