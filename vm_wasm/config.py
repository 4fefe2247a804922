"""
vm_wasm.config — toolchain location, cache placement, timeouts and optimizer knobs.

Configuration precedence:
  1) Explicit overrides passed to `load_config(**overrides)`
  2) Environment variables (VM_WASM_*)
  3) Hardcoded defaults below

Key env vars (case-insensitive where boolean):
  - VM_WASM_TOOLCHAIN          (cmd)    default: mpy-wasm-build
  - VM_WASM_TOOLCHAIN_VERSION  (str)    default: queried via `<toolchain> --version`
  - VM_WASM_BUILD_TIMEOUT      (float)  default: 600 seconds
  - VM_WASM_CACHE_DIR          (path)   default: $XDG_CACHE_HOME/vm-wasm (or ~/.cache/vm-wasm)
  - VM_WASM_NO_CACHE           (bool)   default: false
  - VM_WASM_WASM_OPT           (path)   default: first wasm-opt on PATH; "off" disables
  - VM_WASM_BASE_LIBRARY       (path)   default: packaged vm_wasm/baselib
  - VM_WASM_BUILTIN_MODULES    (csv)    extra module names provided by the interpreter

Usage:
    from vm_wasm.config import load_config
    cfg = load_config()
    if cfg.cache_enabled: ...
"""

from __future__ import annotations

import os
import shlex
import shutil
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from .errors import ConfigError


PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_BASE_LIBRARY = PACKAGE_DIR / "baselib"
DEFAULT_TOOLCHAIN = "mpy-wasm-build"
DEFAULT_BUILD_TIMEOUT = 600.0

# Modules compiled into the embedded interpreter itself (MicroPython port
# defaults plus their u-prefixed aliases). Imports of these are satisfied by
# the target and never frozen.
DEFAULT_BUILTIN_MODULES: FrozenSet[str] = frozenset(
    {
        "__future__",
        "array",
        "binascii",
        "builtins",
        "cmath",
        "collections",
        "errno",
        "gc",
        "hashlib",
        "heapq",
        "io",
        "json",
        "math",
        "micropython",
        "random",
        "re",
        "struct",
        "sys",
        "time",
        "uctypes",
        "zlib",
        "ubinascii",
        "ucollections",
        "uhashlib",
        "uheapq",
        "uio",
        "ujson",
        "ure",
        "ustruct",
        "utime",
    }
)

# ----------------------------- helpers ---------------------------------------

_FALSY = frozenset({"0", "false", "no", "off", "none"})


def _parse_bool(v: str) -> bool:
    return v.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    return _parse_bool(raw) if raw is not None else default


def _env_float(env: Mapping[str, str], name: str, default: float, *, min_v: float, max_v: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        v = float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}", variable=name) from e
    return min(max(v, min_v), max_v)


def _env_path(env: Mapping[str, str], name: str) -> Optional[Path]:
    raw = env.get(name)
    if not raw:
        return None
    return Path(raw).expanduser().resolve()


def _split_list(v: str) -> Tuple[str, ...]:
    return tuple(s.strip() for s in v.split(",") if s.strip())


def default_cache_dir(env: Mapping[str, str] = os.environ) -> Path:
    xdg = env.get("XDG_CACHE_HOME", "")
    base = Path(xdg) if xdg else Path.home() / ".cache"
    return (base / "vm-wasm").expanduser()


def _resolve_wasm_opt(raw: Optional[str], env: Mapping[str, str]) -> Optional[str]:
    """Explicit path, `off`, or (unset / `auto`) the first wasm-opt on PATH."""
    value = (raw or "").strip()
    if value.lower() in _FALSY:
        return None
    if not value or value.lower() == "auto":
        return shutil.which("wasm-opt", path=env.get("PATH", ""))
    return value


# ------------------------------- config --------------------------------------


@dataclass(frozen=True)
class CompilerConfig:
    toolchain_command: Tuple[str, ...] = (DEFAULT_TOOLCHAIN,)
    toolchain_version: Optional[str] = None
    build_timeout: float = DEFAULT_BUILD_TIMEOUT
    cache_dir: Path = field(default_factory=default_cache_dir)
    cache_enabled: bool = True
    wasm_opt: Optional[str] = None
    base_library_dir: Path = DEFAULT_BASE_LIBRARY
    builtin_modules: FrozenSet[str] = DEFAULT_BUILTIN_MODULES

    def with_overrides(self, **overrides: Any) -> "CompilerConfig":
        return replace(self, **overrides)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "toolchain_command": list(self.toolchain_command),
            "toolchain_version": self.toolchain_version,
            "build_timeout": self.build_timeout,
            "cache_dir": str(self.cache_dir),
            "cache_enabled": self.cache_enabled,
            "wasm_opt": self.wasm_opt,
            "base_library_dir": str(self.base_library_dir),
            "builtin_modules": sorted(self.builtin_modules),
        }


def load_config(env: Optional[Mapping[str, str]] = None, **overrides: Any) -> CompilerConfig:
    """
    Build a CompilerConfig from environment + defaults, then apply overrides.
    """
    env = os.environ if env is None else env

    toolchain_raw = env.get("VM_WASM_TOOLCHAIN")
    command = tuple(shlex.split(toolchain_raw)) if toolchain_raw else (DEFAULT_TOOLCHAIN,)
    if not command:
        raise ConfigError("VM_WASM_TOOLCHAIN is empty", variable="VM_WASM_TOOLCHAIN")

    builtins = DEFAULT_BUILTIN_MODULES
    extra = env.get("VM_WASM_BUILTIN_MODULES")
    if extra:
        builtins = builtins | frozenset(_split_list(extra))

    cfg = CompilerConfig(
        toolchain_command=command,
        toolchain_version=env.get("VM_WASM_TOOLCHAIN_VERSION") or None,
        build_timeout=_env_float(env, "VM_WASM_BUILD_TIMEOUT", DEFAULT_BUILD_TIMEOUT, min_v=1.0, max_v=86_400.0),
        cache_dir=_env_path(env, "VM_WASM_CACHE_DIR") or default_cache_dir(env),
        cache_enabled=not _env_bool(env, "VM_WASM_NO_CACHE", False),
        wasm_opt=_resolve_wasm_opt(env.get("VM_WASM_WASM_OPT"), env),
        base_library_dir=_env_path(env, "VM_WASM_BASE_LIBRARY") or DEFAULT_BASE_LIBRARY,
        builtin_modules=builtins,
    )
    return cfg.with_overrides(**overrides) if overrides else cfg


__all__ = ["CompilerConfig", "load_config", "default_cache_dir", "DEFAULT_BUILTIN_MODULES"]
