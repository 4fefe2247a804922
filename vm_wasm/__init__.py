"""
vm_wasm — compile a Python smart-contract project into a WASM binary + ABI JSON.

Public façade:

- __version__ / version()
- compile_project(source_root, manifest=None, *, progress=None, config=None, use_cache=None) -> BuildResult
    Resolve, freeze, build, optimize and extract the ABI of one project.
- load_manifest(path) -> ProjectManifest
    Read and validate a project manifest (TOML, YAML or JSON).
- extract_abi_from_source(source, module="contract") -> (AbiDescriptor, warnings)
    Static ABI of a single module's source.

Heavy submodules are imported lazily on first use.
"""

from __future__ import annotations

import importlib
from typing import Any

from .version import __version__

_LAZY = {
    "compile_project": ".driver",
    "BuildResult": ".driver",
    "BuildState": ".driver",
    "load_manifest": ".manifest",
    "ProjectManifest": ".manifest",
    "OptimizeMode": ".manifest",
    "extract_abi_from_source": ".abi",
    "AbiDescriptor": ".abi",
    "load_config": ".config",
    "CompilerConfig": ".config",
    "CompilerError": ".errors",
}


def version() -> str:
    """Return the vm_wasm version string."""
    return __version__


def __getattr__(name: str) -> Any:
    mod = _LAZY.get(name)
    if mod is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    return getattr(importlib.import_module(mod, __name__), name)


__all__ = ["__version__", "version", *sorted(_LAZY)]
