"""
vm_wasm.manifest — the project manifest (what to build, how to build it).

A manifest is a small declarative file. TOML is the primary format
(`vm-wasm.toml`, or the `[tool.vm-wasm]` table of a `pyproject.toml`); YAML
and JSON are accepted with the same keys:

    entry = "contract.py"              # required
    sources = ["."]                    # local source roots (default: entry dir)
    packages = [".venv/site-packages"] # external package roots (default: none)
    exclude = ["numpy"]                # root package names never frozen
    optimize = "size"                  # size | speed | debug
    output = "build/contract.wasm"     # default: build/<entry stem>.wasm
    include-debug-info = false

    [pin]
    near-sdk = ">=0.4,<0.5"

Relative paths resolve against the manifest's directory. The loaded
`ProjectManifest` is immutable; validation failures raise `ManifestError`.
"""

from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple, Union

import yaml
from packaging.specifiers import InvalidSpecifier, SpecifierSet

from .errors import ManifestError

DEFAULT_MANIFEST_NAMES = ("vm-wasm.toml", "pyproject.toml", "vm-wasm.yaml", "vm-wasm.yml", "vm-wasm.json")
PYPROJECT_TABLE = "vm-wasm"


class OptimizeMode(str, Enum):
    SIZE = "size"
    SPEED = "speed"
    DEBUG = "debug"


_KNOWN_KEYS = frozenset(
    {"entry", "sources", "packages", "exclude", "optimize", "output", "pin", "include-debug-info"}
)


@dataclass(frozen=True)
class ProjectManifest:
    root: Path
    entry: Path
    sources: Tuple[Path, ...]
    packages: Tuple[Path, ...] = ()
    exclude: FrozenSet[str] = frozenset()
    optimize: OptimizeMode = OptimizeMode.SIZE
    output: Optional[Path] = None
    pins: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    include_debug_info: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.pins, MappingProxyType):
            object.__setattr__(self, "pins", MappingProxyType(dict(self.pins)))

    @property
    def output_path(self) -> Path:
        return self.output if self.output is not None else self.root / "build" / f"{self.entry.stem}.wasm"

    @property
    def abi_path(self) -> Path:
        out = self.output_path
        return out.with_name(f"{out.stem}.abi.json")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, root: Union[str, Path]) -> "ProjectManifest":
        """Validate a raw key/value mapping and build a manifest rooted at `root`."""
        if not isinstance(data, Mapping):
            raise ManifestError("manifest must be a table/object", got=type(data).__name__)
        root = Path(root).expanduser().resolve()

        unknown = sorted(set(data) - _KNOWN_KEYS)
        if unknown:
            raise ManifestError(f"unknown manifest key(s): {', '.join(unknown)}", keys=unknown)

        entry_raw = data.get("entry")
        if not isinstance(entry_raw, str) or not entry_raw.strip():
            raise ManifestError("'entry' must be a non-empty path string")
        entry = _abspath(root, entry_raw)
        if entry.suffix != ".py":
            raise ManifestError("'entry' must point at a .py file", entry=str(entry))
        if not entry.is_file():
            raise ManifestError(f"entry file not found: {entry}", entry=str(entry))

        sources = tuple(_abspath(root, s) for s in _str_list(data, "sources"))
        if not sources:
            sources = (entry.parent,)
        for src in sources:
            if not src.is_dir():
                raise ManifestError(f"source root is not a directory: {src}", path=str(src))
        packages = tuple(_abspath(root, p) for p in _str_list(data, "packages"))
        for pkg in packages:
            if not pkg.is_dir():
                raise ManifestError(f"package root is not a directory: {pkg}", path=str(pkg))

        exclude = frozenset(_str_list(data, "exclude"))
        for name in exclude:
            if not name.isidentifier():
                raise ManifestError(f"excluded package name is not an identifier: {name!r}", name=name)

        optimize_raw = data.get("optimize", OptimizeMode.SIZE.value)
        try:
            optimize = OptimizeMode(optimize_raw)
        except ValueError:
            raise ManifestError(
                f"'optimize' must be one of size|speed|debug, got {optimize_raw!r}", optimize=optimize_raw
            ) from None

        output_raw = data.get("output")
        if output_raw is not None and (not isinstance(output_raw, str) or not output_raw.strip()):
            raise ManifestError("'output' must be a path string")
        output = _abspath(root, output_raw) if output_raw else None

        debug_info = data.get("include-debug-info", False)
        if not isinstance(debug_info, bool):
            raise ManifestError("'include-debug-info' must be a boolean", got=repr(debug_info))

        return cls(
            root=root,
            entry=entry,
            sources=sources,
            packages=packages,
            exclude=exclude,
            optimize=optimize,
            output=output,
            pins=_pins(data.get("pin")),
            include_debug_info=debug_info,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root": str(self.root),
            "entry": str(self.entry),
            "sources": [str(s) for s in self.sources],
            "packages": [str(p) for p in self.packages],
            "exclude": sorted(self.exclude),
            "optimize": self.optimize.value,
            "output": str(self.output_path),
            "pin": dict(sorted(self.pins.items())),
            "include-debug-info": self.include_debug_info,
        }


# ------------------------------ loading --------------------------------------


def load_manifest(path: Union[str, Path]) -> ProjectManifest:
    """
    Load a manifest file. A directory is searched for the default file names.
    """
    p = Path(path).expanduser().resolve()
    if p.is_dir():
        p = find_manifest(p)
    if not p.is_file():
        raise ManifestError(f"manifest not found: {p}", path=str(p))
    return ProjectManifest.from_mapping(read_manifest_data(p), root=p.parent)


def find_manifest(directory: Path) -> Path:
    for name in DEFAULT_MANIFEST_NAMES:
        cand = directory / name
        if not cand.is_file():
            continue
        if name == "pyproject.toml" and PYPROJECT_TABLE not in _load_toml(cand).get("tool", {}):
            continue
        return cand
    raise ManifestError(f"no manifest found in {directory}", path=str(directory), tried=list(DEFAULT_MANIFEST_NAMES))


def read_manifest_data(path: Path) -> Dict[str, Any]:
    suffix = path.suffix.lower()
    if suffix == ".toml":
        data = _load_toml(path)
        if path.name == "pyproject.toml":
            table = data.get("tool", {}).get(PYPROJECT_TABLE)
            if table is None:
                raise ManifestError(f"{path} has no [tool.{PYPROJECT_TABLE}] table", path=str(path))
            return table
        return data
    if suffix in (".yaml", ".yml"):
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise ManifestError(f"invalid YAML in {path}: {exc}", path=str(path)) from exc
        return data if data is not None else {}
    if suffix == ".json":
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ManifestError(f"invalid JSON in {path}: {exc}", path=str(path)) from exc
    raise ManifestError(f"unsupported manifest format: {path.name}", path=str(path))


def _load_toml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("rb") as fh:
            return tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        raise ManifestError(f"invalid TOML in {path}: {exc}", path=str(path)) from exc


# ------------------------------ helpers --------------------------------------


def _abspath(root: Path, raw: str) -> Path:
    p = Path(raw).expanduser()
    return (p if p.is_absolute() else root / p).resolve()


def _str_list(data: Mapping[str, Any], key: str) -> Tuple[str, ...]:
    raw = data.get(key, [])
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, (list, tuple)) or not all(isinstance(x, str) and x.strip() for x in raw):
        raise ManifestError(f"'{key}' must be a list of non-empty strings", key=key)
    return tuple(x.strip() for x in raw)


def _pins(raw: Any) -> Dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ManifestError("'pin' must be a table of name = constraint")
    pins: Dict[str, str] = {}
    for name, constraint in raw.items():
        if not isinstance(constraint, str):
            raise ManifestError(f"pin for {name!r} must be a string constraint", name=name)
        constraint = constraint.strip()
        if constraint[:1].isdigit():
            # bare version means exact pin
            constraint = f"=={constraint}"
        try:
            SpecifierSet(constraint)
        except InvalidSpecifier as exc:
            raise ManifestError(f"invalid version constraint for {name!r}: {constraint!r}", name=name) from exc
        pins[str(name)] = constraint
    return pins


__all__ = [
    "OptimizeMode",
    "ProjectManifest",
    "load_manifest",
    "find_manifest",
    "read_manifest_data",
    "DEFAULT_MANIFEST_NAMES",
]
