"""
freezer.py — snapshot the reachable module set into a deterministic manifest.

The FrozenManifest is the exact input of a native build and the first part of
the build-cache key, so its byte encoding must depend on module names and
contents only:

  • modules appear in discovery order (entry first)
  • each module carries the sha3-256 of the bytes captured during resolution
  • the base library is referenced by name, version and digest
  • encoding is canonical CBOR; no paths, mtimes or hostnames

Every source file is re-read and re-hashed while freezing. If a file changed
(or disappeared) after resolution the build stops with StaleSourceError
rather than freezing bytes the rest of the pipeline never saw.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterator, Tuple

import cbor2

from .errors import FreezeError, StaleSourceError
from .logging import get_logger
from .resolver import DependencyGraph
from .toolchain import BaseLibrary
from .utils import sha3_256_hex

log = get_logger(__name__)

FROZEN_FORMAT = "vm-wasm/frozen@1"


@dataclass(frozen=True)
class FrozenModule:
    name: str
    digest: str
    content: bytes
    is_package: bool = False

    @property
    def relpath(self) -> str:
        """Path of the module inside a frozen-module directory."""
        parts = self.name.split(".")
        if self.is_package:
            return "/".join(parts + ["__init__.py"])
        return "/".join(parts) + ".py"


@dataclass(frozen=True)
class BaseLibraryRef:
    name: str
    version: str
    digest: str
    modules: Tuple[FrozenModule, ...] = ()

    @classmethod
    def from_library(cls, lib: BaseLibrary) -> "BaseLibraryRef":
        mods = tuple(
            FrozenModule(m.name, m.digest, m.content, m.relpath.endswith("__init__.py")) for m in lib.modules
        )
        return cls(name=lib.name, version=lib.version, digest=lib.digest, modules=mods)


@dataclass(frozen=True)
class FrozenManifest:
    entry: str
    modules: Tuple[FrozenModule, ...]
    base: BaseLibraryRef

    @property
    def entry_module(self) -> FrozenModule:
        for m in self.modules:
            if m.name == self.entry:
                return m
        raise KeyError(self.entry)

    @property
    def entry_digest(self) -> str:
        return self.entry_module.digest

    @property
    def module_names(self) -> FrozenSet[str]:
        return frozenset(m.name for m in self.modules)

    def __iter__(self) -> Iterator[FrozenModule]:
        return iter(self.modules)

    def __len__(self) -> int:
        return len(self.modules)

    def to_obj(self) -> Dict[str, Any]:
        return {
            "format": FROZEN_FORMAT,
            "entry": self.entry,
            "base": {"name": self.base.name, "version": self.base.version, "digest": self.base.digest},
            "modules": [[m.name, m.digest, m.content, m.is_package] for m in self.modules],
        }

    def to_bytes(self) -> bytes:
        # canonical=True fixes map key order and integer widths
        return cbor2.dumps(self.to_obj(), canonical=True)

    def digest(self) -> str:
        return sha3_256_hex(self.to_bytes())


def freeze(graph: DependencyGraph, base_library: BaseLibrary) -> FrozenManifest:
    """
    Capture every reachable module of `graph` together with the base library.

    Raises StaleSourceError if any module's on-disk bytes no longer match the
    digest recorded at resolution time.
    """
    frozen = []
    for node in graph.ordered():
        try:
            current = node.path.read_bytes()
        except FileNotFoundError:
            raise StaleSourceError(node.name, str(node.path), node.digest, None) from None
        except OSError as exc:
            raise FreezeError(f"cannot read {node.path}: {exc.strerror or exc}", module=node.name, path=str(node.path)) from exc
        got = sha3_256_hex(current)
        if got != node.digest:
            raise StaleSourceError(node.name, str(node.path), node.digest, got)
        frozen.append(FrozenModule(node.name, node.digest, current, node.is_package))

    manifest = FrozenManifest(entry=graph.entry, modules=tuple(frozen), base=BaseLibraryRef.from_library(base_library))
    log.info(
        "froze modules",
        extra={"entry": graph.entry, "modules": len(frozen), "base": f"{base_library.name}@{base_library.version}"},
    )
    return manifest


__all__ = ["FROZEN_FORMAT", "FrozenModule", "BaseLibraryRef", "FrozenManifest", "freeze"]
