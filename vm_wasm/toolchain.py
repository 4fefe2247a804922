"""
vm_wasm.toolchain — what the embedded interpreter's build tool provides.

A `Toolchain` bundles:
  • the external build command (argv prefix, e.g. ("mpy-wasm-build",))
  • the calling-contract protocol version the driver speaks
  • the interpreter's builtin modules (imports satisfied without freezing)
  • the versioned base library frozen into every contract
  • an optional `wasm-opt` executable for the optimizer

The base library lives in a directory with a `baselib.toml` descriptor
(`name`, `version`) next to its module sources. Its digest is computed over
module names and contents only, so the same library yields the same digest
wherever it is installed.
"""

from __future__ import annotations

import subprocess
import threading
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, Optional, Tuple

from .config import CompilerConfig
from .errors import NativeBuildError
from .utils import sha3_256_hex

PROTOCOL_VERSION = 1
BASELIB_DESCRIPTOR = "baselib.toml"


@dataclass(frozen=True)
class BaseModule:
    name: str
    relpath: str
    content: bytes
    digest: str


@dataclass(frozen=True)
class BaseLibrary:
    name: str
    version: str
    modules: Tuple[BaseModule, ...]

    @property
    def digest(self) -> str:
        listing = b"".join(f"{m.name}\0{m.digest}\n".encode("utf-8") for m in self.modules)
        return sha3_256_hex(listing)

    @property
    def top_level(self) -> FrozenSet[str]:
        return frozenset(m.name.split(".", 1)[0] for m in self.modules)


def load_base_library(directory: Path) -> BaseLibrary:
    directory = Path(directory)
    descriptor = directory / BASELIB_DESCRIPTOR
    if not descriptor.is_file():
        raise NativeBuildError(
            f"base library descriptor missing: {descriptor}; check the toolchain installation",
            path=str(descriptor),
        )
    try:
        with descriptor.open("rb") as fh:
            meta = tomllib.load(fh)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise NativeBuildError(f"base library descriptor unreadable: {descriptor}: {exc}", path=str(descriptor)) from exc
    name, version = meta.get("name"), meta.get("version")
    if not isinstance(name, str) or not isinstance(version, str):
        raise NativeBuildError(f"{descriptor} must define string 'name' and 'version'", path=str(descriptor))

    modules = []
    for path in sorted(directory.rglob("*.py"), key=lambda p: p.relative_to(directory).as_posix()):
        rel = path.relative_to(directory)
        if "__pycache__" in rel.parts:
            continue
        parts = list(rel.with_suffix("").parts)
        if parts[-1] == "__init__":
            parts.pop()
        try:
            content = path.read_bytes()
        except OSError as exc:
            raise NativeBuildError(f"base library module unreadable: {path}: {exc}", path=str(path)) from exc
        modules.append(BaseModule(".".join(parts), rel.as_posix(), content, sha3_256_hex(content)))
    return BaseLibrary(name=name, version=version, modules=tuple(modules))


@dataclass
class Toolchain:
    command: Tuple[str, ...]
    base_library: BaseLibrary
    builtin_modules: FrozenSet[str]
    wasm_opt: Optional[str] = None
    version_override: Optional[str] = None
    query_timeout: float = 30.0
    _version: Optional[str] = field(default=None, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @classmethod
    def from_config(cls, cfg: CompilerConfig) -> "Toolchain":
        return cls(
            command=tuple(cfg.toolchain_command),
            base_library=load_base_library(cfg.base_library_dir),
            builtin_modules=frozenset(cfg.builtin_modules),
            wasm_opt=cfg.wasm_opt,
            version_override=cfg.toolchain_version,
        )

    def provides(self, root_name: str) -> bool:
        """True if the target runtime supplies this top-level module."""
        return root_name in self.builtin_modules or root_name in self.base_library.top_level

    def version(self) -> str:
        """Version string reported by `<command> --version` (queried once)."""
        if self.version_override:
            return self.version_override
        with self._lock:
            if self._version is None:
                self._version = self._query_version()
            return self._version

    def identity(self) -> str:
        return f"{self.version()}|protocol={PROTOCOL_VERSION}"

    def _query_version(self) -> str:
        argv = [*self.command, "--version"]
        try:
            res = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.query_timeout,
                stdin=subprocess.DEVNULL,
            )
        except FileNotFoundError as exc:
            raise NativeBuildError(
                f"toolchain executable not found: {self.command[0]}; check the toolchain installation",
                command=argv,
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise NativeBuildError("toolchain --version timed out", command=argv) from exc
        if res.returncode != 0:
            raise NativeBuildError(
                f"toolchain --version exited with {res.returncode}",
                stderr=res.stderr,
                command=argv,
                returncode=res.returncode,
            )
        first = (res.stdout.strip().splitlines() or [""])[0].strip()
        if not first:
            raise NativeBuildError("toolchain --version printed nothing", command=argv)
        return first


__all__ = ["PROTOCOL_VERSION", "BaseModule", "BaseLibrary", "load_base_library", "Toolchain"]
