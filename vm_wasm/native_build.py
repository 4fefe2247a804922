"""
native_build.py — drive the external toolchain that links frozen modules and
the embedded interpreter into one WASM binary.

Calling contract (protocol 1). For each build a fresh temporary workspace is
laid out as

    <ws>/frozen/<module path>.py   base library first, then the contract modules
    <ws>/frozen.cbor               the exact FrozenManifest bytes
    <ws>/manifest.py               one freeze(...) call per module

and the toolchain is invoked as

    <command...> build --protocol 1 --manifest <ws>/manifest.py
        --frozen-dir <ws>/frozen --entry <entry module>
        --opt <size|speed|debug> --output <ws>/out/contract.wasm [--debug-info]

The child runs in its own session so a timeout can kill the whole process
group. The workspace is removed on every exit path. Failures are never retried
here.
"""

from __future__ import annotations

import os
import signal
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

from .config import DEFAULT_BUILD_TIMEOUT
from .errors import NativeBuildError
from .freezer import FrozenManifest, FrozenModule
from .logging import get_logger
from .manifest import OptimizeMode
from .toolchain import PROTOCOL_VERSION, Toolchain
from .wasm import looks_like_wasm

log = get_logger(__name__)

_STDERR_TAIL = 16_000


@dataclass(frozen=True)
class BuildFlags:
    optimize: OptimizeMode = OptimizeMode.SIZE
    include_debug_info: bool = False
    wasm_opt: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "optimize": self.optimize.value,
            "include_debug_info": self.include_debug_info,
            "wasm_opt": self.wasm_opt,
        }


def write_workspace(ws: Path, frozen: FrozenManifest) -> Path:
    """Lay out the frozen modules under `ws` and return the manifest.py path."""
    frozen_dir = ws / "frozen"
    lines = [
        "# generated by vm-wasm; one entry per frozen module",
        f"# entry: {frozen.entry}",
        f"# base: {frozen.base.name} {frozen.base.version}",
    ]
    modules: List[FrozenModule] = list(frozen.base.modules) + list(frozen.modules)
    for mod in modules:
        target = frozen_dir / mod.relpath
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(mod.content)
        lines.append(f"freeze({str(frozen_dir)!r}, {mod.relpath!r})")
    (ws / "frozen.cbor").write_bytes(frozen.to_bytes())
    manifest_py = ws / "manifest.py"
    manifest_py.write_text("\n".join(lines) + "\n", encoding="utf-8")
    (ws / "out").mkdir(exist_ok=True)
    return manifest_py


class NativeBuildDriver:
    """Runs the toolchain once per `build` call in an isolated workspace."""

    def __init__(self, toolchain: Toolchain, timeout: float = DEFAULT_BUILD_TIMEOUT):
        self.toolchain = toolchain
        self.timeout = timeout

    def command(self, ws: Path, frozen: FrozenManifest, flags: BuildFlags) -> List[str]:
        argv = [
            *self.toolchain.command,
            "build",
            "--protocol",
            str(PROTOCOL_VERSION),
            "--manifest",
            str(ws / "manifest.py"),
            "--frozen-dir",
            str(ws / "frozen"),
            "--entry",
            frozen.entry,
            "--opt",
            flags.optimize.value,
            "--output",
            str(ws / "out" / "contract.wasm"),
        ]
        if flags.include_debug_info:
            argv.append("--debug-info")
        return argv

    def build(self, frozen: FrozenManifest, flags: BuildFlags) -> bytes:
        with tempfile.TemporaryDirectory(prefix="vm-wasm-build-") as tmp:
            ws = Path(tmp)
            write_workspace(ws, frozen)
            argv = self.command(ws, frozen, flags)
            started = time.monotonic()
            stdout, stderr, code = self._run(argv, cwd=ws)
            elapsed = time.monotonic() - started
            if stdout.strip():
                log.debug("toolchain output", extra={"stdout": stdout[-_STDERR_TAIL:]})
            if code != 0:
                raise NativeBuildError(
                    f"toolchain exited with status {code}",
                    stderr=stderr[-_STDERR_TAIL:],
                    returncode=code,
                    command=argv,
                )

            out = ws / "out" / "contract.wasm"
            if not out.is_file():
                raise NativeBuildError(
                    "toolchain exited successfully but wrote no output", stderr=stderr[-_STDERR_TAIL:], command=argv
                )
            data = out.read_bytes()
            if not data:
                raise NativeBuildError("toolchain wrote an empty output file", stderr=stderr[-_STDERR_TAIL:])
            if not looks_like_wasm(data):
                raise NativeBuildError(
                    "toolchain output is not a wasm module", stderr=stderr[-_STDERR_TAIL:], head=data[:8]
                )
            log.info("native build finished", extra={"bytes": len(data), "seconds": round(elapsed, 3)})
            return data

    def _run(self, argv: List[str], *, cwd: Path) -> tuple[str, str, int]:
        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(cwd),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise NativeBuildError(
                f"toolchain executable not found: {argv[0]}; check the toolchain installation", command=argv
            ) from exc
        except PermissionError as exc:
            raise NativeBuildError(f"toolchain executable not runnable: {argv[0]}", command=argv) from exc

        try:
            stdout, stderr = proc.communicate(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            _kill_group(proc)
            stdout, stderr = proc.communicate()
            raise NativeBuildError(
                f"toolchain timed out after {self.timeout:g}s",
                stderr=(stderr or "")[-_STDERR_TAIL:],
                timeout=self.timeout,
                command=argv,
            ) from None
        except BaseException:
            _kill_group(proc)
            proc.wait()
            raise
        return stdout or "", stderr or "", proc.returncode


def _kill_group(proc: subprocess.Popen) -> None:
    if proc.poll() is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except OSError:
        proc.kill()


__all__ = ["BuildFlags", "NativeBuildDriver", "write_workspace"]
