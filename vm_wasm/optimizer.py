"""
optimizer.py — post-link passes over the raw WASM produced by the native build.

Modes
-----
  size   strip every custom section and drop empty vector sections, then
         (if configured) run `wasm-opt -Oz`; the smaller result wins.
  speed  strip debug-only custom sections, keep `name`; optionally `wasm-opt -O3`.
  debug  validate only; nothing is removed.

Every result ends with a `vm-wasm.opt` custom section holding the mode, the
pass-set version and the sha3-256 of the bytes before it. Feeding an output
back in with the same mode returns it unchanged, which is what makes
optimize(optimize(x, m), m) == optimize(x, m) hold even when wasm-opt itself is
not idempotent.

Any structural problem raises OptimizationError; the raw binary is never
returned in place of a failed optimization.
"""

from __future__ import annotations

import json
import subprocess
import tempfile
from pathlib import Path
from typing import List, Optional, Union

from .errors import OptimizationError
from .logging import get_logger
from .manifest import OptimizeMode
from .utils import canonical_json_bytes, sha3_256_hex
from .wasm import VECTOR_SECTIONS, Section, WasmFormatError, WasmModule, parse_module

log = get_logger(__name__)

MARKER_SECTION = "vm-wasm.opt"
PASS_SET_VERSION = 1
DEFAULT_WASM_OPT_TIMEOUT = 300.0

_DEBUG_ONLY = ("sourceMappingURL", "external_debug_info")

_WASM_OPT_FLAGS = {
    OptimizeMode.SIZE: ["-Oz", "--strip-debug", "--strip-producers"],
    OptimizeMode.SPEED: ["-O3", "--debuginfo", "--strip-dwarf"],
}


def is_debug_section(name: Optional[str]) -> bool:
    return name is not None and (name.startswith(".debug_") or name in _DEBUG_ONLY)


def _marker(module: WasmModule, mode: OptimizeMode) -> Section:
    body = canonical_json_bytes(
        {"mode": mode.value, "passes": PASS_SET_VERSION, "digest": sha3_256_hex(module.to_bytes())}
    )
    return Section.custom(MARKER_SECTION, body)


def read_marker(module: WasmModule) -> Optional[dict]:
    """Return the marker of an optimizer output, None if absent or not matching the bytes."""
    if not module.sections:
        return None
    last = module.sections[-1]
    if last.name != MARKER_SECTION:
        return None
    try:
        info = json.loads(last.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(info, dict):
        return None
    head = WasmModule(module.sections[:-1])
    if info.get("digest") != sha3_256_hex(head.to_bytes()) or info.get("passes") != PASS_SET_VERSION:
        return None
    return info


def _strip_markers(module: WasmModule) -> WasmModule:
    return module.filtered(lambda s: s.name != MARKER_SECTION)


def _strip_for_size(module: WasmModule) -> WasmModule:
    def keep(sec: Section) -> bool:
        if sec.is_custom:
            return False
        return not (sec.id in VECTOR_SECTIONS and sec.count() == 0)

    return module.filtered(keep)


def _strip_for_speed(module: WasmModule) -> WasmModule:
    return module.filtered(lambda s: not is_debug_section(s.name))


def run_wasm_opt(
    wasm_opt: str,
    data: bytes,
    args: List[str],
    *,
    timeout: float = DEFAULT_WASM_OPT_TIMEOUT,
) -> bytes:
    """Run wasm-opt on `data` through temp files and return its output."""
    with tempfile.TemporaryDirectory(prefix="vm-wasm-opt-") as tmp:
        src = Path(tmp) / "in.wasm"
        dst = Path(tmp) / "out.wasm"
        src.write_bytes(data)
        argv = [wasm_opt, str(src), *args, "-o", str(dst)]
        try:
            res = subprocess.run(argv, capture_output=True, text=True, timeout=timeout, check=False)
        except FileNotFoundError as exc:
            raise OptimizationError(f"wasm-opt not found: {wasm_opt}", command=argv) from exc
        except subprocess.TimeoutExpired as exc:
            raise OptimizationError(f"wasm-opt timed out after {timeout}s", command=argv) from exc
        if res.returncode != 0:
            raise OptimizationError(
                f"wasm-opt exited with {res.returncode}", command=argv, stderr=res.stderr[-4000:]
            )
        if not dst.is_file():
            raise OptimizationError("wasm-opt produced no output", command=argv)
        return dst.read_bytes()


def optimize(
    raw: bytes,
    mode: Union[OptimizeMode, str],
    *,
    wasm_opt: Optional[str] = None,
    timeout: float = DEFAULT_WASM_OPT_TIMEOUT,
) -> bytes:
    """
    Apply the `mode` pass set to a WASM binary.

    Parameters
    ----------
    raw : bytes
        Output of the native build (or of a previous `optimize` call).
    mode : OptimizeMode | str
        size | speed | debug.
    wasm_opt : str | None
        Path of a Binaryen `wasm-opt` executable; None runs the built-in passes only.
    """
    mode = OptimizeMode(mode)
    try:
        module = parse_module(raw)
    except WasmFormatError as exc:
        raise OptimizationError(f"input is not a valid wasm module: {exc}", mode=mode.value) from exc

    marker = read_marker(module)
    if marker is not None and marker.get("mode") == mode.value:
        log.debug("input already optimized", extra={"mode": mode.value})
        return bytes(raw)

    module = _strip_markers(module)
    if mode is OptimizeMode.SIZE:
        module = _strip_for_size(module)
    elif mode is OptimizeMode.SPEED:
        module = _strip_for_speed(module)

    if wasm_opt and mode in _WASM_OPT_FLAGS:
        candidate = run_wasm_opt(wasm_opt, module.to_bytes(), _WASM_OPT_FLAGS[mode], timeout=timeout)
        try:
            opt_module = _strip_markers(parse_module(candidate))
        except WasmFormatError as exc:
            raise OptimizationError(f"wasm-opt produced an invalid module: {exc}", mode=mode.value) from exc
        if mode is OptimizeMode.SIZE:
            opt_module = _strip_for_size(opt_module)
            if len(opt_module.to_bytes()) < len(module.to_bytes()):
                module = opt_module
        else:
            module = opt_module

    out = module.appended(_marker(module, mode)).to_bytes()
    log.info(
        "optimized module",
        extra={"mode": mode.value, "bytes_in": len(raw), "bytes_out": len(out), "wasm_opt": bool(wasm_opt)},
    )
    return out


__all__ = [
    "MARKER_SECTION",
    "PASS_SET_VERSION",
    "optimize",
    "read_marker",
    "run_wasm_opt",
    "is_debug_section",
]
