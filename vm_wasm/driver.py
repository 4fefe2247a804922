"""
driver.py — one compile of a contract project, as a small state machine.

    init → resolved → frozen → built → optimized → abi_extracted → done
      ╲________________________________________________________╱
                               failed

After `resolved` the ABI branch runs on a worker thread while freeze → build
→ optimize run on the calling thread. Both branches are always joined before
the build reports success or failure, so problems from both are collected in
one BuildResult. Output files are written (atomically) only when everything
succeeded; a failed build leaves previous outputs untouched.

`progress(stage, status)` is invoked once per transition with status
`ok`, `cache-hit`, `cache-miss` or `failed`.
"""

from __future__ import annotations

import contextvars
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from . import logging as clog
from .abi import AbiDescriptor, extract_abi
from .cache import BuildCache
from .config import CompilerConfig, load_config
from .diagnostics import Diagnostic, Stage, error, warning
from .errors import AbiError, CompilerError, ConfigError, ErrorCode, ManifestError
from .freezer import FrozenManifest, freeze
from .manifest import OptimizeMode, ProjectManifest, load_manifest
from .native_build import BuildFlags, NativeBuildDriver
from .optimizer import PASS_SET_VERSION, optimize
from .resolver import DependencyGraph, resolve
from .toolchain import Toolchain
from .utils import atomic_write_group

log = clog.get_logger(__name__)

ProgressCallback = Callable[[str, str], None]
ManifestLike = Union[ProjectManifest, str, Path, Mapping[str, Any], None]

STATUS_OK = "ok"
STATUS_CACHE_HIT = "cache-hit"
STATUS_CACHE_MISS = "cache-miss"
STATUS_FAILED = "failed"


class BuildState(str, Enum):
    INIT = "init"
    RESOLVED = "resolved"
    FROZEN = "frozen"
    BUILT = "built"
    OPTIMIZED = "optimized"
    ABI_EXTRACTED = "abi_extracted"
    DONE = "done"
    FAILED = "failed"


# Pipeline position of each stage; the earliest failing stage is reported.
_STAGE_ORDER = [s.value for s in (Stage.CONFIG, Stage.MANIFEST, Stage.RESOLVE, Stage.FREEZE, Stage.BUILD, Stage.OPTIMIZE, Stage.ABI, Stage.CACHE, Stage.OUTPUT)]


@dataclass
class BuildResult:
    ok: bool
    state: BuildState
    wasm_path: Optional[Path] = None
    abi_path: Optional[Path] = None
    diagnostics: List[Diagnostic] = field(default_factory=list)
    cache_hit: bool = False
    failed_stage: Optional[str] = None
    cache_key: Optional[str] = None
    abi: Optional[AbiDescriptor] = None
    wasm_size: Optional[int] = None
    trace_id: Optional[str] = None

    @property
    def errors(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.is_error]

    @property
    def warnings(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if not d.is_error]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "state": self.state.value,
            "wasm_path": str(self.wasm_path) if self.wasm_path else None,
            "abi_path": str(self.abi_path) if self.abi_path else None,
            "wasm_size": self.wasm_size,
            "cache_hit": self.cache_hit,
            "cache_key": self.cache_key,
            "failed_stage": self.failed_stage,
            "trace_id": self.trace_id,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


class _Failed(Exception):
    """Internal: a stage failed and its diagnostics are already recorded."""


class _Pipeline:
    def __init__(
        self,
        manifest: ProjectManifest,
        cfg: CompilerConfig,
        toolchain: Toolchain,
        progress: Optional[ProgressCallback],
        use_cache: bool,
    ):
        self.manifest = manifest
        self.cfg = cfg
        self.toolchain = toolchain
        self.progress = progress
        self.use_cache = use_cache
        self.state = BuildState.INIT
        self.diagnostics: List[Diagnostic] = []
        self.failed: List[str] = []
        self.cache_hit = False
        self.cache_key: Optional[str] = None

    # -- bookkeeping --

    def _emit(self, stage: str, status: str) -> None:
        if self.progress is not None:
            self.progress(stage, status)

    def advance(self, state: BuildState, stage: Stage, status: str = STATUS_OK) -> None:
        log.debug("state transition", extra={"from": self.state.value, "to": state.value})
        self.state = state
        self._emit(stage.value, status)

    def fail(self, stage: str, exc: CompilerError) -> None:
        self.diagnostics.extend(exc.as_diagnostics())
        self.failed.append(stage)
        self._emit(stage, STATUS_FAILED)
        log.warning("stage failed", extra={"failed": stage, "code": exc.to_dict()["code"], "reason": exc.message})

    def first_failure(self) -> Optional[str]:
        if not self.failed:
            return None
        return min(self.failed, key=lambda s: _STAGE_ORDER.index(s) if s in _STAGE_ORDER else len(_STAGE_ORDER))

    # -- stages --

    def run_resolve(self) -> DependencyGraph:
        clog.bind(stage=Stage.RESOLVE.value)
        try:
            res = resolve(self.manifest, self.toolchain)
        except CompilerError as exc:
            self.fail(Stage.RESOLVE.value, exc)
            raise _Failed() from exc
        self.diagnostics.extend(res.diagnostics)
        self.advance(BuildState.RESOLVED, Stage.RESOLVE)
        return res.graph

    def run_main_branch(self, graph: DependencyGraph) -> Optional[Tuple[FrozenManifest, bytes]]:
        """freeze → build → optimize; returns (frozen, optimized bytes) or None on failure."""
        stage = Stage.FREEZE
        try:
            clog.bind(stage=stage.value)
            frozen = freeze(graph, self.toolchain.base_library)
            self.advance(BuildState.FROZEN, Stage.FREEZE)

            stage = Stage.BUILD
            clog.bind(stage=stage.value)
            flags = BuildFlags(
                optimize=self.manifest.optimize,
                include_debug_info=self.manifest.include_debug_info,
                wasm_opt=bool(self.toolchain.wasm_opt),
            )
            key_flags = {**flags.to_dict(), "passes": PASS_SET_VERSION}
            if flags.optimize is not OptimizeMode.DEBUG and not self.toolchain.wasm_opt:
                self.diagnostics.append(
                    warning(
                        Stage.OPTIMIZE,
                        f"wasm-opt not found; '{flags.optimize.value}' only strips sections "
                        "(install binaryen or set VM_WASM_WASM_OPT for code-level passes)",
                    )
                )
            self.cache_key = BuildCache.key(frozen.to_bytes(), key_flags, self.toolchain.identity())

            cache = BuildCache(self.cfg.cache_dir) if self.use_cache else None
            hit = cache.lookup(self.cache_key) if cache is not None else None
            if hit is not None:
                self.cache_hit = True
                log.info("cache hit", extra={"key": self.cache_key})
                self.advance(BuildState.BUILT, Stage.BUILD, STATUS_CACHE_HIT)
                self.advance(BuildState.OPTIMIZED, Stage.OPTIMIZE, STATUS_CACHE_HIT)
                return frozen, hit.optimized

            raw = NativeBuildDriver(self.toolchain, timeout=self.cfg.build_timeout).build(frozen, flags)
            self.advance(BuildState.BUILT, Stage.BUILD, STATUS_CACHE_MISS if cache is not None else STATUS_OK)

            stage = Stage.OPTIMIZE
            clog.bind(stage=stage.value)
            optimized = optimize(raw, self.manifest.optimize, wasm_opt=self.toolchain.wasm_opt)
            self.advance(BuildState.OPTIMIZED, Stage.OPTIMIZE)

            if cache is not None:
                try:
                    cache.ensure().store(self.cache_key, raw, optimized)
                except CompilerError as exc:
                    self.diagnostics.append(warning(Stage.CACHE, f"build not cached: {exc.message}"))
            return frozen, optimized
        except CompilerError as exc:
            self.fail(stage.value, exc)
            return None

    def join_abi(self, fut: "Future[Tuple[AbiDescriptor, List[Diagnostic]]]") -> Optional[AbiDescriptor]:
        try:
            descriptor, diags = fut.result()
        except CompilerError as exc:
            self.fail(Stage.ABI.value, exc)
            return None
        self.diagnostics.extend(diags)
        return descriptor

    def write_outputs(self, wasm: bytes, descriptor: AbiDescriptor) -> Tuple[Path, Path]:
        clog.bind(stage=Stage.OUTPUT.value)
        wasm_path = self.manifest.output_path
        abi_path = self.manifest.abi_path
        try:
            atomic_write_group({wasm_path: wasm, abi_path: descriptor.to_json().encode("utf-8")})
        except OSError as exc:
            err = CompilerError(code=ErrorCode.OUTPUT, message=f"cannot write outputs: {exc}", data={"path": str(wasm_path)})
            self.fail(Stage.OUTPUT.value, err)
            raise _Failed() from exc
        return wasm_path, abi_path


def _coerce_manifest(source_root: Path, manifest: ManifestLike) -> ProjectManifest:
    if isinstance(manifest, ProjectManifest):
        return manifest
    if manifest is None:
        return load_manifest(source_root)
    if isinstance(manifest, Mapping):
        return ProjectManifest.from_mapping(manifest, root=source_root)
    path = Path(manifest)
    return load_manifest(path if path.is_absolute() else source_root / path)


def compile_project(
    source_root: Union[str, Path],
    manifest: ManifestLike = None,
    *,
    progress: Optional[ProgressCallback] = None,
    config: Optional[CompilerConfig] = None,
    use_cache: Optional[bool] = None,
    toolchain: Optional[Toolchain] = None,
) -> BuildResult:
    """
    Compile the contract project at `source_root` into a WASM file plus ABI JSON.

    Parameters
    ----------
    source_root : path
        Project directory; relative manifest paths resolve against it.
    manifest : ProjectManifest | path | mapping | None
        The manifest, a path to one, raw manifest keys, or None to search
        `source_root` for a manifest file.
    progress : callable(stage, status) | None
        Called once per state transition.
    config : CompilerConfig | None
        Defaults to `load_config()` (environment).
    use_cache : bool | None
        Overrides `config.cache_enabled`.
    toolchain : Toolchain | None
        Defaults to the toolchain described by `config`.

    Never raises for build problems; inspect `BuildResult.ok` and
    `BuildResult.diagnostics`.
    """
    root = Path(source_root).expanduser().resolve()

    with clog.trace_scope() as trace_id:
        clog.bind(component="driver")

        def setup_failed(stage: Stage, exc: CompilerError) -> BuildResult:
            if progress is not None:
                progress(stage.value, STATUS_FAILED)
            return BuildResult(
                ok=False,
                state=BuildState.FAILED,
                diagnostics=exc.as_diagnostics(),
                failed_stage=stage.value,
                trace_id=trace_id,
            )

        try:
            cfg = config if config is not None else load_config()
        except ConfigError as exc:
            return setup_failed(Stage.CONFIG, exc)
        try:
            mf = _coerce_manifest(root, manifest)
        except ManifestError as exc:
            return setup_failed(Stage.MANIFEST, exc)

        log.info("build starting", extra={"entry": str(mf.entry), "optimize": mf.optimize.value})
        try:
            tc = toolchain if toolchain is not None else Toolchain.from_config(cfg)
        except CompilerError as exc:
            return setup_failed(Stage.BUILD, exc)

        pipe = _Pipeline(mf, cfg, tc, progress, cfg.cache_enabled if use_cache is None else use_cache)
        result = _run(pipe)
        result.trace_id = trace_id
        log.info(
            "build finished",
            extra={"ok": result.ok, "failed": result.failed_stage, "cache_hit": result.cache_hit},
        )
        return result


def _run(pipe: _Pipeline) -> BuildResult:
    def failed() -> BuildResult:
        pipe.state = BuildState.FAILED
        return BuildResult(
            ok=False,
            state=BuildState.FAILED,
            diagnostics=pipe.diagnostics,
            cache_hit=pipe.cache_hit,
            failed_stage=pipe.first_failure(),
            cache_key=pipe.cache_key,
        )

    try:
        graph = pipe.run_resolve()
    except _Failed:
        return failed()

    ctx = contextvars.copy_context()
    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="vm-wasm-abi") as pool:
        abi_future = pool.submit(ctx.run, _abi_branch, graph)
        try:
            built = pipe.run_main_branch(graph)
        finally:
            descriptor = pipe.join_abi(abi_future)

    if built is None or descriptor is None:
        return failed()

    frozen, wasm = built
    if descriptor.source_digest != frozen.entry_digest:
        pipe.fail(
            Stage.ABI.value,
            AbiError(
                "ABI was derived from a different entry source than the built binary",
                diagnostics=[error(Stage.ABI, "stale ABI: entry digest mismatch", module=frozen.entry)],
                abi=descriptor.source_digest,
                frozen=frozen.entry_digest,
            ),
        )
        return failed()
    pipe.advance(BuildState.ABI_EXTRACTED, Stage.ABI)

    try:
        wasm_path, abi_path = pipe.write_outputs(wasm, descriptor)
    except _Failed:
        return failed()
    pipe.advance(BuildState.DONE, Stage.OUTPUT)

    return BuildResult(
        ok=True,
        state=BuildState.DONE,
        wasm_path=wasm_path,
        abi_path=abi_path,
        diagnostics=pipe.diagnostics,
        cache_hit=pipe.cache_hit,
        cache_key=pipe.cache_key,
        abi=descriptor,
        wasm_size=len(wasm),
    )


def _abi_branch(graph: DependencyGraph) -> Tuple[AbiDescriptor, List[Diagnostic]]:
    clog.bind(stage=Stage.ABI.value)
    return extract_abi(graph.entry_node)


__all__ = [
    "BuildState",
    "BuildResult",
    "ProgressCallback",
    "compile_project",
    "STATUS_OK",
    "STATUS_CACHE_HIT",
    "STATUS_CACHE_MISS",
    "STATUS_FAILED",
]
