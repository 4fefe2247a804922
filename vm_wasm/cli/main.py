"""
vm-wasm — build Python smart contracts into WASM.

Global options:
  --log-level TEXT   DEBUG | INFO | WARNING | ERROR (env VM_WASM_LOG_LEVEL)
  --log-json         Emit logs as JSON lines on stderr

Exit codes:
  0  success
  1  build failed (see diagnostics)
  2  manifest missing or invalid

Examples:
  vm-wasm build
  vm-wasm build path/to/project --no-cache --json
  vm-wasm abi path/to/project
  vm-wasm deps
  vm-wasm cache info
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Iterable, Optional, Tuple

import typer

from .. import logging as clog
from ..abi import extract_abi_from_source
from ..config import load_config
from ..diagnostics import Diagnostic
from ..driver import compile_project
from ..errors import CompilerError, ManifestError
from ..manifest import ProjectManifest, load_manifest
from ..resolver import DependencyResolver, resolve
from ..toolchain import Toolchain
from ..version import __version__, compatibility
from . import cache

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_MANIFEST = 2

app = typer.Typer(
    name="vm-wasm",
    help="Compile Python smart contracts into WASM binaries with ABI metadata",
    no_args_is_help=True,
    add_completion=False,
)


@app.callback()
def main_callback(
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        help="Minimum log level (DEBUG, INFO, WARNING, ERROR)",
        envvar="VM_WASM_LOG_LEVEL",
    ),
    log_json: Optional[bool] = typer.Option(
        None,
        "--log-json/--log-text",
        help="Force JSON or text log lines (default: auto)",
    ),
) -> None:
    """
    vm-wasm — resolve, freeze, build and optimize a contract, and emit its ABI.

    Configuration comes from VM_WASM_* environment variables (toolchain
    command, cache directory, build timeout, wasm-opt); project settings come
    from the manifest (vm-wasm.toml or [tool.vm-wasm] in pyproject.toml).
    """
    clog.configure(json=log_json, level=log_level)


app.add_typer(cache.app, name="cache")


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------


def _load(project: Path, manifest: Optional[Path]) -> Tuple[Path, ProjectManifest]:
    try:
        if manifest is not None:
            mf = load_manifest(manifest)
        else:
            mf = load_manifest(project)
    except ManifestError as exc:
        typer.echo(f"error: {exc.message}", err=True)
        raise typer.Exit(EXIT_MANIFEST)
    return mf.root, mf


def _echo_diagnostics(diags: Iterable[Diagnostic]) -> None:
    for d in diags:
        typer.echo(str(d), err=True)


_PROJECT_ARG = typer.Argument(Path("."), help="Project directory or manifest file")
_MANIFEST_OPT = typer.Option(None, "--manifest", "-m", help="Explicit manifest file")


# ---------------------------------------------------------------------------
# commands
# ---------------------------------------------------------------------------


@app.command("build")
def build(
    project: Path = _PROJECT_ARG,
    manifest: Optional[Path] = _MANIFEST_OPT,
    no_cache: bool = typer.Option(False, "--no-cache", help="Ignore and do not populate the build cache"),
    json_output: bool = typer.Option(False, "--json", help="Print the build result as JSON"),
) -> None:
    """Compile the project into <output>.wasm and <output>.abi.json."""
    root, mf = _load(project, manifest)

    def progress(stage: str, status: str) -> None:
        if not json_output:
            typer.echo(f"  {stage:<9} {status}")

    result = compile_project(root, mf, progress=progress, use_cache=False if no_cache else None)

    if json_output:
        typer.echo(json.dumps(result.to_dict(), indent=2))
    else:
        _echo_diagnostics(result.diagnostics)
        if result.ok:
            hit = " (cached)" if result.cache_hit else ""
            typer.echo(f"wrote {result.wasm_path} ({result.wasm_size} bytes){hit}")
            typer.echo(f"wrote {result.abi_path}")
        else:
            typer.echo(f"build failed at stage '{result.failed_stage}'", err=True)

    if not result.ok:
        raise typer.Exit(EXIT_MANIFEST if result.failed_stage == "manifest" else EXIT_FAILED)


@app.command("abi")
def abi(
    project: Path = _PROJECT_ARG,
    manifest: Optional[Path] = _MANIFEST_OPT,
) -> None:
    """Print the ABI JSON of the entry module without building."""
    _, mf = _load(project, manifest)
    try:
        module = DependencyResolver(mf).entry_name()
        descriptor, warnings = extract_abi_from_source(mf.entry.read_bytes(), module)
    except CompilerError as exc:
        _echo_diagnostics(exc.as_diagnostics())
        raise typer.Exit(EXIT_FAILED)
    _echo_diagnostics(warnings)
    typer.echo(descriptor.to_json(), nl=False)


@app.command("deps")
def deps(
    project: Path = _PROJECT_ARG,
    manifest: Optional[Path] = _MANIFEST_OPT,
    json_output: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """Print the modules reachable from the entry module, in freeze order."""
    _, mf = _load(project, manifest)
    try:
        toolchain = Toolchain.from_config(load_config())
        res = resolve(mf, toolchain)
    except CompilerError as exc:
        _echo_diagnostics(exc.as_diagnostics())
        raise typer.Exit(EXIT_FAILED)

    _echo_diagnostics(res.diagnostics)
    graph = res.graph
    if json_output:
        payload = {
            "entry": graph.entry,
            "modules": [
                {
                    "name": n.name,
                    "path": str(n.path),
                    "origin": n.origin,
                    "digest": n.digest,
                    "imports": sorted(n.imports),
                }
                for n in graph.ordered()
            ],
            "excluded": sorted(graph.excluded),
            "external": sorted(graph.external),
        }
        typer.echo(json.dumps(payload, indent=2))
        return
    for n in graph.ordered():
        typer.echo(f"{n.index:>3}  {n.name:<32} {n.origin:<8} {n.digest[:12]}")
    if graph.excluded:
        typer.echo(f"excluded: {', '.join(sorted(graph.excluded))}")
    if graph.external:
        typer.echo(f"runtime:  {', '.join(sorted(graph.external))}")


@app.command("version")
def version(
    json_output: bool = typer.Option(False, "--json", help="Print the package and artifact format versions as JSON"),
) -> None:
    """Print the vm-wasm version."""
    if json_output:
        typer.echo(json.dumps(compatibility(), indent=2))
        return
    typer.echo(__version__)


def main() -> None:
    """Entry point for the vm-wasm CLI."""
    app()


if __name__ == "__main__":
    main()
