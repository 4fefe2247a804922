"""
vm_wasm.cli.cache — build cache subcommands.

  vm-wasm cache info     location, entry/object counts and size on disk
  vm-wasm cache clear    delete every entry and object
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer

from ..cache import BuildCache
from ..config import load_config
from ..errors import CacheError, ConfigError

app = typer.Typer(help="Inspect or clear the build cache")


def _cache(cache_dir: Optional[Path]) -> BuildCache:
    if cache_dir is not None:
        return BuildCache(cache_dir)
    try:
        return BuildCache(load_config().cache_dir)
    except ConfigError as exc:
        typer.echo(f"error: {exc.message}", err=True)
        raise typer.Exit(1)


@app.command("info")
def info(
    cache_dir: Optional[Path] = typer.Option(None, "--cache-dir", help="Cache root (default: VM_WASM_CACHE_DIR or XDG cache)"),
    json_output: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """Show where the cache lives and how much it holds."""
    stats = _cache(cache_dir).stats()
    if json_output:
        typer.echo(json.dumps(stats, indent=2))
        return
    typer.echo(f"root:    {stats['root']}")
    typer.echo(f"entries: {stats['entries']}")
    typer.echo(f"objects: {stats['objects']}")
    typer.echo(f"bytes:   {stats['bytes']}")


@app.command("clear")
def clear(
    cache_dir: Optional[Path] = typer.Option(None, "--cache-dir", help="Cache root (default: VM_WASM_CACHE_DIR or XDG cache)"),
) -> None:
    """Remove every cached build."""
    try:
        removed = _cache(cache_dir).clear()
    except CacheError as exc:
        typer.echo(f"error: {exc.message}", err=True)
        raise typer.Exit(1)
    typer.echo(f"removed {removed} file(s)")
