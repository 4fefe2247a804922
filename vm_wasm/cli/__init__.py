"""
vm_wasm.cli
-----------

Command-line entrypoint `vm-wasm` (console script -> vm_wasm.cli.main:main).

  vm-wasm build [PROJECT]      compile a project (WASM + ABI JSON)
  vm-wasm abi [PROJECT]        print the ABI of the entry module
  vm-wasm deps [PROJECT]       print the reachable module graph
  vm-wasm cache info|clear     inspect or empty the build cache
  vm-wasm version
"""

from __future__ import annotations

from .main import app, main

__all__ = ["app", "main"]
