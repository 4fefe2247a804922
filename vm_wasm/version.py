"""vm_wasm.version — package version and the format versions that gate artifact reuse.

Two things are versioned here:

- `__version__`: the installed distribution version (falls back to
  BASE_VERSION + '+dev' when running from a source checkout).
- `compatibility()`: the versions that decide whether a cached or previously
  emitted artifact is still valid. A build is reusable only when all of them
  match; bumping any one invalidates old cache entries through the cache key.

    frozen-format       layout of the CBOR frozen manifest
    toolchain-protocol  argv/file contract with the native build tool
    optimizer-passes    pass set applied by the optimizer
"""

from __future__ import annotations

from functools import lru_cache
from importlib import metadata as importlib_metadata
from typing import Dict, Union

BASE_VERSION = "0.3.0"

DIST_NAME = "vm-wasm"


@lru_cache(maxsize=1)
def compute_version() -> str:
    try:
        v = importlib_metadata.version(DIST_NAME)
    except importlib_metadata.PackageNotFoundError:
        return f"{BASE_VERSION}+dev"
    return v or f"{BASE_VERSION}+dev"


def compatibility() -> Dict[str, Union[str, int]]:
    """Versions baked into cache keys and artifacts, keyed by what they govern."""
    # deferred so `import vm_wasm` stays cheap
    from .freezer import FROZEN_FORMAT
    from .optimizer import PASS_SET_VERSION
    from .toolchain import PROTOCOL_VERSION

    return {
        "vm-wasm": __version__,
        "frozen-format": FROZEN_FORMAT,
        "toolchain-protocol": PROTOCOL_VERSION,
        "optimizer-passes": PASS_SET_VERSION,
    }


__version__ = compute_version()

__all__ = ["__version__", "BASE_VERSION", "DIST_NAME", "compute_version", "compatibility"]
