"""
cache.py — content-addressed store of native build + optimizer outputs.

Layout under the cache root:

    objects/<sha3>.wasm                 immutable blobs, named by their digest
    entries/<key[:2]>/<key>.json        index: key → raw/optimized object digests

A key is sha3-256 over the frozen-manifest bytes, the canonical JSON of the
build flags and the toolchain identity, so it never depends on paths,
hostnames or clocks.

Every file is published with an atomic rename, objects before the index that
references them. Concurrent stores of the same key therefore leave one
complete entry, and a reader never sees a half-written file. `lookup`
re-hashes both objects; anything inconsistent is treated as a miss.
"""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from .errors import CacheError
from .logging import get_logger
from .utils import atomic_write_bytes, canonical_json_bytes, ensure_dir, sha3_256_hex

log = get_logger(__name__)

CACHE_LAYOUT_VERSION = 1
_KEY_RE = re.compile(r"^[0-9a-f]{64}$")


@dataclass(frozen=True)
class CachedArtifact:
    key: str
    raw_digest: str
    optimized_digest: str
    created_at: float
    raw: bytes = field(repr=False, default=b"")
    optimized: bytes = field(repr=False, default=b"")


class BuildCache:
    """Cache rooted at `root`; safe for concurrent use by threads and processes."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).expanduser()

    @property
    def objects_dir(self) -> Path:
        return self.root / "objects"

    @property
    def entries_dir(self) -> Path:
        return self.root / "entries"

    @staticmethod
    def key(frozen_bytes: bytes, flags: Mapping[str, Any], toolchain_version: str) -> str:
        return sha3_256_hex(
            frozen_bytes,
            b"\x00",
            canonical_json_bytes(dict(flags)),
            b"\x00",
            toolchain_version.encode("utf-8"),
        )

    def entry_path(self, key: str) -> Path:
        if not _KEY_RE.match(key):
            raise ValueError(f"malformed cache key: {key!r}")
        return self.entries_dir / key[:2] / f"{key}.json"

    def object_path(self, digest: str) -> Path:
        return self.objects_dir / f"{digest}.wasm"

    # ------------------------------------------------------------------ lookup

    def lookup(self, key: str) -> Optional[CachedArtifact]:
        path = self.entry_path(key)
        try:
            raw_entry = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            log.warning("cache entry unreadable", extra={"key": key, "error": str(exc)})
            return None

        try:
            entry = json.loads(raw_entry)
            if entry.get("version") != CACHE_LAYOUT_VERSION or entry.get("key") != key:
                raise ValueError("entry does not match key/layout")
            raw_digest = str(entry["raw"])
            opt_digest = str(entry["optimized"])
            created_at = float(entry["created_at"])
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            log.warning("corrupt cache entry ignored", extra={"key": key, "error": str(exc)})
            return None

        raw = self._read_object(raw_digest)
        optimized = self._read_object(opt_digest)
        if raw is None or optimized is None:
            log.warning("cache entry references missing or damaged objects", extra={"key": key})
            return None
        return CachedArtifact(key, raw_digest, opt_digest, created_at, raw, optimized)

    def _read_object(self, digest: str) -> Optional[bytes]:
        try:
            data = self.object_path(digest).read_bytes()
        except OSError:
            return None
        return data if sha3_256_hex(data) == digest else None

    # ------------------------------------------------------------------- store

    def store(self, key: str, raw: bytes, optimized: bytes) -> CachedArtifact:
        entry_path = self.entry_path(key)
        try:
            raw_digest = self._put_object(raw)
            opt_digest = self._put_object(optimized)
            created_at = time.time()
            entry = {
                "version": CACHE_LAYOUT_VERSION,
                "key": key,
                "raw": raw_digest,
                "optimized": opt_digest,
                "created_at": created_at,
            }
            atomic_write_bytes(entry_path, canonical_json_bytes(entry))
        except OSError as exc:
            raise CacheError(f"cannot write to build cache at {self.root}: {exc}", root=str(self.root)) from exc
        log.debug("cache store", extra={"key": key, "raw": raw_digest, "optimized": opt_digest})
        return CachedArtifact(key, raw_digest, opt_digest, created_at, bytes(raw), bytes(optimized))

    def _put_object(self, data: bytes) -> str:
        digest = sha3_256_hex(data)
        path = self.object_path(digest)
        if self._read_object(digest) is None:
            atomic_write_bytes(path, data)
        return digest

    # ------------------------------------------------------------ maintenance

    def clear(self) -> int:
        """Delete all entries and objects; returns the number of files removed."""
        removed = 0
        # entries first so no index ever points at a deleted object
        for base in (self.entries_dir, self.objects_dir):
            if not base.is_dir():
                continue
            for p in sorted(base.rglob("*")):
                if p.is_dir():
                    continue
                try:
                    p.unlink()
                    removed += 1
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    raise CacheError(f"cannot clear build cache: {exc}", path=str(p)) from exc
        log.info("cache cleared", extra={"root": str(self.root), "removed": removed})
        return removed

    def stats(self) -> Dict[str, Any]:
        entries = list(self.entries_dir.glob("*/*.json")) if self.entries_dir.is_dir() else []
        objects = list(self.objects_dir.glob("*.wasm")) if self.objects_dir.is_dir() else []
        size = 0
        for p in entries + objects:
            try:
                size += p.stat().st_size
            except FileNotFoundError:
                continue
        return {"root": str(self.root), "entries": len(entries), "objects": len(objects), "bytes": size}

    def ensure(self) -> "BuildCache":
        try:
            ensure_dir(self.objects_dir)
            ensure_dir(self.entries_dir)
        except OSError as exc:
            raise CacheError(f"cache directory unusable: {self.root}: {exc}", root=str(self.root)) from exc
        return self


__all__ = ["CACHE_LAYOUT_VERSION", "BuildCache", "CachedArtifact"]
