from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from vm_wasm.cache import BuildCache
from vm_wasm.tests import wasmgen
from vm_wasm.utils import sha3_256_hex

RAW = wasmgen.module(customs=wasmgen.DEBUG_CUSTOMS)
OPT = wasmgen.module()

FLAGS = {"optimize": "size", "include_debug_info": False, "wasm_opt": False, "passes": 1}


def _key(frozen: bytes = b"frozen", flags=FLAGS, toolchain: str = "tc 1.0|protocol=1") -> str:
    return BuildCache.key(frozen, flags, toolchain)


def test_key_depends_on_every_input() -> None:
    base = _key()
    assert len(base) == 64
    assert _key() == base
    assert _key(flags=dict(reversed(list(FLAGS.items())))) == base
    assert _key(frozen=b"frozen2") != base
    assert _key(flags={**FLAGS, "optimize": "speed"}) != base
    assert _key(toolchain="tc 1.1|protocol=1") != base


def test_store_then_lookup(tmp_path: Path) -> None:
    cache = BuildCache(tmp_path / "c")
    key = _key()
    assert cache.lookup(key) is None

    stored = cache.store(key, RAW, OPT)
    hit = cache.lookup(key)
    assert hit is not None
    assert hit.raw == RAW and hit.optimized == OPT
    assert hit.raw_digest == sha3_256_hex(RAW) == stored.raw_digest
    assert cache.object_path(hit.optimized_digest).read_bytes() == OPT


def test_objects_are_shared_between_entries(tmp_path: Path) -> None:
    cache = BuildCache(tmp_path)
    cache.store(_key(b"a"), RAW, OPT)
    cache.store(_key(b"b"), RAW, OPT)
    stats = cache.stats()
    assert stats["entries"] == 2
    assert stats["objects"] == 2
    assert stats["bytes"] > len(RAW) + len(OPT)


def test_malformed_key_rejected(tmp_path: Path) -> None:
    cache = BuildCache(tmp_path)
    for bad in ("", "ABC", "../" + "0" * 61, "g" * 64):
        with pytest.raises(ValueError):
            cache.lookup(bad)


def test_corrupt_entry_is_a_miss(tmp_path: Path) -> None:
    cache = BuildCache(tmp_path)
    key = _key()
    cache.store(key, RAW, OPT)
    cache.entry_path(key).write_text("{not json")
    assert cache.lookup(key) is None


def test_entry_for_another_key_is_a_miss(tmp_path: Path) -> None:
    cache = BuildCache(tmp_path)
    key, other = _key(b"a"), _key(b"b")
    cache.store(key, RAW, OPT)
    entry = json.loads(cache.entry_path(key).read_text())
    target = cache.entry_path(other)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(entry))
    assert cache.lookup(other) is None


def test_damaged_object_is_a_miss_and_is_repaired(tmp_path: Path) -> None:
    cache = BuildCache(tmp_path)
    key = _key()
    art = cache.store(key, RAW, OPT)
    cache.object_path(art.optimized_digest).write_bytes(b"bitrot")
    assert cache.lookup(key) is None

    cache.store(key, RAW, OPT)
    assert cache.lookup(key).optimized == OPT


def test_interleaved_stores_never_expose_a_partial_entry(tmp_path: Path) -> None:
    cache = BuildCache(tmp_path)
    key = _key()
    writers = 6
    pairs = [
        (RAW + wasmgen.custom("writer", bytes([i])), OPT + wasmgen.custom("writer", bytes([i])))
        for i in range(writers)
    ]
    errors = []
    seen = []
    done = threading.Event()
    barrier = threading.Barrier(writers + 2)

    def writer(i: int) -> None:
        try:
            barrier.wait()
            for _ in range(20):
                cache.store(key, *pairs[i])
        except Exception as exc:  # pragma: no cover - surfaced below
            errors.append(exc)

    def reader() -> None:
        try:
            barrier.wait()
            while not done.is_set():
                hit = cache.lookup(key)
                if hit is not None:
                    seen.append((hit.raw, hit.optimized))
        except Exception as exc:  # pragma: no cover - surfaced below
            errors.append(exc)

    readers = [threading.Thread(target=reader) for _ in range(2)]
    threads = [threading.Thread(target=writer, args=(i,)) for i in range(writers)]
    for t in readers + threads:
        t.start()
    for t in threads:
        t.join()
    done.set()
    for t in readers:
        t.join()

    assert errors == []
    # every hit is one writer's complete pair, never a mix
    assert all(pair in pairs for pair in seen)
    final = cache.lookup(key)
    assert final is not None and (final.raw, final.optimized) in pairs
    assert cache.stats()["entries"] == 1
    # no temp files left behind
    suffixes = sorted(p.suffix for p in tmp_path.rglob("*") if p.is_file())
    assert suffixes == [".json"] + [".wasm"] * (2 * writers)


def test_clear(tmp_path: Path) -> None:
    cache = BuildCache(tmp_path)
    cache.store(_key(b"a"), RAW, OPT)
    cache.store(_key(b"b"), RAW, OPT)
    assert cache.clear() == 4
    assert cache.stats()["entries"] == 0
    assert cache.lookup(_key(b"a")) is None
    assert cache.clear() == 0


def test_empty_cache_stats(tmp_path: Path) -> None:
    stats = BuildCache(tmp_path / "missing").stats()
    assert stats == {"root": str(tmp_path / "missing"), "entries": 0, "objects": 0, "bytes": 0}
