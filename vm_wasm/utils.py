# -*- coding: utf-8 -*-
"""
Hashing and filesystem helpers shared by the compiler stages:
- Canonical JSON encode for deterministic metadata (cache index, ABI files)
- SHA3-256 hex digests
- FS utilities (atomic writes, mkdir -p)

Everything written by the compiler that another process may read concurrently
(cache objects, cache index files, final artifacts) goes through
`atomic_write_bytes`.
"""
from __future__ import annotations

import errno
import hashlib
import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, Final, List, Mapping, Optional, Tuple, Union

__all__ = [
    "canonical_json_str",
    "canonical_json_bytes",
    "sha3_256_hex",
    "ensure_dir",
    "atomic_write_bytes",
    "atomic_write_group",
]

# ---------------------------------------------------------------------------
# Canonical JSON
# ---------------------------------------------------------------------------

_JSON_SEPARATORS: Final[tuple[str, str]] = (",", ":")


def canonical_json_str(obj: Any) -> str:
    """
    Serialize an object to a canonical JSON string:
    - UTF-8 safe, no whitespace, sorted keys
    - Ensures stable hashing across platforms
    """
    return json.dumps(
        obj,
        ensure_ascii=False,
        sort_keys=True,
        separators=_JSON_SEPARATORS,
        allow_nan=False,
    )


def canonical_json_bytes(obj: Any) -> bytes:
    """Canonical JSON encoded as UTF-8 bytes."""
    return canonical_json_str(obj).encode("utf-8")


# ---------------------------------------------------------------------------
# Hashing (SHA3-256)
# ---------------------------------------------------------------------------

_BytesLike = Union[bytes, bytearray, memoryview]


def sha3_256_hex(*chunks: _BytesLike) -> str:
    """Hex digest (no prefix) of SHA3-256 over the concatenated chunks."""
    h = hashlib.sha3_256()
    for chunk in chunks:
        h.update(chunk)
    return h.hexdigest()


# ---------------------------------------------------------------------------
# Filesystem helpers
# ---------------------------------------------------------------------------


def ensure_dir(p: Union[str, os.PathLike[str]]) -> Path:
    """
    mkdir -p for a directory path; returns Path. No error if exists.
    """
    path = Path(p)
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        if e.errno != errno.EEXIST:
            raise
    return path


def _stage(target: Path, data: _BytesLike) -> str:
    """Write `data` to a fsync'd temp file beside `target`; returns its name."""
    ensure_dir(target.parent)
    with tempfile.NamedTemporaryFile(
        dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp", delete=False
    ) as tf:
        tmp_name = tf.name
        try:
            tf.write(data)
            tf.flush()
            os.fsync(tf.fileno())
        except BaseException:
            tf.close()
            os.unlink(tmp_name)
            raise
    return tmp_name


def atomic_write_bytes(path: Union[str, os.PathLike[str]], data: _BytesLike) -> Path:
    """
    Write bytes atomically: temp file in the target dir → fsync → rename.
    Readers only ever observe the previous file or the complete new one.
    """
    target = Path(path)
    tmp_name = _stage(target, data)
    try:
        os.replace(tmp_name, target)  # atomic on POSIX
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return target


def _backup(target: Path) -> Optional[str]:
    if not target.is_file():
        return None
    fd, bak = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.", suffix=".bak")
    os.close(fd)
    shutil.copy2(target, bak)
    return bak


def atomic_write_group(files: Mapping[Union[str, os.PathLike[str]], _BytesLike]) -> List[Path]:
    """
    Publish several files as one unit.

    Every file is staged first; targets are then renamed into place one by
    one. If any step fails, targets already replaced are rolled back to their
    previous content (or removed if they did not exist) before re-raising,
    so a failure never leaves a new file next to an old sibling.
    """
    staged: List[Tuple[Path, str]] = []
    backups: Dict[Path, Optional[str]] = {}
    published: List[Path] = []
    try:
        for path, data in files.items():
            target = Path(path)
            staged.append((target, _stage(target, data)))
        for target, _ in staged:
            backups[target] = _backup(target)
        for target, tmp_name in staged:
            os.replace(tmp_name, target)
            published.append(target)
    except BaseException:
        for target in reversed(published):
            bak = backups.pop(target, None)
            if bak is not None:
                os.replace(bak, target)
            else:
                target.unlink(missing_ok=True)
        raise
    finally:
        for _, tmp_name in staged:
            Path(tmp_name).unlink(missing_ok=True)
        for bak in backups.values():
            if bak is not None:
                Path(bak).unlink(missing_ok=True)
    return published
