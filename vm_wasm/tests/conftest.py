from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

import pytest

from vm_wasm.config import CompilerConfig, load_config
from vm_wasm.manifest import ProjectManifest
from vm_wasm.toolchain import Toolchain

# A stand-in for the real toolchain executable. It follows the same calling
# contract and emits a small valid module whose debug section embeds a digest
# of the frozen manifest, so outputs differ when inputs differ.
#
# Behaviour is selected with FAKE_TC_MODE:
#   ok (default) | fail | nooutput | empty | garbage | sleep
# Every invocation appends one JSON line to $FAKE_TC_LOG when set.
FAKE_TOOLCHAIN = r'''
import hashlib
import json
import os
import sys
import time
from pathlib import Path


def leb(n):
    out = bytearray()
    while True:
        byte = n & 0x7F
        n >>= 7
        if n:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def section(sec_id, payload):
    return bytes([sec_id]) + leb(len(payload)) + payload


def custom(name, body):
    raw = name.encode()
    return section(0, leb(len(raw)) + raw + body)


def module(entry, digest, debug):
    out = bytearray(b"\x00asm\x01\x00\x00\x00")
    out += section(1, b"\x01\x60\x00\x00")
    out += section(3, b"\x01\x00")
    out += section(4, b"\x00")
    name = entry.encode()
    out += section(7, b"\x01" + leb(len(name)) + name + b"\x00\x00")
    out += section(10, b"\x01\x02\x00\x0b")
    out += custom("name", b"\x00" + leb(len(name)) + name)
    out += custom("producers", b"\x01\x08language\x01\x0aMicroPython\x00")
    out += custom(".debug_info", digest)
    if debug:
        out += custom(".debug_line", digest * 4)
    return bytes(out)


def main(argv):
    if argv[:1] == ["--version"]:
        print("fake-mpy-wasm 1.0.0")
        return 0
    opts, flags = {}, set()
    i = 1
    while i < len(argv):
        if argv[i] == "--debug-info":
            flags.add("debug-info")
            i += 1
        else:
            opts[argv[i]] = argv[i + 1]
            i += 2

    frozen_dir = Path(opts["--frozen-dir"])
    log_path = os.environ.get("FAKE_TC_LOG")
    if log_path:
        files = sorted(p.relative_to(frozen_dir).as_posix() for p in frozen_dir.rglob("*.py"))
        record = {"argv": argv, "cwd": os.getcwd(), "files": files}
        with open(log_path, "a") as fh:
            fh.write(json.dumps(record) + "\n")

    mode = os.environ.get("FAKE_TC_MODE", "ok")
    out = Path(opts["--output"])
    if mode == "fail":
        sys.stderr.write("link error: undefined symbol mp_frozen_contract\n")
        return 3
    if mode == "sleep":
        time.sleep(60)
        return 0
    if mode == "nooutput":
        return 0
    if mode == "empty":
        out.write_bytes(b"")
        return 0
    if mode == "garbage":
        out.write_bytes(b"definitely not wasm")
        return 0

    frozen = (Path(opts["--manifest"]).parent / "frozen.cbor").read_bytes()
    digest = hashlib.sha3_256(frozen).digest()
    out.write_bytes(module(opts["--entry"], digest, "debug-info" in flags))
    return 0


sys.exit(main(sys.argv[1:]))
'''


@pytest.fixture
def fake_toolchain_cmd(tmp_path: Path) -> List[str]:
    script = tmp_path / "fake_mpy_wasm_build.py"
    script.write_text(FAKE_TOOLCHAIN, encoding="utf-8")
    return [sys.executable, str(script)]


@pytest.fixture
def toolchain_log(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Callable[[], List[Dict[str, Any]]]:
    """Enable invocation logging of the fake toolchain; returns a reader."""
    log_path = tmp_path / "toolchain.log"
    monkeypatch.setenv("FAKE_TC_LOG", str(log_path))

    def read() -> List[Dict[str, Any]]:
        if not log_path.exists():
            return []
        return [json.loads(line) for line in log_path.read_text().splitlines() if line.strip()]

    return read


@pytest.fixture
def compiler_config(tmp_path: Path, fake_toolchain_cmd: List[str]) -> CompilerConfig:
    return load_config(
        env={},
        toolchain_command=tuple(fake_toolchain_cmd),
        cache_dir=tmp_path / "cache",
        build_timeout=60.0,
    )


@pytest.fixture
def toolchain(compiler_config: CompilerConfig) -> Toolchain:
    return Toolchain.from_config(compiler_config)


ProjectFactory = Callable[..., Path]


@pytest.fixture
def make_project(tmp_path: Path) -> ProjectFactory:
    """
    Write a project tree and a vm-wasm.json manifest; returns the project dir.

        root = make_project({"contract.py": "...", "lib/util.py": "..."}, entry="contract.py")
    """
    counter = {"n": 0}

    def make(files: Mapping[str, str], manifest: Optional[Dict[str, Any]] = None, **keys: Any) -> Path:
        counter["n"] += 1
        root = tmp_path / f"proj{counter['n']}"
        for rel, text in files.items():
            p = root / rel
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_text(text, encoding="utf-8")
        data: Dict[str, Any] = {"entry": "contract.py"}
        data.update(manifest or {})
        data.update({k.replace("_", "-"): v for k, v in keys.items()})
        root.mkdir(parents=True, exist_ok=True)
        (root / "vm-wasm.json").write_text(json.dumps(data), encoding="utf-8")
        return root

    return make


def manifest_for(root: Path, **keys: Any) -> ProjectManifest:
    data: Dict[str, Any] = json.loads((root / "vm-wasm.json").read_text())
    data.update({k.replace("_", "-"): v for k, v in keys.items()})
    return ProjectManifest.from_mapping(data, root=root)


COUNTER_CONTRACT = '''\
from vmrt import view, call, init

from storage import Store

_store = Store()


@init
def new(owner: str) -> None:
    _store.put("owner", owner)


@view
def get_count() -> int:
    return _store.get("count", 0)


@call
def increment(by: int = 1) -> int:
    value = get_count() + by
    _store.put("count", value)
    return value
'''

STORAGE_MODULE = '''\
import json


class Store:
    def __init__(self):
        self._data = {}

    def get(self, key, default=None):
        return self._data.get(key, default)

    def put(self, key, value):
        self._data[key] = value
'''
