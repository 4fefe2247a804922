"""
WASM codec and optimizer tests

- parse_module rejects malformed framing with WasmFormatError.
- optimize() is idempotent per mode and never hands back an unvalidated binary.
- size output is never larger than debug output; speed keeps the `name`
  section but drops debug-only sections.
"""
from __future__ import annotations

import os
import stat
import sys
from pathlib import Path

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from vm_wasm.errors import OptimizationError
from vm_wasm.manifest import OptimizeMode
from vm_wasm.optimizer import MARKER_SECTION, is_debug_section, optimize, read_marker
from vm_wasm.tests import wasmgen
from vm_wasm.wasm import (
    SEC_CODE,
    SEC_EXPORT,
    SEC_TABLE,
    WasmFormatError,
    looks_like_wasm,
    parse_module,
    read_varuint,
    write_varuint,
)

H = wasmgen.HEADER
sec = wasmgen.section


def _customs(data: bytes):
    return [s.name for s in parse_module(data).custom_sections()]


# -----------------------------------------------------------------------------
# codec
# -----------------------------------------------------------------------------


def test_parse_and_reencode_is_lossless() -> None:
    raw = wasmgen.module(exports=("main", "get"), customs=wasmgen.DEBUG_CUSTOMS)
    mod = parse_module(raw)
    assert mod.to_bytes() == raw
    assert mod.section(SEC_EXPORT).count() == 2
    assert mod.section(SEC_CODE).count() == 2
    assert [s.name for s in mod.custom_sections()] == ["name", "producers", ".debug_info", "sourceMappingURL"]
    assert looks_like_wasm(raw)


@pytest.mark.parametrize(
    "data, fragment",
    [
        (b"\x00asn\x01\x00\x00\x00", "magic"),
        (b"\x00asm\x02\x00\x00\x00", "version"),
        (H + b"\x01\x05\x00", "overruns"),
        (H + b"\x01\x80\x80\x80\x80\x80\x01", "5 bytes"),
        (H + sec(1, b"\x00") + sec(1, b"\x00"), "duplicate"),
        (H + sec(7, b"\x00") + sec(1, b"\x00"), "out of order"),
        (H + sec(0x20, b"\x00"), "unknown section"),
        (H + sec(1, b""), "empty"),
        (H + sec(0, b"\x05ab"), "EOF"),
        (H + sec(1, b"\x01\x60\x00\x00") + sec(3, b"\x02\x00\x00") + sec(10, b"\x01\x02\x00\x0b"), "declares 2"),
    ],
)
def test_malformed_modules(data: bytes, fragment: str) -> None:
    with pytest.raises(WasmFormatError, match=fragment):
        parse_module(data)


@pytest.mark.parametrize("value", [0, 1, 127, 128, 624485, 2**32 - 1])
def test_varuint(value: int) -> None:
    enc = write_varuint(value)
    assert read_varuint(enc + b"\xff", 0) == (value, len(enc))


def test_debug_section_names() -> None:
    assert is_debug_section(".debug_info")
    assert is_debug_section("sourceMappingURL")
    assert not is_debug_section("name")
    assert not is_debug_section(None)


# -----------------------------------------------------------------------------
# optimizer
# -----------------------------------------------------------------------------


RAW = wasmgen.module(customs=wasmgen.DEBUG_CUSTOMS)


def test_size_mode_strips_customs_and_empty_vectors() -> None:
    out = optimize(RAW, OptimizeMode.SIZE)
    mod = parse_module(out)
    assert _customs(out) == [MARKER_SECTION]
    assert mod.section(SEC_TABLE) is None
    assert mod.section(SEC_CODE).count() == 1
    assert read_marker(mod)["mode"] == "size"


def test_speed_mode_keeps_names_drops_debug() -> None:
    out = optimize(RAW, "speed")
    assert _customs(out) == ["name", "producers", MARKER_SECTION]


def test_debug_mode_keeps_everything() -> None:
    out = optimize(RAW, "debug")
    assert out.startswith(RAW)
    assert _customs(out)[-1] == MARKER_SECTION


def test_size_never_larger_than_debug() -> None:
    assert len(optimize(RAW, "size")) <= len(optimize(RAW, "debug"))


_names = st.lists(st.from_regex(r"[a-z_]{1,10}", fullmatch=True), min_size=1, max_size=5, unique=True)
_custom_sets = st.lists(st.sampled_from(wasmgen.DEBUG_CUSTOMS + (("meta", b"\x00\x01"),)), max_size=6)


@settings(max_examples=60, deadline=None)
@given(
    exports=_names,
    customs=_custom_sets,
    empty_table=st.booleans(),
    mode=st.sampled_from(list(OptimizeMode)),
    other=st.sampled_from(list(OptimizeMode)),
)
def test_optimize_is_idempotent(exports, customs, empty_table, mode, other) -> None:
    raw = wasmgen.module(exports=exports, customs=customs, empty_table=empty_table)
    once = optimize(raw, mode)
    assert optimize(once, mode) == once
    assert read_marker(parse_module(once))["mode"] == mode.value

    # switching modes re-runs the passes on the stripped module
    switched = optimize(once, other)
    assert optimize(switched, other) == switched
    assert len(optimize(raw, "size")) <= len(optimize(raw, "debug"))


def test_tampered_marker_is_not_trusted() -> None:
    once = optimize(RAW, "debug")
    mod = parse_module(once)
    # change a byte in front of the marker: the recorded digest no longer matches
    head = bytearray(once)
    idx = head.index(b"main")
    head[idx] = ord("n")
    assert read_marker(parse_module(bytes(head))) is None
    again = optimize(bytes(head), "debug")
    assert again != bytes(head)
    assert read_marker(parse_module(again)) is not None
    assert read_marker(mod)["passes"] == 1


@pytest.mark.parametrize("data", [b"", b"not wasm at all", RAW[:-3]])
def test_malformed_input_raises(data: bytes) -> None:
    with pytest.raises(OptimizationError) as ei:
        optimize(data, "size")
    assert ei.value.code == "VMWASM/OPTIMIZATION"


# -----------------------------------------------------------------------------
# wasm-opt integration (with a stand-in executable)
# -----------------------------------------------------------------------------


FAKE_WASM_OPT = """\
import sys

argv = sys.argv[1:]
src, out = argv[0], argv[argv.index("-o") + 1]
data = open(src, "rb").read()
tag = b"wasm-opt:" + " ".join(a for a in argv[1:] if a.startswith("-O")).encode()
name = b"optimized-by"
section = bytes([len(name)]) + name + tag
data += bytes([0, len(section)]) + section
open(out, "wb").write(data)
"""


def _executable(tmp_path: Path, body: str) -> str:
    path = tmp_path / "wasm-opt"
    path.write_text(f"#!{sys.executable}\n{body}")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return str(path)


@pytest.mark.skipif(os.name != "posix", reason="uses a shebang script")
def test_speed_uses_wasm_opt_output(tmp_path: Path) -> None:
    wasm_opt = _executable(tmp_path, FAKE_WASM_OPT)
    out = optimize(RAW, "speed", wasm_opt=wasm_opt)
    mod = parse_module(out)
    tagged = [s for s in mod.custom_sections() if s.name == "optimized-by"]
    assert tagged and tagged[0].body == b"wasm-opt:-O3"


@pytest.mark.skipif(os.name != "posix", reason="uses a shebang script")
def test_size_keeps_smaller_candidate(tmp_path: Path) -> None:
    wasm_opt = _executable(tmp_path, FAKE_WASM_OPT)
    assert optimize(RAW, "size", wasm_opt=wasm_opt) == optimize(RAW, "size")


@pytest.mark.skipif(os.name != "posix", reason="uses a shebang script")
def test_failing_wasm_opt(tmp_path: Path) -> None:
    wasm_opt = _executable(tmp_path, "import sys\nsys.stderr.write('boom')\nsys.exit(2)\n")
    with pytest.raises(OptimizationError, match="exited with 2"):
        optimize(RAW, "speed", wasm_opt=wasm_opt)


def test_missing_wasm_opt(tmp_path: Path) -> None:
    with pytest.raises(OptimizationError, match="not found"):
        optimize(RAW, "size", wasm_opt=str(tmp_path / "nope"))
