from __future__ import annotations

import json
import logging
import shlex
from pathlib import Path
from typing import Any, Iterator, List

import pytest
from typer.testing import CliRunner

from vm_wasm.cli.main import EXIT_FAILED, EXIT_MANIFEST, app
from vm_wasm.freezer import FROZEN_FORMAT
from vm_wasm.optimizer import PASS_SET_VERSION
from vm_wasm.tests.conftest import COUNTER_CONTRACT, STORAGE_MODULE
from vm_wasm.toolchain import PROTOCOL_VERSION
from vm_wasm.version import __version__

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_env(monkeypatch: Any, tmp_path: Path, fake_toolchain_cmd: List[str]) -> Iterator[Path]:
    cache_dir = tmp_path / "cli-cache"
    monkeypatch.setenv("VM_WASM_TOOLCHAIN", shlex.join(fake_toolchain_cmd))
    monkeypatch.setenv("VM_WASM_CACHE_DIR", str(cache_dir))
    monkeypatch.delenv("VM_WASM_NO_CACHE", raising=False)
    monkeypatch.setenv("VM_WASM_WASM_OPT", "off")
    yield cache_dir
    # the CLI points the vm_wasm logger at the runner's (now closed) stderr
    for h in list(logging.getLogger("vm_wasm").handlers):
        logging.getLogger("vm_wasm").removeHandler(h)


@pytest.fixture
def counter(make_project) -> Path:
    return make_project({"contract.py": COUNTER_CONTRACT, "storage.py": STORAGE_MODULE})


def test_version() -> None:
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert result.output.strip() == __version__


def test_version_json_lists_format_versions() -> None:
    result = runner.invoke(app, ["version", "--json"])
    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["vm-wasm"] == __version__
    assert payload["frozen-format"] == FROZEN_FORMAT
    assert payload["toolchain-protocol"] == PROTOCOL_VERSION
    assert payload["optimizer-passes"] == PASS_SET_VERSION


def test_build_human(counter: Path) -> None:
    result = runner.invoke(app, ["build", str(counter)])
    assert result.exit_code == 0, result.output
    assert "resolve" in result.output
    assert "cache-miss" in result.output
    assert f"wrote {counter.resolve() / 'build' / 'contract.wasm'}" in result.output
    assert (counter / "build" / "contract.abi.json").is_file()


def test_build_json_then_cached(counter: Path) -> None:
    first = runner.invoke(app, ["build", str(counter), "--json"])
    assert first.exit_code == 0, first.output
    payload = json.loads(first.stdout)
    assert payload["ok"] is True
    assert payload["cache_hit"] is False

    second = runner.invoke(app, ["build", str(counter), "--json"])
    assert json.loads(second.stdout)["cache_hit"] is True


def test_build_no_cache(counter: Path, cli_env: Path) -> None:
    result = runner.invoke(app, ["build", str(counter), "--no-cache"])
    assert result.exit_code == 0, result.output
    assert not cli_env.exists()


def test_build_with_explicit_manifest(counter: Path) -> None:
    manifest = counter / "alt.json"
    manifest.write_text(json.dumps({"entry": "contract.py", "output": "out/alt.wasm"}))
    result = runner.invoke(app, ["build", "--manifest", str(manifest)])
    assert result.exit_code == 0, result.output
    assert (counter / "out" / "alt.wasm").is_file()


def test_build_failure_exit_code(make_project) -> None:
    root = make_project({"contract.py": "import nowhere\n"})
    result = runner.invoke(app, ["build", str(root)])
    assert result.exit_code == EXIT_FAILED
    assert "cannot resolve import 'nowhere'" in result.output
    assert "build failed at stage 'resolve'" in result.output


def test_missing_manifest_exit_code(tmp_path: Path) -> None:
    empty = tmp_path / "empty"
    empty.mkdir()
    result = runner.invoke(app, ["build", str(empty)])
    assert result.exit_code == EXIT_MANIFEST
    assert "no manifest found" in result.output


def test_abi_command(counter: Path) -> None:
    result = runner.invoke(app, ["abi", str(counter)])
    assert result.exit_code == 0, result.output
    methods = json.loads(result.stdout)["methods"]
    assert [m["kind"] for m in methods] == ["init", "view", "call"]
    assert not (counter / "build").exists()


def test_abi_command_reports_shape_errors(make_project) -> None:
    root = make_project({"contract.py": "@view\ndef f(*args) -> None:\n    pass\n"})
    result = runner.invoke(app, ["abi", str(root)])
    assert result.exit_code == EXIT_FAILED
    assert "*args is not supported" in result.output


def test_deps_json(counter: Path) -> None:
    result = runner.invoke(app, ["deps", str(counter), "--json"])
    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["entry"] == "contract"
    assert [m["name"] for m in payload["modules"]] == ["contract", "storage"]
    assert payload["external"] == ["json", "vmrt"]


def test_deps_text(counter: Path) -> None:
    result = runner.invoke(app, ["deps", str(counter)])
    assert result.exit_code == 0
    assert "storage" in result.output
    assert "runtime:  json, vmrt" in result.output


def test_cache_info_and_clear(counter: Path, cli_env: Path) -> None:
    runner.invoke(app, ["build", str(counter)])

    info = runner.invoke(app, ["cache", "info", "--json"])
    assert info.exit_code == 0
    stats = json.loads(info.stdout)
    assert stats["root"] == str(cli_env.resolve())
    assert stats["entries"] == 1
    assert stats["objects"] == 2

    cleared = runner.invoke(app, ["cache", "clear", "--cache-dir", str(cli_env)])
    assert cleared.exit_code == 0
    assert "removed 3 file(s)" in cleared.output
    assert "entries: 0" in runner.invoke(app, ["cache", "info"]).output
