from __future__ import annotations

import dataclasses
import json
from pathlib import Path

import pytest

from vm_wasm.errors import ManifestError
from vm_wasm.manifest import OptimizeMode, ProjectManifest, find_manifest, load_manifest


def _project(tmp_path: Path) -> Path:
    (tmp_path / "contract.py").write_text("x = 1\n")
    return tmp_path


def test_toml_manifest_defaults(tmp_path: Path) -> None:
    root = _project(tmp_path)
    (root / "vm-wasm.toml").write_text('entry = "contract.py"\n')
    mf = load_manifest(root)
    assert mf.entry == (root / "contract.py").resolve()
    assert mf.sources == (root.resolve(),)
    assert mf.packages == ()
    assert mf.optimize is OptimizeMode.SIZE
    assert mf.include_debug_info is False
    assert mf.output_path == root.resolve() / "build" / "contract.wasm"
    assert mf.abi_path == root.resolve() / "build" / "contract.abi.json"


def test_toml_manifest_all_keys(tmp_path: Path) -> None:
    root = _project(tmp_path)
    (root / "deps").mkdir()
    (root / "vm-wasm.toml").write_text(
        "\n".join(
            [
                'entry = "contract.py"',
                'packages = ["deps"]',
                'exclude = ["numpy", "pytest"]',
                'optimize = "speed"',
                'output = "out/token.wasm"',
                "include-debug-info = true",
                "[pin]",
                'near-sdk = ">=0.4,<0.5"',
                'base58 = "2.1.1"',
            ]
        )
    )
    mf = load_manifest(root / "vm-wasm.toml")
    assert mf.exclude == frozenset({"numpy", "pytest"})
    assert mf.optimize is OptimizeMode.SPEED
    assert mf.include_debug_info is True
    assert mf.output_path == root.resolve() / "out" / "token.wasm"
    assert mf.abi_path.name == "token.abi.json"
    assert mf.packages == ((root / "deps").resolve(),)
    assert mf.pins == {"near-sdk": ">=0.4,<0.5", "base58": "==2.1.1"}
    with pytest.raises(TypeError):
        mf.pins["extra"] = "1.0"  # type: ignore[index]


def test_pyproject_table(tmp_path: Path) -> None:
    root = _project(tmp_path)
    (root / "pyproject.toml").write_text(
        '[project]\nname = "demo"\n\n[tool.vm-wasm]\nentry = "contract.py"\noptimize = "debug"\n'
    )
    mf = load_manifest(root)
    assert mf.optimize is OptimizeMode.DEBUG


def test_pyproject_without_table_is_skipped(tmp_path: Path) -> None:
    root = _project(tmp_path)
    (root / "pyproject.toml").write_text('[project]\nname = "demo"\n')
    (root / "vm-wasm.yaml").write_text("entry: contract.py\nexclude: [numpy]\n")
    assert find_manifest(root).name == "vm-wasm.yaml"
    assert load_manifest(root).exclude == frozenset({"numpy"})


def test_json_manifest(tmp_path: Path) -> None:
    root = _project(tmp_path)
    (root / "vm-wasm.json").write_text(json.dumps({"entry": "contract.py", "optimize": "speed"}))
    assert load_manifest(root).optimize is OptimizeMode.SPEED


def test_no_manifest(tmp_path: Path) -> None:
    with pytest.raises(ManifestError) as ei:
        load_manifest(tmp_path)
    assert ei.value.code == "VMWASM/MANIFEST"


@pytest.mark.parametrize(
    "data, fragment",
    [
        ({}, "'entry'"),
        ({"entry": "missing.py"}, "not found"),
        ({"entry": "contract.py", "optimize": "fast"}, "size|speed|debug"),
        ({"entry": "contract.py", "bogus": 1}, "unknown manifest key"),
        ({"entry": "contract.py", "exclude": "not an identifier"}, "identifier"),
        ({"entry": "contract.py", "pin": {"foo": "~~1"}}, "invalid version constraint"),
        ({"entry": "contract.py", "include-debug-info": "yes"}, "boolean"),
        ({"entry": "contract.py", "sources": ["nope"]}, "not a directory"),
    ],
)
def test_invalid_manifests(tmp_path: Path, data, fragment: str) -> None:
    _project(tmp_path)
    with pytest.raises(ManifestError) as ei:
        ProjectManifest.from_mapping(data, root=tmp_path)
    assert fragment in ei.value.message


def test_invalid_toml_syntax(tmp_path: Path) -> None:
    (tmp_path / "vm-wasm.toml").write_text("entry = \n")
    with pytest.raises(ManifestError, match="invalid TOML"):
        load_manifest(tmp_path / "vm-wasm.toml")


def test_manifest_is_immutable(tmp_path: Path) -> None:
    _project(tmp_path)
    mf = ProjectManifest.from_mapping({"entry": "contract.py"}, root=tmp_path)
    with pytest.raises(dataclasses.FrozenInstanceError):
        mf.optimize = OptimizeMode.DEBUG  # type: ignore[misc]
    assert mf.to_dict()["optimize"] == "size"
