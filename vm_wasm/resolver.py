"""
resolver.py — static import graph of a contract project.

Starting from the manifest's entry module, imports are discovered with `ast`
(the code is never executed) and followed breadth-first through the local
source roots and then the external package roots:

  • `import a.b.c` depends on `a`, `a.b` and `a.b.c` (namespace directories
    without an __init__.py are skipped).
  • `from a.b import c` depends on `a.b` (and parents) plus `a.b.c` when that
    names a submodule on disk.
  • Relative imports resolve against the importing module's package.
  • `from __future__ ...` and imports under `if TYPE_CHECKING:` are ignored.
  • Root names listed in the manifest's `exclude` are dropped untraversed.
  • Root names the target runtime provides (interpreter builtins, base
    library) are recorded as external and never traversed.

Problems are collected for the whole stage; `resolve` raises a single
ResolutionError carrying every error diagnostic. An unresolvable import
guarded by `try: ... except ImportError:` only produces a warning.

Version pins are checked against `*.dist-info` / `*.egg-info` metadata found
in the package roots.
"""

from __future__ import annotations

import ast
import re
from collections import deque
from dataclasses import dataclass, field
from email.parser import HeaderParser
from pathlib import Path
from typing import Deque, Dict, FrozenSet, Iterable, Iterator, List, Optional, Sequence, Tuple

from packaging.specifiers import SpecifierSet
from packaging.version import InvalidVersion, Version

from .diagnostics import Diagnostic, DiagnosticBag, Stage, error, warning
from .errors import ResolutionError
from .logging import get_logger
from .manifest import ProjectManifest
from .toolchain import Toolchain
from .utils import sha3_256_hex

log = get_logger(__name__)

ORIGIN_LOCAL = "local"
ORIGIN_PACKAGE = "package"

_IMPORT_ERRORS = frozenset({"ImportError", "ModuleNotFoundError", "Exception", "BaseException"})


# ------------------------------ Graph model --------------------------------- #


@dataclass(frozen=True)
class ModuleNode:
    name: str
    path: Path
    digest: str
    imports: FrozenSet[str]
    source: bytes = field(repr=False)
    is_package: bool = False
    origin: str = ORIGIN_LOCAL
    index: int = 0


@dataclass
class DependencyGraph:
    entry: str
    nodes: Dict[str, ModuleNode] = field(default_factory=dict)
    excluded: FrozenSet[str] = frozenset()
    external: FrozenSet[str] = frozenset()

    @property
    def entry_node(self) -> ModuleNode:
        return self.nodes[self.entry]

    def ordered(self) -> List[ModuleNode]:
        """Nodes in discovery order."""
        return sorted(self.nodes.values(), key=lambda n: n.index)

    def reachable(self) -> FrozenSet[str]:
        """Transitive closure of the entry's imports."""
        seen = {self.entry}
        todo = [self.entry]
        while todo:
            for dep in self.nodes[todo.pop()].imports:
                if dep not in seen and dep in self.nodes:
                    seen.add(dep)
                    todo.append(dep)
        return frozenset(seen)

    def __contains__(self, name: object) -> bool:
        return name in self.nodes

    def __getitem__(self, name: str) -> ModuleNode:
        return self.nodes[name]

    def __iter__(self) -> Iterator[ModuleNode]:
        return iter(self.ordered())

    def __len__(self) -> int:
        return len(self.nodes)


@dataclass
class ResolveResult:
    graph: DependencyGraph
    diagnostics: List[Diagnostic]


# ------------------------------ Import scanning ----------------------------- #


@dataclass(frozen=True)
class ImportRef:
    name: str
    line: int
    optional: bool = False
    members: Tuple[str, ...] = ()


class _ImportScanner(ast.NodeVisitor):
    """Collect ImportRefs from a module body, nested scopes included."""

    def __init__(self, module: str, is_package: bool):
        self.module = module
        self.is_package = is_package
        self.refs: List[ImportRef] = []
        self.problems: List[Tuple[str, int]] = []
        self._guarded = 0

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            self.refs.append(ImportRef(alias.name, node.lineno, self._guarded > 0))

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        if node.module == "__future__":
            return
        base = node.module or ""
        if node.level:
            pkg = self.module.split(".") if self.is_package else self.module.split(".")[:-1]
            drop = node.level - 1
            if drop >= len(pkg):
                self.problems.append(("attempted relative import beyond top-level package", node.lineno))
                return
            anchor = pkg[: len(pkg) - drop]
            base = ".".join(anchor + ([node.module] if node.module else []))
        members = tuple(a.name for a in node.names if a.name != "*")
        self.refs.append(ImportRef(base, node.lineno, self._guarded > 0, members))

    def visit_If(self, node: ast.If) -> None:
        if _is_type_checking(node.test):
            for stmt in node.orelse:
                self.visit(stmt)
            return
        self.generic_visit(node)

    def visit_Try(self, node: ast.Try) -> None:
        guarded = any(_catches_import_error(h) for h in node.handlers)
        self._guarded += guarded
        try:
            for stmt in node.body:
                self.visit(stmt)
        finally:
            self._guarded -= guarded
        for part in (node.handlers, node.orelse, node.finalbody):
            for stmt in part:
                self.visit(stmt)

    visit_TryStar = visit_Try


def _is_type_checking(test: ast.expr) -> bool:
    if isinstance(test, ast.Name):
        return test.id == "TYPE_CHECKING"
    if isinstance(test, ast.Attribute):
        return test.attr == "TYPE_CHECKING"
    return False


def _catches_import_error(handler: ast.ExceptHandler) -> bool:
    if handler.type is None:
        return True
    types = handler.type.elts if isinstance(handler.type, ast.Tuple) else [handler.type]
    for t in types:
        name = t.attr if isinstance(t, ast.Attribute) else getattr(t, "id", None)
        if name in _IMPORT_ERRORS:
            return True
    return False


def scan_imports(tree: ast.AST, module: str, *, is_package: bool = False) -> Tuple[List[ImportRef], List[Tuple[str, int]]]:
    """Return (imports, problems) for a parsed module."""
    scanner = _ImportScanner(module, is_package)
    scanner.visit(tree)
    return scanner.refs, scanner.problems


# ------------------------------ Distributions ------------------------------- #


def normalize_dist_name(name: str) -> str:
    return re.sub(r"[-_.]+", "_", name).lower()


@dataclass(frozen=True)
class Distribution:
    name: str
    version: Optional[str]
    top_level: Tuple[str, ...]


def _read_dist(meta_dir: Path) -> Distribution:
    meta_file = meta_dir / ("METADATA" if meta_dir.suffix == ".dist-info" else "PKG-INFO")
    name = meta_dir.name.split("-", 1)[0]
    version: Optional[str] = None
    if meta_file.is_file():
        headers = HeaderParser().parsestr(meta_file.read_text(encoding="utf-8", errors="replace"))
        name = headers.get("Name") or name
        version = headers.get("Version")
    top_file = meta_dir / "top_level.txt"
    if top_file.is_file():
        tops = tuple(t.strip() for t in top_file.read_text(encoding="utf-8").splitlines() if t.strip())
    else:
        tops = (normalize_dist_name(name),)
    return Distribution(name=name, version=version.strip() if version else None, top_level=tops)


def scan_distributions(roots: Iterable[Path]) -> Dict[str, Distribution]:
    """Map normalized import names and distribution names to installed distributions."""
    index: Dict[str, Distribution] = {}
    for root in roots:
        metas = sorted(list(root.glob("*.dist-info")) + list(root.glob("*.egg-info")))
        for meta_dir in metas:
            if not meta_dir.is_dir():
                continue
            dist = _read_dist(meta_dir)
            for key in (normalize_dist_name(dist.name), *(normalize_dist_name(t) for t in dist.top_level)):
                index.setdefault(key, dist)
    return index


# ------------------------------ Resolver ------------------------------------ #


@dataclass(frozen=True)
class _Located:
    path: Path
    is_package: bool
    origin: str


class DependencyResolver:
    def __init__(self, manifest: ProjectManifest, toolchain: Optional[Toolchain] = None):
        self.manifest = manifest
        self.toolchain = toolchain
        self._roots: Tuple[Tuple[Path, str], ...] = tuple(
            [(r, ORIGIN_LOCAL) for r in manifest.sources] + [(r, ORIGIN_PACKAGE) for r in manifest.packages]
        )
        self._located: Dict[str, Optional[_Located]] = {}
        self._bag = DiagnosticBag()
        self._excluded: set[str] = set()
        self._external: set[str] = set()
        self._shadow_warned: set[str] = set()

    # -- lookup --

    def locate(self, name: str) -> Optional[_Located]:
        if name not in self._located:
            self._located[name] = self._locate(name)
        return self._located[name]

    def _locate(self, name: str) -> Optional[_Located]:
        parts = name.split(".")
        if not all(p.isidentifier() for p in parts):
            return None
        for root, origin in self._roots:
            base = root.joinpath(*parts)
            mod = base.parent / f"{parts[-1]}.py"
            if mod.is_file():
                return _Located(mod, False, origin)
            init = base / "__init__.py"
            if init.is_file():
                return _Located(init, True, origin)
        return None

    def is_namespace(self, name: str) -> bool:
        parts = name.split(".")
        return any(root.joinpath(*parts).is_dir() for root, _ in self._roots)

    def _provided(self, root_name: str) -> bool:
        return self.toolchain is not None and self.toolchain.provides(root_name)

    # -- entry --

    def entry_name(self) -> str:
        entry = self.manifest.entry
        for root in self.manifest.sources:
            try:
                rel = entry.relative_to(root)
            except ValueError:
                continue
            parts = list(rel.with_suffix("").parts)
            if parts[-1] == "__init__":
                parts.pop()
            if parts and all(p.isidentifier() for p in parts):
                return ".".join(parts)
        raise ResolutionError(
            f"entry {entry} is not an importable module under any source root",
            diagnostics=[error(Stage.RESOLVE, f"entry {entry} is not inside a source root")],
            entry=str(entry),
        )

    # -- traversal --

    def resolve(self) -> ResolveResult:
        entry = self.entry_name()
        root_name = entry.split(".", 1)[0]
        if self._provided(root_name):
            raise ResolutionError(
                f"entry module '{entry}' shadows a module provided by the runtime",
                diagnostics=[error(Stage.RESOLVE, f"entry module name '{root_name}' is reserved", module=entry)],
                entry=entry,
            )

        discovered: Dict[str, Tuple[int, _Located]] = {}
        queue: Deque[str] = deque()

        def discover(name: str, where: _Located) -> None:
            if name not in discovered:
                discovered[name] = (len(discovered), where)
                queue.append(name)

        entry_loc = _Located(self.manifest.entry, self.manifest.entry.name == "__init__.py", ORIGIN_LOCAL)
        discover(entry, entry_loc)

        # importing a.b.entry runs a/__init__.py and a/b/__init__.py first
        parents: List[str] = []
        parts = entry.split(".")
        for i in range(1, len(parts)):
            prefix = ".".join(parts[:i])
            loc = self.locate(prefix)
            if loc is not None:
                parents.append(prefix)
                discover(prefix, loc)

        nodes: Dict[str, ModuleNode] = {}
        while queue:
            name = queue.popleft()
            index, where = discovered[name]
            implied = parents if name == entry else []
            node = self._load(name, index, where, discover, implied)
            nodes[name] = node

        graph = DependencyGraph(
            entry=entry,
            nodes=nodes,
            excluded=frozenset(self._excluded),
            external=frozenset(self._external),
        )
        self._check_pins(graph)

        if self._bag.has_errors():
            errs = self._bag.errors
            log.info("resolution failed", extra={"errors": len(errs)})
            raise ResolutionError(
                f"dependency resolution failed with {len(errs)} error(s): {errs[0].message}",
                diagnostics=list(self._bag),
                entry=entry,
            )
        log.info(
            "resolved dependency graph",
            extra={"entry": entry, "modules": len(nodes), "excluded": sorted(self._excluded)},
        )
        return ResolveResult(graph=graph, diagnostics=list(self._bag))

    def _load(self, name: str, index: int, where: _Located, discover, implied: Sequence[str] = ()) -> ModuleNode:
        deps: List[str] = list(implied)
        try:
            source = where.path.read_bytes()
        except OSError as exc:
            self._bag.add(error(Stage.RESOLVE, f"cannot read source: {exc.strerror or exc}", module=name))
            source = b""
        digest = sha3_256_hex(source)
        try:
            tree = ast.parse(source, filename=str(where.path))
        except SyntaxError as exc:
            self._bag.add(error(Stage.RESOLVE, f"syntax error: {exc.msg}", module=name, line=exc.lineno))
            tree = None
        except ValueError as exc:
            self._bag.add(error(Stage.RESOLVE, f"cannot parse source: {exc}", module=name))
            tree = None

        if tree is not None:
            refs, problems = scan_imports(tree, name, is_package=where.is_package)
            for message, line in problems:
                self._bag.add(error(Stage.RESOLVE, message, module=name, line=line))
            for ref in refs:
                for dep, loc in self._targets(name, ref):
                    if dep != name and dep not in deps:
                        deps.append(dep)
                    discover(dep, loc)

        return ModuleNode(
            name=name,
            path=where.path,
            digest=digest,
            imports=frozenset(deps),
            source=source,
            is_package=where.is_package,
            origin=where.origin,
            index=index,
        )

    def _targets(self, importer: str, ref: ImportRef) -> List[Tuple[str, _Located]]:
        """Resolve one import statement into the module names it depends on."""
        root_name = ref.name.split(".", 1)[0]
        if root_name in self.manifest.exclude:
            self._excluded.add(root_name)
            return []
        if self._provided(root_name):
            self._external.add(root_name)
            self._warn_shadowed(importer, root_name, ref.line)
            return []

        out: List[Tuple[str, _Located]] = []
        parts = ref.name.split(".")
        for i in range(1, len(parts) + 1):
            prefix = ".".join(parts[:i])
            loc = self.locate(prefix)
            if loc is not None:
                out.append((prefix, loc))
            elif i < len(parts) and self.is_namespace(prefix):
                continue
            elif i == len(parts) and self.is_namespace(prefix) and ref.members:
                continue
            else:
                self._unresolved(importer, prefix, ref)
                return out

        base_is_namespace = self.locate(ref.name) is None
        for member in ref.members:
            sub = f"{ref.name}.{member}"
            loc = self.locate(sub)
            if loc is not None:
                out.append((sub, loc))
            elif base_is_namespace:
                self._unresolved(importer, sub, ref)
        return out

    def _unresolved(self, importer: str, name: str, ref: ImportRef) -> None:
        if ref.optional:
            self._bag.add(
                warning(Stage.RESOLVE, f"optional import '{name}' not found; skipped", module=importer, line=ref.line)
            )
        else:
            self._bag.add(error(Stage.RESOLVE, f"cannot resolve import '{name}'", module=importer, line=ref.line))

    def _warn_shadowed(self, importer: str, root_name: str, line: int) -> None:
        if root_name in self._shadow_warned or self.locate(root_name) is None:
            return
        self._shadow_warned.add(root_name)
        self._bag.add(
            warning(
                Stage.RESOLVE,
                f"local module '{root_name}' is shadowed by the runtime-provided module of the same name",
                module=importer,
                line=line,
            )
        )

    # -- pins --

    def _check_pins(self, graph: DependencyGraph) -> None:
        pins = self.manifest.pins
        if not pins:
            return
        dists = scan_distributions(self.manifest.packages)
        package_roots = {n.name.split(".", 1)[0] for n in graph.nodes.values() if n.origin == ORIGIN_PACKAGE}
        local_roots = {n.name.split(".", 1)[0] for n in graph.nodes.values() if n.origin == ORIGIN_LOCAL}

        for pin_name, constraint in sorted(pins.items()):
            key = normalize_dist_name(pin_name)
            dist = dists.get(key)
            reachable = sorted(
                r
                for r in package_roots
                if normalize_dist_name(r) == key or (dist is not None and r in dist.top_level)
            )
            if reachable:
                self._check_reachable_pin(pin_name, constraint, dist, reachable[0])
            elif dist is not None:
                if dist.version is not None and not _satisfies_lenient(dist.version, constraint):
                    self._bag.add(
                        warning(
                            Stage.RESOLVE,
                            f"pin {pin_name}{constraint} not satisfied by installed {dist.name} {dist.version}"
                            " (package is not imported by the contract)",
                        )
                    )
            elif key in {normalize_dist_name(r) for r in local_roots}:
                self._bag.add(warning(Stage.RESOLVE, f"pin {pin_name!r} names a local module and is ignored"))
            else:
                self._bag.add(warning(Stage.RESOLVE, f"pin {pin_name!r} matches no imported package"))

    def _check_reachable_pin(self, pin_name: str, constraint: str, dist: Optional[Distribution], module: str) -> None:
        if dist is None or dist.version is None:
            self._bag.add(
                error(Stage.RESOLVE, f"cannot determine installed version of pinned package {pin_name!r}", module=module)
            )
            return
        try:
            ok = _satisfies(dist.version, constraint)
        except InvalidVersion:
            self._bag.add(
                error(Stage.RESOLVE, f"{dist.name} has an unparsable version {dist.version!r}", module=module)
            )
            return
        if not ok:
            self._bag.add(
                error(
                    Stage.RESOLVE,
                    f"{dist.name} {dist.version} does not satisfy pin {pin_name}{constraint}",
                    module=module,
                )
            )


def _satisfies(version: str, constraint: str) -> bool:
    return SpecifierSet(constraint).contains(Version(version), prereleases=True)


def _satisfies_lenient(version: str, constraint: str) -> bool:
    try:
        return _satisfies(version, constraint)
    except InvalidVersion:
        return False


def resolve(manifest: ProjectManifest, toolchain: Optional[Toolchain] = None) -> ResolveResult:
    """Build the dependency graph for `manifest`; raises ResolutionError on any error."""
    return DependencyResolver(manifest, toolchain).resolve()


__all__ = [
    "ModuleNode",
    "DependencyGraph",
    "ResolveResult",
    "ImportRef",
    "DependencyResolver",
    "Distribution",
    "scan_imports",
    "scan_distributions",
    "normalize_dist_name",
    "resolve",
]
