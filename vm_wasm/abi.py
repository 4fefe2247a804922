"""
abi.py — static ABI extraction from the contract entry module.

Exported methods are top-level functions (sync or async) carrying exactly one
kind marker. Markers are matched by the last segment of the decorator name,
so all of these are recognized:

    @view                     def total() -> int: ...
    @near.call                def transfer(to: str, amount: int) -> None: ...
    @call(payable=True)       def deposit() -> None: ...
    @init                     def new(owner: str) -> None: ...

Type tags are the normalized source of each annotation (`str`,
`List[str]`, `Optional[int]`, `int | None`); string annotations are parsed
first. The source is never imported or executed.

The JSON form is exactly:

    {"methods": [{"name": ..., "kind": ..., "params": [{"name": ..., "type": ...}], "returns": ...}]}
"""

from __future__ import annotations

import ast
import json
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from .diagnostics import Diagnostic, DiagnosticBag, Stage, error, warning
from .errors import AbiError
from .logging import get_logger
from .resolver import ModuleNode
from .utils import sha3_256_hex

log = get_logger(__name__)

KIND_VIEW = "view"
KIND_CALL = "call"
KIND_INIT = "init"
KINDS = (KIND_VIEW, KIND_CALL, KIND_INIT)

UNKNOWN_TYPE = "unknown"
_NEVER_RETURNS = frozenset({"NoReturn", "Never"})

FunctionNode = Union[ast.FunctionDef, ast.AsyncFunctionDef]


# ------------------------------ Model --------------------------------------- #


@dataclass(frozen=True)
class AbiParam:
    name: str
    type: str

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "type": self.type}


@dataclass(frozen=True)
class AbiMethod:
    name: str
    kind: str
    params: Tuple[AbiParam, ...] = ()
    returns: Optional[str] = None
    panics_only: bool = False
    line: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "params": [p.to_dict() for p in self.params],
            "returns": self.returns,
        }


@dataclass(frozen=True)
class AbiDescriptor:
    methods: Tuple[AbiMethod, ...]
    module: str = ""
    source_digest: str = ""

    @property
    def init(self) -> Optional[AbiMethod]:
        for m in self.methods:
            if m.kind == KIND_INIT:
                return m
        return None

    def by_kind(self, kind: str) -> List[AbiMethod]:
        return [m for m in self.methods if m.kind == kind]

    def method(self, name: str) -> AbiMethod:
        for m in self.methods:
            if m.name == name:
                return m
        raise KeyError(name)

    def __iter__(self) -> Iterator[AbiMethod]:
        return iter(self.methods)

    def __len__(self) -> int:
        return len(self.methods)

    def to_dict(self) -> Dict[str, Any]:
        return {"methods": [m.to_dict() for m in self.methods]}

    def to_json(self, *, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False) + "\n"


# ------------------------------ AST helpers --------------------------------- #


def _dotted_name(node: ast.AST) -> Optional[str]:
    """Dotted name of a decorator target, e.g. near.view → 'near.view'."""
    if isinstance(node, ast.Attribute):
        base = _dotted_name(node.value)
        return node.attr if base is None else f"{base}.{node.attr}"
    if isinstance(node, ast.Name):
        return node.id
    return None


def decorator_kinds(fn: FunctionNode) -> List[str]:
    kinds = []
    for deco in fn.decorator_list:
        target = deco.func if isinstance(deco, ast.Call) else deco
        dotted = _dotted_name(target)
        if dotted and dotted.rsplit(".", 1)[-1] in KINDS:
            kinds.append(dotted.rsplit(".", 1)[-1])
    return kinds


def _is_type_expr(node: ast.AST, *, in_subscript: bool = False) -> bool:
    if isinstance(node, (ast.Name, ast.Attribute)):
        return _dotted_name(node) is not None
    if isinstance(node, ast.Constant):
        if node.value is None:
            return True
        if node.value is Ellipsis:
            return in_subscript
        # Literal["x"], Literal[1] and friends
        return in_subscript and isinstance(node.value, (str, int, bytes, bool))
    if isinstance(node, ast.Subscript):
        return _is_type_expr(node.value) and _is_type_expr(node.slice, in_subscript=True)
    if isinstance(node, (ast.Tuple, ast.List)):
        return in_subscript and all(_is_type_expr(e, in_subscript=True) for e in node.elts)
    if isinstance(node, ast.BinOp) and isinstance(node.op, ast.BitOr):
        return _is_type_expr(node.left) and _is_type_expr(node.right)
    return False


def type_tag(annotation: ast.expr) -> str:
    """Normalized source text of an annotation; raises ValueError if it is not a type."""
    if isinstance(annotation, ast.Constant) and isinstance(annotation.value, str):
        try:
            annotation = ast.parse(annotation.value.strip(), mode="eval").body
        except SyntaxError as exc:
            raise ValueError(f"string annotation does not parse: {annotation.value!r}") from exc
    if not _is_type_expr(annotation):
        raise ValueError(f"not a type expression: {ast.unparse(annotation)}")
    return ast.unparse(annotation)


def _returns_value(fn: FunctionNode) -> bool:
    """True if any `return <expr>` in fn's own body yields something other than None."""
    todo: List[ast.AST] = list(fn.body)
    while todo:
        node = todo.pop()
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef, ast.Lambda)):
            continue
        if isinstance(node, ast.Return) and node.value is not None:
            if not (isinstance(node.value, ast.Constant) and node.value.value is None):
                return True
        todo.extend(ast.iter_child_nodes(node))
    return False


# ------------------------------ Extraction ---------------------------------- #


class _Extractor:
    def __init__(self, module: str):
        self.module = module
        self.bag = DiagnosticBag()

    def _err(self, msg: str, line: Optional[int]) -> None:
        self.bag.add(error(Stage.ABI, msg, module=self.module, line=line))

    def _warn(self, msg: str, line: Optional[int]) -> None:
        self.bag.add(warning(Stage.ABI, msg, module=self.module, line=line))

    def run(self, tree: ast.Module) -> List[AbiMethod]:
        methods: List[AbiMethod] = []
        seen: Dict[str, int] = {}
        init_line: Optional[int] = None

        for stmt in tree.body:
            if isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef)):
                kinds = decorator_kinds(stmt)
                self._check_nested(stmt.body)
                if not kinds:
                    continue
                if len(kinds) > 1:
                    self._err(f"{stmt.name}: more than one kind marker ({', '.join(kinds)})", stmt.lineno)
                    continue
                kind = kinds[0]
                if stmt.name in seen:
                    self._err(f"{stmt.name}: exported more than once (first at line {seen[stmt.name]})", stmt.lineno)
                    continue
                seen[stmt.name] = stmt.lineno
                if kind == KIND_INIT:
                    if init_line is not None:
                        self._err(f"{stmt.name}: second init method (first at line {init_line})", stmt.lineno)
                        continue
                    init_line = stmt.lineno
                method = self._method(stmt, kind)
                if method is not None:
                    methods.append(method)
            elif isinstance(stmt, ast.ClassDef):
                self._check_nested(stmt.body, owner=stmt.name)
            else:
                self._check_nested([stmt])
        return methods

    def _check_nested(self, body: Sequence[ast.stmt], owner: Optional[str] = None) -> None:
        """Warn about marked functions that are not module-level."""
        todo: List[ast.AST] = list(body)
        while todo:
            node = todo.pop()
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)) and decorator_kinds(node):
                where = f"method of {owner}" if owner else "nested function"
                self._warn(f"{node.name}: marked {where} is not exported; only module-level functions are", node.lineno)
            todo.extend(ast.iter_child_nodes(node))

    def _method(self, fn: FunctionNode, kind: str) -> Optional[AbiMethod]:
        args = fn.args
        ok = True
        if args.vararg is not None:
            self._err(f"{fn.name}: *{args.vararg.arg} is not supported in exported methods", fn.lineno)
            ok = False
        if args.kwarg is not None:
            self._err(f"{fn.name}: **{args.kwarg.arg} is not supported in exported methods", fn.lineno)
            ok = False

        params: List[AbiParam] = []
        for arg in [*args.posonlyargs, *args.args, *args.kwonlyargs]:
            if arg.annotation is None:
                self._warn(f"{fn.name}: parameter '{arg.arg}' has no annotation; typed as {UNKNOWN_TYPE}", arg.lineno)
                params.append(AbiParam(arg.arg, UNKNOWN_TYPE))
                continue
            try:
                params.append(AbiParam(arg.arg, type_tag(arg.annotation)))
            except ValueError as exc:
                self._err(f"{fn.name}: parameter '{arg.arg}': {exc}", arg.lineno)
                ok = False

        returns: Optional[str] = None
        panics_only = False
        ann = fn.returns
        if ann is not None:
            if isinstance(ann, ast.Constant) and isinstance(ann.value, str):
                try:
                    ann = ast.parse(ann.value.strip(), mode="eval").body
                except SyntaxError:
                    pass  # reported by type_tag below
            dotted = _dotted_name(ann)
            if isinstance(ann, ast.Constant) and ann.value is None:
                returns = None
            elif dotted is not None and dotted.rsplit(".", 1)[-1] in _NEVER_RETURNS:
                panics_only = True
            else:
                try:
                    returns = type_tag(fn.returns)
                except ValueError as exc:
                    self._err(f"{fn.name}: return annotation: {exc}", fn.lineno)
                    ok = False
        elif _returns_value(fn):
            self._warn(f"{fn.name}: returns a value but has no return annotation; typed as {UNKNOWN_TYPE}", fn.lineno)
            returns = UNKNOWN_TYPE

        if not ok:
            return None
        return AbiMethod(fn.name, kind, tuple(params), returns, panics_only, fn.lineno)


def extract_abi_from_source(
    source: Union[str, bytes],
    module: str = "contract",
    *,
    digest: Optional[str] = None,
) -> Tuple[AbiDescriptor, List[Diagnostic]]:
    """
    Extract the ABI of one module's source.

    Returns (descriptor, warnings). Raises AbiError with every collected
    diagnostic when any method has an unsupported shape.
    """
    raw = source.encode("utf-8") if isinstance(source, str) else bytes(source)
    try:
        tree = ast.parse(raw, filename=f"<{module}>")
    except SyntaxError as exc:
        diag = error(Stage.ABI, f"syntax error: {exc.msg}", module=module, line=exc.lineno)
        raise AbiError(f"cannot parse {module}: {exc.msg}", diagnostics=[diag], module=module) from exc

    ext = _Extractor(module)
    methods = ext.run(tree)
    if ext.bag.has_errors():
        errs = ext.bag.errors
        raise AbiError(
            f"{len(errs)} unsupported method shape(s) in {module}: {errs[0].message}",
            diagnostics=list(ext.bag),
            module=module,
        )
    descriptor = AbiDescriptor(
        methods=tuple(methods),
        module=module,
        source_digest=digest if digest is not None else sha3_256_hex(raw),
    )
    log.info("extracted abi", extra={"contract_module": module, "methods": len(methods)})
    return descriptor, list(ext.bag)


def extract_abi(node: ModuleNode) -> Tuple[AbiDescriptor, List[Diagnostic]]:
    """ABI of a resolved module, tagged with the digest captured at resolution."""
    return extract_abi_from_source(node.source, node.name, digest=node.digest)


__all__ = [
    "KINDS",
    "UNKNOWN_TYPE",
    "AbiParam",
    "AbiMethod",
    "AbiDescriptor",
    "decorator_kinds",
    "type_tag",
    "extract_abi",
    "extract_abi_from_source",
]
