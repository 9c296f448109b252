"""Static source checks run before a unit executes.

The loader and proxies only see what flows through them. The guard rejects
the syntax that would let unit code step around them: reaching into
function globals, frames, class hierarchies, or swallowing the timeout
interrupt with a bare ``except`` (or ``except BaseException``).
"""

from __future__ import annotations

import ast
from dataclasses import dataclass

from nativegate.kernel.errors import SandboxViolation


INTROSPECTION_NAMES = frozenset(
    {
        "__globals__",
        "__builtins__",
        "__subclasses__",
        "__bases__",
        "__base__",
        "__mro__",
        "__code__",
        "__closure__",
        "cell_contents",
        "__defaults__",
        "__kwdefaults__",
        "__func__",
        "__self__",
        "__dict__",
        "__loader__",
        "__spec__",
        "__getattribute__",
        "__reduce__",
        "__reduce_ex__",
        "__init_subclass__",
        "__import__",
        "mro",
        "f_globals",
        "f_locals",
        "f_builtins",
        "f_back",
        "f_code",
        "gi_frame",
        "gi_code",
        "cr_frame",
        "cr_code",
        "ag_frame",
        "ag_code",
        "tb_frame",
        "tb_next",
    }
)


@dataclass(frozen=True)
class Violation:
    kind: str
    detail: str
    lineno: int


class SourceGuard(ast.NodeVisitor):
    def __init__(self) -> None:
        self.violations: list[Violation] = []

    def _flag(self, kind: str, detail: str, node: ast.AST) -> None:
        self.violations.append(Violation(kind, detail, int(getattr(node, "lineno", 0) or 0)))

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr in INTROSPECTION_NAMES:
            self._flag("attribute", node.attr, node)
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id in INTROSPECTION_NAMES:
            self._flag("name", node.id, node)

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> None:
        if node.type is None:
            self._flag("bare_except", "except:", node)
        else:
            caught = node.type.elts if isinstance(node.type, ast.Tuple) else [node.type]
            for item in caught:
                if isinstance(item, ast.Name) and item.id == "BaseException":
                    self._flag("bare_except", "except BaseException", node)
        self.generic_visit(node)


def check_source(source_text: str, *, filename: str = "<unit>") -> ast.Module:
    """Parse and vet unit source; raise SandboxViolation on any finding."""
    try:
        tree = ast.parse(source_text, filename=filename, mode="exec")
    except SyntaxError as exc:
        raise SandboxViolation(f"{filename}: syntax error at line {exc.lineno}: {exc.msg}") from exc
    guard = SourceGuard()
    guard.visit(tree)
    if guard.violations:
        first = guard.violations[0]
        summary = ", ".join(f"{v.kind}:{v.detail}@{v.lineno}" for v in guard.violations[:5])
        raise SandboxViolation(
            f"{filename}: forbidden {first.kind} {first.detail!r} at line {first.lineno} ({summary})"
        )
    return tree
