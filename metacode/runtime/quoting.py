"""Quoting: turn Python functions and source text into quoted blocks."""

from __future__ import annotations

import ast
from copy import deepcopy
from dataclasses import dataclass, field
import functools
import inspect
import textwrap
from typing import Any, Iterator

from ..constants import UNQUOTE_NAMES
from .core import QuoteError, Statement


def uq(value):
    """Unquote marker.

    Inside a captured block, ``uq(expr)`` asks the expander to evaluate
    ``expr`` at expansion time and splice the result into the generated code.
    When the block simply runs, it returns its argument unchanged.
    """

    return value


def is_unquote_marker(node: ast.AST) -> bool:
    if not isinstance(node, ast.Call):
        return False
    func = node.func
    if isinstance(func, ast.Name):
        return func.id in UNQUOTE_NAMES
    if isinstance(func, ast.Attribute):
        return func.attr in UNQUOTE_NAMES
    return False


def iter_unquote_markers(tree: ast.AST) -> Iterator[ast.Call]:
    """Yield the outermost unquote markers of ``tree`` in source order."""

    if is_unquote_marker(tree):
        yield tree
        return
    for child in ast.iter_child_nodes(tree):
        yield from iter_unquote_markers(child)


def marker_target(marker: ast.Call, filename="<quoted>") -> ast.expr:
    """Return the single inner expression of an unquote marker."""

    if marker.keywords or len(marker.args) != 1 or isinstance(marker.args[0], ast.Starred):
        line = getattr(marker, "lineno", "?")
        raise QuoteError(
            f"{filename}:{line}: an unquote marker takes exactly one positional argument"
        )
    return marker.args[0]


@dataclass(frozen=True, eq=False)
class QuotedBlock:
    """An ordered sequence of quoted statements whose value is the last one."""

    statements: tuple[Statement, ...]
    has_value: bool = False
    filename: str = "<quoted>"
    env: dict[str, Any] | None = field(default=None, repr=False)

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        return f"<QuotedBlock {len(self.statements)} statements value={self.has_value}>"

    @property
    def value(self) -> ast.expr | None:
        """The block's value expression, if it has one."""

        if not self.has_value:
            return None
        return self.statements[-1].node.value

    @property
    def prefix(self) -> tuple[Statement, ...]:
        """Statements run for effect before the value."""

        if not self.has_value:
            return self.statements
        return self.statements[:-1]

    def markers(self) -> list[ast.Call]:
        found = []
        for st in self.statements:
            if st.node is not None:
                found.extend(iter_unquote_markers(st.node))
        return found

    def to_source(self) -> str:
        lines: list[str] = []
        for st in self.statements:
            lines.extend(st.to_lines())
        return "\n".join(lines) + "\n" if lines else ""


def _is_string_statement(node: ast.stmt) -> bool:
    return (
        isinstance(node, ast.Expr)
        and isinstance(node.value, ast.Constant)
        and isinstance(node.value.value, str)
    )


def _walk_same_scope(node: ast.AST) -> Iterator[ast.AST]:
    """Walk ``node`` without descending into nested function or class scopes."""

    yield node
    if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.Lambda, ast.ClassDef)):
        return
    for child in ast.iter_child_nodes(node):
        yield from _walk_same_scope(child)


def _check_linear(node: ast.stmt, filename: str, final: bool) -> None:
    for sub in _walk_same_scope(node):
        if isinstance(sub, ast.Return) and not (final and sub is node):
            raise QuoteError(
                f"{filename}:{sub.lineno}: 'return' is only supported as the "
                "final statement of a captured block"
            )
        if isinstance(sub, (ast.Global, ast.Nonlocal)):
            raise QuoteError(
                f"{filename}:{sub.lineno}: '{type(sub).__name__.lower()}' "
                "statements cannot be captured"
            )
        if isinstance(sub, (ast.Yield, ast.YieldFrom, ast.Await)):
            raise QuoteError(
                f"{filename}:{sub.lineno}: generator and coroutine blocks cannot be captured"
            )
        if is_unquote_marker(sub):
            marker_target(sub, filename)


def build_block(body: list[ast.stmt], filename="<quoted>", env=None) -> QuotedBlock:
    """Split a statement list into comment-carrying statements and a value.

    Bare string statements at the top level of ``body`` become comments on
    the following statement. Strings after the last real statement become
    its trailing notes.
    """

    statements: list[Statement] = []
    pending: list[str] = []
    for node in body:
        if _is_string_statement(node):
            pending.append(inspect.cleandoc(node.value.value))
            continue
        statements.append(Statement(node, comments=tuple(pending)))
        pending = []

    if pending:
        if statements:
            last = statements[-1]
            statements[-1] = last.with_node(last.node, trailing=last.trailing + tuple(pending))
        else:
            statements.append(Statement(None, comments=tuple(pending)))

    for idx, st in enumerate(statements):
        if st.node is not None:
            _check_linear(st.node, filename, final=idx == len(statements) - 1)

    has_value = False
    if statements and statements[-1].node is not None:
        last = statements[-1]
        if isinstance(last.node, ast.Return):
            if last.node.value is None:
                if last.comments or last.trailing:
                    statements[-1] = last.with_node(None)
                else:
                    statements.pop()
            else:
                expr = ast.Expr(value=last.node.value)
                ast.copy_location(expr, last.node)
                statements[-1] = last.with_node(expr)
                has_value = True
        elif isinstance(last.node, ast.Expr):
            has_value = True

    return QuotedBlock(tuple(statements), has_value, filename, env)


def _find_lambda(tree: ast.AST, filename: str) -> ast.Lambda:
    lambdas = [node for node in ast.walk(tree) if isinstance(node, ast.Lambda)]
    if len(lambdas) != 1:
        raise QuoteError(
            f"{filename}: cannot tell which lambda to capture on its source line; "
            "use a def function instead"
        )
    return lambdas[0]


@functools.lru_cache(maxsize=None)
def _quote_code(code) -> QuotedBlock:
    filename = code.co_filename
    try:
        source = inspect.getsource(code)
    except (OSError, TypeError) as exc:
        raise QuoteError(f"Source of {code.co_name!r} is not available for quoting") from exc

    source = textwrap.dedent(source)
    try:
        tree = ast.parse(source, filename=filename)
    except SyntaxError:
        if code.co_name != "<lambda>":
            raise QuoteError(f"Could not parse the source of {code.co_name!r}") from None
        try:
            tree = ast.parse(f"(\n{source.strip().rstrip(',')}\n)", filename=filename)
        except SyntaxError:
            raise QuoteError(
                f"{filename}: could not isolate lambda source; use a def function instead"
            ) from None
        ast.increment_lineno(tree, -1)
    ast.increment_lineno(tree, code.co_firstlineno - 1)

    if code.co_name == "<lambda>":
        fn_node = _find_lambda(tree, filename)
        body = [ast.copy_location(ast.Expr(value=fn_node.body), fn_node.body)]
        return build_block(body, filename)

    for node in ast.walk(tree):
        if isinstance(node, ast.AsyncFunctionDef) and node.name == code.co_name:
            raise QuoteError(f"Coroutine function {code.co_name!r} cannot be captured")
        if isinstance(node, ast.FunctionDef) and node.name == code.co_name:
            return build_block(node.body, filename)
    raise QuoteError(f"{filename}: no definition of {code.co_name!r} found in its source")


def quote_function(fn) -> QuotedBlock:
    """Quote the body of ``fn`` without running it.

    The tree is parsed once per code object and cached, so quoting the same
    function again is constant time.
    """

    fn = inspect.unwrap(fn)
    code = getattr(fn, "__code__", None)
    if code is None:
        raise QuoteError(f"Cannot quote {fn!r}: it is not a Python function")
    return _quote_code(code)


def quote(source, env=None, filename="<quoted>") -> QuotedBlock:
    """Quote literal code, such as setup statements for a generated script.

    ``source`` may be a string, an ``ast.Module`` or a single statement.
    ``env`` supplies names referenced by unquote markers inside it.
    """

    if isinstance(source, QuotedBlock):
        return source
    if isinstance(source, str):
        try:
            tree = ast.parse(textwrap.dedent(source), filename=filename)
        except SyntaxError as exc:
            raise QuoteError(f"{filename}: cannot quote invalid source: {exc.msg}") from exc
        body = tree.body
    elif isinstance(source, ast.Module):
        body = deepcopy(source.body)
    elif isinstance(source, ast.stmt):
        body = [deepcopy(source)]
    elif isinstance(source, ast.expr):
        body = [ast.Expr(value=deepcopy(source))]
    else:
        raise TypeError(f"Cannot quote object of type {type(source).__qualname__}")
    return build_block(body, filename, dict(env) if env else None)


def function_env(fn, args=(), kwargs=None) -> dict[str, Any]:
    """Build the namespace unquote targets of ``fn`` are evaluated in.

    Globals, then closure variables, then the bound call arguments.
    """

    fn = inspect.unwrap(fn)
    env = dict(fn.__globals__)
    code = fn.__code__
    for name, cell in zip(code.co_freevars, fn.__closure__ or ()):
        try:
            env[name] = cell.cell_contents
        except ValueError:
            continue
    try:
        bound = inspect.signature(fn).bind_partial(*args, **(kwargs or {}))
    except TypeError as exc:
        raise TypeError(f"{fn.__qualname__}: {exc}") from None
    bound.apply_defaults()
    env.update(bound.arguments)
    return env


__all__ = [
    "QuotedBlock",
    "build_block",
    "function_env",
    "is_unquote_marker",
    "iter_unquote_markers",
    "marker_target",
    "quote",
    "quote_function",
    "uq",
]
