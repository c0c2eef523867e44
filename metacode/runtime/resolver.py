"""Unquote resolution: replace ``uq(...)`` markers with code."""

from __future__ import annotations

import ast
from copy import deepcopy
from typing import TYPE_CHECKING, Any

from ..constants import META_INVOKER_NAME
from .captures import Capture, CaptureHandle, MetaExpr, MetaInvoker
from .core import Statement, UnquoteError
from .quoting import QuotedBlock, is_unquote_marker, marker_target

if TYPE_CHECKING:  # pragma: no cover - only for typing
    from .expansion import ExpansionContext


class _MetaCallRewriter(ast.NodeTransformer):
    """Route every call through the meta-mode invoker."""

    def visit_Call(self, node):
        self.generic_visit(node)
        routed = ast.Call(
            func=ast.Name(id=META_INVOKER_NAME, ctx=ast.Load()),
            args=[node.func, *node.args],
            keywords=node.keywords,
        )
        return ast.copy_location(routed, node)


class _UnquoteTransformer(ast.NodeTransformer):
    def __init__(self, resolver: "UnquoteResolver", namespace: dict[str, Any]):
        self.resolver = resolver
        self.namespace = namespace

    def visit_Call(self, node):
        if not is_unquote_marker(node):
            return self.generic_visit(node)
        target = marker_target(node, self.resolver.filename)
        value = self.resolver.evaluate(target, self.namespace)
        replacement = self.resolver.splice(value, self.namespace)
        return ast.copy_location(replacement, node)


class UnquoteResolver:
    """Resolve the markers of one block against the namespace it closes over.

    Depth-first and left to right. Captures reached through a marker are
    expanded through the owning :class:`ExpansionContext`, which writes
    their statements to ``sink`` before the statement being resolved.
    """

    def __init__(self, context: "ExpansionContext", sink, env, owner=None, filename="<quoted>"):
        self.context = context
        self.sink = sink
        self.owner = owner
        self.filename = filename
        self.namespace = dict(env or {})
        self.namespace[META_INVOKER_NAME] = MetaInvoker()

    def resolve_statement(self, statement: Statement) -> Statement:
        if statement.node is None:
            return statement
        return statement.with_node(self.resolve_node(statement.node))

    def resolve_node(self, node: ast.AST, namespace=None) -> ast.AST:
        tree = deepcopy(node)
        if namespace is None:
            namespace = self.namespace
        tree = _UnquoteTransformer(self, namespace).visit(tree)
        return ast.fix_missing_locations(tree)

    def evaluate(self, target: ast.expr, namespace: dict[str, Any]):
        """Evaluate an unquote target now, in meta mode."""

        expr = ast.Expression(body=_MetaCallRewriter().visit(deepcopy(target)))
        ast.fix_missing_locations(expr)
        code = compile(expr, self.filename, "eval")
        return eval(code, namespace)

    def splice(self, value, namespace) -> ast.expr:
        """Classify an unquote result and return the code that replaces it."""

        if isinstance(value, Capture):
            value = value.handle()
        if isinstance(value, CaptureHandle):
            expr = self.context._reference(value, self.sink, parent=self.owner)
            return expr
        if isinstance(value, MetaExpr):
            block, env = value.quote_with_env()
            return self.inline_block(block, env)
        if isinstance(value, QuotedBlock):
            return self.inline_block(value, value.env or namespace)
        if isinstance(value, ast.expr):
            return self.resolve_node(value, namespace)
        if isinstance(value, ast.AST):
            raise UnquoteError(
                f"Cannot unquote a {type(value).__name__} node; only expressions can be spliced"
            )
        deparsed = self.context.deparser.deparse(value)
        self.context._require_imports(deparsed.imports)
        return deparsed.node

    def inline_block(self, block: QuotedBlock, env) -> ast.expr:
        """Emit a block's leading statements and return its value expression."""

        if not block.has_value:
            raise UnquoteError("Cannot unquote a block that has no value expression")
        value = self.context._emit_block(
            block, env, self.sink, owner=self.owner, inline=True
        )
        return value


__all__ = ["UnquoteResolver"]
