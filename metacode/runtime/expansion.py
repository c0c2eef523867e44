"""Expansion of captures into one ordered, deduplicated program."""

from __future__ import annotations

import ast
from copy import deepcopy
from typing import Callable

from ..constants import DEFAULT_BINDING, NAME_SUFFIX_START
from ..logger import get_logger
from .captures import Capture, CaptureHandle, MetaExpr
from .core import (
    CyclicExpansionError,
    Program,
    Statement,
    UnquoteError,
    _identifier,
)
from .deparsing import Deparser
from .quoting import QuotedBlock, is_unquote_marker, quote
from .resolver import UnquoteResolver

logger = get_logger(__name__)


def _identity_of(target) -> str:
    if isinstance(target, str):
        return target
    if isinstance(target, (Capture, CaptureHandle)):
        return target.identity
    raise TypeError(f"Expected a capture or identity string, got {type(target).__qualname__}")


class _LocalRenamer(ast.NodeTransformer):
    """Rename top-level locals of a captured block, leaving unquote targets alone."""

    def __init__(self, renames: dict[str, str]):
        self.renames = renames

    def visit_Call(self, node):
        if is_unquote_marker(node):
            return node
        return self.generic_visit(node)

    def visit_Name(self, node):
        node.id = self.renames.get(node.id, node.id)
        return node

    def visit_arg(self, node):
        node.arg = self.renames.get(node.arg, node.arg)
        return self.generic_visit(node)

    def _visit_scope(self, node):
        node.name = self.renames.get(node.name, node.name)
        return self.generic_visit(node)

    visit_FunctionDef = _visit_scope
    visit_AsyncFunctionDef = _visit_scope
    visit_ClassDef = _visit_scope


def _as_quoted(replacement, identity):
    """Turn a substitution result into ``(block, env)``."""

    if isinstance(replacement, Capture):
        return replacement.quote_with_env()
    if isinstance(replacement, (CaptureHandle, MetaExpr)):
        return replacement.quote_with_env()
    if isinstance(replacement, (str, ast.AST)):
        replacement = quote(replacement)
    if isinstance(replacement, QuotedBlock):
        return replacement, replacement.env or {}
    raise TypeError(
        f"Substitution for {identity} returned {type(replacement).__qualname__}; "
        "expected a capture, meta_expr or quoted code"
    )


class ExpansionContext:
    """Tracks which captures were expanded, and under which names.

    Reuse one context across several :meth:`expand` calls to share
    upstream statements between the resulting programs. A context is meant
    for exclusive, sequential use.
    """

    def __init__(self, deparser: Deparser | None = None):
        self.deparser = deparser or Deparser()
        self._names: dict[str, str] = {}
        self._done: set[str] = set()
        self._stack: list[str] = []
        self._substitutions: dict[str, Callable] = {}
        self._taken: set[str] = set()
        self._imported: set[str] = set()
        self._pending_imports: set[str] = set()
        self._edges: set[tuple[str, str]] = set()
        self._kinds: dict[str, str] = {}

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        return f"<ExpansionContext expanded={len(self._done)}>"

    # ------------------------------------------------------------------
    # Public API

    def substitute(self, target, factory: Callable) -> None:
        """Replace the expansion of ``target`` within this context only.

        ``factory`` receives the capture's invocation arguments and returns a
        capture, ``meta_expr`` or quoted code to expand in its place. The
        binding name stays that of the original capture.
        """

        if not callable(factory):
            raise TypeError("Substitution factory must be callable")
        identity = _identity_of(target)
        if identity in self._done:
            logger.warning(
                "Substitution for %s registered after it was expanded; it has no effect",
                identity,
            )
        self._substitutions[identity] = factory

    def name_of(self, target) -> str | None:
        """Binding name assigned to ``target`` in this context, if any."""

        return self._names.get(_identity_of(target))

    def is_expanded(self, target) -> bool:
        return _identity_of(target) in self._done

    @property
    def bindings(self) -> dict[str, str]:
        """Identity to binding name for every bound, expanded capture."""

        return {ident: name for ident, name in self._names.items() if ident in self._done}

    @property
    def dependencies(self) -> list[tuple[str, str]]:
        """``(dependency, dependent)`` identity pairs seen so far."""

        return sorted(self._edges)

    @property
    def kinds(self) -> dict[str, str]:
        return dict(self._kinds)

    def expand(self, *roots) -> Program:
        """Expand ``roots`` in order into one program.

        On any error the context is restored to its state before the call
        and no partial program is returned.
        """

        snapshot = self._snapshot()
        program = Program()
        self._pending_imports = set()
        try:
            for root in roots:
                self._expand_root(root, program)
        except Exception:
            self._restore(snapshot)
            raise
        return self._finalize(program)

    # ------------------------------------------------------------------
    # Bookkeeping

    def _snapshot(self):
        return (
            dict(self._names),
            set(self._done),
            set(self._taken),
            set(self._imported),
            set(self._edges),
            dict(self._kinds),
        )

    def _restore(self, snapshot) -> None:
        (
            self._names,
            self._done,
            self._taken,
            self._imported,
            self._edges,
            self._kinds,
        ) = snapshot
        self._stack = []
        self._pending_imports = set()

    def _allocate_name(self, capture: Capture) -> str:
        base = (
            _identifier(capture.name or "")
            or _identifier(capture.identity.rsplit(".", 1)[-1])
            or DEFAULT_BINDING
        )
        return self._fresh_name(base)

    def _fresh_name(self, base: str) -> str:
        candidate = base
        suffix = NAME_SUFFIX_START
        while candidate in self._taken:
            candidate = f"{base}_{suffix}"
            suffix += 1
        self._taken.add(candidate)
        return candidate

    def _rename_locals(self, statement: Statement, owner: str, binding, renames) -> Statement:
        """Give the names a captured block stores fresh names where they are taken.

        ``renames`` maps each top-level name the block stored so far to the
        name it is emitted under, so later statements of the block agree.
        Names bound by imports cannot be renamed; importing over another
        capture's binding is an error.
        """

        if statement.node is None:
            return statement
        for name in sorted(statement.stored() - set(renames)):
            if name == binding or name not in self._taken:
                renames[name] = name
                continue
            if isinstance(statement.node, (ast.Import, ast.ImportFrom)):
                other = next(
                    (ident for ident, bound in self._names.items() if bound == name),
                    None,
                )
                if other is not None and other != owner:
                    raise UnquoteError(
                        f"{owner} imports {name!r}, which is the binding of {other}"
                    )
                renames[name] = name
                continue
            renames[name] = self._fresh_name(name)
            logger.debug("Renamed local %s of %s to %s", name, owner, renames[name])
        active = {old: new for old, new in renames.items() if old != new}
        if not active:
            return statement
        node = _LocalRenamer(active).visit(deepcopy(statement.node))
        return statement.with_node(node)

    def _require_imports(self, modules) -> None:
        for module in modules:
            if module not in self._imported:
                self._pending_imports.add(module)
                self._taken.add(module.split(".")[0])

    def _append(self, sink: Program, statement: Statement) -> None:
        if statement.binding is not None and sink.has_binding(statement.binding):
            return
        if statement.node is not None:
            self._taken.update(statement.stored())
            for sub in ast.walk(statement.node):
                if isinstance(sub, ast.Import):
                    self._imported.update(
                        alias.name for alias in sub.names if alias.asname is None
                    )
        sink.append(statement)

    def _finalize(self, program: Program) -> Program:
        modules = sorted(self._pending_imports - self._imported)
        self._pending_imports = set()
        if not modules:
            return program
        self._imported.update(modules)
        header = [
            Statement(ast.Import(names=[ast.alias(name=module)]))
            for module in modules
        ]
        return Program(header + program.statements)

    # ------------------------------------------------------------------
    # Expansion

    def _expand_root(self, root, program: Program) -> None:
        if isinstance(root, Capture):
            root = root.handle()
        if isinstance(root, CaptureHandle):
            identity = root.identity
            capture = root.capture
            if identity in self._done and not capture.inline:
                name = self._names.get(identity)
                if name is not None:
                    ref = ast.Expr(value=ast.Name(id=name, ctx=ast.Load()))
                    program.append(Statement(ref, identity=identity))
                return
            value = self._reference(root, program, parent=None)
            if capture.inline and value is not None:
                program.append(Statement(ast.Expr(value=value), identity=identity))
            return
        if isinstance(root, MetaExpr):
            block, env = root.quote_with_env()
            self._emit_block(block, env, program)
            return
        if isinstance(root, (str, ast.AST)):
            root = quote(root)
        if isinstance(root, QuotedBlock):
            self._emit_block(root, root.env or {}, program)
            return
        raise TypeError(f"Cannot expand object of type {type(root).__qualname__}")

    def _quote_for(self, handle: CaptureHandle):
        factory = self._substitutions.get(handle.identity)
        if factory is None:
            return handle.quote_with_env()
        logger.debug("Applying substitution for %s", handle.identity)
        replacement = factory(*handle.args, **handle.kwargs)
        return _as_quoted(replacement, handle.identity)

    def _reference(self, handle: CaptureHandle, sink: Program, parent=None):
        """Expand ``handle`` once and return the expression that refers to it.

        The binding name is reserved before dependencies are expanded and the
        capture's own statement is appended after them.
        """

        capture = handle.capture
        identity = handle.identity
        if parent is not None:
            self._edges.add((identity, parent))
            if not capture.bind:
                raise UnquoteError(
                    f"{identity} emits statements without a binding; it has no value to unquote"
                )
        if identity in self._stack:
            start = self._stack.index(identity)
            raise CyclicExpansionError(self._stack[start:] + [identity])
        if identity in self._done and not capture.inline:
            name = self._names.get(identity)
            if name is None:
                raise UnquoteError(f"{identity} has no value expression to reference")
            return ast.Name(id=name, ctx=ast.Load())

        binding = None
        if capture.bind and not capture.inline:
            binding = self._names.get(identity) or self._allocate_name(capture)
            self._names[identity] = binding
        self._kinds[identity] = (
            "inline" if capture.inline else "bound" if capture.bind else "observer"
        )

        self._stack.append(identity)
        try:
            block, env = self._quote_for(handle)
            value = self._emit_block(
                block, env, sink, owner=identity, binding=binding, inline=capture.inline
            )
        finally:
            self._stack.pop()

        if capture.inline:
            if value is None:
                raise UnquoteError(f"{identity} has no value expression to inline")
            return value

        self._done.add(identity)
        if binding is not None and value is None:
            self._names.pop(identity, None)
            if parent is not None:
                raise UnquoteError(f"{identity} has no value expression to reference")
            return None
        logger.debug("Expanded %s as %s", identity, binding)
        if binding is None:
            return None
        return ast.Name(id=binding, ctx=ast.Load())

    def _emit_block(self, block: QuotedBlock, env, sink: Program, owner=None, binding=None, inline=False):
        """Resolve ``block`` statement by statement into ``sink``.

        Returns the resolved value expression when the block has one. With a
        ``binding`` the value is assigned to it; with ``inline`` it is handed
        back instead of emitted.
        """

        resolver = UnquoteResolver(self, sink, env, owner=owner, filename=block.filename)
        last = len(block.statements) - 1
        value = None
        renames: dict[str, str] = {}
        for idx, statement in enumerate(block.statements):
            if owner is not None:
                statement = self._rename_locals(statement, owner, binding, renames)
            resolved = resolver.resolve_statement(statement)
            if not (block.has_value and idx == last):
                self._append(sink, resolved.with_node(resolved.node, identity=owner))
                continue

            value = resolved.node.value
            if binding is not None:
                assign = ast.Assign(
                    targets=[ast.Name(id=binding, ctx=ast.Store())], value=value
                )
                ast.copy_location(assign, resolved.node)
                self._append(
                    sink, resolved.with_node(assign, binding=binding, identity=owner)
                )
            elif inline:
                if resolved.comments or resolved.trailing:
                    notes = resolved.comments + resolved.trailing
                    self._append(sink, Statement(None, comments=notes, identity=owner))
            else:
                self._append(sink, resolved.with_node(resolved.node, identity=owner))
        return value


def expand(*roots, context: ExpansionContext | None = None) -> Program:
    """Expand ``roots`` into a program, with a fresh context unless one is given."""

    if context is None:
        context = ExpansionContext()
    return context.expand(*roots)


__all__ = ["ExpansionContext", "expand"]
