"""Core data structures for metacode: generated statements, programs and errors."""

from __future__ import annotations

import ast
from dataclasses import dataclass
import hashlib
import keyword
import re
from typing import Iterable, Iterator


class MetaError(RuntimeError):
    """Base class for errors raised while quoting or expanding code."""


class QuoteError(MetaError):
    """A block cannot be turned into a quoted tree."""


class UnquoteError(MetaError):
    """An unquote target has no literal or expression form."""


class CyclicExpansionError(MetaError):
    """Captures depend on each other and cannot be linearized."""

    def __init__(self, cycle: Iterable[str]):
        self.cycle = tuple(cycle)
        path = " -> ".join(self.cycle)
        super().__init__(f"Cyclic expansion: {path}")


class InvalidMetaExprError(MetaError):
    """A guarded capture's factory returned a plain value in meta mode."""


def _stable_id(identity: str) -> str:
    token = identity.encode("utf-8")
    return hashlib.blake2s(token, digest_size=6).hexdigest()


def _memo_key(args: tuple, kwargs: dict):
    """Key normal-mode invocation arguments by value and type.

    Returns ``None`` when an argument is unhashable; such calls are not
    memoized. Types are part of the key so ``1``, ``1.0`` and ``True`` stay
    distinct.
    """

    key = (
        tuple((type(arg), arg) for arg in args),
        tuple(sorted((name, type(arg), arg) for name, arg in kwargs.items())),
    )
    try:
        hash(key)
    except TypeError:
        return None
    return key


def _identifier(text: str) -> str:
    """Turn an arbitrary identity into a valid, non-keyword Python identifier."""

    ident = re.sub(r"\W+", "_", text).strip("_")
    if not ident:
        return ""
    if ident[0].isdigit():
        ident = f"_{ident}"
    if keyword.iskeyword(ident):
        ident = f"{ident}_"
    return ident


def _stored_names(node: ast.stmt) -> set[str]:
    """Names bound at top level by a statement."""

    names: set[str] = set()
    if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
        names.add(node.name)
        return names
    if isinstance(node, (ast.Import, ast.ImportFrom)):
        for alias in node.names:
            bound = alias.asname or alias.name.split(".")[0]
            if bound != "*":
                names.add(bound)
        return names
    for sub in ast.walk(node):
        if isinstance(sub, (ast.FunctionDef, ast.AsyncFunctionDef, ast.Lambda, ast.ClassDef)):
            continue
        if isinstance(sub, ast.Name) and isinstance(sub.ctx, (ast.Store, ast.Del)):
            names.add(sub.id)
    return names


def _loaded_names(node: ast.AST) -> set[str]:
    return {
        sub.id
        for sub in ast.walk(node)
        if isinstance(sub, ast.Name) and isinstance(sub.ctx, ast.Load)
    }


def _format_comment(text: str) -> list[str]:
    lines = []
    for line in text.splitlines() or [""]:
        line = line.rstrip()
        lines.append(f"# {line}" if line else "#")
    return lines


@dataclass(frozen=True, eq=False)
class Statement:
    """One top-level statement of generated code with its attached comments."""

    node: ast.stmt | None
    comments: tuple[str, ...] = ()
    trailing: tuple[str, ...] = ()
    binding: str | None = None
    identity: str | None = None

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        code = ast.unparse(self.node) if self.node is not None else "<comment>"
        return f"Statement({code!r}, binding={self.binding!r})"

    def _key(self):
        dumped = ast.dump(self.node) if self.node is not None else None
        return (dumped, self.comments, self.trailing, self.binding)

    def __eq__(self, other):
        if not isinstance(other, Statement):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self):
        return hash(self._key())

    @property
    def comment(self) -> str | None:
        """Leading comments joined into a single block, or ``None``."""

        if not self.comments:
            return None
        return "\n".join(self.comments)

    def with_node(self, node: ast.stmt | None, **changes) -> "Statement":
        fields = {
            "comments": self.comments,
            "trailing": self.trailing,
            "binding": self.binding,
            "identity": self.identity,
        }
        fields.update(changes)
        return Statement(node, **fields)

    def references(self) -> set[str]:
        if self.node is None:
            return set()
        return _loaded_names(self.node)

    def stored(self) -> set[str]:
        if self.node is None:
            return set()
        return _stored_names(self.node)

    def to_lines(self) -> list[str]:
        lines: list[str] = []
        for comment in self.comments:
            lines.extend(_format_comment(comment))
        if self.node is not None:
            lines.extend(ast.unparse(self.node).splitlines())
        for note in self.trailing:
            lines.extend(_format_comment(note))
        return lines


class Program:
    """Ordered output of an expansion: top-level statements plus comments."""

    def __init__(self, statements: Iterable[Statement] = ()):
        self.statements: list[Statement] = []
        self._bound: set[str] = set()
        self.extend(statements)

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"<Program {len(self.statements)} statements>"

    def __iter__(self) -> Iterator[Statement]:
        return iter(self.statements)

    def __len__(self) -> int:
        return len(self.statements)

    def __getitem__(self, index):
        return self.statements[index]

    def __eq__(self, other):
        if not isinstance(other, Program):
            return NotImplemented
        return self.statements == other.statements

    def append(self, statement: Statement) -> None:
        self.statements.append(statement)
        if statement.binding is not None:
            self._bound.add(statement.binding)

    def extend(self, statements: Iterable[Statement]) -> None:
        for statement in statements:
            self.append(statement)

    def has_binding(self, name: str) -> bool:
        """Whether some statement already assigns the capture binding ``name``."""

        return name in self._bound

    @property
    def bindings(self) -> dict[str, int]:
        """Map each assigned capture binding to its statement index."""

        return {
            st.binding: idx
            for idx, st in enumerate(self.statements)
            if st.binding is not None
        }

    def pairs(self) -> list[tuple[str | None, ast.stmt | None]]:
        """Return ``(comment, statement)`` pairs for a rendering layer."""

        return [(st.comment, st.node) for st in self.statements]

    def to_source(self) -> str:
        """Render the program as Python source, comments included."""

        lines: list[str] = []
        for st in self.statements:
            lines.extend(st.to_lines())
        return "\n".join(lines) + "\n" if lines else ""

    def to_module(self) -> ast.Module:
        """Return the program as an ``ast.Module`` with comments dropped."""

        body = [st.node for st in self.statements if st.node is not None]
        module = ast.Module(body=body, type_ignores=[])
        return ast.fix_missing_locations(module)


__all__ = [
    "CyclicExpansionError",
    "InvalidMetaExprError",
    "MetaError",
    "Program",
    "QuoteError",
    "Statement",
    "UnquoteError",
    "_memo_key",
    "_identifier",
    "_loaded_names",
    "_stable_id",
    "_stored_names",
]
