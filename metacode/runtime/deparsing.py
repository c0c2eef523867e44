"""Literal deparse rules: turn plain runtime values back into Python code.

Every supported kind has exactly one canonical form. Compound values are
rebuilt through their constructor, which is why some forms are verbose:

==========================  ==================================================
Kind                        Canonical form
==========================  ==================================================
None, bool, int, str, bytes the Python literal
float                       literal, or ``float('nan')`` / ``float('inf')`` /
                            ``float('-inf')``
complex                     literal, e.g. ``(1+2j)``
tuple, list, dict           display of the deparsed items
set, frozenset              ``{1, 2}`` / ``set()`` / ``frozenset({1, 2})``
range                       ``range(start, stop, step)``
datetime.date               ``datetime.date(y, m, d)``
datetime.datetime           ``datetime.datetime(y, m, d, H, M, S, us)`` plus
                            ``tzinfo=`` for fixed-offset zones
datetime.time               ``datetime.time(H, M, S, us)`` plus ``tzinfo=``
datetime.timedelta          ``datetime.timedelta(days=, seconds=, microseconds=)``
decimal.Decimal             ``decimal.Decimal('<str>')``
fractions.Fraction          ``fractions.Fraction(numerator, denominator)``
pathlib paths               ``pathlib.Path('<str>')`` for concrete paths,
                            ``pathlib.PurePosixPath('<str>')`` and
                            ``pathlib.PureWindowsPath('<str>')`` for pure ones
==========================  ==================================================

Negative numbers, ``-0.0`` and pure imaginaries with a negative part are
built as a unary minus applied to the positive literal, never as a negative
constant. The unparser then parenthesizes them wherever the surrounding
operator binds tighter, e.g. ``(-5) ** 2`` or ``(-5).bit_length()``.

Lookup is by exact type unless a rule was registered with ``subclasses=True``,
so an ``IntEnum`` member is rejected rather than deparsed as a bare integer.
"""

from __future__ import annotations

import ast
from dataclasses import dataclass
import datetime
import decimal
import fractions
import math
import pathlib
from typing import Any, Callable

from .core import UnquoteError


@dataclass(frozen=True)
class DeparseRule:
    """How to rebuild one kind of value as an expression tree."""

    kind: type
    rule: Callable[[Any, Callable[[Any], ast.expr]], ast.expr]
    imports: tuple[str, ...] = ()
    subclasses: bool = False


@dataclass(frozen=True)
class Deparsed:
    """A deparsed literal and the modules its canonical form needs."""

    node: ast.expr
    imports: frozenset[str] = frozenset()


DEPARSE_RULES: dict[type, DeparseRule] = {}


def _dotted(path: str) -> ast.expr:
    parts = path.split(".")
    node: ast.expr = ast.Name(id=parts[0], ctx=ast.Load())
    for attr in parts[1:]:
        node = ast.Attribute(value=node, attr=attr, ctx=ast.Load())
    return node


def _call(path: str, args=(), keywords=None) -> ast.Call:
    return ast.Call(
        func=_dotted(path),
        args=list(args),
        keywords=[
            ast.keyword(arg=key, value=val) for key, val in (keywords or {}).items()
        ],
    )


def _negated(node: ast.expr) -> ast.UnaryOp:
    return ast.UnaryOp(op=ast.USub(), operand=node)


def _constant(value, recurse):
    return ast.Constant(value=value)


def _int(value, recurse):
    if value < 0:
        return _negated(ast.Constant(value=-value))
    return ast.Constant(value=value)


def _float(value, recurse):
    if math.isnan(value):
        return _call("float", [ast.Constant(value="nan")])
    if math.isinf(value):
        return _call("float", [ast.Constant(value="inf" if value > 0 else "-inf")])
    if math.copysign(1.0, value) < 0:
        return _negated(ast.Constant(value=-value))
    return ast.Constant(value=value)


def _complex(value, recurse):
    if any(math.isnan(part) or math.isinf(part) for part in (value.real, value.imag)):
        return _call("complex", [recurse(value.real), recurse(value.imag)])
    # A +0.0 real part renders without parentheses, as in ``-2j``.
    if math.copysign(1.0, value.real) > 0 and value.real == 0:
        if math.copysign(1.0, value.imag) < 0:
            return _negated(ast.Constant(value=complex(0.0, -value.imag)))
    return ast.Constant(value=value)


def _tuple(value, recurse):
    return ast.Tuple(elts=[recurse(item) for item in value], ctx=ast.Load())


def _list(value, recurse):
    return ast.List(elts=[recurse(item) for item in value], ctx=ast.Load())


def _dict(value, recurse):
    return ast.Dict(
        keys=[recurse(key) for key in value],
        values=[recurse(item) for item in value.values()],
    )


def _sorted_items(value):
    try:
        return sorted(value)
    except TypeError:
        return sorted(value, key=repr)


def _set(value, recurse):
    if not value:
        return _call("set")
    return ast.Set(elts=[recurse(item) for item in _sorted_items(value)])


def _frozenset(value, recurse):
    if not value:
        return _call("frozenset")
    return _call("frozenset", [_set(value, recurse)])


def _range(value, recurse):
    return _call(
        "range",
        [ast.Constant(value.start), ast.Constant(value.stop), ast.Constant(value.step)],
    )


def _tzinfo(tz, recurse):
    if tz is None:
        return None
    if tz is datetime.timezone.utc:
        return _dotted("datetime.timezone.utc")
    if isinstance(tz, datetime.timezone):
        offset = tz.utcoffset(None)
        return _call("datetime.timezone", [_timedelta(offset, recurse)])
    raise UnquoteError(
        f"Cannot deparse tzinfo {tz!r}; only fixed-offset timezones are supported"
    )


def _date(value, recurse):
    return _call(
        "datetime.date",
        [ast.Constant(value.year), ast.Constant(value.month), ast.Constant(value.day)],
    )


def _datetime(value, recurse):
    args = [
        ast.Constant(getattr(value, field))
        for field in ("year", "month", "day", "hour", "minute", "second", "microsecond")
    ]
    tz = _tzinfo(value.tzinfo, recurse)
    return _call("datetime.datetime", args, {"tzinfo": tz} if tz is not None else None)


def _time(value, recurse):
    args = [
        ast.Constant(getattr(value, field))
        for field in ("hour", "minute", "second", "microsecond")
    ]
    tz = _tzinfo(value.tzinfo, recurse)
    return _call("datetime.time", args, {"tzinfo": tz} if tz is not None else None)


def _timedelta(value, recurse):
    return _call(
        "datetime.timedelta",
        keywords={
            "days": ast.Constant(value.days),
            "seconds": ast.Constant(value.seconds),
            "microseconds": ast.Constant(value.microseconds),
        },
    )


def _decimal(value, recurse):
    return _call("decimal.Decimal", [ast.Constant(str(value))])


def _fraction(value, recurse):
    return _call(
        "fractions.Fraction",
        [ast.Constant(value.numerator), ast.Constant(value.denominator)],
    )


def _path(value, recurse):
    if isinstance(value, pathlib.Path):
        cls = "Path"
    elif isinstance(value, pathlib.PureWindowsPath):
        cls = "PureWindowsPath"
    else:
        cls = "PurePosixPath"
    return _call(f"pathlib.{cls}", [ast.Constant(str(value))])


def register_deparse_rule(kind, rule, *, imports=(), subclasses=False, replace=False):
    """Register a canonical form for values of ``kind`` in the global registry."""

    if not isinstance(kind, type):
        raise TypeError(f"Deparse rules are keyed by type, got {kind!r}")
    if kind in DEPARSE_RULES and not replace:
        raise ValueError(f"Duplicate deparse rule for {kind.__name__}")
    DEPARSE_RULES[kind] = DeparseRule(kind, rule, tuple(imports), subclasses)


def get_registered_deparse_rules():
    """Return a snapshot of the currently registered rules."""

    return dict(DEPARSE_RULES)


def _register_builtin_rules():
    for kind in (type(None), bool, str, bytes):
        register_deparse_rule(kind, _constant, replace=True)
    register_deparse_rule(int, _int, replace=True)
    register_deparse_rule(float, _float, replace=True)
    register_deparse_rule(complex, _complex, replace=True)
    register_deparse_rule(tuple, _tuple, replace=True)
    register_deparse_rule(list, _list, replace=True)
    register_deparse_rule(dict, _dict, replace=True)
    register_deparse_rule(set, _set, replace=True)
    register_deparse_rule(frozenset, _frozenset, replace=True)
    register_deparse_rule(range, _range, replace=True)
    register_deparse_rule(datetime.date, _date, imports=("datetime",), replace=True)
    register_deparse_rule(datetime.datetime, _datetime, imports=("datetime",), replace=True)
    register_deparse_rule(datetime.time, _time, imports=("datetime",), replace=True)
    register_deparse_rule(datetime.timedelta, _timedelta, imports=("datetime",), replace=True)
    register_deparse_rule(decimal.Decimal, _decimal, imports=("decimal",), replace=True)
    register_deparse_rule(fractions.Fraction, _fraction, imports=("fractions",), replace=True)
    register_deparse_rule(
        pathlib.PurePath, _path, imports=("pathlib",), subclasses=True, replace=True
    )


def reset_deparse_rules():
    """Restore the registry to the built-in rules only."""

    DEPARSE_RULES.clear()
    _register_builtin_rules()


class Deparser:
    """Resolve values to canonical literal trees using a set of rules."""

    def __init__(self, rules=None):
        self.rules = dict(DEPARSE_RULES if rules is None else rules)

    def register(self, kind, rule, *, imports=(), subclasses=False):
        """Add or replace a rule on this deparser only."""

        self.rules[kind] = DeparseRule(kind, rule, tuple(imports), subclasses)

    def find_rule(self, value):
        rule = self.rules.get(type(value))
        if rule is not None:
            return rule
        for kind in type(value).__mro__[1:]:
            candidate = self.rules.get(kind)
            if candidate is not None and candidate.subclasses:
                return candidate
        return None

    def supports(self, value) -> bool:
        return self.find_rule(value) is not None

    def deparse(self, value) -> Deparsed:
        """Return the canonical literal for ``value``.

        Raises :class:`UnquoteError` when no rule covers the value or one of
        its items.
        """

        imports: set[str] = set()
        active: set[int] = set()

        def recurse(item):
            rule = self.find_rule(item)
            if rule is None:
                raise UnquoteError(
                    f"Cannot unquote value of type {type(item).__qualname__}: "
                    "no deparse rule is registered for it"
                )
            key = id(item)
            if key in active:
                raise UnquoteError("Cannot unquote a self-referencing container")
            active.add(key)
            try:
                node = rule.rule(item, recurse)
            finally:
                active.discard(key)
            imports.update(rule.imports)
            return node

        node = recurse(value)
        return Deparsed(ast.fix_missing_locations(node), frozenset(imports))


_register_builtin_rules()


def deparse(value) -> Deparsed:
    """Deparse ``value`` with the global rule registry."""

    return Deparser().deparse(value)


__all__ = [
    "DEPARSE_RULES",
    "DeparseRule",
    "Deparsed",
    "Deparser",
    "deparse",
    "get_registered_deparse_rules",
    "register_deparse_rule",
    "reset_deparse_rules",
]
