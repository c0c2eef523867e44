"""Captured computations that can be evaluated for a value or quoted for code."""

from __future__ import annotations

from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field
import functools
from typing import Any, Callable

from ..constants import MEMO_SIZE
from ..logger import get_logger
from .core import InvalidMetaExprError, _memo_key
from .quoting import QuotedBlock, function_env, quote_function

logger = get_logger(__name__)


class ReactiveInputs:
    """Externally owned input values, versioned so memoized captures can tell
    when a value they read has changed.

    Reads made while a capture evaluates are recorded in the innermost
    tracking frame together with the version that was read.
    """

    def __init__(self, values=None):
        self._values: dict[str, Any] = dict(values or {})
        self._versions: dict[str, int] = {name: 0 for name in self._values}
        self._frames: list[dict[str, int]] = []

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        return f"ReactiveInputs({sorted(self._values)})"

    def __contains__(self, name) -> bool:
        return name in self._values

    def __getitem__(self, name):
        value = self._values[name]
        self._record(name)
        return value

    def get(self, name, default=None):
        self._record(name)
        return self._values.get(name, default)

    def set(self, name, value) -> None:
        """Replace an input value and bump its version."""

        self._values[name] = value
        self._versions[name] = self._versions.get(name, -1) + 1

    def update(self, values=None, **kwargs) -> None:
        for name, value in dict(values or {}, **kwargs).items():
            self.set(name, value)

    def version(self, name) -> int:
        return self._versions.get(name, -1)

    def is_current(self, deps: dict[str, int]) -> bool:
        return all(self.version(name) == seen for name, seen in deps.items())

    def merge(self, deps: dict[str, int]) -> None:
        """Propagate a nested capture's reads to the enclosing frame."""

        if self._frames:
            self._frames[-1].update(deps)

    @contextmanager
    def track(self):
        frame: dict[str, int] = {}
        self._frames.append(frame)
        try:
            yield frame
        finally:
            self._frames.pop()

    def _record(self, name) -> None:
        if self._frames:
            self._frames[-1][name] = self.version(name)


class Capture:
    """A computation site that can run for its value or be quoted as code.

    ``as_value`` runs the function and memoizes the result per hashable
    argument values, keeping at most ``memo_size`` entries (``None`` for no
    limit). ``as_expr`` returns the quoted body with unquote markers
    intact; the tree is built when the capture is declared.
    """

    def __init__(
        self,
        fn: Callable,
        *,
        identity: str | None = None,
        name: str | None = None,
        inline: bool = False,
        bind: bool = True,
        inputs: ReactiveInputs | None = None,
        memo_size: int | None = MEMO_SIZE,
    ):
        if not callable(fn):
            raise TypeError(f"Capture requires a callable, got {type(fn).__qualname__}")
        self.fn = fn
        self.identity = identity or f"{fn.__module__}.{fn.__qualname__}"
        if name is None and fn.__name__ != "<lambda>":
            name = fn.__name__
        self.name = name
        self.inline = inline
        self.bind = bind
        self.inputs = inputs
        self.memo_size = memo_size
        self._memo: OrderedDict[tuple, tuple[Any, dict[str, int]]] = OrderedDict()
        functools.update_wrapper(self, fn, updated=())
        self._block = self._quote()

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        return f"<{type(self).__name__} {self.identity}>"

    def _quote(self) -> QuotedBlock | None:
        return quote_function(self.fn)

    def __call__(self, *args, **kwargs):
        return self.as_value(*args, **kwargs)

    def as_value(self, *args, **kwargs):
        """Run the block and return its value, reusing a memoized result."""

        key = _memo_key(args, kwargs)
        cached = self._memo.get(key) if key is not None else None
        if cached is not None:
            value, deps = cached
            if self.inputs is None or self.inputs.is_current(deps):
                self._memo.move_to_end(key)
                if self.inputs is not None:
                    self.inputs.merge(deps)
                return value
            logger.debug("Recomputing %s: inputs changed", self.identity)
            del self._memo[key]

        if self.inputs is None:
            value = self._evaluate(args, kwargs)
            deps = {}
        else:
            with self.inputs.track() as deps:
                value = self._evaluate(args, kwargs)
            self.inputs.merge(deps)

        if key is None:
            logger.debug("Not memoizing %s: unhashable arguments", self.identity)
            return value
        self._memo[key] = (value, dict(deps))
        if self.memo_size is not None and len(self._memo) > self.memo_size:
            self._memo.popitem(last=False)
        return value

    def _evaluate(self, args, kwargs):
        return self.fn(*args, **kwargs)

    def invalidate(self) -> None:
        """Forget every memoized value."""

        self._memo.clear()

    def as_expr(self, *args, **kwargs) -> QuotedBlock:
        """Return the quoted body, unquote markers unresolved."""

        return self._block

    def handle(self, *args, **kwargs) -> "CaptureHandle":
        """Return what an invocation of this capture yields in meta mode."""

        return CaptureHandle(self, args, kwargs)

    def quote_with_env(self, args=(), kwargs=None):
        """Return the quoted body and the namespace its unquotes see."""

        return self.as_expr(*args, **(kwargs or {})), function_env(self.fn, args, kwargs)


@dataclass(frozen=True, eq=False)
class CaptureHandle:
    """A meta-mode invocation of a capture, with its arguments."""

    capture: Capture
    args: tuple = ()
    kwargs: dict = field(default_factory=dict)

    @property
    def identity(self) -> str:
        return self.capture.identity

    def quote_with_env(self):
        return self.capture.quote_with_env(self.args, self.kwargs)


class MetaExpr:
    """A block tagged as the expression a guarded capture generates."""

    def __init__(self, fn: Callable):
        if not callable(fn):
            raise TypeError(f"meta_expr requires a callable, got {type(fn).__qualname__}")
        self.fn = fn

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        return f"<MetaExpr {getattr(self.fn, '__qualname__', self.fn)}>"

    def evaluate(self):
        return self.fn()

    def as_expr(self) -> QuotedBlock:
        return quote_function(self.fn)

    def quote_with_env(self):
        return self.as_expr(), function_env(self.fn)


class GuardedCapture(Capture):
    """Two-phase capture: a guard that only runs live, and a quoted block.

    The factory must return a :class:`MetaExpr`. In value mode the guard runs
    first and the returned block is evaluated. In meta mode the guard is
    skipped and only the returned block is quoted.
    """

    def __init__(self, guard: Callable | None, factory: Callable, **options):
        if guard is not None and not callable(guard):
            raise TypeError("Guard must be callable")
        self.guard = guard
        super().__init__(factory, **options)

    def _quote(self) -> QuotedBlock | None:
        return None

    def _evaluate(self, args, kwargs):
        if self.guard is not None:
            self.guard(*args, **kwargs)
        result = self.fn(*args, **kwargs)
        if isinstance(result, MetaExpr):
            return result.evaluate()
        return result

    def _meta_block(self, args, kwargs) -> MetaExpr:
        result = self.fn(*args, **kwargs)
        if not isinstance(result, MetaExpr):
            raise InvalidMetaExprError(
                f"{self.identity}: factory returned {type(result).__qualname__} "
                "in meta mode; wrap the generated block with meta_expr()"
            )
        return result

    def as_expr(self, *args, **kwargs) -> QuotedBlock:
        return self._meta_block(args, kwargs).as_expr()

    def quote_with_env(self, args=(), kwargs=None):
        return self._meta_block(args, kwargs or {}).quote_with_env()


class MetaInvoker:
    """Explicit meta mode for unquote evaluation.

    Every call written inside an unquote target is routed through an
    invoker: invoking a capture yields its handle, anything else is called
    normally.
    """

    def __call__(self, func, *args, **kwargs):
        if isinstance(func, Capture):
            return func.handle(*args, **kwargs)
        return func(*args, **kwargs)


def capture(
    fn=None, *, identity=None, name=None, inline=False, bind=True, inputs=None, memo_size=MEMO_SIZE
):
    """Declare a capture. Usable bare (``@capture``) or with options."""

    def decorate(func):
        return Capture(
            func,
            identity=identity,
            name=name,
            inline=inline,
            bind=bind,
            inputs=inputs,
            memo_size=memo_size,
        )

    if fn is None:
        return decorate
    return decorate(fn)


def observe(fn=None, **options):
    """Declare a capture whose statements are emitted without a binding."""

    return capture(fn, bind=False, **options)


def meta_expr(fn) -> MetaExpr:
    """Tag ``fn`` as the block a guarded capture generates code from."""

    return MetaExpr(fn)


def capture_with_guard(
    guard, factory=None, *, identity=None, name=None, inline=False, inputs=None, memo_size=MEMO_SIZE
):
    """Declare a two-phase capture; usable as a decorator on the factory."""

    def decorate(func):
        return GuardedCapture(
            guard,
            func,
            identity=identity,
            name=name,
            inline=inline,
            inputs=inputs,
            memo_size=memo_size,
        )

    if factory is None:
        return decorate
    return decorate(factory)


__all__ = [
    "Capture",
    "CaptureHandle",
    "GuardedCapture",
    "MetaExpr",
    "MetaInvoker",
    "ReactiveInputs",
    "capture",
    "capture_with_guard",
    "meta_expr",
    "observe",
]
