"""Resolution of `!!` interpolation markers.

Markers are evaluated in the caller's environment before any column-level
rewriting, and the result is spliced back into the tree as syntax.
"""

from __future__ import annotations

import builtins
import datetime
import decimal
import logging
import operator
import sys
from collections import ChainMap
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple

from tidyverbs.errors import InvalidInterpolation, TidyUserError
from tidyverbs.parser import parse
from tidyverbs.syntax import (
    Assignment,
    Call,
    Identifier,
    Interpolate,
    Literal,
    Node,
    Pair,
    Range,
    Splice,
    TupleForm,
    VectorForm,
    is_pseudo_call,
    unparse,
    walk,
)

logger = logging.getLogger(__name__)

_SCALAR_TYPES = (type(None), bool, int, float, str, datetime.date, datetime.time, decimal.Decimal)

# Calls whose positional arguments each take one selection, so a sequence
# stays together instead of spreading over several arguments.
_SINGLE_ARG_HEADS = {"across"}


@dataclass(frozen=True)
class Sym:
    """A column name to be spliced as a column reference, not as a string."""

    name: str

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name:
            raise TypeError(f"sym() expects a non-empty column name, got {self.name!r}")


@dataclass(frozen=True)
class Quoted:
    """An unevaluated fragment that can be interpolated into other fragments."""

    node: Node
    source: str

    def __str__(self) -> str:
        return self.source


def sym(name: str) -> Sym:
    return Sym(name)


def syms(*names: str) -> List[Sym]:
    return [Sym(n) for n in names]


def quote(text: str) -> Quoted:
    """Parse `text` now and keep it as syntax for later interpolation."""
    return Quoted(parse(text), text)


@dataclass(frozen=True)
class ResolvedFragment:
    node: Node
    found_n: bool
    found_row_number: bool
    source: str


def capture_env(depth: int = 1) -> Mapping[str, Any]:
    """Variables visible in the frame `depth` levels above the caller."""
    frame = sys._getframe(depth + 1)
    try:
        return ChainMap(dict(frame.f_locals), frame.f_globals)
    finally:
        del frame


_BINARY = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    "/": operator.truediv,
    "%": operator.mod,
    "^": operator.pow,
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "&": lambda a, b: a and b,
    "|": lambda a, b: a or b,
    "in": lambda a, b: a in b,
}


def _lookup(name: str, env: Mapping[str, Any], source: str) -> Any:
    if name in env:
        return env[name]
    if hasattr(builtins, name):
        return getattr(builtins, name)
    raise InvalidInterpolation(
        f"{name!r} is not defined in the calling environment.",
        hint="Interpolated names are looked up where the verb is called; pass env={...} to supply them.",
        fragment=source,
    )


def _evaluate(node: Node, env: Mapping[str, Any], source: str) -> Any:
    """Evaluate a marked sub-fragment as ordinary host values."""
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Identifier):
        return _lookup(node.name, env, source)
    if isinstance(node, Interpolate):
        return _evaluate(node.inner, env, source)
    if isinstance(node, VectorForm):
        return [_evaluate(i, env, source) for i in node.items]
    if isinstance(node, TupleForm):
        return tuple(_evaluate(i, env, source) for i in node.items)
    if isinstance(node, Range):
        start = _evaluate(node.start, env, source)
        stop = _evaluate(node.stop, env, source)
        if not (isinstance(start, int) and isinstance(stop, int)):
            raise InvalidInterpolation(
                "Ranges inside an interpolation need integer bounds.",
                fragment=source,
            )
        return list(range(start, stop + 1))
    if isinstance(node, Call):
        args = [_evaluate(a, env, source) for a in node.args]
        kwargs = {k: _evaluate(v, env, source) for k, v in node.kwargs}
        if node.infix:
            if len(args) == 1:
                return (not args[0]) if node.head == "!" else operator.neg(args[0])
            fn = _BINARY[node.head]
        else:
            fn = _lookup(node.head, env, source)
            if not callable(fn):
                raise InvalidInterpolation(
                    f"{node.head!r} is not callable.",
                    fragment=source,
                )
        try:
            return fn(*args, **kwargs)
        except TidyUserError:
            raise
        except Exception as e:
            raise InvalidInterpolation(
                f"Evaluating {unparse(node)!r} failed: {type(e).__name__}: {e}",
                fragment=source,
            ) from e
    raise InvalidInterpolation(
        f"Cannot evaluate {unparse(node)!r} inside an interpolation.",
        hint="Interpolate a name, a literal, or a call: !!x, !!(x + 1), !!f(x).",
        fragment=source,
    )


def _literal_kind(value: Any) -> str:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float, decimal.Decimal)):
        return "number"
    if value is None:
        return "missing"
    return type(value).__name__


def _splice_one(value: Any, source: str) -> Node:
    if isinstance(value, Quoted):
        return value.node
    if isinstance(value, Sym):
        return Identifier(value.name)
    if isinstance(value, _SCALAR_TYPES):
        return Literal(value)
    raise InvalidInterpolation(
        f"Cannot interpolate a value of type {type(value).__name__}.",
        hint="Interpolate scalars, sym('col') references, quote('expr') fragments, or lists of those.",
        fragment=source,
    )


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset, range))


def _splice(value: Any, *, multi: bool, source: str) -> Node:
    if not _is_sequence(value):
        return _splice_one(value, source)

    values = sorted(value, key=repr) if isinstance(value, (set, frozenset)) else list(value)
    items = tuple(_splice_one(v, source) for v in values)
    if multi:
        return Splice(items)

    kinds = set()
    for item in items:
        if isinstance(item, Identifier):
            kinds.add("column")
        elif isinstance(item, Literal):
            kinds.add(_literal_kind(item.value))
        else:
            kinds.add("expression")
    kinds.discard("missing")
    if len(kinds) > 1 or "expression" in kinds:
        raise InvalidInterpolation(
            "A sequence interpolated where a single value is expected must hold values of one kind.",
            hint=f"Got kinds: {', '.join(sorted(kinds))}.",
            fragment=source,
        )
    return VectorForm(items)


def _flatten(items: Iterable[Node]) -> Tuple[Node, ...]:
    out: List[Node] = []
    for item in items:
        if isinstance(item, Splice):
            out.extend(item.items)
        else:
            out.append(item)
    return tuple(out)


def _resolve(node: Node, env: Mapping[str, Any], source: str, *, multi: bool) -> Node:
    if isinstance(node, Interpolate):
        value = _evaluate(node.inner, env, source)
        return _splice(value, multi=multi, source=source)
    if isinstance(node, (Identifier, Literal)):
        return node
    if isinstance(node, Call):
        args_multi = not node.infix and node.head not in _SINGLE_ARG_HEADS
        args = tuple(_resolve(a, env, source, multi=args_multi) for a in node.args)
        kwargs = tuple((k, _resolve(v, env, source, multi=False)) for k, v in node.kwargs)
        return Call(node.head, _flatten(args), kwargs, node.infix)
    if isinstance(node, Assignment):
        return Assignment(node.target, _resolve(node.value, env, source, multi=False))
    if isinstance(node, Pair):
        return Pair(_resolve(node.left, env, source, multi=False), _resolve(node.right, env, source, multi=False))
    if isinstance(node, Range):
        return Range(_resolve(node.start, env, source, multi=False), _resolve(node.stop, env, source, multi=False))
    if isinstance(node, VectorForm):
        return VectorForm(_flatten(_resolve(i, env, source, multi=True) for i in node.items))
    if isinstance(node, TupleForm):
        return TupleForm(_flatten(_resolve(i, env, source, multi=True) for i in node.items))
    if isinstance(node, Splice):
        return Splice(_flatten(_resolve(i, env, source, multi=True) for i in node.items))
    raise InvalidInterpolation(f"Unknown syntax node {node!r}.", fragment=source)


def resolve(node: Node, env: Optional[Mapping[str, Any]] = None, *, source: Optional[str] = None) -> ResolvedFragment:
    """Splice every `!!` marker of `node` and report pseudo-function usage.

    A marker that is the whole fragment may expand into several fragments; the
    result node is then a `Splice`.
    """
    env = env if env is not None else {}
    source = source if source is not None else unparse(node)
    resolved = _resolve(node, env, source, multi=True)

    found_n = False
    found_row_number = False
    for sub in walk(resolved):
        if is_pseudo_call(sub, "n"):
            found_n = True
        elif is_pseudo_call(sub, "row_number"):
            found_row_number = True
    if found_n or found_row_number:
        logger.debug("fragment %r uses n()=%s row_number()=%s", source, found_n, found_row_number)
    return ResolvedFragment(resolved, found_n, found_row_number, source)


def resolve_all(
    fragments: Sequence[Tuple[Node, str]],
    env: Optional[Mapping[str, Any]] = None,
) -> Tuple[List[ResolvedFragment], bool, bool]:
    """Resolve all fragments of one verb call, expanding top-level splices.

    Returns the fragments plus the OR-reduced (found_n, found_row_number) flags.
    """
    out: List[ResolvedFragment] = []
    for node, source in fragments:
        r = resolve(node, env, source=source)
        if isinstance(r.node, Splice):
            for item in r.node.items:
                out.append(ResolvedFragment(item, r.found_n, r.found_row_number, source))
        else:
            out.append(r)
    return out, any(r.found_n for r in out), any(r.found_row_number for r in out)
