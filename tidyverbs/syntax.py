"""Syntax tree for verb fragments.

Fragments are parsed into immutable nodes. Rewriting never mutates a node; it
builds new ones.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union


@dataclass(frozen=True)
class Identifier:
    name: str


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Call:
    head: str
    args: tuple["Node", ...] = ()
    kwargs: tuple[tuple[str, "Node"], ...] = ()
    infix: bool = False


@dataclass(frozen=True)
class Assignment:
    target: str
    value: "Node"


# ---- special forms ----

@dataclass(frozen=True)
class Pair:
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Range:
    start: "Node"
    stop: "Node"


@dataclass(frozen=True)
class VectorForm:
    items: tuple["Node", ...]


@dataclass(frozen=True)
class TupleForm:
    items: tuple["Node", ...]


@dataclass(frozen=True)
class Interpolate:
    inner: "Node"


@dataclass(frozen=True)
class Splice:
    """Several comma-joined siblings produced by a multi-value interpolation."""

    items: tuple["Node", ...]


Node = Union[Identifier, Literal, Call, Assignment, Pair, Range, VectorForm, TupleForm, Interpolate, Splice]

ARITHMETIC_OPS = {"+", "-", "*", "/", "%", "^"}

_PRECEDENCE = {
    "=>": 1,
    "|": 2,
    "&": 3,
    "!": 4,
    "==": 5, "!=": 5, "<": 5, "<=": 5, ">": 5, ">=": 5, "in": 5,
    ":": 6,
    "+": 7, "-": 7,
    "*": 8, "/": 8, "%": 8,
    "neg": 9,
    "^": 10,
}
_ATOM = 100


def _precedence(node: Node) -> int:
    if isinstance(node, Call) and node.infix:
        if len(node.args) == 1:
            return _PRECEDENCE["neg"] if node.head == "-" else _PRECEDENCE["!"]
        return _PRECEDENCE.get(node.head, _ATOM)
    if isinstance(node, Pair):
        return _PRECEDENCE["=>"]
    if isinstance(node, Range):
        return _PRECEDENCE[":"]
    if isinstance(node, Literal) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        if node.value < 0:
            return _PRECEDENCE["neg"]
    return _ATOM


def _wrap(node: Node, minimum: int) -> str:
    text = unparse(node)
    if _precedence(node) < minimum:
        return f"({text})"
    return text


def _render_literal(value: Any) -> str:
    if value is None:
        return "missing"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return repr(value)


def _render_name(name: str) -> str:
    if name.isidentifier():
        return name
    return "`" + name.replace("`", "\\`") + "`"


def unparse(node: Node) -> str:
    """Canonical surface form of a node, used for default column names."""
    if isinstance(node, Identifier):
        return _render_name(node.name)
    if isinstance(node, Literal):
        return _render_literal(node.value)
    if isinstance(node, Call):
        if node.infix and len(node.args) == 1:
            p = _precedence(node)
            return node.head + _wrap(node.args[0], p)
        if node.infix and len(node.args) == 2:
            p = _precedence(node)
            # '^' is right associative, the rest left associative.
            left_min = p + 1 if node.head == "^" else p
            right_min = p if node.head == "^" else p + 1
            return f"{_wrap(node.args[0], left_min)} {node.head} {_wrap(node.args[1], right_min)}"
        parts = [unparse(a) for a in node.args]
        parts += [f"{k} = {unparse(v)}" for k, v in node.kwargs]
        return f"{node.head}({', '.join(parts)})"
    if isinstance(node, Assignment):
        return f"{_render_name(node.target)} = {unparse(node.value)}"
    if isinstance(node, Pair):
        return f"{_wrap(node.left, 2)} => {_wrap(node.right, 2)}"
    if isinstance(node, Range):
        return f"{_wrap(node.start, 7)}:{_wrap(node.stop, 7)}"
    if isinstance(node, VectorForm):
        return "[" + ", ".join(unparse(i) for i in node.items) + "]"
    if isinstance(node, TupleForm):
        inner = ", ".join(unparse(i) for i in node.items)
        if len(node.items) == 1:
            inner += ","
        return f"({inner})"
    if isinstance(node, Interpolate):
        return "!!" + _wrap(node.inner, _ATOM)
    if isinstance(node, Splice):
        return ", ".join(unparse(i) for i in node.items)
    raise TypeError(f"Not a syntax node: {node!r}")


def walk(node: Node):
    """Yield every node of the tree, parents before children."""
    yield node
    if isinstance(node, Call):
        for a in node.args:
            yield from walk(a)
        for _, v in node.kwargs:
            yield from walk(v)
    elif isinstance(node, Assignment):
        yield from walk(node.value)
    elif isinstance(node, Pair):
        yield from walk(node.left)
        yield from walk(node.right)
    elif isinstance(node, Range):
        yield from walk(node.start)
        yield from walk(node.stop)
    elif isinstance(node, (VectorForm, TupleForm, Splice)):
        for i in node.items:
            yield from walk(i)
    elif isinstance(node, Interpolate):
        yield from walk(node.inner)


def is_pseudo_call(node: Node, name: str) -> bool:
    return isinstance(node, Call) and node.head == name and not node.args and not node.kwargs and not node.infix
