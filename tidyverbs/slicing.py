from __future__ import annotations

from typing import List, Sequence

from tidyverbs.errors import MixedSliceSign, UnsupportedExpression
from tidyverbs.syntax import Call, Literal, Node, Range, TupleForm, VectorForm, is_pseudo_call, unparse, walk

_INDEX_OPS = {"+", "-", "*", "/", "%", "^"}


def _check(node: Node) -> None:
    if isinstance(node, Literal):
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            raise UnsupportedExpression(
                f"Slice index {unparse(node)!r} is not an integer.",
                hint="Use integers, ranges like 1:3, negative positions like -1, or n().",
            )
        if isinstance(node.value, float) and not node.value.is_integer():
            raise UnsupportedExpression(f"Slice index {unparse(node)!r} is not an integer.")
        return
    if is_pseudo_call(node, "n"):
        return
    if isinstance(node, Range):
        _check(node.start)
        _check(node.stop)
        return
    if isinstance(node, (TupleForm, VectorForm)):
        for item in node.items:
            _check(item)
        return
    if isinstance(node, Call) and node.infix and node.head in _INDEX_OPS and not node.kwargs:
        for arg in node.args:
            _check(arg)
        return
    raise UnsupportedExpression(
        f"{unparse(node)!r} cannot be used as a slice index.",
        hint="Slice positions are integers, ranges, n() and arithmetic over them.",
    )


def _integral(value, node: Node) -> int:
    if isinstance(value, float):
        if not value.is_integer():
            raise UnsupportedExpression(
                f"Slice index {unparse(node)!r} evaluates to {value}, which is not an integer.",
                hint="Use % or integer literals to keep positions whole.",
            )
        return int(value)
    return value


def _scalar(node: Node, nrows: int):
    if isinstance(node, Literal):
        return node.value
    if is_pseudo_call(node, "n"):
        return nrows
    if isinstance(node, Call) and node.infix:
        if len(node.args) == 1:
            return -_scalar(node.args[0], nrows)
        a = _scalar(node.args[0], nrows)
        b = _scalar(node.args[1], nrows)
        if node.head == "+":
            return a + b
        if node.head == "-":
            return a - b
        if node.head == "*":
            return a * b
        if node.head == "/":
            return a / b
        if node.head == "%":
            return a % b
        return a ** b
    raise UnsupportedExpression(f"{unparse(node)!r} is not a single slice position.")


def _values(node: Node, nrows: int) -> List[int]:
    if isinstance(node, Range):
        lo = _integral(_scalar(node.start, nrows), node.start)
        hi = _integral(_scalar(node.stop, nrows), node.stop)
        return list(range(lo, hi + 1))
    if isinstance(node, (TupleForm, VectorForm)):
        out: List[int] = []
        for item in node.items:
            out.extend(_values(item, nrows))
        return out
    return [_integral(_scalar(node, nrows), node)]


class SliceIndices:
    """Row positions for slice(): 1-based, `-k` counts from the end of each group.

    Zero is ignored and positions past either end are skipped. Positions keep
    the order (and repetitions) they were written in.
    """

    def __init__(self, nodes: Sequence[Node]):
        if not nodes:
            raise UnsupportedExpression("slice() needs at least one position.")
        for node in nodes:
            _check(node)
        self.nodes = tuple(nodes)
        # Positions that do not depend on n() are known before any group is seen.
        fixed = [node for node in self.nodes if not any(is_pseudo_call(sub, "n") for sub in walk(node))]
        self._signs(self._evaluate(fixed, 0))

    def _evaluate(self, nodes: Sequence[Node], nrows: int) -> List[int]:
        out: List[int] = []
        for node in nodes:
            try:
                out.extend(_values(node, nrows))
            except ZeroDivisionError as e:
                raise UnsupportedExpression(
                    f"Slice index {unparse(node)!r} divides by zero for a group of {nrows} rows.",
                ) from e
        return [v for v in out if v != 0]

    def _signs(self, values: List[int]) -> None:
        if any(v > 0 for v in values) and any(v < 0 for v in values):
            raise MixedSliceSign(
                f"slice() positions mix positive and negative values: {self.render()}.",
                hint="Select from the start (1, 2, ...) or from the end (-1, -2, ...), not both.",
            )

    def values(self, nrows: int) -> List[int]:
        out = self._evaluate(self.nodes, nrows)
        self._signs(out)
        return out

    def positions(self, nrows: int) -> List[int]:
        """0-based row offsets within a group of `nrows` rows."""
        out: List[int] = []
        for v in self.values(nrows):
            pos = v if v > 0 else nrows + v + 1
            if 1 <= pos <= nrows:
                out.append(pos - 1)
        return out

    def render(self) -> str:
        return ", ".join(unparse(n) for n in self.nodes)

    def __repr__(self) -> str:
        return f"SliceIndices({self.render()})"
