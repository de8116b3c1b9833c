"""Engine expressions: the rewritten, fully-resolved form of a fragment.

Every node knows how to evaluate itself against a `Frame` (the columns of one
group) and how to render itself as readable code for the `code` option.
"""

from __future__ import annotations

import datetime
import decimal
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from tidyverbs.errors import TidyUserError


class ColumnVector(list):
    """Row-aligned values. Anything else produced during evaluation is a scalar."""


@dataclass(frozen=True)
class Frame:
    columns: Mapping[str, List[Any]]
    nrows: int

    def column(self, name: str) -> ColumnVector:
        return ColumnVector(self.columns[name])


def _render_value(value: Any) -> str:
    if isinstance(value, str):
        return repr(value)
    if value is None:
        return "None"
    return repr(value)


def _call_checked(name: str, fn: Callable, args: List[Any], kwargs: Dict[str, Any]) -> Any:
    try:
        return fn(*args, **kwargs)
    except TidyUserError:
        raise
    except Exception as e:
        shown = ", ".join(_render_value(a) for a in args)
        raise TidyUserError(
            "E_EVAL_FAILED",
            f"{name}({shown}) failed: {type(e).__name__}: {e}",
            hint="Check the column types; as_float()/as_integer() convert text columns.",
        ) from e


def _row_count(values: List[Any]) -> Optional[int]:
    lengths = {len(v) for v in values if isinstance(v, ColumnVector)}
    if not lengths:
        return None
    if len(lengths) > 1:
        raise TidyUserError(
            "E_LENGTH_MISMATCH",
            f"Element-wise call received columns of different lengths: {sorted(lengths)}.",
            hint="Whole-column helpers (lag, cumsum, ...) must return one value per row.",
        )
    return lengths.pop()


def _at(value: Any, i: int) -> Any:
    return value[i] if isinstance(value, ColumnVector) else value


class EngineExpr:
    def evaluate(self, frame: Frame) -> Any:
        raise NotImplementedError

    def render(self) -> str:
        raise NotImplementedError

    def __str__(self) -> str:
        return self.render()


@dataclass(frozen=True)
class Col(EngineExpr):
    name: str

    def evaluate(self, frame: Frame) -> Any:
        return frame.column(self.name)

    def render(self) -> str:
        return f"col({self.name!r})"


@dataclass(frozen=True)
class Lit(EngineExpr):
    value: Any

    def evaluate(self, frame: Frame) -> Any:
        return self.value

    def render(self) -> str:
        return _render_value(self.value)


@dataclass(frozen=True)
class ValueList(EngineExpr):
    items: Tuple[EngineExpr, ...]

    def evaluate(self, frame: Frame) -> Any:
        return tuple(i.evaluate(frame) for i in self.items)

    def render(self) -> str:
        return "[" + ", ".join(i.render() for i in self.items) + "]"


@dataclass(frozen=True)
class FuncRef(EngineExpr):
    name: str
    fn: Callable = field(compare=False)

    def evaluate(self, frame: Frame) -> Any:
        return self.fn

    def render(self) -> str:
        return self.name


@dataclass(frozen=True)
class Broadcast(EngineExpr):
    """Element-wise application of a scalar function across its column arguments."""

    name: str
    fn: Callable = field(compare=False)
    args: Tuple[EngineExpr, ...] = ()
    kwargs: Tuple[Tuple[str, EngineExpr], ...] = ()

    def _call(self, args: List[Any], kwargs: Dict[str, Any]) -> Any:
        if not getattr(self.fn, "handles_missing", False):
            if any(a is None for a in args) or any(v is None for v in kwargs.values()):
                return None
        return _call_checked(self.name, self.fn, args, kwargs)

    def evaluate(self, frame: Frame) -> Any:
        args = [a.evaluate(frame) for a in self.args]
        kwargs = {k: v.evaluate(frame) for k, v in self.kwargs}
        n = _row_count(args + list(kwargs.values()))
        if n is None:
            return self._call(args, kwargs)
        out = ColumnVector()
        for i in range(n):
            out.append(self._call([_at(a, i) for a in args], {k: _at(v, i) for k, v in kwargs.items()}))
        return out

    def render(self) -> str:
        parts = [repr(self.name)] + [a.render() for a in self.args]
        parts += [f"{k}={v.render()}" for k, v in self.kwargs]
        return f"broadcast({', '.join(parts)})"


@dataclass(frozen=True)
class Apply(EngineExpr):
    """Whole-column call: the function sees complete columns."""

    name: str
    fn: Callable = field(compare=False)
    args: Tuple[EngineExpr, ...] = ()
    kwargs: Tuple[Tuple[str, EngineExpr], ...] = ()

    def evaluate(self, frame: Frame) -> Any:
        args = [a.evaluate(frame) for a in self.args]
        kwargs = {k: v.evaluate(frame) for k, v in self.kwargs}
        result = _call_checked(self.name, self.fn, args, kwargs)
        # Only window helpers hand back a column; any other list is one value.
        if isinstance(result, list) and getattr(self.fn, "row_aligned", False):
            return ColumnVector(result)
        return result

    def render(self) -> str:
        parts = [a.render() for a in self.args] + [f"{k}={v.render()}" for k, v in self.kwargs]
        return f"{self.name}({', '.join(parts)})"


@dataclass(frozen=True)
class GroupSize(EngineExpr):
    """Number of rows in the group being reduced; 0 for an empty table."""

    def evaluate(self, frame: Frame) -> Any:
        return frame.nrows

    def render(self) -> str:
        return "n()"


@dataclass(frozen=True)
class First(EngineExpr):
    """Collapse a broadcast pseudo-column to its per-group scalar."""

    inner: EngineExpr

    def evaluate(self, frame: Frame) -> Any:
        value = self.inner.evaluate(frame)
        if isinstance(value, ColumnVector):
            return value[0] if value else None
        return value

    def render(self) -> str:
        return f"first({self.inner.render()})"


def _kind(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float, decimal.Decimal)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (datetime.date, datetime.time)):
        return "temporal"
    return type(value).__name__


def _branch_kinds(value: Any) -> set:
    values = value if isinstance(value, ColumnVector) else [value]
    return {k for k in (_kind(v) for v in values) if k is not None}


def check_branch_types(label: str, branches: List[Any]) -> None:
    kinds: set = set()
    for b in branches:
        kinds |= _branch_kinds(b)
    if len(kinds) > 1:
        raise TidyUserError(
            "E_BRANCH_TYPE",
            f"{label} branches have incompatible types: {', '.join(sorted(kinds))}.",
            hint="Make every branch produce the same kind of value, e.g. wrap numbers with as_string().",
        )


def _truth(value: Any) -> Optional[bool]:
    if value is None:
        return None
    return bool(value)


@dataclass(frozen=True)
class IfElse(EngineExpr):
    cond: EngineExpr
    yes: EngineExpr
    no: EngineExpr
    miss: EngineExpr = Lit(None)

    def evaluate(self, frame: Frame) -> Any:
        c = self.cond.evaluate(frame)
        y = self.yes.evaluate(frame)
        no = self.no.evaluate(frame)
        m = self.miss.evaluate(frame)
        check_branch_types("if_else", [y, no, m])

        def pick(i: int) -> Any:
            t = _truth(_at(c, i))
            if t is None:
                return _at(m, i)
            return _at(y, i) if t else _at(no, i)

        n = _row_count([c, y, no, m])
        if n is None:
            return pick(0)
        return ColumnVector(pick(i) for i in range(n))

    def render(self) -> str:
        parts = [self.cond.render(), self.yes.render(), self.no.render()]
        if not (isinstance(self.miss, Lit) and self.miss.value is None):
            parts.append(self.miss.render())
        return f"if_else({', '.join(parts)})"


@dataclass(frozen=True)
class CaseWhen(EngineExpr):
    """First matching clause wins; rows matching nothing get the default (missing if absent)."""

    clauses: Tuple[Tuple[EngineExpr, EngineExpr], ...]
    default: Optional[EngineExpr] = None

    def evaluate(self, frame: Frame) -> Any:
        conds = [c.evaluate(frame) for c, _ in self.clauses]
        values = [v.evaluate(frame) for _, v in self.clauses]
        default = self.default.evaluate(frame) if self.default is not None else None
        check_branch_types("case_when", values + [default])

        def pick(i: int) -> Any:
            for c, v in zip(conds, values):
                if _truth(_at(c, i)):
                    return _at(v, i)
            return _at(default, i)

        n = _row_count(conds + values + [default])
        if n is None:
            return pick(0)
        return ColumnVector(pick(i) for i in range(n))

    def render(self) -> str:
        parts = [f"{c.render()} => {v.render()}" for c, v in self.clauses]
        if self.default is not None:
            parts.append(f"True => {self.default.render()}")
        return f"case_when({', '.join(parts)})"
