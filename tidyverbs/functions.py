"""Functions available inside verb fragments.

Element-wise helpers receive single values; whole-column helpers (the ones in
the vectorization registry) receive lists. Missing values are `None`.
"""

from __future__ import annotations

import math
import re
import statistics
from typing import Any, Callable, Dict, List, Optional, Sequence


def missing_aware(fn: Callable) -> Callable:
    """Mark an element-wise function as handling missing inputs itself."""
    fn.handles_missing = True
    return fn


def row_aligned(fn: Callable) -> Callable:
    """Mark a whole-column function as returning one value per input row."""
    fn.row_aligned = True
    return fn


def _looks_number(v: Any) -> bool:
    if v is None or isinstance(v, bool):
        return False
    if isinstance(v, (int, float)):
        return True
    if isinstance(v, str):
        s = v.strip()
        if s == "":
            return False
        try:
            float(s)
            return True
        except ValueError:
            return False
    return False


def _to_number(v: Any) -> Any:
    if isinstance(v, str):
        s = v.strip()
        try:
            return int(s)
        except ValueError:
            return float(s)
    return v


def _coerce_pair(a: Any, b: Any):
    # Text read from CSV compares and computes like numbers when it looks like one.
    if isinstance(a, str) != isinstance(b, str) and _looks_number(a) and _looks_number(b):
        return _to_number(a), _to_number(b)
    return a, b


def _binary(fn: Callable[[Any, Any], Any]) -> Callable[[Any, Any], Any]:
    def op(a: Any, b: Any) -> Any:
        a, b = _coerce_pair(a, b)
        return fn(a, b)

    op.__name__ = fn.__name__
    return op


def _divide(a: Any, b: Any) -> Any:
    if b == 0:
        if a == 0:
            return math.nan
        return math.copysign(math.inf, a) if isinstance(a, (int, float)) else math.inf
    return a / b


@missing_aware
def _and(a: Any, b: Any) -> Optional[bool]:
    if a is False or b is False:
        return False
    if a is None or b is None:
        return None
    return bool(a) and bool(b)


@missing_aware
def _or(a: Any, b: Any) -> Optional[bool]:
    if a is True or b is True:
        return True
    if a is None or b is None:
        return None
    return bool(a) or bool(b)


def _not(a: Any) -> bool:
    return not a


def _in(a: Any, b: Any) -> bool:
    if isinstance(b, (list, tuple, set, frozenset)):
        return a in b
    return a == b


OPERATORS: Dict[str, Callable] = {
    "+": _binary(lambda a, b: a + b),
    "-": _binary(lambda a, b: a - b),
    "*": _binary(lambda a, b: a * b),
    "/": _binary(_divide),
    "%": _binary(lambda a, b: a % b),
    "^": _binary(lambda a, b: a ** b),
    "==": _binary(lambda a, b: a == b),
    "!=": _binary(lambda a, b: a != b),
    "<": _binary(lambda a, b: a < b),
    "<=": _binary(lambda a, b: a <= b),
    ">": _binary(lambda a, b: a > b),
    ">=": _binary(lambda a, b: a >= b),
    "&": _and,
    "|": _or,
    "in": _in,
}
UNARY_OPERATORS: Dict[str, Callable] = {
    "-": lambda a: -_to_number(a),
    "!": _not,
}


# ---------- missing values ----------

@missing_aware
def is_missing(x: Any) -> bool:
    return x is None


@missing_aware
def coalesce(*values: Any) -> Any:
    for v in values:
        if v is not None:
            return v
    return None


def skipmissing(x: Sequence[Any]) -> List[Any]:
    return [v for v in x if v is not None]


def _numbers(x: Sequence[Any]) -> Optional[List[Any]]:
    if any(v is None for v in x):
        return None
    return [_to_number(v) for v in x]


# ---------- aggregates (whole column) ----------

def mean(x: Sequence[Any]) -> Any:
    vals = _numbers(x)
    if vals is None:
        return None
    if not vals:
        return math.nan
    return statistics.fmean(vals)


def median(x: Sequence[Any]) -> Any:
    vals = _numbers(x)
    if vals is None:
        return None
    if not vals:
        return math.nan
    return statistics.median(vals)


def var(x: Sequence[Any]) -> Any:
    vals = _numbers(x)
    if vals is None:
        return None
    if len(vals) < 2:
        return math.nan
    return statistics.variance(vals)


def std(x: Sequence[Any]) -> Any:
    vals = _numbers(x)
    if vals is None:
        return None
    if len(vals) < 2:
        return math.nan
    return statistics.stdev(vals)


def quantile(x: Sequence[Any], p: Any) -> Any:
    vals = _numbers(x)
    if vals is None:
        return None
    vals = sorted(vals)
    probs = list(p) if isinstance(p, (list, tuple)) else [p]
    out = []
    for q in probs:
        # Linear interpolation between closest ranks.
        h = (len(vals) - 1) * q
        lo = math.floor(h)
        hi = min(lo + 1, len(vals) - 1)
        out.append(vals[lo] + (h - lo) * (vals[hi] - vals[lo]))
    return out if isinstance(p, (list, tuple)) else out[0]


def sum_(x: Sequence[Any]) -> Any:
    vals = _numbers(x)
    if vals is None:
        return None
    return sum(vals)


def minimum(x: Sequence[Any]) -> Any:
    if not x or any(v is None for v in x):
        return None
    return min(x)


def maximum(x: Sequence[Any]) -> Any:
    if not x or any(v is None for v in x):
        return None
    return max(x)


def length(x: Sequence[Any]) -> int:
    return len(x)


def first(x: Sequence[Any]) -> Any:
    return x[0] if len(x) else None


def last(x: Sequence[Any]) -> Any:
    return x[-1] if len(x) else None


def nth(x: Sequence[Any], i: int) -> Any:
    if i > 0 and i <= len(x):
        return x[i - 1]
    if i < 0 and -i <= len(x):
        return x[i]
    return None


def n_distinct(x: Sequence[Any]) -> int:
    return len(set(x))


def c(*values: Any) -> List[Any]:
    out: List[Any] = []
    for v in values:
        if isinstance(v, (list, tuple)):
            out.extend(v)
        else:
            out.append(v)
    return out


def repeat(x: Any, times: int) -> List[Any]:
    if isinstance(x, (list, tuple)):
        return list(x) * times
    return [x] * times


# ---------- window functions (whole column in, column out) ----------

@row_aligned
def lag(x: Sequence[Any], k: int = 1, default: Any = None) -> List[Any]:
    x = list(x)
    if k <= 0:
        return x
    return [default] * min(k, len(x)) + x[: max(len(x) - k, 0)]


@row_aligned
def lead(x: Sequence[Any], k: int = 1, default: Any = None) -> List[Any]:
    x = list(x)
    if k <= 0:
        return x
    return x[k:] + [default] * min(k, len(x))


@row_aligned
def cumsum(x: Sequence[Any]) -> List[Any]:
    out: List[Any] = []
    total: Any = 0
    for v in x:
        if v is None or total is None:
            total = None
        else:
            total = total + _to_number(v)
        out.append(total)
    return out


@row_aligned
def cumprod(x: Sequence[Any]) -> List[Any]:
    out: List[Any] = []
    total: Any = 1
    for v in x:
        if v is None or total is None:
            total = None
        else:
            total = total * _to_number(v)
        out.append(total)
    return out


@row_aligned
def accumulate(fn: Callable[[Any, Any], Any], x: Sequence[Any]) -> List[Any]:
    out: List[Any] = []
    for i, v in enumerate(x):
        out.append(v if i == 0 else fn(out[-1], v))
    return out


def _order(x: Sequence[Any]) -> List[int]:
    return sorted((i for i, v in enumerate(x) if v is not None), key=lambda i: x[i])


@row_aligned
def min_rank(x: Sequence[Any]) -> List[Any]:
    ranks: List[Any] = [None] * len(x)
    order = _order(x)
    for pos, i in enumerate(order):
        if pos > 0 and x[i] == x[order[pos - 1]]:
            ranks[i] = ranks[order[pos - 1]]
        else:
            ranks[i] = pos + 1
    return ranks


@row_aligned
def dense_rank(x: Sequence[Any]) -> List[Any]:
    ranks: List[Any] = [None] * len(x)
    rank = 0
    prev = object()
    for i in _order(x):
        if x[i] != prev:
            rank += 1
            prev = x[i]
        ranks[i] = rank
    return ranks


@row_aligned
def percent_rank(x: Sequence[Any]) -> List[Any]:
    ranks = min_rank(x)
    m = sum(1 for v in x if v is not None)
    if m <= 1:
        return [None if r is None else 0.0 for r in ranks]
    return [None if r is None else (r - 1) / (m - 1) for r in ranks]


@row_aligned
def ntile(x: Sequence[Any], n: int) -> List[Any]:
    """Split non-missing values into `n` buckets of near-equal size by rank."""
    out: List[Any] = [None] * len(x)
    order = _order(x)
    m = len(order)
    for pos, i in enumerate(order):
        out[i] = (pos * n) // m + 1
    return out


# ---------- type conversion and checks (element-wise) ----------

def as_float(x: Any) -> Optional[float]:
    if isinstance(x, str):
        s = x.strip()
        if s == "":
            return None
        return float(s)
    return float(x)


def as_integer(x: Any) -> Optional[int]:
    if isinstance(x, str):
        s = x.strip()
        if s == "":
            return None
        return int(float(s)) if any(ch in s for ch in ".eE") else int(s)
    if isinstance(x, float):
        return math.floor(x)
    return int(x)


def as_string(x: Any) -> str:
    return str(x)


@missing_aware
def is_float(x: Any) -> bool:
    return isinstance(x, float)


@missing_aware
def is_integer(x: Any) -> bool:
    return isinstance(x, int) and not isinstance(x, bool)


@missing_aware
def is_string(x: Any) -> bool:
    return isinstance(x, str)


@missing_aware
def is_bool(x: Any) -> bool:
    return isinstance(x, bool)


def str_detect(x: str, pattern: str) -> bool:
    return re.search(pattern, x) is not None


def log(x: Any, base: Any = None) -> float:
    x = _to_number(x)
    return math.log(x) if base is None else math.log(x, base)


# ---------- selection helpers (resolved against column names) ----------

def starts_with(prefix: str) -> Callable[[str], bool]:
    return lambda name: name.startswith(prefix)


def ends_with(suffix: str) -> Callable[[str], bool]:
    return lambda name: name.endswith(suffix)


def matches(pattern: str) -> Callable[[str], bool]:
    rx = re.compile(pattern)
    return lambda name: rx.search(name) is not None


def contains(text: str) -> Callable[[str], bool]:
    return lambda name: text in name


def everything() -> Callable[[str], bool]:
    return lambda name: True


SELECTION_HELPERS: Dict[str, Callable[..., Callable[[str], bool]]] = {
    "starts_with": starts_with,
    "ends_with": ends_with,
    "matches": matches,
    "contains": contains,
    "everything": everything,
}

LIBRARY: Dict[str, Callable] = {
    "is_missing": is_missing,
    "ismissing": is_missing,
    "coalesce": coalesce,
    "skipmissing": skipmissing,
    "mean": mean,
    "median": median,
    "var": var,
    "std": std,
    "quantile": quantile,
    "sum": sum_,
    "minimum": minimum,
    "maximum": maximum,
    "length": length,
    "first": first,
    "last": last,
    "nth": nth,
    "n_distinct": n_distinct,
    "c": c,
    "repeat": repeat,
    "lag": lag,
    "lead": lead,
    "cumsum": cumsum,
    "cumprod": cumprod,
    "accumulate": accumulate,
    "min_rank": min_rank,
    "dense_rank": dense_rank,
    "percent_rank": percent_rank,
    "ntile": ntile,
    "as_float": as_float,
    "as_integer": as_integer,
    "as_string": as_string,
    "is_float": is_float,
    "is_integer": is_integer,
    "is_string": is_string,
    "is_bool": is_bool,
    "str_detect": str_detect,
    "sqrt": math.sqrt,
    "exp": math.exp,
    "log": log,
    "log10": math.log10,
    "floor": math.floor,
    "ceil": math.ceil,
    "lowercase": str.lower,
    "uppercase": str.upper,
    "strip": str.strip,
}
