"""Rewriting of resolved fragments into engine expressions.

The `Rewriter` is created per verb invocation with the columns known at that
point, so column references, selection helpers and `across()` expansions are
all settled before anything runs.
"""

from __future__ import annotations

import builtins
import difflib
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Mapping, Optional, Sequence, Tuple, Union

from tidyverbs.engine.exprs import (
    Apply,
    Broadcast,
    CaseWhen,
    Col,
    EngineExpr,
    First,
    FuncRef,
    GroupSize,
    IfElse,
    Lit,
    ValueList,
)
from tidyverbs.errors import NonBooleanPredicate, TidyUserError, UnsupportedExpression
from tidyverbs.functions import LIBRARY, OPERATORS, SELECTION_HELPERS, UNARY_OPERATORS
from tidyverbs.registry import DEFAULT_REGISTRY, VectorizationRegistry
from tidyverbs.syntax import (
    ARITHMETIC_OPS,
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
    unparse,
)

logger = logging.getLogger(__name__)

PSEUDO_PREFIX = "__tidyverbs_"
PSEUDO_PATTERN = r"^__tidyverbs_"
N_COLUMN = PSEUDO_PREFIX + "n"
ROW_NUMBER_COLUMN = PSEUDO_PREFIX + "row_number"
PSEUDO_FUNCTIONS = {"n", "row_number"}


class RewriteMode(enum.Enum):
    SELECTION = "selection"
    TRANSFORM = "transform"
    AGGREGATE = "aggregate"
    PREDICATE = "predicate"


@dataclass(frozen=True)
class Assign:
    """Compute `expr` into column `name`."""

    name: str
    expr: EngineExpr
    source: Optional[str] = field(default=None, compare=False)


@dataclass(frozen=True)
class Pick:
    """Keep column `source` as `name` (a rename when they differ)."""

    name: str
    source: str


SelectionItem = Union[Assign, Pick]


@dataclass(frozen=True)
class SortKey:
    column: str
    reverse: bool = False


def _range_values(start: Any, stop: Any) -> List[int]:
    if isinstance(start, list):
        start = start[0] if start else None
    if isinstance(stop, list):
        stop = stop[0] if stop else None
    return list(range(int(start), int(stop) + 1))


class Rewriter:
    """Turns resolved syntax into engine expressions for one verb invocation."""

    def __init__(
        self,
        columns: Sequence[str],
        *,
        registry: Optional[VectorizationRegistry] = None,
        env: Optional[Mapping[str, Any]] = None,
    ):
        self.columns: List[str] = list(columns)
        self.registry = registry if registry is not None else DEFAULT_REGISTRY
        self.env = env if env is not None else {}
        self._temp_keys = 0
        self._summaries: set = set()

    # ---------- helpers ----------

    def add_columns(self, *names: str, summary: bool = False) -> None:
        """Make `names` referable; summaries read back as one value per group."""
        for name in names:
            if name not in self.columns:
                self.columns.append(name)
            if summary:
                self._summaries.add(name)

    def _suggest(self, name: str, candidates: Sequence[str]) -> str:
        matches = difflib.get_close_matches(name, list(candidates), n=3, cutoff=0.6)
        if matches:
            return f"Did you mean {matches[0]!r}?"
        visible = [c for c in candidates if not c.startswith(PSEUDO_PREFIX)]
        return "Available: " + ", ".join(visible)

    def _unknown_column(self, name: str) -> TidyUserError:
        hint = self._suggest(name, self.columns)
        return TidyUserError(
            "E_UNKNOWN_COLUMN",
            f"Unknown column {name!r}.",
            hint=hint + " To use a variable instead of a column, interpolate it: !!" + name,
        )

    def resolve_function(self, name: str) -> Callable:
        """Function heads resolve through the library, then the caller env, then builtins."""
        if name in LIBRARY:
            return LIBRARY[name]
        fn = self.env.get(name)
        if callable(fn):
            return fn
        fn = getattr(builtins, name, None)
        if callable(fn) and not name.startswith("_") and not (isinstance(fn, type) and issubclass(fn, BaseException)):
            return fn
        known = list(LIBRARY) + [k for k, v in self.env.items() if callable(v)]
        raise UnsupportedExpression(
            f"Unknown function {name!r}.",
            hint=self._suggest(name, known),
        )

    def _vectorize(self, head: str, mode: RewriteMode, top: bool) -> bool:
        if head in self.registry:
            return False
        if mode is RewriteMode.AGGREGATE and top:
            return False
        return True

    # ---------- expressions ----------

    def expr(self, node: Node, mode: RewriteMode, *, top: bool = False) -> EngineExpr:
        if isinstance(node, Identifier):
            if mode is RewriteMode.AGGREGATE and node.name in self._summaries:
                return First(Col(node.name))
            return self._identifier(node.name)
        if isinstance(node, Literal):
            return Lit(node.value)
        if isinstance(node, (VectorForm, TupleForm)):
            return ValueList(tuple(self.expr(i, mode) for i in node.items))
        if isinstance(node, Range):
            return self._call_node(":", _range_values, (node.start, node.stop), (), mode, top)
        if isinstance(node, Call):
            return self._call(node, mode, top)
        if isinstance(node, Pair):
            raise UnsupportedExpression(
                f"A clause {unparse(node)!r} is only valid inside case_when().",
                hint="Example: case_when(x > 1 => 'big', true => 'small')",
            )
        if isinstance(node, Assignment):
            raise UnsupportedExpression(
                f"Assignment {unparse(node)!r} is only allowed at the top of a fragment.",
                hint="Use == to compare values.",
            )
        if isinstance(node, (Interpolate, Splice)):
            raise UnsupportedExpression(f"Unresolved interpolation in {unparse(node)!r}.")
        raise UnsupportedExpression(f"Unsupported expression {node!r}.")

    def _identifier(self, name: str) -> EngineExpr:
        if name in self.columns:
            return Col(name)
        if name in PSEUDO_FUNCTIONS:
            raise UnsupportedExpression(f"{name!r} is a function; call it as {name}().")
        if name in self.registry:
            return FuncRef(name, self.resolve_function(name))
        try:
            return FuncRef(name, self.resolve_function(name))
        except UnsupportedExpression:
            raise self._unknown_column(name) from None

    def _call(self, node: Call, mode: RewriteMode, top: bool) -> EngineExpr:
        head = node.head
        if node.infix:
            if len(node.args) == 1:
                return self._call_node(head, UNARY_OPERATORS[head], node.args, (), mode, top)
            return self._call_node(head, OPERATORS[head], node.args, (), mode, top)

        if head in PSEUDO_FUNCTIONS:
            if node.args or node.kwargs:
                raise UnsupportedExpression(f"{head}() takes no arguments.")
            if head == "n":
                # A per-group scalar when reducing, a broadcast column otherwise.
                return GroupSize() if mode is RewriteMode.AGGREGATE else Col(N_COLUMN)
            return Col(ROW_NUMBER_COLUMN)
        if head == "if_else":
            return self._if_else(node, mode)
        if head == "case_when":
            return self._case_when(node, mode)
        if head == "across":
            raise UnsupportedExpression(
                "across() must be the whole argument of mutate() or summarize().",
                hint="Example: summarize(data, 'across((a, b), (mean, std))')",
            )
        if head == "desc":
            raise UnsupportedExpression("desc() is only meaningful inside arrange().")
        if head in SELECTION_HELPERS:
            raise UnsupportedExpression(
                f"{head}() selects columns; use it in select() or across().",
            )
        return self._call_node(head, self.resolve_function(head), node.args, node.kwargs, mode, top)

    def _call_node(self, head, fn, args, kwargs, mode: RewriteMode, top: bool) -> EngineExpr:
        args_x = tuple(self.expr(a, mode) for a in args)
        kwargs_x = tuple((k, self.expr(v, mode)) for k, v in kwargs)
        if self._vectorize(head, mode, top):
            logger.debug("%s(): element-wise (%s)", head, mode.value)
            return Broadcast(head, fn, args_x, kwargs_x)
        logger.debug("%s(): whole columns (%s)", head, mode.value)
        return Apply(head, fn, args_x, kwargs_x)

    def _if_else(self, node: Call, mode: RewriteMode) -> EngineExpr:
        args = list(node.args)
        kw = dict(node.kwargs)
        names = ["condition", "yes", "no", "miss"]
        for i, name in enumerate(names):
            if name in kw:
                if i < len(args):
                    raise UnsupportedExpression(f"if_else() got {name!r} twice.")
                args.append(kw.pop(name))
        if kw or len(args) not in (3, 4):
            raise UnsupportedExpression(
                "if_else() takes a condition, a yes value, a no value and an optional missing value.",
                hint="Example: if_else(age >= 18, 'adult', 'minor')",
            )
        parts = [self.expr(a, mode) for a in args]
        return IfElse(*parts)

    def _case_when(self, node: Call, mode: RewriteMode) -> EngineExpr:
        if node.kwargs or not node.args:
            raise UnsupportedExpression(
                "case_when() takes one or more condition => value clauses.",
                hint="Example: case_when(x > 10 => 'high', x > 5 => 'mid', true => 'low')",
            )
        clauses: List[Tuple[EngineExpr, EngineExpr]] = []
        default: Optional[EngineExpr] = None
        for arg in node.args:
            if not isinstance(arg, Pair):
                raise UnsupportedExpression(
                    f"case_when() clause {unparse(arg)!r} is not of the form condition => value.",
                )
            if isinstance(arg.left, Literal) and arg.left.value is True:
                default = self.expr(arg.right, mode)
                break
            clauses.append((self.expr(arg.left, mode), self.expr(arg.right, mode)))
        return CaseWhen(tuple(clauses), default)

    # ---------- transform / aggregate ----------

    def rewrite(self, node: Node, mode: RewriteMode) -> List[Assign]:
        """Rewrite one transform or aggregate fragment into named assignments."""
        if isinstance(node, Assignment):
            value = node.value
            if isinstance(value, Call) and value.head == "across":
                raise UnsupportedExpression(
                    "across() cannot be assigned to a single column; it names its outputs itself.",
                )
            return [Assign(node.target, self.expr(value, mode, top=True))]
        if isinstance(node, Call) and node.head == "across" and not node.infix:
            return self.across(node, mode)
        return [Assign(unparse(node), self.expr(node, mode, top=True))]

    def across(self, node: Call, mode: RewriteMode) -> List[Assign]:
        kw = dict(node.kwargs)
        args = list(node.args)
        for name in (".cols", "cols", ".fns", "fns"):
            if name in kw:
                args.append(kw.pop(name))
        if kw or len(args) != 2:
            raise UnsupportedExpression(
                "across() takes the columns and the function(s) to apply.",
                hint="Example: across((a, b), (mean, median))",
            )
        cols_node, fns_node = args
        columns = self.select_names(cols_node)
        if isinstance(fns_node, (TupleForm, VectorForm)):
            fn_nodes = list(fns_node.items)
        else:
            fn_nodes = [fns_node]
        fn_names: List[str] = []
        for f in fn_nodes:
            if not isinstance(f, Identifier):
                raise UnsupportedExpression(
                    f"across() functions must be given by name, got {unparse(f)!r}.",
                )
            fn_names.append(f.name)

        out: List[Assign] = []
        for col in columns:
            for fn_name in fn_names:
                call = Call(fn_name, (Identifier(col),))
                out.append(Assign(f"{col}_{fn_name}", self.expr(call, mode, top=True)))
        return out

    # ---------- predicates ----------

    def predicate(self, node: Node) -> EngineExpr:
        if isinstance(node, Assignment):
            raise NonBooleanPredicate(
                f"{unparse(node)!r} is an assignment, not a condition.",
                hint=f"Did you mean {node.target} == {unparse(node.value)}?",
            )
        if isinstance(node, Literal) and not (node.value is None or isinstance(node.value, bool)):
            raise NonBooleanPredicate(f"The literal {unparse(node)!r} is not a condition.")
        if isinstance(node, (TupleForm, VectorForm, Range)):
            raise NonBooleanPredicate(f"{unparse(node)!r} is not a condition.")
        if isinstance(node, Call) and node.infix and node.head in ARITHMETIC_OPS:
            raise NonBooleanPredicate(
                f"{unparse(node)!r} computes a value, not a condition.",
                hint="Compare it with something, e.g. (a + b) > 10.",
            )
        return self.expr(node, RewriteMode.PREDICATE, top=True)

    # ---------- selection ----------

    def _column_at(self, node: Node) -> str:
        if isinstance(node, Identifier):
            if node.name not in self.columns:
                raise self._unknown_column(node.name)
            return node.name
        if isinstance(node, Literal) and isinstance(node.value, str):
            if node.value not in self.columns:
                raise self._unknown_column(node.value)
            return node.value
        if isinstance(node, Literal) and isinstance(node.value, int) and not isinstance(node.value, bool):
            i = node.value
            if 1 <= i <= len(self.columns):
                return self.columns[i - 1]
            raise TidyUserError(
                "E_COLUMN_POSITION",
                f"Column position {i} is out of range (1..{len(self.columns)}).",
            )
        raise UnsupportedExpression(f"{unparse(node)!r} does not name a column.")

    def select_names(self, node: Node) -> List[str]:
        """Column names picked by a selection fragment (no renames or computations)."""
        included, excluded = self._selection_sets(node)
        if excluded and not included:
            included = [c for c in self.columns if not c.startswith(PSEUDO_PREFIX)]
        return [c for c in included if c not in excluded]

    def _selection_sets(self, node: Node) -> Tuple[List[str], List[str]]:
        if isinstance(node, Call) and node.infix and len(node.args) == 1 and node.head in {"-", "!"}:
            inc, exc = self._selection_sets(node.args[0])
            return exc, inc
        if isinstance(node, Literal) and isinstance(node.value, int) and node.value < 0 and not isinstance(node.value, bool):
            return [], [self._column_at(Literal(-node.value))]
        if isinstance(node, (Identifier, Literal)):
            return [self._column_at(node)], []
        if isinstance(node, Range):
            lo = self.columns.index(self._column_at(node.start))
            hi = self.columns.index(self._column_at(node.stop))
            step = 1 if hi >= lo else -1
            return [self.columns[i] for i in range(lo, hi + step, step)], []
        if isinstance(node, Call) and not node.infix and node.head in SELECTION_HELPERS:
            args = []
            for a in node.args:
                if not isinstance(a, Literal):
                    raise UnsupportedExpression(f"{node.head}() expects literal arguments, got {unparse(a)!r}.")
                args.append(a.value)
            test = SELECTION_HELPERS[node.head](*args)
            return [c for c in self.columns if not c.startswith(PSEUDO_PREFIX) and test(c)], []
        items = None
        if isinstance(node, (TupleForm, VectorForm)):
            items = node.items
        elif isinstance(node, Call) and not node.infix and node.head in {"c", "Cols"}:
            items = node.args
        if items is not None:
            inc: List[str] = []
            exc: List[str] = []
            for item in items:
                i, e = self._selection_sets(item)
                inc += [c for c in i if c not in inc]
                exc += [c for c in e if c not in exc]
            return inc, exc
        raise UnsupportedExpression(
            f"{unparse(node)!r} is not a column selection.",
            hint="Use column names, -name, a:b ranges, starts_with(), ends_with(), matches(), contains().",
        )

    def selection(self, nodes: Sequence[Node], sources: Optional[Sequence[str]] = None) -> List[SelectionItem]:
        """Resolve select()-style arguments into the ordered output columns.

        A leading exclusion (`-x`) starts from every column; later entries add
        columns in order or remove them again.
        """
        out: List[SelectionItem] = []
        names: List[str] = []

        def keep(item: SelectionItem) -> None:
            if item.name in names:
                out[names.index(item.name)] = item
            else:
                names.append(item.name)
                out.append(item)

        def computed(target: str, value: Node, source: Optional[str]) -> None:
            keep(Assign(target, self.expr(value, RewriteMode.TRANSFORM, top=True), source))

        def one(pos: int, node: Node, source: Optional[str]) -> None:
            if isinstance(node, Assignment):
                if isinstance(node.value, Identifier) and node.value.name in self.columns:
                    keep(Pick(node.target, node.value.name))
                else:
                    computed(node.target, node.value, source)
                return
            try:
                inc, exc = self._selection_sets(node)
            except UnsupportedExpression:
                if isinstance(node, Call) and node.head == "across" and not node.infix:
                    for a in self.across(node, RewriteMode.TRANSFORM):
                        keep(Assign(a.name, a.expr, source))
                    return
                computed(unparse(node), node, source)
                return
            if pos == 0 and exc and not inc:
                for c in self.columns:
                    if not c.startswith(PSEUDO_PREFIX):
                        keep(Pick(c, c))
            for c in inc:
                if c not in names:
                    keep(Pick(c, c))
            for c in exc:
                if c in names:
                    i = names.index(c)
                    names.pop(i)
                    out.pop(i)

        for pos, node in enumerate(nodes):
            source = sources[pos] if sources is not None else None
            try:
                one(pos, node, source)
            except TidyUserError as e:
                raise e.with_fragment(source or unparse(node))
        return out

    # ---------- grouping and ordering keys ----------

    def group_keys(self, nodes: Sequence[Node]) -> Tuple[List[Assign], List[str]]:
        assigns: List[Assign] = []
        keys: List[str] = []
        for node in nodes:
            if isinstance(node, Assignment):
                assigns.append(Assign(node.target, self.expr(node.value, RewriteMode.TRANSFORM, top=True)))
                self.add_columns(node.target)
                names = [node.target]
            else:
                names = self.select_names(node)
            keys += [k for k in names if k not in keys]
        return assigns, keys

    def order_keys(self, nodes: Sequence[Node]) -> Tuple[List[Assign], List[SortKey]]:
        assigns: List[Assign] = []
        keys: List[SortKey] = []
        for node in nodes:
            reverse = False
            while isinstance(node, Call) and node.head == "desc" and not node.infix:
                if len(node.args) != 1 or node.kwargs:
                    raise UnsupportedExpression("desc() wraps exactly one sort key.")
                reverse = not reverse
                node = node.args[0]
            if isinstance(node, Identifier) and node.name in self.columns:
                keys.append(SortKey(node.name, reverse))
                continue
            if isinstance(node, Literal) and isinstance(node.value, str) and node.value in self.columns:
                keys.append(SortKey(node.value, reverse))
                continue
            self._temp_keys += 1
            tmp = f"{PSEUDO_PREFIX}key{self._temp_keys}"
            assigns.append(Assign(tmp, self.expr(node, RewriteMode.TRANSFORM, top=True)))
            keys.append(SortKey(tmp, reverse))
        return assigns, keys
