"""Public verbs.

Every verb follows the same template: resolve `!!` interpolation over all of
its fragments, materialize the `n()` / `row_number()` pseudo-columns when any
fragment needs them, rewrite the fragments for the verb's mode, run the core
engine call, strip the pseudo-columns and restore grouping where the core
call loses it. The result is always a new dataset; inputs are never modified.

Fragments are strings such as ``"total = price * qty"``; keyword arguments
are shorthand for assignments (``mutate(data, total="price * qty")``).
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import petl as etl

from tidyverbs.config import get_option
from tidyverbs.errors import TidyUserError, UnsupportedExpression
from tidyverbs.interpolation import Quoted, ResolvedFragment, Sym, capture_env, resolve_all
from tidyverbs.models.dataset import Dataset, as_dataset
from tidyverbs.models.plan import EngineCall, Plan
from tidyverbs.parser import parse
from tidyverbs.registry import VectorizationRegistry
from tidyverbs.rewriter import (
    N_COLUMN,
    PSEUDO_PATTERN,
    ROW_NUMBER_COLUMN,
    Assign,
    RewriteMode,
    Rewriter,
)
from tidyverbs.slicing import SliceIndices
from tidyverbs.syntax import Assignment, Identifier, Literal, Node, unparse

logger = logging.getLogger(__name__)

Fragment = Any


# ---------------- fragment intake ----------------

def _to_node(fragment: Fragment) -> Tuple[Node, str]:
    if isinstance(fragment, str):
        return parse(fragment), fragment
    if isinstance(fragment, Quoted):
        return fragment.node, fragment.source
    if isinstance(fragment, Sym):
        return Identifier(fragment.name), fragment.name
    if isinstance(fragment, (int, float)) or fragment is None:
        node = Literal(fragment)
        return node, unparse(node)
    raise TidyUserError(
        "E_FRAGMENT_TYPE",
        f"Verb arguments must be expression strings, got {type(fragment).__name__}.",
        hint="Example: mutate(data, 'z = x + y') or mutate(data, z='x + y'). Use !!name to refer to variables.",
        fragment=repr(fragment),
    )


def _intake(fragments: Sequence[Fragment], named: Mapping[str, Fragment]) -> List[Tuple[Node, str]]:
    out = [_to_node(f) for f in fragments]
    for name, value in named.items():
        node, source = _to_node(value)
        if isinstance(node, Assignment):
            raise UnsupportedExpression(
                f"Keyword argument {name}= holds an assignment.",
                hint=f"Pass either {name}='expr' or 'name = expr', not both.",
                fragment=source,
            )
        out.append((Assignment(name, node), f"{name} = {source}"))
    return out


@contextmanager
def _fragment(source: str) -> Iterator[None]:
    try:
        yield
    except TidyUserError as e:
        raise e.with_fragment(source)


class _Invocation:
    """Shared state of one verb call: resolved fragments, rewriter and plan."""

    def __init__(
        self,
        verb: str,
        data: Any,
        fragments: Sequence[Fragment],
        named: Mapping[str, Fragment],
        env: Optional[Mapping[str, Any]],
        registry: Optional[VectorizationRegistry],
    ):
        self.data: Dataset = as_dataset(data)
        self.resolved: List[ResolvedFragment]
        self.resolved, self.any_n, self.any_row_number = resolve_all(_intake(fragments, named), env)
        self.rewriter = Rewriter(self.data.header, registry=registry, env=env)
        self.plan = Plan(verb)

    @property
    def nodes(self) -> List[Node]:
        return [r.node for r in self.resolved]

    @property
    def sources(self) -> List[str]:
        return [r.source for r in self.resolved]

    def then(self, op: str, **params: Any) -> None:
        self.plan = self.plan.then(EngineCall(op, params))

    def add_pseudo_columns(self) -> None:
        if self.any_n:
            self.then("add_row_count", column=N_COLUMN)
            self.rewriter.add_columns(N_COLUMN)
        if self.any_row_number:
            self.then("add_row_number", column=ROW_NUMBER_COLUMN)
            self.rewriter.add_columns(ROW_NUMBER_COLUMN)

    def drop_pseudo_columns(self) -> None:
        self.then("drop_pattern", pattern=PSEUDO_PATTERN)

    def assignments(self, mode: RewriteMode) -> List[Assign]:
        out: List[Assign] = []
        for r in self.resolved:
            with _fragment(r.source):
                assigns = self.rewriter.rewrite(r.node, mode)
            out += [replace(a, source=r.source) for a in assigns]
            self.rewriter.add_columns(*(a.name for a in assigns), summary=mode is RewriteMode.AGGREGATE)
        return out

    def column_names(self) -> List[str]:
        names: List[str] = []
        for r in self.resolved:
            with _fragment(r.source):
                if isinstance(r.node, Assignment):
                    raise UnsupportedExpression(
                        "Only column names are accepted here, not computed columns.",
                        hint="Add the column with mutate() first.",
                    )
                picked = self.rewriter.select_names(r.node)
            names += [c for c in picked if c not in names]
        return names


def _execute(plan: Plan, data: Dataset) -> Dataset:
    if get_option("code"):
        logger.info("generated plan:\n%s", plan)
    return plan.run(data)


def _caller_env(env: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    # Frames: verb caller -> verb -> _caller_env -> capture_env.
    return env if env is not None else capture_env(2)


# ---------------- planners ----------------

def _plan_select(inv: _Invocation) -> Plan:
    inv.add_pseudo_columns()
    items = inv.rewriter.selection(inv.nodes, inv.sources)
    inv.then("select", items=items)
    inv.drop_pseudo_columns()
    return inv.plan


def _plan_rename(inv: _Invocation) -> Plan:
    mapping: Dict[str, str] = {}
    for r in inv.resolved:
        with _fragment(r.source):
            node = r.node
            if not isinstance(node, Assignment) or not isinstance(node.value, (Identifier, Literal)):
                raise UnsupportedExpression(
                    "rename() expects new = old pairs.",
                    hint="Example: rename(data, 'person = person_id') or rename(data, person='person_id')",
                )
            (old,) = inv.rewriter.select_names(node.value)
            mapping[old] = node.target
    inv.then("rename", mapping=mapping)
    return inv.plan


def _plan_mutate(inv: _Invocation) -> Plan:
    inv.add_pseudo_columns()
    assigns = inv.assignments(RewriteMode.TRANSFORM)
    if assigns:
        inv.then("transform", assignments=assigns)
    inv.drop_pseudo_columns()
    return inv.plan


def _plan_summarize(inv: _Invocation) -> Plan:
    keys = list(inv.data.group_keys)
    inv.add_pseudo_columns()
    inv.then("summarize", assignments=inv.assignments(RewriteMode.AGGREGATE))
    inv.drop_pseudo_columns()
    if len(keys) > 1:
        # Each summarize peels off the innermost grouping level.
        inv.then("regroup", keys=keys[:-1])
    return inv.plan


def _plan_filter(inv: _Invocation) -> Plan:
    inv.add_pseudo_columns()
    predicates: List[Assign] = []
    for r in inv.resolved:
        with _fragment(r.source):
            predicates.append(Assign(unparse(r.node), inv.rewriter.predicate(r.node), r.source))
    if predicates:
        inv.then("subset", predicates=predicates)
    inv.drop_pseudo_columns()
    return inv.plan


def _plan_group_by(inv: _Invocation) -> Plan:
    inv.add_pseudo_columns()
    assigns: List[Assign] = []
    keys: List[str] = []
    for r in inv.resolved:
        with _fragment(r.source):
            new_assigns, new_keys = inv.rewriter.group_keys([r.node])
        assigns += [replace(a, source=r.source) for a in new_assigns]
        keys += [k for k in new_keys if k not in keys]
    if assigns:
        inv.then("transform", assignments=assigns)
    inv.drop_pseudo_columns()
    if keys:
        inv.then("group_by", keys=keys)
    else:
        inv.then("ungroup")
    return inv.plan


def _plan_ungroup(inv: _Invocation) -> Plan:
    inv.then("ungroup")
    return inv.plan


def _plan_slice(inv: _Invocation) -> Plan:
    with _fragment(", ".join(inv.sources)):
        indices = SliceIndices(inv.nodes)
    inv.then("slice", indices=indices)
    return inv.plan


def _plan_arrange(inv: _Invocation) -> Plan:
    keys = list(inv.data.group_keys)
    if not inv.resolved:
        return inv.plan
    inv.add_pseudo_columns()
    if keys:
        inv.then("ungroup")
    assigns: List[Assign] = []
    sort_keys = []
    for r in inv.resolved:
        with _fragment(r.source):
            new_assigns, new_keys = inv.rewriter.order_keys([r.node])
        assigns += [replace(a, source=r.source) for a in new_assigns]
        sort_keys += new_keys
    if assigns:
        inv.then("transform", assignments=assigns)
    inv.then("sort", keys=sort_keys)
    inv.drop_pseudo_columns()
    if keys:
        inv.then("regroup", keys=keys)
    return inv.plan


def _plan_distinct(inv: _Invocation) -> Plan:
    keys = list(inv.data.group_keys)
    if keys:
        inv.then("ungroup")
    inv.add_pseudo_columns()
    inv.then("unique", columns=inv.column_names())
    inv.drop_pseudo_columns()
    if keys:
        inv.then("regroup", keys=keys)
    return inv.plan


def _plan_drop_na(inv: _Invocation) -> Plan:
    keys = list(inv.data.group_keys)
    if keys:
        inv.then("ungroup")
    inv.then("drop_missing", columns=inv.column_names())
    if keys:
        inv.then("regroup", keys=keys)
    return inv.plan


_PLANNERS: Dict[str, Callable[[_Invocation], Plan]] = {
    "select": _plan_select,
    "transmute": _plan_select,
    "rename": _plan_rename,
    "mutate": _plan_mutate,
    "summarize": _plan_summarize,
    "summarise": _plan_summarize,
    "filter": _plan_filter,
    "group_by": _plan_group_by,
    "ungroup": _plan_ungroup,
    "slice": _plan_slice,
    "arrange": _plan_arrange,
    "distinct": _plan_distinct,
    "drop_na": _plan_drop_na,
}


def _run(verb: str, data, fragments, named, env, registry) -> Dataset:
    inv = _Invocation(verb, data, fragments, named, env, registry)
    return _execute(_PLANNERS[verb](inv), inv.data)


def explain(verb: str, data, *fragments: Fragment, env=None, registry=None, **named: Fragment) -> Plan:
    """Compile a verb call to its engine plan without running it."""
    if verb not in _PLANNERS:
        raise TidyUserError(
            "E_UNKNOWN_VERB",
            f"Unknown verb {verb!r}.",
            hint="Verbs: " + ", ".join(sorted(_PLANNERS)),
        )
    inv = _Invocation(verb, data, fragments, named, _caller_env(env), registry)
    return _PLANNERS[verb](inv)


# ---------------- public verbs ----------------

def select(data, *fragments: Fragment, env=None, registry=None, **named: Fragment) -> Dataset:
    """Keep, reorder, rename or compute columns.

    Accepts names, `-name` exclusions, `a:b` ranges, positions, selection
    helpers (`starts_with("x")`, ...) and `new = expr` entries.
    """
    return _run("select", data, fragments, named, _caller_env(env), registry)


def transmute(data, *fragments: Fragment, env=None, registry=None, **named: Fragment) -> Dataset:
    """Like mutate(), but keeps only the columns named in the call."""
    return _run("transmute", data, fragments, named, _caller_env(env), registry)


def rename(data, *fragments: Fragment, env=None, registry=None, **named: Fragment) -> Dataset:
    return _run("rename", data, fragments, named, _caller_env(env), registry)


def mutate(data, *fragments: Fragment, env=None, registry=None, **named: Fragment) -> Dataset:
    """Add or replace columns. Fragments run in order, so later ones can use earlier results."""
    return _run("mutate", data, fragments, named, _caller_env(env), registry)


def summarize(data, *fragments: Fragment, env=None, registry=None, **named: Fragment) -> Dataset:
    """Reduce each group to one row.

    With several grouping keys the result stays grouped by all but the last.
    """
    return _run("summarize", data, fragments, named, _caller_env(env), registry)


def summarise(data, *fragments: Fragment, env=None, registry=None, **named: Fragment) -> Dataset:
    return _run("summarise", data, fragments, named, _caller_env(env), registry)


def filter(data, *fragments: Fragment, env=None, registry=None) -> Dataset:
    """Keep rows where every condition is true. Missing results drop the row."""
    return _run("filter", data, fragments, {}, _caller_env(env), registry)


def group_by(data, *fragments: Fragment, env=None, registry=None, **named: Fragment) -> Dataset:
    """Group by columns (or computed `name = expr` keys), replacing any existing grouping."""
    return _run("group_by", data, fragments, named, _caller_env(env), registry)


def ungroup(data) -> Dataset:
    return _run("ungroup", data, (), {}, {}, None)


def slice(data, *fragments: Fragment, env=None) -> Dataset:
    """Rows by 1-based position within each group; `-k` counts from the end."""
    return _run("slice", data, fragments, {}, _caller_env(env), None)


def arrange(data, *fragments: Fragment, env=None, registry=None) -> Dataset:
    """Stable sort; wrap a key in desc() to reverse it. Grouping is kept."""
    return _run("arrange", data, fragments, {}, _caller_env(env), registry)


def distinct(data, *fragments: Fragment, env=None) -> Dataset:
    """Drop rows that repeat an earlier row on the given columns (whole rows by default)."""
    return _run("distinct", data, fragments, {}, _caller_env(env), None)


def drop_na(data, *fragments: Fragment, env=None) -> Dataset:
    """Drop rows with a missing value in the given columns (any column by default)."""
    return _run("drop_na", data, fragments, {}, _caller_env(env), None)


def pull(data, column: Fragment = -1, *, env=None) -> List[Any]:
    """Values of one column as a list. Positions are 1-based; negative ones count from the end."""
    ds = as_dataset(data)
    env = _caller_env(env)
    (resolved,), _, _ = resolve_all([_to_node(column)], env)
    node = resolved.node
    with _fragment(resolved.source):
        if isinstance(node, Literal) and isinstance(node.value, int) and node.value < 0:
            header = list(ds.header)
            if -node.value > len(header):
                raise TidyUserError(
                    "E_COLUMN_POSITION",
                    f"Column position {node.value} is out of range for {len(header)} columns.",
                )
            name = header[node.value]
        else:
            (name,) = Rewriter(ds.header, env=env).select_names(node)
    if get_option("code"):
        logger.info("generated plan:\npull(data, %r)", name)
    return list(etl.values(ds.table, name))


def count(data, *fragments: Fragment, sort: bool = False, name: str = "n", env=None) -> Dataset:
    """Number of rows per combination of the given columns (and any existing groups)."""
    env = _caller_env(env)
    ds = as_dataset(data)
    keys = list(ds.group_keys)
    grouped = group_by(ds, *[Sym(k) for k in keys], *fragments, env=env)
    if grouped.is_grouped:
        out = summarize(grouped, f"`{name}` = n()", env=env)
    else:
        out = summarize(ds, f"`{name}` = n()", env=env)
    out = _regroup(out, keys)
    if sort:
        out = arrange(out, f"desc(`{name}`)", env=env)
    return out


def tally(data, *, sort: bool = False, name: str = "n") -> Dataset:
    """Number of rows per group, i.e. summarize(data, n = n())."""
    out = summarize(data, f"`{name}` = n()", env={})
    if sort:
        out = arrange(out, f"desc(`{name}`)", env={})
    return out


def _regroup(data: Dataset, keys: Sequence[str]) -> Dataset:
    plan = Plan("regroup", [EngineCall("regroup", {"keys": list(keys)})])
    return plan.run(data)


def _type_label(values: Sequence[Any]) -> str:
    kinds = sorted({type(v).__name__ for v in values if v is not None})
    if not kinds:
        return "None"
    label = "|".join(kinds)
    if any(v is None for v in values):
        label += "|None"
    return label


def glimpse(data, width: int = 80) -> str:
    """A compact overview: one line per column with its type and leading values."""
    ds = as_dataset(data)
    lines = [f"Rows: {ds.nrows}", f"Columns: {len(ds.header)}"]
    if ds.is_grouped:
        lines.append(f"Groups: {', '.join(ds.group_keys)} [{len(ds.partitions())}]")
    for col, values in ds.columns().items():
        text = ("." + col).ljust(15) + _type_label(values).ljust(15) + ", ".join(str(v) for v in values)
        lines.append(text[:width])
    return "\n".join(lines)
