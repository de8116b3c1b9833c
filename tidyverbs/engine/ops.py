from __future__ import annotations

import logging
import re
from typing import Any, Callable, Dict, List, Sequence, Type

import petl as etl

from tidyverbs.engine.exprs import ColumnVector, EngineExpr, Frame
from tidyverbs.errors import NonBooleanPredicate, TidyUserError
from tidyverbs.models.dataset import Dataset, GroupedTable, Table, sort_key, table_from_columns
from tidyverbs.rewriter import PSEUDO_PREFIX, Assign, Pick, SortKey
from tidyverbs.slicing import SliceIndices

logger = logging.getLogger(__name__)

_ROW_INDEX = PSEUDO_PREFIX + "row_index"


# ---------------- shared helpers ----------------

def materialize(table):
    """Freeze a lazy petl view into an in-memory table."""
    return etl.wrap([tuple(row) for row in table])


def _frame(columns: Dict[str, List[Any]], rows: Sequence[int]) -> Frame:
    return Frame({name: [values[i] for i in rows] for name, values in columns.items()}, len(rows))


def _spread(name: str, value: Any, size: int) -> List[Any]:
    if isinstance(value, ColumnVector):
        if len(value) != size:
            raise TidyUserError(
                "E_LENGTH_MISMATCH",
                f"Column {name!r} received {len(value)} values for a group of {size} rows.",
                hint="Expressions must produce one value per row, or a single value to repeat.",
            )
        return list(value)
    return [value] * size


def _set_column(table, name: str, values: List[Any]):
    hdr = list(etl.header(table))
    if name in hdr:
        return etl.addcolumn(etl.cutout(table, name), name, values, index=hdr.index(name))
    return etl.addcolumn(table, name, values)


def _evaluate_assign(data: Dataset, columns: Dict[str, List[Any]], assign: Assign) -> List[Any]:
    """Evaluate one assignment per group and scatter the results back to table order."""
    out: List[Any] = [None] * data.nrows
    for _, rows in data.partitions():
        try:
            value = assign.expr.evaluate(_frame(columns, rows))
            spread = _spread(assign.name, value, len(rows))
        except TidyUserError as e:
            raise e.with_fragment(assign.source or assign.name)
        for i, v in zip(rows, spread):
            out[i] = v
    return out


def _render_param(value: Any) -> str:
    if isinstance(value, EngineExpr):
        return value.render()
    if isinstance(value, Assign):
        return f"{value.name!r} => {value.expr.render()}"
    if isinstance(value, Pick):
        return repr(value.source) if value.name == value.source else f"{value.source!r} => {value.name!r}"
    if isinstance(value, SortKey):
        return f"desc({value.column!r})" if value.reverse else repr(value.column)
    if isinstance(value, SliceIndices):
        return value.render()
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(_render_param(v) for v in value) + "]"
    return repr(value)


def _ir_param(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return [_ir_param(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return _render_param(value)


# ---------------- engine op registry ----------------

class EngineOp:
    """Internal implementation of one engine call.

    Users never build these directly; verbs emit `EngineCall(op, params)` and
    the plan looks the implementation up by op name.
    """

    op: str = ""

    @classmethod
    def validate_params(cls, params: Dict[str, Any]) -> None:
        return

    @classmethod
    def apply(cls, data: Dataset, *, params: Dict[str, Any], context: Any) -> Dataset:
        raise TidyUserError(
            "E_PLAN_OP",
            f"Engine op '{cls.op}' is not implemented.",
            hint="Implement it as an EngineOp and register it.",
        )

    @classmethod
    def render(cls, params: Dict[str, Any]) -> str:
        args = ", ".join(f"{k}={_render_param(v)}" for k, v in params.items())
        return f"{cls.op}({args})"

    @classmethod
    def to_ir(cls, params: Dict[str, Any]) -> Dict[str, Any]:
        return {k: _ir_param(v) for k, v in params.items()}


ENGINE_OPS: Dict[str, Type[EngineOp]] = {}


def register_op(op: str) -> Callable[[Type[EngineOp]], Type[EngineOp]]:
    """Decorator to register an EngineOp under an op string."""

    def deco(cls: Type[EngineOp]) -> Type[EngineOp]:
        cls.op = op
        ENGINE_OPS[op] = cls
        return cls

    return deco


def _require(params: Dict[str, Any], key: str, kind: type, example: str, op: str) -> None:
    if not isinstance(params.get(key), kind):
        raise TidyUserError(
            "E_PLAN_OP",
            f"{op} requires params.{key} as a {kind.__name__}.",
            hint=f"Example: EngineCall('{op}', {example})",
        )


# ---------------- pseudo-columns ----------------

@register_op("add_row_count")
class AddRowCount(EngineOp):
    """Materialize each row's group size (the whole table when ungrouped)."""

    @classmethod
    def validate_params(cls, params: Dict[str, Any]) -> None:
        _require(params, "column", str, "{'column': '__tidyverbs_n'}", cls.op)

    @classmethod
    def apply(cls, data: Dataset, *, params: Dict[str, Any], context: Any) -> Dataset:
        values: List[Any] = [None] * data.nrows
        for _, rows in data.partitions():
            for i in rows:
                values[i] = len(rows)
        return data.with_table(materialize(_set_column(data.table, params["column"], values)))


@register_op("add_row_number")
class AddRowNumber(EngineOp):
    """Materialize each row's 1-based position within its group."""

    @classmethod
    def validate_params(cls, params: Dict[str, Any]) -> None:
        _require(params, "column", str, "{'column': '__tidyverbs_row_number'}", cls.op)

    @classmethod
    def apply(cls, data: Dataset, *, params: Dict[str, Any], context: Any) -> Dataset:
        values: List[Any] = [None] * data.nrows
        for _, rows in data.partitions():
            for pos, i in enumerate(rows, start=1):
                values[i] = pos
        return data.with_table(materialize(_set_column(data.table, params["column"], values)))


# ---------------- column operations ----------------

@register_op("transform")
class TransformOp(EngineOp):
    """Add or replace columns; later assignments see earlier ones."""

    @classmethod
    def validate_params(cls, params: Dict[str, Any]) -> None:
        _require(params, "assignments", list, "{'assignments': [Assign('x', Col('a'))]}", cls.op)

    @classmethod
    def apply(cls, data: Dataset, *, params: Dict[str, Any], context: Any) -> Dataset:
        table = data.table
        for assign in params["assignments"]:
            columns = data.with_table(table).columns()
            values = _evaluate_assign(data.with_table(table), columns, assign)
            table = materialize(_set_column(table, assign.name, values))
        return data.with_table(table)


@register_op("select")
class SelectOp(EngineOp):
    """Project to the given columns in order, computing or renaming as needed."""

    @classmethod
    def validate_params(cls, params: Dict[str, Any]) -> None:
        _require(params, "items", list, "{'items': [Pick('a', 'a')]}", cls.op)

    @classmethod
    def apply(cls, data: Dataset, *, params: Dict[str, Any], context: Any) -> Dataset:
        items = list(params["items"])
        names = [item.name for item in items]
        missing_keys = [k for k in data.group_keys if k not in names]
        if missing_keys:
            logger.info("adding missing grouping columns: %s", ", ".join(missing_keys))
            items = [Pick(k, k) for k in missing_keys] + items

        if not items:
            return Table(etl.wrap([()]))

        sources = [item.source for item in items if isinstance(item, Pick)]
        if len(sources) == len(items) and len(set(sources)) == len(sources):
            table = etl.cut(data.table, *sources)
            renames = {item.source: item.name for item in items if item.name != item.source}
            if renames:
                table = etl.rename(table, renames)
            return data.with_table(materialize(table))

        columns = data.columns()
        out: Dict[str, List[Any]] = {}
        for item in items:
            if isinstance(item, Pick):
                out[item.name] = columns[item.source]
            else:
                out[item.name] = _evaluate_assign(data, columns, item)
        return data.with_table(table_from_columns(out))


@register_op("rename")
class RenameOp(EngineOp):
    @classmethod
    def validate_params(cls, params: Dict[str, Any]) -> None:
        _require(params, "mapping", dict, "{'mapping': {'old': 'new'}}", cls.op)

    @classmethod
    def apply(cls, data: Dataset, *, params: Dict[str, Any], context: Any) -> Dataset:
        mapping = params["mapping"]
        table = materialize(etl.rename(data.table, dict(mapping))) if mapping else data.table
        if data.is_grouped:
            return GroupedTable(table, [mapping.get(k, k) for k in data.group_keys])
        return Table(table)


@register_op("drop_pattern")
class DropPattern(EngineOp):
    """Remove every column whose name matches a regular expression."""

    @classmethod
    def validate_params(cls, params: Dict[str, Any]) -> None:
        _require(params, "pattern", str, "{'pattern': '^__tidyverbs_'}", cls.op)

    @classmethod
    def apply(cls, data: Dataset, *, params: Dict[str, Any], context: Any) -> Dataset:
        rx = re.compile(params["pattern"])
        drop = [h for h in data.header if rx.search(h)]
        if not drop:
            return data
        return data.with_table(materialize(etl.cutout(data.table, *drop)))


# ---------------- row operations ----------------

@register_op("summarize")
class SummarizeOp(EngineOp):
    """Reduce each group to one row: the group keys followed by the summaries."""

    @classmethod
    def validate_params(cls, params: Dict[str, Any]) -> None:
        _require(params, "assignments", list, "{'assignments': [Assign('m', Apply('mean', ...))]}", cls.op)

    @classmethod
    def apply(cls, data: Dataset, *, params: Dict[str, Any], context: Any) -> Dataset:
        keys = list(data.group_keys)
        assigns: List[Assign] = params["assignments"]
        out: Dict[str, List[Any]] = {k: [] for k in keys}
        for a in assigns:
            out[a.name] = []

        columns = data.columns()
        for key, rows in data.partitions():
            frame_columns = {name: [values[i] for i in rows] for name, values in columns.items()}
            for k, v in zip(keys, key):
                out[k].append(v)
            for a in assigns:
                try:
                    value = a.expr.evaluate(Frame(frame_columns, len(rows)))
                except TidyUserError as e:
                    raise e.with_fragment(a.source or a.name)
                if isinstance(value, ColumnVector):
                    if len(value) != 1:
                        raise TidyUserError(
                            "E_SUMMARIZE_NOT_SCALAR",
                            f"Summary {a.name!r} produced {len(value)} values for one group.",
                            hint="Wrap the column in an aggregate such as mean(), sum(), first() or n_distinct().",
                            fragment=a.source or a.name,
                        )
                    value = value[0]
                out[a.name].append(value)
                # Later summaries may refer to earlier ones.
                frame_columns[a.name] = [value] * len(rows)
        return Table(table_from_columns(out))


def _is_boolean(value: Any) -> bool:
    return value is None or isinstance(value, bool)


@register_op("subset")
class SubsetOp(EngineOp):
    """Keep rows where every predicate holds; missing counts as false."""

    @classmethod
    def validate_params(cls, params: Dict[str, Any]) -> None:
        _require(params, "predicates", list, "{'predicates': [Assign('x > 1', ...)]}", cls.op)

    @classmethod
    def apply(cls, data: Dataset, *, params: Dict[str, Any], context: Any) -> Dataset:
        columns = data.columns()
        keep = [True] * data.nrows
        for _, rows in data.partitions():
            frame = _frame(columns, rows)
            for pred in params["predicates"]:
                try:
                    values = _spread(pred.name, pred.expr.evaluate(frame), len(rows))
                except TidyUserError as e:
                    raise e.with_fragment(pred.source or pred.name)
                bad = next((v for v in values if not _is_boolean(v)), None)
                if bad is not None:
                    raise NonBooleanPredicate(
                        f"Condition {pred.name!r} produced {bad!r} ({type(bad).__name__}), not true/false.",
                        hint="Compare the value explicitly, e.g. x > 0 or is_missing(x).",
                        fragment=pred.source or pred.name,
                    )
                for i, v in zip(rows, values):
                    if v is not True:
                        keep[i] = False
        indexed = etl.addrownumbers(data.table, start=0, field=_ROW_INDEX)
        kept = etl.select(indexed, lambda rec: keep[rec[_ROW_INDEX]])
        return data.with_table(materialize(etl.cutout(kept, _ROW_INDEX)))


@register_op("slice")
class SliceOp(EngineOp):
    """Pick rows by position within each group; groups come out in key order."""

    @classmethod
    def validate_params(cls, params: Dict[str, Any]) -> None:
        _require(params, "indices", SliceIndices, "{'indices': SliceIndices([Literal(1)])}", cls.op)

    @classmethod
    def apply(cls, data: Dataset, *, params: Dict[str, Any], context: Any) -> Dataset:
        indices: SliceIndices = params["indices"]
        rows = list(etl.data(data.table))
        out = []
        for _, group in data.partitions():
            out.extend(rows[group[p]] for p in indices.positions(len(group)))
        return data.with_table(etl.wrap([data.header] + out))


@register_op("sort")
class SortOp(EngineOp):
    """Stable multi-key sort; missing values sort last in either direction."""

    @classmethod
    def validate_params(cls, params: Dict[str, Any]) -> None:
        _require(params, "keys", list, "{'keys': [SortKey('a', reverse=True)]}", cls.op)

    @classmethod
    def apply(cls, data: Dataset, *, params: Dict[str, Any], context: Any) -> Dataset:
        hdr = list(data.header)
        rows = list(etl.data(data.table))
        # One stable pass per key, last key first.
        for key in reversed(params["keys"]):
            i = hdr.index(key.column)
            present = [r for r in rows if r[i] is not None]
            absent = [r for r in rows if r[i] is None]
            try:
                present.sort(key=lambda r: sort_key(r[i]), reverse=key.reverse)
            except TypeError as e:
                raise TidyUserError(
                    "E_SORT_TYPES",
                    f"Column {key.column!r} mixes values that cannot be ordered: {e}",
                    hint="Convert the column to one type first, e.g. mutate(x = as_float(x)).",
                ) from e
            rows = present + absent
        return data.with_table(etl.wrap([tuple(hdr)] + rows))


@register_op("unique")
class UniqueOp(EngineOp):
    """Drop rows repeating an earlier row on the given columns (all columns by default)."""

    @classmethod
    def apply(cls, data: Dataset, *, params: Dict[str, Any], context: Any) -> Dataset:
        hdr = list(data.header)
        cols = params.get("columns") or hdr
        idx = [hdr.index(c) for c in cols]
        seen = set()
        out = []
        for row in etl.data(data.table):
            key = tuple(_hashable(row[i]) for i in idx)
            if key in seen:
                continue
            seen.add(key)
            out.append(row)
        return data.with_table(etl.wrap([tuple(hdr)] + out))


def _hashable(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(_hashable(v) for v in value)
    if isinstance(value, dict):
        return tuple(sorted((k, _hashable(v)) for k, v in value.items()))
    return value


@register_op("drop_missing")
class DropMissing(EngineOp):
    """Drop rows with a missing value in any of the given columns (all columns by default)."""

    @classmethod
    def apply(cls, data: Dataset, *, params: Dict[str, Any], context: Any) -> Dataset:
        cols = params.get("columns") or list(data.header)
        kept = etl.select(data.table, lambda rec: all(rec[c] is not None for c in cols))
        return data.with_table(materialize(kept))


# ---------------- grouping ----------------

@register_op("group_by")
class GroupByOp(EngineOp):
    @classmethod
    def validate_params(cls, params: Dict[str, Any]) -> None:
        _require(params, "keys", list, "{'keys': ['a', 'b']}", cls.op)

    @classmethod
    def apply(cls, data: Dataset, *, params: Dict[str, Any], context: Any) -> Dataset:
        return GroupedTable(data.table, params["keys"])


@register_op("ungroup")
class UngroupOp(EngineOp):
    @classmethod
    def apply(cls, data: Dataset, *, params: Dict[str, Any], context: Any) -> Dataset:
        return data.ungroup()


@register_op("regroup")
class RegroupOp(EngineOp):
    """Restore grouping by the given keys; an empty key list yields a flat table."""

    @classmethod
    def validate_params(cls, params: Dict[str, Any]) -> None:
        _require(params, "keys", list, "{'keys': ['a']}", cls.op)

    @classmethod
    def apply(cls, data: Dataset, *, params: Dict[str, Any], context: Any) -> Dataset:
        keys = params["keys"]
        if not keys:
            return Table(data.table)
        return GroupedTable(data.table, keys)


def lookup(op: str) -> Type[EngineOp]:
    impl = ENGINE_OPS.get(op)
    if impl is None:
        raise TidyUserError(
            "E_PLAN_OP",
            f"Engine op '{op}' is not implemented.",
            hint="Supported ops: " + ", ".join(sorted(ENGINE_OPS.keys())),
        )
    return impl
