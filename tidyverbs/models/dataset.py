from __future__ import annotations

import decimal
from collections import OrderedDict
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import petl as etl

from tidyverbs.errors import TidyUserError


def sort_key(value: Any) -> Tuple[int, str, Any]:
    """Total order over mixed cell values: numbers, then other types by name, missing last."""
    if value is None:
        return (2, "", 0)
    if isinstance(value, (bool, int, float, decimal.Decimal)):
        return (0, "", value)
    return (1, type(value).__name__, value)


class Dataset:
    """A petl table plus (for grouped data) its grouping keys.

    Both variants share this interface; they differ only in `group_keys` and in
    how `partitions()` splits the rows.
    """

    def __init__(self, table):
        self._table = table

    @property
    def table(self):
        return self._table

    def to_petl(self):
        return self._table

    @property
    def header(self) -> Tuple[str, ...]:
        return tuple(etl.header(self._table))

    @property
    def nrows(self) -> int:
        return etl.nrows(self._table)

    @property
    def group_keys(self) -> Tuple[str, ...]:
        return ()

    @property
    def is_grouped(self) -> bool:
        return bool(self.group_keys)

    def columns(self) -> Dict[str, List[Any]]:
        hdr = self.header
        if not hdr:
            return OrderedDict()
        cols = etl.columns(self._table)
        return OrderedDict((h, list(cols.get(h, []))) for h in hdr)

    def records(self) -> List[Dict[str, Any]]:
        return [dict(r) for r in etl.dicts(self._table)]

    def partitions(self) -> List[Tuple[Tuple[Any, ...], List[int]]]:
        return [((), list(range(self.nrows)))]

    def with_table(self, table) -> "Dataset":
        raise NotImplementedError

    def ungroup(self) -> "Table":
        return Table(self._table)

    def look(self, limit: int = 5) -> str:
        return str(etl.look(self._table, limit=limit))

    def __iter__(self) -> Iterator[Tuple[Any, ...]]:
        return iter(self._table)

    def __len__(self) -> int:
        return self.nrows


class Table(Dataset):
    """A flat dataset."""

    def with_table(self, table) -> "Table":
        return Table(table)

    def __repr__(self) -> str:
        return f"Table({self.nrows} rows x {len(self.header)} columns)\n{self.look()}"


class GroupedTable(Dataset):
    """A dataset partitioned by key columns.

    Groups are ordered by key ascending (missing last); rows inside a group keep
    their table order.
    """

    def __init__(self, table, keys: Sequence[str]):
        super().__init__(table)
        keys = tuple(keys)
        if not keys:
            raise TidyUserError(
                "E_GROUP_KEYS",
                "A grouped dataset needs at least one key column.",
                hint="Use ungroup() for a flat dataset.",
            )
        missing = [k for k in keys if k not in self.header]
        if missing:
            raise TidyUserError(
                "E_UNKNOWN_COLUMN",
                f"Grouping column(s) not present in the data: {missing}.",
                hint="Available columns: " + ", ".join(self.header),
            )
        self._keys = keys

    @property
    def group_keys(self) -> Tuple[str, ...]:
        return self._keys

    def partitions(self) -> List[Tuple[Tuple[Any, ...], List[int]]]:
        idx = [self.header.index(k) for k in self._keys]
        groups: Dict[Tuple[Any, ...], List[int]] = OrderedDict()
        for i, row in enumerate(etl.data(self._table)):
            key = tuple(row[j] for j in idx)
            groups.setdefault(key, []).append(i)
        return sorted(groups.items(), key=lambda kv: tuple(sort_key(v) for v in kv[0]))

    def with_table(self, table) -> "GroupedTable":
        return GroupedTable(table, self._keys)

    def __repr__(self) -> str:
        ngroups = len(self.partitions())
        return (
            f"GroupedTable({self.nrows} rows x {len(self.header)} columns; "
            f"groups: {', '.join(self._keys)} [{ngroups}])\n{self.look()}"
        )


def table_from_columns(columns: Mapping[str, Sequence[Any]]):
    """Build a petl table from equally long columns."""
    header = list(columns)
    lengths = {len(v) for v in columns.values()}
    if len(lengths) > 1:
        raise TidyUserError(
            "E_LENGTH_MISMATCH",
            f"Columns have different lengths: {sorted(lengths)}.",
            hint="Every column must hold one value per row.",
        )
    return etl.fromcolumns([list(columns[h]) for h in header], header=header)


def from_columns(columns: Mapping[str, Sequence[Any]]) -> Table:
    return Table(table_from_columns(columns))


def from_records(records: Iterable[Mapping[str, Any]], header: Optional[Sequence[str]] = None) -> Table:
    rows = [dict(r) for r in records]
    if header is None:
        seen: Dict[str, None] = OrderedDict()
        for r in rows:
            for k in r:
                seen.setdefault(k, None)
        header = list(seen)
    return from_columns(OrderedDict((h, [r.get(h) for r in rows]) for h in header))


def as_dataset(data: Any) -> Dataset:
    """Accept a Dataset or a bare petl table."""
    if isinstance(data, Dataset):
        return data
    try:
        etl.header(data)
    except Exception as e:
        raise TidyUserError(
            "E_DATASET_TYPE",
            f"Expected a Table, GroupedTable or petl table, got {type(data).__name__}.",
            hint="Wrap rows with petl, e.g. Table(petl.wrap([('a',), (1,)])).",
        ) from e
    return Table(data)
