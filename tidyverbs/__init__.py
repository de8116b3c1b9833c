import logging

from tidyverbs.config import get_option, option_context, set_option
from tidyverbs.errors import (
    InvalidInterpolation,
    InvalidOption,
    MixedSliceSign,
    NonBooleanPredicate,
    TidyUserError,
    UnsupportedExpression,
)
from tidyverbs.functions import missing_aware, row_aligned
from tidyverbs.interpolation import quote, sym, syms
from tidyverbs.io import read_csv, write_csv
from tidyverbs.models.dataset import Dataset, GroupedTable, Table, from_columns, from_records
from tidyverbs.models.plan import EngineCall, ExecutionContext, Plan
from tidyverbs.registry import DEFAULT_REGISTRY, VectorizationRegistry
from tidyverbs.verbs import (
    arrange,
    count,
    distinct,
    drop_na,
    explain,
    filter,
    glimpse,
    group_by,
    mutate,
    pull,
    rename,
    select,
    slice,
    summarise,
    summarize,
    tally,
    transmute,
    ungroup,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "DEFAULT_REGISTRY",
    "Dataset",
    "EngineCall",
    "ExecutionContext",
    "GroupedTable",
    "InvalidInterpolation",
    "InvalidOption",
    "MixedSliceSign",
    "NonBooleanPredicate",
    "Plan",
    "Table",
    "TidyUserError",
    "UnsupportedExpression",
    "VectorizationRegistry",
    "arrange",
    "count",
    "distinct",
    "drop_na",
    "explain",
    "filter",
    "from_columns",
    "from_records",
    "get_option",
    "glimpse",
    "group_by",
    "missing_aware",
    "mutate",
    "option_context",
    "pull",
    "quote",
    "read_csv",
    "rename",
    "row_aligned",
    "select",
    "set_option",
    "slice",
    "summarise",
    "summarize",
    "sym",
    "syms",
    "tally",
    "transmute",
    "ungroup",
    "write_csv",
]
