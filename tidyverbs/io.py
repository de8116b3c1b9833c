from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Optional, Sequence

import petl as etl

from tidyverbs.errors import TidyUserError
from tidyverbs.models.dataset import Dataset, Table, as_dataset

logger = logging.getLogger(__name__)


def _is_probably_url(s: str) -> bool:
    return s.startswith("http://") or s.startswith("https://") or s.startswith("s3://")


def _infer_type_from_uri(uri: str) -> Optional[str]:
    ext = Path(uri).suffix.lower()
    if ext == ".csv":
        return "csv"
    if ext == ".tsv":
        return "tsv"
    return None


def _check_type(uri: str, type: Optional[str], kind: str) -> str:
    inferred = type or _infer_type_from_uri(uri)
    prefix = "E_SOURCE" if kind == "source" else "E_SINK"
    if inferred is None:
        raise TidyUserError(
            f"{prefix}_TYPE_INFER",
            f"Could not infer file type from uri='{uri}'.",
            hint="Provide type explicitly, e.g. read_csv('file.txt', type='csv').",
        )
    if inferred not in {"csv", "tsv"}:
        raise TidyUserError(
            f"{prefix}_TYPE_UNSUPPORTED",
            f"File type '{inferred}' is not supported.",
            hint="Currently supported types: csv, tsv.",
        )
    return inferred


def read_csv(
    uri: str,
    *,
    type: Optional[str] = None,
    numbers: bool = True,
    missing: Sequence[str] = ("", "NA"),
    **options: Any,
) -> Table:
    """Read a delimited file into a Table.

    Cells listed in `missing` become missing values; with `numbers` on, cells
    that look like numbers are converted.
    """
    kind = _check_type(uri, type, "source")
    if not _is_probably_url(uri) and not os.path.exists(uri):
        raise TidyUserError(
            "E_SOURCE_NOT_FOUND",
            f"File not found: '{uri}'.",
            hint="Check the path, or pass an absolute path.",
        )
    if kind == "tsv":
        options.setdefault("delimiter", "\t")
    try:
        table = etl.fromcsv(uri, **options)
        for marker in missing:
            table = etl.replaceall(table, marker, None)
        if numbers:
            table = etl.convertnumbers(table)
        # Read once so later verbs do not go back to the file.
        table = etl.wrap([tuple(row) for row in table])
    except TidyUserError:
        raise
    except Exception as e:
        raise TidyUserError(
            "E_SOURCE_READ",
            f"Could not read '{uri}': {_type_name(e)}: {e}",
            hint="Check the file encoding and delimiter options.",
        ) from e
    logger.debug("read %s: %d rows", uri, etl.nrows(table))
    return Table(table)


def _type_name(e: BaseException) -> str:
    return e.__class__.__name__


def write_csv(data: Any, uri: str, *, type: Optional[str] = None, **options: Any) -> None:
    """Write a dataset (grouping is not stored) to a delimited file."""
    ds: Dataset = as_dataset(data)
    kind = _check_type(uri, type, "sink")
    parent = os.path.dirname(uri) or "."
    if not os.path.isdir(parent):
        raise TidyUserError(
            "E_SINK_DIR_NOT_FOUND",
            f"Output directory does not exist: '{parent}'.",
            hint="Create the directory or choose a different output path.",
        )
    if kind == "tsv":
        options.setdefault("delimiter", "\t")
    try:
        etl.tocsv(ds.table, uri, **options)
    except PermissionError as e:
        raise TidyUserError(
            "E_SINK_NOT_WRITABLE",
            f"Cannot write to output directory: '{parent}'.",
            hint="Check permissions or choose a different output location.",
        ) from e
    except Exception as e:
        raise TidyUserError(
            "E_SINK_WRITE",
            f"Could not write '{uri}': {_type_name(e)}: {e}",
            hint="Check file permissions and options (delimiter/encoding).",
        ) from e
