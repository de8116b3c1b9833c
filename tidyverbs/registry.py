from __future__ import annotations

from typing import Iterable, Iterator, Optional

# Identifiers whose calls always see whole columns: aggregates, constructors,
# window helpers, selection helpers and special forms.
DEFAULT_NOT_VECTORIZED = (
    ":", "Ref", "Set", "Cols",
    "lag", "lead", "ntile", "repeat", "across", "desc",
    "mean", "std", "var", "median", "quantile",
    "first", "last", "nth", "minimum", "maximum", "sum", "length", "n_distinct",
    "skipmissing", "passmissing", "cumsum", "cumprod", "accumulate",
    "min_rank", "dense_rank", "percent_rank",
    "starts_with", "ends_with", "matches", "contains", "everything", "c",
)


class VectorizationRegistry:
    """Exact-match set of function names that are never auto-vectorized.

    A call whose head is in the registry receives whole columns; any other call
    is applied element-wise. Membership is the only thing consulted.
    """

    def __init__(self, names: Optional[Iterable[str]] = None):
        self._defaults = tuple(DEFAULT_NOT_VECTORIZED if names is None else names)
        self._names = set(self._defaults)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name in self._names

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._names))

    def __len__(self) -> int:
        return len(self._names)

    def add(self, *names: str) -> "VectorizationRegistry":
        for name in names:
            if not isinstance(name, str) or not name:
                raise TypeError(f"Registry entries must be non-empty strings, got {name!r}")
            self._names.add(name)
        return self

    def discard(self, *names: str) -> "VectorizationRegistry":
        for name in names:
            self._names.discard(name)
        return self

    def reset(self) -> None:
        self._names = set(self._defaults)

    def copy(self) -> "VectorizationRegistry":
        out = VectorizationRegistry(self._defaults)
        out._names = set(self._names)
        return out

    def __repr__(self) -> str:
        return f"VectorizationRegistry({len(self._names)} names)"


# Process-wide registry used when a verb is not given one explicitly.
DEFAULT_REGISTRY = VectorizationRegistry()
