from __future__ import annotations

from typing import Optional


class TidyUserError(Exception):
    """An instructional error intended for end users.

    Raised for mistakes in verb arguments (bad syntax, unknown columns, bad
    interpolation, etc.). It carries a short error code, the surface text of
    the offending fragment when there is one, and an optional hint.
    """

    default_code = "E_TIDY"

    def __init__(
        self,
        code: Optional[str],
        message: str,
        *,
        hint: Optional[str] = None,
        fragment: Optional[str] = None,
    ):
        super().__init__(message)
        self.code = code or self.default_code
        self.message = message
        self.hint = hint
        self.fragment = fragment

    def with_fragment(self, fragment: str) -> "TidyUserError":
        if self.fragment is None:
            self.fragment = fragment
        return self

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.fragment:
            base += f"\nFragment: {self.fragment}"
        if self.hint:
            base += f"\nHint: {self.hint}"
        return base


class _KindError(TidyUserError):
    def __init__(self, message: str, *, hint: Optional[str] = None, fragment: Optional[str] = None):
        super().__init__(self.default_code, message, hint=hint, fragment=fragment)


class InvalidInterpolation(_KindError):
    """An interpolated value cannot be used at its position in the fragment."""

    default_code = "E_INTERPOLATION"


class UnsupportedExpression(_KindError):
    """A fragment matches no rewrite rule."""

    default_code = "E_UNSUPPORTED_EXPR"


class NonBooleanPredicate(_KindError):
    default_code = "E_NON_BOOLEAN_PREDICATE"


class MixedSliceSign(_KindError):
    default_code = "E_SLICE_MIXED_SIGN"


class InvalidOption(_KindError):
    default_code = "E_INVALID_OPTION"
