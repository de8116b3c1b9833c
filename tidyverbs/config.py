from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator

from tidyverbs.errors import InvalidOption

logger = logging.getLogger(__name__)

_OPTIONS: Dict[str, bool] = {
    "code": False,  # log the generated engine calls before running them
}
_NOT_IMPLEMENTED = {"log"}


def _check(option: Any, value: Any) -> None:
    if option in _NOT_IMPLEMENTED:
        raise InvalidOption(
            f"Option {option!r} is not implemented yet.",
            hint="Supported options: " + ", ".join(sorted(_OPTIONS)),
        )
    if not isinstance(option, str) or option not in _OPTIONS:
        raise InvalidOption(
            f"{option!r} is not a valid option.",
            hint="Supported options: " + ", ".join(sorted(_OPTIONS)),
        )
    if not isinstance(value, bool):
        raise InvalidOption(
            f"Option {option!r} expects a boolean, got {value!r}.",
            hint=f"Example: set_option({option!r}, True)",
        )


def set_option(option: str, value: bool) -> None:
    """Set a process-wide option. Only 'code' is currently supported."""
    _check(option, value)
    _OPTIONS[option] = value
    logger.debug("option %s set to %s", option, value)


def get_option(option: str) -> bool:
    if option not in _OPTIONS:
        _check(option, False)
    return _OPTIONS[option]


@contextmanager
def option_context(**options: bool) -> Iterator[None]:
    """Temporarily set options, restoring the previous values on exit."""
    for name, value in options.items():
        _check(name, value)
    saved = {name: _OPTIONS[name] for name in options}
    try:
        _OPTIONS.update(options)
        yield
    finally:
        _OPTIONS.update(saved)
