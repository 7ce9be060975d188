"""
Utility functions for the KeyVal client.

Includes duration parsing and the linear backoff helper used by transactions.
"""

import inspect
import re
from typing import Any, Callable, Union

Duration = Union[int, float, str]

_UNITS_MS = {
    "ms": 1,
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
    "w": 7 * 24 * 60 * 60 * 1000,
}

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d|w)\s*$", re.IGNORECASE)


def parse_duration_ms(value: Duration) -> int:
    """
    Parse a duration into whole milliseconds.

    Numbers are taken as milliseconds. Strings carry a unit suffix:
    "500ms", "30s", "5m", "2h", "1d", "1w".

    Raises:
        ValueError: On negative numbers, booleans or unparseable strings.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration must be non-negative, got {value}")
        return int(value)
    if isinstance(value, str):
        m = _DURATION_RE.match(value)
        if not m:
            raise ValueError(f"Invalid duration: {value!r}")
        amount, unit = m.groups()
        return int(float(amount) * _UNITS_MS[unit.lower()])
    raise ValueError(f"Invalid duration: {value!r}")


def duration_seconds(value: Duration) -> float:
    """Duration as float seconds, for asyncio.sleep and friends."""
    return parse_duration_ms(value) / 1000.0


def linear_backoff_ms(base_ms: int, attempt: int) -> int:
    """
    Linear backoff: base * attempt.

    Args:
        base_ms: Base delay in milliseconds
        attempt: Attempt number that just failed (1-based)
    """
    return base_ms * attempt


async def call_maybe_async(fn: Callable[..., Any], *args: Any) -> Any:
    """Call a sync or async callable and return its (awaited) result."""
    result = fn(*args)
    if inspect.isawaitable(result):
        return await result
    return result
