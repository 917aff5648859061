"""Aggregation configuration.

Options are validated once, at construction. An invalid window or an empty
function set raises ``ConfigurationError`` before any series is read.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Iterable

import pandas as pd

from ..errors import ConfigurationError


class AggregationFunction(str, Enum):
    """Per-bucket aggregation functions, named as in configuration files."""

    COUNT = "count"
    SUM = "sum"
    MIN = "min"
    MAX = "max"
    MEAN = "mean"

    @property
    def column(self) -> str:
        """Output column name, e.g. ``_count``."""
        return f"_{self.value}"


DEFAULT_FUNCTIONS = (
    AggregationFunction.COUNT,
    AggregationFunction.SUM,
    AggregationFunction.MIN,
    AggregationFunction.MAX,
)


class IntegrityPolicy(str, Enum):
    """What to do with a series whose timestamps go backwards."""

    ABORT = "abort"  # fail the whole export
    SKIP = "skip"  # drop the offending series, keep going


def parse_window(window: timedelta | str | int | float) -> int:
    """Convert a window (timedelta, ``"60s"``-style string or seconds) to ms."""
    try:
        if isinstance(window, (int, float)) and not isinstance(window, bool):
            delta = pd.Timedelta(seconds=window)
        else:
            delta = pd.Timedelta(window)
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"Invalid window duration: {window!r}") from e
    if pd.isna(delta):
        raise ConfigurationError(f"Invalid window duration: {window!r}")
    if delta.value % 1_000_000 != 0:
        raise ConfigurationError(f"Window must be a whole number of milliseconds: {window!r}")
    return int(delta.value // 1_000_000)


@dataclass(frozen=True)
class AggregationOptions:
    """Window size and enabled functions for one export.

    Args:
        window: Bucket width; must be > 0
        functions: Enabled functions, in output column order
        on_integrity_error: Policy for out-of-order sample streams
        parallelism: Number of series aggregated concurrently (1 = sequential)
    """

    window: timedelta | str | int | float = timedelta(minutes=1)
    functions: tuple[AggregationFunction, ...] = DEFAULT_FUNCTIONS
    on_integrity_error: IntegrityPolicy = IntegrityPolicy.ABORT
    parallelism: int = 1

    def __post_init__(self):
        window_ms = parse_window(self.window)
        if window_ms <= 0:
            raise ConfigurationError(f"Window must be positive, got {self.window!r}")
        object.__setattr__(self, "window", timedelta(milliseconds=window_ms))

        functions = self._coerce_functions(self.functions)
        if not functions:
            raise ConfigurationError("At least one aggregation function must be enabled")
        object.__setattr__(self, "functions", functions)

        try:
            policy = IntegrityPolicy(self.on_integrity_error)
        except ValueError as e:
            raise ConfigurationError(
                f"Unknown integrity policy: {self.on_integrity_error!r}"
            ) from e
        object.__setattr__(self, "on_integrity_error", policy)

        if int(self.parallelism) < 1:
            raise ConfigurationError(f"Parallelism must be >= 1, got {self.parallelism}")
        object.__setattr__(self, "parallelism", int(self.parallelism))

    @staticmethod
    def _coerce_functions(
        functions: Iterable[AggregationFunction | str],
    ) -> tuple[AggregationFunction, ...]:
        if isinstance(functions, str):
            functions = [functions]
        result: list[AggregationFunction] = []
        for fn in functions:
            try:
                fn = AggregationFunction(fn.lower() if isinstance(fn, str) else fn)
            except ValueError as e:
                valid = ", ".join(f.value for f in AggregationFunction)
                raise ConfigurationError(
                    f"Unknown aggregation function {fn!r}; expected one of: {valid}"
                ) from e
            if fn in result:
                raise ConfigurationError(f"Aggregation function {fn.value!r} enabled twice")
            result.append(fn)
        return tuple(result)

    @property
    def window_ms(self) -> int:
        return int(self.window / timedelta(milliseconds=1))

    def enabled(self, fn: AggregationFunction) -> bool:
        return fn in self.functions
