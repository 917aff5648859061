"""Aggregation of series into fixed-schema tables."""

from .options import (
    AggregationFunction,
    AggregationOptions,
    IntegrityPolicy,
    DEFAULT_FUNCTIONS,
    parse_window,
)
from .aggregator import Aggregator, BucketResult, TimeBucket
from .builder import (
    DataFrame,
    DataFrameBuilder,
    DataFrameSchema,
    SAMPLE_START_COLUMN,
    discover_schema,
    from_series,
)

__all__ = [
    "AggregationFunction",
    "AggregationOptions",
    "IntegrityPolicy",
    "DEFAULT_FUNCTIONS",
    "parse_window",
    "Aggregator",
    "BucketResult",
    "TimeBucket",
    "DataFrame",
    "DataFrameBuilder",
    "DataFrameSchema",
    "SAMPLE_START_COLUMN",
    "discover_schema",
    "from_series",
]
