"""Series model and readers for the metrics backend."""

from .matchers import (
    LabelMatcher,
    MatchType,
    format_selector,
    matches_all,
    parse_selector,
)
from .types import (
    LabelSet,
    Sample,
    Series,
    SeriesParams,
    SeriesReader,
    SeriesSet,
    to_millis,
)
from .memory import MemorySeriesReader
from .promapi import PrometheusAPIReader

__all__ = [
    "LabelMatcher",
    "MatchType",
    "format_selector",
    "matches_all",
    "parse_selector",
    "LabelSet",
    "Sample",
    "Series",
    "SeriesParams",
    "SeriesReader",
    "SeriesSet",
    "to_millis",
    "MemorySeriesReader",
    "PrometheusAPIReader",
]
