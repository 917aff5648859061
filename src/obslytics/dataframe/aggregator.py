"""Windowed per-series aggregation.

Each series is bucketed independently. The first bucket is anchored at the
series' first sample timestamp ``t0`` and a sample at ``t`` falls in bucket
``(t - t0) // window``, so a sample exactly on a boundary opens the next
bucket. Buckets are flushed as soon as a sample lands in a later one; empty
buckets never produce output.

Numeric conventions:
- ``count`` counts every sample, finite or not
- ``sum``, ``min``, ``max`` and ``mean`` only see finite values and are
  accumulated sequentially in sample order (plain float addition, no
  compensated summation)
- a function with no finite input in a bucket is left out of that bucket's
  values rather than reported as 0 or NaN
"""

from __future__ import annotations

import logging
import math
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Iterable, Iterator, NamedTuple, Optional

from ..context import Context
from ..errors import DataIntegrityError
from ..series.types import LabelSet, Series
from .options import AggregationFunction, AggregationOptions, IntegrityPolicy


LOGGER = logging.getLogger(__name__)


class TimeBucket(NamedTuple):
    """Half-open interval [start, end) in epoch milliseconds."""

    start: int
    end: int


class BucketResult(NamedTuple):
    """Aggregated values of one non-empty bucket of one series."""

    labels: LabelSet
    bucket: TimeBucket
    values: dict[str, float | int]


class _Accumulator:
    """Running state of the bucket currently being filled."""

    __slots__ = ("start", "count", "finite", "total", "low", "high")

    def __init__(self, start: int):
        self.start = start
        self.count = 0
        self.finite = 0
        self.total = 0.0
        self.low = math.inf
        self.high = -math.inf

    def add(self, value: float) -> None:
        self.count += 1
        if math.isfinite(value):
            self.finite += 1
            self.total += value
            if value < self.low:
                self.low = value
            if value > self.high:
                self.high = value

    def values(self, functions: tuple[AggregationFunction, ...]) -> dict[str, float | int]:
        out: dict[str, float | int] = {}
        for fn in functions:
            if fn is AggregationFunction.COUNT:
                out[fn.value] = self.count
            elif self.finite == 0:
                continue
            elif fn is AggregationFunction.SUM:
                out[fn.value] = self.total
            elif fn is AggregationFunction.MIN:
                out[fn.value] = self.low
            elif fn is AggregationFunction.MAX:
                out[fn.value] = self.high
            elif fn is AggregationFunction.MEAN:
                out[fn.value] = self.total / self.finite
        return out


class Aggregator:
    """Bucket and aggregate every series of a SeriesSet, in series order."""

    def __init__(
        self,
        options: AggregationOptions,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize aggregator.

        Args:
            options: Validated window / function configuration
            logger: Logger for skipped series and progress (module logger if None)
        """
        self.options = options
        self.logger = logger or LOGGER
        self.skipped: list[LabelSet] = []

    def aggregate_series(
        self,
        series: Series,
        ctx: Optional[Context] = None,
    ) -> Iterator[BucketResult]:
        """Lazily aggregate a single series.

        Raises:
            DataIntegrityError: A sample timestamp is lower than its predecessor
        """
        window = self.options.window_ms
        functions = self.options.functions
        labels = series.labels

        acc: Optional[_Accumulator] = None
        t0 = prev = None

        for timestamp, value in series.samples():
            if ctx is not None:
                ctx.check()

            if t0 is None:
                t0 = timestamp
            elif timestamp < prev:
                raise DataIntegrityError(
                    f"series {labels}: sample at {timestamp} follows sample at {prev}",
                    labels,
                )
            prev = timestamp

            start = t0 + ((timestamp - t0) // window) * window
            if acc is None or start != acc.start:
                if acc is not None:
                    yield BucketResult(labels, TimeBucket(acc.start, acc.start + window), acc.values(functions))
                acc = _Accumulator(start)
            acc.add(value)

        if acc is not None:
            yield BucketResult(labels, TimeBucket(acc.start, acc.start + window), acc.values(functions))

    def _series_results(
        self, series: Series, ctx: Optional[Context]
    ) -> Optional[list[BucketResult]]:
        """Aggregate one series completely; None if skipped by the integrity policy."""
        try:
            return list(self.aggregate_series(series, ctx))
        except DataIntegrityError as e:
            if self.options.on_integrity_error is IntegrityPolicy.ABORT:
                raise
            self.logger.warning("skipping series %s: %s", series.labels, e)
            return None

    def _drain(self, series: Series, results: Optional[list[BucketResult]]) -> list[BucketResult]:
        if results is None:
            self.skipped.append(series.labels)
            return []
        return results

    def aggregate(
        self,
        series_set: Iterable[Series],
        ctx: Optional[Context] = None,
    ) -> Iterator[BucketResult]:
        """Lazily aggregate all series, preserving series order.

        With ``parallelism > 1`` series are aggregated on a thread pool, but
        results are still emitted strictly in series order.
        """
        if self.options.parallelism > 1:
            yield from self._aggregate_parallel(series_set, ctx)
            return

        for series in series_set:
            if ctx is not None:
                ctx.check()
            if self.options.on_integrity_error is IntegrityPolicy.ABORT:
                yield from self.aggregate_series(series, ctx)
            else:
                yield from self._drain(series, self._series_results(series, ctx))

    def _aggregate_parallel(
        self,
        series_set: Iterable[Series],
        ctx: Optional[Context],
    ) -> Iterator[BucketResult]:
        workers = self.options.parallelism
        # Results are drained in submission order; at most 2x workers in flight.
        pending: deque[tuple[Series, Future]] = deque()
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="obslytics-aggr")
        try:
            for series in series_set:
                if ctx is not None:
                    ctx.check()
                pending.append((series, executor.submit(self._series_results, series, ctx)))
                while len(pending) >= 2 * workers:
                    done, future = pending.popleft()
                    yield from self._drain(done, future.result())
            while pending:
                done, future = pending.popleft()
                yield from self._drain(done, future.result())
        finally:
            executor.shutdown(wait=True, cancel_futures=True)
