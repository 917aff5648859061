"""Assemble aggregated buckets into a fixed-schema table.

Building is two-phase. The schema is derived from the label sets of the
whole SeriesSet (no samples are read for that), then bucket results are
streamed into rows that all carry exactly the schema's columns. Labels a
series does not have are emitted as ``None``.

Column order: label columns in first-seen order, ``_sample_start``, then
one column per enabled function in configured order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Optional

import pandas as pd
import pyarrow as pa

from ..context import Context
from ..errors import SchemaError
from ..series.types import LabelSet, SeriesSet
from .aggregator import Aggregator, BucketResult
from .options import AggregationFunction, AggregationOptions


LOGGER = logging.getLogger(__name__)

SAMPLE_START_COLUMN = "_sample_start"

Row = dict[str, Any]


@dataclass(frozen=True)
class DataFrameSchema:
    """Column layout of one export; fixed once derived."""

    labels: tuple[str, ...]
    functions: tuple[AggregationFunction, ...]

    @property
    def columns(self) -> list[str]:
        return [*self.labels, SAMPLE_START_COLUMN, *(fn.column for fn in self.functions)]

    def to_arrow(self) -> pa.Schema:
        fields = [pa.field(name, pa.string(), nullable=True) for name in self.labels]
        fields.append(pa.field(SAMPLE_START_COLUMN, pa.timestamp("ms", tz="UTC"), nullable=False))
        for fn in self.functions:
            dtype = pa.int64() if fn is AggregationFunction.COUNT else pa.float64()
            fields.append(pa.field(fn.column, dtype, nullable=True))
        return pa.schema(fields)


def discover_schema(
    label_sets: Iterable[LabelSet],
    options: AggregationOptions,
) -> DataFrameSchema:
    """Derive the schema from every label set before aggregation starts.

    Raises:
        SchemaError: Two series disagree on a label's value type, or a label
            name collides with a reserved column
    """
    reserved = {SAMPLE_START_COLUMN, *(fn.column for fn in options.functions)}
    names: dict[str, type] = {}

    for labels in label_sets:
        for name, value in labels.items():
            if name in reserved:
                raise SchemaError(f"label {name!r} of series {labels} collides with a reserved column")
            seen = names.setdefault(name, type(value))
            if seen is not type(value):
                raise SchemaError(
                    f"label {name!r} has type {type(value).__name__} in series {labels}, "
                    f"expected {seen.__name__}"
                )

    return DataFrameSchema(labels=tuple(names), functions=options.functions)


class DataFrameBuilder:
    """Turn bucket results into rows conforming to a schema."""

    def __init__(self, schema: DataFrameSchema):
        self.schema = schema

    def row(self, result: BucketResult) -> Row:
        row: Row = {}
        for name in self.schema.labels:
            value = result.labels.get(name)
            row[name] = None if value is None else str(value)
        row[SAMPLE_START_COLUMN] = result.bucket.start
        for fn in self.schema.functions:
            row[fn.column] = result.values.get(fn.value)
        return row

    def rows(self, results: Iterable[BucketResult]) -> Iterator[Row]:
        for result in results:
            yield self.row(result)


class DataFrame:
    """Schema plus a single-use, lazily produced row stream.

    ``skipped`` fills up with the label sets of series dropped under
    ``IntegrityPolicy.SKIP`` as the rows are consumed.
    """

    def __init__(
        self,
        schema: DataFrameSchema,
        rows: Iterator[Row],
        skipped: Optional[list[LabelSet]] = None,
    ):
        self.schema = schema
        self.skipped = skipped if skipped is not None else []
        self._rows = rows
        self._consumed = False

    def rows(self) -> Iterator[Row]:
        if self._consumed:
            raise RuntimeError("DataFrame rows already consumed")
        self._consumed = True
        return self._rows

    def to_arrow(self) -> pa.Table:
        """Materialize all rows into an Arrow table."""
        schema = self.schema.to_arrow()
        columns: dict[str, list] = {name: [] for name in self.schema.columns}
        for row in self.rows():
            for name, values in columns.items():
                values.append(row[name])
        return pa.Table.from_pydict(columns, schema=schema)

    def to_pandas(self) -> pd.DataFrame:
        """Materialize all rows into a pandas DataFrame."""
        return self.to_arrow().to_pandas()


def from_series(
    series_set: SeriesSet,
    options: AggregationOptions,
    ctx: Optional[Context] = None,
    logger: Optional[logging.Logger] = None,
) -> DataFrame:
    """Aggregate a SeriesSet into a DataFrame.

    Args:
        series_set: Matched series, in output order
        options: Window and function configuration
        ctx: Context polled while samples are consumed
        logger: Logger handed to the aggregator

    Returns:
        DataFrame whose rows are produced on demand
    """
    schema = discover_schema(series_set.label_sets(), options)
    (logger or LOGGER).debug(
        "schema for %d series: %d label columns, functions=%s",
        len(series_set), len(schema.labels), [fn.value for fn in schema.functions],
    )
    aggregator = Aggregator(options, logger=logger)
    builder = DataFrameBuilder(schema)
    return DataFrame(
        schema,
        builder.rows(aggregator.aggregate(series_set, ctx)),
        skipped=aggregator.skipped,
    )
