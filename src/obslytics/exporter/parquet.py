"""Parquet encoder.

Rows are buffered per column and written as one row group every
``row_group_size`` rows, so memory stays bounded by the row group size
regardless of the export size. Output is deterministic for identical input.
"""

from __future__ import annotations

from typing import BinaryIO, Optional

import pyarrow as pa
import pyarrow.parquet as pq

from ..dataframe.builder import DataFrameSchema, Row
from ..errors import EncodingError
from .encoder import ColumnBuffer, Encoder, EncoderWriter


DEFAULT_ROW_GROUP_SIZE = 10_000


class ParquetEncoder(Encoder):
    """Encode rows into a single Parquet file."""

    extension = ".parquet"

    def __init__(
        self,
        row_group_size: int = DEFAULT_ROW_GROUP_SIZE,
        compression: Optional[str] = "snappy",
    ):
        if row_group_size <= 0:
            raise ValueError(f"row_group_size must be positive, got {row_group_size}")
        self.row_group_size = row_group_size
        self.compression = compression

    def open(self, schema: DataFrameSchema, sink: BinaryIO) -> EncoderWriter:
        return ParquetEncoderWriter(schema, sink, self.row_group_size, self.compression)


class ParquetEncoderWriter(EncoderWriter):
    def __init__(
        self,
        schema: DataFrameSchema,
        sink: BinaryIO,
        row_group_size: int,
        compression: Optional[str],
    ):
        self._sink = sink
        self._buffer = ColumnBuffer(schema)
        self._row_group_size = row_group_size
        try:
            self._writer = pq.ParquetWriter(
                sink,
                self._buffer.arrow_schema,
                compression=compression or "none",
            )
        except (pa.ArrowInvalid, pa.ArrowNotImplementedError, ValueError) as e:
            raise EncodingError(f"cannot open parquet writer: {e}") from e
        self._closed = False

    def _flush(self) -> None:
        if not len(self._buffer):
            return
        batch = self._buffer.drain()
        try:
            self._writer.write_batch(batch, row_group_size=self._row_group_size)
        except (pa.ArrowInvalid, pa.ArrowTypeError) as e:
            raise EncodingError(f"cannot write row group: {e}") from e

    def write_row(self, row: Row) -> None:
        if self._closed:
            raise EncodingError("write to closed parquet writer")
        self._buffer.append(row)
        if len(self._buffer) >= self._row_group_size:
            self._flush()

    def close(self) -> int:
        if self._closed:
            raise EncodingError("parquet writer already closed")
        self._flush()
        self._closed = True
        try:
            self._writer.close()
        except pa.ArrowException as e:
            raise EncodingError(f"cannot finalize parquet file: {e}") from e
        return self._sink.tell()

    def abort(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._writer.close()
        except pa.ArrowException as e:
            raise EncodingError(f"cannot release parquet writer: {e}") from e
