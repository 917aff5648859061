"""CSV encoder (header row, RFC 4180 quoting, nulls as empty fields)."""

from __future__ import annotations

from typing import BinaryIO

import pyarrow as pa
import pyarrow.csv as pacsv

from ..dataframe.builder import DataFrameSchema, Row
from ..errors import EncodingError
from .encoder import ColumnBuffer, Encoder, EncoderWriter


class CSVEncoder(Encoder):
    """Encode rows as CSV, flushing every ``batch_size`` rows."""

    extension = ".csv"

    def __init__(self, batch_size: int = 10_000, delimiter: str = ","):
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.batch_size = batch_size
        self.delimiter = delimiter

    def open(self, schema: DataFrameSchema, sink: BinaryIO) -> EncoderWriter:
        return CSVEncoderWriter(schema, sink, self.batch_size, self.delimiter)


class CSVEncoderWriter(EncoderWriter):
    def __init__(self, schema: DataFrameSchema, sink: BinaryIO, batch_size: int, delimiter: str):
        self._sink = sink
        self._buffer = ColumnBuffer(schema)
        self._batch_size = batch_size
        try:
            self._writer = pacsv.CSVWriter(
                sink,
                self._buffer.arrow_schema,
                write_options=pacsv.WriteOptions(delimiter=delimiter),
            )
        except (pa.ArrowInvalid, ValueError) as e:
            raise EncodingError(f"cannot open csv writer: {e}") from e
        self._closed = False

    def _flush(self) -> None:
        if not len(self._buffer):
            return
        batch = self._buffer.drain()
        try:
            self._writer.write_batch(batch)
        except (pa.ArrowInvalid, pa.ArrowTypeError, pa.ArrowNotImplementedError) as e:
            raise EncodingError(f"cannot write csv batch: {e}") from e

    def write_row(self, row: Row) -> None:
        if self._closed:
            raise EncodingError("write to closed csv writer")
        self._buffer.append(row)
        if len(self._buffer) >= self._batch_size:
            self._flush()

    def close(self) -> int:
        if self._closed:
            raise EncodingError("csv writer already closed")
        self._flush()
        self._closed = True
        try:
            self._writer.close()
        except pa.ArrowException as e:
            raise EncodingError(f"cannot finalize csv file: {e}") from e
        return self._sink.tell()

    def abort(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._writer.close()
        except pa.ArrowException as e:
            raise EncodingError(f"cannot release csv writer: {e}") from e
