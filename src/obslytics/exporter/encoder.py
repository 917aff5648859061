"""Encoder contract driven by the exporter.

The exporter calls ``Encoder.open`` once with the final schema, then
``EncoderWriter.write_row`` once per row in order, then
``EncoderWriter.close`` once. Any failure while encoding surfaces as
``EncodingError``; failures of the underlying sink surface as the
``StorageError`` raised by the sink itself.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import BinaryIO

import pyarrow as pa

from ..dataframe.builder import DataFrameSchema, Row
from ..errors import EncodingError


class EncoderWriter(ABC):
    """An open encoding session writing into one sink."""

    @abstractmethod
    def write_row(self, row: Row) -> None:
        """Buffer or write one row."""

    @abstractmethod
    def close(self) -> int:
        """Flush everything and finalize the artifact; return bytes written."""

    def abort(self) -> None:
        """Release resources without producing a valid artifact."""


class Encoder(ABC):
    """Factory of encoding sessions for one file format."""

    #: File extension conventionally used for the format.
    extension: str = ""

    @abstractmethod
    def open(self, schema: DataFrameSchema, sink: BinaryIO) -> EncoderWriter:
        """Start encoding rows of ``schema`` into ``sink``."""


class ColumnBuffer:
    """Rows buffered column by column and converted to Arrow record batches."""

    def __init__(self, schema: DataFrameSchema):
        self.schema = schema
        self.arrow_schema = schema.to_arrow()
        self._names = schema.columns
        self._columns: dict[str, list] = {name: [] for name in self._names}
        self._size = 0

    def __len__(self) -> int:
        return self._size

    def append(self, row: Row) -> None:
        if len(row) != len(self._names) or any(name not in row for name in self._names):
            missing = [name for name in self._names if name not in row]
            extra = sorted(set(row) - set(self._names))
            raise EncodingError(
                f"row does not match schema (missing columns: {missing}, unexpected: {extra})"
            )
        for name in self._names:
            self._columns[name].append(row[name])
        self._size += 1

    def drain(self) -> pa.RecordBatch:
        """Convert buffered rows into a record batch and reset the buffer."""
        try:
            batch = pa.RecordBatch.from_pydict(self._columns, schema=self.arrow_schema)
        except (pa.ArrowInvalid, pa.ArrowTypeError, TypeError, ValueError) as e:
            raise EncodingError(f"cannot convert rows to the output schema: {e}") from e
        finally:
            self._columns = {name: [] for name in self._names}
            self._size = 0
        return batch
