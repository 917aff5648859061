"""Encoding and persisting aggregated tables."""

from .encoder import ColumnBuffer, Encoder, EncoderWriter
from .parquet import ParquetEncoder, DEFAULT_ROW_GROUP_SIZE
from .csv import CSVEncoder
from .storage import (
    ArrowStorageBackend,
    StorageBackend,
    WriteHandle,
    filesystem_backend,
    new_backend,
    s3_backend,
)
from .exporter import Exporter, ExportResult
from .formats import new_encoder

__all__ = [
    "ColumnBuffer",
    "Encoder",
    "EncoderWriter",
    "ParquetEncoder",
    "DEFAULT_ROW_GROUP_SIZE",
    "CSVEncoder",
    "ArrowStorageBackend",
    "StorageBackend",
    "WriteHandle",
    "filesystem_backend",
    "new_backend",
    "s3_backend",
    "Exporter",
    "ExportResult",
    "new_encoder",
]

