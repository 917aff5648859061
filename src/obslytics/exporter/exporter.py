"""Drive an encoder into a storage backend, all or nothing.

The exporter pulls rows lazily, so reading the metrics backend, aggregating
and encoding interleave. Whatever fails (reading, aggregation, encoding,
storage, cancellation or deadline) the pending write is aborted and the
error is re-raised as ``ExportError`` whose ``stage`` names the failing part
of the pipeline. A destination is only ever populated by ``commit``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional

from ..context import Context
from ..dataframe.builder import DataFrame, DataFrameSchema, Row
from ..errors import (
    ConfigurationError,
    ContextError,
    DataIntegrityError,
    EncodingError,
    ExportError,
    RemoteReadError,
    SchemaError,
    StorageError,
)
from ..series.types import LabelSet
from .encoder import Encoder, EncoderWriter
from .storage import StorageBackend, WriteHandle


LOGGER = logging.getLogger(__name__)


@dataclass
class ExportResult:
    """Outcome of a successful export."""

    destination: str
    rows: int
    bytes_written: int
    elapsed_seconds: float
    skipped_series: list[LabelSet] = field(default_factory=list)


def _stage_for(err: BaseException, phase: str) -> str:
    """Map an error to the pipeline stage it belongs to."""
    if isinstance(err, RemoteReadError):
        return "read"
    if isinstance(err, (DataIntegrityError, SchemaError, ConfigurationError)):
        return "aggregate"
    if isinstance(err, EncodingError):
        return "encode"
    if isinstance(err, StorageError):
        return "upload"
    return phase


class Exporter:
    """Export one table to ``destination`` on ``backend`` with ``encoder``."""

    def __init__(
        self,
        encoder: Encoder,
        destination: str,
        backend: StorageBackend,
        logger: Optional[logging.Logger] = None,
    ):
        self.encoder = encoder
        self.destination = destination
        self.backend = backend
        self.logger = logger or LOGGER

    def export_frame(self, ctx: Context, df: DataFrame) -> ExportResult:
        """Export a DataFrame (schema + lazy rows)."""
        result = self.export(ctx, df.schema, df.rows())
        result.skipped_series = list(df.skipped)
        return result

    def export(
        self,
        ctx: Context,
        schema: DataFrameSchema,
        rows: Iterable[Row],
    ) -> ExportResult:
        """Encode ``rows`` and commit them at the destination.

        Raises:
            ExportError: Any failure; nothing is left at the destination
        """
        start = time.monotonic()
        try:
            ctx.check()
        except ContextError as e:
            raise self._wrap(e, "read") from e
        try:
            handle = self.backend.open_writer(self.destination)
        except StorageError as e:
            raise self._wrap(e, "upload") from e

        writer: Optional[EncoderWriter] = None
        it = iter(rows)
        count = 0
        phase = "encode"
        try:
            writer = self.encoder.open(schema, handle)

            while True:
                ctx.check()
                phase = "read"
                try:
                    row = next(it)
                except StopIteration:
                    break
                phase = "encode"
                writer.write_row(row)
                count += 1

            phase = "encode"
            ctx.check()
            nbytes = writer.close()
            writer = None

            phase = "upload"
            ctx.check()
            self.backend.commit(handle)
        except BaseException as e:
            self._abort(handle, writer)
            close = getattr(it, "close", None)
            if close is not None:
                close()
            if not isinstance(e, Exception):
                raise
            raise self._wrap(e, phase) from e

        elapsed = time.monotonic() - start
        self.logger.info(
            "exported %d rows (%d bytes) to %s in %.2fs",
            count, nbytes, self.destination, elapsed,
        )
        return ExportResult(
            destination=self.destination,
            rows=count,
            bytes_written=nbytes,
            elapsed_seconds=round(elapsed, 3),
        )

    def _wrap(self, err: Exception, phase: str) -> ExportError:
        return ExportError(_stage_for(err, phase), str(err), self.destination)

    def _abort(self, handle: WriteHandle, writer: Optional[EncoderWriter]) -> None:
        """Discard the pending artifact; cleanup failures are logged."""
        self.logger.warning("aborting export to %s", self.destination)
        if writer is not None:
            try:
                writer.abort()
            except (EncodingError, StorageError) as e:
                self.logger.debug("encoder abort failed: %s", e)
        try:
            self.backend.abort(handle)
        except StorageError as e:
            self.logger.error("cleanup after failed export failed: %s", e)
