"""Export pipeline: read → aggregate → build → encode → store.

Wires a ``SeriesReader`` and a ``StorageBackend`` around the aggregation
and export core. Both collaborators, the logger and the context are passed
in explicitly.
"""

from __future__ import annotations

import logging
from typing import Optional

from .config import ExportConfig
from .context import Context
from .dataframe.builder import from_series
from .dataframe.options import AggregationOptions
from .errors import ContextError, ExportError, RemoteReadError, SchemaError
from .exporter.encoder import Encoder
from .exporter.exporter import Exporter, ExportResult
from .exporter.formats import new_encoder
from .exporter.parquet import ParquetEncoder
from .exporter.storage import StorageBackend, new_backend
from .series.promapi import PrometheusAPIReader
from .series.types import SeriesParams, SeriesReader


LOGGER = logging.getLogger(__name__)


class ExportPipeline:
    """Complete export of one time range to one artifact."""

    def __init__(
        self,
        reader: SeriesReader,
        backend: StorageBackend,
        encoder: Optional[Encoder] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize pipeline.

        Args:
            reader: Remote-read collaborator
            backend: Storage the artifact is committed to
            encoder: Output format (Parquet if None)
            logger: Logger for the whole run (module logger if None)
        """
        self.reader = reader
        self.backend = backend
        self.encoder = encoder or ParquetEncoder()
        self.logger = logger or LOGGER

    def export(
        self,
        ctx: Context,
        params: SeriesParams,
        options: AggregationOptions,
        destination: str,
    ) -> ExportResult:
        """Read, aggregate and persist one export.

        Raises:
            ExportError: Any failure, with ``stage`` set; no artifact is left
                at ``destination``
        """
        self.logger.info(
            "exporting [%d, %d) window=%s functions=%s to %s",
            params.min_time, params.max_time, options.window,
            [fn.value for fn in options.functions], destination,
        )

        try:
            series_set = self.reader.read(ctx, params)
        except (RemoteReadError, ContextError) as e:
            raise ExportError("read", str(e), destination) from e
        self.logger.info("matched %d series", len(series_set))

        # Schema discovery happens here, before the destination is opened.
        try:
            df = from_series(series_set, options, ctx=ctx, logger=self.logger)
        except SchemaError as e:
            raise ExportError("aggregate", str(e), destination) from e

        exporter = Exporter(self.encoder, destination, self.backend, logger=self.logger)
        result = exporter.export_frame(ctx, df)
        if result.skipped_series:
            self.logger.warning(
                "skipped %d series with out-of-order samples", len(result.skipped_series)
            )
        return result


def run_export(
    config: ExportConfig,
    ctx: Optional[Context] = None,
    logger: Optional[logging.Logger] = None,
) -> ExportResult:
    """Run an export described by a loaded configuration.

    Args:
        config: Validated configuration
        ctx: Execution context; derived from ``config.timeout_sec`` if None
        logger: Logger (module logger if None)

    Returns:
        ExportResult of the committed artifact
    """
    if ctx is None:
        ctx = (
            Context.with_timeout(config.timeout_sec)
            if config.timeout_sec
            else Context.background()
        )

    backend = new_backend(config.storage)
    encoder_kwargs = {}
    if config.output.format.lower() == "parquet":
        encoder_kwargs["row_group_size"] = config.output.row_group_size
    else:
        encoder_kwargs["batch_size"] = config.output.row_group_size
    encoder = new_encoder(config.output.format, **encoder_kwargs)

    reader = PrometheusAPIReader(
        config.series.endpoint,
        timeout_sec=config.series.timeout_sec,
        verify_tls=config.series.verify_tls,
        logger=logger,
    )
    with reader:
        pipeline = ExportPipeline(reader, backend, encoder=encoder, logger=logger)
        return pipeline.export(
            ctx,
            config.series.params(),
            config.aggregation,
            config.output.destination,
        )
