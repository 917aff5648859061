"""Output format registry."""

from __future__ import annotations

from ..errors import ConfigurationError
from .csv import CSVEncoder
from .encoder import Encoder
from .parquet import ParquetEncoder


ENCODERS: dict[str, type[Encoder]] = {
    "parquet": ParquetEncoder,
    "csv": CSVEncoder,
}


def new_encoder(output_format: str, **kwargs) -> Encoder:
    """Encoder for an output format name (``parquet`` or ``csv``)."""
    try:
        cls = ENCODERS[output_format.lower()]
    except KeyError as e:
        raise ConfigurationError(
            f"Unknown output format {output_format!r}; expected one of: {', '.join(ENCODERS)}"
        ) from e
    return cls(**kwargs)
