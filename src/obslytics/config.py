"""YAML configuration for an export.

Example::

    series:
      endpoint: http://localhost:9090
      matchers: '{__name__="up"}'
      min_time: 2024-01-01T00:00:00Z
      max_time: 2024-01-02T00:00:00Z
    aggregation:
      window: 60s
      functions: [count, sum, min, max]
    output:
      destination: up/2024-01-01.parquet
      format: parquet
    storage:
      type: FILESYSTEM
      config:
        directory: ./exports

All validation happens while the configuration objects are constructed, so
an invalid file fails with ``ConfigurationError`` before any I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from .dataframe.options import AggregationOptions
from .errors import ConfigurationError
from .exporter.formats import ENCODERS
from .series.matchers import LabelMatcher, parse_selector
from .series.types import SeriesParams


def _normalize_matchers(value) -> tuple[LabelMatcher, ...]:
    """Accept a selector string or a list of selector strings and matchers."""
    if isinstance(value, str):
        return parse_selector(value)
    if isinstance(value, LabelMatcher):
        return (value,)
    if not isinstance(value, (list, tuple)):
        raise ConfigurationError(f"series.matchers must be a selector or a list, got {type(value).__name__}")
    matchers = []
    for item in value:
        if isinstance(item, str):
            matchers.extend(parse_selector(item))
        elif isinstance(item, LabelMatcher):
            matchers.append(item)
        else:
            raise ConfigurationError(f"invalid entry in series.matchers: {item!r}")
    return tuple(matchers)


@dataclass(frozen=True)
class SeriesConfig:
    """Where and what to read."""

    endpoint: str
    matchers: tuple[LabelMatcher, ...]
    min_time: Any
    max_time: Any
    timeout_sec: float = 60.0
    verify_tls: bool = True

    def __post_init__(self):
        if not self.endpoint:
            raise ConfigurationError("series.endpoint is required")
        object.__setattr__(self, "matchers", _normalize_matchers(self.matchers))
        if not self.matchers:
            raise ConfigurationError("series.matchers must not be empty")

    def params(self) -> SeriesParams:
        try:
            return SeriesParams(self.matchers, self.min_time, self.max_time)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"invalid series time range: {e}") from e


@dataclass(frozen=True)
class OutputConfig:
    """Artifact destination and format."""

    destination: str
    format: str = "parquet"
    row_group_size: int = 10_000

    def __post_init__(self):
        if not self.destination:
            raise ConfigurationError("output.destination is required")
        if self.format.lower() not in ENCODERS:
            raise ConfigurationError(
                f"output.format must be one of {sorted(ENCODERS)}, got {self.format!r}"
            )
        if self.row_group_size <= 0:
            raise ConfigurationError("output.row_group_size must be positive")


@dataclass(frozen=True)
class ExportConfig:
    series: SeriesConfig
    aggregation: AggregationOptions
    output: OutputConfig
    storage: Mapping[str, Any] = field(default_factory=dict)
    timeout_sec: Optional[float] = None

    def __post_init__(self):
        if not self.storage.get("type"):
            raise ConfigurationError("storage.type is required")
        # Fail early on a bad range as well.
        self.series.params()


def _section(raw: Mapping[str, Any], name: str) -> dict:
    section = raw.get(name)
    if not isinstance(section, Mapping):
        raise ConfigurationError(f"Config missing required '{name}' section")
    return dict(section)


def parse_config(raw: Mapping[str, Any]) -> ExportConfig:
    """Build an ``ExportConfig`` from an already parsed mapping."""
    if not isinstance(raw, Mapping):
        raise ConfigurationError("Config must be a mapping")
    try:
        series = SeriesConfig(**_section(raw, "series"))
        aggregation = AggregationOptions(**_section(raw, "aggregation"))
        output = OutputConfig(**_section(raw, "output"))
    except TypeError as e:
        raise ConfigurationError(f"Invalid config: {e}") from e
    return ExportConfig(
        series=series,
        aggregation=aggregation,
        output=output,
        storage=_section(raw, "storage"),
        timeout_sec=raw.get("timeout_sec"),
    )


def load_config(config_path: str | Path) -> ExportConfig:
    """Load and validate configuration from a YAML file."""
    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Cannot parse {config_path}: {e}") from e
    return parse_config(raw or {})
