"""Exception hierarchy for the export pipeline.

Every failure raised by the core derives from ``ObslyticsError``. The
exporter wraps stage failures in ``ExportError`` so callers see a single
chain that names the failing stage (``read``, ``aggregate``, ``encode`` or
``upload``) while the original exception stays reachable as ``__cause__``.
"""

from __future__ import annotations

from typing import Mapping, Optional


class ObslyticsError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(ObslyticsError, ValueError):
    """Invalid configuration, raised before any I/O happens."""


class RemoteReadError(ObslyticsError):
    """The metrics backend could not be read (network, timeout, query error)."""


class DataIntegrityError(ObslyticsError):
    """A sample stream violated the ordering invariant."""

    def __init__(self, message: str, labels: Optional[Mapping[str, str]] = None):
        super().__init__(message)
        self.labels = dict(labels) if labels is not None else {}


class SchemaError(ObslyticsError):
    """Series disagree with (or collide with) the output schema."""


class EncodingError(ObslyticsError):
    """The encoder failed to serialize a row or finalize the artifact."""


class StorageError(ObslyticsError):
    """A storage backend operation failed."""

    def __init__(self, message: str, destination: Optional[str] = None):
        if destination is not None:
            message = f"{message} (destination={destination})"
        super().__init__(message)
        self.destination = destination


class ContextError(ObslyticsError):
    """The execution context is no longer valid."""


class Cancelled(ContextError):
    """The execution context was cancelled."""


class DeadlineExceeded(ContextError):
    """The execution context deadline elapsed."""


class ExportError(ObslyticsError):
    """An export failed; ``stage`` names where."""

    STAGES = ("read", "aggregate", "encode", "upload")

    def __init__(self, stage: str, message: str, destination: Optional[str] = None):
        if stage not in self.STAGES:
            raise ValueError(f"Unknown export stage: {stage}")
        text = f"{stage} stage failed: {message}"
        if destination is not None:
            text = f"{text} (destination={destination})"
        super().__init__(text)
        self.stage = stage
        self.destination = destination
