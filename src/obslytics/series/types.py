"""Core series types consumed by the aggregation engine.

A ``SeriesSet`` is an ordered collection of ``Series``. Each series carries
an immutable ``LabelSet`` and a lazy sample stream that can be consumed only
once. Label sets are available without touching the samples, so the schema
of the output table can be discovered before any sample is read.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Iterator, Mapping, NamedTuple

import pandas as pd

from ..context import Context
from ..errors import ConfigurationError
from .matchers import LabelMatcher


class Sample(NamedTuple):
    """One observation: epoch milliseconds and a float64 value."""

    timestamp: int
    value: float


class LabelSet(Mapping[str, str]):
    """Immutable, ordered mapping of label name to label value."""

    __slots__ = ("_items", "_index", "_hash")

    def __init__(self, labels: Mapping[str, str] | Iterable[tuple[str, str]] = ()):
        items = labels.items() if isinstance(labels, Mapping) else labels
        index: dict[str, str] = {}
        for name, value in items:
            if name in index:
                raise ValueError(f"Duplicate label name: {name}")
            index[name] = value
        self._index = index
        self._items = tuple(index.items())
        self._hash = hash(self._items)

    def __getitem__(self, name: str) -> str:
        return self._index[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._index)

    def __len__(self) -> int:
        return len(self._items)

    def __hash__(self) -> int:
        return self._hash

    def __eq__(self, other: object) -> bool:
        if isinstance(other, LabelSet):
            return self._items == other._items
        if isinstance(other, Mapping):
            return dict(self._items) == dict(other)
        return NotImplemented

    def __repr__(self) -> str:
        return str(self)

    def __str__(self) -> str:
        inner = ", ".join(f'{name}="{value}"' for name, value in self._items)
        return "{" + inner + "}"

    def sorted(self) -> "LabelSet":
        """Copy with labels ordered by name."""
        return LabelSet(sorted(self._items))


class Series:
    """A labeled sample stream. The samples can be iterated once."""

    def __init__(self, labels: LabelSet | Mapping[str, str], samples: Iterable[tuple[int, float]]):
        self.labels = labels if isinstance(labels, LabelSet) else LabelSet(labels)
        self._samples = samples
        self._consumed = False

    def samples(self) -> Iterator[Sample]:
        """Consume the sample stream."""
        if self._consumed:
            raise RuntimeError(f"Sample stream of {self.labels} already consumed")
        self._consumed = True
        for timestamp, value in self._samples:
            yield Sample(int(timestamp), float(value))

    def __repr__(self) -> str:
        return f"Series({self.labels})"


class SeriesSet(Iterable[Series]):
    """Ordered collection of series covering one query."""

    def __init__(self, series: Iterable[Series] = ()):
        self._series = list(series)

    def __iter__(self) -> Iterator[Series]:
        return iter(self._series)

    def __len__(self) -> int:
        return len(self._series)

    def __getitem__(self, index: int) -> Series:
        return self._series[index]

    def label_sets(self) -> list[LabelSet]:
        """Label sets in series order, without touching the sample streams."""
        return [s.labels for s in self._series]


def to_millis(value: datetime | pd.Timestamp | str | int | float) -> int:
    """Convert a timestamp-like value to epoch milliseconds (naive = UTC)."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        ts = ts.tz_localize(timezone.utc)
    return int(ts.value // 1_000_000)


@dataclass(frozen=True)
class SeriesParams:
    """What to read: label matchers and the half-open range [min_time, max_time)."""

    matchers: tuple[LabelMatcher, ...]
    min_time: int
    max_time: int

    def __post_init__(self):
        object.__setattr__(self, "matchers", tuple(self.matchers))
        object.__setattr__(self, "min_time", to_millis(self.min_time))
        object.__setattr__(self, "max_time", to_millis(self.max_time))
        if self.max_time <= self.min_time:
            raise ConfigurationError(
                f"max_time ({self.max_time}) must be after min_time ({self.min_time})"
            )

    def contains(self, timestamp: int) -> bool:
        return self.min_time <= timestamp < self.max_time


class SeriesReader(ABC):
    """Remote-read collaborator: resolves matchers + range into a SeriesSet."""

    @abstractmethod
    def read(self, ctx: Context, params: SeriesParams) -> SeriesSet:
        """Return the matched series or raise ``RemoteReadError``."""

    def close(self) -> None:
        """Release any client resources."""

