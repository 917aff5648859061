"""In-memory series reader.

Serves explicit series or a long-format pandas DataFrame through the
``SeriesReader`` interface, applying the same matcher and time-range
semantics as a remote backend. Useful for offline exports and as a test
double.
"""

from __future__ import annotations

from typing import Iterable, Mapping, Sequence

import numpy as np
import pandas as pd

from ..context import Context
from .matchers import matches_all
from .types import LabelSet, Series, SeriesParams, SeriesReader, SeriesSet


class MemorySeriesReader(SeriesReader):
    """Reader over series held in memory, in insertion order."""

    def __init__(
        self,
        series: Iterable[tuple[Mapping[str, str], Sequence[tuple[int, float]]]] = (),
    ):
        """Initialize reader.

        Args:
            series: (labels, samples) pairs; samples are (epoch ms, value)
        """
        self._series: list[tuple[LabelSet, list[tuple[int, float]]]] = []
        for labels, samples in series:
            self.add(labels, samples)

    def add(self, labels: Mapping[str, str], samples: Sequence[tuple[int, float]]) -> None:
        self._series.append((LabelSet(labels), list(samples)))

    @classmethod
    def from_pandas(
        cls,
        df: pd.DataFrame,
        time_col: str = "timestamp",
        value_col: str = "value",
    ) -> "MemorySeriesReader":
        """Group a long-format DataFrame into series.

        Every column other than ``time_col`` and ``value_col`` is a label.
        Null label values are dropped from the label set. Series appear in
        first-seen row order and keep their rows' order.

        Args:
            df: One row per sample
            time_col: Timestamp column (datetime-like or epoch ms)
            value_col: Numeric value column

        Returns:
            Reader serving the grouped series
        """
        label_cols = [c for c in df.columns if c not in (time_col, value_col)]

        if pd.api.types.is_datetime64_any_dtype(df[time_col]):
            times = df[time_col]
            if times.dt.tz is None:
                times = times.dt.tz_localize("UTC")
            elapsed = times - pd.Timestamp(0, tz="UTC")
            millis = (elapsed // pd.Timedelta(milliseconds=1)).to_numpy(dtype=np.int64)
        else:
            millis = df[time_col].to_numpy(dtype=np.int64)
        values = df[value_col].to_numpy(dtype=np.float64)

        reader = cls()
        if df.empty:
            return reader

        groups: dict[tuple, list[int]] = {}
        if not label_cols:
            groups[()] = list(range(len(df)))
        else:
            keys = df[label_cols].astype(object)
            keys = keys.where(keys.notna(), None)
            for position, key in enumerate(keys.itertuples(index=False, name=None)):
                groups.setdefault(key, []).append(position)

        for key, positions in groups.items():
            labels = {name: str(v) for name, v in zip(label_cols, key) if v is not None}
            idx = np.asarray(positions)
            reader.add(labels, list(zip(millis[idx].tolist(), values[idx].tolist())))
        return reader

    def read(self, ctx: Context, params: SeriesParams) -> SeriesSet:
        ctx.check()
        matched = []
        for labels, samples in self._series:
            if not matches_all(params.matchers, labels):
                continue
            in_range = [(t, v) for t, v in samples if params.contains(t)]
            if not in_range:
                continue
            matched.append(Series(labels, in_range))
        return SeriesSet(matched)

