"""Series reader backed by the Prometheus HTTP query API.

One instant query with a range selector returns the raw samples of every
matched series. The selector is evaluated at ``max_time - 1ms`` with a range
of ``max_time - min_time``, which covers exactly ``[min_time, max_time)`` on
a millisecond grid; samples outside that interval are dropped client-side.
Failures are reported as ``RemoteReadError`` and never retried here.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..context import Context
from ..errors import RemoteReadError
from .matchers import format_selector
from .types import LabelSet, Series, SeriesParams, SeriesReader, SeriesSet


LOGGER = logging.getLogger(__name__)

QUERY_PATH = "/api/v1/query"


class PrometheusAPIReader(SeriesReader):
    """Read raw samples from a Prometheus-compatible ``/api/v1/query`` endpoint."""

    def __init__(
        self,
        endpoint: str,
        *,
        timeout_sec: float = 60.0,
        verify_tls: bool = True,
        headers: Optional[dict[str, str]] = None,
        transport: Optional[httpx.BaseTransport] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._endpoint = endpoint.rstrip("/")
        self._timeout = timeout_sec
        self._logger = logger or LOGGER
        self._client = httpx.Client(
            verify=verify_tls,
            headers=headers,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "PrometheusAPIReader":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _timeout_for(self, ctx: Context) -> float:
        remaining = ctx.remaining()
        if remaining is None:
            return self._timeout
        return min(self._timeout, remaining)

    def read(self, ctx: Context, params: SeriesParams) -> SeriesSet:
        ctx.check()

        range_ms = params.max_time - params.min_time
        query = f"{format_selector(params.matchers)}[{range_ms}ms]"
        eval_time = (params.max_time - 1) / 1000.0
        self._logger.debug("querying %s: %s @ %.3f", self._endpoint, query, eval_time)

        try:
            resp = self._client.get(
                self._endpoint + QUERY_PATH,
                params={"query": query, "time": f"{eval_time:.3f}"},
                timeout=self._timeout_for(ctx),
            )
        except httpx.TimeoutException as e:
            raise RemoteReadError(f"timeout querying {self._endpoint}: {e}") from e
        except httpx.HTTPError as e:
            raise RemoteReadError(f"request to {self._endpoint} failed: {e}") from e

        try:
            payload = resp.json()
        except ValueError:
            payload = None

        if resp.status_code >= 400 or not isinstance(payload, dict):
            detail = payload.get("error") if isinstance(payload, dict) else resp.text[:200]
            raise RemoteReadError(
                f"query failed with HTTP {resp.status_code}: {detail}"
            )
        if payload.get("status") != "success":
            raise RemoteReadError(
                f"query error ({payload.get('errorType', 'unknown')}): {payload.get('error')}"
            )

        return self._parse_matrix(payload.get("data") or {}, params)

    def _parse_matrix(self, data: dict, params: SeriesParams) -> SeriesSet:
        try:
            result_type = data.get("resultType")
            if result_type != "matrix":
                raise RemoteReadError(f"unexpected result type: {result_type!r}")

            parsed = []
            for item in data.get("result") or []:
                labels = LabelSet(sorted((item.get("metric") or {}).items()))
                samples = []
                for ts, raw in item.get("values") or []:
                    timestamp = int(round(float(ts) * 1000))
                    if params.contains(timestamp):
                        samples.append((timestamp, float(raw)))
                if samples:
                    parsed.append((labels, samples))
        except (TypeError, ValueError, AttributeError) as e:
            raise RemoteReadError(f"malformed response from {self._endpoint}: {e}") from e

        parsed.sort(key=lambda pair: tuple(pair[0].items()))
        self._logger.debug("read %d series", len(parsed))
        return SeriesSet(Series(labels, samples) for labels, samples in parsed)
