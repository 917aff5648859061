"""End-to-end tests for the export pipeline."""

import logging

import httpx
import pyarrow.parquet as pq
import pytest

import obslytics.pipeline as pipeline_module
from obslytics.config import parse_config
from obslytics.context import Context
from obslytics.dataframe import AggregationOptions
from obslytics.errors import (
    Cancelled,
    DataIntegrityError,
    DeadlineExceeded,
    ExportError,
    RemoteReadError,
    SchemaError,
)
from obslytics.exporter import CSVEncoder, filesystem_backend
from obslytics.pipeline import ExportPipeline, run_export
from obslytics.series import (
    LabelSet,
    MemorySeriesReader,
    PrometheusAPIReader,
    Series,
    SeriesParams,
    SeriesReader,
    SeriesSet,
    parse_selector,
)


ALL = ("count", "sum", "min", "max")
PARAMS = SeriesParams(parse_selector("x"), 0, 3_600_000)


def leftovers(root):
    return sorted(p.name for p in root.rglob("*") if p.is_file())


def read_rows(backend, destination):
    return pq.read_table(backend.open_input(destination)).to_pylist()


class LazyReader(SeriesReader):
    """Reader producing lazy sample streams; cancels ``ctx`` when series ``cancel_at`` starts."""

    def __init__(self, n_series, cancel_at=None, fail_at=None):
        self.n_series = n_series
        self.cancel_at = cancel_at
        self.fail_at = fail_at
        self.started = []

    def _samples(self, ctx, index):
        self.started.append(index)
        if index == self.cancel_at:
            ctx.cancel()
        if index == self.fail_at:
            raise RemoteReadError("connection reset while streaming")
        for t in range(5):
            yield (t * 20_000, float(t))

    def read(self, ctx, params):
        return SeriesSet(
            Series({"__name__": "x", "idx": str(i)}, self._samples(ctx, i))
            for i in range(self.n_series)
        )


class TestExportPipeline:
    """Tests for the complete read → aggregate → encode → store flow."""

    def test_reference_scenario(self, tmp_path):
        backend = filesystem_backend(tmp_path)
        reader = MemorySeriesReader([({"__name__": "x"}, [(0, 1.0), (30_000, 3.0), (70_000, 5.0)])])
        options = AggregationOptions(window="60s", functions=ALL)

        result = ExportPipeline(reader, backend).export(Context(), PARAMS, options, "x.parquet")

        rows = read_rows(backend, "x.parquet")
        assert result.rows == 2
        assert [(r["_count"], r["_sum"], r["_min"], r["_max"]) for r in rows] == [
            (2, 4.0, 1.0, 3.0),
            (1, 5.0, 5.0, 5.0),
        ]
        assert [int(r["_sample_start"].timestamp()) for r in rows] == [0, 60]

    def test_empty_series_set(self, tmp_path):
        """No matched series still yields a valid, empty artifact."""
        backend = filesystem_backend(tmp_path)

        result = ExportPipeline(MemorySeriesReader(), backend).export(
            Context(), PARAMS, AggregationOptions(functions=ALL), "empty.parquet"
        )

        table = pq.read_table(backend.open_input("empty.parquet"))
        assert result.rows == 0
        assert table.num_rows == 0
        assert table.schema.names == ["_sample_start", "_count", "_sum", "_min", "_max"]

    def test_output_is_byte_identical_across_runs(self, tmp_path):
        backend = filesystem_backend(tmp_path)
        options = AggregationOptions(window="30s", functions=ALL + ("mean",))

        for destination in ("a.parquet", "b.parquet"):
            reader = MemorySeriesReader([
                ({"__name__": "x", "job": "api"}, [(t * 7_000, t * 1.5) for t in range(100)]),
                ({"__name__": "x", "zone": "eu"}, [(t * 11_000, -t * 0.5) for t in range(100)]),
            ])
            ExportPipeline(reader, backend).export(Context(), PARAMS, options, destination)

        assert (tmp_path / "a.parquet").read_bytes() == (tmp_path / "b.parquet").read_bytes()

    @pytest.mark.parametrize("parallelism", [1, 4])
    def test_rows_never_interleave(self, tmp_path, parallelism):
        backend = filesystem_backend(tmp_path)
        options = AggregationOptions(window="20s", functions=("count",), parallelism=parallelism)

        ExportPipeline(LazyReader(6), backend).export(Context(), PARAMS, options, "out.parquet")

        order = [r["idx"] for r in read_rows(backend, "out.parquet")]
        assert order == [str(i) for i in range(6) for _ in range(5)]

    @pytest.mark.parametrize("parallelism", [1, 4])
    @pytest.mark.parametrize("cancel_at", [0, 2])
    def test_cancellation_leaves_no_artifact(self, tmp_path, cancel_at, parallelism):
        backend = filesystem_backend(tmp_path)
        reader = LazyReader(4, cancel_at=cancel_at)
        options = AggregationOptions(window="60s", parallelism=parallelism)

        with pytest.raises(ExportError) as exc:
            ExportPipeline(reader, backend).export(Context(), PARAMS, options, "out/x.parquet")

        assert isinstance(exc.value.__cause__, Cancelled)
        if parallelism == 1:
            assert reader.started == list(range(cancel_at + 1))
        else:
            # workers may have started series ahead of the cancelled one
            assert cancel_at in reader.started
        assert not backend.exists("out/x.parquet")
        assert leftovers(tmp_path) == []

    def test_deadline_exceeded(self, tmp_path):
        backend = filesystem_backend(tmp_path)

        with pytest.raises(ExportError) as exc:
            ExportPipeline(LazyReader(2), backend).export(
                Context.with_timeout(0), PARAMS, AggregationOptions(), "x.parquet"
            )

        assert exc.value.stage == "read"
        assert isinstance(exc.value.__cause__, DeadlineExceeded)
        assert leftovers(tmp_path) == []

    def test_read_failure_mid_stream(self, tmp_path):
        backend = filesystem_backend(tmp_path)

        with pytest.raises(ExportError) as exc:
            ExportPipeline(LazyReader(3, fail_at=1), backend).export(
                Context(), PARAMS, AggregationOptions(), "x.parquet"
            )

        assert exc.value.stage == "read"
        assert isinstance(exc.value.__cause__, RemoteReadError)
        assert leftovers(tmp_path) == []

    def test_malformed_remote_response(self, tmp_path):
        def handler(request):
            return httpx.Response(200, json={
                "status": "success",
                "data": {"resultType": "matrix", "result": ["not-a-dict"]},
            })

        backend = filesystem_backend(tmp_path)
        reader = PrometheusAPIReader("http://prometheus:9090", transport=httpx.MockTransport(handler))

        with pytest.raises(ExportError) as exc:
            ExportPipeline(reader, backend).export(Context(), PARAMS, AggregationOptions(), "x.parquet")

        assert exc.value.stage == "read"
        assert isinstance(exc.value.__cause__, RemoteReadError)
        assert leftovers(tmp_path) == []

    def test_integrity_error_aborts_by_default(self, tmp_path):
        backend = filesystem_backend(tmp_path)
        reader = MemorySeriesReader([
            ({"__name__": "x", "s": "ok"}, [(0, 1.0)]),
            ({"__name__": "x", "s": "bad"}, [(0, 1.0), (60_000, 1.0), (30_000, 1.0)]),
        ])

        with pytest.raises(ExportError) as exc:
            ExportPipeline(reader, backend).export(Context(), PARAMS, AggregationOptions(), "x.parquet")

        assert exc.value.stage == "aggregate"
        assert isinstance(exc.value.__cause__, DataIntegrityError)
        assert leftovers(tmp_path) == []

    def test_integrity_error_skip_policy(self, tmp_path, caplog):
        backend = filesystem_backend(tmp_path)
        reader = MemorySeriesReader([
            ({"__name__": "x", "s": "ok"}, [(0, 1.0)]),
            ({"__name__": "x", "s": "bad"}, [(0, 1.0), (60_000, 1.0), (30_000, 1.0)]),
        ])
        options = AggregationOptions(on_integrity_error="skip")

        with caplog.at_level(logging.WARNING):
            result = ExportPipeline(reader, backend).export(Context(), PARAMS, options, "x.parquet")

        assert [r["s"] for r in read_rows(backend, "x.parquet")] == ["ok"]
        assert result.skipped_series == [LabelSet({"__name__": "x", "s": "bad"})]
        assert any("skipping series" in rec.getMessage() for rec in caplog.records)

    def test_schema_error_before_any_io(self, tmp_path):
        backend = filesystem_backend(tmp_path)
        reader = MemorySeriesReader([({"__name__": "x", "_sum": "oops"}, [(0, 1.0)])])

        with pytest.raises(ExportError) as exc:
            ExportPipeline(reader, backend).export(Context(), PARAMS, AggregationOptions(), "x.parquet")

        assert exc.value.stage == "aggregate"
        assert isinstance(exc.value.__cause__, SchemaError)
        assert leftovers(tmp_path) == []

    def test_csv_encoder(self, tmp_path):
        backend = filesystem_backend(tmp_path)
        reader = MemorySeriesReader([({"__name__": "x"}, [(0, 1.0)])])

        ExportPipeline(reader, backend, encoder=CSVEncoder()).export(
            Context(), PARAMS, AggregationOptions(functions=("count",)), "x.csv"
        )

        lines = (tmp_path / "x.csv").read_text().splitlines()
        assert len(lines) == 2
        assert "_count" in lines[0]


class TestRunExport:
    """Tests for running an export from configuration."""

    def test_run_export_from_config(self, tmp_path, monkeypatch):
        def handler(request):
            return httpx.Response(200, json={
                "status": "success",
                "data": {"resultType": "matrix", "result": [
                    {"metric": {"__name__": "up", "job": "api"},
                     "values": [[0, "1"], [30, "0"], [90, "1"]]},
                ]},
            })

        def make_reader(endpoint, **kwargs):
            return PrometheusAPIReader(endpoint, transport=httpx.MockTransport(handler), **kwargs)

        monkeypatch.setattr(pipeline_module, "PrometheusAPIReader", make_reader)
        config = parse_config({
            "series": {
                "endpoint": "http://prometheus:9090",
                "matchers": "up",
                "min_time": 0,
                "max_time": 3_600_000,
            },
            "aggregation": {"window": "1m", "functions": ["count", "max"]},
            "output": {"destination": "up.parquet"},
            "storage": {"type": "FILESYSTEM", "config": {"directory": str(tmp_path)}},
            "timeout_sec": 30,
        })

        result = run_export(config)

        rows = pq.read_table(str(tmp_path / "up.parquet")).to_pylist()
        assert result.rows == 2
        assert [(r["job"], r["_count"], r["_max"]) for r in rows] == [("api", 2, 1.0), ("api", 1, 1.0)]
