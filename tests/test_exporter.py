"""Tests for encoders, storage backends and the exporter."""

import pyarrow.csv as pacsv
import pyarrow.fs as pafs
import pyarrow.parquet as pq
import pytest

from obslytics.context import Context
from obslytics.dataframe import AggregationOptions, DataFrameSchema, from_series
from obslytics.errors import (
    Cancelled,
    ConfigurationError,
    EncodingError,
    ExportError,
    StorageError,
)
from obslytics.exporter import (
    ArrowStorageBackend,
    CSVEncoder,
    Exporter,
    ParquetEncoder,
    filesystem_backend,
    new_backend,
    new_encoder,
)
from obslytics.series.types import Series, SeriesSet


def series_set():
    return SeriesSet([
        Series({"__name__": "x", "job": "a"}, [(0, 1.0), (30_000, 3.0), (70_000, 5.0)]),
        Series({"__name__": "x", "job": "b"}, [(0, 2.0)]),
    ])


def leftovers(root):
    return sorted(p.name for p in root.rglob("*") if p.is_file())


def mock_objects(fs):
    infos = fs.get_file_info(pafs.FileSelector("", recursive=True))
    return sorted(i.path for i in infos if i.type == pafs.FileType.File)


class FailingCommitBackend(ArrowStorageBackend):
    def commit(self, handle):
        handle.close()
        raise StorageError("commit refused", handle.destination)


class TestStorageBackend:
    """Tests for commit/abort semantics on the local filesystem."""

    def test_commit_makes_artifact_visible(self, tmp_path):
        backend = filesystem_backend(tmp_path)
        handle = backend.open_writer("nested/dir/out.bin")
        handle.write(b"hello")

        assert not backend.exists("nested/dir/out.bin")
        backend.commit(handle)

        assert backend.exists("nested/dir/out.bin")
        assert (tmp_path / "nested" / "dir" / "out.bin").read_bytes() == b"hello"
        assert backend.open_input("nested/dir/out.bin").read() == b"hello"
        assert leftovers(tmp_path) == ["out.bin"]

    def test_abort_leaves_nothing(self, tmp_path):
        backend = filesystem_backend(tmp_path)
        handle = backend.open_writer("out.bin")
        handle.write(b"partial")
        backend.abort(handle)

        assert not backend.exists("out.bin")
        assert leftovers(tmp_path) == []

    def test_commit_replaces_existing_artifact(self, tmp_path):
        backend = filesystem_backend(tmp_path)
        for payload in (b"first", b"second"):
            handle = backend.open_writer("out.bin")
            handle.write(payload)
            backend.commit(handle)

        assert (tmp_path / "out.bin").read_bytes() == b"second"

    def test_non_local_filesystem(self):
        fs = pafs._MockFileSystem()
        fs.create_dir("bucket/exports", recursive=True)
        backend = ArrowStorageBackend(fs, root="bucket/exports")

        handle = backend.open_writer("kept.bin")
        handle.write(b"hello")
        backend.commit(handle)
        handle = backend.open_writer("dropped.bin")
        handle.write(b"partial")
        backend.abort(handle)

        assert backend.exists("kept.bin")
        assert not backend.exists("dropped.bin")
        assert backend.open_input("kept.bin").read() == b"hello"
        assert mock_objects(fs) == ["bucket/exports/kept.bin"]

    def test_handle_counts_bytes(self, tmp_path):
        handle = filesystem_backend(tmp_path).open_writer("out.bin")
        handle.write(b"abc")
        handle.write(memoryview(b"de"))

        assert handle.tell() == 5

    @pytest.mark.parametrize("destination", ["", "/", "../escape.bin", "a/../../b"])
    def test_invalid_destination(self, tmp_path, destination):
        with pytest.raises(StorageError):
            filesystem_backend(tmp_path).open_writer(destination)

    def test_new_backend(self, tmp_path):
        backend = new_backend({"type": "filesystem", "config": {"directory": str(tmp_path)}})
        assert isinstance(backend, ArrowStorageBackend)

        with pytest.raises(ConfigurationError):
            new_backend({"type": "GCS", "config": {}})
        with pytest.raises(ConfigurationError):
            new_backend({"type": "FILESYSTEM", "config": {}})
        with pytest.raises(ConfigurationError):
            new_backend({"type": "S3", "config": {"bucket": "b", "part_size": 1}})


class TestEncoders:
    """Tests for the Parquet and CSV encoders."""

    def test_parquet_row_groups(self, tmp_path):
        backend = filesystem_backend(tmp_path)
        schema = DataFrameSchema(labels=("job",), functions=AggregationOptions(functions=("count",)).functions)
        rows = [{"job": str(i), "_sample_start": i * 1000, "_count": i} for i in range(5)]

        result = Exporter(ParquetEncoder(row_group_size=2), "out.parquet", backend).export(
            Context(), schema, rows
        )

        pf = pq.ParquetFile(backend.open_input("out.parquet"))
        assert pf.metadata.num_row_groups == 3
        assert pf.metadata.num_rows == 5
        assert result.rows == 5
        assert result.bytes_written == (tmp_path / "out.parquet").stat().st_size

    def test_csv_output(self, tmp_path):
        backend = filesystem_backend(tmp_path)
        df = from_series(series_set(), AggregationOptions(window="60s"))

        Exporter(CSVEncoder(batch_size=1), "out.csv", backend).export_frame(Context(), df)

        table = pacsv.read_csv(backend.open_input("out.csv"))
        assert table.column_names == ["__name__", "job", "_sample_start", "_count", "_sum", "_min", "_max"]
        assert table.column("_count").to_pylist() == [2, 1, 1]
        assert table.column("job").to_pylist() == ["a", "a", "b"]

    def test_new_encoder(self):
        assert isinstance(new_encoder("Parquet"), ParquetEncoder)
        assert isinstance(new_encoder("csv", batch_size=5), CSVEncoder)
        with pytest.raises(ConfigurationError):
            new_encoder("orc")

    def test_invalid_row_raises_encoding_error(self, tmp_path):
        backend = filesystem_backend(tmp_path)
        schema = DataFrameSchema(labels=(), functions=AggregationOptions(functions=("count",)).functions)
        writer = ParquetEncoder().open(schema, backend.open_writer("out.parquet"))

        with pytest.raises(EncodingError):
            writer.write_row({"_sample_start": 0})
        with pytest.raises(EncodingError):
            writer.write_row({"_sample_start": 0, "_count": 1, "extra": "x"})


class TestExporter:
    """Tests for all-or-nothing export."""

    def test_export_parquet(self, tmp_path):
        backend = filesystem_backend(tmp_path)
        df = from_series(series_set(), AggregationOptions(window="60s"))

        result = Exporter(ParquetEncoder(), "x/out.parquet", backend).export_frame(Context(), df)

        table = pq.read_table(backend.open_input("x/out.parquet"))
        assert result.rows == 3
        assert table.schema.names == ["__name__", "job", "_sample_start", "_count", "_sum", "_min", "_max"]
        assert table.column("_sum").to_pylist() == [4.0, 5.0, 2.0]
        assert leftovers(tmp_path) == ["out.parquet"]

    def test_export_to_object_store(self):
        fs = pafs._MockFileSystem()
        fs.create_dir("bucket", recursive=True)
        backend = ArrowStorageBackend(fs, root="bucket")
        df = from_series(series_set(), AggregationOptions(window="60s"))

        result = Exporter(ParquetEncoder(), "out.parquet", backend).export_frame(Context(), df)

        assert result.rows == 3
        assert pq.read_table(backend.open_input("out.parquet")).num_rows == 3
        assert mock_objects(fs) == ["bucket/out.parquet"]

    def test_encoding_failure_aborts(self, tmp_path):
        backend = filesystem_backend(tmp_path)
        schema = DataFrameSchema(labels=(), functions=AggregationOptions(functions=("count",)).functions)
        rows = [{"_sample_start": 0, "_count": 1}, {"_sample_start": 1}]

        with pytest.raises(ExportError) as exc:
            Exporter(ParquetEncoder(), "out.parquet", backend).export(Context(), schema, rows)

        assert exc.value.stage == "encode"
        assert exc.value.destination == "out.parquet"
        assert isinstance(exc.value.__cause__, EncodingError)
        assert leftovers(tmp_path) == []

    def test_type_failure_aborts(self, tmp_path):
        backend = filesystem_backend(tmp_path)
        schema = DataFrameSchema(labels=(), functions=AggregationOptions(functions=("count",)).functions)
        rows = [{"_sample_start": 0, "_count": "not a number"}]

        with pytest.raises(ExportError) as exc:
            Exporter(ParquetEncoder(), "out.parquet", backend).export(Context(), schema, rows)

        assert exc.value.stage == "encode"
        assert leftovers(tmp_path) == []

    def test_commit_failure_aborts(self, tmp_path):
        backend = FailingCommitBackend(filesystem_backend(tmp_path).fs, create_dirs=True)
        df = from_series(series_set(), AggregationOptions())

        with pytest.raises(ExportError) as exc:
            Exporter(ParquetEncoder(), "out.parquet", backend).export_frame(Context(), df)

        assert exc.value.stage == "upload"
        assert "out.parquet" in str(exc.value)
        assert leftovers(tmp_path) == []

    def test_cancelled_before_start(self, tmp_path):
        backend = filesystem_backend(tmp_path)
        ctx = Context()
        ctx.cancel()
        df = from_series(series_set(), AggregationOptions())

        with pytest.raises(ExportError) as exc:
            Exporter(ParquetEncoder(), "out.parquet", backend).export_frame(ctx, df)

        assert isinstance(exc.value.__cause__, Cancelled)
        assert leftovers(tmp_path) == []

    def test_cancelled_mid_export(self, tmp_path):
        backend = filesystem_backend(tmp_path)
        ctx = Context()
        schema = DataFrameSchema(labels=(), functions=AggregationOptions(functions=("count",)).functions)

        def rows():
            yield {"_sample_start": 0, "_count": 1}
            ctx.cancel()
            yield {"_sample_start": 1, "_count": 1}

        with pytest.raises(ExportError) as exc:
            Exporter(ParquetEncoder(), "out.parquet", backend).export(ctx, schema, rows())

        assert isinstance(exc.value.__cause__, Cancelled)
        assert exc.value.stage == "read"
        assert not backend.exists("out.parquet")
        assert leftovers(tmp_path) == []
