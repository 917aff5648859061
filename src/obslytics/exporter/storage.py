"""Storage backends the exporter writes artifacts to.

Backends never expose a partially written artifact at its destination.
``ArrowStorageBackend`` writes into a hidden temporary sibling
(``.<name>.tmp-<uuid>``) and moves it into place on ``commit``: a rename on
local filesystems, a server-side copy plus delete on object stores, where the
destination key only appears once the copy completes. ``abort`` deletes the
temporary object.

Any ``pyarrow.fs.FileSystem`` works; ``new_backend`` builds local and S3
backends from a Thanos-style bucket config mapping::

    type: S3
    config:
      bucket: analytics
      endpoint: s3.eu-west-1.amazonaws.com
      region: eu-west-1
"""

from __future__ import annotations

import io
import logging
import posixpath
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Mapping, Optional

import pyarrow as pa
import pyarrow.fs as pafs

from ..errors import ConfigurationError, StorageError


LOGGER = logging.getLogger(__name__)


class WriteHandle(io.RawIOBase):
    """Binary, append-only stream into a pending artifact.

    Counts the bytes written and reports backend failures as
    ``StorageError`` naming the destination.
    """

    def __init__(self, destination: str, temp_path: str, stream: pa.NativeFile):
        super().__init__()
        self.destination = destination
        self.temp_path = temp_path
        self._stream = stream
        self._written = 0

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        if self.closed:
            raise StorageError("write to closed handle", self.destination)
        try:
            self._stream.write(data)
        except OSError as e:
            raise StorageError(f"write failed: {e}", self.destination) from e
        n = memoryview(data).nbytes
        self._written += n
        return n

    def tell(self) -> int:
        return self._written

    def flush(self) -> None:
        if self.closed or self._stream.closed:
            return
        try:
            self._stream.flush()
        except OSError as e:
            raise StorageError(f"flush failed: {e}", self.destination) from e

    def close(self) -> None:
        if self.closed:
            return
        try:
            self._stream.close()
        except OSError as e:
            raise StorageError(f"close failed: {e}", self.destination) from e
        finally:
            super().close()


class StorageBackend(ABC):
    """Destination for artifacts, addressed by a backend-relative path."""

    @abstractmethod
    def open_writer(self, destination: str) -> WriteHandle:
        """Start a pending write to ``destination``."""

    @abstractmethod
    def commit(self, handle: WriteHandle) -> None:
        """Make the artifact durably visible at its destination."""

    @abstractmethod
    def abort(self, handle: WriteHandle) -> None:
        """Discard the pending write; nothing is left at the destination."""

    @abstractmethod
    def exists(self, destination: str) -> bool:
        """Whether a committed artifact exists at ``destination``."""

    @abstractmethod
    def open_input(self, destination: str) -> pa.NativeFile:
        """Open a committed artifact for reading."""


class ArrowStorageBackend(StorageBackend):
    """Backend over any ``pyarrow.fs.FileSystem``, optionally rooted at a prefix."""

    def __init__(
        self,
        filesystem: pafs.FileSystem,
        root: str = "",
        create_dirs: bool = False,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize backend.

        Args:
            filesystem: Underlying pyarrow filesystem
            root: Base path prepended to every destination
            create_dirs: Create parent directories before writing (needed on
                local filesystems, not on object stores)
            logger: Logger (module logger if None)
        """
        self.fs = pafs.SubTreeFileSystem(root, filesystem) if root else filesystem
        self.root = root
        self.create_dirs = create_dirs
        self.logger = logger or LOGGER

    @staticmethod
    def _normalize(destination: str) -> str:
        path = posixpath.normpath(destination.strip().lstrip("/"))
        if path in ("", ".") or path.startswith(".."):
            raise StorageError("invalid destination path", destination)
        return path

    def open_writer(self, destination: str) -> WriteHandle:
        path = self._normalize(destination)
        parent, name = posixpath.split(path)
        temp = posixpath.join(parent, f".{name}.tmp-{uuid.uuid4().hex}")
        try:
            if self.create_dirs and parent:
                self.fs.create_dir(parent, recursive=True)
            stream = self.fs.open_output_stream(temp)
        except OSError as e:
            raise StorageError(f"cannot open writer: {e}", destination) from e
        self.logger.debug("opened %s (temporary %s)", path, temp)
        return WriteHandle(destination, temp, stream)

    def commit(self, handle: WriteHandle) -> None:
        handle.close()
        path = self._normalize(handle.destination)
        try:
            self.fs.move(handle.temp_path, path)
        except OSError as e:
            raise StorageError(f"commit failed: {e}", handle.destination) from e
        self.logger.debug("committed %s", path)

    def abort(self, handle: WriteHandle) -> None:
        try:
            handle.close()
        except StorageError as e:
            self.logger.warning("closing aborted write failed: %s", e)
        try:
            self.fs.delete_file(handle.temp_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"cleanup of {handle.temp_path} failed: {e}", handle.destination) from e
        self.logger.debug("aborted %s", handle.destination)

    def exists(self, destination: str) -> bool:
        info = self.fs.get_file_info(self._normalize(destination))
        return info.type == pafs.FileType.File

    def open_input(self, destination: str) -> pa.NativeFile:
        try:
            return self.fs.open_input_file(self._normalize(destination))
        except OSError as e:
            raise StorageError(f"cannot open for reading: {e}", destination) from e


def filesystem_backend(directory: str | Path) -> ArrowStorageBackend:
    """Backend rooted at a local directory (created if missing)."""
    root = Path(directory).expanduser().resolve()
    root.mkdir(parents=True, exist_ok=True)
    return ArrowStorageBackend(pafs.LocalFileSystem(), root=root.as_posix(), create_dirs=True)


def s3_backend(
    bucket: str,
    endpoint: Optional[str] = None,
    region: Optional[str] = None,
    access_key: Optional[str] = None,
    secret_key: Optional[str] = None,
    insecure: bool = False,
    prefix: str = "",
) -> ArrowStorageBackend:
    """Backend writing objects to ``bucket`` under an optional key prefix."""
    kwargs: dict[str, Any] = {"scheme": "http" if insecure else "https"}
    if endpoint:
        kwargs["endpoint_override"] = endpoint
    if region:
        kwargs["region"] = region
    if access_key or secret_key:
        kwargs["access_key"] = access_key
        kwargs["secret_key"] = secret_key
    fs = pafs.S3FileSystem(**kwargs)
    root = posixpath.join(bucket, prefix.strip("/")) if prefix.strip("/") else bucket
    return ArrowStorageBackend(fs, root=root)


def new_backend(config: Mapping[str, Any]) -> StorageBackend:
    """Build a backend from ``{"type": ..., "config": {...}}``.

    Raises:
        ConfigurationError: Unknown type or missing required keys
    """
    kind = str(config.get("type", "")).upper()
    options = dict(config.get("config") or {})

    if kind == "FILESYSTEM":
        if "directory" not in options:
            raise ConfigurationError("FILESYSTEM storage requires 'directory'")
        return filesystem_backend(options["directory"])

    if kind == "S3":
        if "bucket" not in options:
            raise ConfigurationError("S3 storage requires 'bucket'")
        allowed = {"bucket", "endpoint", "region", "access_key", "secret_key", "insecure", "prefix"}
        unknown = sorted(set(options) - allowed)
        if unknown:
            raise ConfigurationError(f"Unknown S3 storage options: {', '.join(unknown)}")
        return s3_backend(**options)

    raise ConfigurationError(f"Unknown storage type: {config.get('type')!r}")
