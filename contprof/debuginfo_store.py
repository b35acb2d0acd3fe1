"""Storage of uploaded debug information files in an object bucket with a local cache."""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from collections.abc import Iterable, Iterator, Mapping
from typing import IO, Any, Protocol

from .debuginfo_config import (
    FILESYSTEM,
    DebugInfoConfig,
    DebugInfoConfigError,
    FilesystemCacheConfig,
    new_cache,
)

_log = logging.getLogger(__name__)

_HEX_RE = re.compile(r"[0-9a-fA-F]*")
_COPY_BLOCK = 32 * 1024
_UPLOAD_CHUNK = 1024


class ObjectNotFoundError(KeyError):
    """Raised by a bucket when the requested object does not exist."""


class DebugInfoNotFoundError(LookupError):
    """Raised when no debug information is stored for a build ID."""

    def __init__(self, message: str = "debug info not found") -> None:
        super().__init__(message)


class InvalidArgumentError(ValueError):
    """Raised when a request carries an invalid argument, such as a malformed build ID."""


class _Readable(Protocol):
    def read(self, size: int = -1) -> bytes: ...


class FilesystemBucket:
    """An object bucket whose objects are files below a local directory."""

    def __init__(self, directory: str | os.PathLike) -> None:
        self.directory = os.fspath(directory)
        if not self.directory:
            raise DebugInfoConfigError("missing directory for filesystem bucket")

    def _path(self, name: str) -> str:
        parts = [part for part in name.split("/") if part]
        if any(part in (".", "..") for part in parts):
            raise ValueError(f"invalid object name: {name!r}")
        return os.path.join(self.directory, *parts)

    def upload(self, name: str, reader: _Readable) -> None:
        """Write everything read from reader into the object called name."""
        path = self._path(name)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as handle:
            while chunk := reader.read(_COPY_BLOCK):
                handle.write(chunk)

    def get(self, name: str) -> IO[bytes]:
        """Open the object called name for reading."""
        path = self._path(name)
        try:
            return open(path, "rb")
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as err:
            raise ObjectNotFoundError(name) from err

    def iter(self, prefix: str) -> Iterator[str]:
        """Yield the names of the entries directly below prefix; directories end in '/'."""
        path = self._path(prefix)
        if not os.path.isdir(path):
            return
        base = prefix.strip("/")
        with os.scandir(path) as entries:
            names = sorted((entry.name, entry.is_dir()) for entry in entries)
        for entry_name, is_dir in names:
            full = f"{base}/{entry_name}" if base else entry_name
            yield full + "/" if is_dir else full


class UploadReader:
    """A file-like reader over a stream of uploaded data chunks."""

    def __init__(self, chunks: Iterable[bytes]) -> None:
        self._chunks = iter(chunks)
        self._current = b""
        self._done = False
        self.size = 0

    def _next_chunk(self) -> bool:
        while not self._done:
            try:
                chunk = next(self._chunks)
            except StopIteration:
                self._done = True
                return False
            if chunk:
                self._current = bytes(chunk)
                return True
        return False

    def read(self, size: int = -1) -> bytes:
        """Return up to size bytes, or everything left if size is negative; b'' at the end."""
        if size is None or size < 0:
            parts = [self._current]
            self._current = b""
            while self._next_chunk():
                parts.append(self._current)
                self._current = b""
            data = b"".join(parts)
        else:
            if size == 0:
                return b""
            if not self._current and not self._next_chunk():
                return b""
            data, self._current = self._current[:size], self._current[size:]
        self.size += len(data)
        return data


def validate_id(build_id: str) -> None:
    """Raise InvalidArgumentError unless build_id is hex-encoded and longer than two characters."""
    if not isinstance(build_id, str) or _HEX_RE.fullmatch(build_id) is None:
        raise InvalidArgumentError("failed to validate id: invalid byte in hex string")
    if len(build_id) % 2 != 0:
        raise InvalidArgumentError("failed to validate id: odd length hex string")
    if len(build_id) <= 2:
        raise InvalidArgumentError("unexpectedly short ID")


class DebugInfoStore:
    """Accepts debug information uploads and serves them from a local cache."""

    def __init__(self, bucket: FilesystemBucket, cache_dir: str | os.PathLike) -> None:
        self.bucket = bucket
        self.cache_dir = os.fspath(cache_dir)

    def exists(self, build_id: str) -> bool:
        """Tell whether any debug information is stored for build_id."""
        validate_id(build_id)
        return any(True for _ in self.bucket.iter(build_id))

    def upload(self, build_id: str, chunks: Iterable[bytes]) -> int:
        """Store the chunks as the debug information of build_id and return its size."""
        validate_id(build_id)
        reader = UploadReader(chunks)
        try:
            self.bucket.upload(f"{build_id}/debuginfo", reader)
        except Exception as err:
            _log.error("failed to upload: %s", err)
            raise OSError("failed to upload") from err
        return reader.size

    def fetch_object_file(self, build_id: str) -> str:
        """Return the local path of the debug information of build_id, downloading it if needed."""
        validate_id(build_id)
        target_dir = os.path.join(self.cache_dir, build_id)
        mapping_path = os.path.join(target_dir, "debuginfo")
        if os.path.exists(mapping_path):
            return mapping_path

        try:
            source = self.bucket.get(f"{build_id}/debuginfo")
        except ObjectNotFoundError as err:
            _log.debug("object not found: %s", build_id)
            raise DebugInfoNotFoundError() from err
        except OSError as err:
            raise OSError(f"get object from object storage: {err}") from err

        os.makedirs(target_dir, mode=0o700, exist_ok=True)
        with source:
            handle = tempfile.NamedTemporaryFile(
                dir=target_dir, prefix="symbol-download", delete=False
            )
            try:
                with handle:
                    shutil.copyfileobj(source, handle)
                # Renaming makes the appearance of the cached file atomic.
                os.replace(handle.name, mapping_path)
            except BaseException:
                try:
                    os.remove(handle.name)
                except FileNotFoundError:
                    pass
                raise
        return mapping_path


def _bucket_directory(config: Any) -> str:
    if config is None:
        return ""
    if isinstance(config, Mapping):
        value = config.get("directory")
    else:
        value = getattr(config, "directory", None)
    return "" if value is None else str(value)


def new_store(config: DebugInfoConfig) -> DebugInfoStore:
    """Build a debug info store from its configuration, creating the cache directory."""
    bucket_cfg = config.bucket
    if bucket_cfg is None:
        raise DebugInfoConfigError("instantiate object storage: missing bucket configuration")
    if str(bucket_cfg.type).upper() != FILESYSTEM:
        raise DebugInfoConfigError(
            f"instantiate object storage: unsupported bucket provider {bucket_cfg.type}"
        )
    try:
        bucket = FilesystemBucket(_bucket_directory(bucket_cfg.config))
    except DebugInfoConfigError as err:
        raise DebugInfoConfigError(f"instantiate object storage: {err}") from err

    try:
        cache: FilesystemCacheConfig = new_cache(config.cache)
    except DebugInfoConfigError as err:
        raise DebugInfoConfigError(f"instantiate cache: {err}") from err
    return DebugInfoStore(bucket, cache.directory)


class DebugInfoClient:
    """Client side of the debug info service: checks for and uploads debug files."""

    def __init__(self, store: DebugInfoStore) -> None:
        self.store = store

    def exists(self, build_id: str) -> bool:
        return self.store.exists(build_id)

    def upload(self, build_id: str, reader: _Readable) -> int:
        """Send everything read from reader in small chunks; return the stored size."""

        def chunks() -> Iterator[bytes]:
            sent = 0
            while True:
                try:
                    chunk = reader.read(_UPLOAD_CHUNK)
                except OSError as err:
                    raise OSError(f"read next chunk ({sent} bytes sent so far): {err}") from err
                if not chunk:
                    return
                yield chunk
                sent += len(chunk)

        return self.store.upload(build_id, chunks())