"""Configuration of the debug information store: object bucket and local cache."""

from __future__ import annotations

import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

FILESYSTEM = "FILESYSTEM"


class DebugInfoConfigError(ValueError):
    """Raised when the debug info configuration is malformed or invalid."""


@dataclass
class BucketConfig:
    """Object storage bucket settings: a provider type and its own configuration."""

    type: str = ""
    config: Any = None

    def as_dict(self) -> dict[str, Any]:
        return {"type": self.type, "config": self.config}


@dataclass
class FilesystemCacheConfig:
    """Settings of a cache kept in a local directory."""

    directory: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {"directory": self.directory}


@dataclass
class CacheConfig:
    """Local cache settings: a provider type and its own configuration."""

    type: str = ""
    config: Any = None

    def as_dict(self) -> dict[str, Any]:
        inner = self.config
        if isinstance(inner, FilesystemCacheConfig):
            inner = inner.as_dict()
        return {"type": self.type, "config": inner}


@dataclass
class DebugInfoConfig:
    """The debug_info section of the configuration file."""

    bucket: BucketConfig | None = None
    cache: CacheConfig | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "bucket": self.bucket.as_dict() if self.bucket is not None else None,
            "cache": self.cache.as_dict() if self.cache is not None else None,
        }


def _strict_mapping(data: Any, allowed: set[str], what: str) -> Mapping:
    if not isinstance(data, Mapping):
        raise DebugInfoConfigError(f"{what} must be a mapping")
    unknown = sorted(str(key) for key in data if key not in allowed)
    if unknown:
        raise DebugInfoConfigError(f"field {unknown[0]} not found in {what}")
    return data


def _type_string(value: Any) -> str:
    return "" if value is None else str(value)


def _parse_bucket(data: Any) -> BucketConfig | None:
    if data is None:
        return None
    raw = _strict_mapping(data, {"type", "config"}, "bucket config")
    return BucketConfig(type=_type_string(raw.get("type")), config=raw.get("config"))


def _parse_cache(data: Any) -> CacheConfig | None:
    if data is None:
        return None
    raw = _strict_mapping(data, {"type", "config"}, "cache config")
    return CacheConfig(type=_type_string(raw.get("type")), config=raw.get("config"))


def parse_debuginfo_config(data: Any) -> DebugInfoConfig:
    """Build a DebugInfoConfig from a decoded YAML mapping, rejecting unknown keys."""
    raw = _strict_mapping(data, {"bucket", "cache"}, "debug_info config")
    return DebugInfoConfig(
        bucket=_parse_bucket(raw.get("bucket")),
        cache=_parse_cache(raw.get("cache")),
    )


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, bytes, Mapping, Sequence)):
        return len(value) == 0
    return False


def validate_bucket_config(bucket: Any) -> None:
    """Raise DebugInfoConfigError unless the bucket has both a type and a config."""
    if not isinstance(bucket, BucketConfig):
        raise DebugInfoConfigError("BucketConfig is invalid")
    problems = []
    if _is_blank(bucket.config):
        problems.append("config: cannot be blank")
    if _is_blank(bucket.type):
        problems.append("type: cannot be blank")
    if problems:
        raise DebugInfoConfigError("; ".join(problems) + ".")


def validate_debuginfo_config(config: Any) -> None:
    """Raise DebugInfoConfigError unless the configuration holds a valid bucket."""
    if not isinstance(config, DebugInfoConfig):
        raise DebugInfoConfigError("DebugInfo is invalid")
    if config.bucket is None:
        raise DebugInfoConfigError("bucket: cannot be blank.")
    try:
        validate_bucket_config(config.bucket)
    except DebugInfoConfigError as err:
        raise DebugInfoConfigError(f"bucket: ({err})") from err


def new_cache(cache_config: CacheConfig | Mapping | None) -> FilesystemCacheConfig:
    """Resolve the cache settings and make sure the cache directory exists."""
    if cache_config is None:
        cache_config = CacheConfig()
    elif isinstance(cache_config, Mapping):
        cache_config = _parse_cache(cache_config)
    elif not isinstance(cache_config, CacheConfig):
        raise DebugInfoConfigError("parsing cache config: not a cache config")

    if cache_config.type.upper() != FILESYSTEM:
        raise DebugInfoConfigError(f"cache with type {cache_config.type} is not supported")

    inner = cache_config.config
    if isinstance(inner, FilesystemCacheConfig):
        directory = inner.directory
    elif inner is None:
        directory = ""
    elif isinstance(inner, Mapping):
        directory = _type_string(inner.get("directory"))
    else:
        raise DebugInfoConfigError("filesystem cache config must be a mapping")

    if not directory:
        raise DebugInfoConfigError("missing directory for filesystem bucket")

    if not os.path.exists(directory):
        os.makedirs(directory, mode=0o700)
    return FilesystemCacheConfig(directory=directory)