import os

import pytest

from contprof.debuginfo_config import (
    BucketConfig,
    CacheConfig,
    DebugInfoConfig,
    DebugInfoConfigError,
    FilesystemCacheConfig,
    new_cache,
    parse_debuginfo_config,
    validate_bucket_config,
    validate_debuginfo_config,
)


def test_parse_reads_bucket_and_cache():
    cfg = parse_debuginfo_config(
        {
            "bucket": {"type": "FILESYSTEM", "config": {"directory": "./data"}},
            "cache": {"type": "FILESYSTEM", "config": {"directory": "./cache"}},
        }
    )
    assert cfg.bucket == BucketConfig(type="FILESYSTEM", config={"directory": "./data"})
    assert cfg.cache == CacheConfig(type="FILESYSTEM", config={"directory": "./cache"})


def test_parse_rejects_unknown_keys():
    with pytest.raises(DebugInfoConfigError, match="field extra"):
        parse_debuginfo_config({"bucket": None, "extra": 1})


def test_parse_round_trips_through_as_dict():
    raw = {
        "bucket": {"type": "FILESYSTEM", "config": {"directory": "./data"}},
        "cache": {"type": "FILESYSTEM", "config": {"directory": "./cache"}},
    }
    assert parse_debuginfo_config(raw).as_dict() == raw


@pytest.mark.parametrize(
    "config",
    [
        None,
        DebugInfoConfig(bucket=None),
        DebugInfoConfig(bucket=BucketConfig(config={"directory": "./tmp"})),
        DebugInfoConfig(bucket=BucketConfig(type="FILESYSTEM")),
    ],
)
def test_invalid_configs_are_rejected(config):
    with pytest.raises(DebugInfoConfigError):
        validate_debuginfo_config(config)


def test_bucket_validation_names_missing_fields():
    with pytest.raises(DebugInfoConfigError) as excinfo:
        validate_bucket_config(BucketConfig())
    assert "config: cannot be blank" in str(excinfo.value)
    assert "type: cannot be blank" in str(excinfo.value)


def test_bucket_validation_rejects_wrong_type():
    with pytest.raises(DebugInfoConfigError, match="BucketConfig is invalid"):
        validate_bucket_config({"type": "FILESYSTEM"})


def test_new_cache_creates_directory(tmp_path):
    target = tmp_path / "cache" / "nested"
    result = new_cache(CacheConfig(type="FILESYSTEM", config={"directory": str(target)}))
    assert result == FilesystemCacheConfig(directory=str(target))
    assert os.path.isdir(target)


def test_new_cache_type_is_case_insensitive(tmp_path):
    result = new_cache({"type": "filesystem", "config": {"directory": str(tmp_path)}})
    assert result.directory == str(tmp_path)


def test_new_cache_accepts_filesystem_config_object(tmp_path):
    inner = FilesystemCacheConfig(directory=str(tmp_path / "c"))
    result = new_cache(CacheConfig(type="FILESYSTEM", config=inner))
    assert result == inner
    assert os.path.isdir(inner.directory)


def test_new_cache_rejects_unsupported_type():
    with pytest.raises(DebugInfoConfigError, match="cache with type S3 is not supported"):
        new_cache(CacheConfig(type="S3", config={"directory": "x"}))


def test_new_cache_requires_directory():
    with pytest.raises(DebugInfoConfigError, match="missing directory for filesystem bucket"):
        new_cache(CacheConfig(type="FILESYSTEM", config={}))


def test_new_cache_without_config_is_unsupported():
    with pytest.raises(DebugInfoConfigError, match="is not supported"):
        new_cache(None)