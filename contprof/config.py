"""Loading and validation of the server configuration file."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import yaml

from .debuginfo_config import (
    DebugInfoConfig,
    DebugInfoConfigError,
    parse_debuginfo_config,
    validate_debuginfo_config,
)

PPROF_MEMORY_TOTAL = "memory_total"
PPROF_BLOCK_TOTAL = "block_total"
PPROF_GOROUTINE_TOTAL = "goroutine_total"
PPROF_MUTEX_TOTAL = "mutex_total"
PPROF_PROCESS_CPU = "process_cpu"
PPROF_THREADCREATE_TOTAL = "threadcreate_total"

ADDRESS_LABEL = "__address__"


class ConfigError(ValueError):
    """Raised when a configuration cannot be parsed or is invalid."""


class Secret(str):
    """A string whose value is hidden when the configuration is written out."""

    def marshal(self) -> str | None:
        return "<secret>" if self else None

    def __repr__(self) -> str:
        return "Secret('<secret>')" if self else "Secret('')"


_DURATION_RE = re.compile(
    r"^(?:(\d+)y)?(?:(\d+)w)?(?:(\d+)d)?(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?(?:(\d+)ms)?$"
)
_DAY_MS = 24 * 60 * 60 * 1000
_UNITS = (
    ("y", 365 * _DAY_MS, True),
    ("w", 7 * _DAY_MS, True),
    ("d", _DAY_MS, True),
    ("h", 60 * 60 * 1000, False),
    ("m", 60 * 1000, False),
    ("s", 1000, False),
    ("ms", 1, False),
)


def _parse_duration(value: Any) -> timedelta:
    text = str(value)
    if text == "":
        raise ConfigError("empty duration string")
    if text == "0":
        return timedelta(0)
    match = _DURATION_RE.match(text)
    if match is None:
        raise ConfigError(f"not a valid duration string: {text!r}")
    total = sum(int(group) * mult for group, (_, mult, _) in zip(match.groups(), _UNITS) if group)
    return timedelta(milliseconds=total)


def _format_duration(duration: timedelta) -> str:
    ms = int(duration / timedelta(milliseconds=1))
    if ms == 0:
        return "0s"
    parts = []
    for unit, mult, exact in _UNITS:
        if exact and ms % mult != 0:
            continue
        count = ms // mult
        if count > 0:
            parts.append(f"{count}{unit}")
            ms -= count * mult
    return "".join(parts)


@dataclass
class PprofProfilingConfig:
    """One profile type to scrape: whether it is on, its HTTP path, and delta mode."""

    enabled: bool | None = None
    path: str = ""
    delta: bool = False

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.enabled is not None:
            out["enabled"] = self.enabled
        if self.path:
            out["path"] = self.path
        if self.delta:
            out["delta"] = self.delta
        return out


@dataclass
class StaticTargetGroup:
    """A group of statically configured targets sharing a set of labels."""

    targets: list[dict[str, str]] = field(default_factory=list)
    labels: dict[str, str] | None = None
    source: str = ""

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"targets": [t.get(ADDRESS_LABEL, "") for t in self.targets]}
        if self.labels:
            out["labels"] = dict(self.labels)
        return out


def _default_pprof_config() -> dict[str, PprofProfilingConfig]:
    return {
        PPROF_MEMORY_TOTAL: PprofProfilingConfig(enabled=True, path="/debug/pprof/heap"),
        PPROF_BLOCK_TOTAL: PprofProfilingConfig(enabled=True, path="/debug/pprof/block"),
        PPROF_GOROUTINE_TOTAL: PprofProfilingConfig(enabled=True, path="/debug/pprof/goroutine"),
        PPROF_MUTEX_TOTAL: PprofProfilingConfig(enabled=True, path="/debug/pprof/mutex"),
        PPROF_PROCESS_CPU: PprofProfilingConfig(
            enabled=True, delta=True, path="/debug/pprof/profile"
        ),
        PPROF_THREADCREATE_TOTAL: PprofProfilingConfig(
            enabled=True, path="/debug/pprof/threadcreate"
        ),
    }


_HTTP_KEYS = {
    "basic_auth",
    "authorization",
    "oauth2",
    "bearer_token",
    "bearer_token_file",
    "proxy_url",
    "tls_config",
    "follow_redirects",
}
_SCRAPE_KEYS = {
    "job_name",
    "params",
    "scrape_interval",
    "scrape_timeout",
    "scheme",
    "profiling_config",
    "relabel_configs",
    "static_configs",
}


def _join_dir(directory: str, path: Any) -> Any:
    if isinstance(path, str) and path and not os.path.isabs(path):
        return os.path.join(directory, path)
    return path


@dataclass
class ScrapeConfig:
    """A scraping unit: a job, its targets and the profiles fetched from them."""

    job_name: str = ""
    params: dict[str, list[str]] = field(default_factory=dict)
    scrape_interval: timedelta = timedelta(seconds=10)
    scrape_timeout: timedelta = timedelta(0)
    scheme: str = "http"
    profiling_config: dict[str, PprofProfilingConfig] = field(
        default_factory=_default_pprof_config
    )
    relabel_configs: list[dict[str, Any]] = field(default_factory=list)
    static_configs: list[StaticTargetGroup] = field(default_factory=list)
    http_client_config: dict[str, Any] = field(default_factory=dict)

    def set_directory(self, directory: str) -> None:
        """Join relative file paths of the HTTP client settings with directory."""
        http = self.http_client_config
        if "bearer_token_file" in http:
            http["bearer_token_file"] = _join_dir(directory, http["bearer_token_file"])
        for section, keys in (
            ("basic_auth", ("password_file",)),
            ("authorization", ("credentials_file",)),
            ("tls_config", ("ca_file", "cert_file", "key_file")),
        ):
            sub = http.get(section)
            if isinstance(sub, dict):
                for key in keys:
                    if key in sub:
                        sub[key] = _join_dir(directory, sub[key])

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.job_name:
            out["job_name"] = self.job_name
        if self.params:
            out["params"] = {k: list(v) for k, v in self.params.items()}
        out["scrape_interval"] = _format_duration(self.scrape_interval)
        out["scrape_timeout"] = _format_duration(self.scrape_timeout)
        if self.scheme:
            out["scheme"] = self.scheme
        out["profiling_config"] = {
            "pprof_config": {k: v.as_dict() for k, v in self.profiling_config.items()}
        }
        if self.relabel_configs:
            out["relabel_configs"] = [dict(r) for r in self.relabel_configs]
        if self.static_configs:
            out["static_configs"] = [g.as_dict() for g in self.static_configs]
        out.update(_marshal_secrets(self.http_client_config))
        return out


def _marshal_secrets(value: Any) -> Any:
    if isinstance(value, Secret):
        return value.marshal()
    if isinstance(value, dict):
        return {k: _marshal_secrets(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_marshal_secrets(v) for v in value]
    return value


def _require_mapping(data: Any, allowed: set[str], what: str) -> Mapping:
    if not isinstance(data, Mapping):
        raise ConfigError(f"{what} must be a mapping")
    unknown = sorted(str(key) for key in data if key not in allowed)
    if unknown:
        raise ConfigError(f"field {unknown[0]} not found in {what}")
    return data


def _parse_pprof_entry(data: Any) -> PprofProfilingConfig | None:
    if data is None:
        return None
    raw = _require_mapping(data, {"enabled", "path", "delta"}, "pprof profiling config")
    enabled = raw.get("enabled")
    if enabled is not None and not isinstance(enabled, bool):
        raise ConfigError("enabled must be a boolean")
    delta = raw.get("delta") or False
    if not isinstance(delta, bool):
        raise ConfigError("delta must be a boolean")
    path = raw.get("path")
    return PprofProfilingConfig(enabled=enabled, path="" if path is None else str(path), delta=delta)


def _parse_profiling(data: Any) -> dict[str, PprofProfilingConfig | None]:
    raw = _require_mapping(data, {"pprof_config"}, "profiling config")
    pprof = raw.get("pprof_config") or {}
    if not isinstance(pprof, Mapping):
        raise ConfigError("pprof_config must be a mapping")
    return {str(name): _parse_pprof_entry(entry) for name, entry in pprof.items()}


def _parse_params(data: Any) -> dict[str, list[str]]:
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError("params must be a mapping")
    params = {}
    for key, values in data.items():
        if not isinstance(values, list):
            raise ConfigError(f"params value for {key} must be a list")
        params[str(key)] = [str(v) for v in values]
    return params


def _parse_static_configs(data: Any) -> list[StaticTargetGroup]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise ConfigError("static_configs must be a list")
    groups = []
    for index, entry in enumerate(data):
        raw = _require_mapping(entry or {}, {"targets", "labels"}, "static config")
        targets = raw.get("targets") or []
        if not isinstance(targets, list):
            raise ConfigError("targets must be a list")
        labels = raw.get("labels")
        if labels is not None:
            if not isinstance(labels, Mapping):
                raise ConfigError("labels must be a mapping")
            labels = {str(k): str(v) for k, v in labels.items()}
        groups.append(
            StaticTargetGroup(
                targets=[{ADDRESS_LABEL: str(t)} for t in targets],
                labels=labels,
                source=str(index),
            )
        )
    return groups


_SECRET_PATHS = {("bearer_token",), ("basic_auth", "password"), ("authorization", "credentials")}


def _parse_http_client(raw: Mapping) -> dict[str, Any]:
    http: dict[str, Any] = {}
    for key in _HTTP_KEYS:
        if key not in raw or raw[key] is None:
            continue
        value = raw[key]
        if isinstance(value, Mapping):
            value = {
                str(k): Secret(v) if (key, k) in _SECRET_PATHS and v is not None else v
                for k, v in value.items()
            }
        elif (key,) in _SECRET_PATHS:
            value = Secret(value)
        http[key] = value
    return http


def _validate_http_client(http: Mapping[str, Any]) -> None:
    if http.get("bearer_token") and http.get("bearer_token_file"):
        raise ConfigError("at most one of bearer_token & bearer_token_file must be configured")
    basic = http.get("basic_auth")
    if basic and (http.get("bearer_token") or http.get("bearer_token_file")):
        raise ConfigError(
            "at most one of basic_auth, oauth2, bearer_token & bearer_token_file must be configured"
        )
    if isinstance(basic, Mapping) and basic.get("password") and basic.get("password_file"):
        raise ConfigError("at most one of basic_auth password & password_file must be configured")


def default_scrape_config() -> ScrapeConfig:
    """Return a scrape configuration holding the defaults for every field."""
    return ScrapeConfig()


def check_target_address(address: str) -> None:
    """Raise ConfigError if the target address looks like a URL rather than a host."""
    if "/" in str(address):
        raise ConfigError(f'"{address}" is not a valid hostname')


def parse_scrape_config(data: Any) -> ScrapeConfig:
    """Build and validate a ScrapeConfig from a decoded YAML mapping."""
    raw = _require_mapping(data, _SCRAPE_KEYS | _HTTP_KEYS, "scrape config")
    defaults = default_scrape_config()

    job_name = raw.get("job_name")
    scheme = raw.get("scheme")
    cfg = ScrapeConfig(
        job_name="" if job_name is None else str(job_name),
        params=_parse_params(raw.get("params")),
        scrape_interval=defaults.scrape_interval
        if raw.get("scrape_interval") is None
        else _parse_duration(raw["scrape_interval"]),
        scrape_timeout=defaults.scrape_timeout
        if raw.get("scrape_timeout") is None
        else _parse_duration(raw["scrape_timeout"]),
        scheme=defaults.scheme if scheme is None else str(scheme),
        static_configs=_parse_static_configs(raw.get("static_configs")),
        http_client_config=_parse_http_client(raw),
    )

    raw_profiling = raw.get("profiling_config")
    if raw_profiling is None:
        cfg.profiling_config = defaults.profiling_config
    else:
        profiling = _parse_profiling(raw_profiling)
        for name, default in defaults.profiling_config.items():
            current = profiling.get(name)
            if current is None:
                profiling[name] = default
                continue
            if current.enabled is None:
                current.enabled = True
            if not current.path:
                current.path = default.path
        cfg.profiling_config = {k: v for k, v in profiling.items() if v is not None}

    relabel = raw.get("relabel_configs") or []
    if not isinstance(relabel, list):
        raise ConfigError("relabel_configs must be a list")

    if not cfg.job_name:
        raise ConfigError("job_name is empty")

    _validate_http_client(cfg.http_client_config)

    if not relabel:
        for group in cfg.static_configs:
            for target in group.targets:
                check_target_address(target.get(ADDRESS_LABEL, ""))

    for rule in relabel:
        if rule is None:
            raise ConfigError("empty or null target relabeling rule in scrape config")
        if not isinstance(rule, Mapping):
            raise ConfigError("relabeling rule must be a mapping")
    cfg.relabel_configs = [dict(rule) for rule in relabel]

    if cfg.scrape_timeout > cfg.scrape_interval:
        raise ConfigError(
            f"scrape timeout must be smaller or equal to interval for: {cfg.job_name}"
        )
    if cfg.scrape_timeout == timedelta(0):
        cfg.scrape_timeout = cfg.scrape_interval

    cpu = cfg.profiling_config.get(PPROF_PROCESS_CPU)
    if cpu is not None and cpu.enabled and cfg.scrape_timeout < timedelta(seconds=2):
        raise ConfigError(
            f"{PPROF_PROCESS_CPU} scrape_timeout must be at least 2 seconds in {cfg.job_name}"
        )
    return cfg


@dataclass
class Config:
    """The whole configuration: debug info storage and scrape jobs."""

    debug_info: DebugInfoConfig | None = None
    scrape_configs: list[ScrapeConfig] = field(default_factory=list)

    def validate(self) -> None:
        """Raise ConfigError if the debug info section is missing or invalid."""
        if self.debug_info is None:
            raise ConfigError("debug_info: cannot be blank.")
        try:
            validate_debuginfo_config(self.debug_info)
        except DebugInfoConfigError as err:
            raise ConfigError(f"debug_info: ({err})") from err

    def set_directory(self, directory: str) -> None:
        """Join relative file paths in every scrape config with directory."""
        for scrape_config in self.scrape_configs:
            scrape_config.set_directory(directory)

    def to_yaml(self) -> str:
        data: dict[str, Any] = {
            "debug_info": self.debug_info.as_dict() if self.debug_info is not None else None
        }
        if self.scrape_configs:
            data["scrape_configs"] = [c.as_dict() for c in self.scrape_configs]
        return yaml.safe_dump(data, sort_keys=False)

    def __str__(self) -> str:
        return self.to_yaml()


def load(s: str) -> Config:
    """Parse YAML text into a Config, rejecting unknown fields."""
    try:
        data = yaml.safe_load(s)
    except yaml.YAMLError as err:
        raise ConfigError(str(err)) from err
    if data is None:
        return Config()
    raw = _require_mapping(data, {"debug_info", "scrape_configs"}, "config")

    debug_info = None
    if raw.get("debug_info") is not None:
        try:
            debug_info = parse_debuginfo_config(raw["debug_info"])
        except DebugInfoConfigError as err:
            raise ConfigError(str(err)) from err

    scrape_raw = raw.get("scrape_configs") or []
    if not isinstance(scrape_raw, list):
        raise ConfigError("scrape_configs must be a list")
    return Config(
        debug_info=debug_info,
        scrape_configs=[parse_scrape_config(entry) for entry in scrape_raw],
    )


def load_file(filename: str | os.PathLike) -> Config:
    """Parse a YAML file into a Config, resolving relative paths against its directory."""
    with open(filename, encoding="utf-8") as handle:
        content = handle.read()
    try:
        cfg = load(content)
    except ConfigError as err:
        raise ConfigError(f"parsing YAML file {filename}: {err}") from err
    cfg.set_directory(os.path.dirname(os.fspath(filename)))
    return cfg