"""Scrape targets: label handling, relabeling and the URLs that profiles are fetched from."""

from __future__ import annotations

import hashlib
import re
import threading
import time
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta
from enum import Enum
from typing import Any
from urllib.parse import quote, urlencode

from .config import (
    ADDRESS_LABEL,
    ConfigError,
    PprofProfilingConfig,
    ScrapeConfig,
    StaticTargetGroup,
    check_target_address,
)

PROFILE_PATH = "__profile_path__"
PROFILE_NAME = "__name__"
PROFILE_TRACE_TYPE = "trace"

JOB_LABEL = "job"
INSTANCE_LABEL = "instance"
SCHEME_LABEL = "__scheme__"
RESERVED_LABEL_PREFIX = "__"
META_LABEL_PREFIX = "__meta_"
PARAM_LABEL_PREFIX = "__param_"

HEALTH_PROTO_UNKNOWN = "HEALTH_UNKNOWN_UNSPECIFIED"
HEALTH_PROTO_GOOD = "HEALTH_GOOD"
HEALTH_PROTO_BAD = "HEALTH_BAD"

Labels = dict[str, str]

_FNV_OFFSET = 0xCBF29CE484222325
_FNV_PRIME = 0x100000001B3
_MASK64 = (1 << 64) - 1
_LABEL_NAME_RE = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")
_EXPAND_RE = re.compile(r"\$(\$|\{(\w+)\}|(\w+))")


class TargetHealth(str, Enum):
    """Health of a target as seen by its last scrape."""

    UNKNOWN = "unknown"
    GOOD = "up"
    BAD = "down"


def _fnv64a(data: bytes, seed: int = _FNV_OFFSET) -> int:
    h = seed
    for byte in data:
        h ^= byte
        h = (h * _FNV_PRIME) & _MASK64
    return h


def _sorted_labels(labels: Mapping[str, str]) -> Labels:
    return {name: labels[name] for name in sorted(labels)}


def _labels_hash(labels: Mapping[str, str]) -> int:
    h = _FNV_OFFSET
    for name, value in sorted(labels.items()):
        h = _fnv64a(name.encode() + b"\xff" + value.encode() + b"\xff", h)
    return h


def _interval_ns(interval: float | timedelta) -> int:
    if isinstance(interval, timedelta):
        return interval // timedelta(microseconds=1) * 1000
    return int(float(interval) * 1_000_000_000)


class Target:
    """A single HTTP or HTTPS endpoint that profiles are scraped from."""

    def __init__(
        self,
        labels: Mapping[str, str] | None,
        discovered_labels: Mapping[str, str] | None,
        params: Mapping[str, Iterable[str]] | None,
    ) -> None:
        self._labels: Labels = _sorted_labels(labels or {})
        self._discovered: Labels = dict(discovered_labels or {})
        self._params: dict[str, list[str]] = {k: list(v) for k, v in (params or {}).items()}
        self._lock = threading.RLock()
        self._last_error: BaseException | None = None
        self._last_scrape: datetime | None = None
        self._last_scrape_duration = timedelta(0)
        self._health = TargetHealth.UNKNOWN

    def __str__(self) -> str:
        return self.url()

    def __repr__(self) -> str:
        return f"Target({self.url()!r})"

    def __lt__(self, other: Target) -> bool:
        return self.url() < other.url()

    def get(self, name: str) -> str:
        """Return the value of any label of the target, reserved ones included, or ''."""
        return self._labels.get(name, "")

    def url(self) -> str:
        """Return the URL the target is scraped from."""
        params = {k: list(v) for k, v in self._params.items()}
        for name, value in self._labels.items():
            if not name.startswith(PARAM_LABEL_PREFIX):
                continue
            key = name[len(PARAM_LABEL_PREFIX):]
            if params.get(key):
                params[key][0] = value
            else:
                params[key] = [value]

        scheme = self.get(SCHEME_LABEL)
        host = self.get(ADDRESS_LABEL)
        path = self.get(PROFILE_PATH)
        query = urlencode(
            [(key, value) for key in sorted(params) for value in params[key]]
        )

        out = ""
        if scheme:
            out += scheme + ":"
        if scheme or host:
            out += "//" + host
        if path:
            if host and not path.startswith("/"):
                out += "/"
            out += quote(path, safe="/:@!$&'()*+,;=-._~")
        if query:
            out += "?" + query
        return out

    def hash(self) -> int:
        """Return a 64-bit hash identifying the target by its labels and URL."""
        h = _fnv64a(f"{_labels_hash(self._labels):016d}".encode())
        return _fnv64a(self.url().encode(), h)

    def offset(self, interval: float | timedelta) -> timedelta:
        """Return the time until the target's next slot in the scrape cycle."""
        interval_ns = _interval_ns(interval)
        if interval_ns <= 0:
            raise ValueError("interval must be positive")
        base = time.time_ns() % interval_ns
        nxt = base + self.hash() % interval_ns
        if nxt > interval_ns:
            nxt -= interval_ns
        return timedelta(microseconds=nxt / 1000)

    def params(self) -> dict[str, list[str]]:
        """Return a copy of the target's URL parameters."""
        return {k: list(v) for k, v in self._params.items()}

    def labels(self) -> Labels:
        """Return a copy of the public labels: those without the reserved prefix."""
        return {k: v for k, v in self._labels.items() if not k.startswith(RESERVED_LABEL_PREFIX)}

    def discovered_labels(self) -> Labels:
        """Return a copy of the labels the target had before any processing."""
        with self._lock:
            return dict(self._discovered)

    def set_discovered_labels(self, labels: Mapping[str, str]) -> None:
        with self._lock:
            self._discovered = dict(labels)

    def clone(self) -> Target:
        return Target(self.labels(), self.discovered_labels(), self.params())

    def record_scrape(
        self, when: datetime, duration: timedelta, error: BaseException | None = None
    ) -> None:
        """Store the outcome of a scrape; an error marks the target unhealthy."""
        with self._lock:
            self._last_scrape = when
            self._last_scrape_duration = duration
            self._last_error = error
            self._health = TargetHealth.GOOD if error is None else TargetHealth.BAD

    @property
    def last_error(self) -> BaseException | None:
        with self._lock:
            return self._last_error

    @property
    def last_scrape(self) -> datetime | None:
        with self._lock:
            return self._last_scrape

    @property
    def last_scrape_duration(self) -> timedelta:
        with self._lock:
            return self._last_scrape_duration

    @property
    def health(self) -> TargetHealth:
        with self._lock:
            return self._health


def labels_by_profiles(
    lset: Mapping[str, str], profiling_config: Mapping[str, PprofProfilingConfig] | None
) -> list[Labels]:
    """Return one label set per enabled profile type, carrying its path and name."""
    result = []
    for profile_type, cfg in (profiling_config or {}).items():
        if cfg is not None and cfg.enabled:
            labels = dict(lset)
            labels[PROFILE_PATH] = cfg.path
            labels[PROFILE_NAME] = profile_type
            result.append(labels)
    return result


def _expand(template: str, match: re.Match) -> str:
    def substitute(found: re.Match) -> str:
        if found.group(1) == "$":
            return "$"
        name = found.group(2) or found.group(3)
        if name.isdigit():
            index = int(name)
            return (match.group(index) or "") if index <= match.re.groups else ""
        try:
            return match.group(name) or ""
        except IndexError:
            return ""

    return _EXPAND_RE.sub(substitute, template)


def _relabel_one(labels: Labels, rule: Mapping[str, Any]) -> Labels | None:
    action = str(rule.get("action") or "replace").lower()
    regex = re.compile(str(rule.get("regex", "(.*)")))
    separator = str(rule.get("separator", ";"))
    replacement = str(rule.get("replacement", "$1"))
    target_label = str(rule.get("target_label") or "")
    sources = rule.get("source_labels") or []
    value = separator.join(labels.get(str(name), "") for name in sources)

    if action == "drop":
        return None if regex.fullmatch(value) else labels
    if action == "keep":
        return labels if regex.fullmatch(value) else None
    if action == "replace":
        match = regex.fullmatch(value)
        if match is None:
            return labels
        target = _expand(target_label, match)
        result = _expand(replacement, match)
        if not _LABEL_NAME_RE.fullmatch(target):
            return labels
        if result == "":
            labels.pop(target, None)
        else:
            labels[target] = result
        return labels
    if action == "hashmod":
        modulus = int(rule.get("modulus") or 0)
        if modulus <= 0:
            raise ConfigError("relabel configuration for hashmod requires non-zero modulus")
        digest = hashlib.md5(value.encode()).digest()
        labels[target_label] = str(int.from_bytes(digest[8:], "big") % modulus)
        return labels
    if action == "labelmap":
        for name, label_value in list(labels.items()):
            match = regex.fullmatch(name)
            if match is not None:
                labels[_expand(replacement, match)] = label_value
        return labels
    if action == "labeldrop":
        return {k: v for k, v in labels.items() if not regex.fullmatch(k)}
    if action == "labelkeep":
        return {k: v for k, v in labels.items() if regex.fullmatch(k)}
    raise ConfigError(f"unknown relabel action {action!r}")


def _relabel(labels: Mapping[str, str], rules: Iterable[Mapping[str, Any]]) -> Labels | None:
    current: Labels | None = dict(labels)
    for rule in rules:
        current = _relabel_one(current, rule)
        if current is None:
            return None
    return _sorted_labels(current)


def _can_split_host_port(hostport: str) -> bool:
    last = hostport.rfind(":")
    if last < 0:
        return False
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0 or end + 1 == len(hostport) or hostport[end + 1] != ":":
            return False
        if end + 1 != last:
            return False
        rest_start = end + 1
    else:
        host = hostport[:last]
        if ":" in host or "[" in host or "]" in host:
            return False
        rest_start = last
    rest = hostport[rest_start:]
    return "[" not in rest and "]" not in rest


def _needs_port(address: str) -> bool:
    if _can_split_host_port(address):
        return False
    return _can_split_host_port(address + ":1234")


def populate_labels(
    lset: Mapping[str, str], cfg: ScrapeConfig
) -> tuple[Labels | None, Labels | None]:
    """Build a target's labels from discovered labels and the scrape configuration.

    Returns the final labels and the labels after relabeling. A target dropped by
    relabeling comes back as (None, labels before relabeling).
    """
    builder = dict(lset)
    for name, value in ((JOB_LABEL, cfg.job_name), (SCHEME_LABEL, cfg.scheme)):
        if not lset.get(name, ""):
            builder[name] = value
    for key, values in cfg.params.items():
        if values:
            builder[PARAM_LABEL_PREFIX + key] = values[0]

    pre_relabel = _sorted_labels(builder)
    relabeled = _relabel(pre_relabel, cfg.relabel_configs)
    if relabeled is None:
        return None, pre_relabel
    if not relabeled.get(ADDRESS_LABEL, ""):
        raise ConfigError("no address")

    builder = dict(relabeled)
    address = relabeled[ADDRESS_LABEL]
    if _needs_port(address):
        scheme = relabeled.get(SCHEME_LABEL, "")
        if scheme in ("http", ""):
            address += ":80"
        elif scheme == "https":
            address += ":443"
        else:
            raise ConfigError(f'invalid scheme: "{cfg.scheme}"')
        builder[ADDRESS_LABEL] = address

    check_target_address(address)

    for name in relabeled:
        if name.startswith(META_LABEL_PREFIX):
            builder.pop(name, None)
    if not relabeled.get(INSTANCE_LABEL, ""):
        builder[INSTANCE_LABEL] = address

    result = _sorted_labels(builder)
    for name, value in result.items():
        try:
            value.encode("utf-8")
        except UnicodeEncodeError:
            raise ConfigError(f'invalid label value for "{name}": {value!r}') from None
    return result, relabeled


def targets_from_group(group: StaticTargetGroup, cfg: ScrapeConfig) -> list[Target]:
    """Build one target per address in the group and enabled profile type."""
    targets = []
    group_labels = group.labels or {}
    for index, target_labels in enumerate(group.targets):
        lset = dict(target_labels)
        for name, value in group_labels.items():
            lset.setdefault(name, value)
        lset = _sorted_labels(lset)

        for profile_labels in labels_by_profiles(lset, cfg.profiling_config):
            profile_type = profile_labels.get(PROFILE_NAME, "")
            try:
                labels, orig = populate_labels(profile_labels, cfg)
            except ConfigError as err:
                raise ConfigError(f"instance {index} in group {group.source}: {err}") from err
            if labels is None and orig is None:
                continue
            params = {k: list(v) for k, v in cfg.params.items()}
            pcfg = cfg.profiling_config.get(profile_type)
            if pcfg is not None and pcfg.delta:
                seconds = cfg.scrape_timeout // timedelta(seconds=1) - 1
                params.setdefault("seconds", []).append(str(seconds))
            targets.append(Target(labels, orig, params))
    return targets


def health_proto(health: TargetHealth | str) -> str:
    """Map a target health to the name of its protocol enum value."""
    if health == TargetHealth.GOOD:
        return HEALTH_PROTO_GOOD
    if health == TargetHealth.BAD:
        return HEALTH_PROTO_BAD
    return HEALTH_PROTO_UNKNOWN


def proto_labels_from_labels(labels: Mapping[str, str]) -> dict[str, list[dict[str, str]]]:
    """Convert labels into the wire form of a label set."""
    return {"labels": [{"name": name, "value": value} for name, value in labels.items()]}