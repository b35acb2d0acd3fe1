"""Scrape loops that periodically fetch profiles from targets, and pools that manage them."""

from __future__ import annotations

import io
import logging
import threading
import time
import urllib.error
import urllib.request
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone
from typing import Any, BinaryIO, Protocol

from .config import ConfigError, ScrapeConfig, StaticTargetGroup
from .scrape_target import (
    PROFILE_NAME,
    PROFILE_TRACE_TYPE,
    Target,
    proto_labels_from_labels,
    targets_from_group,
)

_log = logging.getLogger(__name__)

USER_AGENT = "conprof/dev"


class ScrapeError(Exception):
    """Raised when fetching a profile from a target fails."""


class ProfileStore(Protocol):
    def write_raw(self, request: dict[str, Any]) -> Any: ...


def _seconds(value: float | timedelta | None) -> float:
    if value is None:
        return 0.0
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


class TargetScraper:
    """Fetches profiles over HTTP from a single target."""

    def __init__(self, target: Target, timeout: float | timedelta) -> None:
        self.target = target
        self.timeout = _seconds(timeout)

    def offset(self, interval: float | timedelta) -> timedelta:
        return self.target.offset(interval)

    def scrape(
        self,
        writer: BinaryIO,
        profile_type: str,
        timeout: float | timedelta | None = None,
    ) -> None:
        """Fetch one profile and write its bytes to writer; raise ScrapeError on failure."""
        url = self.target.url()
        seconds = _seconds(timeout) or self.timeout
        request = urllib.request.Request(url, headers={"User-Agent": USER_AGENT}, method="GET")
        _log.debug("scraping profile url=%s", url)
        try:
            with urllib.request.urlopen(request, timeout=seconds if seconds > 0 else None) as resp:
                if resp.status != 200:
                    raise ScrapeError(f"server returned HTTP status {resp.status} {resp.reason}")
                if profile_type == PROFILE_TRACE_TYPE:
                    raise ScrapeError("unimplemented")
                try:
                    body = resp.read()
                except OSError as err:
                    raise ScrapeError(f"failed to read body: {err}") from err
        except urllib.error.HTTPError as err:
            raise ScrapeError(f"server returned HTTP status {err.code} {err.reason}") from err
        except OSError as err:
            raise ScrapeError(str(err)) from err

        writer.write(body)
        if not body:
            raise ScrapeError(f"empty {profile_type} profile from {url}")


class ScrapeLoop:
    """Scrapes one target at a fixed interval and writes the profiles to a store.

    A loop can run and be stopped once; it must not be reused afterwards.
    """

    def __init__(self, target: Target, scraper: Any, store: ProfileStore) -> None:
        self.target = target
        self.scraper = scraper
        self.store = store
        self.last_scrape_size = 0
        self._stop = threading.Event()
        self._stopped = threading.Event()
        self._started = False

    def run(
        self,
        interval: float | timedelta,
        timeout: float | timedelta,
        errors: Any = None,
    ) -> None:
        """Scrape until stopped; errors, if given, receives each failure through put()."""
        self._started = True
        try:
            interval_s = _seconds(interval)
            if interval_s <= 0:
                raise ValueError("non-positive interval for scrape loop")
            timeout_s = _seconds(timeout)
            if self._stop.wait(max(0.0, _seconds(self.scraper.offset(interval)))):
                return

            next_tick = time.monotonic() + interval_s
            while not self._stop.is_set():
                self._scrape_once(timeout_s, errors)
                if self._stop.wait(max(0.0, next_tick - time.monotonic())):
                    break
                now = time.monotonic()
                next_tick += interval_s
                if next_tick < now:
                    next_tick = now + interval_s
        finally:
            self._stopped.set()

    def _scrape_once(self, timeout: float, errors: Any) -> None:
        started_at = datetime.now(timezone.utc)
        start = time.monotonic()
        buffer = io.BytesIO()
        profile_type = self.target.get(PROFILE_NAME)

        try:
            self.scraper.scrape(buffer, profile_type, timeout)
        except Exception as err:
            _log.debug("Scrape failed: %s", err)
            if errors is not None:
                errors.put(err)
            self.target.record_scrape(
                started_at, timedelta(seconds=time.monotonic() - start), err
            )
            return

        data = buffer.getvalue()
        # Empty results from misbehaving clients must not reset the size estimate.
        if data:
            self.last_scrape_size = len(data)

        labels = self.target.labels()
        labels[PROFILE_NAME] = profile_type
        labels = {name: labels[name] for name in sorted(labels)}
        _log.debug("appending new sample labels=%s", labels)

        request = {
            "tenant": "",
            "series": [
                {
                    "labels": proto_labels_from_labels(labels),
                    "samples": [{"raw_profile": data}],
                }
            ],
        }
        try:
            self.store.write_raw(request)
        except Exception as err:
            if errors is not None:
                _log.debug("write failed: %s", err)
                errors.put(err)

        self.target.record_scrape(started_at, timedelta(seconds=time.monotonic() - start))

    def stop(self) -> None:
        """Stop scraping and wait until a running loop has finished."""
        self._stop.set()
        if self._started:
            self._stopped.wait()


def _stop_all(loops: Iterable[Any]) -> None:
    threads = [threading.Thread(target=loop.stop, daemon=True) for loop in loops]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()


class ScrapePool:
    """Manages the scrape loops for the targets of one scrape configuration."""

    def __init__(self, config: ScrapeConfig, store: ProfileStore) -> None:
        self.config = config
        self.store = store
        self._lock = threading.RLock()
        self._active: dict[int, Target] = {}
        self._dropped: list[Target] = []
        self._loops: dict[int, Any] = {}
        # Settable so that tests can substitute their own loops.
        self.new_loop: Callable[[Target, Any], Any] = self._default_new_loop

    def _default_new_loop(self, target: Target, scraper: Any) -> ScrapeLoop:
        return ScrapeLoop(target, scraper, self.store)

    def _start(self, loop: Any) -> None:
        interval = _seconds(self.config.scrape_interval)
        timeout = _seconds(self.config.scrape_timeout)
        threading.Thread(target=loop.run, args=(interval, timeout, None), daemon=True).start()

    def active_targets(self) -> list[Target]:
        with self._lock:
            return list(self._active.values())

    def dropped_targets(self) -> list[Target]:
        with self._lock:
            return list(self._dropped)

    def stop(self) -> None:
        """Stop all scrape loops and return after they have terminated."""
        with self._lock:
            loops = list(self._loops.values())
            self._loops.clear()
            self._active.clear()
            _stop_all(loops)

    def reload(self, config: ScrapeConfig) -> None:
        """Restart every scrape loop with a new configuration, keeping the targets."""
        with self._lock:
            self.config = config
            timeout = _seconds(config.scrape_timeout)
            old_loops = list(self._loops.values())
            new_loops = {}
            for key in self._loops:
                target = self._active[key]
                new_loops[key] = self.new_loop(target, TargetScraper(target, timeout))
            _stop_all(old_loops)
            self._loops = new_loops
            for loop in new_loops.values():
                self._start(loop)

    def sync_groups(self, groups: Iterable[StaticTargetGroup]) -> None:
        """Turn target groups into targets and bring the running loops in line with them."""
        found: list[Target] = []
        with self._lock:
            self._dropped = []
            for group in groups:
                try:
                    targets = targets_from_group(group, self.config)
                except ConfigError as err:
                    _log.error("creating targets failed: %s", err)
                    continue
                for target in targets:
                    if target.labels():
                        found.append(target)
                    elif target.discovered_labels():
                        self._dropped.append(target)
        self._sync(found)

    def _sync(self, targets: list[Target]) -> None:
        with self._lock:
            timeout = _seconds(self.config.scrape_timeout)
            unique: set[int] = set()
            for target in targets:
                key = target.hash()
                unique.add(key)
                existing = self._active.get(key)
                if existing is None:
                    loop = self.new_loop(target, TargetScraper(target, timeout))
                    self._active[key] = target
                    self._loops[key] = loop
                    self._start(loop)
                else:
                    existing.set_discovered_labels(target.discovered_labels())

            gone = [key for key in self._active if key not in unique]
            stale = [self._loops.pop(key) for key in gone]
            for key in gone:
                del self._active[key]
            _stop_all(stale)