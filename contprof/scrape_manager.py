"""The scrape manager: keeps one scrape pool per job in line with discovered targets."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Iterable, Mapping
from enum import Enum
from typing import Any

from .config import ScrapeConfig, StaticTargetGroup
from .scrape_loop import ProfileStore, ScrapePool
from .scrape_target import Target, health_proto, proto_labels_from_labels

_log = logging.getLogger(__name__)

_QUEUE_POLL = 0.1
_TRIGGER_POLL = 0.05


class TargetsState(Enum):
    """Which targets a targets request asks for."""

    ANY_UNSPECIFIED = 0
    ACTIVE = 1
    DROPPED = 2


def _configs_by_job(configs: Iterable[ScrapeConfig]) -> dict[str, ScrapeConfig]:
    return {cfg.job_name: cfg for cfg in configs}


class Manager:
    """Maintains a set of scrape pools and starts or stops them as target groups change."""

    def __init__(self, store: ProfileStore, scrape_configs: Iterable[ScrapeConfig]) -> None:
        self.store = store
        self.scrape_configs: dict[str, ScrapeConfig] = _configs_by_job(scrape_configs or [])
        self.scrape_pools: dict[str, ScrapePool] = {}
        self.target_sets: dict[str, list[StaticTargetGroup]] = {}
        # Seconds between checks for a pending reload.
        self.reload_interval = 5.0
        # Builds the pool for a job; settable so that the loops it runs can be substituted.
        self.new_pool: Callable[[ScrapeConfig, ProfileStore], ScrapePool] = ScrapePool
        self._lock = threading.RLock()
        self._graceful = threading.Event()
        self._trigger = threading.Event()

    def run(self, target_sets_queue: queue.Queue) -> None:
        """Consume target set updates from the queue until stop() is called."""
        threading.Thread(target=self._reloader, daemon=True).start()
        while not self._graceful.is_set():
            try:
                target_sets = target_sets_queue.get(timeout=_QUEUE_POLL)
            except queue.Empty:
                continue
            self.update_target_sets(target_sets)
            self._trigger.set()

    def _reloader(self) -> None:
        while not self._graceful.wait(self.reload_interval):
            while not self._trigger.wait(_TRIGGER_POLL):
                if self._graceful.is_set():
                    return
            self._trigger.clear()
            if self._graceful.is_set():
                return
            self.reload()

    def update_target_sets(self, target_sets: Mapping[str, list[StaticTargetGroup]]) -> None:
        with self._lock:
            self.target_sets = {name: list(groups) for name, groups in target_sets.items()}

    def reload(self) -> None:
        """Create missing pools and sync every pool with its target groups."""
        work: list[tuple[ScrapePool, list[StaticTargetGroup]]] = []
        with self._lock:
            _log.debug("Reloading scrape manager")
            for set_name, groups in self.target_sets.items():
                pool = self.scrape_pools.get(set_name)
                if pool is None:
                    scrape_config = self.scrape_configs.get(set_name)
                    if scrape_config is None:
                        _log.error(
                            "error reloading target set: invalid config id:%s", set_name
                        )
                        return
                    pool = self.new_pool(scrape_config, self.store)
                    self.scrape_pools[set_name] = pool
                work.append((pool, groups))

        # Syncs run in parallel as they take a while and can fall behind under load.
        threads = [
            threading.Thread(target=pool.sync_groups, args=(groups,), daemon=True)
            for pool, groups in work
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    def stop(self) -> None:
        """Stop every scrape pool and end run()."""
        with self._lock:
            for pool in self.scrape_pools.values():
                pool.stop()
            self._graceful.set()

    def targets_all(self) -> dict[str, list[Target]]:
        """Return active and dropped targets grouped by job name."""
        with self._lock:
            return {
                name: pool.active_targets() + pool.dropped_targets()
                for name, pool in self.scrape_pools.items()
            }

    def targets_active(self) -> dict[str, list[Target]]:
        with self._lock:
            return {name: pool.active_targets() for name, pool in self.scrape_pools.items()}

    def targets_dropped(self) -> dict[str, list[Target]]:
        with self._lock:
            return {name: pool.dropped_targets() for name, pool in self.scrape_pools.items()}

    def apply_config(self, configs: Iterable[ScrapeConfig]) -> None:
        """Replace the job configurations, stopping removed pools and reloading changed ones."""
        with self._lock:
            self.scrape_configs = _configs_by_job(configs)
            for name, pool in list(self.scrape_pools.items()):
                cfg = self.scrape_configs.get(name)
                if cfg is None:
                    pool.stop()
                    del self.scrape_pools[name]
                elif pool.config != cfg:
                    pool.reload(cfg)

    def targets(self, state: TargetsState | int | None = None) -> dict[str, Any]:
        """Answer a targets request: the targets in the given state, in wire form."""
        if state is not None and not isinstance(state, TargetsState):
            try:
                state = TargetsState(state)
            except ValueError:
                state = TargetsState.ANY_UNSPECIFIED
        if state is TargetsState.ACTIVE:
            targets = self.targets_active()
        elif state is TargetsState.DROPPED:
            targets = self.targets_dropped()
        else:
            targets = self.targets_all()

        return {
            "targets": {
                job: {"targets": [_target_to_proto(t) for t in job_targets]}
                for job, job_targets in targets.items()
            }
        }


def _target_to_proto(target: Target) -> dict[str, Any]:
    error = target.last_error
    return {
        "discovered_labels": proto_labels_from_labels(target.discovered_labels()),
        "labels": proto_labels_from_labels(target.labels()),
        "last_error": "" if error is None else str(error),
        "last_scrape": target.last_scrape,
        "last_scrape_duration": target.last_scrape_duration.total_seconds(),
        "url": target.url(),
        "health": health_proto(target.health),
    }