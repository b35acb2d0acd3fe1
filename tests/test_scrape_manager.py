import queue
import threading
import time

from contprof.config import default_scrape_config, parse_scrape_config
from contprof.config import StaticTargetGroup
from contprof.scrape_loop import ScrapePool
from contprof.scrape_manager import Manager, TargetsState
from contprof.scrape_target import HEALTH_PROTO_UNKNOWN

PROFILE_TYPES = len(default_scrape_config().profiling_config)


class FakeLoop:
    def __init__(self):
        self.stopped = threading.Event()

    def run(self, interval, timeout, errors):
        self.stopped.wait()

    def stop(self):
        self.stopped.set()


class FakeStore:
    def __init__(self):
        self.requests = []

    def write_raw(self, request):
        self.requests.append(request)


def make_manager(configs):
    loops = []

    def factory(config, store):
        pool = ScrapePool(config, store)

        def new_loop(target, scraper):
            loop = FakeLoop()
            loops.append(loop)
            return loop

        pool.new_loop = new_loop
        return pool

    manager = Manager(FakeStore(), configs)
    manager.new_pool = factory
    return manager, loops


def job(name="job1", **extra):
    data = {"job_name": name}
    data.update(extra)
    return parse_scrape_config(data)


def group(address="localhost:8080"):
    return StaticTargetGroup(targets=[{"__address__": address}], source="0")


def test_reload_creates_pool_with_targets_per_profile():
    manager, loops = make_manager([job()])
    manager.update_target_sets({"job1": [group()]})
    manager.reload()
    active = manager.targets_active()
    assert list(active) == ["job1"]
    assert len(active["job1"]) == PROFILE_TYPES
    assert len(loops) == PROFILE_TYPES
    manager.stop()
    assert all(loop.stopped.is_set() for loop in loops)


def test_targets_all_is_active_plus_dropped():
    manager, _ = make_manager([job()])
    manager.update_target_sets({"job1": [group()]})
    manager.reload()
    all_targets = manager.targets_all()["job1"]
    expected = manager.targets_active()["job1"] + manager.targets_dropped()["job1"]
    assert sorted(t.url() for t in all_targets) == sorted(t.url() for t in expected)
    manager.stop()


def test_dropped_targets_from_relabeling():
    cfg = job(
        relabel_configs=[
            {"action": "drop", "source_labels": ["__address__"], "regex": "localhost:8080"}
        ]
    )
    manager, loops = make_manager([cfg])
    manager.update_target_sets({"job1": [group()]})
    manager.reload()
    assert manager.targets_active()["job1"] == []
    assert len(manager.targets_dropped()["job1"]) == PROFILE_TYPES
    assert loops == []
    manager.stop()


def test_reload_with_unknown_job_creates_no_pool():
    manager, _ = make_manager([job()])
    manager.update_target_sets({"other": [group()]})
    manager.reload()
    assert manager.targets_all() == {}


def test_apply_config_removes_pools():
    manager, loops = make_manager([job()])
    manager.update_target_sets({"job1": [group()]})
    manager.reload()
    manager.apply_config([])
    assert manager.targets_all() == {}
    assert all(loop.stopped.is_set() for loop in loops)


def test_apply_config_reloads_changed_pool():
    manager, loops = make_manager([job()])
    manager.update_target_sets({"job1": [group()]})
    manager.reload()
    first_loops = list(loops)
    changed = job(scrape_interval="20s")
    manager.apply_config([changed])
    assert manager.scrape_pools["job1"].config == changed
    assert all(loop.stopped.is_set() for loop in first_loops)
    assert len(loops) == 2 * PROFILE_TYPES
    manager.stop()


def test_targets_response_shape():
    manager, _ = make_manager([job()])
    manager.update_target_sets({"job1": [group()]})
    manager.reload()
    response = manager.targets(TargetsState.ACTIVE)
    entries = response["targets"]["job1"]["targets"]
    urls = sorted(t.url() for t in manager.targets_active()["job1"])
    assert sorted(e["url"] for e in entries) == urls
    assert all(e["health"] == HEALTH_PROTO_UNKNOWN for e in entries)
    assert all(e["last_error"] == "" for e in entries)
    dropped = manager.targets(TargetsState.DROPPED)
    assert dropped["targets"]["job1"]["targets"] == []
    manager.stop()


def test_run_consumes_queue_until_stopped():
    manager, _ = make_manager([job()])
    manager.reload_interval = 0.01
    updates = queue.Queue()
    thread = threading.Thread(target=manager.run, args=(updates,), daemon=True)
    thread.start()
    updates.put({"job1": [group()]})
    deadline = time.monotonic() + 5
    while not manager.targets_active().get("job1") and time.monotonic() < deadline:
        time.sleep(0.01)
    assert len(manager.targets_active()["job1"]) == PROFILE_TYPES
    manager.stop()
    thread.join(timeout=5)
    assert not thread.is_alive()