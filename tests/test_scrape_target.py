from datetime import datetime, timedelta, timezone

import pytest

from contprof.config import (
    ConfigError,
    PprofProfilingConfig,
    StaticTargetGroup,
    parse_scrape_config,
)
from contprof.scrape_target import (
    PROFILE_NAME,
    PROFILE_PATH,
    Target,
    TargetHealth,
    health_proto,
    labels_by_profiles,
    populate_labels,
    proto_labels_from_labels,
    targets_from_group,
)


def _cfg(**extra):
    data = {"job_name": "job1"}
    data.update(extra)
    return parse_scrape_config(data)


def test_labels_by_profiles_defaults():
    cfg = _cfg()
    sets = labels_by_profiles({"__address__": "localhost:8080"}, cfg.profiling_config)
    assert len(sets) == len(cfg.profiling_config)
    for lset in sets:
        assert lset["__address__"] == "localhost:8080"
        assert cfg.profiling_config[lset[PROFILE_NAME]].path == lset[PROFILE_PATH]


def test_labels_by_profiles_skips_disabled():
    config = {
        "a": PprofProfilingConfig(enabled=True, path="/a"),
        "b": PprofProfilingConfig(enabled=False, path="/b"),
    }
    sets = labels_by_profiles({}, config)
    assert sets == [{PROFILE_PATH: "/a", PROFILE_NAME: "a"}]


def test_populate_adds_http_port_and_defaults():
    res, orig = populate_labels({"__address__": "localhost", "__meta_x": "y"}, _cfg())
    assert res["__address__"] == "localhost:80"
    assert res["instance"] == "localhost:80"
    assert res["job"] == "job1"
    assert res["__scheme__"] == "http"
    assert "__meta_x" not in res
    assert orig["__meta_x"] == "y"


def test_populate_adds_https_port():
    res, _ = populate_labels({"__address__": "example.com"}, _cfg(scheme="https"))
    assert res["__address__"] == "example.com:443"


def test_populate_keeps_existing_port_and_instance():
    res, _ = populate_labels({"__address__": "h:9", "instance": "me"}, _cfg())
    assert res["__address__"] == "h:9"
    assert res["instance"] == "me"


def test_populate_invalid_scheme():
    with pytest.raises(ConfigError, match="invalid scheme"):
        populate_labels({"__address__": "h"}, _cfg(scheme="ftp"))


def test_populate_no_address():
    with pytest.raises(ConfigError, match="no address"):
        populate_labels({"foo": "bar"}, _cfg())


def test_populate_rejects_url_address():
    with pytest.raises(ConfigError, match="is not a valid hostname"):
        populate_labels({"__address__": "http://h:80/x"}, _cfg())


def test_populate_drop_returns_pre_relabel_labels():
    cfg = _cfg(relabel_configs=[{"source_labels": ["env"], "regex": "dev", "action": "drop"}])
    res, orig = populate_labels({"__address__": "h:1", "env": "dev"}, cfg)
    assert res is None
    assert orig["env"] == "dev"
    assert orig["job"] == "job1"


def test_populate_keep_action():
    cfg = _cfg(relabel_configs=[{"source_labels": ["env"], "regex": "prod", "action": "keep"}])
    res, _ = populate_labels({"__address__": "h:1", "env": "prod"}, cfg)
    assert res["env"] == "prod"
    dropped, _ = populate_labels({"__address__": "h:1", "env": "dev"}, cfg)
    assert dropped is None


def test_populate_replace_and_labelmap():
    cfg = _cfg(
        relabel_configs=[
            {"source_labels": ["__meta_zone"], "target_label": "zone"},
            {"regex": "__meta_(team)", "action": "labelmap"},
        ]
    )
    res, _ = populate_labels(
        {"__address__": "h:1", "__meta_zone": "eu", "__meta_team": "core"}, cfg
    )
    assert res["zone"] == "eu"
    assert res["team"] == "core"
    assert not any(name.startswith("__meta_") for name in res)


def test_params_become_labels_and_query():
    cfg = _cfg(params={"debug": ["1"]})
    res, orig = populate_labels({"__address__": "h:1", PROFILE_PATH: "/p"}, cfg)
    assert res["__param_debug"] == "1"
    target = Target(res, orig, cfg.params)
    assert target.url() == "http://h:1/p?debug=1"


def test_target_url_and_public_labels():
    target = Target(
        {
            "__address__": "localhost:8080",
            "__scheme__": "http",
            PROFILE_PATH: "/debug/pprof/heap",
            "job": "j",
        },
        {},
        {},
    )
    assert target.url() == "http://localhost:8080/debug/pprof/heap"
    assert str(target) == target.url()
    assert target.labels() == {"job": "j"}
    assert target.get("__address__") == "localhost:8080"


def test_hash_stable_and_distinct():
    labels = {"__address__": "h:1", "__scheme__": "http", "job": "j"}
    a = Target(labels, {}, {})
    b = Target(dict(labels), {"x": "y"}, {})
    c = Target({**labels, "job": "k"}, {}, {})
    assert a.hash() == b.hash()
    assert a.hash() != c.hash()
    assert 0 <= a.hash() < 2**64


def test_offset_within_interval():
    target = Target({"__address__": "h:1"}, {}, {})
    for interval in (timedelta(seconds=10), 3.5):
        off = target.offset(interval)
        limit = interval if isinstance(interval, timedelta) else timedelta(seconds=interval)
        assert timedelta(0) <= off <= limit
    with pytest.raises(ValueError):
        target.offset(0)


def test_clone_and_copies():
    target = Target({"__address__": "h:1", "a": "b"}, {"d": "e"}, {"p": ["1"]})
    clone = target.clone()
    assert clone.labels() == target.labels()
    assert clone.discovered_labels() == {"d": "e"}
    assert clone.params() == {"p": ["1"]}
    params = target.params()
    params["p"].append("2")
    assert target.params() == {"p": ["1"]}


def test_set_discovered_labels_and_record_scrape():
    target = Target({}, {"a": "1"}, {})
    assert target.health is TargetHealth.UNKNOWN
    target.set_discovered_labels({"b": "2"})
    assert target.discovered_labels() == {"b": "2"}
    when = datetime(2021, 1, 1, tzinfo=timezone.utc)
    err = RuntimeError("boom")
    target.record_scrape(when, timedelta(seconds=1), err)
    assert target.health is TargetHealth.BAD
    assert target.last_error is err
    assert target.last_scrape == when
    target.record_scrape(when, timedelta(seconds=2))
    assert target.health is TargetHealth.GOOD
    assert target.last_error is None
    assert target.last_scrape_duration == timedelta(seconds=2)


def test_targets_from_group_default_profiles():
    cfg = _cfg()
    group = StaticTargetGroup(targets=[{"__address__": "localhost:8080"}], source="0")
    targets = targets_from_group(group, cfg)
    assert len(targets) == len(cfg.profiling_config)
    by_name = {t.get(PROFILE_NAME): t for t in targets}
    assert by_name["memory_total"].url() == "http://localhost:8080/debug/pprof/heap"
    assert "seconds=9" in by_name["process_cpu"].url()
    assert "seconds" not in by_name["memory_total"].url()
    assert cfg.params == {}


def test_targets_from_group_applies_group_labels():
    group = StaticTargetGroup(
        targets=[{"__address__": "h:1", "env": "own"}], labels={"env": "grp", "dc": "x"}
    )
    targets = targets_from_group(group, _cfg())
    assert all(t.labels()["env"] == "own" for t in targets)
    assert all(t.labels()["dc"] == "x" for t in targets)


def test_targets_from_group_error_names_instance():
    group = StaticTargetGroup(targets=[{"foo": "bar"}], source="7")
    with pytest.raises(ConfigError, match="instance 0 in group 7"):
        targets_from_group(group, _cfg())


def test_health_proto():
    assert health_proto(TargetHealth.GOOD) == "HEALTH_GOOD"
    assert health_proto(TargetHealth.BAD) == "HEALTH_BAD"
    assert health_proto(TargetHealth.UNKNOWN) == "HEALTH_UNKNOWN_UNSPECIFIED"
    assert TargetHealth.GOOD.value == "up"
    assert TargetHealth.BAD.value == "down"


def test_proto_labels_from_labels():
    result = proto_labels_from_labels({"a": "1", "b": "2"})
    assert result == {"labels": [{"name": "a", "value": "1"}, {"name": "b", "value": "2"}]}
    assert proto_labels_from_labels({}) == {"labels": []}