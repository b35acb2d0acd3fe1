import threading
from datetime import timedelta

import pytest

from contprof.runutil import repeat


def test_runs_once_when_already_stopped():
    stop = threading.Event()
    stop.set()
    calls = []
    repeat(10, stop, lambda: calls.append(1))
    assert len(calls) == 1


def test_runs_until_stopped():
    stop = threading.Event()
    calls = []

    def work():
        calls.append(1)
        if len(calls) == 3:
            stop.set()

    result = repeat(0.01, stop, work)
    assert result is None
    assert len(calls) == 3
    assert stop.is_set()


def test_accepts_timedelta_interval():
    stop = threading.Event()
    calls = []

    def work():
        calls.append(1)
        if len(calls) == 2:
            stop.set()

    result = repeat(timedelta(milliseconds=5), stop, work)
    assert result is None
    assert len(calls) == 2
    assert stop.is_set()


def test_error_stops_loop_and_propagates():
    stop = threading.Event()
    calls = []

    def work():
        calls.append(1)
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        repeat(0.01, stop, work)
    assert len(calls) == 1


def test_non_positive_interval_rejected():
    with pytest.raises(ValueError):
        repeat(0, threading.Event(), lambda: None)