import json
import logging

import pytest

from contprof.logger import JsonFormatter, LogfmtFormatter, new_logger


def _record(msg, level=logging.INFO, **extra):
    record = logging.LogRecord("t", level, __file__, 10, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_invalid_level_raises():
    with pytest.raises(ValueError, match="unexpected log level"):
        new_logger("trace", "logfmt", "parca")


def test_logfmt_output_fields(capsys):
    logger = new_logger("debug", "logfmt", "parca")
    logger.debug("hello", extra={"k": "v"})
    line = capsys.readouterr().err.strip()
    keys = [part.split("=", 1)[0] for part in line.split(" ")]
    assert keys == ["level", "name", "ts", "caller", "msg", "k"]
    assert "name=parca" in line.split(" ")
    assert "msg=hello" in line.split(" ")
    assert "k=v" in line.split(" ")
    assert "test_logger.py:" in line


def test_level_filter(capsys):
    logger = new_logger("info", "logfmt", "parca")
    logger.debug("hidden")
    assert capsys.readouterr().err == ""
    logger.info("shown")
    assert "msg=shown" in capsys.readouterr().err


def test_warn_level(capsys):
    logger = new_logger("warn", "json", "")
    logger.info("hidden")
    logger.warning("careful")
    lines = capsys.readouterr().err.strip().splitlines()
    assert len(lines) == 1
    obj = json.loads(lines[0])
    assert obj["level"] == "warn"
    assert obj["msg"] == "careful"
    assert "name" not in obj


def test_json_output(capsys):
    logger = new_logger("error", "json", "parca")
    logger.error("failed", extra={"err": "boom"})
    obj = json.loads(capsys.readouterr().err)
    assert obj["msg"] == "failed"
    assert obj["err"] == "boom"
    assert obj["name"] == "parca"
    assert obj["ts"].endswith("Z")


def test_logfmt_quotes_values_with_spaces():
    out = LogfmtFormatter("").format(_record("a b", path='x="y"'))
    assert 'msg="a b"' in out
    assert json.dumps('x="y"') in out


def test_logfmt_empty_and_none():
    out = LogfmtFormatter("").format(_record("", extra_none=None))
    parts = out.split(" ")
    assert "msg=" in parts
    assert "extra_none=null" in parts


def test_json_formatter_sorted_keys():
    out = JsonFormatter("svc").format(_record("m", zeta=1, alpha=2))
    obj = json.loads(out)
    assert list(obj) == sorted(obj)
    assert obj["zeta"] == 1
    assert obj["alpha"] == 2
    assert obj["name"] == "svc"