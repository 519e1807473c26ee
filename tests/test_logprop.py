import json
import logging
from datetime import datetime, timedelta, timezone

import pytest

from limacfg.logprop import TRACE, propagate_json

LOGGER_NAME = "limacfg.tests.logprop"
HEADER = "[hostagent] "


@pytest.fixture
def logger(caplog):
    caplog.set_level(1, logger=LOGGER_NAME)
    return logging.getLogger(LOGGER_NAME)


def _records(caplog):
    return [r for r in caplog.records if r.name == LOGGER_NAME]


@pytest.mark.parametrize(
    "level,expected",
    [
        ("error", logging.ERROR),
        ("warning", logging.WARNING),
        ("warn", logging.WARNING),
        ("info", logging.INFO),
        ("debug", logging.DEBUG),
        ("trace", TRACE),
    ],
)
def test_levels(logger, caplog, level, expected):
    line = json.dumps({"level": level, "msg": "hello"})
    propagate_json(logger, line, HEADER, None)
    records = _records(caplog)
    assert [r.levelno for r in records] == [expected]
    assert records[0].getMessage() == HEADER + "hello"


@pytest.mark.parametrize("level", ["fatal", "panic"])
def test_fatal_becomes_error(logger, caplog, level):
    propagate_json(logger, json.dumps({"level": level, "msg": "dead"}).encode(), HEADER, None)
    records = _records(caplog)
    assert [r.levelno for r in records] == [logging.ERROR]
    assert records[0].level == level
    assert records[0].getMessage() == HEADER + "dead"


def test_non_json_falls_back_to_info(logger, caplog):
    line = "plain text output"
    propagate_json(logger, line, HEADER, None)
    records = _records(caplog)
    assert [r.levelno for r in records] == [logging.INFO]
    assert records[0].getMessage() == HEADER + line


def test_unknown_level_falls_back(logger, caplog):
    line = json.dumps({"level": "loud", "msg": "x"})
    propagate_json(logger, line, HEADER, None)
    records = _records(caplog)
    assert [r.getMessage() for r in records] == [HEADER + line]


def test_blank_line_ignored(logger, caplog):
    propagate_json(logger, "   \n", HEADER, None)
    assert _records(caplog) == []


def test_stale_line_dropped(logger, caplog):
    when = datetime(2000, 1, 1, tzinfo=timezone.utc)
    line = json.dumps({"level": "info", "msg": "old", "time": when.isoformat()})
    propagate_json(logger, line, HEADER, when + timedelta(seconds=5))
    assert _records(caplog) == []


def test_line_within_epsilon_kept(logger, caplog):
    line = json.dumps({"level": "info", "msg": "fresh", "time": "2000-01-01T00:00:00.123456789Z"})
    begin = datetime(2000, 1, 1, 0, 0, 0, 500000, tzinfo=timezone.utc)
    propagate_json(logger, line, HEADER, begin)
    assert [r.getMessage() for r in _records(caplog)] == [HEADER + "fresh"]


def test_invalid_time_falls_back(logger, caplog):
    line = json.dumps({"level": "info", "msg": "m", "time": "yesterday"})
    propagate_json(logger, line, HEADER, None)
    assert [r.getMessage() for r in _records(caplog)] == [HEADER + line]