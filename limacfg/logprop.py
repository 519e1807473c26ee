"""Re-emitting JSON log lines produced by another process."""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timedelta

TRACE = 5
EPSILON = timedelta(seconds=1)

_LEVELS = {
    "panic": logging.CRITICAL,
    "fatal": logging.CRITICAL,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": TRACE,
}

_FRACTION = re.compile(r"\.(\d+)")


def _parse_time(text: str) -> datetime | None:
    value = text.strip()
    if value[-1:] in ("Z", "z"):
        value = value[:-1] + "+00:00"
    value = _FRACTION.sub(lambda m: "." + (m.group(1) + "000000")[:6], value, count=1)
    when = datetime.fromisoformat(value)
    if when.tzinfo is None:
        raise ValueError(f"time {text!r} has no zone")
    return when


def _decode(line: str) -> tuple[str, str, datetime | None] | None:
    try:
        obj = json.loads(line)
    except ValueError:
        return None
    if not isinstance(obj, dict):
        return None
    level = obj.get("level") or ""
    msg = obj.get("msg") or ""
    raw_time = obj.get("time")
    if not isinstance(level, str) or not isinstance(msg, str):
        return None
    when = None
    if raw_time is not None:
        if not isinstance(raw_time, str):
            return None
        try:
            when = _parse_time(raw_time)
        except ValueError:
            return None
    return level, msg, when


def propagate_json(
    logger: logging.Logger,
    json_line: str | bytes,
    header: str,
    begin: datetime | None = None,
) -> None:
    """Log one JSON log line through logger, prefixed by header.

    Lines older than begin (with one second of slack) are dropped. Panic and
    fatal entries are logged as errors. Lines that are not understood are
    logged as info verbatim.
    """
    line = json_line.decode("utf-8", "replace") if isinstance(json_line, (bytes, bytearray)) else json_line
    if not line.strip():
        return
    entry = _decode(line)
    if entry is None:
        logger.info("%s", header + line)
        return
    level_name, msg, when = entry
    if when is not None and begin is not None:
        if begin.tzinfo is None:
            begin = begin.astimezone()
        if begin > when + EPSILON:
            return
    name = level_name.lower()
    level = _LEVELS.get(name)
    if level is None:
        logger.info("%s", header + line)
        return
    if level == logging.CRITICAL:
        logger.error("%s", header + msg, extra={"level": name})
    else:
        logger.log(level, "%s", header + msg)