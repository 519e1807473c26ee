"""A stable identifier of the host machine."""

from __future__ import annotations

import functools
import logging
import re
import socket
import subprocess
import sys
import xml.etree.ElementTree as ET

log = logging.getLogger(__name__)

_CANDIDATES = (
    "/etc/machine-id",
    "/var/lib/dbus/machine-id",
)


@functools.cache
def machine_id() -> str:
    """Return the host machine ID, falling back to the host name."""
    try:
        found = _read_machine_id()
    except (OSError, ValueError, subprocess.CalledProcessError) as exc:
        log.debug("failed to get machine ID, falling back to use hostname instead: %s", exc)
        found = ""
    if found:
        return found
    return socket.gethostname()


def _read_machine_id() -> str:
    if sys.platform == "darwin":
        result = subprocess.run(
            ["/usr/sbin/ioreg", "-a", "-d2", "-c", "IOPlatformExpertDevice"],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            check=True,
        )
        return parse_io_platform_uuid(result.stdout)
    for candidate in _CANDIDATES:
        try:
            with open(candidate, encoding="utf-8") as fh:
                return fh.read().strip()
        except OSError:
            continue
    raise FileNotFoundError(f"no machine-id found, tried {list(_CANDIDATES)}")


def parse_io_platform_uuid(data: str | bytes) -> str:
    """Extract IOPlatformUUID from the plist XML printed by ioreg."""
    data = data.lstrip()
    try:
        root = ET.fromstring(data)
    except ET.ParseError as exc:
        raise ValueError(f"invalid ioreg output: {exc}") from exc
    key = None
    for elem in root.iter():
        tag = re.sub(r"^\{.*\}", "", elem.tag)
        if tag == "key":
            key = elem.text or ""
            continue
        if tag == "string" and key == "IOPlatformUUID" and elem.text:
            return elem.text
        key = None
    raise ValueError("IOPlatformUUID not found in ioreg output")