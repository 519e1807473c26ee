"""Host facts: path limits, file ownership, signals, DNS and proxy settings."""

from __future__ import annotations

import os
import sys
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Stat:
    """File ownership."""

    uid: int
    gid: int


def unix_path_max() -> int:
    """Return UNIX_PATH_MAX for the host platform."""
    if sys.platform.startswith("linux") or sys.platform == "win32":
        return 108
    return 104


def sys_stat(path: str | os.PathLike) -> Stat:
    """Return the owner and group of a file."""
    if sys.platform == "win32":
        raise OSError("file ownership is not available on Windows")
    st = os.stat(path)
    return Stat(uid=st.st_uid, gid=st.st_gid)


def sys_kill(pid: int, sig: int) -> None:
    """Send a signal to a process."""
    if sys.platform == "win32":
        raise OSError("sending signals is not supported on Windows")
    os.kill(pid, sig)


def proxy_url(proxy: str, port: Any) -> str:
    """Build a proxy URL from a host and an optional port."""
    if "://" not in proxy:
        proxy = "http://" + proxy
    if isinstance(port, (int, float)) and not isinstance(port, bool) and port != 0:
        return f"{proxy}:{port:.0f}"
    if isinstance(port, str) and port:
        return f"{proxy}:{port}"
    return proxy


def _primary_network(network_data: Iterable[Mapping[str, Any]] | None):
    # Networks are listed in service order; the first with an IPv4 address wins.
    for nw in network_data or ():
        if (nw.get("IPv4") or {}).get("Addresses"):
            return nw
    return None


def dns_addresses(network_data: Iterable[Mapping[str, Any]] | None) -> list[str]:
    """Return the DNS servers of the first network service with an IPv4 address."""
    nw = _primary_network(network_data)
    if nw is None:
        return []
    return list((nw.get("DNS") or {}).get("ServerAddresses") or [])


def proxy_settings(network_data: Iterable[Mapping[str, Any]] | None) -> dict[str, str]:
    """Return proxy environment variables of the primary network service."""
    nw = _primary_network(network_data)
    proxies = (nw.get("Proxies") or {}) if nw is not None else {}
    env: dict[str, str] = {}
    # Proxies with a username are skipped: their password lives in a keychain.
    for prefix, variable in (("FTP", "ftp_proxy"), ("HTTP", "http_proxy"), ("HTTPS", "https_proxy")):
        if proxies.get(f"{prefix}Enable") == "yes" and not proxies.get(f"{prefix}User"):
            env[variable] = proxy_url(proxies.get(f"{prefix}Proxy", ""), proxies.get(f"{prefix}Port"))
    return env