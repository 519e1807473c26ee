import os
import signal
import subprocess
import sys

import pytest

from limacfg.hostinfo import (
    Stat,
    dns_addresses,
    proxy_settings,
    proxy_url,
    sys_kill,
    sys_stat,
    unix_path_max,
)

HOST = "proxy.example.com"


def _network(addresses, dns=(), proxies=None):
    return {
        "IPv4": {"Addresses": list(addresses)},
        "DNS": {"ServerAddresses": list(dns)},
        "Proxies": proxies or {},
    }


def test_unix_path_max_is_known_value():
    assert unix_path_max() in (104, 108)


def test_sys_stat_matches_current_user(tmp_path):
    target = tmp_path / "f"
    target.write_text("x")
    assert sys_stat(target) == Stat(uid=os.getuid(), gid=os.getgid())


def test_sys_stat_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        sys_stat(tmp_path / "missing")


def test_sys_kill_terminates_process():
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
    sys_kill(proc.pid, signal.SIGTERM)
    assert proc.wait(timeout=10) == -signal.SIGTERM


def test_proxy_url_adds_scheme():
    assert proxy_url(HOST, None) == "http://" + HOST


def test_proxy_url_keeps_scheme():
    url = "socks5://" + HOST
    assert proxy_url(url, "") == url


def test_proxy_url_numeric_port():
    port = 8080.0
    assert proxy_url(HOST, port) == f"http://{HOST}:{int(port)}"


def test_proxy_url_string_port():
    port = "3128"
    assert proxy_url(HOST, port) == f"http://{HOST}:{port}"


def test_proxy_url_zero_port_ignored():
    assert proxy_url(HOST, 0) == "http://" + HOST


def test_dns_addresses_first_network_with_ipv4():
    data = [
        _network([], dns=["10.0.0.1"]),
        _network(["192.0.2.10"], dns=["192.0.2.53", "192.0.2.54"]),
        _network(["198.51.100.7"], dns=["198.51.100.53"]),
    ]
    assert dns_addresses(data) == ["192.0.2.53", "192.0.2.54"]


def test_dns_addresses_no_networks():
    assert dns_addresses([]) == []
    assert dns_addresses(None) == []


def test_proxy_settings():
    proxies = {
        "HTTPEnable": "yes",
        "HTTPProxy": HOST,
        "HTTPPort": 8080,
        "HTTPSEnable": "yes",
        "HTTPSProxy": HOST,
        "HTTPSPort": 8443,
        "HTTPSUser": "someone",
        "FTPEnable": "no",
        "FTPProxy": HOST,
    }
    env = proxy_settings([_network(["192.0.2.10"], proxies=proxies)])
    assert env == {"http_proxy": proxy_url(HOST, 8080)}
    assert env["http_proxy"].startswith("http://" + HOST)


def test_proxy_settings_empty():
    assert proxy_settings([]) == {}