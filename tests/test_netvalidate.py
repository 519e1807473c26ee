import os
import sys

import pytest

from limacfg.netvalidate import _find_base_directory, validate_networks_config
from limacfg.networks import NetworksConfig, NetworksError, Paths


def _config(**paths):
    return NetworksConfig(paths=Paths(**paths), group="everyone")


def test_relative_path_is_rejected():
    with pytest.raises(NetworksError) as info:
        validate_networks_config(_config(socket_vmnet="opt/socket_vmnet", var_run="/var/run/lima"))
    message = str(info.value)
    assert "`paths.socketVMNet`" in message
    assert "is not an absolute path" in message


def test_whitespace_is_rejected():
    with pytest.raises(NetworksError) as info:
        validate_networks_config(_config(socket_vmnet="/opt/with space/socket_vmnet"))
    assert "contains whitespace" in str(info.value)
    assert "`paths.socketVMNet`" in str(info.value)


def test_symlink_is_rejected(tmp_path):
    target = tmp_path / "real"
    target.write_text("x")
    link = tmp_path / "link"
    os.symlink(target, link)
    with pytest.raises(NetworksError) as info:
        validate_networks_config(_config(vde_switch=str(link)))
    assert "is a symlink" in str(info.value)
    assert "`paths.vdeSwitch`" in str(info.value)


def test_empty_var_run_resolves_to_relative_base():
    with pytest.raises(NetworksError) as info:
        validate_networks_config(_config())
    message = str(info.value)
    assert "`paths.varRun`" in message
    assert "is not an absolute path" in message


def test_missing_daemon_is_skipped(tmp_path):
    missing = str(tmp_path / "nope" / "socket_vmnet")
    with pytest.raises(NetworksError) as info:
        validate_networks_config(_config(socket_vmnet=missing))
    message = str(info.value)
    assert "`paths.varRun`" in message
    assert "socketVMNet" not in message


def test_non_darwin_refuses_existing_path(tmp_path, monkeypatch):
    monkeypatch.setattr(sys, "platform", "linux")
    daemon = tmp_path / "socket_vmnet"
    daemon.write_text("")
    with pytest.raises(NetworksError) as info:
        validate_networks_config(_config(socket_vmnet=str(daemon)))
    assert "must not be called on non-Darwin" in str(info.value)


def test_find_base_directory_strips_missing_parts(tmp_path):
    deep = tmp_path / "a" / "b" / "c"
    assert _find_base_directory(str(deep)) == str(tmp_path)
    assert _find_base_directory(str(tmp_path)) == str(tmp_path)


def test_find_base_directory_of_empty_path():
    assert _find_base_directory("") == "."