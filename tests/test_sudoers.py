import subprocess
from unittest import mock

import pytest

from limacfg.networks import SOCKET_VMNET, NetworksConfig, NetworksError
from limacfg.sudoers import sudoers, verify_sudo_access
from limacfg.users import lookup_user

VAR_RUN = "/private/var/run/lima"


def _yaml(socket_vmnet=""):
    return f"""
paths:
  socketVMNet: "{socket_vmnet}"
  varRun: {VAR_RUN}
group: everyone
networks:
  shared:
    mode: shared
    gateway: 192.168.105.1
    dhcpEnd: 192.168.105.254
    netmask: 255.255.255.0
  bridged:
    mode: bridged
    interface: en0
"""


@pytest.fixture
def bare_config():
    return NetworksConfig.from_yaml(_yaml())


@pytest.fixture
def socket_config(tmp_path):
    exe = tmp_path / "socket_vmnet"
    exe.write_text("#!/bin/sh\n")
    exe.chmod(0o755)
    return NetworksConfig.from_yaml(_yaml(str(exe)))


def test_sudoers_without_daemons(bare_config):
    text = sudoers(bare_config)
    assert text.startswith(
        "%everyone ALL=(root:wheel) NOPASSWD:NOSETENV: /bin/mkdir -m 775 -p /private/var/run/lima\n"
    )
    assert text.index('# Manage "bridged" network daemons') < text.index(
        '# Manage "shared" network daemons'
    )
    assert "pkill" not in text


def test_sudoers_with_socket_vmnet(socket_config):
    text = sudoers(socket_config)
    root = lookup_user("root")
    rule = f"%everyone ALL=({root.user}:{root.group}) NOPASSWD:NOSETENV: \\\n"
    assert text.count(rule) == 2
    assert f"    {socket_config.start_cmd('shared', SOCKET_VMNET)}, \\\n" in text
    assert f"    {socket_config.stop_cmd('shared', SOCKET_VMNET)}\n" in text


def test_sudoers_is_stable(socket_config):
    text = sudoers(socket_config)
    # Networks are sorted by name, so "shared" always comes last.
    assert text.endswith(f"    {socket_config.stop_cmd('shared', SOCKET_VMNET)}\n")
    assert text == sudoers(socket_config)


def test_verify_matching_and_out_of_sync(bare_config, tmp_path):
    path = tmp_path / "lima"
    path.write_text(sudoers(bare_config))
    assert verify_sudo_access(bare_config, str(path)) is None
    path.write_text("stale\n")
    with pytest.raises(NetworksError, match="out of sync"):
        verify_sudo_access(bare_config, str(path))


@mock.patch("limacfg.sudoers.subprocess.run")
def test_verify_missing_file_password_less(run, bare_config, tmp_path):
    result = verify_sudo_access(bare_config, str(tmp_path / "absent"))
    assert result is None
    assert run.call_count == 1
    assert run.call_args_list[0].args[0] == ["sudo", "-k"]


@mock.patch("limacfg.sudoers.subprocess.run")
def test_verify_missing_file_sudo_fails(run, bare_config, tmp_path):
    run.side_effect = subprocess.CalledProcessError(1, ["sudo", "-k"])
    with pytest.raises(NetworksError, match="can't read"):
        verify_sudo_access(bare_config, str(tmp_path / "absent"))


@mock.patch("limacfg.sudoers.subprocess.run")
def test_verify_without_file_checks_each_daemon(run, socket_config):
    verify_sudo_access(socket_config, "")
    root = lookup_user("root")
    commands = [c.args[0] for c in run.call_args_list]
    assert commands == [
        ["sudo", "-k"],
        ["sudo", "--user", root.user, "--group", root.group, "--non-interactive", "true"],
    ]


@mock.patch("limacfg.sudoers.subprocess.run")
def test_verify_without_file_sudo_fails(run, bare_config):
    run.side_effect = OSError("no sudo")
    with pytest.raises(NetworksError, match="passwordLessSudo error"):
        verify_sudo_access(bare_config, "")