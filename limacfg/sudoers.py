"""The sudoers snippet that lets users manage network daemons."""

from __future__ import annotations

import json
import logging
import subprocess
import sys

from limacfg.networks import (
    SOCKET_VMNET,
    VDE_SWITCH,
    VDE_VMNET,
    NetworksConfig,
    NetworksError,
)

log = logging.getLogger(__name__)

_DAEMONS = (VDE_SWITCH, VDE_VMNET, SOCKET_VMNET)


def _installed_daemons(config: NetworksConfig):
    for daemon in _DAEMONS:
        if config.is_daemon_installed(daemon):
            yield daemon


def sudoers(config: NetworksConfig) -> str:
    """Return the sudoers rules for the configured networks."""
    # Commands in sudoers cannot use quotes, so arguments are never quoted.
    lines = [f"%{config.group} ALL=(root:wheel) NOPASSWD:NOSETENV: {config.mkdir_cmd()}\n"]
    # Stable order, so that an existing file can be compared.
    for name in sorted(config.networks):
        lines.append("\n")
        lines.append(f"# Manage {json.dumps(name)} network daemons\n")
        for daemon in _installed_daemons(config):
            account = config.user(daemon)
            lines.append("\n")
            lines.append(
                f"%{config.group} ALL=({account.user}:{account.group}) NOPASSWD:NOSETENV: \\\n"
            )
            lines.append(f"    {config.start_cmd(name, daemon)}, \\\n")
            lines.append(f"    {config.stop_cmd(name, daemon)}\n")
    return "".join(lines)


def _run(args: list[str]) -> None:
    try:
        subprocess.run(args, check=True, capture_output=True)
    except (OSError, subprocess.CalledProcessError) as exc:
        raise NetworksError(f"failed to run [{' '.join(args)}]: {exc}") from exc


def _password_less_sudo(config: NetworksConfig) -> None:
    # Flush any cached sudo password first.
    _run(["sudo", "-k"])
    for daemon in _installed_daemons(config):
        account = config.user(daemon)
        _run(
            ["sudo", "--user", account.user, "--group", account.group, "--non-interactive", "true"]
        )


def verify_sudo_access(config: NetworksConfig, sudoers_file: str) -> None:
    """Check that the network daemons can be managed through sudo.

    With no sudoers file, sudo must work without a password. Otherwise the file
    must match the rules generated from config.
    """
    if not sudoers_file:
        try:
            _password_less_sudo(config)
        except NetworksError as exc:
            raise NetworksError(f"passwordLessSudo error: {exc}") from exc
        log.debug("sudo doesn't seem to require a password")
        return
    hint = (
        f"run `{sys.argv[0]} sudoers >etc_sudoers.d_lima && "
        f"sudo install -o root etc_sudoers.d_lima {json.dumps(sudoers_file)}`)"
    )
    try:
        with open(sudoers_file, encoding="utf-8") as fh:
            content = fh.read()
    except FileNotFoundError as exc:
        # A missing file is fine as long as password-less sudo works.
        try:
            _password_less_sudo(config)
        except NetworksError as sudo_exc:
            log.debug("%r does not exist; passwordLessSudo error: %s", sudoers_file, sudo_exc)
            raise NetworksError(
                f"can't read {sudoers_file!r}: {exc} (Hint: {hint})"
            ) from exc
        log.debug("%r does not exist, but sudo doesn't seem to require a password", sudoers_file)
        return
    except OSError as exc:
        raise NetworksError(f"can't read {sudoers_file!r}: {exc} (Hint: {hint})") from exc
    if content != sudoers(config):
        raise NetworksError(
            f"sudoers file {sudoers_file!r} is out of sync and must be regenerated (Hint: {hint})"
        )