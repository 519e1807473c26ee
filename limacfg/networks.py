"""Configuration of the host-side networks (networks.yaml) and daemon commands."""

from __future__ import annotations

import dataclasses
import ipaddress
import os
import shutil
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Union

import yaml

from limacfg.users import User, lookup_group, lookup_user

VDE_SWITCH = "vde_switch"  # deprecated
VDE_VMNET = "vde_vmnet"  # deprecated
SOCKET_VMNET = "socket_vmnet"

MODE_HOST = "host"
MODE_SHARED = "shared"
MODE_BRIDGED = "bridged"

SLIRP_NIC_NAME = "eth0"
# Each QEMU instance has its own independent slirp network, so the CIDR is fixed.
SLIRP_NETWORK = "192.168.5.0/24"
SLIRP_GATEWAY = "192.168.5.2"
SLIRP_DNS = "192.168.5.3"
SLIRP_IP_ADDRESS = "192.168.5.15"

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

# YAML key -> attribute of Paths, in declaration order.
PATH_FIELDS = {
    "socketVMNet": "socket_vmnet",
    "vdeSwitch": "vde_switch",
    "vdeVMNet": "vde_vmnet",
    "varRun": "var_run",
    "sudoers": "sudoers",
}

_NETWORK_FIELDS = {
    "mode": "mode",
    "interface": "interface",
    "gateway": "gateway",
    "dhcpEnd": "dhcp_end",
    "netmask": "netmask",
}
_IP_FIELDS = {"gateway", "dhcp_end", "netmask"}
_TOP_FIELDS = {"paths", "group", "networks"}


class NetworksError(Exception):
    """A problem with the networks configuration or its daemons."""


@dataclass
class Paths:
    """Locations of the network daemons and their runtime files."""

    socket_vmnet: str = ""
    vde_switch: str = ""  # deprecated
    vde_vmnet: str = ""  # deprecated
    var_run: str = ""
    sudoers: str = ""


@dataclass
class NetworkDef:
    """One named network: "host", "shared" or "bridged" mode."""

    mode: str = ""
    interface: str = ""  # only for bridged networks
    gateway: IPAddress | None = None  # only for host and shared networks
    dhcp_end: IPAddress | None = None
    netmask: IPAddress | None = None


def _ip_text(ip: IPAddress | None) -> str:
    return "<nil>" if ip is None else str(ip)


def _check_keys(data: Mapping[str, Any], allowed, where: str) -> None:
    for key in data:
        if key not in allowed:
            raise NetworksError(f"unknown field {key!r} in {where}")


def _as_mapping(value: Any, where: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise NetworksError(f"{where} must be a mapping")
    return value


def _as_string(value: Any, where: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise NetworksError(f"{where} must be a string, got {value!r}")
    return value


def _as_ip(value: Any, where: str) -> IPAddress | None:
    if value is None or value == "":
        return None
    try:
        return ipaddress.ip_address(str(value))
    except ValueError as exc:
        raise NetworksError(f"{where} is not a valid IP address: {value!r}") from exc


@dataclass
class NetworksConfig:
    """The contents of networks.yaml."""

    paths: Paths = field(default_factory=Paths)
    group: str = ""
    networks: dict[str, NetworkDef] = field(default_factory=dict)

    @classmethod
    def from_yaml(cls, text: str | bytes) -> NetworksConfig:
        """Parse networks.yaml text strictly; unknown fields are errors."""
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise NetworksError(f"invalid YAML: {exc}") from exc
        data = _as_mapping(data, "networks.yaml")
        _check_keys(data, _TOP_FIELDS, "networks.yaml")

        raw_paths = _as_mapping(data.get("paths"), "paths")
        _check_keys(raw_paths, PATH_FIELDS, "paths")
        paths = Paths(
            **{
                attr: _as_string(raw_paths.get(key), f"paths.{key}")
                for key, attr in PATH_FIELDS.items()
            }
        )

        networks: dict[str, NetworkDef] = {}
        for name, raw in _as_mapping(data.get("networks"), "networks").items():
            where = f"networks.{name}"
            raw = _as_mapping(raw, where)
            _check_keys(raw, _NETWORK_FIELDS, where)
            values = {}
            for key, attr in _NETWORK_FIELDS.items():
                convert = _as_ip if attr in _IP_FIELDS else _as_string
                values[attr] = convert(raw.get(key), f"{where}.{key}")
            networks[str(name)] = NetworkDef(**values)

        return cls(
            paths=paths,
            group=_as_string(data.get("group"), "group"),
            networks=networks,
        )

    def check(self, name: str) -> None:
        """Raise NetworksError unless the network is defined."""
        if name not in self.networks:
            raise NetworksError(f"network {name!r} is not defined")

    def daemon_path(self, daemon: str) -> str:
        """Return the configured path of a daemon."""
        if daemon == VDE_SWITCH:
            return self.paths.vde_switch
        if daemon == VDE_VMNET:
            return self.paths.vde_vmnet
        if daemon == SOCKET_VMNET:
            return self.paths.socket_vmnet
        raise ValueError(f"unknown daemon type {daemon!r}")

    def is_daemon_installed(self, daemon: str) -> bool:
        """Return whether the daemon's executable can be found."""
        path = self.daemon_path(daemon)
        if not path:
            return False
        if os.sep in path or (os.altsep and os.altsep in path):
            if not os.path.exists(path):
                return False
            if os.path.isfile(path) and os.access(path, os.X_OK):
                return True
            raise PermissionError(f"exec: {path!r}: permission denied")
        return shutil.which(path) is not None

    def _installed(self, daemon: str) -> bool:
        try:
            return self.is_daemon_installed(daemon)
        except (ValueError, OSError):
            return False

    def sock(self, name: str) -> str:
        """Return the socket_vmnet socket of a network."""
        return os.path.join(self.paths.var_run, f"socket_vmnet.{name}")

    def vde_sock(self, name: str) -> str:
        """Return the vde socket of a network (deprecated; use sock)."""
        return os.path.join(self.paths.var_run, f"{name}.ctl")

    def pid_file(self, name: str, daemon: str) -> str:
        """Return the PID file of a network daemon."""
        trimmed = daemon.removeprefix("vde_")
        return os.path.join(self.paths.var_run, f"{name}_{trimmed}.pid")

    def log_file(self, name: str, daemon: str, stream: str, networks_dir: str) -> str:
        """Return the log file of one output stream of a network daemon."""
        trimmed = daemon.removeprefix("vde_")
        return os.path.join(networks_dir, f"{name}_{trimmed}.{stream}.log")

    def user(self, daemon: str) -> User:
        """Return the account a daemon runs as."""
        if not self._installed(daemon):
            try:
                path = self.daemon_path(daemon)
            except ValueError:
                path = ""
            raise NetworksError(f"daemon {daemon!r} (path={path!r}) is not available")
        if daemon == VDE_SWITCH:
            account = lookup_user("daemon")
            group = lookup_group(self.group)
            return dataclasses.replace(account, group=group.name, gid=group.gid)
        if daemon in (VDE_VMNET, SOCKET_VMNET):
            return lookup_user("root")
        raise NetworksError(f"daemon {daemon!r} not defined")

    def mkdir_cmd(self) -> str:
        """Return the command that creates the runtime directory."""
        return f"/bin/mkdir -m 775 -p {self.paths.var_run}"

    def start_cmd(self, name: str, daemon: str) -> str:
        """Return the command line that starts a daemon for a network."""
        if not self._installed(daemon):
            raise RuntimeError(f"daemon {daemon!r} is not available")
        if daemon == VDE_SWITCH:
            return (
                f"{self.paths.vde_switch} --pidfile={self.pid_file(name, VDE_SWITCH)} "
                f"--sock={self.vde_sock(name)} --group={self.group} "
                "--dirmode=0770 --nostdin"
            )
        if daemon == VDE_VMNET:
            prefix = (
                f"{self.paths.vde_vmnet} --pidfile={self.pid_file(name, VDE_VMNET)} "
                f"--vde-group={self.group}"
            )
            return self._vmnet_cmd(prefix, name) + " " + self.vde_sock(name)
        if daemon == SOCKET_VMNET:
            prefix = (
                f"{self.paths.socket_vmnet} --pidfile={self.pid_file(name, SOCKET_VMNET)} "
                f"--socket-group={self.group}"
            )
            return self._vmnet_cmd(prefix, name) + " " + self.sock(name)
        return ""

    def _vmnet_cmd(self, prefix: str, name: str) -> str:
        nw = self.networks.get(name, NetworkDef())
        cmd = f"{prefix} --vmnet-mode={nw.mode}"
        if nw.mode == MODE_BRIDGED:
            cmd += f" --vmnet-interface={nw.interface}"
        elif nw.mode in (MODE_HOST, MODE_SHARED):
            cmd += (
                f" --vmnet-gateway={_ip_text(nw.gateway)}"
                f" --vmnet-dhcp-end={_ip_text(nw.dhcp_end)}"
                f" --vmnet-mask={_ip_text(nw.netmask)}"
            )
        return cmd

    def stop_cmd(self, name: str, daemon: str) -> str:
        """Return the command line that stops a daemon for a network."""
        return f"/usr/bin/pkill -F {self.pid_file(name, daemon)}"


def load_config(path: str | os.PathLike) -> NetworksConfig:
    """Read and parse a networks.yaml file."""
    with open(path, encoding="utf-8") as fh:
        text = fh.read()
    try:
        return NetworksConfig.from_yaml(text)
    except NetworksError as exc:
        raise NetworksError(f"cannot parse {os.fspath(path)!r}: {exc}") from exc