"""Filling unset fields of an instance configuration with defaults."""

from __future__ import annotations

import copy
import hashlib
import ipaddress
import logging
import os
import platform
import re
import sys
from collections.abc import Iterable, Mapping
from typing import Any, TypeVar

from limacfg.limayaml import (
    AARCH64,
    PROBE_MODE_READINESS,
    PROVISION_MODE_SYSTEM,
    QEMU,
    REVSSHFS,
    RISCV64,
    TCP,
    VZ,
    X8664,
    CopyToHost,
    File,
    LimaYAML,
    Mount,
    Network,
    PortForward,
)
from limacfg.machineid import machine_id
from limacfg.users import lima_user

log = logging.getLogger(__name__)

T = TypeVar("T")

# "none" supports symlinks.
DEFAULT_9P_SECURITY_MODEL = "none"
DEFAULT_9P_PROTOCOL_VERSION = "9p2000.L"
DEFAULT_9P_MSIZE = "128KiB"
DEFAULT_9P_CACHE_FOR_RO = "fscache"
DEFAULT_9P_CACHE_FOR_RW = "mmap"

# Directory inside an instance directory where relative host sockets live.
SOCKET_DIR = "sock"

IPV4_LOOPBACK1 = ipaddress.ip_address("127.0.0.1")
IPV4_ZERO = ipaddress.ip_address("0.0.0.0")

_NERDCTL_VERSION = "1.3.0"

_GO_ARCH = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "riscv64": "riscv64",
}


class TemplateError(ValueError):
    """A socket or file name template cannot be parsed."""


def default_containerd_archives() -> list[File]:
    """Return the nerdctl-full archives installed by default (no riscv64)."""

    def location(goarch: str) -> str:
        return (
            "https://github.com/containerd/nerdctl/releases/download/"
            f"v{_NERDCTL_VERSION}/nerdctl-full-{_NERDCTL_VERSION}-linux-{goarch}.tar.gz"
        )

    return [
        File(
            location=location("amd64"),
            arch=X8664,
            digest="sha256:ce4615eb027265d2aaa61f185388738096b652541f7fc7c607bc3f829dd5713d",
        ),
        File(
            location=location("arm64"),
            arch=AARCH64,
            digest="sha256:38bf61aa9b9d3982256c09c1a6b6206248e372d6ac3f82e80980687b1c84631c",
        ),
    ]


def mac_address(unique_id: str) -> str:
    """Return a stable, locally administered MAC address for unique_id on this host."""
    digest = hashlib.sha256((machine_id() + unique_id).encode()).digest()
    # 52:55:55 is the Lima prefix; the "2" marks a locally administered address.
    hw = bytes([0x52, 0x55, 0x55]) + digest[:3]
    return ":".join(f"{b:02x}" for b in hw)


def _pick(own: T | None, default: T | None, override: T | None) -> T | None:
    value = default if own is None else own
    return value if override is None else override


def _or(value: T | None, fallback: T) -> T:
    return fallback if value is None else value


def _chain(*seqs: Iterable[T]) -> list[T]:
    return [copy.deepcopy(item) for seq in seqs for item in seq]


def _unique(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


def fill_default(y: LimaYAML, d: LimaYAML, o: LimaYAML, file_path: str | os.PathLike) -> None:
    """Fill unset fields of y from d (or built-in defaults), then apply o on top.

    Maps are merged d, y, o. Lists are concatenated o, y, d, so that earlier
    entries take priority. Mounts and networks are concatenated d, y, o and
    merged on location or interface name; DNS is taken from the highest
    priority source that sets it; CA files and certs are appended uniquely.
    """
    file_path = os.fspath(file_path)

    y.vm_type = resolve_vm_type(_pick(y.vm_type, d.vm_type, o.vm_type))
    y.arch = resolve_arch(_pick(y.arch, d.arch, o.arch))

    y.images = _chain(o.images, y.images, d.images)
    for img in y.images:
        if not img.arch:
            img.arch = y.arch
        if img.kernel is not None and not img.kernel.arch:
            img.kernel.arch = img.arch
        if img.initrd is not None and not img.initrd.arch:
            img.initrd.arch = img.arch

    cpu_type = {AARCH64: "cortex-a72", X8664: "qemu64", RISCV64: "rv64"}
    for arch in cpu_type:
        if is_native_arch(arch) and is_accel_os():
            if has_host_cpu():
                cpu_type[arch] = "host"
            elif has_max_cpu():
                cpu_type[arch] = "max"
    override_cpu_type = False
    for source in (d.cpu_type, y.cpu_type, o.cpu_type):
        for arch, value in source.items():
            if value:
                override_cpu_type = True
                cpu_type[arch] = value
    if y.vm_type == QEMU or override_cpu_type:
        y.cpu_type = cpu_type

    y.cpus = _pick(y.cpus, d.cpus, o.cpus) or 4
    y.memory = _pick(y.memory, d.memory, o.memory) or "4GiB"
    y.disk = _pick(y.disk, d.disk, o.disk) or "100GiB"

    y.additional_disks = _chain(o.additional_disks, y.additional_disks, d.additional_disks)

    display = _pick(y.video.display, d.video.display, o.video.display)
    if not display and y.vm_type == QEMU:
        display = "none"
    y.video.display = display

    vnc = _pick(y.video.vnc.display, d.video.vnc.display, o.video.vnc.display)
    if not vnc and y.vm_type == QEMU:
        vnc = "127.0.0.1:0,to=9"
    y.video.vnc.display = vnc

    y.firmware.legacy_bios = _or(
        _pick(y.firmware.legacy_bios, d.firmware.legacy_bios, o.firmware.legacy_bios), False
    )

    # The SSH port itself is chosen later by the host agent.
    y.ssh.local_port = _or(_pick(y.ssh.local_port, d.ssh.local_port, o.ssh.local_port), 0)
    y.ssh.load_dot_ssh_pub_keys = _or(
        _pick(y.ssh.load_dot_ssh_pub_keys, d.ssh.load_dot_ssh_pub_keys, o.ssh.load_dot_ssh_pub_keys),
        True,
    )
    y.ssh.forward_agent = _or(
        _pick(y.ssh.forward_agent, d.ssh.forward_agent, o.ssh.forward_agent), False
    )
    y.ssh.forward_x11 = _or(_pick(y.ssh.forward_x11, d.ssh.forward_x11, o.ssh.forward_x11), False)
    y.ssh.forward_x11_trusted = _or(
        _pick(y.ssh.forward_x11_trusted, d.ssh.forward_x11_trusted, o.ssh.forward_x11_trusted),
        False,
    )

    y.host_resolver.hosts = {
        **d.host_resolver.hosts,
        **y.host_resolver.hosts,
        **o.host_resolver.hosts,
    }

    y.provision = _chain(o.provision, y.provision, d.provision)
    for provision in y.provision:
        if not provision.mode:
            provision.mode = PROVISION_MODE_SYSTEM

    y.containerd.system = _or(
        _pick(y.containerd.system, d.containerd.system, o.containerd.system), False
    )
    y.containerd.user = _or(_pick(y.containerd.user, d.containerd.user, o.containerd.user), True)
    y.containerd.archives = _chain(
        o.containerd.archives, y.containerd.archives, d.containerd.archives
    ) or default_containerd_archives()
    for archive in y.containerd.archives:
        if not archive.arch:
            archive.arch = y.arch

    y.probes = _chain(o.probes, y.probes, d.probes)
    for number, probe in enumerate(y.probes, start=1):
        if not probe.mode:
            probe.mode = PROBE_MODE_READINESS
        if not probe.description:
            probe.description = f"user probe {number}/{len(y.probes)}"

    inst_dir = os.path.dirname(file_path)
    y.port_forwards = _chain(o.port_forwards, y.port_forwards, d.port_forwards)
    for rule in y.port_forwards:
        fill_port_forward_defaults(rule, inst_dir)

    y.copy_to_host = _chain(o.copy_to_host, y.copy_to_host, d.copy_to_host)
    for copy_rule in y.copy_to_host:
        fill_copy_to_host_defaults(copy_rule, inst_dir)

    y.host_resolver.enabled = _or(
        _pick(y.host_resolver.enabled, d.host_resolver.enabled, o.host_resolver.enabled), True
    )
    y.host_resolver.ipv6 = _or(
        _pick(y.host_resolver.ipv6, d.host_resolver.ipv6, o.host_resolver.ipv6), False
    )
    y.propagate_proxy_env = _or(
        _pick(y.propagate_proxy_env, d.propagate_proxy_env, o.propagate_proxy_env), True
    )

    y.networks = _merge_networks(_chain(d.networks, y.networks, o.networks))
    for index, nw in enumerate(y.networks):
        if not nw.mac_address:
            # Every interface in every config file gets its own MAC address.
            nw.mac_address = mac_address(f"{file_path}#{index}")
        if not nw.interface:
            nw.interface = f"lima{index}"

    y.mounts = _merge_mounts(_chain(d.mounts, y.mounts, o.mounts))
    for mount in y.mounts:
        _fill_mount_defaults(mount)

    y.mount_type = _pick(y.mount_type, d.mount_type, o.mount_type) or REVSSHFS

    # DNS lists are not combined; the highest priority setting wins.
    dns = y.dns or d.dns
    if o.dns:
        dns = o.dns
    y.dns = list(dns)

    y.env = {**d.env, **y.env, **o.env}

    ca = y.ca_certificates
    ca.remove_defaults = _or(
        _pick(ca.remove_defaults, d.ca_certificates.remove_defaults, o.ca_certificates.remove_defaults),
        False,
    )
    ca.files = _unique([*d.ca_certificates.files, *ca.files, *o.ca_certificates.files])
    ca.certs = _unique([*d.ca_certificates.certs, *ca.certs, *o.ca_certificates.certs])

    y.rosetta.enabled = _or(_pick(y.rosetta.enabled, d.rosetta.enabled, o.rosetta.enabled), False)
    y.rosetta.bin_fmt = _or(_pick(y.rosetta.bin_fmt, d.rosetta.bin_fmt, o.rosetta.bin_fmt), False)


def _merge_networks(candidates: list[Network]) -> list[Network]:
    merged: list[Network] = []
    by_interface: dict[str, Network] = {}
    for nw in candidates:
        target = by_interface.get(nw.interface)
        if target is None:
            # Unnamed networks are never combined.
            if nw.interface:
                by_interface[nw.interface] = nw
            merged.append(nw)
            continue
        if nw.vnl_deprecated:
            target.vnl_deprecated = nw.vnl_deprecated
            target.switch_port_deprecated = nw.switch_port_deprecated
            target.socket = ""
            target.lima = ""
        if nw.socket:
            if nw.vnl_deprecated:
                log.error(
                    "Network %r has both vnl=%r and socket=%r fields; ignoring vnl",
                    nw.interface, nw.vnl_deprecated, nw.socket,
                )
            target.socket = nw.socket
            target.vnl_deprecated = ""
            target.switch_port_deprecated = 0
            target.lima = ""
        if nw.lima:
            if nw.vnl_deprecated:
                log.error(
                    "Network %r has both vnl=%r and lima=%r fields; ignoring vnl",
                    nw.interface, nw.vnl_deprecated, nw.lima,
                )
            if nw.socket:
                log.error(
                    "Network %r has both socket=%r and lima=%r fields; ignoring socket",
                    nw.interface, nw.socket, nw.lima,
                )
            target.lima = nw.lima
            target.socket = ""
            target.vnl_deprecated = ""
            target.switch_port_deprecated = 0
        if nw.mac_address:
            target.mac_address = nw.mac_address
    return merged


def _merge_mounts(candidates: list[Mount]) -> list[Mount]:
    # Only exact location matches are merged; no case folding or symlink resolution.
    merged: list[Mount] = []
    by_location: dict[str, Mount] = {}
    for mount in candidates:
        target = by_location.get(mount.location)
        if target is None:
            by_location[mount.location] = mount
            merged.append(mount)
            continue
        for section in ("sshfs", "nine_p"):
            src, dst = getattr(mount, section), getattr(target, section)
            for name, value in vars(src).items():
                if value is not None:
                    setattr(dst, name, value)
        if mount.writable is not None:
            target.writable = mount.writable
        if mount.mount_point:
            target.mount_point = mount.mount_point
    return merged


def _fill_mount_defaults(mount: Mount) -> None:
    mount.sshfs.cache = _or(mount.sshfs.cache, True)
    mount.sshfs.follow_symlinks = _or(mount.sshfs.follow_symlinks, False)
    mount.sshfs.sftp_driver = _or(mount.sshfs.sftp_driver, "")
    mount.nine_p.security_model = _or(mount.nine_p.security_model, DEFAULT_9P_SECURITY_MODEL)
    mount.nine_p.protocol_version = _or(mount.nine_p.protocol_version, DEFAULT_9P_PROTOCOL_VERSION)
    mount.nine_p.msize = _or(mount.nine_p.msize, DEFAULT_9P_MSIZE)
    mount.writable = _or(mount.writable, False)
    if mount.nine_p.cache is None:
        mount.nine_p.cache = DEFAULT_9P_CACHE_FOR_RW if mount.writable else DEFAULT_9P_CACHE_FOR_RO
    if not mount.mount_point:
        mount.mount_point = mount.location


_ACTION = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)
_FIELD = re.compile(r"\s*\.([A-Za-z_]\w*)\s*")


def _render(template: str, data: Mapping[str, str]) -> str:
    parts: list[str] = []
    pos = 0
    for match in _ACTION.finditer(template):
        parts.append(template[pos:match.start()])
        field = _FIELD.fullmatch(match.group(1))
        if field is None:
            raise TemplateError(f"unsupported template action {match.group(0)!r}")
        parts.append(data.get(field.group(1), "<no value>"))
        pos = match.end()
    rest = template[pos:]
    if "{{" in rest:
        raise TemplateError("unclosed template action")
    parts.append(rest)
    return "".join(parts)


def _guest_data() -> dict[str, str]:
    user = lima_user(False)
    return {"Home": f"/home/{user.username}.linux", "UID": user.uid, "User": user.username}


def _host_data(inst_dir: str) -> dict[str, str]:
    user = lima_user(False)
    name = os.path.basename(inst_dir)
    return {
        "Dir": inst_dir,
        "Home": os.path.expanduser("~"),
        "Name": name,
        "UID": user.uid,
        "User": user.username,
        "Instance": name,  # deprecated, use Name
        "LimaHome": os.path.dirname(inst_dir),  # deprecated, use Dir
    }


def _expand(template: str, data: Mapping[str, str], what: str) -> str:
    try:
        return _render(template, data)
    except TemplateError as exc:
        log.warning("Couldn't process %s %r as a template: %s", what, template, exc)
        return template


def fill_port_forward_defaults(rule: PortForward, inst_dir: str | os.PathLike) -> None:
    """Fill unset fields of a port forwarding rule and expand its socket templates."""
    inst_dir = os.fspath(inst_dir)
    if not rule.proto:
        rule.proto = TCP
    if rule.guest_ip is None:
        rule.guest_ip = IPV4_ZERO if rule.guest_ip_must_be_zero else IPV4_LOOPBACK1
    if rule.host_ip is None:
        rule.host_ip = IPV4_LOOPBACK1
    if rule.guest_port_range == (0, 0):
        if rule.guest_port == 0:
            rule.guest_port_range = (1, 65535)
        else:
            rule.guest_port_range = (rule.guest_port, rule.guest_port)
    if rule.host_port_range == (0, 0):
        if rule.host_port == 0:
            rule.host_port_range = rule.guest_port_range
        else:
            rule.host_port_range = (rule.host_port, rule.host_port)
    if rule.guest_socket:
        rule.guest_socket = _expand(rule.guest_socket, _guest_data(), "guestSocket")
    if rule.host_socket:
        rule.host_socket = _expand(rule.host_socket, _host_data(inst_dir), "hostSocket")
        if not os.path.isabs(rule.host_socket):
            rule.host_socket = os.path.join(inst_dir, SOCKET_DIR, rule.host_socket)


def fill_copy_to_host_defaults(rule: CopyToHost, inst_dir: str | os.PathLike) -> None:
    """Expand the templates in a copy-to-host rule."""
    inst_dir = os.fspath(inst_dir)
    if rule.guest_file:
        rule.guest_file = _expand(rule.guest_file, _guest_data(), "guest")
    if rule.host_file:
        rule.host_file = _expand(rule.host_file, _host_data(inst_dir), "host")


def new_arch(arch: str) -> str:
    """Map a Go-style architecture name onto the configuration's name."""
    mapping = {"amd64": X8664, "arm64": AARCH64, "riscv64": RISCV64}
    if arch in mapping:
        return mapping[arch]
    log.warning("Unknown arch: %s", arch)
    return arch


def new_vm_type(driver: str) -> str:
    """Return the VM type for a driver name."""
    if driver in (VZ, QEMU):
        return driver
    log.warning("Unknown driver: %s", driver)
    return driver


def resolve_vm_type(s: str | None) -> str:
    """Return the VM type, with unset or "default" meaning qemu."""
    if not s or s == "default":
        return QEMU
    return new_vm_type(s)


def _host_go_arch() -> str:
    machine = platform.machine()
    return _GO_ARCH.get(machine.lower(), machine)


def resolve_arch(s: str | None) -> str:
    """Return the architecture, with unset or "default" meaning the host's."""
    if not s or s == "default":
        return new_arch(_host_go_arch())
    return s


def is_accel_os() -> bool:
    """Return whether the host OS offers hardware acceleration."""
    plat = sys.platform
    return plat == "darwin" or plat == "win32" or plat.startswith(("linux", "netbsd"))


def has_host_cpu() -> bool:
    """Return whether the "host" CPU model can be used."""
    return sys.platform == "darwin" or sys.platform.startswith("linux")


def has_max_cpu() -> bool:
    """Return whether the "max" CPU model can be used."""
    return sys.platform != "win32"


def is_native_arch(arch: str) -> bool:
    """Return whether arch is the host's own architecture."""
    native = {"amd64": X8664, "arm64": AARCH64, "riscv64": RISCV64}.get(_host_go_arch())
    return native is not None and arch == native