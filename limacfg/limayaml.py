"""The instance configuration document (lima.yaml) as Python objects."""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from typing import Any, Union

log = logging.getLogger(__name__)

X8664 = "x86_64"
AARCH64 = "aarch64"
RISCV64 = "riscv64"

REVSSHFS = "reverse-sshfs"
NINEP = "9p"
VIRTIOFS = "virtiofs"

QEMU = "qemu"
VZ = "vz"

SFTP_DRIVER_BUILTIN = "builtin"
SFTP_DRIVER_OPENSSH_SFTP_SERVER = "openssh-sftp-server"

PROVISION_MODE_SYSTEM = "system"
PROVISION_MODE_USER = "user"
PROVISION_MODE_BOOT = "boot"

PROBE_MODE_READINESS = "readiness"

TCP = "tcp"

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class LimaYAMLError(ValueError):
    """The document does not have the expected structure."""


class _Codec:
    def decode(self, value: Any, where: str, unknown: list[str]) -> Any:
        raise NotImplementedError

    def encode(self, value: Any) -> Any:
        return value


class _Scalar(_Codec):
    def __init__(self, kind: type, label: str) -> None:
        self.kind = kind
        self.label = label

    def decode(self, value, where, unknown):
        is_bool = isinstance(value, bool)
        if self.kind is bool and is_bool:
            return value
        if self.kind is int and isinstance(value, int) and not is_bool:
            return value
        if self.kind is str:
            if isinstance(value, str):
                return value
            if isinstance(value, (int, float)) and not is_bool:
                return str(value)
        raise LimaYAMLError(f"{where}: expected {self.label}, got {value!r}")


class _Port16(_Codec):
    def decode(self, value, where, unknown):
        if isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= 0xFFFF:
            return value
        raise LimaYAMLError(f"{where}: expected an integer between 0 and 65535, got {value!r}")


class _IP(_Codec):
    def decode(self, value, where, unknown):
        try:
            return ipaddress.ip_address(str(value))
        except ValueError:
            raise LimaYAMLError(f"{where}: invalid IP address {value!r}") from None

    def encode(self, value):
        return str(value)


class _Pair(_Codec):
    def decode(self, value, where, unknown):
        if (
            isinstance(value, (list, tuple))
            and len(value) == 2
            and all(isinstance(v, int) and not isinstance(v, bool) for v in value)
        ):
            return (value[0], value[1])
        raise LimaYAMLError(f"{where}: expected a list of two integers, got {value!r}")

    def encode(self, value):
        return list(value)


class _List(_Codec):
    def __init__(self, item: _Codec) -> None:
        self.item = item

    def decode(self, value, where, unknown):
        if not isinstance(value, list):
            raise LimaYAMLError(f"{where}: expected a list, got {value!r}")
        return [self.item.decode(v, f"{where}[{i}]", unknown) for i, v in enumerate(value)]

    def encode(self, value):
        return [self.item.encode(v) for v in value]


class _Map(_Codec):
    def __init__(self, item: _Codec) -> None:
        self.item = item

    def decode(self, value, where, unknown):
        if not isinstance(value, Mapping):
            raise LimaYAMLError(f"{where}: expected a mapping, got {value!r}")
        return {str(k): self.item.decode(v, f"{where}.{k}", unknown) for k, v in value.items()}

    def encode(self, value):
        return {k: self.item.encode(v) for k, v in value.items()}


class _Obj(_Codec):
    def __init__(self, cls: type) -> None:
        self.cls = cls

    def decode(self, value, where, unknown):
        return self.cls._decode(value, where, unknown)

    def encode(self, value):
        return value.to_dict()


_STR = _Scalar(str, "a string")
_INT = _Scalar(int, "an integer")
_BOOL = _Scalar(bool, "a boolean")


def _ptr(key: str, codec: _Codec, *, omit: bool = True):
    """An optional value; None stands for "not set"."""
    return field(default=None, metadata={"key": key, "codec": codec, "omit": "nil" if omit else None})


def _val(key: str, codec: _Codec, *, default: Any = None, factory: Any = None, omit: bool = True):
    """A plain value; zero values are left out of the document when omit is set."""
    metadata = {"key": key, "codec": codec, "omit": "zero" if omit else None}
    if factory is not None:
        return field(default_factory=factory, metadata=metadata)
    return field(default=default, metadata=metadata)


def _is_zero(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, tuple):
        return not any(value)
    if isinstance(value, (str, list, dict)):
        return len(value) == 0
    if isinstance(value, bool):
        return not value
    if isinstance(value, int):
        return value == 0
    if isinstance(value, _Record):
        return value == type(value)()
    return False


class _Record:
    """Mapping between a dataclass and its document form."""

    @classmethod
    def _decode(cls, data: Any, where: str, unknown: list[str]):
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise LimaYAMLError(f"{where or 'document'}: expected a mapping, got {data!r}")
        specs = {f.metadata["key"]: f for f in fields(cls)}
        values = {}
        for key, raw in data.items():
            path = f"{where}.{key}" if where else str(key)
            spec = specs.get(key)
            if spec is None:
                unknown.append(path)
                continue
            if raw is None:
                continue
            values[spec.name] = spec.metadata["codec"].decode(raw, path, unknown)
        return cls(**values)

    @classmethod
    def from_dict(cls, data: Any):
        """Build an object from parsed YAML; unknown fields are logged and ignored."""
        unknown: list[str] = []
        result = cls._decode(data, "", unknown)
        if unknown:
            log.warning(
                "Non-strict YAML is deprecated and will be unsupported in a future version: "
                "unknown fields %s",
                ", ".join(unknown),
            )
        return result

    def to_dict(self) -> dict[str, Any]:
        """Return the document form, leaving out unset and empty optional fields."""
        out: dict[str, Any] = {}
        for spec in fields(self):
            value = getattr(self, spec.name)
            omit = spec.metadata["omit"]
            if omit == "nil" and value is None:
                continue
            if omit == "zero" and _is_zero(value):
                continue
            key = spec.metadata["key"]
            out[key] = None if value is None else spec.metadata["codec"].encode(value)
        return out


@dataclass
class File(_Record):
    """A downloadable file for one architecture."""

    location: str = _val("location", _STR, default="", omit=False)
    arch: str = _val("arch", _STR, default="")
    digest: str = _val("digest", _STR, default="")


@dataclass
class Kernel(File):
    """A kernel image with its command line."""

    cmdline: str = _val("cmdline", _STR, default="")


@dataclass
class Image(File):
    """A disk image, optionally with its own kernel and initrd."""

    kernel: Kernel | None = _ptr("kernel", _Obj(Kernel))
    initrd: File | None = _ptr("initrd", _Obj(File))


@dataclass
class SSHFS(_Record):
    """Options of reverse-sshfs mounts."""

    cache: bool | None = _ptr("cache", _BOOL)
    follow_symlinks: bool | None = _ptr("followSymlinks", _BOOL)
    sftp_driver: str | None = _ptr("sftpDriver", _STR)


@dataclass
class NineP(_Record):
    """Options of 9p mounts."""

    security_model: str | None = _ptr("securityModel", _STR)
    protocol_version: str | None = _ptr("protocolVersion", _STR)
    msize: str | None = _ptr("msize", _STR)
    cache: str | None = _ptr("cache", _STR)


@dataclass
class Mount(_Record):
    """A host directory shared with the guest."""

    location: str = _val("location", _STR, default="", omit=False)
    mount_point: str = _val("mountPoint", _STR, default="")
    writable: bool | None = _ptr("writable", _BOOL)
    sshfs: SSHFS = _val("sshfs", _Obj(SSHFS), factory=SSHFS)
    nine_p: NineP = _val("9p", _Obj(NineP), factory=NineP)


@dataclass
class SSH(_Record):
    """SSH access to the guest."""

    local_port: int | None = _ptr("localPort", _INT)
    load_dot_ssh_pub_keys: bool | None = _ptr("loadDotSSHPubKeys", _BOOL)
    forward_agent: bool | None = _ptr("forwardAgent", _BOOL)
    forward_x11: bool | None = _ptr("forwardX11", _BOOL)
    forward_x11_trusted: bool | None = _ptr("forwardX11Trusted", _BOOL)


@dataclass
class Firmware(_Record):
    """Firmware settings; legacy BIOS disables UEFI and is ignored on aarch64."""

    legacy_bios: bool | None = _ptr("legacyBIOS", _BOOL)


@dataclass
class VNCOptions(_Record):
    """VNC display settings."""

    display: str | None = _ptr("display", _STR)


@dataclass
class Video(_Record):
    """Video output settings."""

    display: str | None = _ptr("display", _STR)
    vnc: VNCOptions = _val("vnc", _Obj(VNCOptions), factory=VNCOptions, omit=False)


@dataclass
class Provision(_Record):
    """A provisioning script."""

    mode: str = _val("mode", _STR, default="", omit=False)
    script: str = _val("script", _STR, default="", omit=False)


@dataclass
class Containerd(_Record):
    """Containerd installation settings."""

    system: bool | None = _ptr("system", _BOOL)
    user: bool | None = _ptr("user", _BOOL)
    archives: list[File] = _val("archives", _List(_Obj(File)), factory=list)


@dataclass
class Probe(_Record):
    """A readiness probe script."""

    mode: str = _val("mode", _STR, default="", omit=False)
    description: str = _val("description", _STR, default="", omit=False)
    script: str = _val("script", _STR, default="", omit=False)
    hint: str = _val("hint", _STR, default="", omit=False)


@dataclass
class PortForward(_Record):
    """A rule forwarding guest ports or sockets to the host."""

    guest_ip_must_be_zero: bool = _val("guestIPMustBeZero", _BOOL, default=False)
    guest_ip: IPAddress | None = _ptr("guestIP", _IP())
    guest_port: int = _val("guestPort", _INT, default=0)
    guest_port_range: tuple[int, int] = _val("guestPortRange", _Pair(), default=(0, 0))
    guest_socket: str = _val("guestSocket", _STR, default="")
    host_ip: IPAddress | None = _ptr("hostIP", _IP())
    host_port: int = _val("hostPort", _INT, default=0)
    host_port_range: tuple[int, int] = _val("hostPortRange", _Pair(), default=(0, 0))
    host_socket: str = _val("hostSocket", _STR, default="")
    proto: str = _val("proto", _STR, default="")
    reverse: bool = _val("reverse", _BOOL, default=False)
    ignore: bool = _val("ignore", _BOOL, default=False)


@dataclass
class CopyToHost(_Record):
    """A guest file copied to the host."""

    guest_file: str = _val("guest", _STR, default="")
    host_file: str = _val("host", _STR, default="")


@dataclass
class Network(_Record):
    """A guest network interface; lima, socket and vnl are mutually exclusive."""

    lima: str = _val("lima", _STR, default="")
    socket: str = _val("socket", _STR, default="")
    vz_nat: bool | None = _ptr("vzNAT", _BOOL)
    vnl_deprecated: str = _val("vnl", _STR, default="")
    switch_port_deprecated: int = _val("switchPort", _Port16(), default=0)
    mac_address: str = _val("macAddress", _STR, default="")
    interface: str = _val("interface", _STR, default="")


@dataclass
class HostResolver(_Record):
    """The host-side DNS resolver offered to the guest."""

    enabled: bool | None = _ptr("enabled", _BOOL)
    ipv6: bool | None = _ptr("ipv6", _BOOL)
    hosts: dict[str, str] = _val("hosts", _Map(_STR), factory=dict)


@dataclass
class CACertificates(_Record):
    """Extra CA certificates to trust in the guest."""

    remove_defaults: bool | None = _ptr("removeDefaults", _BOOL)
    files: list[str] = _val("files", _List(_STR), factory=list)
    certs: list[str] = _val("certs", _List(_STR), factory=list)


@dataclass
class Rosetta(_Record):
    """Rosetta translation settings."""

    enabled: bool | None = _ptr("enabled", _BOOL, omit=False)
    bin_fmt: bool | None = _ptr("binfmt", _BOOL, omit=False)


@dataclass
class LimaYAML(_Record):
    """A whole instance configuration."""

    vm_type: str | None = _ptr("vmType", _STR)
    arch: str | None = _ptr("arch", _STR)
    images: list[Image] = _val("images", _List(_Obj(Image)), factory=list, omit=False)
    cpu_type: dict[str, str] = _val("cpuType", _Map(_STR), factory=dict)
    cpus: int | None = _ptr("cpus", _INT)
    memory: str | None = _ptr("memory", _STR)
    disk: str | None = _ptr("disk", _STR)
    additional_disks: list[str] = _val("additionalDisks", _List(_STR), factory=list)
    mounts: list[Mount] = _val("mounts", _List(_Obj(Mount)), factory=list)
    mount_type: str | None = _ptr("mountType", _STR)
    ssh: SSH = _val("ssh", _Obj(SSH), factory=SSH)
    firmware: Firmware = _val("firmware", _Obj(Firmware), factory=Firmware)
    video: Video = _val("video", _Obj(Video), factory=Video)
    provision: list[Provision] = _val("provision", _List(_Obj(Provision)), factory=list)
    containerd: Containerd = _val("containerd", _Obj(Containerd), factory=Containerd)
    probes: list[Probe] = _val("probes", _List(_Obj(Probe)), factory=list)
    port_forwards: list[PortForward] = _val("portForwards", _List(_Obj(PortForward)), factory=list)
    copy_to_host: list[CopyToHost] = _val("copyToHost", _List(_Obj(CopyToHost)), factory=list)
    message: str = _val("message", _STR, default="")
    networks: list[Network] = _val("networks", _List(_Obj(Network)), factory=list)
    env: dict[str, str] = _val("env", _Map(_STR), factory=dict)
    dns: list[IPAddress] = _val("dns", _List(_IP()), factory=list)
    host_resolver: HostResolver = _val("hostResolver", _Obj(HostResolver), factory=HostResolver)
    propagate_proxy_env: bool | None = _ptr("propagateProxyEnv", _BOOL)
    ca_certificates: CACertificates = _val("caCerts", _Obj(CACertificates), factory=CACertificates)
    rosetta: Rosetta = _val("rosetta", _Obj(Rosetta), factory=Rosetta)

    @classmethod
    def from_dict(cls, data: Any) -> LimaYAML:
        """Build a configuration from parsed YAML; unknown fields are logged and ignored."""
        return super().from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        """Return the configuration as a YAML-ready mapping."""
        return super().to_dict()