"""Checking a filled-in instance configuration for errors."""

from __future__ import annotations

import json
import logging
import os
import posixpath
import re
import stat
import sys

from limacfg.hostinfo import unix_path_max
from limacfg.limayaml import (
    AARCH64,
    NINEP,
    PROBE_MODE_READINESS,
    PROVISION_MODE_BOOT,
    PROVISION_MODE_SYSTEM,
    PROVISION_MODE_USER,
    REVSSHFS,
    RISCV64,
    TCP,
    VIRTIOFS,
    VZ,
    X8664,
    File,
    LimaYAML,
)
from limacfg.localpath import expand
from limacfg.networks import SLIRP_NIC_NAME, NetworksError, load_config
from limacfg.users import lima_user

log = logging.getLogger(__name__)

_ARCHES = (X8664, AARCH64, RISCV64)
_SYSTEM_PATHS = frozenset(
    ["/", "/bin", "/dev", "/etc", "/home", "/opt", "/sbin", "/tmp", "/usr", "/var"]
)
_SIZE_RE = re.compile(r"([0-9]+(\.[0-9]+)*) ?([kKmMgGtTpP])?[iI]?[bB]?")
_BINARY_UNITS = {
    "k": 1024,
    "m": 1024**2,
    "g": 1024**3,
    "t": 1024**4,
    "p": 1024**5,
}
_DIGEST_SIZES = {"sha256": 32, "sha384": 48, "sha512": 64}
_PTP_PORT = 65535


class ValidationError(ValueError):
    """The configuration is not valid."""


def _q(text: str) -> str:
    return json.dumps(text)


def ram_in_bytes(size: str) -> int:
    """Parse a human-readable size with binary units ("4GiB", "128KiB") into bytes."""
    match = _SIZE_RE.fullmatch(size)
    if match is None:
        raise ValueError(f"invalid size: '{size}'")
    try:
        number = float(match.group(1))
    except ValueError:
        raise ValueError(f"invalid size: '{size}'") from None
    unit = match.group(3)
    multiplier = _BINARY_UNITS[unit.lower()] if unit else 1
    return int(number * multiplier)


def _networks_config_path() -> str:
    lima_home = os.environ.get("LIMA_HOME") or os.path.join(os.path.expanduser("~"), ".lima")
    return os.path.join(lima_home, "_config", "networks.yaml")


def _validate_digest(digest: str, field_name: str) -> None:
    algorithm, sep, encoded = digest.partition(":")
    if not sep or algorithm not in _DIGEST_SIZES:
        raise ValidationError(f"field `{field_name}.digest` refers to an unavailable digest algorithm")
    problem = None
    if not algorithm or not encoded:
        problem = "invalid checksum digest format"
    elif len(encoded) != _DIGEST_SIZES[algorithm] * 2:
        problem = "invalid checksum digest length"
    elif not re.fullmatch(r"[a-f0-9]+", encoded):
        problem = "invalid checksum digest format"
    if problem:
        raise ValidationError(f"field `{field_name}.digest` is invalid: {digest}: {problem}")


def _validate_file_object(f: File, field_name: str) -> None:
    if "://" not in f.location:
        try:
            expand(f.location)
        except (ValueError, OSError, LookupError) as exc:
            raise ValidationError(
                f"field `{field_name}.location` refers to an invalid local file path: "
                f"{_q(f.location)}: {exc}"
            ) from exc
        # The file does not need to be accessible yet.
    if f.arch not in _ARCHES:
        raise ValidationError(
            f"field `arch` must be {_q(X8664)}, {_q(AARCH64)}, or {_q(RISCV64)}; got {_q(f.arch)}"
        )
    if f.digest:
        _validate_digest(f.digest, field_name)


def _validate_port(field_name: str, port: int) -> None:
    if port < 0:
        raise ValidationError(f"field `{field_name}` must be > 0")
    if port == 0:
        raise ValidationError(f"field `{field_name}` must be set")
    if port == 22:
        raise ValidationError(f"field `{field_name}` must not be 22")
    if port > 65535:
        raise ValidationError(f"field `{field_name}` must be < 65536")


def _validate_size(value: str | None, what: str) -> None:
    try:
        ram_in_bytes(value or "")
    except ValueError as exc:
        raise ValidationError(f"field `{what}` has an invalid value: {exc}") from exc


def _validate_images(y: LimaYAML, arch: str) -> None:
    if not y.images:
        raise ValidationError("field `images` must be set")
    for i, image in enumerate(y.images):
        _validate_file_object(image, f"images[{i}]")
        if image.kernel is not None:
            _validate_file_object(image.kernel, f"images[{i}].kernel")
            if image.kernel.arch != arch:
                raise ValidationError(
                    f"images[{i}].kernel has unexpected architecture "
                    f"{_q(image.kernel.arch)}, must be {_q(arch)}"
                )
        elif image.arch == RISCV64:
            raise ValidationError('riscv64 needs the kernel (e.g., "uboot.elf") to be specified')
        if image.initrd is not None:
            _validate_file_object(image.initrd, f"images[{i}].initrd")
            if image.kernel is None:
                raise ValidationError("initrd requires the kernel to be specified")
            if image.initrd.arch != arch:
                raise ValidationError(
                    f"images[{i}].initrd has unexpected architecture "
                    f"{_q(image.initrd.arch)}, must be {_q(arch)}"
                )


def _validate_mounts(y: LimaYAML) -> None:
    try:
        user = lima_user(False)
    except (LookupError, OSError) as exc:
        raise ValidationError(f"internal error (not an error of YAML): {exc}") from exc
    # The home directory defined in the guest's cloud-init user-data.
    reserved_home = f"/home/{user.username}.linux"

    for i, mount in enumerate(y.mounts):
        if not os.path.isabs(mount.location) and not mount.location.startswith("~"):
            raise ValidationError(
                f"field `mounts[{i}].location` must be an absolute path, got {_q(mount.location)}"
            )
        try:
            loc = expand(mount.location)
        except (ValueError, OSError, LookupError) as exc:
            raise ValidationError(
                f"field `mounts[{i}].location` refers to an unexpandable path: "
                f"{_q(mount.location)}: {exc}"
            ) from exc
        if loc in _SYSTEM_PATHS:
            raise ValidationError(
                f"field `mounts[{i}].location` must not be a system path such as /etc or /usr"
            )
        if loc == reserved_home:
            raise ValidationError(f"field `mounts[{i}].location` is internally reserved")
        try:
            st = os.stat(loc)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise ValidationError(
                f"field `mounts[{i}].location` refers to an inaccessible path: "
                f"{_q(mount.location)}: {exc}"
            ) from exc
        else:
            if not stat.S_ISDIR(st.st_mode):
                raise ValidationError(
                    f"field `mounts[{i}].location` refers to a non-directory path: "
                    f"{_q(mount.location)}"
                )
        _validate_size(mount.nine_p.msize, "msize")


def _validate_port_forwards(y: LimaYAML) -> None:
    path_max = unix_path_max()
    for i, rule in enumerate(y.port_forwards):
        f = f"portForwards[{i}]"
        if rule.guest_ip_must_be_zero and str(rule.guest_ip) != "0.0.0.0":
            raise ValidationError(
                f"field `{f}.guestIPMustBeZero` can only be true when field `{f}.guestIP` is 0.0.0.0"
            )
        if rule.guest_port != 0:
            if rule.guest_socket:
                raise ValidationError(
                    f"field `{f}.guestPort` must be 0 when field `{f}.guestSocket` is set"
                )
            if rule.guest_port != rule.guest_port_range[0]:
                raise ValidationError(
                    f"field `{f}.guestPort` must match field `{f}.guestPortRange[0]`"
                )
            _validate_port(f"{f}.guestPort", rule.guest_port)
        if rule.host_port != 0:
            if rule.host_socket:
                raise ValidationError(
                    f"field `{f}.hostPort` must be 0 when field `{f}.hostSocket` is set"
                )
            if rule.host_port != rule.host_port_range[0]:
                raise ValidationError(
                    f"field `{f}.hostPort` must match field `{f}.hostPortRange[0]`"
                )
            _validate_port(f"{f}.hostPort", rule.host_port)
        for j in range(2):
            _validate_port(f"{f}.guestPortRange[{j}]", rule.guest_port_range[j])
            _validate_port(f"{f}.hostPortRange[{j}]", rule.host_port_range[j])
        guest_lo, guest_hi = rule.guest_port_range
        host_lo, host_hi = rule.host_port_range
        if guest_lo > guest_hi:
            raise ValidationError(
                f"field `{f}.guestPortRange[1]` must be greater than or equal to "
                f"field `{f}.guestPortRange[0]`"
            )
        if host_lo > host_hi:
            raise ValidationError(
                f"field `{f}.hostPortRange[1]` must be greater than or equal to "
                f"field `{f}.hostPortRange[0]`"
            )
        if guest_hi - guest_lo != host_hi - host_lo:
            raise ValidationError(
                f"field `{f}.hostPortRange` must specify the same number of ports as "
                f"field `{f}.guestPortRange`"
            )
        if rule.guest_socket:
            if not posixpath.isabs(rule.guest_socket):
                raise ValidationError(f"field `{f}.guestSocket` must be an absolute path")
            if not rule.host_socket and host_hi - host_lo > 0:
                raise ValidationError(
                    f"field `{f}.guestSocket` can only be mapped to a single port or socket. "
                    "not a range"
                )
        if rule.host_socket:
            if not os.path.isabs(rule.host_socket):
                raise ValidationError(
                    f"field `{f}.hostSocket` must be an absolute path, but is {_q(rule.host_socket)}"
                )
            if not rule.guest_socket and guest_hi - guest_lo > 0:
                raise ValidationError(
                    f"field `{f}.hostSocket` can only be mapped from a single port or socket. "
                    "not a range"
                )
        length = len(rule.host_socket.encode())
        if length >= path_max:
            raise ValidationError(
                f"field `{f}.hostSocket` must be less than UNIX_PATH_MAX={path_max} "
                f"characters, but is {length}"
            )
        if rule.proto != TCP:
            raise ValidationError(f"field `{f}.proto` must be {_q(TCP)}")
        if rule.reverse and (not rule.guest_socket or not rule.host_socket):
            raise ValidationError(f"field `{f}.reverse` must be false")
        # Overlapping ranges are allowed: the first matching rule wins.


def validate(y: LimaYAML, warn: bool = False) -> None:
    """Raise ValidationError if the filled-in configuration y is not valid."""
    arch = y.arch or ""
    if arch not in _ARCHES:
        raise ValidationError(
            f"field `arch` must be {_q(X8664)}, {_q(AARCH64)}, or {_q(RISCV64)}; got {_q(arch)}"
        )
    _validate_images(y, arch)

    for cpu_arch in y.cpu_type:
        if cpu_arch not in _ARCHES:
            raise ValidationError(f"field `cpuType` uses unsupported arch {_q(cpu_arch)}")

    if not y.cpus:
        raise ValidationError("field `cpus` must be set")
    _validate_size(y.memory, "memory")
    _validate_size(y.disk, "memory")

    _validate_mounts(y)

    if y.ssh.local_port:
        _validate_port("ssh.localPort", y.ssh.local_port)

    if y.mount_type not in (REVSSHFS, NINEP, VIRTIOFS):
        raise ValidationError(
            f"field `mountType` must be {_q(REVSSHFS)} or {_q(NINEP)} or {_q(VIRTIOFS)}, "
            f"got {_q(y.mount_type or '')}"
        )

    # firmware.legacyBIOS is ignored for aarch64, which is not an error.

    for i, provision in enumerate(y.provision):
        if provision.mode not in (PROVISION_MODE_SYSTEM, PROVISION_MODE_USER, PROVISION_MODE_BOOT):
            raise ValidationError(
                f"field `provision[{i}].mode` must be either {_q(PROVISION_MODE_SYSTEM)}, "
                f"{_q(PROVISION_MODE_USER)}, or {_q(PROVISION_MODE_BOOT)}"
            )
    needs_archives = bool(y.containerd.user) or bool(y.containerd.system)
    if needs_archives and not y.containerd.archives:
        raise ValidationError("field `containerd.archives` must be provided")
    for i, probe in enumerate(y.probes):
        if probe.mode != PROBE_MODE_READINESS:
            raise ValidationError(
                f"field `probe[{i}].mode` can only be {_q(PROBE_MODE_READINESS)}"
            )

    _validate_port_forwards(y)

    for i, rule in enumerate(y.copy_to_host):
        f = f"CopyToHost[{i}]"
        if rule.guest_file and not posixpath.isabs(rule.guest_file):
            raise ValidationError(f"field `{f}.guest` must be an absolute path")
        if rule.host_file and not os.path.isabs(rule.host_file):
            raise ValidationError(
                f"field `{f}.host` must be an absolute path, but is {_q(rule.host_file)}"
            )

    if y.host_resolver.enabled and y.dns:
        raise ValidationError(
            "field `dns` must be empty when field `HostResolver.Enabled` is true"
        )

    _validate_networks(y, warn)
    if warn:
        _warn_experimental(y)


def _parse_mac(text: str) -> bytes:
    error = ValidationError(f"field `vmnet.mac` invalid: address {text}: invalid MAC address")
    if len(text) < 14:
        raise error
    if text[2] in ":-":
        groups = text.split(text[2])
        width = 2
    elif text[4] == ".":
        groups = text.split(".")
        width = 4
    else:
        raise error
    if any(len(g) != width or not re.fullmatch(r"[0-9a-fA-F]+", g) for g in groups):
        raise error
    hw = bytes.fromhex("".join(groups))
    if len(hw) not in (6, 8, 20):
        raise error
    return hw


def _is_socket(path: str) -> bool:
    return stat.S_ISSOCK(os.stat(path).st_mode)


def _validate_vnl(f: str, vnl: str, switch_port: int, warn: bool) -> None:
    if "://" not in vnl or vnl.startswith("vde://"):
        switch = vnl.removeprefix("vde://")
        try:
            st = os.stat(switch)
        except OSError as exc:
            # Negligible while the instance is stopped.
            log.debug("field `%s.vnl` %r failed stat: %s", f, switch, exc)
            return
        if stat.S_ISDIR(st.st_mode):
            # Switch mode: the control socket need not exist until the VM starts.
            ctl = os.path.join(switch, "ctl")
            try:
                ctl_is_socket = _is_socket(ctl)
            except OSError:
                ctl_is_socket = True
            if not ctl_is_socket:
                raise ValidationError(f"field `{f}.vnl` file {_q(ctl)} is not a UNIX socket")
            if switch_port == _PTP_PORT:
                raise ValidationError(
                    f"field `{f}.vnl` points to a non-PTP switch, so the port number must not be 65535"
                )
        else:
            # PTP (switchless) mode.
            if not stat.S_ISSOCK(st.st_mode):
                raise ValidationError(
                    f"field `{f}.vnl` {_q(switch)} is not a directory nor a UNIX socket"
                )
            if switch_port != _PTP_PORT:
                raise ValidationError(
                    f"field `{f}.vnl` points to a PTP (switchless) socket {_q(switch)}, "
                    f"so the port number has to be 65535 (got {switch_port})"
                )
    elif not sys.platform.startswith("linux") and warn:
        log.warning(
            "field `%s.vnl` is unlikely to work for %s (unless libvdeplug4 has been ported "
            "to %s and is installed)",
            f, sys.platform, sys.platform,
        )


def _check_lima_network(f: str, name: str) -> None:
    try:
        config = load_config(_networks_config_path())
    except (NetworksError, OSError) as exc:
        raise ValidationError(str(exc)) from exc
    try:
        config.check(name)
    except NetworksError:
        raise ValidationError(
            f"field `{f}.lima` references network {_q(name)} which is not "
            "defined in networks.yaml"
        ) from None


def _validate_networks(y: LimaYAML, warn: bool) -> None:
    used: dict[str, int] = {}
    for i, nw in enumerate(y.networks):
        f = f"networks[{i}]"
        if nw.lima:
            if sys.platform != "darwin":
                raise ValidationError(f"field `{f}.lima` is only supported on macOS right now")
            if nw.socket:
                raise ValidationError(f"field `{f}.lima` and field `{f}.socket` are mutually exclusive")
            if nw.vz_nat:
                raise ValidationError(f"field `{f}.lima` and field `{f}.vzNAT` are mutually exclusive")
            if nw.vnl_deprecated:
                raise ValidationError(f"field `{f}.lima` and field `{f}.vnl` are mutually exclusive")
            if nw.switch_port_deprecated:
                raise ValidationError(f"field `{f}.switchPort` cannot be used with field `{f}.lima`")
            _check_lima_network(f, nw.lima)
        elif nw.socket:
            if nw.vz_nat:
                raise ValidationError(f"field `{f}.socket` and field `{f}.vzNAT` are mutually exclusive")
            if nw.vnl_deprecated:
                raise ValidationError(f"field `{f}.socket` and field `{f}.vnl` are mutually exclusive")
            if nw.switch_port_deprecated:
                raise ValidationError(f"field `{f}.switchPort` cannot be used with field `{f}.socket`")
            try:
                is_socket = _is_socket(nw.socket)
            except FileNotFoundError:
                is_socket = True
            except OSError as exc:
                raise ValidationError(str(exc)) from exc
            if not is_socket:
                raise ValidationError(f"field `{f}.socket` {_q(nw.socket)} points to a non-socket file")
        elif nw.vz_nat:
            if y.vm_type != VZ:
                raise ValidationError(f"field `{f}.vzNAT` requires `vmType` to be {_q(VZ)}")
            if nw.vnl_deprecated:
                raise ValidationError(f"field `{f}.vzNAT` and field `{f}.vnl` are mutually exclusive")
            if nw.switch_port_deprecated:
                raise ValidationError(f"field `{f}.switchPort` cannot be used with field `{f}.vzNAT`")
        else:
            if not nw.vnl_deprecated:
                raise ValidationError(
                    f"field `{f}.lima`, field `{f}.socket`, or field `{f}.vnl` must be set"
                )
            _validate_vnl(f, nw.vnl_deprecated, nw.switch_port_deprecated, warn)

        if nw.mac_address:
            hw = _parse_mac(nw.mac_address)
            if len(hw) != 6:
                raise ValidationError(
                    f"field `{f}.macAddress` must be a 48 bit (6 bytes) MAC address; "
                    f"actual length of {_q(nw.mac_address)} is {len(hw)} bytes"
                )
        size = len(nw.interface.encode())
        if size >= 16:
            raise ValidationError(
                f"field `{f}.interface` must be less than 16 bytes, but is {size} bytes: "
                f"{_q(nw.interface)}"
            )
        if any(c in nw.interface for c in " \t\n/"):
            raise ValidationError(f"field `{f}.interface` must not contain whitespace or slashes")
        if nw.interface == SLIRP_NIC_NAME:
            raise ValidationError(
                f"field `{f}.interface` must not be set to {_q(SLIRP_NIC_NAME)} "
                "because it is reserved for slirp"
            )
        if nw.interface in used:
            raise ValidationError(
                f"field `{f}.interface` value {_q(nw.interface)} has already been used by "
                f"field `networks[{used[nw.interface]}].interface`"
            )
        used[nw.interface] = i


def _warn_experimental(y: LimaYAML) -> None:
    if y.mount_type == NINEP:
        log.warning("`mountType: 9p` is experimental")
    if y.vm_type == VZ:
        log.warning("`vmType: vz` is experimental")
    if y.arch == RISCV64:
        log.warning("`arch: riscv64` is experimental")
    if y.video.display is not None and "vnc" in y.video.display:
        log.warning("`video.display: vnc` is experimental")