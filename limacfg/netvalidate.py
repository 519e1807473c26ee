"""Security checks of the paths named in networks.yaml."""

from __future__ import annotations

import json
import os
import posixpath
import stat
import sys

from limacfg.networks import PATH_FIELDS, NetworksConfig, NetworksError
from limacfg.users import lookup_group, lookup_user

_MAY_BE_MISSING = ("sudoers", "socketVMNet", "vdeVMNet", "vdeSwitch")


def _q(text: str) -> str:
    return json.dumps(text)


def _parent(path: str) -> str:
    return posixpath.dirname(path) or "."


def _find_base_directory(path: str) -> str:
    """Strip non-existing directories from the end of path."""
    while True:
        try:
            os.lstat(path)
        except FileNotFoundError:
            if path == "/":
                return path
            path = _parent(path)
            continue
        except OSError:
            return path
        return path


def _check_owner(path: str, kind: str, st: os.stat_result, allow_daemon_group_writable: bool) -> None:
    import pwd

    root = lookup_user("root")
    admin = lookup_group("admin")
    uid, gid, mode = st.st_uid, st.st_gid, st.st_mode
    try:
        owner = pwd.getpwuid(uid)
    except KeyError:
        raise LookupError(f"user: unknown userid {uid}") from None
    owner_is_admin = owner.pw_uid == 0 or admin.gid in os.getgrouplist(owner.pw_name, owner.pw_gid)
    if not owner_is_admin:
        raise NetworksError(f"{kind} {_q(path)} owner {uid} is not an admin")
    if allow_daemon_group_writable:
        daemon = lookup_user("daemon")
        if mode & 0o020 and gid not in (root.gid, admin.gid, daemon.gid):
            raise NetworksError(
                f"{kind} {_q(path)} is group-writable and group {gid} "
                "is not one of [wheel, admin, daemon]"
            )
        if stat.S_ISDIR(mode) and not mode & 0o001 and (not mode & 0o010 or gid != daemon.gid):
            raise NetworksError(
                f"{kind} {_q(path)} is not executable by the {_q(daemon.user)} "
                f"(gid: {daemon.gid}) group"
            )
    elif mode & 0o020 and gid not in (root.gid, admin.gid):
        raise NetworksError(
            f"{kind} {_q(path)} is group-writable and group {gid} is not one of [wheel, admin]"
        )
    if mode & 0o002:
        raise NetworksError(f"{kind} {_q(path)} is world-writable")


def _validate_path(path: str, allow_daemon_group_writable: bool) -> None:
    """Check that path and all its parents are secure; missing files raise FileNotFoundError."""
    while path:
        if not path.startswith("/"):
            raise NetworksError(f"path {_q(path)} is not an absolute path")
        if " " in path:
            raise NetworksError(f"path {_q(path)} contains whitespace")
        st = os.lstat(path)
        kind = "dir" if stat.S_ISDIR(st.st_mode) else "file"
        if stat.S_ISLNK(st.st_mode):
            raise NetworksError(f"{kind} {_q(path)} is a symlink")
        if sys.platform != "darwin":
            raise NetworksError("vmnet code must not be called on non-Darwin")
        _check_owner(path, kind, st, allow_daemon_group_writable)
        if path == "/":
            return
        path = _parent(path)


def validate_networks_config(config: NetworksConfig) -> None:
    """Check that every configured path is secure and a usable daemon is installed."""
    values: dict[str, str] = {}
    missing: set[str] = set()
    for key, attr in PATH_FIELDS.items():
        path = getattr(config.paths, attr)
        values[key] = path
        is_var_run = key == "varRun"
        # varRun is created securely later, but its existing parents must be secure now.
        target = _find_base_directory(path) if is_var_run else path
        try:
            _validate_path(target, is_var_run)
        except FileNotFoundError as exc:
            if key in _MAY_BE_MISSING:
                missing.add(key)
                continue
            raise NetworksError(f"networks.yaml field `paths.{key}` error: {exc}") from exc
        except (OSError, LookupError, NetworksError) as exc:
            raise NetworksError(f"networks.yaml field `paths.{key}` error: {exc}") from exc

    socket_missing = "socketVMNet" in missing
    vmnet_missing = "vdeVMNet" in missing
    if socket_missing and vmnet_missing:
        raise NetworksError(
            f"networks.yaml: either {_q(values['socketVMNet'])} (`paths.socketVMNet`) or "
            f"{_q(values['vdeVMNet'])} (`paths.vdeVMNet`) has to be installed"
        )
    if socket_missing and not vmnet_missing and "vdeSwitch" in missing:
        raise NetworksError(
            f"networks.yaml: {_q(values['vdeVMNet'])} (`paths.vdeVMNet`) requires "
            f"{_q(values['vdeSwitch'])} (`paths.vdeSwitch`) to be installed"
        )