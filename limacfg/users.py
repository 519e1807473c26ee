"""Host account lookups and the user identity that is mapped into guests."""

from __future__ import annotations

import functools
import getpass
import logging
import ntpath
import os
import re
import subprocess
import sys
from dataclasses import dataclass

log = logging.getLogger(__name__)

FALLBACK_USER = "lima"
FALLBACK_UID = 1000
FALLBACK_GID = 1000

# `useradd` only accepts names of this form (a trailing '$' is allowed there,
# but such names are mapped to the fallback user as well).
VALID_NAME = "^[a-z_][a-z0-9_-]*$"
_VALID_NUMBER = "^[0-9]+$"
_VALID_PATH = "^[/a-zA-Z0-9_-]+$"


@dataclass(frozen=True)
class User:
    """A host account with its primary group."""

    user: str
    uid: int
    group: str
    gid: int
    home: str


@dataclass(frozen=True)
class Group:
    """A host group."""

    name: str
    gid: int


@dataclass(frozen=True)
class LimaUser:
    """The account used inside the guest, derived from the current host user."""

    username: str
    uid: str
    gid: str
    home_dir: str


def _account_db():
    try:
        import grp
        import pwd
    except ImportError as exc:
        raise LookupError("account lookup is not supported on this platform") from exc
    return pwd, grp


@functools.cache
def lookup_user(name: str) -> User:
    """Look up a host user by name; raise LookupError if unknown."""
    pwd, grp = _account_db()
    try:
        entry = pwd.getpwnam(name)
    except KeyError:
        raise LookupError(f"user: unknown user {name}") from None
    try:
        group = grp.getgrgid(entry.pw_gid)
    except KeyError:
        raise LookupError(f"group: unknown groupid {entry.pw_gid}") from None
    return User(
        user=entry.pw_name,
        uid=entry.pw_uid,
        group=group.gr_name,
        gid=entry.pw_gid,
        home=entry.pw_dir,
    )


@functools.cache
def lookup_group(name: str) -> Group:
    """Look up a host group by name; raise LookupError if unknown."""
    _, grp = _account_db()
    try:
        entry = grp.getgrnam(name)
    except KeyError:
        raise LookupError(f"group: unknown group {name}") from None
    return Group(name=entry.gr_name, gid=entry.gr_gid)


def _call(args: list[str]) -> str:
    try:
        result = subprocess.run(args, capture_output=True, text=True, check=True)
    except (OSError, subprocess.CalledProcessError) as exc:
        log.debug("%s", exc)
        return ""
    return result.stdout.strip()


def _posix_home_from_windows(home: str) -> str:
    drive, _ = ntpath.splitdrive(home)
    path = home.replace("\\", "/")
    if drive:
        path = path.replace(drive, "/" + drive[0].lower(), 1)
    return path


def _numeric_id(raw: str, fallback: int) -> int:
    try:
        return int(raw)
    except ValueError:
        return fallback


def _resolve_lima_user(
    username: str, uid: str, gid: str, home_dir: str, *, windows: bool = False
) -> tuple[LimaUser, list[str]]:
    """Map a host account onto a valid Linux identity, returning warnings too."""
    warnings: list[str] = []
    if not re.fullmatch(VALID_NAME, username):
        warnings.append(
            f"local user {username!r} is not a valid Linux username (must match "
            f"{VALID_NAME!r}); using {FALLBACK_USER!r} username instead"
        )
        username = FALLBACK_USER
    if windows:
        new_uid = _numeric_id(_call(["id", "-u"]), FALLBACK_UID)
        if not re.fullmatch(_VALID_NUMBER, uid):
            warnings.append(
                f"local uid {uid!r} is not a valid Linux uid (must be integer); "
                f"using {new_uid} uid instead"
            )
            uid = str(new_uid)
        new_gid = _numeric_id(_call(["id", "-g"]), FALLBACK_GID)
        if not re.fullmatch(_VALID_NUMBER, gid):
            warnings.append(
                f"local gid {gid!r} is not a valid Linux gid (must be integer); "
                f"using {new_gid} gid instead"
            )
            gid = str(new_gid)
        home = _call(["cygpath", home_dir]) or _posix_home_from_windows(home_dir)
        if not re.fullmatch(_VALID_PATH, home_dir):
            warnings.append(
                f"local home {home_dir!r} is not a valid Linux path (must match "
                f"{_VALID_PATH!r}); using {home!r} home instead"
            )
            home_dir = home
    return LimaUser(username=username, uid=uid, gid=gid, home_dir=home_dir), warnings


def _current_account() -> tuple[str, str, str, str]:
    if sys.platform == "win32":
        return getpass.getuser(), "", "", os.path.expanduser("~")
    pwd, _ = _account_db()
    try:
        entry = pwd.getpwuid(os.getuid())
    except KeyError:
        raise LookupError(f"user: unknown userid {os.getuid()}") from None
    return entry.pw_name, str(entry.pw_uid), str(entry.pw_gid), entry.pw_dir


@functools.cache
def _cached_lima_user() -> tuple[LimaUser, tuple[str, ...]]:
    name, uid, gid, home = _current_account()
    user, warnings = _resolve_lima_user(
        name, uid, gid, home, windows=sys.platform == "win32"
    )
    return user, tuple(warnings)


def lima_user(warn: bool = False) -> LimaUser:
    """Return the guest identity for the current user, logging warnings if asked."""
    user, warnings = _cached_lima_user()
    if warn:
        for warning in warnings:
            log.warning("%s", warning)
    return user