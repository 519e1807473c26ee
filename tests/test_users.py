import grp
import os
import pwd
import re

import pytest

from limacfg.users import (
    FALLBACK_USER,
    VALID_NAME,
    Group,
    LimaUser,
    User,
    _resolve_lima_user,
    lima_user,
    lookup_group,
    lookup_user,
)

_USERNAME_RE = re.compile("^[a-z_][a-z0-9_-]*$")


def test_lima_user_warn():
    user = lima_user(True)
    assert _USERNAME_RE.fullmatch(user.username) is not None, user.username
    assert user == lima_user(False)


def test_lima_username():
    user = lima_user(False)
    login_name = pwd.getpwuid(os.getuid()).pw_name
    assert user.username in {login_name, FALLBACK_USER}
    assert bool(_USERNAME_RE.fullmatch(user.username)) is True, user.username


def test_lima_user_uid():
    user = lima_user(False)
    assert int(user.uid) >= 0


def test_lima_user_gid():
    user = lima_user(False)
    assert int(user.gid) >= 0


def test_lima_home_dir():
    user = lima_user(False)
    assert user.home_dir.startswith("/"), user.home_dir


def test_lima_user_is_stable():
    assert lima_user(False) == lima_user(True)


def test_invalid_username_maps_to_fallback():
    user, warnings = _resolve_lima_user("Bad User", "501", "20", "/home/bad")
    assert user.username == FALLBACK_USER
    assert user.uid == "501"
    assert user.gid == "20"
    assert len(warnings) == 1
    assert "Bad User" in warnings[0]
    assert VALID_NAME in warnings[0]


def test_valid_username_kept_without_warnings():
    user, warnings = _resolve_lima_user("alice", "501", "20", "/home/alice")
    assert user == LimaUser("alice", "501", "20", "/home/alice")
    assert warnings == []


def test_lookup_current_user():
    name = pwd.getpwuid(os.getuid()).pw_name
    user = lookup_user(name)
    assert isinstance(user, User)
    assert user.user == name
    assert user.uid == os.getuid()
    assert user.gid == pwd.getpwuid(os.getuid()).pw_gid
    assert user.group == grp.getgrgid(user.gid).gr_name


def test_lookup_unknown_user():
    with pytest.raises(LookupError):
        lookup_user("no-such-user-for-limacfg-tests")


def test_lookup_current_group():
    name = grp.getgrgid(os.getgid()).gr_name
    group = lookup_group(name)
    assert group == Group(name=name, gid=os.getgid())


def test_lookup_unknown_group():
    with pytest.raises(LookupError):
        lookup_group("no-such-group-for-limacfg-tests")