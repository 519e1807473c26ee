import os

import pytest

from limacfg.localpath import expand


@pytest.fixture
def home(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    return str(tmp_path)


def test_expand_tilde(home):
    assert expand("~") == home


def test_expand_tilde_slash(home):
    assert expand("~/") == home


def test_expand_tilde_subpath(home):
    assert expand("~/foo/bar") == os.path.join(home, "foo", "bar")


def test_expand_relative(home):
    assert expand("foo") == os.path.join(os.getcwd(), "foo")


def test_expand_absolute_is_normalized(home):
    assert expand("/a/./b/../c") == os.path.abspath("/a/c")


def test_expand_other_user_rejected(home):
    with pytest.raises(ValueError, match="unexpandable"):
        expand("~foo/bar")


def test_expand_empty_rejected():
    with pytest.raises(ValueError, match="empty path"):
        expand("")