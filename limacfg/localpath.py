"""Expansion of local paths that may start with a tilde."""

from __future__ import annotations

import os


def expand(orig: str) -> str:
    """Expand "~", "~/" and "~/foo" and return an absolute path.

    Paths like "~foo/bar" are not supported and raise ValueError.
    """
    if orig == "":
        raise ValueError("empty path")
    home = os.path.expanduser("~")
    if home == "~":
        raise OSError("cannot determine the home directory")
    path = orig
    if path.startswith("~"):
        if path == "~" or path.startswith("~/"):
            path = home + path[1:]
        else:
            raise ValueError(f"unexpandable path {orig!r}")
    return os.path.abspath(path)