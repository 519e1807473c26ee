"""Exclusive locks on directories."""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager

if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

log = logging.getLogger(__name__)


@contextmanager
def _posix_lock(directory: str) -> Iterator[None]:
    fd = os.open(directory, os.O_RDONLY)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
        except OSError as exc:
            raise OSError(exc.errno, f"failed to lock {directory!r}: {exc.strerror}") from exc
        try:
            yield
        finally:
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            except OSError:
                log.exception("failed to unlock %r", directory)
    finally:
        os.close(fd)


@contextmanager
def _windows_lock(directory: str) -> Iterator[None]:
    fd = os.open(directory + ".lock", os.O_CREAT | os.O_RDWR, 0o644)
    try:
        try:
            msvcrt.locking(fd, msvcrt.LK_LOCK, 1)
        except OSError as exc:
            raise OSError(exc.errno, f"failed to lock {directory!r}: {exc.strerror}") from exc
        try:
            yield
        finally:
            try:
                os.lseek(fd, 0, os.SEEK_SET)
                msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
            except OSError:
                log.exception("failed to unlock %r", directory)
    finally:
        os.close(fd)


@contextmanager
def dir_lock(directory: str | os.PathLike) -> Iterator[None]:
    """Hold an exclusive lock on a directory for the duration of the block."""
    path = os.fspath(directory)
    lock = _windows_lock if sys.platform == "win32" else _posix_lock
    with lock(path):
        yield