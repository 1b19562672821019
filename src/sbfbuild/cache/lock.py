"""Advisory file locks serializing installs of one toolchain version."""

from __future__ import annotations

import fcntl
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sbfbuild.errors import CacheIOError


@contextmanager
def advisory_lock(path: Path, *, shared: bool = False, blocking: bool = True) -> Iterator[bool]:
    """Hold a ``flock`` on *path* for the duration of the block.

    Yields ``True`` once the lock is held. With ``blocking=False`` it yields
    ``False`` instead of waiting when another holder conflicts.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
    except OSError as exc:
        raise CacheIOError(
            "Unable to open toolchain lock file.",
            hint="Check permissions on the cache directory.",
            context={"operation": "lock", "path": str(path), "error": str(exc)},
        ) from exc
    try:
        flags = fcntl.LOCK_SH if shared else fcntl.LOCK_EX
        if not blocking:
            flags |= fcntl.LOCK_NB
        try:
            fcntl.flock(fd, flags)
        except BlockingIOError:
            yield False
            return
        try:
            yield True
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


__all__ = ["advisory_lock"]
