"""Toolchain cache APIs."""

from .keys import entry_path, lock_path, marker_path
from .lock import advisory_lock
from .store import ArchiveStore, RetentionPredicate, retain_newest

__all__ = [
    "ArchiveStore",
    "RetentionPredicate",
    "advisory_lock",
    "entry_path",
    "lock_path",
    "marker_path",
    "retain_newest",
]
