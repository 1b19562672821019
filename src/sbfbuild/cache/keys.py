"""Deterministic cache layout.

Every path is derived from ``(root, version, platform)`` alone, so separate
processes agree on locations without coordinating::

    <root>/<version>/<platform>/                 installed toolchain
    <root>/<version>/<platform>/.install-complete marker written before publish
    <root>/<version>/.<platform>.partial-*/      in-progress extraction
    <root>/.locks/<version>-<platform>.lock      advisory lock file
"""

from __future__ import annotations

from pathlib import Path

MARKER_NAME = ".install-complete"
LOCKS_DIRNAME = ".locks"
TRASH_PREFIX = ".trash-"


def entry_path(root: Path, version: str, platform: str) -> Path:
    return root / version / platform


def marker_path(root: Path, version: str, platform: str) -> Path:
    return entry_path(root, version, platform) / MARKER_NAME


def lock_path(root: Path, version: str, platform: str) -> Path:
    return root / LOCKS_DIRNAME / f"{version}-{platform}.lock"


def partial_prefix(platform: str) -> str:
    return f".{platform}.partial-"


__all__ = [
    "LOCKS_DIRNAME",
    "MARKER_NAME",
    "TRASH_PREFIX",
    "entry_path",
    "lock_path",
    "marker_path",
    "partial_prefix",
]
