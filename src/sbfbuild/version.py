"""Toolchain version parsing and ordering."""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import total_ordering

from sbfbuild.errors import ConfigError

DEFAULT_TOOLS_VERSION = "v1.48"

_VERSION_PATTERN = re.compile(r"^v?(\d+)\.(\d+)(?:\.(\d+))?$")


@total_ordering
@dataclass(frozen=True, slots=True)
class ToolsVersion:
    """A parsed toolchain version; ``text`` is the canonical ``vX.Y[.Z]`` form."""

    major: int
    minor: int
    patch: int | None = None

    @property
    def text(self) -> str:
        if self.patch is None:
            return f"v{self.major}.{self.minor}"
        return f"v{self.major}.{self.minor}.{self.patch}"

    def __str__(self) -> str:
        return self.text

    def _key(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch or 0)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, ToolsVersion):
            return NotImplemented
        return self._key() < other._key()


def parse_version(raw: str, *, source: str = "version") -> ToolsVersion:
    """Parse ``1.43``, ``v1.43``, ``1.43.1`` or ``v1.43.1``; raise ConfigError otherwise."""
    match = _VERSION_PATTERN.fullmatch(raw.strip())
    if match is None:
        raise ConfigError(
            f"Invalid toolchain version {raw!r}.",
            hint="Use a version like v1.43 or 1.43.1.",
            context={"source": source, "value": raw},
        )
    major, minor, patch = match.groups()
    return ToolsVersion(
        major=int(major),
        minor=int(minor),
        patch=int(patch) if patch is not None else None,
    )


def version_sort_key(text: str) -> tuple[int, int, int]:
    """Ordering key for cache directory names; unparseable names sort first."""
    match = _VERSION_PATTERN.fullmatch(text)
    if match is None:
        return (-1, -1, -1)
    major, minor, patch = match.groups()
    return (int(major), int(minor), int(patch or 0))


__all__ = [
    "DEFAULT_TOOLS_VERSION",
    "ToolsVersion",
    "parse_version",
    "version_sort_key",
]
