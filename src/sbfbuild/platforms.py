"""Host platform identifiers and SBF target triples."""

from __future__ import annotations

import platform
import sys
from typing import Literal

from sbfbuild.errors import ConfigError
from sbfbuild.version import ToolsVersion

SbfArch = Literal["v0", "v1", "v2", "v3", "v4"]
SBF_ARCHES: tuple[SbfArch, ...] = ("v0", "v1", "v2", "v3", "v4")

# Toolchains starting here name the v0 target ``sbpf-solana-solana``.
SBPF_TRIPLE_SINCE = ToolsVersion(major=1, minor=44)

_OS_NAMES = {
    "linux": "linux",
    "darwin": "osx",
    "win32": "windows",
}

_ARCH_NAMES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "arm64": "aarch64",
    "aarch64": "aarch64",
}


def host_platform(*, system: str | None = None, machine: str | None = None) -> str:
    """Return the archive platform identifier, e.g. ``linux-x86_64`` or ``osx-aarch64``."""
    system = system or sys.platform
    machine = (machine or platform.machine()).lower()
    os_name = next(
        (name for prefix, name in _OS_NAMES.items() if system.startswith(prefix)),
        None,
    )
    arch_name = _ARCH_NAMES.get(machine)
    if os_name is None or arch_name is None:
        raise ConfigError(
            "Unsupported host platform for the SBF toolchain.",
            hint="Prebuilt toolchains exist for linux, osx and windows on x86_64 or aarch64.",
            context={"system": system, "machine": machine},
        )
    return f"{os_name}-{arch_name}"


def target_triple(arch: str, version: ToolsVersion) -> str:
    if arch not in SBF_ARCHES:
        raise ConfigError(
            f"Unknown SBF architecture {arch!r}.",
            hint=f"Choose one of: {', '.join(SBF_ARCHES)}.",
            context={"arch": arch},
        )
    if arch == "v0":
        return "sbpf-solana-solana" if version >= SBPF_TRIPLE_SINCE else "sbf-solana-solana"
    return f"sbpf{arch}-solana-solana"


def triple_env_key(triple: str) -> str:
    """Cargo's environment spelling of a target triple (``CARGO_TARGET_<KEY>_*``)."""
    return triple.upper().replace("-", "_").replace(".", "_")


__all__ = [
    "SBF_ARCHES",
    "SBPF_TRIPLE_SINCE",
    "SbfArch",
    "host_platform",
    "target_triple",
    "triple_env_key",
]
