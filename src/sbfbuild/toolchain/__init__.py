"""Toolchain resolution and installation."""

from .install import ToolchainInstaller, ensure_toolchain
from .resolve import describe_source, resolve_crate_toolchain, resolve_toolchain

__all__ = [
    "ToolchainInstaller",
    "describe_source",
    "ensure_toolchain",
    "resolve_crate_toolchain",
    "resolve_toolchain",
]
