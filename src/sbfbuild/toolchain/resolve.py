"""Toolchain version selection.

Precedence for the invocation-wide toolchain is explicit CLI override, then
the environment override, then the workspace pin, then the built-in default.
A program crate that pins its own version is built with that version; its
siblings keep the invocation-wide toolchain.
"""

from __future__ import annotations

from sbfbuild.models import DEFAULT_URL_TEMPLATE, ProgramCrate, ToolchainSpec, VersionSource
from sbfbuild.version import DEFAULT_TOOLS_VERSION, parse_version

_SOURCE_LABELS: dict[VersionSource, str] = {
    "cli": "--tools-version",
    "env": "CARGO_BUILD_SBF_TOOLS_VERSION",
    "workspace": "workspace metadata tools-version",
    "default": "built-in default",
    "crate": "package metadata tools-version",
}


def resolve_toolchain(
    *,
    platform: str,
    explicit: str | None = None,
    environment: str | None = None,
    workspace_pin: str | None = None,
    default: str = DEFAULT_TOOLS_VERSION,
    url_template: str = DEFAULT_URL_TEMPLATE,
    sha256: str | None = None,
    workspace_sha256: str | None = None,
) -> ToolchainSpec:
    candidates: tuple[tuple[VersionSource, str | None], ...] = (
        ("cli", explicit),
        ("env", environment),
        ("workspace", workspace_pin),
        ("default", default),
    )
    source, raw = next((src, value) for src, value in candidates if value)
    version = parse_version(raw, source=_SOURCE_LABELS[source])
    if sha256 is None and source == "workspace":
        sha256 = workspace_sha256
    return ToolchainSpec(
        version=version.text,
        platform=platform,
        url_template=url_template,
        sha256=sha256.lower() if sha256 else None,
        source=source,
    )


def resolve_crate_toolchain(crate: ProgramCrate, base: ToolchainSpec) -> ToolchainSpec:
    """Return the toolchain *crate* builds with: its own pin if any, else *base*."""
    if not crate.tools_version:
        return base
    version = parse_version(crate.tools_version, source=f"{crate.name} {_SOURCE_LABELS['crate']}")
    if version.text == base.version:
        return base
    return ToolchainSpec(
        version=version.text,
        platform=base.platform,
        url_template=base.url_template,
        sha256=crate.tools_sha256.lower() if crate.tools_sha256 else None,
        source="crate",
    )


def describe_source(spec: ToolchainSpec) -> str:
    return _SOURCE_LABELS[spec.source]


__all__ = ["describe_source", "resolve_crate_toolchain", "resolve_toolchain"]
