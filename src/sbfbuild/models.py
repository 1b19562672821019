"""Core typed dataclasses for toolchains, cache entries, crates and build results."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

import cbor2

BuildProfile = Literal["release", "debug"]
CrateState = Literal["pending", "building", "succeeded", "failed"]
VersionSource = Literal["cli", "env", "workspace", "default", "crate"]

DEFAULT_URL_TEMPLATE = (
    "https://github.com/anza-xyz/platform-tools/releases/download/"
    "{version}/platform-tools-{platform}.tar.bz2"
)


@dataclass(frozen=True, slots=True)
class ToolchainSpec:
    version: str
    platform: str
    url_template: str = DEFAULT_URL_TEMPLATE
    sha256: str | None = None
    source: VersionSource = "default"

    @property
    def url(self) -> str:
        return self.url_template.format(version=self.version, platform=self.platform)

    @property
    def key(self) -> tuple[str, str]:
        return (self.version, self.platform)


@dataclass(frozen=True, slots=True)
class CacheEntry:
    version: str
    platform: str
    path: Path
    marker_path: Path
    sha256: str | None = None
    installed_at: str | None = None

    @property
    def llvm_bin(self) -> Path:
        return self.path / "llvm" / "bin"

    @property
    def rust_dir(self) -> Path:
        return self.path / "rust"


@dataclass(frozen=True, slots=True)
class ProgramCrate:
    name: str
    manifest_path: Path
    target_dir: Path
    lib_name: str
    features: tuple[str, ...] = ()
    tools_version: str | None = None
    tools_sha256: str | None = None

    @property
    def crate_dir(self) -> Path:
        return self.manifest_path.parent


@dataclass(frozen=True, slots=True)
class BuildConfig:
    toolchain: ToolchainSpec
    toolchain_path: Path
    target_triple: str
    linker_path: Path
    sysroot_path: Path
    rustflags: tuple[str, ...] = ()
    crates: tuple[str, ...] = ()
    features: tuple[str, ...] = ()
    no_default_features: bool = False
    all_features: bool = False
    profile: BuildProfile = "release"
    cargo_args: tuple[str, ...] = ()
    deploy_dir: Path | None = None
    dump: bool = False


@dataclass(frozen=True, slots=True)
class BuildOptions:
    """Invocation-wide build settings taken from the command line."""

    arch: str = "v0"
    profile: BuildProfile = "release"
    features: tuple[str, ...] = ()
    no_default_features: bool = False
    all_features: bool = False
    rustflags: tuple[str, ...] = ()
    cargo_args: tuple[str, ...] = ()
    deploy_dir: Path | None = None
    dump: bool = False


@dataclass(frozen=True, slots=True)
class InvocationRequest:
    manifest_path: Path | None = None
    tools_version: str | None = None
    tools_sha256: str | None = None
    packages: tuple[str, ...] = ()
    workspace: bool = False
    options: BuildOptions = field(default_factory=BuildOptions)
    force_tools_install: bool = False
    skip_tools_install: bool = False
    require_integrity: bool = False
    crate_jobs: int = 1


@dataclass(slots=True)
class CrateBuildResult:
    crate: str
    manifest_path: Path
    state: CrateState = "pending"
    toolchain_version: str | None = None
    target_triple: str | None = None
    command: tuple[str, ...] = ()
    returncode: int | None = None
    artifact_path: Path | None = None
    deploy_path: Path | None = None
    diagnostic: str | None = None
    output: str = ""

    @property
    def succeeded(self) -> bool:
        return self.state == "succeeded"

    def to_payload(self) -> dict[str, object]:
        return {
            "crate": self.crate,
            "manifest_path": str(self.manifest_path),
            "state": self.state,
            "toolchain_version": self.toolchain_version,
            "target_triple": self.target_triple,
            "command": list(self.command),
            "returncode": self.returncode,
            "artifact_path": str(self.artifact_path) if self.artifact_path else None,
            "deploy_path": str(self.deploy_path) if self.deploy_path else None,
            "diagnostic": self.diagnostic,
        }


@dataclass(slots=True)
class InvocationResult:
    results: list[CrateBuildResult] = field(default_factory=list)
    schema_version: int = 1

    @property
    def ok(self) -> bool:
        return all(result.succeeded for result in self.results)

    def failed(self) -> list[CrateBuildResult]:
        return [result for result in self.results if not result.succeeded]

    def result_for(self, crate: str) -> CrateBuildResult | None:
        for result in self.results:
            if result.crate == crate:
                return result
        return None

    def to_json(self, path: str | Path | None = None) -> str:
        encoded = json.dumps(self._payload(), indent=2, sort_keys=True) + "\n"
        if path is not None:
            Path(path).write_text(encoded, encoding="utf-8")
        return encoded

    def to_cbor(self, path: str | Path | None = None) -> bytes:
        encoded = cbor2.dumps(self._payload(), canonical=True)
        if path is not None:
            Path(path).write_bytes(encoded)
        return encoded

    def _payload(self) -> dict[str, object]:
        return {
            "schema_version": self.schema_version,
            "ok": self.ok,
            "crates": [result.to_payload() for result in self.results],
        }


__all__ = [
    "BuildConfig",
    "BuildOptions",
    "BuildProfile",
    "CacheEntry",
    "CrateBuildResult",
    "CrateState",
    "DEFAULT_URL_TEMPLATE",
    "InvocationRequest",
    "InvocationResult",
    "ProgramCrate",
    "ToolchainSpec",
    "VersionSource",
]
