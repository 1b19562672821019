"""Program crate discovery from ``cargo metadata``."""

from __future__ import annotations

import json
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from sbfbuild.errors import ConfigError, MetadataError
from sbfbuild.models import ProgramCrate
from sbfbuild.observability import StructuredLogger

METADATA_NAMESPACE = "solana"
PROGRAM_CRATE_TYPE = "cdylib"

Runner = Callable[..., subprocess.CompletedProcess[str]]


@dataclass(frozen=True, slots=True)
class WorkspaceInfo:
    root: Path
    target_dir: Path
    crates: tuple[ProgramCrate, ...]
    members: tuple[str, ...] = ()
    root_package: str | None = None
    tools_version: str | None = None
    tools_sha256: str | None = None

    def crate(self, name: str) -> ProgramCrate | None:
        for crate in self.crates:
            if crate.name == name:
                return crate
        return None


class WorkspaceInspector:
    def __init__(
        self,
        *,
        cargo: Sequence[str] = ("cargo",),
        runner: Runner = subprocess.run,
        logger: StructuredLogger | None = None,
    ) -> None:
        self.cargo = tuple(cargo)
        self._run = runner
        self.logger = logger

    def inspect(self, manifest_path: Path | None = None, *, offline: bool = False) -> WorkspaceInfo:
        manifest = (manifest_path or Path.cwd() / "Cargo.toml").resolve()
        command = [
            *self.cargo,
            "metadata",
            "--format-version",
            "1",
            "--no-deps",
            "--manifest-path",
            str(manifest),
        ]
        if offline:
            command.append("--offline")
        context = {"operation": "metadata", "manifest": str(manifest), "command": " ".join(command)}
        try:
            completed = self._run(command, capture_output=True, text=True, check=False)
        except OSError as exc:
            raise MetadataError(
                "Unable to run cargo metadata.",
                hint="Ensure cargo is installed and on PATH, or set CARGO.",
                context={**context, "error": str(exc)},
            ) from exc
        if completed.returncode != 0:
            raise MetadataError(
                "cargo metadata failed.",
                hint="Fix the workspace manifest errors reported by cargo.",
                context={
                    **context,
                    "returncode": str(completed.returncode),
                    "stderr": completed.stderr[:2000] if completed.stderr else "",
                },
            )
        try:
            payload = json.loads(completed.stdout)
        except json.JSONDecodeError as exc:
            raise MetadataError(
                "cargo metadata returned invalid JSON.",
                context={**context, "error": str(exc)},
            ) from exc
        info = parse_metadata(payload, manifest_path=manifest)
        if self.logger is not None:
            self.logger.log(
                operation="inspect",
                stage="workspace",
                message=f"found {len(info.crates)} program crate(s) in {info.root}",
                extra={"crates": [crate.name for crate in info.crates]},
            )
        return info


def parse_metadata(payload: Any, *, manifest_path: Path | None = None) -> WorkspaceInfo:
    if not isinstance(payload, dict):
        raise MetadataError("cargo metadata payload is not an object.")
    packages = payload.get("packages")
    members = payload.get("workspace_members")
    if not isinstance(packages, list) or not isinstance(members, list):
        raise MetadataError("cargo metadata payload is missing packages or workspace_members.")
    target_dir = Path(_required_str(payload, "target_directory"))
    root = Path(_required_str(payload, "workspace_root"))

    by_id: dict[str, dict[str, Any]] = {}
    for package in packages:
        if not isinstance(package, dict):
            raise MetadataError("cargo metadata package entry is not an object.")
        by_id[_required_str(package, "id")] = package

    crates: list[ProgramCrate] = []
    member_names: list[str] = []
    root_package: str | None = None
    for member_id in members:
        package = by_id.get(member_id)
        if package is None:
            raise MetadataError(
                "Workspace member is missing from packages.",
                context={"id": str(member_id)},
            )
        name = _required_str(package, "name")
        package_manifest = Path(_required_str(package, "manifest_path"))
        member_names.append(name)
        if manifest_path is not None and _same_path(package_manifest, manifest_path):
            root_package = name
        crate = _program_crate(package, name=name, manifest=package_manifest, target_dir=target_dir)
        if crate is not None:
            crates.append(crate)

    workspace_settings = _solana_settings(payload.get("metadata"), owner="workspace")
    tools_version = _optional_str(workspace_settings, "tools-version", owner="workspace")
    tools_sha256 = _optional_str(workspace_settings, "tools-sha256", owner="workspace")
    if tools_version is None and root_package is not None:
        package = next(p for p in by_id.values() if p.get("name") == root_package)
        package_settings = _solana_settings(package.get("metadata"), owner=root_package)
        tools_version = _optional_str(package_settings, "tools-version", owner=root_package)
        tools_sha256 = _optional_str(package_settings, "tools-sha256", owner=root_package)

    return WorkspaceInfo(
        root=root,
        target_dir=target_dir,
        crates=tuple(crates),
        members=tuple(member_names),
        root_package=root_package,
        tools_version=tools_version,
        tools_sha256=tools_sha256,
    )


def select_crates(
    info: WorkspaceInfo,
    *,
    packages: Sequence[str] = (),
    workspace: bool = False,
) -> tuple[ProgramCrate, ...]:
    """Pick the crates to build, keeping workspace order."""
    if packages:
        wanted = set(packages)
        for name in packages:
            if info.crate(name) is not None:
                continue
            if name in info.members:
                raise ConfigError(
                    f"Package {name!r} is not a program crate.",
                    hint="Program crates declare crate-type = [\"cdylib\"] in [lib].",
                    context={"package": name},
                )
            raise ConfigError(
                f"Package {name!r} is not a member of the workspace.",
                context={"package": name, "workspace": str(info.root)},
            )
        return tuple(crate for crate in info.crates if crate.name in wanted)
    if info.root_package is not None and not workspace:
        crate = info.crate(info.root_package)
        if crate is None:
            raise ConfigError(
                f"Package {info.root_package!r} is not a program crate.",
                hint="Pass --workspace to build every program crate in the workspace.",
                context={"package": info.root_package},
            )
        return (crate,)
    return info.crates


def _program_crate(
    package: Mapping[str, Any],
    *,
    name: str,
    manifest: Path,
    target_dir: Path,
) -> ProgramCrate | None:
    settings = _solana_settings(package.get("metadata"), owner=name)
    explicit = settings.get("program")
    if explicit is not None and not isinstance(explicit, bool):
        raise MetadataError(
            "Package metadata `program` must be a boolean.",
            context={"package": name},
        )
    lib_target = _lib_target(package)
    is_program = lib_target is not None and PROGRAM_CRATE_TYPE in lib_target.get("crate_types", ())
    if explicit is not None:
        is_program = explicit
    if not is_program:
        return None
    target_name = lib_target.get("name") if lib_target is not None else None
    lib_name = (target_name if isinstance(target_name, str) else name).replace("-", "_")
    features = package.get("features") or {}
    if not isinstance(features, dict):
        raise MetadataError("Package features must be an object.", context={"package": name})
    return ProgramCrate(
        name=name,
        manifest_path=manifest,
        target_dir=target_dir,
        lib_name=lib_name,
        features=tuple(sorted(features)),
        tools_version=_optional_str(settings, "tools-version", owner=name),
        tools_sha256=_optional_str(settings, "tools-sha256", owner=name),
    )


def _lib_target(package: Mapping[str, Any]) -> dict[str, Any] | None:
    targets = package.get("targets") or []
    if not isinstance(targets, list):
        return None
    for target in targets:
        if not isinstance(target, dict):
            continue
        kinds = target.get("kind") or []
        if any(kind in ("lib", "cdylib", "rlib", "staticlib", "dylib") for kind in kinds):
            return target
    return None


def _solana_settings(metadata: Any, *, owner: str) -> dict[str, Any]:
    if not isinstance(metadata, dict):
        return {}
    settings = metadata.get(METADATA_NAMESPACE)
    if settings is None:
        return {}
    if not isinstance(settings, dict):
        raise MetadataError(
            f"`metadata.{METADATA_NAMESPACE}` must be a table.",
            context={"owner": owner},
        )
    return settings


def _optional_str(settings: Mapping[str, Any], key: str, *, owner: str) -> str | None:
    value = settings.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise MetadataError(
            f"`metadata.{METADATA_NAMESPACE}.{key}` must be a non-empty string.",
            context={"owner": owner},
        )
    return value


def _required_str(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise MetadataError(f"Invalid cargo metadata `{key}` value.")
    return value


def _same_path(left: Path, right: Path) -> bool:
    try:
        return left.resolve() == right.resolve()
    except OSError:
        return left == right


__all__ = [
    "METADATA_NAMESPACE",
    "PROGRAM_CRATE_TYPE",
    "WorkspaceInfo",
    "WorkspaceInspector",
    "parse_metadata",
    "select_crates",
]
