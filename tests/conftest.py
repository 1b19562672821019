"""Shared test fixtures."""

from __future__ import annotations

import hashlib
import io
import json
import sys
import tarfile
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

from sbfbuild.config import Settings

PLATFORM = "linux-x86_64"

FAKE_CARGO = r'''
import json
import os
import sys
import time
from pathlib import Path


def option(args, name):
    return args[args.index(name) + 1] if name in args else None


def find_workspace(start):
    for parent in (start, *start.parents):
        if (parent / "metadata.json").is_file():
            return parent
    raise SystemExit("fake cargo: metadata.json not found")


def main(argv):
    manifest = Path(option(argv, "--manifest-path")).resolve()
    root = find_workspace(manifest.parent)
    metadata = json.loads((root / "metadata.json").read_text(encoding="utf-8"))
    env = {
        key: value
        for key, value in os.environ.items()
        if key.startswith("CARGO_TARGET_") or key in ("RUSTC", "CC", "AR", "OBJDUMP", "OBJCOPY")
    }
    with (root / "invocations.jsonl").open("a", encoding="utf-8") as log:
        log.write(json.dumps({"args": argv, "env": env}) + "\n")

    if argv[0] == "metadata":
        print(json.dumps(metadata))
        return 0
    if argv[0] != "build":
        return 2
    if (manifest.parent / "FAIL").exists():
        print("error[E0425]: cannot find value `missing` in this scope", file=sys.stderr)
        return 101
    if (manifest.parent / "HANG").exists():
        (manifest.parent / "HANG.pid").write_text(str(os.getpid()), encoding="utf-8")
        time.sleep(60)
    package = next(
        p for p in metadata["packages"] if Path(p["manifest_path"]).resolve() == manifest
    )
    profile = "release" if "--release" in argv else "debug"
    out = Path(metadata["target_directory"]) / option(argv, "--target") / profile
    out.mkdir(parents=True, exist_ok=True)
    lib = package["name"].replace("-", "_")
    (out / (lib + ".so")).write_bytes(b"\x7fELF fake program")
    print("   Compiling " + package["name"] + " v0.1.0")
    return 0


sys.exit(main(sys.argv[1:]))
'''


@dataclass(frozen=True, slots=True)
class FakeWorkspace:
    root: Path

    @property
    def manifest(self) -> Path:
        return self.root / "Cargo.toml"

    @property
    def target_dir(self) -> Path:
        return self.root / "target"

    def crate_dir(self, name: str) -> Path:
        return self.root / "programs" / name

    def fail(self, name: str) -> None:
        (self.crate_dir(name) / "FAIL").write_text("", encoding="utf-8")

    def hang(self, name: str) -> Path:
        """Make the build of *name* block; returns the file its pid is written to."""
        (self.crate_dir(name) / "HANG").write_text("", encoding="utf-8")
        return self.crate_dir(name) / "HANG.pid"

    def invocations(self, command: str | None = None) -> list[dict[str, Any]]:
        log = self.root / "invocations.jsonl"
        if not log.is_file():
            return []
        entries = [json.loads(line) for line in log.read_text(encoding="utf-8").splitlines()]
        if command is None:
            return entries
        return [entry for entry in entries if entry["args"][0] == command]


@dataclass(frozen=True, slots=True)
class ToolchainMirror:
    root: Path

    @property
    def template(self) -> str:
        return self.root.as_uri() + "/{version}/platform-tools-{platform}.tar.bz2"

    def publish(self, version: str, platform: str = PLATFORM) -> str:
        """Write a toolchain archive for *version* and return its sha256."""
        archive = self.root / version / f"platform-tools-{platform}.tar.bz2"
        return write_toolchain_archive(archive, marker=version)


def package_entry(
    root: Path,
    name: str,
    *,
    crate_types: Sequence[str] = ("cdylib", "lib"),
    features: Sequence[str] = (),
    metadata: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "name": name,
        "version": "0.1.0",
        "id": f"path+file://{root}/programs/{name}#{name}@0.1.0",
        "manifest_path": str(root / "programs" / name / "Cargo.toml"),
        "targets": [
            {
                "kind": list(crate_types),
                "crate_types": list(crate_types),
                "name": name.replace("-", "_"),
            }
        ],
        "features": {feature: [] for feature in features},
        "metadata": dict(metadata) if metadata is not None else None,
    }


def write_toolchain_archive(path: Path, *, marker: str = "toolchain") -> str:
    files = {
        "llvm/bin/ld.lld": b"#!/bin/sh\n",
        "llvm/bin/clang": b"#!/bin/sh\n",
        "rust/bin/rustc": b"#!/bin/sh\n",
        "rust/lib/rustlib/VERSION": marker.encode(),
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:bz2") as tar:
        for name, payload in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(payload)
            info.mode = 0o755
            tar.addfile(info, io.BytesIO(payload))
    return hashlib.sha256(path.read_bytes()).hexdigest()


@pytest.fixture
def fake_cargo(tmp_path: Path) -> tuple[str, ...]:
    script = tmp_path / "fake_cargo.py"
    script.write_text(FAKE_CARGO, encoding="utf-8")
    return (sys.executable, str(script))


@pytest.fixture
def mirror(tmp_path: Path) -> ToolchainMirror:
    return ToolchainMirror(tmp_path / "mirror")


@pytest.fixture
def settings(tmp_path: Path, fake_cargo: tuple[str, ...], mirror: ToolchainMirror) -> Settings:
    return Settings(
        cache_root=tmp_path / "cache",
        url_template=mirror.template,
        cargo=fake_cargo,
        fetch_timeout=5.0,
        fetch_attempts=1,
    )


@pytest.fixture
def make_workspace(tmp_path: Path) -> Callable[..., FakeWorkspace]:
    def _make(
        programs: Sequence[str] = ("alpha",),
        *,
        libraries: Sequence[str] = (),
        pin: str | None = None,
        pin_sha256: str | None = None,
        crate_metadata: Mapping[str, Mapping[str, Any]] | None = None,
        features: Mapping[str, Sequence[str]] | None = None,
    ) -> FakeWorkspace:
        workspace = FakeWorkspace(tmp_path / "ws")
        root = workspace.root
        root.mkdir(parents=True, exist_ok=True)
        workspace.manifest.write_text("[workspace]\n", encoding="utf-8")
        packages: list[dict[str, Any]] = []
        for name in programs:
            packages.append(
                package_entry(
                    root,
                    name,
                    features=(features or {}).get(name, ()),
                    metadata=(crate_metadata or {}).get(name),
                )
            )
        for name in libraries:
            packages.append(package_entry(root, name, crate_types=("lib",)))
        for package in packages:
            crate_dir = Path(package["manifest_path"]).parent
            crate_dir.mkdir(parents=True, exist_ok=True)
            (crate_dir / "Cargo.toml").write_text("[package]\n", encoding="utf-8")

        solana: dict[str, str] = {}
        if pin is not None:
            solana["tools-version"] = pin
        if pin_sha256 is not None:
            solana["tools-sha256"] = pin_sha256
        payload = {
            "packages": packages,
            "workspace_members": [package["id"] for package in packages],
            "workspace_root": str(root),
            "target_directory": str(workspace.target_dir),
            "metadata": {"solana": solana} if solana else None,
            "version": 1,
        }
        (root / "metadata.json").write_text(json.dumps(payload), encoding="utf-8")
        return workspace

    return _make


@pytest.fixture
def toolchain_archive(tmp_path: Path) -> Callable[..., tuple[Path, str]]:
    def _make(version: str = "v1.43") -> tuple[Path, str]:
        path = tmp_path / "archives" / f"{version}.tar.bz2"
        return path, write_toolchain_archive(path, marker=version)

    return _make
