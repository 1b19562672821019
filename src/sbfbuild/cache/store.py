"""Version-keyed toolchain cache with atomic, marker-guarded installs."""

from __future__ import annotations

import json
import lzma
import os
import shutil
import tarfile
import tempfile
import uuid
import zlib
from collections.abc import Callable, Sequence
from contextlib import AbstractContextManager
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO

from sbfbuild.cache.keys import (
    MARKER_NAME,
    TRASH_PREFIX,
    entry_path,
    lock_path,
    marker_path,
    partial_prefix,
)
from sbfbuild.cache.lock import advisory_lock
from sbfbuild.errors import CacheIOError, ExtractionError
from sbfbuild.models import CacheEntry
from sbfbuild.observability import StructuredLogger
from sbfbuild.version import version_sort_key

RetentionPredicate = Callable[[CacheEntry], bool]


class ArchiveStore:
    """Installed toolchains for one host platform under a cache root.

    An entry is valid only when its install-complete marker exists. Installs
    extract into a sibling temporary directory, write the marker there, and
    publish with a single rename, so readers never observe a partial tree.
    """

    def __init__(
        self,
        root: str | Path,
        *,
        platform: str,
        logger: StructuredLogger | None = None,
    ) -> None:
        self.root = Path(root)
        self.platform = platform
        self.logger = logger

    def path_for(self, version: str) -> Path:
        return entry_path(self.root, version, self.platform)

    def has(self, version: str) -> bool:
        return marker_path(self.root, version, self.platform).is_file()

    def entry(self, version: str) -> CacheEntry | None:
        marker = marker_path(self.root, version, self.platform)
        if not marker.is_file():
            return None
        recorded = self._read_marker(marker)
        sha256 = recorded.get("sha256")
        installed_at = recorded.get("installed_at")
        return CacheEntry(
            version=version,
            platform=self.platform,
            path=marker.parent,
            marker_path=marker,
            sha256=sha256 if isinstance(sha256, str) else None,
            installed_at=installed_at if isinstance(installed_at, str) else None,
        )

    def entries(self) -> list[CacheEntry]:
        """Valid entries for this platform, oldest version first."""
        if not self.root.is_dir():
            return []
        found: list[CacheEntry] = []
        for child in self.root.iterdir():
            if child.name.startswith(".") or not child.is_dir():
                continue
            entry = self.entry(child.name)
            if entry is not None:
                found.append(entry)
        return sorted(found, key=lambda item: version_sort_key(item.version))

    def lock(
        self,
        version: str,
        *,
        shared: bool = False,
        blocking: bool = True,
    ) -> AbstractContextManager[bool]:
        return advisory_lock(
            lock_path(self.root, version, self.platform),
            shared=shared,
            blocking=blocking,
        )

    def install(
        self,
        version: str,
        archive: BinaryIO,
        *,
        sha256: str | None = None,
    ) -> CacheEntry:
        """Extract *archive* and publish it as the entry for *version*.

        Callers are expected to hold :meth:`lock` for *version*.
        """
        final_path = self.path_for(version)
        version_dir = final_path.parent
        try:
            version_dir.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=partial_prefix(self.platform), dir=version_dir))
        except OSError as exc:
            raise CacheIOError(
                "Unable to create toolchain staging directory.",
                hint="Check free space and permissions on the cache directory.",
                context={"operation": "install", "path": str(version_dir), "error": str(exc)},
            ) from exc

        try:
            self._extract(archive, staging, version=version)
            self._write_marker(staging, version=version, sha256=sha256)
            self._publish(staging, final_path, version=version)
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        entry = self.entry(version)
        if entry is None:
            raise CacheIOError(
                "Toolchain entry is missing its marker after install.",
                context={"operation": "install", "version": version, "path": str(final_path)},
            )
        self._log("install", f"installed {version} at {final_path}", version=version)
        return entry

    def remove(self, version: str) -> bool:
        """Delete the entry for *version*; callers hold the version lock."""
        path = self.path_for(version)
        if not path.exists():
            return False
        self._discard(path)
        self._remove_empty_version_dir(version)
        return True

    def sweep_partials(self, version: str) -> int:
        """Delete staging directories left behind by interrupted installs."""
        version_dir = self.path_for(version).parent
        if not version_dir.is_dir():
            return 0
        swept = 0
        for child in version_dir.glob(partial_prefix(self.platform) + "*"):
            shutil.rmtree(child, ignore_errors=True)
            swept += 1
        if swept:
            self._log("sweep", f"removed {swept} partial install(s)", version=version)
        return swept

    def prune(self, predicate: RetentionPredicate) -> list[CacheEntry]:
        """Remove entries matching *predicate*, skipping entries locked by a live process."""
        removed: list[CacheEntry] = []
        for entry in self.entries():
            if not predicate(entry):
                continue
            with self.lock(entry.version, blocking=False) as acquired:
                if not acquired:
                    self._log(
                        "prune",
                        f"skipped {entry.version}: in use by another process",
                        version=entry.version,
                        level="warning",
                    )
                    continue
                self._discard(entry.path)
                self._remove_empty_version_dir(entry.version)
            removed.append(entry)
            self._log("prune", f"pruned {entry.version}", version=entry.version)
        return removed

    def _extract(self, archive: BinaryIO, staging: Path, *, version: str) -> None:
        context = {"operation": "extract", "version": version, "path": str(staging)}
        try:
            with tarfile.open(fileobj=archive, mode="r|*") as tar:
                tar.extractall(staging, filter="data")
        except (tarfile.TarError, EOFError, zlib.error, lzma.LZMAError) as exc:
            raise ExtractionError(
                "Toolchain archive could not be extracted.",
                hint="The archive is corrupt or uses an unsupported compression.",
                context={**context, "error": str(exc)},
            ) from exc
        except OSError as exc:
            if exc.errno is None:
                # Decompressors report corrupt streams as errno-less OSError.
                raise ExtractionError(
                    "Toolchain archive could not be extracted.",
                    hint="The archive is corrupt or uses an unsupported compression.",
                    context={**context, "error": str(exc)},
                ) from exc
            raise CacheIOError(
                "Writing the toolchain to the cache failed.",
                hint="Check free space and permissions on the cache directory.",
                context={**context, "error": str(exc)},
            ) from exc
        if not any(staging.iterdir()):
            raise ExtractionError(
                "Toolchain archive is empty.",
                context=context,
            )

    def _write_marker(self, staging: Path, *, version: str, sha256: str | None) -> None:
        payload = {
            "version": version,
            "platform": self.platform,
            "sha256": sha256,
            "installed_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        }
        marker = staging / MARKER_NAME
        try:
            with marker.open("w", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as exc:
            raise CacheIOError(
                "Unable to write the install-complete marker.",
                context={"operation": "install", "path": str(marker), "error": str(exc)},
            ) from exc

    def _publish(self, staging: Path, final_path: Path, *, version: str) -> None:
        if final_path.exists():
            if (final_path / MARKER_NAME).is_file():
                self._log(
                    "install",
                    f"{version} already published; discarding staged copy",
                    version=version,
                )
                return
            self._discard(final_path)
        try:
            os.rename(staging, final_path)
        except OSError as exc:
            if (final_path / MARKER_NAME).is_file():
                return
            raise CacheIOError(
                "Unable to publish the installed toolchain.",
                hint="Check permissions on the cache directory.",
                context={"operation": "install", "path": str(final_path), "error": str(exc)},
            ) from exc

    def _discard(self, path: Path) -> None:
        # Rename first so the entry vanishes in one step; open handles stay valid.
        trash = self.root / f"{TRASH_PREFIX}{uuid.uuid4().hex}"
        try:
            os.rename(path, trash)
        except OSError as exc:
            raise CacheIOError(
                "Unable to remove toolchain entry.",
                context={"operation": "remove", "path": str(path), "error": str(exc)},
            ) from exc
        shutil.rmtree(trash, ignore_errors=True)

    def _remove_empty_version_dir(self, version: str) -> None:
        version_dir = self.path_for(version).parent
        try:
            version_dir.rmdir()
        except OSError:
            pass  # still holds other platforms or partial installs

    def _read_marker(self, marker: Path) -> dict[str, object]:
        try:
            parsed = json.loads(marker.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def _log(
        self,
        operation: str,
        message: str,
        *,
        version: str | None = None,
        level: str = "info",
    ) -> None:
        if self.logger is not None:
            self.logger.log(
                operation=operation,
                stage="cache",
                message=message,
                toolchain=version,
                level=level,
            )


def retain_newest(entries: Sequence[CacheEntry], keep: int) -> RetentionPredicate:
    """Predicate selecting every entry except the *keep* newest versions."""
    ordered = sorted(entries, key=lambda item: version_sort_key(item.version), reverse=True)
    kept = {entry.version for entry in ordered[: max(keep, 0)]}
    return lambda entry: entry.version not in kept


__all__ = ["ArchiveStore", "RetentionPredicate", "retain_newest"]
