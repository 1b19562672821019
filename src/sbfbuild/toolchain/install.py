"""Make a resolved toolchain available in the cache, fetching only when needed."""

from __future__ import annotations

from dataclasses import dataclass, field

from sbfbuild.cache.store import ArchiveStore
from sbfbuild.errors import NotFoundError
from sbfbuild.fetch.http import Fetcher
from sbfbuild.models import CacheEntry, ToolchainSpec
from sbfbuild.observability import StructuredLogger


def ensure_toolchain(
    spec: ToolchainSpec,
    *,
    store: ArchiveStore,
    fetcher: Fetcher,
    force: bool = False,
    skip_install: bool = False,
    logger: StructuredLogger | None = None,
) -> CacheEntry:
    """Return the cache entry for *spec*, installing it under the version lock if absent.

    The marker is checked before locking and again after, so concurrent
    callers requesting the same version perform exactly one extraction.
    """
    if not force:
        entry = store.entry(spec.version)
        if entry is not None:
            _log(logger, spec, f"using cached toolchain {spec.version} at {entry.path}")
            return entry
    if skip_install:
        raise NotFoundError(
            f"Toolchain {spec.version} is not installed and installs are disabled.",
            hint="Drop --skip-tools-install or install the toolchain first.",
            context={
                "operation": "install",
                "version": spec.version,
                "path": str(store.path_for(spec.version)),
            },
        )

    _log(logger, spec, f"waiting for install lock on {spec.version}", level="debug")
    with store.lock(spec.version):
        if force:
            if store.remove(spec.version):
                _log(logger, spec, f"removed cached toolchain {spec.version} for reinstall")
        else:
            entry = store.entry(spec.version)
            if entry is not None:
                _log(logger, spec, f"toolchain {spec.version} was installed by another process")
                return entry
        store.sweep_partials(spec.version)
        fetcher.sweep_stale(spec)
        _log(logger, spec, f"installing toolchain {spec.version} for {spec.platform}")
        with fetcher.fetch(spec) as archive:
            return store.install(spec.version, archive, sha256=spec.sha256)


@dataclass(slots=True)
class ToolchainInstaller:
    """Per-invocation front for :func:`ensure_toolchain` that installs each version once."""

    store: ArchiveStore
    fetcher: Fetcher
    force: bool = False
    skip_install: bool = False
    logger: StructuredLogger | None = None
    _entries: dict[tuple[str, str], CacheEntry] = field(default_factory=dict)

    def ensure(self, spec: ToolchainSpec) -> CacheEntry:
        entry = self._entries.get(spec.key)
        if entry is None:
            entry = ensure_toolchain(
                spec,
                store=self.store,
                fetcher=self.fetcher,
                force=self.force,
                skip_install=self.skip_install,
                logger=self.logger,
            )
            self._entries[spec.key] = entry
        return entry


def _log(
    logger: StructuredLogger | None,
    spec: ToolchainSpec,
    message: str,
    *,
    level: str = "info",
) -> None:
    if logger is not None:
        logger.log(
            operation="ensure_toolchain",
            stage="toolchain",
            message=message,
            toolchain=spec.version,
            level=level,
        )


__all__ = ["ToolchainInstaller", "ensure_toolchain"]
