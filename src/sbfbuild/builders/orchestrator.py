"""Workspace build orchestration.

Resolution runs first and is fatal: every crate's toolchain is installed before
any build starts. Builds then run fail-open: each scheduled crate is attempted
and failures are collected on the :class:`InvocationResult`.
"""

from __future__ import annotations

import os
from collections.abc import Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import ExitStack
from dataclasses import dataclass

from sbfbuild.builders.cargo import CargoBuilder
from sbfbuild.builders.env import build_config
from sbfbuild.cache.store import ArchiveStore
from sbfbuild.config import Settings
from sbfbuild.errors import CacheIOError, ConfigError
from sbfbuild.fetch.http import DOWNLOADS_DIRNAME, Fetcher
from sbfbuild.fetch.retry import RetryPolicy
from sbfbuild.models import (
    BuildConfig,
    BuildOptions,
    CrateBuildResult,
    InvocationRequest,
    InvocationResult,
    ProgramCrate,
    ToolchainSpec,
)
from sbfbuild.observability import StructuredLogger
from sbfbuild.platforms import SBF_ARCHES, host_platform
from sbfbuild.toolchain.install import ToolchainInstaller
from sbfbuild.toolchain.resolve import describe_source, resolve_crate_toolchain, resolve_toolchain
from sbfbuild.version import parse_version
from sbfbuild.workspace.metadata import WorkspaceInspector, select_crates


@dataclass(frozen=True, slots=True)
class PlannedBuild:
    crate: ProgramCrate
    config: BuildConfig


def worker_count(jobs: int, scheduled: int) -> int:
    """Pool size for *scheduled* crates; ``jobs == 0`` means one worker per CPU."""
    if jobs <= 0:
        jobs = os.cpu_count() or 1
    return max(1, min(jobs, scheduled))


class BuildOrchestrator:
    def __init__(
        self,
        *,
        installer: ToolchainInstaller,
        builder: CargoBuilder,
        logger: StructuredLogger | None = None,
        jobs: int = 1,
    ) -> None:
        self.installer = installer
        self.builder = builder
        self.logger = logger
        self.jobs = jobs

    @property
    def store(self) -> ArchiveStore:
        return self.installer.store

    def plan(
        self,
        crates: Sequence[ProgramCrate],
        *,
        base: ToolchainSpec,
        options: BuildOptions,
    ) -> list[PlannedBuild]:
        """Resolve and install each crate's toolchain; errors here abort the invocation."""
        names = tuple(crate.name for crate in crates)
        planned: list[PlannedBuild] = []
        for crate in crates:
            spec = resolve_crate_toolchain(crate, base)
            if spec is not base:
                self._log(
                    f"uses its own toolchain {spec.version} ({describe_source(spec)})",
                    crate=crate.name,
                    toolchain=spec.version,
                )
            entry = self.installer.ensure(spec)
            config = build_config(options, spec=spec, entry=entry, crates=names)
            planned.append(PlannedBuild(crate=crate, config=config))
        return planned

    def run(self, planned: Sequence[PlannedBuild]) -> InvocationResult:
        results = [
            CrateBuildResult(crate=item.crate.name, manifest_path=item.crate.manifest_path)
            for item in planned
        ]
        if not planned:
            self._log("no program crates to build", level="warning")
            return InvocationResult(results=results)

        with ExitStack() as stack:
            self._hold_toolchains(stack, planned)
            workers = worker_count(self.jobs, len(planned))
            self.builder.prefix_output = workers > 1
            if workers == 1:
                self._run_sequential(planned, results)
            else:
                self._run_parallel(planned, results, workers)

        invocation = InvocationResult(results=results)
        failed = invocation.failed()
        if failed:
            self._log(
                f"{len(failed)} of {len(results)} crate(s) failed: "
                + ", ".join(result.crate for result in failed),
                level="error",
            )
        else:
            self._log(f"built {len(results)} crate(s)")
        return invocation

    def _hold_toolchains(self, stack: ExitStack, planned: Sequence[PlannedBuild]) -> None:
        # Shared locks keep prune from deleting a toolchain while builds use it.
        versions = sorted({item.config.toolchain.version for item in planned})
        for version in versions:
            stack.enter_context(self.store.lock(version, shared=True))
            if not self.store.has(version):
                raise CacheIOError(
                    f"Toolchain {version} disappeared from the cache before the build started.",
                    hint="Another process pruned it; rerun the build.",
                    context={"operation": "build", "version": version},
                )

    def _run_sequential(
        self,
        planned: Sequence[PlannedBuild],
        results: list[CrateBuildResult],
    ) -> None:
        try:
            for index, item in enumerate(planned):
                results[index].state = "building"
                results[index] = self.builder.build(item.crate, item.config)
        except KeyboardInterrupt:
            self._interrupt()
            raise

    def _run_parallel(
        self,
        planned: Sequence[PlannedBuild],
        results: list[CrateBuildResult],
        workers: int,
    ) -> None:
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sbf-build")
        futures: dict[Future[CrateBuildResult], int] = {}
        try:
            for index, item in enumerate(planned):
                results[index].state = "building"
                futures[executor.submit(self.builder.build, item.crate, item.config)] = index
            for future, index in futures.items():
                results[index] = future.result()
        except KeyboardInterrupt:
            for future in futures:
                future.cancel()
            self._interrupt()
            executor.shutdown(wait=True, cancel_futures=True)
            self.builder.processes.terminate_all()
            raise
        executor.shutdown(wait=True)

    def _interrupt(self) -> None:
        terminated = self.builder.processes.close()
        self._log(f"interrupted; terminated {terminated} cargo process(es)", level="warning")

    def _log(
        self,
        message: str,
        *,
        crate: str | None = None,
        toolchain: str | None = None,
        level: str = "info",
    ) -> None:
        if self.logger is not None:
            self.logger.log(
                operation="orchestrate",
                stage="build",
                crate=crate,
                toolchain=toolchain,
                message=message,
                level=level,
            )


def build_workspace(
    request: InvocationRequest,
    *,
    settings: Settings,
    logger: StructuredLogger | None = None,
    inspector: WorkspaceInspector | None = None,
    fetcher: Fetcher | None = None,
    environ: Mapping[str, str] | None = None,
    platform: str | None = None,
) -> InvocationResult:
    """Inspect the workspace, make the toolchains available, and build every selected crate."""
    settings.validate()
    if request.tools_version:
        parse_version(request.tools_version, source="--tools-version")
    if request.options.arch not in SBF_ARCHES:
        raise ConfigError(
            f"Unknown SBF architecture {request.options.arch!r}.",
            hint=f"Choose one of: {', '.join(SBF_ARCHES)}.",
        )
    if request.force_tools_install and request.skip_tools_install:
        raise ConfigError("--force-tools-install and --skip-tools-install are mutually exclusive.")
    platform = platform or host_platform()
    inspector = inspector or WorkspaceInspector(cargo=settings.cargo, logger=logger)
    info = inspector.inspect(request.manifest_path, offline=settings.offline)
    crates = select_crates(info, packages=request.packages, workspace=request.workspace)

    base = resolve_toolchain(
        platform=platform,
        explicit=request.tools_version,
        environment=settings.tools_version,
        workspace_pin=info.tools_version,
        url_template=settings.url_template,
        sha256=request.tools_sha256,
        workspace_sha256=info.tools_sha256,
    )
    if logger is not None:
        logger.log(
            operation="resolve",
            stage="toolchain",
            toolchain=base.version,
            message=f"toolchain {base.version} selected from {describe_source(base)}",
        )

    store = ArchiveStore(settings.cache_root, platform=platform, logger=logger)
    fetcher = fetcher or Fetcher(
        download_dir=settings.cache_root / DOWNLOADS_DIRNAME,
        policy=settings.policy(require_integrity=request.require_integrity),
        retry=RetryPolicy(max_attempts=settings.fetch_attempts),
        timeout=settings.fetch_timeout,
        logger=logger,
    )
    installer = ToolchainInstaller(
        store=store,
        fetcher=fetcher,
        force=request.force_tools_install,
        skip_install=request.skip_tools_install,
        logger=logger,
    )
    builder = CargoBuilder(cargo=settings.cargo, logger=logger, base_env=environ)
    orchestrator = BuildOrchestrator(
        installer=installer,
        builder=builder,
        logger=logger,
        jobs=request.crate_jobs,
    )
    planned = orchestrator.plan(crates, base=base, options=request.options)
    return orchestrator.run(planned)


__all__ = ["BuildOrchestrator", "PlannedBuild", "build_workspace", "worker_count"]
