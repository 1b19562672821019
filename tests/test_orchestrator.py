import dataclasses
import os
import signal
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from sbfbuild.builders import build_workspace, worker_count
from sbfbuild.cache import ArchiveStore
from sbfbuild.config import Settings
from sbfbuild.errors import ConfigError, NotFoundError, PolicyError
from sbfbuild.fetch import Fetcher
from sbfbuild.models import BuildOptions, InvocationRequest
from sbfbuild.observability import StructuredLogger

PLATFORM = "linux-x86_64"

WorkspaceFactory = Callable[..., Any]


def _environ() -> dict[str, str]:
    env = dict(os.environ)
    env.pop("RUSTFLAGS", None)
    env.pop("CARGO_ENCODED_RUSTFLAGS", None)
    return env


def _interrupt_when_started(*pid_files: Path) -> threading.Thread:
    main = threading.main_thread().ident
    assert main is not None

    def _watch() -> None:
        deadline = time.monotonic() + 30
        while time.monotonic() < deadline:
            if all(path.is_file() and path.read_text(encoding="utf-8") for path in pid_files):
                signal.pthread_kill(main, signal.SIGINT)
                return
            time.sleep(0.05)

    watcher = threading.Thread(target=_watch, daemon=True)
    watcher.start()
    return watcher


def _reaped(pid_file: Path) -> bool:
    try:
        os.kill(int(pid_file.read_text(encoding="utf-8")), 0)
    except ProcessLookupError:
        return True
    return False


def _build(
    request: InvocationRequest,
    settings: Settings,
    *,
    fetcher: Fetcher | None = None,
    logger: StructuredLogger | None = None,
) -> Any:
    return build_workspace(
        request,
        settings=settings,
        logger=logger or StructuredLogger(),
        fetcher=fetcher,
        environ=_environ(),
        platform=PLATFORM,
    )


def test_pinned_toolchain_is_fetched_once_and_used(
    settings: Settings, mirror: Any, make_workspace: WorkspaceFactory
) -> None:
    workspace = make_workspace(("alpha",), pin="1.43")
    mirror.publish("v1.43")
    fetcher = Fetcher(download_dir=settings.cache_root / ".downloads")
    request = InvocationRequest(manifest_path=workspace.manifest)

    result = _build(request, settings, fetcher=fetcher)

    assert result.ok
    assert fetcher.calls == 1
    alpha = result.result_for("alpha")
    assert alpha.toolchain_version == "v1.43"
    assert alpha.target_triple == "sbf-solana-solana"
    assert (workspace.target_dir / "deploy" / "alpha.so").is_file()
    assert ArchiveStore(settings.cache_root, platform=PLATFORM).has("v1.43")

    again = Fetcher(download_dir=settings.cache_root / ".downloads")
    assert _build(request, settings, fetcher=again).ok
    assert again.calls == 0


@pytest.mark.parametrize("jobs", [1, 3])
def test_failed_crate_does_not_stop_siblings(
    settings: Settings, mirror: Any, make_workspace: WorkspaceFactory, jobs: int
) -> None:
    workspace = make_workspace(("alpha", "beta", "gamma"))
    workspace.fail("beta")
    mirror.publish("v1.48")
    logger = StructuredLogger()
    request = InvocationRequest(manifest_path=workspace.manifest, crate_jobs=jobs)

    result = _build(request, settings, logger=logger)

    assert not result.ok
    assert [item.crate for item in result.results] == ["alpha", "beta", "gamma"]
    assert [item.state for item in result.results] == ["succeeded", "failed", "succeeded"]
    assert "E0425" in (result.result_for("beta").diagnostic or "")
    assert len(workspace.invocations("build")) == 3
    assert any(r["level"] == "error" for r in logger.records_for_crate("beta"))


def test_crate_pin_builds_with_its_own_toolchain(
    settings: Settings, mirror: Any, make_workspace: WorkspaceFactory
) -> None:
    workspace = make_workspace(
        ("alpha", "beta"),
        crate_metadata={"beta": {"solana": {"tools-version": "v1.43"}}},
    )
    mirror.publish("v1.48")
    mirror.publish("v1.43")
    fetcher = Fetcher(download_dir=settings.cache_root / ".downloads")
    request = InvocationRequest(manifest_path=workspace.manifest, workspace=True)

    result = _build(request, settings, fetcher=fetcher)

    assert result.ok
    assert fetcher.calls == 2
    assert result.result_for("alpha").toolchain_version == "v1.48"
    assert result.result_for("alpha").target_triple == "sbpf-solana-solana"
    assert result.result_for("beta").toolchain_version == "v1.43"
    assert result.result_for("beta").target_triple == "sbf-solana-solana"
    store = ArchiveStore(settings.cache_root, platform=PLATFORM)
    assert [entry.version for entry in store.entries()] == ["v1.43", "v1.48"]


def test_explicit_version_overrides_pin(
    settings: Settings, mirror: Any, make_workspace: WorkspaceFactory
) -> None:
    workspace = make_workspace(("alpha",), pin="1.43")
    mirror.publish("v1.45")
    request = InvocationRequest(manifest_path=workspace.manifest, tools_version="1.45")

    result = _build(request, settings)

    assert result.result_for("alpha").toolchain_version == "v1.45"
    store = ArchiveStore(settings.cache_root, platform=PLATFORM)
    assert not store.has("v1.43")


def test_unknown_version_fails_before_any_build(
    settings: Settings, make_workspace: WorkspaceFactory
) -> None:
    workspace = make_workspace(("alpha", "beta"))
    request = InvocationRequest(manifest_path=workspace.manifest, tools_version="v9.99")

    with pytest.raises(NotFoundError):
        _build(request, settings)

    assert workspace.invocations("build") == []
    assert not (settings.cache_root / "v9.99" / PLATFORM).exists()


def test_invalid_request_fails_before_inspecting(
    settings: Settings, make_workspace: WorkspaceFactory
) -> None:
    workspace = make_workspace(("alpha",))

    for request in (
        InvocationRequest(manifest_path=workspace.manifest, tools_version="newest"),
        InvocationRequest(
            manifest_path=workspace.manifest,
            force_tools_install=True,
            skip_tools_install=True,
        ),
        InvocationRequest(manifest_path=workspace.manifest, options=BuildOptions(arch="v7")),
    ):
        with pytest.raises(ConfigError):
            _build(request, settings)

    assert workspace.invocations() == []


@pytest.mark.parametrize(
    "overrides",
    [
        {"tools_version": "newest"},
        {"url_template": "mirror.example.com/{version}/x.tar.bz2"},
        {"url_template": "https://mirror.example.com/{release}.tar.bz2"},
    ],
)
def test_invalid_settings_fail_before_inspecting(
    settings: Settings, make_workspace: WorkspaceFactory, overrides: dict[str, str]
) -> None:
    workspace = make_workspace(("alpha",))
    broken = dataclasses.replace(settings, **overrides)

    with pytest.raises(ConfigError):
        _build(InvocationRequest(manifest_path=workspace.manifest), broken)

    assert workspace.invocations() == []
    assert not broken.cache_root.exists()


def test_offline_uses_cache_or_fails(
    settings: Settings, mirror: Any, make_workspace: WorkspaceFactory
) -> None:
    workspace = make_workspace(("alpha",))
    mirror.publish("v1.48")
    offline = dataclasses.replace(settings, offline=True)
    request = InvocationRequest(manifest_path=workspace.manifest)

    with pytest.raises(PolicyError):
        _build(request, offline)

    assert _build(request, settings).ok
    assert _build(request, offline).ok
    metadata_calls = workspace.invocations("metadata")
    assert "--offline" in metadata_calls[-1]["args"]


def test_skip_tools_install_requires_cache(
    settings: Settings, mirror: Any, make_workspace: WorkspaceFactory
) -> None:
    workspace = make_workspace(("alpha",))
    mirror.publish("v1.48")
    request = InvocationRequest(manifest_path=workspace.manifest, skip_tools_install=True)

    with pytest.raises(NotFoundError):
        _build(request, settings)


def test_selected_packages_only(
    settings: Settings, mirror: Any, make_workspace: WorkspaceFactory
) -> None:
    workspace = make_workspace(("alpha", "beta"), libraries=("shared",))
    mirror.publish("v1.48")
    request = InvocationRequest(manifest_path=workspace.manifest, packages=("beta",))

    result = _build(request, settings)

    assert [item.crate for item in result.results] == ["beta"]
    with pytest.raises(ConfigError):
        _build(
            InvocationRequest(manifest_path=workspace.manifest, packages=("shared",)), settings
        )


def test_workspace_without_programs_succeeds_with_warning(
    settings: Settings, make_workspace: WorkspaceFactory
) -> None:
    workspace = make_workspace((), libraries=("shared",))
    logger = StructuredLogger()

    result = _build(InvocationRequest(manifest_path=workspace.manifest), settings, logger=logger)

    assert result.ok
    assert result.results == []
    assert any("no program crates" in r["message"] for r in logger.records)


def test_worker_count() -> None:
    assert worker_count(1, 5) == 1
    assert worker_count(8, 3) == 3
    assert worker_count(4, 0) == 1
    assert worker_count(0, 64) == min(os.cpu_count() or 1, 64)


def test_interrupt_stops_running_build(
    settings: Settings, mirror: Any, make_workspace: WorkspaceFactory
) -> None:
    workspace = make_workspace(("alpha", "beta"))
    pid_file = workspace.hang("alpha")
    mirror.publish("v1.48")
    logger = StructuredLogger()
    watcher = _interrupt_when_started(pid_file)

    with pytest.raises(KeyboardInterrupt):
        _build(InvocationRequest(manifest_path=workspace.manifest), settings, logger=logger)
    watcher.join(timeout=5)

    assert _reaped(pid_file)
    assert len(workspace.invocations("build")) == 1
    assert any("interrupted" in r["message"] for r in logger.records)


def test_interrupt_cancels_queued_parallel_builds(
    settings: Settings, mirror: Any, make_workspace: WorkspaceFactory
) -> None:
    workspace = make_workspace(("alpha", "beta", "gamma"))
    pid_files = (workspace.hang("alpha"), workspace.hang("beta"))
    mirror.publish("v1.48")
    watcher = _interrupt_when_started(*pid_files)
    request = InvocationRequest(manifest_path=workspace.manifest, crate_jobs=2)

    with pytest.raises(KeyboardInterrupt):
        _build(request, settings)
    watcher.join(timeout=5)

    assert all(_reaped(path) for path in pid_files)
    built = {
        entry["args"][entry["args"].index("--manifest-path") + 1]
        for entry in workspace.invocations("build")
    }
    assert str(workspace.crate_dir("gamma") / "Cargo.toml") not in built
    assert len(built) == 2
