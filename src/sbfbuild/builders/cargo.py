"""Single-crate cargo build: command assembly, output streaming and artifact collection."""

from __future__ import annotations

import os
import shutil
import subprocess
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from sbfbuild.builders.env import child_environment, llvm_tool
from sbfbuild.errors import BuildError
from sbfbuild.models import BuildConfig, CrateBuildResult, ProgramCrate
from sbfbuild.observability import StructuredLogger

DIAGNOSTIC_TAIL_LINES = 40
TERMINATE_GRACE_SECONDS = 5.0


def stop_process(process: subprocess.Popen[str]) -> None:
    """Terminate *process*, escalating to kill after the grace period, and reap it."""
    if process.poll() is None:
        process.terminate()
    try:
        process.wait(timeout=TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


class ProcessRegistry:
    """Tracks live child processes so an interrupt can terminate them.

    Once closed, the registry refuses new children: anything registered
    afterwards is stopped immediately.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._processes: set[subprocess.Popen[str]] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def add(self, process: subprocess.Popen[str]) -> bool:
        with self._lock:
            if not self._closed:
                self._processes.add(process)
                return True
        stop_process(process)
        return False

    def discard(self, process: subprocess.Popen[str]) -> None:
        with self._lock:
            self._processes.discard(process)

    def __len__(self) -> int:
        with self._lock:
            return len(self._processes)

    def terminate_all(self) -> int:
        with self._lock:
            running = [process for process in self._processes if process.poll() is None]
        for process in running:
            process.terminate()
        for process in running:
            stop_process(process)
        return len(running)

    def close(self) -> int:
        """Refuse further children and terminate the running ones."""
        with self._lock:
            self._closed = True
        return self.terminate_all()


def select_features(
    crate: ProgramCrate,
    requested: Sequence[str],
) -> tuple[tuple[str, ...], tuple[str, ...]]:
    """Split *requested* into features *crate* declares and features it lacks.

    ``dep/feature`` forms are passed through untouched.
    """
    passed: list[str] = []
    skipped: list[str] = []
    for feature in requested:
        if "/" in feature or feature in crate.features:
            passed.append(feature)
        else:
            skipped.append(feature)
    return tuple(passed), tuple(skipped)


def cargo_build_command(
    cargo: Sequence[str],
    crate: ProgramCrate,
    config: BuildConfig,
    *,
    features: Sequence[str] = (),
) -> tuple[str, ...]:
    command = [
        *cargo,
        "build",
        "--target",
        config.target_triple,
        "--manifest-path",
        str(crate.manifest_path),
    ]
    if config.profile == "release" and "--release" not in config.cargo_args:
        command.append("--release")
    if features:
        command.extend(["--features", ",".join(features)])
    if config.no_default_features:
        command.append("--no-default-features")
    if config.all_features:
        command.append("--all-features")
    command.extend(config.cargo_args)
    return tuple(command)


def artifact_path(crate: ProgramCrate, config: BuildConfig) -> Path:
    return crate.target_dir / config.target_triple / config.profile / f"{crate.lib_name}.so"


def deploy_dir(crate: ProgramCrate, config: BuildConfig) -> Path:
    return config.deploy_dir or crate.target_dir / "deploy"


@dataclass(slots=True)
class CargoBuilder:
    cargo: tuple[str, ...] = ("cargo",)
    logger: StructuredLogger | None = None
    processes: ProcessRegistry = field(default_factory=ProcessRegistry)
    prefix_output: bool = False
    base_env: Mapping[str, str] | None = None

    def build(self, crate: ProgramCrate, config: BuildConfig) -> CrateBuildResult:
        """Build one crate; failures are recorded on the result, never raised."""
        result = CrateBuildResult(
            crate=crate.name,
            manifest_path=crate.manifest_path,
            toolchain_version=config.toolchain.version,
            target_triple=config.target_triple,
        )
        result.state = "building"
        if self.processes.closed:
            return self._fail(
                result,
                BuildError(
                    f"Build of {crate.name} cancelled by interrupt.",
                    context={"crate": crate.name},
                ),
            )
        features, skipped = select_features(crate, config.features)
        if skipped:
            self._log(
                crate,
                f"skipping features not declared by the crate: {', '.join(skipped)}",
                level="warning",
            )
        command = cargo_build_command(self.cargo, crate, config, features=features)
        result.command = command
        env = child_environment(config, os.environ if self.base_env is None else self.base_env)
        self._log(
            crate,
            f"building with toolchain {config.toolchain.version} ({config.target_triple})",
        )

        try:
            returncode, output = self._stream(command, cwd=crate.crate_dir, env=env, crate=crate)
        except OSError as exc:
            return self._fail(
                result,
                BuildError(
                    "Unable to start cargo.",
                    hint="Ensure cargo is installed and on PATH, or set CARGO.",
                    context={"crate": crate.name, "command": " ".join(command), "error": str(exc)},
                ),
            )
        result.returncode = returncode
        result.output = output
        if returncode != 0:
            tail = "\n".join(output.splitlines()[-DIAGNOSTIC_TAIL_LINES:])
            return self._fail(
                result,
                BuildError(
                    f"cargo build failed for {crate.name} (exit status {returncode}).",
                    hint="See the cargo output above for compiler diagnostics.",
                    context={"crate": crate.name, "command": " ".join(command), "output": tail},
                ),
            )

        built = artifact_path(crate, config)
        if not built.is_file():
            return self._fail(
                result,
                BuildError(
                    f"cargo build succeeded but {built.name} was not produced.",
                    hint="Program crates need crate-type = [\"cdylib\"] in [lib].",
                    context={"crate": crate.name, "expected": str(built)},
                ),
            )
        result.artifact_path = built
        try:
            result.deploy_path = self._deploy(crate, config, built)
        except BuildError as exc:
            return self._fail(result, exc)
        result.state = "succeeded"
        self._log(crate, f"wrote {result.deploy_path}")
        return result

    def _stream(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        crate: ProgramCrate,
    ) -> tuple[int, str]:
        process = subprocess.Popen(
            list(command),
            cwd=str(cwd),
            env=dict(env),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
        )
        self.processes.add(process)
        lines: list[str] = []
        try:
            for raw in process.stdout or ():
                line = raw.rstrip("\n")
                lines.append(line)
                if self.logger is not None:
                    self.logger.output(crate=crate.name, line=line, prefix=self.prefix_output)
            returncode = process.wait()
        except BaseException:
            stop_process(process)
            raise
        finally:
            if process.stdout is not None:
                process.stdout.close()
            self.processes.discard(process)
        return returncode, "\n".join(lines)

    def _deploy(self, crate: ProgramCrate, config: BuildConfig, built: Path) -> Path:
        target = deploy_dir(crate, config)
        destination = target / built.name
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BuildError(
                "Unable to create the deploy directory.",
                context={"crate": crate.name, "path": str(target), "error": str(exc)},
            ) from exc

        objcopy = llvm_tool(config, "llvm-objcopy")
        if Path(objcopy).is_file():
            self._run_tool(crate, [objcopy, "--strip-all", str(built), str(destination)])
        else:
            self._log(
                crate,
                "llvm-objcopy not found in toolchain; copying unstripped",
                level="warning",
            )
            try:
                shutil.copy2(built, destination)
            except OSError as exc:
                raise BuildError(
                    "Unable to copy the program to the deploy directory.",
                    context={"crate": crate.name, "path": str(destination), "error": str(exc)},
                ) from exc

        if config.dump:
            self._dump(crate, config, built, target / f"{crate.lib_name}-dump.txt")
        return destination

    def _dump(self, crate: ProgramCrate, config: BuildConfig, built: Path, dump_path: Path) -> None:
        objdump = llvm_tool(config, "llvm-objdump")
        if not Path(objdump).is_file():
            self._log(crate, "llvm-objdump not found in toolchain; skipping dump", level="warning")
            return
        output = self._run_tool(
            crate,
            [objdump, "--print-imm-hex", "--source", "--disassemble", str(built)],
        )
        try:
            dump_path.write_text(output, encoding="utf-8")
        except OSError as exc:
            raise BuildError(
                "Unable to write the disassembly dump.",
                context={"crate": crate.name, "path": str(dump_path), "error": str(exc)},
            ) from exc

    def _run_tool(self, crate: ProgramCrate, command: list[str]) -> str:
        try:
            completed = subprocess.run(command, capture_output=True, text=True, check=False)
        except OSError as exc:
            raise BuildError(
                f"Unable to run {Path(command[0]).name}.",
                context={"crate": crate.name, "command": " ".join(command), "error": str(exc)},
            ) from exc
        if completed.returncode != 0:
            raise BuildError(
                f"{Path(command[0]).name} failed.",
                context={
                    "crate": crate.name,
                    "command": " ".join(command),
                    "returncode": str(completed.returncode),
                    "stderr": completed.stderr[:2000] if completed.stderr else "",
                },
            )
        return completed.stdout

    def _fail(self, result: CrateBuildResult, error: BuildError) -> CrateBuildResult:
        result.state = "failed"
        result.diagnostic = str(error)
        self._log_name(result.crate, error.args[0], level="error")
        return result

    def _log(self, crate: ProgramCrate, message: str, *, level: str = "info") -> None:
        self._log_name(crate.name, message, level=level)

    def _log_name(self, crate: str, message: str, *, level: str = "info") -> None:
        if self.logger is not None:
            self.logger.log(
                operation="cargo-build",
                stage="build",
                crate=crate,
                message=message,
                level=level,
            )


__all__ = [
    "CargoBuilder",
    "ProcessRegistry",
    "artifact_path",
    "cargo_build_command",
    "deploy_dir",
    "select_features",
    "stop_process",
]
