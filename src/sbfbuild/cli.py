"""``cargo-build-sbf`` command line."""

from __future__ import annotations

import argparse
import dataclasses
import re
import sys
from collections.abc import Sequence
from pathlib import Path

from sbfbuild.builders.orchestrator import build_workspace
from sbfbuild.cache.store import ArchiveStore, retain_newest
from sbfbuild.config import Settings
from sbfbuild.errors import SbfBuildError
from sbfbuild.models import BuildOptions, InvocationRequest, InvocationResult
from sbfbuild.observability import StructuredLogger
from sbfbuild.platforms import SBF_ARCHES, host_platform

EXIT_OK = 0
EXIT_BUILD_FAILED = 1
EXIT_USAGE = 2
EXIT_RESOLUTION_FAILED = 3
EXIT_INTERRUPTED = 130

SUBCOMMAND_NAME = "build-sbf"


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="cargo-build-sbf",
        description="Compile program crates to SBF with a pinned platform toolchain.",
        epilog="Unrecognized flags and everything after `--` are passed to `cargo build`.",
        allow_abbrev=False,
    )
    ap.add_argument(
        "--tools-version", help="Toolchain version, e.g. v1.43 (overrides env and pin)"
    )
    ap.add_argument("--tools-sha256", help="Expected sha256 of the toolchain archive")
    ap.add_argument("--manifest-path", type=Path, help="Path to Cargo.toml")
    ap.add_argument(
        "--workspace", action="store_true", help="Build every program crate in the workspace"
    )
    ap.add_argument(
        "-p",
        "--package",
        action="append",
        default=[],
        dest="packages",
        help="Program crate to build (repeatable)",
    )
    ap.add_argument(
        "--features",
        action="append",
        default=[],
        help="Space or comma separated features to enable (repeatable)",
    )
    ap.add_argument("--no-default-features", action="store_true")
    ap.add_argument("--all-features", action="store_true")
    profile = ap.add_mutually_exclusive_group()
    profile.add_argument("--debug", action="store_true", help="Build the debug profile")
    profile.add_argument(
        "--release", action="store_true", help="Build the release profile (default)"
    )
    ap.add_argument(
        "--arch", choices=SBF_ARCHES, default="v0", help="SBF architecture (default: v0)"
    )
    ap.add_argument("--rustflags", default="", help="Extra rustflags for the SBF target")
    ap.add_argument(
        "--sbf-out-dir", type=Path, help="Deploy directory (default: <target-dir>/deploy)"
    )
    ap.add_argument("--dump", action="store_true", help="Write an llvm-objdump listing per program")
    ap.add_argument(
        "--crate-jobs",
        type=int,
        default=1,
        help="Program crates built concurrently (0 = one per CPU, default: 1)",
    )
    ap.add_argument("--offline", action="store_true", help="Never use the network")
    ap.add_argument("--force-tools-install", action="store_true", help="Reinstall the toolchain")
    ap.add_argument("--skip-tools-install", action="store_true", help="Fail instead of fetching")
    ap.add_argument("--require-integrity", action="store_true", help="Refuse unpinned downloads")
    ap.add_argument("--cache-dir", type=Path, help="Toolchain cache root")
    ap.add_argument("--list-tools", action="store_true", help="List cached toolchains and exit")
    ap.add_argument(
        "--prune-tools", type=int, metavar="KEEP", help="Keep the KEEP newest toolchains"
    )
    ap.add_argument("--report", type=Path, help="Write a build report (.json or .cbor)")
    ap.add_argument("--log-json", type=Path, help="Write structured log records as JSON lines")
    ap.add_argument("-q", "--quiet", action="store_true")
    ap.add_argument("-v", "--verbose", action="store_true")
    return ap


def parse_args(argv: Sequence[str]) -> tuple[argparse.Namespace, list[str]]:
    """Parse own flags; return them with the verbatim cargo passthrough list."""
    args = list(argv)
    if args and args[0] == SUBCOMMAND_NAME:
        args = args[1:]
    tail: list[str] = []
    if "--" in args:
        split = args.index("--")
        args, tail = args[:split], args[split + 1 :]
    namespace, unknown = build_parser().parse_known_args(args)
    return namespace, [*unknown, *tail]


def split_features(values: Sequence[str]) -> tuple[str, ...]:
    features: list[str] = []
    for value in values:
        features.extend(part for part in re.split(r"[\s,]+", value) if part)
    return tuple(dict.fromkeys(features))


def request_from_args(args: argparse.Namespace, passthrough: Sequence[str]) -> InvocationRequest:
    cargo_args = list(passthrough)
    if args.offline and "--offline" not in cargo_args:
        cargo_args.append("--offline")
    options = BuildOptions(
        arch=args.arch,
        profile="debug" if args.debug else "release",
        features=split_features(args.features),
        no_default_features=args.no_default_features,
        all_features=args.all_features,
        rustflags=tuple(args.rustflags.split()),
        cargo_args=tuple(cargo_args),
        deploy_dir=args.sbf_out_dir.resolve() if args.sbf_out_dir else None,
        dump=args.dump,
    )
    return InvocationRequest(
        manifest_path=args.manifest_path,
        tools_version=args.tools_version,
        tools_sha256=args.tools_sha256,
        packages=tuple(args.packages),
        workspace=args.workspace,
        options=options,
        force_tools_install=args.force_tools_install,
        skip_tools_install=args.skip_tools_install,
        require_integrity=args.require_integrity,
        crate_jobs=args.crate_jobs,
    )


def settings_from_args(args: argparse.Namespace, base: Settings) -> Settings:
    changes: dict[str, object] = {}
    if args.cache_dir is not None:
        changes["cache_root"] = args.cache_dir.expanduser()
    if args.offline:
        changes["offline"] = True
    return dataclasses.replace(base, **changes) if changes else base


def main(argv: Sequence[str] | None = None) -> int:
    args, passthrough = parse_args(sys.argv[1:] if argv is None else argv)
    logger = StructuredLogger(echo=sys.stderr, quiet=args.quiet, verbose=args.verbose)
    try:
        return _dispatch(args, passthrough, logger)
    except SbfBuildError as exc:
        print(f"error: {exc.stage} stage failed: {exc}", file=sys.stderr)
        return EXIT_RESOLUTION_FAILED
    except KeyboardInterrupt:
        print("error: interrupted", file=sys.stderr)
        return EXIT_INTERRUPTED
    finally:
        if args.log_json is not None:
            logger.to_json_lines(args.log_json)


def _dispatch(args: argparse.Namespace, passthrough: list[str], logger: StructuredLogger) -> int:
    settings = settings_from_args(args, Settings.from_env())
    if args.list_tools or args.prune_tools is not None:
        return _maintain_cache(args, settings, logger)
    if args.crate_jobs < 0:
        print("error: --crate-jobs must be zero or positive", file=sys.stderr)
        return EXIT_USAGE

    request = request_from_args(args, passthrough)
    result = build_workspace(request, settings=settings, logger=logger)
    if args.report is not None:
        _write_report(result, args.report)
    _print_failures(result)
    return EXIT_OK if result.ok else EXIT_BUILD_FAILED


def _maintain_cache(args: argparse.Namespace, settings: Settings, logger: StructuredLogger) -> int:
    store = ArchiveStore(settings.cache_root, platform=host_platform(), logger=logger)
    if args.prune_tools is not None:
        if args.prune_tools < 0:
            print("error: --prune-tools must be zero or positive", file=sys.stderr)
            return EXIT_USAGE
        store.prune(retain_newest(store.entries(), args.prune_tools))
    if args.list_tools:
        for entry in store.entries():
            print(f"{entry.version}\t{entry.platform}\t{entry.path}")
    return EXIT_OK


def _write_report(result: InvocationResult, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix == ".cbor":
        result.to_cbor(path)
    else:
        result.to_json(path)


def _print_failures(result: InvocationResult) -> None:
    for failed in result.failed():
        print(f"error: {failed.crate} failed to build", file=sys.stderr)
        if failed.diagnostic:
            print(failed.diagnostic, file=sys.stderr)


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
