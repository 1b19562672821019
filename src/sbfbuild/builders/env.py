"""BuildConfig assembly and the child environment handed to cargo."""

from __future__ import annotations

from collections.abc import Mapping, Sequence

from sbfbuild.models import BuildConfig, BuildOptions, CacheEntry, ToolchainSpec
from sbfbuild.platforms import target_triple, triple_env_key
from sbfbuild.version import parse_version


def build_config(
    options: BuildOptions,
    *,
    spec: ToolchainSpec,
    entry: CacheEntry,
    crates: Sequence[str] = (),
) -> BuildConfig:
    triple = target_triple(options.arch, parse_version(spec.version))
    return BuildConfig(
        toolchain=spec,
        toolchain_path=entry.path,
        target_triple=triple,
        linker_path=entry.llvm_bin / _exe("ld.lld", spec.platform),
        sysroot_path=entry.rust_dir,
        rustflags=options.rustflags,
        crates=tuple(crates),
        features=options.features,
        no_default_features=options.no_default_features,
        all_features=options.all_features,
        profile=options.profile,
        cargo_args=options.cargo_args,
        deploy_dir=options.deploy_dir,
        dump=options.dump,
    )


def llvm_tool(config: BuildConfig, name: str) -> str:
    return str(config.toolchain_path / "llvm" / "bin" / _exe(name, config.toolchain.platform))


def child_environment(config: BuildConfig, base: Mapping[str, str]) -> dict[str, str]:
    env = dict(base)
    key = triple_env_key(config.target_triple)
    rustflags_var = f"CARGO_TARGET_{key}_RUSTFLAGS"

    # Host-wide flags move into the target-specific variable so host build
    # scripts do not see them.
    inherited: list[str] = []
    encoded = env.pop("CARGO_ENCODED_RUSTFLAGS", "")
    if encoded:
        inherited.extend(flag for flag in encoded.split("\x1f") if flag)
    inherited.extend(env.pop("RUSTFLAGS", "").split())
    inherited.extend(env.get(rustflags_var, "").split())

    rustflags = [*inherited, "--sysroot", str(config.sysroot_path), *config.rustflags]
    # cargo splits this variable on whitespace; quotes are not interpreted.
    env[rustflags_var] = " ".join(rustflags)
    env[f"CARGO_TARGET_{key}_LINKER"] = str(config.linker_path)
    env["RUSTC"] = str(config.sysroot_path / "bin" / _exe("rustc", config.toolchain.platform))
    env["CC"] = llvm_tool(config, "clang")
    env["AR"] = llvm_tool(config, "llvm-ar")
    env["OBJDUMP"] = llvm_tool(config, "llvm-objdump")
    env["OBJCOPY"] = llvm_tool(config, "llvm-objcopy")
    return env


def _exe(name: str, platform: str) -> str:
    return f"{name}.exe" if platform.startswith("windows") else name


__all__ = ["build_config", "child_environment", "llvm_tool"]
