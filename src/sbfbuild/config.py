"""Settings read from the process environment."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit

from sbfbuild.errors import ConfigError
from sbfbuild.models import DEFAULT_URL_TEMPLATE
from sbfbuild.policy import Policy
from sbfbuild.version import parse_version

ENV_TOOLS_VERSION = "CARGO_BUILD_SBF_TOOLS_VERSION"
ENV_CACHE_DIR = "CARGO_BUILD_SBF_CACHE_DIR"
ENV_TOOLS_URL = "CARGO_BUILD_SBF_TOOLS_URL"
ENV_OFFLINE = "CARGO_BUILD_SBF_OFFLINE"
ENV_FETCH_TIMEOUT = "CARGO_BUILD_SBF_FETCH_TIMEOUT"
ENV_FETCH_ATTEMPTS = "CARGO_BUILD_SBF_FETCH_ATTEMPTS"
ENV_CARGO = "CARGO"

_TRUTHY = {"1", "true", "yes", "on"}
_URL_SCHEMES = ("http", "https", "file")


@dataclass(frozen=True, slots=True)
class Settings:
    cache_root: Path
    tools_version: str | None = None
    url_template: str = DEFAULT_URL_TEMPLATE
    cargo: tuple[str, ...] = ("cargo",)
    fetch_timeout: float = 60.0
    fetch_attempts: int = 5
    offline: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        cache_root = env.get(ENV_CACHE_DIR) or str(default_cache_root(env))
        cargo = env.get(ENV_CARGO) or "cargo"
        settings = cls(
            cache_root=Path(cache_root).expanduser(),
            tools_version=env.get(ENV_TOOLS_VERSION) or None,
            url_template=env.get(ENV_TOOLS_URL) or DEFAULT_URL_TEMPLATE,
            cargo=(cargo,),
            fetch_timeout=_positive_float(env, ENV_FETCH_TIMEOUT, 60.0),
            fetch_attempts=_positive_int(env, ENV_FETCH_ATTEMPTS, 5),
            offline=env.get(ENV_OFFLINE, "").strip().lower() in _TRUTHY,
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Reject a malformed version or download URL template; performs no I/O."""
        if self.tools_version is not None:
            parse_version(self.tools_version, source=ENV_TOOLS_VERSION)
        validate_url_template(self.url_template)

    def policy(self, *, require_integrity: bool = False) -> Policy:
        return Policy(
            network_mode="offline" if self.offline else "online",
            require_integrity=require_integrity,
        )


def validate_url_template(template: str) -> str:
    """Check that *template* expands to an http, https or file URL."""
    try:
        url = template.format(version="v0.0", platform="linux-x86_64")
    except (KeyError, IndexError, ValueError) as exc:
        raise ConfigError(
            f"Invalid {ENV_TOOLS_URL} template.",
            hint="Only the {version} and {platform} placeholders are supported.",
            context={"value": template, "error": str(exc)},
        ) from exc
    if urlsplit(url).scheme not in _URL_SCHEMES:
        raise ConfigError(
            f"Invalid {ENV_TOOLS_URL} template.",
            hint="Use an http://, https:// or file:// URL.",
            context={"value": template},
        )
    return template


def default_cache_root(environ: Mapping[str, str]) -> Path:
    xdg = environ.get("XDG_CACHE_HOME")
    if xdg:
        return Path(xdg) / "solana"
    home = environ.get("HOME") or environ.get("USERPROFILE")
    if home:
        return Path(home) / ".cache" / "solana"
    return Path.home() / ".cache" / "solana"


def _positive_float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid {key} value.", context={"value": raw}) from exc
    if value <= 0:
        raise ConfigError(f"{key} must be positive.", context={"value": raw})
    return value


def _positive_int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid {key} value.", context={"value": raw}) from exc
    if value < 1:
        raise ConfigError(f"{key} must be at least 1.", context={"value": raw})
    return value


__all__ = [
    "ENV_CACHE_DIR",
    "ENV_CARGO",
    "ENV_FETCH_ATTEMPTS",
    "ENV_FETCH_TIMEOUT",
    "ENV_OFFLINE",
    "ENV_TOOLS_URL",
    "ENV_TOOLS_VERSION",
    "Settings",
    "default_cache_root",
    "validate_url_template",
]
