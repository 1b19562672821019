"""Policy configuration and enforcement helpers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from sbfbuild.errors import PolicyError

NetworkMode = Literal["online", "offline"]


@dataclass(frozen=True, slots=True)
class Policy:
    network_mode: NetworkMode = "online"
    require_integrity: bool = False


def ensure_network_allowed(*, policy: Policy, operation: str, version: str = "") -> None:
    if policy.network_mode == "offline":
        raise PolicyError(
            "Network operations are disabled by policy.",
            hint="Unset CARGO_BUILD_SBF_OFFLINE or install the toolchain while online.",
            context={"operation": operation, "version": version},
        )


def ensure_integrity_available(*, policy: Policy, sha256: str | None, version: str) -> None:
    if policy.require_integrity and not sha256:
        raise PolicyError(
            "A toolchain checksum is required by policy.",
            hint="Pass --tools-sha256 or pin tools-sha256 in the workspace metadata.",
            context={"operation": "fetch", "version": version},
        )


__all__ = [
    "NetworkMode",
    "Policy",
    "ensure_integrity_available",
    "ensure_network_allowed",
]
