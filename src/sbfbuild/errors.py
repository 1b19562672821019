"""Typed error model with stable, machine-readable error codes."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum


class ErrorCode(StrEnum):
    """Stable error identifiers used across the CLI and reports."""

    CONFIG = "E_CONFIG"
    POLICY = "E_POLICY"
    NOT_FOUND = "E_NOT_FOUND"
    NETWORK = "E_NETWORK"
    INTEGRITY = "E_INTEGRITY"
    EXTRACTION = "E_EXTRACTION"
    CACHE_IO = "E_CACHE_IO"
    METADATA = "E_METADATA"
    BUILD = "E_BUILD"


class SbfBuildError(Exception):
    """Base error class that carries code, optional hint, and context."""

    stage = "internal"

    code: str
    hint: str | None
    context: Mapping[str, str]

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code.value
        self.hint = hint
        self.context = dict(context or {})

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        if self.context:
            for k, v in self.context.items():
                if v:
                    parts.append(f"  {k}: {v}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "stage": self.stage,
            "message": str(self),
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class ConfigError(SbfBuildError):
    stage = "config"

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CONFIG, hint=hint, context=context)


class PolicyError(SbfBuildError):
    stage = "config"

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.POLICY, hint=hint, context=context)


class NotFoundError(SbfBuildError):
    stage = "fetch"

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.NOT_FOUND, hint=hint, context=context)


class NetworkError(SbfBuildError):
    stage = "fetch"

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.NETWORK, hint=hint, context=context)


class IntegrityError(SbfBuildError):
    stage = "fetch"

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.INTEGRITY, hint=hint, context=context)


class ExtractionError(SbfBuildError):
    stage = "install"

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.EXTRACTION, hint=hint, context=context)


class CacheIOError(SbfBuildError):
    stage = "install"

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CACHE_IO, hint=hint, context=context)


class MetadataError(SbfBuildError):
    stage = "workspace"

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.METADATA, hint=hint, context=context)


class BuildError(SbfBuildError):
    stage = "build"

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.BUILD, hint=hint, context=context)


__all__ = [
    "BuildError",
    "CacheIOError",
    "ConfigError",
    "ErrorCode",
    "ExtractionError",
    "IntegrityError",
    "MetadataError",
    "NetworkError",
    "NotFoundError",
    "PolicyError",
    "SbfBuildError",
]
