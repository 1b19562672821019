"""Public package entrypoint for the SBF build driver."""

from .builders import build_workspace
from .cache import ArchiveStore
from .config import Settings
from .errors import (
    BuildError,
    CacheIOError,
    ConfigError,
    ErrorCode,
    ExtractionError,
    IntegrityError,
    MetadataError,
    NetworkError,
    NotFoundError,
    PolicyError,
    SbfBuildError,
)
from .fetch import Fetcher
from .models import (
    BuildConfig,
    BuildOptions,
    CacheEntry,
    CrateBuildResult,
    InvocationRequest,
    InvocationResult,
    ProgramCrate,
    ToolchainSpec,
)
from .observability import StructuredLogger
from .toolchain import ensure_toolchain, resolve_toolchain

__all__ = [
    "ArchiveStore",
    "BuildConfig",
    "BuildError",
    "BuildOptions",
    "CacheEntry",
    "CacheIOError",
    "ConfigError",
    "CrateBuildResult",
    "ErrorCode",
    "ExtractionError",
    "Fetcher",
    "IntegrityError",
    "InvocationRequest",
    "InvocationResult",
    "MetadataError",
    "NetworkError",
    "NotFoundError",
    "PolicyError",
    "ProgramCrate",
    "SbfBuildError",
    "Settings",
    "StructuredLogger",
    "ToolchainSpec",
    "build_workspace",
    "ensure_toolchain",
    "resolve_toolchain",
]
