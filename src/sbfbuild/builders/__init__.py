"""Cargo invocation and workspace build orchestration."""

from .cargo import CargoBuilder, ProcessRegistry, cargo_build_command, select_features
from .env import build_config, child_environment
from .orchestrator import BuildOrchestrator, PlannedBuild, build_workspace, worker_count

__all__ = [
    "BuildOrchestrator",
    "CargoBuilder",
    "PlannedBuild",
    "ProcessRegistry",
    "build_config",
    "build_workspace",
    "cargo_build_command",
    "child_environment",
    "select_features",
    "worker_count",
]
