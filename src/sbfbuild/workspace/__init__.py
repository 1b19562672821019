"""Workspace inspection."""

from .metadata import WorkspaceInfo, WorkspaceInspector, parse_metadata, select_crates

__all__ = ["WorkspaceInfo", "WorkspaceInspector", "parse_metadata", "select_crates"]
