"""Per-task git workspaces."""

from src.loom.workspace.git import GitCommandError, GitWorkspace

__all__ = ["GitCommandError", "GitWorkspace"]
