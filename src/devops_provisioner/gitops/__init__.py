"""Git operations helpers."""

from .manager import GitCommandError, GitPushResult, GitRepositoryManager, RepositoryPopulator

__all__ = ["GitCommandError", "GitPushResult", "GitRepositoryManager", "RepositoryPopulator"]
