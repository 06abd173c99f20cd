"""Git-based population of code repositories."""

from __future__ import annotations

import logging
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from ..checkpoint.models import UserIdentity
from ..paths import BASE_DIR

logger = logging.getLogger(__name__)

DEFAULT_IGNORES = (f"{BASE_DIR}/",)


class GitCommandError(RuntimeError):
    """Raised when a git command fails."""

    def __init__(self, command: List[str], exit_code: int, stderr: str) -> None:
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(f"git {' '.join(command[1:])} failed with code {exit_code}: {stderr}")


@dataclass
class GitPushResult:
    """Details about a completed push."""

    commit_sha: str
    remote_url: str
    branch: str


class RepositoryPopulator(ABC):
    """Pushes the content of a local folder to a remote code repository."""

    @abstractmethod
    def populate(
        self,
        remote_url: str,
        folder: Path,
        user: Optional[UserIdentity],
        branch: str,
    ) -> GitPushResult:
        """Push `folder` to `remote_url`; raises on failure."""


class GitRepositoryManager(RepositoryPopulator):
    """Wraps `git` CLI commands to initialise, commit and push a folder."""

    def __init__(
        self,
        git_binary: str = "git",
        remote_name: str = "devops",
        ignore_entries: Sequence[str] = DEFAULT_IGNORES,
    ) -> None:
        self.git_binary = git_binary
        self.remote_name = remote_name
        self.ignore_entries = list(ignore_entries)

    def populate(
        self,
        remote_url: str,
        folder: Path,
        user: Optional[UserIdentity],
        branch: str = "master",
    ) -> GitPushResult:
        folder = Path(folder).resolve()
        if not (folder / ".git").exists():
            logger.info("Initializing git repository in %s", folder)
            self._run(["init"], cwd=folder)
            self._run(["checkout", "-B", branch], cwd=folder)

        self._ensure_ignored(folder)

        remotes = self._run(["remote"], cwd=folder).split()
        if self.remote_name in remotes:
            self._run(["remote", "set-url", self.remote_name, remote_url], cwd=folder)
        else:
            self._run(["remote", "add", self.remote_name, remote_url], cwd=folder)

        self._run(["add", "-A"], cwd=folder)
        if self._has_staged_changes(folder):
            identity: List[str] = []
            if user is not None:
                identity = ["-c", f"user.name={user.name}", "-c", f"user.email={user.email}"]
            self._run(identity + ["commit", "-m", "Initial commit"], cwd=folder)

        logger.info("Pushing %s to %s (%s)", folder, remote_url, branch)
        self._run(["push", self.remote_name, f"HEAD:refs/heads/{branch}"], cwd=folder)
        commit_sha = self._run(["rev-parse", "HEAD"], cwd=folder).strip()
        return GitPushResult(commit_sha=commit_sha, remote_url=remote_url, branch=branch)

    def _ensure_ignored(self, folder: Path) -> None:
        gitignore = folder / ".gitignore"
        lines = gitignore.read_text(encoding="utf-8").splitlines() if gitignore.exists() else []
        missing = [entry for entry in self.ignore_entries if entry not in lines]
        if not missing:
            return
        with gitignore.open("a", encoding="utf-8") as handle:
            if lines and lines[-1].strip():
                handle.write("\n")
            handle.write("\n".join(missing) + "\n")

    def _has_staged_changes(self, folder: Path) -> bool:
        try:
            self._run(["rev-parse", "--verify", "HEAD"], cwd=folder)
        except GitCommandError:
            # 尚无提交
            return True
        return bool(self._run(["diff", "--cached", "--name-only"], cwd=folder).strip())

    def _run(self, args: List[str], cwd: Optional[Path] = None) -> str:
        command = [self.git_binary] + args
        process = subprocess.run(
            command,
            cwd=str(cwd) if cwd else None,
            capture_output=True,
            text=True,
            check=False,
        )
        if process.returncode != 0:
            raise GitCommandError(command, process.returncode, process.stderr.strip())
        return process.stdout
