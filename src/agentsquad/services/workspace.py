"""Workspace isolation backed by git worktrees."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from ..error_handling import ExternalServiceError
from ..executor import Command, CommandExecutor, Result

logger = logging.getLogger(__name__)


@dataclass
class Branch:
    """A git branch."""

    name: str
    is_current: bool = False
    is_remote: bool = False
    revision: str | None = None


@dataclass
class Workspace:
    """An isolated worktree checked out on a branch."""

    path: Path
    branch: str
    revision: str | None = None


@dataclass
class FileDiff:
    """Change statistics for a single file."""

    path: str
    insertions: int = 0
    deletions: int = 0
    binary: bool = False
    status: str = "modified"  # "modified", "added", "deleted"


@dataclass
class DiffStats:
    """Aggregate change statistics of a workspace."""

    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0
    files: list[FileDiff] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.files_changed == 0


class WorkspaceService(Protocol):
    """Capabilities the orchestrator needs from the workspace backend."""

    async def is_repository(self, path: Path) -> bool: ...

    async def get_repository_root(self, path: Path) -> Path: ...

    async def create_isolated_workspace(
        self,
        repo_path: Path,
        target_path: Path,
        branch: str,
    ) -> Workspace: ...

    async def remove_isolated_workspace(self, path: Path, *, force: bool = False) -> None: ...

    async def workspace_exists(self, path: Path) -> bool: ...

    async def branch_exists(self, repo_path: Path, branch: str) -> bool: ...

    async def create_branch(self, repo_path: Path, branch: str) -> None: ...

    async def commit_all(self, path: Path, message: str) -> bool: ...

    async def checkout_branch(self, repo_path: Path, branch: str) -> None: ...

    async def get_current_branch(self, repo_path: Path) -> Branch: ...

    async def list_branches(self, repo_path: Path) -> list[Branch]: ...

    async def diff_stats(self, path: Path) -> DiffStats: ...

    async def prune_workspaces(self, repo_path: Path) -> None: ...


def parse_numstat(output: str) -> list[FileDiff]:
    """Parse ``git diff --numstat`` output."""
    files = []
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        parts = line.split(maxsplit=2)
        if len(parts) < 3:
            continue

        added, removed, path = parts
        diff = FileDiff(path=path)
        if added == "-" or removed == "-":
            diff.binary = True
        else:
            try:
                diff.insertions = int(added)
                diff.deletions = int(removed)
            except ValueError:
                logger.debug("Skipping unparsable numstat line: %s", line)
                continue

        files.append(diff)

    return files


NAME_STATUS_CODES = {"A": "added", "D": "deleted"}


def parse_name_status(output: str) -> dict[str, str]:
    """Map paths to statuses from ``git diff --name-status --no-renames``."""
    statuses = {}
    for line in output.splitlines():
        code, _, path = line.partition("\t")
        if not path:
            continue
        statuses[path] = NAME_STATUS_CODES.get(code.strip()[:1], "modified")
    return statuses


class GitWorkspaceService:
    """WorkspaceService implemented with the git command line."""

    service_name = "git"

    def __init__(self, executor: CommandExecutor, git_binary: str = "git"):
        self.executor = executor
        self.git_binary = git_binary

    async def _git(self, *args: str, cwd: Path | None = None) -> Result:
        return await self.executor.execute(
            Command(program=self.git_binary, args=list(args), cwd=cwd),
        )

    async def _git_checked(self, *args: str, message: str) -> str:
        result = await self._git(*args)
        result.check(self.service_name, message)
        return result.stdout_text

    async def is_repository(self, path: Path) -> bool:
        """Whether ``path`` is inside a git working tree."""
        current = Path(path).expanduser().resolve()
        for candidate in (current, *current.parents):
            if (candidate / ".git").exists():
                return True
        return False

    async def get_repository_root(self, path: Path) -> Path:
        output = await self._git_checked(
            "-C",
            str(path),
            "rev-parse",
            "--show-toplevel",
            message=f"failed to find repository root from {path}",
        )
        return Path(output.strip())

    async def branch_exists(self, repo_path: Path, branch: str) -> bool:
        result = await self._git("-C", str(repo_path), "rev-parse", "--verify", "--quiet", branch)
        return result.ok

    async def create_isolated_workspace(
        self,
        repo_path: Path,
        target_path: Path,
        branch: str,
    ) -> Workspace:
        """Add a worktree at ``target_path``, creating ``branch`` if needed."""
        if await self.branch_exists(repo_path, branch):
            # --force lets a branch checked out elsewhere be shared
            args = ["-C", str(repo_path), "worktree", "add", "--force", str(target_path), branch]
        else:
            args = ["-C", str(repo_path), "worktree", "add", "-b", branch, str(target_path)]

        Path(target_path).parent.mkdir(parents=True, exist_ok=True)
        await self._git_checked(*args, message=f"failed to create worktree at {target_path}")

        revision = await self._git_checked(
            "-C",
            str(target_path),
            "rev-parse",
            "HEAD",
            message="failed to read worktree revision",
        )
        logger.info("Created worktree %s on branch %s", target_path, branch)
        return Workspace(path=Path(target_path), branch=branch, revision=revision.strip())

    async def remove_isolated_workspace(self, path: Path, *, force: bool = False) -> None:
        if not Path(path).exists():
            logger.debug("Worktree %s already gone", path)
            return

        args = ["-C", str(path), "worktree", "remove"]
        if force:
            args.append("--force")
        args.append(str(path))
        await self._git_checked(*args, message=f"failed to remove worktree {path}")
        logger.info("Removed worktree %s", path)

    async def workspace_exists(self, path: Path) -> bool:
        """Whether a linked worktree is checked out at ``path``."""
        # linked worktrees carry a .git file pointing back at the repository
        return (Path(path) / ".git").is_file()

    async def create_branch(self, repo_path: Path, branch: str) -> None:
        await self._git_checked(
            "-C",
            str(repo_path),
            "branch",
            branch,
            message=f"failed to create branch {branch}",
        )

    async def commit_all(self, path: Path, message: str) -> bool:
        """Commit every change in the worktree; False when it was clean."""
        status = await self._git_checked(
            "-C",
            str(path),
            "status",
            "--porcelain",
            message="failed to read worktree status",
        )
        if not status.strip():
            return False

        await self._git_checked("-C", str(path), "add", "--all", message="failed to stage changes")
        await self._git_checked(
            "-C",
            str(path),
            "commit",
            "--no-verify",
            "-m",
            message,
            message="failed to commit changes",
        )
        logger.info("Committed pending changes in %s", path)
        return True

    async def checkout_branch(self, repo_path: Path, branch: str) -> None:
        await self._git_checked(
            "-C",
            str(repo_path),
            "checkout",
            branch,
            message=f"failed to check out branch {branch}",
        )

    async def get_current_branch(self, repo_path: Path) -> Branch:
        name = (
            await self._git_checked(
                "-C",
                str(repo_path),
                "branch",
                "--show-current",
                message="failed to read current branch",
            )
        ).strip()
        if not name:
            raise ExternalServiceError(
                self.service_name,
                f"{repo_path} is in detached HEAD state",
                solution="Check out a branch or pass --branch explicitly",
            )

        revision = await self._git_checked(
            "-C",
            str(repo_path),
            "rev-parse",
            "HEAD",
            message="failed to read HEAD revision",
        )
        return Branch(name=name, is_current=True, revision=revision.strip())

    async def list_branches(self, repo_path: Path) -> list[Branch]:
        output = await self._git_checked(
            "-C",
            str(repo_path),
            "for-each-ref",
            "--format=%(HEAD)|%(refname)|%(objectname)",
            "refs/heads",
            "refs/remotes",
            message="failed to list branches",
        )

        branches = []
        for line in output.splitlines():
            parts = line.split("|")
            if len(parts) != 3:
                continue
            head, ref, revision = parts
            if ref.endswith("/HEAD"):
                continue
            is_remote = ref.startswith("refs/remotes/")
            name = ref.removeprefix("refs/remotes/" if is_remote else "refs/heads/")
            branches.append(
                Branch(
                    name=name,
                    is_current=head.strip() == "*",
                    is_remote=is_remote,
                    revision=revision,
                ),
            )
        return branches

    async def diff_stats(self, path: Path) -> DiffStats:
        """Changes of the worktree at ``path`` relative to its HEAD."""
        # untracked files only count once they are added with intent
        await self._git_checked(
            "-C",
            str(path),
            "add",
            "--intent-to-add",
            "--all",
            message="failed to stage untracked files",
        )
        output = await self._git_checked(
            "-C",
            str(path),
            "diff",
            "--numstat",
            "--no-renames",
            "HEAD",
            message="failed to compute diff",
        )
        name_status = await self._git_checked(
            "-C",
            str(path),
            "diff",
            "--name-status",
            "--no-renames",
            "HEAD",
            message="failed to compute diff",
        )

        files = parse_numstat(output)
        statuses = parse_name_status(name_status)
        for diff in files:
            diff.status = statuses.get(diff.path, diff.status)
        return DiffStats(
            files_changed=len(files),
            insertions=sum(f.insertions for f in files),
            deletions=sum(f.deletions for f in files),
            files=files,
        )

    async def prune_workspaces(self, repo_path: Path) -> None:
        await self._git_checked(
            "-C",
            str(repo_path),
            "worktree",
            "prune",
            message="failed to prune worktrees",
        )
