"""Shared test configuration and fixtures."""

import logging
from pathlib import Path

import pytest

from agentsquad.cli import cleanup_logging
from agentsquad.config import SquadConfig
from agentsquad.error_handling import ExternalServiceError
from agentsquad.services.terminal import TerminalSession
from agentsquad.services.workspace import Branch, DiffStats, FileDiff, Workspace


@pytest.fixture(scope="function", autouse=True)
def cleanup_logging_handlers():
    """Automatically cleanup logging handlers after each test to prevent ResourceWarnings."""
    yield
    cleanup_logging()


@pytest.fixture(scope="function", autouse=True)
def reset_logging():
    """Reset logging configuration after each test."""
    yield
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.setLevel(logging.WARNING)


@pytest.fixture
def config(tmp_path):
    """Test configuration rooted in a temporary directory."""
    return SquadConfig(
        data_dir=tmp_path / "data",
        log_dir=tmp_path / "logs",
        workspace_dir=tmp_path / "worktrees",
        loading_grace_period=0.01,
        daemon_poll_interval=0.01,
    )


@pytest.fixture
def repo(tmp_path):
    """Directory standing in for a git repository."""
    path = tmp_path / "repo"
    (path / ".git").mkdir(parents=True)
    return path


class FakeWorkspaceService:
    """In-memory WorkspaceService recording every call."""

    def __init__(self):
        self.workspaces: dict[Path, Workspace] = {}
        self.branches: set[str] = {"main"}
        self.current_branch = "main"
        self.commits: list[tuple[Path, str]] = []
        self.removed: list[Path] = []
        self.pruned: list[Path] = []
        self.dirty: set[Path] = set()
        self.fail_create = False
        self.fail_remove = False
        self.fail_commit = False

    async def is_repository(self, path):
        return (Path(path) / ".git").exists()

    async def get_repository_root(self, path):
        return Path(path)

    async def create_isolated_workspace(self, repo_path, target_path, branch):
        if self.fail_create:
            raise ExternalServiceError("git", "worktree add failed", exit_code=128)
        if Path(target_path) in self.workspaces:
            raise ExternalServiceError("git", f"'{target_path}' already exists", exit_code=128)
        self.branches.add(branch)
        workspace = Workspace(path=Path(target_path), branch=branch, revision="abc123")
        self.workspaces[Path(target_path)] = workspace
        return workspace

    async def remove_isolated_workspace(self, path, *, force=False):
        if self.fail_remove:
            raise ExternalServiceError("git", "worktree remove failed", exit_code=128)
        if Path(path) in self.dirty and not force:
            raise ExternalServiceError("git", "contains modified or untracked files", exit_code=128)
        self.workspaces.pop(Path(path), None)
        self.dirty.discard(Path(path))
        self.removed.append(Path(path))

    async def branch_exists(self, repo_path, branch):
        return branch in self.branches

    async def create_branch(self, repo_path, branch):
        self.branches.add(branch)

    async def workspace_exists(self, path):
        return Path(path) in self.workspaces

    async def commit_all(self, path, message):
        if self.fail_commit:
            raise ExternalServiceError("git", "failed to commit changes", exit_code=128)
        self.dirty.discard(Path(path))
        self.commits.append((Path(path), message))
        return True

    async def checkout_branch(self, repo_path, branch):
        self.current_branch = branch

    async def get_current_branch(self, repo_path):
        return Branch(name=self.current_branch, is_current=True)

    async def list_branches(self, repo_path):
        return [Branch(name=name, is_current=name == self.current_branch) for name in self.branches]

    async def diff_stats(self, path):
        files = [FileDiff(path="main.py", insertions=3, deletions=1)]
        return DiffStats(files_changed=1, insertions=3, deletions=1, files=files)

    async def prune_workspaces(self, repo_path):
        self.pruned.append(Path(repo_path))


class FakeProcessBackend:
    """In-memory ProcessBackend with scriptable pane output."""

    def __init__(self):
        self.sessions: dict[str, Path] = {}
        self.sent: list[tuple[str, str]] = []
        self.output: dict[str, str] = {}
        self.fail_create = False
        self.fail_capture = False

    async def create_session(self, name, work_dir, command, *, width=0, height=0):
        if self.fail_create:
            raise ExternalServiceError("tmux", "new-session failed", exit_code=1)
        if name in self.sessions:
            raise ExternalServiceError("tmux", f"session already exists: {name}")
        self.sessions[name] = Path(work_dir)
        return TerminalSession(name=name, width=width, height=height)

    async def kill_session(self, name):
        if self.sessions.pop(name, None) is None:
            raise ExternalServiceError("tmux", f"can't find session: {name}", exit_code=1)

    async def session_exists(self, name):
        return name in self.sessions

    async def send_keys(self, name, text):
        if name not in self.sessions:
            raise ExternalServiceError("tmux", f"can't find session: {name}", exit_code=1)
        self.sent.append((name, text))

    async def capture_pane(self, name):
        if self.fail_capture or name not in self.sessions:
            raise ExternalServiceError("tmux", f"can't find session: {name}", exit_code=1)
        return self.output.get(name, "")

    async def capture_scrollback(self, name):
        return "history\n" + await self.capture_pane(name)

    async def attach_session(self, name):
        return 0

    async def list_sessions(self):
        return [TerminalSession(name=name) for name in self.sessions]

    async def cleanup_sessions(self):
        count = len(self.sessions)
        self.sessions.clear()
        return count


@pytest.fixture
def workspace_service():
    return FakeWorkspaceService()


@pytest.fixture
def backend():
    return FakeProcessBackend()
