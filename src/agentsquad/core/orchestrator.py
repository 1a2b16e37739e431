"""Session lifecycle orchestration for agentsquad."""

import asyncio
import contextlib
import dataclasses
import functools
import logging
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from ..config import SquadConfig
from ..error_handling import (
    ExternalServiceError,
    NotFoundError,
    PersistenceError,
    PreconditionError,
    SquadError,
    ValidationError,
)
from ..executor import CommandExecutor
from ..services.terminal import ProcessBackend, TmuxBackend
from ..services.workspace import DiffStats, GitWorkspaceService, WorkspaceService
from ..session.models import (
    CreateSessionRequest,
    Session,
    SessionStatus,
    generate_session_id,
)
from ..storage.sessions import SessionRepository, SessionStore

logger = logging.getLogger(__name__)

BackgroundErrorSink = Callable[[str, BaseException], None]


def _snapshot(session: Session) -> Session:
    return dataclasses.replace(session)


def _as_squad_error(exc: BaseException, service: str, message: str) -> BaseException:
    """Wrap foreign exceptions so callers only see the error taxonomy."""
    if isinstance(exc, SquadError) or not isinstance(exc, Exception):
        return exc
    wrapped = ExternalServiceError(service, f"{message}: {exc}", original_error=exc)
    wrapped.__cause__ = exc
    return wrapped


class SessionOrchestrator:
    """Coordinates session lifecycle across workspace, backend and storage.

    Every lifecycle operation on a session holds that session's lock from
    the first external call until the record is written, so two operations
    on the same session never interleave. The cache lock only guards the
    in-memory dict and is always taken after a session lock.
    """

    def __init__(
        self,
        config: SquadConfig,
        workspace: WorkspaceService,
        backend: ProcessBackend,
        store: SessionRepository,
        *,
        on_background_error: BackgroundErrorSink | None = None,
    ):
        self.config = config
        self.workspace = workspace
        self.backend = backend
        self.store = store
        self.on_background_error = on_background_error

        self._sessions: dict[str, Session] = {}
        self._cache_complete = False
        self._cache_lock = asyncio.Lock()
        self._session_locks: dict[str, asyncio.Lock] = {}

        # Track background tasks so they can be awaited or cancelled
        self._background: set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, config: SquadConfig, **kwargs: Any) -> "SessionOrchestrator":
        """Wire the git, tmux and SQLite implementations."""
        executor = CommandExecutor.from_config(config)
        return cls(
            config,
            GitWorkspaceService(executor, git_binary=config.git_binary),
            TmuxBackend(
                executor,
                prefix=config.session_prefix,
                command_timeout=config.tmux_command_timeout,
                tmux_binary=config.tmux_binary,
            ),
            SessionStore(config),
            **kwargs,
        )

    # Internals

    def _session_lock(self, session_id: str) -> asyncio.Lock:
        return self._session_locks.setdefault(session_id, asyncio.Lock())

    @contextlib.asynccontextmanager
    async def _locked(self, session_id: str) -> AsyncIterator[None]:
        """Hold a session's lock; the lock is dropped if the session is unknown."""
        lock = self._session_lock(session_id)
        try:
            async with lock:
                yield
        except NotFoundError:
            if self._session_locks.get(session_id) is lock and not lock.locked():
                del self._session_locks[session_id]
            raise

    def workspace_path_for(self, session_id: str) -> Path:
        return self.config.workspace_dir / session_id

    async def _persist(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking storage call off the event loop."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(func, *args))
        except SquadError:
            raise
        except Exception as e:
            msg = f"Session storage failed: {e}"
            raise PersistenceError(msg, original_error=e) from e

    async def _cache_put(self, session: Session) -> None:
        async with self._cache_lock:
            self._sessions[session.session_id] = _snapshot(session)

    async def _cache_get(self, session_id: str) -> Session | None:
        async with self._cache_lock:
            session = self._sessions.get(session_id)
            return _snapshot(session) if session else None

    async def _cache_evict(self, session_id: str) -> None:
        async with self._cache_lock:
            self._sessions.pop(session_id, None)

    async def _save(self, session: Session) -> None:
        """Write the full record, then mirror it into the cache."""
        session.updated_at = datetime.now(UTC)
        await self._persist(self.store.update, session)
        await self._cache_put(session)

    async def _discard_workspace(self, path: Path | None) -> None:
        if path is None:
            return
        try:
            await self.workspace.remove_isolated_workspace(path, force=True)
        except Exception as e:
            logger.warning("Failed to remove workspace %s: %s", path, e)

    async def _discard_backend_session(self, session_id: str) -> None:
        try:
            await self.backend.kill_session(session_id)
        except Exception as e:
            logger.warning("Failed to kill backend session %s: %s", session_id, e)

    def _spawn_background(self, coro: Any, session_id: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"agentsquad:{session_id}")
        self._background.add(task)

        def handle_completion(t: asyncio.Task) -> None:
            self._background.discard(t)
            if t.cancelled():
                return
            exception = t.exception()
            if exception:
                logger.error(
                    "Background task for session %s failed",
                    session_id,
                    exc_info=exception,
                )
                if self.on_background_error:
                    self.on_background_error(session_id, exception)

        task.add_done_callback(handle_completion)
        return task

    async def _promote_when_ready(self, session_id: str) -> None:
        """Mark a new session ready once its program had time to start."""
        await asyncio.sleep(self.config.loading_grace_period)
        async with self._locked(session_id):
            session = await self._cache_get(session_id)
            if session is None or session.status is not SessionStatus.LOADING:
                return
            await self._set_status(session_id, SessionStatus.READY)
        logger.info("Session %s is ready", session_id)

    async def _set_status(self, session_id: str, status: SessionStatus) -> None:
        updated_at = await self._persist(self.store.update_status, session_id, status)
        async with self._cache_lock:
            cached = self._sessions.get(session_id)
            if cached:
                cached.status = status
                cached.updated_at = updated_at

    # Creation

    async def create_session(self, request: CreateSessionRequest) -> Session:
        """Create workspace, backend session and record for a new session.

        Partially created resources are torn down before the error is
        re-raised; teardown failures are only logged.
        """
        title = (request.title or "").strip()
        if not title:
            msg = "Session title is required"
            raise ValidationError(msg)
        if not str(request.path or "").strip():
            msg = "Session path is required"
            raise ValidationError(msg)

        repo_path = Path(request.path).expanduser().resolve()
        program = (request.program or "").strip() or self.config.default_program

        if not await self.workspace.is_repository(repo_path):
            msg = f"Path is not a git repository: {repo_path}"
            raise PreconditionError(
                msg,
                solution="Run agentsquad from inside a git repository or pass --path",
            )

        session_id = generate_session_id(title)

        if request.branch:
            branch = request.branch
            if not await self.workspace.branch_exists(repo_path, branch):
                await self.workspace.create_branch(repo_path, branch)
        else:
            branch = (await self.workspace.get_current_branch(repo_path)).name

        workspace = await self.workspace.create_isolated_workspace(
            repo_path,
            self.workspace_path_for(session_id),
            branch,
        )

        try:
            await self.backend.create_session(
                session_id,
                workspace.path,
                program,
                width=request.width,
                height=request.height,
            )
        except BaseException as e:
            await self._discard_workspace(workspace.path)
            raise _as_squad_error(e, "tmux", "failed to start session")

        if request.prompt:
            try:
                await self.backend.send_keys(session_id, request.prompt)
            except Exception as e:
                logger.warning("Failed to send initial prompt to %s: %s", session_id, e)

        session = Session(
            session_id=session_id,
            title=title,
            repo_path=repo_path,
            workspace_path=workspace.path,
            branch=branch,
            status=SessionStatus.LOADING,
            program=program,
            width=request.width,
            height=request.height,
            auto_yes=request.auto_yes,
            prompt=request.prompt,
        )

        try:
            await self._persist(self.store.create, session)
        except BaseException:
            await self._discard_backend_session(session_id)
            await self._discard_workspace(workspace.path)
            raise

        await self._cache_put(session)
        self._spawn_background(self._promote_when_ready(session_id), session_id)

        logger.info("Created session %s on branch %s", session, branch)
        return _snapshot(session)

    # Lifecycle

    async def start_session(self, session_id: str) -> Session:
        """Recreate workspace and backend session of a paused session."""
        async with self._locked(session_id):
            session = await self.get_session(session_id)
            if session.status is not SessionStatus.PAUSED:
                msg = f"Session {session.title} is not paused ({session.status.value})"
                raise PreconditionError(msg)

            kept = session.workspace_path
            if kept is not None and await self.workspace.workspace_exists(kept):
                # pause could not remove it; it still holds the session's work
                workspace_path = kept
                created = False
            else:
                workspace_path = await self._recreate_workspace(session)
                created = True

            try:
                await self.backend.create_session(
                    session_id,
                    workspace_path,
                    session.program,
                    width=session.width,
                    height=session.height,
                )
            except BaseException as e:
                if created:
                    await self._discard_workspace(workspace_path)
                raise _as_squad_error(e, "tmux", "failed to restart session")

            session.status = SessionStatus.READY
            session.workspace_path = workspace_path
            try:
                await self._save(session)
            except BaseException:
                await self._discard_backend_session(session_id)
                if created:
                    await self._discard_workspace(workspace_path)
                raise

        logger.info("Resumed session %s", session)
        return session

    async def _recreate_workspace(self, session: Session) -> Path:
        path = self.workspace_path_for(session.session_id)
        if await self.workspace.workspace_exists(path):
            # left behind without a record pointing at it
            logger.warning("Removing stale workspace %s", path)
            await self._discard_workspace(path)

        try:
            workspace = await self.workspace.create_isolated_workspace(
                session.repo_path,
                path,
                session.branch,
            )
        except BaseException as e:
            raise _as_squad_error(e, "git", "failed to recreate workspace")
        return workspace.path

    async def resume_session(self, session_id: str) -> Session:
        return await self.start_session(session_id)

    async def _branch_checked_out(self, session: Session) -> bool:
        """Whether the session's branch is the repository's current branch."""
        try:
            current = await self.workspace.get_current_branch(session.repo_path)
        except Exception as e:
            logger.debug("Could not read current branch of %s: %s", session.repo_path, e)
            # detached HEAD cannot be the session's branch
            return False
        return current.name == session.branch

    async def pause_session(self, session_id: str) -> Session:
        """Release workspace and backend session, keeping the branch.

        Pending changes are committed to the session's branch unless that
        branch is checked out in the main repository. A workspace git refuses
        to remove without force stays on the record, so resume picks it up
        again and stop removes it. Other teardown failures are only logged.
        """
        async with self._locked(session_id):
            session = await self.get_session(session_id)
            if session.status is SessionStatus.PAUSED:
                msg = f"Session {session.title} is already paused"
                raise PreconditionError(msg)

            await self._discard_backend_session(session_id)

            kept = None
            if session.workspace_path is not None:
                if await self._branch_checked_out(session):
                    logger.warning(
                        "Not committing changes of %s: branch %s is checked out in %s",
                        session_id,
                        session.branch,
                        session.repo_path,
                    )
                else:
                    try:
                        await self.workspace.commit_all(
                            session.workspace_path,
                            f"[agentsquad] paused session '{session.title}'",
                        )
                    except Exception as e:
                        logger.warning("Failed to commit changes of %s: %s", session_id, e)

                try:
                    await self.workspace.remove_isolated_workspace(session.workspace_path)
                except Exception as e:
                    logger.warning(
                        "Keeping workspace %s until the session is resumed or stopped: %s",
                        session.workspace_path,
                        e,
                    )
                    kept = session.workspace_path

            session.status = SessionStatus.PAUSED
            session.workspace_path = kept
            await self._save(session)

        logger.info("Paused session %s (branch %s kept)", session, session.branch)
        return session

    async def stop_session(self, session_id: str) -> None:
        """Destroy a session: backend session, workspace and record."""
        async with self._locked(session_id):
            session = await self.get_session(session_id)

            if session.status.is_active:
                await self._discard_backend_session(session_id)
            await self._discard_workspace(session.workspace_path)

            await self._persist(self.store.delete, session_id)
            await self._cache_evict(session_id)

        self._session_locks.pop(session_id, None)
        logger.info("Stopped session %s", session)

    async def update_session_status(self, session_id: str, status: SessionStatus) -> None:
        """Update status and updated_at in storage and cache together."""
        async with self._locked(session_id):
            await self.get_session(session_id)
            await self._set_status(session_id, status)

    # Reads

    async def get_session(self, session_id: str, *, refresh: bool = False) -> Session:
        """Cache-first lookup; ``refresh`` forces a storage read."""
        if not refresh:
            cached = await self._cache_get(session_id)
            if cached:
                return cached

        stored = await self._persist(self.store.get, session_id)
        if stored is None:
            await self._cache_evict(session_id)
            msg = f"Session not found: {session_id}"
            raise NotFoundError(msg)

        await self._cache_put(stored)
        return _snapshot(stored)

    async def find_session(self, ref: str) -> Session:
        """Resolve a session by ID, falling back to its title."""
        try:
            return await self.get_session(ref)
        except NotFoundError:
            pass

        async with self._cache_lock:
            matches = [s for s in self._sessions.values() if s.title == ref]
        if matches:
            return _snapshot(max(matches, key=lambda s: s.created_at))

        stored = await self._persist(self.store.get_by_title, ref)
        if stored is None:
            msg = f"Unknown session: {ref}"
            raise NotFoundError(msg)
        await self._cache_put(stored)
        return _snapshot(stored)

    async def list_sessions(self, *, refresh: bool = False) -> list[Session]:
        """All sessions, oldest first.

        Served from the cache once it has been filled from storage; pass
        ``refresh`` to observe writes made by other processes.
        """
        if self._cache_complete and not refresh:
            async with self._cache_lock:
                sessions = [_snapshot(s) for s in self._sessions.values()]
            return sorted(sessions, key=lambda s: s.created_at)

        listed_at = datetime.now(UTC)
        stored = await self._persist(self.store.list)
        stored_ids = {s.session_id for s in stored}
        async with self._cache_lock:
            for session in stored:
                self._sessions[session.session_id] = _snapshot(session)
            for session_id, cached in list(self._sessions.items()):
                # keep entries created while the listing was in flight
                if session_id not in stored_ids and cached.created_at < listed_at:
                    del self._sessions[session_id]
            self._cache_complete = True

        return [_snapshot(s) for s in stored]

    # Backend proxies

    async def _require_interactive(self, session_id: str) -> Session:
        session = await self.get_session(session_id)
        if not session.status.accepts_input:
            msg = f"Session {session.title} is {session.status.value}, not ready or running"
            raise PreconditionError(msg, solution="Resume the session first")
        return session

    async def attach_session(self, session_id: str) -> int:
        """Attach the caller's terminal; returns when the user detaches."""
        await self._require_interactive(session_id)
        try:
            return await self.backend.attach_session(session_id)
        except Exception as e:
            raise _as_squad_error(e, "tmux", "failed to attach")

    async def send_input(self, session_id: str, text: str) -> None:
        await self._require_interactive(session_id)
        try:
            await self.backend.send_keys(session_id, text)
        except Exception as e:
            raise _as_squad_error(e, "tmux", "failed to send input")

    async def get_output(self, session_id: str, *, full: bool = False) -> str:
        """Visible pane text, or the full scrollback when ``full``."""
        await self._require_interactive(session_id)
        try:
            if full:
                return await self.backend.capture_scrollback(session_id)
            return await self.backend.capture_pane(session_id)
        except Exception as e:
            raise _as_squad_error(e, "tmux", "failed to capture output")

    async def diff_session(self, session_id: str) -> DiffStats:
        session = await self.get_session(session_id)
        if session.workspace_path is None or not session.status.is_active:
            msg = f"Session {session.title} has no workspace while paused"
            raise PreconditionError(msg, solution="Resume the session first")
        try:
            return await self.workspace.diff_stats(session.workspace_path)
        except Exception as e:
            raise _as_squad_error(e, "git", "failed to compute diff")

    # Maintenance

    async def recover_stuck_sessions(self) -> int:
        """Promote sessions left Loading by a process that exited early."""
        cutoff = datetime.now(UTC) - timedelta(seconds=self.config.loading_grace_period)
        recovered = 0
        for session in await self.list_sessions(refresh=True):
            if session.status is SessionStatus.LOADING and session.updated_at < cutoff:
                try:
                    async with self._locked(session.session_id):
                        # another operation may have moved it on since the listing
                        current = await self.get_session(session.session_id, refresh=True)
                        if current.status is not SessionStatus.LOADING:
                            continue
                        await self._set_status(session.session_id, SessionStatus.READY)
                except NotFoundError:
                    continue
                recovered += 1
        if recovered:
            logger.info("Marked %s stuck loading sessions ready", recovered)
        return recovered

    async def reset(self) -> int:
        """Stop every session and remove everything agentsquad created."""
        sessions = await self.list_sessions(refresh=True)
        for session in sessions:
            try:
                await self.stop_session(session.session_id)
            except SquadError as e:
                logger.warning("Failed to stop session %s: %s", session, e)

        await self._persist(self.store.delete_all)
        async with self._cache_lock:
            self._sessions.clear()

        try:
            await self.backend.cleanup_sessions()
        except Exception as e:
            logger.warning("Failed to clean up backend sessions: %s", e)

        for repo_path in {s.repo_path for s in sessions}:
            try:
                await self.workspace.prune_workspaces(repo_path)
            except Exception as e:
                logger.warning("Failed to prune worktrees of %s: %s", repo_path, e)

        logger.info("Reset %s sessions", len(sessions))
        return len(sessions)

    async def wait_background(self) -> None:
        """Wait for pending background work such as readiness promotion."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel background work."""
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
