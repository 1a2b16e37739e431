"""Test session orchestration."""

import asyncio
from unittest.mock import Mock

import pytest

from agentsquad.core.orchestrator import SessionOrchestrator
from agentsquad.error_handling import (
    ExternalServiceError,
    NotFoundError,
    PersistenceError,
    PreconditionError,
    ValidationError,
)
from agentsquad.session.models import CreateSessionRequest, SessionStatus
from agentsquad.storage.sessions import SessionStore


@pytest.fixture
def store(config):
    return SessionStore(config)


@pytest.fixture
def orchestrator(config, workspace_service, backend, store):
    return SessionOrchestrator(config, workspace_service, backend, store)


def make_request(repo, **overrides):
    fields = {"title": "fix login", "path": repo, "program": "claude"}
    fields.update(overrides)
    return CreateSessionRequest(**fields)


class TestCreateSession:
    """Test session creation and its rollback."""

    @pytest.mark.asyncio
    async def test_create_session_starts_loading(self, orchestrator, repo, store, backend):
        """Test a new session is persisted with both resources live."""
        session = await orchestrator.create_session(make_request(repo))

        assert session.status == SessionStatus.LOADING
        assert session.branch == "main"
        assert session.repo_path == repo.resolve()
        assert session.workspace_path == orchestrator.workspace_path_for(session.session_id)
        assert session.session_id in backend.sessions
        assert store.get(session.session_id) is not None

        await orchestrator.aclose()

    @pytest.mark.asyncio
    async def test_session_becomes_ready_after_grace_period(self, orchestrator, repo, store):
        """Test the background promotion to Ready."""
        session = await orchestrator.create_session(make_request(repo))
        await orchestrator.wait_background()

        assert store.get(session.session_id).status == SessionStatus.READY
        cached = await orchestrator.get_session(session.session_id)
        assert cached.status == SessionStatus.READY

    @pytest.mark.asyncio
    async def test_promotion_skips_paused_session(self, config, orchestrator, repo, store):
        """Test promotion does not overwrite a status set in the meantime."""
        config.loading_grace_period = 0.05
        session = await orchestrator.create_session(make_request(repo))
        await orchestrator.pause_session(session.session_id)
        await orchestrator.wait_background()

        assert store.get(session.session_id).status == SessionStatus.PAUSED

    @pytest.mark.asyncio
    async def test_explicit_branch_is_created(self, orchestrator, repo, workspace_service):
        """Test a missing branch is created before the workspace."""
        session = await orchestrator.create_session(make_request(repo, branch="feature/login"))

        assert session.branch == "feature/login"
        assert "feature/login" in workspace_service.branches
        await orchestrator.aclose()

    @pytest.mark.asyncio
    async def test_initial_prompt_is_sent(self, orchestrator, repo, backend):
        """Test the initial prompt is typed into the new session."""
        session = await orchestrator.create_session(make_request(repo, prompt="fix the bug\n"))

        assert backend.sent == [(session.session_id, "fix the bug\n")]
        await orchestrator.aclose()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("title,path", [("", "repo"), ("   ", "repo"), ("ok", "")])
    async def test_create_rejects_blank_fields(self, orchestrator, workspace_service, title, path):
        """Test blank title or path fail before any external call."""
        with pytest.raises(ValidationError):
            await orchestrator.create_session(
                CreateSessionRequest(title=title, path=path, program="claude"),
            )

        assert workspace_service.workspaces == {}

    @pytest.mark.asyncio
    async def test_create_requires_repository(self, orchestrator, tmp_path):
        """Test creating outside a repository is a precondition failure."""
        plain = tmp_path / "plain"
        plain.mkdir()

        with pytest.raises(PreconditionError):
            await orchestrator.create_session(make_request(plain))

    @pytest.mark.asyncio
    async def test_backend_failure_removes_workspace(
        self,
        orchestrator,
        repo,
        backend,
        workspace_service,
        store,
    ):
        """Test no worktree outlives a failed backend start."""
        backend.fail_create = True

        with pytest.raises(ExternalServiceError):
            await orchestrator.create_session(make_request(repo))

        assert workspace_service.workspaces == {}
        assert len(workspace_service.removed) == 1
        assert store.list() == []

    @pytest.mark.asyncio
    async def test_retry_after_backend_failure(self, orchestrator, repo, backend):
        """Test a retried create with the same title gets a new ID and succeeds."""
        backend.fail_create = True
        with pytest.raises(ExternalServiceError):
            await orchestrator.create_session(make_request(repo))

        backend.fail_create = False
        session = await orchestrator.create_session(make_request(repo))

        assert session.title == "fix login"
        assert list(backend.sessions) == [session.session_id]
        await orchestrator.aclose()

    @pytest.mark.asyncio
    async def test_cached_record_matches_storage(self, orchestrator, repo, store):
        session = await orchestrator.create_session(make_request(repo))

        assert await orchestrator.get_session(session.session_id) == store.get(session.session_id)
        await orchestrator.aclose()

    @pytest.mark.asyncio
    async def test_end_to_end_lifecycle(self, orchestrator, repo, backend, workspace_service):
        """Test create, promotion, listing and stop leave nothing behind."""
        session = await orchestrator.create_session(
            make_request(repo, title="fix-bug", program="echo hi"),
        )
        assert session.status == SessionStatus.LOADING

        await orchestrator.wait_background()
        assert (await orchestrator.get_session(session.session_id)).status == SessionStatus.READY
        assert [s.session_id for s in await orchestrator.list_sessions()] == [session.session_id]

        await orchestrator.stop_session(session.session_id)

        assert await orchestrator.list_sessions() == []
        assert backend.sessions == {}
        assert workspace_service.workspaces == {}

    @pytest.mark.asyncio
    async def test_foreign_backend_error_is_wrapped(self, orchestrator, repo, backend):
        """Test unexpected backend exceptions surface as ExternalServiceError."""
        backend.create_session = Mock(side_effect=RuntimeError("boom"))

        with pytest.raises(ExternalServiceError, match="boom"):
            await orchestrator.create_session(make_request(repo))

    @pytest.mark.asyncio
    async def test_persistence_failure_tears_down_both_resources(
        self,
        config,
        repo,
        backend,
        workspace_service,
    ):
        """Test storage failure removes backend session and workspace."""
        store = Mock()
        store.create.side_effect = PersistenceError("disk full")
        orchestrator = SessionOrchestrator(config, workspace_service, backend, store)

        with pytest.raises(PersistenceError):
            await orchestrator.create_session(make_request(repo))

        assert backend.sessions == {}
        assert workspace_service.workspaces == {}

    @pytest.mark.asyncio
    async def test_workspace_failure_propagates(self, orchestrator, repo, workspace_service, backend):
        """Test workspace errors surface unchanged and start nothing."""
        workspace_service.fail_create = True

        with pytest.raises(ExternalServiceError, match="worktree add failed"):
            await orchestrator.create_session(make_request(repo))

        assert backend.sessions == {}


class TestLifecycle:
    """Test pause, resume and stop."""

    @pytest.mark.asyncio
    async def test_pause_releases_resources_and_keeps_branch(
        self,
        orchestrator,
        repo,
        backend,
        workspace_service,
        store,
    ):
        """Test pausing commits, then removes workspace and backend session."""
        session = await orchestrator.create_session(make_request(repo, branch="feature"))
        await orchestrator.wait_background()

        paused = await orchestrator.pause_session(session.session_id)

        assert paused.status == SessionStatus.PAUSED
        assert paused.workspace_path is None
        assert paused.branch == "feature"
        assert backend.sessions == {}
        assert workspace_service.workspaces == {}
        assert workspace_service.commits[0][0] == session.workspace_path
        assert store.get(session.session_id).status == SessionStatus.PAUSED

    @pytest.mark.asyncio
    async def test_pause_marks_paused_despite_teardown_failure(
        self,
        orchestrator,
        repo,
        workspace_service,
    ):
        """Test teardown errors during pause are only logged."""
        session = await orchestrator.create_session(make_request(repo))
        await orchestrator.wait_background()
        workspace_service.fail_remove = True

        paused = await orchestrator.pause_session(session.session_id)

        assert paused.status == SessionStatus.PAUSED
        assert paused.workspace_path == session.workspace_path

    @pytest.mark.asyncio
    async def test_pause_twice_fails(self, orchestrator, repo):
        """Test pausing a paused session is a precondition failure."""
        session = await orchestrator.create_session(make_request(repo))
        await orchestrator.pause_session(session.session_id)

        with pytest.raises(PreconditionError):
            await orchestrator.pause_session(session.session_id)

    @pytest.mark.asyncio
    async def test_resume_recreates_resources(self, orchestrator, repo, backend, workspace_service):
        """Test resume restores workspace and backend session on the same branch."""
        session = await orchestrator.create_session(make_request(repo, branch="work"))
        await orchestrator.pause_session(session.session_id)

        resumed = await orchestrator.resume_session(session.session_id)

        assert resumed.status == SessionStatus.READY
        assert resumed.workspace_path == orchestrator.workspace_path_for(session.session_id)
        assert workspace_service.workspaces[resumed.workspace_path].branch == "work"
        assert session.session_id in backend.sessions

    @pytest.mark.asyncio
    async def test_resume_requires_paused(self, orchestrator, repo):
        """Test resuming an active session is a precondition failure."""
        session = await orchestrator.create_session(make_request(repo))
        await orchestrator.wait_background()

        with pytest.raises(PreconditionError):
            await orchestrator.start_session(session.session_id)

    @pytest.mark.asyncio
    async def test_resume_backend_failure_keeps_session_paused(
        self,
        orchestrator,
        repo,
        backend,
        workspace_service,
        store,
    ):
        """Test a failed resume rolls back the new workspace."""
        session = await orchestrator.create_session(make_request(repo))
        await orchestrator.pause_session(session.session_id)
        backend.fail_create = True

        with pytest.raises(ExternalServiceError):
            await orchestrator.resume_session(session.session_id)

        assert workspace_service.workspaces == {}
        assert store.get(session.session_id).status == SessionStatus.PAUSED

    @pytest.mark.asyncio
    async def test_pause_does_not_commit_on_checked_out_branch(
        self,
        orchestrator,
        repo,
        workspace_service,
    ):
        """Test the repository's current branch is never moved by a pause."""
        session = await orchestrator.create_session(make_request(repo))
        await orchestrator.wait_background()

        paused = await orchestrator.pause_session(session.session_id)

        assert session.branch == workspace_service.current_branch
        assert workspace_service.commits == []
        assert paused.workspace_path is None

    @pytest.mark.asyncio
    async def test_dirty_workspace_survives_failed_commit(
        self,
        orchestrator,
        repo,
        backend,
        workspace_service,
        store,
    ):
        """Test a workspace git refuses to remove is kept, resumed and later stopped."""
        session = await orchestrator.create_session(make_request(repo, branch="feature"))
        await orchestrator.wait_background()
        workspace_service.dirty.add(session.workspace_path)
        workspace_service.fail_commit = True

        paused = await orchestrator.pause_session(session.session_id)

        assert paused.status == SessionStatus.PAUSED
        assert paused.workspace_path == session.workspace_path
        assert store.get(session.session_id).workspace_path == session.workspace_path
        assert backend.sessions == {}

        resumed = await orchestrator.resume_session(session.session_id)

        assert resumed.status == SessionStatus.READY
        assert resumed.workspace_path == session.workspace_path
        assert session.session_id in backend.sessions

        await orchestrator.stop_session(session.session_id)

        assert workspace_service.workspaces == {}

    @pytest.mark.asyncio
    async def test_stop_removes_workspace_kept_by_pause(self, orchestrator, repo, workspace_service):
        session = await orchestrator.create_session(make_request(repo, branch="feature"))
        await orchestrator.wait_background()
        workspace_service.dirty.add(session.workspace_path)
        workspace_service.fail_commit = True
        await orchestrator.pause_session(session.session_id)

        await orchestrator.stop_session(session.session_id)

        assert workspace_service.workspaces == {}
        assert workspace_service.removed == [session.workspace_path]

    @pytest.mark.asyncio
    async def test_resume_replaces_stale_workspace(self, orchestrator, repo, backend, workspace_service):
        """Test resume clears a worktree that no record points at."""
        session = await orchestrator.create_session(make_request(repo, branch="feature"))
        await orchestrator.pause_session(session.session_id)
        stale = orchestrator.workspace_path_for(session.session_id)
        await workspace_service.create_isolated_workspace(repo, stale, "feature")

        resumed = await orchestrator.resume_session(session.session_id)

        assert resumed.status == SessionStatus.READY
        assert stale in workspace_service.removed
        assert stale in workspace_service.workspaces

    @pytest.mark.asyncio
    async def test_unknown_session_leaves_no_lock_behind(self, orchestrator):
        for operation in (
            orchestrator.pause_session,
            orchestrator.resume_session,
            orchestrator.stop_session,
        ):
            with pytest.raises(NotFoundError):
                await operation("missing-0000")

        with pytest.raises(NotFoundError):
            await orchestrator.update_session_status("missing-0000", SessionStatus.READY)

        assert orchestrator._session_locks == {}

    @pytest.mark.asyncio
    async def test_stop_removes_everything(self, orchestrator, repo, backend, workspace_service, store):
        """Test stop destroys resources and the record."""
        session = await orchestrator.create_session(make_request(repo))
        await orchestrator.wait_background()

        await orchestrator.stop_session(session.session_id)

        assert backend.sessions == {}
        assert workspace_service.workspaces == {}
        assert store.get(session.session_id) is None
        with pytest.raises(NotFoundError):
            await orchestrator.get_session(session.session_id)

    @pytest.mark.asyncio
    async def test_stop_twice_reports_not_found(self, orchestrator, repo):
        """Test the second stop of a session fails with NotFoundError."""
        session = await orchestrator.create_session(make_request(repo))
        await orchestrator.stop_session(session.session_id)

        with pytest.raises(NotFoundError):
            await orchestrator.stop_session(session.session_id)

    @pytest.mark.asyncio
    async def test_stop_paused_session(self, orchestrator, repo, store):
        """Test stopping a paused session only deletes its record."""
        session = await orchestrator.create_session(make_request(repo))
        await orchestrator.pause_session(session.session_id)

        await orchestrator.stop_session(session.session_id)

        assert store.get(session.session_id) is None

    @pytest.mark.asyncio
    async def test_concurrent_stops_on_same_session(self, orchestrator, repo):
        """Test exactly one of two concurrent stops succeeds."""
        session = await orchestrator.create_session(make_request(repo))

        results = await asyncio.gather(
            orchestrator.stop_session(session.session_id),
            orchestrator.stop_session(session.session_id),
            return_exceptions=True,
        )

        assert results.count(None) == 1
        assert sum(isinstance(r, NotFoundError) for r in results) == 1

    @pytest.mark.asyncio
    async def test_concurrent_pause_and_resume_serialize(self, orchestrator, repo, backend):
        """Test pause and resume on one session never interleave."""
        session = await orchestrator.create_session(make_request(repo))
        await orchestrator.wait_background()

        await asyncio.gather(
            orchestrator.pause_session(session.session_id),
            orchestrator.resume_session(session.session_id),
        )

        current = await orchestrator.get_session(session.session_id)
        assert current.status == SessionStatus.READY
        assert session.session_id in backend.sessions


class TestReads:
    """Test lookups, snapshots and proxies."""

    @pytest.mark.asyncio
    async def test_returned_sessions_are_snapshots(self, orchestrator, repo):
        """Test mutating a returned record does not change the orchestrator."""
        session = await orchestrator.create_session(make_request(repo))
        session.title = "changed"

        fetched = await orchestrator.get_session(session.session_id)
        assert fetched.title == "fix login"
        await orchestrator.aclose()

    @pytest.mark.asyncio
    async def test_get_unknown_session(self, orchestrator):
        """Test unknown IDs raise NotFoundError."""
        with pytest.raises(NotFoundError):
            await orchestrator.get_session("missing")

    @pytest.mark.asyncio
    async def test_refresh_sees_external_writes(self, orchestrator, repo, store):
        """Test refresh bypasses the cache."""
        session = await orchestrator.create_session(make_request(repo))
        await orchestrator.wait_background()
        store.update_status(session.session_id, SessionStatus.RUNNING)

        cached = await orchestrator.get_session(session.session_id)
        refreshed = await orchestrator.get_session(session.session_id, refresh=True)

        assert cached.status == SessionStatus.READY
        assert refreshed.status == SessionStatus.RUNNING

    @pytest.mark.asyncio
    async def test_find_session_by_title(self, orchestrator, repo):
        """Test sessions resolve by title when the ID does not match."""
        session = await orchestrator.create_session(make_request(repo))

        found = await orchestrator.find_session("fix login")

        assert found.session_id == session.session_id
        with pytest.raises(NotFoundError):
            await orchestrator.find_session("nothing")
        await orchestrator.aclose()

    @pytest.mark.asyncio
    async def test_list_sessions_in_creation_order(self, orchestrator, repo):
        """Test list returns every session oldest first."""
        first = await orchestrator.create_session(make_request(repo, title="one"))
        second = await orchestrator.create_session(make_request(repo, title="two"))

        listed = await orchestrator.list_sessions(refresh=True)

        assert [s.session_id for s in listed] == [first.session_id, second.session_id]
        await orchestrator.aclose()

    @pytest.mark.asyncio
    async def test_list_sessions_from_storage(self, config, workspace_service, backend, store, repo):
        """Test a fresh orchestrator lists sessions written by another one."""
        writer = SessionOrchestrator(config, workspace_service, backend, store)
        await writer.create_session(make_request(repo))
        await writer.wait_background()

        reader = SessionOrchestrator(config, workspace_service, backend, store)
        listed = await reader.list_sessions()

        assert len(listed) == 1
        assert listed[0].status == SessionStatus.READY

    @pytest.mark.asyncio
    async def test_output_requires_ready_or_running(self, orchestrator, repo, backend):
        """Test output is refused while paused and works after resume."""
        session = await orchestrator.create_session(make_request(repo))
        await orchestrator.wait_background()
        await orchestrator.pause_session(session.session_id)

        with pytest.raises(PreconditionError):
            await orchestrator.get_output(session.session_id)

        await orchestrator.resume_session(session.session_id)
        backend.output[session.session_id] = "hello"
        assert await orchestrator.get_output(session.session_id) == "hello"
        assert await orchestrator.get_output(session.session_id, full=True) == "history\nhello"

    @pytest.mark.asyncio
    async def test_send_input_refused_while_loading(self, orchestrator, repo):
        """Test input is refused before the session is ready."""
        session = await orchestrator.create_session(make_request(repo))

        with pytest.raises(PreconditionError):
            await orchestrator.send_input(session.session_id, "y\n")
        await orchestrator.aclose()

    @pytest.mark.asyncio
    async def test_update_session_status(self, orchestrator, repo, store):
        """Test status updates reach storage and cache with a new timestamp."""
        session = await orchestrator.create_session(make_request(repo))
        await orchestrator.wait_background()

        await orchestrator.update_session_status(session.session_id, SessionStatus.RUNNING)

        stored = store.get(session.session_id)
        cached = await orchestrator.get_session(session.session_id)
        assert stored.status == cached.status == SessionStatus.RUNNING
        assert cached.updated_at > session.updated_at

    @pytest.mark.asyncio
    async def test_update_status_of_unknown_session(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.update_session_status("missing", SessionStatus.READY)

    @pytest.mark.asyncio
    async def test_diff_session(self, orchestrator, repo):
        """Test diff statistics of an active session."""
        session = await orchestrator.create_session(make_request(repo))
        await orchestrator.wait_background()

        stats = await orchestrator.diff_session(session.session_id)

        assert stats.files_changed == 1
        assert stats.insertions == 3

    @pytest.mark.asyncio
    async def test_attach_session(self, orchestrator, repo):
        session = await orchestrator.create_session(make_request(repo))
        await orchestrator.wait_background()

        assert await orchestrator.attach_session(session.session_id) == 0


class TestMaintenance:
    """Test recovery, reset and background supervision."""

    @pytest.mark.asyncio
    async def test_recover_stuck_sessions(self, config, orchestrator, repo, store):
        """Test sessions left loading by an exited process become ready."""
        session = await orchestrator.create_session(make_request(repo))
        await orchestrator.aclose()
        await asyncio.sleep(config.loading_grace_period * 2)

        recovered = await orchestrator.recover_stuck_sessions()

        assert recovered == 1
        assert store.get(session.session_id).status == SessionStatus.READY

    @pytest.mark.asyncio
    async def test_recover_skips_session_changed_after_listing(
        self,
        config,
        orchestrator,
        repo,
        store,
        monkeypatch,
    ):
        """Test a session paused between listing and promotion stays paused."""
        session = await orchestrator.create_session(make_request(repo))
        await orchestrator.aclose()
        await asyncio.sleep(config.loading_grace_period * 2)
        list_sessions = orchestrator.list_sessions

        async def list_then_pause(**kwargs):
            sessions = await list_sessions(**kwargs)
            await orchestrator.pause_session(session.session_id)
            return sessions

        monkeypatch.setattr(orchestrator, "list_sessions", list_then_pause)

        recovered = await orchestrator.recover_stuck_sessions()

        assert recovered == 0
        assert store.get(session.session_id).status == SessionStatus.PAUSED

    @pytest.mark.asyncio
    async def test_reset_removes_all_sessions(self, orchestrator, repo, backend, workspace_service, store):
        """Test reset stops every session and prunes worktrees."""
        await orchestrator.create_session(make_request(repo, title="one"))
        await orchestrator.create_session(make_request(repo, title="two"))
        await orchestrator.wait_background()

        count = await orchestrator.reset()

        assert count == 2
        assert store.list() == []
        assert backend.sessions == {}
        assert workspace_service.pruned == [repo.resolve()]

    @pytest.mark.asyncio
    async def test_background_error_reaches_sink(self, config, workspace_service, backend, repo):
        """Test promotion failures are reported to the error sink."""
        store = Mock()
        store.update_status.side_effect = PersistenceError("locked")
        errors = []
        orchestrator = SessionOrchestrator(
            config,
            workspace_service,
            backend,
            store,
            on_background_error=lambda session_id, exc: errors.append((session_id, exc)),
        )

        session = await orchestrator.create_session(make_request(repo))
        await orchestrator.wait_background()

        assert len(errors) == 1
        assert errors[0][0] == session.session_id
        assert isinstance(errors[0][1], PersistenceError)

    @pytest.mark.asyncio
    async def test_aclose_cancels_pending_promotion(self, config, orchestrator, repo, store):
        """Test closing the orchestrator cancels background work."""
        config.loading_grace_period = 10
        session = await orchestrator.create_session(make_request(repo))

        await orchestrator.aclose()

        assert store.get(session.session_id).status == SessionStatus.LOADING
