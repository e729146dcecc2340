"""Workspace runner tests against a real git binary and a local bare remote."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from agentrelay.db.database import Database
from agentrelay.errors import HostingError
from agentrelay.models.agent import Agent
from agentrelay.models.project import Project
from agentrelay.models.run import RunOutcome
from agentrelay.models.work_item import WorkItem, WorkItemStatus
from agentrelay.services.agent_cache import AgentRegistry
from agentrelay.services.idempotency import IdempotencyGuard
from agentrelay.services.run_tracker import RunTracker
from agentrelay.services.secrets import StaticSecretResolver
from agentrelay.services.work_queue import WorkQueue
from agentrelay.services.workspace_runner import (
    ChangeSet,
    RunnerState,
    WorkspaceRunner,
)
from helpers import FakeReviewHost, git, requires_git

pytestmark = requires_git

CHANGES = ChangeSet(
    files={"docs/guide.md": "# Guide\n\nHow to use widgets.\n"},
    message="Add widgets guide",
    pr_title="Add widgets guide",
    pr_body="Adds a short guide.",
)


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    return tmp_path / "workspaces"


@pytest.fixture
def runner(
    db: Database,
    work_queue: WorkQueue,
    tracker: RunTracker,
    guard: IdempotencyGuard,
    review_host: FakeReviewHost,
    remote_repo: Path,
    workspace_root: Path,
) -> WorkspaceRunner:
    return WorkspaceRunner(
        db,
        work_queue,
        tracker,
        guard,
        StaticSecretResolver({"WIDGETS_TOKEN": "ghp_" + "a" * 36}),
        review_host,
        workspace_root=workspace_root,
        git_host_url=f"file://{remote_repo.parent.parent}",
        author_name="Relay Bot",
        author_email="relay@example.com",
    )


async def _leased(
    work_queue: WorkQueue, agent: Agent, project: Project, **kwargs
) -> WorkItem:
    await work_queue.enqueue(project.id, "docs", **kwargs)
    item = await work_queue.lease_next(agent)
    assert item is not None
    return item


def _remote_branches(remote_repo: Path) -> list[str]:
    out = git(remote_repo, "for-each-ref", "--format=%(refname:short)", "refs/heads")
    return out.splitlines()


@pytest.mark.asyncio
class TestWorkspaceRunner:
    async def test_happy_path_opens_pull_request(
        self,
        runner: WorkspaceRunner,
        work_queue: WorkQueue,
        tracker: RunTracker,
        review_host: FakeReviewHost,
        agent: Agent,
        project: Project,
        remote_repo: Path,
        workspace_root: Path,
    ) -> None:
        item = await _leased(work_queue, agent, project, payload={"issue_number": 3})

        result = await runner.execute(item, agent, CHANGES)

        assert result.ok, result.error
        assert result.branch_name is not None
        assert result.branch_name.startswith("agent/executor-x-")
        assert result.pr_number == 42
        assert result.steps == [
            "provision",
            "obtain_source",
            "branch",
            "merge_upstream",
            "apply_changes",
            "commit",
            "publish",
            "open_review_request",
            "cleanup",
        ]

        assert result.branch_name in _remote_branches(remote_repo)
        message = git(remote_repo, "log", "-1", "--format=%B", result.branch_name)
        assert f"Work-Item: {item.id}" in message
        assert "Agent: executor-x" in message
        assert "Fixes #3" in review_host.created_pulls[0]["body"]

        runs = await tracker.list_for_work_item(item.id)
        assert runs[0].outcome is RunOutcome.SUCCESS
        assert runs[0].branch_name == result.branch_name
        assert runs[0].pr_number == 42
        assert runs[0].head_sha == result.head_sha
        assert "ghp_" not in runs[0].logs
        assert (await work_queue.get(item.id)).status is WorkItemStatus.COMPLETED
        assert list(workspace_root.iterdir()) == []

    async def test_re_execution_after_success_has_no_side_effects(
        self,
        runner: WorkspaceRunner,
        work_queue: WorkQueue,
        review_host: FakeReviewHost,
        agent: Agent,
        project: Project,
        remote_repo: Path,
    ) -> None:
        item = await _leased(work_queue, agent, project)
        first = await runner.execute(item, agent, CHANGES)
        assert first.ok
        branches = _remote_branches(remote_repo)

        await work_queue.retry(item, allow_completed=True)
        again = await work_queue.lease_next(agent)
        assert again is not None
        second = await runner.execute(again, agent, CHANGES)

        assert second.ok
        assert second.skipped
        assert second.steps == []
        assert len(review_host.created_pulls) == 1
        assert _remote_branches(remote_repo) == branches

    async def test_path_outside_repository_fails_run(
        self,
        runner: WorkspaceRunner,
        work_queue: WorkQueue,
        tracker: RunTracker,
        agent: Agent,
        project: Project,
        workspace_root: Path,
    ) -> None:
        item = await _leased(work_queue, agent, project)

        result = await runner.execute(
            item, agent, ChangeSet(files={"../../escape.txt": "nope"})
        )

        assert result.state is RunnerState.FAILED
        assert "apply_changes" in (result.error or "")
        run = (await tracker.list_for_work_item(item.id))[0]
        assert run.outcome is RunOutcome.FAILURE
        assert (await work_queue.get(item.id)).status is WorkItemStatus.FAILED
        assert list(workspace_root.iterdir()) == []

    async def test_push_rejection_fails_without_retry(
        self,
        runner: WorkspaceRunner,
        work_queue: WorkQueue,
        review_host: FakeReviewHost,
        agent: Agent,
        project: Project,
        remote_repo: Path,
    ) -> None:
        hook = remote_repo / "hooks" / "pre-receive"
        hook.write_text("#!/bin/sh\necho 'pushes are frozen' >&2\nexit 1\n")
        hook.chmod(0o755)
        item = await _leased(work_queue, agent, project)

        result = await runner.execute(item, agent, CHANGES)

        assert result.state is RunnerState.FAILED
        assert "publish" in (result.error or "")
        assert not result.released
        assert review_host.created_pulls == []
        assert (await work_queue.get(item.id)).status is WorkItemStatus.FAILED

    async def test_review_request_failure_keeps_branch_for_resume(
        self,
        runner: WorkspaceRunner,
        work_queue: WorkQueue,
        tracker: RunTracker,
        review_host: FakeReviewHost,
        agent: Agent,
        project: Project,
        remote_repo: Path,
    ) -> None:
        review_host.fail_with = HostingError("server error", status_code=502)
        item = await _leased(work_queue, agent, project)

        failed = await runner.execute(item, agent, CHANGES)

        assert failed.state is RunnerState.FAILED
        assert "open_review_request" in (failed.error or "")
        assert failed.branch_name in _remote_branches(remote_repo)
        first_run = (await tracker.list_for_work_item(item.id))[0]
        assert first_run.branch_name == failed.branch_name
        assert (await work_queue.get(item.id)).status is WorkItemStatus.FAILED

        review_host.fail_with = None
        await work_queue.retry(item)
        again = await work_queue.lease_next(agent)
        assert again is not None
        resumed = await runner.execute(again, agent, CHANGES)

        assert resumed.ok, resumed.error
        assert resumed.branch_name == failed.branch_name
        assert resumed.head_sha == failed.head_sha
        runs = await tracker.list_for_work_item(item.id)
        assert len(runs) == 2
        assert "nothing to commit" in runs[1].logs
        assert runs[1].pr_number == 42
        assert (await work_queue.get(item.id)).status is WorkItemStatus.COMPLETED

    async def test_merge_conflict_releases_work_item(
        self,
        runner: WorkspaceRunner,
        work_queue: WorkQueue,
        tracker: RunTracker,
        review_host: FakeReviewHost,
        agent: Agent,
        project: Project,
        remote_repo: Path,
        tmp_path: Path,
    ) -> None:
        review_host.fail_with = HostingError("server error", status_code=502)
        item = await _leased(work_queue, agent, project)
        first = await runner.execute(item, agent, CHANGES)
        assert first.state is RunnerState.FAILED

        # Someone lands a conflicting change on main.
        other = tmp_path / "other"
        git(tmp_path, "clone", str(remote_repo), str(other))
        (other / "docs").mkdir()
        (other / "docs" / "guide.md").write_text("# A different guide\n")
        git(other, "add", "docs/guide.md")
        git(other, "commit", "-m", "conflicting guide")
        git(other, "push", "origin", "main")

        review_host.fail_with = None
        await work_queue.retry(item)
        again = await work_queue.lease_next(agent)
        assert again is not None
        result = await runner.execute(again, agent, CHANGES)

        assert result.state is RunnerState.FAILED
        assert result.released
        assert "merge_upstream" in (result.error or "")
        assert (await work_queue.get(item.id)).status is WorkItemStatus.PENDING
        runs = await tracker.list_for_work_item(item.id)
        assert runs[-1].outcome is RunOutcome.FAILURE
        assert review_host.created_pulls == []


    async def test_same_second_attempts_get_their_own_branches(
        self,
        runner: WorkspaceRunner,
        work_queue: WorkQueue,
        tracker: RunTracker,
        agents: AgentRegistry,
        review_host: FakeReviewHost,
        agent: Agent,
        project: Project,
        remote_repo: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        frozen = datetime(2026, 10, 18, 8, 50, tzinfo=timezone.utc)
        monkeypatch.setattr("agentrelay.services.workspace.utc_now", lambda: frozen)
        agent = await agents.update(agent.key, max_concurrency=2)
        first = await _leased(work_queue, agent, project, payload={"n": 1})
        second = await _leased(work_queue, agent, project, payload={"n": 2})

        ra = await runner.execute(
            first, agent, ChangeSet(files={"a.md": "first\n"}, message="First")
        )
        rb = await runner.execute(
            second, agent, ChangeSet(files={"b.md": "second\n"}, message="Second")
        )

        assert ra.ok and rb.ok, (ra.error, rb.error)
        assert ra.branch_name != rb.branch_name
        assert {ra.pr_number, rb.pr_number} == {42, 43}
        assert [p["head"] for p in review_host.created_pulls] == [ra.branch_name, rb.branch_name]
        files_b = git(remote_repo, "ls-tree", "--name-only", "-r", str(rb.branch_name))
        assert "b.md" in files_b.splitlines()
        assert "a.md" not in files_b.splitlines()
        run_b = (await tracker.list_for_work_item(second.id))[0]
        assert run_b.pr_number == rb.pr_number
    async def test_no_active_run(
        self, runner: WorkspaceRunner, work_queue: WorkQueue, agent: Agent, project: Project
    ) -> None:
        item = await work_queue.enqueue(project.id, "docs")
        result = await runner.execute(item, agent, CHANGES)
        assert result.state is RunnerState.FAILED
        assert result.error == "work item has no active run"
