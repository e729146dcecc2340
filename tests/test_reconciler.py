from __future__ import annotations

from typing import Any

import pytest

from agentrelay.db.database import Database
from agentrelay.models.agent import Agent
from agentrelay.models.project import Project
from agentrelay.models.run import Run, RunOutcome
from agentrelay.models.work_item import WorkItemStatus
from agentrelay.services.agent_cache import AgentRegistry
from agentrelay.services.run_tracker import RunTracker
from agentrelay.services.work_queue import WorkQueue
from agentrelay.webhooks.events import parse_event
from agentrelay.webhooks.reconciler import Reconciler, linked_issue_number


@pytest.fixture
def reconciler(
    db: Database, work_queue: WorkQueue, tracker: RunTracker, agents: AgentRegistry
) -> Reconciler:
    return Reconciler(db, work_queue, tracker, agents)


def issue_event(action: str, number: int = 12, **issue: Any):
    return parse_event(
        "issues",
        {
            "action": action,
            "issue": {"number": number, "title": "Broken build", "labels": [], **issue},
        },
    )


def pr_event(
    action: str, number: int = 42, *, branch: str = "agent/x-1", body: str = "", **pr: Any
):
    return parse_event(
        "pull_request",
        {
            "action": action,
            "pull_request": {
                "number": number,
                "html_url": f"https://github.com/acme/widgets/pull/{number}",
                "body": body,
                "head": {"ref": branch, "sha": "sha-1"},
                **pr,
            },
        },
    )


def build_event(action: str, conclusion: str | None, head_sha: str = "sha-1"):
    return parse_event(
        "workflow_run",
        {
            "action": action,
            "workflow_run": {
                "id": 900,
                "head_sha": head_sha,
                "status": "completed" if action == "completed" else "in_progress",
                "conclusion": conclusion,
            },
        },
    )


async def _leased_run(work_queue: WorkQueue, agent: Agent, project: Project, **kwargs) -> Run:
    await work_queue.enqueue(project.id, "issue", **kwargs)
    leased = await work_queue.lease_with_run(agent)
    assert leased is not None
    return leased[1]


class TestLinkedIssue:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("Fixes #12", 12),
            ("This closes #7.", 7),
            ("resolved: #3", 3),
            ("See #12 for context", None),
            ("", None),
            (None, None),
        ],
    )
    def test_closing_keywords(self, text: str | None, expected: int | None) -> None:
        assert linked_issue_number(text) == expected


@pytest.mark.asyncio
class TestDeliveries:
    async def test_duplicate_delivery_is_rejected(self, reconciler: Reconciler, db: Database) -> None:
        assert await reconciler.record("d-1", "ping", {"zen": "hi"})
        assert not await reconciler.record("d-1", "ping", {"zen": "hi"})
        assert await db.count_webhook_events() == 1

        stored = await reconciler.delivery("d-1")
        assert stored is not None
        assert (stored.event_type, stored.payload) == ("ping", {"zen": "hi"})

        await reconciler.forget("d-1")
        assert await reconciler.delivery("d-1") is None
        assert await reconciler.record("d-1", "ping", {"zen": "hi"})


@pytest.mark.asyncio
class TestIssueEvents:
    async def test_opened_creates_work_item(
        self, reconciler: Reconciler, work_queue: WorkQueue, project: Project
    ) -> None:
        result = await reconciler.reconcile(
            project, issue_event("opened", labels=[{"name": "bug"}], body="It fails")
        )

        item = await work_queue.find_by_issue(project.id, 12)  # type: ignore[arg-type]
        assert item is not None
        assert result == f"created work item #{item.id}"
        assert item.work_type == "issue"
        assert item.status is WorkItemStatus.PENDING
        assert item.payload["labels"] == ["bug"]
        assert item.payload["body"] == "It fails"

    async def test_labeled_updates_existing(
        self, reconciler: Reconciler, work_queue: WorkQueue, project: Project
    ) -> None:
        await reconciler.reconcile(project, issue_event("opened"))
        await reconciler.reconcile(
            project, issue_event("labeled", labels=[{"name": "bug"}, {"name": "p1"}])
        )

        items = await work_queue.list_items()
        assert len(items) == 1
        assert items[0].payload["labels"] == ["bug", "p1"]

    async def test_closed_completes_work_item(
        self,
        reconciler: Reconciler,
        work_queue: WorkQueue,
        tracker: RunTracker,
        agent: Agent,
        project: Project,
    ) -> None:
        await reconciler.reconcile(project, issue_event("opened"))
        leased = await work_queue.lease_with_run(agent)
        assert leased is not None

        result = await reconciler.reconcile(project, issue_event("closed", state="closed"))

        item = await work_queue.get(leased[0].id)  # type: ignore[arg-type]
        assert item.status is WorkItemStatus.COMPLETED
        assert (await tracker.get(leased[1].id)).outcome is RunOutcome.SUCCESS  # type: ignore[arg-type]
        assert result.startswith("completed work item")
        again = await reconciler.reconcile(project, issue_event("closed", state="closed"))
        assert again == "already finished"

    async def test_reopened_requeues(
        self, reconciler: Reconciler, work_queue: WorkQueue, project: Project
    ) -> None:
        await reconciler.reconcile(project, issue_event("opened"))
        await reconciler.reconcile(project, issue_event("closed"))
        await reconciler.reconcile(project, issue_event("reopened"))

        item = await work_queue.find_by_issue(project.id, 12)  # type: ignore[arg-type]
        assert item is not None and item.status is WorkItemStatus.PENDING

    async def test_reopened_unknown_issue_creates(
        self, reconciler: Reconciler, work_queue: WorkQueue, project: Project
    ) -> None:
        await reconciler.reconcile(project, issue_event("reopened", number=99))
        assert await work_queue.find_by_issue(project.id, 99) is not None  # type: ignore[arg-type]

    async def test_closed_unknown_issue_is_ignored(
        self, reconciler: Reconciler, project: Project
    ) -> None:
        result = await reconciler.reconcile(project, issue_event("closed", number=5))
        assert result.startswith("ignored")


@pytest.mark.asyncio
class TestPullRequestEvents:
    async def test_opened_attaches_to_run_by_branch(
        self,
        reconciler: Reconciler,
        work_queue: WorkQueue,
        tracker: RunTracker,
        agent: Agent,
        project: Project,
    ) -> None:
        run = await _leased_run(work_queue, agent, project)
        await tracker.attach_references(run.id, branch_name="agent/x-1")  # type: ignore[arg-type]

        await reconciler.reconcile(project, pr_event("opened"))

        updated = await tracker.get(run.id)  # type: ignore[arg-type]
        assert updated.pr_number == 42
        assert updated.head_sha == "sha-1"
        assert updated.pr_url == "https://github.com/acme/widgets/pull/42"
        assert updated.outcome is None

    async def test_opened_with_linked_issue_leases_for_assignee(
        self,
        reconciler: Reconciler,
        work_queue: WorkQueue,
        tracker: RunTracker,
        agent: Agent,
        project: Project,
    ) -> None:
        item = await work_queue.enqueue(
            project.id, "issue", payload={"issue_number": 12}, assigned_agent_id=agent.id
        )

        await reconciler.reconcile(project, pr_event("opened", body="Fixes #12"))

        leased = await work_queue.get(item.id)  # type: ignore[arg-type]
        assert leased.status is WorkItemStatus.IN_PROGRESS
        assert leased.locked_by_agent_id == agent.id
        run = await tracker.active_run_for(item.id)  # type: ignore[arg-type]
        assert run is not None
        assert run.branch_name == "agent/x-1"
        assert run.pr_number == 42

    async def test_opened_with_linked_issue_reuses_active_run(
        self,
        reconciler: Reconciler,
        work_queue: WorkQueue,
        tracker: RunTracker,
        agent: Agent,
        project: Project,
    ) -> None:
        run = await _leased_run(work_queue, agent, project, payload={"issue_number": 12})

        await reconciler.reconcile(project, pr_event("opened", branch="feature", body="fixes #12"))

        assert (await tracker.get(run.id)).pr_number == 42  # type: ignore[arg-type]
        assert len(await tracker.list_for_work_item(run.work_item_id)) == 1

    async def test_unlinked_pull_request_is_ignored(
        self, reconciler: Reconciler, project: Project
    ) -> None:
        result = await reconciler.reconcile(project, pr_event("opened", branch="random"))
        assert result == "ignored: no run for pull request"

    async def test_merged_completes_run(
        self,
        reconciler: Reconciler,
        work_queue: WorkQueue,
        tracker: RunTracker,
        agent: Agent,
        project: Project,
    ) -> None:
        run = await _leased_run(work_queue, agent, project)
        await tracker.attach_references(run.id, branch_name="agent/x-1", pr_number=42)  # type: ignore[arg-type]

        await reconciler.reconcile(project, pr_event("closed", merged=True, state="closed"))

        finished = await tracker.get(run.id)  # type: ignore[arg-type]
        assert finished.outcome is RunOutcome.SUCCESS
        assert "merged" in finished.logs
        item = await work_queue.get(run.work_item_id)
        assert item.status is WorkItemStatus.COMPLETED
        assert item.locked_by_agent_id is None

    async def test_closed_unmerged_fails_run(
        self,
        reconciler: Reconciler,
        work_queue: WorkQueue,
        tracker: RunTracker,
        agent: Agent,
        project: Project,
    ) -> None:
        run = await _leased_run(work_queue, agent, project)
        await tracker.attach_references(run.id, pr_number=42)  # type: ignore[arg-type]

        await reconciler.reconcile(project, pr_event("closed", merged=False, state="closed"))

        assert (await tracker.get(run.id)).outcome is RunOutcome.FAILURE  # type: ignore[arg-type]
        assert (await work_queue.get(run.work_item_id)).status is WorkItemStatus.FAILED

    async def test_synchronize_updates_head(
        self,
        reconciler: Reconciler,
        work_queue: WorkQueue,
        tracker: RunTracker,
        agent: Agent,
        project: Project,
    ) -> None:
        run = await _leased_run(work_queue, agent, project)
        await tracker.attach_references(run.id, pr_number=42, head_sha="old")  # type: ignore[arg-type]

        await reconciler.reconcile(project, pr_event("synchronize"))

        assert (await tracker.get(run.id)).head_sha == "sha-1"  # type: ignore[arg-type]


@pytest.mark.asyncio
class TestBuildEvents:
    async def test_successful_build_completes_run(
        self,
        reconciler: Reconciler,
        work_queue: WorkQueue,
        tracker: RunTracker,
        agent: Agent,
        project: Project,
    ) -> None:
        run = await _leased_run(work_queue, agent, project)
        await tracker.attach_references(run.id, head_sha="sha-1")  # type: ignore[arg-type]

        await reconciler.reconcile(project, build_event("completed", "success"))

        finished = await tracker.get(run.id)  # type: ignore[arg-type]
        assert finished.outcome is RunOutcome.SUCCESS
        assert finished.check_suite_id == 900
        assert finished.build_status == "success"

    async def test_failed_check_suite_fails_run(
        self,
        reconciler: Reconciler,
        work_queue: WorkQueue,
        tracker: RunTracker,
        agent: Agent,
        project: Project,
    ) -> None:
        run = await _leased_run(work_queue, agent, project)
        await tracker.attach_references(run.id, branch_name="agent/x-1")  # type: ignore[arg-type]
        event = parse_event(
            "check_suite",
            {
                "action": "completed",
                "check_suite": {
                    "id": 901,
                    "head_branch": "agent/x-1",
                    "status": "completed",
                    "conclusion": "timed_out",
                },
            },
        )

        await reconciler.reconcile(project, event)

        assert (await tracker.get(run.id)).outcome is RunOutcome.FAILURE  # type: ignore[arg-type]

    async def test_in_progress_build_only_records_status(
        self,
        reconciler: Reconciler,
        work_queue: WorkQueue,
        tracker: RunTracker,
        agent: Agent,
        project: Project,
    ) -> None:
        run = await _leased_run(work_queue, agent, project)
        await tracker.attach_references(run.id, head_sha="sha-1")  # type: ignore[arg-type]

        await reconciler.reconcile(project, build_event("requested", None))
        in_progress = await tracker.get(run.id)  # type: ignore[arg-type]
        assert in_progress.outcome is None
        assert in_progress.build_status == "in_progress"

        await reconciler.reconcile(project, build_event("completed", "neutral"))
        neutral = await tracker.get(run.id)  # type: ignore[arg-type]
        assert neutral.outcome is None
        assert neutral.build_status == "neutral"

    async def test_build_for_unknown_commit_is_ignored(
        self, reconciler: Reconciler, project: Project
    ) -> None:
        result = await reconciler.reconcile(project, build_event("completed", "success", "nope"))
        assert result == "ignored: no run for build"


@pytest.mark.asyncio
class TestOtherEvents:
    async def test_push_and_ping(self, reconciler: Reconciler, project: Project) -> None:
        push = parse_event("push", {"ref": "refs/heads/main", "after": "abc"})
        ping = parse_event("ping", {"zen": "Keep it simple.", "hook_id": 1})
        assert await reconciler.reconcile(project, push) == "logged"
        assert await reconciler.reconcile(project, ping) == "pong"
