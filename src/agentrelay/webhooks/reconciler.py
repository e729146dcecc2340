from __future__ import annotations

import logging
import re
from typing import Any, assert_never

from agentrelay.db.database import Database
from agentrelay.models.project import Project
from agentrelay.models.run import Run, RunOutcome
from agentrelay.models.webhook_event import InboundEvent
from agentrelay.models.work_item import WorkItem
from agentrelay.services.agent_cache import AgentRegistry
from agentrelay.services.run_tracker import RunTracker
from agentrelay.services.work_queue import WorkQueue
from agentrelay.webhooks.events import (
    BuildInfo,
    CheckSuiteEvent,
    IssueInfo,
    IssuesEvent,
    PingEvent,
    PullRequestEvent,
    PushEvent,
    WebhookEvent,
    WorkflowRunEvent,
)

logger = logging.getLogger(__name__)

ISSUE_WORK_TYPE = "issue"

_LINKED_ISSUE = re.compile(
    r"\b(?:close[sd]?|fix(?:e[sd])?|resolve[sd]?)\s*:?\s+#(\d+)", re.IGNORECASE
)
_BUILD_SUCCESS = frozenset({"success"})
_BUILD_FAILURE = frozenset({"failure", "timed_out", "cancelled"})


def linked_issue_number(text: str | None) -> int | None:
    """Issue referenced by a closing keyword ("Fixes #12") in a PR body."""
    if not text:
        return None
    match = _LINKED_ISSUE.search(text)
    return int(match.group(1)) if match else None


def issue_payload(issue: IssueInfo) -> dict[str, Any]:
    return {
        "issue_number": issue.number,
        "title": issue.title,
        "body": issue.body or "",
        "labels": [label.name for label in issue.labels],
        "state": issue.state,
        "html_url": issue.html_url,
    }


class Reconciler:
    """Applies verified webhook deliveries to work items and runs.

    Every state change goes through the Work Queue or the Run Tracker, so
    the same guards apply as for executor-driven transitions.
    """

    def __init__(
        self,
        db: Database,
        queue: WorkQueue,
        tracker: RunTracker,
        agents: AgentRegistry,
    ):
        self.db = db
        self.queue = queue
        self.tracker = tracker
        self.agents = agents

    # ------------------------------------------------------------------
    # Delivery bookkeeping
    # ------------------------------------------------------------------

    async def record(
        self,
        delivery_id: str,
        event_type: str,
        payload: dict[str, Any],
        project_id: int | None = None,
    ) -> bool:
        """Store a delivery; False means it was seen before and must be skipped."""
        return await self.db.insert_webhook_event(delivery_id, event_type, payload, project_id)

    async def forget(self, delivery_id: str) -> None:
        """Drop a stored delivery so a redelivery is processed again."""
        await self.db.delete_webhook_event(delivery_id)

    async def delivery(self, delivery_id: str) -> InboundEvent | None:
        row = await self.db.get_webhook_event(delivery_id)
        return InboundEvent.from_row(row) if row else None

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self, project: Project, event: WebhookEvent) -> str:
        match event:
            case IssuesEvent():
                return await self._on_issue(project, event)
            case PullRequestEvent():
                return await self._on_pull_request(project, event)
            case WorkflowRunEvent():
                return await self._on_build(event.action, event.workflow_run)
            case CheckSuiteEvent():
                return await self._on_build(event.action, event.check_suite)
            case PushEvent():
                logger.info("Push to %s on %s (%s)", event.ref, project.slug, event.after)
                return "logged"
            case PingEvent():
                logger.info("Ping from hook %s for %s", event.hook_id, project.slug)
                return "pong"
            case _:
                assert_never(event)

    async def _on_issue(self, project: Project, event: IssuesEvent) -> str:
        assert project.id is not None
        existing = await self.queue.find_by_issue(project.id, event.issue.number)
        payload = issue_payload(event.issue)

        if event.action in ("opened", "labeled", "unlabeled", "edited"):
            if existing is None:
                created = await self.queue.enqueue(project.id, ISSUE_WORK_TYPE, payload=payload)
                return f"created work item #{created.id}"
            assert existing.id is not None
            await self.queue.update_payload(existing.id, {**existing.payload, **payload})
            return f"updated work item #{existing.id}"

        if event.action == "reopened":
            if existing is None:
                created = await self.queue.enqueue(project.id, ISSUE_WORK_TYPE, payload=payload)
                return f"created work item #{created.id}"
            if existing.status.is_terminal:
                await self.queue.retry(existing, allow_completed=True)
                return f"requeued work item #{existing.id}"
            return f"work item #{existing.id} already open"

        if event.action == "closed":
            if existing is None:
                return "ignored: no work item for issue"
            assert existing.id is not None
            finalized = await self.tracker.finalize_work_item(
                existing.id, RunOutcome.SUCCESS, log=f"issue #{event.issue.number} closed"
            )
            return f"completed work item #{existing.id}" if finalized else "already finished"

        return f"ignored issues.{event.action}"

    async def _on_pull_request(self, project: Project, event: PullRequestEvent) -> str:
        pr = event.pull_request
        refs = {"pr_number": pr.number, "pr_url": pr.html_url, "head_sha": pr.head.sha}

        if event.action in ("opened", "reopened", "ready_for_review"):
            run = await self.tracker.find_by_branch(pr.head.ref)
            if run is None:
                run = await self._associate_linked_issue(project, pr.body, pr.head.ref)
            if run is None:
                return "ignored: no run for pull request"
            assert run.id is not None
            await self.tracker.attach_references(run.id, branch_name=pr.head.ref, **refs)
            return f"associated pull request #{pr.number} with run #{run.id}"

        if event.action == "synchronize":
            run = await self._run_for_pull_request(pr.number, pr.head.ref)
            if run is None:
                return "ignored: no run for pull request"
            assert run.id is not None
            await self.tracker.attach_references(run.id, head_sha=pr.head.sha)
            return f"updated head of run #{run.id}"

        if event.action == "closed":
            run = await self._run_for_pull_request(pr.number, pr.head.ref)
            if run is None:
                return "ignored: no run for pull request"
            assert run.id is not None
            outcome = RunOutcome.SUCCESS if pr.merged else RunOutcome.FAILURE
            completed = await self.tracker.complete(
                run.id,
                outcome,
                log=f"pull request #{pr.number} {'merged' if pr.merged else 'closed'}",
                **refs,
            )
            return f"run #{run.id} {outcome.value}" if completed else "already finished"

        return f"ignored pull_request.{event.action}"

    async def _on_build(self, action: str, build: BuildInfo) -> str:
        run = None
        if build.head_sha:
            run = await self.tracker.find_by_head_sha(build.head_sha)
        if run is None and build.head_branch:
            run = await self.tracker.find_by_branch(build.head_branch)
        if run is None:
            return "ignored: no run for build"
        assert run.id is not None

        if action != "completed":
            await self.tracker.attach_references(
                run.id, check_suite_id=build.id, build_status=build.status
            )
            return f"build {build.status} for run #{run.id}"

        refs = {"check_suite_id": build.id, "build_status": build.conclusion or build.status}
        if build.conclusion in _BUILD_SUCCESS:
            outcome = RunOutcome.SUCCESS
        elif build.conclusion in _BUILD_FAILURE:
            outcome = RunOutcome.FAILURE
        else:
            await self.tracker.attach_references(run.id, **refs)
            return f"build {build.conclusion} recorded for run #{run.id}"

        completed = await self.tracker.complete(
            run.id, outcome, log=f"build {build.id} concluded {build.conclusion}", **refs
        )
        return f"run #{run.id} {outcome.value}" if completed else "build recorded"

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _run_for_pull_request(self, number: int, branch: str) -> Run | None:
        return await self.tracker.find_by_pr_number(number) or await self.tracker.find_by_branch(
            branch
        )

    async def _associate_linked_issue(
        self, project: Project, body: str | None, branch: str
    ) -> Run | None:
        """Find or open the run for a pull request created outside the runner."""
        assert project.id is not None
        issue_number = linked_issue_number(body)
        if issue_number is None:
            return None
        work_item = await self.queue.find_by_issue(project.id, issue_number)
        if work_item is None or work_item.id is None:
            return None

        active = await self.tracker.active_run_for(work_item.id)
        if active is not None:
            return active
        return await self._lease_for_assignee(work_item, branch)

    async def _lease_for_assignee(self, work_item: WorkItem, branch: str) -> Run | None:
        if work_item.assigned_agent_id is None:
            logger.info(
                "Pull request on %s links work item #%d, which has no assignee",
                branch,
                work_item.id,
            )
            return None
        agent = await self.agents.get_by_id(work_item.assigned_agent_id)
        if agent is None:
            return None
        leased = await self.queue.lease_with_run(agent, work_item.id)
        if leased is None:
            return None
        return leased[1]
