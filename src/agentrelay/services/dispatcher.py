from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import assert_never

from agentrelay.db.database import Database
from agentrelay.errors import HostingError
from agentrelay.models.agent import Agent
from agentrelay.models.brain_response import (
    BrainResponse,
    CreateFilesAndPullRequest,
    CreateIssue,
    CreatePullRequest,
    ErrorResponse,
    FileWritesResponse,
    HostingOperationsResponse,
    WorkItemsResponse,
)
from agentrelay.models.project import Project
from agentrelay.models.run import Run, RunOutcome
from agentrelay.models.work_item import WorkItem
from agentrelay.services.agent_cache import AgentRegistry
from agentrelay.services.hosting import ReviewHost
from agentrelay.services.run_tracker import RunTracker
from agentrelay.services.secrets import SecretResolver
from agentrelay.services.work_queue import WorkQueue
from agentrelay.services.workspace_runner import ChangeSet, RunnerResult, WorkspaceRunner

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    outcome: RunOutcome
    detail: str
    created_work_item_ids: list[int] = field(default_factory=list)
    runner: RunnerResult | None = None


class ResponseDispatcher:
    """Carries out a validated brain response for one leased work item."""

    def __init__(
        self,
        db: Database,
        queue: WorkQueue,
        tracker: RunTracker,
        agents: AgentRegistry,
        runner: WorkspaceRunner,
        host: ReviewHost,
        secrets: SecretResolver,
    ):
        self.db = db
        self.queue = queue
        self.tracker = tracker
        self.agents = agents
        self.runner = runner
        self.host = host
        self.secrets = secrets

    async def dispatch(
        self, work_item: WorkItem, agent: Agent, run: Run, response: BrainResponse
    ) -> DispatchResult:
        match response:
            case WorkItemsResponse():
                return await self._create_work_items(work_item, run, response)
            case FileWritesResponse():
                changes = ChangeSet(
                    files={f.path: f.content for f in response.files},
                    message=response.message or f"{work_item.work_type}: apply changes",
                    pr_title=response.pr_title,
                    pr_body=response.pr_body,
                )
                return await self._run_workspace(work_item, agent, run, changes)
            case HostingOperationsResponse():
                return await self._hosting_operations(work_item, agent, run, response)
            case ErrorResponse():
                detail = f"brain reported error: {response.error}"
                await self.tracker.complete(run.id, RunOutcome.FAILURE, log=detail)
                return DispatchResult(RunOutcome.FAILURE, detail)
            case _:
                assert_never(response)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _create_work_items(
        self, work_item: WorkItem, run: Run, response: WorkItemsResponse
    ) -> DispatchResult:
        created: list[int] = []
        for proposed in response.work_items:
            executor = await self.agents.get(proposed.executor_key)
            if executor is None:
                logger.warning(
                    "Unknown executor %s; work item left unassigned", proposed.executor_key
                )
            child = await self.queue.enqueue(
                work_item.project_id,
                proposed.work_type,
                priority=proposed.priority,
                payload={**proposed.payload, "parent_work_item_id": work_item.id},
                assigned_agent_id=executor.id if executor else None,
            )
            assert child.id is not None
            created.append(child.id)
        detail = f"created {len(created)} work item(s)"
        await self.tracker.complete(run.id, RunOutcome.SUCCESS, log=detail)
        return DispatchResult(RunOutcome.SUCCESS, detail, created_work_item_ids=created)

    async def _run_workspace(
        self, work_item: WorkItem, agent: Agent, run: Run, changes: ChangeSet
    ) -> DispatchResult:
        result = await self.runner.execute(work_item, agent, changes, run)
        if result.ok:
            detail = f"pull request #{result.pr_number}" if result.pr_number else "already done"
            return DispatchResult(RunOutcome.SUCCESS, detail, runner=result)
        return DispatchResult(RunOutcome.FAILURE, result.error or "runner failed", runner=result)

    async def _hosting_operations(
        self,
        work_item: WorkItem,
        agent: Agent,
        run: Run,
        response: HostingOperationsResponse,
    ) -> DispatchResult:
        assert run.id is not None
        project_row = await self.db.get_project(work_item.project_id)
        project = Project.from_row(project_row) if project_row else None
        if project is None or not project.repo_full_name:
            detail = "project has no repository configured"
            await self.tracker.complete(run.id, RunOutcome.FAILURE, log=detail)
            return DispatchResult(RunOutcome.FAILURE, detail)
        token = self.secrets.resolve(project.token_secret_name)

        files: dict[str, str] = {}
        change_meta: CreateFilesAndPullRequest | None = None
        notes: list[str] = []
        try:
            for operation in response.operations:
                match operation:
                    case CreateIssue():
                        issue = await self.host.create_issue(
                            project.repo_full_name,
                            title=operation.title,
                            body=operation.body,
                            labels=operation.labels,
                            token=token,
                        )
                        notes.append(f"issue #{issue.number}")
                    case CreatePullRequest():
                        pr = await self.host.create_pull_request(
                            project.repo_full_name,
                            head=operation.head,
                            base=operation.base or project.repo_default_branch,
                            title=operation.pr_title or operation.title or "",
                            body=operation.pr_body or operation.body,
                            token=token,
                        )
                        await self.tracker.attach_references(
                            run.id, pr_number=pr.number, pr_url=pr.url, head_sha=pr.head_sha
                        )
                        notes.append(f"pull request #{pr.number}")
                    case CreateFilesAndPullRequest():
                        files.update({f.path: f.content for f in operation.files})
                        change_meta = change_meta or operation
                    case _:
                        assert_never(operation)
        except HostingError as exc:
            detail = f"hosting operation failed: {exc}"
            await self.tracker.complete(run.id, RunOutcome.FAILURE, log=detail)
            return DispatchResult(RunOutcome.FAILURE, detail)

        if change_meta is not None:
            changes = ChangeSet(
                files=files,
                message=change_meta.message or change_meta.title or f"{work_item.work_type}: setup",
                pr_title=change_meta.pr_title or change_meta.title,
                pr_body=change_meta.pr_body or change_meta.body,
            )
            return await self._run_workspace(work_item, agent, run, changes)

        detail = ", ".join(notes) or "no operations"
        await self.tracker.complete(run.id, RunOutcome.SUCCESS, log=detail)
        return DispatchResult(RunOutcome.SUCCESS, detail)
