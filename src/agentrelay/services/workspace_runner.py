from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from agentrelay.db.database import Database
from agentrelay.errors import HostingError, WorkspaceError
from agentrelay.models.agent import Agent
from agentrelay.models.project import Project
from agentrelay.models.run import Run, RunOutcome
from agentrelay.models.work_item import WorkItem
from agentrelay.services.hosting import PullRequest, ReviewHost
from agentrelay.services.idempotency import ClaimStatus, IdempotencyGuard, fingerprint
from agentrelay.services.run_tracker import RunTracker
from agentrelay.services.secrets import SecretResolver
from agentrelay.services.work_queue import WorkQueue
from agentrelay.services.workspace import Workspace, branch_name_for

logger = logging.getLogger(__name__)


class RunnerState(str, Enum):
    PROVISION = "provision"
    OBTAIN_SOURCE = "obtain_source"
    BRANCH = "branch"
    MERGE_UPSTREAM = "merge_upstream"
    APPLY_CHANGES = "apply_changes"
    COMMIT = "commit"
    PUBLISH = "publish"
    OPEN_REVIEW_REQUEST = "open_review_request"
    CLEANUP = "cleanup"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ChangeSet:
    files: dict[str, str]
    message: str = "Apply agent changes"
    pr_title: str | None = None
    pr_body: str | None = None


@dataclass
class RunnerResult:
    state: RunnerState
    run_id: int | None = None
    branch_name: str | None = None
    pr_number: int | None = None
    pr_url: str | None = None
    head_sha: str | None = None
    error: str | None = None
    skipped: bool = False
    released: bool = False
    steps: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is RunnerState.DONE


class WorkspaceRunner:
    """Turns a leased work item plus a change set into a pull request.

    Each call works in its own directory, holds no database lock while git
    or the hosting API is busy, and records every step on the Run's log.
    Completing the Run is left to the Run Tracker, so a webhook that reports
    the same outcome first turns the runner's completion into a no-op.
    """

    def __init__(
        self,
        db: Database,
        queue: WorkQueue,
        tracker: RunTracker,
        guard: IdempotencyGuard,
        secrets: SecretResolver,
        host: ReviewHost,
        *,
        workspace_root: Path,
        git_host_url: str = "https://github.com",
        author_name: str = "agentrelay",
        author_email: str = "agentrelay@users.noreply.github.com",
    ):
        self.db = db
        self.queue = queue
        self.tracker = tracker
        self.guard = guard
        self.secrets = secrets
        self.host = host
        self.workspace_root = workspace_root
        self.git_host_url = git_host_url.rstrip("/")
        self.author_name = author_name
        self.author_email = author_email

    async def execute(
        self,
        work_item: WorkItem,
        agent: Agent,
        changes: ChangeSet,
        run: Run | None = None,
    ) -> RunnerResult:
        assert work_item.id is not None
        run = run or await self.tracker.active_run_for(work_item.id)
        if run is None or run.id is None:
            return RunnerResult(RunnerState.FAILED, error="work item has no active run")
        result = RunnerResult(RunnerState.PROVISION, run_id=run.id)

        key = fingerprint(work_item, agent)
        if await self.guard.already_succeeded(key):
            await self.tracker.complete(
                run.id, RunOutcome.SUCCESS, log="already succeeded under the same key"
            )
            result.state, result.skipped = RunnerState.DONE, True
            return result

        claim = await self.guard.claim(run, key)
        if claim.status is ClaimStatus.SUCCEEDED:
            await self.tracker.complete(
                run.id, RunOutcome.SUCCESS, log="already succeeded under the same key"
            )
            result.state, result.skipped = RunnerState.DONE, True
            return result
        if claim.status is ClaimStatus.IN_FLIGHT:
            await self.tracker.complete(
                run.id, RunOutcome.FAILURE, log="another run holds the same key"
            )
            return self._failed(result, "another run is already executing this work")
        if claim.status is ClaimStatus.INACTIVE or claim.run is None:
            return self._failed(result, "run is no longer active")
        run = claim.run

        project_row = await self.db.get_project(work_item.project_id)
        if project_row is None:
            await self.tracker.complete(run.id, RunOutcome.FAILURE, log="project not found")
            return self._failed(result, "project not found")
        project = Project.from_row(project_row)

        workspace: Workspace | None = None
        try:
            await self._enter(result, RunnerState.PROVISION)
            token = self.secrets.resolve(project.token_secret_name)
            workspace = Workspace.provision(
                self.workspace_root,
                f"wi{work_item.id}-run{run.id}",
                token=token,
                author_name=self.author_name,
                author_email=self.author_email,
            )

            await self._enter(result, RunnerState.OBTAIN_SOURCE)
            if not project.repo_full_name:
                raise WorkspaceError("obtain_source", "project has no repository configured")
            await workspace.clone(
                f"{self.git_host_url}/{project.repo_full_name}.git",
                project.repo_default_branch,
            )

            await self._enter(result, RunnerState.BRANCH)
            # Only a branch inherited from an earlier attempt of this same
            # work is resumed; a freshly named one is always created.
            if run.branch_name:
                branch = run.branch_name
                branch_on_remote = await workspace.remote_branch_exists(branch)
            else:
                branch, branch_on_remote = branch_name_for(agent.key), False
            if branch_on_remote:
                await workspace.checkout_remote_branch(branch)
            else:
                await workspace.create_branch(branch)
            result.branch_name = branch
            await self.tracker.attach_references(run.id, branch_name=branch)
            await self._note(
                result, f"branch {branch} ({'resumed' if branch_on_remote else 'new'})"
            )

            await self._enter(result, RunnerState.MERGE_UPSTREAM)
            await workspace.merge_upstream(project.repo_default_branch)

            await self._enter(result, RunnerState.APPLY_CHANGES)
            written = workspace.apply_changes(changes.files)
            await self._note(result, f"wrote {len(written)} file(s)")

            await self._enter(result, RunnerState.COMMIT)
            if await workspace.has_changes():
                head_sha = await workspace.commit(
                    f"{changes.message}\n\nWork-Item: {work_item.id}\nAgent: {agent.key}"
                )
            elif branch_on_remote:
                head_sha = await workspace.head_sha()
                await self._note(result, "nothing to commit; branch already holds the changes")
            else:
                raise WorkspaceError("commit", "change set produced no changes")
            result.head_sha = head_sha

            await self._enter(result, RunnerState.PUBLISH)
            await workspace.push(branch)
            await self.tracker.attach_references(run.id, head_sha=head_sha)

            await self._enter(result, RunnerState.OPEN_REVIEW_REQUEST)
            pr = await self._open_review_request(project, work_item, changes, branch, token)
            result.pr_number, result.pr_url = pr.number, pr.url
            await self.tracker.complete(
                run.id,
                RunOutcome.SUCCESS,
                log=f"pull request #{pr.number} open at {pr.url}",
                pr_number=pr.number,
                pr_url=pr.url,
                head_sha=pr.head_sha or head_sha,
            )
            result.state = RunnerState.DONE
            logger.info(
                "Work item #%d: pull request #%d on %s", work_item.id, pr.number, branch
            )
        except WorkspaceError as exc:
            await self._handle_failure(result, work_item, run, exc.step, str(exc), exc.retryable)
        except HostingError as exc:
            # The pushed branch stays on the run so a later attempt can resume it.
            await self._handle_failure(
                result, work_item, run, RunnerState.OPEN_REVIEW_REQUEST.value, str(exc), False
            )
        finally:
            if workspace is not None:
                result.steps.append(RunnerState.CLEANUP.value)
                await asyncio.to_thread(workspace.cleanup)
                await self.tracker.append_log(run.id, RunnerState.CLEANUP.value)
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _open_review_request(
        self,
        project: Project,
        work_item: WorkItem,
        changes: ChangeSet,
        branch: str,
        token: str | None,
    ) -> PullRequest:
        assert project.repo_full_name is not None
        existing = await self.host.find_open_pull_request(project.repo_full_name, branch, token)
        if existing is not None:
            return existing
        title = changes.pr_title or changes.message.splitlines()[0]
        body = (changes.pr_body or "").rstrip()
        issue_number = work_item.payload.get("issue_number")
        if issue_number:
            body = f"{body}\n\nFixes #{issue_number}".lstrip()
        body = f"{body}\n\nWork-Item: {work_item.id}".lstrip()
        return await self.host.create_pull_request(
            project.repo_full_name,
            head=branch,
            base=project.repo_default_branch,
            title=title,
            body=body,
            token=token,
        )

    async def _enter(self, result: RunnerResult, state: RunnerState) -> None:
        result.state = state
        result.steps.append(state.value)
        await self._note(result, state.value)

    async def _note(self, result: RunnerResult, line: str) -> None:
        assert result.run_id is not None
        logger.debug("Run #%d: %s", result.run_id, line)
        await self.tracker.append_log(result.run_id, line)

    async def _handle_failure(
        self,
        result: RunnerResult,
        work_item: WorkItem,
        run: Run,
        step: str,
        message: str,
        retryable: bool,
    ) -> None:
        assert run.id is not None
        logger.warning("Work item #%d failed at %s: %s", work_item.id, step, message)
        self._failed(result, f"{step}: {message}")
        if retryable:
            await self.queue.release(work_item, f"{step}: {message}")
            result.released = True
        else:
            await self.tracker.complete(run.id, RunOutcome.FAILURE, log=f"{step} failed: {message}")

    @staticmethod
    def _failed(result: RunnerResult, error: str) -> RunnerResult:
        result.state = RunnerState.FAILED
        result.error = error
        return result
